"""
Receipt service API client implementation.
"""

import logging
from collections.abc import Awaitable, Callable
from enum import Enum

import httpx

from .. import __version__
from ..schemas.api import (
    CreateReceiptRequest,
    CreateReceiptResponse,
    DownloadLocation,
    ReceiptStatusResult,
    RemoteReceipt,
    UploadDestination,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str | None]]


class APIErrorKind(str, Enum):
    """Typed failure categories of the receipt service."""

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    SERVER_ERROR = "server_error"

    @classmethod
    def from_status(cls, status_code: int) -> "APIErrorKind":
        return {
            401: cls.UNAUTHORIZED,
            403: cls.FORBIDDEN,
            409: cls.CONFLICT,
            413: cls.PAYLOAD_TOO_LARGE,
        }.get(status_code, cls.SERVER_ERROR)


_USER_MESSAGES = {
    APIErrorKind.UNAUTHORIZED: "Authentication required. Please sign in again.",
    APIErrorKind.FORBIDDEN: "You don't have permission to perform this action.",
    APIErrorKind.CONFLICT: "This receipt is being reviewed and can no longer be modified.",
    APIErrorKind.PAYLOAD_TOO_LARGE: "Image file is too large. Maximum size is 10MB.",
}


class ReceiptAPIClientError(Exception):
    """Base exception for receipt API client errors."""

    pass


class ReceiptAPIError(ReceiptAPIClientError):
    """The receipt service rejected a request (or no token was available)."""

    def __init__(
        self,
        kind: APIErrorKind,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        self.kind = kind
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(self.user_message)

    @classmethod
    def from_status(cls, status_code: int, response_body: str | None = None) -> "ReceiptAPIError":
        return cls(APIErrorKind.from_status(status_code), status_code, response_body)

    @property
    def user_message(self) -> str:
        """Message suitable for showing next to the receipt."""
        if self.kind is APIErrorKind.SERVER_ERROR:
            return f"Server error ({self.status_code or 0}). Please try again later."
        return _USER_MESSAGES[self.kind]


class ReceiptConnectionError(ReceiptAPIClientError):
    """Failed to reach the receipt service (network error or timeout)."""

    pass


def static_token_provider(token: str | None) -> TokenProvider:
    """Session provider that always hands out the same token (None if empty)."""

    async def provider() -> str | None:
        return token or None

    return provider


class ReceiptAPIClient:
    """
    Async client for the receipt service.

    Features:
    - Presigned upload/download URLs for page images
    - Create, update and delete receipts
    - Batch review status check
    - List an account's receipts
    - Bearer token fetched from the session provider on every call
    """

    DEFAULT_TIMEOUT = 30

    UPLOAD_URL_PATH = "/api/receipts/upload-url"
    DOWNLOAD_URL_PATH = "/api/receipts/download-url"
    RECEIPTS_PATH = "/api/receipts"
    STATUS_PATH = "/api/receipts/status"

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the API client.

        Args:
            base_url: Receipt service URL (e.g., "https://app.example.com")
            token_provider: Coroutine function returning the current access token
            timeout: Request timeout in seconds
            max_retries: Connection retry attempts
            transport: Custom transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport or httpx.AsyncHTTPTransport(retries=max_retries),
            headers={
                "Accept": "application/json",
                "User-Agent": f"receipt-sync/{__version__}",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ReceiptAPIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _authorization_header(self) -> dict[str, str]:
        token = await self._token_provider()
        if not token:
            raise ReceiptAPIError(APIErrorKind.UNAUTHORIZED)
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json_data: dict | None = None,
    ) -> httpx.Response:
        """Make an authorized API request with error handling."""
        headers = await self._authorization_header()

        logger.debug("API Request: %s %s", method, path)
        try:
            response = await self._client.request(
                method, path, params=params, json=json_data, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.warning("Timeout for %s %s: %s", method, path, e)
            raise ReceiptConnectionError(f"Request to receipt service timed out: {e}") from e
        except httpx.RequestError as e:
            logger.warning("Request error for %s %s: %s", method, path, e)
            raise ReceiptConnectionError(
                f"Failed to connect to receipt service at {self.base_url}: {e}"
            ) from e

        logger.debug("Response status: %d", response.status_code)

        if not response.is_success:
            error = ReceiptAPIError.from_status(response.status_code, response.text)
            logger.warning("API error %d (%s) for %s %s", response.status_code, error.kind.value, method, path)
            raise error

        return response

    async def get_upload_destination(
        self,
        account_id: str,
        file_name: str,
        content_type: str,
        file_size: int,
    ) -> UploadDestination:
        """Request a presigned upload URL for one page."""
        response = await self._request(
            "POST",
            self.UPLOAD_URL_PATH,
            json_data={
                "account_id": account_id,
                "file_name": file_name,
                "content_type": content_type,
                "file_size": file_size,
            },
        )
        return UploadDestination.from_api_response(response.json())

    async def get_download_location(self, file_path: str) -> DownloadLocation:
        """Request a presigned download URL for a stored page."""
        response = await self._request(
            "POST", self.DOWNLOAD_URL_PATH, json_data={"file_path": file_path}
        )
        return DownloadLocation.from_api_response(response.json())

    async def create_receipt(self, request: CreateReceiptRequest) -> CreateReceiptResponse:
        """Register an uploaded receipt for review."""
        response = await self._request("POST", self.RECEIPTS_PATH, json_data=request.to_dict())
        return CreateReceiptResponse.from_api_response(response.json())

    async def update_receipt(
        self,
        receipt_id: str,
        note: str | None,
        trip_reference_id: str | None,
    ) -> None:
        """
        Update the user-editable fields of a registered receipt.

        Raises:
            ReceiptAPIError: kind CONFLICT once the receipt is locked for review
        """
        await self._request(
            "PATCH",
            f"{self.RECEIPTS_PATH}/{receipt_id}",
            json_data={"note": note, "trip_reference_id": trip_reference_id},
        )

    async def delete_receipt(self, receipt_id: str) -> None:
        """Delete a registered receipt."""
        await self._request("DELETE", f"{self.RECEIPTS_PATH}/{receipt_id}")

    async def check_status(self, receipt_ids: list[str]) -> list[ReceiptStatusResult]:
        """Batch review status check. An empty list makes no request."""
        if not receipt_ids:
            return []
        response = await self._request(
            "GET", self.STATUS_PATH, params={"ids": ",".join(receipt_ids)}
        )
        return [
            ReceiptStatusResult.from_api_response(item)
            for item in response.json().get("receipts", [])
        ]

    async def list_receipts(self, account_id: str, limit: int = 200) -> list[RemoteReceipt]:
        """List the account's receipts, newest first."""
        response = await self._request(
            "GET",
            self.RECEIPTS_PATH,
            params={"account_id": account_id, "limit": limit},
        )
        return [
            RemoteReceipt.from_api_response(item)
            for item in response.json().get("receipts", [])
        ]
