"""
Object storage transport implementation.

Moves raw page bytes to and from pre-authorized (presigned) URLs. The URLs
carry their own authorization, so no API token is attached here.
"""

import logging
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class UploadError(Exception):
    """Base exception for object storage transfer errors."""

    pass


class InvalidUploadURLError(UploadError):
    """The destination URL cannot be used."""

    def __init__(self, url: str):
        self.url = url
        super().__init__("Invalid upload URL.")


class UploadFailedError(UploadError):
    """Object storage answered with a non-2xx status."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"Upload failed with status {status_code}.")


class UploadConnectionError(UploadError):
    """Failed to reach object storage."""

    pass


class ObjectStorageTransport:
    """
    Blocking HTTP transport for presigned object storage URLs.

    Features:
    - PUT page bytes with explicit Content-Type/Content-Length
    - GET page bytes for server-side pages
    - Automatic retry with backoff on transient statuses
    """

    DEFAULT_TIMEOUT = 60

    def __init__(
        self,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize the transport.

        Args:
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
        """
        self.timeout = timeout

        self.session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "PUT"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @staticmethod
    def _validate_url(url: str) -> None:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidUploadURLError(url)

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        self._validate_url(url)
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.ConnectionError as e:
            raise UploadConnectionError(f"Failed to connect to object storage: {e}") from e
        except requests.exceptions.Timeout as e:
            raise UploadConnectionError(f"Object storage request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise UploadError(f"Object storage request failed: {e}") from e

    def put(self, data: bytes, url: str, content_type: str) -> None:
        """
        Upload bytes to a presigned destination.

        Raises:
            InvalidUploadURLError: If the URL is not an http(s) URL
            UploadFailedError: If the response is not 2xx
            UploadConnectionError: If the storage endpoint is unreachable
        """
        response = self._send(
            "PUT",
            url,
            data=data,
            headers={"Content-Type": content_type, "Content-Length": str(len(data))},
        )
        if not 200 <= response.status_code < 300:
            logger.warning("Object storage PUT returned %d", response.status_code)
            raise UploadFailedError(response.status_code)
        logger.debug("Uploaded %d bytes (%s)", len(data), content_type)

    def get(self, url: str) -> bytes:
        """
        Download bytes from a presigned source.

        Raises:
            UploadFailedError: If the response is not 2xx
            UploadConnectionError: If the storage endpoint is unreachable
        """
        response = self._send("GET", url)
        if not 200 <= response.status_code < 300:
            raise UploadFailedError(response.status_code)
        return response.content
