"""
Request/response payloads of the remote receipt API.

Wire format is snake_case JSON. Optional request fields are sent as null
rather than omitted so that an update can clear a note or trip link.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class UploadDestination:
    """Pre-authorized object storage target for one page."""

    upload_url: str
    file_path: str

    @classmethod
    def from_api_response(cls, data: dict) -> "UploadDestination":
        return cls(upload_url=data["upload_url"], file_path=data["file_path"])


@dataclass
class DownloadLocation:
    """Pre-authorized object storage source for one page."""

    download_url: str

    @classmethod
    def from_api_response(cls, data: dict) -> "DownloadLocation":
        return cls(download_url=data["download_url"])


@dataclass
class PageUpload:
    """Per-page descriptor sent with create-receipt."""

    file_path: str
    file_name: str
    file_size: int
    sort_order: int
    content_type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "sort_order": self.sort_order,
            "content_type": self.content_type,
        }


@dataclass
class CreateReceiptRequest:
    """Body of POST /api/receipts."""

    account_id: str
    pages: list[PageUpload]
    note: str | None = None
    trip_reference_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "note": self.note,
            "trip_reference_id": self.trip_reference_id,
            "images": [page.to_dict() for page in self.pages],
        }


@dataclass
class CreateReceiptResponse:
    """Server acknowledgement of a registered receipt."""

    id: str
    status: str
    created_at: str

    @classmethod
    def from_api_response(cls, data: dict) -> "CreateReceiptResponse":
        return cls(
            id=data["id"],
            status=data.get("status", "pending"),
            created_at=data.get("created_at", ""),
        )


@dataclass
class ReceiptStatusResult:
    """One entry of a batch status check."""

    id: str
    status: str
    expense_id: str | None = None
    rejection_reason: str | None = None

    @classmethod
    def from_api_response(cls, data: dict) -> "ReceiptStatusResult":
        return cls(
            id=data["id"],
            status=data["status"],
            expense_id=data.get("expense_id"),
            rejection_reason=data.get("rejection_reason"),
        )


@dataclass
class RemoteReceiptImage:
    """Page of a receipt as stored on the server."""

    id: str
    file_path: str
    file_name: str
    sort_order: int
    file_size: int | None = None
    content_type: str | None = None

    @classmethod
    def from_api_response(cls, data: dict) -> "RemoteReceiptImage":
        return cls(
            id=data["id"],
            file_path=data["file_path"],
            file_name=data.get("file_name", ""),
            sort_order=data.get("sort_order", 0),
            file_size=data.get("file_size"),
            content_type=data.get("content_type"),
        )


@dataclass
class RemoteReceipt:
    """Receipt as listed by the server (possibly captured on another device)."""

    id: str
    account_id: str
    status: str
    created_at: str
    note: str | None = None
    trip_reference_id: str | None = None
    trip_reference_external_id: str | None = None
    trip_reference_name: str | None = None
    rejection_reason: str | None = None
    images: list[RemoteReceiptImage] = field(default_factory=list)

    @classmethod
    def from_api_response(cls, data: dict) -> "RemoteReceipt":
        trip = data.get("trip_reference") or {}
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            status=data["status"],
            created_at=data.get("created_at", ""),
            note=data.get("note"),
            trip_reference_id=data.get("trip_reference_id"),
            trip_reference_external_id=trip.get("external_id"),
            trip_reference_name=trip.get("name"),
            rejection_reason=data.get("rejection_reason"),
            images=[RemoteReceiptImage.from_api_response(img) for img in data.get("images", [])],
        )
