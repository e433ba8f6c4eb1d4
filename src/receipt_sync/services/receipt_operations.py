"""User-initiated receipt operations.

Delete and metadata update go to the server first when the receipt is
registered there, and only touch local state once the server accepted the
change. Errors from the server are raised to the caller unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from receipt_sync.schemas.receipt import EnhancementMode, PageContentType, TripReference
from receipt_sync.services.results import PageNotAvailableError, ReceiptNotFoundError
from receipt_sync.state_store import PageRecord, ReceiptRecord

if TYPE_CHECKING:
    from receipt_sync.api_client import ReceiptAPIClient
    from receipt_sync.state_store import ReceiptStore
    from receipt_sync.storage import BlobStore
    from receipt_sync.upload_transport import ObjectStorageTransport

logger = logging.getLogger(__name__)


class ReceiptOperations:
    """Delete, edit, download and import receipts."""

    def __init__(
        self,
        store: ReceiptStore,
        blobs: BlobStore,
        api: ReceiptAPIClient,
        transport: ObjectStorageTransport,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.api = api
        self.transport = transport

    def _require(self, receipt_id: str) -> ReceiptRecord:
        receipt = self.store.get_receipt(receipt_id)
        if receipt is None:
            raise ReceiptNotFoundError(receipt_id)
        return receipt

    async def delete_receipt(self, receipt_id: str) -> None:
        """
        Delete a receipt everywhere.

        Raises:
            ReceiptNotFoundError: Unknown receipt
            ReceiptAPIClientError: Server-side delete failed; nothing local was touched
        """
        receipt = self._require(receipt_id)

        if receipt.is_registered_remotely:
            await self.api.delete_receipt(receipt.server_receipt_id)
            logger.info("Deleted remote receipt %s", receipt.server_receipt_id)

        for page in receipt.pages:
            self.blobs.delete_page(page.local_path)
        self.blobs.delete_receipt(receipt.id)
        self.store.delete_receipt(receipt.id)
        logger.info("Deleted receipt %s", receipt.id)

    async def update_receipt_metadata(
        self,
        receipt_id: str,
        note: str | None,
        trip_reference: TripReference | None,
    ) -> None:
        """
        Replace the note and trip link of a receipt.

        Raises:
            ReceiptNotFoundError: Unknown receipt
            ReceiptAPIError: kind CONFLICT when the server has locked the
                receipt for review; the local record keeps its old values
        """
        receipt = self._require(receipt_id)

        if receipt.is_registered_remotely:
            await self.api.update_receipt(
                receipt.server_receipt_id,
                note=note,
                trip_reference_id=trip_reference.id if trip_reference else None,
            )

        self.store.update_metadata(receipt.id, note=note, trip_reference=trip_reference)
        logger.debug("Updated metadata of receipt %s", receipt.id)

    async def download_page_image(self, page_id: str) -> Path:
        """
        Fetch a page image that only exists on the server.

        Returns:
            Absolute path of the downloaded file

        Raises:
            ReceiptNotFoundError: Unknown page
            PageNotAvailableError: Page never reached object storage
            ReceiptAPIClientError / UploadError: Fetch failed
        """
        page = self.store.get_page(page_id)
        if page is None:
            raise ReceiptNotFoundError(page_id)
        if not page.remote_path:
            raise PageNotAvailableError(page_id)

        location = await self.api.get_download_location(page.remote_path)
        data = await asyncio.to_thread(self.transport.get, location.download_url)

        self.blobs.write(page.local_path, data)
        self.store.mark_page_downloaded(page.id)
        logger.info("Downloaded page %s (%d bytes)", page.id, len(data))
        return self.blobs.resolve(page.local_path)

    def import_files(
        self,
        account_id: str,
        paths: list[Path],
        note: str | None = None,
        trip_reference: TripReference | None = None,
        enhancement_mode: EnhancementMode = EnhancementMode.ORIGINAL,
    ) -> ReceiptRecord:
        """
        Create a queued receipt with one page per file, in the given order.

        Raises:
            ValueError: No files given
            OSError: A file could not be read
        """
        if not paths:
            raise ValueError("At least one file is required")

        receipt = ReceiptRecord(
            account_id=account_id,
            note=note,
            trip_reference=trip_reference,
            enhancement_mode=enhancement_mode,
        )
        try:
            for index, path in enumerate(paths):
                content_type = PageContentType.for_filename(path.name)
                local_path = self.blobs.save_page(
                    receipt.id, index, path.read_bytes(), content_type
                )
                receipt.pages.append(
                    PageRecord(sort_order=index, local_path=local_path, content_type=content_type)
                )
            self.store.add_receipt(receipt)
        except Exception:
            self.blobs.delete_receipt(receipt.id)
            raise

        logger.info("Imported receipt %s with %d pages", receipt.id, len(receipt.pages))
        return receipt
