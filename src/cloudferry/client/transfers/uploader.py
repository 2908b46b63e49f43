"""Upload queue.

This module provides:
- Uploader: TransferQueue of UploadItem, decoding each upload response
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from cloudferry.client.api import DecodeError, RemoteFile
from cloudferry.client.events import TransferFileDone
from cloudferry.client.transfers.queue import TransferQueue
from cloudferry.client.transfers.types import UploadItem
from cloudferry.client.transfers.upload import UploadWorker

if TYPE_CHECKING:
    from cloudferry.client.transfers.base import TransferWorker

logger = logging.getLogger(__name__)


class Uploader(TransferQueue):
    """Queue uploading local files and streams one at a time.

    Items without an explicit target (and not replacing an existing file)
    are uploaded into the queue's default folder. Completion events carry
    the server's file record as metadata.

    Usage:
        uploader = Uploader(client, EncryptionConfig("AES-256", secret))
        uploader.add_listener(listener)
        uploader.add_file(Path("report.pdf"))
        uploader.start("/documents")
    """

    item_type = UploadItem

    def add_file(
        self,
        source: Path | str | BinaryIO,
        target: str | None = None,
        existing: RemoteFile | None = None,
        is_public: bool = False,
        name: str | None = None,
        create_version: bool = True,
    ) -> UploadItem:
        """Queue an upload encrypted with the queue's default algorithm.

        Returns:
            The queued item.
        """
        item = UploadItem(
            source=source,  # type: ignore[arg-type]
            target=target,
            existing=existing,
            is_public=is_public,
            encryption=self._encryption.algorithm,
            name=name,
            create_version=create_version,
        )
        self.add(item)
        return item

    def _apply_default_target(self, item: UploadItem) -> UploadItem:
        if item.existing is None and item.target is None and self._target_folder is not None:
            return replace(item, target=str(self._target_folder))
        return item

    def _create_worker(self, item: UploadItem) -> TransferWorker:
        return UploadWorker(self._client, item, self._encryption.secret)

    def _completed(self, item: UploadItem, event: TransferFileDone) -> TransferFileDone:
        metadata = None
        if event.payload is not None:
            try:
                metadata = RemoteFile.from_json(event.payload)
            except DecodeError as e:
                logger.warning(f"Uploaded {item.remote_name} but its record is unreadable: {e}")
        return TransferFileDone(item, payload=event.payload, metadata=metadata)
