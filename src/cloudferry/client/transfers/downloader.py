"""Download queue.

This module provides:
- Downloader: TransferQueue of DownloadItem
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from cloudferry.client.transfers.download import DownloadWorker
from cloudferry.client.transfers.queue import TransferQueue
from cloudferry.client.transfers.types import DownloadItem

if TYPE_CHECKING:
    from cloudferry.client.api import RemoteFile, RemoteVersion
    from cloudferry.client.transfers.base import TransferWorker


class Downloader(TransferQueue):
    """Queue downloading remote files one at a time.

    Items without a target are written to `<default folder>/<file name>`,
    or to the file name in the working directory when no folder is set.
    """

    item_type = DownloadItem

    def add_file(
        self,
        file: RemoteFile,
        version: RemoteVersion | None = None,
        target: Path | str | BinaryIO | None = None,
    ) -> DownloadItem:
        """Queue a download decrypted as the server metadata says.

        Returns:
            The queued item.
        """
        item = DownloadItem.for_file(file, version, target)  # type: ignore[arg-type]
        self.add(item)
        return item

    def _apply_default_target(self, item: DownloadItem) -> DownloadItem:
        if item.target is not None:
            return item
        folder = Path(self._target_folder) if self._target_folder is not None else Path()
        return replace(item, target=folder / item.file.name)

    def _create_worker(self, item: DownloadItem) -> TransferWorker:
        return DownloadWorker(self._client, item, self._encryption.secret)
