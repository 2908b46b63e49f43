"""Queued file transfers with on-the-fly encryption.

Architecture:
    Uploader / Downloader (TransferQueue) → UploadWorker / DownloadWorker → StorageClient

Components:
- **TransferQueue**: FIFO running one worker at a time, re-firing its events
- **Uploader / Downloader**: Queues of UploadItem / DownloadItem
- **TransferWorker**: One transfer on its own thread, stoppable per chunk
- **UploadItem / DownloadItem**: Immutable description of one transfer
"""

from cloudferry.client.transfers.base import (
    CancelledException,
    TransferWorker,
    WorkerState,
)
from cloudferry.client.transfers.download import DownloadWorker
from cloudferry.client.transfers.downloader import Downloader
from cloudferry.client.transfers.queue import TransferQueue
from cloudferry.client.transfers.types import DownloadItem, TransferItem, UploadItem
from cloudferry.client.transfers.upload import UploadWorker
from cloudferry.client.transfers.uploader import Uploader

__all__ = [
    # Items
    "DownloadItem",
    "TransferItem",
    "UploadItem",
    # Workers
    "CancelledException",
    "DownloadWorker",
    "TransferWorker",
    "UploadWorker",
    "WorkerState",
    # Queues
    "Downloader",
    "TransferQueue",
    "Uploader",
]
