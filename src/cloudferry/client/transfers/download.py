"""Download worker streaming a remote file into local storage.

This module provides:
- DownloadWorker: chunked download with on-the-fly decryption
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from cloudferry.client.api import NetworkError, ProtocolError
from cloudferry.client.transfers.base import TransferWorker
from cloudferry.core.crypto import check_algorithm, wrap_stream
from cloudferry.core.types import TransferDirection

if TYPE_CHECKING:
    import httpx

    from cloudferry.client.api import StorageClient
    from cloudferry.client.transfers.types import DownloadItem

logger = logging.getLogger(__name__)


def _content_length(response: httpx.Response) -> int | None:
    """Declared body length, None if absent or invalid."""
    try:
        return int(response.headers["Content-Length"])
    except (KeyError, ValueError):
        return None


def _open_sink(target: Path | BinaryIO) -> tuple[BinaryIO, bool]:
    """Open the local destination.

    Returns:
        The writable stream and whether the worker owns (must close) it.
    """
    if isinstance(target, Path):
        target.parent.mkdir(parents=True, exist_ok=True)
        return open(target, "wb"), True
    return target, False


class DownloadWorker(TransferWorker):
    """Worker downloading one remote file.

    The response body is read in chunk_size pieces and written to the item's
    target, through a decrypting cipher stream when the item names an
    algorithm. Progress totals come from the Content-Length header.

    Files opened by the worker are closed when it finishes; streams supplied
    by the caller are flushed and left open. Partial content is left in
    place when the download stops or fails.
    """

    def __init__(
        self,
        client: StorageClient,
        item: DownloadItem,
        secret: bytes = b"",
    ) -> None:
        """Initialize the download worker.

        Args:
            client: Storage client used for the HTTP request.
            item: The item to download; its target must be set.
            secret: Shared secret for decryption.

        Raises:
            ValueError: If the item has no target.
        """
        if item.target is None:
            raise ValueError(f"Download of {item.file.name} has no target")
        super().__init__(client, item, secret)

    @property
    def worker_type(self) -> str:
        """Return worker type name."""
        return "download"

    def _transfer(self) -> None:
        item: DownloadItem = self._item  # type: ignore[assignment]
        target = item.target
        if target is None:
            raise ValueError(f"Download of {item.file.name} has no target")

        # Cipher configuration errors surface before the connection is opened
        check_algorithm(item.encryption, self._secret)

        with self._client.open_download(item.file, item.version) as response:
            if not response.is_success:
                raise ProtocolError(
                    f"Download of {item.file.name} answered {response.status_code}",
                    response.status_code,
                )
            total = _content_length(response)

            try:
                sink, owned = _open_sink(target)
            except OSError as e:
                raise NetworkError(f"Cannot open {target}: {e}") from e

            try:
                stream = wrap_stream(
                    sink, TransferDirection.DOWNLOAD, item.encryption, self._secret
                )
                downloaded = 0
                for chunk in response.iter_bytes(self._chunk_size):
                    self._check_stop()
                    stream.write(chunk)
                    downloaded += len(chunk)
                    self._progress(downloaded, total)

                # Last cipher block goes out before the raw sink is flushed
                if stream is not sink:
                    stream.close()
                sink.flush()
            except OSError as e:
                raise NetworkError(f"Writing {item.file.name} failed: {e}") from e
            finally:
                if owned:
                    sink.close()

            logger.debug(f"Downloaded {downloaded} bytes of {item.file.name}")
        return None
