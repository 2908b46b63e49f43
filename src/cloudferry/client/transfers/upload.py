"""Upload worker streaming local content to the server.

This module provides:
- UploadWorker: chunked upload with on-the-fly encryption
"""

from __future__ import annotations

import io
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from cloudferry.client.api import NetworkError, ProtocolError
from cloudferry.client.transfers.base import TransferWorker
from cloudferry.core.crypto import CipherReader, check_algorithm, wrap_stream
from cloudferry.core.types import TransferDirection

if TYPE_CHECKING:
    from cloudferry.client.api import StorageClient
    from cloudferry.client.transfers.types import UploadItem

logger = logging.getLogger(__name__)


def _remaining_size(stream: BinaryIO) -> int | None:
    """Bytes left in a seekable stream, None if it cannot tell."""
    try:
        position = stream.tell()
        end = stream.seek(0, io.SEEK_END)
        stream.seek(position)
    except (AttributeError, OSError, ValueError):
        return None
    return end - position


def _open_source(source: Path | BinaryIO) -> tuple[BinaryIO, bool, int | None]:
    """Open the local source.

    Returns:
        The readable stream, whether the worker owns (must close) it, and
        the number of bytes to send if known.
    """
    if isinstance(source, Path):
        size = source.stat().st_size
        return open(source, "rb"), True, size
    return source, False, _remaining_size(source)


class UploadWorker(TransferWorker):
    """Worker uploading one local file or stream.

    The source is read in chunk_size pieces, through an encrypting cipher
    stream when the item names an algorithm, and sent as a chunked request
    body. Progress counts plaintext bytes read from the source.

    The completion event carries the raw response body; decoding it is
    left to the caller (see Uploader).
    """

    def __init__(
        self,
        client: StorageClient,
        item: UploadItem,
        secret: bytes = b"",
    ) -> None:
        """Initialize the upload worker.

        Args:
            client: Storage client used for the HTTP request.
            item: The item to upload.
            secret: Shared secret for encryption.
        """
        super().__init__(client, item, secret)

    @property
    def worker_type(self) -> str:
        """Return worker type name."""
        return "upload"

    def _transfer(self) -> bytes:
        item: UploadItem = self._item  # type: ignore[assignment]

        encryption = check_algorithm(item.encryption, self._secret)

        try:
            source, owned, total = _open_source(item.source)
        except OSError as e:
            raise NetworkError(f"Cannot open {item.source}: {e}") from e

        try:
            stream = wrap_stream(source, TransferDirection.UPLOAD, item.encryption, self._secret)
            response = self._client.send_upload(
                item, self._body(stream, total), encryption=encryption
            )
        except OSError as e:
            raise NetworkError(f"Reading {item.source} failed: {e}") from e
        finally:
            if owned:
                source.close()

        if not response.is_success:
            raise ProtocolError(
                f"Upload of {item.remote_name} answered {response.status_code}",
                response.status_code,
            )
        return response.content

    def _body(self, stream: BinaryIO | CipherReader, total: int | None) -> Iterator[bytes]:
        """Yield request body chunks, reporting progress once each is sent."""
        sent = 0
        while True:
            self._check_stop()
            chunk = stream.read(self._chunk_size)
            if not chunk:
                return
            yield chunk

            if isinstance(stream, CipherReader):
                consumed = stream.bytes_read
            else:
                consumed = sent + len(chunk)
            # The final cipher block consumes no source bytes
            if consumed > sent:
                sent = consumed
                self._progress(sent, total)
