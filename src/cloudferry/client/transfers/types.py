"""Transfer item types.

This module provides:
- UploadItem: one local file or stream to upload
- DownloadItem: one remote file (version) to download
- TransferItem: union of both

Items are immutable. A queue that applies its default target replaces the
item with an updated copy (dataclasses.replace) before starting it.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from cloudferry.core.types import TransferDirection

if TYPE_CHECKING:
    from cloudferry.client.api import RemoteFile, RemoteVersion


@dataclass(frozen=True)
class UploadItem:
    """A local file or stream to upload.

    Attributes:
        source: Local file path or readable binary stream.
        target: Remote folder, None to use the queue's default folder.
        existing: Remote file to upload a new version of, if any.
        is_public: Visibility of the uploaded file.
        encryption: Algorithm identifier, "" for no encryption.
        name: Remote file name (defaults to the source file name).
        create_version: Keep the previous content as a version (existing only).
        secret: Shared secret overriding the queue's one.
    """

    source: Path | BinaryIO
    target: str | None = None
    existing: RemoteFile | None = None
    is_public: bool = False
    encryption: str = ""
    name: str | None = None
    create_version: bool = True
    secret: bytes | None = None

    def __post_init__(self) -> None:
        if isinstance(self.source, str):
            object.__setattr__(self, "source", Path(self.source))
        if not isinstance(self.source, Path) and not hasattr(self.source, "read"):
            raise TypeError(f"Upload source must be a path or a stream, got {self.source!r}")
        if self.existing is None and self.name is None and not isinstance(self.source, Path):
            raise ValueError("A name is required to upload a stream as a new file")

    @property
    def direction(self) -> TransferDirection:
        return TransferDirection.UPLOAD

    @property
    def remote_name(self) -> str:
        """Name of the file on the server."""
        if self.name is not None:
            return self.name
        if self.existing is not None:
            return self.existing.name
        if isinstance(self.source, Path):
            return self.source.name
        raise ValueError("A name is required to upload a stream as a new file")

    def __str__(self) -> str:
        return f"upload {self.remote_name} -> {self.target or '?'}"


@dataclass(frozen=True)
class DownloadItem:
    """A remote file to download.

    Attributes:
        file: The remote file.
        version: Version to download, None for the latest.
        target: Local file path or writable binary stream, None to use the
            queue's default folder.
        encryption: Algorithm identifier the content was encrypted with.
        secret: Shared secret overriding the queue's one.
    """

    file: RemoteFile
    version: RemoteVersion | None = None
    target: Path | BinaryIO | None = None
    encryption: str = ""
    secret: bytes | None = None

    def __post_init__(self) -> None:
        if isinstance(self.target, str):
            object.__setattr__(self, "target", Path(self.target))

    @classmethod
    def for_file(
        cls,
        file: RemoteFile,
        version: RemoteVersion | None = None,
        target: Path | BinaryIO | None = None,
        secret: bytes | None = None,
    ) -> DownloadItem:
        """Create an item whose encryption follows the server metadata."""
        encryption = version.encryption if version is not None else file.encryption
        return cls(file=file, version=version, target=target, encryption=encryption, secret=secret)

    @property
    def direction(self) -> TransferDirection:
        return TransferDirection.DOWNLOAD

    def __str__(self) -> str:
        target = self.target if isinstance(self.target, Path) else "<stream>"
        return f"download {self.file.name} -> {target if self.target is not None else '?'}"


TransferItem = UploadItem | DownloadItem
