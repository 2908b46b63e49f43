"""HTTP client for the storage service API.

This module provides:
- StorageClient: HTTP client for communicating with the server
- RemoteFile / RemoteVersion: server metadata records
- Error types surfaced by transfers (NetworkError, ProtocolError, DecodeError)
- Streaming download/upload requests used by the transfer workers
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import httpx

from cloudferry.core.config import ServerConfig

if TYPE_CHECKING:
    from cloudferry.client.transfers.types import UploadItem

logger = logging.getLogger(__name__)

AUTH_HEADER = "X-Auth"
ENCRYPTION_HEADER = "X-Encryption"


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkError(APIError):
    """Connection, read/write I/O or URL failure."""


class ProtocolError(APIError):
    """Server answered with a non-success status."""


class AuthenticationError(ProtocolError):
    """Authentication failed."""


class NotFoundError(ProtocolError):
    """Resource not found."""


class DecodeError(APIError):
    """Server response payload could not be decoded."""


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class RemoteVersion:
    """One stored version of a remote file."""

    id: str
    file_id: str
    size: int
    encryption: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteVersion:
        """Create from API response dictionary."""
        return cls(
            id=str(data["id"]),
            file_id=str(data["file_id"]),
            size=int(data.get("size", 0)),
            encryption=data.get("encryption") or "",
            created_at=_parse_datetime(data.get("created_at")),
        )


@dataclass
class RemoteFile:
    """File metadata from server.

    Attributes:
        id: Server file identifier.
        name: File name.
        path: Remote folder the file lives in.
        size: Size of the current version in bytes (as stored).
        is_public: Whether the file is publicly visible.
        encryption: Algorithm identifier of the current version ("" if plain).
        version_id: Identifier of the current version.
        updated_at: Last modification time.
    """

    id: str
    name: str
    path: str = ""
    size: int = 0
    is_public: bool = False
    encryption: str = ""
    version_id: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteFile:
        """Create from API response dictionary."""
        version_id = data.get("version_id")
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            path=data.get("path", ""),
            size=int(data.get("size", 0)),
            is_public=bool(data.get("public", False)),
            encryption=data.get("encryption") or "",
            version_id=str(version_id) if version_id is not None else None,
            updated_at=_parse_datetime(data.get("updated_at")),
        )

    @classmethod
    def from_json(cls, payload: bytes | str) -> RemoteFile:
        """Decode a raw response body into a file record.

        Raises:
            DecodeError: If the payload is not a JSON file record.
        """
        try:
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise TypeError(f"expected an object, got {type(data).__name__}")
            return cls.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            raise DecodeError(f"Malformed file record: {e}") from e


class StorageClient:
    """HTTP client for the storage service API.

    Every request carries the X-Auth token header.

    Usage:
        with StorageClient(ServerConfig("https://files.example.com", token)) as client:
            remote = client.get_file("42")
    """

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the storage client.

        Args:
            config: Server configuration (URL, token, timeout, chunk size).
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={AUTH_HEADER: config.token},
        )

    @property
    def config(self) -> ServerConfig:
        """Get the server configuration."""
        return self._config

    @property
    def chunk_size(self) -> int:
        """Bytes per transfer chunk."""
        return self._config.chunk_size

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> StorageClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to NetworkError."""
        try:
            return self._client.request(method, path, **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError("Invalid or expired token", 401)
        if response.status_code == 404:
            raise NotFoundError("Resource not found", 404)
        if not response.is_success:
            raise ProtocolError(
                f"Unexpected status {response.status_code}", response.status_code
            )
        return response

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(f"Malformed JSON response: {e}") from e

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === File metadata ===

    def get_file(self, file_id: str) -> RemoteFile:
        """Get file metadata by id.

        Raises:
            NotFoundError: If file not found.
            DecodeError: If the record is malformed.
        """
        response = self._handle_response(self._request("GET", f"/api/files/{file_id}"))
        data = self._json(response)
        try:
            return RemoteFile.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Malformed file record: {e}") from e

    def list_versions(self, file_id: str) -> list[RemoteVersion]:
        """List stored versions of a file, oldest first.

        Raises:
            NotFoundError: If file not found.
            DecodeError: If a record is malformed.
        """
        response = self._handle_response(
            self._request("GET", f"/api/files/{file_id}/versions")
        )
        data = self._json(response)
        try:
            return [RemoteVersion.from_dict(v) for v in data]
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Malformed version record: {e}") from e

    # === Transfer endpoints ===

    def download_path(self, file: RemoteFile, version: RemoteVersion | None = None) -> str:
        """Endpoint for a file's content, the latest version when none is given."""
        if version is None:
            return f"/api/files/{file.id}/download"
        return f"/api/files/{file.id}/versions/{version.id}/download"

    def upload_request(self, item: UploadItem) -> tuple[str, dict[str, str]]:
        """Endpoint and query parameters for an upload item.

        Items with an existing remote counterpart are uploaded onto it,
        others create a new file in the item's target folder.
        """
        public = "1" if item.is_public else "0"
        if item.existing is not None:
            return (
                f"/api/files/{item.existing.id}/upload",
                {"public": public, "version": "1" if item.create_version else "0"},
            )
        return (
            "/api/files/upload",
            {"target": item.target or "", "name": item.remote_name, "public": public},
        )

    @contextmanager
    def open_download(
        self, file: RemoteFile, version: RemoteVersion | None = None
    ) -> Iterator[httpx.Response]:
        """Open a streaming download.

        The response status is not checked; the body is not read.

        Yields:
            The streaming response.

        Raises:
            NetworkError: On connection or read failures.
        """
        path = self.download_path(file, version)
        logger.debug(f"GET {path}")
        try:
            with self._client.stream("GET", path) as response:
                yield response
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"Download of {file.id} failed: {e}") from e

    def send_upload(
        self, item: UploadItem, body: Iterable[bytes], encryption: str = ""
    ) -> httpx.Response:
        """Upload an item's content.

        The body is sent with chunked transfer encoding as it is produced.

        Args:
            item: The upload item (decides the endpoint).
            body: Iterable of content chunks.
            encryption: Algorithm identifier announced to the server.

        Returns:
            The response, body read.

        Raises:
            NetworkError: On connection or write failures.
        """
        path, params = self.upload_request(item)
        headers = {"Content-Type": "application/octet-stream"}
        if encryption:
            headers[ENCRYPTION_HEADER] = encryption
        logger.debug(f"PUT {path} {params}")
        try:
            return self._client.put(path, params=params, content=body, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"Upload of {item.remote_name} failed: {e}") from e
