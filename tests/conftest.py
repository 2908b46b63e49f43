"""Shared fixtures for cloudferry tests."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from cloudferry.client.api import RemoteFile, StorageClient
from cloudferry.core.config import ServerConfig

SERVER_URL = "http://test"
CHUNK_SIZE = 1024


class RecordingListener:
    """Listener recording every event it receives.

    The event buses hold listeners weakly: tests must keep a reference.
    """

    def __init__(self, on_event: Callable[[Any, object], None] | None = None) -> None:
        self.received: list[tuple[Any, object]] = []
        self._on_event = on_event
        self._condition = threading.Condition()

    def handle_event(self, event: Any, sender: object) -> None:
        with self._condition:
            self.received.append((event, sender))
            self._condition.notify_all()
        if self._on_event is not None:
            self._on_event(event, sender)

    @property
    def events(self) -> list[Any]:
        with self._condition:
            return [event for event, _ in self.received]

    @property
    def types(self) -> list[type]:
        return [type(event) for event in self.events]

    def of_type(self, event_type: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]

    def wait_for(self, event_type: type, count: int = 1, timeout: float = 10.0) -> bool:
        """Wait until `count` events of a type were received."""
        with self._condition:
            return self._condition.wait_for(
                lambda: sum(isinstance(e, event_type) for e, _ in self.received) >= count,
                timeout,
            )


@pytest.fixture
def server_config() -> ServerConfig:
    """Server configuration pointing at the mocked server."""
    return ServerConfig(server_url=SERVER_URL, token="token123", chunk_size=CHUNK_SIZE)


@pytest.fixture
def client(server_config: ServerConfig) -> Iterator[StorageClient]:
    """Storage client for the mocked server."""
    with StorageClient(server_config) as storage_client:
        yield storage_client


@pytest.fixture
def secret() -> bytes:
    """A 32-byte shared secret."""
    return bytes(range(32))


@pytest.fixture
def listener() -> RecordingListener:
    """Listener recording every event."""
    return RecordingListener()


@pytest.fixture
def listener_factory() -> type[RecordingListener]:
    """Build listeners reacting to events, e.g. RecordingListener(on_event=...)."""
    return RecordingListener


@pytest.fixture
def remote_file() -> RemoteFile:
    """A plain remote file."""
    return RemoteFile(id="f1", name="data.bin", path="/docs", size=0)
