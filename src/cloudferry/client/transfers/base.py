"""Base transfer worker with cooperative cancellation.

This module provides:
- WorkerState: Enum for worker lifecycle states
- CancelledException: Raised inside a transfer loop once a stop is observed
- TransferWorker: Abstract base class for one-item transfer threads
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum, auto
from typing import TYPE_CHECKING

from cloudferry.client.api import NetworkError, ProtocolError
from cloudferry.client.events import (
    EventBus,
    Listener,
    TransferEvent,
    TransferFailed,
    TransferFileDone,
    TransferProgress,
    TransferStopped,
)
from cloudferry.core.crypto import CryptoConfigError

if TYPE_CHECKING:
    from cloudferry.client.api import StorageClient
    from cloudferry.client.transfers.types import TransferItem

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    """State of a worker."""

    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    FAILED = auto()


class CancelledException(Exception):
    """Raised when a transfer loop observes a stop request."""


class TransferWorker(ABC):
    """Abstract base class for transfer workers.

    A worker owns one transfer of one item, runs it on its own thread and
    reports through events fired on that thread:
    - TransferProgress after every chunk
    - exactly one terminal event: TransferFileDone, TransferStopped or TransferFailed

    Stopping is cooperative: request_stop() sets a flag that the transfer
    loop checks once per chunk. Workers are single-use.

    Subclasses must implement:
    - _transfer(): The transfer loop, returning the raw server payload (if any)
    - worker_type: Property returning the worker type name

    Usage:
        worker = DownloadWorker(client, item, secret)
        worker.add_listener(listener)
        worker.start()
        ...
        worker.request_stop()
        worker.join()
    """

    def __init__(
        self,
        client: StorageClient,
        item: TransferItem,
        secret: bytes = b"",
    ) -> None:
        """Initialize the worker.

        Args:
            client: Storage client used for the HTTP requests.
            item: The item to transfer.
            secret: Shared secret, unless the item carries its own.
        """
        self._client = client
        self._item = item
        self._secret = item.secret if item.secret is not None else secret
        self._chunk_size = client.chunk_size
        self._events: EventBus[TransferEvent] = EventBus(sender=self)
        self._stop_requested = threading.Event()
        self._worker_state = WorkerState.IDLE
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    @abstractmethod
    def worker_type(self) -> str:
        """Return the worker type name (e.g., 'upload', 'download')."""
        ...

    @property
    def item(self) -> TransferItem:
        """Get the item this worker transfers."""
        return self._item

    @property
    def state(self) -> WorkerState:
        """Get current worker state."""
        return self._worker_state

    @property
    def is_running(self) -> bool:
        """Check if worker is currently running."""
        return self._worker_state == WorkerState.RUNNING

    @property
    def stop_requested(self) -> bool:
        """Check if a stop was requested."""
        return self._stop_requested.is_set()

    @property
    def thread(self) -> threading.Thread | None:
        """Get the thread running the transfer, if started."""
        return self._thread

    @property
    def is_alive(self) -> bool:
        """Check if the worker thread is still alive."""
        return self._thread is not None and self._thread.is_alive()

    def add_listener(self, listener: Listener) -> None:
        """Register a listener for this worker's events."""
        self._events.add_listener(listener)

    def remove_listener(self, listener: Listener) -> bool:
        """Unregister a listener."""
        return self._events.remove_listener(listener)

    def start(self) -> None:
        """Run the transfer on a new daemon thread.

        Raises:
            RuntimeError: If the worker was already started.
        """
        self._begin()
        self._thread = threading.Thread(
            target=self._execute,
            name=f"{self.worker_type}-transfer",
            daemon=True,
        )
        self._thread.start()

    def run(self) -> None:
        """Run the transfer on the calling thread.

        Raises:
            RuntimeError: If the worker was already started.
        """
        self._begin()
        self._execute()

    def request_stop(self) -> bool:
        """Request the transfer to stop at the next chunk boundary.

        A worker stopped before it starts ends without any I/O.

        Returns:
            True if the worker was running.
        """
        self._stop_requested.set()
        with self._lock:
            running = self._worker_state == WorkerState.RUNNING
        if running:
            logger.info(f"{self.worker_type} worker: stop requested")
        return running

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker thread to finish.

        Returns:
            True if the thread finished (or was never started).
        """
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _begin(self) -> None:
        with self._lock:
            if self._worker_state != WorkerState.IDLE:
                raise RuntimeError(f"{self.worker_type} worker already started")
            self._worker_state = WorkerState.RUNNING

    def _execute(self) -> None:
        """Run the transfer and fire its terminal event."""
        start_time = time.time()
        logger.info(f"Starting {self._item}")

        event: TransferEvent
        try:
            self._check_stop()
            payload = self._transfer()
        except CancelledException:
            self._worker_state = WorkerState.CANCELLED
            logger.info(f"Stopped {self._item} after {time.time() - start_time:.2f}s")
            event = TransferStopped(self._item)
        except (NetworkError, ProtocolError, CryptoConfigError) as e:
            self._worker_state = WorkerState.FAILED
            logger.error(f"{self.worker_type} worker failed: {e}")
            event = TransferFailed(self._item, e)
        except Exception as e:
            self._worker_state = WorkerState.FAILED
            logger.exception(f"Unexpected error in {self.worker_type} worker")
            event = TransferFailed(self._item, e)
        else:
            self._worker_state = WorkerState.COMPLETED
            logger.info(f"Finished {self._item} in {time.time() - start_time:.2f}s")
            event = TransferFileDone(self._item, payload=payload)

        self._events.fire(event)

    def _check_stop(self) -> None:
        """Raise CancelledException if a stop was requested."""
        if self._stop_requested.is_set():
            raise CancelledException(f"{self.worker_type} of {self._item} stopped")

    def _progress(self, transferred: int, total: int | None) -> None:
        self._events.fire(TransferProgress(self._item, transferred, total))

    @abstractmethod
    def _transfer(self) -> bytes | None:
        """Perform the actual transfer.

        Implementations call _check_stop() once per chunk and _progress()
        after each chunk.

        Returns:
            The raw server response payload (uploads) or None.

        Raises:
            CancelledException: If a stop was observed.
            NetworkError, ProtocolError, CryptoConfigError: On failure.
        """
        ...
