"""Transfer events and the listener fan-out.

This module provides:
- TransferEvent: closed union of the transfer event dataclasses
  (Started, Progress, FileDone, Stopped, Failed, AllDone)
- Listener: protocol for objects receiving events
- EventBus: thread-safe, weakly-referencing publish/subscribe

Workers fire events on their own thread; queues listen to their worker and
re-fire queue-scoped events to the caller's listeners. Delivery is
synchronous, in registration order, and iterates a snapshot of the
registrations so listeners may (un)register during delivery.

Usage:
    class Printer:
        def handle_event(self, event: TransferEvent, sender: object) -> None:
            if isinstance(event, TransferProgress):
                print(event.transferred, event.total)

    printer = Printer()
    uploader.add_listener(printer)  # keep a reference: the bus holds a weak one
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar

if TYPE_CHECKING:
    from cloudferry.client.api import RemoteFile
    from cloudferry.client.transfers.types import TransferItem

logger = logging.getLogger(__name__)

E = TypeVar("E")


@dataclass(frozen=True)
class TransferStarted:
    """An item became the active transfer of a queue."""

    item: TransferItem


@dataclass(frozen=True)
class TransferProgress:
    """Bytes moved so far for an item.

    Attributes:
        item: The item being transferred.
        transferred: Bytes transferred so far (non-decreasing per item).
        total: Expected total bytes, None if the size is unknown.
    """

    item: TransferItem
    transferred: int
    total: int | None

    @property
    def percent(self) -> float | None:
        """Get progress percentage, None if the total is unknown."""
        if self.total is None:
            return None
        if self.total == 0:
            return 100.0
        return (self.transferred / self.total) * 100


@dataclass(frozen=True)
class TransferFileDone:
    """An item was transferred completely.

    Attributes:
        item: The transferred item.
        payload: Raw server response body (uploads only).
        metadata: Server file record decoded from the payload, if decodable.
    """

    item: TransferItem
    payload: bytes | None = None
    metadata: RemoteFile | None = None


@dataclass(frozen=True)
class TransferStopped:
    """An item's transfer was stopped on request."""

    item: TransferItem


@dataclass(frozen=True)
class TransferFailed:
    """An item's transfer failed; the cause is the terminal exception."""

    item: TransferItem
    cause: BaseException | None


@dataclass(frozen=True)
class TransferAllDone:
    """A queue drained all of its items."""


TransferEvent = (
    TransferStarted
    | TransferProgress
    | TransferFileDone
    | TransferStopped
    | TransferFailed
    | TransferAllDone
)

TERMINAL_EVENTS = (TransferFileDone, TransferStopped, TransferFailed)


class Listener(Protocol):
    """Receiver of events.

    handle_event() is called synchronously on the firing thread, which is
    usually a worker thread. It must not block for long.
    """

    def handle_event(self, event: Any, sender: object) -> None:
        ...


class EventBus(Generic[E]):
    """Multi-listener event delivery.

    Listeners are held through weak references: the bus never keeps a
    listener alive. A listener registered twice is notified once.
    """

    def __init__(self, sender: object | None = None) -> None:
        """Initialize the bus.

        Args:
            sender: Object passed as `sender` to every listener.
        """
        self._sender = sender
        self._listeners: list[weakref.ref[Listener]] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: Listener) -> None:
        """Register a listener (no-op if already registered)."""
        with self._lock:
            self._prune()
            if any(ref() is listener for ref in self._listeners):
                return
            self._listeners.append(weakref.ref(listener))

    def remove_listener(self, listener: Listener) -> bool:
        """Unregister a listener.

        Returns:
            True if the listener was registered.
        """
        with self._lock:
            for ref in self._listeners:
                if ref() is listener:
                    self._listeners.remove(ref)
                    return True
            return False

    @property
    def listeners(self) -> list[Listener]:
        """Live listeners in registration order."""
        with self._lock:
            alive = (ref() for ref in self._listeners)
            return [listener for listener in alive if listener is not None]

    def __len__(self) -> int:
        return len(self.listeners)

    def fire(self, event: E) -> None:
        """Deliver an event to every listener registered at call time.

        A listener raising an exception is logged and does not prevent
        delivery to the remaining listeners.
        """
        for listener in self.listeners:
            try:
                listener.handle_event(event, self._sender)
            except Exception:
                logger.exception(
                    f"Listener {listener!r} failed on {type(event).__name__}"
                )

    def _prune(self) -> None:
        self._listeners = [ref for ref in self._listeners if ref() is not None]
