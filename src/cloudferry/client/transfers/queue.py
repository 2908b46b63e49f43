"""Transfer queue running one worker at a time.

This module provides:
- TransferQueue: Abstract FIFO of transfer items, base of Uploader and Downloader

The queue starts a worker for its head item, listens to it and re-fires its
events as queue events carrying the queue's item. On completion the head is
popped and the next item started; when the queue drains, TransferAllDone is
fired. A failed item is moved to `failed` and the queue goes idle, leaving
the remaining items pending until the caller starts it again.

Threading:
    Worker events arrive on worker threads while add/start/stop come from
    caller threads. All queue state is guarded by one RLock, and queue
    events are fired while holding it so their order is total. Listeners
    may call add/start/stop/skip from handle_event (the lock is reentrant)
    but must not call join() there.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from cloudferry.client.events import (
    TERMINAL_EVENTS,
    EventBus,
    Listener,
    TransferAllDone,
    TransferEvent,
    TransferFailed,
    TransferFileDone,
    TransferProgress,
    TransferStarted,
    TransferStopped,
)
from cloudferry.core.config import EncryptionConfig

if TYPE_CHECKING:
    from pathlib import Path

    from cloudferry.client.api import StorageClient
    from cloudferry.client.transfers.base import TransferWorker
    from cloudferry.client.transfers.types import TransferItem

logger = logging.getLogger(__name__)


class TransferQueue(ABC):
    """FIFO of transfer items processed by one worker at a time.

    State machine:
        Idle -> Active(item)               start() with a non-empty queue
        Active(item) -> Active(next)       FileDone, or Stopped after skip()
        Active(item) -> Idle               FileDone on the last item (+ AllDone),
                                           Failed, stop(), skip() on the last item

    Subclasses must implement:
    - item_type: The accepted item class
    - _apply_default_target(): Fill in a missing destination
    - _create_worker(): Build the worker for an item
    """

    item_type: type

    def __init__(
        self,
        client: StorageClient,
        encryption: EncryptionConfig | None = None,
        target_folder: str | Path | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            client: Storage client shared by the workers.
            encryption: Default algorithm and shared secret.
            target_folder: Default destination for items lacking one.
        """
        self._client = client
        self._encryption = encryption or EncryptionConfig()
        self._target_folder = target_folder

        self._items: list[TransferItem] = []
        self._failed: list[TransferItem] = []
        self._worker: TransferWorker | None = None
        # Worker told to stop by stop(), still finishing its current chunk
        self._retired: TransferWorker | None = None

        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._events: EventBus[TransferEvent] = EventBus(sender=self)

    # === Listeners ===

    def add_listener(self, listener: Listener) -> None:
        """Register a listener for queue events."""
        self._events.add_listener(listener)

    def remove_listener(self, listener: Listener) -> bool:
        """Unregister a listener."""
        return self._events.remove_listener(listener)

    # === State ===

    @property
    def items(self) -> list[TransferItem]:
        """Pending items in order, the active one first."""
        with self._lock:
            return list(self._items)

    @property
    def failed(self) -> list[TransferItem]:
        """Items whose transfer failed, in failure order."""
        with self._lock:
            return list(self._failed)

    @property
    def active_item(self) -> TransferItem | None:
        """The item being transferred, if any."""
        with self._lock:
            return self._items[0] if self._worker is not None else None

    @property
    def is_running(self) -> bool:
        """Check if a worker is active."""
        with self._lock:
            return self._worker is not None

    @property
    def target_folder(self) -> str | Path | None:
        """Default destination for items lacking one."""
        return self._target_folder

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    # === Operations ===

    def add(self, item: TransferItem) -> None:
        """Append an item to the queue.

        Raises:
            TypeError: If the item is not of the queue's item type.
        """
        if not isinstance(item, self.item_type):
            raise TypeError(
                f"{type(self).__name__} accepts {self.item_type.__name__}, "
                f"got {type(item).__name__}"
            )
        with self._lock:
            self._items.append(item)
            logger.debug(f"Queued {item} (queue size: {len(self._items)})")

    def start(self, default_target: str | Path | None = None) -> bool:
        """Start processing the queue.

        Does nothing if a worker is active or the queue is empty. If a worker
        stopped by stop() is still finishing, waits for it first.

        Args:
            default_target: New default destination for items lacking one.

        Returns:
            True if a transfer was started.
        """
        self._await_retired()
        with self._lock:
            if self._worker is not None or self._retired is not None or not self._items:
                return False
            if default_target is not None:
                self._target_folder = default_target
            self._start_head()
            return True

    def stop(self) -> bool:
        """Stop the active transfer, keeping every pending item.

        The interrupted item stays at the head of the queue and is
        transferred again by the next start().

        Returns:
            True if a transfer was active.
        """
        with self._lock:
            worker = self._worker
            if worker is None:
                return False
            self._worker = None
            self._retired = worker
            worker.request_stop()
            logger.info(f"Stopping queue at {worker.item}")
            return True

    def skip(self) -> bool:
        """Stop the active transfer and move on to the next item.

        Returns:
            True if a transfer was active.
        """
        with self._lock:
            if self._worker is None:
                return False
            logger.info(f"Skipping {self._worker.item}")
            self._worker.request_stop()
            return True

    def join(self, timeout: float | None = None) -> bool:
        """Wait until no transfer is running.

        Returns:
            True if the queue is idle, False on timeout.
        """
        with self._idle:
            return self._idle.wait_for(
                lambda: self._worker is None and self._retired is None, timeout
            )

    # === Worker events ===

    def handle_event(self, event: Any, sender: object) -> None:
        """Translate a worker event into queue events."""
        with self._lock:
            if sender is not None and sender is self._worker:
                self._on_active_event(event)
            elif sender is not None and sender is self._retired:
                self._on_retired_event(event)
            else:
                logger.debug(f"Ignoring {type(event).__name__} from an inactive worker")

    def _on_active_event(self, event: TransferEvent) -> None:
        head = self._items[0]

        if isinstance(event, TransferProgress):
            self._events.fire(replace(event, item=head))

        elif isinstance(event, TransferFileDone):
            self._worker = None
            self._items.pop(0)
            self._events.fire(self._completed(head, event))
            self._advance()

        elif isinstance(event, TransferStopped):
            # Still active when stopped: skip() was called
            self._worker = None
            self._items.pop(0)
            self._events.fire(TransferStopped(head))
            self._advance()

        elif isinstance(event, TransferFailed):
            self._worker = None
            self._items.pop(0)
            self._failed.append(head)
            logger.warning(
                f"{head} failed, {len(self._items)} item(s) left pending: {event.cause}"
            )
            self._events.fire(TransferFailed(head, event.cause))
            self._idle.notify_all()

    def _on_retired_event(self, event: TransferEvent) -> None:
        if not isinstance(event, TERMINAL_EVENTS):
            return
        self._retired = None
        head = self._items[0]

        if isinstance(event, TransferStopped):
            self._events.fire(TransferStopped(head))
        elif isinstance(event, TransferFileDone):
            # Finished before it saw the stop request
            self._items.pop(0)
            self._events.fire(self._completed(head, event))
            if not self._items:
                self._all_done()
        elif isinstance(event, TransferFailed):
            self._items.pop(0)
            self._failed.append(head)
            self._events.fire(TransferFailed(head, event.cause))
        self._idle.notify_all()

    def _advance(self) -> None:
        # A listener may already have restarted the queue
        if self._worker is not None or self._retired is not None:
            return
        if self._items:
            self._start_head()
            return
        self._all_done()
        self._idle.notify_all()

    def _all_done(self) -> None:
        logger.info(f"{type(self).__name__}: all transfers done")
        self._events.fire(TransferAllDone())

    def _start_head(self) -> None:
        """Start a worker for the head item. Lock must be held.

        The worker is registered before TransferStarted is fired, so a
        listener calling start() sees the queue busy and one calling stop()
        or skip() stops this worker. The thread starts after the event; a
        worker stopped meanwhile ends with TransferStopped without any I/O.
        """
        item = self._apply_default_target(self._items[0])
        self._items[0] = item

        try:
            worker = self._create_worker(item)
        except (ValueError, TypeError) as e:
            logger.error(f"Cannot start {item}: {e}")
            self._items.pop(0)
            self._failed.append(item)
            self._events.fire(TransferFailed(item, e))
            self._idle.notify_all()
            return

        worker.add_listener(self)
        self._worker = worker
        self._events.fire(TransferStarted(item))
        worker.start()

    def _await_retired(self) -> None:
        with self._lock:
            retired = self._retired
        if retired is not None and retired.thread is not threading.current_thread():
            retired.join()

    def _completed(self, item: TransferItem, event: TransferFileDone) -> TransferFileDone:
        """Build the queue's completion event for an item."""
        return replace(event, item=item)

    @abstractmethod
    def _apply_default_target(self, item: Any) -> TransferItem:
        """Return the item with the default destination applied if needed."""
        ...

    @abstractmethod
    def _create_worker(self, item: Any) -> TransferWorker:
        """Create the worker transferring an item."""
        ...
