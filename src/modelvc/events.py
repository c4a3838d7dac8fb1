"""Session events and the channel that delivers them.

Every notification crossing a component boundary is one of a closed set of
frozen dataclasses (SessionEvent). Consumers dispatch with ``dispatch_event``,
which fails loudly on anything outside the set.

An EventChannel has exactly one consumer. Producers (the change monitor's
timer thread, the reconciler) call ``publish``; the consumer either drains the
queue or registers a single handler. ``close`` unsubscribes and drops pending
events so teardown never leaves a callback referencing a closed session.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Generic, List, Optional, Tuple, TypeVar, Union

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    """Classification of an external change to the tracked file."""

    MODIFIED = "modified"
    DELETED = "deleted"
    ACCESS_ERROR = "access_error"


class CommitAction(str, Enum):
    CREATED = "created"
    RESTORED = "restored"
    STARRED = "starred"
    UNSTARRED = "unstarred"
    CHECKED_OUT = "checked_out"


class BranchAction(str, Enum):
    CREATED = "created"
    SWITCHED = "switched"


@dataclass(frozen=True)
class ChangeEvent:
    """The tracked file was changed outside the tool."""

    kind: ChangeKind
    path: str
    mtime_ns: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CommitEvent:
    action: CommitAction
    commit_id: str
    branch_id: str


@dataclass(frozen=True)
class BranchEvent:
    action: BranchAction
    branch_id: str
    name: str


@dataclass(frozen=True)
class SyncStatusEvent:
    """Outcome of a reconciliation pass."""

    direction: str
    local_only: Tuple[str, ...] = ()
    remote_only: Tuple[str, ...] = ()
    synced: Tuple[str, ...] = ()
    failed: Tuple[str, ...] = field(default_factory=tuple)


SessionEvent = Union[ChangeEvent, CommitEvent, BranchEvent, SyncStatusEvent]

R = TypeVar("R")


def dispatch_event(
    event: SessionEvent,
    on_change: Callable[[ChangeEvent], R],
    on_commit: Callable[[CommitEvent], R],
    on_branch: Callable[[BranchEvent], R],
    on_sync: Callable[[SyncStatusEvent], R],
) -> R:
    """Route an event to the handler for its variant.

    Raises:
        TypeError: If the event is not one of the SessionEvent variants
    """
    if isinstance(event, ChangeEvent):
        return on_change(event)
    if isinstance(event, CommitEvent):
        return on_commit(event)
    if isinstance(event, BranchEvent):
        return on_branch(event)
    if isinstance(event, SyncStatusEvent):
        return on_sync(event)
    raise TypeError(f"Unknown session event: {type(event).__name__}")


T = TypeVar("T")


class ChannelClosedError(Exception):
    """Raised when publishing to or subscribing on a closed channel."""

    pass


class EventChannel(Generic[T]):
    """Single-consumer event channel backed by a thread-safe queue."""

    def __init__(self, name: str = "events"):
        self.name = name
        self._queue: "queue.Queue[T]" = queue.Queue()
        self._handler: Optional[Callable[[T], None]] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, handler: Callable[[T], None]) -> None:
        """Register the one consumer callback.

        Events already queued are delivered to the handler immediately.

        Raises:
            ChannelClosedError: If the channel was closed
            RuntimeError: If a consumer is already subscribed
        """
        with self._lock:
            if self._closed:
                raise ChannelClosedError(f"Channel {self.name} is closed")
            if self._handler is not None:
                raise RuntimeError(f"Channel {self.name} already has a consumer")
            self._handler = handler
        for event in self.drain():
            handler(event)

    def unsubscribe(self) -> None:
        with self._lock:
            self._handler = None

    def publish(self, event: T) -> None:
        """Deliver to the subscribed handler, or queue for a later drain."""
        with self._lock:
            if self._closed:
                logger.debug(f"Dropping event on closed channel {self.name}: {event}")
                return
            handler = self._handler
            if handler is None:
                self._queue.put(event)
                return
        try:
            handler(event)
        except Exception as e:
            logger.error(f"Event handler on channel {self.name} failed: {e}")

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Wait for the next queued event; None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[T]:
        events: List[T] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        """Unsubscribe the consumer and discard pending events (idempotent)."""
        with self._lock:
            self._closed = True
            self._handler = None
        self.drain()
