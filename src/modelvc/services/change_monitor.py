"""
External change monitor for a tracked model file.

Watches the directory containing the file rather than the file itself (the
notification granularity of single-file watches differs between platforms and
many applications save by writing a temp file and renaming it over the
original). Raw events are filtered to the tracked base name and debounced so a
burst of writes from one save collapses into a single confirmed change.
"""

import logging
import os
import threading
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..events import ChangeEvent, ChangeKind, EventChannel

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.5


class MonitorState(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"


class ChangeMonitor(FileSystemEventHandler):
    """Debounced watcher publishing ChangeEvents for one tracked file."""

    def __init__(
        self,
        file_path: Union[str, Path],
        channel: Optional[EventChannel[ChangeEvent]] = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        """Initialize the change monitor.

        Args:
            file_path: Tracked file to monitor
            channel: Channel receiving confirmed change events
            debounce_seconds: Quiet period before a raw event is confirmed
        """
        super().__init__()
        self.file_path = Path(file_path).expanduser().absolute()
        self.watch_dir = self.file_path.parent
        self.file_name = self.file_path.name
        self.channel: EventChannel[ChangeEvent] = channel or EventChannel("changes")
        self.debounce_seconds = debounce_seconds

        self.state = MonitorState.IDLE
        self.last_mtime_ns = 0
        self.observer: Optional[Observer] = None

        # Exactly one debounce timer is live at a time
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()

        # Statistics
        self.raw_events_count = 0
        self.confirmed_changes_count = 0

    @property
    def watching(self) -> bool:
        return self.state == MonitorState.WATCHING

    def start(self) -> bool:
        """Start watching the tracked file.

        Returns:
            True if the monitor entered the watching state
        """
        if self.watching:
            self.stop()

        if not self.file_path.exists():
            logger.error(f"File does not exist: {self.file_path}")
            self._emit(ChangeKind.ACCESS_ERROR, error="File does not exist")
            return False

        try:
            self.last_mtime_ns = os.stat(self.file_path).st_mtime_ns
        except OSError:
            self.last_mtime_ns = 0

        try:
            self.observer = Observer()
            self.observer.schedule(self, str(self.watch_dir), recursive=False)
            self.observer.start()
        except Exception as e:
            logger.error(f"Failed to start watcher for {self.file_path}: {e}")
            self.observer = None
            self._emit(ChangeKind.ACCESS_ERROR, error=str(e))
            return False

        self.state = MonitorState.WATCHING
        logger.info(f"Watching {self.file_path} for external changes")
        return True

    def stop(self) -> None:
        """Stop watching and release the OS-level watch (idempotent)."""
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

        observer = self.observer
        self.observer = None
        if observer is not None:
            try:
                observer.stop()
                if observer.is_alive():
                    observer.join(timeout=5.0)
            except Exception as e:
                logger.warning(f"Error stopping file observer: {e}")
            logger.info(f"Stopped watching {self.file_path}")

        self.state = MonitorState.IDLE

    # ------------------------------------------------------------------
    # watchdog callbacks
    # ------------------------------------------------------------------

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or not self.watching:
            return
        if not self._concerns_tracked_file(event):
            return
        self.raw_events_count += 1
        self._schedule_check()

    def _concerns_tracked_file(self, event: FileSystemEvent) -> bool:
        paths = [event.src_path, getattr(event, "dest_path", "")]
        for raw in paths:
            if not raw:
                continue
            if isinstance(raw, bytes):
                raw = os.fsdecode(raw)
            if os.path.basename(raw) == self.file_name:
                return True
        return False

    # ------------------------------------------------------------------
    # Debounce
    # ------------------------------------------------------------------

    def _schedule_check(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.debounce_seconds, self._on_timer)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _on_timer(self) -> None:
        with self._timer_lock:
            if self._timer is None or self._timer is not threading.current_thread():
                # Superseded by a newer timer or the monitor was stopped
                return
            self._timer = None
        if not self.watching:
            return
        self.check_now()

    def check_now(self) -> Optional[ChangeKind]:
        """Re-stat the tracked file and publish the resulting change, if any.

        Returns:
            The kind of change published, or None if the file is unchanged
        """
        try:
            mtime_ns = os.stat(self.file_path).st_mtime_ns
        except FileNotFoundError:
            logger.info(f"Tracked file deleted: {self.file_path}")
            self._emit(ChangeKind.DELETED)
            return ChangeKind.DELETED
        except OSError as e:
            logger.warning(f"File access error: {self.file_path}: {e}")
            self._emit(ChangeKind.ACCESS_ERROR, error=str(e))
            return ChangeKind.ACCESS_ERROR

        if mtime_ns <= self.last_mtime_ns:
            return None

        self.last_mtime_ns = mtime_ns
        self.confirmed_changes_count += 1
        logger.info(f"Tracked file changed: {self.file_path}")
        self._emit(ChangeKind.MODIFIED, mtime_ns=mtime_ns)
        return ChangeKind.MODIFIED

    def acknowledge_current(self) -> None:
        """Treat the file's present mtime as seen (after writing it ourselves)."""
        try:
            self.last_mtime_ns = os.stat(self.file_path).st_mtime_ns
        except OSError as e:
            logger.debug(f"Could not stat {self.file_path} to acknowledge write: {e}")

    def _emit(
        self,
        kind: ChangeKind,
        mtime_ns: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        self.channel.publish(
            ChangeEvent(kind=kind, path=str(self.file_path), mtime_ns=mtime_ns, error=error)
        )
