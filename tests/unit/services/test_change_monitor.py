"""Unit tests for the debounced external change monitor."""

import os
from unittest.mock import Mock, patch

from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from modelvc.events import ChangeKind, EventChannel
from modelvc.services.change_monitor import ChangeMonitor, MonitorState


def _touch_newer(path, seconds=5):
    """Advance the file's mtime so the monitor sees a strictly newer value."""
    stat = os.stat(path)
    new_ns = stat.st_mtime_ns + seconds * 1_000_000_000
    os.utime(path, ns=(stat.st_atime_ns, new_ns))


class TestChangeMonitorLifecycle:
    def setup_method(self):
        self.channel = EventChannel("test")

    def test_start_schedules_parent_directory_non_recursive(self, model_file):
        with patch("modelvc.services.change_monitor.Observer") as observer_cls:
            monitor = ChangeMonitor(model_file, self.channel)
            assert monitor.start() is True

            observer = observer_cls.return_value
            observer.schedule.assert_called_once_with(
                monitor, str(model_file.parent), recursive=False
            )
            observer.start.assert_called_once()
            assert monitor.state == MonitorState.WATCHING
            assert monitor.last_mtime_ns == os.stat(model_file).st_mtime_ns
            monitor.stop()

    def test_missing_file_emits_access_error_and_stays_idle(self, tmp_path):
        with patch("modelvc.services.change_monitor.Observer") as observer_cls:
            monitor = ChangeMonitor(tmp_path / "absent.3dm", self.channel)
            assert monitor.start() is False

            observer_cls.assert_not_called()
        assert monitor.state == MonitorState.IDLE
        event = self.channel.get(timeout=0)
        assert event.kind == ChangeKind.ACCESS_ERROR

    def test_observer_failure_emits_access_error(self, model_file):
        with patch("modelvc.services.change_monitor.Observer") as observer_cls:
            observer_cls.return_value.schedule.side_effect = OSError("inotify limit")
            monitor = ChangeMonitor(model_file, self.channel)

            assert monitor.start() is False
        assert monitor.state == MonitorState.IDLE
        event = self.channel.get(timeout=0)
        assert event.kind == ChangeKind.ACCESS_ERROR
        assert "inotify limit" in event.error

    def test_stop_is_idempotent_and_releases_observer(self, model_file):
        with patch("modelvc.services.change_monitor.Observer") as observer_cls:
            observer = observer_cls.return_value
            observer.is_alive.return_value = True
            monitor = ChangeMonitor(model_file, self.channel)
            monitor.start()

            monitor.stop()
            monitor.stop()

            observer.stop.assert_called_once()
            observer.join.assert_called_once()
        assert monitor.observer is None
        assert monitor.state == MonitorState.IDLE

    def test_stop_before_start(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel)
        monitor.stop()
        assert monitor.state == MonitorState.IDLE


class TestChangeMonitorEvents:
    def setup_method(self):
        self.channel = EventChannel("test")
        self.observer_patcher = patch("modelvc.services.change_monitor.Observer")
        self.observer_patcher.start()

    def teardown_method(self):
        self.observer_patcher.stop()

    def test_burst_of_events_yields_one_modified(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel, debounce_seconds=0.05)
        monitor.start()
        try:
            _touch_newer(model_file)
            for _ in range(5):
                monitor.on_any_event(FileModifiedEvent(str(model_file)))

            event = self.channel.get(timeout=2.0)
            assert event is not None
            assert event.kind == ChangeKind.MODIFIED
            assert event.path == str(model_file)
            assert self.channel.get(timeout=0.3) is None

            assert monitor.raw_events_count == 5
            assert monitor.confirmed_changes_count == 1
        finally:
            monitor.stop()

    def test_events_for_other_files_are_ignored(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel)
        monitor.start()
        with patch.object(monitor, "_schedule_check") as schedule:
            monitor.on_any_event(FileModifiedEvent(str(model_file.parent / "other.3dm")))
            monitor.on_any_event(DirModifiedEvent(str(model_file.parent)))
            schedule.assert_not_called()
        monitor.stop()

    def test_rename_onto_tracked_file_counts(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel)
        monitor.start()
        with patch.object(monitor, "_schedule_check") as schedule:
            monitor.on_any_event(
                FileMovedEvent(str(model_file.parent / ".model.3dm.tmp"), str(model_file))
            )
            schedule.assert_called_once()
        monitor.stop()

    def test_events_ignored_when_not_watching(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel)
        with patch.object(monitor, "_schedule_check") as schedule:
            monitor.on_any_event(FileCreatedEvent(str(model_file)))
            schedule.assert_not_called()

    def test_single_timer_is_live(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel, debounce_seconds=10)
        monitor.start()
        monitor.on_any_event(FileModifiedEvent(str(model_file)))
        first = monitor._timer
        monitor.on_any_event(FileModifiedEvent(str(model_file)))

        assert monitor._timer is not first
        assert first.finished.is_set()
        monitor.stop()
        assert monitor._timer is None


class TestCheckNow:
    def setup_method(self):
        self.channel = EventChannel("test")

    def test_unchanged_file_emits_nothing(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel)
        monitor.last_mtime_ns = os.stat(model_file).st_mtime_ns

        assert monitor.check_now() is None
        assert self.channel.drain() == []

    def test_newer_mtime_emits_modified_once(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel)
        monitor.last_mtime_ns = os.stat(model_file).st_mtime_ns
        _touch_newer(model_file)

        assert monitor.check_now() == ChangeKind.MODIFIED
        assert monitor.check_now() is None
        assert [e.kind for e in self.channel.drain()] == [ChangeKind.MODIFIED]

    def test_deleted_file(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel)
        model_file.unlink()

        assert monitor.check_now() == ChangeKind.DELETED
        assert self.channel.get(timeout=0).kind == ChangeKind.DELETED

    def test_stat_failure_is_access_error(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel)
        with patch(
            "modelvc.services.change_monitor.os.stat",
            side_effect=PermissionError("denied"),
        ):
            assert monitor.check_now() == ChangeKind.ACCESS_ERROR
        event = self.channel.get(timeout=0)
        assert event.kind == ChangeKind.ACCESS_ERROR
        assert "denied" in event.error

    def test_acknowledge_current_suppresses_own_write(self, model_file):
        monitor = ChangeMonitor(model_file, self.channel)
        _touch_newer(model_file)
        monitor.acknowledge_current()
        assert monitor.check_now() is None

    def test_publishes_to_subscribed_handler(self, model_file):
        handler = Mock()
        self.channel.subscribe(handler)
        monitor = ChangeMonitor(model_file, self.channel)
        model_file.unlink()

        monitor.check_now()
        handler.assert_called_once()
        assert handler.call_args[0][0].kind == ChangeKind.DELETED
