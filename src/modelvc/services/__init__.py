"""Background services for tracked files."""

from .change_monitor import DEFAULT_DEBOUNCE_SECONDS, ChangeMonitor, MonitorState

__all__ = ["ChangeMonitor", "DEFAULT_DEBOUNCE_SECONDS", "MonitorState"]
