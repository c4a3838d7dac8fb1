"""Centralized exception logger for modelvc.

Uncaught exceptions on background threads (watchdog observer, debounce
timers) never reach the CLI, so they are captured here with full context:

- Timestamp and process ID-based log files
- Complete stack traces
- Thread information
"""

import json
import os
import threading
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_LOG_DIR = Path.home() / ".modelvc" / "logs"


class ExceptionLogger:
    """Centralized exception logging facility.

    Logs exceptions with full context to a timestamped log file.
    """

    _instance: Optional["ExceptionLogger"] = None
    log_file_path: Optional[Path] = None

    def __init__(self, log_file_path: Path):
        self.log_file_path = log_file_path

    @classmethod
    def initialize(cls, log_dir: Optional[Path] = None) -> "ExceptionLogger":
        """Initialize the global exception logger (idempotent singleton).

        WARNING: If already initialized, returns the existing instance. Tests
        reset ``cls._instance = None`` when they need a fresh one.

        Args:
            log_dir: Directory for log files (defaults to ~/.modelvc/logs)

        Returns:
            Initialized ExceptionLogger instance
        """
        if cls._instance is not None:
            return cls._instance

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        pid = os.getpid()

        log_dir = log_dir or DEFAULT_LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / f"error_{timestamp}_{pid}.log"

        instance = cls(log_file_path)
        cls._instance = instance
        log_file_path.touch()
        return instance

    @classmethod
    def get_instance(cls) -> Optional["ExceptionLogger"]:
        return cls._instance

    def log_exception(
        self,
        exception: BaseException,
        thread_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append one JSON entry describing the exception.

        Args:
            exception: The exception to log
            thread_name: Name of the thread where exception occurred
            context: Additional context data to include in log
        """
        if not self.log_file_path:
            return

        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "thread": thread_name or threading.current_thread().name,
            "exception_type": type(exception).__name__,
            "exception_message": str(exception),
            "stack_trace": "".join(
                traceback.format_exception(
                    type(exception), exception, exception.__traceback__
                )
            ),
            "context": context or {},
        }

        with open(self.log_file_path, "a") as f:
            f.write(json.dumps(log_entry, indent=2))
            f.write("\n---\n")

    def install_thread_exception_hook(self) -> None:
        """Capture uncaught exceptions in threads via threading.excepthook."""

        def global_thread_exception_handler(args):
            self.log_exception(
                exception=args.exc_value,
                thread_name=args.thread.name if args.thread else None,
                context={
                    "exc_type": args.exc_type.__name__,
                    "thread_identifier": args.thread.ident if args.thread else None,
                },
            )

        threading.excepthook = global_thread_exception_handler
