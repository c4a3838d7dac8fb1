"""Utility modules for modelvc."""

from .exception_logger import ExceptionLogger

__all__ = ["ExceptionLogger"]
