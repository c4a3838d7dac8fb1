"""Filesystem-based snapshot storage components."""

from .snapshot_store import (
    SnapshotStore,
    commit_file_exists,
    list_commit_files,
    read_commit_file,
    save_commit_file,
)

__all__ = [
    "SnapshotStore",
    "commit_file_exists",
    "list_commit_files",
    "read_commit_file",
    "save_commit_file",
]
