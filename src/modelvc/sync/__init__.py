"""Cloud synchronization of commit history."""

from .reconciler import (
    PullResult,
    PushResult,
    SyncReconciler,
    SyncStatus,
    bootstrap_from_remote,
    compute_sync_status,
    merge_tree_records,
)

__all__ = [
    "PullResult",
    "PushResult",
    "SyncReconciler",
    "SyncStatus",
    "bootstrap_from_remote",
    "compute_sync_status",
    "merge_tree_records",
]
