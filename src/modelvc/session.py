"""Project session: one open tracked file and everything that belongs to it.

A ProjectSession owns the commit tree, the snapshot store, the optional change
monitor and the event channel for a single tracked file. All foreground
mutations go through it so that every change is persisted immediately and
announced as a SessionEvent. Closing the session releases the OS-level watch
and the channels; nothing is kept in module-level state.
"""

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set, Union

from .api_clients.sync_client import CloudSyncClient
from .config import Config
from .events import (
    BranchAction,
    BranchEvent,
    ChangeEvent,
    ChangeKind,
    CommitAction,
    CommitEvent,
    EventChannel,
    SessionEvent,
)
from .exceptions import (
    IntegrityError,
    NotFoundError,
    RemoteNotConfiguredError,
    ValidationError,
)
from .services.change_monitor import ChangeMonitor
from .storage.snapshot_store import SnapshotStore
from .sync.reconciler import (
    PullResult,
    PushResult,
    SyncReconciler,
    SyncStatus,
    bootstrap_from_remote,
)
from .tree.commit_tree import CommitTree
from .tree.models import Branch, Commit

logger = logging.getLogger(__name__)


class SyncDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"


class ProjectSession:
    """Version-control session for one tracked model file."""

    def __init__(
        self,
        tree: CommitTree,
        store: SnapshotStore,
        config: Optional[Config] = None,
        remote: Optional[CloudSyncClient] = None,
        missing_blobs: Optional[Set[str]] = None,
    ):
        """Initialize the session around an already loaded tree.

        Use open_tracked_file() rather than constructing a session directly.

        Args:
            tree: Commit tree bound to the store
            store: Snapshot store of the tracked file
            config: Active configuration
            remote: Sync client for the linked cloud project, if any
            missing_blobs: Commit ids whose blob was absent when the tree loaded
        """
        self.tree = tree
        self.store = store
        self.config = config or Config()
        self.remote = remote
        self.missing_blobs: Set[str] = set(missing_blobs or ())

        self.events: EventChannel[SessionEvent] = EventChannel("session")
        self.monitor: Optional[ChangeMonitor] = None
        self._changes: Optional[EventChannel[ChangeEvent]] = None
        self._pending_external_change = threading.Event()
        self._closed = False

    @property
    def tracked_file(self) -> Path:
        return self.store.tracked_file

    @property
    def has_pending_external_changes(self) -> bool:
        """True once the file changed on disk since the last commit or checkout."""
        return self._pending_external_change.is_set()

    # ------------------------------------------------------------------
    # Change monitor
    # ------------------------------------------------------------------

    def start_watching(self) -> bool:
        """Start the external change monitor for the tracked file."""
        self._ensure_open()
        if self.monitor is not None and self.monitor.watching:
            return True

        self._changes = EventChannel("changes")
        self._changes.subscribe(self._handle_change)
        self.monitor = ChangeMonitor(
            self.tracked_file,
            channel=self._changes,
            debounce_seconds=self.config.watch.debounce_seconds,
        )
        return self.monitor.start()

    def stop_watching(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()
            self.monitor = None
        if self._changes is not None:
            self._changes.close()
            self._changes = None

    def _handle_change(self, event: ChangeEvent) -> None:
        # Runs on the monitor's timer thread; never touches the tree
        if event.kind == ChangeKind.MODIFIED:
            self._pending_external_change.set()
            logger.info(f"External change detected: {event.path}")
        elif event.kind == ChangeKind.DELETED:
            logger.warning(f"Tracked file was deleted: {event.path}")
        else:
            logger.warning(f"Cannot access tracked file {event.path}: {event.error}")
        self.events.publish(event)

    def drain_events(self) -> List[SessionEvent]:
        """Return every event published since the last drain."""
        return self.events.drain()

    def _acknowledge_working_file(self) -> None:
        if self.monitor is not None:
            self.monitor.acknowledge_current()
        self._pending_external_change.clear()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _save(self) -> None:
        self.tree.reconcile_for_save()
        self.store.save_tree(self.tree.to_json())

    def _ensure_open(self) -> None:
        if self._closed:
            raise ValidationError(f"Session for {self.tracked_file} is closed")

    def commit(self, message: str, blob: Optional[bytes] = None) -> Commit:
        """Record a new version on the active branch.

        Args:
            message: Commit message
            blob: Serialized model bytes; defaults to the tracked file's contents

        Returns:
            The new commit
        """
        self._ensure_open()
        if blob is None:
            blob = self.store.read_tracked_file()

        commit = self.tree.create_commit(message, self.tree.active_branch().id, blob)
        self._save()
        self._acknowledge_working_file()

        logger.info(f"Committed {commit.id}: {commit.message}")
        self.events.publish(
            CommitEvent(CommitAction.CREATED, commit.id, commit.branch_id)
        )
        return commit

    def list_commits(self, branch_id: Optional[str] = None) -> List[Commit]:
        return self.tree.list_commits(branch_id)

    def starred_commits(self) -> List[Commit]:
        return self.tree.starred_commits()

    def resolve_branch(self, branch_id_or_name: str) -> Branch:
        try:
            return self.tree.get_branch(branch_id_or_name)
        except NotFoundError:
            branch = self.tree.branch_by_name(branch_id_or_name)
            if branch is None:
                raise NotFoundError(f"Branch not found: {branch_id_or_name}")
            return branch

    def create_branch(
        self,
        name: str,
        from_commit_id: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Branch:
        """Fork a branch, by default at the checked-out commit."""
        self._ensure_open()
        if from_commit_id is None:
            from_commit_id = self.tree.current_commit_id
            if from_commit_id is None:
                raise ValidationError("Nothing is checked out to branch from")

        branch = self.tree.create_branch(name, from_commit_id, color)
        self._save()
        self.events.publish(BranchEvent(BranchAction.CREATED, branch.id, branch.name))
        return branch

    def switch_branch(self, branch_id_or_name: str) -> Branch:
        self._ensure_open()
        branch = self.tree.switch_branch(self.resolve_branch(branch_id_or_name).id)
        self._save()
        self.events.publish(BranchEvent(BranchAction.SWITCHED, branch.id, branch.name))
        return branch

    def star(self, commit_id: str, starred: bool = True) -> Commit:
        self._ensure_open()
        commit = self.tree.star_commit(commit_id, starred)
        self._save()
        action = CommitAction.STARRED if starred else CommitAction.UNSTARRED
        self.events.publish(CommitEvent(action, commit.id, commit.branch_id))
        return commit

    def restore(self, commit_id: str) -> bytes:
        """Check out a commit for viewing without moving any branch head.

        Returns:
            The commit's snapshot bytes

        Raises:
            NotFoundError: If the commit is unknown
            IntegrityError: If the commit's blob is missing locally (use
                restore_with_fetch when a remote is configured)
        """
        self._ensure_open()
        commit = self.tree.get_commit(commit_id)
        if not self.store.commit_blob_exists(commit_id):
            self.missing_blobs.add(commit_id)
            hint = "fetch it from the remote" if self.remote else "no remote is configured"
            raise IntegrityError(
                f"Snapshot for commit {commit_id} is missing locally ({hint})",
                missing_ids={commit_id},
            )

        data = self.tree.restore_to_commit(commit_id)
        self._save()
        self.events.publish(
            CommitEvent(CommitAction.RESTORED, commit.id, commit.branch_id)
        )
        return data

    async def restore_with_fetch(self, commit_id: str) -> bytes:
        """Restore a commit, downloading its blob first when it is only remote."""
        self._ensure_open()
        self.tree.get_commit(commit_id)
        if not self.store.commit_blob_exists(commit_id) and self.remote is not None:
            await self._reconciler().fetch_commit_blob(commit_id)
            self.missing_blobs.discard(commit_id)
        return self.restore(commit_id)

    def pull_commit_to_working_file(self, commit_id: str) -> bytes:
        """Restore a commit and overwrite the tracked file with its snapshot."""
        data = self.restore(commit_id)
        self.store.write_tracked_file(data)
        self._acknowledge_working_file()

        commit = self.tree.get_commit(commit_id)
        self.events.publish(
            CommitEvent(CommitAction.CHECKED_OUT, commit.id, commit.branch_id)
        )
        return data

    def verify(self) -> Set[str]:
        """Check tree invariants and return the commit ids with no local blob.

        Raises:
            IntegrityError: If the tree structure itself is inconsistent
        """
        self.tree.validate()
        self.missing_blobs = self.store.validate_commit_blobs(self.tree.commit_ids())
        return set(self.missing_blobs)

    # ------------------------------------------------------------------
    # Cloud sync
    # ------------------------------------------------------------------

    def _reconciler(self) -> SyncReconciler:
        if self.remote is None:
            raise RemoteNotConfiguredError(
                f"No cloud project is linked to {self.tracked_file}"
            )
        return SyncReconciler(self.tree, self.store, self.remote, channel=self.events)

    async def sync(self, direction: SyncDirection) -> Union[PushResult, PullResult]:
        """Push local commits or pull remote history.

        Raises:
            RemoteNotConfiguredError: If the session has no remote
            TransportError: If the remote tree cannot be read or written
        """
        self._ensure_open()
        reconciler = self._reconciler()
        if direction == SyncDirection.PUSH:
            return await reconciler.push()
        if direction == SyncDirection.PULL:
            return await reconciler.pull()
        raise ValueError(f"Unknown sync direction: {direction}")

    async def sync_status(self) -> SyncStatus:
        self._ensure_open()
        return await self._reconciler().status()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release the watch and the channels (idempotent)."""
        if self._closed:
            return
        self.stop_watching()
        self.events.close()
        self._closed = True
        logger.debug(f"Closed session for {self.tracked_file}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def open_tracked_file(
    path: Union[str, Path],
    config: Optional[Config] = None,
    remote: Optional[CloudSyncClient] = None,
    watch: Optional[bool] = None,
) -> ProjectSession:
    """Open a model file under version control.

    The first open creates the storage root and an initial commit holding the
    file's current bytes. Later opens load tree.json; its structure is trusted
    even when some blobs are missing (they are listed in ``missing_blobs``).

    Args:
        path: Tracked model file
        config: Configuration (defaults apply when omitted)
        remote: Sync client for the linked cloud project
        watch: Start the change monitor (defaults to config.watch.enabled)

    Raises:
        NotFoundError: If the path does not exist or is not a file
        IntegrityError: If tree.json exists but cannot be parsed
    """
    config = config or Config()
    tracked = Path(path).expanduser().absolute()
    if not tracked.is_file():
        raise NotFoundError(f"Model file not found: {tracked}")

    store = SnapshotStore(tracked, config.storage)
    serialized = store.load_tree()

    if serialized is None:
        tree = CommitTree.create(store, main_color=config.main_branch_color)
        tree.create_commit(
            config.initial_commit_message,
            tree.main_branch().id,
            store.read_tracked_file(),
        )
        tree.reconcile_for_save()
        store.save_tree(tree.to_json())
        missing: Set[str] = set()
        logger.info(f"Started tracking {tracked}")
    else:
        tree = CommitTree.from_json(serialized, store=store)
        missing = store.validate_commit_blobs(tree.commit_ids())

    session = ProjectSession(tree, store, config, remote, missing_blobs=missing)
    if watch is None:
        watch = config.watch.enabled
    if watch:
        session.start_watching()
    return session


async def bootstrap_tracked_file(
    path: Union[str, Path],
    remote: CloudSyncClient,
    config: Optional[Config] = None,
    watch: Optional[bool] = None,
) -> ProjectSession:
    """Materialize a tracked file from its cloud project, then open it.

    Raises:
        ValidationError: If the file already has local history
        NotFoundError: If the remote project has no history
    """
    config = config or Config()
    store = SnapshotStore(path, config.storage)
    await bootstrap_from_remote(store, remote)
    return open_tracked_file(store.tracked_file, config, remote=remote, watch=watch)
