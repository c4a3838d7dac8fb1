"""Cloud synchronization reconciler.

Compares the local commit set against the remote tree record and drives blob
transfer through the sync client. Local state (tree record, synced ledger) is
only modified after every remote step of an operation has completed, so a
failed or cancelled push/pull leaves the local tree exactly as it was.

Conflicts are resolved per commit id, never by content: commit ids are
globally unique, so membership alone decides what is missing on either side.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from ..api_clients.sync_client import CloudSyncClient
from ..events import EventChannel, SessionEvent, SyncStatusEvent
from ..exceptions import (
    IntegrityError,
    NotFoundError,
    TransportError,
    ValidationError,
)
from ..storage.snapshot_store import SnapshotStore
from ..tree.commit_tree import CommitTree
from ..tree.models import Branch, TreeRecord

logger = logging.getLogger(__name__)


@dataclass
class SyncStatus:
    """Three-way partition of commit ids between local and remote."""

    local_only: List[str] = field(default_factory=list)
    remote_only: List[str] = field(default_factory=list)
    synced: List[str] = field(default_factory=list)


@dataclass
class PushResult:
    pushed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    missing_blobs: List[str] = field(default_factory=list)


@dataclass
class PullResult:
    new_commits: List[str] = field(default_factory=list)
    new_branches: List[str] = field(default_factory=list)
    moved_branches: List[str] = field(default_factory=list)


def compute_sync_status(
    local_commit_ids: Iterable[str],
    synced_commit_ids: Iterable[str],
    remote_commit_ids: Iterable[str],
) -> SyncStatus:
    """Partition commit ids; input order is preserved in every list.

    - local_only: local ids not marked synced
    - remote_only: remote ids not present locally
    - synced: local ids marked synced and still present remotely
    """
    local_ids = list(local_commit_ids)
    remote_ids = list(remote_commit_ids)
    local_set = set(local_ids)
    remote_set = set(remote_ids)
    synced_set = set(synced_commit_ids)

    return SyncStatus(
        local_only=[cid for cid in local_ids if cid not in synced_set],
        remote_only=[cid for cid in remote_ids if cid not in local_set],
        synced=[cid for cid in local_ids if cid in synced_set and cid in remote_set],
    )


def _main_branch_id(record: TreeRecord) -> Optional[str]:
    for branch in record.branches:
        if branch.is_main:
            return branch.id
    return None


def _unique_branch_name(name: str, taken: Set[str]) -> str:
    candidate = f"{name} (remote)"
    suffix = 2
    while candidate in taken:
        candidate = f"{name} (remote {suffix})"
        suffix += 1
    return candidate


def merge_tree_records(
    local: TreeRecord, remote: TreeRecord, prefer_remote: bool
) -> TreeRecord:
    """Merge two tree records into a new one (inputs are not modified).

    Commits and branches only present remotely are appended. For a commit id
    known on both sides the preferred side's mutable fields win. Branch heads
    fast-forward when one head descends from the other; diverged heads keep the
    preferred side. Checkout state (active branch, current commit) stays local.

    A remote main branch with a different id (both sides initialized on their
    own) is folded into the local main branch. A remote-only branch whose name
    is already used locally is renamed to "<name> (remote)" so branch names
    stay unique; local branches keep their names.
    """
    merged = local.model_copy(deep=True)
    local_commits = {c.id: c for c in merged.commits}

    aliases: Dict[str, str] = {}
    local_main_id = _main_branch_id(merged)
    remote_main_id = _main_branch_id(remote)
    if local_main_id and remote_main_id and local_main_id != remote_main_id:
        logger.warning(
            f"Remote main branch {remote_main_id} folded into local main {local_main_id}"
        )
        aliases[remote_main_id] = local_main_id

    for remote_commit in remote.commits:
        existing = local_commits.get(remote_commit.id)
        if existing is None:
            copy = remote_commit.model_copy()
            copy.branch_id = aliases.get(copy.branch_id, copy.branch_id)
            merged.commits.append(copy)
            local_commits[copy.id] = copy
        elif prefer_remote:
            existing.message = remote_commit.message
            existing.starred = remote_commit.starred

    graph = CommitTree(merged)
    local_branches = {b.id: b for b in merged.branches}
    local_names = {b.name for b in merged.branches}
    taken_names = local_names | {b.name for b in remote.branches}

    for remote_branch in remote.branches:
        branch_id = aliases.get(remote_branch.id, remote_branch.id)
        existing_branch: Optional[Branch] = local_branches.get(branch_id)
        if existing_branch is None:
            copy_branch = remote_branch.model_copy()
            if copy_branch.parent_branch_id is not None:
                copy_branch.parent_branch_id = aliases.get(
                    copy_branch.parent_branch_id, copy_branch.parent_branch_id
                )
            if copy_branch.name in local_names:
                renamed = _unique_branch_name(copy_branch.name, taken_names)
                logger.warning(
                    f"Remote branch {copy_branch.id} named {copy_branch.name!r} "
                    f"collides with a local branch; renamed to {renamed!r}"
                )
                copy_branch.name = renamed
                taken_names.add(renamed)
            local_names.add(copy_branch.name)
            merged.branches.append(copy_branch)
            local_branches[copy_branch.id] = copy_branch
            continue

        local_head = existing_branch.head_commit_id
        remote_head = remote_branch.head_commit_id
        if remote_head is None or remote_head == local_head:
            continue
        if local_head is None or graph.is_ancestor(local_head, remote_head):
            existing_branch.head_commit_id = remote_head
        elif graph.is_ancestor(remote_head, local_head):
            continue
        else:
            logger.warning(
                f"Branch {existing_branch.name} diverged "
                f"(local={local_head}, remote={remote_head})"
            )
            if prefer_remote:
                existing_branch.head_commit_id = remote_head

    known = set(merged.cloud_synced_commit_ids)
    for cid in remote.cloud_synced_commit_ids:
        if cid not in known and cid in local_commits:
            merged.cloud_synced_commit_ids.append(cid)
            known.add(cid)

    return merged


def _parse_remote_tree(text: str) -> TreeRecord:
    try:
        return TreeRecord.model_validate_json(text)
    except ValueError as e:
        raise IntegrityError("Remote tree record is not valid", details=str(e))


class SyncReconciler:
    """Drives push/pull of one tracked file's history against its cloud project."""

    def __init__(
        self,
        tree: CommitTree,
        store: SnapshotStore,
        client: CloudSyncClient,
        channel: Optional[EventChannel[SessionEvent]] = None,
    ):
        self.tree = tree
        self.store = store
        self.client = client
        self.channel = channel

    def _publish(self, direction: str, status: SyncStatus, failed: Iterable[str] = ()) -> None:
        if self.channel is None:
            return
        self.channel.publish(
            SyncStatusEvent(
                direction=direction,
                local_only=tuple(status.local_only),
                remote_only=tuple(status.remote_only),
                synced=tuple(status.synced),
                failed=tuple(failed),
            )
        )

    async def fetch_remote_tree(self) -> Optional[TreeRecord]:
        text = await self.client.pull_tree()
        if text is None:
            return None
        return _parse_remote_tree(text)

    async def status(self) -> SyncStatus:
        """Pull the remote tree and partition commit ids."""
        remote = await self.fetch_remote_tree()
        remote_ids = [c.id for c in remote.commits] if remote else []
        status = compute_sync_status(
            self.tree.commit_ids(), self.tree.synced_commit_ids(), remote_ids
        )
        self._publish("status", status)
        return status

    async def push(self) -> PushResult:
        """Upload local-only commit blobs, then the updated tree record.

        A blob failure abandons only that commit. Commits are marked synced
        only after the tree record upload succeeds; if it fails the error
        propagates and nothing is marked.

        Raises:
            TransportError: If the remote tree cannot be read or written
        """
        remote = await self.fetch_remote_tree()
        remote_ids = [c.id for c in remote.commits] if remote else []
        remote_set = set(remote_ids)
        status = compute_sync_status(
            self.tree.commit_ids(), self.tree.synced_commit_ids(), remote_ids
        )

        # Marked synced locally but gone from the remote tree: upload again
        stale = [
            cid
            for cid in self.tree.synced_commit_ids()
            if cid not in remote_set and self.tree.has_commit(cid)
        ]
        candidates = status.local_only + [cid for cid in stale if cid not in status.local_only]

        result = PushResult()
        for commit_id in candidates:
            if not self.store.commit_blob_exists(commit_id):
                logger.warning(f"Skipping push of {commit_id}: snapshot missing locally")
                result.missing_blobs.append(commit_id)
                continue
            data = self.store.read_commit_blob(commit_id)
            try:
                await self.client.push_commit_blob(commit_id, data)
            except TransportError as e:
                logger.error(f"Failed to push commit {commit_id}: {e}")
                result.failed[commit_id] = str(e)
                continue
            result.pushed.append(commit_id)

        staged = self.tree.copy_record()
        if remote is not None:
            staged = merge_tree_records(staged, remote, prefer_remote=False)
        still_remote = [cid for cid in staged.cloud_synced_commit_ids if cid in remote_set]
        staged.cloud_synced_commit_ids = still_remote
        known = set(still_remote)
        for commit_id in result.pushed:
            if commit_id not in known:
                staged.cloud_synced_commit_ids.append(commit_id)
                known.add(commit_id)

        staged_tree = CommitTree(staged)
        staged_tree.reconcile_for_save()
        await self.client.push_tree(staged_tree.to_json())

        # Remote confirmed: adopt the staged record locally
        self.tree.replace_record(staged_tree.record)
        self.store.save_tree(self.tree.to_json())

        logger.info(
            f"Pushed {len(result.pushed)} commit(s), "
            f"{len(result.failed)} failed, {len(result.missing_blobs)} missing locally"
        )
        final = compute_sync_status(
            self.tree.commit_ids(),
            self.tree.synced_commit_ids(),
            list(remote_ids) + result.pushed,
        )
        self._publish("push", final, failed=result.failed.keys())
        return result

    async def pull(self) -> PullResult:
        """Merge the remote tree's history into the local tree (metadata only).

        Blobs of pulled commits are fetched lazily with fetch_commit_blob.
        """
        remote = await self.fetch_remote_tree()
        result = PullResult()
        if remote is None:
            return result

        before_commits = set(self.tree.commit_ids())
        before_heads = {b.id: b.head_commit_id for b in self.tree.branches}

        # Synced ids come only from the remote ledger; a commit listed in the
        # remote tree may still lack its blob there
        merged = merge_tree_records(self.tree.record, remote, prefer_remote=True)
        remote_ids = [c.id for c in remote.commits]

        merged_tree = CommitTree(merged)
        merged_tree.validate()

        self.tree.replace_record(merged)
        self.store.save_tree(self.tree.to_json())

        result.new_commits = [cid for cid in remote_ids if cid not in before_commits]
        for branch in self.tree.branches:
            if branch.id not in before_heads:
                result.new_branches.append(branch.id)
            elif before_heads[branch.id] != branch.head_commit_id:
                result.moved_branches.append(branch.id)

        logger.info(
            f"Pulled {len(result.new_commits)} commit(s), "
            f"{len(result.new_branches)} new branch(es)"
        )
        self._publish(
            "pull",
            compute_sync_status(
                self.tree.commit_ids(), self.tree.synced_commit_ids(), remote_ids
            ),
        )
        return result

    async def fetch_commit_blob(self, commit_id: str) -> bytes:
        """Return a commit's blob, downloading it first if not cached locally."""
        self.tree.get_commit(commit_id)
        if self.store.commit_blob_exists(commit_id):
            return self.store.read_commit_blob(commit_id)

        data = await self.client.pull_commit_blob(commit_id)
        self.store.save_commit_blob(commit_id, data)
        logger.info(f"Fetched missing snapshot for commit {commit_id}")
        return data


async def bootstrap_from_remote(
    store: SnapshotStore, client: CloudSyncClient
) -> CommitTree:
    """Materialize a working copy from the remote when no local tree exists.

    Pulls the remote tree record, then downloads only the active branch's most
    recent commit blob and writes it to the tracked file. Older blobs are
    fetched on demand.

    Raises:
        ValidationError: If local history already exists
        NotFoundError: If the remote project has no tree or no commits
    """
    if store.load_tree() is not None:
        raise ValidationError(
            f"Local history already exists for {store.tracked_file}; use pull instead"
        )

    text = await client.pull_tree()
    if text is None:
        raise NotFoundError(f"Cloud project {client.project_id} has no history yet")
    record = _parse_remote_tree(text)
    tree = CommitTree(record, store=store)

    branch = None
    if record.active_branch_id is not None:
        try:
            branch = tree.get_branch(record.active_branch_id)
        except NotFoundError:
            branch = None
    if branch is None:
        branch = tree.main_branch()

    latest_id = branch.head_commit_id
    if latest_id is None:
        branch_commits = tree.list_commits(branch.id)
        if not branch_commits:
            raise NotFoundError(f"Branch {branch.name} has no commits to download")
        latest_id = branch_commits[0].id

    data = await client.pull_commit_blob(latest_id)

    if not store.commit_blob_exists(latest_id):
        store.save_commit_blob(latest_id, data)
    store.write_tracked_file(data)

    record.active_branch_id = branch.id
    record.current_commit_id = latest_id
    # Only ids the remote ledger confirms; blobs that never arrived stay unsynced
    record.cloud_synced_commit_ids = [
        cid for cid in record.cloud_synced_commit_ids if tree.has_commit(cid)
    ]
    store.save_tree(tree.to_json())

    logger.info(
        f"Bootstrapped {store.tracked_file} from commit {latest_id} "
        f"({len(record.commits)} commit(s) in history)"
    )
    return tree
