"""Commit/branch tree for one tracked model file.

Holds the version history in memory (a TreeRecord plus id indexes) and applies
every mutation: commits, branches, switching, restoring and starring. Blobs are
persisted and read back through the snapshot store handed to the tree; the
tree itself never touches the filesystem.
"""

import logging
import secrets
import string
import time
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set

from ..exceptions import IntegrityError, NotFoundError, ValidationError
from .models import Branch, Commit, TreeRecord

if TYPE_CHECKING:
    from ..storage.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

MAIN_BRANCH_NAME = "main"
DEFAULT_MAIN_COLOR = "#3b82f6"

BRANCH_COLOR_PALETTE = (
    "#10b981",
    "#f59e0b",
    "#ef4444",
    "#8b5cf6",
    "#ec4899",
    "#14b8a6",
    "#f97316",
    "#6366f1",
)

_ID_ALPHABET = string.digits + string.ascii_lowercase
_ID_SUFFIX_LENGTH = 9


def generate_id(now_ms: Optional[int] = None) -> str:
    """Generate an id from the creation time plus a random base36 suffix.

    Example: ``1718031234567-k3j9x0a2b``
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_SUFFIX_LENGTH))
    return f"{now_ms}-{suffix}"


class CommitTree:
    """In-memory version history with all mutation logic."""

    def __init__(
        self,
        record: Optional[TreeRecord] = None,
        store: Optional["SnapshotStore"] = None,
    ):
        """Wrap an existing tree record (or start an empty one).

        Args:
            record: Persisted tree record; a fresh tree with a main branch is
                created when omitted
            store: Snapshot store used to persist and read commit blobs
        """
        self.record = record if record is not None else self._new_record()
        self.store = store
        self._commits: Dict[str, Commit] = {}
        self._branches: Dict[str, Branch] = {}
        self._reindex()

    @classmethod
    def create(
        cls,
        store: Optional["SnapshotStore"] = None,
        main_color: str = DEFAULT_MAIN_COLOR,
    ) -> "CommitTree":
        """Create a tree holding only an empty main branch."""
        return cls(cls._new_record(main_color), store=store)

    @staticmethod
    def _new_record(main_color: str = DEFAULT_MAIN_COLOR) -> TreeRecord:
        main = Branch(
            id=generate_id(),
            name=MAIN_BRANCH_NAME,
            head_commit_id=None,
            color=main_color,
            is_main=True,
        )
        return TreeRecord(active_branch_id=main.id, branches=[main])

    def _reindex(self) -> None:
        self._commits = {c.id: c for c in self.record.commits}
        self._branches = {b.id: b for b in self.record.branches}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def active_branch_id(self) -> Optional[str]:
        return self.record.active_branch_id

    @property
    def current_commit_id(self) -> Optional[str]:
        return self.record.current_commit_id

    @property
    def commits(self) -> List[Commit]:
        """Commits in insertion order."""
        return list(self.record.commits)

    @property
    def branches(self) -> List[Branch]:
        return list(self.record.branches)

    def commit_ids(self) -> List[str]:
        return [c.id for c in self.record.commits]

    def has_commit(self, commit_id: str) -> bool:
        return commit_id in self._commits

    def get_commit(self, commit_id: str) -> Commit:
        """Raises NotFoundError if the commit is unknown."""
        commit = self._commits.get(commit_id)
        if commit is None:
            raise NotFoundError(f"Commit not found: {commit_id}")
        return commit

    def get_branch(self, branch_id: str) -> Branch:
        """Raises NotFoundError if the branch is unknown."""
        branch = self._branches.get(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch not found: {branch_id}")
        return branch

    def branch_by_name(self, name: str) -> Optional[Branch]:
        for branch in self.record.branches:
            if branch.name == name:
                return branch
        return None

    def main_branch(self) -> Branch:
        for branch in self.record.branches:
            if branch.is_main:
                return branch
        raise IntegrityError("Tree has no main branch")

    def active_branch(self) -> Branch:
        if self.record.active_branch_id is None:
            raise IntegrityError("Tree has no active branch")
        return self.get_branch(self.record.active_branch_id)

    def current_commit(self) -> Optional[Commit]:
        if self.record.current_commit_id is None:
            return None
        return self.get_commit(self.record.current_commit_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_commit(
        self,
        message: str,
        branch_id: str,
        blob: Optional[bytes] = None,
    ) -> Commit:
        """Append a commit to a branch and move its head.

        When the tree has a snapshot store the blob is written first, so a
        failed write leaves the tree untouched.

        Args:
            message: Commit message; must not be blank
            branch_id: Branch receiving the commit
            blob: Snapshot bytes of the tracked file

        Returns:
            The new commit

        Raises:
            ValidationError: If the branch is unknown, the message is blank or
                a blob is missing while a store is attached
        """
        if message is None or not message.strip():
            raise ValidationError("Commit message must not be empty")

        branch = self._branches.get(branch_id)
        if branch is None:
            raise ValidationError(f"Cannot commit to unknown branch: {branch_id}")

        if self.store is not None and blob is None:
            raise ValidationError("A snapshot blob is required to create a commit")

        now_ms = int(time.time() * 1000)
        commit_id = generate_id(now_ms)
        while commit_id in self._commits:
            commit_id = generate_id(now_ms)

        if self.store is not None and blob is not None:
            self.store.save_commit_blob(commit_id, blob)

        commit = Commit(
            id=commit_id,
            message=message.strip(),
            timestamp=now_ms,
            parent_commit_id=branch.head_commit_id,
            branch_id=branch_id,
        )
        self.record.commits.append(commit)
        self._commits[commit_id] = commit
        branch.head_commit_id = commit_id
        self.record.current_commit_id = commit_id

        logger.debug(
            f"Created commit {commit_id} on branch {branch.name} "
            f"(parent={commit.parent_commit_id})"
        )
        return commit

    def create_branch(
        self,
        name: str,
        from_commit_id: str,
        color: Optional[str] = None,
    ) -> Branch:
        """Fork a new branch at an existing commit.

        Raises:
            ValidationError: If the fork commit does not exist or the name is
                blank or already taken (case-sensitive)
        """
        if name is None or not name.strip():
            raise ValidationError("Branch name must not be empty")
        name = name.strip()

        origin = self._commits.get(from_commit_id)
        if origin is None:
            raise ValidationError(
                f"Cannot branch from unknown commit: {from_commit_id}"
            )

        if self.branch_by_name(name) is not None:
            raise ValidationError(f"Branch name already exists: {name}")

        if color is None:
            color = BRANCH_COLOR_PALETTE[
                (len(self.record.branches) - 1) % len(BRANCH_COLOR_PALETTE)
            ]

        branch_id = generate_id()
        while branch_id in self._branches:
            branch_id = generate_id()

        branch = Branch(
            id=branch_id,
            name=name,
            head_commit_id=from_commit_id,
            color=color,
            is_main=False,
            parent_branch_id=origin.branch_id,
            origin_commit_id=from_commit_id,
        )
        self.record.branches.append(branch)
        self._branches[branch_id] = branch

        logger.debug(f"Created branch {name} ({branch_id}) at {from_commit_id}")
        return branch

    def switch_branch(self, branch_id: str) -> Branch:
        """Make a branch active and check out its head.

        Raises:
            NotFoundError: If the branch is unknown
        """
        branch = self.get_branch(branch_id)
        self.record.active_branch_id = branch.id
        self.record.current_commit_id = branch.head_commit_id
        logger.debug(f"Switched to branch {branch.name}")
        return branch

    def restore_to_commit(self, commit_id: str) -> bytes:
        """Check out a commit without moving any branch head.

        Returns:
            The commit's snapshot bytes

        Raises:
            NotFoundError: If the commit or its blob is missing
        """
        self.get_commit(commit_id)
        if self.store is None:
            raise NotFoundError(
                f"No snapshot store attached; blob for {commit_id} unavailable"
            )

        # Read first so a missing blob leaves current_commit_id unchanged
        data = self.store.read_commit_blob(commit_id)
        self.record.current_commit_id = commit_id
        logger.debug(f"Restored view to commit {commit_id} ({len(data)} bytes)")
        return data

    def star_commit(self, commit_id: str, starred: bool) -> Commit:
        """Raises NotFoundError if the commit is unknown."""
        commit = self.get_commit(commit_id)
        commit.starred = starred
        return commit

    def reconcile_for_save(self) -> None:
        """Make the active branch own the checked-out commit before persisting."""
        current = self.current_commit()
        if current is None:
            return
        if current.branch_id != self.record.active_branch_id:
            logger.debug(
                f"Reconciling active branch {self.record.active_branch_id} "
                f"-> {current.branch_id} for commit {current.id}"
            )
            self.record.active_branch_id = current.branch_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_commits(self, branch_id: Optional[str] = None) -> List[Commit]:
        """Commits for display, newest first.

        Ties on timestamp keep insertion order (sorted() is stable).
        """
        commits = self.record.commits
        if branch_id is not None:
            self.get_branch(branch_id)
            commits = [c for c in commits if c.branch_id == branch_id]
        return sorted(commits, key=lambda c: -c.timestamp)

    def starred_commits(self) -> List[Commit]:
        return [c for c in self.list_commits() if c.starred]

    def ancestry(self, commit_id: str) -> List[Commit]:
        """Return the commit followed by its ancestors back to the root.

        Raises:
            NotFoundError: If the commit is unknown
            IntegrityError: If a parent link is dangling or cyclic
        """
        chain: List[Commit] = []
        seen: Set[str] = set()
        commit: Optional[Commit] = self.get_commit(commit_id)
        while commit is not None:
            if commit.id in seen:
                raise IntegrityError(f"Cycle in commit ancestry at {commit.id}")
            seen.add(commit.id)
            chain.append(commit)
            parent_id = commit.parent_commit_id
            if parent_id is None:
                break
            commit = self._commits.get(parent_id)
            if commit is None:
                raise IntegrityError(
                    f"Commit {chain[-1].id} references missing parent {parent_id}"
                )
        return chain

    def is_ancestor(self, ancestor_id: str, descendant_id: str) -> bool:
        return any(c.id == ancestor_id for c in self.ancestry(descendant_id))

    # ------------------------------------------------------------------
    # Sync ledger
    # ------------------------------------------------------------------

    def synced_commit_ids(self) -> List[str]:
        return list(self.record.cloud_synced_commit_ids)

    def mark_synced(self, commit_ids: Iterable[str]) -> None:
        synced = self.record.cloud_synced_commit_ids
        known = set(synced)
        for commit_id in commit_ids:
            if commit_id not in known:
                synced.append(commit_id)
                known.add(commit_id)

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Check the structural invariants of the tree.

        Raises:
            IntegrityError: Naming the first violated invariant
        """
        if len(self._commits) != len(self.record.commits):
            raise IntegrityError("Duplicate commit ids in tree")
        if len(self._branches) != len(self.record.branches):
            raise IntegrityError("Duplicate branch ids in tree")

        mains = [b for b in self.record.branches if b.is_main]
        if len(mains) != 1:
            raise IntegrityError(f"Expected exactly one main branch, found {len(mains)}")
        if mains[0].parent_branch_id is not None:
            raise IntegrityError("Main branch must not have a parent branch")

        active = self.record.active_branch_id
        if active is None or active not in self._branches:
            raise IntegrityError(f"Active branch does not exist: {active}")

        current = self.record.current_commit_id
        if current is not None and current not in self._commits:
            raise IntegrityError(f"Current commit does not exist: {current}")

        for commit in self.record.commits:
            if commit.branch_id not in self._branches:
                raise IntegrityError(
                    f"Commit {commit.id} belongs to unknown branch {commit.branch_id}"
                )
            if (
                commit.parent_commit_id is not None
                and commit.parent_commit_id not in self._commits
            ):
                raise IntegrityError(
                    f"Commit {commit.id} references missing parent "
                    f"{commit.parent_commit_id}"
                )

        for branch in self.record.branches:
            if not branch.is_main:
                if branch.origin_commit_id not in self._commits:
                    raise IntegrityError(
                        f"Branch {branch.name} forks from missing commit "
                        f"{branch.origin_commit_id}"
                    )
            if branch.head_commit_id is None:
                continue
            if branch.head_commit_id not in self._commits:
                raise IntegrityError(
                    f"Branch {branch.name} head is missing: {branch.head_commit_id}"
                )
            chain_ids = [c.id for c in self.ancestry(branch.head_commit_id)]
            if not branch.is_main and branch.origin_commit_id not in chain_ids:
                raise IntegrityError(
                    f"Branch {branch.name} head does not descend from its origin "
                    f"{branch.origin_commit_id}"
                )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return self.record.model_dump(by_alias=True)

    def to_json(self) -> str:
        return self.record.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_dict(
        cls, data: dict, store: Optional["SnapshotStore"] = None
    ) -> "CommitTree":
        return cls(TreeRecord.model_validate(data), store=store)

    @classmethod
    def from_json(
        cls, text: str, store: Optional["SnapshotStore"] = None
    ) -> "CommitTree":
        """Raises IntegrityError if the record cannot be parsed."""
        try:
            record = TreeRecord.model_validate_json(text)
        except ValueError as e:
            raise IntegrityError("Tree record is not valid", details=str(e))
        return cls(record, store=store)

    def copy_record(self) -> TreeRecord:
        """Deep copy of the record, used to stage remote uploads."""
        return self.record.model_copy(deep=True)

    def replace_record(self, record: TreeRecord) -> None:
        """Swap in a reconciled record (after a confirmed sync)."""
        self.record = record
        self._reindex()
