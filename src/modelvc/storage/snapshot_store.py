"""Filesystem-backed snapshot storage for one tracked model file.

Layout (next to the tracked file)::

    /path/to/model.3dm
    /path/to/0studio/model/
        commit-1718031234567-k3j9x0a2b.3dm
        commit-1718031299012-p0q8w7e6r.3dm
        tree.json

The storage root is derived only from the tracked file's directory and base
name, so reopening the same file always resolves to the same root. Blobs are
immutable once written; every write goes through a temporary file and an
atomic rename so readers never observe a partial blob.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Set, Union

from ..config import StorageConfig
from ..exceptions import (
    IntegrityError,
    NotFoundError,
    SnapshotIOError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Maps commit ids of one tracked file onto blob files in its storage root."""

    def __init__(
        self,
        tracked_file: Union[str, Path],
        storage_config: Optional[StorageConfig] = None,
    ):
        """Initialize the store for a tracked file.

        Args:
            tracked_file: Path of the model file under version control
            storage_config: Folder and naming conventions (defaults apply when omitted)
        """
        self.tracked_file = Path(tracked_file).expanduser().absolute()
        self.storage_config = storage_config or StorageConfig()
        self.extension = self.tracked_file.suffix
        self.root = (
            self.tracked_file.parent
            / self.storage_config.folder_name
            / self.tracked_file.stem
        )
        self.tree_path = self.root / self.storage_config.tree_file_name

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def commit_blob_path(self, commit_id: str) -> Path:
        """Path of the blob file for a commit id.

        Raises:
            ValidationError: If the id could escape the storage root
        """
        if not commit_id or "/" in commit_id or "\\" in commit_id or commit_id in (".", ".."):
            raise ValidationError(f"Invalid commit id: {commit_id!r}")
        return self.root / f"{self.storage_config.commit_prefix}{commit_id}{self.extension}"

    def _commit_id_from_name(self, name: str) -> Optional[str]:
        prefix = self.storage_config.commit_prefix
        if not name.startswith(prefix) or not name.endswith(self.extension):
            return None
        commit_id = name[len(prefix) : len(name) - len(self.extension)]
        return commit_id or None

    # ------------------------------------------------------------------
    # Root
    # ------------------------------------------------------------------

    def ensure_root(self) -> bool:
        """Create the storage root if needed.

        Returns:
            True if the root was created by this call, False if it already existed
        """
        if self.root.is_dir():
            return False
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SnapshotIOError(
                f"Failed to create storage folder {self.root}", details=str(e)
            )
        logger.info(f"Created snapshot storage folder: {self.root}")
        return True

    def _atomic_write(self, target: Path, data: bytes) -> None:
        tmp_file = target.with_name(f".{target.name}.tmp")
        try:
            with open(tmp_file, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(target)
        except OSError as e:
            try:
                tmp_file.unlink(missing_ok=True)
            except OSError:
                logger.warning(f"Failed to remove temporary file {tmp_file}")
            raise SnapshotIOError(f"Failed to write {target}", details=str(e))

    # ------------------------------------------------------------------
    # Commit blobs
    # ------------------------------------------------------------------

    def save_commit_blob(self, commit_id: str, data: bytes) -> Path:
        """Write the snapshot blob for a commit.

        Args:
            commit_id: Commit the blob belongs to
            data: Snapshot bytes

        Returns:
            Path of the written blob

        Raises:
            ValidationError: If a blob already exists for this id (blobs are immutable)
            SnapshotIOError: If the filesystem write fails
        """
        target = self.commit_blob_path(commit_id)
        self.ensure_root()
        if target.exists():
            raise ValidationError(f"Snapshot already exists for commit {commit_id}")

        self._atomic_write(target, bytes(data))
        logger.debug(f"Saved commit blob: {target} ({len(data)} bytes)")
        return target

    def read_commit_blob(self, commit_id: str) -> bytes:
        """Read the snapshot blob for a commit.

        Raises:
            NotFoundError: If no blob exists for the commit
            SnapshotIOError: If the file exists but cannot be read
        """
        target = self.commit_blob_path(commit_id)
        if not target.is_file():
            raise NotFoundError(f"Snapshot not found for commit {commit_id}", details=str(target))
        try:
            data = target.read_bytes()
        except OSError as e:
            raise SnapshotIOError(f"Failed to read snapshot {target}", details=str(e))
        logger.debug(f"Read commit blob: {target} ({len(data)} bytes)")
        return data

    def commit_blob_exists(self, commit_id: str) -> bool:
        return self.commit_blob_path(commit_id).is_file()

    def blob_size(self, commit_id: str) -> Optional[int]:
        try:
            return self.commit_blob_path(commit_id).stat().st_size
        except FileNotFoundError:
            return None

    def list_commit_ids(self) -> Set[str]:
        """Scan the storage root for blobs following the naming convention."""
        if not self.root.is_dir():
            return set()

        commit_ids: Set[str] = set()
        try:
            for entry in self.root.iterdir():
                if not entry.is_file():
                    continue
                commit_id = self._commit_id_from_name(entry.name)
                if commit_id is not None:
                    commit_ids.add(commit_id)
        except OSError as e:
            raise SnapshotIOError(f"Failed to list {self.root}", details=str(e))
        return commit_ids

    def validate_commit_blobs(self, commit_ids: Iterable[str]) -> Set[str]:
        """Return the subset of commit ids whose blob is missing."""
        missing = {cid for cid in commit_ids if not self.commit_blob_exists(cid)}
        if missing:
            logger.warning(
                f"{len(missing)} commit snapshot(s) missing in {self.root}"
            )
        return missing

    def require_commit_blobs(self, commit_ids: Iterable[str]) -> None:
        """Raises IntegrityError listing every commit whose blob is absent."""
        missing = self.validate_commit_blobs(commit_ids)
        if missing:
            raise IntegrityError(
                f"{len(missing)} commit snapshot(s) are missing",
                missing_ids=missing,
                details=", ".join(sorted(missing)),
            )

    def write_tracked_file(self, data: bytes) -> None:
        """Atomically replace the tracked file's contents with a snapshot."""
        self._atomic_write(self.tracked_file, bytes(data))
        logger.info(f"Wrote {len(data)} bytes to {self.tracked_file}")

    def read_tracked_file(self) -> bytes:
        """Raises NotFoundError if the tracked file is gone."""
        try:
            return self.tracked_file.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"File not found: {self.tracked_file}")
        except OSError as e:
            raise SnapshotIOError(f"Failed to read {self.tracked_file}", details=str(e))

    # ------------------------------------------------------------------
    # Tree record
    # ------------------------------------------------------------------

    def save_tree(self, serialized: str) -> None:
        """Persist the serialized tree record atomically."""
        self.ensure_root()
        self._atomic_write(self.tree_path, serialized.encode("utf-8"))
        logger.debug(f"Saved tree record: {self.tree_path}")

    def load_tree(self) -> Optional[str]:
        """Return the serialized tree record, or None if none was saved yet."""
        if not self.tree_path.is_file():
            return None
        try:
            return self.tree_path.read_text(encoding="utf-8")
        except OSError as e:
            raise SnapshotIOError(
                f"Failed to read tree record {self.tree_path}", details=str(e)
            )


def save_commit_file(file_path: Union[str, Path], commit_id: str, data: bytes) -> Path:
    """Save a commit blob for the tracked file at file_path."""
    return SnapshotStore(file_path).save_commit_blob(commit_id, data)


def read_commit_file(file_path: Union[str, Path], commit_id: str) -> bytes:
    return SnapshotStore(file_path).read_commit_blob(commit_id)


def commit_file_exists(file_path: Union[str, Path], commit_id: str) -> bool:
    return SnapshotStore(file_path).commit_blob_exists(commit_id)


def list_commit_files(file_path: Union[str, Path]) -> List[str]:
    """Commit ids with a stored blob for the tracked file, sorted."""
    return sorted(SnapshotStore(file_path).list_commit_ids())
