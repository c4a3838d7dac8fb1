"""Unit tests for the filesystem snapshot store."""

from unittest.mock import patch

import pytest

from modelvc.config import StorageConfig
from modelvc.exceptions import (
    IntegrityError,
    NotFoundError,
    SnapshotIOError,
    ValidationError,
)
from modelvc.storage.snapshot_store import (
    SnapshotStore,
    commit_file_exists,
    list_commit_files,
    read_commit_file,
    save_commit_file,
)
from modelvc.tree.commit_tree import CommitTree


class TestLayout:
    def test_root_is_derived_from_directory_and_stem(self, tmp_path):
        store = SnapshotStore(tmp_path / "model.3dm")

        assert store.root == tmp_path / "0studio" / "model"
        assert store.tree_path == tmp_path / "0studio" / "model" / "tree.json"
        assert store.commit_blob_path("1001") == store.root / "commit-1001.3dm"

    def test_same_file_resolves_to_same_root(self, tmp_path):
        first = SnapshotStore(tmp_path / "model.3dm")
        second = SnapshotStore(str(tmp_path / "model.3dm"))
        assert first.root == second.root

    def test_custom_storage_config(self, tmp_path):
        config = StorageConfig(folder_name=".history", commit_prefix="v-")
        store = SnapshotStore(tmp_path / "part.stl", config)
        assert store.commit_blob_path("1") == tmp_path / ".history" / "part" / "v-1.stl"

    @pytest.mark.parametrize("bad_id", ["", ".", "..", "a/b", "a\\b"])
    def test_rejects_ids_escaping_root(self, tmp_path, bad_id):
        store = SnapshotStore(tmp_path / "model.3dm")
        with pytest.raises(ValidationError):
            store.commit_blob_path(bad_id)


class TestModelScenario:
    """Path-keyed convenience functions against a fresh model.3dm."""

    def test_save_and_list(self, tmp_path):
        model = tmp_path / "model.3dm"
        model.write_bytes(b"model")
        store = SnapshotStore(model)

        assert store.ensure_root() is True
        assert store.ensure_root() is False

        path = save_commit_file(model, "1001", b"snapshot-1001")

        assert path == tmp_path / "0studio" / "model" / "commit-1001.3dm"
        assert commit_file_exists(model, "1001")
        assert not commit_file_exists(model, "1002")
        assert read_commit_file(model, "1001") == b"snapshot-1001"
        assert list_commit_files(model) == ["1001"]


class TestCommitBlobs:
    def test_save_creates_root(self, store):
        assert not store.root.exists()
        store.save_commit_blob("1", b"data")
        assert store.root.is_dir()

    def test_blobs_are_immutable(self, store):
        store.save_commit_blob("1", b"first")
        with pytest.raises(ValidationError, match="already exists"):
            store.save_commit_blob("1", b"second")
        assert store.read_commit_blob("1") == b"first"

    def test_no_temporary_files_left(self, store):
        store.save_commit_blob("1", b"data")
        assert [p.name for p in store.root.iterdir()] == ["commit-1.3dm"]

    def test_read_missing_blob(self, store):
        with pytest.raises(NotFoundError):
            store.read_commit_blob("404")

    def test_failed_write_is_wrapped_and_cleaned_up(self, store):
        store.ensure_root()
        with patch("pathlib.Path.replace", side_effect=OSError("read-only")):
            with pytest.raises(SnapshotIOError, match="read-only"):
                store.save_commit_blob("1", b"data")
        assert list(store.root.iterdir()) == []

    def test_blob_size(self, store):
        store.save_commit_blob("1", b"12345")
        assert store.blob_size("1") == 5
        assert store.blob_size("2") is None

    def test_list_ignores_unrelated_files(self, store):
        store.save_commit_blob("1", b"a")
        store.save_commit_blob("2", b"b")
        store.save_tree("{}")
        (store.root / "notes.txt").write_text("hi")
        (store.root / "commit-3.obj").write_bytes(b"other extension")

        assert store.list_commit_ids() == {"1", "2"}

    def test_list_without_root(self, store):
        assert store.list_commit_ids() == set()


class TestValidation:
    def test_all_missing_when_nothing_saved(self, store):
        assert store.validate_commit_blobs(["a", "b", "c"]) == {"a", "b", "c"}

    def test_none_missing_after_saving(self, store):
        for commit_id in ("a", "b", "c"):
            store.save_commit_blob(commit_id, commit_id.encode())
        assert store.validate_commit_blobs(["a", "b", "c"]) == set()

    def test_reloaded_tree_with_every_blob_deleted(self, tree, store):
        main_id = tree.main_branch().id
        for n in range(3):
            tree.create_commit(f"v{n}", main_id, f"v{n}".encode())
        store.save_tree(tree.to_json())

        for path in store.root.glob("commit-*"):
            path.unlink()
        reloaded = CommitTree.from_json(store.load_tree(), store=store)

        assert store.list_commit_ids() == set()
        assert store.validate_commit_blobs(reloaded.commit_ids()) == set(tree.commit_ids())

    def test_require_raises_integrity_error_with_missing_ids(self, store):
        store.save_commit_blob("a", b"a")
        with pytest.raises(IntegrityError) as exc_info:
            store.require_commit_blobs(["a", "b", "c"])
        assert exc_info.value.missing_ids == {"b", "c"}


class TestTreeRecordAndWorkingFile:
    def test_load_tree_absent(self, store):
        assert store.load_tree() is None

    def test_save_and_load_tree(self, store):
        store.save_tree('{"version": "1.0"}')
        assert store.load_tree() == '{"version": "1.0"}'

    def test_write_tracked_file_replaces_contents(self, store, model_file):
        store.write_tracked_file(b"restored")
        assert model_file.read_bytes() == b"restored"
        assert store.read_tracked_file() == b"restored"

    def test_read_missing_tracked_file(self, store, model_file):
        model_file.unlink()
        with pytest.raises(NotFoundError):
            store.read_tracked_file()
