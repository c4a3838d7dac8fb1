"""Unit tests for CommitTree history operations."""

import json
import re
from unittest.mock import Mock

import pytest

from modelvc.exceptions import (
    IntegrityError,
    NotFoundError,
    SnapshotIOError,
    ValidationError,
)
from modelvc.tree.commit_tree import (
    BRANCH_COLOR_PALETTE,
    MAIN_BRANCH_NAME,
    CommitTree,
    generate_id,
)
from modelvc.tree.models import Branch, Commit, TreeRecord


def _record_with_commits(*timestamps):
    """Tree record on a single main branch with chained commits."""
    main = Branch(id="main", name="main", color="#3b82f6", is_main=True)
    commits = []
    parent = None
    for i, ts in enumerate(timestamps):
        commit_id = f"c{i}"
        commits.append(
            Commit(
                id=commit_id,
                message=f"commit {i}",
                timestamp=ts,
                parent_commit_id=parent,
                branch_id="main",
            )
        )
        parent = commit_id
    main.head_commit_id = parent
    return TreeRecord(
        active_branch_id="main",
        current_commit_id=parent,
        branches=[main],
        commits=commits,
    )


class TestGenerateId:
    def test_id_format(self):
        commit_id = generate_id(1718031234567)
        assert re.fullmatch(r"1718031234567-[0-9a-z]{9}", commit_id)

    def test_ids_are_unique(self):
        ids = {generate_id(1000) for _ in range(200)}
        assert len(ids) == 200


class TestCreate:
    def test_new_tree_has_only_empty_main_branch(self):
        tree = CommitTree.create()

        assert len(tree.branches) == 1
        main = tree.main_branch()
        assert main.name == MAIN_BRANCH_NAME
        assert main.is_main
        assert main.parent_branch_id is None
        assert main.head_commit_id is None
        assert main.color == "#3b82f6"
        assert tree.commits == []
        assert tree.current_commit_id is None
        assert tree.active_branch_id == main.id

    def test_custom_main_color(self):
        tree = CommitTree.create(main_color="#000000")
        assert tree.main_branch().color == "#000000"


class TestCreateCommit:
    def setup_method(self):
        self.tree = CommitTree.create()
        self.main_id = self.tree.main_branch().id

    def test_chain_of_commits_tracks_head_and_ancestry(self):
        c1 = self.tree.create_commit("first", self.main_id)
        c2 = self.tree.create_commit("second", self.main_id)
        c3 = self.tree.create_commit("third", self.main_id)

        assert c1.parent_commit_id is None
        assert c2.parent_commit_id == c1.id
        assert c3.parent_commit_id == c2.id
        assert [c.id for c in self.tree.ancestry(c3.id)] == [c3.id, c2.id, c1.id]
        assert self.tree.main_branch().head_commit_id == c3.id
        assert self.tree.current_commit_id == c3.id

    def test_message_is_trimmed(self):
        commit = self.tree.create_commit("  tweak fillet  \n", self.main_id)
        assert commit.message == "tweak fillet"

    @pytest.mark.parametrize("message", ["", "   ", "\n\t"])
    def test_blank_message_rejected(self, message):
        with pytest.raises(ValidationError):
            self.tree.create_commit(message, self.main_id)
        assert self.tree.commits == []

    def test_unknown_branch_rejected(self):
        with pytest.raises(ValidationError, match="unknown branch"):
            self.tree.create_commit("msg", "no-such-branch")

    def test_store_requires_blob(self, store):
        tree = CommitTree.create(store)
        with pytest.raises(ValidationError, match="blob is required"):
            tree.create_commit("msg", tree.main_branch().id)

    def test_blob_is_persisted_through_store(self, store):
        tree = CommitTree.create(store)
        commit = tree.create_commit("msg", tree.main_branch().id, b"payload")
        assert store.read_commit_blob(commit.id) == b"payload"

    def test_failed_blob_write_leaves_tree_unchanged(self):
        failing_store = Mock()
        failing_store.save_commit_blob.side_effect = SnapshotIOError("disk full")
        tree = CommitTree.create(failing_store)
        main = tree.main_branch()

        with pytest.raises(SnapshotIOError):
            tree.create_commit("msg", main.id, b"payload")

        assert tree.commits == []
        assert main.head_commit_id is None
        assert tree.current_commit_id is None


class TestBranches:
    def setup_method(self):
        self.tree = CommitTree.create()
        self.main_id = self.tree.main_branch().id
        self.root = self.tree.create_commit("root", self.main_id)

    def test_create_branch_from_commit(self):
        branch = self.tree.create_branch("feature", self.root.id)

        assert branch.origin_commit_id == self.root.id
        assert branch.head_commit_id == self.root.id
        assert branch.parent_branch_id == self.main_id
        assert not branch.is_main
        assert branch.color == BRANCH_COLOR_PALETTE[0]

    def test_palette_advances_with_branch_count(self):
        self.tree.create_branch("a", self.root.id)
        second = self.tree.create_branch("b", self.root.id)
        assert second.color == BRANCH_COLOR_PALETTE[1]

    def test_duplicate_name_rejected(self):
        self.tree.create_branch("feature", self.root.id)
        with pytest.raises(ValidationError, match="already exists"):
            self.tree.create_branch("feature", self.root.id)

    def test_names_compare_case_sensitively(self):
        self.tree.create_branch("feature", self.root.id)
        other = self.tree.create_branch("Feature", self.root.id)
        assert other.name == "Feature"

    def test_unknown_origin_rejected(self):
        with pytest.raises(ValidationError):
            self.tree.create_branch("feature", "missing")

    def test_blank_name_rejected(self):
        with pytest.raises(ValidationError):
            self.tree.create_branch("  ", self.root.id)

    def test_switch_branch_checks_out_head(self):
        feature = self.tree.create_branch("feature", self.root.id)
        child = self.tree.create_commit("on feature", feature.id)
        self.tree.switch_branch(self.main_id)

        assert self.tree.current_commit_id == self.root.id
        self.tree.switch_branch(feature.id)
        assert self.tree.active_branch_id == feature.id
        assert self.tree.current_commit_id == child.id

    def test_switch_unknown_branch(self):
        with pytest.raises(NotFoundError):
            self.tree.switch_branch("nope")

    def test_ancestry_crosses_fork_point(self):
        feature = self.tree.create_branch("feature", self.root.id)
        child = self.tree.create_commit("on feature", feature.id)
        assert [c.id for c in self.tree.ancestry(child.id)] == [child.id, self.root.id]
        assert self.tree.is_ancestor(self.root.id, child.id)
        assert not self.tree.is_ancestor(child.id, self.root.id)


class TestRestore:
    def test_branch_switch_restore_round_trip(self, store):
        tree = CommitTree.create(store)
        main_id = tree.main_branch().id
        a = tree.create_commit("A", main_id, b"A")
        feature = tree.create_branch("feat", a.id)
        tree.switch_branch(feature.id)
        b = tree.create_commit("B", feature.id, b"B")

        assert tree.restore_to_commit(a.id) == b"A"
        assert tree.current_commit_id == a.id
        assert tree.main_branch().head_commit_id == a.id
        assert tree.get_branch(feature.id).head_commit_id == b.id

    def test_missing_blob_does_not_move_current(self, store):
        tree = CommitTree.create(store)
        a = tree.create_commit("A", tree.main_branch().id, b"A")
        b = tree.create_commit("B", tree.main_branch().id, b"B")
        store.commit_blob_path(a.id).unlink()

        with pytest.raises(NotFoundError):
            tree.restore_to_commit(a.id)
        assert tree.current_commit_id == b.id

    def test_unknown_commit(self, store):
        tree = CommitTree.create(store)
        with pytest.raises(NotFoundError):
            tree.restore_to_commit("nope")

    def test_restore_without_store(self):
        tree = CommitTree.create()
        a = tree.create_commit("A", tree.main_branch().id)
        with pytest.raises(NotFoundError):
            tree.restore_to_commit(a.id)


class TestQueries:
    def test_list_commits_newest_first_with_stable_ties(self):
        tree = CommitTree(_record_with_commits(100, 300, 300, 200))
        assert [c.id for c in tree.list_commits()] == ["c1", "c2", "c3", "c0"]

    def test_list_commits_filters_by_branch(self):
        tree = CommitTree.create()
        main_id = tree.main_branch().id
        root = tree.create_commit("root", main_id)
        feature = tree.create_branch("f", root.id)
        child = tree.create_commit("child", feature.id)

        assert [c.id for c in tree.list_commits(feature.id)] == [child.id]
        with pytest.raises(NotFoundError):
            tree.list_commits("nope")

    def test_starred_commits(self):
        tree = CommitTree(_record_with_commits(1, 2, 3))
        tree.star_commit("c0", True)
        tree.star_commit("c2", True)
        tree.star_commit("c2", False)
        assert [c.id for c in tree.starred_commits()] == ["c0"]

    def test_star_unknown_commit(self):
        tree = CommitTree.create()
        with pytest.raises(NotFoundError):
            tree.star_commit("nope", True)


class TestReconcileAndValidate:
    def test_reconcile_moves_active_branch_to_owner_of_current(self):
        tree = CommitTree.create()
        main_id = tree.main_branch().id
        root = tree.create_commit("root", main_id)
        feature = tree.create_branch("f", root.id)
        tree.switch_branch(feature.id)
        tree.record.current_commit_id = root.id

        tree.reconcile_for_save()
        assert tree.active_branch_id == main_id

    def test_valid_tree_passes(self):
        tree = CommitTree.create()
        main_id = tree.main_branch().id
        root = tree.create_commit("root", main_id)
        feature = tree.create_branch("f", root.id)
        tree.create_commit("child", feature.id)
        tree.validate()

    def test_dangling_parent_is_reported(self):
        record = _record_with_commits(1, 2)
        record.commits[1].parent_commit_id = "ghost"
        with pytest.raises(IntegrityError, match="ghost"):
            CommitTree(record).validate()

    def test_two_main_branches_are_reported(self):
        record = _record_with_commits(1)
        record.branches.append(
            Branch(id="other", name="other", color="#fff", is_main=True)
        )
        with pytest.raises(IntegrityError, match="main branch"):
            CommitTree(record).validate()

    def test_cycle_is_reported(self):
        record = _record_with_commits(1, 2)
        record.commits[0].parent_commit_id = "c1"
        with pytest.raises(IntegrityError, match="Cycle"):
            CommitTree(record).ancestry("c1")


class TestSyncLedger:
    def test_mark_synced_is_ordered_union(self):
        tree = CommitTree.create()
        tree.mark_synced(["a", "b"])
        tree.mark_synced(["b", "c", "a"])
        assert tree.synced_commit_ids() == ["a", "b", "c"]


class TestSerialization:
    def test_json_uses_camel_case_keys(self):
        tree = CommitTree(_record_with_commits(1, 2))
        data = json.loads(tree.to_json())

        assert data["version"] == "1.0"
        assert data["activeBranchId"] == "main"
        assert data["currentCommitId"] == "c1"
        assert data["cloudSyncedCommitIds"] == []
        assert data["branches"][0]["headCommitId"] == "c1"
        assert data["branches"][0]["isMain"] is True
        assert data["commits"][1]["parentCommitId"] == "c0"
        assert data["commits"][1]["branchId"] == "main"

    def test_round_trip(self):
        tree = CommitTree(_record_with_commits(1, 2, 3))
        tree.star_commit("c1", True)
        tree.mark_synced(["c0"])

        loaded = CommitTree.from_json(tree.to_json())
        assert loaded.to_dict() == tree.to_dict()
        assert CommitTree.from_dict(tree.to_dict()).to_dict() == tree.to_dict()

    def test_unknown_keys_are_ignored(self):
        data = CommitTree(_record_with_commits(1)).to_dict()
        data["previouslyWorkingBranchId"] = "main"
        data["commits"][0]["thumbnail"] = "ignored"

        loaded = CommitTree.from_dict(data)
        assert loaded.commit_ids() == ["c0"]

    def test_invalid_json_raises_integrity_error(self):
        with pytest.raises(IntegrityError):
            CommitTree.from_json('{"branches": "not-a-list"}')

    def test_replace_record_reindexes(self):
        tree = CommitTree.create()
        tree.replace_record(_record_with_commits(1, 2))
        assert tree.get_commit("c1").parent_commit_id == "c0"
        assert tree.has_commit("c0")
