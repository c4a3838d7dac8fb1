"""Commit/branch tree: in-memory history model and its persisted record."""

from .commit_tree import (
    BRANCH_COLOR_PALETTE,
    MAIN_BRANCH_NAME,
    CommitTree,
    generate_id,
)
from .models import TREE_FORMAT_VERSION, Branch, Commit, TreeRecord

__all__ = [
    "BRANCH_COLOR_PALETTE",
    "MAIN_BRANCH_NAME",
    "TREE_FORMAT_VERSION",
    "Branch",
    "Commit",
    "CommitTree",
    "TreeRecord",
    "generate_id",
]
