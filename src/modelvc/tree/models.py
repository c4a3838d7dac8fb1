"""Data models for the commit/branch tree.

The serialized form uses camelCase keys so the local ``tree.json`` record and
the remote copy shared with other clients have the same schema::

    {
      "version": "1.0",
      "activeBranchId": "...",
      "currentCommitId": "...",
      "branches": [{"id", "name", "headCommitId", "color", "isMain",
                    "parentBranchId", "originCommitId"}],
      "commits": [{"id", "message", "timestamp", "parentCommitId",
                   "branchId", "starred"}],
      "cloudSyncedCommitIds": [...]
    }
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TREE_FORMAT_VERSION = "1.0"


class _TreeRecordModel(BaseModel):
    """Common settings: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        validate_assignment=True,
    )


class Commit(_TreeRecordModel):
    """An immutable named snapshot of the tracked file."""

    id: str
    message: str
    timestamp: int = Field(description="Creation time in epoch milliseconds")
    parent_commit_id: Optional[str] = None
    branch_id: str
    starred: bool = False


class Branch(_TreeRecordModel):
    """A named, mutable pointer to the latest commit in one line of history."""

    id: str
    name: str
    head_commit_id: Optional[str] = None
    color: str
    is_main: bool = False
    parent_branch_id: Optional[str] = None
    origin_commit_id: Optional[str] = None


class TreeRecord(_TreeRecordModel):
    """The persisted aggregate: every branch and commit of one tracked file."""

    version: str = TREE_FORMAT_VERSION
    active_branch_id: Optional[str] = None
    current_commit_id: Optional[str] = None
    branches: List[Branch] = Field(default_factory=list)
    commits: List[Commit] = Field(default_factory=list)
    cloud_synced_commit_ids: List[str] = Field(default_factory=list)
