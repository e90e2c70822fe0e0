"""Result models for run lifecycle and revert operations."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from page_changes.models.change import ChangeSet


class RevertMode(str, Enum):
    """Granularity of a revert."""

    ALL = "all"
    FILE = "file"
    HUNK = "hunk"


class RevertResult(BaseModel):
    """Outcome of a revert; applied is False when nothing could be undone."""

    applied: bool
    change_set: ChangeSet
    undo_change_set: Optional[ChangeSet] = None


class RunStartResult(BaseModel):
    change_set: ChangeSet
    orphaned_runs_closed: List[str] = []
