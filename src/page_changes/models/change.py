"""Change set models for tracking agent edits during a run."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, computed_field, field_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so every timestamp is comparable."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ChangeSetStatus(str, Enum):
    """Lifecycle state of a change set."""

    ACTIVE = "active"
    COMPLETED = "completed"
    UNDO = "undo"


class FileEventType(str, Enum):
    """Raw file-system notification kinds forwarded by the watcher."""

    ADDED = "file-added"
    CHANGED = "file-changed"
    REMOVED = "file-removed"


class FileStats(BaseModel):
    """Line-level addition/deletion counts for one file."""

    additions: int = 0
    deletions: int = 0


class ChangeSetTotals(BaseModel):
    """Aggregate counts across every file in a change set."""

    additions: int = 0
    deletions: int = 0
    files_changed: int = 0


class ChangeHunk(BaseModel):
    """One contiguous region of change within a file."""

    id: str
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: List[str]
    adds: int = 0
    removes: int = 0


class ChangeFileEntry(BaseModel):
    """Before/after state of a single file touched during a run."""

    path: str
    before_content: str = ""
    after_content: str = ""
    exists_before: bool
    exists_after: bool
    before_too_large: bool = False
    after_too_large: bool = False
    # False when the file existed but no snapshot held its content
    before_known: bool = True
    after_known: bool = True
    stats: Optional[FileStats] = None
    # None means not computed yet; an empty list means no differences
    hunks: Optional[List[ChangeHunk]] = None

    @computed_field  # type: ignore[misc]
    @property
    def too_large(self) -> bool:
        """Either side exceeded the size ceiling."""
        return self.before_too_large or self.after_too_large

    @property
    def before_captured(self) -> bool:
        """Whether before_content is the real pre-run state of the file."""
        return not self.exists_before or (self.before_known and not self.before_too_large)

    @property
    def after_captured(self) -> bool:
        return not self.exists_after or (self.after_known and not self.after_too_large)

    @property
    def diffable(self) -> bool:
        """Stats and hunks are only meaningful when both sides were captured."""
        return self.before_captured and self.after_captured


class ChangeSet(BaseModel):
    """All file changes recorded for one (session, run) pair."""

    id: str
    session_key: str
    run_id: str
    status: ChangeSetStatus = ChangeSetStatus.ACTIVE
    started_at: datetime
    ended_at: Optional[datetime] = None
    updated_at: datetime
    files: List[ChangeFileEntry] = []

    model_config = ConfigDict(validate_assignment=True)

    @field_validator("started_at", "ended_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @computed_field  # type: ignore[misc]
    @property
    def totals(self) -> ChangeSetTotals:
        """Totals derived from the file entries."""
        return compute_totals(self.files)

    @property
    def is_active(self) -> bool:
        """Check if the run is still in progress."""
        return self.status == ChangeSetStatus.ACTIVE

    @property
    def sort_time(self) -> datetime:
        """Timestamp used for ordering and retention."""
        return self.ended_at or self.started_at

    def get_file(self, path: str) -> Optional[ChangeFileEntry]:
        """Get the entry for a path, if one was recorded."""
        return next((f for f in self.files if f.path == path), None)


def compute_totals(files: List[ChangeFileEntry]) -> ChangeSetTotals:
    """Sum file stats; every entry counts as a changed file."""
    totals = ChangeSetTotals()
    for entry in files:
        if entry.stats:
            totals.additions += entry.stats.additions
            totals.deletions += entry.stats.deletions
        totals.files_changed += 1
    return totals
