"""Summary model used for listing change sets without their content."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator

from page_changes.models.change import ChangeSet, ChangeSetStatus, ChangeSetTotals, ensure_utc


class ChangeSetSummaryFile(BaseModel):
    path: str
    additions: int = 0
    deletions: int = 0
    too_large: bool = False


class ChangeSetSummary(BaseModel):
    """Represents a change set in a session index."""

    id: str
    session_key: str
    run_id: str
    status: ChangeSetStatus
    started_at: datetime
    ended_at: Optional[datetime] = None
    updated_at: datetime
    totals: ChangeSetTotals
    files: List[ChangeSetSummaryFile] = []

    @field_validator("started_at", "ended_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_active(self) -> bool:
        """Check if the summarized run is still in progress."""
        return self.status == ChangeSetStatus.ACTIVE

    @property
    def sort_time(self) -> datetime:
        return self.ended_at or self.started_at

    @classmethod
    def from_change_set(cls, change_set: ChangeSet) -> "ChangeSetSummary":
        """Project a full change set onto its summary."""
        return cls(
            id=change_set.id,
            session_key=change_set.session_key,
            run_id=change_set.run_id,
            status=change_set.status,
            started_at=change_set.started_at,
            ended_at=change_set.ended_at,
            updated_at=change_set.updated_at,
            totals=change_set.totals,
            files=[
                ChangeSetSummaryFile(
                    path=entry.path,
                    additions=entry.stats.additions if entry.stats else 0,
                    deletions=entry.stats.deletions if entry.stats else 0,
                    too_large=entry.too_large,
                )
                for entry in change_set.files
            ],
        )
