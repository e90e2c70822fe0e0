"""Data models for Page Changes."""

from .change import (
    ChangeFileEntry,
    ChangeHunk,
    ChangeSet,
    ChangeSetStatus,
    ChangeSetTotals,
    FileEventType,
    FileStats,
    compute_totals,
    ensure_utc,
    utc_now,
)
from .revert import RevertMode, RevertResult, RunStartResult
from .summary import ChangeSetSummary, ChangeSetSummaryFile

__all__ = [
    "ChangeFileEntry",
    "ChangeHunk",
    "ChangeSet",
    "ChangeSetStatus",
    "ChangeSetSummary",
    "ChangeSetSummaryFile",
    "ChangeSetTotals",
    "FileEventType",
    "FileStats",
    "RevertMode",
    "RevertResult",
    "RunStartResult",
    "compute_totals",
    "ensure_utc",
    "utc_now",
]
