"""Change recording and revert service.

Each operation is a self-contained read-modify-write of one change set
document. There is no locking: two writers touching the same (session, run)
race and the last write wins, which is acceptable while a session runs one
agent run at a time.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import List, Optional, Union

from page_changes.core.baseline import BaselineStore
from page_changes.core.config import ChangesConfig
from page_changes.core.diff import (
    DEFAULT_CONTEXT_LINES,
    apply_reverse_patch,
    build_reverse_patch,
    compute_hunks,
    compute_stats,
)
from page_changes.core.errors import InvalidPathError, PageNotFoundError, PageStorageError
from page_changes.core.pages import PageStorage
from page_changes.core.storage import ChangeStore, decode_change_set_id, encode_change_set_id
from page_changes.models.change import (
    ChangeFileEntry,
    ChangeHunk,
    ChangeSet,
    ChangeSetStatus,
    FileEventType,
    utc_now,
)
from page_changes.models.revert import RevertMode, RevertResult, RunStartResult
from page_changes.models.summary import ChangeSetSummary

logger = logging.getLogger(__name__)


class ChangeService:
    """Records file events into change sets and reverts them on request."""

    def __init__(
        self,
        store: ChangeStore,
        pages: PageStorage,
        baselines: BaselineStore,
        max_file_size: int = 1_000_000,
        read_retry_attempts: int = 4,
        read_retry_backoff: float = 0.08,
        context_lines: int = DEFAULT_CONTEXT_LINES,
    ):
        self.store = store
        self.pages = pages
        self.baselines = baselines
        self.max_file_size = max_file_size
        self.read_retry_attempts = read_retry_attempts
        self.read_retry_backoff = read_retry_backoff
        self.context_lines = context_lines

    @classmethod
    def from_config(cls, config: ChangesConfig) -> "ChangeService":
        """Wire up a service and its collaborators from configuration."""
        pages = PageStorage(config.pages_dir)
        return cls(
            store=ChangeStore(config.changes_dir, retention_days=config.retention_days),
            pages=pages,
            baselines=BaselineStore(
                pages, max_file_size=config.max_file_size, snapshot_dir=config.changes_dir
            ),
            max_file_size=config.max_file_size,
            read_retry_attempts=config.read_retry_attempts,
            read_retry_backoff=config.read_retry_backoff,
            context_lines=config.context_lines,
        )

    # Change set lifecycle

    async def ensure_change_set(
        self,
        session_key: str,
        run_id: str,
        status: ChangeSetStatus = ChangeSetStatus.ACTIVE,
        started_at: Optional[datetime] = None,
    ) -> ChangeSet:
        """Get the change set for a run, creating it if needed."""
        existing = await self.store.read_change_set(session_key, run_id)
        if existing:
            return existing

        now = utc_now()
        change_set = ChangeSet(
            id=encode_change_set_id(session_key, run_id),
            session_key=session_key,
            run_id=run_id,
            status=status,
            started_at=started_at or now,
            updated_at=now,
            files=[],
        )
        await self.store.save(change_set)
        logger.info("Created change set for %s/%s", session_key, run_id)
        return change_set

    async def finalize_change_set(
        self, session_key: str, run_id: str, ended_at: Optional[datetime] = None
    ) -> Optional[ChangeSet]:
        """Mark a run's change set completed; None if the run was never tracked."""
        change_set = await self.store.read_change_set(session_key, run_id)
        if not change_set:
            return None

        now = utc_now()
        change_set.status = ChangeSetStatus.COMPLETED
        change_set.ended_at = ended_at or now
        change_set.updated_at = now
        await self.store.save(change_set)
        logger.info(
            "Finalized %s/%s: +%d -%d in %d files",
            session_key,
            run_id,
            change_set.totals.additions,
            change_set.totals.deletions,
            change_set.totals.files_changed,
        )
        return change_set

    async def finalize_orphaned_runs(
        self, session_key: str, exclude_run_id: Optional[str] = None
    ) -> List[str]:
        """Complete every other active run of a session whose end signal was lost."""
        summaries = await self.store.list_change_sets(session_key)
        closed = []
        for summary in summaries:
            if not summary.is_active or summary.run_id == exclude_run_id:
                continue
            change_set = await self.store.read_change_set(session_key, summary.run_id)
            if not change_set or not change_set.is_active:
                continue

            now = utc_now()
            change_set.status = ChangeSetStatus.COMPLETED
            change_set.ended_at = change_set.ended_at or now
            change_set.updated_at = now
            await self.store.save(change_set)
            closed.append(summary.run_id)

        if closed:
            logger.warning("Closed orphaned runs for session %s: %s", session_key, closed)
        return closed

    async def start_run(
        self, session_key: str, run_id: str, started_at: Optional[datetime] = None
    ) -> RunStartResult:
        """Handle a run start signal."""
        await self.store.prune_old_change_sets(session_key)
        orphaned = await self.finalize_orphaned_runs(session_key, run_id)
        for orphaned_run_id in orphaned:
            await self.baselines.clear(session_key, orphaned_run_id)

        change_set = await self.ensure_change_set(
            session_key, run_id, ChangeSetStatus.ACTIVE, started_at
        )
        await self.baselines.build(session_key, run_id)
        return RunStartResult(change_set=change_set, orphaned_runs_closed=orphaned)

    async def end_run(
        self, session_key: str, run_id: str, ended_at: Optional[datetime] = None
    ) -> Optional[ChangeSet]:
        """Handle a run end signal and release the run's baseline."""
        await self.store.prune_old_change_sets(session_key)
        try:
            return await self.finalize_change_set(session_key, run_id, ended_at)
        finally:
            await self.baselines.clear(session_key, run_id)

    # Recording

    async def record_file_change(
        self,
        session_key: str,
        run_id: str,
        path: str,
        event_type: Union[FileEventType, str],
        timestamp: Optional[datetime] = None,
    ) -> ChangeSet:
        """Merge one file-system event into the run's change set."""
        if not self.pages.validate_path(path):
            raise InvalidPathError(f'Invalid path: "{path}"', path)
        event_type = FileEventType(event_type)

        change_set = await self.ensure_change_set(session_key, run_id)
        existing = change_set.get_file(path)

        has_snapshot = await self.baselines.load(session_key, run_id)
        baseline = self.baselines.get(session_key, run_id, path)
        if existing:
            exists_before = existing.exists_before
            exists_after = existing.exists_after
            before_content = existing.before_content
            before_too_large = existing.before_too_large
            before_known = existing.before_known
        else:
            exists_before = event_type != FileEventType.ADDED
            exists_after = event_type != FileEventType.REMOVED
            if baseline is None and has_snapshot:
                # Not in the pre-run snapshot, so it was created during the run
                exists_before = False
            before_content = baseline.content if exists_before and baseline else ""
            before_too_large = bool(exists_before and baseline and baseline.too_large)
            # Without a snapshot the pre-run content of an existing file is unknown
            before_known = not exists_before or baseline is not None
            if not before_known:
                logger.warning(
                    "No baseline for %s/%s; pre-run content of %s is unknown",
                    session_key,
                    run_id,
                    path,
                )

        if event_type == FileEventType.ADDED:
            exists_after = True
        elif event_type == FileEventType.REMOVED:
            exists_after = False

        after_content = ""
        after_too_large = False
        after_known = True
        if exists_after:
            size = await self.pages.page_size(path)
            if size is not None and size > self.max_file_size:
                after_too_large = True
            else:
                content = await self._read_page_with_retry(path)
                if content is not None:
                    after_content = content
                elif existing:
                    after_content = existing.after_content
                    after_too_large = existing.after_too_large
                    after_known = existing.after_known
                else:
                    after_content = before_content
                    after_known = before_known

        entry = ChangeFileEntry(
            path=path,
            before_content=before_content,
            after_content=after_content,
            exists_before=exists_before,
            exists_after=exists_after,
            before_too_large=before_too_large,
            after_too_large=after_too_large,
            before_known=before_known,
            after_known=after_known,
        )
        if entry.diffable:
            entry.stats = compute_stats(before_content, after_content)

        if existing:
            change_set.files[change_set.files.index(existing)] = entry
        else:
            change_set.files.append(entry)

        change_set.updated_at = timestamp or utc_now()
        await self.store.save(change_set)
        logger.debug("Recorded %s for %s in %s/%s", event_type.value, path, session_key, run_id)
        return change_set

    async def _read_page_with_retry(self, path: str) -> Optional[str]:
        """Read current content, retrying while a just-signalled write lands."""
        for attempt in range(self.read_retry_attempts):
            try:
                page = await self.pages.read_page(path)
                return page.content
            except PageStorageError as e:
                if attempt >= self.read_retry_attempts - 1:
                    logger.warning(
                        "Giving up reading %s after %d attempts: %s", path, attempt + 1, e
                    )
                    return None
                await asyncio.sleep(self.read_retry_backoff * (attempt + 1))
        return None

    # Reading

    async def list_change_sets(self, session_key: str) -> List[ChangeSetSummary]:
        await self.store.prune_old_change_sets(session_key)
        return await self.store.list_change_sets(session_key)

    async def load_change_set_with_hunks(
        self, session_key: str, run_id: str
    ) -> Optional[ChangeSet]:
        """Load a change set, computing and persisting any missing hunks."""
        change_set = await self.store.read_change_set(session_key, run_id)
        if not change_set:
            return None

        changed = False
        for entry in change_set.files:
            if not entry.diffable or entry.hunks is not None:
                continue
            entry.hunks = self._hunks_for(entry)
            changed = True

        if changed:
            await self.store.save(change_set)
        return change_set

    async def load_change_set(self, change_set_id: str) -> Optional[ChangeSet]:
        """Load a change set by its opaque id."""
        session_key, run_id = decode_change_set_id(change_set_id)
        await self.store.prune_old_change_sets(session_key)
        return await self.load_change_set_with_hunks(session_key, run_id)

    # Reverting

    async def revert_change_set(
        self,
        change_set: ChangeSet,
        mode: Union[RevertMode, str],
        path: Optional[str] = None,
        hunk_id: Optional[str] = None,
    ) -> RevertResult:
        """Undo a hunk, a file, or every file of a change set."""
        mode = RevertMode(mode)

        if mode == RevertMode.HUNK:
            if not path or not hunk_id:
                return RevertResult(applied=False, change_set=change_set)
            applied = await self._revert_hunk(change_set, path, hunk_id)
        elif mode == RevertMode.FILE:
            entry = change_set.get_file(path) if path else None
            if entry is None:
                return RevertResult(applied=False, change_set=change_set)
            applied = await self._restore_file(entry)
        else:
            # Entries that cannot be restored are skipped, not fatal
            for entry in change_set.files:
                await self._restore_file(entry)
            applied = True

        if not applied:
            return RevertResult(applied=False, change_set=change_set)

        change_set.updated_at = utc_now()
        await self.store.save(change_set)
        logger.info("Reverted %s of %s (applied=%s)", mode.value, change_set.id, applied)
        return RevertResult(applied=applied, change_set=change_set)

    async def _revert_hunk(self, change_set: ChangeSet, path: str, hunk_id: str) -> bool:
        entry = change_set.get_file(path)
        if entry is None or not entry.diffable:
            return False
        if entry.hunks is None:
            entry.hunks = self._hunks_for(entry)
        hunk = next((h for h in entry.hunks if h.id == hunk_id), None)
        if hunk is None:
            return False

        try:
            page = await self.pages.read_page(path)
        except PageStorageError as e:
            logger.warning("Cannot revert hunk %s: %s", hunk_id, e)
            return False

        updated = apply_reverse_patch(page.content, build_reverse_patch(path, hunk))
        if updated is None:
            logger.warning("Hunk %s no longer applies to %s", hunk_id, path)
            return False
        try:
            await self.pages.write_page(path, updated)
        except PageStorageError as e:
            logger.warning("Cannot write reverted hunk to %s: %s", path, e)
            return False

        entry.after_content = updated
        self._refresh_entry(entry)
        return True

    async def _restore_file(self, entry: ChangeFileEntry) -> bool:
        """Put a file back into its pre-run state."""
        if not entry.before_captured:
            logger.warning("Cannot restore %s: pre-run content was not captured", entry.path)
            return False

        try:
            if entry.exists_before:
                await self.pages.write_page(entry.path, entry.before_content)
            elif entry.exists_after:
                await self.pages.delete_page(entry.path)
        except PageNotFoundError:
            logger.debug("%s already deleted", entry.path)
        except PageStorageError as e:
            logger.warning("Cannot restore %s: %s", entry.path, e)
            return False

        entry.after_content = entry.before_content
        entry.exists_after = entry.exists_before
        entry.after_too_large = False
        entry.after_known = True
        self._refresh_entry(entry)
        return True

    def _refresh_entry(self, entry: ChangeFileEntry) -> None:
        if not entry.diffable:
            entry.stats = None
            entry.hunks = None
            return
        entry.stats = compute_stats(entry.before_content, entry.after_content)
        entry.hunks = self._hunks_for(entry)

    def _hunks_for(self, entry: ChangeFileEntry) -> List[ChangeHunk]:
        return compute_hunks(
            entry.path, entry.before_content, entry.after_content, self.context_lines
        )

    async def build_undo_change_set(self, change_set: ChangeSet) -> ChangeSet:
        """Synthesize the inverse of a change set so a full revert can be redone."""
        now = utc_now()
        stamp = int(time.time() * 1000)
        while await self.store.read_change_set(change_set.session_key, f"undo-{stamp}"):
            stamp += 1
        run_id = f"undo-{stamp}"

        files = []
        for entry in change_set.files:
            swapped = ChangeFileEntry(
                path=entry.path,
                before_content=entry.after_content,
                after_content=entry.before_content,
                exists_before=entry.exists_after,
                exists_after=entry.exists_before,
                before_too_large=entry.after_too_large,
                after_too_large=entry.before_too_large,
                before_known=entry.after_known,
                after_known=entry.before_known,
            )
            self._refresh_entry(swapped)
            files.append(swapped)

        undo_set = ChangeSet(
            id=encode_change_set_id(change_set.session_key, run_id),
            session_key=change_set.session_key,
            run_id=run_id,
            status=ChangeSetStatus.UNDO,
            started_at=now,
            ended_at=now,
            updated_at=now,
            files=files,
        )
        await self.store.save(undo_set)
        logger.info("Built undo change set %s for %s", undo_set.id, change_set.id)
        return undo_set

    async def revert(
        self,
        change_set_id: str,
        mode: Union[RevertMode, str],
        path: Optional[str] = None,
        hunk_id: Optional[str] = None,
    ) -> Optional[RevertResult]:
        """Revert by id; a full revert also returns the undo change set."""
        mode = RevertMode(mode)
        session_key, run_id = decode_change_set_id(change_set_id)
        await self.store.prune_old_change_sets(session_key)

        change_set = await self.store.read_change_set(session_key, run_id)
        if not change_set:
            return None

        snapshot = change_set.model_copy(deep=True) if mode == RevertMode.ALL else None
        result = await self.revert_change_set(change_set, mode, path, hunk_id)
        if result.applied and snapshot is not None:
            result.undo_change_set = await self.build_undo_change_set(snapshot)
        return result
