"""On-disk persistence of change sets and per-session summary indexes.

Layout under the changes directory::

    <session>/index.json         summary list, most recent first
    <session>/runs/<run>.json    one full change set per run
    <session>/baselines/<run>.json  pre-run snapshot while the run is open

Directory and file names are percent-encoded so any session key or run id
is filesystem-safe. Unreadable or unparseable documents are treated as
absent, which lets the index rebuild itself from the run documents.
"""

import base64
import binascii
import json
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, List, Optional, Tuple
from urllib.parse import quote, unquote

import aiofiles
import aiofiles.os
from pydantic import TypeAdapter, ValidationError

from page_changes.core.errors import InvalidChangeSetIdError
from page_changes.models.change import ChangeSet, utc_now
from page_changes.models.summary import ChangeSetSummary

logger = logging.getLogger(__name__)

INDEX_FILE_NAME = "index.json"
RUNS_DIR_NAME = "runs"
ID_SEPARATOR = "::"

_summary_list = TypeAdapter(List[ChangeSetSummary])


def encode_change_set_id(session_key: str, run_id: str) -> str:
    """Encode a (session, run) pair as an opaque, URL-safe id."""
    raw = f"{session_key}{ID_SEPARATOR}{run_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_change_set_id(change_set_id: str) -> Tuple[str, str]:
    """Decode an id back into (session_key, run_id)."""
    padded = change_set_id + "=" * (-len(change_set_id) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidChangeSetIdError("Invalid change set id") from e

    session_key, separator, run_id = raw.partition(ID_SEPARATOR)
    if not separator or not session_key or not run_id:
        raise InvalidChangeSetIdError("Invalid change set id")
    return session_key, run_id


def encode_segment(value: str) -> str:
    # "." is escaped too so "." and ".." cannot name a parent directory
    return quote(value, safe="").replace(".", "%2E")


def decode_segment(value: str) -> str:
    return unquote(value)


async def write_text_atomic(file_path: Path, payload: str) -> None:
    """Write through a temporary sibling so readers never see a partial file."""
    await aiofiles.os.makedirs(file_path.parent, exist_ok=True)
    tmp_path = file_path.with_name(f".{file_path.name}.{uuid.uuid4().hex}.tmp")
    async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
        await f.write(payload)
    await aiofiles.os.replace(tmp_path, file_path)


def to_summary(change_set: ChangeSet) -> ChangeSetSummary:
    return ChangeSetSummary.from_change_set(change_set)


def sort_summaries(summaries: List[ChangeSetSummary]) -> List[ChangeSetSummary]:
    """Order summaries most recent first by ended_at, falling back to started_at."""
    return sorted(summaries, key=lambda s: s.sort_time, reverse=True)


class ChangeStore:
    """Reads and writes change set documents and session indexes."""

    def __init__(self, changes_dir: Path, retention_days: int = 30):
        self.changes_dir = Path(changes_dir)
        self.retention_days = retention_days

    def get_session_dir(self, session_key: str) -> Path:
        return self.changes_dir / encode_segment(session_key)

    def get_change_set_path(self, session_key: str, run_id: str) -> Path:
        return self.get_session_dir(session_key) / RUNS_DIR_NAME / f"{encode_segment(run_id)}.json"

    def get_session_index_path(self, session_key: str) -> Path:
        return self.get_session_dir(session_key) / INDEX_FILE_NAME

    async def _read_json(self, file_path: Path) -> Optional[Any]:
        try:
            async with aiofiles.open(file_path, encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", file_path, e)
            return None

        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning("Ignoring corrupt JSON in %s: %s", file_path, e)
            return None

    async def _write_json(self, file_path: Path, payload: str) -> None:
        await write_text_atomic(file_path, payload)

    async def read_change_set(self, session_key: str, run_id: str) -> Optional[ChangeSet]:
        return await self._read_change_set_file(self.get_change_set_path(session_key, run_id))

    async def _read_change_set_file(self, file_path: Path) -> Optional[ChangeSet]:
        data = await self._read_json(file_path)
        if data is None:
            return None
        try:
            return ChangeSet.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring invalid change set %s: %s", file_path, e)
            return None

    async def write_change_set(self, change_set: ChangeSet) -> None:
        file_path = self.get_change_set_path(change_set.session_key, change_set.run_id)
        await self._write_json(file_path, change_set.model_dump_json(indent=2))

    async def read_session_index(self, session_key: str) -> List[ChangeSetSummary]:
        data = await self._read_json(self.get_session_index_path(session_key))
        if not isinstance(data, list):
            return []
        try:
            return _summary_list.validate_python(data)
        except ValidationError as e:
            logger.warning("Ignoring invalid index for session %s: %s", session_key, e)
            return []

    async def write_session_index(
        self, session_key: str, summaries: List[ChangeSetSummary]
    ) -> None:
        payload = _summary_list.dump_json(summaries, indent=2).decode("utf-8")
        await self._write_json(self.get_session_index_path(session_key), payload)

    async def update_session_index(self, summary: ChangeSetSummary) -> None:
        """Upsert a summary by id, placing it first."""
        summaries = await self.read_session_index(summary.session_key)
        summaries = [s for s in summaries if s.id != summary.id]
        summaries.insert(0, summary)
        await self.write_session_index(summary.session_key, summaries)

    async def save(self, change_set: ChangeSet) -> None:
        """Write a change set and re-index it."""
        await self.write_change_set(change_set)
        await self.update_session_index(to_summary(change_set))

    async def _scan_run_files(self, session_dir: Path) -> List[Path]:
        runs_dir = session_dir / RUNS_DIR_NAME
        try:
            entries = list(await aiofiles.os.scandir(runs_dir))
        except OSError:
            return []
        return sorted(
            Path(entry.path)
            for entry in entries
            if entry.is_file() and entry.name.endswith(".json") and not entry.name.startswith(".")
        )

    async def list_change_sets(self, session_key: str) -> List[ChangeSetSummary]:
        """List summaries for a session, rebuilding the index if it is missing or empty."""
        index = await self.read_session_index(session_key)
        if index:
            return index

        summaries = []
        for file_path in await self._scan_run_files(self.get_session_dir(session_key)):
            change_set = await self._read_change_set_file(file_path)
            if change_set:
                summaries.append(to_summary(change_set))

        summaries = sort_summaries(summaries)
        if summaries:
            logger.info("Rebuilt index for session %s (%d change sets)", session_key, len(summaries))
            await self.write_session_index(session_key, summaries)
        return summaries

    async def list_session_keys(self) -> List[str]:
        try:
            entries = list(await aiofiles.os.scandir(self.changes_dir))
        except OSError:
            return []
        return sorted(decode_segment(entry.name) for entry in entries if entry.is_dir())

    async def prune_old_change_sets(
        self, session_key: Optional[str] = None, now: Optional[datetime] = None
    ) -> int:
        """Delete change sets older than the retention window; returns how many."""
        cutoff = (now or utc_now()) - timedelta(days=self.retention_days)

        if session_key is not None:
            session_dirs = [self.get_session_dir(session_key)]
        else:
            session_dirs = [self.get_session_dir(key) for key in await self.list_session_keys()]

        removed = 0
        for session_dir in session_dirs:
            removed += await self._prune_session_dir(session_dir, cutoff)
        if removed:
            logger.info("Pruned %d change sets older than %s", removed, cutoff.isoformat())
        return removed

    async def _prune_session_dir(self, session_dir: Path, cutoff: datetime) -> int:
        if not await aiofiles.os.path.isdir(session_dir):
            return 0

        removed = 0
        summaries = []
        for file_path in await self._scan_run_files(session_dir):
            change_set = await self._read_change_set_file(file_path)
            if change_set is None:
                continue
            if change_set.sort_time < cutoff:
                try:
                    await aiofiles.os.remove(file_path)
                    removed += 1
                    continue
                except OSError as e:
                    logger.warning("Could not prune %s: %s", file_path, e)
            summaries.append(to_summary(change_set))

        index_path = session_dir / INDEX_FILE_NAME
        if summaries:
            payload = _summary_list.dump_json(sort_summaries(summaries), indent=2)
            await self._write_json(index_path, payload.decode("utf-8"))
        else:
            try:
                await aiofiles.os.remove(index_path)
            except FileNotFoundError:
                pass
        return removed

