"""Pre-run snapshots of the page tree, kept per (session, run)."""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Set, Tuple

import aiofiles
import aiofiles.os
from pydantic import BaseModel, TypeAdapter, ValidationError

from page_changes.core.errors import PageStorageError
from page_changes.core.pages import PageStorage
from page_changes.core.storage import encode_segment, write_text_atomic

logger = logging.getLogger(__name__)

# Directory holding space configuration rather than pages
SPACE_CONFIG_DIR = "_"
BASELINES_DIR_NAME = "baselines"

BaselineKey = Tuple[str, str]


class BaselineEntry(BaseModel):
    content: str = ""
    too_large: bool = False


_snapshot_adapter = TypeAdapter(Dict[str, BaselineEntry])


class BaselineStore:
    """Owns the "before" reference for every open run.

    A snapshot is captured once at run start and released when the run ends.
    When a snapshot directory is given, snapshots are also written to disk so
    a separate process handling later events of the same run sees them.
    Until a snapshot exists, lookups return None.
    """

    def __init__(
        self,
        pages: PageStorage,
        max_file_size: int = 1_000_000,
        snapshot_dir: Optional[Path] = None,
    ):
        self.pages = pages
        self.max_file_size = max_file_size
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir else None
        self._snapshots: Dict[BaselineKey, Dict[str, BaselineEntry]] = {}
        self._building: Set[BaselineKey] = set()

    def get_snapshot_path(self, session_key: str, run_id: str) -> Optional[Path]:
        if self.snapshot_dir is None:
            return None
        return (
            self.snapshot_dir
            / encode_segment(session_key)
            / BASELINES_DIR_NAME
            / f"{encode_segment(run_id)}.json"
        )

    def has_baseline(self, session_key: str, run_id: str) -> bool:
        """Check whether a snapshot for the run is loaded in this process."""
        return (session_key, run_id) in self._snapshots

    async def load(self, session_key: str, run_id: str) -> bool:
        """Make the run's snapshot available, reading it from disk if needed."""
        key = (session_key, run_id)
        if key in self._snapshots:
            return True

        snapshot_path = self.get_snapshot_path(session_key, run_id)
        if snapshot_path is None:
            return False
        try:
            async with aiofiles.open(snapshot_path, encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return False
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read baseline %s: %s", snapshot_path, e)
            return False

        try:
            self._snapshots[key] = _snapshot_adapter.validate_python(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("Ignoring corrupt baseline %s: %s", snapshot_path, e)
            return False
        return True

    async def build(self, session_key: str, run_id: str) -> None:
        """Walk the page tree and capture it; no-op if already captured."""
        key = (session_key, run_id)
        if key in self._building or await self.load(session_key, run_id):
            return

        self._building.add(key)
        try:
            entries: Dict[str, BaselineEntry] = {}
            await self._walk(self.pages.pages_dir, entries)
            self._snapshots[key] = entries

            snapshot_path = self.get_snapshot_path(session_key, run_id)
            if snapshot_path is not None:
                payload = _snapshot_adapter.dump_json(entries).decode("utf-8")
                await write_text_atomic(snapshot_path, payload)
            logger.debug(
                "Captured baseline for %s/%s: %d pages", session_key, run_id, len(entries)
            )
        finally:
            self._building.discard(key)

    def get(self, session_key: str, run_id: str, path: str) -> Optional[BaselineEntry]:
        """Get the captured entry for a path, or None."""
        snapshot = self._snapshots.get((session_key, run_id))
        if snapshot is None:
            return None
        return snapshot.get(path)

    async def clear(self, session_key: str, run_id: str) -> None:
        self._snapshots.pop((session_key, run_id), None)
        snapshot_path = self.get_snapshot_path(session_key, run_id)
        if snapshot_path is None:
            return
        try:
            await aiofiles.os.remove(snapshot_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove baseline %s: %s", snapshot_path, e)

    async def _walk(self, directory: Path, entries: Dict[str, BaselineEntry]) -> None:
        try:
            listing = list(await aiofiles.os.scandir(directory))
        except OSError:
            return

        for entry in sorted(listing, key=lambda e: e.name):
            if entry.name.startswith("."):
                continue
            full_path = Path(entry.path)
            if entry.is_dir():
                if entry.name == SPACE_CONFIG_DIR:
                    continue
                await self._walk(full_path, entries)
                continue
            if not entry.is_file() or not entry.name.endswith(".md"):
                continue

            rel_path = os.path.relpath(full_path, self.pages.pages_dir).replace(os.sep, "/")
            try:
                size = (await aiofiles.os.stat(full_path)).st_size
                if size > self.max_file_size:
                    entries[rel_path] = BaselineEntry(too_large=True)
                    continue
                page = await self.pages.read_page(rel_path)
            except (OSError, PageStorageError) as e:
                logger.debug("Skipping unreadable page %s: %s", rel_path, e)
                continue
            entries[rel_path] = BaselineEntry(content=page.content)
