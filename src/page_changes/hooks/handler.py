#!/usr/bin/env python3
"""Hook handler for agent run lifecycle and file watcher events.

Reads one JSON event per line from stdin and routes it by shape:

- ``{"phase": "start"|"end", "sessionKey", "runId", "timestamp"?}``
  drives run start/end (baseline capture, orphan reconciliation, finalize).
- ``{"type": "file-added"|"file-changed"|"file-removed", "sessionKey",
  "runId", "path", "timestamp"?}`` records one file change.
- ``{"changeSetId", "mode", "path"?, "hunkId"?}`` reverts a change set.

All events are handled in a single event loop so a baseline captured by a
start event is available to the file events that follow it. One JSON
response is written to stdout per event.
"""

import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, TextIO

from page_changes.core.config import ChangesConfig, load_config
from page_changes.core.errors import InvalidChangeSetIdError, PageStorageError
from page_changes.core.service import ChangeService
from page_changes.models.change import FileEventType

logger = logging.getLogger(__name__)

RUN_PHASES = ("start", "end")
FILE_EVENT_TYPES = tuple(event.value for event in FileEventType)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch milliseconds or an ISO-8601 string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def error_response(message: str, status: int) -> Dict[str, Any]:
    return {"ok": False, "error": message, "status": status}


async def handle_run_event(service: ChangeService, event: Dict[str, Any]) -> Dict[str, Any]:
    """Handle a run start/end signal from the agent gateway."""
    session_key = event.get("sessionKey")
    run_id = event.get("runId")
    phase = event.get("phase")
    if not session_key or not run_id or phase not in RUN_PHASES:
        return error_response("Missing fields", 400)

    timestamp = parse_timestamp(event.get("timestamp"))
    if phase == "start":
        result = await service.start_run(
            session_key, run_id, parse_timestamp(event.get("startedAt")) or timestamp
        )
        return {"ok": True, "orphanedRunsClosed": result.orphaned_runs_closed}

    change_set = await service.end_run(
        session_key, run_id, parse_timestamp(event.get("endedAt")) or timestamp
    )
    return {
        "ok": True,
        "changeSet": change_set.model_dump(mode="json") if change_set else None,
    }


async def handle_file_event(service: ChangeService, event: Dict[str, Any]) -> Dict[str, Any]:
    """Handle a raw file watcher notification."""
    session_key = event.get("sessionKey")
    run_id = event.get("runId")
    path = event.get("path")
    event_type = event.get("type")
    if not session_key or not run_id or not path or event_type not in FILE_EVENT_TYPES:
        return error_response("Missing fields", 400)

    await service.store.prune_old_change_sets(session_key)
    try:
        change_set = await service.record_file_change(
            session_key,
            run_id,
            path,
            event_type,
            parse_timestamp(event.get("timestamp")),
        )
    except PageStorageError as e:
        return error_response(str(e), 400)
    return {"ok": True, "changeSet": change_set.model_dump(mode="json")}


async def handle_revert_event(service: ChangeService, event: Dict[str, Any]) -> Dict[str, Any]:
    """Handle an undo request from the review UI."""
    change_set_id = event.get("changeSetId")
    mode = event.get("mode")
    if not change_set_id or mode not in ("all", "file", "hunk"):
        return error_response("Missing fields", 400)

    try:
        result = await service.revert(
            change_set_id, mode, event.get("path"), event.get("hunkId")
        )
    except InvalidChangeSetIdError:
        return error_response("Invalid change set id", 400)
    if result is None:
        return error_response("Change set not found", 404)
    if not result.applied:
        return error_response("Could not apply undo", 409)
    return {
        "ok": True,
        "changeSet": result.change_set.model_dump(mode="json"),
        "undoChangeSet": (
            result.undo_change_set.model_dump(mode="json") if result.undo_change_set else None
        ),
    }


async def handle_event(service: ChangeService, event: Dict[str, Any]) -> Dict[str, Any]:
    """Route an event to the appropriate handler based on its shape."""
    if "phase" in event:
        return await handle_run_event(service, event)
    if "changeSetId" in event:
        return await handle_revert_event(service, event)
    if "type" in event:
        return await handle_file_event(service, event)
    return error_response("Unknown event", 400)


async def process_stream(
    service: ChangeService, lines: Iterable[str], output: TextIO
) -> int:
    """Handle each JSON line in order; returns the number of failed events."""
    failures = 0
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed event: %s", e)
            response = error_response("Invalid JSON body", 400)
        else:
            if isinstance(event, dict):
                try:
                    response = await handle_event(service, event)
                except Exception as e:
                    logger.exception("Event handling failed")
                    response = error_response(f"Internal error: {e}", 500)
            else:
                response = error_response("Invalid JSON body", 400)

        if not response.get("ok"):
            failures += 1
            logger.warning("Event failed: %s", response.get("error"))
        output.write(json.dumps(response) + "\n")
        output.flush()
    return failures


def setup_debug_log(config: ChangesConfig) -> None:
    """Append hook activity to the debug log file."""
    root = logging.getLogger("page_changes")
    log_path = os.path.abspath(config.debug_log)
    for existing in root.handlers:
        if isinstance(existing, logging.FileHandler) and existing.baseFilename == log_path:
            return

    config.home.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)


def main(config: Optional[ChangesConfig] = None) -> int:
    """Hook entry point: process stdin events until EOF."""
    config = config or load_config()
    setup_debug_log(config)
    logger.info("Hook started at %s", datetime.now())

    service = ChangeService.from_config(config)
    failures = asyncio.run(process_stream(service, sys.stdin, sys.stdout))
    logger.info("Hook finished with %d failed events", failures)
    return 0


if __name__ == "__main__":
    sys.exit(main())
