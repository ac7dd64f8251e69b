"""Server-sent event stream for one scan run.

All periodic work (console polling, record status polling, the session
deadline) lives inside a single async generator. When the client goes away the
server closes the generator, which ends every timer at once; the scan itself
is never touched.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Callable

from gateway import records
from pagescan.progress import ProgressSnapshot, ProgressStore

LOGGER = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}
TERMINAL_STATUSES = ("completed", "failed")

DEFAULT_STREAM_SETTINGS: dict[str, Any] = {
    "console_poll_seconds": 1.0,
    "status_poll_seconds": 5.0,
    "max_session_seconds": 600.0,
    "snapshot_console_lines": 5,
}


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def _terminal_from_store(snapshot: ProgressSnapshot) -> str:
    if snapshot.error:
        return format_sse("scan_failed", {"message": snapshot.error})
    findings = snapshot.vulnerabilities or []
    return format_sse("scan_complete", {"vulnerabilities": [finding.to_dict() for finding in findings]})


async def _terminal_from_records(db_path: str, scan: dict[str, Any]) -> str:
    if scan["status"] == "failed":
        return format_sse("scan_failed", {"message": scan.get("error_message") or "Scan failed"})
    findings = await asyncio.to_thread(records.list_findings, db_path, scan["id"])
    return format_sse("scan_complete", {"vulnerabilities": findings})


async def scan_event_stream(
    scan_id: str,
    store: ProgressStore,
    db_path: str,
    settings: dict[str, Any] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> AsyncIterator[str]:
    options = {**DEFAULT_STREAM_SETTINGS, **(settings or {}).get("stream", {})}
    console_poll = float(options["console_poll_seconds"])
    status_poll = float(options["status_poll_seconds"])
    max_session = float(options["max_session_seconds"])
    snapshot_lines = int(options["snapshot_console_lines"])

    yield format_sse("open", {"message": "SSE connection established"})

    scan = await asyncio.to_thread(records.get_scan, db_path, scan_id)
    if scan is None:
        LOGGER.warning("Event stream requested for unknown scan %s", scan_id)
        yield format_sse("error", {"error": "Failed to retrieve scan"})
        return

    snapshot = store.get(scan_id)

    yield format_sse(
        "scan_update",
        {
            "status": scan["status"],
            "progress": snapshot.progress.to_dict() if snapshot else records.progress_payload(scan),
            "consoleOutput": snapshot.console_output[-snapshot_lines:] if snapshot else [],
        },
    )

    if scan["status"] in TERMINAL_STATUSES:
        yield await _terminal_from_records(db_path, scan)
        return

    cursor = snapshot.console_cursor if snapshot else 0
    started = clock()
    last_status_check = started

    while True:
        remaining = max_session - (clock() - started)
        if remaining <= 0:
            LOGGER.info("Event stream for scan %s reached its %ss limit", scan_id, max_session)
            return
        await asyncio.sleep(min(console_poll, remaining))

        current = store.get(scan_id)
        if current is not None:
            lines, cursor_after = store.console_since(scan_id, cursor)
            if lines:
                cursor = cursor_after
                yield format_sse(
                    "scan_update",
                    {"status": "scanning", "progress": current.progress.to_dict(), "consoleOutput": lines},
                )
            if current.is_complete:
                yield _terminal_from_store(store.get(scan_id) or current)
                return

        if clock() - last_status_check < status_poll:
            continue
        last_status_check = clock()
        try:
            scan = await asyncio.to_thread(records.get_scan, db_path, scan_id)
        except Exception:  # noqa: BLE001
            LOGGER.exception("[SSE] Error checking scan status for %s", scan_id)
            continue
        if scan is None:
            LOGGER.error("[SSE] Scan %s disappeared from records", scan_id)
            continue
        if scan["status"] in TERMINAL_STATUSES and (current is None or not current.is_complete):
            yield await _terminal_from_records(db_path, scan)
            return
