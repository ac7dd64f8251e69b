from __future__ import annotations

import asyncio
import json

import pytest

from gateway import records
from gateway.stream import format_sse, scan_event_stream
from pagescan.models import Finding, FindingType, ProgressEvent, Severity, Stage


def _parse(chunk):
    event_line, data_line = chunk.strip().split("\n")
    return event_line[len("event: "):], json.loads(data_line[len("data: "):])


async def _collect(stream):
    return [_parse(chunk) async for chunk in stream]


def _finding():
    return Finding(
        type=FindingType.API_KEY_EXPOSURE,
        severity=Severity.CRITICAL,
        location="Inline script #1",
        description="Potential API key exposed in Inline script #1",
        code_snippet='stripe_api_key = "sk_live_abc123"',
    )


def test_format_sse():
    assert format_sse("open", {"a": 1}) == 'event: open\ndata: {"a": 1}\n\n'


@pytest.mark.asyncio
async def test_unknown_scan_emits_error(store, db_path, fast_settings):
    events = await _collect(scan_event_stream("ghost", store, db_path, fast_settings))
    assert [name for name, _ in events] == ["open", "error"]
    assert events[1][1] == {"error": "Failed to retrieve scan"}


@pytest.mark.asyncio
async def test_completed_scan_replays_results(store, db_path, fast_settings):
    records.create_scan(db_path, "done", "https://example.com", status="scanning")
    records.save_findings(db_path, "done", [_finding()])
    records.mark_status(db_path, "done", "completed")

    events = await _collect(scan_event_stream("done", store, db_path, fast_settings))
    assert [name for name, _ in events] == ["open", "scan_update", "scan_complete"]
    assert events[1][1]["status"] == "completed"
    assert events[2][1]["vulnerabilities"][0]["location"] == "Inline script #1"


@pytest.mark.asyncio
async def test_live_scan_streams_console_then_completes(store, db_path, fast_settings):
    records.create_scan(db_path, "live", "https://example.com", status="scanning")
    store.init("live")
    store.append_console("live", "[Scanner] Launching Chromium browser...")

    async def producer():
        await asyncio.sleep(0.05)
        store.publish("live", ProgressEvent(Stage.SOURCE_ANALYSIS, 35, "Analyzing JavaScript code..."))
        store.append_console("live", "[Scanner] step one")
        await asyncio.sleep(0.05)
        store.complete("live", [_finding()])

    task = asyncio.create_task(producer())
    events = await _collect(scan_event_stream("live", store, db_path, fast_settings))
    await task

    names = [name for name, _ in events]
    assert names[0] == "open"
    assert names[1] == "scan_update"
    assert events[1][1]["consoleOutput"] == ["[Scanner] Launching Chromium browser..."]
    assert names[-1] == "scan_complete"
    streamed = [line for name, data in events[2:] if name == "scan_update" for line in data["consoleOutput"]]
    assert "[Scanner] step one" in streamed
    assert events[-1][1]["vulnerabilities"][0]["severity"] == "critical"


@pytest.mark.asyncio
async def test_initial_snapshot_has_last_five_lines(store, db_path, fast_settings):
    records.create_scan(db_path, "busy", "https://example.com", status="scanning")
    store.init("busy")
    for index in range(8):
        store.append_console("busy", f"[line] {index}")
    store.fail("busy", "boom")

    events = await _collect(scan_event_stream("busy", store, db_path, fast_settings))
    snapshot_lines = events[1][1]["consoleOutput"]
    assert len(snapshot_lines) == 5
    assert snapshot_lines[:4] == ["[line] 4", "[line] 5", "[line] 6", "[line] 7"]
    assert snapshot_lines[-1].endswith("Scan failed: boom")
    assert events[-1] == ("scan_failed", {"message": "boom"})


@pytest.mark.asyncio
async def test_record_progress_used_when_store_has_no_entry(store, db_path, fast_settings):
    records.create_scan(db_path, "resumed", "https://example.com", status="scanning")
    records.update_progress(db_path, "resumed", ProgressEvent(Stage.NETWORK_ANALYSIS, 65, "Analyzing network requests..."))

    stream = scan_event_stream("resumed", store, db_path, fast_settings)
    assert _parse(await stream.__anext__())[0] == "open"
    name, data = _parse(await stream.__anext__())
    await stream.aclose()

    assert name == "scan_update"
    assert data["progress"] == {"stage": "network_analysis", "progress": 65, "message": "Analyzing network requests..."}
    assert store.has("resumed") is False


@pytest.mark.asyncio
async def test_record_failure_detected_by_status_poll(store, db_path, fast_settings):
    records.create_scan(db_path, "orphan", "https://example.com", status="scanning")
    store.init("orphan")

    async def fail_record():
        await asyncio.sleep(0.05)
        await asyncio.to_thread(records.mark_status, db_path, "orphan", "failed", "worker crashed")

    task = asyncio.create_task(fail_record())
    events = await _collect(scan_event_stream("orphan", store, db_path, fast_settings))
    await task
    assert events[-1] == ("scan_failed", {"message": "worker crashed"})


@pytest.mark.asyncio
async def test_stream_closes_at_session_limit(store, db_path):
    records.create_scan(db_path, "slow", "https://example.com", status="scanning")
    store.init("slow")
    settings = {"stream": {"console_poll_seconds": 0.01, "status_poll_seconds": 0.02, "max_session_seconds": 0.1}}

    events = await asyncio.wait_for(_collect(scan_event_stream("slow", store, db_path, settings)), timeout=5)
    assert [name for name, _ in events] == ["open", "scan_update"]
    assert store.get("slow").is_complete is False


@pytest.mark.asyncio
async def test_closing_stream_leaves_run_untouched(store, db_path, fast_settings):
    records.create_scan(db_path, "watched", "https://example.com", status="scanning")
    store.init("watched")
    stream = scan_event_stream("watched", store, db_path, fast_settings)
    await stream.__anext__()
    await stream.__anext__()
    await stream.aclose()
    store.append_console("watched", "[Scanner] still running")
    assert store.get("watched").console_output == ["[Scanner] still running"]
    assert records.get_scan(db_path, "watched")["status"] == "scanning"


@pytest.mark.asyncio
async def test_orphaned_record_streams_from_status_poll(store, db_path, fast_settings):
    records.create_scan(db_path, "orphan-2", "https://example.com", status="scanning")

    async def fail_record():
        await asyncio.sleep(0.05)
        await asyncio.to_thread(records.mark_status, db_path, "orphan-2", "failed", "worker lost on restart")

    task = asyncio.create_task(fail_record())
    events = await _collect(scan_event_stream("orphan-2", store, db_path, fast_settings))
    await task
    assert events[1][1]["consoleOutput"] == []
    assert events[-1] == ("scan_failed", {"message": "worker lost on restart"})
    assert store.has("orphan-2") is False
