from __future__ import annotations

import logging
import threading

import pytest

from pagescan.errors import BrowserLaunchError, NavigationError, SuggestionError
from pagescan.harvester import cookie_artifact
from pagescan.models import FindingType, Severity, Stage
from pagescan.orchestrator import PACKAGE_LOGGER, ConsoleCapture, ScanOrchestrator, start_scan

from scan_samples import FakeHarvester, external_script, html_document, inline_script

URL = "https://shop.example.com"


def _orchestrator(store, harvester, suggest=None):
    return ScanOrchestrator(store=store, harvester_factory=lambda: harvester, suggest=suggest)


def _assert_monotonic(events):
    assert events, "expected progress events"
    for previous, current in zip(events, events[1:]):
        assert current.stage.index >= previous.stage.index
        assert current.percent >= previous.percent
    assert events[-1].stage == Stage.COMPLETED
    assert events[-1].percent == 100


def test_clean_page_completes_without_findings(store):
    page = (
        '<html><body><form action="/login" method="post">'
        '<input type="hidden" name="csrf_token" value="f3a9c1">'
        '<input name="email"></form></body></html>'
    )
    harvester = FakeHarvester(
        scripts=[inline_script("console.log('hello');")],
        documents=[html_document(URL, page)],
        cookies=[cookie_artifact({"name": "session", "value": "abc", "secure": True, "httpOnly": True})],
    )
    events = []
    run = _orchestrator(store, harvester).run("scan-1", URL, on_progress=events.append)

    assert run.error is None
    assert run.result == []
    assert run.is_complete is True
    assert run.succeeded is True
    _assert_monotonic(events)
    assert events[-1].message == "Scan completed successfully"
    snapshot = store.get("scan-1")
    assert snapshot.status == "completed"
    assert snapshot.console_output[-1].endswith("Scan completed with 0 vulnerabilities found.")
    assert harvester.closed is True


def test_exposed_key_is_reported_once(store):
    harvester = FakeHarvester(scripts=[inline_script('const stripe_api_key = "sk_live_abc123";')])
    run = _orchestrator(store, harvester).run("scan-1", URL)

    assert len(run.result) == 1
    finding = run.result[0]
    assert finding.type == FindingType.API_KEY_EXPOSURE
    assert finding.severity == Severity.CRITICAL
    assert "sk_live_abc123" in finding.code_snippet
    assert store.get("scan-1").vulnerabilities[0].id == finding.id


def test_navigation_failure_marks_run_failed(store):
    harvester = FakeHarvester(fail_on_navigate=NavigationError(URL, 3, "net::ERR_NAME_NOT_RESOLVED"))
    events = []
    run = _orchestrator(store, harvester).run("scan-1", URL, on_progress=events.append)

    assert run.result == []
    assert run.is_complete is True
    assert "Failed to navigate" in run.error
    _assert_monotonic(events)
    assert events[-1].message.startswith("Scan failed: ")
    assert store.get("scan-1").status == "failed"
    assert harvester.closed is True
    assert "scripts" not in harvester.calls


def test_browser_launch_failure_closes_harvester(store):
    harvester = FakeHarvester(fail_on_launch=BrowserLaunchError("chromium missing"))
    run = _orchestrator(store, harvester).run("scan-1", URL)
    assert run.error == "chromium missing"
    assert harvester.calls == ["launch", "close"]


def test_unexpected_error_is_contained(store):
    harvester = FakeHarvester()

    def explode():
        raise RuntimeError("parser crashed")

    harvester.extract_document = explode
    run = _orchestrator(store, harvester).run("scan-1", URL)
    assert run.error == "parser crashed"
    assert store.get("scan-1").is_complete is True
    assert harvester.closed is True


def test_duplicate_external_script_reported_once(store):
    body = 'var x = document.write(userInput);'
    scripts = [external_script("https://cdn.example.com/lib.js", body), external_script("https://cdn.example.com/lib.js", body)]
    run = _orchestrator(store, FakeHarvester(scripts=scripts)).run("scan-1", URL)
    assert len(run.result) == 1
    assert run.result[0].type == FindingType.XSS_VULNERABILITY


def test_insecure_cookie_and_form_are_reported(store):
    harvester = FakeHarvester(
        documents=[html_document(URL, '<form action="/login"><input name="password"></form>')],
        cookies=[cookie_artifact({"name": "session", "value": "abc", "secure": True, "httpOnly": False})],
    )
    run = _orchestrator(store, harvester).run("scan-1", URL)
    locations = sorted(finding.location for finding in run.result)
    assert locations == ["Cookies/session#httpOnly", "Form #1"]


def test_stage_sequence_follows_checkpoints(store):
    events = []
    _orchestrator(store, FakeHarvester()).run("scan-1", URL, on_progress=events.append)
    stages = []
    for event in events:
        if not stages or stages[-1] != event.stage:
            stages.append(event.stage)
    assert stages == list(Stage)
    assert (events[0].stage, events[0].percent) == (Stage.INITIAL_CRAWL, 0)


def test_suggestions_attached_to_findings(store):
    harvester = FakeHarvester(scripts=[inline_script("eval(payload);")])
    calls = []

    def suggest(vulnerability_type, description, snippet):
        calls.append(vulnerability_type)
        return "Avoid eval on untrusted input."

    events = []
    run = _orchestrator(store, harvester, suggest=suggest).run("scan-1", URL, on_progress=events.append)
    assert calls == ["xss-vulnerability"]
    assert run.result[0].suggested_fix == "Avoid eval on untrusted input."
    assert any(event.message == "Fix suggestions complete" for event in events)
    _assert_monotonic(events)


def test_failed_suggestion_leaves_finding_without_fix(store):
    harvester = FakeHarvester(scripts=[inline_script("eval(payload);")])

    def suggest(vulnerability_type, description, snippet):
        raise SuggestionError("upstream unavailable")

    run = _orchestrator(store, harvester, suggest=suggest).run("scan-1", URL)
    assert run.error is None
    assert run.result[0].suggested_fix is None


def test_harvester_released_before_suggestions(store):
    harvester = FakeHarvester(scripts=[inline_script("eval(payload);")])
    seen_closed = []

    def suggest(vulnerability_type, description, snippet):
        seen_closed.append(harvester.closed)
        return "fix"

    _orchestrator(store, harvester, suggest=suggest).run("scan-1", URL)
    assert seen_closed == [True]


def test_start_scan_returns_findings_and_error(store, settings):
    harvester = FakeHarvester(scripts=[inline_script("eval(payload);")])
    findings, error = start_scan("scan-1", URL, store, settings, harvester_factory=lambda: harvester)
    assert error is None
    assert len(findings) == 1

    broken = FakeHarvester(fail_on_navigate=NavigationError(URL, 3, "timeout"))
    findings, error = start_scan("scan-2", URL, store, settings, harvester_factory=lambda: broken)
    assert findings == []
    assert error.startswith("Failed to navigate to https://shop.example.com after 3 attempts")


@pytest.mark.parametrize("scan_id", ["a", "b"])
def test_runs_share_store_without_interference(store, scan_id):
    other = "b" if scan_id == "a" else "a"
    store.init(other)
    _orchestrator(store, FakeHarvester()).run(scan_id, URL)
    assert store.get(other).is_complete is False
    assert store.get(scan_id).is_complete is True


def _record(level, message):
    logger = logging.getLogger("pagescan.harvester")
    return logger.makeRecord(logger.name, level, __file__, 0, message, None, None)


def test_console_capture_keeps_tagged_lines_and_errors(store):
    store.init("scan-1")
    capture = ConsoleCapture(store, "scan-1", threading.get_ident())
    capture.handle(_record(logging.INFO, "[Scanner] Launching Chromium browser..."))
    capture.handle(_record(logging.INFO, "Initialized progress tracking"))
    capture.handle(_record(logging.WARNING, "[Scanner] Failed to fetch external script"))
    capture.handle(_record(logging.ERROR, "browser crashed"))
    assert store.get("scan-1").console_output == [
        "[Scanner] Launching Chromium browser...",
        "[2024-01-01T00:00:00+00:00] WARNING: [Scanner] Failed to fetch external script",
        "[2024-01-01T00:00:00+00:00] ERROR: browser crashed",
    ]


def test_console_capture_ignores_other_threads(store):
    store.init("scan-1")
    capture = ConsoleCapture(store, "scan-1", threading.get_ident())
    foreign = []
    worker = threading.Thread(target=lambda: foreign.append(_record(logging.INFO, "[Scanner] other run")))
    worker.start()
    worker.join()
    capture.handle(foreign[0])
    assert store.get("scan-1").console_output == []


def test_scanner_lines_captured_when_host_logs_warnings_only(store):
    previous = PACKAGE_LOGGER.level
    PACKAGE_LOGGER.setLevel(logging.WARNING)
    try:
        _orchestrator(store, FakeHarvester(scripts=[inline_script("eval(payload);")])).run("scan-1", URL)
        assert PACKAGE_LOGGER.level == logging.WARNING
        assert PACKAGE_LOGGER.propagate is True
        assert not PACKAGE_LOGGER.isEnabledFor(logging.INFO)
    finally:
        PACKAGE_LOGGER.setLevel(previous)

    console = store.get("scan-1").console_output
    assert "[Scanner] Progress: initial_crawl - 0% - Initializing browser..." in console
    assert any("[Scanner] Findings: 1 unique" in line for line in console)
