"""Scan orchestration: one run, one browser, strictly forward stages.

The orchestrator owns the ``ScanRun`` while it executes. Every stage
transition goes through a ``ProgressChannel`` whose listeners are the run
object itself, the shared ``ProgressStore`` and the caller's optional
callback, so all of them observe the same ``(stage, percent, message)``
sequence.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Callable

from pagescan.channel import ProgressChannel, ProgressListener
from pagescan.collector import FindingCollector
from pagescan.detectors import DEFAULT_SNIPPET_MAX_LENGTH, detect_all
from pagescan.errors import ScanError, SuggestionError
from pagescan.fingerprint import detect_technologies
from pagescan.harvester import BaseHarvester, PlaywrightHarvester
from pagescan.models import Artifact, Finding, ProgressEvent, ScanRun, Stage, utc_now_iso
from pagescan.progress import ProgressStore
from pagescan.suggestions import SuggestFn, suggester_from_settings

LOGGER = logging.getLogger(__name__)
PACKAGE_LOGGER = logging.getLogger("pagescan")

HarvesterFactory = Callable[[], BaseHarvester]

SCAN_TAGS = ("[Scanner]", "[Scan", "Scan")


class ConsoleCapture(logging.Handler):
    """Copies one run's log records into its store console.

    Errors are always copied; other records only when they carry a scan tag.
    Records from other threads belong to other runs and are ignored.
    """

    def __init__(self, store: ProgressStore, scan_id: str, thread_id: int) -> None:
        super().__init__(level=logging.INFO)
        self.store = store
        self.scan_id = scan_id
        self.thread_id = thread_id

    def emit(self, record: logging.LogRecord) -> None:
        if record.thread != self.thread_id:
            return
        try:
            message = record.getMessage()
        except Exception:  # noqa: BLE001
            self.handleError(record)
            return
        if record.levelno >= logging.ERROR:
            self.store.append_console(self.scan_id, f"ERROR: {message}")
            return
        if not any(tag in message for tag in SCAN_TAGS):
            return
        if record.levelno >= logging.WARNING:
            self.store.append_console(self.scan_id, f"WARNING: {message}")
        else:
            self.store.append_console(self.scan_id, message)


class _HostRelay(logging.Handler):
    """Passes records on to the host's handlers at the host's own threshold."""

    def __init__(self, threshold: int) -> None:
        super().__init__()
        self.threshold = threshold

    def emit(self, record: logging.LogRecord) -> None:
        if record.levelno >= self.threshold and PACKAGE_LOGGER.parent is not None:
            PACKAGE_LOGGER.parent.handle(record)


_capture_lock = threading.Lock()
_capture_count = 0
_saved_logger_state: tuple[int, bool, _HostRelay] | None = None


def attach_capture(capture: ConsoleCapture) -> None:
    """Adds ``capture`` and makes sure INFO records reach it.

    When the host keeps the package logger above INFO, the level is lowered
    while captures are attached and propagation is replaced by a relay that
    keeps the host's threshold.
    """
    global _capture_count, _saved_logger_state
    with _capture_lock:
        if _capture_count == 0 and not PACKAGE_LOGGER.isEnabledFor(logging.INFO):
            relay = _HostRelay(PACKAGE_LOGGER.getEffectiveLevel())
            _saved_logger_state = (PACKAGE_LOGGER.level, PACKAGE_LOGGER.propagate, relay)
            PACKAGE_LOGGER.addHandler(relay)
            PACKAGE_LOGGER.propagate = False
            PACKAGE_LOGGER.setLevel(logging.INFO)
        _capture_count += 1
        PACKAGE_LOGGER.addHandler(capture)


def detach_capture(capture: ConsoleCapture) -> None:
    global _capture_count, _saved_logger_state
    with _capture_lock:
        PACKAGE_LOGGER.removeHandler(capture)
        _capture_count -= 1
        if _capture_count == 0 and _saved_logger_state is not None:
            level, propagate, relay = _saved_logger_state
            PACKAGE_LOGGER.removeHandler(relay)
            PACKAGE_LOGGER.propagate = propagate
            PACKAGE_LOGGER.setLevel(level)
            _saved_logger_state = None


def playwright_factory(settings: dict) -> HarvesterFactory:
    browser = settings.get("browser", {})
    execution = settings.get("execution", {})

    def build() -> BaseHarvester:
        return PlaywrightHarvester(
            headless=bool(browser.get("headless", True)),
            timeout_ms=int(browser.get("timeout_ms", 30000)),
            wait_strategies=browser.get("wait_strategies", ["networkidle", "domcontentloaded", "load"]),
            retry_backoff_seconds=float(browser.get("retry_backoff_seconds", 2)),
            settle_seconds=float(browser.get("settle_seconds", 2)),
            script_fetch_timeout=float(execution.get("script_fetch_timeout_seconds", 30)),
        )

    return build


class ScanOrchestrator:
    def __init__(
        self,
        store: ProgressStore,
        harvester_factory: HarvesterFactory,
        suggest: SuggestFn | None = None,
        snippet_max_length: int = DEFAULT_SNIPPET_MAX_LENGTH,
    ) -> None:
        self.store = store
        self.harvester_factory = harvester_factory
        self.suggest = suggest
        self.snippet_max_length = snippet_max_length

    @classmethod
    def from_settings(cls, store: ProgressStore, settings: dict) -> "ScanOrchestrator":
        suggest = suggester_from_settings(settings) if settings.get("suggestions", {}).get("enabled", True) else None
        return cls(
            store=store,
            harvester_factory=playwright_factory(settings),
            suggest=suggest,
            snippet_max_length=int(settings.get("detection", {}).get("snippet_max_length", DEFAULT_SNIPPET_MAX_LENGTH)),
        )

    def run(self, scan_id: str, url: str, on_progress: ProgressListener | None = None) -> ScanRun:
        run = ScanRun(id=scan_id, target_url=url)
        self.store.init(scan_id)
        channel = ProgressChannel([run.apply, lambda event: self.store.publish(scan_id, event), _log_event])
        if on_progress is not None:
            channel.subscribe(on_progress)

        capture = ConsoleCapture(self.store, scan_id, threading.get_ident())
        attach_capture(capture)
        try:
            self._execute(run, channel)
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, ScanError):
                LOGGER.error("[Scanner] Scan %s aborted: %s", scan_id, exc)
            else:
                LOGGER.exception("[Scanner] Unexpected error during scan %s", scan_id)
            run.error = str(exc) or exc.__class__.__name__
            run.result = []
            run.is_complete = True
            run.finished_at = utc_now_iso()
            channel.abort(f"Scan failed: {run.error}")
            self.store.fail(scan_id, run.error)
        finally:
            detach_capture(capture)
        return run

    def _execute(self, run: ScanRun, channel: ProgressChannel) -> None:
        collector = FindingCollector()
        with self.harvester_factory() as harvester:
            channel.advance(Stage.INITIAL_CRAWL, 0, "Initializing browser...")

            def launched() -> None:
                channel.advance(Stage.INITIAL_CRAWL, 10, "Browser initialized")
                channel.advance(Stage.INITIAL_CRAWL, 20, "Navigating to website...")

            harvester.open(run.target_url, on_launched=launched)
            channel.advance(Stage.INITIAL_CRAWL, 30, "Website loaded successfully")

            channel.advance(Stage.TECHNOLOGY_DETECTION, 30, "Detecting technologies...")
            technologies = detect_technologies(harvester.network_resources())
            LOGGER.info("[Scanner] Technologies detected: %s", ", ".join(technologies) or "none")

            channel.advance(Stage.SOURCE_ANALYSIS, 35, "Analyzing JavaScript code...")
            self._detect(harvester.extract_scripts(), collector)
            channel.advance(Stage.SOURCE_ANALYSIS, 45, "JavaScript analysis complete")

            channel.advance(Stage.SOURCE_ANALYSIS, 50, "Analyzing HTML structure...")
            self._detect(harvester.extract_document(), collector)
            self._detect(harvester.extract_cookies(), collector)
            channel.advance(Stage.SOURCE_ANALYSIS, 60, "HTML analysis complete")

            channel.advance(Stage.NETWORK_ANALYSIS, 65, "Analyzing network requests...")
            by_type = Counter(str(item.metadata.get("resource_type", "other")) for item in harvester.network_resources())
            LOGGER.info(
                "[Scanner] Network requests recorded: %s (%s)",
                sum(by_type.values()),
                ", ".join(f"{name}={count}" for name, count in by_type.most_common()) or "none",
            )
            channel.advance(Stage.NETWORK_ANALYSIS, 70, "Network analysis complete")

            channel.advance(Stage.ENV_VARIABLE_DETECTION, 75, "Checking for exposed environment variables...")
            self._detect(harvester.console_messages(), collector)
            channel.advance(Stage.ENV_VARIABLE_DETECTION, 80, "Environment variable check complete")

            channel.advance(Stage.VULNERABILITY_ASSESSMENT, 85, "Assessing vulnerabilities...")
            LOGGER.info(
                "[Scanner] Findings: %s unique, %s detected, %s duplicates removed",
                collector.unique_count,
                collector.total_detected,
                collector.duplicates_removed,
            )
            channel.advance(Stage.VULNERABILITY_ASSESSMENT, 90, "Vulnerability assessment complete")
            breakdown = harvester.breakdown()
            files_scanned = harvester.files_scanned

        findings = collector.findings()
        self._augment(findings, channel)

        run.result = findings
        run.is_complete = True
        run.finished_at = utc_now_iso()
        channel.advance(Stage.COMPLETED, 100, "Scan completed successfully")
        self.store.complete(run.id, findings)
        _log_summary(run, files_scanned, breakdown, collector)

    def _detect(self, artifacts: list[Artifact], collector: FindingCollector) -> None:
        for artifact in artifacts:
            for finding in detect_all(artifact, self.snippet_max_length):
                collector.offer(finding)

    def _augment(self, findings: list[Finding], channel: ProgressChannel) -> None:
        channel.advance(Stage.REPORT_GENERATION, 90, "Generating fix suggestions...")
        if self.suggest is None or not findings:
            channel.advance(Stage.REPORT_GENERATION, 99, "Report ready")
            return
        total = len(findings)
        for index, finding in enumerate(findings):
            channel.advance(
                Stage.REPORT_GENERATION,
                90 + (index * 9) // total,
                f"Generating fix suggestion for vulnerability {index + 1} of {total}...",
            )
            try:
                finding.suggested_fix = self.suggest(finding.type.value, finding.description, finding.code_snippet) or None
            except SuggestionError as exc:
                LOGGER.warning("Fix suggestion unavailable for %s at %s: %s", finding.type.value, finding.location, exc)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Fix suggestion failed for %s at %s", finding.type.value, finding.location)
        channel.advance(Stage.REPORT_GENERATION, 99, "Fix suggestions complete")


def _log_event(event: ProgressEvent) -> None:
    LOGGER.info("[Scanner] Progress: %s - %s%% - %s", event.stage.value, event.percent, event.message)


def _log_summary(
    run: ScanRun,
    files_scanned: int,
    breakdown: list[tuple[str, int, int]],
    collector: FindingCollector,
) -> None:
    lines = [
        "=" * 50,
        f"[Scanner] SCAN COMPLETED - {run.target_url}",
        "-" * 50,
        f"Total files scanned: {files_scanned}",
        "File type breakdown:",
    ]
    lines.extend(f"  - {label}: {count} ({percent}%)" for label, count, percent in breakdown)
    lines.append(f"Unique vulnerabilities found: {collector.unique_count}")
    lines.append(f"Total vulnerabilities detected: {collector.total_detected}")
    lines.append("=" * 50)
    LOGGER.info("\n".join(lines))


def start_scan(
    scan_id: str,
    url: str,
    store: ProgressStore,
    settings: dict,
    on_progress: ProgressListener | None = None,
    harvester_factory: HarvesterFactory | None = None,
    suggest: SuggestFn | None = None,
) -> tuple[list[Finding], str | None]:
    """Synchronous entry point for request handlers and the CLI."""
    orchestrator = ScanOrchestrator.from_settings(store, settings)
    if harvester_factory is not None:
        orchestrator.harvester_factory = harvester_factory
    if suggest is not None:
        orchestrator.suggest = suggest
    run = orchestrator.run(scan_id, url, on_progress=on_progress)
    return run.result, run.error
