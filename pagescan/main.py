from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import uuid
from pathlib import Path

from pagescan.config import resolve_settings, setup_logging
from pagescan.models import ProgressEvent, utc_now_iso
from pagescan.orchestrator import ScanOrchestrator
from pagescan.progress import ProgressStore

LOGGER = logging.getLogger(__name__)


def write_json_file(path: str | Path, payload: dict | list) -> None:
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Single page web security scanner")
    parser.add_argument("--url", required=True, help="Page to scan")
    parser.add_argument("--scan-id", help="Identifier for this run (random when omitted)")
    parser.add_argument("--settings", help="Path to settings YAML")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    parser.add_argument("--no-suggestions", action="store_true", help="Skip AI fix suggestions")
    parser.add_argument("--json-output", help="Optional path for the JSON report")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    settings = resolve_settings(args.settings)
    if args.no_suggestions:
        settings["suggestions"]["enabled"] = False

    store = ProgressStore.from_settings(settings)
    orchestrator = ScanOrchestrator.from_settings(store, settings)
    scan_id = args.scan_id or str(uuid.uuid4())

    def on_progress(event: ProgressEvent) -> None:
        print(f"[{event.percent:3d}%] {event.stage.value}: {event.message}", file=sys.stderr)

    run = orchestrator.run(scan_id, args.url, on_progress=on_progress)
    LOGGER.info("Scan %s finished with status %s", scan_id, "failed" if run.error else "completed")
    payload = {"result": run.to_dict(), "generated_at": utc_now_iso()}
    if args.json_output:
        write_json_file(args.json_output, payload)
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return 4 if run.error else 0


if __name__ == "__main__":
    sys.exit(main())
