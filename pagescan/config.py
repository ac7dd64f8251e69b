from __future__ import annotations

import logging
import os
from typing import Any

import yaml


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def load_yaml(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def resolve_settings(path: str | None = None) -> dict[str, Any]:
    settings = load_yaml(path) if path else {}
    for section in ("paths", "browser", "detection", "execution", "progress", "stream", "suggestions"):
        settings.setdefault(section, {})
    settings["paths"].setdefault("db_path", os.getenv("PAGESCAN_DB_PATH", "/data/pagescan.db"))
    settings["browser"].setdefault("headless", _env_bool("PAGESCAN_HEADLESS", "true"))
    settings["browser"].setdefault("timeout_ms", int(os.getenv("PAGESCAN_NAVIGATION_TIMEOUT_MS", "30000")))
    settings["browser"].setdefault("wait_strategies", ["networkidle", "domcontentloaded", "load"])
    settings["browser"].setdefault("retry_backoff_seconds", float(os.getenv("PAGESCAN_RETRY_BACKOFF_SECONDS", "2")))
    settings["browser"].setdefault("settle_seconds", float(os.getenv("PAGESCAN_SETTLE_SECONDS", "2")))
    settings["detection"].setdefault("snippet_max_length", int(os.getenv("PAGESCAN_SNIPPET_MAX_LENGTH", "250")))
    settings["execution"].setdefault("max_concurrent_scans", int(os.getenv("PAGESCAN_MAX_CONCURRENT_SCANS", "2")))
    settings["execution"].setdefault("max_queued_scans", int(os.getenv("PAGESCAN_MAX_QUEUED_SCANS", "8")))
    settings["execution"].setdefault("script_fetch_timeout_seconds", float(os.getenv("PAGESCAN_SCRIPT_FETCH_TIMEOUT", "30")))
    settings["progress"].setdefault("console_capacity", int(os.getenv("PAGESCAN_CONSOLE_CAPACITY", "1000")))
    settings["progress"].setdefault("ttl_hours", float(os.getenv("PAGESCAN_PROGRESS_TTL_HOURS", "24")))
    settings["progress"].setdefault("sweep_interval_seconds", float(os.getenv("PAGESCAN_SWEEP_INTERVAL_SECONDS", "3600")))
    settings["stream"].setdefault("console_poll_seconds", float(os.getenv("PAGESCAN_STREAM_CONSOLE_POLL", "1")))
    settings["stream"].setdefault("status_poll_seconds", float(os.getenv("PAGESCAN_STREAM_STATUS_POLL", "5")))
    settings["stream"].setdefault("max_session_seconds", float(os.getenv("PAGESCAN_STREAM_MAX_SESSION", "600")))
    settings["stream"].setdefault("snapshot_console_lines", 5)
    settings["suggestions"].setdefault("enabled", _env_bool("PAGESCAN_SUGGESTIONS_ENABLED", "true"))
    settings["suggestions"].setdefault("model", os.getenv("OPENAI_MODEL", "gpt-3.5-turbo"))
    settings["suggestions"].setdefault("max_tokens", 200)
    settings["suggestions"].setdefault("temperature", 0.5)
    settings["suggestions"].setdefault("timeout_seconds", float(os.getenv("OPENAI_TIMEOUT_SECONDS", "30")))
    return settings
