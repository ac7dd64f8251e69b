from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any

from pagescan.models import Finding, ProgressEvent, utc_now_iso

LOGGER = logging.getLogger(__name__)

SCAN_STATUSES = ("pending", "scanning", "completed", "failed")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS scans (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    stage TEXT,
    progress INTEGER NOT NULL DEFAULT 0,
    message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    finished_at TEXT,
    vulnerabilities_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS vulnerabilities (
    id TEXT PRIMARY KEY,
    scan_id TEXT NOT NULL,
    type TEXT NOT NULL,
    severity TEXT NOT NULL,
    location TEXT NOT NULL,
    description TEXT NOT NULL,
    code_snippet TEXT NOT NULL,
    suggested_fix TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (scan_id) REFERENCES scans(id)
);

CREATE INDEX IF NOT EXISTS idx_vulnerabilities_scan_id ON vulnerabilities(scan_id);
CREATE INDEX IF NOT EXISTS idx_vulnerabilities_severity ON vulnerabilities(severity);
CREATE INDEX IF NOT EXISTS idx_scans_created_at ON scans(created_at);
"""

SEVERITY_ORDER_SQL = """
CASE severity
    WHEN 'critical' THEN 0
    WHEN 'high' THEN 1
    WHEN 'medium' THEN 2
    WHEN 'low' THEN 3
    ELSE 4
END
"""


def connect(db_path: str) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    with connect(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    LOGGER.info("SQLite initialized at %s", db_path)


def create_scan(db_path: str, scan_id: str, url: str, status: str = "pending") -> None:
    now = utc_now_iso()
    with connect(db_path) as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO scans (id, url, status, progress, message, created_at, updated_at)
            VALUES (?, ?, ?, 0, ?, ?, ?)
            """,
            (scan_id, url, status, "Scan queued", now, now),
        )
        conn.commit()


def update_progress(db_path: str, scan_id: str, event: ProgressEvent) -> None:
    with connect(db_path) as conn:
        conn.execute(
            "UPDATE scans SET stage = ?, progress = ?, message = ?, updated_at = ? WHERE id = ?",
            (event.stage.value, event.percent, event.message, utc_now_iso(), scan_id),
        )
        conn.commit()


def mark_status(db_path: str, scan_id: str, status: str, error_message: str | None = None) -> None:
    if status not in SCAN_STATUSES:
        raise ValueError(f"Unknown scan status: {status}")
    now = utc_now_iso()
    finished_at = now if status in ("completed", "failed") else None
    with connect(db_path) as conn:
        conn.execute(
            """
            UPDATE scans
            SET status = ?, error_message = ?, updated_at = ?, finished_at = COALESCE(?, finished_at)
            WHERE id = ?
            """,
            (status, error_message, now, finished_at, scan_id),
        )
        conn.commit()
    LOGGER.info("Scan %s marked %s", scan_id, status)


def save_findings(db_path: str, scan_id: str, findings: list[Finding]) -> None:
    with connect(db_path) as conn:
        conn.execute("DELETE FROM vulnerabilities WHERE scan_id = ?", (scan_id,))
        conn.executemany(
            """
            INSERT INTO vulnerabilities (
                id, scan_id, type, severity, location, description, code_snippet, suggested_fix, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    finding.id,
                    scan_id,
                    finding.type.value,
                    finding.severity.value,
                    finding.location,
                    finding.description,
                    finding.code_snippet,
                    finding.suggested_fix,
                    finding.created_at,
                )
                for finding in findings
            ],
        )
        conn.execute(
            "UPDATE scans SET vulnerabilities_count = ?, updated_at = ? WHERE id = ?",
            (len(findings), utc_now_iso(), scan_id),
        )
        conn.commit()
    LOGGER.info("Persisted scan %s with %s vulnerabilities", scan_id, len(findings))


def get_scan(db_path: str, scan_id: str) -> dict[str, Any] | None:
    with connect(db_path) as conn:
        row = conn.execute("SELECT * FROM scans WHERE id = ?", (scan_id,)).fetchone()
    return dict(row) if row else None


def list_findings(db_path: str, scan_id: str, limit: int = 500) -> list[dict[str, Any]]:
    query = f"SELECT * FROM vulnerabilities WHERE scan_id = ? ORDER BY {SEVERITY_ORDER_SQL}, created_at LIMIT ?"
    with connect(db_path) as conn:
        rows = conn.execute(query, (scan_id, limit)).fetchall()
    return [dict(row) for row in rows]


def progress_payload(scan: dict[str, Any]) -> dict[str, Any]:
    return {
        "stage": scan.get("stage") or "initial_crawl",
        "progress": int(scan.get("progress") or 0),
        "message": scan.get("message") or "",
    }

