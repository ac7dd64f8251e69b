from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import asynccontextmanager
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from gateway import records
from gateway.monitoring import router as monitoring_router
from gateway.stream import SSE_HEADERS, format_sse, scan_event_stream
from pagescan.config import resolve_settings, setup_logging
from pagescan.errors import ScanRejected
from pagescan.models import ProgressEvent
from pagescan.orchestrator import start_scan
from pagescan.pool import ScanPool
from pagescan.progress import ProgressStore

LOGGER = logging.getLogger(__name__)

APP_TITLE = "Page Scan Gateway"
SETTINGS = resolve_settings(os.getenv("PAGESCAN_SETTINGS"))
DB_PATH = SETTINGS["paths"]["db_path"]

setup_logging(os.getenv("LOG_LEVEL", "INFO"))

store = ProgressStore.from_settings(SETTINGS)
_start_lock = threading.Lock()


@asynccontextmanager
async def lifespan(app: FastAPI):
    records.init_db(DB_PATH)
    app.state.db_path = DB_PATH
    app.state.pool = ScanPool.from_settings(SETTINGS)
    store.start_sweeper(float(SETTINGS["progress"]["sweep_interval_seconds"]))
    try:
        yield
    finally:
        app.state.pool.shutdown(wait=False)
        store.stop_sweeper()


app = FastAPI(title=APP_TITLE, lifespan=lifespan)
app.include_router(monitoring_router, prefix="/api")


@app.middleware("http")
async def security_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers.setdefault("Cache-Control", "no-store")
    return response


class StartScanRequest(BaseModel):
    scanId: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)


def _is_scannable(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)


def _in_flight(scan_id: str) -> bool:
    if not store.has(scan_id):
        return False
    scan = records.get_scan(DB_PATH, scan_id)
    return scan is not None and scan["status"] == "scanning"


def run_scan(scan_id: str, url: str) -> None:
    """Worker body: run the scan and persist its outcome to the records."""

    def on_progress(event: ProgressEvent) -> None:
        records.update_progress(DB_PATH, scan_id, event)

    findings, error = start_scan(scan_id, url, store, SETTINGS, on_progress=on_progress)
    try:
        if error:
            records.mark_status(DB_PATH, scan_id, "failed", error)
            return
        records.save_findings(DB_PATH, scan_id, findings)
        records.mark_status(DB_PATH, scan_id, "completed")
    except sqlite3.Error:
        LOGGER.exception("Failed to persist outcome of scan %s", scan_id)


@app.post("/api/scan/start", status_code=status.HTTP_202_ACCEPTED)
def api_start_scan(payload: StartScanRequest, request: Request) -> dict:
    if not _is_scannable(payload.url):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="URL must be an absolute http(s) URL")
    with _start_lock:
        if _in_flight(payload.scanId):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Scan already in progress")
        records.create_scan(DB_PATH, payload.scanId, payload.url, status="scanning")
        store.init(payload.scanId)
    try:
        request.app.state.pool.submit(run_scan, payload.scanId, payload.url)
    except ScanRejected as exc:
        store.fail(payload.scanId, str(exc))
        records.mark_status(DB_PATH, payload.scanId, "failed", str(exc))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={"Retry-After": "30"},
        ) from exc
    LOGGER.info("Queued scan %s for %s", payload.scanId, payload.url)
    return {"scanId": payload.scanId, "status": "scanning"}


@app.get("/api/scan/events")
async def api_scan_events(scanId: str | None = Query(default=None)) -> Response:
    if not scanId:
        return Response(
            content=format_sse("error", {"error": "Missing required scanId parameter"}),
            status_code=status.HTTP_400_BAD_REQUEST,
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
    return StreamingResponse(
        scan_event_stream(scanId, store, DB_PATH, SETTINGS),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/api/scan/status")
def api_scan_status(scanId: str | None = Query(default=None)) -> JSONResponse:
    if not scanId:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Missing required parameters"})
    scan = records.get_scan(DB_PATH, scanId)
    if scan is None:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": "Scan not found"})
    return JSONResponse(content={"status": scan["status"], "progress": records.progress_payload(scan)})


def run() -> None:
    uvicorn.run(
        app,
        host=os.getenv("PAGESCAN_HOST", "0.0.0.0"),
        port=int(os.getenv("PAGESCAN_PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    run()
