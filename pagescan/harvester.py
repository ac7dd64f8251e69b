"""Browser-driven collection of page artifacts.

``BaseHarvester`` is the capability the orchestrator depends on; the Playwright
implementation is the only one that talks to a real browser, tests plug in a
subclass of ``BaseHarvester`` that returns canned artifacts.
"""
from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Callable
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from pagescan.errors import ArtifactFetchError, BrowserLaunchError, NavigationError
from pagescan.models import Artifact, ArtifactKind

LOGGER = logging.getLogger(__name__)

DEFAULT_WAIT_STRATEGIES = ("networkidle", "domcontentloaded", "load")
DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0
DEFAULT_SETTLE_SECONDS = 2.0
CONSOLE_PREVIEW_LENGTH = 150

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-default-apps",
    "--disable-sync",
    "--disable-translate",
    "--disable-web-security",
    "--hide-scrollbars",
    "--metrics-recording-only",
    "--mute-audio",
    "--safebrowsing-disable-auto-update",
    "--ignore-certificate-errors",
]

COLLECT_SCRIPTS_JS = """
() => Array.from(document.querySelectorAll('script')).map((script) => ({
    src: script.src || '',
    content: script.innerHTML,
}))
"""


def navigate_with_retries(
    goto: Callable[..., Any],
    url: str,
    strategies: tuple[str, ...] | list[str] = DEFAULT_WAIT_STRATEGIES,
    backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Try each wait strategy once, from strictest to loosest."""
    last_error = "no navigation attempted"
    attempts = len(strategies)
    for attempt, strategy in enumerate(strategies, start=1):
        LOGGER.info("[Scanner] Navigating to URL: %s (attempt %s/%s, wait_until=%s)", url, attempt, attempts, strategy)
        try:
            response = goto(url, wait_until=strategy)
        except PlaywrightError as exc:
            last_error = str(exc).splitlines()[0] if str(exc) else exc.__class__.__name__
            LOGGER.error("[Scanner] Error navigating to URL (attempt %s/%s): %s", attempt, attempts, last_error)
            if attempt < attempts:
                sleep(backoff_seconds)
            continue
        if response is None:
            LOGGER.warning("[Scanner] No response received when navigating to %s", url)
        elif not response.ok:
            LOGGER.warning("[Scanner] Received non-OK response (%s) when navigating to %s", response.status, url)
        return response
    raise NavigationError(url, attempts, last_error)


def script_artifacts(scripts: list[dict[str, str]], fetch: Callable[[str], str]) -> list[Artifact]:
    """Inline bodies keep their position among all script tags in the label."""
    artifacts: list[Artifact] = []
    for index, script in enumerate(scripts, start=1):
        content = script.get("content") or ""
        if content:
            artifacts.append(
                Artifact(
                    kind=ArtifactKind.INLINE_SCRIPT,
                    location=f"Inline script #{index}",
                    content=content,
                    label="Inline JavaScript",
                )
            )
    for script in scripts:
        src = script.get("src") or ""
        if not src.startswith(("http://", "https://")):
            continue
        try:
            body = fetch(src)
        except ArtifactFetchError as exc:
            LOGGER.error("Error fetching script %s: %s", src, exc)
            continue
        artifacts.append(
            Artifact(kind=ArtifactKind.EXTERNAL_SCRIPT, location=src, content=body, label="External JavaScript")
        )
    return artifacts


def _resource(location: str, label: str) -> Artifact:
    return Artifact(kind=ArtifactKind.PAGE_RESOURCE, location=location, label=label)


def parse_document(html: str, url: str) -> list[Artifact]:
    """The document itself followed by the resources it references."""
    soup = BeautifulSoup(html, "html.parser")
    artifacts = [Artifact(kind=ArtifactKind.HTML_DOCUMENT, location=url, content=html, label="HTML")]

    for link in soup.select('link[rel~="stylesheet"]'):
        if link.get("href"):
            artifacts.append(_resource(urljoin(url, link["href"]), "CSS"))
    for index, _style in enumerate(soup.find_all("style"), start=1):
        artifacts.append(_resource(f"Inline style #{index}", "Inline CSS"))
    for img in soup.find_all("img"):
        if img.get("src"):
            artifacts.append(_resource(urljoin(url, img["src"]), "Image"))
    for source in soup.select("audio source, video source"):
        if source.get("src"):
            parent = source.find_parent(["audio", "video"])
            label = "Audio" if parent is not None and parent.name == "audio" else "Video"
            artifacts.append(_resource(urljoin(url, source["src"]), label))
    for link in soup.select('link[rel~="preload"], link[rel~="icon"], link[rel~="manifest"]'):
        if link.get("href"):
            rel = link.get("rel")
            rel = " ".join(rel) if isinstance(rel, list) else rel
            artifacts.append(_resource(urljoin(url, link["href"]), link.get("as") or rel or "Resource"))
    for iframe in soup.find_all("iframe"):
        if iframe.get("src"):
            artifacts.append(_resource(urljoin(url, iframe["src"]), "iframe"))
    return artifacts


def cookie_artifact(cookie: dict[str, Any]) -> Artifact:
    name = str(cookie.get("name", ""))
    return Artifact(
        kind=ArtifactKind.COOKIE,
        location=f"Cookie '{name}'",
        content=json.dumps(cookie, indent=2, sort_keys=True, default=str),
        label="Cookie",
        metadata={
            "name": name,
            "domain": cookie.get("domain"),
            "secure": bool(cookie.get("secure", False)),
            "httpOnly": bool(cookie.get("httpOnly", False)),
        },
    )


class BaseHarvester(ABC):
    """Shared bookkeeping plus guaranteed release through ``with``."""

    def __init__(self) -> None:
        self.files_scanned = 0
        self.file_type_stats: Counter[str] = Counter()

    def track(self, artifact: Artifact) -> None:
        self.files_scanned += 1
        self.file_type_stats[artifact.category] += 1
        LOGGER.debug("[Scanner] Scanned file %s: %s - %s", self.files_scanned, artifact.category, artifact.location)

    def track_all(self, artifacts: list[Artifact]) -> list[Artifact]:
        for artifact in artifacts:
            self.track(artifact)
        return artifacts

    def breakdown(self) -> list[tuple[str, int, int]]:
        """(label, count, percent of all scanned) sorted by count."""
        total = self.files_scanned or 1
        return [(label, count, round(count * 100 / total)) for label, count in self.file_type_stats.most_common()]

    def open(self, url: str, on_launched: Callable[[], None] | None = None) -> None:
        """Launch the browser and load ``url``; ``on_launched`` runs in between."""
        self.launch()
        if on_launched is not None:
            on_launched()
        self.navigate(url)

    @abstractmethod
    def launch(self) -> None:
        ...

    @abstractmethod
    def navigate(self, url: str) -> None:
        ...

    @abstractmethod
    def extract_scripts(self) -> list[Artifact]:
        ...

    @abstractmethod
    def extract_document(self) -> list[Artifact]:
        ...

    @abstractmethod
    def extract_cookies(self) -> list[Artifact]:
        ...

    @abstractmethod
    def network_resources(self) -> list[Artifact]:
        ...

    @abstractmethod
    def console_messages(self) -> list[Artifact]:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def __enter__(self) -> "BaseHarvester":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class PlaywrightHarvester(BaseHarvester):
    def __init__(
        self,
        headless: bool = True,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        wait_strategies: tuple[str, ...] | list[str] = DEFAULT_WAIT_STRATEGIES,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        script_fetch_timeout: float = 30.0,
    ) -> None:
        super().__init__()
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.wait_strategies = tuple(wait_strategies)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.settle_seconds = settle_seconds
        self.script_fetch_timeout = script_fetch_timeout
        self.url: str | None = None
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._http: httpx.Client | None = None
        self._network: list[Artifact] = []
        self._console: list[Artifact] = []

    def launch(self) -> None:
        LOGGER.info("[Scanner] Launching Chromium browser...")
        try:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(headless=self.headless, args=CHROMIUM_ARGS)
            self._context = self._browser.new_context(
                viewport={"width": 1280, "height": 800},
                ignore_https_errors=True,
                bypass_csp=True,
            )
            self._context.set_default_navigation_timeout(self.timeout_ms)
            self._context.set_default_timeout(self.timeout_ms)
            self._page = self._context.new_page()
        except PlaywrightError as exc:
            raise BrowserLaunchError(f"Failed to initialize browser: {exc}") from exc
        LOGGER.info("[Scanner] Browser launched successfully")

        self._page.on("response", self._on_response)
        self._page.on("console", self._on_console)
        self._page.on("pageerror", lambda error: LOGGER.error("[Browser PageError] %s", error))
        self._page.on("dialog", self._on_dialog)
        self._http = httpx.Client(timeout=self.script_fetch_timeout, follow_redirects=True, verify=False)

    def navigate(self, url: str) -> None:
        self.url = url
        self._require_page()
        navigate_with_retries(self._page.goto, url, self.wait_strategies, self.retry_backoff_seconds)
        if self.settle_seconds:
            # lazy-loaded content and late scripts
            self._page.wait_for_timeout(self.settle_seconds * 1000)
        LOGGER.info("[Scanner] Successfully navigated to %s", url)

    def _on_response(self, response) -> None:
        url = response.url
        if not response.ok or url.startswith("data:") or url == "about:blank":
            return
        request = response.request
        artifact = Artifact(
            kind=ArtifactKind.NETWORK_RESOURCE,
            location=url,
            label=f"Network:{request.resource_type}",
            metadata={"method": request.method, "resource_type": request.resource_type, "status": response.status},
        )
        self._network.append(artifact)
        self.track(artifact)

    def _on_console(self, message) -> None:
        text = message.text
        preview = text[:CONSOLE_PREVIEW_LENGTH] + ("..." if len(text) > CONSOLE_PREVIEW_LENGTH else "")
        LOGGER.info("[Browser Console] %s: %s", message.type, preview)
        self._console.append(
            Artifact(kind=ArtifactKind.CONSOLE_MESSAGE, location="Console log", content=text, label="Console log")
        )

    def _on_dialog(self, dialog) -> None:
        LOGGER.info("[Browser Dialog] %s: %s", dialog.type, dialog.message)
        dialog.dismiss()

    def _fetch(self, src: str) -> str:
        if self._http is None:
            raise ArtifactFetchError(src, "harvester is not open")
        try:
            response = self._http.get(src)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ArtifactFetchError(src, str(exc)) from exc
        return response.text

    def _require_page(self):
        if self._page is None:
            raise BrowserLaunchError("Browser not initialized")
        return self._page

    def extract_scripts(self) -> list[Artifact]:
        scripts = self._require_page().evaluate(COLLECT_SCRIPTS_JS)
        return self.track_all(script_artifacts(scripts, self._fetch))

    def extract_document(self) -> list[Artifact]:
        html = self._require_page().content()
        return self.track_all(parse_document(html, self.url or self._page.url))

    def extract_cookies(self) -> list[Artifact]:
        if self._context is None:
            raise BrowserLaunchError("Browser not initialized")
        return self.track_all([cookie_artifact(cookie) for cookie in self._context.cookies()])

    def network_resources(self) -> list[Artifact]:
        return list(self._network)

    def console_messages(self) -> list[Artifact]:
        return list(self._console)

    def close(self) -> None:
        for name in ("_http", "_context", "_browser"):
            resource = getattr(self, name)
            if resource is None:
                continue
            try:
                resource.close()
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Closing %s failed: %s", name.lstrip("_"), exc)
            setattr(self, name, None)
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Stopping playwright failed: %s", exc)
            self._playwright = None
        self._page = None
