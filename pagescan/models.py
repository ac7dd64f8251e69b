from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlparse


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class Stage(str, Enum):
    INITIAL_CRAWL = "initial_crawl"
    TECHNOLOGY_DETECTION = "technology_detection"
    SOURCE_ANALYSIS = "source_analysis"
    NETWORK_ANALYSIS = "network_analysis"
    ENV_VARIABLE_DETECTION = "env_variable_detection"
    VULNERABILITY_ASSESSMENT = "vulnerability_assessment"
    REPORT_GENERATION = "report_generation"
    COMPLETED = "completed"

    @property
    def index(self) -> int:
        return list(Stage).index(self)


class FindingType(str, Enum):
    API_KEY_EXPOSURE = "api-key-exposure"
    ENV_VARIABLE_EXPOSURE = "env-variable-exposure"
    XSS_VULNERABILITY = "xss-vulnerability"
    INSECURE_CONFIGURATION = "insecure-configuration"
    INSECURE_AUTHENTICATION = "insecure-authentication"
    INSECURE_CORS = "insecure-cors"
    SENSITIVE_DATA_EXPOSURE = "sensitive-data-exposure"
    INSECURE_DEPENDENCY = "insecure-dependency"
    OTHER = "other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


class ArtifactKind(str, Enum):
    INLINE_SCRIPT = "inline-script"
    EXTERNAL_SCRIPT = "external-script"
    HTML_DOCUMENT = "html-document"
    COOKIE = "cookie"
    NETWORK_RESOURCE = "network-resource"
    PAGE_RESOURCE = "page-resource"
    CONSOLE_MESSAGE = "console-message"


SCRIPT_KINDS = frozenset({ArtifactKind.INLINE_SCRIPT, ArtifactKind.EXTERNAL_SCRIPT})


@dataclass(frozen=True)
class Artifact:
    kind: ArtifactKind
    location: str
    content: str | None = None
    label: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> str:
        return self.label or self.kind.value


@dataclass
class Finding:
    type: FindingType
    severity: Severity
    location: str
    description: str
    code_snippet: str
    suggested_fix: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["severity"] = self.severity.value
        return payload


@dataclass(frozen=True)
class ProgressEvent:
    stage: Stage
    percent: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"stage": self.stage.value, "progress": self.percent, "message": self.message}


@dataclass
class ScanRun:
    id: str
    target_url: str
    stage: Stage = Stage.INITIAL_CRAWL
    percent: int = 0
    message: str = "Starting scan..."
    is_complete: bool = False
    error: str | None = None
    result: list[Finding] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)
    finished_at: str | None = None

    @property
    def domain(self) -> str:
        return urlparse(self.target_url).hostname or ""

    @property
    def succeeded(self) -> bool:
        return self.is_complete and self.error is None

    def apply(self, event: ProgressEvent) -> None:
        self.stage = event.stage
        self.percent = event.percent
        self.message = event.message

    def severity_counts(self) -> dict[str, int]:
        counts = {severity.value: 0 for severity in Severity}
        for finding in self.result:
            counts[finding.severity.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "scan_id": self.id,
            "target_url": self.target_url,
            "domain": self.domain,
            "stage": self.stage.value,
            "progress": self.percent,
            "message": self.message,
            "is_complete": self.is_complete,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "severity_counts": self.severity_counts(),
            "vulnerabilities": [finding.to_dict() for finding in self.result],
        }
