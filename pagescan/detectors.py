"""Pattern detectors for harvested page artifacts.

Every detector is a pure function ``artifact -> list[Finding]``. Regex based
checks are declared once in ``PATTERN_RULES`` and run by the same loop; the
structural checks (forms and cookies) need parsed input and live in their own
functions. ``DETECTORS`` is the ordered table the orchestrator iterates.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Callable, Iterable

from bs4 import BeautifulSoup

from pagescan.models import SCRIPT_KINDS, Artifact, ArtifactKind, Finding, FindingType, Severity

DEFAULT_SNIPPET_MAX_LENGTH = 250
DEFAULT_CONTEXT_WINDOW = 20
TRUNCATION_MARKER = "..."

_WHITESPACE = re.compile(r"\s+")


def limit_snippet(snippet: str, max_length: int = DEFAULT_SNIPPET_MAX_LENGTH) -> str:
    if len(snippet) <= max_length:
        return snippet
    head = max_length // 2
    tail = max_length - head
    return f"{snippet[:head]}{TRUNCATION_MARKER}{snippet[len(snippet) - tail:]}"


def canonical_snippet(snippet: str) -> str:
    return _WHITESPACE.sub(" ", snippet).strip()


def context_snippet(
    content: str,
    start: int,
    end: int,
    window: int = DEFAULT_CONTEXT_WINDOW,
    max_length: int = DEFAULT_SNIPPET_MAX_LENGTH,
) -> str:
    lower = max(0, start - window)
    upper = min(len(content), end + window)
    return limit_snippet(content[lower:upper], max_length)


@dataclass(frozen=True)
class PatternRule:
    type: FindingType
    severity: Severity
    patterns: tuple[re.Pattern[str], ...]
    description: str
    kinds: frozenset[ArtifactKind]
    context_window: int = DEFAULT_CONTEXT_WINDOW

    def spans(self, content: str) -> list[tuple[int, int]]:
        found = sorted(
            (match.start(), match.end())
            for pattern in self.patterns
            for match in pattern.finditer(content)
            if match.end() > match.start()
        )
        merged: list[tuple[int, int]] = []
        for start, end in found:
            if merged and start <= merged[-1][1]:
                merged[-1] = (merged[-1][0], max(merged[-1][1], end))
            else:
                merged.append((start, end))
        return merged


_SECRET_KINDS = SCRIPT_KINDS | {ArtifactKind.CONSOLE_MESSAGE}

API_KEY_RULE = PatternRule(
    type=FindingType.API_KEY_EXPOSURE,
    severity=Severity.CRITICAL,
    patterns=(
        re.compile(r"""['"]?(?<![a-zA-Z0-9_-])([a-zA-Z0-9_-]+)_?api_?key['"]?\s*[:=]\s*['"]([a-zA-Z0-9_\-.]+)['"]""", re.I),
        re.compile(r"""['"]?api_?key['"]?\s*[:=]\s*['"]([a-zA-Z0-9_\-.]+)['"]""", re.I),
        re.compile(r"""['"]?(sk|pk)_(test|live)_([a-zA-Z0-9]+)['"]""", re.I),
        re.compile(r"""['"]?AKIA[0-9A-Z]{16}['"]?"""),
        re.compile(r"""['"]?ghp_[a-zA-Z0-9]{36}['"]?"""),
        re.compile(r"""['"]?sk-[a-zA-Z0-9]{48}['"]?"""),
    ),
    description="Potential API key exposed in {location}",
    kinds=_SECRET_KINDS,
)

ENV_VARIABLE_RULE = PatternRule(
    type=FindingType.ENV_VARIABLE_EXPOSURE,
    severity=Severity.HIGH,
    patterns=tuple(
        re.compile(rf"""['"]?{prefix}[A-Z0-9_]+['"]?\s*[:=]\s*['"]([^'"]+)['"]""")
        for prefix in ("REACT_APP_", "NEXT_PUBLIC_", "VUE_APP_", "GATSBY_")
    ),
    description="Environment variable exposed in {location}",
    kinds=_SECRET_KINDS,
)

XSS_SINK_RULE = PatternRule(
    type=FindingType.XSS_VULNERABILITY,
    severity=Severity.HIGH,
    patterns=(
        re.compile(r"innerHTML\s*=\s*[^;]+", re.I),
        re.compile(r"dangerouslySetInnerHTML\s*=\s*\{\s*\{[^}]+\}\s*\}", re.I),
        re.compile(r"document\.write\s*\([^)]+\)", re.I),
        re.compile(r"\beval\s*\([^)]+\)", re.I),
    ),
    description="Potential XSS vulnerability in {location}",
    kinds=SCRIPT_KINDS,
)

PATTERN_RULES: tuple[PatternRule, ...] = (API_KEY_RULE, ENV_VARIABLE_RULE, XSS_SINK_RULE)


def run_pattern_rule(
    rule: PatternRule,
    artifact: Artifact,
    max_length: int = DEFAULT_SNIPPET_MAX_LENGTH,
) -> list[Finding]:
    if artifact.kind not in rule.kinds or not artifact.content:
        return []
    content = artifact.content
    return [
        Finding(
            type=rule.type,
            severity=rule.severity,
            location=artifact.location,
            description=rule.description.format(location=artifact.location),
            code_snippet=context_snippet(content, start, end, rule.context_window, max_length),
        )
        for start, end in rule.spans(content)
    ]


def _has_csrf_field(form) -> bool:
    for field in form.find_all("input"):
        name = (field.get("name") or "").lower()
        if "csrf" in name or "token" in name:
            return True
    return False


def detect_csrf_gaps(artifact: Artifact, max_length: int = DEFAULT_SNIPPET_MAX_LENGTH) -> list[Finding]:
    if artifact.kind != ArtifactKind.HTML_DOCUMENT or not artifact.content:
        return []
    soup = BeautifulSoup(artifact.content, "html.parser")
    findings: list[Finding] = []
    for index, form in enumerate(soup.find_all("form"), start=1):
        if _has_csrf_field(form):
            continue
        findings.append(
            Finding(
                type=FindingType.INSECURE_AUTHENTICATION,
                severity=Severity.MEDIUM,
                location=f"Form #{index}",
                description="Form without CSRF protection",
                code_snippet=limit_snippet(str(form), max_length),
            )
        )
    return findings


def cookie_snippet(cookie: dict) -> str:
    return json.dumps(cookie, indent=2, sort_keys=True, default=str)


def detect_cookie_flags(artifact: Artifact, max_length: int = DEFAULT_SNIPPET_MAX_LENGTH) -> list[Finding]:
    if artifact.kind != ArtifactKind.COOKIE:
        return []
    name = artifact.metadata.get("name") or artifact.location
    snippet = limit_snippet(artifact.content or "", max_length)
    findings: list[Finding] = []
    if not artifact.metadata.get("secure", False):
        findings.append(
            Finding(
                type=FindingType.INSECURE_CONFIGURATION,
                severity=Severity.MEDIUM,
                location=f"Cookies/{name}#secure",
                description=f"Cookie '{name}' is not secure (missing 'Secure' flag)",
                code_snippet=snippet,
            )
        )
    if not artifact.metadata.get("httpOnly", False):
        findings.append(
            Finding(
                type=FindingType.INSECURE_CONFIGURATION,
                severity=Severity.MEDIUM,
                location=f"Cookies/{name}#httpOnly",
                description=f"Cookie '{name}' is not HttpOnly (accessible via JavaScript)",
                code_snippet=snippet,
            )
        )
    return findings


Detector = Callable[[Artifact, int], list[Finding]]


def _rule_detector(rule: PatternRule) -> Detector:
    def detect(artifact: Artifact, max_length: int = DEFAULT_SNIPPET_MAX_LENGTH) -> list[Finding]:
        return run_pattern_rule(rule, artifact, max_length)

    detect.__name__ = f"detect_{rule.type.value.replace('-', '_')}"
    return detect


DETECTORS: tuple[Detector, ...] = tuple(_rule_detector(rule) for rule in PATTERN_RULES) + (
    detect_csrf_gaps,
    detect_cookie_flags,
)


def detect_all(
    artifact: Artifact,
    max_length: int = DEFAULT_SNIPPET_MAX_LENGTH,
    detectors: Iterable[Detector] = DETECTORS,
) -> list[Finding]:
    findings: list[Finding] = []
    for detector in detectors:
        findings.extend(detector(artifact, max_length))
    return findings
