from __future__ import annotations

import logging
from threading import Lock

from pagescan.detectors import canonical_snippet
from pagescan.models import Finding, FindingType

LOGGER = logging.getLogger(__name__)

DedupKey = tuple[FindingType, str, str]


def dedup_key(finding: Finding) -> DedupKey:
    return finding.type, finding.location, canonical_snippet(finding.code_snippet)


class FindingCollector:
    """Run-scoped owner of the result set; the only place findings are added."""

    def __init__(self) -> None:
        self._keys: set[DedupKey] = set()
        self._findings: list[Finding] = []
        self._total_detected = 0
        self._lock = Lock()

    def offer(self, candidate: Finding) -> bool:
        key = dedup_key(candidate)
        with self._lock:
            self._total_detected += 1
            if key in self._keys:
                LOGGER.debug("Duplicate %s finding at %s ignored", candidate.type.value, candidate.location)
                return False
            self._keys.add(key)
            self._findings.append(candidate)
        return True

    def offer_all(self, candidates: list[Finding]) -> int:
        return sum(1 for candidate in candidates if self.offer(candidate))

    @property
    def total_detected(self) -> int:
        return self._total_detected

    @property
    def unique_count(self) -> int:
        return len(self._findings)

    @property
    def duplicates_removed(self) -> int:
        return self._total_detected - len(self._findings)

    def findings(self) -> list[Finding]:
        with self._lock:
            return list(self._findings)
