"""
Shared fixtures for scan engine tests.
"""
from __future__ import annotations

import pytest

from pagescan.progress import ProgressStore
from scan_samples import ManualClock


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return ProgressStore(clock=clock)


@pytest.fixture
def settings(tmp_path):
    return {
        "paths": {"db_path": str(tmp_path / "pagescan.db")},
        "browser": {},
        "detection": {"snippet_max_length": 250},
        "execution": {"max_concurrent_scans": 1, "max_queued_scans": 1},
        "progress": {},
        "stream": {},
        "suggestions": {"enabled": False},
    }
