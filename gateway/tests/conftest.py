"""
Pytest configuration and shared fixtures for gateway tests.
"""
import os
import tempfile

import pytest

# Point the app at a throwaway database before gateway.app is imported
_test_db = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
_test_db.close()
os.environ.setdefault("PAGESCAN_DB_PATH", _test_db.name)
os.environ.setdefault("PAGESCAN_SUGGESTIONS_ENABLED", "false")

from gateway import records  # noqa: E402
from pagescan.progress import ProgressStore  # noqa: E402


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "records.db")
    records.init_db(path)
    return path


@pytest.fixture
def store():
    return ProgressStore()


@pytest.fixture
def fast_settings():
    return {
        "stream": {
            "console_poll_seconds": 0.01,
            "status_poll_seconds": 0.05,
            "max_session_seconds": 2.0,
            "snapshot_console_lines": 5,
        }
    }
