import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)


@pytest.fixture
def temp_db_path(tmp_path):
    """Return a unique SQLite path per test to avoid cross-test contamination."""
    return tmp_path / "test_tasks.db"


@pytest.fixture
def clean_env(monkeypatch):
    """Drop the environment overrides load_config honours."""
    for name in ("DEFAULT_SORT", "EXPORT_ON_EXIT", "MD_FILE", "TODO_DB", "LOG_FILE"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
