"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors).
"""
import os
import sys
from pathlib import Path

import pytest

# Ensure modules in backend/ are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(REPO_ROOT), str(BACKEND_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_session_env(monkeypatch: pytest.MonkeyPatch):
    """Start every test without ambient Supabase/session configuration."""
    for key in list(os.environ):
        if key.startswith("SUPABASE_") or key.endswith("_TIMEOUT_SECONDS") or key in {
            "APP_ENV",
            "READ_RETRY_BACKOFF_SECONDS",
            "PROGRESS_TRACKER_LOAD_DOTENV",
        }:
            monkeypatch.delenv(key, raising=False)
    yield
