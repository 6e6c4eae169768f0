"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend (the session layer is built on
asyncio tasks) and keep backend settings from the developer's shell out of
the tests.
"""
import sys
from pathlib import Path

import pytest

# Ensure the repo root (for `backend.*`) and the tests dir (for fakes) are importable
REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolate_backend_env(monkeypatch: pytest.MonkeyPatch):
    """Start every test without backend credentials or environment overrides."""
    for key in (
        "SUPABASE_URL",
        "SUPABASE_ANON_KEY",
        "NEXT_PUBLIC_SUPABASE_URL",
        "NEXT_PUBLIC_SUPABASE_ANON_KEY",
        "CARECALL_FETCH_ROLE_URL",
        "CARECALL_REQUEST_TIMEOUT",
        "CARECALL_ENV",
    ):
        monkeypatch.delenv(key, raising=False)
    yield


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_backend():
    from supabase_fakes import FakeBackend

    return FakeBackend()
