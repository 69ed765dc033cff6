from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from fhir_validation.config.settings import get_settings

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    for key in list(os.environ):
        if key.startswith("FV_"):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def worker_command() -> list[str]:
    return [sys.executable, "-u", str(FIXTURES / "fake_engine_worker.py")]


@pytest.fixture
def cli_command() -> list[str]:
    return [sys.executable, str(FIXTURES / "fake_engine_cli.py")]


class ManualClock:
    """Deterministic clock for breaker and cache tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()
