"""Test session configuration.

This module auto-loads environment variables from the project `.env` file so
integration tests can read `DB_MODE` and the DSN settings without requiring the
developer to export them manually in the shell.
"""

from __future__ import annotations

import time

import pytest
from dotenv import load_dotenv


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    # Load once per test session; no error if .env is absent.
    load_dotenv()


@pytest.fixture()
def wait_until():
    """Poll ``predicate`` until it holds; fail the test after ``timeout``."""

    def _wait(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                pytest.fail("condition not reached before timeout")
            time.sleep(interval)

    return _wait


# Note: Individual tests can use the `monkeypatch` fixture to override env vars.
