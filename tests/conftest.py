"""Pytest configuration for test isolation.

Settings are read from ``DATABASE_URL`` and ``LEDGER_RECON_*`` environment
variables (and a developer's ``.env`` may have exported some). Each test starts
from a clean slate so defaults are what the test sees unless it sets a value
itself with ``monkeypatch``.
"""

from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key == "DATABASE_URL" or key.startswith("LEDGER_RECON_"):
            monkeypatch.delenv(key, raising=False)
