"""Test configuration to ensure repo modules are importable."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("PYTHONPATH", str(ROOT))


@pytest.fixture(autouse=True)
def _clear_fhevm_env(monkeypatch):
    """Keep developer ``FHEVM_*`` settings from leaking into the suites."""

    for key in list(os.environ):
        if key.startswith("FHEVM_"):
            monkeypatch.delenv(key, raising=False)
    yield
