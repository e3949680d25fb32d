"""Pytest configuration shared by the chatarr test suite."""

from __future__ import annotations

import sys
from pathlib import Path


# Tests import ``app`` directly from a checkout, so the project root has to be
# importable even without ``pip install -e .``.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
