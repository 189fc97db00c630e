"""Shared CLI helpers."""

from __future__ import annotations

import json
import os
from typing import Any

from festpass.adapters.store_factory import DEFAULT_DB_PATH


def _default_db() -> str:
    return os.environ.get("FESTPASS_DB_PATH", DEFAULT_DB_PATH)


def _out(data: Any) -> int:
    print(json.dumps(data, indent=2, default=str))
    if isinstance(data, dict) and "error" in data:
        return 1
    return 0
