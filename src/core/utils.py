"""
Small shared utilities.
"""
from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Any, Generator

from pydantic import BaseModel

_DEFAULT_SIZE_BYTES = 1024


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Context manager that records elapsed wall-clock milliseconds."""
    result: dict = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - start) * 1000)


def estimate_size(value: Any) -> int:
    """Rough in-memory footprint of *value*: two bytes per serialised character."""
    try:
        if isinstance(value, BaseModel):
            text = value.model_dump_json()
        else:
            text = json.dumps(value, default=str)
    except (TypeError, ValueError):
        return _DEFAULT_SIZE_BYTES
    return len(text) * 2
