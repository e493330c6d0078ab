# -*- coding: utf-8 -*-
"""In-process TTL cache shared by the quote and exchange-rate providers."""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, Hashable, Optional

_cache: Dict = {}
_cache_lock = threading.Lock()


def _now() -> float:
    return time.time()


def get_entry(key: Hashable) -> Optional[Dict]:
    """Return the raw ``{"ts", "data"}`` entry, regardless of age."""
    with _cache_lock:
        return _cache.get(key)


def set_entry(key: Hashable, value: Any) -> None:
    with _cache_lock:
        _cache[key] = {"ts": _now(), "data": value}


def get_fresh(key: Hashable, ttl: float) -> Any:
    """Return cached data younger than ``ttl`` seconds, else None."""
    entry = get_entry(key)
    if entry and (_now() - entry["ts"] < ttl) and entry["data"] is not None:
        return entry["data"]
    return None


def get_stale(key: Hashable) -> Any:
    entry = get_entry(key)
    return entry["data"] if entry else None


def clear(prefix: Optional[str] = None) -> None:
    """Drop every entry, or only tuple keys whose first element is ``prefix``."""
    with _cache_lock:
        if prefix is None:
            _cache.clear()
            return
        for key in [k for k in _cache if isinstance(k, tuple) and k and k[0] == prefix]:
            del _cache[key]
