from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional


def config_path() -> str:
    return os.getenv("CHAMBER_CACHE_CONFIG") or "chamber_cache.json"


@lru_cache(maxsize=1)
def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    p = Path(path or config_path())
    if not p.exists():
        return {}
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except Exception:
        return {}


def load_config_uncached(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Uncached config read. Use this when changes must take effect without restarting.
    """
    load_config.cache_clear()
    return load_config(path)


def _get(cfg: Dict[str, Any], *path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for k in path:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur


def _int(*path: str, default: int) -> int:
    cfg = load_config()
    try:
        return int(_get(cfg, *path, default=default))
    except Exception:
        return default


def _float(*path: str, default: float) -> float:
    cfg = load_config()
    try:
        return float(_get(cfg, *path, default=default))
    except Exception:
        return default


def data_dir() -> Path:
    env = os.getenv("CHAMBER_CACHE_DIR")
    if env:
        return Path(env)
    cfg = load_config()
    return Path(str(_get(cfg, "data", "dir", default="./data/cache") or "./data/cache"))


def persistence_backend() -> str:
    cfg = load_config()
    v = str(_get(cfg, "data", "backend", default="file") or "file").strip().lower()
    return v if v in ("file", "sqlite", "memory") else "file"


def event_source_url() -> str:
    cfg = load_config()
    return str(_get(cfg, "server", "url", default="ws://127.0.0.1:4096/event") or "ws://127.0.0.1:4096/event")


# Budgets

def cache_max_sessions() -> int:
    return _int("cache", "max_sessions", default=50)


def cache_max_full_sessions() -> int:
    return _int("cache", "full_cache_sessions", default=10)


def cache_max_messages_per_session() -> int:
    return _int("cache", "max_messages_per_session", default=500)


def cache_max_total_bytes() -> int:
    return _int("cache", "max_total_bytes", default=100 * 1024 * 1024)


def cache_ttl_s() -> float:
    return _float("cache", "ttl_s", default=7 * 24 * 60 * 60.0)


def session_list_ttl_s() -> float:
    return _float("cache", "session_list_ttl_s", default=5 * 60.0)


def sweep_interval_s() -> float:
    return _float("cache", "sweep_interval_s", default=60.0)


# Streaming

def reorder_window_s() -> float:
    return _float("stream", "reorder_window_s", default=2.0)


def backoff_base_s() -> float:
    return _float("stream", "backoff", "base_s", default=0.5)


def backoff_cap_s() -> float:
    return _float("stream", "backoff", "cap_s", default=30.0)


def attempt_timeout_s() -> float:
    return _float("stream", "attempt_timeout_s", default=15.0)


def backfill_max_attempts() -> int:
    return _int("stream", "backfill_max_attempts", default=5)


def resume_max_attempts() -> int:
    return _int("stream", "resume_max_attempts", default=8)


# Persistence

def persistence_retry_interval_s() -> float:
    return _float("persistence", "retry_interval_s", default=5.0)


def persistence_max_retry_interval_s() -> float:
    return _float("persistence", "max_retry_interval_s", default=60.0)
