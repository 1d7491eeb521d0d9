"""
Thread-safe in-memory metrics for the clip worker.

  - Counters:     requests per endpoint, completed / failed runs
  - Latency:      recent samples per endpoint and per pipeline stage
  - Stage errors: failures keyed by pipeline stage and ErrorKind
  - Gauges:       active background jobs, process start time

Nothing is persisted; a restart starts from zero.
"""

import time
import threading
from enum import Enum
from collections import defaultdict, deque
from typing import Deque, Dict, Optional, Union

_lock = threading.Lock()

MAX_SAMPLES = 100
MAX_ERRORS = 50
UNTYPED_ERROR = "unexpected"

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = {}
_latency: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))
_stage_errors: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
_recent_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)


def _kind_label(kind: Union[Enum, str, None]) -> str:
    if kind is None:
        return UNTYPED_ERROR
    return kind.value if isinstance(kind, Enum) else str(kind)


def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(name: str, duration_ms: float):
    """Keep a latency sample, e.g. 'generate' or 'stage.video'."""
    with _lock:
        _latency[name].append(duration_ms)


def record_error(stage: str, kind: Union[Enum, str, None], message: str, user_id: Optional[str] = ""):
    """
    Count a failure of one pipeline stage.

    Args:
        stage:   Pipeline stage or endpoint, e.g. 'enrichment', 'video', 'merge'.
        kind:    ErrorKind of the failure; None for untyped errors.
        message: Human-readable detail, kept in the recent error log.
        user_id: Requesting user, when known.
    """
    label = _kind_label(kind)
    with _lock:
        _counters[f"errors.{label}"] += 1
        _stage_errors[stage][label] += 1
        _recent_errors.append({
            "timestamp": time.time(),
            "stage": stage,
            "error_kind": label,
            "message": message[:300],
            "user_id": user_id or "",
        })


def _summarize(samples) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[min(n - 1, int(n * 0.95))],
        "avg": sum(ordered) / n,
        "count": n,
    }


def get_snapshot() -> dict:
    """Everything collected so far, for the /metrics endpoint."""
    now = time.time()
    with _lock:
        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {name: _summarize(s) for name, s in _latency.items() if s},
            "stage_errors": {stage: dict(kinds) for stage, kinds in _stage_errors.items()},
            "recent_errors": list(_recent_errors)[-10:],
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency.clear()
        _stage_errors.clear()
        _recent_errors.clear()
