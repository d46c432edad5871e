"""
Thread-safe in-memory metrics for the trailer engine.

Tracked:
  - counters:  jobs.*, cache.*, scenes.*, stages.*
  - gauges:    jobs.active
  - latency:   job and stage durations (last 100 samples each)
  - errors:    last 50 failures with job id and error kind

All data is ephemeral (resets on restart).
"""

import time
import threading
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)
_latency_samples: Dict[str, List[float]] = defaultdict(list)
_recent_errors: List[dict] = []
_started_at = time.time()

MAX_SAMPLES = 100
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'cache.hit', 'scenes.mode_fallback')."""
    with _lock:
        _counters[name] += amount


def add_gauge(name: str, delta: float):
    with _lock:
        _gauges[name] += delta


def record_latency(name: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[name]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            del samples[:-MAX_SAMPLES]


def record_error(source: str, error_kind: str, message: str, job_id: str = ""):
    """Keep a failure for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_kind": error_kind,
            "message": message[:300],
            "job_id": job_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def _percentiles(samples: List[float]) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
        "avg": sum(ordered) / n,
        "count": n,
    }


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()
    with _lock:
        hits = _counters.get("cache.hit", 0)
        lookups = hits + _counters.get("cache.miss", 0)
        error_kinds: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_kinds[f"{err['source']}:{err['error_kind']}"] += 1

        return {
            "timestamp": now,
            "uptime_seconds": now - _started_at,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {
                name: _percentiles(samples)
                for name, samples in _latency_samples.items() if samples
            },
            "cache_hit_rate": round(hits / lookups, 4) if lookups else 0.0,
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_kinds),
        }


def reset():
    """Drop all collected data."""
    global _started_at
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency_samples.clear()
        _recent_errors.clear()
        _started_at = time.time()
