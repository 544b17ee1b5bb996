"""Operational statistics served at /v1/stats.

In-memory counters only; they reset on restart and are not audit evidence
(the ledger and the audit log are).
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    decisions_total: int = 0
    decisions_by_outcome: Dict[str, int] = field(default_factory=dict)
    decisions_by_reason: Dict[str, int] = field(default_factory=dict)

    rejected_inputs_total: int = 0
    replayed_total: int = 0
    step_ups_total: int = 0

    # Fail-closed signals
    fail_closed_total: int = 0
    fail_closed_by_reason: Dict[str, int] = field(default_factory=dict)
    storage_lockdown_total: int = 0
    ledger_conflicts_total: int = 0
    telemetry_errors_total: int = 0
    rate_limited_total: int = 0
    rate_limited_by_endpoint: Dict[str, int] = field(default_factory=dict)


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_decision(self, outcome: str, reason: str) -> None:
        with self._lock:
            self._c.decisions_total += 1
            self._inc_map(self._c.decisions_by_outcome, outcome or "unknown")
            self._inc_map(self._c.decisions_by_reason, reason or "unknown")

    def record_rejected_input(self) -> None:
        with self._lock:
            self._c.rejected_inputs_total += 1

    def record_replayed(self) -> None:
        with self._lock:
            self._c.replayed_total += 1

    def record_step_up(self) -> None:
        with self._lock:
            self._c.step_ups_total += 1

    def record_fail_closed(self, reason: str) -> None:
        with self._lock:
            self._c.fail_closed_total += 1
            self._inc_map(self._c.fail_closed_by_reason, reason or "unknown")

    def record_storage_lockdown(self) -> None:
        with self._lock:
            self._c.storage_lockdown_total += 1

    def record_ledger_conflict(self) -> None:
        with self._lock:
            self._c.ledger_conflicts_total += 1

    def record_telemetry_error(self) -> None:
        with self._lock:
            self._c.telemetry_errors_total += 1

    def record_rate_limited(self, endpoint: str) -> None:
        with self._lock:
            self._c.rate_limited_total += 1
            self._inc_map(self._c.rate_limited_by_endpoint, endpoint or "unknown")

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "decisions_total": c.decisions_total,
                "decisions_by_outcome": dict(c.decisions_by_outcome),
                "decisions_by_reason": dict(c.decisions_by_reason),
                "rejected_inputs_total": c.rejected_inputs_total,
                "replayed_total": c.replayed_total,
                "step_ups_total": c.step_ups_total,
                "fail_closed_total": c.fail_closed_total,
                "fail_closed_by_reason": dict(c.fail_closed_by_reason),
                "storage_lockdown_total": c.storage_lockdown_total,
                "ledger_conflicts_total": c.ledger_conflicts_total,
                "telemetry_errors_total": c.telemetry_errors_total,
                "rate_limited_total": c.rate_limited_total,
                "rate_limited_by_endpoint": dict(c.rate_limited_by_endpoint),
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
