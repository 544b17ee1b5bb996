"""Telemetry exporter contract.

`emit(event)` is fire-and-forget: the ledger calls it after a decision is
durable and ignores (but logs and counts) any failure, so telemetry can
never block or alter a decision.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .audit_log import TamperEvidentAuditLog

logger = logging.getLogger("agent_authz.telemetry")


@runtime_checkable
class TelemetryExporter(Protocol):
    def emit(self, event: Dict[str, Any]) -> None: ...


class AuditLogExporter:
    """Writes every event into the tamper-evident audit log."""

    def __init__(self, audit_log: TamperEvidentAuditLog):
        self.audit_log = audit_log

    def emit(self, event: Dict[str, Any]) -> None:
        self.audit_log.append_event(event)


class LoggingExporter:
    """Structured events as log records on the `agent_authz.events` logger."""

    def __init__(self, level: int = logging.INFO):
        self.level = level
        self._log = logging.getLogger("agent_authz.events")

    def emit(self, event: Dict[str, Any]) -> None:
        self._log.log(self.level, "%s", event.get("event", "event"), extra={"authz_event": dict(event)})


class MemoryExporter:
    """Keeps events in a list; used by tests and the CLI dry runs."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def emit(self, event: Dict[str, Any]) -> None:
        self.events.append(dict(event))


class CompositeTelemetry:
    """Fans one event out to several exporters; one failing exporter does not stop the others."""

    def __init__(self, exporters: Optional[Sequence[TelemetryExporter]] = None):
        self.exporters: List[TelemetryExporter] = list(exporters or [])

    def add(self, exporter: TelemetryExporter) -> None:
        self.exporters.append(exporter)

    def emit(self, event: Dict[str, Any]) -> None:
        failures = []
        for exporter in self.exporters:
            try:
                exporter.emit(event)
            except Exception as e:
                logger.warning("Telemetry exporter %s failed: %s", type(exporter).__name__, e)
                failures.append(e)
        if failures and len(failures) == len(self.exporters):
            raise failures[0]
