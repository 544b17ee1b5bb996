"""Decision Ledger: durable, append-only, idempotent by action_id.

`commit(decision)` stores one immutable ReceiptInput per action_id in
SQLite and returns it. Committing the same action_id again returns the
stored record, byte for byte, instead of writing a second one; this is how
interception-layer retries are absorbed.

After the first successful commit the ledger hands the ReceiptInput to the
Receipt Generator and the Telemetry Exporter. Neither can undo or alter the
commit: signing failures leave the decision without a receipt, telemetry
failures are logged and counted.

Storage access goes through a circuit breaker; while it is tripped every
operation raises StorageLockdownError and the authorizer fails closed.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from . import metrics
from .canonical import canonical_json_dumps, now_iso, sha256_hex
from .errors import LedgerConflict
from .lockdown import DbCircuitBreaker, StorageLockdownError
from .models import Decision
from .ops_stats import OPS_STATS
from .telemetry import TelemetryExporter

logger = logging.getLogger("agent_authz.ledger")

RECEIPT_INPUT_VERSION = "AUTHZ_RECEIPT_INPUT_V1"


@dataclass(frozen=True)
class ReceiptInput:
    """Immutable ledger record, ready for external signing.

    `canonical_json` is the exact stored text; everything else is derived
    from it and kept as attributes for convenience.
    """

    action_id: str
    decision_id: str
    session_id: str
    sequence: int
    outcome: str
    reason_code: str
    supersedes: Optional[str]
    committed_at_utc: str
    canonical_json: str
    receipt_input_hash: str

    @classmethod
    def build(cls, decision: Decision, sequence: int, committed_at_utc: str) -> "ReceiptInput":
        payload = {
            "version": RECEIPT_INPUT_VERSION,
            "sequence": int(sequence),
            "committed_at_utc": committed_at_utc,
            "decision": decision.to_dict(),
        }
        return cls.from_json(canonical_json_dumps(payload))

    @classmethod
    def from_json(cls, text: str) -> "ReceiptInput":
        payload = json.loads(text)
        d = payload["decision"]
        return cls(
            action_id=d["action_id"],
            decision_id=d["decision_id"],
            session_id=d["session_id"],
            sequence=int(payload["sequence"]),
            outcome=d["final_outcome"],
            reason_code=d["reason_code"],
            supersedes=d.get("supersedes"),
            committed_at_utc=payload["committed_at_utc"],
            canonical_json=text,
            receipt_input_hash=sha256_hex(text.encode("utf-8")),
        )

    def canonical_bytes(self) -> bytes:
        return self.canonical_json.encode("utf-8")

    @property
    def record(self) -> Dict[str, Any]:
        """The committed decision (Decision.to_dict() shape); a fresh copy per call."""
        return json.loads(self.canonical_json)["decision"]

    def to_dict(self) -> Dict[str, Any]:
        payload = json.loads(self.canonical_json)
        payload["receipt_input_hash"] = self.receipt_input_hash
        return payload


class ReceiptGenerator(Protocol):
    def sign(self, receipt_input: ReceiptInput) -> Any: ...


class LedgerStore:
    """SQLite persistence for the ledger (WAL, synchronous=FULL, insert-only)."""

    def __init__(self, db_path: str = "agent_authz.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = str(db_path)
        self.circuit = circuit or DbCircuitBreaker()
        self._init_db()

    @contextmanager
    def _db(self, op_name: str, isolation_level: Optional[str] = "DEFERRED"):
        """Connection wrapper; storage degradation trips LOCKDOWN instead of failing open."""
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=isolation_level,
            )
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
            elapsed_ms = (time.monotonic() - start) * 1000.0
            if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
                logger.warning("Ledger %s took %.0fms", op_name, elapsed_ms)
                self.circuit.record_latency(elapsed_ms)
            else:
                self.circuit.record_success()
        except sqlite3.OperationalError as e:
            if self.circuit.should_treat_operational_error_as_failure(str(e)):
                self.circuit.record_failure(e)
            raise
        finally:
            metrics.set_lockdown_active(self.circuit.is_lockdown_active())

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS decisions (
                action_id TEXT PRIMARY KEY,
                sequence INTEGER NOT NULL UNIQUE,
                decision_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                outcome TEXT NOT NULL,
                supersedes TEXT,
                receipt_input_json TEXT NOT NULL,
                receipt_input_hash TEXT NOT NULL,
                committed_at_utc TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_decisions_session ON decisions(session_id, sequence)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_decisions_supersedes ON decisions(supersedes)")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS receipts (
                action_id TEXT PRIMARY KEY,
                receipt_json TEXT NOT NULL,
                created_at_utc TEXT NOT NULL
            )
            """)

    def insert(self, decision: Decision) -> Tuple[ReceiptInput, bool]:
        """Insert once. Returns (record, created); created is False for a duplicate action_id."""
        try:
            with self._db("commit", isolation_level=None) as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT receipt_input_json FROM decisions WHERE action_id = ?", (decision.action_id,)
                ).fetchone()
                if row is not None:
                    return ReceiptInput.from_json(row[0]), False
                seq = conn.execute("SELECT COALESCE(MAX(sequence), 0) + 1 FROM decisions").fetchone()[0]
                ri = ReceiptInput.build(decision, seq, now_iso())
                conn.execute(
                    """
                    INSERT INTO decisions
                    (action_id, sequence, decision_id, session_id, outcome, supersedes,
                     receipt_input_json, receipt_input_hash, committed_at_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (ri.action_id, ri.sequence, ri.decision_id, ri.session_id, ri.outcome, ri.supersedes,
                     ri.canonical_json, ri.receipt_input_hash, ri.committed_at_utc),
                )
                return ri, True
        except sqlite3.IntegrityError:
            existing = self.get(decision.action_id)
            if existing is None:
                raise
            return existing, False

    def get(self, action_id: str) -> Optional[ReceiptInput]:
        with self._db("get") as conn:
            row = conn.execute(
                "SELECT receipt_input_json FROM decisions WHERE action_id = ?", (action_id,)
            ).fetchone()
        return ReceiptInput.from_json(row[0]) if row else None

    def successor_of(self, action_id: str, session_id: str) -> Optional[ReceiptInput]:
        """First record superseding `action_id` within the same session."""
        with self._db("successor") as conn:
            row = conn.execute(
                "SELECT receipt_input_json FROM decisions WHERE supersedes = ? AND session_id = ? "
                "ORDER BY sequence LIMIT 1",
                (action_id, session_id),
            ).fetchone()
        return ReceiptInput.from_json(row[0]) if row else None

    def for_session(self, session_id: str) -> List[ReceiptInput]:
        with self._db("for_session") as conn:
            rows = conn.execute(
                "SELECT receipt_input_json FROM decisions WHERE session_id = ? ORDER BY sequence", (session_id,)
            ).fetchall()
        return [ReceiptInput.from_json(r[0]) for r in rows]

    def iter_all(self, after_sequence: int = 0, batch_size: int = 500) -> Iterator[ReceiptInput]:
        last = int(after_sequence)
        while True:
            with self._db("replay") as conn:
                rows = conn.execute(
                    "SELECT sequence, receipt_input_json FROM decisions WHERE sequence > ? ORDER BY sequence LIMIT ?",
                    (last, batch_size),
                ).fetchall()
            if not rows:
                return
            for seq, text in rows:
                last = seq
                yield ReceiptInput.from_json(text)

    def count(self) -> int:
        with self._db("count") as conn:
            return int(conn.execute("SELECT COUNT(*) FROM decisions").fetchone()[0])

    def store_receipt(self, action_id: str, receipt: Dict[str, Any]) -> bool:
        try:
            with self._db("store_receipt") as conn:
                conn.execute(
                    "INSERT INTO receipts (action_id, receipt_json, created_at_utc) VALUES (?, ?, ?)",
                    (action_id, json.dumps(receipt, sort_keys=True), now_iso()),
                )
                return True
        except sqlite3.IntegrityError:
            return False

    def get_receipt(self, action_id: str) -> Optional[Dict[str, Any]]:
        with self._db("get_receipt") as conn:
            row = conn.execute("SELECT receipt_json FROM receipts WHERE action_id = ?", (action_id,)).fetchone()
        return json.loads(row[0]) if row else None


class DecisionLedger:
    def __init__(
        self,
        store: LedgerStore,
        receipts: Optional[ReceiptGenerator] = None,
        telemetry: Optional[TelemetryExporter] = None,
    ):
        self.store = store
        self.receipts = receipts
        self.telemetry = telemetry

    @classmethod
    def open(cls, db_path: str, **kwargs: Any) -> "DecisionLedger":
        circuit = kwargs.pop("circuit", None)
        return cls(LedgerStore(db_path, circuit=circuit), **kwargs)

    @property
    def lockdown_active(self) -> bool:
        return self.store.circuit.is_lockdown_active()

    def commit(self, decision: Decision) -> ReceiptInput:
        """Append the decision; a duplicate action_id returns the original record."""
        ri, _created = self.commit_once(decision)
        return ri

    def commit_once(self, decision: Decision) -> Tuple[ReceiptInput, bool]:
        """Like commit(), also reporting whether this call created the record."""
        try:
            ri, created = self.store.insert(decision)
        except StorageLockdownError:
            OPS_STATS.record_storage_lockdown()
            raise
        if not created:
            conflict = LedgerConflict(decision.action_id)
            logger.warning("%s (decision %s); returning committed record", conflict, ri.decision_id)
            metrics.record_ledger_conflict()
            OPS_STATS.record_ledger_conflict()
            return ri, False

        logger.debug("Committed %s seq=%d outcome=%s", ri.action_id, ri.sequence, ri.outcome)
        self._sign(ri)
        self._emit(ri)
        return ri, True

    def _sign(self, ri: ReceiptInput) -> None:
        if self.receipts is None:
            return
        try:
            receipt = self.receipts.sign(ri)
            self.store.store_receipt(ri.action_id, receipt.to_dict() if hasattr(receipt, "to_dict") else dict(receipt))
        except Exception as e:
            logger.warning("Receipt signing failed for %s: %s", ri.action_id, e)

    def _emit(self, ri: ReceiptInput) -> None:
        if self.telemetry is None:
            return
        event = {
            "event": "authz.decision",
            "action_id": ri.action_id,
            "decision_id": ri.decision_id,
            "session_id": ri.session_id,
            "sequence": ri.sequence,
            "outcome": ri.outcome,
            "reason_code": ri.reason_code,
            "supersedes": ri.supersedes,
            "receipt_input_hash": ri.receipt_input_hash,
            "committed_at_utc": ri.committed_at_utc,
        }
        try:
            self.telemetry.emit(event)
        except Exception as e:
            logger.warning("Telemetry export failed for %s: %s", ri.action_id, e)
            OPS_STATS.record_telemetry_error()

    def get(self, action_id: str) -> Optional[ReceiptInput]:
        return self.store.get(action_id)

    def for_session(self, session_id: str) -> List[ReceiptInput]:
        return self.store.for_session(session_id)

    def replay(self) -> Iterator[ReceiptInput]:
        """Committed records in commit order."""
        return self.store.iter_all()

    def receipt_for(self, action_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get_receipt(action_id)

    def resolve_chain(self, action_id: str) -> Optional[ReceiptInput]:
        """Latest record in the supersedes chain starting at action_id, or None."""
        current = self.store.get(action_id)
        if current is None:
            return None
        seen = {current.action_id}
        while True:
            nxt = self.store.successor_of(current.action_id, current.session_id)
            if nxt is None or nxt.action_id in seen:
                return current
            seen.add(nxt.action_id)
            current = nxt
