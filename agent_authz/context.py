"""Context Store: append-only per-session history.

Each session keeps one ever-growing list of HistoryEntry objects and one list
of intent declarations. Neither list is ever reordered, truncated or edited.
Writers (append, declare_intent, terminate) are serialized per session by a
threading.Lock; after extending the lists a writer publishes a new immutable
`_Head` by a single attribute assignment. Readers (snapshot) only read the
current head and wrap the shared lists in length-bounded views, so a snapshot
never takes the writer lock and never observes a partially appended entry.

The head carries a hash chain over every entry and declaration, which gives
each snapshot a stable id: two snapshots with the same id describe the same
prefix.

Optional durability comes from SessionJournal, an fsync'd JSONL file that a
fresh store can replay on start-up.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections import abc
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Tuple, Union, overload

from .canonical import canonical_hash, canonical_json_dumps, now_utc, parse_iso_utc, safe_hash_encode, sha256_hex
from .errors import UnknownSession
from .models import (
    SENSITIVITY_RANK,
    Action,
    AlignmentCategory,
    AlignmentResult,
    Decision,
    Outcome,
    PolicyVerdict,
    RationaleEntry,
    Verdict,
)

logger = logging.getLogger("agent_authz.context")

GENESIS_HASH = "0" * 64

STATUS_ACTIVE = "active"
STATUS_TERMINATED = "terminated"


@dataclass(frozen=True)
class StatedIntent:
    """One declaration of what the user asked the agent to do.

    `text` is the free-form request. The structured fields are optional; when
    present they narrow what counts as on-task (`operations` are canonical
    operation names, `recipients` are destinations the user named).
    """

    text: str
    operations: Tuple[str, ...] = ()
    tools: Tuple[str, ...] = ()
    resources: Tuple[str, ...] = ()
    recipients: Tuple[str, ...] = ()
    declared_at: datetime = field(default_factory=now_utc)

    @classmethod
    def parse(cls, obj: Union[str, Mapping[str, Any], "StatedIntent"]) -> "StatedIntent":
        if isinstance(obj, StatedIntent):
            return obj
        if isinstance(obj, str):
            text = obj.strip()
            if not text:
                raise ValueError("intent text cannot be empty")
            return cls(text=text)
        if not isinstance(obj, Mapping):
            raise ValueError("intent must be a string or an object")

        text = str(obj.get("text") or "").strip()

        def _strs(key: str) -> Tuple[str, ...]:
            raw = obj.get(key) or ()
            if isinstance(raw, str) or not isinstance(raw, (list, tuple)):
                raise ValueError(f"intent.{key} must be a list of strings")
            return tuple(str(v).strip() for v in raw if str(v).strip())

        operations = _strs("operations")
        if not text and not operations:
            raise ValueError("intent needs text or structured operations")
        declared_at = parse_iso_utc(obj.get("declared_at")) or now_utc()
        return cls(
            text=text,
            operations=tuple(o.lower() for o in operations),
            tools=_strs("tools"),
            resources=_strs("resources"),
            recipients=tuple(r.lower() for r in _strs("recipients")),
            declared_at=declared_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "operations": list(self.operations),
            "tools": list(self.tools),
            "resources": list(self.resources),
            "recipients": list(self.recipients),
            "declared_at": self.declared_at.isoformat(),
        }


@dataclass(frozen=True)
class HistoryEntry:
    action: Action
    decision: Decision
    entry_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action.to_dict(), "decision": self.decision.to_dict(), "entry_hash": self.entry_hash}


@dataclass(frozen=True)
class AccessedResource:
    resource: str
    sensitivity: str
    action_id: str


class HistoryView(abc.Sequence):
    """Read-only view of the first `length` items of a shared append-only list."""

    __slots__ = ("_items", "_length")

    def __init__(self, items: List[Any], length: int):
        self._items = items
        self._length = length

    def __len__(self) -> int:
        return self._length

    @overload
    def __getitem__(self, index: int) -> Any: ...

    @overload
    def __getitem__(self, index: slice) -> List[Any]: ...

    def __getitem__(self, index):
        if isinstance(index, slice):
            return [self._items[i] for i in range(*index.indices(self._length))]
        if index < 0:
            index += self._length
        if not 0 <= index < self._length:
            raise IndexError("history index out of range")
        return self._items[index]

    def __iter__(self) -> Iterator[Any]:
        for i in range(self._length):
            yield self._items[i]

    def __repr__(self) -> str:
        return f"HistoryView(len={self._length})"


@dataclass(frozen=True)
class _Head:
    length: int
    intent_count: int
    chain_hash: str
    accessed: FrozenSet[AccessedResource]
    status: str
    last_timestamp: Optional[datetime]


@dataclass(frozen=True)
class SessionContextSnapshot:
    """Immutable point-in-time view handed to the evaluators."""

    session_id: str
    snapshot_id: str
    status: str
    intent_history: Sequence[StatedIntent]
    action_history: Sequence[HistoryEntry]
    data_accessed: FrozenSet[AccessedResource]
    head_hash: str

    @property
    def stated_intent(self) -> Optional[StatedIntent]:
        return self.intent_history[-1] if len(self.intent_history) else None

    @property
    def derived_risk_signals(self) -> Dict[str, Any]:
        """Recomputed on every access from history and accessed data."""
        denials = 0
        step_ups = 0
        outbound = 0
        for entry in self.action_history:
            outcome = entry.decision.final_outcome
            if outcome == Outcome.DENY:
                denials += 1
            elif outcome == Outcome.STEP_UP:
                step_ups += 1
            if entry.action.destination and outcome in (Outcome.ALLOW, Outcome.MODIFY):
                outbound += 1
        return {
            "history_length": len(self.action_history),
            "prior_denials": denials,
            "prior_step_ups": step_ups,
            "outbound_sends": outbound,
            "max_sensitivity_accessed": max_sensitivity(r.sensitivity for r in self.data_accessed),
            "intent_declarations": len(self.intent_history),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "snapshot_id": self.snapshot_id,
            "status": self.status,
            "stated_intent": self.stated_intent.to_dict() if self.stated_intent else None,
            "intent_history": [i.to_dict() for i in self.intent_history],
            "action_history": [
                {
                    "action_id": e.action.action_id,
                    "operation": e.action.operation,
                    "timestamp": e.action.timestamp.isoformat(),
                    "final_outcome": e.decision.final_outcome.value,
                    "reason_code": e.decision.reason_code,
                    "entry_hash": e.entry_hash,
                }
                for e in self.action_history
            ],
            "data_accessed": sorted(
                ({"resource": r.resource, "sensitivity": r.sensitivity, "action_id": r.action_id} for r in self.data_accessed),
                key=lambda d: (d["resource"], d["action_id"]),
            ),
            "derived_risk_signals": self.derived_risk_signals,
            "head_hash": self.head_hash,
        }


def max_sensitivity(levels) -> Optional[str]:
    best: Optional[str] = None
    for level in levels:
        if level in SENSITIVITY_RANK and (best is None or SENSITIVITY_RANK[level] > SENSITIVITY_RANK[best]):
            best = level
    return best


def _entry_hash(prev_hash: str, action: Action, decision: Decision) -> str:
    return sha256_hex(safe_hash_encode([
        "AUTHZ_CTX_ENTRY_V1",
        prev_hash,
        canonical_hash(action.to_dict()),
        decision.decision_id,
        decision.final_outcome.value,
    ]))


def _intent_hash(prev_hash: str, intent: StatedIntent) -> str:
    return sha256_hex(safe_hash_encode(["AUTHZ_CTX_INTENT_V1", prev_hash, canonical_hash(intent.to_dict())]))


class _Session:
    def __init__(self, session_id: str):
        self.session_id = session_id
        self.lock = threading.Lock()
        self.entries: List[HistoryEntry] = []
        self.intents: List[StatedIntent] = []
        self.action_ids: set = set()
        self.head = _Head(0, 0, GENESIS_HASH, frozenset(), STATUS_ACTIVE, None)


TerminationListener = Callable[[str], None]


class ContextStore:
    """In-memory, append-only session context with optional journal durability."""

    def __init__(self, journal: Optional["SessionJournal"] = None):
        self._sessions: Dict[str, _Session] = {}
        self._registry_lock = threading.Lock()
        self._listeners: List[TerminationListener] = []
        self.journal = journal

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _get(self, session_id: str) -> Optional[_Session]:
        return self._sessions.get(session_id)

    def ensure_session(self, session_id: str) -> None:
        """Create the session on first sight; UnknownSession if it was terminated."""
        session = self._get(session_id)
        if session is None:
            with self._registry_lock:
                session = self._sessions.get(session_id)
                if session is None:
                    self._sessions[session_id] = _Session(session_id)
                    logger.debug("Session %s created", session_id)
                    return
        if session.head.status != STATUS_ACTIVE:
            raise UnknownSession(session_id)

    def is_active(self, session_id: str) -> bool:
        session = self._get(session_id)
        return session is not None and session.head.status == STATUS_ACTIVE

    def stamp(self, action: Action) -> Action:
        """`action` with its timestamp raised to the session's latest entry if the clock went back.

        History timestamps are non-decreasing; call this under the session's
        ordering lock, before the Action is evaluated.
        """
        session = self._get(action.session_id)
        last = session.head.last_timestamp if session is not None else None
        if last is None or action.timestamp >= last:
            return action
        logger.warning(
            "Clock behind session %s history by %.3fs; stamping %s with the latest entry time",
            action.session_id, (last - action.timestamp).total_seconds(), action.action_id,
        )
        return replace(action, timestamp=last)

    def session_ids(self) -> List[str]:
        return sorted(self._sessions.keys())

    def add_termination_listener(self, listener: TerminationListener) -> None:
        self._listeners.append(listener)

    def terminate(self, session_id: str) -> bool:
        """Archive the session. Returns False if it was already terminated."""
        session = self._get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        with session.lock:
            if session.head.status != STATUS_ACTIVE:
                return False
            if self.journal is not None:
                self.journal.append({"type": "terminate", "session_id": session_id, "ts_utc": now_utc().isoformat()})
            h = session.head
            session.head = _Head(h.length, h.intent_count, h.chain_hash, h.accessed, STATUS_TERMINATED, h.last_timestamp)
        logger.info("Session %s terminated (%d entries archived)", session_id, session.head.length)
        for listener in list(self._listeners):
            try:
                listener(session_id)
            except Exception:
                logger.exception("Termination listener failed for session %s", session_id)
        return True

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def declare_intent(self, session_id: str, intent: Union[str, Mapping[str, Any], StatedIntent]) -> StatedIntent:
        """Record a declaration; earlier declarations are kept, never overwritten."""
        parsed = StatedIntent.parse(intent)
        self.ensure_session(session_id)
        session = self._sessions[session_id]
        with session.lock:
            if session.head.status != STATUS_ACTIVE:
                raise UnknownSession(session_id)
            if self.journal is not None:
                self.journal.append({"type": "intent", "session_id": session_id, "intent": parsed.to_dict()})
            self._publish_intent(session, parsed)
        return parsed

    def append(self, session_id: str, action: Action, decision: Decision) -> HistoryEntry:
        """Atomically add one (action, decision) entry to the session history."""
        if action.session_id != session_id:
            raise ValueError("action belongs to a different session")
        if decision.action_id != action.action_id:
            raise ValueError("decision does not belong to this action")
        session = self._get(session_id)
        if session is None:
            raise UnknownSession(session_id, "unknown session")
        with session.lock:
            head = session.head
            if head.status != STATUS_ACTIVE:
                raise UnknownSession(session_id)
            if action.action_id in session.action_ids:
                raise ValueError(f"action {action.action_id} already in session history")
            if head.last_timestamp is not None and action.timestamp < head.last_timestamp:
                raise ValueError("action timestamp precedes the latest history entry")
            if self.journal is not None:
                self.journal.append({
                    "type": "entry",
                    "session_id": session_id,
                    "action": action.to_dict(),
                    "decision": decision.to_dict(),
                })
            entry = self._publish_entry(session, action, decision)
        logger.debug("Session %s appended %s (%s)", session_id, action.action_id, decision.final_outcome.value)
        return entry

    def _publish_intent(self, session: _Session, intent: StatedIntent) -> None:
        session.intents.append(intent)
        h = session.head
        session.head = _Head(
            h.length, h.intent_count + 1, _intent_hash(h.chain_hash, intent), h.accessed, h.status, h.last_timestamp
        )

    def _publish_entry(self, session: _Session, action: Action, decision: Decision) -> HistoryEntry:
        h = session.head
        entry = HistoryEntry(action=action, decision=decision, entry_hash=_entry_hash(h.chain_hash, action, decision))
        session.entries.append(entry)
        session.action_ids.add(action.action_id)
        accessed = h.accessed
        touched = decision.modified_action or action
        if touched.resource and decision.final_outcome in (Outcome.ALLOW, Outcome.MODIFY):
            accessed = accessed | {AccessedResource(touched.resource, touched.sensitivity, action.action_id)}
        session.head = _Head(h.length + 1, h.intent_count, entry.entry_hash, accessed, h.status, action.timestamp)
        return entry

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def snapshot(self, session_id: str) -> SessionContextSnapshot:
        session = self._get(session_id)
        if session is None:
            raise UnknownSession(session_id, "unknown session")
        head = session.head
        return SessionContextSnapshot(
            session_id=session_id,
            snapshot_id=f"ctx_{session_id}_{head.length}_{head.chain_hash[:16]}",
            status=head.status,
            intent_history=HistoryView(session.intents, head.intent_count),
            action_history=HistoryView(session.entries, head.length),
            data_accessed=head.accessed,
            head_hash=head.chain_hash,
        )

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def replay(self, journal: "SessionJournal", normalizer) -> int:
        """Rebuild sessions from a journal. Returns the number of records applied.

        The store must be empty. Records are applied without re-journaling.
        """
        if self._sessions:
            raise RuntimeError("replay requires an empty context store")
        applied = 0
        for rec in journal.records():
            sid = str(rec.get("session_id", ""))
            kind = rec.get("type")
            if kind == "intent":
                self.ensure_session(sid)
                self._publish_intent(self._sessions[sid], StatedIntent.parse(rec["intent"]))
            elif kind == "entry":
                self.ensure_session(sid)
                action = normalizer.rehydrate(rec["action"])
                decision = decision_from_dict(rec["decision"], action, normalizer)
                session = self._sessions[sid]
                self._publish_entry(session, action, decision)
            elif kind == "terminate":
                session = self._get(sid)
                if session is not None:
                    h = session.head
                    session.head = _Head(h.length, h.intent_count, h.chain_hash, h.accessed, STATUS_TERMINATED, h.last_timestamp)
            else:
                logger.warning("Skipping unknown journal record type %r", kind)
                continue
            applied += 1
        if self.journal is None:
            self.journal = journal
        logger.info("Replayed %d journal records into %d sessions", applied, len(self._sessions))
        return applied


def decision_from_dict(data: Mapping[str, Any], action: Action, normalizer) -> Decision:
    """Rebuild a Decision from its to_dict() form."""
    pv = data["policy_verdict"]
    alignment = None
    if data.get("intent_alignment"):
        ia = data["intent_alignment"]
        alignment = AlignmentResult(
            score=float(ia["score"]),
            category=AlignmentCategory(ia["category"]),
            rationale=tuple(_rationale(r) for r in ia.get("rationale") or ()),
        )
    modified = data.get("modified_action")
    decided_at = parse_iso_utc(data.get("decided_at_utc"))
    if decided_at is None:
        raise ValueError("stored decision has no valid decided_at_utc")
    return Decision(
        decision_id=str(data["decision_id"]),
        action=action,
        context_snapshot_id=str(data["context_snapshot_id"]),
        policy_verdict=PolicyVerdict(
            verdict=Verdict(pv["verdict"]),
            matched_rule=pv.get("matched_rule"),
            policy_version=pv.get("policy_version"),
            evaluated_rules=tuple(pv.get("evaluated_rules") or ()),
        ),
        alignment=alignment,
        final_outcome=Outcome(data["final_outcome"]),
        reason_code=str(data["reason_code"]),
        rationale_trace=tuple(_rationale(r) for r in data.get("rationale_trace") or ()),
        decided_at=decided_at,
        supersedes=data.get("supersedes"),
        modified_action=normalizer.rehydrate(modified) if modified else None,
    )


def _rationale(d: Mapping[str, Any]) -> RationaleEntry:
    value = d.get("value")
    return RationaleEntry(
        source=str(d.get("source", "")),
        ref=str(d.get("ref", "")),
        detail=str(d.get("detail", "")),
        value=None if value is None else float(value),
    )


class SessionJournal:
    """Append-only fsync'd JSONL journal of session mutations.

    Tolerates a truncated final line after a crash: reading stops at the
    first undecodable line.
    """

    def __init__(self, path: str):
        self.path = str(path)
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, record: Dict[str, Any]) -> None:
        line = canonical_json_dumps(record) + "\n"
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())

    def records(self) -> Iterator[Dict[str, Any]]:
        p = Path(self.path)
        if not p.exists() or p.stat().st_size == 0:
            return
        with open(p, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Session journal %s has a truncated tail; stopping replay there", self.path)
                    break
                if isinstance(rec, dict):
                    yield rec
