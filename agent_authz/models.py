"""Core records shared by every stage of the pipeline.

All of these are frozen: an Action, a verdict, an alignment result or a
Decision is never mutated after construction. Re-evaluation produces a new
Action carrying a `supersedes` back-reference.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel

from .canonical import canonical_hash


class Outcome(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    MODIFY = "MODIFY"
    STEP_UP = "STEP_UP"


class Verdict(str, Enum):
    FORBID = "FORBID"
    ALLOW = "ALLOW"
    DENY_BY_DEFAULT = "DENY_BY_DEFAULT"


class AlignmentCategory(str, Enum):
    ALIGNED = "ALIGNED"
    MISALIGNED = "MISALIGNED"
    INDETERMINATE = "INDETERMINATE"


class Effect(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    SEND = "send"
    EXECUTE = "execute"


# Ordered low -> high.
SENSITIVITY_RANK: Dict[str, int] = {"public": 0, "internal": 1, "confidential": 2, "restricted": 3}

ACTOR_KINDS = ("human", "service", "agent", "session")


# Stable reason codes returned to the interception point.
REASON_FORBIDDEN = "FORBIDDEN_BY_POLICY"
REASON_ALIGNED_ALLOW = "POLICY_ALLOW_ALIGNED"
REASON_CONTEXT_DENY = "CONTEXT_DEPENDENT_DENY"
REASON_INDETERMINATE_MODIFY = "INDETERMINATE_MODIFY"
REASON_INDETERMINATE_STEP_UP = "INDETERMINATE_STEP_UP"
REASON_CONTEXT_ALLOW = "CONTEXT_DEPENDENT_ALLOW"
REASON_DENY_BY_DEFAULT = "DENY_BY_DEFAULT"
REASON_APPROVED = "APPROVED"
REASON_REVIEWER_DENIED = "REVIEWER_DENIED"
REASON_APPROVAL_TIMEOUT = "APPROVAL_TIMEOUT"
REASON_SESSION_TERMINATED = "SESSION_TERMINATED"
REASON_APPROVAL_ERROR = "APPROVAL_SERVICE_ERROR"
REASON_APPROVAL_UNAVAILABLE = "APPROVAL_SERVICE_UNAVAILABLE"
REASON_APPROVAL_INVALID = "APPROVAL_INVALID"
REASON_POLICY_UNAVAILABLE = "POLICY_UNAVAILABLE"
REASON_POLICY_ERROR = "POLICY_ERROR"
REASON_INTENT_ERROR = "INTENT_ERROR"
REASON_SESSION_UNKNOWN = "SESSION_UNKNOWN"
REASON_MALFORMED_INPUT = "MALFORMED_INPUT"
REASON_SCHEMA_VIOLATION = "SCHEMA_VIOLATION"
REASON_LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
REASON_INTERNAL_ERROR = "INTERNAL_ERROR"
REASON_CALL_ID_CONFLICT = "CALL_ID_CONFLICT"

_CALL_FIELDS = ("session_id", "tool_identity", "operation", "parameters", "actor_identity")


def call_signature(action: Mapping[str, Any]) -> str:
    """Hash of what a call asks for, given an Action dict (`Action.to_dict()` shape).

    Ids and timestamps are excluded: a retry of the same call has the same
    signature, a different call reusing its call_id does not.
    """
    return canonical_hash({k: action.get(k) for k in _CALL_FIELDS})


@dataclass(frozen=True)
class ActorIdentity:
    kind: str
    id: str
    on_behalf_of: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "id": self.id, "on_behalf_of": self.on_behalf_of}


@dataclass(frozen=True)
class Action:
    """A normalized, immutable agent-initiated operation.

    `parameters` is the operation's typed variant (a frozen pydantic model).
    `effect`, `resource`, `destination` and `sensitivity` are derived from the
    operation catalog at normalization time.
    """

    action_id: str
    session_id: str
    tool_identity: str
    operation: str
    parameters: BaseModel
    timestamp: datetime
    actor_identity: ActorIdentity
    raw_reference: str
    effect: Effect
    resource: Optional[str] = None
    destination: Optional[str] = None
    sensitivity: str = "internal"
    supersedes: Optional[str] = None

    def params_dict(self) -> Dict[str, Any]:
        return self.parameters.model_dump(mode="json")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "session_id": self.session_id,
            "tool_identity": self.tool_identity,
            "operation": self.operation,
            "parameters": self.params_dict(),
            "timestamp": self.timestamp.isoformat(),
            "actor_identity": self.actor_identity.to_dict(),
            "raw_reference": self.raw_reference,
            "effect": self.effect.value,
            "resource": self.resource,
            "destination": self.destination,
            "sensitivity": self.sensitivity,
            "supersedes": self.supersedes,
        }


@dataclass(frozen=True)
class RationaleEntry:
    """One contribution to a decision: a matched rule, a signal, an error."""

    source: str
    ref: str
    detail: str
    value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "ref": self.ref, "detail": self.detail, "value": self.value}


@dataclass(frozen=True)
class PolicyVerdict:
    verdict: Verdict
    matched_rule: Optional[str]
    policy_version: Optional[str]
    evaluated_rules: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "matched_rule": self.matched_rule,
            "policy_version": self.policy_version,
            "evaluated_rules": list(self.evaluated_rules),
        }


@dataclass(frozen=True)
class AlignmentResult:
    score: float
    category: AlignmentCategory
    rationale: Tuple[RationaleEntry, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "category": self.category.value,
            "rationale": [r.to_dict() for r in self.rationale],
        }


@dataclass(frozen=True)
class Decision:
    """The full, immutable outcome for one Action.

    `modified_action` is set only for MODIFY: the superseding Action whose
    adjusted parameters are what actually executes. `supersedes` links a
    decision produced by re-evaluation (approval resolution) to the action id
    of the decision it replaces.
    """

    decision_id: str
    action: Action
    context_snapshot_id: str
    policy_verdict: PolicyVerdict
    alignment: Optional[AlignmentResult]
    final_outcome: Outcome
    reason_code: str
    rationale_trace: Tuple[RationaleEntry, ...]
    decided_at: datetime
    supersedes: Optional[str] = None
    modified_action: Optional[Action] = None

    @property
    def action_id(self) -> str:
        return self.action.action_id

    @property
    def session_id(self) -> str:
        return self.action.session_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "action_id": self.action_id,
            "session_id": self.session_id,
            "action": self.action.to_dict(),
            "context_snapshot_id": self.context_snapshot_id,
            "policy_verdict": self.policy_verdict.to_dict(),
            "intent_alignment": self.alignment.to_dict() if self.alignment else None,
            "final_outcome": self.final_outcome.value,
            "reason_code": self.reason_code,
            "rationale_trace": [r.to_dict() for r in self.rationale_trace],
            "decided_at_utc": self.decided_at.isoformat(),
            "supersedes": self.supersedes,
            "modified_action": self.modified_action.to_dict() if self.modified_action else None,
        }

    def draft_hash(self) -> str:
        """Hash reviewers bind their signed approvals to."""
        return canonical_hash(self.to_dict())


@dataclass(frozen=True)
class EnforcementResult:
    """What the interception point receives. Only ALLOW or DENY, never an exception.

    `fail_closed` marks the hard fail-closed signal (the decision could not be
    made durable); the caller must block the action.
    """

    allowed: bool
    outcome: str
    reason_code: str
    rationale: Tuple[Dict[str, Any], ...] = ()
    action_id: Optional[str] = None
    decision_id: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    receipt: Optional[Dict[str, Any]] = None
    fail_closed: bool = False
    replayed: bool = False

    @classmethod
    def from_record(
        cls,
        record: Dict[str, Any],
        *,
        receipt: Optional[Dict[str, Any]] = None,
        replayed: bool = False,
    ) -> "EnforcementResult":
        """Build from a committed decision dict (Decision.to_dict() shape)."""
        outcome = record["final_outcome"]
        allowed = outcome in (Outcome.ALLOW.value, Outcome.MODIFY.value)
        parameters: Optional[Dict[str, Any]] = None
        if outcome == Outcome.MODIFY.value and record.get("modified_action"):
            parameters = dict(record["modified_action"]["parameters"])
        elif allowed:
            parameters = dict(record["action"]["parameters"])
        return cls(
            allowed=allowed,
            outcome=Outcome.ALLOW.value if allowed else Outcome.DENY.value,
            reason_code=record["reason_code"],
            rationale=tuple(record.get("rationale_trace") or ()),
            action_id=record["action_id"],
            decision_id=record["decision_id"],
            parameters=parameters,
            receipt=receipt,
            replayed=replayed,
        )

    @classmethod
    def rejected(cls, reason_code: str, message: str, *, fail_closed: bool = False, action_id: Optional[str] = None) -> "EnforcementResult":
        return cls(
            allowed=False,
            outcome=Outcome.DENY.value,
            reason_code=reason_code,
            rationale=({"source": "error", "ref": reason_code, "detail": message, "value": None},),
            action_id=action_id,
            fail_closed=fail_closed,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "outcome": self.outcome,
            "reason_code": self.reason_code,
            "rationale": [dict(r) for r in self.rationale],
            "action_id": self.action_id,
            "decision_id": self.decision_id,
            "parameters": self.parameters,
            "receipt": self.receipt,
            "fail_closed": self.fail_closed,
            "replayed": self.replayed,
        }
