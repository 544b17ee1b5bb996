"""The authorization pipeline.

    raw call -> Normalizer -> Context snapshot -> Policy -> Intent -> Arbiter
             -> Ledger.commit -> Context.append -> EnforcementResult

`ActionAuthorizer.authorize(raw_call)` is the single entry point for the
interception layer. It never raises: every failure inside the pipeline is
converted into a committed DENY decision, a deterministic rejection (for
input that never became an Action), or the hard fail-closed signal
(`fail_closed=True`) when the decision itself cannot be made durable.

Actions of one session are evaluated strictly in arrival order under a
per-session asyncio lock, so each action's snapshot includes every earlier
committed decision of its session. A pending STEP_UP keeps that lock until
the approval resolves; other sessions are unaffected.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from . import metrics
from .approvals import ApprovalService, CancellationToken
from .arbiter import DecisionArbiter
from .audit_log import TamperEvidentAuditLog
from .config import AuthzConfig
from .context import ContextStore, SessionJournal, StatedIntent
from .crypto import TrustedKeyStore
from .errors import AuthzError, MalformedInput, PolicyUnavailable, SchemaViolation, UnknownSession
from .intent import IntentAlignmentEvaluator
from .ledger import DecisionLedger, ReceiptInput
from .lockdown import DbCircuitBreaker, StorageLockdownError
from .models import (
    REASON_CALL_ID_CONFLICT,
    REASON_INTENT_ERROR,
    REASON_INTERNAL_ERROR,
    REASON_LEDGER_UNAVAILABLE,
    REASON_MALFORMED_INPUT,
    REASON_POLICY_ERROR,
    REASON_POLICY_UNAVAILABLE,
    REASON_SCHEMA_VIOLATION,
    REASON_SESSION_UNKNOWN,
    Action,
    AlignmentResult,
    Decision,
    EnforcementResult,
    Outcome,
    PolicyVerdict,
    Verdict,
    call_signature,
)
from .normalizer import ActionNormalizer, is_valid_session_id
from .ops_stats import OPS_STATS
from .policy import PolicyEvaluator, PolicyStore
from .receipts import Ed25519ReceiptGenerator
from .telemetry import AuditLogExporter, CompositeTelemetry, LoggingExporter, TelemetryExporter

logger = logging.getLogger("agent_authz.authorizer")

# Reason codes produced by errors rather than by policy or intent.
FAIL_CLOSED_REASONS = frozenset({
    REASON_POLICY_UNAVAILABLE,
    REASON_POLICY_ERROR,
    REASON_INTENT_ERROR,
    REASON_SESSION_UNKNOWN,
    REASON_INTERNAL_ERROR,
})


class ActionAuthorizer:
    def __init__(
        self,
        *,
        normalizer: ActionNormalizer,
        context: ContextStore,
        policies: PolicyStore,
        ledger: DecisionLedger,
        intent: IntentAlignmentEvaluator,
        arbiter: DecisionArbiter,
        policy_evaluator: Optional[PolicyEvaluator] = None,
    ):
        self.normalizer = normalizer
        self.context = context
        self.policies = policies
        self.ledger = ledger
        self.intent = intent
        self.arbiter = arbiter
        self.policy_evaluator = policy_evaluator or PolicyEvaluator()
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._tokens: Dict[str, Set[CancellationToken]] = {}
        self.context.add_termination_listener(self._on_session_terminated)

    @classmethod
    def from_config(
        cls,
        config: Optional[AuthzConfig] = None,
        *,
        approvals: Optional[ApprovalService] = None,
        signer: Any = None,
        trusted_keys: Optional[TrustedKeyStore] = None,
        telemetry: Optional[TelemetryExporter] = None,
        circuit: Optional[DbCircuitBreaker] = None,
    ) -> "ActionAuthorizer":
        """Wire a complete authorizer.

        `signer` (an Ed25519KeyPair or any Signer) enables receipts and, with
        `config.audit_log_path`, the tamper-evident audit log. Without a
        loadable rule set the authorizer starts in the fail-closed state.
        """
        cfg = config or AuthzConfig.from_env()
        normalizer = ActionNormalizer(require_actor=cfg.require_actor)

        context = ContextStore()
        if cfg.session_journal_path:
            context.replay(SessionJournal(cfg.session_journal_path), normalizer)

        policies = PolicyStore()
        try:
            if cfg.policy_file:
                policies.load_file(cfg.policy_file)
            elif cfg.policy_url:
                policies.load_url(cfg.policy_url)
        except AuthzError as e:
            logger.warning("Starting without an active rule set (all actions DENY): %s", e)

        if telemetry is None:
            exporters: List[TelemetryExporter] = [LoggingExporter(logging.DEBUG)]
            if cfg.audit_log_path and signer is not None:
                exporters.append(AuditLogExporter(TamperEvidentAuditLog(cfg.audit_log_path, signer)))
            telemetry = CompositeTelemetry(exporters)

        ledger = DecisionLedger.open(
            cfg.ledger_db_path,
            circuit=circuit,
            receipts=Ed25519ReceiptGenerator(signer) if signer is not None else None,
            telemetry=telemetry,
        )
        return cls(
            normalizer=normalizer,
            context=context,
            policies=policies,
            ledger=ledger,
            intent=IntentAlignmentEvaluator(cfg.alignment),
            arbiter=DecisionArbiter(cfg.arbiter, normalizer, approvals, trusted_keys),
        )

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def declare_intent(self, session_id: str, intent: Union[str, Mapping[str, Any], StatedIntent]) -> StatedIntent:
        if not is_valid_session_id(session_id):
            raise MalformedInput("session_id must match [A-Za-z0-9_.:-]{1,128}")
        return self.context.declare_intent(session_id, intent)

    def terminate_session(self, session_id: str) -> bool:
        """Terminate a session; pending STEP_UP waits resolve to DENY "session terminated"."""
        return self.context.terminate(session_id)

    def _on_session_terminated(self, session_id: str) -> None:
        tokens = list(self._tokens.get(session_id, ()))
        for token in tokens:
            token.cancel("session terminated")
        cancel_session = getattr(self.arbiter.approvals, "cancel_session", None)
        if callable(cancel_session):
            cancel_session(session_id)
        if tokens:
            logger.info("Cancelled %d pending approval wait(s) for session %s", len(tokens), session_id)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = self._session_locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        return lock

    def _release_lock(self, session_id: str) -> None:
        # Dropped once nobody holds or waits on it; the next call makes a fresh one.
        users = self._lock_users.get(session_id, 0) - 1
        if users > 0:
            self._lock_users[session_id] = users
            return
        self._lock_users.pop(session_id, None)
        self._session_locks.pop(session_id, None)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def authorize(self, raw_call: Any) -> EnforcementResult:
        session_id = raw_call.get("session_id") if isinstance(raw_call, Mapping) else None
        if not is_valid_session_id(session_id):
            return self._evaluate_unlocked(raw_call)
        lock = self._lock_for(session_id)
        try:
            async with lock:
                return await self._authorize_locked(raw_call)
        finally:
            self._release_lock(session_id)

    def _evaluate_unlocked(self, raw_call: Any) -> EnforcementResult:
        try:
            self.normalizer.normalize(raw_call)
        except MalformedInput as e:
            return self._rejected(e)
        # normalize() rejects every call that reaches here
        return EnforcementResult.rejected(REASON_MALFORMED_INPUT, "session_id is invalid")

    def _rejected(self, error: MalformedInput) -> EnforcementResult:
        reason = REASON_SCHEMA_VIOLATION if isinstance(error, SchemaViolation) else REASON_MALFORMED_INPUT
        OPS_STATS.record_rejected_input()
        logger.debug("Rejected raw call: %s", error)
        return EnforcementResult.rejected(reason, error.message)

    async def _authorize_locked(self, raw_call: Mapping[str, Any]) -> EnforcementResult:
        started = time.monotonic()
        try:
            action = self.normalizer.normalize(raw_call)
        except MalformedInput as e:
            return self._rejected(e)
        action = self.context.stamp(action)

        try:
            existing = self.ledger.get(action.action_id)
            latest = self.ledger.resolve_chain(action.action_id) if existing is not None else None
        except (StorageLockdownError, sqlite3.Error) as e:
            return self._ledger_unavailable(action, e)
        if existing is not None and latest is not None:
            if call_signature(existing.record["action"]) != call_signature(action.to_dict()):
                return self._call_id_conflict(action, existing)
            OPS_STATS.record_replayed()
            logger.info("Retry of %s answered from ledger (%s)", action.action_id, latest.outcome)
            return self._result(latest, replayed=True)

        decision = self._evaluate(action)
        try:
            committed = self._commit_and_append(decision)
        except (StorageLockdownError, sqlite3.Error) as e:
            return self._ledger_unavailable(action, e)
        metrics.observe_decision_latency(time.monotonic() - started)

        if decision.final_outcome != Outcome.STEP_UP:
            return self._result(committed)

        OPS_STATS.record_step_up()
        final = await self._resolve_step_up(decision)
        stamped = self.context.stamp(final.action)
        if stamped is not final.action:
            final = replace(final, action=stamped)
        try:
            committed = self._commit_and_append(final)
        except (StorageLockdownError, sqlite3.Error) as e:
            return self._ledger_unavailable(final.action, e)
        return self._result(committed)

    def _evaluate(self, action: Action) -> Decision:
        """Policy, intent and arbitration for one Action. Never raises."""
        try:
            self.context.ensure_session(action.session_id)
            snapshot = self.context.snapshot(action.session_id)
        except UnknownSession as e:
            return self.arbiter.fail_closed(action, f"ctx_{action.session_id}_unavailable", REASON_SESSION_UNKNOWN, e)

        verdict: Optional[PolicyVerdict] = None
        alignment: Optional[AlignmentResult] = None
        try:
            rule_set = self.policies.current()
        except PolicyUnavailable as e:
            return self.arbiter.fail_closed(action, snapshot.snapshot_id, REASON_POLICY_UNAVAILABLE, e)
        try:
            verdict = self.policy_evaluator.evaluate(action, rule_set)
        except Exception as e:
            logger.exception("Policy evaluation failed for %s", action.action_id)
            return self.arbiter.fail_closed(action, snapshot.snapshot_id, REASON_POLICY_ERROR, e)

        if verdict.verdict != Verdict.FORBID:
            try:
                alignment = self.intent.evaluate(action, snapshot)
            except Exception as e:
                logger.exception("Intent evaluation failed for %s", action.action_id)
                return self.arbiter.fail_closed(action, snapshot.snapshot_id, REASON_INTENT_ERROR, e, verdict=verdict)

        try:
            return self.arbiter.decide(action, snapshot.snapshot_id, verdict, alignment)
        except Exception as e:
            logger.exception("Arbitration failed for %s", action.action_id)
            return self.arbiter.fail_closed(
                action, snapshot.snapshot_id, REASON_INTERNAL_ERROR, e, verdict=verdict, alignment=alignment
            )

    async def _resolve_step_up(self, draft: Decision) -> Decision:
        token = CancellationToken()
        tokens = self._tokens.setdefault(draft.session_id, set())
        tokens.add(token)
        try:
            if not self.context.is_active(draft.session_id):
                token.cancel("session terminated")
            return await self.arbiter.resolve_step_up(draft, token)
        finally:
            tokens.discard(token)
            if not tokens:
                self._tokens.pop(draft.session_id, None)

    def _commit_and_append(self, decision: Decision) -> ReceiptInput:
        committed, created = self.ledger.commit_once(decision)
        if not created:
            return committed
        metrics.record_decision(committed.outcome, committed.reason_code)
        OPS_STATS.record_decision(committed.outcome, committed.reason_code)
        if committed.reason_code in FAIL_CLOSED_REASONS:
            metrics.record_fail_closed(committed.reason_code)
            OPS_STATS.record_fail_closed(committed.reason_code)
            logger.warning("Fail-closed DENY for %s: %s", committed.action_id, committed.reason_code)
        if decision.reason_code == REASON_SESSION_UNKNOWN:
            return committed
        try:
            self.context.append(decision.session_id, decision.action, decision)
        except UnknownSession:
            logger.info("Session %s ended before %s was recorded in its history", decision.session_id, decision.action_id)
        except ValueError as e:
            logger.error("Context append rejected %s: %s", decision.action_id, e)
        return committed

    def _call_id_conflict(self, action: Action, existing: ReceiptInput) -> EnforcementResult:
        """A reused call_id that asks for something else is refused, never replayed."""
        logger.warning(
            "call_id of %s reused in session %s for a different call (%s, first seen as %s)",
            action.action_id, action.session_id, action.operation, existing.record["action"]["operation"],
        )
        metrics.record_ledger_conflict()
        OPS_STATS.record_ledger_conflict()
        return EnforcementResult.rejected(
            REASON_CALL_ID_CONFLICT,
            "call_id was already used in this session for a different call",
            action_id=action.action_id,
        )

    def _ledger_unavailable(self, action: Action, error: BaseException) -> EnforcementResult:
        logger.warning("Ledger unavailable for %s: %s", action.action_id, error)
        metrics.record_fail_closed(REASON_LEDGER_UNAVAILABLE)
        OPS_STATS.record_fail_closed(REASON_LEDGER_UNAVAILABLE)
        return EnforcementResult.rejected(
            REASON_LEDGER_UNAVAILABLE,
            "decision could not be made durable",
            fail_closed=True,
            action_id=action.action_id,
        )

    def _result(self, committed: ReceiptInput, *, replayed: bool = False) -> EnforcementResult:
        try:
            receipt = self.ledger.receipt_for(committed.action_id)
        except (StorageLockdownError, sqlite3.Error) as e:
            logger.warning("Receipt lookup failed for %s: %s", committed.action_id, e)
            receipt = None
        return EnforcementResult.from_record(committed.record, receipt=receipt, replayed=replayed)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def session_view(self, session_id: str) -> Dict[str, Any]:
        snapshot = self.context.snapshot(session_id)
        return snapshot.to_dict()

    def health(self) -> Dict[str, Any]:
        try:
            rule_set = self.policies.current()
            policy: Dict[str, Any] = {"active": True, **rule_set.summary()}
        except PolicyUnavailable as e:
            policy = {"active": False, "last_error": e.details.get("last_error")}
        return {
            "ok": policy["active"] and not self.ledger.lockdown_active,
            "policy": policy,
            "ledger_lockdown": self.ledger.lockdown_active,
            "sessions": len(self.context.session_ids()),
        }
