"""Decision Arbiter.

Combines the policy verdict and the alignment category into one outcome:

    policy_verdict    alignment        outcome
    FORBID            any              DENY
    ALLOW             ALIGNED          ALLOW
    ALLOW             INDETERMINATE    MODIFY or STEP_UP (configured)
    ALLOW             MISALIGNED       DENY   (context-dependent deny)
    DENY_BY_DEFAULT   ALIGNED          STEP_UP (context-dependent allow)
    DENY_BY_DEFAULT   INDETERMINATE    DENY
    DENY_BY_DEFAULT   MISALIGNED       DENY

STEP_UP is the only suspend point of the core. `resolve_step_up` waits on
the Approval Service under a deadline and a cancellation token and always
returns a final ALLOW or DENY decision for a new Action superseding the
STEP_UP one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Tuple

from . import metrics
from .approvals import ApprovalResponse, ApprovalService, ApprovalStatus, CancellationToken
from .canonical import now_utc, safe_hash_encode, sha256_hex
from .config import ArbiterConfig
from .crypto import TrustedKeyStore
from .errors import ApprovalTimeout, MalformedInput
from .models import (
    REASON_ALIGNED_ALLOW,
    REASON_APPROVAL_ERROR,
    REASON_APPROVAL_INVALID,
    REASON_APPROVAL_TIMEOUT,
    REASON_APPROVAL_UNAVAILABLE,
    REASON_APPROVED,
    REASON_CONTEXT_ALLOW,
    REASON_CONTEXT_DENY,
    REASON_DENY_BY_DEFAULT,
    REASON_FORBIDDEN,
    REASON_INDETERMINATE_MODIFY,
    REASON_INDETERMINATE_STEP_UP,
    REASON_REVIEWER_DENIED,
    REASON_SESSION_TERMINATED,
    Action,
    AlignmentCategory,
    AlignmentResult,
    Decision,
    Outcome,
    PolicyVerdict,
    RationaleEntry,
    Verdict,
)
from .normalizer import ActionNormalizer

logger = logging.getLogger("agent_authz.arbiter")


class SessionCancelled(Exception):
    """The STEP_UP wait was cancelled by session termination."""


def decision_id_for(action_id: str) -> str:
    return "dec_" + sha256_hex(safe_hash_encode(["AUTHZ_DECISION_V1", action_id]))[:24]


def outcome_for(verdict: Verdict, category: Optional[AlignmentCategory], indeterminate: str = "STEP_UP") -> Tuple[Outcome, str]:
    """The decision table. A missing category outside FORBID is treated as DENY."""
    if verdict == Verdict.FORBID:
        return Outcome.DENY, REASON_FORBIDDEN
    if verdict == Verdict.ALLOW:
        if category == AlignmentCategory.ALIGNED:
            return Outcome.ALLOW, REASON_ALIGNED_ALLOW
        if category == AlignmentCategory.INDETERMINATE:
            if indeterminate == "MODIFY":
                return Outcome.MODIFY, REASON_INDETERMINATE_MODIFY
            return Outcome.STEP_UP, REASON_INDETERMINATE_STEP_UP
        return Outcome.DENY, REASON_CONTEXT_DENY
    if category == AlignmentCategory.ALIGNED:
        return Outcome.STEP_UP, REASON_CONTEXT_ALLOW
    return Outcome.DENY, REASON_DENY_BY_DEFAULT


def _policy_entry(verdict: PolicyVerdict) -> RationaleEntry:
    ref = verdict.matched_rule or "default"
    detail = f"{verdict.verdict.value} (rule set {verdict.policy_version})"
    if verdict.matched_rule is None:
        detail = f"no rule matched; {detail}"
    return RationaleEntry("policy", ref, detail)


class DecisionArbiter:
    def __init__(
        self,
        config: Optional[ArbiterConfig] = None,
        normalizer: Optional[ActionNormalizer] = None,
        approvals: Optional[ApprovalService] = None,
        trusted_keys: Optional[TrustedKeyStore] = None,
        *,
        pending_backoff_seconds: float = 0.05,
    ):
        self.config = config or ArbiterConfig()
        self.normalizer = normalizer or ActionNormalizer()
        self.approvals = approvals
        self.trusted_keys = trusted_keys
        self.pending_backoff_seconds = pending_backoff_seconds

    # ------------------------------------------------------------------
    # Synchronous decision
    # ------------------------------------------------------------------

    def decide(
        self,
        action: Action,
        context_snapshot_id: str,
        verdict: PolicyVerdict,
        alignment: Optional[AlignmentResult],
    ) -> Decision:
        category = alignment.category if alignment is not None else None
        outcome, reason = outcome_for(verdict.verdict, category, self.config.indeterminate_outcome)

        trace: List[RationaleEntry] = [_policy_entry(verdict)]
        if verdict.verdict == Verdict.FORBID:
            trace.append(RationaleEntry("intent", "skipped", "intent evaluation skipped: forbidden by policy"))
        elif alignment is not None:
            trace.extend(alignment.rationale)
        else:
            trace.append(RationaleEntry("intent", "missing", "no alignment result"))

        modified: Optional[Action] = None
        if outcome == Outcome.MODIFY:
            modified, note = self._modify(action)
            if modified is None:
                outcome, reason = Outcome.STEP_UP, REASON_INDETERMINATE_STEP_UP
                trace.append(RationaleEntry("arbiter", "modify_unavailable", note))
            else:
                trace.append(RationaleEntry("arbiter", "modified", note))

        trace.append(RationaleEntry("arbiter", reason, outcome.value))
        return Decision(
            decision_id=decision_id_for(action.action_id),
            action=action,
            context_snapshot_id=context_snapshot_id,
            policy_verdict=verdict,
            alignment=alignment,
            final_outcome=outcome,
            reason_code=reason,
            rationale_trace=tuple(trace),
            decided_at=now_utc(),
            supersedes=action.supersedes,
            modified_action=modified,
        )

    def _modify(self, action: Action) -> Tuple[Optional[Action], str]:
        overrides = self.config.modifications.get(action.operation)
        if not overrides:
            return None, f"no modification configured for {action.operation}; escalating"
        try:
            derived = self.normalizer.derive(action, overrides)
        except MalformedInput as e:
            logger.warning("Configured modification for %s is invalid: %s", action.operation, e)
            return None, f"configured modification rejected: {e.message}"
        return derived, "parameters adjusted: " + ", ".join(sorted(overrides))

    def fail_closed(
        self,
        action: Action,
        context_snapshot_id: str,
        reason_code: str,
        error: BaseException,
        *,
        verdict: Optional[PolicyVerdict] = None,
        alignment: Optional[AlignmentResult] = None,
    ) -> Decision:
        """DENY decision for an error inside the pipeline."""
        pv = verdict or PolicyVerdict(Verdict.DENY_BY_DEFAULT, None, None)
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        trace = (
            RationaleEntry("error", reason_code, f"{type(error).__name__}: {message}"),
            RationaleEntry("arbiter", reason_code, Outcome.DENY.value),
        )
        return Decision(
            decision_id=decision_id_for(action.action_id),
            action=action,
            context_snapshot_id=context_snapshot_id,
            policy_verdict=pv,
            alignment=alignment,
            final_outcome=Outcome.DENY,
            reason_code=reason_code,
            rationale_trace=trace,
            decided_at=now_utc(),
            supersedes=action.supersedes,
        )

    # ------------------------------------------------------------------
    # STEP_UP hand-off
    # ------------------------------------------------------------------

    async def resolve_step_up(self, draft: Decision, token: Optional[CancellationToken] = None) -> Decision:
        """Wait for the approval outcome and return the superseding final decision."""
        if draft.final_outcome != Outcome.STEP_UP:
            raise ValueError("resolve_step_up requires a STEP_UP decision")
        successor = self.normalizer.supersede(draft.action)
        if self.approvals is None:
            return self._final(draft, successor, Outcome.DENY, REASON_APPROVAL_UNAVAILABLE,
                               RationaleEntry("approval", "unavailable", "no approval service configured"))

        timeout = float(self.config.approval_timeout_seconds)
        started = time.monotonic()
        status = "error"
        try:
            response = await self._await_response(draft, token, timeout)
        except ApprovalTimeout:
            status = "timeout"
            logger.warning("Approval timeout for %s after %.1fs", draft.action_id, timeout)
            final = self._final(draft, successor, Outcome.DENY, REASON_APPROVAL_TIMEOUT,
                                RationaleEntry("approval", "timeout", "approval timeout", timeout))
        except SessionCancelled:
            status = "cancelled"
            logger.info("Approval wait for %s cancelled: session terminated", draft.action_id)
            final = self._final(draft, successor, Outcome.DENY, REASON_SESSION_TERMINATED,
                                RationaleEntry("approval", "cancelled", "session terminated"))
        except Exception as e:
            logger.warning("Approval service error for %s: %s", draft.action_id, e)
            final = self._final(draft, successor, Outcome.DENY, REASON_APPROVAL_ERROR,
                                RationaleEntry("approval", "error", f"{type(e).__name__}: {e}"))
        else:
            status = response.status.value.lower()
            final = self._from_response(draft, successor, response)
        finally:
            metrics.observe_approval_wait(status, time.monotonic() - started)
        return final

    async def _await_response(
        self,
        draft: Decision,
        token: Optional[CancellationToken],
        timeout: float,
    ) -> ApprovalResponse:
        assert self.approvals is not None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if token is not None and token.cancelled:
                raise SessionCancelled()
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ApprovalTimeout(draft.action_id, timeout)

            request = asyncio.ensure_future(self.approvals.request_approval(draft, remaining))
            waiters = {request}
            cancel_wait = None
            if token is not None:
                cancel_wait = asyncio.ensure_future(token.wait())
                waiters.add(cancel_wait)
            try:
                done, _ = await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in waiters:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*waiters, return_exceptions=True)

            if (cancel_wait is not None and cancel_wait in done) or (token is not None and token.cancelled):
                raise SessionCancelled()
            if request not in done:
                raise ApprovalTimeout(draft.action_id, timeout)
            response = request.result()
            if response.status != ApprovalStatus.PENDING:
                return response
            await self._pause(token, min(self.pending_backoff_seconds, max(0.0, deadline - loop.time())))

    @staticmethod
    async def _pause(token: Optional[CancellationToken], seconds: float) -> None:
        if seconds <= 0:
            return
        if token is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(token.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _from_response(self, draft: Decision, successor: Action, response: ApprovalResponse) -> Decision:
        reviewer = response.reviewer_id or "unknown"
        if response.status == ApprovalStatus.ALLOW:
            problem = self._check_signed_approval(draft, response)
            if problem is not None:
                logger.warning("Rejected approval for %s: %s", draft.action_id, problem)
                return self._final(draft, successor, Outcome.DENY, REASON_APPROVAL_INVALID,
                                   RationaleEntry("approval", reviewer, f"approval rejected: {problem}"))
            return self._final(draft, successor, Outcome.ALLOW, REASON_APPROVED,
                               RationaleEntry("approval", reviewer, response.reason or "approved"))
        return self._final(draft, successor, Outcome.DENY, REASON_REVIEWER_DENIED,
                           RationaleEntry("approval", reviewer, response.reason or "denied by reviewer"))

    def _check_signed_approval(self, draft: Decision, response: ApprovalResponse) -> Optional[str]:
        if not self.config.require_signed_approvals and self.trusted_keys is None:
            return None
        approval = response.approval
        if approval is None:
            return "unsigned approval"
        if self.trusted_keys is None:
            return "no trusted reviewer keys configured"
        if approval.action_id != draft.action_id:
            return "approval bound to a different action"
        if approval.decision_hash != draft.draft_hash():
            return "approval bound to a different decision draft"
        if approval.decision != "approve":
            return "signed verdict is not approve"
        if not approval.verify(self.trusted_keys):
            return "signature verification failed"
        return None

    def _final(
        self,
        draft: Decision,
        successor: Action,
        outcome: Outcome,
        reason: str,
        entry: RationaleEntry,
    ) -> Decision:
        trace = draft.rationale_trace + (entry, RationaleEntry("arbiter", reason, outcome.value))
        return Decision(
            decision_id=decision_id_for(successor.action_id),
            action=successor,
            context_snapshot_id=draft.context_snapshot_id,
            policy_verdict=draft.policy_verdict,
            alignment=draft.alignment,
            final_outcome=outcome,
            reason_code=reason,
            rationale_trace=trace,
            decided_at=now_utc(),
            supersedes=draft.action_id,
        )
