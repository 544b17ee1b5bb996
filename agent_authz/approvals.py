"""Approval hand-off: the contract with the external Approval Service.

`ApprovalService.request_approval(draft, timeout)` is awaited by the arbiter
when a decision is STEP_UP. It returns ALLOW, DENY or PENDING (escalation in
progress, ask again). Multi-reviewer and escalation logic belong to the
service, not to the core.

The arbiter races each request against a CancellationToken so that session
termination releases the wait immediately.

InMemoryApprovalService is the reference implementation used by the HTTP
gateway: pending requests are listed for reviewers and resolved through
`resolve()`.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .canonical import now_utc
from .crypto import SignedApproval
from .models import Decision

logger = logging.getLogger("agent_authz.approvals")


class ApprovalStatus(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    PENDING = "PENDING"


@dataclass(frozen=True)
class ApprovalResponse:
    status: ApprovalStatus
    reviewer_id: Optional[str] = None
    reason: str = ""
    approval: Optional[SignedApproval] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reviewer_id": self.reviewer_id,
            "reason": self.reason,
            "approval": self.approval.to_dict() if self.approval else None,
        }


PENDING = ApprovalResponse(ApprovalStatus.PENDING)


@runtime_checkable
class ApprovalService(Protocol):
    async def request_approval(self, decision_draft: Decision, timeout: float) -> ApprovalResponse: ...


class CancellationToken:
    """One-shot cancellation signal for a pending STEP_UP wait.

    `cancel()` may be called from any thread; waiters are woken on the loop
    that created the token.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "session terminated") -> None:
        if self.reason is None:
            self.reason = reason
        loop = self._loop
        if loop is None or loop.is_closed():
            self._event.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._event.set()
        else:
            loop.call_soon_threadsafe(self._event.set)

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class PendingApproval:
    request_id: str
    action_id: str
    session_id: str
    decision_hash: str
    draft: Dict[str, Any]
    requested_at: datetime
    future: "asyncio.Future[ApprovalResponse]" = field(repr=False)
    loop: asyncio.AbstractEventLoop = field(repr=False)

    def summary(self) -> Dict[str, Any]:
        action = self.draft.get("action") or {}
        return {
            "request_id": self.request_id,
            "action_id": self.action_id,
            "session_id": self.session_id,
            "decision_hash": self.decision_hash,
            "operation": action.get("operation"),
            "parameters": action.get("parameters"),
            "reason_code": self.draft.get("reason_code"),
            "rationale": self.draft.get("rationale_trace"),
            "requested_at_utc": self.requested_at.isoformat(),
        }


class InMemoryApprovalService:
    """Reviewer queue held in process memory.

    `request_approval` waits at most `min(timeout, poll_interval)` per call
    and answers PENDING when nobody decided yet; the arbiter keeps polling
    until its own deadline. Requests are keyed by the STEP_UP action id, so a
    re-poll finds the same pending entry.
    """

    def __init__(self, poll_interval: Optional[float] = None):
        self.poll_interval = poll_interval
        self._pending: Dict[str, PendingApproval] = {}
        self._lock = threading.Lock()

    async def request_approval(self, decision_draft: Decision, timeout: float) -> ApprovalResponse:
        loop = asyncio.get_running_loop()
        request_id = decision_draft.action_id
        with self._lock:
            pending = self._pending.get(request_id)
            if pending is None:
                pending = PendingApproval(
                    request_id=request_id,
                    action_id=decision_draft.action_id,
                    session_id=decision_draft.session_id,
                    decision_hash=decision_draft.draft_hash(),
                    draft=decision_draft.to_dict(),
                    requested_at=now_utc(),
                    future=loop.create_future(),
                    loop=loop,
                )
                self._pending[request_id] = pending
                logger.info("Approval requested for %s (session %s)", request_id, pending.session_id)

        wait_for = timeout if self.poll_interval is None else min(timeout, self.poll_interval)
        try:
            response = await asyncio.wait_for(asyncio.shield(pending.future), timeout=max(0.0, wait_for))
        except asyncio.TimeoutError:
            return PENDING
        except asyncio.CancelledError:
            self._drop(request_id)
            raise
        self._drop(request_id)
        return response

    def _drop(self, request_id: str) -> None:
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    def list_pending(self) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self._pending.values())
        return [p.summary() for p in sorted(items, key=lambda p: p.requested_at)]

    def get(self, request_id: str) -> Optional[PendingApproval]:
        with self._lock:
            return self._pending.get(request_id)

    def resolve(
        self,
        request_id: str,
        decision: str,
        *,
        reviewer_id: str,
        reason: str = "",
        approval: Optional[SignedApproval] = None,
    ) -> bool:
        """Deliver a reviewer verdict. Returns False if nothing is pending under that id."""
        status = ApprovalStatus.ALLOW if decision.lower() in ("allow", "approve") else ApprovalStatus.DENY
        with self._lock:
            pending = self._pending.get(request_id)
        if pending is None:
            return False
        response = ApprovalResponse(status=status, reviewer_id=reviewer_id, reason=reason, approval=approval)

        def _set() -> None:
            if not pending.future.done():
                pending.future.set_result(response)

        pending.loop.call_soon_threadsafe(_set)
        logger.info("Approval %s resolved %s by %s", request_id, status.value, reviewer_id)
        return True

    def cancel_session(self, session_id: str) -> int:
        """Drop every pending request of a session. Returns how many were dropped."""
        with self._lock:
            ids = [rid for rid, p in self._pending.items() if p.session_id == session_id]
        for rid in ids:
            pending = self.get(rid)
            if pending is not None:
                pending.loop.call_soon_threadsafe(self._drop, rid)
        return len(ids)
