"""
Agent Authorization Gateway (HTTP)

FastAPI front end for the interception layer, reviewers and operators.

- POST /v1/authorize always answers 200 with an enforcement result; the
  caller executes the tool call only when `allowed` is true.
- Reviewers list and resolve pending STEP_UP requests.
- Operators load rule sets and inspect sessions.

Environment variables
---------------------
AUTHZ_API_KEYS_JSON / AUTHZ_API_KEYS_FILE   API key -> caller id / roles
AUTHZ_MAX_REQUEST_BYTES                     request body limit (default 1 MiB)
AUTHZ_RATE_LIMIT_AUTHORIZE                  default 600/m per caller
AUTHZ_RATE_LIMIT_ADMIN                      default 60/m per caller
AUTHZ_METRICS_TOKEN                         bearer token for /metrics
AUTHZ_APPROVAL_POLL_SECONDS                 reviewer queue poll interval
AUTHZ_SIGNING_KEY / AUTHZ_SIGNING_KEY_FILE  receipt + audit signing key
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Literal, Optional

from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .approvals import InMemoryApprovalService
from .auth import ROLE_ADMIN, ROLE_AUTHORIZE, ROLE_REVIEW, ApiKeyAuth, Caller
from .authorizer import ActionAuthorizer
from .config import AuthzConfig
from .crypto import SignedApproval, TrustedKeyStore, load_key_pair_from_env
from .errors import (
    AUTHZ_E_AUTH_REQUIRED,
    AUTHZ_E_BAD_REQUEST,
    AUTHZ_E_NOT_FOUND,
    AUTHZ_E_RATE_LIMITED,
    AuthzError,
)
from .metrics import instrument_fastapi, record_rate_limited
from .ops_stats import OPS_STATS
from .ratelimit import RateLimiter, limiter_from_env
from .signing import build_signer_from_env

logger = logging.getLogger("agent_authz.server")


def _http_exc(status: int, code: str, message: str, *, retryable: bool = False, **details: Any) -> HTTPException:
    """HTTPException with a stable error envelope in `detail`."""
    detail: Dict[str, Any] = {"code": code, "message": message, "retryable": bool(retryable)}
    if details:
        detail["details"] = details
    return HTTPException(status, detail)


class IntentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(min_length=1, max_length=4000)
    operations: List[str] = Field(default_factory=list)
    tools: List[str] = Field(default_factory=list)
    resources: List[str] = Field(default_factory=list)
    recipients: List[str] = Field(default_factory=list)


class ApprovalDecisionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    decision: Literal["approve", "allow", "deny"]
    reason: str = Field(default="", max_length=2000)
    reviewer_id: Optional[str] = None
    signed_approval: Optional[Dict[str, Any]] = None


def _default_authorizer(approvals: InMemoryApprovalService) -> ActionAuthorizer:
    keypair = load_key_pair_from_env()
    signer = build_signer_from_env(keypair) if keypair is not None else None
    if signer is None:
        logger.warning("No signing key configured; decisions are committed without receipts")
    return ActionAuthorizer.from_config(
        AuthzConfig.from_env(),
        approvals=approvals,
        signer=signer,
        trusted_keys=TrustedKeyStore.from_env(),
    )


def create_app(
    authorizer: Optional[ActionAuthorizer] = None,
    approvals: Optional[InMemoryApprovalService] = None,
    *,
    api_auth: Optional[ApiKeyAuth] = None,
) -> FastAPI:
    from . import __version__

    if authorizer is None:
        if approvals is None:
            try:
                poll = float(os.getenv("AUTHZ_APPROVAL_POLL_SECONDS", "5") or "5")
            except ValueError:
                poll = 5.0
            approvals = InMemoryApprovalService(poll_interval=poll if poll > 0 else None)
        authorizer = _default_authorizer(approvals)
    elif approvals is None and isinstance(authorizer.arbiter.approvals, InMemoryApprovalService):
        approvals = authorizer.arbiter.approvals

    app = FastAPI(
        title="Agent Authorization Gateway",
        description="Runtime authorization for autonomous agent actions",
        version=__version__,
    )
    app.state.authorizer = authorizer
    app.state.approvals = approvals

    @app.exception_handler(AuthzError)
    async def _authz_error_handler(request: Request, exc: AuthzError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    auth = api_auth if api_auth is not None else ApiKeyAuth.load_from_env()

    metrics_token = (os.getenv("AUTHZ_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        return authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    try:
        max_request_bytes = int(os.getenv("AUTHZ_MAX_REQUEST_BYTES", "1048576") or "1048576")
    except ValueError:
        max_request_bytes = 1048576

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                return JSONResponse(status_code=400, content={"code": AUTHZ_E_BAD_REQUEST, "message": "BAD_CONTENT_LENGTH"})
            if too_large:
                return JSONResponse(status_code=413, content={"code": AUTHZ_E_BAD_REQUEST, "message": "REQUEST_TOO_LARGE"})
        return await call_next(req)

    authorize_limiter = limiter_from_env("AUTHZ_RATE_LIMIT_AUTHORIZE", "600/m")
    admin_limiter = limiter_from_env("AUTHZ_RATE_LIMIT_ADMIN", "60/m")

    def _caller(req: Request, x_api_key: Optional[str], role: str, limiter: RateLimiter, endpoint: str) -> Caller:
        caller = auth.resolve(x_api_key)
        if caller.error:
            raise _http_exc(401, AUTHZ_E_AUTH_REQUIRED, caller.error)
        if not caller.has_role(role):
            raise _http_exc(403, AUTHZ_E_AUTH_REQUIRED, f"role '{role}' required")
        if caller.caller_id:
            key = caller.caller_id
        elif req.client and req.client.host:
            key = f"ip:{req.client.host}"
        else:
            key = "_anon"
        if not limiter.allow(key):
            record_rate_limited(endpoint)
            OPS_STATS.record_rate_limited(endpoint)
            raise _http_exc(429, AUTHZ_E_RATE_LIMITED, "RATE_LIMITED", retryable=True)
        return caller

    # ---------------------------
    # Interception layer
    # ---------------------------

    @app.post("/v1/authorize")
    async def authorize(
        http_request: Request,
        raw_call: Any = Body(...),
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        """Authorize one intercepted tool call. Malformed calls are answered, not raised."""
        _caller(http_request, x_api_key, ROLE_AUTHORIZE, authorize_limiter, "authorize")
        result = await authorizer.authorize(raw_call)
        return result.to_dict()

    @app.post("/v1/sessions/{session_id}/intent")
    async def declare_intent(
        session_id: str,
        http_request: Request,
        request: IntentRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        _caller(http_request, x_api_key, ROLE_AUTHORIZE, authorize_limiter, "intent")
        intent = authorizer.declare_intent(session_id, request.model_dump())
        return {"session_id": session_id, "stated_intent": intent.to_dict()}

    @app.post("/v1/sessions/{session_id}/terminate")
    async def terminate_session(
        session_id: str,
        http_request: Request,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        _caller(http_request, x_api_key, ROLE_AUTHORIZE, admin_limiter, "terminate")
        changed = authorizer.terminate_session(session_id)
        return {"session_id": session_id, "terminated": True, "changed": changed}

    @app.get("/v1/sessions/{session_id}")
    async def get_session(
        session_id: str,
        http_request: Request,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        _caller(http_request, x_api_key, ROLE_REVIEW, admin_limiter, "session")
        view = authorizer.session_view(session_id)
        view["decisions"] = [
            {
                "action_id": ri.action_id,
                "decision_id": ri.decision_id,
                "sequence": ri.sequence,
                "outcome": ri.outcome,
                "reason_code": ri.reason_code,
                "supersedes": ri.supersedes,
                "receipt_input_hash": ri.receipt_input_hash,
            }
            for ri in authorizer.ledger.for_session(session_id)
        ]
        return view

    # ---------------------------
    # Reviewers
    # ---------------------------

    @app.get("/v1/approvals")
    async def list_approvals(
        http_request: Request,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        _caller(http_request, x_api_key, ROLE_REVIEW, admin_limiter, "approvals")
        return {"pending": approvals.list_pending() if approvals is not None else []}

    @app.post("/v1/approvals/{request_id}")
    async def resolve_approval(
        request_id: str,
        http_request: Request,
        request: ApprovalDecisionRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        caller = _caller(http_request, x_api_key, ROLE_REVIEW, admin_limiter, "approval_resolve")
        if approvals is None:
            raise _http_exc(404, AUTHZ_E_NOT_FOUND, "no reviewer queue configured")
        reviewer_id = caller.caller_id or request.reviewer_id
        if not reviewer_id:
            raise _http_exc(400, AUTHZ_E_BAD_REQUEST, "reviewer_id required")
        signed: Optional[SignedApproval] = None
        if request.signed_approval is not None:
            try:
                signed = SignedApproval.from_dict(request.signed_approval)
            except (KeyError, ValueError) as e:
                raise _http_exc(400, AUTHZ_E_BAD_REQUEST, f"invalid signed approval: {e}")
        ok = approvals.resolve(
            request_id, request.decision, reviewer_id=reviewer_id, reason=request.reason, approval=signed
        )
        if not ok:
            raise _http_exc(404, AUTHZ_E_NOT_FOUND, "no pending approval with this id", request_id=request_id)
        return {"request_id": request_id, "delivered": True}

    # ---------------------------
    # Operators
    # ---------------------------

    @app.post("/v1/policy")
    async def load_policy(
        http_request: Request,
        rule_set: Dict[str, Any] = Body(...),
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        _caller(http_request, x_api_key, ROLE_ADMIN, admin_limiter, "policy")
        loaded = authorizer.policies.load(rule_set)
        return loaded.summary()

    @app.get("/v1/stats")
    async def stats():
        return OPS_STATS.snapshot(extra={"lockdown_active": authorizer.ledger.lockdown_active})

    @app.get("/v1/health")
    async def health_check():
        h = authorizer.health()
        return JSONResponse(status_code=200 if h["ok"] else 503, content=h)

    return app


def main():
    """
    Entry point for agent-authz-gateway.

    Usage:
        agent-authz-gateway                    # 0.0.0.0:8000
        agent-authz-gateway --port 9000
        agent-authz-gateway --host 127.0.0.1
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Agent Authorization Gateway")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default="info", help="uvicorn log level")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level, proxy_headers=args.proxy_headers)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
