"""Stable error taxonomy for the authorization core.

A single dataclass exception carries a machine-readable `code`, a
`retryable` hint and an `http_status` for transport layers. The subclasses
mirror the failure classes the pipeline distinguishes:

- MalformedInput / SchemaViolation: the raw call never becomes an Action.
- UnknownSession: context operation on a terminated (or never seen) session.
- PolicyUnavailable / PolicyInvalid: no usable rule set.
- ApprovalTimeout: a STEP_UP wait ran out of time.
- LedgerConflict: duplicate commit, resolved by idempotent return.

None of these ever reach the interception point; the authorizer converts
every one of them into a conservative decision.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Canonicalization / hashing
AUTHZ_E_CANON_NON_JSON = "AUTHZ_E_CANON_NON_JSON"
AUTHZ_E_CANON_DEPTH = "AUTHZ_E_CANON_DEPTH"
AUTHZ_E_CANON_NONFINITE = "AUTHZ_E_CANON_NONFINITE"
AUTHZ_E_CANON_KEY_TYPE = "AUTHZ_E_CANON_KEY_TYPE"
AUTHZ_E_CANON_INT_TOO_LARGE = "AUTHZ_E_CANON_INT_TOO_LARGE"

# Normalization
AUTHZ_E_MALFORMED_INPUT = "AUTHZ_E_MALFORMED_INPUT"
AUTHZ_E_SCHEMA_VIOLATION = "AUTHZ_E_SCHEMA_VIOLATION"

# Context
AUTHZ_E_UNKNOWN_SESSION = "AUTHZ_E_UNKNOWN_SESSION"

# Policy
AUTHZ_E_POLICY_UNAVAILABLE = "AUTHZ_E_POLICY_UNAVAILABLE"
AUTHZ_E_POLICY_INVALID = "AUTHZ_E_POLICY_INVALID"

# Approval hand-off
AUTHZ_E_APPROVAL_TIMEOUT = "AUTHZ_E_APPROVAL_TIMEOUT"

# Ledger / storage
AUTHZ_E_LEDGER_CONFLICT = "AUTHZ_E_LEDGER_CONFLICT"
AUTHZ_E_LOCKDOWN_ACTIVE = "AUTHZ_E_LOCKDOWN_ACTIVE"

# HTTP surface
AUTHZ_E_AUTH_REQUIRED = "AUTHZ_E_AUTH_REQUIRED"
AUTHZ_E_RATE_LIMITED = "AUTHZ_E_RATE_LIMITED"
AUTHZ_E_NOT_FOUND = "AUTHZ_E_NOT_FOUND"
AUTHZ_E_BAD_REQUEST = "AUTHZ_E_BAD_REQUEST"
AUTHZ_E_INTERNAL = "AUTHZ_E_INTERNAL"


@dataclass
class AuthzError(Exception):
    """Base exception with a stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def authz_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> AuthzError:
    return AuthzError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


class MalformedInput(AuthzError):
    """The raw call cannot be turned into an Action."""

    default_code = AUTHZ_E_MALFORMED_INPUT

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(code=self.default_code, message=message, http_status=400, details=details)


class SchemaViolation(MalformedInput):
    """Unknown operation, or parameters outside the operation's declared schema."""

    default_code = AUTHZ_E_SCHEMA_VIOLATION


class UnknownSession(AuthzError):
    def __init__(self, session_id: str, message: str = "unknown or terminated session") -> None:
        super().__init__(
            code=AUTHZ_E_UNKNOWN_SESSION,
            message=message,
            http_status=404,
            details={"session_id": session_id},
        )


class PolicyUnavailable(AuthzError):
    def __init__(self, message: str = "no valid rule set is active", **details: Any) -> None:
        super().__init__(code=AUTHZ_E_POLICY_UNAVAILABLE, message=message, retryable=True, http_status=503, details=details)


class PolicyInvalid(AuthzError):
    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(code=AUTHZ_E_POLICY_INVALID, message=message, http_status=400, details=details)


class ApprovalTimeout(AuthzError):
    def __init__(self, action_id: str, timeout_seconds: float) -> None:
        super().__init__(
            code=AUTHZ_E_APPROVAL_TIMEOUT,
            message="approval timeout",
            http_status=408,
            details={"action_id": action_id, "timeout_seconds": timeout_seconds},
        )


class LedgerConflict(AuthzError):
    def __init__(self, action_id: str) -> None:
        super().__init__(
            code=AUTHZ_E_LEDGER_CONFLICT,
            message="decision already committed for action",
            http_status=409,
            details={"action_id": action_id},
        )
