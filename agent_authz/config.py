"""Environment-driven configuration.

Each concern has its own dataclass with a `from_env()` classmethod. Numeric
values are clamped into sane ranges; unparsable values fall back to the
default with a warning. Thresholds and weights are deployment-tunable, never
hard-coded in the evaluators.

Environment variables
---------------------
Intent alignment:
  AUTHZ_T_HIGH, AUTHZ_T_LOW               category thresholds (0..1, low < high)
  AUTHZ_WEIGHT_SEMANTIC, AUTHZ_WEIGHT_TRAJECTORY
  AUTHZ_EXFIL_PENALTY                     penalty for sensitive data leaving
  AUTHZ_HISTORY_WINDOW                    prior actions considered for trajectory
  AUTHZ_INTERNAL_DOMAINS                  comma-separated internal mail/web domains
  AUTHZ_SENSITIVE_FLOOR                   public|internal|confidential|restricted

Arbiter:
  AUTHZ_INDETERMINATE_OUTCOME             STEP_UP (default) | MODIFY
  AUTHZ_APPROVAL_TIMEOUT_SECONDS          bounded STEP_UP wait (default 300)
  AUTHZ_MODIFICATIONS_JSON                {"operation": {"param": value}}
  AUTHZ_REQUIRE_SIGNED_APPROVALS          1 to demand Ed25519 reviewer signatures

Storage / sources:
  AUTHZ_LEDGER_DB_PATH, AUTHZ_AUDIT_LOG_PATH, AUTHZ_SESSION_JOURNAL_PATH
  AUTHZ_POLICY_FILE, AUTHZ_POLICY_URL
  AUTHZ_REQUIRE_ACTOR                     0 to allow calls without an actor
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("agent_authz.config")

SENSITIVITY_LEVELS = ("public", "internal", "confidential", "restricted")
INDETERMINATE_OUTCOMES = ("STEP_UP", "MODIFY")


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; using default %s", name, raw, default)
        return default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; using default %s", name, raw, default)
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _get_str(name: str) -> Optional[str]:
    raw = (os.getenv(name, "") or "").strip()
    return raw or None


def _clamp01(v: float) -> float:
    return max(0.0, min(1.0, float(v)))


@dataclass(frozen=True)
class AlignmentConfig:
    t_high: float = 0.70
    t_low: float = 0.35
    weight_semantic: float = 0.55
    weight_trajectory: float = 0.45
    exfiltration_penalty: float = 0.60
    history_window: int = 8
    internal_domains: Tuple[str, ...] = ()
    sensitive_floor: str = "confidential"

    def __post_init__(self) -> None:
        if not (0.0 <= self.t_low < self.t_high <= 1.0):
            raise ValueError(f"thresholds must satisfy 0 <= t_low < t_high <= 1 (got {self.t_low}, {self.t_high})")
        if self.weight_semantic < 0 or self.weight_trajectory < 0 or self.exfiltration_penalty < 0:
            raise ValueError("weights must be non-negative")
        if self.weight_semantic + self.weight_trajectory <= 0:
            raise ValueError("at least one of the semantic/trajectory weights must be positive")
        if self.history_window < 1:
            raise ValueError("history_window must be >= 1")
        if self.sensitive_floor not in SENSITIVITY_LEVELS:
            raise ValueError(f"sensitive_floor must be one of {SENSITIVITY_LEVELS}")

    @classmethod
    def from_env(cls) -> "AlignmentConfig":
        t_high = _clamp01(_get_float("AUTHZ_T_HIGH", cls.t_high))
        t_low = _clamp01(_get_float("AUTHZ_T_LOW", cls.t_low))
        if t_low >= t_high:
            logger.warning("AUTHZ_T_LOW (%s) must be below AUTHZ_T_HIGH (%s); using defaults", t_low, t_high)
            t_high, t_low = cls.t_high, cls.t_low

        weight_semantic = max(0.0, _get_float("AUTHZ_WEIGHT_SEMANTIC", cls.weight_semantic))
        weight_trajectory = max(0.0, _get_float("AUTHZ_WEIGHT_TRAJECTORY", cls.weight_trajectory))
        if weight_semantic + weight_trajectory <= 0:
            weight_semantic, weight_trajectory = cls.weight_semantic, cls.weight_trajectory

        floor = (_get_str("AUTHZ_SENSITIVE_FLOOR") or cls.sensitive_floor).lower()
        if floor not in SENSITIVITY_LEVELS:
            logger.warning("Invalid AUTHZ_SENSITIVE_FLOOR=%r; using %s", floor, cls.sensitive_floor)
            floor = cls.sensitive_floor

        domains = tuple(
            d.strip().lower() for d in (_get_str("AUTHZ_INTERNAL_DOMAINS") or "").split(",") if d.strip()
        )
        return cls(
            t_high=t_high,
            t_low=t_low,
            weight_semantic=weight_semantic,
            weight_trajectory=weight_trajectory,
            exfiltration_penalty=max(0.0, _get_float("AUTHZ_EXFIL_PENALTY", cls.exfiltration_penalty)),
            history_window=max(1, _get_int("AUTHZ_HISTORY_WINDOW", cls.history_window)),
            internal_domains=domains,
            sensitive_floor=floor,
        )


@dataclass(frozen=True)
class ArbiterConfig:
    indeterminate_outcome: str = "STEP_UP"
    approval_timeout_seconds: float = 300.0
    modifications: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    require_signed_approvals: bool = False

    def __post_init__(self) -> None:
        if self.indeterminate_outcome not in INDETERMINATE_OUTCOMES:
            raise ValueError(f"indeterminate_outcome must be one of {INDETERMINATE_OUTCOMES}")
        if self.approval_timeout_seconds <= 0:
            raise ValueError("approval_timeout_seconds must be positive")

    @classmethod
    def from_env(cls) -> "ArbiterConfig":
        outcome = (_get_str("AUTHZ_INDETERMINATE_OUTCOME") or cls.indeterminate_outcome).upper()
        if outcome not in INDETERMINATE_OUTCOMES:
            logger.warning("Invalid AUTHZ_INDETERMINATE_OUTCOME=%r; using STEP_UP", outcome)
            outcome = "STEP_UP"

        timeout = _get_float("AUTHZ_APPROVAL_TIMEOUT_SECONDS", cls.approval_timeout_seconds)
        if timeout <= 0:
            timeout = cls.approval_timeout_seconds

        modifications: Dict[str, Dict[str, Any]] = {}
        raw = _get_str("AUTHZ_MODIFICATIONS_JSON")
        if raw:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning("Invalid AUTHZ_MODIFICATIONS_JSON (%s); MODIFY will escalate to STEP_UP", e)
                parsed = {}
            if isinstance(parsed, dict):
                modifications = {str(k): dict(v) for k, v in parsed.items() if isinstance(v, dict)}

        return cls(
            indeterminate_outcome=outcome,
            approval_timeout_seconds=timeout,
            modifications=modifications,
            require_signed_approvals=_get_bool("AUTHZ_REQUIRE_SIGNED_APPROVALS", False),
        )


@dataclass(frozen=True)
class AuthzConfig:
    """Top-level configuration for an ActionAuthorizer deployment."""

    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)
    arbiter: ArbiterConfig = field(default_factory=ArbiterConfig)
    ledger_db_path: str = "agent_authz.db"
    audit_log_path: Optional[str] = None
    session_journal_path: Optional[str] = None
    policy_file: Optional[str] = None
    policy_url: Optional[str] = None
    require_actor: bool = True

    @classmethod
    def from_env(cls) -> "AuthzConfig":
        return cls(
            alignment=AlignmentConfig.from_env(),
            arbiter=ArbiterConfig.from_env(),
            ledger_db_path=_get_str("AUTHZ_LEDGER_DB_PATH") or cls.ledger_db_path,
            audit_log_path=_get_str("AUTHZ_AUDIT_LOG_PATH"),
            session_journal_path=_get_str("AUTHZ_SESSION_JOURNAL_PATH"),
            policy_file=_get_str("AUTHZ_POLICY_FILE"),
            policy_url=_get_str("AUTHZ_POLICY_URL"),
            require_actor=_get_bool("AUTHZ_REQUIRE_ACTOR", True),
        )
