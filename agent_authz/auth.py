"""API-key caller identity for the HTTP gateway.

Callers are interception layers (which submit actions), reviewers (which
resolve STEP_UP requests) and operators (which load rule sets). Each API key
maps to a caller id and a set of roles:

    {"k-intercept": "interceptor-1"}                                  # all roles
    {"k-review": {"id": "alice", "roles": ["review"]}}

Env vars:
  - AUTHZ_API_KEYS_JSON: JSON object as above
  - AUTHZ_API_KEYS_FILE: path to a JSON file with the same mapping

If neither is set, authentication is disabled (development mode). If either
is set but malformed, every request is rejected.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional

logger = logging.getLogger("agent_authz.auth")

ENV_API_KEYS_JSON = "AUTHZ_API_KEYS_JSON"
ENV_API_KEYS_FILE = "AUTHZ_API_KEYS_FILE"

ROLE_AUTHORIZE = "authorize"
ROLE_REVIEW = "review"
ROLE_ADMIN = "admin"
ALL_ROLES: FrozenSet[str] = frozenset({ROLE_AUTHORIZE, ROLE_REVIEW, ROLE_ADMIN})


@dataclass(frozen=True)
class Caller:
    caller_id: Optional[str]
    roles: FrozenSet[str]
    authenticated: bool
    error: Optional[str] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class ApiKeyAuth:
    keys: Dict[str, Caller] = field(default_factory=dict)
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: object) -> "ApiKeyAuth":
        if not isinstance(data, dict):
            raise ValueError("API key config must be a JSON object")
        keys: Dict[str, Caller] = {}
        for api_key, value in data.items():
            if isinstance(value, str):
                caller_id, roles = value, ALL_ROLES
            elif isinstance(value, dict) and isinstance(value.get("id"), str):
                caller_id = value["id"]
                raw_roles = value.get("roles", sorted(ALL_ROLES))
                if not isinstance(raw_roles, list) or not set(map(str, raw_roles)) <= ALL_ROLES:
                    raise ValueError(f"roles for {caller_id!r} must be a subset of {sorted(ALL_ROLES)}")
                roles = frozenset(str(r) for r in raw_roles)
            else:
                raise ValueError("each API key must map to a caller id or {id, roles}")
            keys[str(api_key)] = Caller(caller_id=caller_id, roles=roles, authenticated=True)
        return cls(keys=keys, configured=True)

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load the key map; a present-but-malformed config yields config_error (fail closed)."""
        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        if not raw_json and not file_path:
            return cls()
        try:
            if raw_json:
                return cls.from_mapping(json.loads(raw_json))
            with open(str(file_path), "r", encoding="utf-8") as f:
                return cls.from_mapping(json.load(f))
        except (OSError, ValueError) as e:
            logger.error("API key configuration is invalid; rejecting all requests: %s", e)
            return cls(configured=True, config_error="API_KEY_CONFIG_INVALID")

    def enabled(self) -> bool:
        return self.configured

    def resolve(self, api_key: Optional[str]) -> Caller:
        if self.config_error:
            return Caller(None, frozenset(), False, self.config_error)
        if not self.enabled():
            return Caller(None, ALL_ROLES, False)
        if not api_key:
            return Caller(None, frozenset(), False, "API_KEY_REQUIRED")
        caller = self.keys.get(api_key)
        if caller is None:
            return Caller(None, frozenset(), False, "API_KEY_INVALID")
        return caller
