"""Action Normalizer.

Maps a heterogeneous intercepted call into one canonical, immutable Action.
Normalization is pure: it never consults policy or session context. It
either returns an Action or raises MalformedInput / SchemaViolation, and the
same malformed input always produces the same rejection message.

Raw call shape
--------------
    {
      "session_id": "s-123",                       # required
      "operation": "send_email",                   # or "method"; aliases accepted
      "tool": "email",                             # optional; defaults per operation
      "params": {...},                             # or "arguments"
      "actor": {"kind": "agent", "id": "a-1", "on_behalf_of": "alice"},
      "call_id": "c-42",                           # optional; stable retry key
    }

Supersession links are created only by the core (`derive`, `supersede`);
a raw call carrying `supersedes` is rejected.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import replace
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from .canonical import canonical_json_dumps, now_utc, parse_iso_utc, safe_hash_encode, sha256_hex
from .errors import MalformedInput, SchemaViolation
from .models import ACTOR_KINDS, Action, ActorIdentity
from .operations import OperationCatalog, OperationParams, OperationSpec

_SESSION_ID = re.compile(r"^[A-Za-z0-9_.:\-]{1,128}$")
_ACTOR_ID = re.compile(r"^[^\s]{1,256}$")
_TOOL_ID = re.compile(r"^[A-Za-z0-9_.:/\-]{1,128}$")


def is_valid_session_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_SESSION_ID.match(value))


def derive_action_id(session_id: str, call_id: Optional[str] = None) -> str:
    """Deterministic for (session, call_id) so interception retries map to one action."""
    if call_id:
        return "act_" + sha256_hex(safe_hash_encode(["AUTHZ_CALL_V1", session_id, call_id]))[:24]
    return "act_" + secrets.token_hex(12)


def _format_validation_error(err: ValidationError) -> str:
    parts = []
    for e in err.errors(include_url=False):
        loc = ".".join(str(p) for p in e.get("loc", ())) or "$"
        parts.append(f"{loc}: {e.get('msg', 'invalid')}")
    return "; ".join(sorted(parts))


class ActionNormalizer:
    """Turns raw intercepted calls into Actions using an OperationCatalog."""

    def __init__(self, catalog: Optional[OperationCatalog] = None, *, require_actor: bool = True):
        self.catalog = catalog or OperationCatalog.default()
        self.require_actor = require_actor

    def normalize(self, raw_call: Any) -> Action:
        if not isinstance(raw_call, Mapping):
            raise MalformedInput("raw call must be a JSON object")

        session_id = raw_call.get("session_id")
        if not is_valid_session_id(session_id):
            raise MalformedInput("session_id must match [A-Za-z0-9_.:-]{1,128}")

        op_name = raw_call.get("operation", raw_call.get("method"))
        if not isinstance(op_name, str) or not op_name.strip():
            raise MalformedInput("operation is required")
        spec = self.catalog.resolve(op_name)
        if spec is None:
            raise SchemaViolation(f"unknown operation: {op_name.strip()[:128]}", reason="UNKNOWN_OPERATION")

        raw_params = raw_call.get("params", raw_call.get("arguments", {}))
        if raw_params is None:
            raw_params = {}
        if not isinstance(raw_params, Mapping):
            raise SchemaViolation(f"{spec.name}: params must be an object", reason="PARAMS_NOT_OBJECT")
        params = self._validate_params(spec, raw_params)

        tool = raw_call.get("tool") or spec.default_tool
        if not isinstance(tool, str) or not _TOOL_ID.match(tool):
            raise MalformedInput("tool must match [A-Za-z0-9_.:/-]{1,128}")

        actor = self._parse_actor(raw_call.get("actor"))

        call_id = raw_call.get("call_id")
        if call_id is not None and (not isinstance(call_id, str) or not call_id or len(call_id) > 256):
            raise MalformedInput("call_id must be a non-empty string of at most 256 characters")

        if "supersedes" in raw_call:
            raise MalformedInput("supersedes cannot be set by the caller")

        return Action(
            action_id=derive_action_id(session_id, call_id),
            session_id=session_id,
            tool_identity=tool,
            operation=spec.name,
            parameters=params,
            timestamp=now_utc(),
            actor_identity=actor,
            raw_reference="sha256:" + sha256_hex(canonical_json_dumps(dict(raw_call), strict=False).encode("utf-8")),
            effect=spec.effect,
            resource=spec.resource_of(params),
            destination=spec.destination_of(params),
            sensitivity=spec.sensitivity_of(params),
        )

    def derive(self, action: Action, overrides: Mapping[str, Any]) -> Action:
        """Build a superseding Action with adjusted parameters, re-validated.

        The original Action is untouched; the new one gets a fresh id and a
        `supersedes` back-reference.
        """
        spec = self._spec_for(action)
        merged: Dict[str, Any] = dict(action.params_dict())
        merged.update(overrides)
        params = self._validate_params(spec, merged)
        return replace(
            action,
            action_id=derive_action_id(action.session_id),
            parameters=params,
            timestamp=now_utc(),
            resource=spec.resource_of(params),
            destination=spec.destination_of(params),
            sensitivity=spec.sensitivity_of(params),
            supersedes=action.action_id,
        )

    def supersede(self, action: Action) -> Action:
        """Same operation and parameters under a new id that supersedes `action`."""
        return replace(
            action,
            action_id=derive_action_id(action.session_id),
            timestamp=now_utc(),
            supersedes=action.action_id,
        )

    def rehydrate(self, data: Mapping[str, Any]) -> Action:
        """Rebuild a stored Action (journal replay), re-validating its parameters."""
        spec = self.catalog.resolve(str(data.get("operation", "")))
        if spec is None:
            raise SchemaViolation(f"unknown operation: {data.get('operation')}", reason="UNKNOWN_OPERATION")
        ts = parse_iso_utc(data.get("timestamp"))
        if ts is None:
            raise MalformedInput("stored action has no valid timestamp")
        actor = data.get("actor_identity") or {}
        params = self._validate_params(spec, data.get("parameters") or {})
        return Action(
            action_id=str(data["action_id"]),
            session_id=str(data["session_id"]),
            tool_identity=str(data["tool_identity"]),
            operation=spec.name,
            parameters=params,
            timestamp=ts,
            actor_identity=ActorIdentity(
                kind=str(actor.get("kind", "agent")),
                id=str(actor.get("id", "unknown")),
                on_behalf_of=actor.get("on_behalf_of"),
            ),
            raw_reference=str(data.get("raw_reference", "")),
            effect=spec.effect,
            resource=spec.resource_of(params),
            destination=spec.destination_of(params),
            sensitivity=spec.sensitivity_of(params),
            supersedes=data.get("supersedes"),
        )

    def _spec_for(self, action: Action) -> OperationSpec:
        spec = self.catalog.resolve(action.operation)
        if spec is None:
            raise SchemaViolation(f"unknown operation: {action.operation}", reason="UNKNOWN_OPERATION")
        return spec

    def _validate_params(self, spec: OperationSpec, raw_params: Mapping[str, Any]) -> OperationParams:
        try:
            return spec.params_model.model_validate(dict(raw_params))
        except ValidationError as e:
            errors = _format_validation_error(e)
            raise SchemaViolation(f"{spec.name}: {errors}", reason="PARAMS_INVALID", operation=spec.name)

    def _parse_actor(self, raw: Any) -> ActorIdentity:
        if raw is None:
            if self.require_actor:
                raise MalformedInput("actor identity is required")
            return ActorIdentity(kind="agent", id="unknown")
        if not isinstance(raw, Mapping):
            raise MalformedInput("actor must be an object with kind and id")
        kind = raw.get("kind")
        actor_id = raw.get("id")
        if kind not in ACTOR_KINDS:
            raise MalformedInput(f"actor.kind must be one of {', '.join(ACTOR_KINDS)}")
        if not isinstance(actor_id, str) or not _ACTOR_ID.match(actor_id):
            raise MalformedInput("actor.id must be a non-empty string without whitespace")
        on_behalf_of = raw.get("on_behalf_of")
        if on_behalf_of is not None and (not isinstance(on_behalf_of, str) or not on_behalf_of):
            raise MalformedInput("actor.on_behalf_of must be a non-empty string")
        return ActorIdentity(kind=kind, id=actor_id, on_behalf_of=on_behalf_of)
