"""Static policy: rule sets, the policy evaluator and the versioned store.

Rule set document
-----------------
    {
      "version": "2024-06-01.1",
      "rules": [
        {"rule_id": "no-drop-prod", "verdict": "FORBID", "priority": 1000,
         "match": {"operation": "drop_database", "params.target": {"glob": "prod*"}}},
        {"rule_id": "reads-ok", "verdict": "ALLOW", "priority": 10,
         "match": {"effect": "read"}}
      ]
    }

`match` is a conjunction over Action fields (`operation`, `tool`, `effect`,
`actor_kind`, `actor_id`, `session_id`, `resource`, `destination`,
`sensitivity`, `params.<name>`). A condition is a literal (equality), a list
(any of) or a single-operator object (`eq`, `ne`, `in`, `not_in`, `glob`,
`regex`, `gt`, `gte`, `lt`, `lte`, `exists`). A missing field only satisfies
`ne`, `not_in` and `exists: false`.

Rules are tried in descending priority (FORBID first among equal
priorities, then rule_id); the first match wins and no match yields
DENY_BY_DEFAULT, with one deliberate exception: a matching FORBID rule is
absolute at any priority. If the first match is an ALLOW but some
lower-priority FORBID also matches, the verdict is FORBID and
`matched_rule` names that FORBID rule, not the first match. The ALLOW rule
still appears in `evaluated_rules`, so the override is visible in the
trace.

A RuleSet is immutable. PolicyStore holds the active one as a single
reference that is swapped whole, and retains every loaded version so past
decisions can be reproduced against the rules active at the time.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Pattern, Tuple

import jsonschema

from .canonical import canonical_hash, now_utc
from .errors import PolicyInvalid, PolicyUnavailable
from .models import Action, PolicyVerdict, Verdict

logger = logging.getLogger("agent_authz.policy")

_VERDICT_RANK = {Verdict.FORBID: 0, Verdict.DENY_BY_DEFAULT: 1, Verdict.ALLOW: 2}

_FIELD_PATTERN = r"^(operation|tool|effect|actor_kind|actor_id|session_id|resource|destination|sensitivity|params\.[A-Za-z_][A-Za-z0-9_]*)$"

_SCALAR = {"type": ["string", "number", "boolean", "null"]}

RULE_SET_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["version", "rules"],
    "additionalProperties": False,
    "properties": {
        "version": {"type": "string", "minLength": 1, "maxLength": 128},
        "description": {"type": "string"},
        "rules": {"type": "array", "items": {"$ref": "#/$defs/rule"}},
    },
    "$defs": {
        "rule": {
            "type": "object",
            "required": ["rule_id", "verdict"],
            "additionalProperties": False,
            "properties": {
                "rule_id": {"type": "string", "pattern": r"^[A-Za-z0-9_.:\-]{1,128}$"},
                "verdict": {"enum": ["FORBID", "ALLOW", "DENY_BY_DEFAULT"]},
                "priority": {"type": "integer"},
                "description": {"type": "string"},
                "match": {
                    "type": "object",
                    "propertyNames": {"pattern": _FIELD_PATTERN},
                    "additionalProperties": {"$ref": "#/$defs/condition"},
                },
            },
        },
        "condition": {
            "anyOf": [
                _SCALAR,
                {"type": "array", "items": _SCALAR},
                {"$ref": "#/$defs/operator"},
            ]
        },
        "operator": {
            "type": "object",
            "minProperties": 1,
            "maxProperties": 1,
            "additionalProperties": False,
            "properties": {
                "eq": _SCALAR,
                "ne": _SCALAR,
                "in": {"type": "array", "items": _SCALAR},
                "not_in": {"type": "array", "items": _SCALAR},
                "glob": {"type": "string"},
                "regex": {"type": "string"},
                "gt": {"type": "number"},
                "gte": {"type": "number"},
                "lt": {"type": "number"},
                "lte": {"type": "number"},
                "exists": {"type": "boolean"},
            },
        },
    },
}

_VALIDATOR = jsonschema.Draft202012Validator(RULE_SET_SCHEMA)

_MISSING = object()


def _same(a: Any, b: Any) -> bool:
    # bool is an int subclass; True must not equal 1 here.
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    return a == b


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    operand: Any
    compiled: Optional[Pattern[str]] = None

    @classmethod
    def parse(cls, field_name: str, raw: Any) -> "Condition":
        if isinstance(raw, list):
            return cls(field_name, "in", tuple(raw))
        if isinstance(raw, dict):
            (op, operand), = raw.items()
            if op in ("in", "not_in"):
                operand = tuple(operand)
            compiled = None
            if op == "regex":
                try:
                    compiled = re.compile(operand)
                except re.error as e:
                    raise PolicyInvalid(f"invalid regex for {field_name}: {e}", field=field_name)
            return cls(field_name, op, operand, compiled)
        return cls(field_name, "eq", raw)

    def test(self, value: Any) -> bool:
        op = self.op
        if value is _MISSING or value is None:
            if op == "exists":
                return not self.operand
            return op in ("ne", "not_in")
        if op == "exists":
            return bool(self.operand)
        if op == "eq":
            return _same(value, self.operand)
        if op == "ne":
            return not _same(value, self.operand)
        if op == "in":
            return any(_same(value, o) for o in self.operand)
        if op == "not_in":
            return not any(_same(value, o) for o in self.operand)
        if op == "glob":
            return isinstance(value, str) and fnmatch.fnmatchcase(value, self.operand)
        if op == "regex":
            return isinstance(value, str) and self.compiled is not None and self.compiled.search(value) is not None
        if op in ("gt", "gte", "lt", "lte"):
            if not _is_number(value):
                return False
            if op == "gt":
                return value > self.operand
            if op == "gte":
                return value >= self.operand
            if op == "lt":
                return value < self.operand
            return value <= self.operand
        return False

    def to_dict(self) -> Any:
        if self.op == "eq":
            return self.operand
        if self.op in ("in", "not_in"):
            return {self.op: list(self.operand)}
        return {self.op: self.operand}


def resolve_field(action: Action, name: str) -> Any:
    """Value of a match field on an Action, or _MISSING."""
    if name.startswith("params."):
        return action.params_dict().get(name[len("params."):], _MISSING)
    if name == "operation":
        return action.operation
    if name == "tool":
        return action.tool_identity
    if name == "effect":
        return action.effect.value
    if name == "actor_kind":
        return action.actor_identity.kind
    if name == "actor_id":
        return action.actor_identity.id
    if name == "session_id":
        return action.session_id
    if name == "resource":
        return action.resource
    if name == "destination":
        return action.destination
    if name == "sensitivity":
        return action.sensitivity
    return _MISSING


@dataclass(frozen=True)
class PolicyRule:
    rule_id: str
    verdict: Verdict
    priority: int = 0
    conditions: Tuple[Condition, ...] = ()
    description: str = ""

    def matches(self, action: Action) -> bool:
        return all(c.test(resolve_field(action, c.field)) for c in self.conditions)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "rule_id": self.rule_id,
            "verdict": self.verdict.value,
            "priority": self.priority,
            "match": {c.field: c.to_dict() for c in self.conditions},
        }
        if self.description:
            d["description"] = self.description
        return d


def validate_rule_set(data: Any) -> List[str]:
    """Schema errors as 'path: message' strings, sorted by path."""
    errors = sorted(_VALIDATOR.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
    return [f"{'/'.join(str(p) for p in e.absolute_path) or '$'}: {e.message}" for e in errors]


@dataclass(frozen=True)
class RuleSet:
    version: str
    rules: Tuple[PolicyRule, ...]
    digest: str
    loaded_at: datetime = field(default_factory=now_utc)

    @classmethod
    def from_dict(cls, data: Any) -> "RuleSet":
        errors = validate_rule_set(data)
        if errors:
            raise PolicyInvalid("rule set failed schema validation", errors=errors[:20])

        rules: List[PolicyRule] = []
        seen = set()
        for raw in data["rules"]:
            rid = raw["rule_id"]
            if rid in seen:
                raise PolicyInvalid(f"duplicate rule_id {rid!r}", rule_id=rid)
            seen.add(rid)
            conditions = tuple(Condition.parse(k, v) for k, v in sorted((raw.get("match") or {}).items()))
            rules.append(PolicyRule(
                rule_id=rid,
                verdict=Verdict(raw["verdict"]),
                priority=int(raw.get("priority", 0)),
                conditions=conditions,
                description=str(raw.get("description") or ""),
            ))
        rules.sort(key=lambda r: (-r.priority, _VERDICT_RANK[r.verdict], r.rule_id))
        return cls(version=data["version"], rules=tuple(rules), digest=canonical_hash(data))

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "rules": [r.to_dict() for r in self.rules]}

    def summary(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "digest": self.digest,
            "rule_count": len(self.rules),
            "loaded_at_utc": self.loaded_at.isoformat(),
        }


class PolicyEvaluator:
    """Evaluates one Action against one RuleSet."""

    def evaluate(self, action: Action, rule_set: RuleSet) -> PolicyVerdict:
        evaluated: List[str] = []
        first: Optional[PolicyRule] = None
        for rule in rule_set.rules:
            if first is not None and rule.verdict != Verdict.FORBID:
                continue
            evaluated.append(rule.rule_id)
            if not rule.matches(action):
                continue
            if rule.verdict == Verdict.FORBID:
                return PolicyVerdict(Verdict.FORBID, rule.rule_id, rule_set.version, tuple(evaluated))
            if first is None:
                first = rule
        if first is not None:
            return PolicyVerdict(first.verdict, first.rule_id, rule_set.version, tuple(evaluated))
        return PolicyVerdict(Verdict.DENY_BY_DEFAULT, None, rule_set.version, tuple(evaluated))


class PolicyStore:
    """Versioned rule sets with one atomically swapped active reference."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: Optional[RuleSet] = None
        self._versions: Dict[str, RuleSet] = {}
        self.last_error: Optional[str] = None

    def current(self) -> RuleSet:
        rs = self._current
        if rs is None:
            raise PolicyUnavailable(last_error=self.last_error)
        return rs

    def get(self, version: str) -> Optional[RuleSet]:
        return self._versions.get(version)

    def versions(self) -> List[str]:
        return sorted(self._versions.keys())

    def load(self, data: Mapping[str, Any]) -> RuleSet:
        """Validate and activate a rule set. On failure the active set is unchanged."""
        try:
            candidate = RuleSet.from_dict(data)
        except PolicyInvalid as e:
            self.last_error = e.message
            logger.warning("Rejected rule set: %s", e)
            raise
        with self._lock:
            existing = self._versions.get(candidate.version)
            if existing is not None:
                if existing.digest != candidate.digest:
                    self.last_error = f"version {candidate.version} already loaded with different content"
                    raise PolicyInvalid(self.last_error, version=candidate.version)
                candidate = existing
            else:
                self._versions[candidate.version] = candidate
            self._current = candidate
        logger.info("Activated rule set %s (%d rules, digest %s)", candidate.version, len(candidate.rules), candidate.digest[:16])
        return candidate

    def activate(self, version: str) -> RuleSet:
        """Make a previously loaded version active again."""
        with self._lock:
            rs = self._versions.get(version)
            if rs is None:
                raise PolicyUnavailable(f"rule set version {version!r} was never loaded", version=version)
            self._current = rs
        logger.info("Re-activated rule set %s", version)
        return rs

    def load_file(self, path: str) -> RuleSet:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.last_error = f"cannot read rule set file {path}: {e}"
            logger.warning("%s", self.last_error)
            raise PolicyInvalid(self.last_error, path=str(path))
        return self.load(data)

    def load_url(self, url: str, *, timeout_seconds: float = 5.0) -> RuleSet:
        req = urllib.request.Request(url, headers={"Accept": "application/json"}, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
                body = resp.read()
            data = json.loads(body.decode("utf-8"))
        except urllib.error.HTTPError as e:
            self.last_error = f"policy fetch failed: HTTP {e.code}"
            logger.warning("%s (%s)", self.last_error, url)
            raise PolicyUnavailable(self.last_error, url=url)
        except (urllib.error.URLError, OSError, ValueError) as e:
            self.last_error = f"policy fetch failed: {type(e).__name__}: {e}"
            logger.warning("%s (%s)", self.last_error, url)
            raise PolicyUnavailable(self.last_error, url=url)
        return self.load(data)
