"""agent_authz: runtime authorization core for autonomous agent actions.

Every tool call an agent issues is intercepted, normalized into an immutable
Action, evaluated against static policy and the session's stated intent, and
resolved into exactly one of ALLOW / DENY / MODIFY / STEP_UP before it is
allowed to reach the real tool. Every decision is committed to an idempotent
ledger and handed to receipt and telemetry collaborators.

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from agent_authz import ActionAuthorizer, create_app
    from agent_authz import ActionNormalizer, ContextStore, PolicyStore, DecisionLedger
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "ActionAuthorizer",
    "create_app",
    "ActionNormalizer",
    "ContextStore",
    "PolicyStore",
    "DecisionLedger",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "ActionAuthorizer": ("agent_authz.authorizer", "ActionAuthorizer"),
    "create_app": ("agent_authz.server", "create_app"),
    "ActionNormalizer": ("agent_authz.normalizer", "ActionNormalizer"),
    "ContextStore": ("agent_authz.context", "ContextStore"),
    "PolicyStore": ("agent_authz.policy", "PolicyStore"),
    "DecisionLedger": ("agent_authz.ledger", "DecisionLedger"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'agent_authz' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
