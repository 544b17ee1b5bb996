import re
from pathlib import Path

import pytest

import agent_authz


def _pyproject_version() -> str:
    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "no [project].version in pyproject.toml"
    return m.group(1)


def test_lazy_exports_resolve():
    from agent_authz.authorizer import ActionAuthorizer
    from agent_authz.ledger import DecisionLedger

    assert agent_authz.ActionAuthorizer is ActionAuthorizer
    assert agent_authz.DecisionLedger is DecisionLedger
    for name in agent_authz.__all__:
        assert hasattr(agent_authz, name)
        assert name in dir(agent_authz)


def test_unknown_attribute():
    with pytest.raises(AttributeError):
        agent_authz.NoSuchThing  # noqa: B018


def test_version_matches_pyproject():
    assert agent_authz.__version__ == _pyproject_version()
