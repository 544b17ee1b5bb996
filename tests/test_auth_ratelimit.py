import pytest

from agent_authz.auth import ALL_ROLES, ROLE_ADMIN, ROLE_REVIEW, ApiKeyAuth
from agent_authz.ratelimit import RateLimiter, limiter_from_env, parse_rate_limit


def test_disabled_auth_grants_every_role(monkeypatch):
    monkeypatch.delenv("AUTHZ_API_KEYS_JSON", raising=False)
    monkeypatch.delenv("AUTHZ_API_KEYS_FILE", raising=False)
    auth = ApiKeyAuth.load_from_env()
    assert not auth.enabled()
    caller = auth.resolve(None)
    assert caller.error is None
    assert caller.roles == ALL_ROLES


def test_key_mapping_and_roles():
    auth = ApiKeyAuth.from_mapping({"k1": "interceptor", "k2": {"id": "alice", "roles": ["review"]}})
    assert auth.resolve("k1").roles == ALL_ROLES
    alice = auth.resolve("k2")
    assert alice.caller_id == "alice"
    assert alice.has_role(ROLE_REVIEW)
    assert not alice.has_role(ROLE_ADMIN)
    assert auth.resolve(None).error == "API_KEY_REQUIRED"
    assert auth.resolve("k3").error == "API_KEY_INVALID"


@pytest.mark.parametrize(
    "data",
    [
        ["k1"],
        {"k1": 7},
        {"k1": {"roles": ["review"]}},
        {"k1": {"id": "x", "roles": ["root"]}},
    ],
)
def test_bad_key_mappings(data):
    with pytest.raises(ValueError):
        ApiKeyAuth.from_mapping(data)


def test_key_file_and_broken_config(tmp_path, monkeypatch):
    monkeypatch.delenv("AUTHZ_API_KEYS_JSON", raising=False)
    path = tmp_path / "keys.json"
    path.write_text('{"k1": "ops"}', encoding="utf-8")
    monkeypatch.setenv("AUTHZ_API_KEYS_FILE", str(path))
    assert ApiKeyAuth.load_from_env().resolve("k1").caller_id == "ops"

    monkeypatch.setenv("AUTHZ_API_KEYS_FILE", str(tmp_path / "missing.json"))
    broken = ApiKeyAuth.load_from_env()
    assert broken.resolve("k1").error == "API_KEY_CONFIG_INVALID"


@pytest.mark.parametrize(
    "spec,expected",
    [
        ("30/m", (30.0, 0.5)),
        ("10/s", (10.0, 10.0)),
        ("3600/hour", (3600.0, 1.0)),
    ],
)
def test_parse_rate_limit(spec, expected):
    assert parse_rate_limit(spec) == expected


@pytest.mark.parametrize("spec", ["", "30", "0/m", "5/fortnight", "x/m"])
def test_parse_rate_limit_rejects(spec):
    with pytest.raises(ValueError):
        parse_rate_limit(spec)


def test_buckets_are_per_key():
    limiter = RateLimiter(capacity=2, refill_rate_per_sec=0.001)
    assert limiter.allow("a")
    assert limiter.allow("a")
    assert not limiter.allow("a")
    assert limiter.allow("b")


def test_key_cap():
    limiter = RateLimiter(capacity=1, refill_rate_per_sec=1, max_keys=1)
    assert limiter.allow("a")
    assert not limiter.allow("b")


def test_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTHZ_RATE_LIMIT_ADMIN", "lots")
    limiter = limiter_from_env("AUTHZ_RATE_LIMIT_ADMIN", "1/m")
    assert limiter.allow("a")
    assert not limiter.allow("a")
