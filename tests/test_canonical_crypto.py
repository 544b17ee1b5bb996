from datetime import datetime

import pytest

from agent_authz.canonical import canonical_hash, canonical_json_dumps, parse_iso_utc, safe_hash_encode
from agent_authz.crypto import Ed25519KeyPair, SignedApproval, TrustedKeyStore
from agent_authz.errors import (
    AUTHZ_E_CANON_DEPTH,
    AUTHZ_E_CANON_INT_TOO_LARGE,
    AUTHZ_E_CANON_KEY_TYPE,
    AUTHZ_E_CANON_NON_JSON,
    AUTHZ_E_CANON_NONFINITE,
    AuthzError,
)


REVIEWER = Ed25519KeyPair.from_seed(b"\x42" * 32, "reviewer-1")
DRAFT_HASH = "ab" * 32


def test_keys_are_sorted_and_compact():
    assert canonical_json_dumps({"b": 1, "a": [1, 2.5, None, True]}) == '{"a":[1,2.5,null,true],"b":1}'


def test_unicode_is_nfc_normalized():
    composed = {"name": "caf\u00e9"}
    decomposed = {"name": "cafe\u0301"}
    assert canonical_hash(composed) == canonical_hash(decomposed)


@pytest.mark.parametrize(
    "value,code",
    [
        ({"x": float("nan")}, AUTHZ_E_CANON_NONFINITE),
        ({"x": float("inf")}, AUTHZ_E_CANON_NONFINITE),
        ({1: "int key"}, AUTHZ_E_CANON_KEY_TYPE),
        ({"x": object()}, AUTHZ_E_CANON_NON_JSON),
        ({"x": 10 ** 200}, AUTHZ_E_CANON_INT_TOO_LARGE),
    ],
)
def test_strict_encoding_rejects(value, code):
    with pytest.raises(AuthzError) as ei:
        canonical_json_dumps(value)
    assert ei.value.code == code


def test_depth_limit():
    nested = []
    for _ in range(100):
        nested = [nested]
    with pytest.raises(AuthzError) as ei:
        canonical_json_dumps(nested)
    assert ei.value.code == AUTHZ_E_CANON_DEPTH


def test_permissive_encoding_stringifies():
    when = datetime(2024, 6, 1)
    assert canonical_json_dumps({"when": when}, strict=False) == '{"when":"2024-06-01 00:00:00"}'


def test_length_prefixing_avoids_collisions():
    assert safe_hash_encode(["ab", "c"]) != safe_hash_encode(["a", "bc"])


def test_parse_iso_utc():
    assert parse_iso_utc("2024-06-01T00:00:00Z").tzinfo is not None
    assert parse_iso_utc("2024-06-01T02:00:00+02:00") == parse_iso_utc("2024-06-01T00:00:00Z")
    assert parse_iso_utc("not a time") is None
    assert parse_iso_utc("") is None


def test_key_pair_round_trip():
    sig = REVIEWER.sign(b"payload")
    assert REVIEWER.verify(b"payload", sig)
    assert not REVIEWER.verify(b"other", sig)

    public_only = Ed25519KeyPair.from_public_key("r", REVIEWER.public_key_hex)
    assert not public_only.can_sign()
    assert public_only.verify(b"payload", sig)


def _store(**kw):
    store = TrustedKeyStore()
    store.add_public_key(REVIEWER.key_id, REVIEWER.public_key_hex, **kw)
    return store


def test_key_store_windows_and_revocation():
    sig = REVIEWER.sign(b"m")
    store = _store(not_after_utc="2024-01-01T00:00:00Z")
    assert store.verify_signature(REVIEWER.key_id, b"m", sig, signed_at_utc="2023-06-01T00:00:00Z")
    ok, info = store.verify_signature_detailed(REVIEWER.key_id, b"m", sig, signed_at_utc="2024-06-01T00:00:00Z")
    assert not ok
    assert info["failure"] == "expired"

    store = _store(not_before_utc="2030-01-01T00:00:00Z")
    assert store.verify_signature_detailed(REVIEWER.key_id, b"m", sig)[1]["failure"] == "not_yet_valid"

    store = _store()
    store.revoke_key(REVIEWER.key_id)
    assert store.verify_signature_detailed(REVIEWER.key_id, b"m", sig)[1]["failure"] == "revoked"
    assert TrustedKeyStore().verify_signature_detailed("nobody", b"m", sig)[1]["failure"] == "unknown_key"


def test_key_store_from_config():
    store = TrustedKeyStore.from_config({
        "keys": {
            "a": REVIEWER.public_key_hex,
            "b": {"public_key_hex": REVIEWER.public_key_hex, "status": "revoked"},
        },
        "revoked": ["a"],
    })
    assert store.list_key_ids() == ["a", "b"]
    assert store.revoked_key_ids == {"a", "b"}

    with pytest.raises(ValueError):
        TrustedKeyStore.from_config({"a": 42})
    with pytest.raises(ValueError):
        TrustedKeyStore.from_config(["a"])


def test_key_store_from_env(monkeypatch):
    monkeypatch.delenv("AUTHZ_TRUSTED_REVIEWER_KEYS_JSON", raising=False)
    monkeypatch.delenv("AUTHZ_TRUSTED_REVIEWER_KEYS_FILE", raising=False)
    assert TrustedKeyStore.from_env() is None

    monkeypatch.setenv("AUTHZ_TRUSTED_REVIEWER_KEYS_JSON", '{"reviewer-1": "%s"}' % REVIEWER.public_key_hex)
    assert TrustedKeyStore.from_env().list_key_ids() == ["reviewer-1"]


def test_signed_approval_binds_action_and_draft():
    approval = SignedApproval.create_signed(
        action_id="act_1", decision_hash=DRAFT_HASH, reviewer_id="alice", decision="approve", key_pair=REVIEWER
    )
    store = _store()
    assert approval.verify(store)

    restored = SignedApproval.from_dict(approval.to_dict())
    assert restored.verify(store)

    restored.action_id = "act_2"
    assert not restored.verify(store)


@pytest.mark.parametrize(
    "overrides",
    [
        {"action_id": " "},
        {"decision_hash": "ABC"},
        {"decision": "maybe"},
    ],
)
def test_signed_approval_validation(overrides):
    fields = dict(
        action_id="act_1",
        decision_hash=DRAFT_HASH,
        reviewer_id="alice",
        decision="approve",
        reason="",
        reviewed_at_utc="2024-06-01T00:00:00+00:00",
        key_id="reviewer-1",
    )
    fields.update(overrides)
    with pytest.raises(ValueError):
        SignedApproval(**fields)


def test_unsigned_approval_never_verifies():
    approval = SignedApproval("act_1", DRAFT_HASH, "alice", "deny", "", "2024-06-01T00:00:00+00:00", "reviewer-1")
    assert not approval.verify(_store())
