import sqlite3
from dataclasses import replace

import pytest

import agent_authz.ledger as ledger_mod
from agent_authz.arbiter import DecisionArbiter
from agent_authz.crypto import Ed25519KeyPair, TrustedKeyStore
from agent_authz.ledger import DecisionLedger, ReceiptInput
from agent_authz.lockdown import CircuitBreakerConfig, DbCircuitBreaker, StorageLockdownError
from agent_authz.models import AlignmentCategory, AlignmentResult, PolicyVerdict, Verdict
from agent_authz.normalizer import ActionNormalizer
from agent_authz.ops_stats import OPS_STATS
from agent_authz.receipts import DecisionReceipt, Ed25519ReceiptGenerator
from agent_authz.telemetry import MemoryExporter


NORMALIZER = ActionNormalizer()
SIGNING_KEY = Ed25519KeyPair.from_seed(b"\x07" * 32, "receipts-1")


def _circuit(**kw):
    kw.setdefault("latency_threshold_ms", 60000)
    return DbCircuitBreaker(CircuitBreakerConfig(**kw))


def _ledger(tmp_path, **kw):
    return DecisionLedger.open(str(tmp_path / "authz.db"), circuit=_circuit(), **kw)


def _decision(session_id="s1", call_id=None, supersedes=None):
    raw = {
        "session_id": session_id,
        "operation": "read_file",
        "params": {"path": "/srv/report.txt"},
        "actor": {"kind": "agent", "id": "agent-1"},
    }
    if call_id:
        raw["call_id"] = call_id
    action = NORMALIZER.normalize(raw)
    if supersedes:
        action = replace(action, supersedes=supersedes)
    return DecisionArbiter().decide(
        action, "ctx", PolicyVerdict(Verdict.ALLOW, "r", "v1"), AlignmentResult(0.9, AlignmentCategory.ALIGNED)
    )


def test_commit_is_idempotent_byte_for_byte(tmp_path):
    ledger = _ledger(tmp_path)
    first = _decision(call_id="c-1")
    again = _decision(call_id="c-1")
    assert first.action_id == again.action_id

    a = ledger.commit(first)
    b = ledger.commit(again)
    c = ledger.commit(first)

    assert a.canonical_bytes() == b.canonical_bytes() == c.canonical_bytes()
    assert a.receipt_input_hash == b.receipt_input_hash
    assert ledger.store.count() == 1


def test_duplicate_commit_reports_not_created(tmp_path):
    ledger = _ledger(tmp_path)
    decision = _decision()
    before = OPS_STATS.snapshot()["ledger_conflicts_total"]

    _, created = ledger.commit_once(decision)
    _, created_again = ledger.commit_once(decision)

    assert created is True
    assert created_again is False
    assert OPS_STATS.snapshot()["ledger_conflicts_total"] == before + 1


def test_receipt_input_carries_full_decision(tmp_path):
    ledger = _ledger(tmp_path)
    decision = _decision()
    ri = ledger.commit(decision)

    assert ri.sequence == 1
    assert ri.outcome == "ALLOW"
    assert ri.record == decision.to_dict()
    assert ri.to_dict()["receipt_input_hash"] == ri.receipt_input_hash
    assert ReceiptInput.from_json(ri.canonical_json) == ri
    assert ledger.get(decision.action_id) == ri
    assert ledger.get("act_missing") is None


def test_replay_and_session_queries_follow_commit_order(tmp_path):
    ledger = _ledger(tmp_path)
    committed = [ledger.commit(_decision(sid)) for sid in ("s1", "s2", "s1", "s1")]

    assert [ri.sequence for ri in ledger.replay()] == [1, 2, 3, 4]
    assert [ri.action_id for ri in ledger.for_session("s1")] == [committed[i].action_id for i in (0, 2, 3)]
    assert list(ledger.store.iter_all(after_sequence=2, batch_size=1)) == committed[2:]


def test_resolve_chain_follows_supersedes(tmp_path):
    ledger = _ledger(tmp_path)
    root = ledger.commit(_decision(call_id="c-1"))
    mid = ledger.commit(_decision(supersedes=root.action_id))
    tip = ledger.commit(_decision(supersedes=mid.action_id))

    assert ledger.resolve_chain(root.action_id) == tip
    assert ledger.resolve_chain(tip.action_id) == tip
    assert ledger.resolve_chain("act_unknown") is None


def test_successor_must_share_the_session(tmp_path):
    ledger = _ledger(tmp_path)
    root = ledger.commit(_decision(call_id="c-1"))
    ledger.commit(_decision(session_id="s2", supersedes=root.action_id))

    assert ledger.resolve_chain(root.action_id) == root
    assert ledger.store.successor_of(root.action_id, "s2") is not None
    assert ledger.store.successor_of(root.action_id, "s1") is None


def test_receipts_are_signed_and_verifiable(tmp_path):
    ledger = _ledger(tmp_path, receipts=Ed25519ReceiptGenerator(SIGNING_KEY))
    ri = ledger.commit(_decision())

    stored = ledger.receipt_for(ri.action_id)
    assert stored is not None
    receipt = DecisionReceipt.from_dict(stored)

    keys = TrustedKeyStore()
    keys.add_public_key(SIGNING_KEY.key_id, SIGNING_KEY.public_key_hex)
    assert receipt.verify(keys)
    assert receipt.matches(ri)

    other = ledger.commit(_decision())
    assert not receipt.matches(other)

    keys.revoke_key(SIGNING_KEY.key_id)
    assert not receipt.verify(keys)


def test_signing_failure_leaves_commit_intact(tmp_path):
    class _Broken:
        def sign(self, receipt_input):
            raise RuntimeError("hsm unavailable")

    ledger = _ledger(tmp_path, receipts=_Broken())
    ri = ledger.commit(_decision())
    assert ledger.get(ri.action_id) == ri
    assert ledger.receipt_for(ri.action_id) is None


def test_telemetry_receives_event_after_commit(tmp_path):
    sink = MemoryExporter()
    ledger = _ledger(tmp_path, telemetry=sink)
    decision = _decision()
    ri = ledger.commit(decision)
    ledger.commit(decision)

    assert len(sink.events) == 1
    event = sink.events[0]
    assert event["event"] == "authz.decision"
    assert event["receipt_input_hash"] == ri.receipt_input_hash
    assert event["sequence"] == ri.sequence


def test_telemetry_failure_never_blocks_commit(tmp_path):
    class _Down:
        def emit(self, event):
            raise ConnectionError("collector down")

    before = OPS_STATS.snapshot()["telemetry_errors_total"]
    ledger = _ledger(tmp_path, telemetry=_Down())
    ri = ledger.commit(_decision())

    assert ledger.get(ri.action_id) == ri
    assert OPS_STATS.snapshot()["telemetry_errors_total"] == before + 1


def test_ledger_reopens_with_existing_records(tmp_path):
    ri = _ledger(tmp_path).commit(_decision(call_id="c-1"))
    reopened = _ledger(tmp_path)
    assert reopened.get(ri.action_id).canonical_bytes() == ri.canonical_bytes()
    assert reopened.commit(_decision(call_id="c-1")).canonical_bytes() == ri.canonical_bytes()


def test_storage_failure_trips_lockdown(tmp_path, monkeypatch):
    ledger = DecisionLedger.open(
        str(tmp_path / "authz.db"),
        circuit=_circuit(failure_threshold=1, lockdown_seconds=60, connect_timeout_seconds=0.01),
    )

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(ledger_mod.sqlite3, "connect", _boom)

    with pytest.raises(sqlite3.OperationalError):
        ledger.commit(_decision())

    assert ledger.lockdown_active
    with pytest.raises(StorageLockdownError):
        ledger.commit(_decision())
    with pytest.raises(StorageLockdownError):
        ledger.get("act_x")


def test_non_strict_mode_ignores_unrelated_errors():
    breaker = _circuit(error_strict=False)
    assert breaker.should_treat_operational_error_as_failure("database is locked")
    assert not breaker.should_treat_operational_error_as_failure("no such table: decisions")


def test_slow_operations_trip_lockdown():
    breaker = _circuit(latency_threshold_ms=10, lockdown_seconds=60)
    breaker.record_latency(5)
    assert not breaker.is_lockdown_active()
    breaker.record_latency(50)
    assert breaker.is_lockdown_active()
    with pytest.raises(StorageLockdownError):
        breaker.raise_if_lockdown()
