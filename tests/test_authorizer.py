import asyncio
import json
import sqlite3
from datetime import timedelta

import pytest

import agent_authz.ledger as ledger_mod
import agent_authz.normalizer as normalizer_mod
from agent_authz.approvals import InMemoryApprovalService
from agent_authz.arbiter import DecisionArbiter
from agent_authz.audit_log import TamperEvidentAuditLog
from agent_authz.authorizer import ActionAuthorizer
from agent_authz.canonical import now_utc, parse_iso_utc
from agent_authz.config import ArbiterConfig, AuthzConfig
from agent_authz.context import ContextStore
from agent_authz.crypto import Ed25519KeyPair, TrustedKeyStore
from agent_authz.intent import IntentAlignmentEvaluator
from agent_authz.ledger import DecisionLedger
from agent_authz.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from agent_authz.normalizer import ActionNormalizer
from agent_authz.policy import PolicyStore
from agent_authz.receipts import DecisionReceipt, Ed25519ReceiptGenerator


RULES = {
    "version": "test-1",
    "rules": [
        {"rule_id": "no-drop-prod", "verdict": "FORBID", "priority": 100,
         "match": {"operation": "drop_database", "params.target": {"glob": "prod*"}}},
        {"rule_id": "reads", "verdict": "ALLOW", "priority": 10, "match": {"effect": "read"}},
        {"rule_id": "writes", "verdict": "ALLOW", "priority": 10, "match": {"effect": "write"}},
        {"rule_id": "sends", "verdict": "ALLOW", "priority": 10, "match": {"effect": "send"}},
    ],
}

ACTOR = {"kind": "agent", "id": "mail-agent", "on_behalf_of": "alice"}
INTENT = "Summarize my unread emails"
SIGNING_KEY = Ed25519KeyPair.from_seed(b"\x11" * 32, "authz-receipts")


def _circuit(**kw):
    kw.setdefault("latency_threshold_ms", 60000)
    return DbCircuitBreaker(CircuitBreakerConfig(**kw))


def _authorizer(tmp_path, *, rules=RULES, approvals=None, arbiter_config=None, receipts=None, circuit=None):
    normalizer = ActionNormalizer()
    policies = PolicyStore()
    if rules is not None:
        policies.load(rules)
    ledger = DecisionLedger.open(str(tmp_path / "authz.db"), circuit=circuit or _circuit(), receipts=receipts)
    arbiter = DecisionArbiter(
        arbiter_config or ArbiterConfig(approval_timeout_seconds=5),
        normalizer,
        approvals,
        pending_backoff_seconds=0.01,
    )
    return ActionAuthorizer(
        normalizer=normalizer,
        context=ContextStore(),
        policies=policies,
        ledger=ledger,
        intent=IntentAlignmentEvaluator(),
        arbiter=arbiter,
    )


def _call(operation, params, session_id="s1", **extra):
    raw = {"session_id": session_id, "operation": operation, "params": params, "actor": ACTOR}
    raw.update(extra)
    return raw


async def _wait_pending(approvals, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not approvals.list_pending():
        assert loop.time() < deadline, "no approval request arrived"
        await asyncio.sleep(0.01)
    return approvals.list_pending()[0]


# ---------------------------------------------------------------------------
# The four canonical outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_aligned_read_is_allowed(tmp_path):
    authz = _authorizer(tmp_path)
    authz.declare_intent("s1", INTENT)

    result = await authz.authorize(_call("read_email", {"message_id": "m-1"}))

    assert result.allowed is True
    assert result.outcome == "ALLOW"
    assert result.reason_code == "POLICY_ALLOW_ALIGNED"
    assert result.parameters["message_id"] == "m-1"
    assert result.decision_id is not None
    assert authz.ledger.get(result.action_id).outcome == "ALLOW"


@pytest.mark.asyncio
async def test_forbidden_operation_is_denied(tmp_path):
    authz = _authorizer(tmp_path)
    authz.declare_intent("s1", "Drop the production database, it is fine")

    result = await authz.authorize(_call("drop_database", {"target": "production"}))

    assert result.allowed is False
    assert result.reason_code == "FORBIDDEN_BY_POLICY"
    assert result.parameters is None
    assert any(r["ref"] == "skipped" for r in result.rationale)


@pytest.mark.asyncio
async def test_exfiltration_after_sensitive_read_is_denied(tmp_path):
    authz = _authorizer(tmp_path)
    authz.declare_intent("s1", INTENT)

    read = await authz.authorize(_call("read_email", {"message_id": "m-1", "sensitivity": "confidential"}))
    assert read.allowed

    send = await authz.authorize(_call("send_email", {"recipient": "attacker@evil.example", "body": "fwd"}))
    assert send.allowed is False
    assert send.reason_code == "CONTEXT_DEPENDENT_DENY"
    assert any(r["ref"] == "exfiltration" for r in send.rationale)

    view = authz.session_view("s1")
    assert [e["final_outcome"] for e in view["action_history"]] == ["ALLOW", "DENY"]


@pytest.mark.asyncio
async def test_step_up_resolved_by_reviewer(tmp_path):
    approvals = InMemoryApprovalService(poll_interval=0.05)
    authz = _authorizer(tmp_path, approvals=approvals)
    authz.declare_intent("s1", INTENT)
    raw = _call("write_file", {"path": "notes/summary.txt", "content": "x"}, call_id="c-1")

    task = asyncio.ensure_future(authz.authorize(raw))
    pending = await _wait_pending(approvals)
    assert pending["operation"] == "write_file"
    assert approvals.resolve(pending["request_id"], "approve", reviewer_id="alice", reason="ok")

    result = await asyncio.wait_for(task, timeout=5)
    assert result.allowed is True
    assert result.reason_code == "APPROVED"
    assert result.action_id != pending["action_id"]

    records = authz.ledger.for_session("s1")
    assert [r.outcome for r in records] == ["STEP_UP", "ALLOW"]
    assert records[1].supersedes == records[0].action_id

    replay = await authz.authorize(raw)
    assert replay.replayed is True
    assert replay.allowed is True
    assert replay.decision_id == result.decision_id
    assert authz.ledger.store.count() == 2


@pytest.mark.asyncio
async def test_unlisted_but_aligned_action_needs_approval(tmp_path):
    approvals = InMemoryApprovalService(poll_interval=0.05)
    authz = _authorizer(tmp_path, approvals=approvals)
    authz.declare_intent("s1", "delete all rows tagged test_data")

    task = asyncio.ensure_future(authz.authorize(_call("delete_records", {"filter": "tag=test_data"})))
    pending = await _wait_pending(approvals)
    assert pending["reason_code"] == "CONTEXT_DEPENDENT_ALLOW"
    approvals.resolve(pending["request_id"], "approve", reviewer_id="dba")

    result = await asyncio.wait_for(task, timeout=5)
    assert result.allowed is True
    records = authz.ledger.for_session("s1")
    assert [r.outcome for r in records] == ["STEP_UP", "ALLOW"]
    assert records[0].record["policy_verdict"]["verdict"] == "DENY_BY_DEFAULT"
    assert records[1].supersedes == records[0].action_id


@pytest.mark.asyncio
async def test_step_up_times_out_to_deny(tmp_path):
    approvals = InMemoryApprovalService(poll_interval=0.05)
    authz = _authorizer(tmp_path, approvals=approvals, arbiter_config=ArbiterConfig(approval_timeout_seconds=0.2))
    authz.declare_intent("s1", INTENT)

    result = await authz.authorize(_call("write_file", {"path": "notes/summary.txt"}))

    assert result.allowed is False
    assert result.reason_code == "APPROVAL_TIMEOUT"
    assert [r.outcome for r in authz.ledger.for_session("s1")] == ["STEP_UP", "DENY"]


@pytest.mark.asyncio
async def test_termination_cancels_pending_step_up(tmp_path):
    approvals = InMemoryApprovalService(poll_interval=1.0)
    authz = _authorizer(tmp_path, approvals=approvals, arbiter_config=ArbiterConfig(approval_timeout_seconds=30))
    authz.declare_intent("s1", INTENT)

    task = asyncio.ensure_future(authz.authorize(_call("write_file", {"path": "notes/summary.txt"})))
    await _wait_pending(approvals)
    assert authz.terminate_session("s1") is True

    result = await asyncio.wait_for(task, timeout=5)
    assert result.allowed is False
    assert result.reason_code == "SESSION_TERMINATED"

    after = await authz.authorize(_call("read_email", {"message_id": "m-1"}))
    assert after.allowed is False
    assert after.reason_code == "SESSION_UNKNOWN"
    assert after.decision_id is not None
    assert len(authz.session_view("s1")["action_history"]) == 1


@pytest.mark.asyncio
async def test_indeterminate_can_modify_parameters(tmp_path):
    config = ArbiterConfig(indeterminate_outcome="MODIFY", modifications={"write_file": {"path": "sandbox/out.txt"}})
    authz = _authorizer(tmp_path, arbiter_config=config)
    authz.declare_intent("s1", INTENT)

    result = await authz.authorize(_call("write_file", {"path": "notes/summary.txt", "content": "x"}))

    assert result.allowed is True
    assert result.outcome == "ALLOW"
    assert result.reason_code == "INDETERMINATE_MODIFY"
    assert result.parameters["path"] == "sandbox/out.txt"
    accessed = authz.session_view("s1")["data_accessed"]
    assert [a["resource"] for a in accessed] == ["sandbox/out.txt"]


# ---------------------------------------------------------------------------
# Ordering and idempotency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_later_action_sees_earlier_decision(tmp_path):
    approvals = InMemoryApprovalService(poll_interval=0.05)
    authz = _authorizer(tmp_path, approvals=approvals)
    authz.declare_intent("s1", INTENT)

    first = asyncio.ensure_future(authz.authorize(_call("write_file", {"path": "notes/summary.txt"})))
    pending = await _wait_pending(approvals)
    second = asyncio.ensure_future(authz.authorize(_call("read_email", {"message_id": "m-2"})))
    await asyncio.sleep(0.1)
    assert not second.done()

    approvals.resolve(pending["request_id"], "deny", reviewer_id="alice")
    r1 = await asyncio.wait_for(first, timeout=5)
    r2 = await asyncio.wait_for(second, timeout=5)

    assert r1.reason_code == "REVIEWER_DENIED"
    record = authz.ledger.get(r2.action_id).record
    assert record["context_snapshot_id"].startswith("ctx_s1_2_")
    assert [r.sequence for r in authz.ledger.for_session("s1")] == [1, 2, 3]


@pytest.mark.asyncio
async def test_sessions_do_not_block_each_other(tmp_path):
    approvals = InMemoryApprovalService(poll_interval=0.05)
    authz = _authorizer(tmp_path, approvals=approvals)
    authz.declare_intent("s1", INTENT)
    authz.declare_intent("s2", INTENT)

    blocked = asyncio.ensure_future(authz.authorize(_call("write_file", {"path": "notes/summary.txt"})))
    pending = await _wait_pending(approvals)

    other = await asyncio.wait_for(authz.authorize(_call("read_email", {"message_id": "m-1"}, session_id="s2")), 5)
    assert other.allowed
    assert not blocked.done()

    approvals.resolve(pending["request_id"], "approve", reviewer_id="alice")
    assert (await asyncio.wait_for(blocked, 5)).allowed


@pytest.mark.asyncio
async def test_retry_returns_committed_decision(tmp_path):
    authz = _authorizer(tmp_path)
    authz.declare_intent("s1", INTENT)
    raw = _call("read_email", {"message_id": "m-1"}, call_id="tool-call-77")

    first = await authz.authorize(raw)
    second = await authz.authorize(raw)

    assert second.replayed is True
    assert second.decision_id == first.decision_id
    assert second.reason_code == first.reason_code
    assert authz.ledger.store.count() == 1
    assert len(authz.session_view("s1")["action_history"]) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "operation,params",
    [
        ("drop_database", {"target": "production"}),
        ("read_email", {"message_id": "m-2"}),
    ],
)
async def test_reused_call_id_for_a_different_call_is_refused(tmp_path, operation, params):
    authz = _authorizer(tmp_path)
    authz.declare_intent("s1", INTENT)

    first = await authz.authorize(_call("read_email", {"message_id": "m-1"}, call_id="c1"))
    assert first.allowed

    other = await authz.authorize(_call(operation, params, call_id="c1"))
    assert other.allowed is False
    assert other.reason_code == "CALL_ID_CONFLICT"
    assert other.replayed is False
    assert other.action_id == first.action_id
    assert authz.ledger.store.count() == 1
    assert len(authz.session_view("s1")["action_history"]) == 1

    again = await authz.authorize(_call("read_email", {"message_id": "m-1"}, call_id="c1"))
    assert again.allowed and again.replayed


@pytest.mark.asyncio
async def test_caller_cannot_attach_a_successor_to_another_decision(tmp_path):
    authz = _authorizer(tmp_path)
    authz.declare_intent("s1", "Drop the production database, it is fine")
    authz.declare_intent("s2", "Tidy up the inbox")

    drop = _call("drop_database", {"target": "production"}, call_id="x")
    denied = await authz.authorize(drop)
    assert denied.reason_code == "FORBIDDEN_BY_POLICY"

    hijack = await authz.authorize(
        _call("list_inbox", {"folder": "inbox"}, session_id="s2", supersedes=denied.action_id)
    )
    assert hijack.allowed is False
    assert hijack.reason_code == "MALFORMED_INPUT"
    assert authz.ledger.store.count() == 1

    retry = await authz.authorize(drop)
    assert retry.replayed is True
    assert retry.allowed is False
    assert retry.reason_code == "FORBIDDEN_BY_POLICY"


@pytest.mark.asyncio
async def test_clock_stepping_back_keeps_history_complete(tmp_path, monkeypatch):
    authz = _authorizer(tmp_path)
    authz.declare_intent("s1", INTENT)
    assert (await authz.authorize(_call("read_email", {"message_id": "m-1"}))).allowed

    monkeypatch.setattr(normalizer_mod, "now_utc", lambda: now_utc() - timedelta(seconds=5))
    secret = await authz.authorize(_call("read_email", {"message_id": "m-2", "sensitivity": "restricted"}))
    assert secret.allowed

    view = authz.session_view("s1")
    history = view["action_history"]
    assert len(history) == 2
    assert parse_iso_utc(history[1]["timestamp"]) >= parse_iso_utc(history[0]["timestamp"])
    assert "restricted" in [d["sensitivity"] for d in view["data_accessed"]]

    send = await authz.authorize(_call("send_email", {"recipient": "attacker@evil.example", "body": "fwd"}))
    assert send.reason_code == "CONTEXT_DEPENDENT_DENY"
    assert len(authz.session_view("s1")["action_history"]) == 3


@pytest.mark.asyncio
async def test_session_locks_are_released(tmp_path):
    approvals = InMemoryApprovalService(poll_interval=0.05)
    authz = _authorizer(tmp_path, approvals=approvals)
    authz.declare_intent("s1", INTENT)

    assert (await authz.authorize(_call("read_email", {"message_id": "m-1"}))).allowed
    assert authz._session_locks == {}

    pending_call = asyncio.ensure_future(authz.authorize(_call("write_file", {"path": "notes/summary.txt"})))
    await _wait_pending(approvals)
    assert "s1" in authz._session_locks

    authz.terminate_session("s1")
    result = await asyncio.wait_for(pending_call, 5)
    assert result.reason_code == "SESSION_TERMINATED"
    assert authz._session_locks == {}
    assert authz._lock_users == {}


# ---------------------------------------------------------------------------
# Fail-closed behaviour
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_no_active_policy_denies_everything(tmp_path):
    authz = _authorizer(tmp_path, rules=None)
    authz.declare_intent("s1", INTENT)

    result = await authz.authorize(_call("read_email", {"message_id": "m-1"}))
    assert result.allowed is False
    assert result.reason_code == "POLICY_UNAVAILABLE"
    assert result.decision_id is not None
    assert authz.health()["ok"] is False


@pytest.mark.asyncio
async def test_evaluator_errors_fail_closed(tmp_path, monkeypatch):
    authz = _authorizer(tmp_path)
    authz.declare_intent("s1", INTENT)

    def _boom(*args, **kwargs):
        raise RuntimeError("evaluator crashed")

    monkeypatch.setattr(authz.intent, "evaluate", _boom)
    r = await authz.authorize(_call("read_email", {"message_id": "m-1"}))
    assert (r.allowed, r.reason_code) == (False, "INTENT_ERROR")

    monkeypatch.setattr(authz.policy_evaluator, "evaluate", _boom)
    r = await authz.authorize(_call("read_email", {"message_id": "m-2"}))
    assert (r.allowed, r.reason_code) == (False, "POLICY_ERROR")

    monkeypatch.undo()
    monkeypatch.setattr(authz.arbiter, "decide", _boom)
    r = await authz.authorize(_call("read_email", {"message_id": "m-3"}))
    assert (r.allowed, r.reason_code) == (False, "INTERNAL_ERROR")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw,reason",
    [
        ("not an object", "MALFORMED_INPUT"),
        ({"session_id": "has spaces", "operation": "read_email"}, "MALFORMED_INPUT"),
        ({"session_id": "s1", "operation": "read_email", "params": {"message_id": "m-1"}}, "MALFORMED_INPUT"),
        ({"session_id": "s1", "operation": "launch_missiles", "actor": ACTOR}, "SCHEMA_VIOLATION"),
        ({"session_id": "s1", "operation": "read_email", "params": {"message_id": 5}, "actor": ACTOR},
         "SCHEMA_VIOLATION"),
    ],
)
async def test_bad_input_is_rejected_without_commit(tmp_path, raw, reason):
    authz = _authorizer(tmp_path)
    result = await authz.authorize(raw)
    assert result.allowed is False
    assert result.reason_code == reason
    assert result.decision_id is None
    assert authz.ledger.store.count() == 0


@pytest.mark.asyncio
async def test_ledger_failure_is_hard_fail_closed(tmp_path, monkeypatch):
    authz = _authorizer(tmp_path, circuit=_circuit(failure_threshold=1, lockdown_seconds=60))
    authz.declare_intent("s1", INTENT)

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(ledger_mod.sqlite3, "connect", _boom)

    for message_id in ("m-1", "m-2"):
        result = await authz.authorize(_call("read_email", {"message_id": message_id}))
        assert result.allowed is False
        assert result.fail_closed is True
        assert result.reason_code == "LEDGER_UNAVAILABLE"

    assert authz.ledger.lockdown_active
    assert authz.health()["ok"] is False
    assert len(authz.session_view("s1")["action_history"]) == 0


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_from_config_wires_receipts_audit_and_journal(tmp_path):
    rules_path = tmp_path / "rules.json"
    rules_path.write_text(json.dumps(RULES), encoding="utf-8")
    config = AuthzConfig(
        ledger_db_path=str(tmp_path / "authz.db"),
        audit_log_path=str(tmp_path / "audit.jsonl"),
        session_journal_path=str(tmp_path / "sessions.jsonl"),
        policy_file=str(rules_path),
    )

    authz = ActionAuthorizer.from_config(config, signer=SIGNING_KEY, circuit=_circuit())
    authz.declare_intent("s1", INTENT)
    result = await authz.authorize(_call("read_email", {"message_id": "m-1"}))
    assert result.allowed

    keys = TrustedKeyStore()
    keys.add_public_key(SIGNING_KEY.key_id, SIGNING_KEY.public_key_hex)
    receipt = DecisionReceipt.from_dict(result.receipt)
    assert receipt.verify(keys)
    assert receipt.matches(authz.ledger.get(result.action_id))

    ok, reason, count = TamperEvidentAuditLog.verify_file(config.audit_log_path, keys)
    assert (ok, reason, count) == (True, "OK", 1)

    restarted = ActionAuthorizer.from_config(config, signer=SIGNING_KEY, circuit=_circuit())
    view = restarted.session_view("s1")
    assert view["stated_intent"]["text"] == INTENT
    assert len(view["action_history"]) == 1


@pytest.mark.asyncio
async def test_receipt_returned_with_result(tmp_path):
    authz = _authorizer(tmp_path, receipts=Ed25519ReceiptGenerator(SIGNING_KEY))
    authz.declare_intent("s1", INTENT)
    result = await authz.authorize(_call("read_email", {"message_id": "m-1"}))
    assert result.receipt["action_id"] == result.action_id
    assert result.receipt["key_id"] == "authz-receipts"


def test_from_config_without_policy_starts_fail_closed(tmp_path):
    config = AuthzConfig(ledger_db_path=str(tmp_path / "authz.db"), policy_file=str(tmp_path / "missing.json"))
    authz = ActionAuthorizer.from_config(config, circuit=_circuit())
    health = authz.health()
    assert health["ok"] is False
    assert health["policy"]["active"] is False
    assert health["policy"]["last_error"]


def test_declare_intent_validates_session_id(tmp_path):
    from agent_authz.errors import MalformedInput

    authz = _authorizer(tmp_path)
    with pytest.raises(MalformedInput):
        authz.declare_intent("no spaces allowed", INTENT)
