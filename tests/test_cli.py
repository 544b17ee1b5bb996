import json

import pytest

from agent_authz.arbiter import DecisionArbiter
from agent_authz.audit_log import TamperEvidentAuditLog
from agent_authz.cli import main
from agent_authz.crypto import Ed25519KeyPair
from agent_authz.ledger import DecisionLedger
from agent_authz.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from agent_authz.models import AlignmentCategory, AlignmentResult, PolicyVerdict, Verdict
from agent_authz.normalizer import ActionNormalizer


KEY = Ed25519KeyPair.from_seed(b"\x21" * 32, "audit-1")
CALL = {
    "session_id": "s1",
    "operation": "email.send",
    "params": {"recipient": "bob@example.com", "subject": "hi"},
    "actor": {"kind": "agent", "id": "agent-1"},
}


def _write(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def test_no_command_prints_help(capsys):
    assert main([]) == 2
    assert "check-policy" in capsys.readouterr().out


def test_check_policy(tmp_path, capsys):
    good = _write(tmp_path / "good.json", {"version": "7", "rules": [{"rule_id": "r", "verdict": "FORBID"}]})
    assert main(["check-policy", good]) == 0
    out = capsys.readouterr().out
    assert "version 7" in out
    assert "FORBID" in out

    bad = _write(tmp_path / "bad.json", {"version": "7", "rules": [{"rule_id": "r", "verdict": "NOPE"}]})
    assert main(["check-policy", bad]) == 2
    assert "✗" in capsys.readouterr().err


def test_normalize(tmp_path, capsys):
    assert main(["normalize", _write(tmp_path / "call.json", CALL)]) == 0
    action = json.loads(capsys.readouterr().out)
    assert action["operation"] == "send_email"
    assert action["destination"] == "bob@example.com"

    anonymous = dict(CALL)
    del anonymous["actor"]
    path = _write(tmp_path / "anon.json", anonymous)
    assert main(["normalize", path]) == 1
    rejected = json.loads(capsys.readouterr().out)
    assert rejected["rejected"] is True
    assert rejected["code"] == "AUTHZ_E_MALFORMED_INPUT"

    assert main(["normalize", path, "--allow-anonymous"]) == 0
    assert main(["normalize", str(tmp_path / "missing.json")]) == 2


def test_verify_audit(tmp_path, capsys):
    log_path = str(tmp_path / "audit.jsonl")
    log = TamperEvidentAuditLog(log_path, KEY, fsync=False)
    log.append_event({"event": "authz.decision", "sequence": 1})
    log.append_event({"event": "authz.decision", "sequence": 2})
    key_arg = f"{KEY.key_id}={KEY.public_key_hex}"

    assert main(["verify-audit", log_path, "--key", key_arg]) == 0
    assert "OK (2 records checked)" in capsys.readouterr().out

    keys_file = _write(tmp_path / "keys.json", {"keys": {KEY.key_id: KEY.public_key_hex}})
    assert main(["verify-audit", log_path, "--keys-file", keys_file]) == 0

    assert main(["verify-audit", log_path]) == 2
    assert main(["verify-audit", log_path, "--key", "no-equals-sign"]) == 2

    lines = open(log_path, encoding="utf-8").read().splitlines()
    first = json.loads(lines[0])
    first["event"]["sequence"] = 99
    lines[0] = json.dumps(first)
    with open(log_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")

    capsys.readouterr()
    assert main(["verify-audit", log_path, "--key", key_arg]) == 1
    assert "EVENT_HASH_MISMATCH" in capsys.readouterr().out


def test_ledger_replay(tmp_path, capsys):
    db = str(tmp_path / "authz.db")
    normalizer = ActionNormalizer()
    ledger = DecisionLedger.open(db, circuit=DbCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=60000)))
    for sid in ("s1", "s2"):
        action = normalizer.normalize(dict(CALL, session_id=sid))
        ledger.commit(DecisionArbiter().decide(
            action, "ctx", PolicyVerdict(Verdict.ALLOW, "r", "v1"), AlignmentResult(0.9, AlignmentCategory.ALIGNED)
        ))

    assert main(["ledger", db]) == 0
    rows = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [r["sequence"] for r in rows] == [1, 2]
    assert rows[0]["outcome"] == "ALLOW"

    assert main(["ledger", db, "--session", "s2", "--full"]) == 0
    rows = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert len(rows) == 1
    assert rows[0]["decision"]["session_id"] == "s2"

    assert main(["ledger", str(tmp_path / "nope.db")]) == 2


def test_keygen(capsys):
    assert main(["keygen", "--key-id", "ops-1"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["key_id"] == "ops-1"
    assert len(out["public_key_hex"]) == 64
    assert len(out["private_key_hex"]) == 64


@pytest.mark.parametrize("argv", [["check-policy"], ["bogus"]])
def test_usage_errors_exit_2(argv):
    with pytest.raises(SystemExit) as ei:
        main(argv)
    assert ei.value.code == 2
