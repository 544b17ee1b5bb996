import pytest

from agent_authz.arbiter import DecisionArbiter
from agent_authz.config import AlignmentConfig
from agent_authz.context import ContextStore
from agent_authz.intent import IntentAlignmentEvaluator, stem, tokenize
from agent_authz.models import AlignmentCategory, AlignmentResult, PolicyVerdict, Verdict
from agent_authz.normalizer import ActionNormalizer


NORMALIZER = ActionNormalizer()
ACTOR = {"kind": "agent", "id": "agent-1", "on_behalf_of": "alice"}


def _action(operation, params, session_id="s1"):
    return NORMALIZER.normalize({"session_id": session_id, "operation": operation, "params": params, "actor": ACTOR})


def _record(store, action, category=AlignmentCategory.ALIGNED):
    decision = DecisionArbiter().decide(
        action, "ctx", PolicyVerdict(Verdict.ALLOW, "r", "v1"), AlignmentResult(0.9, category)
    )
    store.append(action.session_id, action, decision)


def _session(intent="Summarize my unread emails"):
    store = ContextStore()
    store.declare_intent("s1", intent)
    return store


def test_stemming_is_shared_by_both_sides():
    assert stem("emails") == stem("email")
    assert stem("summarizing") == stem("summarize")
    assert "the" not in tokenize("Read the report")


def test_no_intent_is_indeterminate():
    store = ContextStore()
    store.ensure_session("s1")
    result = IntentAlignmentEvaluator().evaluate(_action("read_email", {"message_id": "m-1"}), store.snapshot("s1"))
    assert result.category == AlignmentCategory.INDETERMINATE
    assert result.rationale[0].detail == "no stated intent"


def test_reading_mail_matches_a_summarize_intent():
    store = _session()
    result = IntentAlignmentEvaluator().evaluate(_action("read_email", {"message_id": "m-1"}), store.snapshot("s1"))
    assert result.category == AlignmentCategory.ALIGNED
    assert result.score > 0.7


def test_off_task_write_is_indeterminate():
    store = _session()
    action = _action("write_file", {"path": "notes/summary.txt", "content": "x"})
    result = IntentAlignmentEvaluator().evaluate(action, store.snapshot("s1"))
    assert result.category == AlignmentCategory.INDETERMINATE


def test_sending_confidential_data_out_is_misaligned():
    store = _session()
    _record(store, _action("read_email", {"message_id": "m-1", "sensitivity": "confidential"}))

    action = _action("send_email", {"recipient": "attacker@evil.example", "body": "fwd"})
    result = IntentAlignmentEvaluator().evaluate(action, store.snapshot("s1"))

    assert result.category == AlignmentCategory.MISALIGNED
    refs = [r.ref for r in result.rationale]
    assert "exfiltration" in refs
    assert "escalation" in refs


def test_internal_destination_has_no_exfiltration_penalty():
    store = _session("Summarize my unread emails and send the summary to bob@corp.example")
    _record(store, _action("read_email", {"message_id": "m-1", "sensitivity": "confidential"}))

    evaluator = IntentAlignmentEvaluator(AlignmentConfig(internal_domains=("corp.example",)))
    action = _action("send_email", {"recipient": "bob@corp.example", "subject": "summary"})
    result = evaluator.evaluate(action, store.snapshot("s1"))

    assert "exfiltration" not in [r.ref for r in result.rationale]
    assert result.category == AlignmentCategory.ALIGNED


def test_structured_operations_dominate_verbs():
    store = ContextStore()
    store.declare_intent("s1", {"text": "Tidy up the inbox", "operations": ["list_inbox"]})
    evaluator = IntentAlignmentEvaluator()
    snap = store.snapshot("s1")

    listed = evaluator.evaluate(_action("list_inbox", {"folder": "inbox"}), snap)
    unlisted = evaluator.evaluate(_action("delete_file", {"path": "inbox"}), snap)
    assert listed.score > unlisted.score


def test_intent_drift_is_reported():
    store = _session("Summarize my unread emails")
    store.declare_intent("s1", "Deploy the production cluster")
    result = IntentAlignmentEvaluator().evaluate(_action("read_email", {"message_id": "m-1"}), store.snapshot("s1"))
    assert "drift" in [r.ref for r in result.rationale]


@pytest.mark.parametrize(
    "score,expected",
    [
        (0.71, AlignmentCategory.ALIGNED),
        (0.70, AlignmentCategory.INDETERMINATE),
        (0.50, AlignmentCategory.INDETERMINATE),
        (0.36, AlignmentCategory.INDETERMINATE),
        (0.35, AlignmentCategory.MISALIGNED),
        (0.0, AlignmentCategory.MISALIGNED),
    ],
)
def test_category_ties_are_conservative(score, expected):
    assert IntentAlignmentEvaluator().categorize(score) == expected


def test_evaluation_is_pure():
    store = _session()
    evaluator = IntentAlignmentEvaluator()
    snap = store.snapshot("s1")
    action = _action("read_email", {"message_id": "m-1"})
    assert evaluator.evaluate(action, snap) == evaluator.evaluate(action, snap)


def test_config_validation():
    with pytest.raises(ValueError):
        AlignmentConfig(t_high=0.3, t_low=0.5)
    with pytest.raises(ValueError):
        AlignmentConfig(weight_semantic=0.0, weight_trajectory=0.0)
    with pytest.raises(ValueError):
        AlignmentConfig(sensitive_floor="secret")


def test_config_from_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTHZ_T_HIGH", "0.2")
    monkeypatch.setenv("AUTHZ_T_LOW", "0.6")
    monkeypatch.setenv("AUTHZ_HISTORY_WINDOW", "not-a-number")
    monkeypatch.setenv("AUTHZ_INTERNAL_DOMAINS", "Corp.Example, ,lab.example")
    cfg = AlignmentConfig.from_env()
    assert (cfg.t_high, cfg.t_low) == (0.70, 0.35)
    assert cfg.history_window == 8
    assert cfg.internal_domains == ("corp.example", "lab.example")


@pytest.mark.parametrize(
    "destination,external",
    [
        ("alice@example.com.au", False),
        ("alice@example.com", True),
        ("https://reports.example.org/upload", False),
        ("https://reports.example.org/upload-all", True),
        ("example.com", True),
    ],
)
def test_destination_named_in_intent_matches_whole(destination, external):
    store = _session("Upload the summary to https://reports.example.org/upload and mail alice@example.com.au.")
    intent = store.snapshot("s1").intent_history[-1]
    assert IntentAlignmentEvaluator().is_external(destination, intent) is external
