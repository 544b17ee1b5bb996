"""Intent Alignment Evaluator.

Scores how consistent an Action is with what the session's user asked for.
The score is a weighted blend of two components minus a penalty:

semantic
    Verb classes found in the stated intent (read / write / delete / send /
    execute) compared with the action's effect, plus the share of the
    action's parameter-value tokens that also appear in the intent text.
    Structured intent `operations`, when declared, replace the verb match.

trajectory
    How well the recent history fits the current intent, lowered by recent
    denials, by an escalation to a more severe effect the intent never asked
    for, and by drift between the first and the latest intent declaration.

exfiltration
    An outbound action to an external destination after the session touched
    data at or above the configured sensitivity floor. The penalty is scaled
    by the most sensitive level touched.

Category thresholds come from AlignmentConfig. Ties are conservative:
ALIGNED needs score > t_high, and score <= t_low is MISALIGNED.
"""

from __future__ import annotations

import logging
import re
from typing import FrozenSet, Iterable, List, Optional, Set
from urllib.parse import urlparse

from .config import AlignmentConfig
from .context import SessionContextSnapshot, StatedIntent, max_sensitivity
from .models import SENSITIVITY_RANK, Action, AlignmentCategory, AlignmentResult, Effect, Outcome, RationaleEntry

logger = logging.getLogger("agent_authz.intent")

_TOKEN = re.compile(r"[a-z0-9]+")
_NAMED_DESTINATION = re.compile(r"[a-z0-9][a-z0-9._%+\-]*@[a-z0-9\-]+(?:\.[a-z0-9\-]+)+|https?://[^\s\"'<>]+")
_VOWELS = set("aeiou")

_STOPWORDS = frozenset({
    "a", "all", "an", "and", "any", "are", "as", "at", "be", "by", "com", "every", "for", "from", "i", "in",
    "is", "it", "me", "my", "of", "on", "or", "our", "please", "that", "the", "these", "this", "those",
    "to", "up", "us", "we", "with", "you", "your",
})

# Effect severity used for escalation detection.
_SEVERITY = {Effect.READ: 0, Effect.WRITE: 1, Effect.SEND: 2, Effect.DELETE: 2, Effect.EXECUTE: 3}

# Sensitivity scaling for the exfiltration penalty.
_EXFIL_SCALE = {"public": 0.0, "internal": 0.25, "confidential": 0.75, "restricted": 1.0}

# Parameters whose values are metadata rather than task objects.
_IGNORED_PARAMS = frozenset({"sensitivity", "method"})


def stem(word: str) -> str:
    """Light suffix stripping; applied to both intent and parameter tokens."""
    w = word.lower()
    if len(w) > 5 and w.endswith("ing"):
        w = w[:-3]
    elif len(w) > 4 and w.endswith("ed"):
        w = w[:-2]
    elif len(w) > 3 and w.endswith("s") and not w.endswith("ss"):
        w = w[:-1]
    if len(w) > 3 and w.endswith("e"):
        w = w[:-1]
    if len(w) >= 3 and w[-1] == w[-2] and w[-1] not in _VOWELS and w[-1] != "s":
        w = w[:-1]
    return w


def tokenize(text: str) -> List[str]:
    out = []
    for tok in _TOKEN.findall((text or "").lower()):
        if len(tok) <= 1 or tok.isdigit() or tok in _STOPWORDS:
            continue
        out.append(stem(tok))
    return out


def _stems(words: Iterable[str]) -> FrozenSet[str]:
    return frozenset(stem(w) for w in words)


VERB_LEXICON = {
    Effect.READ: _stems((
        "read", "summarize", "summarise", "summary", "list", "view", "show", "check", "review", "find",
        "search", "get", "fetch", "look", "open", "inspect", "report", "count", "analyze", "analyse",
        "browse", "query", "scan", "retrieve", "download", "see", "triage", "audit",
    )),
    Effect.WRITE: _stems((
        "write", "update", "edit", "modify", "change", "create", "add", "save", "set", "rename", "move",
        "append", "insert", "fix", "draft", "label", "mark", "archive",
    )),
    Effect.DELETE: _stems((
        "delete", "remove", "drop", "purge", "erase", "clean", "clear", "wipe", "destroy", "truncate",
        "prune", "unlink",
    )),
    Effect.SEND: _stems((
        "send", "forward", "reply", "share", "post", "upload", "notify",
        "publish", "submit", "respond",
    )),
    Effect.EXECUTE: _stems((
        "run", "execute", "exec", "deploy", "install", "build", "launch", "start", "restart", "invoke",
        "compile",
    )),
}


def intent_verbs(intent: StatedIntent) -> Set[Effect]:
    tokens = set(tokenize(intent.text))
    return {effect for effect, words in VERB_LEXICON.items() if tokens & words}


def _jaccard(a: Set[str], b: Set[str]) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / float(len(a | b))


def named_destinations(text: str) -> FrozenSet[str]:
    """Email addresses and URLs written out in full in an intent text."""
    return frozenset(m.group(0).rstrip(".,;:!?)]}").rstrip("/") for m in _NAMED_DESTINATION.finditer(text.lower()))


def _host_of(destination: str) -> str:
    d = destination.strip().lower()
    if "://" in d:
        return (urlparse(d).hostname or "").lower()
    if "@" in d:
        return d.rsplit("@", 1)[1]
    return d


class IntentAlignmentEvaluator:
    """Pure function of (action, snapshot, config)."""

    def __init__(self, config: Optional[AlignmentConfig] = None):
        self.config = config or AlignmentConfig()

    def evaluate(self, action: Action, snapshot: SessionContextSnapshot) -> AlignmentResult:
        cfg = self.config
        intent = snapshot.stated_intent
        if intent is None:
            return AlignmentResult(
                score=0.5,
                category=AlignmentCategory.INDETERMINATE,
                rationale=(RationaleEntry("intent", "no_intent", "no stated intent"),),
            )

        rationale: List[RationaleEntry] = []
        verbs = intent_verbs(intent)
        intent_tokens = set(tokenize(intent.text))

        semantic = self._semantic(action, intent, verbs, intent_tokens, rationale)
        trajectory = self._trajectory(action, snapshot, intent, verbs, rationale)
        penalty = self._exfiltration_penalty(action, snapshot, intent)
        if penalty > 0:
            rationale.append(RationaleEntry(
                "intent",
                "exfiltration",
                f"external destination {_host_of(action.destination or '')} after accessing sensitive data",
                round(penalty, 6),
            ))

        ws, wt = cfg.weight_semantic, cfg.weight_trajectory
        blended = (ws * semantic + wt * trajectory) / (ws + wt)
        score = round(max(0.0, min(1.0, blended - penalty)), 6)
        category = self.categorize(score)
        rationale.append(RationaleEntry("intent", "score", category.value, score))
        logger.debug("Alignment %s for %s: %.3f (%s)", action.session_id, action.action_id, score, category.value)
        return AlignmentResult(score=score, category=category, rationale=tuple(rationale))

    def categorize(self, score: float) -> AlignmentCategory:
        if score > self.config.t_high:
            return AlignmentCategory.ALIGNED
        if score <= self.config.t_low:
            return AlignmentCategory.MISALIGNED
        return AlignmentCategory.INDETERMINATE

    # ------------------------------------------------------------------

    def verb_score(self, action: Action, intent: StatedIntent, verbs: Set[Effect]) -> float:
        if intent.tools and action.tool_identity not in intent.tools:
            return 0.0
        if intent.operations:
            return 1.0 if action.operation in intent.operations else 0.0
        if not verbs:
            return 0.5
        if action.effect in verbs:
            return 1.0
        if action.effect == Effect.READ and verbs & {Effect.WRITE, Effect.DELETE}:
            return 0.5
        return 0.0

    def _semantic(
        self,
        action: Action,
        intent: StatedIntent,
        verbs: Set[Effect],
        intent_tokens: Set[str],
        rationale: List[RationaleEntry],
    ) -> float:
        vscore = self.verb_score(action, intent, verbs)
        if action.resource and action.resource in intent.resources:
            coverage = 1.0
        else:
            tokens = set(self._param_tokens(action))
            coverage = 0.5 if not tokens else len(tokens & intent_tokens) / float(len(tokens))
        semantic = 0.6 * vscore + 0.4 * coverage
        rationale.append(RationaleEntry(
            "intent",
            "semantic",
            f"effect={action.effect.value} verbs={','.join(sorted(v.value for v in verbs)) or '-'} coverage={coverage:.2f}",
            round(semantic, 6),
        ))
        return semantic

    @staticmethod
    def _param_tokens(action: Action) -> List[str]:
        out: List[str] = []
        for key, value in sorted(action.params_dict().items()):
            if key in _IGNORED_PARAMS:
                continue
            if isinstance(value, str):
                out.extend(tokenize(value))
            elif isinstance(value, list):
                for v in value:
                    if isinstance(v, str):
                        out.extend(tokenize(v))
        return out

    def _trajectory(
        self,
        action: Action,
        snapshot: SessionContextSnapshot,
        intent: StatedIntent,
        verbs: Set[Effect],
        rationale: List[RationaleEntry],
    ) -> float:
        window = snapshot.action_history[-self.config.history_window:]
        if not window:
            trajectory = 1.0
        else:
            consistency = sum(self.verb_score(e.action, intent, verbs) for e in window) / len(window)
            denials = sum(1 for e in window if e.decision.final_outcome == Outcome.DENY)
            trajectory = consistency - 0.5 * (denials / float(len(window)))
            prior_max = max(_SEVERITY[e.action.effect] for e in window)
            on_task = action.effect in verbs or action.operation in intent.operations
            if not on_task and _SEVERITY[action.effect] > prior_max:
                trajectory -= 0.3
                rationale.append(RationaleEntry(
                    "intent", "escalation", f"first {action.effect.value} not requested by the intent", -0.3
                ))

        if len(snapshot.intent_history) >= 2:
            first = set(tokenize(snapshot.intent_history[0].text))
            latest = set(tokenize(intent.text))
            overlap = _jaccard(first, latest)
            if overlap < 0.2:
                trajectory -= 0.2
                rationale.append(RationaleEntry("intent", "drift", "intent drift across declarations", round(overlap, 6)))

        trajectory = max(0.0, min(1.0, trajectory))
        rationale.append(RationaleEntry("intent", "trajectory", f"window={len(window)}", round(trajectory, 6)))
        return trajectory

    def is_external(self, destination: str, intent: Optional[StatedIntent]) -> bool:
        dest = destination.strip().lower()
        host = _host_of(dest)
        for domain in self.config.internal_domains:
            if host == domain or host.endswith("." + domain):
                return False
        if intent is not None:
            if dest in intent.recipients or host in intent.recipients:
                return False
            if dest and dest.rstrip("/") in named_destinations(intent.text):
                return False
        return True

    def _exfiltration_penalty(self, action: Action, snapshot: SessionContextSnapshot, intent: StatedIntent) -> float:
        if not action.destination or not self.is_external(action.destination, intent):
            return 0.0
        levels: List[str] = [r.sensitivity for r in snapshot.data_accessed]
        levels.append(action.sensitivity)
        top = max_sensitivity(levels)
        if top is None or SENSITIVITY_RANK[top] < SENSITIVITY_RANK[self.config.sensitive_floor]:
            return 0.0
        return self.config.exfiltration_penalty * _EXFIL_SCALE.get(top, 1.0)

