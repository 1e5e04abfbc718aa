"""Struggle monitoring: in-session signals, risk score and adaptation directives.

The risk score is a proxy for frustration/disengagement (the affective
filter). Directives are advisory; the orchestrator decides what to do with them.
"""

import random
from collections import deque
from collections.abc import Iterable
from datetime import datetime

import structlog

from pedagogy_engine.models.chunk_state import Outcome
from pedagogy_engine.models.learner_profile import LearnerProfile
from pedagogy_engine.models.session import (
    AdaptationDirective,
    DirectiveKind,
    SessionSignal,
    Severity,
    SignalKind,
)

logger = structlog.get_logger()

DEFAULT_WINDOW_SIZE = 10
RECENT_SIGNALS = 5

SLOW_LATENCY_FACTOR = 2.0
FAST_LATENCY_FACTOR = 0.5

WRONG_WEIGHT = 0.06
MAX_WRONG_CONTRIBUTION = 0.3
HELP_WEIGHT = 0.5
MAX_HELP_CONTRIBUTION = 0.2
CONFIDENCE_WEIGHT = 0.6
MAX_CONFIDENCE_CONTRIBUTION = 0.3
INACTIVITY_GRACE_DAYS = 3
INACTIVITY_WEIGHT = 0.02
MAX_INACTIVITY_CONTRIBUTION = 0.1

BREAK_THRESHOLD = 0.8
ELEVATED_THRESHOLD = 0.5
CALM_THRESHOLD = 0.3
CHALLENGE_STEP = 0.5

MESSAGES: dict[str, list[str]] = {
    "help_used": [
        "Asking for help is smart!",
        "Great question! That's how we learn.",
        "I'm here to help you understand.",
        "Good thinking to ask!",
    ],
    "struggling": [
        "You're working hard, and it shows!",
        "This one is tricky. Let's break it down together.",
        "You've got this! Take your time.",
        "It's okay to find this challenging. That means you're learning!",
        "Let's take a breath. You can do this!",
    ],
    "suggest_break": [
        "You've been working hard! Let's take a short break and come back fresh.",
        "Great effort today! A quick break might help you recharge.",
        "Your brain needs rest to learn better. Let's pause and come back soon!",
    ],
    "simplify": [
        "Let's try something a bit easier to build confidence.",
        "How about we practice some simpler ones first?",
        "Let's warm up with something familiar, then come back to this.",
    ],
    "challenge": [
        "You're on fire! Ready for something more challenging?",
        "You've mastered this! Let's level up!",
        "This might be too easy for you now. Ready for the next level?",
    ],
}


class SignalWindow:
    """Bounded window of the most recent session signals."""

    def __init__(self, size: int = DEFAULT_WINDOW_SIZE):
        self._signals: deque[SessionSignal] = deque(maxlen=size)

    def __len__(self) -> int:
        return len(self._signals)

    @property
    def signals(self) -> list[SessionSignal]:
        return list(self._signals)

    def extend(self, signals: Iterable[SessionSignal]) -> None:
        self._signals.extend(signals)

    def count(self, kind: SignalKind, last: int | None = None) -> int:
        signals = self.signals if last is None else self.signals[-last:]
        return sum(1 for s in signals if s.kind == kind)


def blend_filter_risk(current: float, session_risk: float) -> float:
    """Fold a session risk into the long-term score (80/20)."""
    return max(0.0, min(1.0, current * 0.8 + session_risk * 0.2))


def decay_filter_risk(risk: float, days_inactive: float) -> float:
    """Risk fades 10% per day of inactivity, at most ten days' worth."""
    return risk * 0.9 ** min(max(days_inactive, 0.0), 10.0)


class StruggleMonitor:
    """Turns outcomes into signals and signals into directives.

    Args:
        rng: Picks encouragement messages; seed it for reproducible output.
    """

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    def detect_signals(
        self,
        outcome: Outcome,
        average_latency_ms: float | None,
        chunk_id: str,
        at: datetime,
    ) -> list[SessionSignal]:
        kinds = []
        if not outcome.correct:
            kinds.append(SignalKind.WRONG)
        if outcome.used_help:
            kinds.append(SignalKind.HELP)
        if outcome.latency_ms is not None and average_latency_ms:
            if outcome.latency_ms > average_latency_ms * SLOW_LATENCY_FACTOR:
                kinds.append(SignalKind.SLOW)
            elif outcome.correct and outcome.latency_ms < average_latency_ms * FAST_LATENCY_FACTOR:
                kinds.append(SignalKind.FAST)
        return [SessionSignal(kind=kind, chunk_id=chunk_id, at=at) for kind in kinds]

    def risk_score(self, profile: LearnerProfile, window: SignalWindow, now: datetime) -> float:
        """Weighted 0-1 risk; each term is capped independently."""
        score = min(MAX_WRONG_CONTRIBUTION, window.count(SignalKind.WRONG, last=RECENT_SIGNALS) * WRONG_WEIGHT)

        if len(window):
            help_ratio = window.count(SignalKind.HELP) / len(window)
            score += min(MAX_HELP_CONTRIBUTION, help_ratio * HELP_WEIGHT)

        if profile.average_confidence < 0.5:
            score += min(MAX_CONFIDENCE_CONTRIBUTION, (0.5 - profile.average_confidence) * CONFIDENCE_WEIGHT)

        if profile.last_session_at is not None:
            days = (now - profile.last_session_at).total_seconds() / 86400
            if days > INACTIVITY_GRACE_DAYS:
                score += min(MAX_INACTIVITY_CONTRIBUTION, (days - INACTIVITY_GRACE_DAYS) * INACTIVITY_WEIGHT)

        return max(0.0, min(1.0, score))

    def is_rising_now(self, window: SignalWindow) -> bool:
        wrong = window.count(SignalKind.WRONG)
        help_count = window.count(SignalKind.HELP)
        slow = window.count(SignalKind.SLOW)
        return wrong >= 3 or (help_count >= 2 and wrong >= 2) or (slow >= 2 and wrong >= 2)

    def _pick(self, category: str) -> str:
        return self.rng.choice(MESSAGES[category])

    def decide(
        self,
        score: float,
        window: SignalWindow,
        current_level: float,
        target_level: float,
    ) -> AdaptationDirective:
        """Map a risk score and the window onto one directive."""
        if score > BREAK_THRESHOLD:
            return AdaptationDirective(
                kind=DirectiveKind.SUGGEST_BREAK,
                message=self._pick("suggest_break"),
                severity=Severity.CRITICAL,
                risk_score=score,
            )

        wrong = window.count(SignalKind.WRONG)
        if self.is_rising_now(window) and score > ELEVATED_THRESHOLD:
            return AdaptationDirective(
                kind=DirectiveKind.SIMPLIFY,
                message=self._pick("struggling" if wrong >= 3 else "simplify"),
                severity=Severity.WARNING,
                target_level=current_level,
                risk_score=score,
            )

        if score > ELEVATED_THRESHOLD:
            category = "help_used" if window.count(SignalKind.HELP) > wrong else "struggling"
            return AdaptationDirective(
                kind=DirectiveKind.ENCOURAGE,
                message=self._pick(category),
                severity=Severity.INFO,
                risk_score=score,
            )

        if score < CALM_THRESHOLD and window.count(SignalKind.FAST):
            return AdaptationDirective(
                kind=DirectiveKind.CHALLENGE,
                message=self._pick("challenge"),
                severity=Severity.SUCCESS,
                target_level=min(5.0, target_level + CHALLENGE_STEP),
                risk_score=score,
            )

        return AdaptationDirective(risk_score=score)
