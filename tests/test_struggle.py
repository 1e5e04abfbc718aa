"""Tests for struggle signals, risk score and directives."""

import random
from datetime import timedelta

import pytest

from pedagogy_engine.models.chunk_state import Outcome
from pedagogy_engine.models.learner_profile import LearnerProfile
from pedagogy_engine.models.session import DirectiveKind, SessionSignal, Severity, SignalKind
from pedagogy_engine.monitoring.struggle import (
    MESSAGES,
    SignalWindow,
    StruggleMonitor,
    blend_filter_risk,
    decay_filter_risk,
)


@pytest.fixture
def monitor():
    return StruggleMonitor(rng=random.Random(1))


def _window(clock, *kinds: SignalKind, size: int = 10) -> SignalWindow:
    window = SignalWindow(size)
    window.extend(SessionSignal(kind=k, chunk_id=f"c{i}", at=clock.now()) for i, k in enumerate(kinds))
    return window


class TestDetectSignals:
    def test_wrong_and_help(self, monitor, clock):
        signals = monitor.detect_signals(Outcome(correct=False, used_help=True), None, "c1", clock.now())
        assert [s.kind for s in signals] == [SignalKind.WRONG, SignalKind.HELP]

    def test_slow(self, monitor, clock):
        signals = monitor.detect_signals(Outcome(correct=True, latency_ms=5000), 2000, "c1", clock.now())
        assert [s.kind for s in signals] == [SignalKind.SLOW]

    def test_fast_only_when_correct(self, monitor, clock):
        fast = monitor.detect_signals(Outcome(correct=True, latency_ms=500), 2000, "c1", clock.now())
        wrong_fast = monitor.detect_signals(Outcome(correct=False, latency_ms=500), 2000, "c1", clock.now())
        assert [s.kind for s in fast] == [SignalKind.FAST]
        assert [s.kind for s in wrong_fast] == [SignalKind.WRONG]

    def test_no_latency_baseline(self, monitor, clock):
        assert monitor.detect_signals(Outcome(correct=True, latency_ms=100), None, "c1", clock.now()) == []


class TestSignalWindow:
    def test_bounded(self, clock):
        window = _window(clock, *([SignalKind.WRONG] * 12), size=10)
        assert len(window) == 10

    def test_count_last(self, clock):
        window = _window(clock, SignalKind.WRONG, SignalKind.WRONG, SignalKind.HELP, SignalKind.FAST)
        assert window.count(SignalKind.WRONG) == 2
        assert window.count(SignalKind.WRONG, last=2) == 0


class TestRiskScore:
    def test_calm_learner(self, monitor, clock):
        assert monitor.risk_score(LearnerProfile(learner_id="l"), SignalWindow(), clock.now()) == 0.0

    def test_wrong_contribution_capped(self, monitor, clock):
        window = _window(clock, *([SignalKind.WRONG] * 10))
        assert monitor.risk_score(LearnerProfile(learner_id="l"), window, clock.now()) == pytest.approx(0.3)

    def test_all_terms(self, monitor, clock):
        profile = LearnerProfile(
            learner_id="l",
            average_confidence=0.0,
            last_session_at=clock.now() - timedelta(days=30),
        )
        window = _window(clock, *([SignalKind.WRONG] * 5 + [SignalKind.HELP] * 5))
        score = monitor.risk_score(profile, window, clock.now())
        # wrong among last 5 = 0, help 0.5 ratio -> 0.2, confidence 0.3, inactivity 0.1
        assert score == pytest.approx(0.6)

    def test_clamped(self, monitor, clock):
        profile = LearnerProfile(learner_id="l", average_confidence=0.0, last_session_at=clock.now() - timedelta(days=99))
        window = _window(clock, *([SignalKind.HELP, SignalKind.WRONG] * 5))
        assert 0.0 <= monitor.risk_score(profile, window, clock.now()) <= 1.0

    def test_short_gap_ignored(self, monitor, clock):
        profile = LearnerProfile(learner_id="l", last_session_at=clock.now() - timedelta(days=2))
        assert monitor.risk_score(profile, SignalWindow(), clock.now()) == 0.0


class TestRising:
    def test_three_wrong_in_last_five(self, monitor, clock):
        """Three wrong signals are enough."""
        window = _window(clock, SignalKind.FAST, SignalKind.WRONG, SignalKind.WRONG, SignalKind.HELP, SignalKind.WRONG)
        assert monitor.is_rising_now(window)

    def test_help_and_wrong(self, monitor, clock):
        assert monitor.is_rising_now(_window(clock, SignalKind.HELP, SignalKind.WRONG, SignalKind.HELP, SignalKind.WRONG))

    def test_slow_and_wrong(self, monitor, clock):
        assert monitor.is_rising_now(_window(clock, SignalKind.SLOW, SignalKind.WRONG, SignalKind.SLOW, SignalKind.WRONG))

    def test_not_rising(self, monitor, clock):
        assert not monitor.is_rising_now(_window(clock, SignalKind.HELP, SignalKind.WRONG, SignalKind.FAST))


class TestDecide:
    def test_break_above_eighty(self, monitor, clock):
        directive = monitor.decide(0.85, SignalWindow(), 1.5, 2.5)
        assert directive.kind == DirectiveKind.SUGGEST_BREAK
        assert directive.severity == Severity.CRITICAL
        assert directive.message in MESSAGES["suggest_break"]
        assert directive.target_level is None

    def test_simplify_when_rising(self, monitor, clock):
        """Rising window with risk above 0.5 simplifies to the current level."""
        window = _window(clock, SignalKind.WRONG, SignalKind.WRONG, SignalKind.WRONG)
        directive = monitor.decide(0.55, window, 1.5, 2.5)
        assert directive.kind == DirectiveKind.SIMPLIFY
        assert directive.target_level == 1.5
        assert directive.requires_immediate_action

    def test_encourage_when_elevated_but_stable(self, monitor, clock):
        window = _window(clock, SignalKind.HELP, SignalKind.HELP)
        directive = monitor.decide(0.6, window, 1.5, 2.5)
        assert directive.kind == DirectiveKind.ENCOURAGE
        assert directive.message in MESSAGES["help_used"]
        assert directive.target_level is None

    def test_challenge_when_calm_and_fast(self, monitor, clock):
        directive = monitor.decide(0.1, _window(clock, SignalKind.FAST), 1.5, 2.5)
        assert directive.kind == DirectiveKind.CHALLENGE
        assert directive.severity == Severity.SUCCESS
        assert directive.target_level == 3.0

    def test_challenge_capped(self, monitor, clock):
        directive = monitor.decide(0.1, _window(clock, SignalKind.FAST), 4.5, 4.8)
        assert directive.target_level == 5.0

    def test_none_otherwise(self, monitor, clock):
        directive = monitor.decide(0.4, _window(clock, SignalKind.FAST), 1.5, 2.5)
        assert directive.kind == DirectiveKind.NONE
        assert not directive.changes_difficulty

    def test_messages_repeatable_with_seed(self, clock):
        first = StruggleMonitor(rng=random.Random(3)).decide(0.9, SignalWindow(), 1, 2)
        second = StruggleMonitor(rng=random.Random(3)).decide(0.9, SignalWindow(), 1, 2)
        assert first.message == second.message


class TestFilterRiskHelpers:
    def test_blend(self):
        assert blend_filter_risk(0.5, 1.0) == pytest.approx(0.6)

    def test_decay(self):
        assert decay_filter_risk(1.0, 1) == pytest.approx(0.9)
        assert decay_filter_risk(1.0, 30) == pytest.approx(0.9 ** 10)
        assert decay_filter_risk(0.4, 0) == 0.4
