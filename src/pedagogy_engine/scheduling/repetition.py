"""Spaced-repetition scheduling.

State machine: new -> learning -> acquired <-> fragile.

    new       correct, no help   -> learning  interval 1      ease 2.5
    new       wrong or help      -> learning  interval 0.5    ease 2.3
    learning  correct, no help   -> acquired  prev x 2.5      ease unchanged
    learning  correct, help      -> learning  interval 1.5    ease - 0.2
    learning  wrong              -> learning  interval 0.5    ease - 0.2
    acquired/ correct, no help   -> acquired  prev x ease     ease + 0.1  (max 180, always grows)
    fragile   correct, help      -> acquired  prev x ease     ease - 0.1  (min 7)
              wrong              -> fragile   interval 1      ease - 0.3

Ease is clamped to [1.3, 3.0]. "round" is round-half-up.
"""

import math
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import TypeVar

import structlog

from pedagogy_engine.clock import Clock, SystemClock
from pedagogy_engine.models.chunk_state import (
    DEFAULT_EASE_FACTOR,
    ChunkStatus,
    LearnerChunkState,
    Outcome,
    chunk_confidence,
    clamp_ease,
)
from pedagogy_engine.storage.base import Store
from pedagogy_engine.storage.retry import call_store

logger = structlog.get_logger()

T = TypeVar("T")

MAX_INTERVAL_DAYS = 180
MIN_ASSISTED_INTERVAL_DAYS = 7
FIRST_MISS_EASE = 2.3
GRADUATION_MULTIPLIER = 2.5

TOPIC_HEALTH_WEIGHTS = {
    ChunkStatus.ACQUIRED: 100,
    ChunkStatus.LEARNING: 70,
    ChunkStatus.NEW: 50,
    ChunkStatus.FRAGILE: 30,
}


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _transition(status: ChunkStatus, ease: float, interval: float, outcome: Outcome) -> tuple[ChunkStatus, float, float]:
    clean = outcome.correct and not outcome.used_help

    if status == ChunkStatus.NEW:
        if clean:
            return ChunkStatus.LEARNING, DEFAULT_EASE_FACTOR, 1.0
        return ChunkStatus.LEARNING, FIRST_MISS_EASE, 0.5

    if status == ChunkStatus.LEARNING:
        if clean:
            graduated = max(1, round_half_up(interval * GRADUATION_MULTIPLIER))
            return ChunkStatus.ACQUIRED, ease, float(graduated)
        if outcome.correct:
            return ChunkStatus.LEARNING, clamp_ease(ease - 0.2), 1.5
        return ChunkStatus.LEARNING, clamp_ease(ease - 0.2), 0.5

    # acquired / fragile
    if clean:
        ease = clamp_ease(ease + 0.1)
        grown = max(interval + 1, round_half_up(interval * ease))
        return ChunkStatus.ACQUIRED, ease, float(min(MAX_INTERVAL_DAYS, grown))
    if outcome.correct:
        ease = clamp_ease(ease - 0.1)
        assisted = max(MIN_ASSISTED_INTERVAL_DAYS, round_half_up(interval * ease))
        return ChunkStatus.ACQUIRED, ease, float(min(MAX_INTERVAL_DAYS, assisted))
    return ChunkStatus.FRAGILE, clamp_ease(ease - 0.3), 1.0


def advance(state: LearnerChunkState, outcome: Outcome, now: datetime) -> LearnerChunkState:
    """Apply one outcome to a chunk state and return the new version.

    Updates status, ease, interval, next review and all encounter counters.
    """
    status, ease, interval = _transition(state.status, state.ease_factor, state.interval_days, outcome)

    total = state.total_encounters + 1
    correct_first_try = state.correct_first_try + (1 if outcome.correct and not outcome.used_help else 0)
    help_used = state.help_used_count + (1 if outcome.used_help else 0)

    return LearnerChunkState(
        learner_id=state.learner_id,
        chunk_id=state.chunk_id,
        status=status,
        ease_factor=ease,
        interval_days=interval,
        next_review_at=now + timedelta(days=interval),
        repetition_count=state.repetition_count + 1 if outcome.correct else 0,
        total_encounters=total,
        correct_first_try=correct_first_try,
        wrong_attempts=state.wrong_attempts + (0 if outcome.correct else 1),
        help_used_count=help_used,
        confidence_score=chunk_confidence(correct_first_try, total, help_used),
        first_seen_at=state.first_seen_at,
        last_seen_at=now,
    )


def new_state(learner_id: str, chunk_id: str, now: datetime) -> LearnerChunkState:
    """State for a first encounter."""
    return LearnerChunkState(
        learner_id=learner_id,
        chunk_id=chunk_id,
        next_review_at=now,
        first_seen_at=now,
        last_seen_at=now,
    )


def due_order(states: Iterable[LearnerChunkState], now: datetime) -> list[LearnerChunkState]:
    """Due records: fragile first, then soonest due, then chunk id."""
    due = [s for s in states if s.is_due(now)]
    return sorted(due, key=lambda s: (s.status != ChunkStatus.FRAGILE, s.next_review_at, s.chunk_id))


def topic_health(states: Iterable[LearnerChunkState]) -> int:
    """0-100 health for a set of chunk states; 50 when there is no data."""
    weights = [TOPIC_HEALTH_WEIGHTS[s.status] for s in states]
    if not weights:
        return 50
    return round_half_up(sum(weights) / len(weights))


class RepetitionScheduler:
    """Reads and writes chunk states through the store.

    Args:
        store: Backing store.
        clock: Default source of ``now``.
        store_timeout: Seconds allowed per store call.
        retry_backoff: Seconds to wait before retrying a failed store call.
    """

    def __init__(
        self,
        store: Store,
        clock: Clock | None = None,
        store_timeout: float = 2.0,
        retry_backoff: float = 0.2,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.store_timeout = store_timeout
        self.retry_backoff = retry_backoff

    async def _call(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        return await call_store(operation, timeout=self.store_timeout, backoff=self.retry_backoff, name=name)

    async def load_state(self, learner_id: str, chunk_id: str) -> LearnerChunkState | None:
        return await self._call(lambda: self.store.get_state(learner_id, chunk_id), "get_state")

    async def save_state(self, state: LearnerChunkState) -> None:
        await self._call(lambda: self.store.save_state(state), "save_state")

    def apply(
        self,
        previous: LearnerChunkState | None,
        learner_id: str,
        chunk_id: str,
        outcome: Outcome,
        now: datetime,
    ) -> LearnerChunkState:
        """Advance ``previous`` (or a fresh state on first encounter) without saving."""
        state = previous or new_state(learner_id, chunk_id, now)
        return advance(state, outcome, now)

    async def list_states(
        self, learner_id: str, statuses: set[ChunkStatus] | None = None
    ) -> list[LearnerChunkState]:
        return await self._call(lambda: self.store.list_states(learner_id, statuses), "list_states")

    async def get_due(self, learner_id: str, now: datetime | None = None) -> list[LearnerChunkState]:
        """Records due for review at ``now`` plus every fragile record."""
        now = now or self.clock.now()
        states = await self.list_states(
            learner_id, {ChunkStatus.LEARNING, ChunkStatus.ACQUIRED, ChunkStatus.FRAGILE}
        )
        return due_order(states, now)

    async def due_count(self, learner_id: str, now: datetime | None = None) -> int:
        return len(await self.get_due(learner_id, now))

    async def decay(self, learner_id: str, now: datetime | None = None) -> list[LearnerChunkState]:
        """Mark lapsed acquired records fragile. Ease and interval are untouched.

        Idempotent for a given ``now``. Returns the records that changed.
        """
        now = now or self.clock.now()
        decayed = []
        for state in await self.list_states(learner_id, {ChunkStatus.ACQUIRED}):
            if state.next_review_at > now:
                continue
            fragile = state.model_copy(update={"status": ChunkStatus.FRAGILE})
            await self.save_state(fragile)
            decayed.append(fragile)
        if decayed:
            logger.info("chunk_states_decayed", learner_id=learner_id, count=len(decayed))
        return decayed
