"""Session orchestration: the engine's public entry points.

Every operation for one learner runs under that learner's asyncio.Lock, so
outcome reports are applied one at a time. Profile changes are recorded as
replayable operations: when the store reports a version conflict the latest
profile is reloaded and the operations are replayed on top of it.
"""

import asyncio
import math
import random
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from typing import TypeVar

import structlog

from pedagogy_engine.calibration.difficulty import (
    DifficultyCalibrator,
    WindowStats,
    difficulty_range,
    level_to_cefr_label,
)
from pedagogy_engine.clock import Clock, SystemClock
from pedagogy_engine.config import Settings, get_settings
from pedagogy_engine.content.generator import ContentGenerator
from pedagogy_engine.content.repository import ContentRepository
from pedagogy_engine.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    RepositoryUnavailableError,
    StoreError,
)
from pedagogy_engine.models.chunk import ContentChunk, GenerationSpec
from pedagogy_engine.models.chunk_state import ChunkStatus, LearnerChunkState, Outcome
from pedagogy_engine.models.learner_profile import ChunkCounts, LearnerProfile
from pedagogy_engine.models.session import (
    ACTIVITY_ORDER,
    ActivityRecommendation,
    ActivityType,
    AdaptationDirective,
    SessionPlan,
    SessionSignal,
    SessionStats,
    SessionSummary,
    SignalKind,
)
from pedagogy_engine.monitoring.struggle import (
    SignalWindow,
    StruggleMonitor,
    blend_filter_risk,
    decay_filter_risk,
)
from pedagogy_engine.scheduling.repetition import RepetitionScheduler, topic_health
from pedagogy_engine.storage.base import Store
from pedagogy_engine.storage.retry import call_store

logger = structlog.get_logger()

T = TypeVar("T")
ProfileOp = Callable[[LearnerProfile], None]

MAX_CONFLICT_RETRIES = 3
ADAPT_EVERY = 5
PROFILE_EMA_WEIGHT = 0.1
HELPED_CONFIDENCE = 0.7
MAX_RECOMMENDED_ACTIVITIES = 4
CHUNKS_PER_ACTIVITY = 2
FATIGUE_MIN_ACTIVITIES = 10
FATIGUE_WRONG_RATE = 0.5
MAX_WRONG_SIGNALS = 5


def _ema(current: float, value: float) -> float:
    return current * (1 - PROFILE_EMA_WEIGHT) + value * PROFILE_EMA_WEIGHT


# Profile operations. Each one is applied to the working copy immediately and
# replayed onto a fresh copy if the save conflicts.


def _apply_outcome(
    profile: LearnerProfile,
    outcome: Outcome,
    old_status: ChunkStatus | None,
    new_status: ChunkStatus,
    at: datetime,
) -> None:
    if outcome.correct:
        value = HELPED_CONFIDENCE if outcome.used_help else 1.0
    else:
        value = 0.0
    profile.record_confidence(_ema(profile.average_confidence, value), at)
    profile.wrong_answer_rate = _ema(profile.wrong_answer_rate, 0.0 if outcome.correct else 1.0)
    profile.help_request_rate = _ema(profile.help_request_rate, 1.0 if outcome.used_help else 0.0)
    if old_status != new_status:
        profile.chunk_counts.apply_transition(old_status, new_status)
    profile.record_level_snapshot(at)
    profile.updated_at = at


def _apply_session_risk(profile: LearnerProfile, session_risk: float, rising: bool, at: datetime) -> None:
    profile.filter_risk_score = blend_filter_risk(profile.filter_risk_score, session_risk)
    if rising:
        profile.last_struggle_at = at


def _apply_inactivity_decay(profile: LearnerProfile, at: datetime) -> None:
    days = (at - profile.updated_at).total_seconds() / 86400
    if days > 0:
        profile.filter_risk_score = decay_filter_risk(profile.filter_risk_score, days)
        profile.updated_at = at


def _apply_session_end(profile: LearnerProfile, stats: SessionStats, counts: ChunkCounts, at: datetime) -> None:
    if profile.has_recorded_session(stats.session_id):
        return
    profile.total_sessions += 1
    profile.total_minutes += stats.duration_minutes
    profile.last_session_at = at
    profile.chunk_counts = counts.model_copy()
    profile.mark_session_recorded(stats.session_id)
    profile.record_level_snapshot(at)
    profile.updated_at = at


def _apply_decay(profile: LearnerProfile, decayed: int) -> None:
    for _ in range(decayed):
        profile.chunk_counts.apply_transition(ChunkStatus.ACQUIRED, ChunkStatus.FRAGILE)


def _apply_explicit_interests(profile: LearnerProfile, interests: list[str], at: datetime) -> None:
    profile.add_explicit_interests(interests)
    profile.updated_at = at


def _apply_detected_interest(profile: LearnerProfile, topic: str, strength: float, at: datetime) -> None:
    profile.record_detected_interest(topic, strength, at)
    profile.updated_at = at


def _apply_flush_mark(profile: LearnerProfile, token: str) -> None:
    profile.mark_flush_applied(token)


def _count_statuses(states: Iterable[LearnerChunkState]) -> ChunkCounts:
    counts = ChunkCounts()
    for state in states:
        counts.total += 1
        if state.status != ChunkStatus.NEW:
            setattr(counts, state.status.value, getattr(counts, state.status.value) + 1)
    return counts


def session_tips(accuracy: float, duration_minutes: float, struggling: int, activities: int) -> list[str]:
    """Short encouragement lines for the end-of-session summary."""
    tips = []
    if activities:
        if accuracy >= 0.9:
            tips.append("Excellent work! You're really getting the hang of this.")
        elif accuracy >= 0.7:
            tips.append("Good progress! Keep practicing to solidify what you learned.")
        elif accuracy >= 0.5:
            tips.append("You're learning! Reviewing these chunks again will help them stick.")
        else:
            tips.append("This topic is challenging. Don't give up, practice makes progress!")
    if duration_minutes < 5:
        tips.append("A bit longer next time will help reinforce your learning.")
    elif duration_minutes > 20:
        tips.append("Great dedication! Remember, shorter sessions more often can be more effective.")
    if struggling > 2:
        tips.append(f"Focus on the {struggling} chunks that were tricky. They'll click with practice.")
    return tips


class ActiveSession:
    """In-memory state of the learner's current session."""

    def __init__(
        self,
        plan: SessionPlan,
        started_at: datetime,
        duration_minutes: float,
        window_size: int,
        confidence_at_start: float = 0.5,
    ):
        self.plan = plan
        self.started_at = started_at
        self.duration_minutes = duration_minutes
        self.confidence_at_start = confidence_at_start
        self.current_level = plan.current_level
        self.target_level = plan.target_difficulty
        self.window = SignalWindow(window_size)
        self.outcomes: list[Outcome] = []
        self.touched: list[str] = []
        self.chunk_results: dict[str, list[int]] = {}  # chunk_id -> [correct, total]
        self.wrong_signals = 0
        self.outcomes_since_adapt = 0
        self._latencies: list[int] = []

    @property
    def session_id(self) -> str:
        return self.plan.session_id

    @property
    def average_latency_ms(self) -> float | None:
        if not self._latencies:
            return None
        return sum(self._latencies) / len(self._latencies)

    @property
    def wrong_streak(self) -> int:
        streak = 0
        for outcome in reversed(self.outcomes):
            if outcome.correct:
                break
            streak += 1
        return streak

    @property
    def correct_first_try(self) -> int:
        return sum(1 for o in self.outcomes if o.correct and not o.used_help)

    def record(self, chunk_id: str, outcome: Outcome, signals: list[SessionSignal]) -> None:
        self.outcomes.append(outcome)
        if chunk_id not in self.touched:
            self.touched.append(chunk_id)
        result = self.chunk_results.setdefault(chunk_id, [0, 0])
        result[0] += 1 if outcome.correct else 0
        result[1] += 1
        if outcome.latency_ms is not None:
            self._latencies.append(outcome.latency_ms)
        self.window.extend(signals)
        self.wrong_signals += sum(1 for s in signals if s.kind == SignalKind.WRONG)

    def untouched(self, chunks: list[ContentChunk]) -> list[ContentChunk]:
        return [c for c in chunks if c.id not in self.touched]

    def struggling_chunks(self) -> list[str]:
        """Chunks answered correctly less than half the time."""
        return [cid for cid, (correct, total) in self.chunk_results.items() if correct / total < 0.5]

    def mastered_chunks(self) -> list[str]:
        """Chunks answered correctly every time, at least twice."""
        return [cid for cid, (correct, total) in self.chunk_results.items() if correct == total and total >= 2]


class _LearnerContext:
    """Per-learner lock plus the write-behind state guarded by it."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0  # callers holding or waiting for the lock
        self.base: LearnerProfile | None = None  # last copy read from or written to the store
        self.profile: LearnerProfile | None = None  # base + pending ops
        self.pending_ops: list[ProfileOp] = []
        # flush token -> number of leading pending ops that flush carried
        self.flush_marks: dict[str, int] = {}
        self.pending_states: dict[str, LearnerChunkState] = {}
        self.session: ActiveSession | None = None

    def apply(self, op: ProfileOp) -> None:
        op(self.profile)
        self.pending_ops.append(op)

    def mark_flush(self, token: str) -> None:
        self.apply(partial(_apply_flush_mark, token=token))
        self.flush_marks[token] = len(self.pending_ops)

    def rebase(self, base: LearnerProfile) -> None:
        """Replay pending ops onto ``base``, skipping those a stored flush already carried."""
        committed = max(
            (count for token, count in self.flush_marks.items() if base.has_applied_flush(token)),
            default=0,
        )
        if committed:
            del self.pending_ops[:committed]
            self.flush_marks = {t: n - committed for t, n in self.flush_marks.items() if n > committed}
        self.base = base
        self.profile = base.model_copy(deep=True)
        for op in self.pending_ops:
            op(self.profile)

    def settle(self, saved: LearnerProfile) -> None:
        self.pending_ops.clear()
        self.flush_marks.clear()
        self.rebase(saved)

    @property
    def dirty(self) -> bool:
        return bool(self.pending_ops or self.pending_states) or (self.base is not None and self.base.version == 0)

    @property
    def idle(self) -> bool:
        return self.users == 0 and self.session is None and not self.dirty


class PedagogyEngine:
    """Adaptive learning engine for many learners.

    Args:
        store: Persistence for profiles, chunks and chunk states.
        generator: Optional source of new chunks when the repository runs short.
        clock: Source of ``now``.
        settings: Tunables; defaults to ``get_settings()``.
        rng: Picks encouragement messages and topics for sessions started without one.
    """

    def __init__(
        self,
        store: Store,
        generator: ContentGenerator | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.generator = generator
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.repository = ContentRepository(
            store,
            clock=self.clock,
            store_timeout=self.settings.store_timeout_seconds,
            retry_backoff=self.settings.write_retry_backoff_seconds,
        )
        self.scheduler = RepetitionScheduler(
            store,
            clock=self.clock,
            store_timeout=self.settings.store_timeout_seconds,
            retry_backoff=self.settings.write_retry_backoff_seconds,
        )
        self.rng = rng or random.Random()
        self.calibrator = DifficultyCalibrator(self.repository, self.scheduler)
        self.monitor = StruggleMonitor(rng=self.rng)
        self._learners: dict[str, _LearnerContext] = {}

    # Internals

    @asynccontextmanager
    async def _locked(self, learner_id: str) -> AsyncIterator[_LearnerContext]:
        """Hold the learner's lock; drop the context afterwards if nothing is left in it."""
        ctx = self._learners.setdefault(learner_id, _LearnerContext())
        ctx.users += 1
        try:
            async with ctx.lock:
                yield ctx
        finally:
            ctx.users -= 1
            if ctx.idle and self._learners.get(learner_id) is ctx:
                del self._learners[learner_id]

    async def _store_call(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        return await call_store(
            operation,
            timeout=self.settings.store_timeout_seconds,
            backoff=self.settings.write_retry_backoff_seconds,
            name=name,
        )

    def _default_profile(self, learner_id: str, now: datetime) -> LearnerProfile:
        return LearnerProfile(
            learner_id=learner_id,
            target_language=self.settings.default_language,
            native_language=self.settings.default_native_language,
            age_band=self.settings.default_age_band,
            created_at=now,
            updated_at=now,
        )

    def _select_topic(self, profile: LearnerProfile) -> str:
        interests = profile.combined_interests()
        if not interests:
            return self.settings.default_topic
        return self.rng.choice(interests)

    async def _read_profile(self, learner_id: str, now: datetime) -> LearnerProfile:
        try:
            return await self._store_call(lambda: self.store.load_profile(learner_id), "load_profile")
        except NotFoundError:
            logger.info("learner_profile_created", learner_id=learner_id)
            return self._default_profile(learner_id, now)

    async def _refresh(self, ctx: _LearnerContext, learner_id: str, now: datetime) -> None:
        ctx.rebase(await self._read_profile(learner_id, now))

    async def _ensure_loaded(self, ctx: _LearnerContext, learner_id: str, now: datetime) -> None:
        if ctx.profile is None:
            await self._refresh(ctx, learner_id, now)

    async def _flush(self, ctx: _LearnerContext, learner_id: str) -> None:
        """Write pending chunk states, then the profile.

        Each profile write carries a fresh token. A save that timed out may
        still have landed; if the reloaded profile holds the token its ops
        are dropped instead of replayed.

        Raises:
            StoreError: If a write fails twice or conflicts keep recurring.
        """
        for chunk_id, state in list(ctx.pending_states.items()):
            await self.scheduler.save_state(state)
            del ctx.pending_states[chunk_id]

        if not ctx.dirty:
            return

        ctx.mark_flush(uuid.uuid4().hex)
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            candidate = ctx.profile
            try:
                saved = await self._store_call(lambda: self.store.save_profile(candidate), "save_profile")
            except ConflictError as e:
                logger.info(
                    "profile_conflict_replay",
                    learner_id=learner_id,
                    attempt=attempt,
                    expected_version=e.expected_version,
                    actual_version=e.actual_version,
                )
                await self._refresh(ctx, learner_id, self.clock.now())
                if not ctx.pending_ops:
                    logger.info("profile_save_already_applied", learner_id=learner_id, version=ctx.base.version)
                    return
                continue
            ctx.settle(saved)
            return

        raise StoreError(
            "Profile save kept conflicting",
            {"learner_id": learner_id, "attempts": MAX_CONFLICT_RETRIES},
        )

    async def _generate(
        self,
        profile: LearnerProfile,
        topic: str,
        target_level: float,
        count: int,
        exclude: list[str],
    ) -> list[ContentChunk]:
        """Ask the generator for chunks, upsert them and return the stored records."""
        spec = GenerationSpec(
            language=profile.target_language,
            native_language=profile.native_language,
            topic=topic,
            difficulty=target_level,
            age_band=profile.age_band,
            interests=profile.combined_interests(),
            exclude=exclude,
            count=count,
        )
        candidates = await asyncio.wait_for(
            self.generator.generate(spec), timeout=self.settings.generator_timeout_seconds
        )
        stored = []
        for candidate in candidates:
            stored.append(await self.repository.upsert_chunk(candidate))
        return stored

    # Public operations

    async def prepare_session(
        self, learner_id: str, topic: str | None = None, duration_minutes: float = 10.0
    ) -> SessionPlan:
        """Build the session plan. Never fails for lack of content or a flaky collaborator.

        Without a topic one of the learner's interests is picked at random,
        or the configured default topic when there are none.
        """
        async with self._locked(learner_id) as ctx:
            now = self.clock.now()
            degraded = False

            try:
                await self._refresh(ctx, learner_id, now)
            except StoreError as e:
                logger.warning("profile_load_failed", learner_id=learner_id, error=str(e))
                degraded = True
                if ctx.profile is None:
                    ctx.rebase(self._default_profile(learner_id, now))

            ctx.apply(partial(_apply_inactivity_decay, at=now))
            profile = ctx.profile
            if not topic:
                topic = self._select_topic(profile)

            recent = ctx.session.outcomes if ctx.session else []
            calibration = self.calibrator.calibrate(profile, recent)
            current_level = calibration.current_level
            target_level = calibration.target_level

            budget = max(2, math.floor(duration_minutes / self.settings.minutes_per_activity))
            review_count = min(self.settings.max_review_chunks, math.ceil(budget / 2))
            new_count = min(self.settings.max_new_chunks, max(1, budget - review_count))

            review_chunks: list[ContentChunk] = []
            known_ids: set[str] = set()
            try:
                states = await self.scheduler.list_states(learner_id)
                known_ids = {s.chunk_id for s in states}
                due = await self.scheduler.get_due(learner_id, now)
                review_chunks = await self.repository.get_chunks([s.chunk_id for s in due[:review_count]])
            except (StoreError, RepositoryUnavailableError) as e:
                logger.warning("review_selection_failed", learner_id=learner_id, error=str(e))
                degraded = True

            target_chunks: list[ContentChunk] = []
            try:
                target_chunks = await self.calibrator.select_new_chunks(
                    profile, topic, new_count, target_level=target_level, exclude_ids=known_ids
                )
            except (StoreError, RepositoryUnavailableError) as e:
                logger.warning("target_selection_failed", learner_id=learner_id, error=str(e))
                degraded = True

            shortfall = new_count - len(target_chunks)
            if shortfall > 0 and self.generator is not None:
                low, high = difficulty_range(target_level)
                taken = known_ids | {c.id for c in target_chunks + review_chunks}
                try:
                    generated = await self._generate(
                        profile,
                        topic,
                        target_level,
                        shortfall,
                        [c.text for c in target_chunks + review_chunks],
                    )
                except asyncio.TimeoutError:
                    logger.warning("chunk_generation_timeout", learner_id=learner_id, topic=topic)
                    degraded = True
                except Exception:
                    logger.exception("chunk_generation_failed", learner_id=learner_id, topic=topic)
                    degraded = True
                else:
                    for chunk in generated:
                        if len(target_chunks) >= new_count:
                            break
                        if chunk.id in taken or not low <= chunk.difficulty <= high:
                            continue
                        taken.add(chunk.id)
                        target_chunks.append(chunk)

            context_chunks: list[ContentChunk] = []
            try:
                context_chunks = await self.calibrator.select_context_chunks(
                    profile,
                    topic,
                    self.settings.context_chunks,
                    current_level=current_level,
                    exclude_ids={c.id for c in review_chunks},
                )
            except (StoreError, RepositoryUnavailableError) as e:
                logger.warning("context_selection_failed", learner_id=learner_id, error=str(e))
                degraded = True

            total_chunks = len(target_chunks) + len(review_chunks)
            plan = SessionPlan(
                session_id=uuid.uuid4().hex,
                topic=topic,
                target_chunks=target_chunks,
                review_chunks=review_chunks,
                context_chunks=context_chunks,
                target_difficulty=target_level,
                current_level=current_level,
                recommended_activities=ACTIVITY_ORDER[: min(MAX_RECOMMENDED_ACTIVITIES, total_chunks)],
                estimated_minutes=duration_minutes,
                degraded=degraded,
                reasoning=calibration.reasoning,
            )
            if ctx.session is not None:
                logger.info("session_replaced", learner_id=learner_id, session_id=ctx.session.session_id)
            ctx.session = ActiveSession(
                plan,
                now,
                duration_minutes,
                self.settings.signal_window_size,
                confidence_at_start=profile.average_confidence,
            )

            try:
                await self._flush(ctx, learner_id)
            except StoreError as e:
                logger.warning("profile_flush_deferred", learner_id=learner_id, error=str(e))
                plan.degraded = True

            logger.info(
                "session_prepared",
                learner_id=learner_id,
                session_id=plan.session_id,
                topic=topic,
                target=len(plan.target_chunks),
                review=len(plan.review_chunks),
                context=len(plan.context_chunks),
                target_difficulty=round(target_level, 2),
                degraded=plan.degraded,
            )
            return plan

    async def report_outcome(self, learner_id: str, chunk_id: str, outcome: Outcome) -> AdaptationDirective:
        """Record one activity result and return the adaptation directive.

        Raises:
            PersistenceError: If the resulting state could not be written. The
                directive is attached and the state stays pending in memory.
        """
        async with self._locked(learner_id) as ctx:
            now = self.clock.now()
            await self._ensure_loaded(ctx, learner_id, now)

            previous = ctx.pending_states.get(chunk_id)
            if previous is None:
                previous = await self.scheduler.load_state(learner_id, chunk_id)

            session = ctx.session
            if session is None:
                session = self._implicit_session(ctx.profile, now)
                ctx.session = session

            signals = self.monitor.detect_signals(outcome, session.average_latency_ms, chunk_id, now)
            session.record(chunk_id, outcome, signals)

            updated = self.scheduler.apply(previous, learner_id, chunk_id, outcome, now)
            ctx.pending_states[chunk_id] = updated

            old_status = previous.status if previous else None
            ctx.apply(
                partial(_apply_outcome, outcome=outcome, old_status=old_status, new_status=updated.status, at=now)
            )

            score = self.monitor.risk_score(ctx.profile, session.window, now)
            rising = self.monitor.is_rising_now(session.window)
            ctx.apply(partial(_apply_session_risk, session_risk=score, rising=rising, at=now))

            directive = self.monitor.decide(score, session.window, session.current_level, session.target_level)
            if directive.changes_difficulty:
                session.target_level = directive.target_level
                session.outcomes_since_adapt = 0
                await self._reshape_targets(ctx.profile, session)
            else:
                session.outcomes_since_adapt += 1
                if session.outcomes_since_adapt >= ADAPT_EVERY:
                    stats = WindowStats.from_outcomes(session.outcomes[-ADAPT_EVERY:])
                    session.target_level = self.calibrator.adapt(session.target_level, stats)
                    session.plan.target_difficulty = session.target_level
                    session.outcomes_since_adapt = 0

            logger.debug(
                "outcome_recorded",
                learner_id=learner_id,
                chunk_id=chunk_id,
                correct=outcome.correct,
                status=updated.status,
                risk=round(score, 3),
                directive=directive.kind,
            )

            try:
                await self._flush(ctx, learner_id)
            except StoreError as e:
                logger.error("learner_state_write_failed", learner_id=learner_id, error=str(e))
                raise PersistenceError(
                    "Learner state could not be saved; it is kept in memory",
                    directive=directive,
                    details={"learner_id": learner_id, "error": str(e)},
                ) from e
            return directive

    def _implicit_session(self, profile: LearnerProfile, now: datetime) -> ActiveSession:
        calibration = self.calibrator.calibrate(profile)
        plan = SessionPlan(
            session_id=uuid.uuid4().hex,
            topic="",
            target_difficulty=calibration.target_level,
            current_level=calibration.current_level,
            reasoning=calibration.reasoning,
        )
        return ActiveSession(
            plan, now, 0.0, self.settings.signal_window_size, confidence_at_start=profile.average_confidence
        )

    async def _reshape_targets(self, profile: LearnerProfile, session: ActiveSession) -> None:
        """Swap untouched target chunks for repository chunks at the new target level."""
        plan = session.plan
        plan.target_difficulty = session.target_level
        untouched = session.untouched(plan.target_chunks)
        if not untouched:
            return
        try:
            replacements = await self.calibrator.select_new_chunks(
                profile,
                plan.topic,
                len(untouched),
                target_level=session.target_level,
                exclude_ids=plan.chunk_ids | set(session.touched),
            )
        except (StoreError, RepositoryUnavailableError) as e:
            logger.warning("session_reshape_failed", learner_id=profile.learner_id, error=str(e))
            return
        if not replacements:
            return
        kept = [c for c in plan.target_chunks if c.id in session.touched]
        plan.target_chunks = kept + replacements
        logger.info(
            "session_targets_reshaped",
            learner_id=profile.learner_id,
            session_id=plan.session_id,
            target_level=round(session.target_level, 2),
            replaced=len(replacements),
        )

    async def end_session(self, learner_id: str, stats: SessionStats) -> SessionSummary:
        """Add session aggregates to the profile and summarise the session.

        Safe to call twice or not at all. A repeated call leaves the profile
        alone and returns a summary with ``recorded`` set to False.

        Raises:
            PersistenceError: If the profile could not be written.
        """
        async with self._locked(learner_id) as ctx:
            now = self.clock.now()
            await self._ensure_loaded(ctx, learner_id, now)

            session = None
            if ctx.session is not None and ctx.session.session_id == stats.session_id:
                session, ctx.session = ctx.session, None

            if ctx.profile.has_recorded_session(stats.session_id):
                logger.info("session_already_recorded", learner_id=learner_id, session_id=stats.session_id)
                return SessionSummary(session_id=stats.session_id, recorded=False)

            try:
                states = await self._known_states(ctx, learner_id)
                counts = _count_statuses(states.values())
                ctx.apply(partial(_apply_session_end, stats=stats, counts=counts, at=now))
                await self._flush(ctx, learner_id)
            except StoreError as e:
                logger.error("session_end_write_failed", learner_id=learner_id, error=str(e))
                raise PersistenceError(
                    "Session aggregates could not be saved; they are kept in memory",
                    details={"learner_id": learner_id, "session_id": stats.session_id, "error": str(e)},
                ) from e

            summary = self._summarize(ctx.profile, session, stats, states)
            logger.info(
                "session_ended",
                learner_id=learner_id,
                session_id=stats.session_id,
                duration_minutes=stats.duration_minutes,
                chunks_touched=stats.chunks_touched,
                accuracy=round(summary.accuracy, 2),
            )
            return summary

    def _summarize(
        self,
        profile: LearnerProfile,
        session: ActiveSession | None,
        stats: SessionStats,
        states: dict[str, LearnerChunkState],
    ) -> SessionSummary:
        if session is None:
            level = self.calibrator.calibrate(profile).current_level
            return SessionSummary(
                session_id=stats.session_id,
                duration_minutes=stats.duration_minutes,
                filter_risk_score=profile.filter_risk_score,
                level_label=level_to_cefr_label(level),
                tips=session_tips(0.0, stats.duration_minutes, 0, 0),
            )

        plan = session.plan
        activities = len(session.outcomes)
        correct = session.correct_first_try
        accuracy = correct / activities if activities else 0.0
        struggling = session.struggling_chunks()
        session_chunks = {c.id for c in plan.target_chunks + plan.review_chunks} | set(session.touched)
        return SessionSummary(
            session_id=stats.session_id,
            duration_minutes=stats.duration_minutes,
            activities_completed=activities,
            correct_first_try=correct,
            accuracy=accuracy,
            new_chunks=len(plan.target_chunks),
            review_chunks=len(plan.review_chunks),
            struggling_chunks=struggling,
            mastered_chunks=session.mastered_chunks(),
            confidence_change=profile.average_confidence - session.confidence_at_start,
            filter_risk_score=profile.filter_risk_score,
            topic_health=topic_health(states[c] for c in sorted(session_chunks) if c in states),
            level_label=level_to_cefr_label(session.current_level),
            tips=session_tips(accuracy, stats.duration_minutes, len(struggling), activities),
        )

    async def _known_states(self, ctx: _LearnerContext, learner_id: str) -> dict[str, LearnerChunkState]:
        """Stored chunk states overlaid with unwritten ones."""
        states = {s.chunk_id: s for s in await self.scheduler.list_states(learner_id)}
        states.update(ctx.pending_states)
        return states

    async def get_due_count(self, learner_id: str) -> int:
        """Number of chunks due for review now (fragile ones included)."""
        return await self.scheduler.due_count(learner_id, self.clock.now())

    async def run_decay(self, learner_id: str) -> int:
        """Mark lapsed acquired chunks fragile. Returns how many changed.

        Unwritten chunk states are saved first so decay never works from a
        stale stored copy.

        Raises:
            PersistenceError: If pending state or the adjusted profile could not be written.
        """
        async with self._locked(learner_id) as ctx:
            now = self.clock.now()
            await self._ensure_loaded(ctx, learner_id, now)
            if ctx.pending_ops or ctx.pending_states:
                try:
                    await self._flush(ctx, learner_id)
                except StoreError as e:
                    raise PersistenceError(
                        "Pending learner state could not be saved; decay was not run",
                        details={"learner_id": learner_id, "error": str(e)},
                    ) from e

            decayed = await self.scheduler.decay(learner_id, now)
            if not decayed:
                return 0
            ctx.apply(partial(_apply_decay, decayed=len(decayed)))
            try:
                await self._flush(ctx, learner_id)
            except StoreError as e:
                raise PersistenceError(
                    "Decayed counts could not be saved; they are kept in memory",
                    details={"learner_id": learner_id, "error": str(e)},
                ) from e
            return len(decayed)

    async def add_interests(self, learner_id: str, interests: list[str]) -> list[str]:
        """Add interests the learner chose. Returns the combined interest list.

        Raises:
            PersistenceError: If the profile could not be written.
        """
        async with self._locked(learner_id) as ctx:
            now = self.clock.now()
            await self._ensure_loaded(ctx, learner_id, now)
            ctx.apply(partial(_apply_explicit_interests, interests=list(interests), at=now))
            try:
                await self._flush(ctx, learner_id)
            except StoreError as e:
                raise PersistenceError(
                    "Interests could not be saved; they are kept in memory",
                    details={"learner_id": learner_id, "error": str(e)},
                ) from e
            logger.info("interests_added", learner_id=learner_id, count=len(interests))
            return ctx.profile.combined_interests()

    async def record_detected_interest(self, learner_id: str, topic: str, strength: float) -> list[str]:
        """Record an interest inferred from the learner's behaviour.

        Only the strongest signal per topic is kept. Returns the combined
        interest list.

        Raises:
            PersistenceError: If the profile could not be written.
        """
        async with self._locked(learner_id) as ctx:
            now = self.clock.now()
            await self._ensure_loaded(ctx, learner_id, now)
            ctx.apply(partial(_apply_detected_interest, topic=topic, strength=strength, at=now))
            try:
                await self._flush(ctx, learner_id)
            except StoreError as e:
                raise PersistenceError(
                    "Detected interest could not be saved; it is kept in memory",
                    details={"learner_id": learner_id, "topic": topic, "error": str(e)},
                ) from e
            logger.debug("interest_detected", learner_id=learner_id, topic=topic, strength=round(strength, 2))
            return ctx.profile.combined_interests()

    async def topic_counts(self, language: str | None = None) -> dict[str, int]:
        """Stored chunks per topic for ``language`` (the default language when omitted).

        Raises:
            RepositoryUnavailableError: If the store cannot be read.
        """
        return await self.repository.topic_counts(language or self.settings.default_language)

    def next_activity(self, learner_id: str) -> ActivityRecommendation | None:
        """What to practise next in the active session, or None when nothing is left."""
        ctx = self._learners.get(learner_id)
        session = ctx.session if ctx else None
        if session is None:
            return None

        plan = session.plan
        reviews = session.untouched(plan.review_chunks)
        targets = session.untouched(plan.target_chunks)
        context = session.untouched(plan.context_chunks)
        count = len(session.outcomes)
        struggling = session.wrong_streak >= 2

        if struggling and reviews:
            chunks, is_review, reason = reviews, True, "Reviewing to build confidence after some mistakes."
        elif count % 3 == 0 and reviews:
            chunks, is_review, reason = reviews, True, "Scheduled review to reinforce learning."
        elif targets:
            chunks, is_review, reason = targets, False, "Introducing new content at your level."
        elif reviews:
            chunks, is_review, reason = reviews, True, "Reinforcing previous learning."
        elif context:
            chunks, is_review, reason = context, False, "Practising phrases you already know."
        else:
            return None

        if is_review:
            activity = ActivityType.MULTIPLE_CHOICE
        elif struggling:
            activity = ActivityType.TRUE_FALSE
        else:
            activity = ACTIVITY_ORDER[count % len(ACTIVITY_ORDER)]

        return ActivityRecommendation(
            activity_type=activity,
            chunk_ids=[c.id for c in chunks[:CHUNKS_PER_ACTIVITY]],
            is_review=is_review,
            reason=reason,
            difficulty=session.target_level,
        )

    def should_end_session(self, learner_id: str) -> tuple[bool, str]:
        """Whether the active session should wrap up, and why."""
        ctx = self._learners.get(learner_id)
        session = ctx.session if ctx else None
        if session is None:
            return False, ""

        total = len(session.outcomes)
        if total >= FATIGUE_MIN_ACTIVITIES:
            wrong_rate = sum(1 for o in session.outcomes if not o.correct) / total
            if wrong_rate > FATIGUE_WRONG_RATE:
                return True, "High error rate suggests fatigue. Time for a break."
        if session.wrong_signals >= MAX_WRONG_SIGNALS:
            return True, "Multiple struggles detected. Better to rest and return fresh."
        if session.duration_minutes and total * self.settings.minutes_per_activity >= session.duration_minutes:
            return True, "Good session! Time to wrap up."
        return False, ""

    def active_session(self, learner_id: str) -> ActiveSession | None:
        ctx = self._learners.get(learner_id)
        return ctx.session if ctx else None
