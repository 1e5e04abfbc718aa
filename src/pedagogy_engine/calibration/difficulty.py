"""Difficulty calibration on the 1-5 scale.

current level = band(acquired chunks) + confidence x 0.3 - filter risk x 0.2,
clamped to [1, 5]. New content targets one step above (i+1).
"""

from collections.abc import Iterable, Sequence

import structlog
from pydantic import BaseModel

from pedagogy_engine.content.repository import ContentRepository
from pedagogy_engine.models.chunk import ChunkCriteria, ContentChunk
from pedagogy_engine.models.chunk_state import ChunkStatus, Outcome
from pedagogy_engine.models.learner_profile import LearnerProfile
from pedagogy_engine.scheduling.repetition import RepetitionScheduler

logger = structlog.get_logger()

MIN_LEVEL = 1.0
MAX_LEVEL = 5.0
BAND_TOLERANCE = 0.5

# (minimum acquired chunks, band), ascending
ACQUIRED_BANDS: list[tuple[int, float]] = [
    (0, 1.0),
    (50, 1.5),
    (150, 2.0),
    (300, 2.5),
    (500, 3.0),
    (800, 3.5),
    (1200, 4.0),
    (1700, 4.5),
    (2300, 5.0),
]

HIGH_ACCURACY = 0.9
LOW_ACCURACY = 0.6
LOW_HELP_RATE = 0.1
HIGH_HELP_RATE = 0.3
INCREASE_STEP = 0.2
DECREASE_STEP = 0.3

DROP_BACK_WINDOW = 5
DROP_BACK_WRONG_COUNT = 3
DROP_BACK_RISK = 0.7
DROP_BACK_CONFIDENCE = 0.4


def clamp_level(level: float) -> float:
    return max(MIN_LEVEL, min(MAX_LEVEL, level))


def band_for_acquired(acquired: int) -> float:
    band = ACQUIRED_BANDS[0][1]
    for threshold, value in ACQUIRED_BANDS:
        if acquired >= threshold:
            band = value
    return band


def difficulty_range(target: float, tolerance: float = BAND_TOLERANCE) -> tuple[float, float]:
    return clamp_level(target - tolerance), clamp_level(target + tolerance)


def level_to_cefr_label(level: float) -> str:
    """CEFR-style label for a 1-5 level, with half steps marked '+'."""
    labels = ["A1", "A1+", "A2", "A2+", "B1", "B1+", "B2", "B2+"]
    for index, label in enumerate(labels):
        if level < 1.5 + index * 0.5:
            return label
    return "C1"


class WindowStats(BaseModel):
    """Accuracy and help usage over a run of outcomes."""

    correct: int = 0
    total: int = 0
    help_used: int = 0

    @property
    def accuracy(self) -> float:
        return self.correct / max(1, self.total)

    @property
    def help_rate(self) -> float:
        return self.help_used / max(1, self.total)

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[Outcome]) -> "WindowStats":
        outcomes = list(outcomes)
        return cls(
            correct=sum(1 for o in outcomes if o.correct),
            total=len(outcomes),
            help_used=sum(1 for o in outcomes if o.used_help),
        )


class DifficultyCalibration(BaseModel):
    current_level: float
    target_level: float
    should_drop_back: bool
    reasoning: str
    chunk_base_level: float
    confidence_adjustment: float
    filter_risk_adjustment: float


class DifficultyCalibrator:
    """Computes levels and selects chunks for a learner.

    Args:
        repository: Source of chunks.
        scheduler: Source of the learner's chunk states.
    """

    def __init__(self, repository: ContentRepository, scheduler: RepetitionScheduler):
        self.repository = repository
        self.scheduler = scheduler

    def current_level(self, profile: LearnerProfile) -> float:
        level = (
            band_for_acquired(profile.chunk_counts.acquired)
            + profile.average_confidence * 0.3
            - profile.filter_risk_score * 0.2
        )
        return clamp_level(level)

    def target_level(self, profile: LearnerProfile) -> float:
        return min(MAX_LEVEL, self.current_level(profile) + 1)

    def should_drop_back(self, profile: LearnerProfile, recent_outcomes: Sequence[Outcome] = ()) -> bool:
        recent_wrong = sum(1 for o in list(recent_outcomes)[-DROP_BACK_WINDOW:] if not o.correct)
        return (
            recent_wrong >= DROP_BACK_WRONG_COUNT
            or profile.filter_risk_score > DROP_BACK_RISK
            or profile.average_confidence < DROP_BACK_CONFIDENCE
        )

    def adapt(self, target_level: float, stats: WindowStats) -> float:
        """Nudge an in-session target from recent accuracy and help usage."""
        if stats.accuracy >= HIGH_ACCURACY and stats.help_rate < LOW_HELP_RATE:
            return min(MAX_LEVEL, target_level + INCREASE_STEP)
        if stats.accuracy < LOW_ACCURACY or stats.help_rate > HIGH_HELP_RATE:
            return max(MIN_LEVEL, target_level - DECREASE_STEP)
        return target_level

    def calibrate(self, profile: LearnerProfile, recent_outcomes: Sequence[Outcome] = ()) -> DifficultyCalibration:
        """Levels plus a human-readable explanation of how they were reached."""
        base = band_for_acquired(profile.chunk_counts.acquired)
        confidence_adjustment = profile.average_confidence * 0.3
        risk_adjustment = -profile.filter_risk_score * 0.2
        current = self.current_level(profile)
        drop_back = self.should_drop_back(profile, recent_outcomes)
        target = current if drop_back else self.target_level(profile)

        factors = [f"{profile.chunk_counts.acquired} chunks acquired (base level {base:.1f})"]
        factors.append(f"confidence +{confidence_adjustment:.2f}")
        if risk_adjustment < -0.05:
            factors.append(f"filter risk {risk_adjustment:.2f}")

        if drop_back:
            reasoning = f"Consolidating at level {current:.1f}. "
        else:
            reasoning = f"Targeting i+1 at level {target:.1f}. "
        reasoning += f"Factors: {', '.join(factors)}."

        return DifficultyCalibration(
            current_level=current,
            target_level=target,
            should_drop_back=drop_back,
            reasoning=reasoning,
            chunk_base_level=base,
            confidence_adjustment=confidence_adjustment,
            filter_risk_adjustment=risk_adjustment,
        )

    async def select_new_chunks(
        self,
        profile: LearnerProfile,
        topic: str,
        count: int,
        target_level: float | None = None,
        exclude_ids: Iterable[str] = (),
    ) -> list[ContentChunk]:
        """Unseen chunks within target +/- 0.5, most common first."""
        if count <= 0:
            return []
        target = self.target_level(profile) if target_level is None else target_level
        known = {s.chunk_id for s in await self.scheduler.list_states(profile.learner_id)}
        criteria = ChunkCriteria(
            language=profile.target_language,
            topics={topic} if topic else set(),
            difficulty_range=difficulty_range(target),
            exclude_ids=known | set(exclude_ids),
            age_band=profile.age_band,
            limit=count,
        )
        return await self.repository.find_chunks(criteria)

    async def select_context_chunks(
        self,
        profile: LearnerProfile,
        topic: str,
        count: int,
        current_level: float | None = None,
        exclude_ids: Iterable[str] = (),
    ) -> list[ContentChunk]:
        """Learner's own acquired/learning chunks at or below the current level.

        Chunks on ``topic`` come first, then by confidence (highest first), then id.
        """
        if count <= 0:
            return []
        level = self.current_level(profile) if current_level is None else current_level
        excluded = set(exclude_ids)
        states = await self.scheduler.list_states(
            profile.learner_id, {ChunkStatus.ACQUIRED, ChunkStatus.LEARNING}
        )
        confidence = {s.chunk_id: s.confidence_score for s in states if s.chunk_id not in excluded}
        chunks = await self.repository.get_chunks(sorted(confidence))
        eligible = [
            c for c in chunks
            if c.language == profile.target_language and c.difficulty <= level
        ]
        eligible.sort(key=lambda c: (topic not in c.topics, -confidence[c.id], c.id))
        return eligible[:count]
