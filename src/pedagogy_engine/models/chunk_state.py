"""Per-learner, per-chunk spaced-repetition record."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

MIN_EASE_FACTOR = 1.3
MAX_EASE_FACTOR = 3.0
DEFAULT_EASE_FACTOR = 2.5


class ChunkStatus(StrEnum):
    """Acquisition states: new -> learning -> acquired <-> fragile."""

    NEW = "new"
    LEARNING = "learning"
    ACQUIRED = "acquired"
    FRAGILE = "fragile"


class Outcome(BaseModel):
    """Result of one activity on one chunk."""

    correct: bool
    used_help: bool = False
    latency_ms: int | None = Field(default=None, ge=0)


def clamp_ease(value: float) -> float:
    return round(max(MIN_EASE_FACTOR, min(MAX_EASE_FACTOR, value)), 2)


def chunk_confidence(correct_first_try: int, total_encounters: int, help_used_count: int) -> float:
    """Confidence 0-1 from first-try accuracy, lightly penalised for help use."""
    if total_encounters == 0:
        return 0.5
    correct_rate = correct_first_try / total_encounters
    help_penalty = min(0.2, help_used_count * 0.05)
    return max(0.0, min(1.0, correct_rate - help_penalty))


class LearnerChunkState(BaseModel):
    """SRS state for one (learner, chunk) pair.

    Only the repetition scheduler produces new versions of this record.
    """

    learner_id: str
    chunk_id: str
    status: ChunkStatus = ChunkStatus.NEW
    ease_factor: float = DEFAULT_EASE_FACTOR
    interval_days: float = Field(default=0.0, ge=0)
    next_review_at: datetime
    repetition_count: int = 0
    total_encounters: int = 0
    correct_first_try: int = 0
    wrong_attempts: int = 0
    help_used_count: int = 0
    confidence_score: float = 0.5
    first_seen_at: datetime
    last_seen_at: datetime

    @field_validator("ease_factor", mode="before")
    @classmethod
    def _clamp_ease(cls, value: Any) -> float:
        return clamp_ease(float(value))

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        return max(0.0, min(1.0, float(value)))

    def is_due(self, now: datetime) -> bool:
        if self.status == ChunkStatus.NEW:
            return False
        return self.status == ChunkStatus.FRAGILE or self.next_review_at <= now
