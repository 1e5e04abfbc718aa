"""Learner profile model: one aggregate per learner and target language."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from pedagogy_engine.models.chunk_state import ChunkStatus

MAX_HISTORY_SNAPSHOTS = 30
MAX_DETECTED_INTERESTS = 20
MAX_RECORDED_SESSIONS = 50
MAX_APPLIED_FLUSHES = 20
DETECTED_INTEREST_THRESHOLD = 0.5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp_unit(value: Any) -> float:
    return max(0.0, min(1.0, float(value)))


def estimate_level(acquired: int) -> int:
    """Map acquired-chunk count onto the 0-100 CEFR-aligned level scale.

    Piecewise linear and non-decreasing in ``acquired``.
    """
    if acquired < 50:
        level = acquired // 5
    elif acquired < 200:
        level = 10 + (acquired - 50) // 10
    elif acquired < 450:
        level = 25 + (acquired - 200) // 15
    elif acquired < 800:
        level = 42 + (acquired - 450) // 18
    elif acquired < 1250:
        level = 62 + (acquired - 800) // 15
    elif acquired < 2000:
        level = 92 + (acquired - 1250) // 50
    else:
        level = 100
    return max(0, min(100, level))


def level_to_cefr(level: float) -> str:
    """CEFR label for a 0-100 level."""
    if level <= 20:
        return "A1"
    elif level <= 40:
        return "A2"
    elif level <= 60:
        return "B1"
    elif level <= 80:
        return "B2"
    elif level <= 90:
        return "C1"
    return "C2"


class ProgressSnapshot(BaseModel):
    at: datetime
    value: float


class DetectedInterest(BaseModel):
    strength: float
    detected_at: datetime

    @field_validator("strength", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _clamp_unit(value)


class ChunkCounts(BaseModel):
    acquired: int = 0
    learning: int = 0
    fragile: int = 0
    total: int = 0

    def apply_transition(self, old: ChunkStatus | None, new: ChunkStatus) -> None:
        """Move one chunk between buckets; ``old=None`` means first encounter."""
        if old is None:
            self.total += 1
        elif old != ChunkStatus.NEW:
            current = getattr(self, old.value)
            setattr(self, old.value, max(0, current - 1))
        if new != ChunkStatus.NEW:
            setattr(self, new.value, getattr(self, new.value) + 1)


class LearnerProfile(BaseModel):
    """Aggregate learner record.

    ``current_level`` is derived from ``chunk_counts.acquired`` and cannot be
    assigned. Bounded scores are clamped on construction and assignment.
    """

    model_config = ConfigDict(validate_assignment=True)

    learner_id: str
    target_language: str = "fr"
    native_language: str = "en"
    age_band: str = "11-14"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    level_history: list[ProgressSnapshot] = Field(default_factory=list)
    average_confidence: float = 0.5
    confidence_history: list[ProgressSnapshot] = Field(default_factory=list)
    chunk_counts: ChunkCounts = Field(default_factory=ChunkCounts)
    explicit_interests: set[str] = Field(default_factory=set)
    detected_interests: dict[str, DetectedInterest] = Field(default_factory=dict)
    total_sessions: int = 0
    total_minutes: float = 0.0
    help_request_rate: float = 0.0
    wrong_answer_rate: float = 0.0
    filter_risk_score: float = 0.0
    last_struggle_at: datetime | None = None
    last_session_at: datetime | None = None
    recorded_session_ids: list[str] = Field(default_factory=list)
    applied_flush_ids: list[str] = Field(default_factory=list)
    version: int = 0  # 0 = never persisted

    @field_validator(
        "average_confidence",
        "help_request_rate",
        "wrong_answer_rate",
        "filter_risk_score",
        mode="before",
    )
    @classmethod
    def _clamp_scores(cls, value: Any) -> float:
        return _clamp_unit(value)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def current_level(self) -> int:
        return estimate_level(self.chunk_counts.acquired)

    @property
    def cefr_label(self) -> str:
        return level_to_cefr(self.current_level)

    def record_level_snapshot(self, at: datetime) -> bool:
        """Append the derived level to history if it changed. Returns True if appended."""
        level = self.current_level
        if self.level_history and self.level_history[-1].value == level:
            return False
        self.level_history = _append_capped(self.level_history, ProgressSnapshot(at=at, value=level))
        return True

    def record_confidence(self, value: float, at: datetime) -> None:
        self.average_confidence = value
        self.confidence_history = _append_capped(
            self.confidence_history, ProgressSnapshot(at=at, value=self.average_confidence)
        )

    def add_explicit_interests(self, interests: list[str]) -> None:
        self.explicit_interests = self.explicit_interests | {i.strip() for i in interests if i.strip()}

    def record_detected_interest(self, tag: str, strength: float, at: datetime) -> None:
        """Keep the strongest signal per tag and only the top tags overall."""
        merged = dict(self.detected_interests)
        existing = merged.get(tag)
        if existing is not None:
            strength = max(existing.strength, strength)
        merged[tag] = DetectedInterest(strength=strength, detected_at=at)
        ranked = sorted(merged.items(), key=lambda item: (-item[1].strength, item[0]))
        self.detected_interests = dict(ranked[:MAX_DETECTED_INTERESTS])

    def combined_interests(self) -> list[str]:
        """Explicit interests plus sufficiently strong detected ones, sorted."""
        combined = set(self.explicit_interests)
        for tag, interest in self.detected_interests.items():
            if interest.strength >= DETECTED_INTEREST_THRESHOLD:
                combined.add(tag)
        return sorted(combined)

    def has_recorded_session(self, session_id: str) -> bool:
        return session_id in self.recorded_session_ids

    def mark_session_recorded(self, session_id: str) -> None:
        ids = self.recorded_session_ids + [session_id]
        self.recorded_session_ids = ids[-MAX_RECORDED_SESSIONS:]

    def has_applied_flush(self, token: str) -> bool:
        return token in self.applied_flush_ids

    def mark_flush_applied(self, token: str) -> None:
        """Tag the profile with the flush that wrote it."""
        ids = self.applied_flush_ids + [token]
        self.applied_flush_ids = ids[-MAX_APPLIED_FLUSHES:]


def _append_capped(history: list[ProgressSnapshot], snapshot: ProgressSnapshot) -> list[ProgressSnapshot]:
    updated = history + [snapshot]
    return updated[-MAX_HISTORY_SNAPSHOTS:]
