"""Session-scoped data models."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from pedagogy_engine.models.chunk import ContentChunk


class SignalKind(StrEnum):
    """In-session struggle/boredom signals."""

    WRONG = "wrong"
    HELP = "help"
    SLOW = "slow"
    FAST = "fast"


class SessionSignal(BaseModel):
    kind: SignalKind
    chunk_id: str
    at: datetime


class DirectiveKind(StrEnum):
    NONE = "none"
    ENCOURAGE = "encourage"
    SIMPLIFY = "simplify"
    CHALLENGE = "challenge"
    SUGGEST_BREAK = "suggest_break"


class Severity(StrEnum):
    NONE = "none"
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    CRITICAL = "critical"


class AdaptationDirective(BaseModel):
    """Advisory output of the struggle monitor.

    ``target_level`` is only set for simplify/challenge.
    """

    kind: DirectiveKind = DirectiveKind.NONE
    message: str = ""
    severity: Severity = Severity.NONE
    target_level: float | None = None
    risk_score: float = 0.0

    @property
    def changes_difficulty(self) -> bool:
        return self.kind in (DirectiveKind.SIMPLIFY, DirectiveKind.CHALLENGE)

    @property
    def requires_immediate_action(self) -> bool:
        return self.severity in (Severity.WARNING, Severity.CRITICAL)


class ActivityType(StrEnum):
    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    MATCHING = "matching"
    FILL_BLANK = "fill_blank"
    TRANSLATE = "translate"


ACTIVITY_ORDER: list[ActivityType] = [
    ActivityType.MULTIPLE_CHOICE,
    ActivityType.TRUE_FALSE,
    ActivityType.MATCHING,
    ActivityType.FILL_BLANK,
    ActivityType.TRANSLATE,
]


class SessionPlan(BaseModel):
    """Content bundle for one session."""

    session_id: str
    topic: str
    target_chunks: list[ContentChunk] = Field(default_factory=list)
    review_chunks: list[ContentChunk] = Field(default_factory=list)
    context_chunks: list[ContentChunk] = Field(default_factory=list)
    target_difficulty: float
    current_level: float
    recommended_activities: list[ActivityType] = Field(default_factory=list)
    estimated_minutes: float = 10.0
    degraded: bool = False
    reasoning: str = ""

    @property
    def chunk_ids(self) -> set[str]:
        chunks = self.target_chunks + self.review_chunks + self.context_chunks
        return {c.id for c in chunks}


class SessionStats(BaseModel):
    """Session-level aggregates reported by the caller on session end."""

    session_id: str
    duration_minutes: float = Field(ge=0)
    chunks_touched: int = Field(default=0, ge=0)


class ActivityRecommendation(BaseModel):
    activity_type: ActivityType
    chunk_ids: list[str]
    is_review: bool = False
    reason: str = ""
    difficulty: float


class SessionSummary(BaseModel):
    """End-of-session report.

    ``recorded`` is False when the session had already been ended; the other
    fields are then left at their defaults.
    """

    session_id: str
    recorded: bool = True
    duration_minutes: float = 0.0
    activities_completed: int = 0
    correct_first_try: int = 0
    accuracy: float = 0.0
    new_chunks: int = 0
    review_chunks: int = 0
    struggling_chunks: list[str] = Field(default_factory=list)
    mastered_chunks: list[str] = Field(default_factory=list)
    confidence_change: float = 0.0
    filter_risk_score: float = 0.0
    topic_health: int = 50
    level_label: str = "A1"
    tips: list[str] = Field(default_factory=list)
