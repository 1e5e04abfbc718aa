"""Content chunk models.

A chunk is taught as a whole phrase. The four kinds share one record shape;
only fill-in-the-blank patterns carry slot data, so the kinds are modelled as
a discriminated union keyed on ``kind``.
"""

import math
import unicodedata
from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 5
# Generated chunks have no corpus frequency; rank them behind curated ones.
DEFAULT_FREQUENCY_RANK = 10_000

_EDGE_PUNCTUATION = " .!?¡¿…。,;:"


class ChunkKind(StrEnum):
    """Kinds of lexical chunk."""

    FIXED_PHRASE = "fixed_phrase"
    WORD_PAIRING = "word_pairing"
    SITUATIONAL_UTTERANCE = "situational_utterance"
    FILL_IN_PATTERN = "fill_in_pattern"


def normalize_text(text: str) -> str:
    """Dedupe key form of a chunk text: NFC, casefolded, single-spaced, no edge punctuation."""
    text = unicodedata.normalize("NFC", text).casefold()
    text = " ".join(text.split())
    return text.strip(_EDGE_PUNCTUATION)


def clamp_difficulty(value: Any) -> int:
    """Coerce any difficulty-ish value into the 1-5 ordinal scale."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return MIN_DIFFICULTY
    if math.isnan(number):
        return MIN_DIFFICULTY
    rounded = math.floor(number + 0.5)
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, rounded))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChunkSlot(BaseModel):
    """A blank in a fill-in pattern, with example fillers."""

    position: int
    placeholder: str
    slot_type: str = "word"
    examples: list[str] = Field(default_factory=list)


class _ChunkFields(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    translation: str
    language: str
    difficulty: int = MIN_DIFFICULTY
    topics: frozenset[str] = frozenset()
    age_bands: frozenset[str] = frozenset()
    frequency_rank: int = DEFAULT_FREQUENCY_RANK
    notes: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("difficulty", mode="before")
    @classmethod
    def _clamp_difficulty(cls, value: Any) -> int:
        return clamp_difficulty(value)

    @property
    def normalized_text(self) -> str:
        return normalize_text(self.text)


class FixedPhrase(_ChunkFields):
    """Fixed multi-word unit: "by the way", "of course"."""

    kind: Literal["fixed_phrase"] = "fixed_phrase"


class WordPairing(_ChunkFields):
    """Words that naturally co-occur: "make a decision"."""

    kind: Literal["word_pairing"] = "word_pairing"


class SituationalUtterance(_ChunkFields):
    """Whole phrase with a pragmatic use: "no thanks, I'm fine"."""

    kind: Literal["situational_utterance"] = "situational_utterance"


class FillInPattern(_ChunkFields):
    """Sentence frame with at least one slot: "I would like ___, please"."""

    kind: Literal["fill_in_pattern"] = "fill_in_pattern"
    slots: list[ChunkSlot] = Field(min_length=1)


ContentChunk = Annotated[
    Union[FixedPhrase, WordPairing, SituationalUtterance, FillInPattern],
    Field(discriminator="kind"),
]

chunk_adapter: TypeAdapter[ContentChunk] = TypeAdapter(ContentChunk)


class ChunkCandidate(BaseModel):
    """A chunk proposed for storage (usually by the content generator).

    Difficulty is clamped to 1-5 on ingestion rather than rejected.
    """

    text: str = Field(min_length=1)
    translation: str = ""
    kind: ChunkKind = ChunkKind.FIXED_PHRASE
    language: str
    difficulty: int = MIN_DIFFICULTY
    topics: set[str] = Field(default_factory=set)
    age_bands: set[str] = Field(default_factory=set)
    frequency_rank: int = DEFAULT_FREQUENCY_RANK
    notes: str | None = None
    slots: list[ChunkSlot] = Field(default_factory=list)

    @field_validator("difficulty", mode="before")
    @classmethod
    def _clamp_difficulty(cls, value: Any) -> int:
        return clamp_difficulty(value)

    @field_validator("text", "translation", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _slots_only_for_patterns(self) -> "ChunkCandidate":
        if self.kind == ChunkKind.FILL_IN_PATTERN and not self.slots:
            raise ValueError("fill_in_pattern chunks need at least one slot")
        if self.kind != ChunkKind.FILL_IN_PATTERN:
            self.slots = []
        return self

    @property
    def normalized_text(self) -> str:
        return normalize_text(self.text)

    def to_chunk(self, chunk_id: str, created_at: datetime | None = None) -> ContentChunk:
        """Build the immutable record for this candidate."""
        data: dict[str, Any] = {
            "id": chunk_id,
            "kind": self.kind.value,
            "text": self.text,
            "translation": self.translation,
            "language": self.language,
            "difficulty": self.difficulty,
            "topics": frozenset(self.topics),
            "age_bands": frozenset(self.age_bands),
            "frequency_rank": self.frequency_rank,
            "notes": self.notes,
            "created_at": created_at or _utcnow(),
        }
        if self.kind == ChunkKind.FILL_IN_PATTERN:
            data["slots"] = self.slots
        return chunk_adapter.validate_python(data)


class ChunkCriteria(BaseModel):
    """Query for chunks in the repository."""

    language: str
    topics: set[str] = Field(default_factory=set)
    difficulty_range: tuple[float, float] = (MIN_DIFFICULTY, MAX_DIFFICULTY)
    exclude_ids: set[str] = Field(default_factory=set)
    age_band: str | None = None
    limit: int = 20

    def matches(self, chunk: ContentChunk) -> bool:
        low, high = self.difficulty_range
        if chunk.language != self.language:
            return False
        if not low <= chunk.difficulty <= high:
            return False
        if chunk.id in self.exclude_ids:
            return False
        if self.topics and not (chunk.topics & self.topics):
            return False
        # Chunks without age tags are suitable for every band
        if self.age_band and chunk.age_bands and self.age_band not in chunk.age_bands:
            return False
        return True


class GenerationSpec(BaseModel):
    """Request sent to a content generator."""

    language: str
    native_language: str
    topic: str
    difficulty: int
    age_band: str
    interests: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    count: int = Field(default=5, ge=1)
    kinds: list[ChunkKind] = Field(default_factory=lambda: list(ChunkKind))

    @field_validator("difficulty", mode="before")
    @classmethod
    def _clamp_difficulty(cls, value: Any) -> int:
        return clamp_difficulty(value)


def rank_chunks(chunks: list[ContentChunk]) -> list[ContentChunk]:
    """Most common first; ties broken by id so selection is deterministic."""
    return sorted(chunks, key=lambda c: (c.frequency_rank, c.id))
