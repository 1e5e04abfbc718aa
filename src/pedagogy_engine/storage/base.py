"""Persistence interface consumed by the engine.

Implementations must give read-your-writes consistency within one learner's
timeline. ``save_profile`` is optimistic: it raises ConflictError when the
stored version is not the one the caller loaded.
"""

from abc import ABC, abstractmethod

from pedagogy_engine.models.chunk import ChunkCriteria, ContentChunk
from pedagogy_engine.models.chunk_state import ChunkStatus, LearnerChunkState
from pedagogy_engine.models.learner_profile import LearnerProfile


class Store(ABC):
    """Generic CRUD store for profiles, chunks and chunk states."""

    # Profiles

    @abstractmethod
    async def load_profile(self, learner_id: str) -> LearnerProfile:
        """Return the stored profile or raise NotFoundError."""

    @abstractmethod
    async def save_profile(self, profile: LearnerProfile) -> LearnerProfile:
        """Persist ``profile`` if its version matches; return the saved copy (version + 1)."""

    @abstractmethod
    async def delete_learner(self, learner_id: str) -> None:
        """Remove the profile and every chunk state of the learner."""

    # Chunks

    @abstractmethod
    async def get_chunk(self, chunk_id: str) -> ContentChunk | None: ...

    @abstractmethod
    async def get_chunks(self, chunk_ids: list[str]) -> list[ContentChunk]:
        """Chunks in the order of ``chunk_ids`` from one read; unknown ids are skipped."""

    @abstractmethod
    async def find_chunk_by_key(self, normalized_text: str, language: str) -> ContentChunk | None: ...

    @abstractmethod
    async def insert_chunk(self, chunk: ContentChunk) -> ContentChunk:
        """Insert unless (normalized text, language) exists; return the stored record."""

    @abstractmethod
    async def query_chunks(self, criteria: ChunkCriteria) -> list[ContentChunk]:
        """Matching chunks ranked by frequency rank then id, truncated to the limit."""

    @abstractmethod
    async def count_chunks(self, language: str | None = None) -> int: ...

    @abstractmethod
    async def increment_topic_count(self, topic: str, language: str) -> None: ...

    @abstractmethod
    async def topic_counts(self, language: str) -> dict[str, int]: ...

    # Chunk states

    @abstractmethod
    async def get_state(self, learner_id: str, chunk_id: str) -> LearnerChunkState | None: ...

    @abstractmethod
    async def save_state(self, state: LearnerChunkState) -> None: ...

    @abstractmethod
    async def list_states(
        self, learner_id: str, statuses: set[ChunkStatus] | None = None
    ) -> list[LearnerChunkState]: ...
