"""In-process store. Used by tests and single-process deployments."""

from collections import defaultdict

from pedagogy_engine.errors import ConflictError, NotFoundError
from pedagogy_engine.models.chunk import ChunkCriteria, ContentChunk, rank_chunks
from pedagogy_engine.models.chunk_state import ChunkStatus, LearnerChunkState
from pedagogy_engine.models.learner_profile import LearnerProfile
from pedagogy_engine.storage.base import Store


class InMemoryStore(Store):
    """Dict-backed store. Returns copies so callers never alias stored records."""

    def __init__(self) -> None:
        self._profiles: dict[str, LearnerProfile] = {}
        self._chunks: dict[str, ContentChunk] = {}
        self._chunk_keys: dict[tuple[str, str], str] = {}
        self._states: dict[str, dict[str, LearnerChunkState]] = defaultdict(dict)
        self._topic_counts: dict[tuple[str, str], int] = defaultdict(int)

    async def load_profile(self, learner_id: str) -> LearnerProfile:
        profile = self._profiles.get(learner_id)
        if profile is None:
            raise NotFoundError("Learner profile not found", {"learner_id": learner_id})
        return profile.model_copy(deep=True)

    async def save_profile(self, profile: LearnerProfile) -> LearnerProfile:
        stored = self._profiles.get(profile.learner_id)
        stored_version = stored.version if stored else 0
        if stored_version != profile.version:
            raise ConflictError(
                "Profile was modified concurrently",
                expected_version=profile.version,
                actual_version=stored_version,
            )
        saved = profile.model_copy(deep=True)
        saved.version = stored_version + 1
        self._profiles[profile.learner_id] = saved
        return saved.model_copy(deep=True)

    async def delete_learner(self, learner_id: str) -> None:
        self._profiles.pop(learner_id, None)
        self._states.pop(learner_id, None)

    async def get_chunk(self, chunk_id: str) -> ContentChunk | None:
        return self._chunks.get(chunk_id)

    async def get_chunks(self, chunk_ids: list[str]) -> list[ContentChunk]:
        return [self._chunks[i] for i in chunk_ids if i in self._chunks]

    async def find_chunk_by_key(self, normalized_text: str, language: str) -> ContentChunk | None:
        chunk_id = self._chunk_keys.get((normalized_text, language))
        return self._chunks.get(chunk_id) if chunk_id else None

    async def insert_chunk(self, chunk: ContentChunk) -> ContentChunk:
        key = (chunk.normalized_text, chunk.language)
        existing_id = self._chunk_keys.get(key)
        if existing_id is not None:
            return self._chunks[existing_id]
        self._chunks[chunk.id] = chunk
        self._chunk_keys[key] = chunk.id
        return chunk

    async def query_chunks(self, criteria: ChunkCriteria) -> list[ContentChunk]:
        matches = [c for c in self._chunks.values() if criteria.matches(c)]
        return rank_chunks(matches)[: criteria.limit]

    async def count_chunks(self, language: str | None = None) -> int:
        if language is None:
            return len(self._chunks)
        return sum(1 for c in self._chunks.values() if c.language == language)

    async def increment_topic_count(self, topic: str, language: str) -> None:
        self._topic_counts[(topic, language)] += 1

    async def topic_counts(self, language: str) -> dict[str, int]:
        return {t: n for (t, lang), n in self._topic_counts.items() if lang == language}

    async def get_state(self, learner_id: str, chunk_id: str) -> LearnerChunkState | None:
        state = self._states[learner_id].get(chunk_id)
        return state.model_copy() if state else None

    async def save_state(self, state: LearnerChunkState) -> None:
        self._states[state.learner_id][state.chunk_id] = state.model_copy()

    async def list_states(
        self, learner_id: str, statuses: set[ChunkStatus] | None = None
    ) -> list[LearnerChunkState]:
        states = self._states[learner_id].values()
        return [
            s.model_copy()
            for s in states
            if statuses is None or s.status in statuses
        ]
