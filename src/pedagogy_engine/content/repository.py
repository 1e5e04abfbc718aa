"""Content repository: dedupe-on-write chunk storage with per-topic counters."""

import uuid
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from pedagogy_engine.clock import Clock, SystemClock
from pedagogy_engine.errors import RepositoryUnavailableError, StoreError
from pedagogy_engine.models.chunk import ChunkCandidate, ChunkCriteria, ContentChunk
from pedagogy_engine.storage.base import Store
from pedagogy_engine.storage.retry import call_store

logger = structlog.get_logger()

T = TypeVar("T")


def _new_chunk_id() -> str:
    return uuid.uuid4().hex


class ContentRepository:
    """Stores and finds chunks.

    Every store call is bounded by ``store_timeout`` and retried once. When
    both attempts fail the repository raises RepositoryUnavailableError and
    the caller falls back to content it already has.

    Args:
        store: Backing store.
        clock: Source of ``created_at`` timestamps.
        store_timeout: Seconds allowed per store call.
        retry_backoff: Seconds to wait before the retry.
        id_factory: Produces ids for new chunks.
    """

    def __init__(
        self,
        store: Store,
        clock: Clock | None = None,
        store_timeout: float = 2.0,
        retry_backoff: float = 0.2,
        id_factory: Callable[[], str] = _new_chunk_id,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.store_timeout = store_timeout
        self.retry_backoff = retry_backoff
        self.id_factory = id_factory

    async def _call(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        try:
            return await call_store(
                operation, timeout=self.store_timeout, backoff=self.retry_backoff, name=name
            )
        except StoreError as e:
            logger.error("content_repository_unavailable", operation=name, error=str(e))
            raise RepositoryUnavailableError(
                "Content repository unavailable", {"operation": name, "error": str(e)}
            ) from e

    async def find_chunks(self, criteria: ChunkCriteria) -> list[ContentChunk]:
        """Chunks matching ``criteria``, most common first, ties by id."""
        return await self._call(lambda: self.store.query_chunks(criteria), "query_chunks")

    async def get_chunk(self, chunk_id: str) -> ContentChunk | None:
        return await self._call(lambda: self.store.get_chunk(chunk_id), "get_chunk")

    async def get_chunks(self, chunk_ids: list[str]) -> list[ContentChunk]:
        """Chunks in the order of ``chunk_ids``; unknown ids are skipped."""
        if not chunk_ids:
            return []
        return await self._call(lambda: self.store.get_chunks(chunk_ids), "get_chunks")

    async def upsert_chunk(self, candidate: ChunkCandidate) -> ContentChunk:
        """Return the stored chunk with the candidate's text, inserting it if new.

        Dedupe key is (normalized text, language). Difficulty is already
        clamped to 1-5 by the candidate model.
        """
        key = candidate.normalized_text
        existing = await self._call(
            lambda: self.store.find_chunk_by_key(key, candidate.language), "find_chunk_by_key"
        )
        if existing is not None:
            logger.debug("chunk_deduplicated", chunk_id=existing.id, language=candidate.language)
            return existing

        chunk = candidate.to_chunk(self.id_factory(), created_at=self.clock.now())
        stored = await self._call(lambda: self.store.insert_chunk(chunk), "insert_chunk")
        if stored.id != chunk.id:
            # Lost a race with a concurrent insert of the same text
            return stored

        logger.info(
            "chunk_stored",
            chunk_id=stored.id,
            kind=stored.kind,
            language=stored.language,
            difficulty=stored.difficulty,
        )
        for topic in sorted(stored.topics):
            try:
                await self.store.increment_topic_count(topic, stored.language)
            except StoreError as e:
                logger.warning("topic_counter_update_failed", topic=topic, error=str(e))
        return stored

    async def topic_counts(self, language: str) -> dict[str, int]:
        return await self._call(lambda: self.store.topic_counts(language), "topic_counts")
