"""JSON file store (fcntl.flock + atomic write).

Layout under the store root::

    profiles/<learner_id>.json
    states/<learner_id>.json      chunk_id -> state
    chunks.json                   list of chunk records
    topic_counts.json             language -> topic -> count

Read-modify-write operations hold an exclusive lock on ``.lock``; files are
replaced atomically so readers never see a partial write.
"""

import asyncio
import fcntl
import json
import os
import re
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

import structlog

from pedagogy_engine.errors import ConflictError, NotFoundError, StoreError
from pedagogy_engine.models.chunk import ChunkCriteria, ContentChunk, chunk_adapter, rank_chunks
from pedagogy_engine.models.chunk_state import ChunkStatus, LearnerChunkState
from pedagogy_engine.models.learner_profile import LearnerProfile
from pedagogy_engine.storage.base import Store

logger = structlog.get_logger()

T = TypeVar("T")

_SAFE_ID = re.compile(r"^[\w@-][\w.@-]*$")


class JsonFileStore(Store):
    """Store backed by JSON files in one directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        (self.root / "profiles").mkdir(parents=True, exist_ok=True)
        (self.root / "states").mkdir(parents=True, exist_ok=True)
        self._lock_path = self.root / ".lock"
        self._lock_path.touch(exist_ok=True)

    # File helpers

    def _profile_path(self, learner_id: str) -> Path:
        return self.root / "profiles" / f"{_check_id(learner_id)}.json"

    def _states_path(self, learner_id: str) -> Path:
        return self.root / "states" / f"{_check_id(learner_id)}.json"

    @property
    def _chunks_path(self) -> Path:
        return self.root / "chunks.json"

    @property
    def _topics_path(self) -> Path:
        return self.root / "topic_counts.json"

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with open(self._lock_path) as lock:
            fcntl.flock(lock, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            with open(path) as f:
                fcntl.flock(f, fcntl.LOCK_SH)
                data = json.load(f)
                fcntl.flock(f, fcntl.LOCK_UN)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError("Failed to read store file", {"path": str(path), "error": str(e)}) from e
        return data

    def _write_json(self, path: Path, data: Any) -> None:
        try:
            with tempfile.NamedTemporaryFile("w", dir=path.parent, delete=False, suffix=".json") as tmp:
                json.dump(data, tmp, ensure_ascii=False, default=str)
            os.replace(tmp.name, path)
        except OSError as e:
            raise StoreError("Failed to write store file", {"path": str(path), "error": str(e)}) from e

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(func, *args)

    # Profiles

    def _load_profile_sync(self, learner_id: str) -> LearnerProfile:
        data = self._read_json(self._profile_path(learner_id), None)
        if data is None:
            raise NotFoundError("Learner profile not found", {"learner_id": learner_id})
        return LearnerProfile.model_validate(data)

    def _save_profile_sync(self, profile: LearnerProfile) -> LearnerProfile:
        path = self._profile_path(profile.learner_id)
        with self._exclusive():
            stored = self._read_json(path, None)
            stored_version = stored.get("version", 0) if stored else 0
            if stored_version != profile.version:
                raise ConflictError(
                    "Profile was modified concurrently",
                    expected_version=profile.version,
                    actual_version=stored_version,
                )
            saved = profile.model_copy(deep=True)
            saved.version = stored_version + 1
            self._write_json(path, saved.model_dump(mode="json", exclude={"current_level"}))
        logger.debug("profile_saved", learner_id=saved.learner_id, version=saved.version)
        return saved

    def _delete_learner_sync(self, learner_id: str) -> None:
        with self._exclusive():
            for path in (self._profile_path(learner_id), self._states_path(learner_id)):
                path.unlink(missing_ok=True)

    async def load_profile(self, learner_id: str) -> LearnerProfile:
        return await self._run(self._load_profile_sync, learner_id)

    async def save_profile(self, profile: LearnerProfile) -> LearnerProfile:
        return await self._run(self._save_profile_sync, profile)

    async def delete_learner(self, learner_id: str) -> None:
        await self._run(self._delete_learner_sync, learner_id)

    # Chunks

    def _all_chunks(self) -> list[ContentChunk]:
        raw = self._read_json(self._chunks_path, [])
        return [chunk_adapter.validate_python(item) for item in raw]

    def _insert_chunk_sync(self, chunk: ContentChunk) -> ContentChunk:
        with self._exclusive():
            chunks = self._all_chunks()
            for existing in chunks:
                if existing.language == chunk.language and existing.normalized_text == chunk.normalized_text:
                    return existing
            chunks.append(chunk)
            self._write_json(
                self._chunks_path,
                [chunk_adapter.dump_python(c, mode="json") for c in chunks],
            )
        return chunk

    def _increment_topic_sync(self, topic: str, language: str) -> None:
        with self._exclusive():
            counts = self._read_json(self._topics_path, {})
            per_language = counts.setdefault(language, {})
            per_language[topic] = per_language.get(topic, 0) + 1
            self._write_json(self._topics_path, counts)

    async def get_chunk(self, chunk_id: str) -> ContentChunk | None:
        chunks = await self._run(self._all_chunks)
        return next((c for c in chunks if c.id == chunk_id), None)

    async def get_chunks(self, chunk_ids: list[str]) -> list[ContentChunk]:
        by_id = {c.id: c for c in await self._run(self._all_chunks)}
        return [by_id[i] for i in chunk_ids if i in by_id]

    async def find_chunk_by_key(self, normalized_text: str, language: str) -> ContentChunk | None:
        chunks = await self._run(self._all_chunks)
        return next(
            (c for c in chunks if c.language == language and c.normalized_text == normalized_text),
            None,
        )

    async def insert_chunk(self, chunk: ContentChunk) -> ContentChunk:
        return await self._run(self._insert_chunk_sync, chunk)

    async def query_chunks(self, criteria: ChunkCriteria) -> list[ContentChunk]:
        chunks = await self._run(self._all_chunks)
        return rank_chunks([c for c in chunks if criteria.matches(c)])[: criteria.limit]

    async def count_chunks(self, language: str | None = None) -> int:
        chunks = await self._run(self._all_chunks)
        return sum(1 for c in chunks if language is None or c.language == language)

    async def increment_topic_count(self, topic: str, language: str) -> None:
        await self._run(self._increment_topic_sync, topic, language)

    async def topic_counts(self, language: str) -> dict[str, int]:
        counts = await self._run(self._read_json, self._topics_path, {})
        return dict(counts.get(language, {}))

    # Chunk states

    def _load_states(self, learner_id: str) -> dict[str, LearnerChunkState]:
        raw = self._read_json(self._states_path(learner_id), {})
        return {chunk_id: LearnerChunkState.model_validate(s) for chunk_id, s in raw.items()}

    def _save_state_sync(self, state: LearnerChunkState) -> None:
        path = self._states_path(state.learner_id)
        with self._exclusive():
            raw = self._read_json(path, {})
            raw[state.chunk_id] = state.model_dump(mode="json")
            self._write_json(path, raw)

    async def get_state(self, learner_id: str, chunk_id: str) -> LearnerChunkState | None:
        states = await self._run(self._load_states, learner_id)
        return states.get(chunk_id)

    async def save_state(self, state: LearnerChunkState) -> None:
        await self._run(self._save_state_sync, state)

    async def list_states(
        self, learner_id: str, statuses: set[ChunkStatus] | None = None
    ) -> list[LearnerChunkState]:
        states = await self._run(self._load_states, learner_id)
        return [s for s in states.values() if statuses is None or s.status in statuses]


def _check_id(learner_id: str) -> str:
    if not _SAFE_ID.match(learner_id):
        raise StoreError("Invalid learner id for file storage", {"learner_id": learner_id})
    return learner_id
