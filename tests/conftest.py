"""Shared fixtures: manual clock, in-memory store, fake generator, engine factory."""

import random

import pytest

from pedagogy_engine.clock import ManualClock
from pedagogy_engine.config import Settings
from pedagogy_engine.models.chunk import ChunkCandidate, GenerationSpec, chunk_adapter
from pedagogy_engine.session.orchestrator import PedagogyEngine
from pedagogy_engine.storage.memory import InMemoryStore


def make_chunk(chunk_id: str, difficulty: int = 2, text: str | None = None, **overrides):
    data = {
        "id": chunk_id,
        "kind": "fixed_phrase",
        "text": text or f"phrase {chunk_id}",
        "translation": f"translation {chunk_id}",
        "language": "fr",
        "difficulty": difficulty,
        "topics": frozenset({"food"}),
        "frequency_rank": 100,
    }
    data.update(overrides)
    return chunk_adapter.validate_python(data)


class FakeGenerator:
    """Returns canned candidates at the requested difficulty and records calls."""

    def __init__(self, texts: list[str] | None = None, difficulty: int | None = None):
        self.texts = texts
        self.difficulty = difficulty
        self.calls: list[GenerationSpec] = []

    async def generate(self, spec: GenerationSpec) -> list[ChunkCandidate]:
        self.calls.append(spec)
        texts = self.texts or [f"generated {spec.topic} {i}" for i in range(spec.count)]
        return [
            ChunkCandidate(
                text=text,
                translation=f"{text} (en)",
                language=spec.language,
                difficulty=self.difficulty if self.difficulty is not None else spec.difficulty,
                topics={spec.topic},
            )
            for text in texts
        ]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        storage_dir=tmp_path,
        store_timeout_seconds=1.0,
        generator_timeout_seconds=0.2,
        write_retry_backoff_seconds=0.0,
    )


@pytest.fixture
def make_engine(store, clock, settings):
    def _make(generator=None, **kwargs) -> PedagogyEngine:
        return PedagogyEngine(
            kwargs.pop("store", store),
            generator=generator,
            clock=clock,
            settings=kwargs.pop("settings", settings),
            rng=random.Random(7),
        )

    return _make


async def seed_chunks(store, chunks):
    for chunk in chunks:
        await store.insert_chunk(chunk)
