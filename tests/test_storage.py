"""Tests for the in-memory and JSON file stores."""

import pytest

from conftest import make_chunk
from pedagogy_engine.errors import ConflictError, NotFoundError, StoreError
from pedagogy_engine.models.chunk import ChunkCriteria, ChunkSlot
from pedagogy_engine.models.chunk_state import ChunkStatus
from pedagogy_engine.models.learner_profile import LearnerProfile
from pedagogy_engine.scheduling.repetition import new_state
from pedagogy_engine.storage.json_store import JsonFileStore
from pedagogy_engine.storage.memory import InMemoryStore


@pytest.fixture(params=["memory", "json"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStore()
    return JsonFileStore(tmp_path / "store")


class TestProfiles:
    async def test_missing_profile(self, any_store):
        with pytest.raises(NotFoundError):
            await any_store.load_profile("nobody")

    async def test_save_bumps_version(self, any_store):
        saved = await any_store.save_profile(LearnerProfile(learner_id="learner-1"))
        assert saved.version == 1
        again = await any_store.save_profile(saved)
        assert again.version == 2
        loaded = await any_store.load_profile("learner-1")
        assert loaded.version == 2

    async def test_stale_version_conflicts(self, any_store):
        saved = await any_store.save_profile(LearnerProfile(learner_id="learner-1"))
        await any_store.save_profile(saved)

        with pytest.raises(ConflictError) as exc_info:
            await any_store.save_profile(saved)
        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2

    async def test_round_trip_keeps_fields(self, any_store, clock):
        profile = LearnerProfile(learner_id="learner-1", target_language="de", last_session_at=clock.now())
        profile.add_explicit_interests(["football", "music"])
        profile.chunk_counts.apply_transition(None, ChunkStatus.LEARNING)
        await any_store.save_profile(profile)

        loaded = await any_store.load_profile("learner-1")

        assert loaded.target_language == "de"
        assert loaded.explicit_interests == {"football", "music"}
        assert loaded.chunk_counts.learning == 1
        assert loaded.last_session_at == clock.now()

    async def test_delete_cascades(self, any_store, clock):
        await any_store.save_profile(LearnerProfile(learner_id="learner-1"))
        await any_store.save_state(new_state("learner-1", "c1", clock.now()))

        await any_store.delete_learner("learner-1")

        with pytest.raises(NotFoundError):
            await any_store.load_profile("learner-1")
        assert await any_store.list_states("learner-1") == []


class TestChunks:
    async def test_insert_is_insert_if_absent(self, any_store):
        first = await any_store.insert_chunk(make_chunk("a", text="Bonjour"))
        second = await any_store.insert_chunk(make_chunk("b", text="bonjour!"))
        assert second.id == first.id == "a"
        assert await any_store.count_chunks("fr") == 1

    async def test_fill_in_pattern_round_trip(self, any_store):
        chunk = make_chunk(
            "frame",
            kind="fill_in_pattern",
            slots=[ChunkSlot(position=1, placeholder="___", examples=["un café"])],
        )
        await any_store.insert_chunk(chunk)
        loaded = await any_store.get_chunk("frame")
        assert loaded == chunk

    async def test_get_chunks_in_request_order(self, any_store):
        for chunk_id in ["a", "b", "c"]:
            await any_store.insert_chunk(make_chunk(chunk_id))
        chunks = await any_store.get_chunks(["c", "gone", "a"])
        assert [c.id for c in chunks] == ["c", "a"]

    async def test_query_ranked(self, any_store):
        for chunk in [make_chunk("b", frequency_rank=3), make_chunk("a", frequency_rank=3), make_chunk("c", frequency_rank=1)]:
            await any_store.insert_chunk(chunk)
        result = await any_store.query_chunks(ChunkCriteria(language="fr", limit=2))
        assert [c.id for c in result] == ["c", "a"]

    async def test_topic_counts(self, any_store):
        await any_store.increment_topic_count("food", "fr")
        await any_store.increment_topic_count("food", "fr")
        await any_store.increment_topic_count("food", "de")
        assert await any_store.topic_counts("fr") == {"food": 2}


class TestStates:
    async def test_save_and_filter(self, any_store, clock):
        await any_store.save_state(new_state("learner-1", "c1", clock.now()))
        fragile = new_state("learner-1", "c2", clock.now()).model_copy(update={"status": ChunkStatus.FRAGILE})
        await any_store.save_state(fragile)

        assert len(await any_store.list_states("learner-1")) == 2
        only_fragile = await any_store.list_states("learner-1", {ChunkStatus.FRAGILE})
        assert [s.chunk_id for s in only_fragile] == ["c2"]
        assert (await any_store.get_state("learner-1", "c2")).status == ChunkStatus.FRAGILE
        assert await any_store.get_state("learner-1", "missing") is None


class TestJsonFileStore:
    async def test_rejects_path_like_ids(self, tmp_path):
        store = JsonFileStore(tmp_path)
        with pytest.raises(StoreError):
            await store.load_profile("../escape")

    async def test_survives_reopen(self, tmp_path):
        await JsonFileStore(tmp_path).save_profile(LearnerProfile(learner_id="learner-1"))
        loaded = await JsonFileStore(tmp_path).load_profile("learner-1")
        assert loaded.version == 1

    async def test_corrupt_file_is_store_error(self, tmp_path):
        store = JsonFileStore(tmp_path)
        (tmp_path / "profiles" / "learner-1.json").write_text("{not json")
        with pytest.raises(StoreError):
            await store.load_profile("learner-1")
