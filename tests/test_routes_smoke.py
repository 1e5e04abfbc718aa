"""Smoke tests for API routes."""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import make_chunk, seed_chunks
from pedagogy_engine.errors import StoreError
from pedagogy_engine.main import create_app
from pedagogy_engine.session.orchestrator import PedagogyEngine


@pytest.fixture
def engine(store, clock, settings):
    asyncio.run(seed_chunks(store, [make_chunk("d2-a"), make_chunk("d2-b")]))
    return PedagogyEngine(store, clock=clock, settings=settings, rng=random.Random(7))


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as c:
        yield c


def _outcome(client, chunk_id="d2-a", correct=True):
    return client.post(
        "/api/learners/learner-1/outcomes",
        json={"chunk_id": chunk_id, "outcome": {"correct": correct, "latency_ms": 1200}},
    )


class TestHealthCheck:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestSessions:
    def test_prepare_session(self, client):
        response = client.post("/api/learners/learner-1/sessions", json={"topic": "food", "duration_minutes": 6})
        assert response.status_code == 200
        data = response.json()
        assert [c["id"] for c in data["target_chunks"]] == ["d2-a", "d2-b"]
        assert data["target_chunks"][0]["kind"] == "fixed_phrase"
        assert data["review_chunks"] == []
        assert data["degraded"] is False

    def test_topic_optional(self, client):
        response = client.post("/api/learners/learner-1/sessions", json={"duration_minutes": 6})
        assert response.status_code == 200
        assert response.json()["topic"] == "everyday-conversations"

    def test_invalid_duration(self, client):
        response = client.post("/api/learners/learner-1/sessions", json={"topic": "food", "duration_minutes": 0})
        assert response.status_code == 422

    def test_end_session_twice(self, client):
        plan = client.post("/api/learners/learner-1/sessions", json={"topic": "food"}).json()
        body = {"session_id": plan["session_id"], "duration_minutes": 9}

        first = client.post("/api/learners/learner-1/sessions/end", json=body)
        second = client.post("/api/learners/learner-1/sessions/end", json=body)

        assert first.json()["session_id"] == plan["session_id"]
        assert first.json()["recorded"] is True
        assert first.json()["activities_completed"] == 0
        assert second.status_code == 200
        assert second.json()["recorded"] is False


class TestOutcomes:
    def test_outcome_returns_directive(self, client):
        client.post("/api/learners/learner-1/sessions", json={"topic": "food"})
        response = _outcome(client)
        assert response.status_code == 200
        assert response.json()["kind"] == "none"

    def test_write_failure_returns_directive_with_503(self, client, store):
        client.post("/api/learners/learner-1/sessions", json={"topic": "food"})
        store.save_profile = AsyncMock(side_effect=StoreError("disk full"))

        response = _outcome(client)

        assert response.status_code == 503
        assert response.json()["directive"]["kind"] == "none"

    def test_load_failure_is_503(self, client, store):
        store.load_profile = AsyncMock(side_effect=StoreError("down"))
        response = _outcome(client)
        assert response.status_code == 503

    def test_invalid_outcome(self, client):
        response = client.post("/api/learners/learner-1/outcomes", json={"chunk_id": "d2-a"})
        assert response.status_code == 422


class TestLearnerQueries:
    def test_due_count(self, client):
        _outcome(client)
        response = client.get("/api/learners/learner-1/due-count")
        assert response.json() == {"learner_id": "learner-1", "due": 0}

    def test_next_activity_without_session(self, client):
        response = client.get("/api/learners/learner-1/next-activity")
        assert response.status_code == 200
        assert response.json() is None

    def test_next_activity_and_should_end(self, client):
        client.post("/api/learners/learner-1/sessions", json={"topic": "food"})

        activity = client.get("/api/learners/learner-1/next-activity").json()
        should_end = client.get("/api/learners/learner-1/should-end").json()

        assert activity["chunk_ids"] == ["d2-a", "d2-b"]
        assert activity["is_review"] is False
        assert should_end == {"should_end": False, "reason": ""}

    def test_decay(self, client):
        response = client.post("/api/learners/learner-1/decay")
        assert response.json() == {"learner_id": "learner-1", "decayed": 0}


class TestInterests:
    def test_add_interests(self, client):
        response = client.post("/api/learners/learner-1/interests", json={"interests": ["music", "art"]})
        assert response.status_code == 200
        assert response.json() == {"learner_id": "learner-1", "interests": ["art", "music"]}

        plan = client.post("/api/learners/learner-1/sessions", json={}).json()
        assert plan["topic"] in {"art", "music"}

    def test_empty_interests_rejected(self, client):
        response = client.post("/api/learners/learner-1/interests", json={"interests": []})
        assert response.status_code == 422

    def test_detected_interest(self, client):
        response = client.post(
            "/api/learners/learner-1/detected-interests", json={"topic": "cars", "strength": 0.9}
        )
        assert response.json()["interests"] == ["cars"]

    def test_detected_interest_strength_bounded(self, client):
        response = client.post(
            "/api/learners/learner-1/detected-interests", json={"topic": "cars", "strength": 3}
        )
        assert response.status_code == 422

    def test_write_failure_is_503(self, client, store):
        store.save_profile = AsyncMock(side_effect=StoreError("disk full"))
        response = client.post("/api/learners/learner-1/interests", json={"interests": ["music"]})
        assert response.status_code == 503


class TestTopics:
    def test_topic_counts(self, client, store):
        asyncio.run(store.increment_topic_count("food", "fr"))
        response = client.get("/api/topics")
        assert response.json() == {"language": "fr", "topics": {"food": 1}}

    def test_topics_unavailable(self, client, store):
        store.topic_counts = AsyncMock(side_effect=StoreError("down"))
        response = client.get("/api/topics", params={"language": "de"})
        assert response.status_code == 503
