"""Tests for chunk generation and prompt construction."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from pedagogy_engine.content.generator import OpenAIContentGenerator, normalize_kind, parse_candidates
from pedagogy_engine.content.prompts import ChunkPromptBuilder
from pedagogy_engine.errors import GenerationError
from pedagogy_engine.models.chunk import ChunkKind, GenerationSpec


@pytest.fixture
def spec():
    return GenerationSpec(
        language="fr",
        native_language="en",
        topic="food",
        difficulty=2,
        age_band="7-10",
        interests=["cooking"],
        exclude=["Bonjour"],
        count=3,
    )


def _client_returning(content: str) -> MagicMock:
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    response = MagicMock()
    response.choices = [choice]
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response)
    return client


class TestNormalizeKind:
    @pytest.mark.parametrize("raw, expected", [
        ("fixed_phrase", ChunkKind.FIXED_PHRASE),
        ("polyword", ChunkKind.FIXED_PHRASE),
        ("Collocation", ChunkKind.WORD_PAIRING),
        ("utterance", ChunkKind.SITUATIONAL_UTTERANCE),
        ("sentence frame", ChunkKind.FILL_IN_PATTERN),
        ("fill-in pattern", ChunkKind.FILL_IN_PATTERN),
        ("something else", ChunkKind.SITUATIONAL_UTTERANCE),
        (None, ChunkKind.SITUATIONAL_UTTERANCE),
    ])
    def test_mapping(self, raw, expected):
        assert normalize_kind(raw) == expected


class TestParseCandidates:
    def test_skips_invalid_items(self, spec):
        payload = {
            "chunks": [
                {"text": "J'ai faim", "translation": "I'm hungry", "kind": "utterance", "difficulty": 9},
                {"text": "", "translation": "empty"},
                "not an object",
                {"text": "Je voudrais ___", "kind": "frame"},
                {"text": "Je voudrais ___", "kind": "frame", "slots": [{"position": 2, "placeholder": "___"}]},
            ]
        }
        candidates = parse_candidates(payload, spec)

        assert [c.text for c in candidates] == ["J'ai faim", "Je voudrais ___"]
        assert candidates[0].difficulty == 5
        assert candidates[0].topics == {"food"}
        assert candidates[1].kind == ChunkKind.FILL_IN_PATTERN

    def test_accepts_bare_list(self, spec):
        candidates = parse_candidates([{"text": "Miam", "translation": "Yum"}], spec)
        assert candidates[0].difficulty == 2
        assert candidates[0].language == "fr"

    def test_rejects_non_list(self, spec):
        with pytest.raises(GenerationError):
            parse_candidates({"chunks": "nope"}, spec)


class TestOpenAIContentGenerator:
    async def test_generate_uses_json_mode(self, spec):
        client = _client_returning(json.dumps({"chunks": [{"text": "Bon appétit", "translation": "Enjoy"}]}))
        generator = OpenAIContentGenerator(api_key="test-key", client=client)

        candidates = await generator.generate(spec)

        assert [c.text for c in candidates] == ["Bon appétit"]
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["model"] == "gpt-4o-mini"
        assert "TOPIC: food" in kwargs["messages"][1]["content"]

    async def test_invalid_json_raises(self, spec):
        generator = OpenAIContentGenerator(api_key="test-key", client=_client_returning("not json"))
        with pytest.raises(GenerationError):
            await generator.generate(spec)

    async def test_api_failure_raises(self, spec):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=RuntimeError("boom"))
        generator = OpenAIContentGenerator(api_key="test-key", client=client)
        with pytest.raises(GenerationError):
            await generator.generate(spec)


class TestChunkPromptBuilder:
    def test_user_prompt_sections(self, spec):
        prompt = ChunkPromptBuilder().build_user_prompt(spec)

        assert "Generate 3 language learning chunks" in prompt
        assert "TARGET LANGUAGE: FR" in prompt
        assert "Elementary (A2)" in prompt
        assert "AGE APPROPRIATENESS FOR 7-10" in prompt
        assert "Short chunks" in prompt
        assert '- "Bonjour"' in prompt
        assert "Interests: cooking" in prompt

    def test_system_prompt_loaded(self):
        assert '"chunks"' in ChunkPromptBuilder().system_prompt()

    def test_unknown_age_band_falls_back(self):
        assert "Social interactions" in ChunkPromptBuilder().age_criteria("99-100")
