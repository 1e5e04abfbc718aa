"""Content generation: the generator interface and an OpenAI-backed implementation."""

import json
from typing import Any, Protocol

import structlog
from openai import AsyncOpenAI
from pydantic import ValidationError

from pedagogy_engine.content.prompts import ChunkPromptBuilder, get_prompt_builder
from pedagogy_engine.errors import GenerationError
from pedagogy_engine.models.chunk import ChunkCandidate, ChunkKind, GenerationSpec

logger = structlog.get_logger()

MAX_CHUNK_TEXT_LENGTH = 200

# Kind names older prompts (and some model outputs) still use
_KIND_ALIASES: dict[str, ChunkKind] = {
    "polyword": ChunkKind.FIXED_PHRASE,
    "fixed expression": ChunkKind.FIXED_PHRASE,
    "collocation": ChunkKind.WORD_PAIRING,
    "word partnership": ChunkKind.WORD_PAIRING,
    "utterance": ChunkKind.SITUATIONAL_UTTERANCE,
    "frame": ChunkKind.FILL_IN_PATTERN,
    "sentence frame": ChunkKind.FILL_IN_PATTERN,
    "sentence-frame": ChunkKind.FILL_IN_PATTERN,
}


class ContentGenerator(Protocol):
    """Untrusted source of new chunk candidates. May be slow or fail."""

    async def generate(self, spec: GenerationSpec) -> list[ChunkCandidate]: ...


def normalize_kind(raw: Any) -> ChunkKind:
    """Map a model-supplied kind name onto ChunkKind; unknown names become utterances."""
    name = str(raw or "").strip().lower()
    try:
        return ChunkKind(name.replace(" ", "_").replace("-", "_"))
    except ValueError:
        return _KIND_ALIASES.get(name, ChunkKind.SITUATIONAL_UTTERANCE)


def parse_candidates(payload: Any, spec: GenerationSpec) -> list[ChunkCandidate]:
    """Turn a decoded response into validated candidates, skipping bad items.

    Accepts ``{"chunks": [...]}`` or a bare list.
    """
    items = payload.get("chunks", []) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise GenerationError("Generator response has no chunk list", {"type": type(payload).__name__})

    candidates = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning("generated_chunk_skipped", index=index, reason="not an object")
            continue
        text = str(item.get("text") or "").strip()
        if not text or len(text) > MAX_CHUNK_TEXT_LENGTH:
            logger.warning("generated_chunk_skipped", index=index, reason="bad text")
            continue
        try:
            candidate = ChunkCandidate(
                text=text,
                translation=str(item.get("translation") or ""),
                kind=normalize_kind(item.get("kind") or item.get("chunkType")),
                language=spec.language,
                difficulty=item.get("difficulty", spec.difficulty),
                topics={spec.topic},
                age_bands=set(item.get("age_bands") or item.get("ageAppropriate") or []),
                notes=item.get("notes") or None,
                slots=item.get("slots") or [],
            )
        except ValidationError as e:
            logger.warning("generated_chunk_skipped", index=index, reason=str(e))
            continue
        candidates.append(candidate)
    return candidates


class OpenAIContentGenerator:
    """Generates chunk candidates with an OpenAI chat model in JSON mode.

    Args:
        api_key: OpenAI API key.
        model: Model to use for generation.
        prompt_builder: Builds the system/user messages.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        prompt_builder: ChunkPromptBuilder | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.prompt_builder = prompt_builder or get_prompt_builder()

    async def generate(self, spec: GenerationSpec) -> list[ChunkCandidate]:
        """Request ``spec.count`` chunks.

        Raises:
            GenerationError: If the API call fails or the response is not usable JSON.
        """
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.prompt_builder.system_prompt()},
                    {"role": "user", "content": self.prompt_builder.build_user_prompt(spec)},
                ],
                temperature=0.7,
                response_format={"type": "json_object"},
            )
            content = response.choices[0].message.content or ""
            payload = json.loads(content)
        except json.JSONDecodeError as e:
            raise GenerationError("Generator returned invalid JSON", {"error": str(e)}) from e
        except Exception as e:
            logger.exception("chunk_generation_failed", topic=spec.topic, difficulty=spec.difficulty)
            raise GenerationError("Chunk generation request failed", {"error": str(e)}) from e

        candidates = parse_candidates(payload, spec)
        logger.info(
            "chunk_generation_complete",
            topic=spec.topic,
            difficulty=spec.difficulty,
            requested=spec.count,
            received=len(candidates),
        )
        return candidates
