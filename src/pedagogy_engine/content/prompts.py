"""Prompt construction for chunk generation.

Criteria text lives in config/prompts/*.yaml so it can be tuned without code
changes.
"""

from functools import lru_cache
from pathlib import Path

import yaml

from pedagogy_engine.models.chunk import GenerationSpec

PROMPTS_DIR = Path(__file__).parent.parent.parent.parent / "config" / "prompts"

MAX_EXCLUSIONS = 15
DEFAULT_AGE_BAND = "11-14"


@lru_cache(maxsize=8)
def _load_yaml(filename: str) -> dict:
    path = PROMPTS_DIR / filename
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


class ChunkPromptBuilder:
    """Builds system/user messages for a GenerationSpec."""

    def system_prompt(self) -> str:
        return _load_yaml("system.yaml").get("system_prompt", "")

    def difficulty_criteria(self, difficulty: int) -> dict:
        criteria = _load_yaml("difficulty.yaml")
        return criteria.get(difficulty) or criteria.get(1) or {"title": f"Level {difficulty}", "description": ""}

    def age_criteria(self, age_band: str) -> str:
        criteria = _load_yaml("age_bands.yaml")
        return criteria.get(age_band) or criteria.get(DEFAULT_AGE_BAND, "")

    def build_user_prompt(self, spec: GenerationSpec) -> str:
        difficulty = self.difficulty_criteria(spec.difficulty)
        kinds = _load_yaml("chunk_kinds.yaml")

        parts = [
            f"Generate {spec.count} language learning chunks for:",
            "",
            f"TARGET LANGUAGE: {spec.language.upper()}",
            f"NATIVE LANGUAGE: {spec.native_language.upper()} (for translations)",
            f"TOPIC: {spec.topic}",
            f"DIFFICULTY: {spec.difficulty} ({difficulty.get('title', '')})",
            "",
            "LEARNER PROFILE:",
            f"- Age group: {spec.age_band}",
        ]
        if spec.interests:
            parts.append(f"- Interests: {', '.join(spec.interests)}")
        parts.append("")

        parts.append("CHUNK KINDS NEEDED:")
        parts.extend(kinds.get(kind.value, kind.value).strip() for kind in spec.kinds)
        parts.append("")

        parts.append(f"DIFFICULTY CRITERIA FOR LEVEL {spec.difficulty}:")
        parts.append(difficulty.get("description", "").strip())
        parts.append("")

        parts.append(f"AGE APPROPRIATENESS FOR {spec.age_band}:")
        parts.append(self.age_criteria(spec.age_band).strip())
        parts.append("")

        if spec.exclude:
            parts.append("ALREADY SEEN (avoid these exact phrases):")
            parts.extend(f'- "{text}"' for text in spec.exclude[:MAX_EXCLUSIONS])
            parts.append("")

        parts.append('Return a JSON object with a "chunks" array.')
        return "\n".join(parts)


@lru_cache(maxsize=1)
def get_prompt_builder() -> ChunkPromptBuilder:
    return ChunkPromptBuilder()
