"""Engine configuration using pydantic-settings."""

import functools
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


def _find_project_root() -> Path:
    """Find project root by locating pyproject.toml."""
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists():
            return parent
    return Path(__file__).resolve().parent.parent.parent


class YamlSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads from config/settings.yaml."""

    def get_field_value(self, field_name: str) -> tuple[Any, str, bool]:
        """Not used - we implement __call__ instead."""
        return None, "", False

    def __call__(self) -> dict[str, Any]:
        """Load settings from YAML file."""
        yaml_path = _find_project_root() / "config" / "settings.yaml"
        if not yaml_path.exists():
            return {}

        with open(yaml_path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        # Flatten nested structure to match Settings field names
        flattened = {}
        if 'server' in data:
            flattened['host'] = data['server'].get('host')
            flattened['port'] = data['server'].get('port')
        if 'session' in data:
            session = data['session']
            flattened['max_new_chunks'] = session.get('max_new_chunks')
            flattened['max_review_chunks'] = session.get('max_review_chunks')
            flattened['context_chunks'] = session.get('context_chunks')
            flattened['minutes_per_activity'] = session.get('minutes_per_activity')
            flattened['signal_window_size'] = session.get('signal_window_size')
        if 'timeouts' in data:
            timeouts = data['timeouts']
            flattened['generator_timeout_seconds'] = timeouts.get('generator_seconds')
            flattened['store_timeout_seconds'] = timeouts.get('store_seconds')
            flattened['write_retry_backoff_seconds'] = timeouts.get('write_retry_backoff_seconds')
        if 'learner_defaults' in data:
            defaults = data['learner_defaults']
            flattened['default_language'] = defaults.get('language')
            flattened['default_native_language'] = defaults.get('native_language')
            flattened['default_age_band'] = defaults.get('age_band')
            flattened['default_topic'] = defaults.get('topic')
        if 'openai' in data:
            flattened['generation_model'] = data['openai'].get('generation_model')
        if 'storage' in data:
            flattened['storage_dir'] = data['storage'].get('dir')

        # Remove None values
        return {k: v for k, v in flattened.items() if v is not None}


class Settings(BaseSettings):
    """Engine settings loaded from environment and config files."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OpenAI (optional: None disables content generation)
    openai_api_key: str | None = Field(default=None)
    generation_model: str = Field(default="gpt-4o-mini")

    # Session sizing
    max_new_chunks: int = Field(default=5)
    max_review_chunks: int = Field(default=10)
    context_chunks: int = Field(default=5)
    minutes_per_activity: float = Field(default=1.5)
    signal_window_size: int = Field(default=10)

    # Timeouts / retries
    generator_timeout_seconds: float = Field(default=8.0)
    store_timeout_seconds: float = Field(default=2.0)
    write_retry_backoff_seconds: float = Field(default=0.2)

    # New learner defaults
    default_language: str = Field(default="fr")
    default_native_language: str = Field(default="en")
    default_age_band: str = Field(default="11-14")
    default_topic: str = Field(default="everyday-conversations")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Paths
    project_root: Path = Field(default_factory=_find_project_root)
    storage_dir: Path | None = Field(default=None)

    @property
    def data_dir(self) -> Path:
        d = self.storage_dir or (self.project_root / "data")
        d.mkdir(parents=True, exist_ok=True)
        return d

    @property
    def prompts_dir(self) -> Path:
        return self.project_root / "config" / "prompts"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings sources to include YAML file.

        Priority order (highest to lowest):
        1. init_settings (arguments passed to Settings())
        2. env_settings (environment variables)
        3. dotenv_settings (.env file)
        4. YamlSettingsSource (settings.yaml)
        5. file_secret_settings
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlSettingsSource(settings_cls),
            file_secret_settings,
        )


@functools.lru_cache
def get_settings() -> Settings:
    """Get engine settings singleton."""
    return Settings()
