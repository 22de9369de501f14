"""Configuration management for memory-recall."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from memory_recall.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.memory-recall/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.memory-recall/memory.db").expanduser()
LOCAL_CONFIG_FILENAME = "memory-recall.yaml"

OPENAI_EMBEDDINGS_BASE_URL = "https://api.openai.com/v1"


class MmrConfig(BaseModel):
    """Diversity-aware reranking configuration."""

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = True
    lambda_: float = Field(default=0.72, alias="lambda", ge=0.0, le=1.0)
    source_penalty_weight: float = Field(default=0.12, ge=0.0)
    max_per_source_soft: int = Field(default=2, ge=1)
    duplicate_threshold: float = Field(default=0.9, gt=0.0, le=1.0)


class DecayConfig(BaseModel):
    """Recency decay configuration."""

    enabled: bool = True
    half_life_days: float = Field(default=45.0, gt=0.0)
    temporal_half_life_days: float = Field(default=21.0, gt=0.0)
    evergreen_half_life_days: float = Field(default=180.0, gt=0.0)
    min_multiplier: float = Field(default=0.35, ge=0.0, le=1.0)


class SearchConfig(BaseModel):
    """Hybrid scoring and candidate pool configuration."""

    vector_weight: float = Field(default=0.7, ge=0.0)
    text_weight: float = Field(default=0.3, ge=0.0)
    candidate_multiplier: int = Field(default=4, ge=1)
    refresh_stale_sources: bool = True
    stale_reindex_budget_ms: int = Field(default=250, ge=0)
    stale_scan_ttl_ms: int = Field(default=5000, ge=0)

    @model_validator(mode="after")
    def _check_weights(self) -> "SearchConfig":
        if self.vector_weight == 0 and self.text_weight == 0:
            raise ValueError("search.vector_weight and search.text_weight cannot both be 0")
        return self


class MemoryConfig(BaseModel):
    """Memory index configuration."""

    source_dirs: list[str] = Field(default_factory=lambda: ["./memory"])
    db_path: str = str(DEFAULT_DB_PATH)
    chunk_size: int = Field(default=400, ge=1, le=100_000)
    chunk_overlap: int = Field(default=80, ge=0, le=50_000)
    embedding_provider: Literal["local", "openai"] = "local"
    embedding_model: str = "text-embedding-3-small"
    embedding_api_key: str = ""
    embedding_base_url: str = OPENAI_EMBEDDINGS_BASE_URL
    embedding_timeout_seconds: float = Field(default=30.0, gt=0.0)
    embedding_max_retries: int = Field(default=2, ge=0, le=10)
    embedding_retry_backoff_seconds: float = Field(default=0.5, ge=0.0)
    embedding_max_input_chars: int = Field(default=8000, ge=1)
    embedding_fallback_to_local: bool = False
    top_k: int = Field(default=5, ge=1, le=1_000)
    sync_on_session_start: bool = True
    search: SearchConfig = Field(default_factory=SearchConfig)
    mmr: MmrConfig = Field(default_factory=MmrConfig)
    decay: DecayConfig = Field(default_factory=DecayConfig)

    @model_validator(mode="after")
    def _check_chunking(self) -> "MemoryConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than chunk_size ({self.chunk_size})"
            )
        if not self.embedding_model.strip():
            raise ValueError("embedding_model must not be empty")
        return self

    def require_api_key(self) -> str:
        """Return the embedding API key or fail before any network I/O."""
        key = self.embedding_api_key.strip()
        if self.embedding_provider == "openai" and not key:
            raise ConfigurationError(
                "Embedding API key is required for embedding_provider=openai "
                "(set memory.embedding_api_key or OPENAI_API_KEY)"
            )
        return key

    def resolved_source_dirs(self, runtime_base: Path | str | None = None) -> list[Path]:
        """Resolve source dirs, anchoring relative paths to runtime base/cwd."""
        return [_resolve_path(raw, runtime_base) for raw in self.source_dirs]

    def resolved_db_path(self, runtime_base: Path | str | None = None) -> Path:
        return _resolve_path(self.db_path, runtime_base)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"
    file: str = ""


class Config(BaseSettings):
    """Main configuration for memory-recall."""

    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="MEMORY_RECALL_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Env and .env win over values passed in from YAML.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        config = cls.from_yaml(path)

        # Common provider env key fills an empty configured key.
        if not config.memory.embedding_api_key.strip():
            env_key = os.environ.get("OPENAI_API_KEY", "").strip()
            if env_key:
                config.memory.embedding_api_key = env_key
        return config

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True, by_alias=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def _resolve_path(raw_value: str, runtime_base: Path | str | None) -> Path:
    raw = Path(raw_value).expanduser()
    if raw.is_absolute():
        return raw.resolve()
    anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
    return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
