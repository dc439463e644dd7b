"""Configuration settings for Columnar.

Storage backends selectable via ``COLUMNAR_STORAGE``:
- memory: values live for the lifetime of the process
- filesystem: one directory per column, one text file per step
- sqlite: a single ``columns.db`` under the data directory

LLM settings (``COLUMNAR_LLM_PROVIDER``, ``COLUMNAR_LLM_MODEL``,
``COLUMNAR_LLM_BASE_URL``, ...) configure the client behind session columns.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from columnar.core.logging import Verbosity
from columnar.llm.config import LLMConfig, LLMProvider
from columnar.storage import (
    StorageProvider,
    filesystem_storage,
    in_memory_storage,
    sqlite_storage,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="COLUMNAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Data directory (default: .columnar in current directory)
    data_dir: Path = Field(default=Path(".columnar"))
    storage: Literal["memory", "filesystem", "sqlite"] = "filesystem"

    # Run logs; disabled when unset
    log_dir: Path | None = None
    verbosity: int = Field(default=0, ge=0, le=2)

    # LLM settings
    llm_provider: LLMProvider = "anthropic"
    llm_model: str = "claude-sonnet-4-20250514"
    llm_base_url: str | None = None
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=1024, gt=0)
    # Falls back to the provider SDK's own key variable when unset
    llm_api_key: str | None = None

    @property
    def sqlite_path(self) -> Path:
        """Path to the SQLite column database."""
        return self.data_dir / "columns.db"

    @property
    def log_verbosity(self) -> Verbosity:
        return Verbosity(self.verbosity)

    def storage_provider(self) -> StorageProvider:
        """Build the storage provider selected by ``storage``."""
        if self.storage == "memory":
            return in_memory_storage()
        if self.storage == "sqlite":
            return sqlite_storage(str(self.sqlite_path))
        return filesystem_storage(self.data_dir)

    def llm_config(self) -> LLMConfig:
        """Provider settings for the LLM client behind session columns."""
        return LLMConfig(
            provider=self.llm_provider,
            model=self.llm_model,
            temperature=self.llm_temperature,
            max_tokens=self.llm_max_tokens,
            base_url=self.llm_base_url,
            api_key=self.llm_api_key,
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings cache (useful for testing)."""
    global _settings
    _settings = None
