from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LogFormatChoice = Literal["json", "console"]


class Settings(BaseSettings):
    """Environment-driven configuration for runtime toggles.

    Values are read from environment variables with prefix ``COMPACTSTUDY_``
    and optionally from a local ``.env`` file at the project root. Fields set
    here take precedence over the YAML runtime configuration.
    """

    model_config = SettingsConfigDict(
        env_prefix="COMPACTSTUDY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Logging ---
    log_level: str = Field(
        "INFO",
        description="Root log level.",
    )
    log_format: LogFormatChoice = Field(
        "json",
        description="Structured log renderer.",
    )

    # --- Config Files ---
    config_dir: Path = Field(
        Path("config"),
        description="Directory holding compact_study.yaml.",
    )

    # --- Pipeline ---
    max_concurrent_stages: Optional[int] = Field(
        None,
        description="Upper bound on concurrently running stages.",
    )
    timeout_ms: Optional[int] = Field(
        None,
        description="Global pipeline timeout in milliseconds.",
    )
    failure_threshold: Optional[int] = Field(
        None,
        description="Failures tolerated per stage before recovery is skipped.",
    )
    enable_recovery: Optional[bool] = Field(
        None,
        description="Invoke processor recovery after stage failures.",
    )

    # --- Performance ---
    max_concurrent_documents: Optional[int] = Field(
        None,
        description="Upper bound on documents processed at once.",
    )
    memory_threshold_mb: Optional[float] = Field(
        None,
        description="Memory usage above which document admission pauses.",
    )
    chunk_size_mb: Optional[float] = Field(
        None,
        description="Chunk size for large inputs.",
    )

    # --- Validation ---
    strict_validation: Optional[bool] = Field(
        None,
        description="Use strict pass criteria for preservation audits.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, value: object) -> str:
        if value is None:
            return "INFO"
        return str(value).upper()

    def runtime_overrides(self) -> dict:
        """Return the nested runtime-config keys that the environment sets explicitly."""
        mapping = {
            "max_concurrent_stages": ("pipeline", "max_concurrent_stages"),
            "timeout_ms": ("pipeline", "timeout_ms"),
            "failure_threshold": ("pipeline", "failure_threshold"),
            "enable_recovery": ("pipeline", "enable_recovery"),
            "max_concurrent_documents": ("performance", "max_concurrent_documents"),
            "memory_threshold_mb": ("performance", "memory_threshold_mb"),
            "chunk_size_mb": ("performance", "chunk_size_mb"),
            "strict_validation": ("validation", "strict_mode"),
        }
        overrides: dict = {}
        for field_name, (section, key) in mapping.items():
            value = getattr(self, field_name)
            if value is not None:
                overrides.setdefault(section, {})[key] = value
        return overrides


# Global singleton used by library code.
settings = Settings()


__all__ = [
    "LogFormatChoice",
    "Settings",
    "settings",
]
