from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Literal, Optional

from omegaconf import OmegaConf
from pydantic import BaseModel, Field

from ..core.layout_config import CompactLayoutConfig, merge_layout_config
from .settings import Settings, settings as default_settings

CONFIG_FILENAME = "compact_study.yaml"


class PipelineConfig(BaseModel):
    max_concurrent_stages: int = Field(default=3, ge=1)
    enable_recovery: bool = Field(default=True)
    failure_threshold: int = Field(default=3, ge=1)
    timeout_ms: int = Field(default=300_000, gt=0)
    preservation_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    max_stage_attempts: int = Field(default=2, ge=1)
    retry_delay_ms: int = Field(default=1000, ge=0)
    title: str = Field(default="Compact Study Guide")


class ValidationConfig(BaseModel):
    """Preservation audit thresholds and pass criteria.

    ``strict_mode`` requires every category to meet its threshold; otherwise
    the lenient confidence and severe-issue limits apply.
    """

    formula_preservation_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    example_completeness_threshold: float = Field(default=0.80, ge=0.0, le=1.0)
    cross_reference_integrity_threshold: float = Field(default=0.90, ge=0.0, le=1.0)
    math_rendering_accuracy_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    enable_cross_reference_validation: bool = Field(default=True)
    enable_math_rendering_validation: bool = Field(default=True)
    strict_mode: bool = Field(default=False)
    min_context_chars: int = Field(default=10, ge=0)
    min_step_description_chars: int = Field(default=5, ge=0)
    valid_step_ratio: float = Field(default=0.8, ge=0.0, le=1.0)
    min_completeness_rate: float = Field(default=0.7, ge=0.0, le=1.0)
    lenient_min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    lenient_max_severe_issues: int = Field(default=3, ge=0)


class CrossReferenceConfig(BaseModel):
    enable_auto_generation: bool = Field(default=True)
    enable_similarity_candidates: bool = Field(default=True)
    validation_enabled: bool = Field(default=True)
    max_distance: int = Field(default=3, ge=0)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    reference_formats: Dict[str, str] = Field(
        default_factory=lambda: {
            "example": "see Ex. {id}",
            "formula": "see Eq. {id}",
            "section": "see Section {id}",
            "theorem": "see Theorem {id}",
            "definition": "see Definition {id}",
        }
    )


class PerformanceConfig(BaseModel):
    max_concurrent_documents: int = Field(default=3, ge=1)
    memory_threshold_mb: float = Field(default=512.0, gt=0)
    chunk_size_mb: float = Field(default=10.0, gt=0)
    optimization_level: Literal["fast", "balanced", "maximum"] = Field(default="balanced")
    memory_poll_interval_s: float = Field(default=0.1, gt=0)
    high_memory_percent: float = Field(default=85.0, gt=0, le=100)
    memory_wait_timeout_s: Optional[float] = Field(default=None, gt=0)
    chunk_memory_wait_timeout_s: float = Field(default=30.0, gt=0)
    page_count_target: Optional[int] = Field(default=None)
    content_density_target: Optional[float] = Field(default=None)


class ExtractionConfig(BaseModel):
    max_prompt_chars: int = Field(default=8000, gt=0)
    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    fallback_confidence_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    context_window_chars: int = Field(default=100, ge=0)


class LayoutSection(BaseModel):
    """Nested overrides applied on top of the default ``CompactLayoutConfig``."""

    overrides: Dict[str, Any] = Field(default_factory=dict)

    def build(self) -> CompactLayoutConfig:
        return merge_layout_config(CompactLayoutConfig(), self.overrides)


class RuntimeConfig(BaseModel):
    """Typed view over the merged YAML + environment configuration."""

    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    cross_references: CrossReferenceConfig = Field(default_factory=CrossReferenceConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    layout: LayoutSection = Field(default_factory=LayoutSection)

    def layout_config(self) -> CompactLayoutConfig:
        return self.layout.build()


def load_runtime_config(
    config_dir: Path | str | None = None,
    env: Optional[Settings] = None,
) -> RuntimeConfig:
    """Load YAML runtime configuration and apply explicit environment overrides.

    Missing files are not an error: the defaults above are a complete
    configuration on their own.
    """
    env = env or default_settings
    base_dir = Path(config_dir) if config_dir is not None else env.config_dir
    config_path = base_dir / CONFIG_FILENAME

    file_cfg = OmegaConf.load(config_path) if config_path.exists() else OmegaConf.create({})
    env_cfg = OmegaConf.create(env.runtime_overrides())

    merged = OmegaConf.merge(file_cfg, env_cfg)
    container = OmegaConf.to_container(merged, resolve=True)  # type: ignore[arg-type]
    data: Dict[str, Any] = container if isinstance(container, dict) else {}

    layout_data = data.pop("layout", None) or {}
    return RuntimeConfig(
        pipeline=PipelineConfig(**data.get("pipeline", {})),
        validation=ValidationConfig(**data.get("validation", {})),
        cross_references=CrossReferenceConfig(**data.get("cross_references", {})),
        performance=PerformanceConfig(**data.get("performance", {})),
        extraction=ExtractionConfig(**data.get("extraction", {})),
        layout=LayoutSection(overrides=layout_data),
    )


__all__ = [
    "CONFIG_FILENAME",
    "CrossReferenceConfig",
    "ExtractionConfig",
    "LayoutSection",
    "PerformanceConfig",
    "PipelineConfig",
    "RuntimeConfig",
    "ValidationConfig",
    "load_runtime_config",
]
