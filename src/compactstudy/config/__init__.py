"""
Typed configuration package for compactstudy.

This package exposes:
- ``Settings`` / ``settings``: environment-driven toggles (pydantic-settings).
- Typed section models for the pipeline, validator, cross-references,
  performance optimizer, extraction and layout.
- ``load_runtime_config``: loader for the YAML runtime configuration.
"""

from .settings import LogFormatChoice, Settings, settings
from .runtime import (
    CrossReferenceConfig,
    ExtractionConfig,
    LayoutSection,
    PerformanceConfig,
    PipelineConfig,
    RuntimeConfig,
    ValidationConfig,
    load_runtime_config,
)

__all__ = [
    "CrossReferenceConfig",
    "ExtractionConfig",
    "LayoutSection",
    "LogFormatChoice",
    "PerformanceConfig",
    "PipelineConfig",
    "RuntimeConfig",
    "Settings",
    "ValidationConfig",
    "load_runtime_config",
    "settings",
]
