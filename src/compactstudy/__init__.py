"""compactstudy: turn mathematical course material into compact study documents."""

from .exceptions import (
    CompactStudyError,
    ExtractionError,
    LayoutError,
    PipelineCancelledError,
    PipelineConfigurationError,
    PipelineExecutionError,
    PipelineTimeoutError,
)

__version__ = "0.1.0"

__all__ = [
    "CompactStudyError",
    "ExtractionError",
    "LayoutError",
    "PipelineCancelledError",
    "PipelineConfigurationError",
    "PipelineExecutionError",
    "PipelineTimeoutError",
    "__version__",
]
