"""The standard four-stage pipeline and its domain presets."""
from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Mapping, Optional

from ..agents.base import ExtractionCapability
from ..config.runtime import RuntimeConfig, load_runtime_config
from ..core.events import PipelineEvents
from ..processors.base import ProcessorRegistry, TextLoader
from ..processors.cross_reference import CrossReferenceProcessor
from ..processors.file_processor import FileProcessingProcessor
from ..processors.math_content import MathContentProcessor
from ..processors.probability import ProbabilityContentProcessor
from ..processors.relations import RelationsContentProcessor
from ..processors.structure import AcademicStructureProcessor
from .orchestrator import ProcessingPipeline
from .performance import PerformanceOptimizer
from .preservation import ContentPreservationValidator

LOGGER = logging.getLogger(__name__)

FILE_PROCESSING = "file-processing"
MATH_EXTRACTION = "math-extraction"
STRUCTURE_ORGANIZATION = "structure-organization"
CROSS_REFERENCE_GENERATION = "cross-reference-generation"
STANDARD_STAGES = (FILE_PROCESSING, MATH_EXTRACTION, STRUCTURE_ORGANIZATION, CROSS_REFERENCE_GENERATION)

PROBABILITY_SECTIONS = (
    "Probability Basics",
    "Complements and Unions",
    "Conditional Probability",
    "Bayes' Theorem",
    "Independence",
    "Bernoulli Trials",
    "Random Variables",
    "Expected Value & Variance",
)
RELATIONS_SECTIONS = (
    "Definitions",
    "Properties (Reflexive, Symmetric, Transitive)",
    "Combining Relations",
    "N-ary Relations",
    "SQL-style Operations",
)

Preset = Literal["standard", "probability", "relations", "combined"]

PRESETS: Dict[str, Dict[str, Any]] = {
    "standard": {
        "part_titles": {"probability": "Discrete Probability", "relations": "Relations"},
    },
    "probability": {
        "title": "Discrete Probability Study Guide",
        "part_titles": {"probability": "Discrete Probability"},
        "section_titles": {"probability": PROBABILITY_SECTIONS},
    },
    "relations": {
        "title": "Relations Study Guide",
        "part_titles": {"relations": "Relations"},
        "section_titles": {"relations": RELATIONS_SECTIONS},
    },
    "combined": {
        "title": "Compact Study Guide: Discrete Probability & Relations",
        "part_titles": {"probability": "Discrete Probability", "relations": "Relations"},
        "section_titles": {"probability": PROBABILITY_SECTIONS, "relations": RELATIONS_SECTIONS},
    },
}


def build_standard_pipeline(
    runtime: Optional[RuntimeConfig] = None,
    *,
    preset: Preset = "standard",
    capability: Optional[ExtractionCapability] = None,
    loader: Optional[TextLoader] = None,
    events: Optional[PipelineEvents] = None,
    structure_config: Optional[Mapping[str, Any]] = None,
    audit: bool = True,
) -> ProcessingPipeline:
    """Wire the four standard stages, each depending on the one before it.

    ``structure_config`` entries override the preset; ``audit`` attaches a
    ``ContentPreservationValidator`` to the run.
    """
    if preset not in PRESETS:
        raise ValueError(f"Unknown preset '{preset}'; expected one of {', '.join(PRESETS)}")
    runtime = runtime or load_runtime_config()
    extraction = runtime.extraction

    specialists = {
        "probability": ProbabilityContentProcessor(capability, loader=loader, extraction=extraction),
        "relations": RelationsContentProcessor(capability, loader=loader, extraction=extraction),
    }
    registry = ProcessorRegistry(
        [
            FileProcessingProcessor(
                capability,
                loader=loader,
                specialists=specialists,
                optimizer=PerformanceOptimizer(runtime.performance),
                extraction=extraction,
            ),
            MathContentProcessor(extraction),
            AcademicStructureProcessor(),
            CrossReferenceProcessor(runtime.cross_references),
            *specialists.values(),
        ]
    )
    pipeline = ProcessingPipeline(
        runtime.pipeline,
        registry=registry,
        events=events,
        validator=ContentPreservationValidator(runtime.validation) if audit else None,
    )

    structure = {"title": runtime.pipeline.title, **PRESETS[preset], **dict(structure_config or {})}
    pipeline.config = pipeline.config.model_copy(update={"title": structure["title"]})
    pipeline.add_stage(
        FILE_PROCESSING,
        "File Processing",
        FileProcessingProcessor.processor_id,
        {"confidence_threshold": extraction.confidence_threshold},
    )
    pipeline.add_stage(
        MATH_EXTRACTION,
        "Mathematical Content Extraction",
        MathContentProcessor.processor_id,
        {"confidence_threshold": min(0.5, extraction.confidence_threshold)},
        depends_on=[FILE_PROCESSING],
    )
    pipeline.add_stage(
        STRUCTURE_ORGANIZATION,
        "Academic Structure Organization",
        AcademicStructureProcessor.processor_id,
        structure,
        depends_on=[MATH_EXTRACTION],
    )
    pipeline.add_stage(
        CROSS_REFERENCE_GENERATION,
        "Cross-Reference Generation",
        CrossReferenceProcessor.processor_id,
        depends_on=[STRUCTURE_ORGANIZATION],
    )
    LOGGER.debug("Built '%s' pipeline with stages %s", preset, ", ".join(STANDARD_STAGES))
    return pipeline


__all__ = [
    "CROSS_REFERENCE_GENERATION",
    "FILE_PROCESSING",
    "MATH_EXTRACTION",
    "PRESETS",
    "STANDARD_STAGES",
    "STRUCTURE_ORGANIZATION",
    "build_standard_pipeline",
]
