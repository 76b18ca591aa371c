"""Extraction capabilities and the schema that guards their output."""

from .base import (
    ExtractionCapability,
    ExtractionHints,
    ExtractionResponse,
    FormulaRecord,
    ExampleRecord,
    DefinitionRecord,
    TheoremRecord,
    StepRecord,
)
from .pattern_extractor import PatternExtractionCapability
from .schema import CoercionOutcome, coerce_extraction_response

__all__ = [
    "CoercionOutcome",
    "DefinitionRecord",
    "ExampleRecord",
    "ExtractionCapability",
    "ExtractionHints",
    "ExtractionResponse",
    "FormulaRecord",
    "PatternExtractionCapability",
    "StepRecord",
    "TheoremRecord",
    "coerce_extraction_response",
]
