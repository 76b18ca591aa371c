"""
Base abstractions for extraction capabilities.

An extraction capability turns raw text into candidate formulas, worked
examples, definitions and theorems. Backends are swappable (an AI service,
the regex pattern extractor, a test double) and are treated as untrusted:
whatever they return is passed through ``agents.schema`` before any of it is
admitted into a document.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..core.models import SourceLocation


class ExtractionHints(BaseModel):
    """Routing hints for one extraction call.

    Attributes:
        domain: Declared domain of the source document.
        focus: Narrow slice requested by domain processors (e.g. ``"bayes"``).
        instructions: Free-form prompt fragment for AI-backed capabilities.
        max_items: Soft cap on returned records per category.
    """

    domain: str = "general"
    focus: Optional[str] = None
    instructions: Optional[str] = None
    max_items: Optional[int] = None


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    subtopic: Optional[str] = None
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class FormulaRecord(_Record):
    kind: Literal["formula"] = "formula"
    latex: str
    original_text: str = Field(default="", alias="originalText")
    context: str = ""
    type: Literal["inline", "display"] = "inline"
    is_key_formula: bool = Field(default=True, alias="isKeyFormula")
    text_position: Optional[int] = Field(default=None, alias="textPosition")


class StepRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    step_number: Optional[int] = Field(default=None, alias="stepNumber")
    description: str
    formula: Optional[str] = None
    explanation: str = ""
    latex: Optional[str] = None


class ExampleRecord(_Record):
    kind: Literal["example"] = "example"
    title: str = ""
    problem: str
    solution: List[StepRecord] = Field(default_factory=list)
    is_complete: Optional[bool] = Field(default=None, alias="isComplete")
    text_position: Optional[int] = Field(default=None, alias="textPosition")


class DefinitionRecord(_Record):
    kind: Literal["definition"] = "definition"
    term: str
    definition: str
    context: str = ""
    related_formulas: List[str] = Field(default_factory=list, alias="relatedFormulas")


class TheoremRecord(_Record):
    kind: Literal["theorem"] = "theorem"
    name: str
    statement: str
    proof: Optional[str] = None
    conditions: List[str] = Field(default_factory=list)


ExtractionRecord = Annotated[
    Union[FormulaRecord, ExampleRecord, DefinitionRecord, TheoremRecord],
    Field(discriminator="kind"),
]


class ExtractionResponse(BaseModel):
    """Typed response a well-behaved capability can return directly."""

    formulas: List[FormulaRecord] = Field(default_factory=list)
    examples: List[ExampleRecord] = Field(default_factory=list)
    definitions: List[DefinitionRecord] = Field(default_factory=list)
    theorems: List[TheoremRecord] = Field(default_factory=list)


RawExtraction = Union[ExtractionResponse, Mapping[str, Any], str]


class ExtractionCapability(ABC):
    """Abstract base class for text -> mathematical content backends."""

    name: str = "extraction"

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        self.config: Dict[str, Any] = config or {}

    @abstractmethod
    async def extract(
        self,
        text: str,
        source_location: SourceLocation,
        hints: ExtractionHints,
    ) -> RawExtraction:
        """Return candidate content for ``text``.

        Implementations may raise ``ExtractionError`` (or its timeout
        subclass). Any other exception is treated as a recoverable extraction
        failure by the calling processor.
        """


__all__ = [
    "DefinitionRecord",
    "ExampleRecord",
    "ExtractionCapability",
    "ExtractionHints",
    "ExtractionRecord",
    "ExtractionResponse",
    "FormulaRecord",
    "RawExtraction",
    "StepRecord",
    "TheoremRecord",
]
