"""Document model shared by every pipeline stage.

The models follow one ownership rule. A ``SourceDocument`` is mutable and
owned by the pipeline for the whole run. Everything extracted from it
(``MathematicalContent`` and the ``AcademicDocument`` tree) is versioned:
stages build new instances instead of editing the ones they were handed.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

DocumentType = Literal["probability", "relations", "general"]
ReferenceType = Literal["example", "formula", "section", "theorem", "definition"]


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def braces_balanced(text: str) -> bool:
    depth = 0
    escaped = False
    for char in text:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


class ProcessingStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ErrorType(str, Enum):
    EXTRACTION = "extraction"
    CONTENT_LOSS = "content_loss"
    CONVERSION_FAILED = "conversion_failed"
    CONTEXT_MISSING = "context_missing"
    FORMULA_LOST = "formula_lost"
    EXAMPLE_INCOMPLETE = "example_incomplete"
    BROKEN_REF = "broken_ref"
    SYSTEM = "system"
    QUALITY_DEGRADATION = "quality_degradation"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ProcessingError(BaseModel):
    """An error recorded against a stage or a single source document."""

    id: str = Field(default_factory=lambda: new_id("error"))
    stage: str
    type: ErrorType = ErrorType.SYSTEM
    severity: Severity = Severity.HIGH
    message: str
    recoverable: bool = True
    timestamp: datetime = Field(default_factory=utc_now)
    source_document: Optional[str] = None


class ProcessingWarning(BaseModel):
    id: str = Field(default_factory=lambda: new_id("warning"))
    stage: str
    type: ErrorType = ErrorType.QUALITY_DEGRADATION
    severity: Severity = Severity.LOW
    message: str
    suggestion: Optional[str] = None
    recovery_action: Optional[str] = None
    source_document: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class SourceLocation(BaseModel):
    file_id: str
    page: Optional[int] = None
    section: Optional[str] = None
    text_position: Optional[int] = None


class SourceFile(BaseModel):
    """Handle on a raw input file.

    Either ``path`` or one of the inline payloads is set. Turning the payload
    into text is the job of a ``TextLoader``.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    path: Optional[Path] = None
    text: Optional[str] = None
    data: Optional[bytes] = None
    mime_type: str = "text/plain"
    size: int = 0

    @model_validator(mode="after")
    def _fill_size(self) -> "SourceFile":
        if self.size:
            return self
        if self.data is not None:
            self.size = len(self.data)
        elif self.text is not None:
            self.size = len(self.text.encode("utf-8"))
        elif self.path is not None and self.path.exists():
            self.size = self.path.stat().st_size
        return self

    @property
    def suffix(self) -> str:
        source = self.path.name if self.path is not None else self.name
        return Path(source).suffix.lower()


class SourceDocument(BaseModel):
    id: str = Field(default_factory=lambda: new_id("doc"))
    file: SourceFile
    type: DocumentType = "general"
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    errors: List[ProcessingError] = Field(default_factory=list)

    def fail(self, error: ProcessingError) -> None:
        self.errors.append(error)
        self.processing_status = ProcessingStatus.FAILED

    @property
    def is_failed(self) -> bool:
        return self.processing_status == ProcessingStatus.FAILED


# Mathematical content -------------------------------------------------------


class Formula(BaseModel):
    id: str
    latex: str
    original_text: str = ""
    context: str = ""
    type: Literal["inline", "display"] = "inline"
    source_location: Optional[SourceLocation] = None
    is_key_formula: bool = False
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    subtopic: Optional[str] = None
    number: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return bool(self.latex.strip()) and braces_balanced(self.latex)


class SolutionStep(BaseModel):
    step_number: int
    description: str
    formula: Optional[str] = None
    explanation: str = ""
    latex: Optional[str] = None

    @property
    def math(self) -> Optional[str]:
        return self.latex or self.formula


class WorkedExample(BaseModel):
    id: str
    title: str = ""
    problem: str = ""
    solution: List[SolutionStep] = Field(default_factory=list)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    is_complete: bool = False
    subtopic: str = "general"
    number: Optional[str] = None
    source_location: Optional[SourceLocation] = None

    @model_validator(mode="after")
    def _complete_requires_steps(self) -> "WorkedExample":
        if self.is_complete and (not self.solution or len(self.problem.strip()) < 10):
            self.is_complete = False
        return self


class Definition(BaseModel):
    id: str
    term: str
    definition: str
    context: str = ""
    related_formulas: List[str] = Field(default_factory=list)
    source_location: Optional[SourceLocation] = None


class Theorem(BaseModel):
    id: str
    name: str
    statement: str
    proof: Optional[str] = None
    conditions: List[str] = Field(default_factory=list)
    source_location: Optional[SourceLocation] = None


class MathematicalContent(BaseModel):
    """Immutable bundle of everything extracted from one source."""

    model_config = ConfigDict(frozen=True)

    formulas: List[Formula] = Field(default_factory=list)
    worked_examples: List[WorkedExample] = Field(default_factory=list)
    definitions: List[Definition] = Field(default_factory=list)
    theorems: List[Theorem] = Field(default_factory=list)

    def merge(self, other: "MathematicalContent") -> "MathematicalContent":
        """Return a new version holding both contents, first occurrence of an id wins."""

        def _union(left: list, right: list) -> list:
            seen = {item.id for item in left}
            return list(left) + [item for item in right if item.id not in seen]

        return MathematicalContent(
            formulas=_union(self.formulas, other.formulas),
            worked_examples=_union(self.worked_examples, other.worked_examples),
            definitions=_union(self.definitions, other.definitions),
            theorems=_union(self.theorems, other.theorems),
        )

    @property
    def item_count(self) -> int:
        return len(self.formulas) + len(self.worked_examples) + len(self.definitions) + len(self.theorems)

    def is_empty(self) -> bool:
        return self.item_count == 0


class ExtractedDocument(BaseModel):
    """Per-document output of the extraction stages."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    file_name: str
    domain: DocumentType = "general"
    text: str = ""
    content: MathematicalContent = Field(default_factory=MathematicalContent)
    confidence: float = 1.0
    recovered: bool = False
    warnings: List[str] = Field(default_factory=list)


# Academic structure ---------------------------------------------------------


class AcademicSection(BaseModel):
    section_number: str
    title: str
    content: str = ""
    formulas: List[Formula] = Field(default_factory=list)
    examples: List[WorkedExample] = Field(default_factory=list)
    definitions: List[Definition] = Field(default_factory=list)
    theorems: List[Theorem] = Field(default_factory=list)
    subsections: List["AcademicSection"] = Field(default_factory=list)


class DocumentPart(BaseModel):
    part_number: int
    title: str
    sections: List[AcademicSection] = Field(default_factory=list)

    @property
    def anchor(self) -> str:
        return f"part-{self.part_number}"


class TOCEntry(BaseModel):
    level: int
    title: str
    section_number: Optional[str] = None
    page_anchor: str
    children: List["TOCEntry"] = Field(default_factory=list)


class Appendix(BaseModel):
    id: str
    title: str
    content: str
    type: Literal["exercises", "answers", "references", "formulas"]


class CrossReference(BaseModel):
    id: str
    type: ReferenceType
    source_id: str
    target_id: str
    display_text: str
    is_broken: bool = False
    fallback_text: Optional[str] = None


class DocumentMetadata(BaseModel):
    generated_at: datetime = Field(default_factory=utc_now)
    source_files: List[str] = Field(default_factory=list)
    total_sections: int = 0
    total_formulas: int = 0
    total_examples: int = 0
    preservation_score: float = 0.0
    recovered: bool = False
    failed_stages: List[str] = Field(default_factory=list)
    error_summary: Optional[Dict[str, Any]] = None


class AcademicDocument(BaseModel):
    title: str
    table_of_contents: List[TOCEntry] = Field(default_factory=list)
    parts: List[DocumentPart] = Field(default_factory=list)
    cross_references: List[CrossReference] = Field(default_factory=list)
    appendices: List[Appendix] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)

    def iter_sections(self) -> Iterator[tuple[int, int, AcademicSection]]:
        """Yield ``(part_index, section_index, section)`` including subsections."""
        for part_index, part in enumerate(self.parts):
            for section_index, section in enumerate(part.sections):
                yield part_index, section_index, section
                stack = list(section.subsections)
                while stack:
                    sub = stack.pop(0)
                    yield part_index, section_index, sub
                    stack.extend(sub.subsections)

    def all_formulas(self) -> List[Formula]:
        return [formula for _, _, section in self.iter_sections() for formula in section.formulas]

    def all_examples(self) -> List[WorkedExample]:
        return [example for _, _, section in self.iter_sections() for example in section.examples]

    def element_ids(self) -> set[str]:
        ids: set[str] = set()
        for part in self.parts:
            ids.add(part.anchor)
        for _, _, section in self.iter_sections():
            ids.add(section.section_number)
            ids.update(formula.id for formula in section.formulas)
            ids.update(example.id for example in section.examples)
            ids.update(definition.id for definition in section.definitions)
            ids.update(theorem.id for theorem in section.theorems)
        return ids

    def mathematical_content(self) -> MathematicalContent:
        definitions: List[Definition] = []
        theorems: List[Theorem] = []
        for _, _, section in self.iter_sections():
            definitions.extend(section.definitions)
            theorems.extend(section.theorems)
        return MathematicalContent(
            formulas=self.all_formulas(),
            worked_examples=self.all_examples(),
            definitions=definitions,
            theorems=theorems,
        )


AcademicSection.model_rebuild()
TOCEntry.model_rebuild()

__all__ = [
    "AcademicDocument",
    "AcademicSection",
    "Appendix",
    "CrossReference",
    "Definition",
    "DocumentMetadata",
    "DocumentPart",
    "DocumentType",
    "ErrorType",
    "ExtractedDocument",
    "Formula",
    "MathematicalContent",
    "ProcessingError",
    "ProcessingStatus",
    "ProcessingWarning",
    "ReferenceType",
    "Severity",
    "SolutionStep",
    "SourceDocument",
    "SourceFile",
    "SourceLocation",
    "TOCEntry",
    "Theorem",
    "WorkedExample",
    "braces_balanced",
    "new_id",
    "utc_now",
]
