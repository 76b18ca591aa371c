"""Validation and coercion of raw extraction responses.

Capabilities answer with whatever their backend produced: a typed
``ExtractionResponse``, a loose mapping with camelCase keys, or a JSON string
that may be wrapped in prose. Everything is funnelled through
``coerce_extraction_response`` which admits only well-formed records and turns
every rejected record into a ``ProcessingWarning`` instead of a silent default.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Type

from pydantic import BaseModel, TypeAdapter, ValidationError

from ..core.models import (
    Definition,
    ErrorType,
    Formula,
    MathematicalContent,
    ProcessingWarning,
    Severity,
    SolutionStep,
    SourceLocation,
    Theorem,
    WorkedExample,
)
from ..exceptions import SchemaCoercionError
from .base import (
    DefinitionRecord,
    ExampleRecord,
    ExtractionRecord,
    ExtractionResponse,
    FormulaRecord,
    RawExtraction,
    TheoremRecord,
)

LOGGER = logging.getLogger(__name__)

_RECORD_ADAPTER: TypeAdapter = TypeAdapter(ExtractionRecord)

# Response key -> (record kind, accepted aliases)
_COLLECTIONS: Dict[str, tuple[str, Sequence[str]]] = {
    "formulas": ("formula", ("formulas",)),
    "examples": ("example", ("examples", "workedExamples", "worked_examples")),
    "definitions": ("definition", ("definitions",)),
    "theorems": ("theorem", ("theorems",)),
}
_RECORD_TYPES: Dict[str, Type[BaseModel]] = {
    "formula": FormulaRecord,
    "example": ExampleRecord,
    "definition": DefinitionRecord,
    "theorem": TheoremRecord,
}
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class CoercionOutcome:
    content: MathematicalContent
    warnings: List[ProcessingWarning] = field(default_factory=list)
    rejected: int = 0

    @property
    def accepted(self) -> int:
        return self.content.item_count


def parse_json_payload(raw: str) -> Any:
    """Parse ``raw`` as JSON, falling back to its outermost ``{...}`` span."""
    text = _FENCE_RE.sub("", raw.strip())
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise SchemaCoercionError("Extraction response contains no JSON object", raw=raw)
    try:
        return json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise SchemaCoercionError(f"Extraction response is not valid JSON: {exc.msg}", raw=raw) from exc


def _warning(
    message: str,
    *,
    stage: str,
    source_location: Optional[SourceLocation],
    error_type: ErrorType = ErrorType.QUALITY_DEGRADATION,
    severity: Severity = Severity.LOW,
    suggestion: Optional[str] = None,
) -> ProcessingWarning:
    return ProcessingWarning(
        stage=stage,
        type=error_type,
        severity=severity,
        message=message,
        suggestion=suggestion,
        source_document=source_location.file_id if source_location else None,
    )


def _collect_records(
    payload: Mapping[str, Any],
    stage: str,
    source_location: Optional[SourceLocation],
    warnings: List[ProcessingWarning],
) -> tuple[Dict[str, List[BaseModel]], int]:
    records: Dict[str, List[BaseModel]] = {kind: [] for kind in _RECORD_TYPES}
    rejected = 0

    def _admit(kind: Optional[str], item: Any, where: str) -> None:
        nonlocal rejected
        if not isinstance(item, Mapping):
            rejected += 1
            warnings.append(
                _warning(
                    f"Dropped malformed {where} record: expected an object, got {type(item).__name__}",
                    stage=stage,
                    source_location=source_location,
                    severity=Severity.MEDIUM,
                )
            )
            return
        data = dict(item)
        if kind is not None:
            data.setdefault("kind", kind)
        try:
            record = _RECORD_ADAPTER.validate_python(data)
        except ValidationError as exc:
            rejected += 1
            fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
            warnings.append(
                _warning(
                    f"Dropped malformed {where} record ({fields or 'unknown field'})",
                    stage=stage,
                    source_location=source_location,
                    severity=Severity.MEDIUM,
                    suggestion="Check the extraction capability output format",
                )
            )
            return
        records[record.kind].append(record)

    for collection, (kind, aliases) in _COLLECTIONS.items():
        for alias in aliases:
            items = payload.get(alias)
            if items is None:
                continue
            if not isinstance(items, list):
                rejected += 1
                warnings.append(
                    _warning(
                        f"Ignored '{alias}': expected a list",
                        stage=stage,
                        source_location=source_location,
                        severity=Severity.MEDIUM,
                    )
                )
                continue
            for item in items:
                _admit(kind, item, collection.rstrip("s"))

    # Flat tagged-union form: {"records": [{"kind": "formula", ...}, ...]}
    flat = payload.get("records")
    if isinstance(flat, list):
        for item in flat:
            _admit(None, item, "tagged")
    return records, rejected


def _records_from_response(response: ExtractionResponse) -> Dict[str, List[BaseModel]]:
    return {
        "formula": list(response.formulas),
        "example": list(response.examples),
        "definition": list(response.definitions),
        "theorem": list(response.theorems),
    }


def coerce_extraction_response(
    raw: RawExtraction,
    *,
    id_prefix: str,
    source_location: Optional[SourceLocation] = None,
    min_confidence: float = 0.0,
    subtopic: Optional[str] = None,
    stage: str = "extraction",
) -> CoercionOutcome:
    """Validate ``raw`` against the record schema and build content from it.

    Ids are always assigned here as ``{id_prefix}_{kind}_{index}`` so that
    identifiers stay unique within a run regardless of what the backend sent.

    Raises:
        SchemaCoercionError: if ``raw`` is neither a mapping nor parseable JSON.
    """
    warnings: List[ProcessingWarning] = []
    rejected = 0

    if isinstance(raw, ExtractionResponse):
        records = _records_from_response(raw)
    else:
        payload: Any = parse_json_payload(raw) if isinstance(raw, str) else raw
        if not isinstance(payload, Mapping):
            raise SchemaCoercionError(
                f"Extraction response must be an object, got {type(payload).__name__}",
                raw=raw,
            )
        records, rejected = _collect_records(payload, stage, source_location, warnings)

    formulas: List[Formula] = []
    for record in records["formula"]:
        assert isinstance(record, FormulaRecord)
        if record.confidence < min_confidence:
            rejected += 1
            warnings.append(
                _warning(
                    f"Dropped low-confidence formula '{record.latex[:40]}' ({record.confidence:.2f})",
                    stage=stage,
                    source_location=source_location,
                    error_type=ErrorType.CONTENT_LOSS,
                )
            )
            continue
        formula = Formula(
            id=f"{id_prefix}_formula_{len(formulas)}",
            latex=record.latex.strip(),
            original_text=record.original_text or record.latex,
            context=record.context,
            type=record.type,
            source_location=_location(source_location, record.text_position),
            is_key_formula=record.is_key_formula,
            confidence=record.confidence,
            subtopic=record.subtopic or subtopic,
        )
        if not formula.is_valid:
            rejected += 1
            warnings.append(
                _warning(
                    f"Rejected invalid LaTeX '{record.latex[:40]}'",
                    stage=stage,
                    source_location=source_location,
                    error_type=ErrorType.CONVERSION_FAILED,
                    severity=Severity.MEDIUM,
                    suggestion="Formula must be non-empty with balanced braces",
                )
            )
            continue
        formulas.append(formula)

    examples: List[WorkedExample] = []
    for record in records["example"]:
        assert isinstance(record, ExampleRecord)
        if record.confidence < min_confidence:
            rejected += 1
            warnings.append(
                _warning(
                    f"Dropped low-confidence example '{record.title or record.problem[:40]}'",
                    stage=stage,
                    source_location=source_location,
                    error_type=ErrorType.CONTENT_LOSS,
                )
            )
            continue
        steps = [
            SolutionStep(
                step_number=step.step_number or index,
                description=step.description,
                formula=step.formula,
                explanation=step.explanation,
                latex=step.latex,
            )
            for index, step in enumerate(record.solution, start=1)
        ]
        complete = record.is_complete if record.is_complete is not None else bool(steps)
        example = WorkedExample(
            id=f"{id_prefix}_example_{len(examples)}",
            title=record.title or f"Example {len(examples) + 1}",
            problem=record.problem,
            solution=steps,
            confidence=record.confidence,
            is_complete=complete,
            subtopic=record.subtopic or subtopic or "general",
            source_location=_location(source_location, record.text_position),
        )
        if complete and not example.is_complete:
            warnings.append(
                _warning(
                    f"Example '{example.title}' marked incomplete: needs a problem statement and solution steps",
                    stage=stage,
                    source_location=source_location,
                    error_type=ErrorType.EXAMPLE_INCOMPLETE,
                )
            )
        examples.append(example)

    definitions: List[Definition] = []
    for record in _confident(records["definition"], min_confidence, stage, source_location, warnings):
        definitions.append(
            Definition(
                id=f"{id_prefix}_definition_{len(definitions)}",
                term=record.term,
                definition=record.definition,
                context=record.context,
                related_formulas=list(record.related_formulas),
                source_location=source_location,
            )
        )
    theorems: List[Theorem] = []
    for record in _confident(records["theorem"], min_confidence, stage, source_location, warnings):
        theorems.append(
            Theorem(
                id=f"{id_prefix}_theorem_{len(theorems)}",
                name=record.name,
                statement=record.statement,
                proof=record.proof,
                conditions=list(record.conditions),
                source_location=source_location,
            )
        )
    rejected += len(records["definition"]) - len(definitions) + len(records["theorem"]) - len(theorems)

    if rejected:
        LOGGER.debug("Coercion for %s rejected %d record(s)", id_prefix, rejected)
    return CoercionOutcome(
        content=MathematicalContent(
            formulas=formulas,
            worked_examples=examples,
            definitions=definitions,
            theorems=theorems,
        ),
        warnings=warnings,
        rejected=rejected,
    )


def _confident(
    records: Iterable[Any],
    min_confidence: float,
    stage: str,
    source_location: Optional[SourceLocation],
    warnings: List[ProcessingWarning],
) -> List[Any]:
    kept = []
    for record in records:
        if record.confidence >= min_confidence:
            kept.append(record)
            continue
        label = getattr(record, "term", None) or getattr(record, "name", "")
        warnings.append(
            _warning(
                f"Dropped low-confidence {record.kind} "
                f"'{label[:40]}' ({record.confidence:.2f})",
                stage=stage,
                source_location=source_location,
                error_type=ErrorType.CONTENT_LOSS,
            )
        )
    return kept


def _location(base: Optional[SourceLocation], text_position: Optional[int]) -> Optional[SourceLocation]:
    if base is None:
        return None
    if text_position is None:
        return base
    return base.model_copy(update={"text_position": text_position})


__all__ = ["CoercionOutcome", "coerce_extraction_response", "parse_json_payload"]
