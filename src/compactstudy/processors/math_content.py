"""Second stage: refine extracted mathematical content per document."""
from __future__ import annotations

import logging
import re
from time import perf_counter
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..agents.base import DefinitionRecord, ExtractionResponse, TheoremRecord
from ..agents.schema import coerce_extraction_response
from ..config.runtime import ExtractionConfig
from ..core.models import (
    ErrorType,
    ExtractedDocument,
    Formula,
    MathematicalContent,
    ProcessingError,
    ProcessingWarning,
    Severity,
    SourceLocation,
)
from ..core.result import RecoverableError
from .base import ContentProcessor, ProcessingMetrics, ProcessingResult, ProcessorValidation, StageInput
from .domain import dedupe_content

LOGGER = logging.getLogger(__name__)

_LABELS = r"Example|Problem|Exercise|Solution|Step|Theorem|Definition|Note|Proof|Answer"

_DEFINITION_RE = re.compile(
    r"\bDefinition\s*(?:\d+(?:\.\d+)*)?\s*(?:\((?P<term>[^)]+)\))?\s*[:.]\s*(?P<body>[^\n]+)",
)
DEFINITION_PATTERNS: Dict[str, Sequence[re.Pattern[str]]] = {
    "probability": (
        _DEFINITION_RE,
        re.compile(rf"(?m)^\s*(?!(?:{_LABELS})\b)(?P<term>[A-Z][A-Za-z' -]{{2,40}}):\s*(?P<body>[^\n]{{10,}})"),
    ),
    "relations": (
        _DEFINITION_RE,
        re.compile(
            r"\bA\s+relation\s+(?:R\s+)?(?:on\s+(?:a\s+set\s+)?[A-Z]\s+)?is\s+(?:called\s+)?"
            r"(?P<term>[a-z-]+)\s+if\s+(?P<body>[^.\n]+\.)",
            re.IGNORECASE,
        ),
    ),
    "general": (_DEFINITION_RE,),
}

_NUMBERED = r"\s*(?P<number>\d+(?:\.\d+)*)?\s*(?:\((?P<name>[^)]+)\))?\s*[:.]\s*(?P<body>[^\n]+)"
THEOREM_PATTERNS: Dict[str, Sequence[re.Pattern[str]]] = {
    "probability": (
        re.compile(rf"\b(?P<label>Theorem|Law|Rule){_NUMBERED}"),
        re.compile(
            r"(?P<name>Bayes['’]?s?\s*(?:Theorem|Rule|Law)|Law of Total Probability)\s*[:.]\s*(?P<body>[^\n]+)",
            re.IGNORECASE,
        ),
    ),
    "relations": (re.compile(rf"\b(?P<label>Theorem|Property|Lemma){_NUMBERED}"),),
    "general": (re.compile(rf"\b(?P<label>Theorem|Lemma|Corollary){_NUMBERED}"),),
}

_KEY_CONSTRUCT_RE = re.compile(r"\\frac|\\sum|\\prod|\\int|\bP\s*\(|\bE\s*\[|Var|=|\\binom")


def _context(text: str, start: int, end: int, window: int) -> str:
    return " ".join(text[max(0, start - window) : min(len(text), end + window)].split())


def _term_from_body(body: str) -> str:
    head = re.split(r"\s+(?:is|are)\s+", body, maxsplit=1)[0]
    words = head.split()
    return " ".join(words[:6]).rstrip(",;:")


def detect_definitions(text: str, domain: str, window: int = 100) -> List[DefinitionRecord]:
    records: List[DefinitionRecord] = []
    seen: set[str] = set()
    for regex in DEFINITION_PATTERNS.get(domain, DEFINITION_PATTERNS["general"]):
        for match in regex.finditer(text):
            body = " ".join(match.group("body").split())
            term = (match.group("term") or _term_from_body(body)).strip()
            if not term or term.lower() in seen:
                continue
            seen.add(term.lower())
            records.append(
                DefinitionRecord(
                    term=term,
                    definition=body,
                    context=_context(text, match.start(), match.end(), window),
                    confidence=0.8,
                )
            )
    return records


def detect_theorems(text: str, domain: str) -> List[TheoremRecord]:
    records: List[TheoremRecord] = []
    seen: set[str] = set()
    for regex in THEOREM_PATTERNS.get(domain, THEOREM_PATTERNS["general"]):
        for match in regex.finditer(text):
            groups = match.groupdict()
            statement = " ".join(match.group("body").split())
            if statement.lower() in seen:
                continue
            seen.add(statement.lower())
            name = groups.get("name") or " ".join(
                part for part in (groups.get("label"), groups.get("number")) if part
            )
            records.append(TheoremRecord(name=name.strip() or "Theorem", statement=statement, confidence=0.8))
    return records


def is_key_formula(formula: Formula, related: set[str]) -> bool:
    if formula.id in related or formula.latex in related:
        return True
    if formula.type == "display":
        return True
    return bool(_KEY_CONSTRUCT_RE.search(formula.latex)) and formula.confidence >= 0.8


class MathContentProcessor(ContentProcessor):
    processor_id = "math-content-processor"
    name = "Math content processor"

    def __init__(self, extraction: Optional[ExtractionConfig] = None) -> None:
        self.extraction = extraction or ExtractionConfig()

    def validate(self, input: StageInput, config: Mapping[str, Any]) -> ProcessorValidation:
        documents = input.extracted_documents()
        if not documents:
            return ProcessorValidation(passed=False, details="No documents with extracted content found")
        return ProcessorValidation(passed=True, details=f"{len(documents)} document(s) ready for math processing")

    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        started = perf_counter()
        documents = input.extracted_documents() or []
        threshold = float(config.get("confidence_threshold", self.extraction.confidence_threshold))
        errors: List[ProcessingError] = []
        warnings: List[ProcessingWarning] = []
        outputs: List[ExtractedDocument] = []

        if not documents:
            warnings.append(self.warning("No extracted content to refine", warning_type=ErrorType.CONTENT_LOSS))

        for document in documents:
            # Recovered documents were extracted at the fallback threshold already.
            doc_threshold = min(threshold, self.extraction.fallback_confidence_threshold) if document.recovered else threshold
            try:
                refined, doc_warnings = self.refine(document, doc_threshold)
            except Exception as exc:
                LOGGER.warning("Math extraction failed for %s: %s", document.file_name, exc)
                errors.append(
                    self.error(
                        f"Failed to extract math content from {document.file_name}: {exc}",
                        severity=Severity.LOW,
                        document_id=document.document_id,
                    )
                )
                outputs.append(document)
                continue
            warnings.extend(doc_warnings)
            outputs.append(refined)

        formulas = sum(len(doc.content.formulas) for doc in outputs)
        examples = sum(len(doc.content.worked_examples) for doc in outputs)
        return ProcessingResult(
            success=bool(outputs),
            data=outputs,
            errors=errors,
            warnings=warnings,
            metrics=ProcessingMetrics(
                processing_time_ms=(perf_counter() - started) * 1000,
                content_preserved=(len(outputs) - len(errors)) / len(documents) if documents else 0.0,
                quality_score=0.85 if formulas or examples else 0.5,
                items_processed=formulas + examples,
            ),
        )

    def refine(self, document: ExtractedDocument, threshold: float) -> tuple[ExtractedDocument, List[ProcessingWarning]]:
        """Return a new version of ``document`` with filtered and enriched content."""
        warnings: List[ProcessingWarning] = []
        location = SourceLocation(file_id=document.document_id)
        detected = coerce_extraction_response(
            ExtractionResponse(
                definitions=detect_definitions(document.text, document.domain, self.extraction.context_window_chars),
                theorems=detect_theorems(document.text, document.domain),
            ),
            id_prefix=f"{document.document_id}_math",
            source_location=location,
            stage=self.processor_id,
        )
        content = dedupe_content(document.content.merge(detected.content))

        related = {ref for definition in content.definitions for ref in definition.related_formulas}
        kept: List[Formula] = []
        for formula in content.formulas:
            if formula.confidence < threshold:
                warnings.append(
                    self.warning(
                        f"Dropped formula '{formula.latex[:40]}' below confidence {threshold:.2f}",
                        warning_type=ErrorType.CONTENT_LOSS,
                        suggestion="Lower the confidence threshold or review the source",
                        document_id=document.document_id,
                    )
                )
                continue
            key = is_key_formula(formula, related)
            kept.append(formula if key == formula.is_key_formula else formula.model_copy(update={"is_key_formula": key}))

        content = content.model_copy(update={"formulas": kept})
        LOGGER.debug(
            "Refined %s: %d formulas, %d definitions, %d theorems",
            document.file_name,
            len(kept),
            len(content.definitions),
            len(content.theorems),
        )
        return document.model_copy(update={"content": content}), warnings

    async def recover(
        self,
        error: RecoverableError,
        input: StageInput,
        config: Mapping[str, Any],
    ) -> ProcessingResult:
        documents = input.extracted_documents() or []
        return ProcessingResult(
            success=bool(documents),
            data=documents,
            warnings=[
                self.warning(
                    f"Math refinement skipped after failure: {error.message}",
                    severity=Severity.MEDIUM,
                    recovery_action="passed extracted content through unchanged",
                )
            ],
            metrics=ProcessingMetrics(
                content_preserved=1.0 if documents else 0.0,
                quality_score=0.5,
                items_processed=sum(doc.content.item_count for doc in documents),
                recovered=True,
            ),
        )


__all__ = ["DEFINITION_PATTERNS", "MathContentProcessor", "THEOREM_PATTERNS", "detect_definitions", "detect_theorems"]
