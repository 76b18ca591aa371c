"""
Domain specialists.

A specialist splits one extraction into several narrow calls (one per
``ExtractionSlice``) and merges what comes back. Slices fail independently:
a failed call costs that slice's content and leaves a warning, nothing more.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from ..agents.base import ExtractionCapability, ExtractionHints
from ..agents.pattern_extractor import PatternExtractionCapability
from ..agents.schema import coerce_extraction_response
from ..config.runtime import ExtractionConfig
from ..core.models import (
    DocumentType,
    ErrorType,
    ExtractedDocument,
    MathematicalContent,
    ProcessingError,
    ProcessingWarning,
    Severity,
    SourceDocument,
    SourceLocation,
)
from ..core.result import RecoverableError
from .base import (
    ContentProcessor,
    PlainTextLoader,
    ProcessingMetrics,
    ProcessingResult,
    ProcessorValidation,
    StageInput,
    TextLoader,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractionSlice:
    """One narrow extraction request issued by a specialist."""

    subtopic: str
    instructions: str
    examples_only: bool = False


@dataclass
class DocumentExtraction:
    document: ExtractedDocument
    warnings: List[ProcessingWarning] = field(default_factory=list)
    failed_slices: List[str] = field(default_factory=list)


def _normalize_latex(latex: str) -> str:
    return re.sub(r"\s+", "", latex).lower()


def dedupe_content(content: MathematicalContent) -> MathematicalContent:
    """Drop repeats that several slices extracted from the same passage."""
    formulas, seen_latex = [], set()
    for formula in content.formulas:
        key = _normalize_latex(formula.latex)
        if key in seen_latex:
            continue
        seen_latex.add(key)
        formulas.append(formula)
    examples, seen_examples = [], set()
    for example in content.worked_examples:
        key = (example.title.strip().lower(), " ".join(example.problem.split()).lower())
        if key in seen_examples:
            continue
        seen_examples.add(key)
        examples.append(example)
    definitions, seen_terms = [], set()
    for definition in content.definitions:
        if definition.term.lower() in seen_terms:
            continue
        seen_terms.add(definition.term.lower())
        definitions.append(definition)
    theorems, seen_statements = [], set()
    for theorem in content.theorems:
        key = " ".join(theorem.statement.split()).lower()
        if key in seen_statements:
            continue
        seen_statements.add(key)
        theorems.append(theorem)
    return MathematicalContent(
        formulas=formulas,
        worked_examples=examples,
        definitions=definitions,
        theorems=theorems,
    )


class DomainContentProcessor(ContentProcessor):
    """Base class for specialists that extract one domain in slices.

    Subclasses set ``domain``, ``keywords`` and ``slices``. As a pipeline stage
    the specialist enriches the upstream extraction of every document in its
    domain; the file processor can also route documents straight to
    ``extract_document``.
    """

    domain: DocumentType = "general"
    keywords: Tuple[str, ...] = ()
    slices: Sequence[ExtractionSlice] = ()

    def __init__(
        self,
        capability: Optional[ExtractionCapability] = None,
        *,
        loader: Optional[TextLoader] = None,
        extraction: Optional[ExtractionConfig] = None,
    ) -> None:
        self.extraction = extraction or ExtractionConfig()
        self.capability = capability or PatternExtractionCapability(
            {"context_window_chars": self.extraction.context_window_chars}
        )
        self.loader = loader or PlainTextLoader()

    def matches(self, document_type: str, text: str) -> bool:
        if document_type == self.domain:
            return True
        lowered = text.lower()
        return any(keyword in lowered for keyword in self.keywords)

    async def extract_document(
        self,
        document: SourceDocument,
        text: str,
        *,
        min_confidence: Optional[float] = None,
    ) -> DocumentExtraction:
        threshold = self.extraction.confidence_threshold if min_confidence is None else min_confidence
        warnings: List[ProcessingWarning] = []
        if len(text) > self.extraction.max_prompt_chars:
            LOGGER.warning(
                "Truncated %s from %d to %d chars before extraction",
                document.id,
                len(text),
                self.extraction.max_prompt_chars,
            )
            warnings.append(
                self.warning(
                    f"Only the first {self.extraction.max_prompt_chars} of {len(text)} characters were extracted",
                    warning_type=ErrorType.CONTENT_LOSS,
                    severity=Severity.MEDIUM,
                    suggestion="Raise extraction.max_prompt_chars or split the document",
                    document_id=document.id,
                )
            )
        prompt_text = text[: self.extraction.max_prompt_chars]
        outcomes = await asyncio.gather(
            *(self._extract_slice(document, prompt_text, slice_, threshold) for slice_ in self.slices),
            return_exceptions=True,
        )

        content = MathematicalContent()
        failed: List[str] = []
        for slice_, outcome in zip(self.slices, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                LOGGER.warning("%s slice '%s' failed for %s: %s", self.domain, slice_.subtopic, document.id, outcome)
                failed.append(slice_.subtopic)
                warnings.append(
                    self.warning(
                        f"{slice_.subtopic} extraction failed: {outcome}",
                        warning_type=ErrorType.EXTRACTION,
                        severity=Severity.MEDIUM,
                        recovery_action="slice content dropped",
                        document_id=document.id,
                    )
                )
                continue
            slice_content, slice_warnings = outcome
            content = content.merge(slice_content)
            warnings.extend(slice_warnings)

        content = dedupe_content(content)
        confidences = [formula.confidence for formula in content.formulas] + [
            example.confidence for example in content.worked_examples
        ]
        extracted = ExtractedDocument(
            document_id=document.id,
            file_name=document.file.name,
            domain=self.domain,
            text=text,
            content=content,
            confidence=sum(confidences) / len(confidences) if confidences else 0.0,
            warnings=[warning.message for warning in warnings],
        )
        return DocumentExtraction(document=extracted, warnings=warnings, failed_slices=failed)

    async def _extract_slice(
        self,
        document: SourceDocument,
        text: str,
        slice_: ExtractionSlice,
        min_confidence: float,
    ) -> Tuple[MathematicalContent, List[ProcessingWarning]]:
        location = SourceLocation(file_id=document.id, section=slice_.subtopic)
        hints = ExtractionHints(domain=self.domain, focus=slice_.subtopic, instructions=slice_.instructions)
        raw = await self.capability.extract(text, location, hints)
        outcome = coerce_extraction_response(
            raw,
            id_prefix=f"{document.id}_{slice_.subtopic}",
            source_location=location,
            min_confidence=min_confidence,
            subtopic=slice_.subtopic,
            stage=self.processor_id,
        )
        content = outcome.content
        if slice_.examples_only:
            content = MathematicalContent(worked_examples=content.worked_examples)
        return content, outcome.warnings

    # ------------------------------------------------------------------ stage

    def validate(self, input: StageInput, config: Mapping[str, Any]) -> ProcessorValidation:
        if input.extracted_documents() or input.active_documents():
            return ProcessorValidation(passed=True, details=f"{self.domain} documents ready for processing")
        return ProcessorValidation(passed=False, details="No documents to process", confidence=0.0)

    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        return await self._run(input, config, min_confidence=config.get("confidence_threshold"))

    async def recover(
        self,
        error: RecoverableError,
        input: StageInput,
        config: Mapping[str, Any],
    ) -> ProcessingResult:
        LOGGER.info("Retrying %s extraction with relaxed confidence after: %s", self.domain, error.message)
        result = await self._run(input, config, min_confidence=self.extraction.fallback_confidence_threshold)
        result.metrics.recovered = True
        return result

    async def _run(
        self,
        input: StageInput,
        config: Mapping[str, Any],
        *,
        min_confidence: Optional[float],
    ) -> ProcessingResult:
        started = perf_counter()
        errors: List[ProcessingError] = []
        warnings: List[ProcessingWarning] = []
        upstream = {doc.document_id: doc for doc in input.extracted_documents() or []}
        outputs: List[ExtractedDocument] = []
        matched = 0

        for document in input.active_documents():
            previous = upstream.get(document.id)
            try:
                text = previous.text if previous is not None else await self.loader.load(document.file)
            except Exception as exc:
                error = RecoverableError.from_exception(exc, stage=self.processor_id).to_processing_error()
                error = error.model_copy(update={"source_document": document.id})
                errors.append(error)
                document.fail(error)
                continue

            if not self.matches(document.type, text):
                if previous is not None:
                    outputs.append(previous)
                continue
            matched += 1
            try:
                extraction = await self.extract_document(document, text, min_confidence=min_confidence)
            except Exception as exc:
                LOGGER.warning("%s extraction failed for %s: %s", self.domain, document.file.name, exc)
                errors.append(
                    self.error(
                        f"Failed to extract {self.domain} content from {document.file.name}: {exc}",
                        document_id=document.id,
                    )
                )
                if previous is not None:
                    outputs.append(previous)
                continue
            warnings.extend(extraction.warnings)
            merged = extraction.document
            if previous is not None:
                merged = previous.model_copy(
                    update={
                        "content": dedupe_content(previous.content.merge(merged.content)),
                        "warnings": previous.warnings + merged.warnings,
                    }
                )
            outputs.append(merged)

        if matched == 0:
            warnings.append(
                self.warning(
                    f"No {self.domain} documents found for processing",
                    warning_type=ErrorType.CONTENT_LOSS,
                )
            )

        items = sum(doc.content.item_count for doc in outputs)
        has_math = any(doc.content.formulas or doc.content.worked_examples for doc in outputs)
        return ProcessingResult(
            success=bool(outputs),
            data=outputs,
            errors=errors,
            warnings=warnings,
            metrics=ProcessingMetrics(
                processing_time_ms=(perf_counter() - started) * 1000,
                content_preserved=len(outputs) / max(matched, 1) if matched else 1.0,
                quality_score=0.9 if has_math else 0.6,
                items_processed=items,
            ),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(domain={self.domain!r}, slices={len(self.slices)})"



__all__ = [
    "DocumentExtraction",
    "DomainContentProcessor",
    "ExtractionSlice",
    "dedupe_content",
]
