"""
First stage: source files to ``ExtractedDocument`` values.

Documents are admitted through the ``PerformanceOptimizer`` so that memory
pressure and ``max_concurrent_documents`` bound the batch. A failure is
charged to the document that caused it; the other documents carry on.
"""
from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Dict, List, Mapping, Optional

from ..agents.base import ExtractionCapability, ExtractionHints
from ..agents.pattern_extractor import PatternExtractionCapability
from ..agents.schema import CoercionOutcome, coerce_extraction_response
from ..config.runtime import ExtractionConfig
from ..core.models import (
    ErrorType,
    ExtractedDocument,
    MathematicalContent,
    ProcessingError,
    ProcessingStatus,
    ProcessingWarning,
    Severity,
    SourceDocument,
    SourceLocation,
)
from ..core.result import RecoverableError
from ..exceptions import ExtractionError
from ..pipeline.performance import PerformanceOptimizer, split_payload
from .base import (
    ContentProcessor,
    PlainTextLoader,
    ProcessingMetrics,
    ProcessingResult,
    ProcessorValidation,
    StageInput,
    TextLoader,
)
from .domain import DomainContentProcessor

LOGGER = logging.getLogger(__name__)


def _shift_content(content: MathematicalContent, offset: int) -> MathematicalContent:
    """Move window-relative text positions back into document coordinates."""
    if offset == 0:
        return content

    def _shift(item: Any) -> Any:
        location = item.source_location
        if location is None or location.text_position is None:
            return item
        moved = location.model_copy(update={"text_position": location.text_position + offset})
        return item.model_copy(update={"source_location": moved})

    return MathematicalContent(
        formulas=[_shift(formula) for formula in content.formulas],
        worked_examples=[_shift(example) for example in content.worked_examples],
        definitions=list(content.definitions),
        theorems=list(content.theorems),
    )


class FileProcessingProcessor(ContentProcessor):
    processor_id = "file-processor"
    name = "File processor"

    def __init__(
        self,
        capability: Optional[ExtractionCapability] = None,
        *,
        loader: Optional[TextLoader] = None,
        specialists: Optional[Mapping[str, DomainContentProcessor]] = None,
        optimizer: Optional[PerformanceOptimizer] = None,
        extraction: Optional[ExtractionConfig] = None,
    ) -> None:
        self.extraction = extraction or ExtractionConfig()
        self.capability = capability or PatternExtractionCapability(
            {"context_window_chars": self.extraction.context_window_chars}
        )
        self.loader = loader or PlainTextLoader()
        self.specialists: Dict[str, DomainContentProcessor] = dict(specialists or {})
        self.optimizer = optimizer or PerformanceOptimizer()

    def validate(self, input: StageInput, config: Mapping[str, Any]) -> ProcessorValidation:
        documents = input.active_documents()
        if not documents:
            return ProcessorValidation(passed=False, details="No source documents to process", confidence=0.0)
        empty = [doc.file.name for doc in documents if not doc.file.size and doc.file.path is None]
        if empty:
            return ProcessorValidation(
                passed=False,
                details=f"Empty source files: {', '.join(empty)}",
                confidence=0.5,
            )
        return ProcessorValidation(passed=True, details=f"{len(documents)} document(s) ready")

    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        threshold = float(config.get("confidence_threshold", self.extraction.confidence_threshold))
        return await self._run(input.retryable_documents(), self.capability, threshold, recovered=False)

    async def recover(
        self,
        error: RecoverableError,
        input: StageInput,
        config: Mapping[str, Any],
    ) -> ProcessingResult:
        """Re-extract with the pattern capability at the fallback threshold."""
        threshold = self.extraction.fallback_confidence_threshold
        fallback = PatternExtractionCapability(
            {
                "context_window_chars": self.extraction.context_window_chars,
                "confidence_threshold": threshold,
            }
        )
        retry = input.retryable_documents()
        LOGGER.info("Recovering %d document(s) with pattern extraction after: %s", len(retry), error.message)
        return await self._run(retry, fallback, threshold, recovered=True)

    async def _run(
        self,
        documents: List[SourceDocument],
        capability: ExtractionCapability,
        threshold: float,
        *,
        recovered: bool,
    ) -> ProcessingResult:
        started = perf_counter()
        if not documents:
            return ProcessingResult(
                success=False,
                errors=[self.error("No source documents to process", error_type=ErrorType.SYSTEM, severity=Severity.HIGH)],
            )

        async def _one(document: SourceDocument) -> ProcessingResult:
            return await self._process_document(document, capability, threshold, recovered)

        results = await self.optimizer.process_concurrently(documents, _one)

        outputs: List[ExtractedDocument] = []
        errors: List[ProcessingError] = []
        warnings: List[ProcessingWarning] = []
        for document, result in zip(documents, results):
            warnings.extend(result.warnings)
            if result.success:
                document.processing_status = ProcessingStatus.COMPLETED
                outputs.append(result.data)
                continue
            for error in result.errors:
                document.fail(error.model_copy(update={"source_document": document.id, "stage": self.processor_id}))
                errors.append(document.errors[-1])

        items = sum(doc.content.item_count for doc in outputs)
        quality = sum(doc.confidence for doc in outputs) / len(outputs) if outputs else 0.0
        LOGGER.info("Extracted %d item(s) from %d/%d document(s)", items, len(outputs), len(documents))
        return ProcessingResult(
            success=bool(outputs),
            data=outputs,
            errors=errors,
            warnings=warnings,
            metrics=ProcessingMetrics(
                processing_time_ms=(perf_counter() - started) * 1000,
                memory_usage_mb=self.optimizer.stats.peak_memory_mb,
                content_preserved=len(outputs) / len(documents),
                quality_score=quality,
                items_processed=items,
                recovered=recovered,
            ),
        )

    async def _process_document(
        self,
        document: SourceDocument,
        capability: ExtractionCapability,
        threshold: float,
        recovered: bool,
    ) -> ProcessingResult:
        started = perf_counter()
        document.processing_status = ProcessingStatus.PROCESSING
        text = await self.loader.load(document.file)

        specialist = self.specialists.get(document.type)
        if specialist is not None and not recovered:
            extraction = await specialist.extract_document(document, text, min_confidence=threshold)
            extracted, warnings = extraction.document, extraction.warnings
        else:
            content, warnings = await self._extract_text(document, text, capability, threshold)
            extracted = ExtractedDocument(
                document_id=document.id,
                file_name=document.file.name,
                domain=document.type,
                text=text,
                content=content,
                confidence=_mean_confidence(content),
                recovered=recovered,
                warnings=[warning.message for warning in warnings],
            )
        if recovered and not extracted.recovered:
            extracted = extracted.model_copy(update={"recovered": True})
        return ProcessingResult(
            success=True,
            data=extracted,
            warnings=warnings,
            metrics=ProcessingMetrics(
                processing_time_ms=(perf_counter() - started) * 1000,
                content_preserved=1.0,
                quality_score=extracted.confidence,
                items_processed=extracted.content.item_count,
                recovered=recovered,
            ),
        )

    async def _extract_text(
        self,
        document: SourceDocument,
        text: str,
        capability: ExtractionCapability,
        threshold: float,
    ) -> tuple[MathematicalContent, List[ProcessingWarning]]:
        if len(text) <= self.optimizer.chunk_size_bytes():
            return await self._extract_windows(document, text, capability, threshold, prefix=document.id, offset=0)

        content = MathematicalContent()
        warnings: List[ProcessingWarning] = []
        offsets = [0]

        async def _chunk(chunk: Any, index: int) -> tuple[MathematicalContent, List[ProcessingWarning]]:
            offset = offsets[-1]
            offsets.append(offset + len(chunk))
            return await self._extract_windows(
                document,
                chunk,
                capability,
                threshold,
                prefix=f"{document.id}_chunk{index}",
                offset=offset,
            )

        result = await self.optimizer.process_in_chunks(document, text, _chunk)
        if not result.success:
            message = result.errors[0].message if result.errors else "chunked extraction failed"
            raise ExtractionError(message, document_id=document.id, extractor=capability.name)
        for chunk_content, chunk_warnings in result.data:
            content = content.merge(chunk_content)
            warnings.extend(chunk_warnings)
        return content, warnings

    async def _extract_windows(
        self,
        document: SourceDocument,
        text: str,
        capability: ExtractionCapability,
        threshold: float,
        *,
        prefix: str,
        offset: int,
    ) -> tuple[MathematicalContent, List[ProcessingWarning]]:
        """Call the capability once per prompt-sized window of ``text``."""
        windows = split_payload(text, self.extraction.max_prompt_chars) or [""]
        content = MathematicalContent()
        warnings: List[ProcessingWarning] = []
        position = 0
        for index, window in enumerate(windows):
            location = SourceLocation(file_id=document.id)
            hints = ExtractionHints(domain=document.type)
            raw = await capability.extract(str(window), location, hints)
            outcome: CoercionOutcome = coerce_extraction_response(
                raw,
                id_prefix=prefix if len(windows) == 1 else f"{prefix}_w{index}",
                source_location=location,
                min_confidence=threshold,
                stage=self.processor_id,
            )
            content = content.merge(_shift_content(outcome.content, offset + position))
            warnings.extend(outcome.warnings)
            position += len(window)
        return content, warnings


def _mean_confidence(content: MathematicalContent) -> float:
    scores = [formula.confidence for formula in content.formulas] + [
        example.confidence for example in content.worked_examples
    ]
    return sum(scores) / len(scores) if scores else 0.0


__all__ = ["FileProcessingProcessor"]
