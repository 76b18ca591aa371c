"""
Processor contract shared by every pipeline stage.

A processor receives a ``StageInput`` (the run's source documents plus the
outputs of the stages it depends on) and returns a ``ProcessingResult``. It
never decides recovery policy: failures are reported through
``success=False`` or an exception and the orchestrator takes it from there.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from ..core.models import (
    AcademicDocument,
    ErrorType,
    ExtractedDocument,
    ProcessingError,
    ProcessingWarning,
    Severity,
    SourceDocument,
    SourceFile,
)
from ..core.result import RecoverableError
from ..exceptions import ExtractionError, UnknownProcessorError

LOGGER = logging.getLogger(__name__)

TEXT_SUFFIXES = {"", ".txt", ".md", ".markdown", ".tex", ".csv", ".json"}


@dataclass
class ProcessingMetrics:
    processing_time_ms: float = 0.0
    memory_usage_mb: float = 0.0
    content_preserved: float = 0.0
    quality_score: float = 0.0
    items_processed: int = 0
    recovered: bool = False


@dataclass
class ProcessingResult:
    success: bool
    data: Any = None
    errors: List[ProcessingError] = field(default_factory=list)
    warnings: List[ProcessingWarning] = field(default_factory=list)
    metrics: ProcessingMetrics = field(default_factory=ProcessingMetrics)


@dataclass
class ProcessorValidation:
    passed: bool
    details: str = ""
    confidence: float = 1.0


@dataclass(frozen=True)
class StageInput:
    """What a stage gets to see: the run's documents and its dependencies' outputs.

    ``upstream`` preserves dependency declaration order so the "latest"
    helpers below resolve to the last declared dependency that produced the
    requested kind of output.
    """

    documents: Sequence[SourceDocument]
    upstream: Mapping[str, Any] = field(default_factory=dict)

    def active_documents(self) -> List[SourceDocument]:
        return [doc for doc in self.documents if not doc.is_failed]

    def retryable_documents(self) -> List[SourceDocument]:
        """Documents that are active or failed only with recoverable errors."""
        return [doc for doc in self.documents if all(error.recoverable for error in doc.errors)]

    def extracted_documents(self) -> Optional[List[ExtractedDocument]]:
        for value in reversed(list(self.upstream.values())):
            if isinstance(value, list) and value and all(isinstance(item, ExtractedDocument) for item in value):
                return list(value)
        return None

    def academic_document(self) -> Optional[AcademicDocument]:
        for value in reversed(list(self.upstream.values())):
            if isinstance(value, AcademicDocument):
                return value
        return None


class TextLoader(ABC):
    """Turns a ``SourceFile`` into plain text.

    OCR and office-format extraction live outside this package; callers inject
    a loader that knows how to reach them.
    """

    @abstractmethod
    async def load(self, file: SourceFile) -> str:
        """Return the text content of ``file``."""


class PlainTextLoader(TextLoader):
    """Reads inline text, UTF-8 bytes or text files from disk."""

    def __init__(self, suffixes: Iterable[str] = TEXT_SUFFIXES) -> None:
        self.suffixes = {suffix.lower() for suffix in suffixes}

    async def load(self, file: SourceFile) -> str:
        if file.text is not None:
            return file.text
        if file.suffix not in self.suffixes:
            raise ExtractionError(
                f"No text loader available for '{file.name}' ({file.suffix or file.mime_type})",
                extractor="plain-text",
                recoverable=False,
            )
        if file.data is not None:
            return file.data.decode("utf-8", errors="replace")
        if file.path is not None:
            return await asyncio.to_thread(_read_text, file.path)
        raise ExtractionError(f"Source file '{file.name}' has no content", extractor="plain-text", recoverable=False)


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


class ContentProcessor(ABC):
    processor_id: str = "processor"
    name: str = "Content processor"
    version: str = "1.0.0"

    @abstractmethod
    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        """Run the processor over ``input``."""

    @abstractmethod
    def validate(self, input: StageInput, config: Mapping[str, Any]) -> ProcessorValidation:
        """Check that ``input`` carries what ``process`` needs."""

    async def recover(
        self,
        error: RecoverableError,
        input: StageInput,
        config: Mapping[str, Any],
    ) -> ProcessingResult:
        raise NotImplementedError(f"{self.processor_id} has no recovery strategy")

    @property
    def can_recover(self) -> bool:
        return type(self).recover is not ContentProcessor.recover

    def error(
        self,
        message: str,
        *,
        error_type: ErrorType = ErrorType.EXTRACTION,
        severity: Severity = Severity.MEDIUM,
        recoverable: bool = True,
        document_id: Optional[str] = None,
    ) -> ProcessingError:
        return ProcessingError(
            stage=self.processor_id,
            type=error_type,
            severity=severity,
            message=message,
            recoverable=recoverable,
            source_document=document_id,
        )

    def warning(
        self,
        message: str,
        *,
        warning_type: ErrorType = ErrorType.QUALITY_DEGRADATION,
        severity: Severity = Severity.LOW,
        suggestion: Optional[str] = None,
        recovery_action: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> ProcessingWarning:
        return ProcessingWarning(
            stage=self.processor_id,
            type=warning_type,
            severity=severity,
            message=message,
            suggestion=suggestion,
            recovery_action=recovery_action,
            source_document=document_id,
        )


class ProcessorRegistry:
    """Explicit processor lookup keyed by ``processor_id``."""

    def __init__(self, processors: Iterable[ContentProcessor] = ()) -> None:
        self._processors: Dict[str, ContentProcessor] = {}
        for processor in processors:
            self.register(processor)

    def register(self, processor: ContentProcessor) -> None:
        if processor.processor_id in self._processors:
            LOGGER.info("Replacing processor '%s'", processor.processor_id)
        self._processors[processor.processor_id] = processor

    def get(self, processor_id: str) -> ContentProcessor:
        try:
            return self._processors[processor_id]
        except KeyError:
            raise UnknownProcessorError(processor_id) from None

    def ids(self) -> List[str]:
        return list(self._processors)

    def __contains__(self, processor_id: object) -> bool:
        return processor_id in self._processors

    def __iter__(self) -> Iterator[ContentProcessor]:
        return iter(self._processors.values())

    def __len__(self) -> int:
        return len(self._processors)


__all__ = [
    "ContentProcessor",
    "PlainTextLoader",
    "ProcessingMetrics",
    "ProcessingResult",
    "ProcessorRegistry",
    "ProcessorValidation",
    "StageInput",
    "TEXT_SUFFIXES",
    "TextLoader",
]
