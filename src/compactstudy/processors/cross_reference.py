"""Fourth stage: attach cross-references to the organized document."""
from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Mapping, Optional

from ..config.runtime import CrossReferenceConfig
from ..core.models import ErrorType, Severity
from ..core.result import RecoverableError
from ..pipeline.cross_references import CrossReferenceSystem
from .base import ContentProcessor, ProcessingMetrics, ProcessingResult, ProcessorValidation, StageInput

LOGGER = logging.getLogger(__name__)


class CrossReferenceProcessor(ContentProcessor):
    processor_id = "cross-reference-processor"
    name = "Cross-reference processor"

    def __init__(self, config: Optional[CrossReferenceConfig] = None) -> None:
        self.system = CrossReferenceSystem(config)

    def validate(self, input: StageInput, config: Mapping[str, Any]) -> ProcessorValidation:
        if input.academic_document() is None:
            return ProcessorValidation(passed=False, details="No academic document to cross-reference")
        return ProcessorValidation(passed=True, details="Academic document ready for cross-referencing")

    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        started = perf_counter()
        document = input.academic_document()
        if document is None:
            return ProcessingResult(
                success=False,
                errors=[self.error("No academic document to cross-reference", error_type=ErrorType.CONTEXT_MISSING)],
            )

        references = self.system.generate_cross_references(document)
        resolved = self.system.process_cross_references(references, document)
        updated = document.model_copy(update={"cross_references": resolved.processed_references})
        warnings = [warning.model_copy(update={"stage": self.processor_id}) for warning in resolved.warnings]
        invalid = [result for result in self.system.get_validation_results() if not result.is_valid]
        for result in invalid:
            if result.error_type != "missing_target":
                warnings.append(self.warning(result.message, warning_type=ErrorType.BROKEN_REF))

        total = len(resolved.processed_references)
        LOGGER.info(
            "Cross-references: %d generated, %d broken",
            total,
            len(resolved.broken_references),
        )
        return ProcessingResult(
            success=True,
            data=updated,
            warnings=warnings,
            metrics=ProcessingMetrics(
                processing_time_ms=(perf_counter() - started) * 1000,
                content_preserved=1.0,
                quality_score=(total - len(resolved.broken_references)) / total if total else 1.0,
                items_processed=total,
            ),
        )

    async def recover(
        self,
        error: RecoverableError,
        input: StageInput,
        config: Mapping[str, Any],
    ) -> ProcessingResult:
        document = input.academic_document()
        return ProcessingResult(
            success=document is not None,
            data=document,
            warnings=[
                self.warning(
                    f"Cross-reference generation skipped: {error.message}",
                    warning_type=ErrorType.QUALITY_DEGRADATION,
                    severity=Severity.MEDIUM,
                    recovery_action="document kept without new cross-references",
                )
            ],
            metrics=ProcessingMetrics(content_preserved=1.0, quality_score=0.6, recovered=True),
        )


__all__ = ["CrossReferenceProcessor"]
