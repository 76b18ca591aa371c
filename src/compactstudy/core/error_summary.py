"""Run-level error report attached to every generated document."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from .models import ErrorType, ProcessingError, ProcessingWarning, Severity


class ErrorSummary(BaseModel):
    total_errors: int = 0
    total_warnings: int = 0
    total_issues: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_severity: Dict[str, int] = Field(default_factory=dict)
    has_critical: bool = False
    recovered_stages: List[str] = Field(default_factory=list)
    failed_stages: List[str] = Field(default_factory=list)
    preservation_score: Optional[float] = None
    recommendations: List[str] = Field(default_factory=list)

    @classmethod
    def build(
        cls,
        errors: Sequence[ProcessingError],
        warnings: Sequence[ProcessingWarning],
        *,
        recovered_stages: Iterable[str] = (),
        failed_stages: Iterable[str] = (),
        preservation_score: Optional[float] = None,
        issues: Sequence[Any] = (),
        extra_recommendations: Iterable[str] = (),
    ) -> "ErrorSummary":
        """Count everything by type and severity.

        ``issues`` are preservation audit findings; anything with ``type`` and
        ``severity`` attributes is accepted.
        """
        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for entry in (*errors, *warnings, *issues):
            type_key = _value(entry.type)
            severity_key = _value(entry.severity)
            by_type[type_key] = by_type.get(type_key, 0) + 1
            by_severity[severity_key] = by_severity.get(severity_key, 0) + 1

        summary = cls(
            total_errors=len(errors),
            total_warnings=len(warnings),
            total_issues=len(issues),
            by_type=by_type,
            by_severity=by_severity,
            has_critical=by_severity.get(Severity.CRITICAL.value, 0) > 0,
            recovered_stages=list(dict.fromkeys(recovered_stages)),
            failed_stages=list(dict.fromkeys(failed_stages)),
            preservation_score=preservation_score,
        )
        recommendations = summary._recommend(warnings)
        for extra in extra_recommendations:
            if extra not in recommendations:
                recommendations.append(extra)
        summary.recommendations = recommendations
        return summary

    def count(self, error_type: ErrorType) -> int:
        return self.by_type.get(error_type.value, 0)

    def _recommend(self, warnings: Sequence[ProcessingWarning]) -> List[str]:
        advice: List[str] = []
        lost = self.count(ErrorType.CONTENT_LOSS) + self.count(ErrorType.FORMULA_LOST) + self.count(ErrorType.EXTRACTION)
        if lost > 5:
            advice.append("Consider improving source document quality for better mathematical content extraction")
        if self.count(ErrorType.CONVERSION_FAILED):
            advice.append("Review LaTeX conversion of the reported formulas or fall back to their original text")
        if self.count(ErrorType.EXAMPLE_INCOMPLETE):
            advice.append("Check worked examples for missing problem statements or solution steps")
        if self.count(ErrorType.BROKEN_REF) > 3:
            advice.append("Review cross-reference formatting and target availability")
        if self.failed_stages:
            advice.append(f"Output is partial: stage(s) {', '.join(self.failed_stages)} failed")
        if self.recovered_stages:
            advice.append(f"Review recovered content from stage(s) {', '.join(self.recovered_stages)}")
        if any("OCR" in (warning.recovery_action or "") for warning in warnings):
            advice.append("Review OCR results for accuracy and consider manual correction")
        if self.preservation_score is not None and self.preservation_score < 0.8:
            advice.append(f"Preservation score {self.preservation_score:.2f} is low; review the source before publishing")
        return advice


def _value(field: Any) -> str:
    return str(getattr(field, "value", field))


__all__ = ["ErrorSummary"]
