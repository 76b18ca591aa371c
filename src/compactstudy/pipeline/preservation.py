"""Content preservation audit.

The validator compares what the extraction stages produced against the raw
source text and reports what was lost or damaged. It only reports: neither the
extracted content nor the document is changed.
"""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence, Tuple

from ..config.runtime import ValidationConfig
from ..core.models import (
    AcademicDocument,
    CrossReference,
    ErrorType,
    ExtractedDocument,
    Formula,
    MathematicalContent,
    Severity,
    SourceLocation,
    WorkedExample,
    braces_balanced,
)
from ..exceptions import ValidationFailedError

LOGGER = logging.getLogger(__name__)

SEVERE = (Severity.HIGH, Severity.CRITICAL)

# Order matters: when two classes match overlapping text the earlier one owns the span.
FORMULA_PATTERN_CLASSES: Tuple[Tuple[str, Tuple[re.Pattern[str], ...]], ...] = (
    (
        "delimited",
        (
            re.compile(r"\$\$[^$]+\$\$|\$[^$\n]+\$"),
            re.compile(r"\\\(.+?\\\)", re.DOTALL),
            re.compile(r"\\\[.+?\\\]", re.DOTALL),
        ),
    ),
    (
        "probability",
        (
            re.compile(r"\bP\([^)]+\)"),
            re.compile(r"\bE\[[^\]]+\]"),
            re.compile(r"\bVar\([^)]+\)"),
        ),
    ),
    ("function", (re.compile(r"\b(?:sin|cos|tan|log|ln|exp|sqrt|sum|prod|int)\s*\([^)]*\)", re.IGNORECASE),)),
    ("equation", (re.compile(r"\b\d+\s*[+\-*/=]\s*\d+\b"),)),
    ("assignment", (re.compile(r"\b[a-zA-Z]\s*=\s*[^,\s.]+"),)),
    ("symbol", (re.compile(r"\S*[∑∏∫√±≤≥≠∞α-ω]\S*"),)),
)

EXAMPLE_MARKERS: Tuple[re.Pattern[str], ...] = (
    re.compile(r"Example\s+\d+[:.]", re.IGNORECASE),
    re.compile(r"Problem\s+\d+[:.]", re.IGNORECASE),
    re.compile(r"Exercise\s+\d+[:.]", re.IGNORECASE),
    re.compile(r"Solution[:.]", re.IGNORECASE),
    re.compile(r"Step\s+\d+[:.]", re.IGNORECASE),
    re.compile(r"\b\d+\.\s+[A-Z][^.?]*\?"),
)

DISPLAY_TEXT_PATTERNS: Dict[str, re.Pattern[str]] = {
    "example": re.compile(r"^(see\s+)?(Ex\.|Example)\s+\d+(\.\d+)*$", re.IGNORECASE),
    "formula": re.compile(r"^(see\s+)?(Eq\.|Equation|Formula)\s+\d+(\.\d+)*$", re.IGNORECASE),
    "section": re.compile(r"^(see\s+)?(Sec\.|Section)\s+\d+(\.\d+)*$", re.IGNORECASE),
    "theorem": re.compile(r"^(see\s+)?(Thm\.|Theorem)\s+\d+(\.\d+)*$", re.IGNORECASE),
    "definition": re.compile(r"^(see\s+)?(Def\.|Definition)\s+\d+(\.\d+)*$", re.IGNORECASE),
}

_INVALID_ESCAPE_RE = re.compile(r"\\(?![a-zA-Z\\{}\[\]()_%$&#,;:!|^.\s])")
_ENVIRONMENT_RE = re.compile(r"\\(begin|end)\{([^}]*)\}")
_UNRENDERABLE_RE = (
    re.compile(r"\\[a-zA-Z]+\s*\{[^}]{100,}\}"),
    re.compile(r"\\includegraphics"),
    re.compile(r"\\newcommand"),
    re.compile(r"\\documentclass"),
)


@dataclass
class PreservationIssue:
    type: ErrorType
    severity: Severity
    description: str
    suggestion: str = ""
    element_id: Optional[str] = None
    source_location: Optional[SourceLocation] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["severity"] = self.severity.value
        payload["source_location"] = self.source_location.model_dump() if self.source_location else None
        return payload


@dataclass
class CheckResult:
    passed: bool
    details: str
    confidence: float
    issues: List[PreservationIssue] = field(default_factory=list)


@dataclass
class FormulaValidationResult(CheckResult):
    total_formulas_found: int = 0
    formulas_preserved: int = 0
    formulas_with_valid_latex: int = 0
    formulas_with_context: int = 0
    key_formulas_preserved: int = 0
    preservation_rate: float = 1.0


@dataclass
class ExampleValidationResult(CheckResult):
    total_examples_found: int = 0
    examples_preserved: int = 0
    complete_examples: int = 0
    examples_with_solutions: int = 0
    examples_with_steps: int = 0
    preservation_rate: float = 1.0
    completeness_rate: float = 1.0


@dataclass
class CrossReferenceValidationResult(CheckResult):
    total_references: int = 0
    valid_references: int = 0
    broken_references: int = 0
    missing_targets: int = 0
    integrity_rate: float = 1.0


@dataclass
class MathRenderingValidationResult(CheckResult):
    total_math_elements: int = 0
    valid_math_elements: int = 0
    renderable_elements: int = 0
    latex_valid_elements: int = 0
    accuracy_rate: float = 1.0


@dataclass
class ValidationRecommendation:
    type: Literal["improvement", "fix", "optimization"]
    priority: Literal["low", "medium", "high", "critical"]
    title: str
    description: str
    action: str
    impact: str


@dataclass
class ContentValidationResult:
    passed: bool
    confidence: float
    preservation_score: float
    formula_preservation: FormulaValidationResult
    example_completeness: ExampleValidationResult
    cross_reference_integrity: CrossReferenceValidationResult
    math_rendering_accuracy: MathRenderingValidationResult
    recommendations: List[ValidationRecommendation] = field(default_factory=list)

    @property
    def issues(self) -> List[PreservationIssue]:
        return [
            *self.formula_preservation.issues,
            *self.example_completeness.issues,
            *self.cross_reference_integrity.issues,
            *self.math_rendering_accuracy.issues,
        ]

    @property
    def severe_issue_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity in SEVERE)

    def summary(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "confidence": round(self.confidence, 3),
            "preservation_score": round(self.preservation_score, 3),
            "formula_preservation_rate": round(self.formula_preservation.preservation_rate, 3),
            "example_completeness_rate": round(self.example_completeness.completeness_rate, 3),
            "cross_reference_integrity_rate": round(self.cross_reference_integrity.integrity_rate, 3),
            "math_rendering_accuracy_rate": round(self.math_rendering_accuracy.accuracy_rate, 3),
            "issues": len(self.issues),
            "severe_issues": self.severe_issue_count,
        }


# --------------------------------------------------------------------- helpers


def normalize_formula(text: str) -> str:
    text = text.strip()
    for opening, closing in (("$$", "$$"), ("$", "$"), ("\\(", "\\)"), ("\\[", "\\]")):
        if text.startswith(opening) and text.endswith(closing) and len(text) >= len(opening) + len(closing):
            text = text[len(opening) : len(text) - len(closing)]
            break
    return re.sub(r"[\s{}]", "", text).lower()


def is_similar_formula(first: str, second: str) -> bool:
    left, right = normalize_formula(first), normalize_formula(second)
    if not left or not right:
        return False
    if left == right:
        return True
    if len(left) > 3 and len(right) > 3:
        return left in right or right in left
    return False


def detect_formulas_in_source(text: str) -> List[str]:
    """Return formula candidates in ``text``, each span counted once."""
    claimed: List[Tuple[int, int]] = []
    seen: set[str] = set()
    found: List[Tuple[int, str]] = []
    for _, patterns in FORMULA_PATTERN_CLASSES:
        for pattern in patterns:
            for match in pattern.finditer(text):
                start, end = match.span()
                if any(start < other_end and other_start < end for other_start, other_end in claimed):
                    continue
                candidate = match.group(0).strip()
                if len(candidate) <= 1:
                    continue
                claimed.append((start, end))
                key = normalize_formula(candidate)
                if key in seen:
                    continue
                seen.add(key)
                found.append((start, candidate))
    return [candidate for _, candidate in sorted(found)]


def detect_examples_in_source(text: str) -> List[str]:
    markers: List[str] = []
    for pattern in EXAMPLE_MARKERS:
        for match in pattern.finditer(text):
            marker = match.group(0).lower()
            if marker not in markers:
                markers.append(marker)
    return markers


def latex_error(latex: Optional[str]) -> Optional[str]:
    """Describe the first syntax problem in ``latex`` or return ``None``."""
    if not latex or not latex.strip():
        return "empty LaTeX"
    if not braces_balanced(latex):
        return "unbalanced braces"
    if len(re.findall(r"(?<!\\)\$", latex)) % 2:
        return "unclosed math delimiter"
    if _INVALID_ESCAPE_RE.search(latex) or latex.rstrip().endswith("\\") and not latex.rstrip().endswith("\\\\"):
        return "invalid escape sequence"
    stack: List[str] = []
    for kind, name in _ENVIRONMENT_RE.findall(latex):
        if kind == "begin":
            stack.append(name)
        elif not stack or stack.pop() != name:
            return f"unbalanced environment '{name}'"
    if stack:
        return f"unclosed environment '{stack[-1]}'"
    return None


def is_valid_latex(latex: Optional[str]) -> bool:
    return latex_error(latex) is None


def is_renderable_latex(latex: str) -> bool:
    return not any(pattern.search(latex) for pattern in _UNRENDERABLE_RE)


def is_valid_display_text(display_text: str, reference_type: str) -> bool:
    pattern = DISPLAY_TEXT_PATTERNS.get(reference_type)
    return bool(pattern.match(display_text)) if pattern else True


def merge_extracted(documents: Sequence[ExtractedDocument]) -> ExtractedDocument:
    """Fold several extracted documents into one audit input."""
    content = MathematicalContent()
    for document in documents:
        content = content.merge(document.content)
    confidence = sum(doc.confidence for doc in documents) / len(documents) if documents else 0.0
    return ExtractedDocument(
        document_id="merged",
        file_name=", ".join(doc.file_name for doc in documents),
        domain=documents[0].domain if len(documents) == 1 else "general",
        text="\n\n".join(doc.text for doc in documents),
        content=content,
        confidence=confidence,
        recovered=any(doc.recovered for doc in documents),
    )


# --------------------------------------------------------------------- validator


class ContentPreservationValidator:
    def __init__(self, config: Optional[ValidationConfig] = None) -> None:
        self.config = config or ValidationConfig()

    def validate_content_preservation(
        self,
        source_content: ExtractedDocument,
        processed_document: Optional[AcademicDocument] = None,
    ) -> ContentValidationResult:
        content = source_content.content
        try:
            formulas = self.validate_formula_preservation(source_content.text, content.formulas)
            examples = self.validate_example_completeness(source_content.text, content.worked_examples)
            if self.config.enable_cross_reference_validation and processed_document is not None:
                references = self.validate_cross_reference_integrity(processed_document.cross_references, processed_document)
            else:
                references = CrossReferenceValidationResult(
                    passed=True, details="Cross-reference validation skipped", confidence=1.0
                )
            if self.config.enable_math_rendering_validation:
                rendering = self.validate_math_rendering_accuracy(content)
            else:
                rendering = MathRenderingValidationResult(passed=True, details="Math rendering validation disabled", confidence=1.0)
        except Exception as exc:
            raise ValidationFailedError(f"Preservation audit of {source_content.file_name} failed: {exc}") from exc

        # Lost source examples count against the score, not only incomplete ones.
        score = (
            formulas.preservation_rate * 0.4
            + examples.preservation_rate * examples.completeness_rate * 0.3
            + references.integrity_rate * 0.15
            + rendering.accuracy_rate * 0.15
        )
        checks: Sequence[CheckResult] = (formulas, examples, references, rendering)
        confidence = sum(check.confidence for check in checks) / len(checks)
        severe = sum(1 for check in checks for issue in check.issues if issue.severity in SEVERE)
        if self.config.strict_mode:
            passed = all(check.passed for check in checks) and severe == 0
        else:
            passed = confidence >= self.config.lenient_min_confidence and severe < self.config.lenient_max_severe_issues

        result = ContentValidationResult(
            passed=passed,
            confidence=confidence,
            preservation_score=score,
            formula_preservation=formulas,
            example_completeness=examples,
            cross_reference_integrity=references,
            math_rendering_accuracy=rendering,
            recommendations=self.recommendations(formulas, examples, references, rendering),
        )
        LOGGER.info(
            "Preservation audit %s: score %.2f, %d issue(s), %d severe",
            "passed" if passed else "failed",
            score,
            len(result.issues),
            severe,
        )
        return result

    # ------------------------------------------------------------------ formulas

    def validate_formula_preservation(self, source_text: str, extracted: Sequence[Formula]) -> FormulaValidationResult:
        issues: List[PreservationIssue] = []
        detected = detect_formulas_in_source(source_text)
        rate = min(1.0, len(extracted) / len(detected)) if detected else 1.0

        valid_latex = with_context = key_formulas = 0
        for formula in extracted:
            error = latex_error(formula.latex)
            if error is None:
                valid_latex += 1
            else:
                issues.append(
                    PreservationIssue(
                        type=ErrorType.CONVERSION_FAILED,
                        severity=Severity.MEDIUM,
                        description=f"Formula {formula.id} has invalid LaTeX ({error}): {formula.latex}",
                        suggestion="Review LaTeX conversion or use original text as fallback",
                        element_id=formula.id,
                        source_location=formula.source_location,
                        details={"latex_error": error},
                    )
                )
            if len(formula.context or "") >= self.config.min_context_chars:
                with_context += 1
            else:
                issues.append(
                    PreservationIssue(
                        type=ErrorType.CONTEXT_MISSING,
                        severity=Severity.LOW,
                        description=f"Formula {formula.id} missing sufficient context",
                        suggestion="Extract more surrounding text for context",
                        element_id=formula.id,
                        source_location=formula.source_location,
                        details={"context_missing": True},
                    )
                )
            if formula.is_key_formula:
                key_formulas += 1

        extracted_texts = [formula.original_text or formula.latex for formula in extracted]
        extracted_texts += [formula.latex for formula in extracted if formula.original_text]
        for candidate in detected:
            if any(is_similar_formula(candidate, text) for text in extracted_texts):
                continue
            issues.append(
                PreservationIssue(
                    type=ErrorType.FORMULA_LOST,
                    severity=Severity.MEDIUM,
                    description=f"Source formula not found in extracted content: {candidate}",
                    suggestion="Review formula detection patterns or extraction confidence threshold",
                    details={"source_formula": candidate},
                )
            )

        threshold = self.config.formula_preservation_threshold
        if rate < threshold:
            issues.append(
                PreservationIssue(
                    type=ErrorType.CONTENT_LOSS,
                    severity=Severity.HIGH,
                    description=f"Only {len(extracted)}/{len(detected)} formulas preserved ({rate:.0%})",
                    suggestion="Lower confidence threshold or improve formula detection patterns",
                )
            )
        return FormulaValidationResult(
            passed=rate >= threshold and valid_latex >= len(extracted) * 0.8,
            details=f"{len(extracted)}/{len(detected)} formulas preserved, {valid_latex} with valid LaTeX",
            confidence=rate,
            issues=issues,
            total_formulas_found=len(detected),
            formulas_preserved=len(extracted),
            formulas_with_valid_latex=valid_latex,
            formulas_with_context=with_context,
            key_formulas_preserved=key_formulas,
            preservation_rate=rate,
        )

    # ------------------------------------------------------------------ examples

    def validate_example_completeness(
        self,
        source_text: str,
        extracted: Sequence[WorkedExample],
    ) -> ExampleValidationResult:
        issues: List[PreservationIssue] = []
        detected = detect_examples_in_source(source_text)
        complete = with_solutions = with_steps = 0
        for example in extracted:
            example_issues = self._example_issues(example)
            issues.extend(example_issues)
            if example.solution:
                with_solutions += 1
                if len(example.solution) >= 2:
                    with_steps += 1
            if not example_issues and example.is_complete:
                complete += 1

        preserved = len(extracted)
        completeness = complete / preserved if preserved else 1.0
        preservation = min(1.0, preserved / len(detected)) if detected else 1.0
        return ExampleValidationResult(
            passed=preservation >= self.config.example_completeness_threshold
            and completeness >= self.config.min_completeness_rate,
            details=f"{complete}/{preserved} examples complete, {with_solutions} with solutions",
            confidence=completeness,
            issues=issues,
            total_examples_found=len(detected),
            examples_preserved=preserved,
            complete_examples=complete,
            examples_with_solutions=with_solutions,
            examples_with_steps=with_steps,
            preservation_rate=preservation,
            completeness_rate=completeness,
        )

    def _example_issues(self, example: WorkedExample) -> List[PreservationIssue]:
        issues: List[PreservationIssue] = []
        if len(example.problem or "") < 10:
            issues.append(
                PreservationIssue(
                    type=ErrorType.EXAMPLE_INCOMPLETE,
                    severity=Severity.MEDIUM,
                    description=f"Example {example.id} missing or insufficient problem statement",
                    suggestion="Extract complete problem statement from source",
                    element_id=example.id,
                    source_location=example.source_location,
                    details={"missing_problem_statement": True},
                )
            )
        if not example.solution:
            issues.append(
                PreservationIssue(
                    type=ErrorType.EXAMPLE_INCOMPLETE,
                    severity=Severity.HIGH,
                    description=f"Example {example.id} has no solution steps",
                    suggestion="Extract step-by-step solution from source",
                    element_id=example.id,
                    source_location=example.source_location,
                    details={"incomplete_solution": True},
                )
            )
            return issues
        valid_steps = [
            step for step in example.solution if len(step.description or "") > self.config.min_step_description_chars
        ]
        if len(valid_steps) < len(example.solution) * self.config.valid_step_ratio:
            issues.append(
                PreservationIssue(
                    type=ErrorType.EXAMPLE_INCOMPLETE,
                    severity=Severity.MEDIUM,
                    description=f"Example {example.id} has incomplete solution steps",
                    suggestion="Improve step extraction to capture complete descriptions",
                    element_id=example.id,
                    source_location=example.source_location,
                    details={"missing_steps": len(example.solution) - len(valid_steps)},
                )
            )
        return issues

    # ------------------------------------------------------------------ references

    def validate_cross_reference_integrity(
        self,
        references: Sequence[CrossReference],
        document: AcademicDocument,
    ) -> CrossReferenceValidationResult:
        issues: List[PreservationIssue] = []
        ids = document.element_ids()
        valid = broken = missing_targets = 0
        for reference in references:
            ok = True
            if reference.target_id not in ids:
                issues.append(
                    PreservationIssue(
                        type=ErrorType.BROKEN_REF,
                        severity=Severity.MEDIUM,
                        description=f"Cross-reference {reference.id} points to non-existent target {reference.target_id}",
                        suggestion="Update target ID or remove invalid reference",
                        element_id=reference.id,
                        details={"target_id": reference.target_id, "broken_link": True},
                    )
                )
                missing_targets += 1
                ok = False
            if reference.source_id not in ids:
                issues.append(
                    PreservationIssue(
                        type=ErrorType.BROKEN_REF,
                        severity=Severity.LOW,
                        description=f"Cross-reference {reference.id} has invalid source {reference.source_id}",
                        suggestion="Update source ID or remove invalid reference",
                        element_id=reference.id,
                        details={"source_id": reference.source_id},
                    )
                )
                ok = False
            if not is_valid_display_text(reference.display_text, reference.type):
                issues.append(
                    PreservationIssue(
                        type=ErrorType.CONTEXT_MISSING,
                        severity=Severity.LOW,
                        description=f"Cross-reference {reference.id} has invalid display text format: {reference.display_text}",
                        suggestion='Use standard academic reference format (e.g., "see Ex. 3.2")',
                        element_id=reference.id,
                    )
                )
            if ok:
                valid += 1
            else:
                broken += 1

        total = len(references)
        rate = valid / total if total else 1.0
        return CrossReferenceValidationResult(
            passed=rate >= self.config.cross_reference_integrity_threshold,
            details=f"{valid}/{total} cross-references valid, {broken} broken",
            confidence=rate,
            issues=issues,
            total_references=total,
            valid_references=valid,
            broken_references=broken,
            missing_targets=missing_targets,
            integrity_rate=rate,
        )

    # ------------------------------------------------------------------ rendering

    def validate_math_rendering_accuracy(self, content: MathematicalContent) -> MathRenderingValidationResult:
        issues: List[PreservationIssue] = []
        elements: List[Tuple[str, Optional[str], Optional[SourceLocation]]] = [
            (formula.id, formula.latex, formula.source_location) for formula in content.formulas
        ]
        for example in content.worked_examples:
            for step in example.solution:
                if step.formula or step.latex:
                    elements.append((f"{example.id}_step_{step.step_number}", step.latex or step.formula, None))

        valid = renderable = latex_valid = 0
        for element_id, latex, location in elements:
            error = latex_error(latex)
            renders = error is None and is_renderable_latex(latex or "")
            if error is None:
                latex_valid += 1
            if renders:
                renderable += 1
                valid += 1
                continue
            issues.append(
                PreservationIssue(
                    type=ErrorType.CONVERSION_FAILED,
                    severity=Severity.MEDIUM if error else Severity.LOW,
                    description=f"{element_id} {'has invalid LaTeX: ' + error if error else 'cannot be rendered'}",
                    suggestion="Review LaTeX syntax or use original text as fallback",
                    element_id=element_id,
                    source_location=location,
                    details={"latex_syntax_error": error is not None},
                )
            )

        total = len(elements)
        rate = valid / total if total else 1.0
        return MathRenderingValidationResult(
            passed=rate >= self.config.math_rendering_accuracy_threshold,
            details=f"{valid}/{total} math elements valid, {renderable} renderable",
            confidence=rate,
            issues=issues,
            total_math_elements=total,
            valid_math_elements=valid,
            renderable_elements=renderable,
            latex_valid_elements=latex_valid,
            accuracy_rate=rate,
        )

    # ------------------------------------------------------------------ advice

    @staticmethod
    def recommendations(
        formulas: FormulaValidationResult,
        examples: ExampleValidationResult,
        references: CrossReferenceValidationResult,
        rendering: MathRenderingValidationResult,
    ) -> List[ValidationRecommendation]:
        advice: List[ValidationRecommendation] = []
        if formulas.preservation_rate < 0.9:
            advice.append(
                ValidationRecommendation(
                    type="improvement",
                    priority="high",
                    title="Improve Formula Preservation",
                    description=f"Only {formulas.preservation_rate:.0%} of formulas preserved",
                    action="Lower confidence threshold or improve detection patterns",
                    impact="Better mathematical content coverage",
                )
            )
        if examples.completeness_rate < 0.8:
            advice.append(
                ValidationRecommendation(
                    type="improvement",
                    priority="medium",
                    title="Improve Example Completeness",
                    description=f"Only {examples.completeness_rate:.0%} of examples are complete",
                    action="Enhance solution step extraction and validation",
                    impact="More comprehensive worked examples",
                )
            )
        if references.integrity_rate < 0.95:
            advice.append(
                ValidationRecommendation(
                    type="fix",
                    priority="medium",
                    title="Fix Cross-Reference Links",
                    description=f"{references.broken_references} broken cross-references found",
                    action="Update target IDs and validate reference integrity",
                    impact="Better document navigation and coherence",
                )
            )
        if rendering.accuracy_rate < 0.9:
            advice.append(
                ValidationRecommendation(
                    type="fix",
                    priority="high",
                    title="Fix Mathematical Rendering",
                    description=f"{rendering.total_math_elements - rendering.valid_math_elements} math elements have rendering issues",
                    action="Review LaTeX syntax and provide fallback text",
                    impact="Proper mathematical content display",
                )
            )
        return advice


def issues_by_type(issues: Iterable[PreservationIssue]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for issue in issues:
        counts[issue.type.value] = counts.get(issue.type.value, 0) + 1
    return counts


__all__ = [
    "ContentPreservationValidator",
    "ContentValidationResult",
    "CrossReferenceValidationResult",
    "ExampleValidationResult",
    "FormulaValidationResult",
    "MathRenderingValidationResult",
    "PreservationIssue",
    "ValidationRecommendation",
    "detect_examples_in_source",
    "detect_formulas_in_source",
    "is_similar_formula",
    "is_valid_latex",
    "issues_by_type",
    "latex_error",
    "merge_extracted",
]
