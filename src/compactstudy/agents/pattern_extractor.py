"""Deterministic regex-based extraction capability.

Used as the default capability when no AI backend is configured and as the
fallback during recovery. It recognizes delimited LaTeX, probability
notation, function definitions, simple equations, worked examples laid out
as ``Example N: ... Solution: ... Step N: ...`` and textual definitions and
theorems.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..core.models import SourceLocation
from ..core.sanitizer import sanitize_unicode_to_latex
from .base import (
    DefinitionRecord,
    ExampleRecord,
    ExtractionCapability,
    ExtractionHints,
    ExtractionResponse,
    FormulaRecord,
    StepRecord,
    TheoremRecord,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MathPattern:
    name: str
    regex: re.Pattern[str]
    kind: str  # "formula" | "equation"
    priority: str  # "high" | "medium" | "low"
    delimited: bool = False


MATH_PATTERNS: List[MathPattern] = [
    MathPattern("display_dollars", re.compile(r"\$\$([^$]+)\$\$"), "equation", "high", True),
    MathPattern("inline_dollars", re.compile(r"(?<!\$)\$([^$\n]+)\$(?!\$)"), "formula", "high", True),
    MathPattern("display_brackets", re.compile(r"\\\[(.+?)\\\]", re.DOTALL), "equation", "high", True),
    MathPattern("inline_parens", re.compile(r"\\\((.+?)\\\)"), "formula", "high", True),
    MathPattern("probability", re.compile(r"\bP\s*\(\s*[^)]+\)(?:\s*=\s*[^,\n;]+)?"), "formula", "high"),
    MathPattern("expectation", re.compile(r"\bE\s*\[\s*[^\]]+\](?:\s*=\s*[^,\n;]+)?"), "formula", "high"),
    MathPattern("variance", re.compile(r"\bVar\s*\(\s*[^)]+\)(?:\s*=\s*[^,\n;]+)?"), "formula", "high"),
    MathPattern("relation", re.compile(r"\bR\s*:\s*[A-Z]\s*[×x]\s*[A-Z]\s*→\s*[A-Z]"), "formula", "high"),
    MathPattern("set_builder", re.compile(r"\{[^{}]*\|[^{}]*\}"), "formula", "medium"),
    MathPattern("function_definition", re.compile(r"\b[a-zA-Z]\s*\(\s*[^)]+\)\s*=\s*[^,\n;]+"), "formula", "high"),
    MathPattern(
        "named_function",
        re.compile(r"\b(?:sin|cos|tan|log|ln|exp|sqrt)\s*\([^)]+\)"),
        "formula",
        "medium",
    ),
    MathPattern("summation", re.compile(r"[∑∏]\s*_\{[^}]+\}\s*\^\{[^}]+\}\s*[^,\n]+"), "equation", "high"),
    MathPattern("assignment", re.compile(r"\b[a-zA-Z]\s*=\s*[^,\n=;]+"), "formula", "medium"),
]

_PRIORITY_BONUS = {"high": 0.2, "medium": 0.1, "low": 0.0}
_MATH_SYMBOLS_RE = re.compile(r"[∑∏∫√±≤≥≠∞αβγδεζηθικλμνξοπρστυφχψω]")

_ASCII_CONVERSIONS = [
    (re.compile(r"\+/-"), r"\\pm "),
    (re.compile(r"!="), r"\\neq "),
    (re.compile(r"<="), r"\\leq "),
    (re.compile(r">="), r"\\geq "),
    (re.compile(r"~="), r"\\approx "),
    (re.compile(r"\binfinity\b"), r"\\infty "),
    (re.compile(r"\*"), r"\\cdot "),
    (re.compile(r"(?<![\w{])(\d+)/(\d+)(?![\w}])"), r"\\frac{\1}{\2}"),
    (re.compile(r"\^(\d{2,})"), r"^{\1}"),
    (re.compile(r"_(\d{2,})"), r"_{\1}"),
]

_EXAMPLE_RE = re.compile(
    r"(?P<label>Example|Problem|Exercise)\s+(?P<number>\d+(?:\.\d+)*)\s*[:.]\s*(?P<body>.*?)"
    r"(?=(?:Example|Problem|Exercise)\s+\d+(?:\.\d+)*\s*[:.]|\Z)",
    re.DOTALL | re.IGNORECASE,
)
_SOLUTION_RE = re.compile(r"\bSolution\s*[:.]", re.IGNORECASE)
_STEP_RE = re.compile(
    r"Step\s+(?P<number>\d+)\s*[:.]\s*(?P<body>.*?)(?=Step\s+\d+\s*[:.]|\Z)",
    re.DOTALL | re.IGNORECASE,
)
_DEFINITION_PATTERNS = [
    re.compile(r"Definition(?:\s+\d+(?:\.\d+)*)?\s*[:.]\s*(?P<term>[A-Z][\w\s-]{1,60}?)\s+(?:is|are)\s+(?P<body>[^.\n]+\.)"),
    re.compile(r"(?P<term>[A-Z][\w\s-]{1,60}?)\s+is\s+defined\s+as\s+(?P<body>[^.\n]+\.)"),
]
_THEOREM_RE = re.compile(
    r"\b(?P<label>Theorem|Lemma|Corollary|Law|Rule)(?:\s+\d+(?:\.\d+)*)?\s*(?:\((?P<name>[^)]+)\))?\s*[:.]\s*(?P<body>[^\n]+)",
)


def convert_to_latex(text: str) -> str:
    """Best-effort conversion of plain-text math to LaTeX."""
    if "\\" in text:
        return sanitize_unicode_to_latex(text).strip()
    latex = sanitize_unicode_to_latex(text)
    for regex, replacement in _ASCII_CONVERSIONS:
        latex = regex.sub(replacement, latex)
    return re.sub(r"\s+", " ", latex).strip()


def _confidence(text: str, pattern: MathPattern) -> float:
    confidence = 0.5
    if pattern.delimited:
        confidence += 0.3
    confidence += _PRIORITY_BONUS.get(pattern.priority, 0.0)
    if len(text) > 10:
        confidence += 0.1
    confidence += min(0.2, len(_MATH_SYMBOLS_RE.findall(text)) * 0.05)
    return min(1.0, round(confidence, 2))


def _context(text: str, start: int, end: int, window: int) -> str:
    return " ".join(text[max(0, start - window) : min(len(text), end + window)].split())


class PatternExtractionCapability(ExtractionCapability):
    """Regex capability; deterministic and free of external calls."""

    name = "pattern"

    def __init__(self, config: Optional[Dict[str, object]] = None) -> None:
        super().__init__(config)
        self.context_window = int(self.config.get("context_window_chars", 100))  # type: ignore[arg-type]
        self.min_confidence = float(self.config.get("confidence_threshold", 0.0))  # type: ignore[arg-type]

    async def extract(
        self,
        text: str,
        source_location: SourceLocation,
        hints: ExtractionHints,
    ) -> ExtractionResponse:
        response = ExtractionResponse(
            formulas=self.find_formulas(text, hints),
            examples=self.find_examples(text, hints),
            definitions=self.find_definitions(text),
            theorems=self.find_theorems(text),
        )
        LOGGER.debug(
            "Pattern extraction for %s: %d formulas, %d examples",
            source_location.file_id,
            len(response.formulas),
            len(response.examples),
        )
        return response

    def find_formulas(self, text: str, hints: Optional[ExtractionHints] = None) -> List[FormulaRecord]:
        claimed: List[tuple[int, int]] = []
        found: List[tuple[int, FormulaRecord]] = []
        for pattern in MATH_PATTERNS:
            for match in pattern.regex.finditer(text):
                start, end = match.span()
                if any(start < c_end and end > c_start for c_start, c_end in claimed):
                    continue
                raw = match.group(0)
                body = match.group(1) if pattern.delimited else raw
                confidence = _confidence(raw, pattern)
                if confidence < self.min_confidence:
                    continue
                claimed.append((start, end))
                found.append(
                    (
                        start,
                        FormulaRecord(
                            latex=convert_to_latex(body),
                            original_text=raw,
                            context=_context(text, start, end, self.context_window),
                            type="display" if pattern.kind == "equation" else "inline",
                            is_key_formula=pattern.priority == "high",
                            confidence=confidence,
                            subtopic=hints.focus if hints else None,
                            text_position=start,
                        ),
                    )
                )
        found.sort(key=lambda item: item[0])
        records = [record for _, record in found]
        if hints and hints.max_items is not None:
            records = records[: hints.max_items]
        return records

    def find_examples(self, text: str, hints: Optional[ExtractionHints] = None) -> List[ExampleRecord]:
        examples: List[ExampleRecord] = []
        for match in _EXAMPLE_RE.finditer(text):
            body = match.group("body").strip()
            solution_match = _SOLUTION_RE.search(body)
            step_match = _STEP_RE.search(body)
            split_at = min(
                (m.start() for m in (solution_match, step_match) if m is not None),
                default=len(body),
            )
            problem = " ".join(body[:split_at].split())
            solution_text = body[split_at:]
            if solution_match is not None and solution_match.start() == split_at:
                solution_text = body[solution_match.end() :]
            steps = self._steps(solution_text)
            confidence = 0.8 if steps else 0.6
            if len(body) > 200:
                confidence += 0.1
            examples.append(
                ExampleRecord(
                    title=f"{match.group('label').title()} {match.group('number')}",
                    problem=problem,
                    solution=steps,
                    confidence=min(1.0, confidence),
                    is_complete=bool(steps) and len(problem) >= 10,
                    subtopic=hints.focus if hints else None,
                    text_position=match.start(),
                )
            )
        if hints and hints.max_items is not None:
            examples = examples[: hints.max_items]
        return examples

    def _steps(self, solution_text: str) -> List[StepRecord]:
        steps: List[StepRecord] = []
        for match in _STEP_RE.finditer(solution_text):
            description = " ".join(match.group("body").split())
            if not description:
                continue
            formulas = self.find_formulas(description)
            steps.append(
                StepRecord(
                    step_number=int(match.group("number")),
                    description=description,
                    latex=formulas[0].latex if formulas else None,
                )
            )
        if not steps:
            remainder = " ".join(solution_text.split())
            if remainder:
                formulas = self.find_formulas(remainder)
                steps.append(
                    StepRecord(
                        step_number=1,
                        description=remainder,
                        latex=formulas[0].latex if formulas else None,
                    )
                )
        return steps

    def find_definitions(self, text: str) -> List[DefinitionRecord]:
        definitions: List[DefinitionRecord] = []
        seen: set[str] = set()
        for regex in _DEFINITION_PATTERNS:
            for match in regex.finditer(text):
                term = " ".join(match.group("term").split())
                if term.lower() in seen:
                    continue
                seen.add(term.lower())
                definitions.append(
                    DefinitionRecord(
                        term=term,
                        definition=" ".join(match.group("body").split()),
                        context=_context(text, match.start(), match.end(), self.context_window),
                        confidence=0.7,
                    )
                )
        return definitions

    def find_theorems(self, text: str) -> List[TheoremRecord]:
        theorems: List[TheoremRecord] = []
        for match in _THEOREM_RE.finditer(text):
            label = match.group("label")
            name = match.group("name") or label
            theorems.append(
                TheoremRecord(
                    name=name.strip(),
                    statement=match.group("body").strip(),
                    confidence=0.7,
                )
            )
        return theorems


__all__ = ["MATH_PATTERNS", "MathPattern", "PatternExtractionCapability", "convert_to_latex"]
