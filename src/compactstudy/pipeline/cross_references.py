"""
Cross-reference generation, tracking and validation.

References are discovered two ways. Explicit intent signals in prose ("see
Example 2.1", "as in Eq.", "by Theorem 3") are resolved by display number or,
when no number is given, to the nearest element of the requested type. Title
similarity then proposes softer links between nearby elements. A numbered
reference that resolves to nothing is kept, flagged broken, and rendered as
plain text.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Literal, Optional, Sequence, Tuple, Union

from ..config.runtime import CrossReferenceConfig
from ..core.models import (
    AcademicDocument,
    CrossReference,
    ErrorType,
    MathematicalContent,
    ProcessingWarning,
    ReferenceType,
    Severity,
)

LOGGER = logging.getLogger(__name__)

ValidationErrorType = Literal["missing_target", "circular_reference", "invalid_format"]

SIGNAL_RE = re.compile(
    r"\b(?P<signal>see|cf\.|as in|by|from|using)\s+"
    r"(?P<kind>Example|Ex\.|Equation|Eq\.|Formula|Section|Sec\.|Theorem|Thm\.|Definition|Def\.)"
    r"(?:\s*\(?(?P<number>\d+(?:\.\d+)*)\)?)?",
    re.IGNORECASE,
)
_KIND_TYPES: Dict[str, ReferenceType] = {
    "example": "example",
    "ex.": "example",
    "equation": "formula",
    "eq.": "formula",
    "formula": "formula",
    "section": "section",
    "sec.": "section",
    "theorem": "theorem",
    "thm.": "theorem",
    "definition": "definition",
    "def.": "definition",
}
ID_PREFIXES: Dict[str, str] = {
    "example": "ex-",
    "formula": "eq-",
    "theorem": "thm-",
    "definition": "def-",
    "section": "",
}
PLAIN_LABELS: Dict[str, str] = {
    "example": "Example",
    "formula": "Equation",
    "section": "Section",
    "theorem": "Theorem",
    "definition": "Definition",
}
_TITLE_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)*)")


@dataclass(frozen=True)
class ReferenceableItem:
    id: str
    type: ReferenceType
    title: str
    content: str
    part_index: int
    section_index: int
    order: int
    numbers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ReferenceCandidate:
    source_id: str
    target_id: str
    type: ReferenceType
    confidence: float
    context: str
    distance: int
    broken: bool = False


@dataclass(frozen=True)
class ReferenceValidation:
    reference_id: str
    is_valid: bool
    message: str
    error_type: Optional[ValidationErrorType] = None
    confidence: float = 1.0


@dataclass
class CrossReferenceProcessingResult:
    processed_references: List[CrossReference]
    broken_references: List[CrossReference] = field(default_factory=list)
    warnings: List[ProcessingWarning] = field(default_factory=list)


@dataclass
class _Tracker:
    references: Dict[str, CrossReference] = field(default_factory=dict)
    reverse_index: Dict[str, List[str]] = field(default_factory=dict)
    validation_results: List[ReferenceValidation] = field(default_factory=list)

    def reset(self) -> None:
        self.references.clear()
        self.reverse_index.clear()
        self.validation_results = []

    def add(self, reference: CrossReference) -> None:
        self.references[reference.id] = reference
        self.reverse_index.setdefault(reference.target_id, []).append(reference.id)


def display_id(target_id: str) -> str:
    for prefix in ("ex-", "eq-", "thm-", "def-", "part-"):
        if target_id.startswith(prefix):
            return target_id[len(prefix) :]
    return target_id


def plain_text(reference_type: str, target_id: str) -> str:
    return f"{PLAIN_LABELS.get(reference_type, reference_type.title())} {display_id(target_id)}"


def distance(source: ReferenceableItem, target: ReferenceableItem) -> int:
    part_distance = abs(source.part_index - target.part_index)
    section_distance = abs(source.section_index - target.section_index) if part_distance == 0 else 0
    return part_distance * 10 + section_distance


class CrossReferenceSystem:
    def __init__(self, config: Optional[CrossReferenceConfig] = None) -> None:
        self.config = config or CrossReferenceConfig()
        self._tracker = _Tracker()

    # ------------------------------------------------------------------ items

    def referenceable_items(self, document: AcademicDocument) -> Dict[str, ReferenceableItem]:
        items: Dict[str, ReferenceableItem] = {}
        order = 0

        def _add(item_id: str, item_type: ReferenceType, title: str, content: str, p: int, s: int, numbers: Iterable[str]) -> None:
            nonlocal order
            items[item_id] = ReferenceableItem(
                id=item_id,
                type=item_type,
                title=title,
                content=content,
                part_index=p,
                section_index=s,
                order=order,
                numbers=tuple(dict.fromkeys(number for number in numbers if number)),
            )
            order += 1

        for part_index, part in enumerate(document.parts):
            _add(part.anchor, "section", part.title, "", part_index, -1, ())
        for part_index, section_index, section in document.iter_sections():
            _add(section.section_number, "section", section.title, section.content, part_index, section_index, (section.section_number,))
            for formula in section.formulas:
                _add(formula.id, "formula", formula.context, formula.latex, part_index, section_index, (formula.number or display_id(formula.id),))
            for example in section.examples:
                title_number = _TITLE_NUMBER_RE.search(example.title)
                numbers = (example.number or display_id(example.id), title_number.group(1) if title_number else "")
                _add(example.id, "example", example.title, example.problem, part_index, section_index, numbers)
            for definition in section.definitions:
                _add(definition.id, "definition", definition.term, definition.definition, part_index, section_index, (display_id(definition.id),))
            for theorem in section.theorems:
                _add(theorem.id, "theorem", theorem.name, theorem.statement, part_index, section_index, (display_id(theorem.id),))
        return items

    # ------------------------------------------------------------------ generation

    def generate_cross_references(self, document: AcademicDocument) -> List[CrossReference]:
        """Discover references in ``document`` and return them with ``ref-N`` ids."""
        self._tracker.reset()
        if not self.config.enable_auto_generation:
            return []

        items = self.referenceable_items(document)
        candidates: List[ReferenceCandidate] = []
        for source, text in self._sources(document, items):
            candidates.extend(self._signal_candidates(text, source, items))
            if self.config.enable_similarity_candidates:
                candidates.extend(self._similarity_candidates(text, source, items))

        references = self._create_references(candidates)
        if self.config.validation_enabled:
            self._tracker.validation_results = self.validate_references(references, document, items=items)
        LOGGER.debug("Generated %d cross-reference(s) from %d candidate(s)", len(references), len(candidates))
        return references

    def _sources(
        self,
        document: AcademicDocument,
        items: Dict[str, ReferenceableItem],
    ) -> Iterable[Tuple[ReferenceableItem, str]]:
        for _, _, section in document.iter_sections():
            yield items[section.section_number], section.content
            for example in section.examples:
                text = " ".join([example.problem] + [step.description for step in example.solution])
                yield items[example.id], text

    def _signal_candidates(
        self,
        text: str,
        source: ReferenceableItem,
        items: Dict[str, ReferenceableItem],
    ) -> List[ReferenceCandidate]:
        candidates: List[ReferenceCandidate] = []
        for match in SIGNAL_RE.finditer(text):
            ref_type = _KIND_TYPES[match.group("kind").lower()]
            number = match.group("number")
            context = _sentence_around(text, match.start(), match.end())
            if number:
                target = self._resolve_number(ref_type, number, source, items)
                if target is None:
                    candidates.append(
                        ReferenceCandidate(
                            source_id=source.id,
                            target_id=f"{ID_PREFIXES[ref_type]}{number}",
                            type=ref_type,
                            confidence=1.0,
                            context=context,
                            distance=0,
                            broken=True,
                        )
                    )
                    continue
                confidence = 1.0
            else:
                target = self._nearest(ref_type, source, items)
                if target is None:
                    continue
                confidence = 0.9
            candidates.append(
                ReferenceCandidate(
                    source_id=source.id,
                    target_id=target.id,
                    type=ref_type,
                    confidence=confidence,
                    context=context,
                    distance=distance(source, target),
                )
            )
        return candidates

    def _resolve_number(
        self,
        ref_type: ReferenceType,
        number: str,
        source: ReferenceableItem,
        items: Dict[str, ReferenceableItem],
    ) -> Optional[ReferenceableItem]:
        matches = [
            item for item in items.values() if item.type == ref_type and number in item.numbers and item.id != source.id
        ]
        if not matches:
            return None
        # Display numbers are unique; title numbers can repeat across parts.
        exact = [item for item in matches if item.numbers and item.numbers[0] == number]
        pool = exact or matches
        return min(pool, key=lambda item: (distance(source, item), item.order))

    def _nearest(
        self,
        ref_type: ReferenceType,
        source: ReferenceableItem,
        items: Dict[str, ReferenceableItem],
    ) -> Optional[ReferenceableItem]:
        pool = [
            item
            for item in items.values()
            if item.type == ref_type
            and item.id != source.id
            and item.section_index >= 0
            and item.part_index == source.part_index
            and distance(source, item) <= self.config.max_distance
        ]
        if not pool:
            return None
        return min(pool, key=lambda item: (distance(source, item), item.order))

    def _similarity_candidates(
        self,
        text: str,
        source: ReferenceableItem,
        items: Dict[str, ReferenceableItem],
    ) -> List[ReferenceCandidate]:
        candidates: List[ReferenceCandidate] = []
        for item in items.values():
            # Formula titles are surrounding prose, which matches its own section trivially.
            if item.section_index < 0 or item.type == "formula":
                continue
            if (item.part_index, item.section_index) == (source.part_index, source.section_index):
                continue
            confidence = self.reference_confidence(text, item)
            if confidence < self.config.confidence_threshold:
                continue
            gap = distance(source, item)
            if gap > self.config.max_distance:
                continue
            candidates.append(
                ReferenceCandidate(
                    source_id=source.id,
                    target_id=item.id,
                    type=item.type,
                    confidence=confidence,
                    context=_sentence_containing(text, item.title),
                    distance=gap,
                )
            )
        return candidates

    @staticmethod
    def reference_confidence(text: str, item: ReferenceableItem) -> float:
        lowered = text.lower()
        title = item.title.lower().strip()
        words = [word for word in re.findall(r"[a-z0-9']+", title) if len(word) > 3]
        if not words:
            return 0.0
        confidence = 0.0
        if len(title) > 3 and title in lowered:
            confidence += 0.8
        confidence += sum(1 for word in words if word in lowered) / len(words) * 0.4
        if item.type == "formula" and "formula" in lowered:
            confidence += 0.3
        if item.type == "example" and "example" in lowered:
            confidence += 0.3
        if item.type == "section" and "section" in lowered:
            confidence += 0.2
        if item.type == "formula" and re.search(r"\b(equation|formula|identity|law)\b", lowered):
            confidence += 0.2
        return min(confidence, 1.0)

    def _create_references(self, candidates: Sequence[ReferenceCandidate]) -> List[CrossReference]:
        ordered = sorted(candidates, key=lambda candidate: -candidate.confidence)
        seen: set[Tuple[str, str]] = set()
        references: List[CrossReference] = []
        for candidate in ordered:
            key = (candidate.source_id, candidate.target_id)
            if key in seen:
                continue
            seen.add(key)
            reference = CrossReference(
                id=f"ref-{len(references) + 1}",
                type=candidate.type,
                source_id=candidate.source_id,
                target_id=candidate.target_id,
                display_text=self.format_reference_parts(candidate.type, candidate.target_id),
            )
            if candidate.broken:
                fallback = plain_text(candidate.type, candidate.target_id)
                reference = reference.model_copy(update={"is_broken": True, "fallback_text": fallback, "display_text": fallback})
            references.append(reference)
            self._tracker.add(reference)
        return references

    # ------------------------------------------------------------------ formatting

    def format_reference(self, reference: CrossReference) -> str:
        return self.format_reference_parts(reference.type, reference.target_id)

    def format_reference_parts(self, reference_type: str, target_id: str) -> str:
        template = self.config.reference_formats.get(reference_type, "see {id}")
        return template.replace("{id}", display_id(target_id))

    def format_pattern(self, reference_type: str) -> re.Pattern[str]:
        template = self.config.reference_formats.get(reference_type, "see {id}")
        head, _, tail = template.partition("{id}")
        return re.compile(rf"^{re.escape(head)}\d+(?:\.\d+)*{re.escape(tail)}$")

    # ------------------------------------------------------------------ validation

    def validate_references(
        self,
        references: Sequence[CrossReference],
        document: AcademicDocument,
        *,
        items: Optional[Dict[str, ReferenceableItem]] = None,
    ) -> List[ReferenceValidation]:
        items = items if items is not None else self.referenceable_items(document)
        pairs = {(reference.source_id, reference.target_id) for reference in references}
        results: List[ReferenceValidation] = []
        for reference in references:
            if reference.target_id not in items:
                results.append(
                    ReferenceValidation(
                        reference_id=reference.id,
                        is_valid=False,
                        error_type="missing_target",
                        message=f"Reference target '{reference.target_id}' not found",
                    )
                )
            elif reference.source_id == reference.target_id or (reference.target_id, reference.source_id) in pairs:
                results.append(
                    ReferenceValidation(
                        reference_id=reference.id,
                        is_valid=False,
                        error_type="circular_reference",
                        message=f"Circular reference between '{reference.source_id}' and '{reference.target_id}'",
                        confidence=0.9,
                    )
                )
            elif not self.format_pattern(reference.type).match(reference.display_text):
                results.append(
                    ReferenceValidation(
                        reference_id=reference.id,
                        is_valid=False,
                        error_type="invalid_format",
                        message=f"Invalid reference format: '{reference.display_text}'",
                        confidence=0.8,
                    )
                )
            else:
                results.append(ReferenceValidation(reference_id=reference.id, is_valid=True, message="Reference is valid"))
        return results

    def get_validation_results(self) -> List[ReferenceValidation]:
        return list(self._tracker.validation_results)

    def find_references_to_target(self, target_id: str) -> List[CrossReference]:
        return [self._tracker.references[ref_id] for ref_id in self._tracker.reverse_index.get(target_id, [])]

    # ------------------------------------------------------------------ processing

    def process_cross_references(
        self,
        references: Sequence[CrossReference],
        content: Union[MathematicalContent, AcademicDocument],
    ) -> CrossReferenceProcessingResult:
        """Resolve ``references`` against ``content``.

        Valid references get their canonical display text; broken ones are
        kept, flagged, and fall back to plain descriptive text. The output
        depends only on the inputs.
        """
        if isinstance(content, AcademicDocument):
            ids = content.element_ids()
            check_source = True
        else:
            ids = {item.id for item in (*content.formulas, *content.worked_examples, *content.definitions, *content.theorems)}
            check_source = False

        processed: List[CrossReference] = []
        broken: List[CrossReference] = []
        warnings: List[ProcessingWarning] = []
        for reference in references:
            missing_target = reference.target_id not in ids
            missing_source = check_source and reference.source_id not in ids
            if not (missing_target or missing_source):
                processed.append(
                    reference.model_copy(
                        update={"display_text": self.format_reference(reference), "is_broken": False, "fallback_text": None}
                    )
                )
                continue
            fallback = plain_text(reference.type, reference.target_id)
            flagged = reference.model_copy(update={"is_broken": True, "fallback_text": fallback, "display_text": fallback})
            processed.append(flagged)
            broken.append(flagged)
            missing = reference.target_id if missing_target else reference.source_id
            warnings.append(
                ProcessingWarning(
                    stage="cross-reference",
                    type=ErrorType.BROKEN_REF,
                    severity=Severity.MEDIUM,
                    message=f"Broken reference {reference.id}: '{missing}' does not exist",
                    suggestion="Check the referenced element number",
                    recovery_action="rendered as plain text",
                )
            )
        return CrossReferenceProcessingResult(processed_references=processed, broken_references=broken, warnings=warnings)


def _sentence_around(text: str, start: int, end: int) -> str:
    left = max(text.rfind(".", 0, start), text.rfind("!", 0, start), text.rfind("?", 0, start))
    right_candidates = [pos for pos in (text.find(mark, end) for mark in ".!?") if pos != -1]
    right = min(right_candidates) if right_candidates else len(text)
    return text[left + 1 : right].strip()


def _sentence_containing(text: str, title: str) -> str:
    lowered = title.lower()
    for sentence in re.split(r"[.!?]+", text):
        if lowered and lowered in sentence.lower():
            return sentence.strip()
    return text[:100]


__all__ = [
    "CrossReferenceProcessingResult",
    "CrossReferenceSystem",
    "ReferenceCandidate",
    "ReferenceValidation",
    "ReferenceableItem",
    "SIGNAL_RE",
    "display_id",
    "plain_text",
]
