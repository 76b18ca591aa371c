"""
Third stage: organize extracted content into an ``AcademicDocument``.

Every extracted document becomes one part, in source insertion order. Sections
come from header detection over the raw text, or fixed-size chunks when the
text has no usable headers. Formulas, examples, definitions and theorems are
assigned to the section whose text span contains them, then renumbered
``p.s.i`` within that section.
"""
from __future__ import annotations

import logging
import re
from bisect import bisect_right
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..core.models import (
    AcademicDocument,
    AcademicSection,
    Appendix,
    DocumentMetadata,
    DocumentPart,
    ErrorType,
    ExtractedDocument,
    MathematicalContent,
    Severity,
    SourceDocument,
    TOCEntry,
)
from ..core.result import RecoverableError
from .base import ContentProcessor, ProcessingMetrics, ProcessingResult, ProcessorValidation, StageInput

LOGGER = logging.getLogger(__name__)

DEFAULT_TITLE = "Compact Study Guide"
DEFAULT_PART_TITLES: Dict[str, str] = {
    "probability": "Discrete Probability",
    "relations": "Relations",
}
MIN_SECTION_CHARS = 10
MIN_CHUNK_CHARS = 50
SUBSTANTIAL_TEXT_CHARS = 100

_NUMBERED_HEADER_RE = re.compile(r"^(?:\d+(?:\.\d+)*\.?|[IVX]+\.)\s+\S")
_MARKDOWN_HEADER_RE = re.compile(r"^#{1,6}\s+(?P<title>\S.*)$")
_CONTENT_LABEL_RE = re.compile(
    r"^(?:Example|Problem|Exercise|Solution|Step|Definition|Theorem|Lemma|Proof|Note|Answer)\b",
    re.IGNORECASE,
)
_MATH_CHARS_RE = re.compile(r"[=+*/^_\\$<>∑∫√≤≥]")


@dataclass(frozen=True)
class _Span:
    title: str
    start: int
    end: int
    body: str


def roman(number: int) -> str:
    numerals = [(1000, "M"), (900, "CM"), (500, "D"), (400, "CD"), (100, "C"), (90, "XC"),
                (50, "L"), (40, "XL"), (10, "X"), (9, "IX"), (5, "V"), (4, "IV"), (1, "I")]
    result = []
    for value, symbol in numerals:
        while number >= value:
            result.append(symbol)
            number -= value
    return "".join(result)


def is_header(line: str) -> bool:
    """True for numbered, markdown, ALL CAPS or short title-case lines."""
    stripped = line.strip()
    if not stripped or len(stripped) >= 80:
        return False
    if _MARKDOWN_HEADER_RE.match(stripped):
        return True
    if _CONTENT_LABEL_RE.match(stripped) or _MATH_CHARS_RE.search(stripped):
        return False
    if _NUMBERED_HEADER_RE.match(stripped):
        return len(stripped.split()) <= 10
    if stripped.isupper() and 3 < len(stripped) < 50:
        return True
    words = stripped.split()
    return (
        stripped[0].isupper()
        and stripped[-1] not in ".:;,?!"
        and len(words) <= 8
        and sum(1 for word in words if word[:1].isupper()) >= max(1, len(words) // 2)
    )


def _header_title(line: str) -> str:
    stripped = line.strip()
    markdown = _MARKDOWN_HEADER_RE.match(stripped)
    if markdown:
        return markdown.group("title").strip()
    return re.sub(r"^(?:\d+(?:\.\d+)*\.?|[IVX]+\.)\s+", "", stripped)


def detect_sections(text: str, min_chars: int = MIN_SECTION_CHARS) -> List[_Span]:
    """Split ``text`` at header lines; returns nothing when fewer than two headers exist."""
    headers: List[Tuple[int, int, str]] = []
    position = 0
    for line in text.splitlines(keepends=True):
        if is_header(line):
            headers.append((position, position + len(line), _header_title(line)))
        position += len(line)
    if len(headers) < 2:
        return []

    spans: List[_Span] = []
    preamble = text[: headers[0][0]]
    for index, (start, body_start, title) in enumerate(headers):
        end = headers[index + 1][0] if index + 1 < len(headers) else len(text)
        body = text[body_start:end].strip()
        if len(body) <= min_chars:
            continue
        # The first section also owns whatever preceded it.
        span_start = 0 if not spans else start
        if not spans and preamble.strip():
            body = f"{preamble.strip()}\n{body}"
        spans.append(_Span(title=title, start=span_start, end=end, body=body))
    if spans:
        last = spans[-1]
        spans[-1] = _Span(title=last.title, start=last.start, end=len(text), body=last.body)
    return spans


def chunk_sections(text: str, titles: Sequence[str] = ()) -> List[_Span]:
    """Fallback: about three chunks cut at whitespace."""
    size = max(200, len(text) // 3)
    spans: List[_Span] = []
    start = 0
    while start < len(text):
        end = min(len(text), start + size)
        if end < len(text):
            cut = text.rfind(" ", start, end)
            newline = text.rfind("\n", start, end)
            cut = max(cut, newline)
            if cut > start:
                end = cut + 1
        chunk = text[start:end].strip()
        if len(chunk) > MIN_CHUNK_CHARS or (not spans and chunk):
            index = len(spans)
            first_line = chunk.splitlines()[0].strip()
            if index < len(titles):
                title = titles[index]
            elif 5 < len(first_line) < 80:
                title = first_line
            else:
                title = f"Section {index + 1}"
            spans.append(_Span(title=title, start=start, end=end, body=chunk))
        elif spans:
            last = spans[-1]
            spans[-1] = _Span(last.title, last.start, end, f"{last.body}\n{chunk}".strip())
        start = end
    return spans


def part_title(document: ExtractedDocument, index: int, presets: Mapping[str, str]) -> str:
    if document.domain in presets:
        return presets[document.domain]
    lines = [line.strip() for line in document.text.splitlines() if line.strip()]
    for line in lines[:5]:
        if 5 < len(line) < 100 and "Page" not in line and "©" not in line:
            if not re.match(r"^\d+\.", line) and not line[0].islower() and not _CONTENT_LABEL_RE.match(line):
                return _header_title(line)
    stem = Path(document.file_name).stem or f"Part {index + 1}"
    lowered = document.text.lower()
    if any(word in lowered for word in ("probability", "bayes", "random variable")):
        return f"Discrete Probability ({stem})"
    if any(word in lowered for word in ("relation", "reflexive", "symmetric")):
        return f"Relations ({stem})"
    return stem


class _Locator:
    """Finds where an item came from in the raw text."""

    def __init__(self, text: str, spans: Sequence[_Span]) -> None:
        self.text = text
        self.starts = [span.start for span in spans]

    def section_index(self, position: Optional[int], *needles: str) -> int:
        if position is None:
            for needle in needles:
                needle = (needle or "").strip()[:60]
                if len(needle) >= 3:
                    found = self.text.find(needle)
                    if found != -1:
                        position = found
                        break
        if position is None:
            return 0
        return max(0, bisect_right(self.starts, position) - 1)


def _position(item: Any) -> Optional[int]:
    location = getattr(item, "source_location", None)
    return location.text_position if location is not None else None


def build_sections(
    document: ExtractedDocument,
    part_number: int,
    *,
    section_titles: Sequence[str] = (),
    min_chars: int = MIN_SECTION_CHARS,
) -> List[AcademicSection]:
    text = document.text
    content = document.content
    if not text.strip():
        spans = [_Span("Content Overview", 0, 0, f"No text content available from {document.file_name}")]
    else:
        spans = detect_sections(text, min_chars) or chunk_sections(text, section_titles)
    if not spans:
        spans = [_Span("Content Overview", 0, len(text), text[:1000].strip())]

    locator = _Locator(text, spans)
    buckets: List[Dict[str, list]] = [
        {"formulas": [], "examples": [], "definitions": [], "theorems": []} for _ in spans
    ]
    for formula in content.formulas:
        index = locator.section_index(_position(formula), formula.original_text, formula.latex)
        buckets[index]["formulas"].append(formula)
    for example in content.worked_examples:
        index = locator.section_index(_position(example), example.problem, example.title)
        buckets[index]["examples"].append(example)
    for definition in content.definitions:
        index = locator.section_index(None, definition.definition, definition.term)
        buckets[index]["definitions"].append(definition)
    for theorem in content.theorems:
        index = locator.section_index(None, theorem.statement, theorem.name)
        buckets[index]["theorems"].append(theorem)

    sections: List[AcademicSection] = []
    renamed: Dict[str, str] = {}
    for span_index, (span, bucket) in enumerate(zip(spans, buckets), start=1):
        number = f"{part_number}.{span_index}"
        formulas = []
        for item_index, formula in enumerate(_ordered(bucket["formulas"]), start=1):
            new_id = f"eq-{number}.{item_index}"
            renamed[formula.id] = new_id
            formulas.append(formula.model_copy(update={"id": new_id, "number": f"{number}.{item_index}"}))
        examples = [
            example.model_copy(update={"id": f"ex-{number}.{item_index}", "number": f"{number}.{item_index}"})
            for item_index, example in enumerate(_ordered(bucket["examples"]), start=1)
        ]
        theorems = [
            theorem.model_copy(update={"id": f"thm-{number}.{item_index}"})
            for item_index, theorem in enumerate(bucket["theorems"], start=1)
        ]
        sections.append(
            AcademicSection(
                section_number=number,
                title=span.title,
                content=span.body,
                formulas=formulas,
                examples=examples,
                definitions=[
                    definition.model_copy(update={"id": f"def-{number}.{item_index}"})
                    for item_index, definition in enumerate(bucket["definitions"], start=1)
                ],
                theorems=theorems,
            )
        )

    if renamed:
        # Definitions keep pointing at their formulas after renumbering.
        for section in sections:
            section.definitions = [
                definition.model_copy(
                    update={"related_formulas": [renamed.get(ref, ref) for ref in definition.related_formulas]}
                )
                for definition in section.definitions
            ]
    return sections


def _ordered(items: List[Any]) -> List[Any]:
    indexed = list(enumerate(items))
    indexed.sort(key=lambda pair: (_position(pair[1]) is None, _position(pair[1]) or 0, pair[0]))
    return [item for _, item in indexed]


def build_toc(parts: Sequence[DocumentPart]) -> List[TOCEntry]:
    toc: List[TOCEntry] = []
    for part in parts:
        toc.append(
            TOCEntry(
                level=1,
                title=f"Part {roman(part.part_number)}: {part.title}",
                page_anchor=part.anchor,
                children=[
                    TOCEntry(
                        level=2,
                        title=section.title,
                        section_number=section.section_number,
                        page_anchor=f"section-{section.section_number.replace('.', '-')}",
                    )
                    for section in part.sections
                ],
            )
        )
    return toc


def build_metadata(parts: Sequence[DocumentPart], source_files: Sequence[str], *, recovered: bool = False) -> DocumentMetadata:
    sections = [section for part in parts for section in part.sections]
    return DocumentMetadata(
        source_files=list(source_files),
        total_sections=len(sections),
        total_formulas=sum(len(section.formulas) for section in sections),
        total_examples=sum(len(section.examples) for section in sections),
        recovered=recovered,
    )


def formula_appendix(parts: Sequence[DocumentPart]) -> Optional[Appendix]:
    lines = [
        f"({formula.number}) {formula.latex}"
        for part in parts
        for section in part.sections
        for formula in section.formulas
        if formula.is_key_formula
    ]
    if not lines:
        return None
    return Appendix(id="appendix-formulas", title="Key Formulas", content="\n".join(lines), type="formulas")


def organize_documents(
    documents: Sequence[ExtractedDocument],
    title: str = DEFAULT_TITLE,
    *,
    part_titles: Optional[Mapping[str, str]] = None,
    section_titles: Optional[Mapping[str, Sequence[str]]] = None,
    include_appendix: bool = True,
) -> AcademicDocument:
    """Build the document tree from extracted documents, one part each."""
    if sum(len(doc.text) for doc in documents) <= SUBSTANTIAL_TEXT_CHARS:
        return minimal_document(documents, title, recovered=any(doc.recovered for doc in documents))

    presets = dict(DEFAULT_PART_TITLES if part_titles is None else part_titles)
    parts = [
        DocumentPart(
            part_number=index,
            title=part_title(document, index - 1, presets),
            sections=build_sections(
                document,
                index,
                section_titles=(section_titles or {}).get(document.domain, ()),
            ),
        )
        for index, document in enumerate(documents, start=1)
    ]
    appendix = formula_appendix(parts) if include_appendix else None
    return AcademicDocument(
        title=title,
        table_of_contents=build_toc(parts),
        parts=parts,
        appendices=[appendix] if appendix is not None else [],
        metadata=build_metadata(
            parts,
            [doc.file_name for doc in documents],
            recovered=any(doc.recovered for doc in documents),
        ),
    )


def minimal_document(
    documents: Sequence[ExtractedDocument | SourceDocument],
    title: str = DEFAULT_TITLE,
    *,
    recovered: bool = True,
) -> AcademicDocument:
    """One "Content Overview" section per document, carrying all its content."""
    parts: List[DocumentPart] = []
    names: List[str] = []
    for index, document in enumerate(documents, start=1):
        if isinstance(document, ExtractedDocument):
            name, domain, text, content = document.file_name, document.domain, document.text, document.content
        else:
            name, domain, text, content = document.file.name, document.type, "", MathematicalContent()
        names.append(name)
        number = f"{index}.1"
        parts.append(
            DocumentPart(
                part_number=index,
                title=DEFAULT_PART_TITLES.get(domain, Path(name).stem or name),
                sections=[
                    AcademicSection(
                        section_number=number,
                        title="Content Overview",
                        content=text[:1000] or f"Content from {name}",
                        formulas=[
                            formula.model_copy(update={"id": f"eq-{number}.{i}", "number": f"{number}.{i}"})
                            for i, formula in enumerate(content.formulas, start=1)
                        ],
                        examples=[
                            example.model_copy(update={"id": f"ex-{number}.{i}", "number": f"{number}.{i}"})
                            for i, example in enumerate(content.worked_examples, start=1)
                        ],
                        definitions=[
                            definition.model_copy(update={"id": f"def-{number}.{i}"})
                            for i, definition in enumerate(content.definitions, start=1)
                        ],
                        theorems=[
                            theorem.model_copy(update={"id": f"thm-{number}.{i}"})
                            for i, theorem in enumerate(content.theorems, start=1)
                        ],
                    )
                ],
            )
        )
    return AcademicDocument(
        title=title,
        table_of_contents=build_toc(parts),
        parts=parts,
        metadata=build_metadata(parts, names, recovered=recovered),
    )


class AcademicStructureProcessor(ContentProcessor):
    processor_id = "academic-structure-processor"
    name = "Academic structure processor"

    def validate(self, input: StageInput, config: Mapping[str, Any]) -> ProcessorValidation:
        documents = input.extracted_documents()
        if not documents:
            return ProcessorValidation(passed=False, details="No documents with mathematical content found")
        return ProcessorValidation(passed=True, details=f"{len(documents)} document(s) ready for structure organization")

    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        started = perf_counter()
        title = str(config.get("title", DEFAULT_TITLE))
        extracted = _in_source_order(input)
        if not extracted:
            document = minimal_document(input.documents, title, recovered=True)
            return ProcessingResult(
                success=True,
                data=document,
                warnings=[
                    self.warning(
                        "No extracted content available, created minimal structure",
                        warning_type=ErrorType.CONTENT_LOSS,
                        severity=Severity.MEDIUM,
                    )
                ],
                metrics=ProcessingMetrics(
                    processing_time_ms=(perf_counter() - started) * 1000,
                    content_preserved=0.5,
                    quality_score=0.3,
                    items_processed=len(document.parts),
                    recovered=True,
                ),
            )

        document = organize_documents(
            extracted,
            title,
            part_titles=config.get("part_titles"),
            section_titles=config.get("section_titles"),
            include_appendix=bool(config.get("include_formula_appendix", True)),
        )
        LOGGER.info(
            "Academic structure created: %d part(s), %d section(s)",
            len(document.parts),
            document.metadata.total_sections,
        )
        return ProcessingResult(
            success=True,
            data=document,
            metrics=ProcessingMetrics(
                processing_time_ms=(perf_counter() - started) * 1000,
                content_preserved=1.0,
                quality_score=0.9,
                items_processed=len(document.parts),
            ),
        )

    async def recover(
        self,
        error: RecoverableError,
        input: StageInput,
        config: Mapping[str, Any],
    ) -> ProcessingResult:
        extracted = _in_source_order(input)
        document = minimal_document(extracted or input.documents, str(config.get("title", DEFAULT_TITLE)))
        return ProcessingResult(
            success=True,
            data=document,
            warnings=[
                self.warning(
                    f"Structure organization degraded to a minimal document: {error.message}",
                    severity=Severity.MEDIUM,
                    recovery_action="minimal structure",
                )
            ],
            metrics=ProcessingMetrics(content_preserved=0.5, quality_score=0.3, items_processed=len(document.parts), recovered=True),
        )


def _in_source_order(input: StageInput) -> List[ExtractedDocument]:
    extracted = input.extracted_documents() or []
    order = {doc.id: index for index, doc in enumerate(input.documents)}
    return sorted(extracted, key=lambda doc: order.get(doc.document_id, len(order)))


__all__ = [
    "AcademicStructureProcessor",
    "DEFAULT_PART_TITLES",
    "build_sections",
    "build_toc",
    "chunk_sections",
    "detect_sections",
    "is_header",
    "minimal_document",
    "organize_documents",
    "roman",
]
