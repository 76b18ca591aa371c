"""Markdown output with ``$``/``$$`` math and in-page anchors."""
from __future__ import annotations

import logging
from typing import List, Optional

from ..core.layout_config import CompactLayoutConfig
from ..core.models import AcademicDocument, AcademicSection, CrossReference, Formula, TOCEntry, WorkedExample
from .base import DocumentRenderer, RenderedOutput, reference_text, references_from, section_anchor

LOGGER = logging.getLogger(__name__)


def _formula(formula: Formula, numbered: bool) -> str:
    if formula.type == "display":
        tag = f" \\tag{{{formula.number}}}" if numbered and formula.number else ""
        return f"$$\n{formula.latex}{tag}\n$$"
    return f"- ${formula.latex}$"


def _example(example: WorkedExample) -> List[str]:
    heading = example.title or "Example"
    if example.number and example.number not in heading:
        heading = f"Example {example.number}: {heading}"
    lines = [f'<a id="{example.id}"></a>', f"**{heading}**", ""]
    if example.problem:
        lines += [f"*Problem.* {example.problem}", ""]
    for step in example.solution:
        line = f"{step.step_number}. {step.description}"
        if step.math:
            line += f" ${step.math}$"
        if step.explanation:
            line += f" ({step.explanation})"
        lines.append(line)
    if example.solution:
        lines.append("")
    return lines


def _reference(reference: CrossReference) -> str:
    if reference.is_broken:
        return reference_text(reference)
    return f"[{reference.display_text}](#{reference.target_id})"


def _toc(entries: List[TOCEntry], depth: int = 0) -> List[str]:
    lines: List[str] = []
    for entry in entries:
        label = f"{entry.section_number} {entry.title}" if entry.section_number else entry.title
        lines.append(f"{'  ' * depth}- [{label}](#{entry.page_anchor})")
        lines.extend(_toc(entry.children, depth + 1))
    return lines


class MarkdownRenderer(DocumentRenderer):
    format_name = "markdown"

    def render(self, document: AcademicDocument, config: Optional[CompactLayoutConfig] = None) -> RenderedOutput:
        config = config or CompactLayoutConfig()
        numbered = config.math_rendering.display_equations.numbered
        lines: List[str] = [f"# {document.title}", ""]
        if document.table_of_contents:
            lines += ["## Contents", "", *_toc(document.table_of_contents), ""]

        for part in document.parts:
            lines += [f'<a id="{part.anchor}"></a>', f"## Part {part.part_number}: {part.title}", ""]
            for section in part.sections:
                lines += self._section(document, section, numbered, level=3)

        for appendix in document.appendices:
            lines += [f'<a id="{appendix.id}"></a>', f"## {appendix.title}", "", appendix.content, ""]

        LOGGER.debug("Rendered '%s' as Markdown (%d lines)", document.title, len(lines))
        return RenderedOutput(content="\n".join(lines).rstrip() + "\n", metadata=self.base_metadata(document, config))

    def _section(self, document: AcademicDocument, section: AcademicSection, numbered: bool, level: int) -> List[str]:
        lines = [
            f'<a id="{section_anchor(section)}"></a><a id="{section.section_number}"></a>',
            f"{'#' * min(level, 6)} {section.section_number} {section.title}",
            "",
        ]
        if section.content:
            lines += [section.content, ""]
        for definition in section.definitions:
            lines += [f'<a id="{definition.id}"></a>', f"**Definition ({definition.term}).** {definition.definition}", ""]
        for theorem in section.theorems:
            lines += [f'<a id="{theorem.id}"></a>', f"**{theorem.name}.** {theorem.statement}", ""]
        for formula in section.formulas:
            lines += [f'<a id="{formula.id}"></a>', _formula(formula, numbered), ""]
        for example in section.examples:
            lines += _example(example)
        references = references_from(document, section)
        if references:
            lines += ["See also: " + "; ".join(_reference(reference) for reference in references), ""]
        for sub in section.subsections:
            lines += self._section(document, sub, numbered, level + 1)
        return lines


__all__ = ["MarkdownRenderer"]
