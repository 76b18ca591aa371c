"""Standalone HTML with CSS multi-column layout driven by the layout config."""
from __future__ import annotations

import logging
from html import escape
from typing import List, Optional

from ..core.layout_config import CompactLayoutConfig
from ..core.models import AcademicDocument, AcademicSection, CrossReference, Formula, TOCEntry, WorkedExample
from .base import DocumentRenderer, RenderedOutput, reference_text, references_from, section_anchor

LOGGER = logging.getLogger(__name__)


def stylesheet(config: CompactLayoutConfig) -> str:
    typography = config.typography
    margins = config.margins
    spacing = config.spacing
    display = config.math_rendering.display_equations
    width, height = config.paper_dimensions
    return "\n".join(
        [
            f"@page {{ size: {width}in {height}in; "
            f"margin: {margins.top}in {margins.right}in {margins.bottom}in {margins.left}in; }}",
            f"body {{ font-family: {typography.font_family.body}; font-size: {typography.font_size}pt; "
            f"line-height: {typography.line_height}; }}",
            f"h1, h2, h3, h4 {{ font-family: {typography.font_family.heading}; "
            f"margin: {spacing.heading_margins.top}em 0 {spacing.heading_margins.bottom}em; "
            "break-after: avoid; }",
            f"p {{ margin: 0 0 {spacing.paragraph_spacing}em; }}",
            f"ol, ul {{ margin: 0 0 {spacing.list_spacing}em; }}",
            f"section.part {{ margin-bottom: {spacing.section_spacing}em; }}",
            f".columns {{ column-count: {config.columns}; column-gap: {margins.column_gap}in; }}",
            ".atomic { break-inside: avoid; page-break-inside: avoid; }",
            f".math {{ font-family: {typography.font_family.math}; }}",
            f".display-math {{ text-align: {'center' if display.centered else 'left'}; }}",
            ".full-width { column-span: all; }" if display.full_width else "",
            ".broken-ref { font-style: italic; }",
        ]
    )


def _formula(formula: Formula, numbered: bool, full_width: bool) -> str:
    latex = escape(formula.latex)
    if formula.type == "display":
        classes = "atomic math display-math" + (" full-width" if full_width else "")
        tag = f' <span class="eq-number">({escape(formula.number)})</span>' if numbered and formula.number else ""
        return f'<div id="{escape(formula.id)}" class="{classes}">\\[{latex}\\]{tag}</div>'
    return f'<p id="{escape(formula.id)}" class="math">\\({latex}\\)</p>'


def _example(example: WorkedExample) -> List[str]:
    heading = example.title or "Example"
    if example.number and example.number not in heading:
        heading = f"Example {example.number}: {heading}"
    parts = [f'<div id="{escape(example.id)}" class="atomic example">', f"<h4>{escape(heading)}</h4>"]
    if example.problem:
        parts.append(f"<p><em>Problem.</em> {escape(example.problem)}</p>")
    if example.solution:
        parts.append("<ol>")
        for step in example.solution:
            item = escape(step.description)
            if step.math:
                item += f' <span class="math">\\({escape(step.math)}\\)</span>'
            if step.explanation:
                item += f" ({escape(step.explanation)})"
            parts.append(f"<li>{item}</li>")
        parts.append("</ol>")
    parts.append("</div>")
    return parts


def _reference(reference: CrossReference) -> str:
    if reference.is_broken:
        return f'<span class="broken-ref">{escape(reference_text(reference))}</span>'
    return f'<a href="#{escape(reference.target_id)}">{escape(reference.display_text)}</a>'


def _toc(entries: List[TOCEntry]) -> List[str]:
    if not entries:
        return []
    parts = ["<ul>"]
    for entry in entries:
        label = f"{entry.section_number} {entry.title}" if entry.section_number else entry.title
        parts.append(f'<li><a href="#{escape(entry.page_anchor)}">{escape(label)}</a>')
        parts.extend(_toc(entry.children))
        parts.append("</li>")
    parts.append("</ul>")
    return parts


class HtmlRenderer(DocumentRenderer):
    format_name = "html"

    def render(self, document: AcademicDocument, config: Optional[CompactLayoutConfig] = None) -> RenderedOutput:
        config = config or CompactLayoutConfig()
        display = config.math_rendering.display_equations
        body: List[str] = [f"<h1>{escape(document.title)}</h1>"]
        if document.table_of_contents:
            body += ['<nav class="toc">', "<h2>Contents</h2>", *_toc(document.table_of_contents), "</nav>"]

        for part in document.parts:
            body += [
                f'<section id="{part.anchor}" class="part">',
                f"<h2>Part {part.part_number}: {escape(part.title)}</h2>",
                '<div class="columns">',
            ]
            for section in part.sections:
                body += self._section(document, section, display.numbered, display.full_width, level=3)
            body += ["</div>", "</section>"]

        for appendix in document.appendices:
            body += [
                f'<section id="{escape(appendix.id)}" class="appendix">',
                f"<h2>{escape(appendix.title)}</h2>",
                *(f"<p>{escape(line)}</p>" for line in appendix.content.splitlines() if line.strip()),
                "</section>",
            ]

        html = "\n".join(
            [
                "<!DOCTYPE html>",
                '<html lang="en">',
                "<head>",
                '<meta charset="utf-8">',
                f"<title>{escape(document.title)}</title>",
                f"<style>\n{stylesheet(config)}\n</style>",
                "</head>",
                "<body>",
                *body,
                "</body>",
                "</html>",
            ]
        )
        LOGGER.debug("Rendered '%s' as HTML (%d chars)", document.title, len(html))
        return RenderedOutput(content=html + "\n", metadata=self.base_metadata(document, config))

    def _section(
        self,
        document: AcademicDocument,
        section: AcademicSection,
        numbered: bool,
        full_width: bool,
        level: int,
    ) -> List[str]:
        tag = f"h{min(level, 6)}"
        body = [
            f'<section id="{section_anchor(section)}" class="section">',
            f'<{tag} id="{escape(section.section_number)}">{escape(section.section_number)} {escape(section.title)}</{tag}>',
        ]
        body += [f"<p>{escape(paragraph)}</p>" for paragraph in section.content.split("\n\n") if paragraph.strip()]
        for definition in section.definitions:
            body.append(
                f'<p id="{escape(definition.id)}" class="atomic definition"><strong>Definition '
                f"({escape(definition.term)}).</strong> {escape(definition.definition)}</p>"
            )
        for theorem in section.theorems:
            body.append(
                f'<p id="{escape(theorem.id)}" class="atomic theorem"><strong>{escape(theorem.name)}.</strong> '
                f"{escape(theorem.statement)}</p>"
            )
        body += [_formula(formula, numbered, full_width) for formula in section.formulas]
        for example in section.examples:
            body += _example(example)
        references = references_from(document, section)
        if references:
            body.append('<p class="see-also">See also: ' + "; ".join(_reference(ref) for ref in references) + "</p>")
        for sub in section.subsections:
            body += self._section(document, sub, numbered, full_width, level + 1)
        body.append("</section>")
        return body


__all__ = ["HtmlRenderer", "stylesheet"]
