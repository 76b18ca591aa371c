from __future__ import annotations

from dataclasses import replace

import pytest

from compactstudy.core.layout_config import CompactLayoutConfig, with_columns
from compactstudy.core.models import CrossReference
from compactstudy.renderers import HtmlRenderer, LatexCompiler, MarkdownRenderer, PdfRenderer
from compactstudy.renderers.pdf import CompilationResult, count_pdf_pages, latex_escape

FAKE_PDF = b"%PDF-1.5 /Type /Pages /Count 2 /Type /Page /Type/Page %%EOF"


class FakeCompiler:
    engine = "pdflatex"

    def __init__(self, result: CompilationResult) -> None:
        self.result = result
        self.sources = []

    def compile(self, latex_code: str) -> CompilationResult:
        self.sources.append(latex_code)
        return self.result


@pytest.fixture
def linked_document(sample_document):
    sample_document.cross_references = [
        CrossReference(id="ref-1", type="example", source_id="1.2", target_id="ex-1.1.1", display_text="see Ex. 1.1.1"),
        CrossReference(
            id="ref-2",
            type="example",
            source_id="2.1",
            target_id="ex-9",
            display_text="Example 9",
            is_broken=True,
            fallback_text="Example 9",
        ),
    ]
    return sample_document


def test_markdown_links_anchors_and_math(linked_document):
    output = MarkdownRenderer().render(linked_document)
    text = output.content

    assert text.startswith("# Discrete Structures Review\n")
    assert "- [Part I: Discrete Probability](#part-1)" in text
    assert "  - [1.1 Conditional Probability](#section-1-1)" in text
    assert '<a id="ex-1.1.1"></a>' in text
    assert "$$\nP(A|B) = \\frac{P(A \\cap B)}{P(B)} \\tag{1.1.1}\n$$" in text
    assert "See also: [see Ex. 1.1.1](#ex-1.1.1)" in text
    assert "See also: Example 9" in text
    assert "**Definition (Prior).**" in text


def test_markdown_metadata(linked_document):
    metadata = MarkdownRenderer().render(linked_document).metadata

    assert metadata["format"] == "markdown"
    assert metadata["cross_references"] == 2
    assert metadata["broken_references"] == 1
    assert metadata["total_parts"] == 2
    assert metadata["estimated_pages"] == 1
    assert metadata["columns"] == 2


def test_unnumbered_equations_have_no_tag(sample_document):
    config = CompactLayoutConfig()
    display = config.math_rendering.display_equations

    unnumbered = replace(
        config,
        math_rendering=replace(config.math_rendering, display_equations=replace(display, numbered=False)),
    )
    assert "\\tag" not in MarkdownRenderer().render(sample_document, unnumbered).content


def test_html_uses_layout_config_for_columns(linked_document):
    output = HtmlRenderer().render(linked_document)
    html = output.content

    assert html.startswith("<!DOCTYPE html>")
    assert "column-count: 2; column-gap: 0.25in" in html
    assert ".atomic { break-inside: avoid" in html
    assert "font-size: 10.5pt" in html
    assert '<div id="eq-1.1.1" class="atomic math display-math full-width">' in html
    assert '<div id="ex-1.1.1" class="atomic example">' in html
    assert '<a href="#ex-1.1.1">see Ex. 1.1.1</a>' in html
    assert '<span class="broken-ref">Example 9</span>' in html
    assert "Bayes&#x27; Theorem" in html
    assert output.format == "html"


def test_html_single_column(sample_document):
    html = HtmlRenderer().render(sample_document, with_columns(CompactLayoutConfig(), 1)).content
    assert "column-count: 1;" in html


def test_pdf_renderer_returns_compiled_bytes(linked_document):
    compiler = FakeCompiler(CompilationResult(True, pdf=FAKE_PDF))
    output = PdfRenderer(compiler=compiler).render(linked_document)

    assert output.content == FAKE_PDF
    assert output.metadata["compiled"] is True
    assert output.metadata["page_count"] == 2
    assert output.metadata["page_count_source"] == "pdf"
    source = compiler.sources[0]
    assert "\\begin{multicols}{2}" in source
    assert "\\hyperref[ex-1.1.1]{see Ex. 1.1.1}" in source
    assert "\\tag{1.1.1}" in source


def test_pdf_renderer_falls_back_to_latex_source(linked_document):
    compiler = FakeCompiler(CompilationResult(False, log="! Undefined control sequence."))
    output = PdfRenderer(compiler=compiler).render(linked_document)

    assert isinstance(output.content, str)
    assert output.content.startswith("\\documentclass{article}")
    assert "\\begin{multicols}{2}" in output.content
    assert output.metadata["compiled"] is False
    assert output.metadata["page_count_source"] == "layout"
    assert output.metadata["page_count"] == 1
    assert "Undefined control sequence" in output.metadata["log"]


def test_single_column_source_has_no_multicols(sample_document):
    source = PdfRenderer(compiler=FakeCompiler(CompilationResult(False))).build_source(
        sample_document, with_columns(CompactLayoutConfig(), 1)
    )
    assert "multicols" not in source


def test_missing_engine_is_reported_in_log(monkeypatch):
    monkeypatch.setattr("compactstudy.renderers.pdf.shutil.which", lambda name: None)
    result = LatexCompiler("xelatex").compile("\\documentclass{article}")
    assert not result.success
    assert result.log == "xelatex not found in PATH"


def test_unknown_engine_is_rejected():
    with pytest.raises(ValueError):
        LatexCompiler("bogus")


def test_latex_escape_and_page_count():
    assert latex_escape("50% & $x_1$") == r"50\% \& \$x\_1\$"
    assert count_pdf_pages(FAKE_PDF) == 2
    assert count_pdf_pages(b"") == 0
