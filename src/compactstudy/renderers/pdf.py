"""PDF output: LaTeX source built from the layout config, typeset by an external engine."""
from __future__ import annotations

import logging
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Protocol

from ..core.layout_config import CompactLayoutConfig
from ..core.layout_engine import CompactLayoutEngine
from ..core.models import AcademicDocument, AcademicSection, CrossReference, Formula, WorkedExample
from ..core.sanitizer import sanitize_unicode_to_latex
from .base import DocumentRenderer, RenderedOutput, reference_text, references_from

LOGGER = logging.getLogger(__name__)

Engine = Literal["pdflatex", "xelatex", "lualatex", "tectonic", "latexmk"]
ENGINES = ("pdflatex", "xelatex", "lualatex", "tectonic", "latexmk")

_PAGE_RE = re.compile(rb"/Type\s*/Page(?!s)")
_LATEX_SPECIALS = {
    "\\": r"\textbackslash{}",
    "&": r"\&",
    "%": r"\%",
    "$": r"\$",
    "#": r"\#",
    "_": r"\_",
    "{": r"\{",
    "}": r"\}",
    "~": r"\textasciitilde{}",
    "^": r"\textasciicircum{}",
}
_SPECIALS_RE = re.compile("|".join(re.escape(char) for char in _LATEX_SPECIALS))


def latex_escape(text: str) -> str:
    return _SPECIALS_RE.sub(lambda match: _LATEX_SPECIALS[match.group(0)], text)


def count_pdf_pages(data: bytes) -> int:
    return len(_PAGE_RE.findall(data))


@dataclass
class CompilationResult:
    success: bool
    pdf: Optional[bytes] = None
    log: str = ""


class TypesettingEngine(Protocol):
    engine: str

    def compile(self, latex_code: str) -> CompilationResult:
        ...


class LatexCompiler:
    """Runs a TeX engine in a scratch directory and returns the PDF bytes."""

    def __init__(self, engine: Engine = "pdflatex", timeout_s: float = 60.0) -> None:
        if engine not in ENGINES:
            raise ValueError(f"Unknown engine: {engine}")
        self.engine = engine
        self.timeout_s = timeout_s

    def command(self, tex_file: Path) -> Optional[List[str]]:
        out_dir = str(tex_file.parent)
        if self.engine == "tectonic":
            if shutil.which("tectonic"):
                return ["tectonic", "--outdir", out_dir, str(tex_file)]
            return None
        if self.engine == "latexmk":
            if shutil.which("latexmk"):
                return ["latexmk", "-pdf", "-interaction=nonstopmode", f"-output-directory={out_dir}", str(tex_file)]
            return None
        if shutil.which(self.engine):
            return [self.engine, "-interaction=nonstopmode", "-halt-on-error", f"-output-directory={out_dir}", str(tex_file)]
        return None

    def compile(self, latex_code: str) -> CompilationResult:
        with tempfile.TemporaryDirectory() as tmpdir:
            tex_file = Path(tmpdir) / "main.tex"
            tex_file.write_text(latex_code, encoding="utf-8")
            cmd = self.command(tex_file)
            if cmd is None:
                return CompilationResult(False, log=f"{self.engine} not found in PATH")
            try:
                # multicol needs a second pass to balance columns.
                passes = 1 if self.engine in ("tectonic", "latexmk") else 2
                for _ in range(passes):
                    result = subprocess.run(
                        cmd,
                        capture_output=True,
                        text=True,
                        check=False,
                        timeout=self.timeout_s,
                        cwd=tmpdir,
                    )
                    if result.returncode != 0:
                        return CompilationResult(False, log=result.stdout + "\n" + result.stderr)
            except subprocess.TimeoutExpired:
                return CompilationResult(False, log="Compilation timed out")
            except OSError as exc:
                return CompilationResult(False, log=str(exc))
            generated = tex_file.with_suffix(".pdf")
            if not generated.exists():
                return CompilationResult(False, log=result.stdout + "\nNo PDF produced")
            return CompilationResult(True, pdf=generated.read_bytes(), log=result.stdout)


def _math(latex: str) -> str:
    return sanitize_unicode_to_latex(latex)


class LatexBuilder:
    def __init__(self, config: CompactLayoutConfig) -> None:
        self.config = config
        self._columns_open = False

    def build(self, document: AcademicDocument) -> str:
        config = self.config
        margins = config.margins
        width, height = config.paper_dimensions
        size = config.typography.font_size
        lines = [
            r"\documentclass{article}",
            r"\usepackage[utf8]{inputenc}",
            r"\usepackage{amsmath,amssymb}",
            r"\usepackage{multicol}",
            r"\usepackage{hyperref}",
            rf"\usepackage[paperwidth={width}in,paperheight={height}in,"
            rf"top={margins.top}in,bottom={margins.bottom}in,left={margins.left}in,right={margins.right}in]{{geometry}}",
            rf"\setlength{{\columnsep}}{{{margins.column_gap}in}}",
            rf"\setlength{{\parskip}}{{{config.spacing.paragraph_spacing}em}}",
            r"\setlength{\parindent}{0pt}",
            rf"\title{{{latex_escape(document.title)}}}",
            r"\date{}",
            r"\begin{document}",
            rf"\fontsize{{{size}pt}}{{{round(size * config.typography.line_height, 2)}pt}}\selectfont",
            r"\maketitle",
        ]
        if document.table_of_contents:
            lines.append(r"\tableofcontents")
        for part in document.parts:
            lines += [rf"\part{{{latex_escape(part.title)}}}", rf"\label{{{part.anchor}}}"]
            lines += self._open_columns()
            for section in part.sections:
                lines += self._section(document, section, depth=0)
            lines += self._close_columns()
        if document.appendices:
            lines.append(r"\appendix")
            for appendix in document.appendices:
                lines += [rf"\section*{{{latex_escape(appendix.title)}}}", ""]
                lines += [latex_escape(line) + r"\\" for line in appendix.content.splitlines() if line.strip()]
        lines.append(r"\end{document}")
        return "\n".join(lines) + "\n"

    def _open_columns(self) -> List[str]:
        if self.config.columns < 2 or self._columns_open:
            return []
        self._columns_open = True
        return [rf"\begin{{multicols}}{{{self.config.columns}}}"]

    def _close_columns(self) -> List[str]:
        if not self._columns_open:
            return []
        self._columns_open = False
        return [r"\end{multicols}"]

    def _section(self, document: AcademicDocument, section: AcademicSection, depth: int) -> List[str]:
        command = ("section", "subsection", "subsubsection")[min(depth, 2)]
        lines = [rf"\{command}{{{latex_escape(section.title)}}}", rf"\label{{{section.section_number}}}"]
        spacing = self.config.spacing.section_spacing
        lines.insert(0, rf"\vspace{{{spacing}em}}")
        for paragraph in section.content.split("\n\n"):
            if paragraph.strip():
                lines += [latex_escape(paragraph.strip()), ""]
        for definition in section.definitions:
            lines += [
                rf"\noindent\textbf{{Definition ({latex_escape(definition.term)}).}} "
                rf"{latex_escape(definition.definition)}\label{{{definition.id}}}",
                "",
            ]
        for theorem in section.theorems:
            lines += [
                rf"\noindent\textbf{{{latex_escape(theorem.name)}.}} {latex_escape(theorem.statement)}\label{{{theorem.id}}}",
                "",
            ]
        for formula in section.formulas:
            lines += self._formula(formula)
        for example in section.examples:
            lines += self._example(example)
        references = references_from(document, section)
        if references:
            lines += [r"\noindent See also: " + "; ".join(self._reference(ref) for ref in references), ""]
        for sub in section.subsections:
            lines += self._section(document, sub, depth + 1)
        return lines

    def _formula(self, formula: Formula) -> List[str]:
        display = self.config.math_rendering.display_equations
        if formula.type != "display":
            return [rf"${_math(formula.latex)}$\label{{{formula.id}}}", ""]
        tag = rf"\tag{{{formula.number}}}" if display.numbered and formula.number else r"\notag"
        body = [r"\begin{equation}", _math(formula.latex), tag, rf"\label{{{formula.id}}}", r"\end{equation}"]
        if not display.centered:
            body = [r"\begin{flushleft}", rf"$\displaystyle {_math(formula.latex)}$\label{{{formula.id}}}", r"\end{flushleft}"]
        if display.full_width and self._columns_open:
            return [*self._close_columns(), *body, *self._open_columns()]
        return body

    def _example(self, example: WorkedExample) -> List[str]:
        heading = example.title or "Example"
        if example.number and example.number not in heading:
            heading = f"Example {example.number}: {heading}"
        lines = [r"\begin{minipage}{\linewidth}", rf"\textbf{{{latex_escape(heading)}}}\label{{{example.id}}}\\"]
        if example.problem:
            lines.append(rf"\emph{{Problem.}} {latex_escape(example.problem)}")
        if example.solution:
            lines.append(r"\begin{enumerate}")
            for step in example.solution:
                item = latex_escape(step.description)
                if step.math:
                    item += f" ${_math(step.math)}$"
                if step.explanation:
                    item += f" ({latex_escape(step.explanation)})"
                lines.append(rf"\item {item}")
            lines.append(r"\end{enumerate}")
        lines += [r"\end{minipage}", ""]
        return lines

    @staticmethod
    def _reference(reference: CrossReference) -> str:
        if reference.is_broken:
            return latex_escape(reference_text(reference))
        return rf"\hyperref[{reference.target_id}]{{{latex_escape(reference.display_text)}}}"


class PdfRenderer(DocumentRenderer):
    """Typesets through ``compiler``; without a working engine the LaTeX source is returned.

    In that case ``page_count`` comes from the layout engine's column
    distribution and ``page_count_source`` is ``"layout"``.
    """

    format_name = "pdf"

    def __init__(self, engine: Engine = "pdflatex", *, compiler: Optional[TypesettingEngine] = None) -> None:
        self.compiler = compiler or LatexCompiler(engine)
        self.engine = engine

    def build_source(self, document: AcademicDocument, config: Optional[CompactLayoutConfig] = None) -> str:
        return LatexBuilder(config or CompactLayoutConfig()).build(document)

    def render(self, document: AcademicDocument, config: Optional[CompactLayoutConfig] = None) -> RenderedOutput:
        config = config or CompactLayoutConfig()
        source = self.build_source(document, config)
        result = self.compiler.compile(source)
        metadata: Dict[str, Any] = {**self.base_metadata(document, config), "engine": self.engine}

        if result.success and result.pdf:
            page_count = count_pdf_pages(result.pdf)
            metadata.update(compiled=True, page_count=page_count, page_count_source="pdf")
            LOGGER.info("Compiled '%s' with %s: %d page(s)", document.title, self.engine, page_count)
            return RenderedOutput(content=result.pdf, metadata=metadata)

        LOGGER.warning("PDF compilation with %s failed; returning LaTeX source. %s", self.engine, result.log[-500:])
        engine = CompactLayoutEngine(config)
        distribution = engine.distribute_content(engine.blocks_from_document(document, config), config)
        metadata.update(
            compiled=False,
            page_count=distribution.page_count,
            page_count_source="layout",
            log=result.log,
        )
        return RenderedOutput(content=source, metadata=metadata)


__all__ = [
    "CompilationResult",
    "ENGINES",
    "LatexBuilder",
    "LatexCompiler",
    "PdfRenderer",
    "TypesettingEngine",
    "count_pdf_pages",
    "latex_escape",
]
