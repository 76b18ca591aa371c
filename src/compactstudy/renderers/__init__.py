"""Output renderers for assembled study guides."""
from __future__ import annotations

from .base import DocumentRenderer, RenderedOutput
from .html import HtmlRenderer
from .markdown import MarkdownRenderer
from .pdf import LatexCompiler, PdfRenderer

__all__ = ["DocumentRenderer", "HtmlRenderer", "LatexCompiler", "MarkdownRenderer", "PdfRenderer", "RenderedOutput"]
