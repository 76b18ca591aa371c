"""Renderer contract shared by the Markdown, HTML and PDF outputs."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

from ..core.density import estimate_page_count
from ..core.layout_config import CompactLayoutConfig
from ..core.models import AcademicDocument, AcademicSection, CrossReference


@dataclass
class RenderedOutput:
    content: Union[str, bytes]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def format(self) -> str:
        return str(self.metadata.get("format", ""))


def section_anchor(section: AcademicSection) -> str:
    return f"section-{section.section_number.replace('.', '-')}"


def references_from(document: AcademicDocument, section: AcademicSection) -> List[CrossReference]:
    """References whose source is ``section`` or one of its examples."""
    sources = {section.section_number, *(example.id for example in section.examples)}
    return [reference for reference in document.cross_references if reference.source_id in sources]


def reference_text(reference: CrossReference) -> str:
    if reference.is_broken:
        return reference.fallback_text or reference.display_text
    return reference.display_text


def iter_sections(document: AcademicDocument) -> Iterator[AcademicSection]:
    for part in document.parts:
        yield from part.sections


class DocumentRenderer(ABC):
    format_name = ""

    @abstractmethod
    def render(self, document: AcademicDocument, config: Optional[CompactLayoutConfig] = None) -> RenderedOutput:
        ...

    def base_metadata(self, document: AcademicDocument, config: CompactLayoutConfig) -> Dict[str, Any]:
        meta = document.metadata
        return {
            "format": self.format_name,
            "title": document.title,
            "source_files": list(meta.source_files),
            "total_parts": len(document.parts),
            "total_sections": meta.total_sections,
            "total_formulas": meta.total_formulas,
            "total_examples": meta.total_examples,
            "cross_references": len(document.cross_references),
            "broken_references": sum(1 for reference in document.cross_references if reference.is_broken),
            "preservation_score": meta.preservation_score,
            "recovered": meta.recovered,
            "estimated_pages": estimate_page_count(document, config),
            "columns": config.columns,
            "paper_size": config.paper_size,
        }


__all__ = [
    "DocumentRenderer",
    "RenderedOutput",
    "iter_sections",
    "reference_text",
    "references_from",
    "section_anchor",
]
