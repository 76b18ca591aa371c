from __future__ import annotations

import pytest

from compactstudy.core.density import (
    DensityOptimizer,
    content_length,
    estimate_page_count,
    whitespace_ratio,
)
from compactstudy.core.layout_config import CompactLayoutConfig, standard_layout_config, with_columns
from compactstudy.core.models import AcademicDocument, AcademicSection, DocumentPart, Formula


@pytest.fixture
def optimizer() -> DensityOptimizer:
    return DensityOptimizer()


def _document(content: str, formulas=()) -> AcademicDocument:
    section = AcademicSection(section_number="1.1", title="Notes", content=content, formulas=list(formulas))
    return AcademicDocument(title="Notes", parts=[DocumentPart(part_number=1, title="Notes", sections=[section])])


def test_content_length_counts_formulas_double():
    document = _document("abcd", [Formula(id="eq-1.1.1", latex="xy")])
    assert content_length(document) == 8


def test_empty_document_still_takes_a_page():
    assert estimate_page_count(AcademicDocument(title="Empty"), CompactLayoutConfig()) == 1


def test_whitespace_ratio_of_default_spacing():
    assert whitespace_ratio(CompactLayoutConfig()) == pytest.approx(0.5)
    assert whitespace_ratio(standard_layout_config()) == 1.0


def test_compact_layout_needs_fewer_pages():
    document = _document("word " * 4000)
    compact = estimate_page_count(document, CompactLayoutConfig())
    standard = estimate_page_count(document, standard_layout_config())
    assert standard > compact >= 1


def test_analysis_proposes_spacing_and_typography(optimizer, sample_document):
    analysis = optimizer.analyze_content_density(sample_document, CompactLayoutConfig())

    assert [rec.type for rec in analysis.recommendations] == ["spacing", "typography"]
    assert analysis.opportunities.spacing_reduction == pytest.approx(20.0)
    assert analysis.opportunities.font_size_optimization == pytest.approx(1.5 / 10.5 * 100)
    assert analysis.opportunities.layout_improvement == 0.0
    assert analysis.current.estimated_pages == 1


def test_without_target_nothing_is_applied(optimizer, sample_document):
    config = CompactLayoutConfig()
    result = optimizer.optimize_content_density(sample_document, config)

    assert result.applied == []
    assert len(result.recommendations) == 2
    assert result.optimized_config == config
    assert result.density_improvement == 0.0


def test_target_applies_low_complexity_changes(optimizer, sample_document):
    result = optimizer.optimize_content_density(sample_document, CompactLayoutConfig(), target_density=1.0)
    optimized = result.optimized_config

    assert [rec.type for rec in result.applied] == ["spacing", "typography"]
    assert result.recommendations == []
    assert optimized.spacing.paragraph_spacing == 0.25
    assert optimized.spacing.list_spacing == 0.2
    assert optimized.typography.font_size == 9.5
    assert optimized.typography.line_height == pytest.approx(1.15)
    assert result.density_improvement > 0


def test_column_switch_depends_on_target(optimizer, sample_document):
    single = with_columns(CompactLayoutConfig(), 1)
    low = optimizer.optimize_content_density(sample_document, single, target_density=0.0)
    high = optimizer.optimize_content_density(sample_document, single, target_density=10.0)

    assert "layout" in [rec.type for rec in low.recommendations]
    assert low.optimized_config.columns == 1
    assert "layout" in [rec.type for rec in high.applied]
    assert high.optimized_config.columns == 2
    assert high.optimized_config.margins.column_gap == 0.25
