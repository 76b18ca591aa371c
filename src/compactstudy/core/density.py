"""Content density analysis and page-count estimation.

All measurements reuse ``compute_layout`` so that page estimates agree with
the geometry the layout engine packs against.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, List, Literal, Optional

from .layout_config import CompactLayoutConfig, with_columns, with_margins, with_spacing, with_typography
from .layout_engine import compute_layout
from .models import AcademicDocument

LOGGER = logging.getLogger(__name__)

Complexity = Literal["low", "medium", "high"]

# Utilization normalizers: characters and formulas per page considered "full".
TEXT_DENSITY_SCALE = 3000.0
MATH_DENSITY_SCALE = 10.0
MIN_READABLE_SPACING = 0.4
MIN_READABLE_FONT = 9.0


@dataclass(frozen=True)
class DensityMetrics:
    text_density: float
    math_density: float
    whitespace_ratio: float
    content_utilization: float
    characters_per_page: int
    formulas_per_page: float
    examples_per_page: float
    estimated_pages: int


@dataclass(frozen=True)
class OptimizationOpportunities:
    spacing_reduction: float
    font_size_optimization: float
    layout_improvement: float
    content_reorganization: float


@dataclass(frozen=True)
class DensityRecommendation:
    type: Literal["spacing", "typography", "layout"]
    description: str
    expected_improvement: float
    implementation_complexity: Complexity
    transform: Callable[[CompactLayoutConfig], CompactLayoutConfig] = field(compare=False, repr=False)

    def apply(self, config: CompactLayoutConfig) -> CompactLayoutConfig:
        return self.transform(config)


@dataclass(frozen=True)
class ContentDensityAnalysis:
    current: DensityMetrics
    opportunities: OptimizationOpportunities
    recommendations: List[DensityRecommendation]


@dataclass(frozen=True)
class DensityOptimizationResult:
    optimized_config: CompactLayoutConfig
    analysis: ContentDensityAnalysis
    applied: List[DensityRecommendation]
    recommendations: List[DensityRecommendation]
    optimized_utilization: float

    @property
    def density_improvement(self) -> float:
        before = self.analysis.current.content_utilization
        if before <= 0:
            return 0.0
        return (self.optimized_utilization - before) / before * 100


def content_length(document: AcademicDocument) -> int:
    """Weighted character count; formulas count double."""
    total = 0
    for _, _, section in document.iter_sections():
        total += len(section.content)
        total += sum(len(formula.latex) * 2 for formula in section.formulas)
        for example in section.examples:
            total += len(example.problem)
            for step in example.solution:
                total += len(step.description) + len(step.math or "")
    return total


def characters_per_page(config: CompactLayoutConfig) -> int:
    return compute_layout(config).characters_per_page


def estimate_page_count(document: AcademicDocument, config: CompactLayoutConfig) -> int:
    return max(1, math.ceil(content_length(document) / characters_per_page(config)))


def whitespace_ratio(config: CompactLayoutConfig) -> float:
    spacing = config.spacing
    return min((spacing.paragraph_spacing + spacing.list_spacing + spacing.section_spacing) / 2.0, 1.0)


class DensityOptimizer:
    def measure(self, document: AcademicDocument, config: CompactLayoutConfig) -> DensityMetrics:
        pages = estimate_page_count(document, config)
        formulas = len(document.all_formulas())
        examples = len(document.all_examples())
        text_density = content_length(document) / pages
        math_density = formulas / pages
        ratio = whitespace_ratio(config)
        utilization = (text_density / TEXT_DENSITY_SCALE + math_density / MATH_DENSITY_SCALE) * (1 - ratio * 0.5)
        return DensityMetrics(
            text_density=text_density,
            math_density=math_density,
            whitespace_ratio=ratio,
            content_utilization=utilization,
            characters_per_page=characters_per_page(config),
            formulas_per_page=math_density,
            examples_per_page=examples / pages,
            estimated_pages=pages,
        )

    def estimate_page_count(self, document: AcademicDocument, config: CompactLayoutConfig) -> int:
        return estimate_page_count(document, config)

    def analyze_content_density(self, document: AcademicDocument, config: CompactLayoutConfig) -> ContentDensityAnalysis:
        current = self.measure(document, config)
        opportunities = self._opportunities(document, config)
        return ContentDensityAnalysis(
            current=current,
            opportunities=opportunities,
            recommendations=self._recommendations(opportunities, config),
        )

    def optimize_content_density(
        self,
        document: AcademicDocument,
        config: CompactLayoutConfig,
        target_density: Optional[float] = None,
    ) -> DensityOptimizationResult:
        """Derive a denser configuration for ``document``.

        Without a target density nothing is applied and every proposal comes
        back as a recommendation. With a target, low-complexity proposals
        worth more than 10% are applied, and medium-complexity ones only when
        the target is above the current utilization.
        """
        analysis = self.analyze_content_density(document, config)
        optimized = config
        applied: List[DensityRecommendation] = []
        remaining: List[DensityRecommendation] = []
        for recommendation in analysis.recommendations:
            if target_density is not None and self._should_apply(recommendation, analysis, target_density):
                optimized = recommendation.apply(optimized)
                applied.append(recommendation)
            else:
                remaining.append(recommendation)
        utilization = self.measure(document, optimized).content_utilization
        LOGGER.debug(
            "Density optimization applied %d change(s): utilization %.3f -> %.3f",
            len(applied),
            analysis.current.content_utilization,
            utilization,
        )
        return DensityOptimizationResult(
            optimized_config=optimized,
            analysis=analysis,
            applied=applied,
            recommendations=remaining,
            optimized_utilization=utilization,
        )

    @staticmethod
    def _should_apply(
        recommendation: DensityRecommendation,
        analysis: ContentDensityAnalysis,
        target_density: float,
    ) -> bool:
        if recommendation.implementation_complexity == "low":
            return recommendation.expected_improvement > 10
        if recommendation.implementation_complexity == "medium":
            return target_density > analysis.current.content_utilization
        return False

    def _opportunities(self, document: AcademicDocument, config: CompactLayoutConfig) -> OptimizationOpportunities:
        spacing = config.spacing.paragraph_spacing + config.spacing.list_spacing
        spacing_reduction = max(0.0, (spacing - MIN_READABLE_SPACING) / spacing * 100) if spacing > 0 else 0.0
        font_size = config.typography.font_size
        font_optimization = max(0.0, (font_size - MIN_READABLE_FONT) / font_size * 100)

        layout = 0.0
        if config.columns < 2:
            layout += 25
        if config.margins.left + config.margins.right > 1.5:
            layout += 15
        if config.typography.line_height > 1.3:
            layout += 10

        reorganization = 0.0
        if sum(len(part.sections) for part in document.parts) > 15:
            reorganization += 20
        if sum(1 for example in document.all_examples() if len(example.solution) > 5) > 5:
            reorganization += 15

        return OptimizationOpportunities(
            spacing_reduction=spacing_reduction,
            font_size_optimization=font_optimization,
            layout_improvement=layout,
            content_reorganization=reorganization,
        )

    def _recommendations(
        self,
        opportunities: OptimizationOpportunities,
        config: CompactLayoutConfig,
    ) -> List[DensityRecommendation]:
        recommendations: List[DensityRecommendation] = []
        if opportunities.spacing_reduction > 10:
            recommendations.append(
                DensityRecommendation(
                    type="spacing",
                    description=f"Reduce paragraph spacing from {config.spacing.paragraph_spacing}em to 0.25em",
                    expected_improvement=opportunities.spacing_reduction,
                    implementation_complexity="low",
                    transform=lambda cfg: with_spacing(cfg, paragraph_spacing=0.25, list_spacing=0.2),
                )
            )
        if opportunities.font_size_optimization > 5:
            font_size = config.typography.font_size
            recommendations.append(
                DensityRecommendation(
                    type="typography",
                    description=f"Reduce font size from {font_size}pt to {font_size - 1}pt",
                    expected_improvement=opportunities.font_size_optimization,
                    implementation_complexity="low",
                    transform=lambda cfg: with_typography(
                        cfg,
                        font_size=cfg.typography.font_size - 1,
                        line_height=max(1.15, cfg.typography.line_height - 0.05),
                    ),
                )
            )
        if config.columns < 2:
            recommendations.append(
                DensityRecommendation(
                    type="layout",
                    description="Switch to a two-column layout",
                    expected_improvement=25.0,
                    implementation_complexity="medium",
                    transform=lambda cfg: with_margins(with_columns(cfg, 2), column_gap=0.25),
                )
            )
        return recommendations


__all__ = [
    "ContentDensityAnalysis",
    "DensityMetrics",
    "DensityOptimizationResult",
    "DensityOptimizer",
    "DensityRecommendation",
    "OptimizationOpportunities",
    "characters_per_page",
    "content_length",
    "estimate_page_count",
    "whitespace_ratio",
]
