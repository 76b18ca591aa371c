"""Immutable layout configuration and the pure transforms that derive new ones."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Literal, Mapping, Optional

from ..exceptions import LayoutError

PaperSize = Literal["a4", "letter", "legal"]

# Width x height in inches.
PAPER_SIZES: Dict[str, tuple[float, float]] = {
    "a4": (8.27, 11.69),
    "letter": (8.5, 11.0),
    "legal": (8.5, 14.0),
}


@dataclass(frozen=True)
class FontFamilies:
    body: str = 'Times, "Times New Roman", serif'
    heading: str = 'Arial, "Helvetica Neue", sans-serif'
    math: str = 'Computer Modern, "Latin Modern Math", serif'
    code: str = 'Consolas, "Courier New", monospace'


@dataclass(frozen=True)
class TypographyConfig:
    font_size: float = 10.5
    line_height: float = 1.2
    font_family: FontFamilies = field(default_factory=FontFamilies)


@dataclass(frozen=True)
class HeadingMargins:
    top: float = 0.4
    bottom: float = 0.2


@dataclass(frozen=True)
class SpacingConfig:
    """Vertical spacing in em units."""

    paragraph_spacing: float = 0.3
    list_spacing: float = 0.2
    section_spacing: float = 0.5
    heading_margins: HeadingMargins = field(default_factory=HeadingMargins)


@dataclass(frozen=True)
class MarginConfig:
    """Page margins and column gap in inches."""

    top: float = 0.75
    bottom: float = 0.75
    left: float = 0.75
    right: float = 0.75
    column_gap: float = 0.25


@dataclass(frozen=True)
class DisplayEquationConfig:
    centered: bool = True
    numbered: bool = True
    full_width: bool = True
    # Promote when the longest line exceeds this share of a column's characters per line.
    full_width_threshold: float = 1.0


@dataclass(frozen=True)
class InlineEquationConfig:
    preserve_inline: bool = True
    max_height: float = 1.5


@dataclass(frozen=True)
class MathRenderingConfig:
    display_equations: DisplayEquationConfig = field(default_factory=DisplayEquationConfig)
    inline_equations: InlineEquationConfig = field(default_factory=InlineEquationConfig)


@dataclass(frozen=True)
class CompactLayoutConfig:
    paper_size: PaperSize = "a4"
    columns: int = 2
    typography: TypographyConfig = field(default_factory=TypographyConfig)
    spacing: SpacingConfig = field(default_factory=SpacingConfig)
    margins: MarginConfig = field(default_factory=MarginConfig)
    math_rendering: MathRenderingConfig = field(default_factory=MathRenderingConfig)

    @property
    def paper_dimensions(self) -> tuple[float, float]:
        return PAPER_SIZES.get(self.paper_size, PAPER_SIZES["letter"])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def standard_layout_config() -> CompactLayoutConfig:
    """Single-column, generously spaced layout used as a page-count baseline."""
    return CompactLayoutConfig(
        paper_size="a4",
        columns=1,
        typography=TypographyConfig(font_size=12.0, line_height=1.5),
        spacing=SpacingConfig(
            paragraph_spacing=1.0,
            list_spacing=0.5,
            section_spacing=1.5,
            heading_margins=HeadingMargins(top=1.0, bottom=0.5),
        ),
        margins=MarginConfig(top=1.0, bottom=1.0, left=1.0, right=1.0, column_gap=0.5),
        math_rendering=MathRenderingConfig(
            display_equations=DisplayEquationConfig(full_width=False),
            inline_equations=InlineEquationConfig(max_height=2.0),
        ),
    )


def with_spacing(config: CompactLayoutConfig, **changes: Any) -> CompactLayoutConfig:
    return replace(config, spacing=replace(config.spacing, **changes))


def with_typography(config: CompactLayoutConfig, **changes: Any) -> CompactLayoutConfig:
    return replace(config, typography=replace(config.typography, **changes))


def with_margins(config: CompactLayoutConfig, **changes: Any) -> CompactLayoutConfig:
    return replace(config, margins=replace(config.margins, **changes))


def with_columns(config: CompactLayoutConfig, columns: int) -> CompactLayoutConfig:
    return replace(config, columns=columns)


def _merge_dataclass(instance: Any, overrides: Mapping[str, Any]) -> Any:
    changes: Dict[str, Any] = {}
    for key, value in overrides.items():
        if not hasattr(instance, key):
            raise LayoutError(f"Unknown layout option '{key}'", code="INVALID_CONFIG")
        current = getattr(instance, key)
        if isinstance(value, Mapping) and hasattr(current, "__dataclass_fields__"):
            changes[key] = _merge_dataclass(current, value)
        else:
            changes[key] = value
    return replace(instance, **changes)


def merge_layout_config(
    base: Optional[CompactLayoutConfig] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> CompactLayoutConfig:
    """Return ``base`` with nested ``overrides`` applied, validating the result."""
    config = base or CompactLayoutConfig()
    if overrides:
        config = _merge_dataclass(config, overrides)
    validate_layout_config(config)
    return config


def validate_layout_config(config: CompactLayoutConfig) -> None:
    typography = config.typography
    spacing = config.spacing
    if config.paper_size not in PAPER_SIZES:
        raise LayoutError(
            f"Unsupported paper size '{config.paper_size}'",
            code="INVALID_CONFIG",
            block_type="layout",
            suggestion="Use one of: " + ", ".join(sorted(PAPER_SIZES)),
        )
    if typography.font_size < 8 or typography.font_size > 14:
        raise LayoutError(
            f"Font size {typography.font_size}pt is outside recommended range (8-14pt)",
            code="INVALID_CONFIG",
            block_type="typography",
            suggestion="Use font size between 8-14pt for readability",
        )
    if typography.line_height < 1.0 or typography.line_height > 2.0:
        raise LayoutError(
            f"Line height {typography.line_height} is outside valid range (1.0-2.0)",
            code="INVALID_CONFIG",
            block_type="typography",
            suggestion="Use line height between 1.0-2.0",
        )
    if spacing.paragraph_spacing > 0.35:
        raise LayoutError(
            f"Paragraph spacing {spacing.paragraph_spacing}em exceeds compact limit (<=0.35em)",
            code="INVALID_CONFIG",
            block_type="spacing",
            suggestion="Reduce paragraph spacing to <=0.35em for compact layout",
        )
    if spacing.list_spacing > 0.25:
        raise LayoutError(
            f"List spacing {spacing.list_spacing}em exceeds compact limit (<=0.25em)",
            code="INVALID_CONFIG",
            block_type="spacing",
            suggestion="Reduce list spacing to <=0.25em for compact layout",
        )
    if config.columns < 1 or config.columns > 3:
        raise LayoutError(
            f"Column count {config.columns} is outside supported range (1-3)",
            code="INVALID_CONFIG",
            block_type="layout",
            suggestion="Use 1-3 columns for optimal readability",
        )
    width, height = config.paper_dimensions
    margins = config.margins
    if width - margins.left - margins.right <= (config.columns - 1) * margins.column_gap:
        raise LayoutError(
            "Margins leave no horizontal room for content",
            code="INVALID_CONFIG",
            block_type="margins",
        )
    if height - margins.top - margins.bottom <= 0:
        raise LayoutError(
            "Margins leave no vertical room for content",
            code="INVALID_CONFIG",
            block_type="margins",
        )


__all__ = [
    "CompactLayoutConfig",
    "DisplayEquationConfig",
    "FontFamilies",
    "HeadingMargins",
    "InlineEquationConfig",
    "MarginConfig",
    "MathRenderingConfig",
    "PAPER_SIZES",
    "SpacingConfig",
    "TypographyConfig",
    "merge_layout_config",
    "standard_layout_config",
    "validate_layout_config",
    "with_columns",
    "with_margins",
    "with_spacing",
    "with_typography",
]
