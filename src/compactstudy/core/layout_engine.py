"""
Compact layout engine.

Computes page geometry from a ``CompactLayoutConfig``, estimates the height
of content blocks from that geometry and packs blocks into columns. Worked
examples and formulas are atomic: they are never split across a column or
page break. Blocks that cannot sit in a column are promoted to full-width
bands instead of being truncated.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence, Tuple

from ..exceptions import LayoutError
from .layout_config import CompactLayoutConfig, validate_layout_config
from .models import AcademicDocument, AcademicSection, Formula, WorkedExample

LOGGER = logging.getLogger(__name__)

BlockType = Literal["text", "heading", "list", "formula", "example"]

DEFAULT_PRIORITIES: Dict[str, int] = {"heading": 10, "formula": 9, "example": 8, "list": 6, "text": 5}

WIDE_ENVIRONMENT_RE = re.compile(
    r"\\begin\{(?:align|alignat|aligned|gather|multline|eqnarray|array|tabular|[pbvBV]?matrix)\*?\}"
)
_ROW_ENVIRONMENT_RE = re.compile(
    r"\\begin\{(align|alignat|aligned|gather|eqnarray|array|cases|[pbvBV]?matrix)\*?\}(.*?)\\end\{\1\*?\}",
    re.DOTALL,
)
_FRACTION_RE = re.compile(r"\\[dt]?frac\b")
_BIG_OPERATOR_RE = re.compile(r"\\(?:sum|int|prod|oint|iint|bigcup|bigcap)\b")
_MATH_SEGMENT_RE = re.compile(r"\$\$.+?\$\$|\$[^$\n]+\$|\\\[.+?\\\]", re.DOTALL)
_STEP_MARKER_RE = re.compile(r"^\s*(?:step\s+\d+|\d+[.)])", re.IGNORECASE | re.MULTILINE)

_EPSILON = 1e-9


@dataclass(frozen=True)
class LayoutCalculation:
    """Page geometry in inches; line height in points."""

    page_width: float
    page_height: float
    content_width: float
    content_height: float
    column_width: float
    column_count: int
    column_gap: float
    effective_line_height: float
    lines_per_column: int
    characters_per_line: int
    full_width_characters_per_line: int
    estimated_content_density: float

    @property
    def line_height_in(self) -> float:
        return self.effective_line_height / 72

    @property
    def characters_per_page(self) -> int:
        return self.lines_per_column * self.column_count * self.characters_per_line


def compute_layout(config: CompactLayoutConfig) -> LayoutCalculation:
    """Geometry for ``config`` without range validation.

    The density optimizer also measures non-compact baselines (such as the
    standard single-column layout) with this function.
    """
    width, height = config.paper_dimensions
    margins = config.margins
    typography = config.typography
    columns = max(1, config.columns)

    content_width = width - margins.left - margins.right
    content_height = height - margins.top - margins.bottom
    column_width = (content_width - (columns - 1) * margins.column_gap) / columns

    effective_line_height = typography.font_size * typography.line_height
    lines_per_column = max(1, math.floor(content_height / (effective_line_height / 72)))
    char_width = typography.font_size * 0.6
    characters_per_line = max(1, math.floor(column_width * 72 / char_width))
    full_width_characters = max(1, math.floor(content_width * 72 / char_width))
    density = lines_per_column * columns * characters_per_line / (width * height)

    return LayoutCalculation(
        page_width=width,
        page_height=height,
        content_width=content_width,
        content_height=content_height,
        column_width=column_width,
        column_count=columns,
        column_gap=margins.column_gap,
        effective_line_height=effective_line_height,
        lines_per_column=lines_per_column,
        characters_per_line=characters_per_line,
        full_width_characters_per_line=full_width_characters,
        estimated_content_density=density,
    )


@dataclass
class ContentBlock:
    id: str
    type: BlockType
    content: str
    estimated_height: float
    breakable: bool
    priority: int
    formula_type: Optional[str] = None
    math_width: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def atomic(self) -> bool:
        return not self.breakable


@dataclass
class PlacedBlock:
    block: ContentBlock
    page: int
    column: Optional[int]
    offset: float
    full_width: bool = False
    overflowed: bool = False
    last_page: Optional[int] = None

    @property
    def end_page(self) -> int:
        return self.last_page if self.last_page is not None else self.page


@dataclass
class LayoutColumn:
    page: int
    group: int
    index: int
    capacity: float
    blocks: List[ContentBlock] = field(default_factory=list)
    height: float = 0.0

    @property
    def remaining(self) -> float:
        return self.capacity - self.height

    @property
    def fill_ratio(self) -> float:
        return self.height / self.capacity if self.capacity > 0 else 1.0


@dataclass
class ColumnDistribution:
    columns: List[LayoutColumn]
    full_width_blocks: List[PlacedBlock]
    placements: List[PlacedBlock]
    page_count: int
    total_height: float
    balance_score: float
    overflow_risk: float
    promoted_block_ids: List[str] = field(default_factory=list)
    overflowed_block_ids: List[str] = field(default_factory=list)

    def placement_for(self, block_id: str) -> List[PlacedBlock]:
        return [placed for placed in self.placements if placed.block.id == block_id]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "page_count": self.page_count,
            "columns": len(self.columns),
            "total_height": round(self.total_height, 3),
            "balance_score": round(self.balance_score, 3),
            "overflow_risk": round(self.overflow_risk, 3),
            "promoted": list(self.promoted_block_ids),
            "overflowed": list(self.overflowed_block_ids),
        }


class CompactLayoutEngine:
    def __init__(self, config: Optional[CompactLayoutConfig] = None) -> None:
        self.config = config or CompactLayoutConfig()
        validate_layout_config(self.config)

    # ------------------------------------------------------------------ geometry

    def calculate_layout(self, config: Optional[CompactLayoutConfig] = None) -> LayoutCalculation:
        config = config or self.config
        validate_layout_config(config)
        return compute_layout(config)

    # ------------------------------------------------------------------ blocks

    def estimate_height(
        self,
        content: str,
        block_type: BlockType,
        config: Optional[CompactLayoutConfig] = None,
        *,
        formula_type: Optional[str] = None,
        steps: int = 0,
        step_formulas: int = 0,
    ) -> float:
        config = config or self.config
        geometry = compute_layout(config)
        line = geometry.line_height_in
        em = config.typography.font_size / 72
        spacing = config.spacing
        cpl = geometry.characters_per_line

        if block_type == "heading":
            lines = max(1, math.ceil(len(content.strip()) / cpl))
            margins = spacing.heading_margins
            return lines * line * 1.2 + (margins.top + margins.bottom) * em
        if block_type == "list":
            items = [item for item in content.splitlines() if item.strip()]
            return _wrapped_lines(content, cpl) * line + len(items) * spacing.list_spacing * em
        if block_type == "formula":
            lines = 1.0 if formula_type == "inline" else 2.0
            lines += 0.5 * len(_FRACTION_RE.findall(content))
            lines += 0.5 * len(_BIG_OPERATOR_RE.findall(content))
            for match in _ROW_ENVIRONMENT_RE.finditer(content):
                lines += match.group(2).count("\\\\")
            return lines * line + spacing.paragraph_spacing * em
        if block_type == "example":
            lines = _wrapped_lines(content, cpl)
            lines += 0.5 * steps + 1.0 * step_formulas
            return lines * line + 2 * spacing.paragraph_spacing * em
        return _wrapped_lines(content, cpl) * line + spacing.paragraph_spacing * em

    def create_content_block(
        self,
        block_id: str,
        content: str,
        block_type: BlockType,
        *,
        config: Optional[CompactLayoutConfig] = None,
        breakable: Optional[bool] = None,
        priority: Optional[int] = None,
        formula_type: Optional[str] = None,
        steps: Optional[int] = None,
        step_formulas: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ContentBlock:
        if block_type not in DEFAULT_PRIORITIES:
            raise LayoutError(f"Unknown block type '{block_type}'", code="INVALID_CONFIG", block_id=block_id)
        if block_type == "formula" and formula_type is None:
            formula_type = "display"
        if block_type == "example":
            steps = len(_STEP_MARKER_RE.findall(content)) if steps is None else steps
            step_formulas = len(_MATH_SEGMENT_RE.findall(content)) if step_formulas is None else step_formulas
        height = self.estimate_height(
            content,
            block_type,
            config,
            formula_type=formula_type,
            steps=steps or 0,
            step_formulas=step_formulas or 0,
        )
        return ContentBlock(
            id=block_id,
            type=block_type,
            content=content,
            estimated_height=height,
            breakable=(block_type in ("text", "list")) if breakable is None else breakable,
            priority=DEFAULT_PRIORITIES[block_type] if priority is None else priority,
            formula_type=formula_type,
            math_width=_math_width(content, block_type),
            metadata=dict(metadata or {}),
        )

    def blocks_from_document(
        self,
        document: AcademicDocument,
        config: Optional[CompactLayoutConfig] = None,
    ) -> List[ContentBlock]:
        """Flatten ``document`` into blocks in reading order."""
        config = config or self.config
        blocks: List[ContentBlock] = []
        for part in document.parts:
            blocks.append(
                self.create_content_block(
                    f"{part.anchor}-heading",
                    f"Part {part.part_number}: {part.title}",
                    "heading",
                    config=config,
                )
            )
            for section in part.sections:
                blocks.extend(self._section_blocks(section, config))
        return blocks

    def _section_blocks(self, section: AcademicSection, config: CompactLayoutConfig) -> Iterable[ContentBlock]:
        number = section.section_number
        yield self.create_content_block(
            f"sec-{number}-heading", f"{number} {section.title}", "heading", config=config
        )
        for index, paragraph in enumerate(p for p in re.split(r"\n\s*\n", section.content) if p.strip()):
            yield self.create_content_block(f"sec-{number}-p{index}", paragraph.strip(), "text", config=config)
        for definition in section.definitions:
            yield self.create_content_block(
                definition.id, f"Definition ({definition.term}): {definition.definition}", "text", config=config
            )
        for theorem in section.theorems:
            yield self.create_content_block(
                theorem.id, f"Theorem ({theorem.name}): {theorem.statement}", "text", config=config
            )
        for formula in section.formulas:
            yield self._formula_block(formula, config)
        for example in section.examples:
            yield self._example_block(example, config)
        for subsection in section.subsections:
            yield from self._section_blocks(subsection, config)

    def _formula_block(self, formula: Formula, config: CompactLayoutConfig) -> ContentBlock:
        return self.create_content_block(
            formula.id,
            formula.latex,
            "formula",
            config=config,
            breakable=False,
            formula_type=formula.type,
            metadata={"number": formula.number},
        )

    def _example_block(self, example: WorkedExample, config: CompactLayoutConfig) -> ContentBlock:
        lines = [example.title, example.problem]
        step_formulas = 0
        for step in example.solution:
            lines.append(f"Step {step.step_number}: {step.description}")
            if step.math:
                step_formulas += 1
                lines.append(f"${step.math}$")
        return self.create_content_block(
            example.id,
            "\n".join(line for line in lines if line),
            "example",
            config=config,
            steps=len(example.solution),
            step_formulas=step_formulas,
            metadata={"number": example.number},
        )

    # ------------------------------------------------------------------ packing

    def promotion_reason(
        self,
        block: ContentBlock,
        geometry: LayoutCalculation,
        config: Optional[CompactLayoutConfig] = None,
    ) -> Optional[str]:
        """Why ``block`` would be better placed across the full page width."""
        config = config or self.config
        if block.type not in ("formula", "example"):
            return None
        if WIDE_ENVIRONMENT_RE.search(block.content):
            return "wide_construct"
        threshold = config.math_rendering.display_equations.full_width_threshold
        if block.math_width > threshold * geometry.characters_per_line:
            return "line_width"
        if block.estimated_height > geometry.content_height + _EPSILON:
            return "height"
        return None

    def distribute_content(
        self,
        blocks: Sequence[ContentBlock],
        config: Optional[CompactLayoutConfig] = None,
        *,
        strict: bool = False,
    ) -> ColumnDistribution:
        """Pack ``blocks`` in order into columns, pages and full-width bands.

        Raises:
            LayoutError: ``CONTENT_TOO_LARGE`` when ``strict`` is set and a
                block exceeds a whole page even at full width.
        """
        config = config or self.config
        validate_layout_config(config)
        geometry = compute_layout(config)
        packer = _ColumnPacker(self, config, geometry)
        for index, block in enumerate(blocks):
            following = blocks[index + 1] if index + 1 < len(blocks) else None
            packer.place(block, following)
        distribution = packer.finish()
        if strict and distribution.overflowed_block_ids:
            first = distribution.overflowed_block_ids[0]
            raise LayoutError(
                f"Content block '{first}' does not fit on a page",
                code="CONTENT_TOO_LARGE",
                block_id=first,
                suggestion="Reduce the block or use a larger paper size",
            )
        LOGGER.debug(
            "Distributed %d blocks onto %d page(s) (promoted=%d, overflowed=%d)",
            len(blocks),
            distribution.page_count,
            len(distribution.promoted_block_ids),
            len(distribution.overflowed_block_ids),
        )
        return distribution

    def split_text(self, content: str, max_chars: int) -> Tuple[str, str]:
        """Split ``content`` at the last word boundary within ``max_chars``."""
        if len(content) <= max_chars:
            return content, ""
        cut = content.rfind(" ", 0, max_chars + 1)
        if cut <= 0:
            cut = max_chars
        return content[:cut].rstrip(), content[cut:].lstrip()


class _ColumnPacker:
    """Mutable state for one ``distribute_content`` call."""

    def __init__(self, engine: CompactLayoutEngine, config: CompactLayoutConfig, geometry: LayoutCalculation) -> None:
        self.engine = engine
        self.config = config
        self.geometry = geometry
        self.column_count = geometry.column_count
        self.page_height = geometry.content_height
        self.allow_promotion = self.column_count > 1 and config.math_rendering.display_equations.full_width
        self.page = 0
        self.page_used = 0.0
        self.regions: List[Tuple[str, Any]] = []
        self.bands: List[PlacedBlock] = []
        self.promoted: List[str] = []
        self.overflowed: List[str] = []
        self.group_index = -1
        self.group: List[LayoutColumn] = []
        self.column = 0
        self._open_group()

    # -- regions

    def _open_group(self) -> None:
        capacity = self.page_height - self.page_used
        if capacity < self.geometry.line_height_in:
            self._new_page()
            capacity = self.page_height
        self.group_index += 1
        self.group = [
            LayoutColumn(page=self.page, group=self.group_index, index=i, capacity=capacity)
            for i in range(self.column_count)
        ]
        self.column = 0
        self.regions.append(("group", self.group))

    def _close_group(self) -> None:
        _rebalance(self.group, self.overflowed)
        self.page_used += max(col.height for col in self.group)

    def _new_page(self) -> None:
        self.page += 1
        self.page_used = 0.0

    def _next_column(self) -> None:
        self.column += 1
        if self.column >= self.column_count:
            self._close_group()
            self._new_page()
            self._open_group()

    @property
    def current(self) -> LayoutColumn:
        return self.group[self.column]

    def _fresh_full_column(self) -> bool:
        column = self.current
        return column.height <= _EPSILON and column.capacity >= self.page_height - _EPSILON

    # -- placement

    def place(self, block: ContentBlock, following: Optional[ContentBlock]) -> None:
        if block.type == "heading" and following is not None:
            self._keep_with_next(block, following)
        if block.breakable:
            self._place_breakable(block)
        else:
            self._place_atomic(block)

    def _keep_with_next(self, heading: ContentBlock, following: ContentBlock) -> None:
        if following.breakable:
            lead = min(following.estimated_height, 2 * self.geometry.line_height_in)
        else:
            lead = min(following.estimated_height, self.current.capacity)
        column = self.current
        if heading.estimated_height + lead > column.remaining and column.fill_ratio >= 0.5:
            self._next_column()

    def _put(self, block: ContentBlock, *, overflowed: bool = False) -> None:
        column = self.current
        column.blocks.append(block)
        column.height += block.estimated_height
        if overflowed:
            self.overflowed.append(block.id)

    def _place_atomic(self, block: ContentBlock) -> None:
        height = block.estimated_height
        reason = self.engine.promotion_reason(block, self.geometry, self.config) if self.allow_promotion else None
        fits = height <= self.current.remaining + _EPSILON
        if reason is not None and (reason == "line_width" or not fits):
            self._place_band(block)
            return
        while height > self.current.remaining + _EPSILON:
            if self._fresh_full_column():
                LOGGER.warning("Block '%s' is taller than a column; placing it alone", block.id)
                self._put(block, overflowed=True)
                return
            self._next_column()
        self._put(block)

    def _place_band(self, block: ContentBlock) -> None:
        self._close_group()
        height = block.estimated_height
        if height > self.page_height - self.page_used + _EPSILON and self.page_used > _EPSILON:
            self._new_page()
        placed = PlacedBlock(block=block, page=self.page, column=None, offset=self.page_used, full_width=True)
        if height > self.page_height + _EPSILON:
            span = math.ceil(height / self.page_height)
            placed.overflowed = True
            placed.last_page = self.page + span - 1
            self.overflowed.append(block.id)
            self.page = placed.end_page
            self.page_used = height - (span - 1) * self.page_height
        else:
            self.page_used += height
        self.promoted.append(block.id)
        self.bands.append(placed)
        self.regions.append(("band", placed))
        self._open_group()

    def _place_breakable(self, block: ContentBlock) -> None:
        line = self.geometry.line_height_in
        cpl = self.geometry.characters_per_line
        pending = block
        part = 0
        while True:
            column = self.current
            if pending.estimated_height <= column.remaining + _EPSILON:
                if part:
                    pending = replace(pending, id=f"{block.id}_part{part + 1}")
                self._put(pending)
                return
            if "\n" in pending.content:
                pending = self.engine.create_content_block(
                    pending.id,
                    " ".join(pending.content.split()),
                    pending.type,
                    config=self.config,
                    breakable=True,
                    priority=pending.priority,
                    metadata=pending.metadata,
                )
                continue
            pad = pending.estimated_height - _wrapped_lines(pending.content, cpl) * line
            lines_fit = math.floor((column.remaining - max(pad, 0.0)) / line + _EPSILON)
            if lines_fit < 1:
                if self._fresh_full_column():
                    self._put(pending, overflowed=True)
                    return
                self._next_column()
                continue
            head, tail = self.engine.split_text(pending.content, lines_fit * cpl)
            if not tail:
                if self._fresh_full_column():
                    self._put(pending)
                    return
                self._next_column()
                continue
            part += 1
            head_block = self.engine.create_content_block(
                f"{block.id}_part{part}",
                head,
                pending.type,
                config=self.config,
                breakable=True,
                priority=block.priority,
                metadata=block.metadata,
            )
            self._put(head_block)
            pending = self.engine.create_content_block(
                block.id,
                tail,
                pending.type,
                config=self.config,
                breakable=True,
                priority=block.priority,
                metadata=block.metadata,
            )
            self._next_column()

    # -- results

    def finish(self) -> ColumnDistribution:
        _rebalance(self.group, self.overflowed)
        columns: List[LayoutColumn] = []
        placements: List[PlacedBlock] = []
        total_height = 0.0
        balance_scores: List[float] = []
        for kind, region in self.regions:
            if kind == "band":
                placements.append(region)
                total_height += region.block.estimated_height
                continue
            group: List[LayoutColumn] = region
            if not any(col.blocks for col in group):
                continue
            for col in group:
                offset = 0.0
                for block in col.blocks:
                    placements.append(
                        PlacedBlock(
                            block=block,
                            page=col.page,
                            column=col.index,
                            offset=offset,
                            overflowed=block.id in self.overflowed,
                        )
                    )
                    offset += block.estimated_height
            columns.extend(group)
            heights = [col.height for col in group]
            total_height += max(heights)
            if len(heights) > 1:
                balance_scores.append(_balance(heights))

        page_count = max((placed.end_page for placed in placements), default=-1) + 1
        overflow_risk = max((min(1.0, col.fill_ratio) for col in columns), default=0.0)
        return ColumnDistribution(
            columns=columns,
            full_width_blocks=list(self.bands),
            placements=placements,
            page_count=page_count,
            total_height=total_height,
            balance_score=sum(balance_scores) / len(balance_scores) if balance_scores else 1.0,
            overflow_risk=overflow_risk,
            promoted_block_ids=list(self.promoted),
            overflowed_block_ids=list(self.overflowed),
        )


def _wrapped_lines(content: str, chars_per_line: int) -> int:
    return sum(max(1, math.ceil(len(line) / chars_per_line)) for line in content.splitlines() if line.strip())


def _math_width(content: str, block_type: str) -> int:
    if block_type == "formula":
        return max((len(line.strip()) for line in content.splitlines()), default=0)
    if block_type == "example":
        return max((len(segment) for segment in _MATH_SEGMENT_RE.findall(content)), default=0)
    return 0


def _balance(heights: Sequence[float]) -> float:
    mean = sum(heights) / len(heights)
    if mean <= 0:
        return 1.0
    variance = sum((height - mean) ** 2 for height in heights) / len(heights)
    return max(0.0, 1.0 - math.sqrt(variance) / mean)


def _rebalance(group: List[LayoutColumn], overflowed: Sequence[str]) -> None:
    """Redistribute a column group so the tallest column is as short as possible.

    Blocks keep their reading order; only the column boundaries move.
    """
    if len(group) < 2:
        return
    blocks = [block for col in group for block in col.blocks]
    if len(blocks) < 2 or any(block.id in overflowed for block in blocks):
        return
    bounds = linear_partition([block.estimated_height for block in blocks], len(group))
    start = 0
    for col, end in zip(group, bounds):
        col.blocks = blocks[start:end]
        col.height = sum(block.estimated_height for block in col.blocks)
        start = end


def linear_partition(weights: Sequence[float], parts: int) -> List[int]:
    """Ordered partition of ``weights`` into ``parts`` runs minimizing the largest run.

    Returns the exclusive end index of each run; trailing runs may be empty.
    """
    n = len(weights)
    if n == 0:
        return [0] * parts
    prefix = [0.0]
    for weight in weights:
        prefix.append(prefix[-1] + weight)

    inf = float("inf")
    # cost[k][i]: best max-run for the first i weights in k runs
    cost = [[inf] * (n + 1) for _ in range(parts + 1)]
    split = [[0] * (n + 1) for _ in range(parts + 1)]
    cost[0][0] = 0.0
    for k in range(1, parts + 1):
        for i in range(n + 1):
            for j in range(i + 1):
                candidate = max(cost[k - 1][j], prefix[i] - prefix[j])
                # ties go to the later split so earlier columns run longer
                if candidate <= cost[k][i] + _EPSILON:
                    cost[k][i] = candidate
                    split[k][i] = j
    bounds = [n] * parts
    i = n
    for k in range(parts, 0, -1):
        bounds[k - 1] = i
        i = split[k][i]
    return bounds


__all__ = [
    "BlockType",
    "ColumnDistribution",
    "CompactLayoutEngine",
    "ContentBlock",
    "DEFAULT_PRIORITIES",
    "LayoutCalculation",
    "LayoutColumn",
    "PlacedBlock",
    "compute_layout",
    "linear_partition",
]
