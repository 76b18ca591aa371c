from __future__ import annotations

from typing import Callable, Iterable, List

import pytest

from compactstudy.config.runtime import PerformanceConfig, PipelineConfig, RuntimeConfig
from compactstudy.core.memory import MemorySnapshot
from compactstudy.core.models import (
    AcademicDocument,
    AcademicSection,
    Definition,
    DocumentMetadata,
    DocumentPart,
    Formula,
    SolutionStep,
    TOCEntry,
    WorkedExample,
)
from compactstudy.pipeline.performance import PerformanceOptimizer


class ScriptedProbe:
    """Memory probe that replays ``readings`` (in MB) and then reports ``idle_mb``."""

    def __init__(self, readings: Iterable[float] = (), idle_mb: float = 10.0) -> None:
        self.readings: List[float] = list(readings)
        self.idle_mb = idle_mb
        self.calls = 0

    def __call__(self) -> MemorySnapshot:
        self.calls += 1
        used = self.readings.pop(0) if self.readings else self.idle_mb
        return MemorySnapshot(used_mb=used, available_mb=4096.0, percent=used / 4096.0 * 100)


@pytest.fixture
def scripted_probe() -> Callable[..., ScriptedProbe]:
    return ScriptedProbe


@pytest.fixture
def quiet_optimizer() -> PerformanceOptimizer:
    """Optimizer whose memory probe always reports low usage."""
    return PerformanceOptimizer(
        PerformanceConfig(memory_poll_interval_s=0.001),
        memory_probe=ScriptedProbe(),
        reclaim=lambda: 0,
    )


@pytest.fixture
def fast_runtime() -> RuntimeConfig:
    return RuntimeConfig(
        pipeline=PipelineConfig(retry_delay_ms=0, timeout_ms=30_000),
        performance=PerformanceConfig(memory_threshold_mb=1_000_000, memory_poll_interval_s=0.001),
    )


def _sample_document() -> AcademicDocument:
    conditional = AcademicSection(
        section_number="1.1",
        title="Conditional Probability",
        content="The conditional probability of A given B restricts the sample space to B. See Example 1.1.1 for a worked case.",
        formulas=[
            Formula(
                id="eq-1.1.1",
                latex=r"P(A|B) = \frac{P(A \cap B)}{P(B)}",
                original_text="P(A|B) = P(A ∩ B) / P(B)",
                context="The conditional probability of A given B",
                type="display",
                is_key_formula=True,
                number="1.1.1",
            )
        ],
        examples=[
            WorkedExample(
                id="ex-1.1.1",
                title="Example 1: Drawing cards",
                problem="Two cards are drawn from a standard deck without replacement. Find the chance both are aces.",
                solution=[
                    SolutionStep(step_number=1, description="The first card is an ace with chance 4/52", latex=r"\frac{4}{52}"),
                    SolutionStep(step_number=2, description="Multiply by the chance the second is an ace", latex=r"\frac{3}{51}"),
                ],
                is_complete=True,
                number="1.1.1",
            )
        ],
    )
    bayes = AcademicSection(
        section_number="1.2",
        title="Bayes' Theorem",
        content="Bayes' theorem reverses conditioning, see Eq. 1.1.1.",
        definitions=[
            Definition(id="def-1.2.1", term="Prior", definition="The belief held before observing evidence."),
        ],
    )
    properties = AcademicSection(
        section_number="2.1",
        title="Properties",
        content="A relation R on a set A is reflexive if every element is related to itself; see Example 9.",
    )
    parts = [
        DocumentPart(part_number=1, title="Discrete Probability", sections=[conditional, bayes]),
        DocumentPart(part_number=2, title="Relations", sections=[properties]),
    ]
    toc = [
        TOCEntry(
            level=1,
            title=f"Part {'I' * part.part_number}: {part.title}",
            page_anchor=part.anchor,
            children=[
                TOCEntry(
                    level=2,
                    title=section.title,
                    section_number=section.section_number,
                    page_anchor=f"section-{section.section_number.replace('.', '-')}",
                )
                for section in part.sections
            ],
        )
        for part in parts
    ]
    return AcademicDocument(
        title="Discrete Structures Review",
        table_of_contents=toc,
        parts=parts,
        metadata=DocumentMetadata(
            source_files=["probability.txt", "relations.txt"],
            total_sections=3,
            total_formulas=1,
            total_examples=1,
        ),
    )


@pytest.fixture
def sample_document() -> AcademicDocument:
    return _sample_document()
