from __future__ import annotations

import pytest

from compactstudy.agents.base import ExtractionHints
from compactstudy.agents.pattern_extractor import PatternExtractionCapability, convert_to_latex
from compactstudy.core.models import SourceLocation


@pytest.fixture
def extractor() -> PatternExtractionCapability:
    return PatternExtractionCapability({"context_window_chars": 20})


def test_convert_to_latex_handles_ascii_notation():
    assert convert_to_latex("1/2") == r"\frac{1}{2}"
    assert convert_to_latex("x <= 3") == r"x \leq 3"
    assert convert_to_latex("a != b") == r"a \neq b"


def test_convert_to_latex_maps_unicode_glyphs():
    assert convert_to_latex("A ∩ B") == r"A \cap B"


def test_delimited_formulas_are_found_in_order(extractor):
    records = extractor.find_formulas("Consider $x+1$, then $$y^2$$ next.")
    assert [record.latex for record in records] == ["x+1", "y^2"]
    assert [record.type for record in records] == ["inline", "display"]
    assert records[0].text_position == 9


def test_overlapping_matches_are_claimed_once(extractor):
    records = extractor.find_formulas("We know P(A) = 0.5 here.")
    assert len(records) == 1
    assert records[0].original_text.startswith("P(A)")


def test_examples_split_into_problem_and_steps(extractor):
    text = (
        "Example 1: A coin is tossed twice. Find P(two heads).\n"
        "Solution: Step 1: Each toss lands heads with chance 1/2. "
        "Step 2: Multiply the chances to get 1/4.\n"
        "Example 2: Roll a die once."
    )
    examples = extractor.find_examples(text)

    assert [example.title for example in examples] == ["Example 1", "Example 2"]
    first = examples[0]
    assert first.problem == "A coin is tossed twice. Find P(two heads)."
    assert [step.step_number for step in first.solution] == [1, 2]
    assert first.is_complete
    assert examples[1].solution == []
    assert not examples[1].is_complete


def test_definitions_and_theorems_are_detected(extractor):
    text = (
        "Definition: Sample space is the set of all possible outcomes.\n"
        "Theorem (Bayes): P(A|B) = P(B|A)P(A)/P(B)\n"
    )
    definitions = extractor.find_definitions(text)
    theorems = extractor.find_theorems(text)

    assert definitions[0].term == "Sample space"
    assert theorems[0].name == "Bayes"
    assert theorems[0].statement.startswith("P(A|B)")


@pytest.mark.asyncio
async def test_extract_honors_max_items(extractor):
    response = await extractor.extract(
        "$a$ and $b$ and $c$",
        SourceLocation(file_id="doc"),
        ExtractionHints(max_items=2, focus="basics"),
    )
    assert len(response.formulas) == 2
    assert response.formulas[0].subtopic == "basics"
