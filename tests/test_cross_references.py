from __future__ import annotations

import pytest

from compactstudy.config.runtime import CrossReferenceConfig
from compactstudy.core.models import CrossReference, ErrorType, Formula, MathematicalContent, Severity
from compactstudy.pipeline.cross_references import CrossReferenceSystem, display_id, plain_text


@pytest.fixture
def system() -> CrossReferenceSystem:
    return CrossReferenceSystem(CrossReferenceConfig())


def _with_section_text(document, section_number: str, text: str):
    for part in document.parts:
        for section in part.sections:
            if section.section_number == section_number:
                section.content = text
    return document


def test_explicit_references_resolve_by_number(system, sample_document):
    references = system.generate_cross_references(sample_document)

    assert [(ref.id, ref.source_id, ref.target_id) for ref in references] == [
        ("ref-1", "1.1", "ex-1.1.1"),
        ("ref-2", "1.2", "eq-1.1.1"),
        ("ref-3", "2.1", "ex-9"),
    ]
    assert references[0].display_text == "see Ex. 1.1.1"
    assert references[1].display_text == "see Eq. 1.1.1"


def test_unresolvable_number_is_kept_as_broken_reference(system, sample_document):
    broken = system.generate_cross_references(sample_document)[2]

    assert broken.is_broken
    assert broken.display_text == "Example 9"
    assert broken.fallback_text == "Example 9"
    results = {result.reference_id: result for result in system.get_validation_results()}
    assert results["ref-3"].error_type == "missing_target"
    assert results["ref-1"].is_valid
    assert results["ref-2"].is_valid


def test_processing_flags_broken_references_with_warnings(system, sample_document):
    references = system.generate_cross_references(sample_document)
    result = system.process_cross_references(references, sample_document)

    assert len(result.processed_references) == 3
    assert [ref.id for ref in result.broken_references] == ["ref-3"]
    warning = result.warnings[0]
    assert warning.type == ErrorType.BROKEN_REF
    assert warning.severity == Severity.MEDIUM
    assert warning.stage == "cross-reference"
    assert len(result.warnings) == 1


def test_processing_is_deterministic(system, sample_document):
    references = system.generate_cross_references(sample_document)
    first = system.process_cross_references(references, sample_document)
    second = system.process_cross_references(references, sample_document)
    assert [ref.model_dump() for ref in first.processed_references] == [
        ref.model_dump() for ref in second.processed_references
    ]


def test_direct_reference_to_missing_example_falls_back_to_plain_text(system, sample_document):
    reference = CrossReference(
        id="ref-1",
        type="example",
        source_id="1.1",
        target_id="ex-7.7.7",
        display_text="see Ex. 7.7.7",
    )
    result = system.process_cross_references([reference], sample_document)

    assert len(result.broken_references) == 1
    flagged = result.processed_references[0]
    assert flagged.is_broken
    assert flagged.fallback_text == "Example 7.7.7"
    assert flagged.display_text == "Example 7.7.7"


def test_reference_without_number_resolves_to_nearest_in_same_part(system, sample_document):
    _with_section_text(sample_document, "1.2", "Recall the card draw, see Example for details.")
    _with_section_text(sample_document, "2.1", "Relations are covered here, see Example for one.")

    references = system.generate_cross_references(sample_document)

    by_source = {ref.source_id: ref for ref in references}
    assert by_source["1.2"].target_id == "ex-1.1.1"
    assert by_source["1.2"].display_text == "see Ex. 1.1.1"
    assert "2.1" not in by_source


def test_validation_detects_circular_and_badly_formatted_references(system, sample_document):
    references = [
        CrossReference(id="r1", type="section", source_id="1.1", target_id="1.2", display_text="see Section 1.2"),
        CrossReference(id="r2", type="section", source_id="1.2", target_id="1.1", display_text="see Section 1.1"),
        CrossReference(id="r3", type="example", source_id="1.2", target_id="ex-1.1.1", display_text="Ex 1.1.1"),
    ]
    results = system.validate_references(references, sample_document)

    assert [result.error_type for result in results] == ["circular_reference", "circular_reference", "invalid_format"]


def test_reverse_index_finds_references_to_target(system, sample_document):
    system.generate_cross_references(sample_document)
    assert [ref.id for ref in system.find_references_to_target("eq-1.1.1")] == ["ref-2"]
    assert system.find_references_to_target("nowhere") == []


def test_process_against_mathematical_content_checks_targets_only(system):
    content = MathematicalContent(formulas=[Formula(id="eq-1.1.1", latex="x")])
    references = [
        CrossReference(id="ref-1", type="formula", source_id="anything", target_id="eq-1.1.1", display_text="old"),
        CrossReference(id="ref-2", type="formula", source_id="anything", target_id="eq-2.2.2", display_text="old"),
    ]
    result = system.process_cross_references(references, content)

    assert result.processed_references[0].display_text == "see Eq. 1.1.1"
    assert result.processed_references[1].fallback_text == "Equation 2.2.2"


def test_auto_generation_can_be_disabled(sample_document):
    system = CrossReferenceSystem(CrossReferenceConfig(enable_auto_generation=False))
    assert system.generate_cross_references(sample_document) == []


def test_custom_reference_formats(sample_document):
    config = CrossReferenceConfig(reference_formats={"example": "cf. Example {id}"})
    system = CrossReferenceSystem(config)
    assert system.format_reference_parts("example", "ex-2.1.3") == "cf. Example 2.1.3"
    assert system.format_reference_parts("formula", "eq-1.1.1") == "see 1.1.1"


def test_display_helpers():
    assert display_id("thm-3.1.2") == "3.1.2"
    assert display_id("2.1") == "2.1"
    assert plain_text("definition", "def-1.2.1") == "Definition 1.2.1"
