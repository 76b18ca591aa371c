from __future__ import annotations

import pytest
from pydantic import ValidationError

from compactstudy.core.models import (
    Formula,
    MathematicalContent,
    SolutionStep,
    SourceDocument,
    SourceFile,
    ProcessingError,
    ProcessingStatus,
    WorkedExample,
    braces_balanced,
)
from compactstudy.core.result import Err, Ok, RecoverableError
from compactstudy.exceptions import ExtractionError


def test_worked_example_without_steps_is_never_complete():
    example = WorkedExample(id="ex-1", problem="Roll two dice and find the sum.", is_complete=True)
    assert example.is_complete is False


def test_worked_example_with_short_problem_is_incomplete():
    example = WorkedExample(
        id="ex-1",
        problem="Roll.",
        solution=[SolutionStep(step_number=1, description="Add the faces")],
        is_complete=True,
    )
    assert example.is_complete is False


def test_worked_example_complete_when_problem_and_steps_present():
    example = WorkedExample(
        id="ex-1",
        problem="Roll two dice and find the sum.",
        solution=[SolutionStep(step_number=1, description="Add the faces", formula="a + b")],
        is_complete=True,
    )
    assert example.is_complete is True
    assert example.solution[0].math == "a + b"


def test_formula_validity_requires_balanced_braces():
    assert Formula(id="f1", latex=r"\frac{1}{2}").is_valid
    assert not Formula(id="f2", latex=r"\frac{1}{2").is_valid
    assert not Formula(id="f3", latex="   ").is_valid


def test_braces_balanced_ignores_escaped_braces():
    assert braces_balanced(r"\{ x \}")
    assert not braces_balanced("}{")


def test_formula_confidence_is_bounded():
    with pytest.raises(ValidationError):
        Formula(id="f1", latex="x", confidence=1.5)


def test_merge_keeps_first_occurrence_and_returns_new_version():
    left = MathematicalContent(formulas=[Formula(id="f1", latex="x"), Formula(id="f2", latex="y")])
    right = MathematicalContent(formulas=[Formula(id="f2", latex="z"), Formula(id="f3", latex="w")])

    merged = left.merge(right)

    assert [formula.id for formula in merged.formulas] == ["f1", "f2", "f3"]
    assert merged.formulas[1].latex == "y"
    assert len(left.formulas) == 2
    assert merged.item_count == 3


def test_mathematical_content_is_frozen():
    content = MathematicalContent()
    assert content.is_empty()
    with pytest.raises(ValidationError):
        content.formulas = [Formula(id="f1", latex="x")]


def test_source_file_size_defaults_from_payload():
    assert SourceFile(name="a.txt", text="héllo").size == 6
    assert SourceFile(name="b.bin", data=b"\x00\x01").size == 2


def test_source_document_fail_marks_status():
    document = SourceDocument(file=SourceFile(name="a.txt", text="x"))
    document.fail(ProcessingError(stage="file-processor", message="boom"))
    assert document.is_failed
    assert document.processing_status == ProcessingStatus.FAILED


def test_recoverable_error_from_exception_keeps_flags():
    error = RecoverableError.from_exception(
        ExtractionError("bad scan", document_id="doc-1", recoverable=False), stage="file-processing"
    )
    assert error.recoverable is False
    assert error.document_id == "doc-1"
    assert error.type.value == "extraction"
    assert error.to_processing_error().stage == "file-processing"


def test_result_variants():
    assert Ok(3).ok
    assert not Err(RecoverableError("nope")).ok
