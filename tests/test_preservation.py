from __future__ import annotations

import pytest

from compactstudy.config.runtime import ValidationConfig
from compactstudy.core.models import (
    CrossReference,
    ErrorType,
    ExtractedDocument,
    Formula,
    MathematicalContent,
    Severity,
    SolutionStep,
    WorkedExample,
)
from compactstudy.exceptions import ValidationFailedError
from compactstudy.pipeline.preservation import (
    ContentPreservationValidator,
    detect_formulas_in_source,
    issues_by_type,
    latex_error,
    merge_extracted,
    normalize_formula,
)

CONTEXT = "surrounding explanation of the formula"


@pytest.fixture
def validator() -> ContentPreservationValidator:
    return ContentPreservationValidator(ValidationConfig())


def _formula(formula_id: str, latex: str, **extra) -> Formula:
    return Formula(id=formula_id, latex=latex, context=CONTEXT, **extra)


def test_lost_formula_is_reported_individually_and_in_aggregate(validator):
    text = "Consider $x+1$, then $y^2$, finally $z_3$."
    result = validator.validate_formula_preservation(text, [_formula("f1", "x+1"), _formula("f2", "y^2")])

    assert result.total_formulas_found == 3
    assert result.preservation_rate == pytest.approx(2 / 3)
    lost = [issue for issue in result.issues if issue.type == ErrorType.FORMULA_LOST]
    assert len(lost) == 1
    assert lost[0].details["source_formula"] == "$z_3$"
    loss = [issue for issue in result.issues if issue.type == ErrorType.CONTENT_LOSS]
    assert loss and loss[0].severity == Severity.HIGH
    assert not result.passed


def test_all_formulas_preserved_passes(validator):
    result = validator.validate_formula_preservation("We know $a+b$ here.", [_formula("f1", "a+b", is_key_formula=True)])
    assert result.passed
    assert result.preservation_rate == 1.0
    assert result.key_formulas_preserved == 1
    assert result.issues == []


def test_formula_without_context_and_invalid_latex(validator):
    result = validator.validate_formula_preservation("", [Formula(id="f1", latex=r"\frac{1}{2")])
    types = issues_by_type(result.issues)
    assert types == {"conversion_failed": 1, "context_missing": 1}
    assert result.formulas_with_valid_latex == 0


def test_source_detection_counts_each_span_once():
    assert detect_formulas_in_source("We have $P(A)$ and later P(A) again.") == ["$P(A)$"]
    assert detect_formulas_in_source("E[X] then $y$") == ["E[X]", "$y$"]


def test_normalize_formula_strips_delimiters_and_braces():
    assert normalize_formula("$$ \\frac{a}{b} $$") == "\\fracab"
    assert normalize_formula("\\(X\\)") == "x"


@pytest.mark.parametrize(
    "latex, expected",
    [
        ("", "empty LaTeX"),
        (r"\frac{1}{2", "unbalanced braces"),
        ("$x", "unclosed math delimiter"),
        (r"\begin{cases} x \end{matrix}", "unbalanced environment 'matrix'"),
        (r"\begin{cases} x", "unclosed environment 'cases'"),
        (r"\frac{a}{b}", None),
    ],
)
def test_latex_error(latex, expected):
    assert latex_error(latex) == expected


def test_example_without_solution_is_a_high_severity_issue(validator):
    examples = [
        WorkedExample(
            id="ex-1",
            problem="Find the chance of rolling a six.",
            solution=[
                SolutionStep(step_number=1, description="Count the favourable faces"),
                SolutionStep(step_number=2, description="Divide by the six faces"),
            ],
            is_complete=True,
        ),
        WorkedExample(id="ex-2", problem="Find the variance of a fair die."),
    ]
    result = validator.validate_example_completeness("Example 1: ... Example 2: ...", examples)

    assert result.complete_examples == 1
    assert result.completeness_rate == pytest.approx(0.5)
    assert result.examples_with_steps == 1
    incomplete = [issue for issue in result.issues if issue.element_id == "ex-2"]
    assert incomplete[0].type == ErrorType.EXAMPLE_INCOMPLETE
    assert incomplete[0].severity == Severity.HIGH
    assert incomplete[0].details == {"incomplete_solution": True}


def test_reference_to_missing_target_is_broken(validator, sample_document):
    reference = CrossReference(
        id="ref-1",
        type="example",
        source_id="1.1",
        target_id="ex-7.7.7",
        display_text="see Ex. 7.7.7",
    )
    result = validator.validate_cross_reference_integrity([reference], sample_document)

    assert result.broken_references == 1
    assert result.missing_targets == 1
    assert result.integrity_rate == 0.0
    assert result.issues[0].type == ErrorType.BROKEN_REF


def test_valid_reference_with_odd_display_text(validator, sample_document):
    reference = CrossReference(
        id="ref-1",
        type="formula",
        source_id="1.2",
        target_id="eq-1.1.1",
        display_text="that equation",
    )
    result = validator.validate_cross_reference_integrity([reference], sample_document)
    assert result.integrity_rate == 1.0
    assert [issue.type for issue in result.issues] == [ErrorType.CONTEXT_MISSING]


def test_unrenderable_math_is_flagged(validator):
    content = MathematicalContent(
        formulas=[_formula("f1", r"\includegraphics{plot}"), _formula("f2", r"\sqrt{x}")],
    )
    result = validator.validate_math_rendering_accuracy(content)
    assert result.total_math_elements == 2
    assert result.latex_valid_elements == 2
    assert result.accuracy_rate == pytest.approx(0.5)
    assert result.issues[0].severity == Severity.LOW


def test_full_audit_scores_a_clean_extraction(validator, sample_document):
    extracted = ExtractedDocument(
        document_id="doc-1",
        file_name="notes.txt",
        text="Consider $x+1$ here.",
        content=MathematicalContent(formulas=[_formula("f1", "x+1")]),
    )
    result = validator.validate_content_preservation(extracted, sample_document)

    assert result.passed
    assert result.preservation_score == pytest.approx(1.0)
    assert result.recommendations == []
    assert result.summary()["issues"] == 0


def test_score_never_rises_as_extracted_content_is_dropped(validator):
    text = (
        "Consider $a+b$, then $c^2$, also $d_1$, finally $e/f$. "
        "Example 1: roll a fair die. Example 2: draw two cards."
    )
    formulas = [_formula(f"f{index}", latex) for index, latex in enumerate(["a+b", "c^2", "d_1", "e/f"])]
    examples = [
        WorkedExample(
            id=f"ex-{index}",
            problem="Find the probability of the described event.",
            solution=[
                SolutionStep(step_number=1, description="Count the favourable outcomes"),
                SolutionStep(step_number=2, description="Divide by all possible outcomes"),
            ],
            is_complete=True,
        )
        for index in range(2)
    ]

    scores = []
    while True:
        extracted = ExtractedDocument(
            document_id="doc-1",
            file_name="notes.txt",
            text=text,
            content=MathematicalContent(formulas=formulas, worked_examples=examples),
        )
        scores.append(validator.validate_content_preservation(extracted).preservation_score)
        if formulas:
            formulas = formulas[:-1]
        elif examples:
            examples = examples[:-1]
        else:
            break

    assert len(scores) == 7
    assert scores[0] == pytest.approx(1.0)
    assert all(later < earlier for earlier, later in zip(scores, scores[1:]))
    assert scores[-1] == pytest.approx(0.15 + 0.15)


def test_strict_mode_fails_on_severe_issues(sample_document):
    strict = ContentPreservationValidator(ValidationConfig(strict_mode=True))
    extracted = ExtractedDocument(
        document_id="doc-1",
        file_name="notes.txt",
        text="Consider $x+1$, then $y^2$, finally $z_3$.",
        content=MathematicalContent(formulas=[_formula("f1", "x+1")]),
    )
    result = strict.validate_content_preservation(extracted, sample_document)

    assert not result.passed
    assert result.severe_issue_count >= 1
    assert result.preservation_score == pytest.approx(0.4 / 3 + 0.3 + 0.15 + 0.15)
    assert any(rec.title == "Improve Formula Preservation" for rec in result.recommendations)


def test_merge_extracted_combines_text_and_content():
    first = ExtractedDocument(
        document_id="a",
        file_name="a.txt",
        domain="probability",
        text="one",
        content=MathematicalContent(formulas=[_formula("f1", "x")]),
        confidence=0.8,
    )
    second = ExtractedDocument(
        document_id="b",
        file_name="b.txt",
        domain="relations",
        text="two",
        content=MathematicalContent(formulas=[_formula("f2", "y")]),
        confidence=0.6,
        recovered=True,
    )
    merged = merge_extracted([first, second])
    assert merged.text == "one\n\ntwo"
    assert [formula.id for formula in merged.content.formulas] == ["f1", "f2"]
    assert merged.domain == "general"
    assert merged.confidence == pytest.approx(0.7)
    assert merged.recovered


def test_internal_audit_failure_is_wrapped(validator, monkeypatch, sample_document):
    def broken(*args, **kwargs):
        raise ZeroDivisionError("empty denominator")

    monkeypatch.setattr(validator, "validate_example_completeness", broken)
    extracted = ExtractedDocument(document_id="doc-1", file_name="notes.txt", text="Consider $x+1$ here.")

    with pytest.raises(ValidationFailedError) as excinfo:
        validator.validate_content_preservation(extracted, sample_document)
    assert "notes.txt" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, ZeroDivisionError)
