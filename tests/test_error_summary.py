from __future__ import annotations

from compactstudy.core.error_summary import ErrorSummary
from compactstudy.core.events import PipelineEvents, StageEvent, logging_events
from compactstudy.core.models import ErrorType, ProcessingError, ProcessingWarning, Severity


def _broken(n: int) -> list:
    return [
        ProcessingWarning(stage="cross-reference", type=ErrorType.BROKEN_REF, severity=Severity.MEDIUM, message=f"ref {i}")
        for i in range(n)
    ]


def test_counts_by_type_and_severity():
    errors = [ProcessingError(stage="file-processing", severity=Severity.CRITICAL, message="disk gone")]
    summary = ErrorSummary.build(errors, _broken(2))

    assert summary.total_errors == 1
    assert summary.total_warnings == 2
    assert summary.by_type == {"system": 1, "broken_ref": 2}
    assert summary.by_severity == {"critical": 1, "medium": 2}
    assert summary.has_critical
    assert summary.count(ErrorType.BROKEN_REF) == 2


def test_many_broken_references_trigger_advice():
    assert ErrorSummary.build([], _broken(3)).recommendations == []
    assert ErrorSummary.build([], _broken(4)).recommendations == [
        "Review cross-reference formatting and target availability"
    ]


def test_stage_outcomes_and_low_preservation_are_reported():
    summary = ErrorSummary.build(
        [],
        [],
        failed_stages=["cross-reference-generation", "cross-reference-generation"],
        recovered_stages=["file-processing"],
        preservation_score=0.5,
        extra_recommendations=["Improve Formula Preservation"],
    )

    assert summary.failed_stages == ["cross-reference-generation"]
    assert summary.recommendations == [
        "Output is partial: stage(s) cross-reference-generation failed",
        "Review recovered content from stage(s) file-processing",
        "Preservation score 0.50 is low; review the source before publishing",
        "Improve Formula Preservation",
    ]


def test_summary_serializes_to_json_payload():
    payload = ErrorSummary.build([], _broken(1), preservation_score=0.9).model_dump(mode="json")
    assert payload["by_type"] == {"broken_ref": 1}
    assert payload["preservation_score"] == 0.9


def test_raising_listener_does_not_escape(caplog):
    seen = []

    def explode(payload):
        raise RuntimeError("listener bug")

    events = PipelineEvents(on_stage_started=explode, on_progress=seen.append)
    events.emit("stage_started", StageEvent(stage_id="a", name="A", status="running"))
    events.emit("progress", 50.0)
    events.emit("pipeline_started")

    assert seen == [50.0]
    assert "Event listener for 'stage_started' raised" in caplog.text


def test_logging_events_accept_every_payload(caplog):
    events = logging_events()
    stage = StageEvent(stage_id="file-processing", name="File Processing", status="completed", elapsed_ms=3.0)
    for name in ("stage_started", "stage_completed", "stage_failed", "stage_recovered"):
        events.emit(name, stage)
    events.emit("progress", 25.0)
    events.emit("pipeline_failed", RuntimeError("boom"))
    events.emit("pipeline_cancelled")

    assert "Event listener" not in caplog.text
