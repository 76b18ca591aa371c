from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, List, Mapping

import pytest

from compactstudy.config.runtime import PipelineConfig
from compactstudy.core.events import PipelineEvents
from compactstudy.core.models import AcademicDocument, ErrorType, Severity, SourceFile
from compactstudy.core.result import RecoverableError
from compactstudy.exceptions import (
    ExtractionError,
    PipelineCancelledError,
    PipelineConfigurationError,
    PipelineExecutionError,
    PipelineTimeoutError,
    UnknownProcessorError,
)
from compactstudy.pipeline.orchestrator import PipelinePhase, ProcessingPipeline, StageStatus
from compactstudy.processors.base import (
    ContentProcessor,
    ProcessingMetrics,
    ProcessingResult,
    ProcessorRegistry,
    ProcessorValidation,
    StageInput,
)


class EchoProcessor(ContentProcessor):
    """Succeeds with a fixed payload and remembers what it was handed."""

    def __init__(self, processor_id: str, output: Any = None, delay: float = 0.0, gauge: "Gauge | None" = None):
        self.processor_id = processor_id
        self.output = processor_id if output is None else output
        self.delay = delay
        self.gauge = gauge
        self.calls = 0
        self.seen: List[Mapping[str, Any]] = []

    def validate(self, input: StageInput, config: Mapping[str, Any]) -> ProcessorValidation:
        return ProcessorValidation(passed=True)

    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        self.calls += 1
        self.seen.append(dict(input.upstream))
        if self.gauge is not None:
            self.gauge.enter()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            if self.gauge is not None:
                self.gauge.leave()
        return ProcessingResult(success=True, data=self.output, metrics=ProcessingMetrics(content_preserved=1.0))


class FlakyProcessor(EchoProcessor):
    def __init__(self, processor_id: str, failures: int):
        super().__init__(processor_id)
        self.remaining = failures

    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        if self.remaining:
            self.remaining -= 1
            self.calls += 1
            raise RuntimeError("transient glitch")
        return await super().process(input, config)


class RecoveringProcessor(EchoProcessor):
    """Always reports failure; recovery hands back a degraded payload."""

    def __init__(self, processor_id: str):
        super().__init__(processor_id)
        self.recover_calls = 0

    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        self.calls += 1
        return ProcessingResult(success=False, errors=[self.error("nothing extracted")])

    async def recover(self, error: RecoverableError, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        self.recover_calls += 1
        return ProcessingResult(success=True, data="degraded", metrics=ProcessingMetrics(recovered=True))


class FatalProcessor(RecoveringProcessor):
    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        self.calls += 1
        raise ExtractionError("unreadable file", document_id="doc", recoverable=False)


class InvalidInputProcessor(EchoProcessor):
    def validate(self, input: StageInput, config: Mapping[str, Any]) -> ProcessorValidation:
        return ProcessorValidation(passed=False, details="missing extracted content", confidence=0.0)


class BlockingProcessor(EchoProcessor):
    def __init__(self, processor_id: str):
        super().__init__(processor_id)
        self.started = asyncio.Event()

    async def process(self, input: StageInput, config: Mapping[str, Any]) -> ProcessingResult:
        self.started.set()
        await asyncio.sleep(10)
        return await super().process(input, config)


class Gauge:
    def __init__(self) -> None:
        self.current = 0
        self.peak = 0

    def enter(self) -> None:
        self.current += 1
        self.peak = max(self.peak, self.current)

    def leave(self) -> None:
        self.current -= 1


def _pipeline(*processors: ContentProcessor, events: PipelineEvents | None = None, **config: Any) -> ProcessingPipeline:
    settings: Dict[str, Any] = {"retry_delay_ms": 0}
    settings.update(config)
    pipeline = ProcessingPipeline(
        PipelineConfig(**settings),
        registry=ProcessorRegistry(processors),
        events=events,
    )
    pipeline.add_source_document(SourceFile(name="notes.txt", text="Some notes about probability."))
    return pipeline


def _stage(pipeline: ProcessingPipeline, stage_id: str):
    return next(stage for stage in pipeline.stages if stage.id == stage_id)


# --------------------------------------------------------------------------- configuration


def test_unknown_processor_is_rejected_when_adding_stage():
    pipeline = _pipeline(EchoProcessor("a"))
    with pytest.raises(UnknownProcessorError):
        pipeline.add_stage("x", "X", "missing-processor")


def test_duplicate_stage_is_rejected():
    pipeline = _pipeline(EchoProcessor("a"))
    pipeline.add_stage("a", "A", "a")
    with pytest.raises(PipelineConfigurationError):
        pipeline.add_stage("a", "A again", "a")


def test_unknown_dependency_is_rejected():
    pipeline = _pipeline(EchoProcessor("a"))
    pipeline.add_stage("a", "A", "a", depends_on=["ghost"])
    with pytest.raises(PipelineConfigurationError, match="ghost"):
        pipeline.validate_pipeline()


def test_dependency_cycle_is_rejected():
    pipeline = _pipeline(EchoProcessor("a"), EchoProcessor("b"))
    pipeline.add_stage("a", "A", "a", depends_on=["b"])
    pipeline.add_stage("b", "B", "b", depends_on=["a"])
    with pytest.raises(PipelineConfigurationError, match="Dependency cycle"):
        pipeline.validate_pipeline()


def test_pipeline_without_documents_is_rejected():
    pipeline = ProcessingPipeline(registry=ProcessorRegistry([EchoProcessor("a")]))
    pipeline.add_stage("a", "A", "a")
    with pytest.raises(PipelineConfigurationError):
        pipeline.validate_pipeline()


def test_validate_pipeline_returns_dependency_order():
    pipeline = _pipeline(EchoProcessor("a"), EchoProcessor("b"), EchoProcessor("c"))
    pipeline.add_stage("c", "C", "c", depends_on=["b"])
    pipeline.add_stage("b", "B", "b", depends_on=["a"])
    pipeline.add_stage("a", "A", "a")
    assert pipeline.validate_pipeline() == ["a", "b", "c"]


# --------------------------------------------------------------------------- scheduling


@pytest.mark.asyncio
async def test_dependents_start_after_dependencies_complete():
    for seed in range(100):
        rng = random.Random(seed)
        count = rng.randint(2, 7)
        gauge = Gauge()
        processors = [EchoProcessor(f"p{i}", delay=rng.uniform(0, 0.003), gauge=gauge) for i in range(count)]
        limit = rng.randint(1, 4)
        pipeline = _pipeline(*processors, max_concurrent_stages=limit)
        edges = []
        for index in range(count):
            deps = [f"s{j}" for j in range(index) if rng.random() < 0.4]
            edges.extend((dep, f"s{index}") for dep in deps)
            pipeline.add_stage(f"s{index}", f"Stage {index}", f"p{index}", depends_on=deps)

        await pipeline.execute()

        assert all(stage.status == StageStatus.COMPLETED for stage in pipeline.stages), seed
        for before, after in edges:
            assert _stage(pipeline, after).started_at >= _stage(pipeline, before).completed_at, seed
        assert gauge.peak <= limit, seed


@pytest.mark.asyncio
async def test_stage_receives_outputs_of_its_dependencies():
    first, second = EchoProcessor("a", output="alpha"), EchoProcessor("b")
    pipeline = _pipeline(first, second)
    pipeline.add_stage("a", "A", "a")
    pipeline.add_stage("b", "B", "b", depends_on=["a"])

    await pipeline.execute()

    assert first.seen == [{}]
    assert second.seen == [{"a": "alpha"}]


# --------------------------------------------------------------------------- failure policy


@pytest.mark.asyncio
async def test_transient_failure_succeeds_on_retry():
    flaky = FlakyProcessor("a", failures=1)
    pipeline = _pipeline(flaky)
    pipeline.add_stage("a", "A", "a")

    await pipeline.execute()

    stage = _stage(pipeline, "a")
    assert stage.status == StageStatus.COMPLETED
    assert stage.attempts == 2
    assert stage.failures == 1
    assert not stage.recovered
    assert any("transient glitch" in error.message for error in pipeline.get_errors())


@pytest.mark.asyncio
async def test_failed_stage_is_recovered():
    processor = RecoveringProcessor("a")
    pipeline = _pipeline(processor)
    pipeline.add_stage("a", "A", "a")

    document = await pipeline.execute()

    stage = _stage(pipeline, "a")
    assert stage.status == StageStatus.COMPLETED
    assert stage.recovered
    assert processor.calls == 2
    assert processor.recover_calls == 1
    assert pipeline.get_status().recovered_stages == ["a"]
    assert pipeline.get_metrics().stages_recovered == 1
    assert document.metadata.recovered


@pytest.mark.asyncio
async def test_failure_threshold_skips_recovery_and_dependents():
    failing, dependent = RecoveringProcessor("a"), EchoProcessor("b")
    pipeline = _pipeline(failing, dependent, failure_threshold=2)
    pipeline.add_stage("a", "A", "a")
    pipeline.add_stage("b", "B", "b", depends_on=["a"])

    document = await pipeline.execute()

    assert _stage(pipeline, "a").status == StageStatus.FAILED
    assert _stage(pipeline, "b").status == StageStatus.SKIPPED
    assert failing.recover_calls == 0
    assert dependent.calls == 0
    status = pipeline.get_status()
    assert status.phase == PipelinePhase.COMPLETED
    assert status.failed_stages == ["a"]
    assert status.skipped_stages == ["b"]
    assert document.metadata.failed_stages == ["a", "b"]
    assert document.metadata.recovered


@pytest.mark.asyncio
async def test_skips_cascade_when_dependents_are_registered_first():
    failing = RecoveringProcessor("a")
    middle, last, independent = EchoProcessor("b"), EchoProcessor("c"), EchoProcessor("d")
    pipeline = _pipeline(failing, middle, last, independent, failure_threshold=2)
    pipeline.add_stage("c", "C", "c", depends_on=["b"])
    pipeline.add_stage("a", "A", "a")
    pipeline.add_stage("b", "B", "b", depends_on=["a"])
    pipeline.add_stage("d", "D", "d")

    document = await pipeline.execute()

    assert _stage(pipeline, "a").status == StageStatus.FAILED
    assert _stage(pipeline, "b").status == StageStatus.SKIPPED
    assert _stage(pipeline, "c").status == StageStatus.SKIPPED
    assert _stage(pipeline, "d").status == StageStatus.COMPLETED
    assert middle.calls == 0
    assert last.calls == 0
    assert independent.calls == 1
    status = pipeline.get_status()
    assert status.phase == PipelinePhase.COMPLETED
    assert sorted(status.skipped_stages) == ["b", "c"]
    assert sorted(document.metadata.failed_stages) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_non_recoverable_error_stops_immediately():
    processor = FatalProcessor("a")
    pipeline = _pipeline(processor, max_stage_attempts=3)
    pipeline.add_stage("a", "A", "a")

    await pipeline.execute()

    stage = _stage(pipeline, "a")
    assert stage.status == StageStatus.FAILED
    assert stage.attempts == 1
    assert processor.recover_calls == 0
    assert pipeline.get_errors()[0].severity == Severity.CRITICAL


@pytest.mark.asyncio
async def test_failed_input_validation_is_reported():
    pipeline = _pipeline(InvalidInputProcessor("a"))
    pipeline.add_stage("a", "A", "a")

    await pipeline.execute()

    assert _stage(pipeline, "a").status == StageStatus.FAILED
    errors = pipeline.get_errors()
    assert errors[0].type == ErrorType.CONTEXT_MISSING
    assert "missing extracted content" in errors[0].message


@pytest.mark.asyncio
async def test_all_stages_failing_without_recovery_raises():
    pipeline = _pipeline(FlakyProcessor("a", failures=5), enable_recovery=False)
    pipeline.add_stage("a", "A", "a")

    with pytest.raises(PipelineExecutionError) as excinfo:
        await pipeline.execute()

    assert not isinstance(excinfo.value, (PipelineTimeoutError, PipelineCancelledError))
    assert pipeline.get_status().phase == PipelinePhase.FAILED


@pytest.mark.asyncio
async def test_partial_failure_still_yields_document():
    pipeline = _pipeline(EchoProcessor("a"), FlakyProcessor("b", failures=5), enable_recovery=False)
    pipeline.add_stage("a", "A", "a")
    pipeline.add_stage("b", "B", "b")

    document = await pipeline.execute()

    assert document.metadata.failed_stages == ["b"]
    assert document.metadata.error_summary["failed_stages"] == ["b"]
    assert any("Output is partial" in rec for rec in document.metadata.error_summary["recommendations"])


# --------------------------------------------------------------------------- timeout and cancellation


@pytest.mark.asyncio
async def test_timeout_fails_the_run():
    pipeline = _pipeline(BlockingProcessor("a"), timeout_ms=50)
    pipeline.add_stage("a", "A", "a")

    with pytest.raises(PipelineTimeoutError) as excinfo:
        await pipeline.execute()

    assert excinfo.value.timeout_ms == 50
    assert pipeline.get_status().phase == PipelinePhase.FAILED
    assert _stage(pipeline, "a").status == StageStatus.FAILED
    last = pipeline.get_errors()[-1]
    assert last.severity == Severity.CRITICAL
    assert last.type == ErrorType.SYSTEM


@pytest.mark.asyncio
async def test_cancel_stops_running_and_queued_stages():
    blocking, dependent = BlockingProcessor("a"), EchoProcessor("b")
    cancelled: List[Any] = []
    pipeline = _pipeline(blocking, dependent, events=PipelineEvents(on_pipeline_cancelled=cancelled.append))
    pipeline.add_stage("a", "A", "a")
    pipeline.add_stage("b", "B", "b", depends_on=["a"])

    run = asyncio.ensure_future(pipeline.execute())
    await blocking.started.wait()
    pipeline.cancel()

    with pytest.raises(PipelineCancelledError):
        await run

    assert pipeline.get_status().phase == PipelinePhase.CANCELLED
    assert _stage(pipeline, "a").status == StageStatus.CANCELLED
    assert _stage(pipeline, "b").status == StageStatus.CANCELLED
    assert dependent.calls == 0
    assert len(cancelled) == 1


@pytest.mark.asyncio
async def test_cancel_before_execute_cancels_the_run():
    processor = EchoProcessor("a")
    pipeline = _pipeline(processor)
    pipeline.add_stage("a", "A", "a")
    pipeline.cancel()

    with pytest.raises(PipelineCancelledError):
        await pipeline.execute()

    assert processor.calls == 0
    assert _stage(pipeline, "a").status == StageStatus.CANCELLED


# --------------------------------------------------------------------------- events and assembly


@pytest.mark.asyncio
async def test_lifecycle_events_are_emitted_in_order():
    seen: List[str] = []
    progress: List[float] = []

    def _broken(_: Any) -> None:
        raise RuntimeError("listener bug")

    events = PipelineEvents(
        on_pipeline_started=lambda _: seen.append("pipeline_started"),
        on_stage_started=lambda event: (seen.append(f"started:{event.stage_id}"), _broken(event)),
        on_stage_completed=lambda event: seen.append(f"completed:{event.stage_id}"),
        on_progress=progress.append,
        on_pipeline_completed=lambda _: seen.append("pipeline_completed"),
    )
    pipeline = _pipeline(EchoProcessor("a"), EchoProcessor("b"), events=events)
    pipeline.add_stage("a", "A", "a")
    pipeline.add_stage("b", "B", "b", depends_on=["a"])

    await pipeline.execute()

    assert seen == [
        "pipeline_started",
        "started:a",
        "completed:a",
        "started:b",
        "completed:b",
        "pipeline_completed",
    ]
    assert progress == [50.0, 100.0]


@pytest.mark.asyncio
async def test_document_output_is_returned_with_run_metadata(sample_document):
    pipeline = _pipeline(EchoProcessor("a", output=sample_document))
    pipeline.add_stage("a", "A", "a")

    document = await pipeline.execute()

    assert isinstance(document, AcademicDocument)
    assert document.title == sample_document.title
    assert not document.metadata.recovered
    assert document.metadata.preservation_score == pytest.approx(1.0)
    assert document.metadata.error_summary["total_errors"] == 0
    assert pipeline.get_metrics().stages_completed == 1
    assert pipeline.get_validation_result() is None


@pytest.mark.asyncio
async def test_without_document_output_a_minimal_document_is_built():
    pipeline = _pipeline(EchoProcessor("a", output="not a document"))
    pipeline.add_stage("a", "A", "a")

    document = await pipeline.execute()

    assert document.metadata.recovered
    assert document.parts[0].sections[0].title == "Content Overview"
