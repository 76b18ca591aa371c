"""
Dependency-ordered stage scheduler.

Stages form a DAG. A stage becomes ready once every stage it depends on has
completed, and ready stages run concurrently up to ``max_concurrent_stages``.
Processors report outcomes; this module alone decides whether to retry,
recover, fail, or skip dependents. The run always ends with an
``AcademicDocument`` (possibly partial and flagged ``recovered``) unless it
times out, is cancelled, or every stage failed with recovery disabled.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..config.runtime import PipelineConfig
from ..core.error_summary import ErrorSummary
from ..core.events import PipelineEvents, StageEvent
from ..core.models import (
    AcademicDocument,
    DocumentType,
    ErrorType,
    ExtractedDocument,
    ProcessingError,
    ProcessingStatus,
    ProcessingWarning,
    Severity,
    SourceDocument,
    SourceFile,
)
from ..core.result import Err, Ok, RecoverableError, Result
from ..exceptions import (
    PipelineCancelledError,
    PipelineConfigurationError,
    PipelineExecutionError,
    PipelineTimeoutError,
    ValidationFailedError,
)
from ..processors.base import ContentProcessor, ProcessingResult, ProcessorRegistry, StageInput
from ..processors.structure import DEFAULT_TITLE, minimal_document, organize_documents
from .preservation import ContentPreservationValidator, ContentValidationResult, merge_extracted

LOGGER = logging.getLogger(__name__)


class StageStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RECOVERING = "recovering"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL = {StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED, StageStatus.CANCELLED}
UNSUCCESSFUL = {StageStatus.FAILED, StageStatus.SKIPPED, StageStatus.CANCELLED}


class PipelinePhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PipelineStage:
    id: str
    name: str
    processor_id: str
    config: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    status: StageStatus = StageStatus.QUEUED
    attempts: int = 0
    failures: int = 0
    recovered: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[RecoverableError] = None
    result: Optional[ProcessingResult] = None

    @property
    def elapsed_ms(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at) * 1000

    def reset(self) -> None:
        self.status = StageStatus.QUEUED
        self.attempts = self.failures = 0
        self.recovered = False
        self.started_at = self.completed_at = None
        self.error = None
        self.result = None


@dataclass
class PipelineStatus:
    phase: PipelinePhase = PipelinePhase.IDLE
    current_stages: List[str] = field(default_factory=list)
    completed_stages: List[str] = field(default_factory=list)
    failed_stages: List[str] = field(default_factory=list)
    skipped_stages: List[str] = field(default_factory=list)
    recovered_stages: List[str] = field(default_factory=list)
    total_stages: int = 0
    total_documents: int = 0
    progress: float = 0.0
    elapsed_ms: float = 0.0


@dataclass
class PipelineMetrics:
    stages_completed: int = 0
    stages_failed: int = 0
    stages_recovered: int = 0
    documents_processed: int = 0
    documents_failed: int = 0
    total_processing_time_ms: float = 0.0
    average_quality_score: float = 0.0
    average_preservation_score: float = 0.0
    total_errors: int = 0
    total_warnings: int = 0
    _samples: int = field(default=0, repr=False)

    def record(self, result: ProcessingResult) -> None:
        """Fold one stage result into the running averages."""
        self._samples += 1
        n = self._samples
        self.average_quality_score += (result.metrics.quality_score - self.average_quality_score) / n
        self.average_preservation_score += (result.metrics.content_preserved - self.average_preservation_score) / n

    def to_dict(self) -> Dict[str, Any]:
        payload = dataclasses.asdict(self)
        payload.pop("_samples", None)
        return payload


class ProcessingPipeline:
    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        registry: Optional[ProcessorRegistry] = None,
        events: Optional[PipelineEvents] = None,
        validator: Optional[ContentPreservationValidator] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.registry = registry or ProcessorRegistry()
        self.events = events or PipelineEvents()
        self.validator = validator
        self._stages: Dict[str, PipelineStage] = {}
        self._documents: List[SourceDocument] = []
        self._outputs: Dict[str, Any] = {}
        self._errors: List[ProcessingError] = []
        self._warnings: List[ProcessingWarning] = []
        self._metrics = PipelineMetrics()
        self._status = PipelineStatus()
        self._summary: Optional[ErrorSummary] = None
        self._validation: Optional[ContentValidationResult] = None
        self._cancelled = False
        self._cancel_event: Optional[asyncio.Event] = None
        self._started: Optional[float] = None

    # ------------------------------------------------------------------ setup

    def register_processor(self, processor: ContentProcessor) -> None:
        self.registry.register(processor)

    def add_stage(
        self,
        stage_id: str,
        name: str,
        processor_id: str,
        config: Optional[Mapping[str, Any]] = None,
        depends_on: Sequence[str] = (),
    ) -> PipelineStage:
        if stage_id in self._stages:
            raise PipelineConfigurationError(f"Stage '{stage_id}' already exists")
        # Resolve now so a typo fails at build time, not mid-run.
        self.registry.get(processor_id)
        stage = PipelineStage(
            id=stage_id,
            name=name,
            processor_id=processor_id,
            config=dict(config or {}),
            depends_on=list(depends_on),
        )
        self._stages[stage_id] = stage
        return stage

    def add_source_document(self, file: SourceFile, type: DocumentType = "general") -> str:
        document = SourceDocument(file=file, type=type)
        self._documents.append(document)
        return document.id

    @property
    def documents(self) -> List[SourceDocument]:
        return list(self._documents)

    @property
    def stages(self) -> List[PipelineStage]:
        return list(self._stages.values())

    def cancel(self) -> None:
        """Request cooperative cancellation; must be called on the event loop thread."""
        self._cancelled = True
        if self._cancel_event is not None:
            self._cancel_event.set()

    # ------------------------------------------------------------------ queries

    def get_status(self) -> PipelineStatus:
        status = self._status
        status.current_stages = [s.id for s in self._stages.values() if s.status in (StageStatus.RUNNING, StageStatus.RECOVERING)]
        status.completed_stages = [s.id for s in self._stages.values() if s.status == StageStatus.COMPLETED]
        status.failed_stages = [s.id for s in self._stages.values() if s.status == StageStatus.FAILED]
        status.skipped_stages = [s.id for s in self._stages.values() if s.status == StageStatus.SKIPPED]
        status.recovered_stages = [s.id for s in self._stages.values() if s.recovered]
        status.total_stages = len(self._stages)
        status.total_documents = len(self._documents)
        finished = sum(1 for s in self._stages.values() if s.status in TERMINAL)
        status.progress = finished / len(self._stages) * 100 if self._stages else 0.0
        if self._started is not None:
            status.elapsed_ms = (perf_counter() - self._started) * 1000
        return dataclasses.replace(status, current_stages=list(status.current_stages))

    def get_metrics(self) -> PipelineMetrics:
        return dataclasses.replace(self._metrics)

    def get_errors(self) -> List[ProcessingError]:
        return list(self._errors)

    def get_warnings(self) -> List[ProcessingWarning]:
        return list(self._warnings)

    def get_error_summary(self) -> ErrorSummary:
        if self._summary is not None:
            return self._summary
        return self._build_summary(None)

    def get_validation_result(self) -> Optional[ContentValidationResult]:
        return self._validation

    # ------------------------------------------------------------------ validation

    def validate_pipeline(self) -> List[str]:
        """Return stage ids in a dependency-respecting order or raise."""
        if not self._documents:
            raise PipelineConfigurationError("No source documents added to the pipeline")
        if not self._stages:
            raise PipelineConfigurationError("No stages configured")
        for stage in self._stages.values():
            for dependency in stage.depends_on:
                if dependency not in self._stages:
                    raise PipelineConfigurationError(f"Stage '{stage.id}' depends on unknown stage '{dependency}'")
            self.registry.get(stage.processor_id)

        indegree = {stage_id: len(set(stage.depends_on)) for stage_id, stage in self._stages.items()}
        order: List[str] = []
        ready = [stage_id for stage_id, count in indegree.items() if count == 0]
        while ready:
            current = ready.pop(0)
            order.append(current)
            for stage_id, stage in self._stages.items():
                if current in stage.depends_on:
                    indegree[stage_id] -= 1
                    if indegree[stage_id] == 0:
                        ready.append(stage_id)
        if len(order) != len(self._stages):
            cyclic = sorted(stage_id for stage_id, count in indegree.items() if count > 0)
            raise PipelineConfigurationError(f"Dependency cycle between stages: {', '.join(cyclic)}")
        return order

    # ------------------------------------------------------------------ execution

    async def execute(self) -> AcademicDocument:
        self.validate_pipeline()
        self._reset_run()
        self._status.phase = PipelinePhase.RUNNING
        self._started = perf_counter()
        LOGGER.info("Starting pipeline: %d stage(s), %d document(s)", len(self._stages), len(self._documents))
        self.events.emit("pipeline_started", self.get_status())

        try:
            await asyncio.wait_for(self._run_stages(), timeout=self.config.timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise self._timeout_error() from None
        except PipelineCancelledError as exc:
            self._status.phase = PipelinePhase.CANCELLED
            self._metrics.total_processing_time_ms = (perf_counter() - self._started) * 1000
            LOGGER.warning("Pipeline cancelled")
            self.events.emit("pipeline_cancelled", exc)
            raise

        self._finish_metrics()
        stages = list(self._stages.values())
        if not self.config.enable_recovery and all(stage.status in UNSUCCESSFUL for stage in stages):
            self._status.phase = PipelinePhase.FAILED
            exc = PipelineExecutionError(f"All {len(stages)} stage(s) failed")
            self._summary = self._build_summary(None)
            self.events.emit("pipeline_failed", exc)
            raise exc

        document = self._assemble()
        self._status.phase = PipelinePhase.COMPLETED
        LOGGER.info(
            "Pipeline finished in %.0f ms: %d completed, %d failed, %d recovered",
            self._metrics.total_processing_time_ms,
            self._metrics.stages_completed,
            self._metrics.stages_failed,
            self._metrics.stages_recovered,
        )
        self.events.emit("pipeline_completed", document)
        return document

    def _reset_run(self) -> None:
        for stage in self._stages.values():
            stage.reset()
        self._outputs = {}
        self._errors = []
        self._warnings = []
        self._metrics = PipelineMetrics()
        self._status = PipelineStatus(total_documents=len(self._documents), total_stages=len(self._stages))
        self._summary = None
        self._validation = None
        self._cancel_event = asyncio.Event()
        if self._cancelled:
            self._cancel_event.set()

    def _timeout_error(self) -> PipelineTimeoutError:
        for stage in self._stages.values():
            if stage.status in (StageStatus.RUNNING, StageStatus.RECOVERING):
                stage.status = StageStatus.FAILED
                stage.completed_at = perf_counter()
        message = f"Pipeline timed out after {self.config.timeout_ms} ms"
        self._errors.append(
            ProcessingError(
                stage="pipeline",
                type=ErrorType.SYSTEM,
                severity=Severity.CRITICAL,
                message=message,
                recoverable=False,
            )
        )
        self._status.phase = PipelinePhase.FAILED
        self._finish_metrics()
        self._summary = self._build_summary(None)
        exc = PipelineTimeoutError(message, timeout_ms=self.config.timeout_ms)
        LOGGER.error(message)
        self.events.emit("pipeline_failed", exc)
        return exc

    async def _run_stages(self) -> None:
        pending: List[str] = list(self._stages)
        running: Dict[asyncio.Task, str] = {}
        assert self._cancel_event is not None
        cancel_waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            while pending or running:
                if self._cancelled:
                    self._cancel_running(running)
                    raise PipelineCancelledError("Pipeline execution was cancelled")

                # Repeat until stable: skipping one stage can block a stage already visited.
                skipped = True
                while skipped:
                    skipped = False
                    for stage_id in list(pending):
                        stage = self._stages[stage_id]
                        blocked = [dep for dep in stage.depends_on if self._stages[dep].status in UNSUCCESSFUL]
                        if blocked:
                            pending.remove(stage_id)
                            self._skip(stage, blocked)
                            skipped = True

                for stage_id in list(pending):
                    if len(running) >= self.config.max_concurrent_stages:
                        break
                    stage = self._stages[stage_id]
                    if all(self._stages[dep].status == StageStatus.COMPLETED for dep in stage.depends_on):
                        pending.remove(stage_id)
                        running[asyncio.ensure_future(self._execute_stage(stage))] = stage_id

                if not running:
                    if pending:
                        raise PipelineExecutionError(f"Stages can never start: {', '.join(pending)}")
                    break

                done, _ = await asyncio.wait([*running, cancel_waiter], return_when=asyncio.FIRST_COMPLETED)
                if self._cancelled:
                    continue
                finished = [task for task in running if task in done]
                finished.sort(key=lambda task: list(self._stages).index(running[task]))
                for task in finished:
                    stage = self._stages[running.pop(task)]
                    self._apply_outcome(stage, task.result())
        finally:
            cancel_waiter.cancel()
            leftover = [task for task in running if not task.done()]
            for task in leftover:
                task.cancel()
            if leftover:
                await asyncio.gather(*leftover, return_exceptions=True)

    def _cancel_running(self, running: Dict[asyncio.Task, str]) -> None:
        for task, stage_id in list(running.items()):
            task.cancel()
            stage = self._stages[stage_id]
            stage.status = StageStatus.CANCELLED
            stage.completed_at = perf_counter()
        for stage in self._stages.values():
            if stage.status == StageStatus.QUEUED:
                stage.status = StageStatus.CANCELLED

    def _skip(self, stage: PipelineStage, blocked: Sequence[str]) -> None:
        stage.status = StageStatus.SKIPPED
        self._metrics.stages_failed += 1
        message = f"Skipped because dependency {', '.join(blocked)} did not complete"
        LOGGER.warning("Stage '%s' %s", stage.id, message.lower())
        self.events.emit("stage_failed", StageEvent(stage.id, stage.name, stage.status.value, error=message))
        self._emit_progress()

    def _stage_input(self, stage: PipelineStage) -> StageInput:
        return StageInput(
            documents=self._documents,
            upstream={dep: self._outputs[dep] for dep in stage.depends_on if dep in self._outputs},
        )

    async def _execute_stage(self, stage: PipelineStage) -> Result[ProcessingResult]:
        processor = self.registry.get(stage.processor_id)
        stage_input = self._stage_input(stage)
        stage.status = StageStatus.RUNNING
        stage.started_at = perf_counter()
        LOGGER.info("Stage '%s' started (%s)", stage.id, processor.processor_id)
        self.events.emit("stage_started", StageEvent(stage.id, stage.name, stage.status.value))

        outcome: Result[ProcessingResult] = Err(RecoverableError("Stage did not run", stage=stage.id))
        for attempt in range(1, self.config.max_stage_attempts + 1):
            stage.attempts = attempt
            outcome = await self._attempt(processor, stage, stage_input)
            if isinstance(outcome, Ok):
                return outcome
            stage.failures += 1
            LOGGER.warning("Stage '%s' attempt %d failed: %s", stage.id, attempt, outcome.error.message)
            if not outcome.error.recoverable or self._cancelled:
                break
            if attempt < self.config.max_stage_attempts and self.config.retry_delay_ms:
                await asyncio.sleep(self.config.retry_delay_ms / 1000)

        assert isinstance(outcome, Err)
        error = outcome.error
        if (
            self.config.enable_recovery
            and stage.failures < self.config.failure_threshold
            and error.recoverable
            and processor.can_recover
            and not self._cancelled
        ):
            return await self._recover(processor, stage, stage_input, error)
        return outcome

    async def _attempt(
        self,
        processor: ContentProcessor,
        stage: PipelineStage,
        stage_input: StageInput,
    ) -> Result[ProcessingResult]:
        validation = processor.validate(stage_input, stage.config)
        if not validation.passed:
            error = RecoverableError(
                message=f"Input validation failed: {validation.details}",
                stage=stage.id,
                type=ErrorType.CONTEXT_MISSING,
                severity=Severity.MEDIUM,
            )
            self._errors.append(error.to_processing_error())
            return Err(error)
        try:
            result = await processor.process(stage_input, stage.config)
        except Exception as exc:
            LOGGER.debug("Processor '%s' raised", processor.processor_id, exc_info=True)
            error = RecoverableError.from_exception(exc, stage=stage.id)
            self._errors.append(error.to_processing_error())
            return Err(error)
        if result.success:
            return Ok(result)

        self._errors.extend(result.errors)
        self._warnings.extend(result.warnings)
        primary = next((e for e in result.errors if e.recoverable), result.errors[0] if result.errors else None)
        if primary is None:
            error = RecoverableError(f"Processor '{processor.processor_id}' reported failure", stage=stage.id)
        else:
            error = dataclasses.replace(RecoverableError.from_processing_error(primary), stage=stage.id)
        return Err(error)

    async def _recover(
        self,
        processor: ContentProcessor,
        stage: PipelineStage,
        stage_input: StageInput,
        error: RecoverableError,
    ) -> Result[ProcessingResult]:
        stage.status = StageStatus.RECOVERING
        LOGGER.info("Recovering stage '%s' after: %s", stage.id, error.message)
        try:
            result = await processor.recover(error, stage_input, stage.config)
        except Exception as exc:
            LOGGER.warning("Recovery of stage '%s' raised: %s", stage.id, exc)
            failure = RecoverableError.from_exception(exc, stage=stage.id)
            self._errors.append(failure.to_processing_error())
            return Err(failure)
        if not result.success:
            self._errors.extend(result.errors)
            self._warnings.extend(result.warnings)
            return Err(error)
        stage.recovered = True
        return Ok(result)

    def _apply_outcome(self, stage: PipelineStage, outcome: Result[ProcessingResult]) -> None:
        stage.completed_at = perf_counter()
        if isinstance(outcome, Ok):
            result = outcome.value
            stage.status = StageStatus.COMPLETED
            stage.result = result
            self._outputs[stage.id] = result.data
            self._errors.extend(result.errors)
            self._warnings.extend(result.warnings)
            self._metrics.stages_completed += 1
            self._metrics.record(result)
            event = StageEvent(
                stage.id,
                stage.name,
                stage.status.value,
                elapsed_ms=stage.elapsed_ms,
                metrics=dataclasses.asdict(result.metrics),
            )
            if stage.recovered:
                self._metrics.stages_recovered += 1
                LOGGER.info("Stage '%s' recovered in %.0f ms", stage.id, stage.elapsed_ms or 0.0)
                self.events.emit("stage_recovered", event)
            else:
                LOGGER.info("Stage '%s' completed in %.0f ms", stage.id, stage.elapsed_ms or 0.0)
                self.events.emit("stage_completed", event)
        else:
            stage.status = StageStatus.FAILED
            stage.error = outcome.error
            self._metrics.stages_failed += 1
            LOGGER.error("Stage '%s' failed: %s", stage.id, outcome.error.message)
            self.events.emit(
                "stage_failed",
                StageEvent(stage.id, stage.name, stage.status.value, elapsed_ms=stage.elapsed_ms, error=outcome.error.message),
            )
        self._emit_progress()

    def _emit_progress(self) -> None:
        self.events.emit("progress", self.get_status().progress)

    def _finish_metrics(self) -> None:
        metrics = self._metrics
        if self._started is not None:
            metrics.total_processing_time_ms = (perf_counter() - self._started) * 1000
        metrics.documents_processed = sum(1 for doc in self._documents if doc.processing_status == ProcessingStatus.COMPLETED)
        metrics.documents_failed = sum(1 for doc in self._documents if doc.processing_status == ProcessingStatus.FAILED)
        metrics.total_errors = len(self._errors)
        metrics.total_warnings = len(self._warnings)

    # ------------------------------------------------------------------ assembly

    def _latest_extracted(self) -> Optional[List[ExtractedDocument]]:
        latest: Optional[List[ExtractedDocument]] = None
        for stage in self._stages.values():
            output = self._outputs.get(stage.id)
            if stage.status == StageStatus.COMPLETED and isinstance(output, list) and output:
                if all(isinstance(item, ExtractedDocument) for item in output):
                    latest = output
        if latest is None:
            return None
        order = {doc.id: index for index, doc in enumerate(self._documents)}
        return sorted(latest, key=lambda doc: order.get(doc.document_id, len(order)))

    def _assemble(self) -> AcademicDocument:
        """Pick the best available document and attach run metadata to it."""
        title = self.config.title or DEFAULT_TITLE
        document: Optional[AcademicDocument] = None
        for stage in self._stages.values():
            output = self._outputs.get(stage.id)
            if stage.status == StageStatus.COMPLETED and isinstance(output, AcademicDocument):
                document = output

        extracted = self._latest_extracted()
        recovered = any(stage.recovered for stage in self._stages.values())
        if document is None:
            recovered = True
            if extracted:
                LOGGER.warning("No stage produced a document; organizing extracted content directly")
                document = organize_documents(extracted, title)
            else:
                LOGGER.warning("No usable stage output; building a minimal fallback document")
                document = minimal_document(self._documents, title, recovered=True)

        preservation_score = self._metrics.average_preservation_score
        if self.validator is not None and extracted:
            try:
                self._validation = self.validator.validate_content_preservation(merge_extracted(extracted), document)
            except ValidationFailedError as exc:
                LOGGER.warning("Preservation audit failed: %s", exc)
                self._warnings.append(
                    ProcessingWarning(
                        stage="preservation-audit",
                        type=ErrorType.QUALITY_DEGRADATION,
                        severity=Severity.MEDIUM,
                        message=f"Preservation audit could not run: {exc}",
                    )
                )
                self._metrics.total_warnings = len(self._warnings)
            else:
                preservation_score = self._validation.preservation_score

        self._summary = self._build_summary(preservation_score)
        metadata = document.metadata.model_copy(
            update={
                "recovered": document.metadata.recovered or recovered,
                "failed_stages": list(self._summary.failed_stages),
                "preservation_score": preservation_score,
                "error_summary": self._summary.model_dump(mode="json"),
            }
        )
        return document.model_copy(update={"metadata": metadata})

    def _build_summary(self, preservation_score: Optional[float]) -> ErrorSummary:
        validation = self._validation
        return ErrorSummary.build(
            self._errors,
            self._warnings,
            recovered_stages=[s.id for s in self._stages.values() if s.recovered],
            failed_stages=[s.id for s in self._stages.values() if s.status in UNSUCCESSFUL],
            preservation_score=preservation_score,
            issues=validation.issues if validation else (),
            extra_recommendations=[rec.action for rec in validation.recommendations] if validation else (),
        )


__all__ = [
    "PipelineMetrics",
    "PipelinePhase",
    "PipelineStage",
    "PipelineStatus",
    "ProcessingPipeline",
    "StageStatus",
]
