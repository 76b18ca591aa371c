"""
Bounded, memory-aware document scheduling.

``PerformanceOptimizer`` runs per-document work concurrently under
``max_concurrent_documents`` and refuses to admit a new document while the
memory probe reports usage above ``memory_threshold_mb``. Admission waits
(after a reclaim pass) instead of dropping work, so every queued document is
eventually processed and results come back in input order.
"""
from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..config.runtime import PerformanceConfig
from ..core.density import estimate_page_count
from ..core.layout_config import CompactLayoutConfig, standard_layout_config
from ..core.memory import MemoryProbe, MemorySnapshot, flush_caches, memory_snapshot
from ..core.models import (
    AcademicDocument,
    ErrorType,
    ProcessingError,
    ProcessingWarning,
    Severity,
    SourceDocument,
)
from ..core.result import RecoverableError
from ..exceptions import PipelineCancelledError, ResourceExhaustedError
from ..processors.base import ProcessingMetrics, ProcessingResult

LOGGER = logging.getLogger(__name__)

_MB = 1024 * 1024

DocumentFn = Callable[[SourceDocument], Awaitable[ProcessingResult]]
ChunkFn = Callable[[Union[str, bytes], int], Awaitable[Any]]
CombineFn = Callable[[List[Any]], Any]


@dataclass
class ProcessingTask:
    index: int
    document: SourceDocument
    priority: int
    estimated_memory_mb: float
    status: str = "queued"
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


@dataclass
class PageCountReduction:
    original: int
    optimized: int
    reduction_percentage: float


@dataclass
class OptimizerStats:
    documents_processed: int = 0
    documents_failed: int = 0
    admission_pauses: int = 0
    memory_reclaims: int = 0
    chunks_processed: int = 0
    peak_memory_mb: float = 0.0
    average_processing_time_ms: float = 0.0
    parallel_efficiency: float = 0.0
    page_count_reduction: Optional[PageCountReduction] = None


class MemoryTracker:
    """Count of in-flight documents and their reserved memory.

    Written only from task start/finish hooks; every update holds the lock so
    increments and decrements are atomic.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, float] = {}
        self._reserved_mb = 0.0
        self.peak_active = 0

    def start(self, task_id: str, reserved_mb: float = 0.0) -> None:
        with self._lock:
            self._active[task_id] = reserved_mb
            self._reserved_mb += reserved_mb
            self.peak_active = max(self.peak_active, len(self._active))

    def finish(self, task_id: str) -> None:
        with self._lock:
            reserved = self._active.pop(task_id, 0.0)
            self._reserved_mb = max(0.0, self._reserved_mb - reserved)

    @property
    def active(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def reserved_mb(self) -> float:
        with self._lock:
            return self._reserved_mb


class PerformanceOptimizer:
    def __init__(
        self,
        config: Optional[PerformanceConfig] = None,
        *,
        memory_probe: Optional[MemoryProbe] = None,
        reclaim: Optional[Callable[[], Any]] = None,
        tracker: Optional[MemoryTracker] = None,
    ) -> None:
        self.config = config or PerformanceConfig()
        self.memory_probe: MemoryProbe = memory_probe or memory_snapshot
        self.reclaim = reclaim or flush_caches
        self.tracker = tracker or MemoryTracker()
        self.stats = OptimizerStats()
        self._cancelled = False

    # ------------------------------------------------------------------ control

    def cancel(self) -> None:
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    # ------------------------------------------------------------------ scoring

    @staticmethod
    def task_priority(document: SourceDocument) -> int:
        priority = 100
        size = document.file.size
        if size < 5 * _MB:
            priority += 20
        elif size < 20 * _MB:
            priority += 10
        if document.type == "probability":
            priority += 15
        elif document.type == "relations":
            priority += 10
        return priority

    @staticmethod
    def estimate_memory_mb(document: SourceDocument) -> float:
        return document.file.size * 2.5 / _MB

    def schedule(self, documents: Sequence[SourceDocument]) -> List[ProcessingTask]:
        """Order documents highest priority first, then smallest footprint."""
        tasks = [
            ProcessingTask(
                index=index,
                document=document,
                priority=self.task_priority(document),
                estimated_memory_mb=self.estimate_memory_mb(document),
            )
            for index, document in enumerate(documents)
        ]
        tasks.sort(key=lambda task: (-task.priority, task.estimated_memory_mb, task.index))
        return tasks

    # ------------------------------------------------------------------ memory

    def _snapshot(self) -> MemorySnapshot:
        snapshot = self.memory_probe()
        self.stats.peak_memory_mb = max(self.stats.peak_memory_mb, snapshot.used_mb)
        return snapshot

    def over_threshold(self, snapshot: Optional[MemorySnapshot] = None) -> bool:
        snapshot = snapshot or self._snapshot()
        return snapshot.used_mb > self.config.memory_threshold_mb

    async def wait_for_memory(self, *, use_percent: bool = False, timeout_s: Optional[float] = None) -> None:
        """Block until the probe reports usage under the configured limits.

        ``timeout_s`` overrides ``memory_wait_timeout_s``; with neither set the
        wait is unbounded.
        """

        def _pressure(snapshot: MemorySnapshot) -> bool:
            if use_percent and snapshot.percent > self.config.high_memory_percent:
                return True
            return self.over_threshold(snapshot)

        snapshot = self._snapshot()
        if not _pressure(snapshot):
            return
        self.stats.admission_pauses += 1
        self.reclaim()
        self.stats.memory_reclaims += 1
        LOGGER.info(
            "Memory at %.1f MB exceeds %.1f MB; pausing admission",
            snapshot.used_mb,
            self.config.memory_threshold_mb,
        )
        started = perf_counter()
        limit = timeout_s if timeout_s is not None else self.config.memory_wait_timeout_s
        while _pressure(self._snapshot()):
            if limit is not None and perf_counter() - started > limit:
                raise ResourceExhaustedError(
                    f"Memory did not drop below {self.config.memory_threshold_mb} MB within {limit}s",
                    required_mb=self.config.memory_threshold_mb,
                    available_mb=snapshot.available_mb,
                )
            await asyncio.sleep(self.config.memory_poll_interval_s)
        LOGGER.info("Memory back under threshold; resuming admission")

    def chunk_size_bytes(self) -> int:
        available = self._snapshot().available_mb * _MB
        size = min(self.config.chunk_size_mb * _MB, available * 0.1)
        return int(max(size, _MB))

    # ------------------------------------------------------------------ processing

    async def process_concurrently(
        self,
        documents: Sequence[SourceDocument],
        process_fn: DocumentFn,
    ) -> List[ProcessingResult]:
        """Run ``process_fn`` over ``documents`` and return results in input order."""
        if not documents:
            return []
        tasks = self.schedule(documents)
        results: List[Optional[ProcessingResult]] = [None] * len(documents)
        semaphore = asyncio.Semaphore(self.config.max_concurrent_documents)
        running: List[asyncio.Task] = []
        started = perf_counter()

        async def _run(task: ProcessingTask) -> None:
            task_id = f"task_{task.document.id}_{task.index}"
            self.tracker.start(task_id, task.estimated_memory_mb)
            task.status = "processing"
            task.started_at = perf_counter()
            try:
                results[task.index] = await self._run_one(task, process_fn)
            finally:
                task.finished_at = perf_counter()
                self.tracker.finish(task_id)
                semaphore.release()

        try:
            for task in tasks:
                await semaphore.acquire()
                if self._cancelled:
                    semaphore.release()
                    raise PipelineCancelledError("Document processing cancelled before admission")
                try:
                    await self.wait_for_memory()
                except BaseException:
                    semaphore.release()
                    raise
                running.append(asyncio.create_task(_run(task)))
        finally:
            if running:
                await asyncio.gather(*running, return_exceptions=True)

        final: List[ProcessingResult] = [result for result in results if result is not None]
        self._record_batch(final, perf_counter() - started)
        return final

    async def _run_one(self, task: ProcessingTask, process_fn: DocumentFn) -> ProcessingResult:
        begin = perf_counter()
        try:
            result = await process_fn(task.document)
        except Exception as exc:
            LOGGER.warning("Task for %s failed: %s", task.document.id, exc)
            error = RecoverableError.from_exception(exc, stage="concurrent_processing")
            task.status = "failed"
            return ProcessingResult(
                success=False,
                errors=[error.to_processing_error().model_copy(update={"source_document": task.document.id})],
                metrics=ProcessingMetrics(processing_time_ms=(perf_counter() - begin) * 1000),
            )
        task.status = "completed" if result.success else "failed"
        return result

    def _record_batch(self, results: List[ProcessingResult], elapsed_s: float) -> None:
        processed = sum(1 for result in results if result.success)
        self.stats.documents_processed += processed
        self.stats.documents_failed += len(results) - processed
        times = [result.metrics.processing_time_ms for result in results]
        if times:
            self.stats.average_processing_time_ms = sum(times) / len(times)
            sequential = sum(times) / 1000
            self.stats.parallel_efficiency = sequential / elapsed_s if elapsed_s > 0 else 1.0

    async def process_in_chunks(
        self,
        document: SourceDocument,
        payload: Union[str, bytes],
        chunk_fn: ChunkFn,
        combine_fn: Optional[CombineFn] = None,
    ) -> ProcessingResult:
        """Process ``payload`` in bounded chunks and combine once all succeed."""
        begin = perf_counter()
        task_id = f"chunked_{document.id}"
        chunk_size = self.chunk_size_bytes()
        chunks = split_payload(payload, chunk_size)
        outputs: List[Any] = []
        warnings: List[ProcessingWarning] = []
        wait_limit = self.config.memory_wait_timeout_s or self.config.chunk_memory_wait_timeout_s
        self.tracker.start(task_id, self.estimate_memory_mb(document))
        try:
            for index, chunk in enumerate(chunks):
                if self._cancelled:
                    raise PipelineCancelledError(f"Chunked processing of {document.id} cancelled at chunk {index}")
                try:
                    await self.wait_for_memory(use_percent=True, timeout_s=wait_limit)
                except ResourceExhaustedError as exc:
                    LOGGER.warning("Processing chunk %d of %s under memory pressure: %s", index, document.id, exc)
                    warnings.append(
                        ProcessingWarning(
                            stage="memory_optimization",
                            type=ErrorType.SYSTEM,
                            severity=Severity.MEDIUM,
                            message=f"Chunk {index} started after waiting {wait_limit}s for memory",
                            recovery_action="continued under memory pressure",
                            source_document=document.id,
                        )
                    )
                outputs.append(await chunk_fn(chunk, index))
                self.stats.chunks_processed += 1
        except (PipelineCancelledError, ResourceExhaustedError):
            raise
        except Exception as exc:
            LOGGER.warning("Chunk processing failed for %s: %s", document.id, exc)
            return ProcessingResult(
                success=False,
                errors=[
                    ProcessingError(
                        stage="memory_optimization",
                        type=ErrorType.SYSTEM,
                        severity=Severity.HIGH,
                        message=str(exc) or exc.__class__.__name__,
                        recoverable=True,
                        source_document=document.id,
                    )
                ],
                metrics=ProcessingMetrics(processing_time_ms=(perf_counter() - begin) * 1000),
            )
        finally:
            self.tracker.finish(task_id)

        combined = combine_fn(outputs) if combine_fn is not None else outputs
        return ProcessingResult(
            success=True,
            data=combined,
            warnings=warnings,
            metrics=ProcessingMetrics(
                processing_time_ms=(perf_counter() - begin) * 1000,
                memory_usage_mb=self.stats.peak_memory_mb,
                content_preserved=1.0,
                quality_score=0.95,
                items_processed=len(outputs),
            ),
        )

    # ------------------------------------------------------------------ reporting

    def measure_page_count_reduction(
        self,
        original: AcademicDocument,
        optimized: AcademicDocument,
        config: CompactLayoutConfig,
    ) -> PageCountReduction:
        """Compare ``optimized`` under ``config`` with ``original`` in a standard layout."""
        original_pages = estimate_page_count(original, standard_layout_config())
        optimized_pages = estimate_page_count(optimized, config)
        reduction = (original_pages - optimized_pages) / original_pages * 100 if original_pages else 0.0
        report = PageCountReduction(original=original_pages, optimized=optimized_pages, reduction_percentage=reduction)
        self.stats.page_count_reduction = report
        return report


def split_payload(payload: Union[str, bytes], chunk_size: int) -> List[Union[str, bytes]]:
    """Cut ``payload`` into pieces of at most ``chunk_size`` units.

    Text is cut at the last newline (or space) inside each window when one
    exists so that words survive the split.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not payload:
        return []
    if isinstance(payload, bytes):
        return [payload[i : i + chunk_size] for i in range(0, len(payload), chunk_size)]
    chunks: List[Union[str, bytes]] = []
    start = 0
    while start < len(payload):
        end = min(len(payload), start + chunk_size)
        if end < len(payload):
            cut = max(payload.rfind("\n", start, end), payload.rfind(" ", start, end))
            if cut > start:
                end = cut + 1
        chunks.append(payload[start:end])
        start = end
    return chunks


def expected_chunks(payload_size: int, chunk_size: int) -> int:
    return max(1, math.ceil(payload_size / chunk_size)) if payload_size else 0


__all__ = [
    "MemoryTracker",
    "OptimizerStats",
    "PageCountReduction",
    "PerformanceOptimizer",
    "ProcessingTask",
    "expected_chunks",
    "split_payload",
]
