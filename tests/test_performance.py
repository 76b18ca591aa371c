from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from compactstudy.config.runtime import PerformanceConfig
from compactstudy.core.layout_config import CompactLayoutConfig
from compactstudy.core.memory import MemorySnapshot
from compactstudy.core.models import AcademicDocument, AcademicSection, DocumentPart, SourceDocument, SourceFile
from compactstudy.exceptions import PipelineCancelledError, ResourceExhaustedError
from compactstudy.pipeline.performance import (
    MemoryTracker,
    PerformanceOptimizer,
    expected_chunks,
    split_payload,
)
from compactstudy.processors.base import ProcessingResult

MB = 1024 * 1024


def _document(name: str, doc_type: str = "general", size: int = 0) -> SourceDocument:
    return SourceDocument(file=SourceFile(name=name, text=f"notes for {name}", size=size), type=doc_type)


async def _echo(document: SourceDocument) -> ProcessingResult:
    await asyncio.sleep(0)
    return ProcessingResult(success=True, data=document.id)


def test_priority_prefers_small_probability_documents():
    small_general = _document("a.txt")
    probability = _document("b.txt", "probability")
    relations = _document("c.txt", "relations")
    medium = _document("d.txt", size=10 * MB)
    large = _document("e.txt", size=30 * MB)

    priority = PerformanceOptimizer.task_priority
    assert priority(probability) == 135
    assert priority(relations) == 130
    assert priority(small_general) == 120
    assert priority(medium) == 110
    assert priority(large) == 100
    assert PerformanceOptimizer.estimate_memory_mb(medium) == pytest.approx(25.0)

    order = PerformanceOptimizer().schedule([large, small_general, relations, probability])
    assert [task.document.file.name for task in order] == ["b.txt", "c.txt", "a.txt", "e.txt"]


@pytest.mark.asyncio
async def test_admission_pauses_under_memory_pressure(scripted_probe):
    probe = scripted_probe([50, 200, 200, 200, 50])
    reclaim = MagicMock(return_value=0)
    optimizer = PerformanceOptimizer(
        PerformanceConfig(max_concurrent_documents=1, memory_threshold_mb=100, memory_poll_interval_s=0.001),
        memory_probe=probe,
        reclaim=reclaim,
    )
    documents = [_document(f"doc{i}.txt") for i in range(3)]

    results = await optimizer.process_concurrently(documents, _echo)

    assert [result.data for result in results] == [document.id for document in documents]
    assert all(result.success for result in results)
    assert optimizer.stats.admission_pauses == 1
    assert optimizer.stats.memory_reclaims == 1
    reclaim.assert_called_once()
    assert optimizer.stats.peak_memory_mb == 200
    assert optimizer.stats.documents_processed == 3


@pytest.mark.asyncio
async def test_memory_wait_gives_up_after_timeout(scripted_probe):
    optimizer = PerformanceOptimizer(
        PerformanceConfig(memory_threshold_mb=100, memory_poll_interval_s=0.001, memory_wait_timeout_s=0.01),
        memory_probe=scripted_probe(idle_mb=500),
        reclaim=lambda: 0,
    )
    with pytest.raises(ResourceExhaustedError):
        await optimizer.wait_for_memory()


@pytest.mark.asyncio
async def test_failed_document_becomes_failed_result(quiet_optimizer):
    documents = [_document("ok.txt"), _document("bad.txt"), _document("fine.txt")]

    async def process(document: SourceDocument) -> ProcessingResult:
        if document.file.name == "bad.txt":
            raise ValueError("unreadable")
        return await _echo(document)

    results = await quiet_optimizer.process_concurrently(documents, process)

    assert [result.success for result in results] == [True, False, True]
    assert results[1].errors[0].source_document == documents[1].id
    assert "unreadable" in results[1].errors[0].message
    assert quiet_optimizer.stats.documents_failed == 1
    assert quiet_optimizer.stats.documents_processed == 2


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_limit(scripted_probe):
    optimizer = PerformanceOptimizer(
        PerformanceConfig(max_concurrent_documents=2, memory_poll_interval_s=0.001),
        memory_probe=scripted_probe(),
        reclaim=lambda: 0,
    )
    active = 0
    peak = 0

    async def process(document: SourceDocument) -> ProcessingResult:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.005)
        active -= 1
        return ProcessingResult(success=True)

    await optimizer.process_concurrently([_document(f"{i}.txt") for i in range(6)], process)

    assert 1 <= peak <= 2
    assert optimizer.tracker.peak_active <= 2
    assert optimizer.tracker.active == 0


@pytest.mark.asyncio
async def test_cancelled_optimizer_refuses_work(quiet_optimizer):
    quiet_optimizer.cancel()
    with pytest.raises(PipelineCancelledError):
        await quiet_optimizer.process_concurrently([_document("a.txt")], _echo)
    quiet_optimizer.reset()
    assert not quiet_optimizer.cancelled


@pytest.mark.asyncio
async def test_empty_batch_returns_no_results(quiet_optimizer):
    assert await quiet_optimizer.process_concurrently([], _echo) == []


@pytest.mark.asyncio
async def test_process_in_chunks_combines_outputs(scripted_probe):
    optimizer = PerformanceOptimizer(
        PerformanceConfig(chunk_size_mb=1.0, memory_poll_interval_s=0.001),
        memory_probe=scripted_probe(),
        reclaim=lambda: 0,
    )
    payload = "word " * 600_000
    seen = []

    async def count(chunk, index):
        seen.append(index)
        return len(chunk)

    result = await optimizer.process_in_chunks(_document("big.txt"), payload, count, sum)

    assert result.success
    assert result.data == len(payload)
    assert seen == [0, 1, 2]
    assert optimizer.stats.chunks_processed == expected_chunks(len(payload), MB) == 3
    assert result.metrics.items_processed == 3


@pytest.mark.asyncio
async def test_chunk_failure_is_reported_not_raised(quiet_optimizer):
    document = _document("a.txt")

    async def explode(chunk, index):
        raise RuntimeError("parser crashed")

    result = await quiet_optimizer.process_in_chunks(document, "short payload", explode)

    assert not result.success
    assert result.errors[0].stage == "memory_optimization"
    assert result.errors[0].source_document == document.id
    assert quiet_optimizer.tracker.active == 0


@pytest.mark.asyncio
async def test_chunk_memory_wait_is_bounded_and_reported(scripted_probe):
    optimizer = PerformanceOptimizer(
        PerformanceConfig(memory_threshold_mb=100, memory_poll_interval_s=0.001, chunk_memory_wait_timeout_s=0.01),
        memory_probe=scripted_probe(idle_mb=500),
        reclaim=lambda: 0,
    )
    document = _document("a.txt")

    async def upper(chunk, index):
        return chunk.upper()

    result = await optimizer.process_in_chunks(document, "short payload", upper)

    assert result.success
    assert result.data == ["SHORT PAYLOAD"]
    assert len(result.warnings) == 1
    assert result.warnings[0].stage == "memory_optimization"
    assert result.warnings[0].source_document == document.id
    assert optimizer.stats.admission_pauses == 1
    assert optimizer.stats.chunks_processed == 1


def test_chunk_size_is_bounded_by_available_memory():
    optimizer = PerformanceOptimizer(
        PerformanceConfig(chunk_size_mb=50),
        memory_probe=lambda: MemorySnapshot(used_mb=10, available_mb=100, percent=50),
    )
    assert optimizer.chunk_size_bytes() == 10 * MB

    starved = PerformanceOptimizer(
        PerformanceConfig(chunk_size_mb=50),
        memory_probe=lambda: MemorySnapshot(used_mb=10, available_mb=2, percent=99),
    )
    assert starved.chunk_size_bytes() == MB


def test_split_payload():
    assert split_payload("aaa bbb ccc", 4) == ["aaa ", "bbb ", "ccc"]
    assert split_payload(b"abcdef", 4) == [b"abcd", b"ef"]
    assert split_payload("", 4) == []
    with pytest.raises(ValueError):
        split_payload("abc", 0)


def test_expected_chunks():
    assert expected_chunks(0, 5) == 0
    assert expected_chunks(3, 5) == 1
    assert expected_chunks(10, 4) == 3


def test_memory_tracker_counts_active_tasks():
    tracker = MemoryTracker()
    tracker.start("a", 10.0)
    tracker.start("b", 5.0)
    tracker.finish("a")
    tracker.finish("missing")

    assert tracker.active == 1
    assert tracker.reserved_mb == pytest.approx(5.0)
    assert tracker.peak_active == 2


def test_page_count_reduction_against_standard_layout(quiet_optimizer):
    section = AcademicSection(section_number="1.1", title="Notes", content="word " * 4000)
    document = AcademicDocument(title="Notes", parts=[DocumentPart(part_number=1, title="Notes", sections=[section])])

    report = quiet_optimizer.measure_page_count_reduction(document, document, CompactLayoutConfig())

    assert report.original > report.optimized
    assert report.reduction_percentage == pytest.approx(
        (report.original - report.optimized) / report.original * 100
    )
    assert quiet_optimizer.stats.page_count_reduction is report


def test_memory_snapshot_payload_is_rounded():
    snapshot = MemorySnapshot(used_mb=12.3456, available_mb=100.0, percent=42.26)
    assert snapshot.to_payload() == {"used_mb": 12.35, "available_mb": 100.0, "percent": 42.3}
