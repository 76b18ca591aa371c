"""Callback interface for pipeline lifecycle events.

Events are advisory: a listener that raises is logged and ignored so that
observability hooks can never change the outcome of a run.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .logging_setup import get_logger

LOGGER = logging.getLogger(__name__)


@dataclass
class StageEvent:
    stage_id: str
    name: str
    status: str
    elapsed_ms: Optional[float] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


Listener = Callable[[Any], None]


@dataclass
class PipelineEvents:
    on_pipeline_started: Optional[Listener] = None
    on_stage_started: Optional[Listener] = None
    on_stage_completed: Optional[Listener] = None
    on_stage_failed: Optional[Listener] = None
    on_stage_recovered: Optional[Listener] = None
    on_progress: Optional[Listener] = None
    on_pipeline_completed: Optional[Listener] = None
    on_pipeline_failed: Optional[Listener] = None
    on_pipeline_cancelled: Optional[Listener] = None

    def emit(self, event: str, payload: Any = None) -> None:
        listener = getattr(self, f"on_{event}", None)
        if listener is None:
            return
        try:
            listener(payload)
        except Exception:
            LOGGER.exception("Event listener for '%s' raised", event)


def logging_events(logger_name: str = "compactstudy.pipeline") -> PipelineEvents:
    """Build listeners that turn lifecycle events into structured log lines."""
    log = get_logger(logger_name)

    def _stage(kind: str) -> Listener:
        def _handler(event: StageEvent) -> None:
            log.info(
                f"stage_{kind}",
                stage=event.stage_id,
                name=event.name,
                status=event.status,
                elapsed_ms=event.elapsed_ms,
                error=event.error,
            )

        return _handler

    return PipelineEvents(
        on_pipeline_started=lambda status: log.info("pipeline_started", documents=getattr(status, "total_documents", None)),
        on_stage_started=_stage("started"),
        on_stage_completed=_stage("completed"),
        on_stage_failed=_stage("failed"),
        on_stage_recovered=_stage("recovered"),
        on_progress=lambda progress: log.debug("progress_updated", progress=progress),
        on_pipeline_completed=lambda document: log.info("pipeline_completed", title=getattr(document, "title", None)),
        on_pipeline_failed=lambda error: log.error("pipeline_failed", error=getattr(error, "message", str(error))),
        on_pipeline_cancelled=lambda _: log.warning("pipeline_cancelled"),
    )


__all__ = ["Listener", "PipelineEvents", "StageEvent", "logging_events"]
