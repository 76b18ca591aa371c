"""Explicit success/failure values passed between processors and the orchestrator."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar, Union

from .models import ErrorType, ProcessingError, Severity

T = TypeVar("T")


@dataclass(frozen=True)
class RecoverableError:
    """Failure description the orchestrator can apply recovery policy to."""

    message: str
    stage: str = ""
    type: ErrorType = ErrorType.SYSTEM
    severity: Severity = Severity.HIGH
    recoverable: bool = True
    document_id: Optional[str] = None
    cause: Optional[BaseException] = field(default=None, compare=False)

    @classmethod
    def from_exception(cls, exc: BaseException, stage: str = "") -> "RecoverableError":
        recoverable = getattr(exc, "recoverable", True)
        error_type = ErrorType.EXTRACTION if exc.__class__.__name__.startswith("Extraction") else ErrorType.SYSTEM
        return cls(
            message=str(exc) or exc.__class__.__name__,
            stage=stage,
            type=error_type,
            severity=Severity.HIGH if recoverable else Severity.CRITICAL,
            recoverable=bool(recoverable),
            document_id=getattr(exc, "document_id", None) or None,
            cause=exc,
        )

    @classmethod
    def from_processing_error(cls, error: ProcessingError) -> "RecoverableError":
        return cls(
            message=error.message,
            stage=error.stage,
            type=error.type,
            severity=error.severity,
            recoverable=error.recoverable,
            document_id=error.source_document,
        )

    def to_processing_error(self) -> ProcessingError:
        return ProcessingError(
            stage=self.stage,
            type=self.type,
            severity=self.severity,
            message=self.message,
            recoverable=self.recoverable,
            source_document=self.document_id,
        )


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: RecoverableError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


__all__ = ["Err", "Ok", "RecoverableError", "Result"]
