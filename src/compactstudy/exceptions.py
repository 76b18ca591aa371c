class CompactStudyError(Exception):
    """Base exception for all compactstudy errors."""
    pass


class ExtractionError(CompactStudyError):
    """Raised when content extraction fails for a source document."""

    def __init__(
        self,
        message: str,
        document_id: str = "",
        extractor: str = "",
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.document_id = document_id
        self.extractor = extractor
        self.recoverable = recoverable


class ExtractionTimeoutError(ExtractionError):
    """Raised when the extraction capability does not answer in time."""
    pass


class SchemaCoercionError(CompactStudyError):
    """Raised when an extraction response cannot be parsed at all."""

    def __init__(self, message: str, raw: object = None):
        super().__init__(message)
        self.raw = raw


class LayoutError(CompactStudyError):
    """Raised when layout configuration or calculation is invalid."""

    def __init__(
        self,
        message: str,
        code: str = "CALCULATION_FAILED",
        block_id: str = "",
        block_type: str = "",
        suggestion: str = "",
    ):
        super().__init__(message)
        self.code = code
        self.block_id = block_id
        self.block_type = block_type
        self.suggestion = suggestion


class PipelineConfigurationError(CompactStudyError):
    """Raised when the pipeline is misconfigured."""
    pass


class UnknownProcessorError(PipelineConfigurationError):
    """Raised when a stage names a processor that was never registered."""

    def __init__(self, processor_id: str):
        super().__init__(f"Unknown processor '{processor_id}'")
        self.processor_id = processor_id


class PipelineExecutionError(CompactStudyError):
    """Raised when a run produced no usable output."""
    pass


class PipelineTimeoutError(PipelineExecutionError):
    """Raised when a run exceeds its global timeout."""

    def __init__(self, message: str, timeout_ms: int):
        super().__init__(message)
        self.timeout_ms = timeout_ms


class PipelineCancelledError(PipelineExecutionError):
    """Raised when a run was cancelled before it finished."""
    pass


class ValidationFailedError(CompactStudyError):
    """Raised when the preservation audit itself cannot be computed."""
    pass


class ResourceExhaustedError(CompactStudyError):
    """Raised when a document cannot be admitted under the memory budget."""

    def __init__(self, message: str, required_mb: float = 0.0, available_mb: float = 0.0):
        super().__init__(message)
        self.required_mb = required_mb
        self.available_mb = available_mb
