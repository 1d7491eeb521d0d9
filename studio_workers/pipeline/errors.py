"""
Exception taxonomy for the generation pipeline.

Only the orchestrator decides whether an error is fatal. Stages either raise
one of these or convert them into a Failed stage result.
"""

from typing import Optional, Sequence

from .models import ErrorKind


class PipelineError(Exception):
    """Base class for every pipeline failure."""

    kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SettingsValidationError(PipelineError):
    """A request violates the capability matrix of its model. Permanent."""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        field: str,
        supported_values: Sequence,
        message: Optional[str] = None,
        model_id: str = "",
    ):
        self.field = field
        self.supported_values = list(supported_values)
        self.model_id = model_id
        super().__init__(
            message or f"Unsupported {field}. Supported: {', '.join(str(v) for v in self.supported_values)}"
        )


class ProviderError(PipelineError):
    """A remote generation call failed or returned nothing usable."""

    kind = ErrorKind.PROVIDER

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class UploadError(PipelineError):
    """Final persistence failed. Always fatal."""

    kind = ErrorKind.UPLOAD
