from __future__ import annotations


class ExtractionError(Exception):
    """Base class for failures that end a single document's processing."""


class DocumentUnreadable(ExtractionError):
    """The PDF could not be opened, or none of its pages could be rendered."""


class ExtractionParseError(ExtractionError):
    """The model response is not a JSON array of exam-record objects."""

    def __init__(self, message: str, raw_response: str | None = None):
        super().__init__(message)
        self.raw_response = raw_response


class ExtractionServiceError(ExtractionError):
    """The vision service rejected or failed the request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ServiceAuthError(ExtractionServiceError):
    pass


class ServiceUnavailable(ExtractionServiceError):
    """Rate limiting or transient overload; the only retried failure."""


class ConfigurationError(ExtractionError):
    pass


class DocumentTimeout(ExtractionError):
    pass


class ExtractionCancelled(ExtractionError):
    pass


class BandTotalMismatch(ExtractionError):
    pass


class BatchInProgressError(RuntimeError):
    """Raised to the submitter when a batch is rejected because another is running."""
