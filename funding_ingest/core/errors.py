"""
Error taxonomy for the ingestion pipeline.

Transient errors are retried by the state machine, permanent input
errors route the job to SKIPPED.
"""


class IngestError(Exception):
    """Base ingestion error."""


class TransientError(IngestError):
    """Raised for failures that may succeed on a later attempt."""


class SourceUnavailableError(TransientError):
    """Raised when a detail page or attachment cannot be fetched."""


class ConversionTimeoutError(TransientError):
    """Raised when a conversion-service call exceeds its timeout."""


class ConversionUnavailableError(TransientError):
    """Raised when the conversion service cannot be reached or rejects login."""


class PermanentInputError(IngestError):
    """Raised when retrying cannot change the outcome."""


class UnsupportedFormatError(PermanentInputError):
    """Raised for a document type no strategy can read."""


class CorruptDocumentError(PermanentInputError):
    """Raised when a document container cannot be parsed."""


class OperatorError(IngestError):
    """Raised for malformed administrative requests."""


class InvalidTransitionError(IngestError):
    """Raised when a job is asked to move along an edge that does not exist."""
