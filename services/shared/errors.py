"""Error taxonomy for the analysis pipeline.

Every failure that reaches a caller is an AnalysisError subclass carrying a
machine-readable kind, the HTTP status it maps to, and whether the caller may
retry. Reconciliation findings are never raised; they are returned as
discrepancies.
"""

from typing import Any


class AnalysisError(Exception):
    """Base exception for all analysis pipeline errors."""

    kind = "analysis_error"
    status_code = 500
    retriable = False

    def __init__(self, message: str, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "error": self.message,
            "kind": self.kind,
            "retriable": self.retriable,
        }
        if self.details is not None:
            body["details"] = self.details
        return body


class SchemaValidation(AnalysisError):
    """Structurally invalid request payload."""

    kind = "schema_validation"
    status_code = 400


class ConversionFailure(AnalysisError):
    """A valid document could not be rasterized (e.g. a corrupt PDF)."""

    kind = "conversion_failure"
    status_code = 400


class RateLimitExceeded(AnalysisError):
    """Client identity exhausted its request window."""

    kind = "rate_limit_exceeded"
    status_code = 429
    retriable = True

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class FeatureDisabled(AnalysisError):
    """AI analysis is switched off operationally."""

    kind = "feature_disabled"
    status_code = 503


class ExtractionFailure(AnalysisError):
    """The extraction provider returned an error."""

    kind = "extraction_failure"
    status_code = 502
    retriable = True


class ExtractionTimeout(ExtractionFailure):
    """The extraction provider did not answer within the timeout."""

    kind = "extraction_timeout"


class DataIntegrityError(AnalysisError):
    """Extracted draft violates structural invariants and cannot be compared."""

    kind = "data_integrity"
    status_code = 422


class InternalError(AnalysisError):
    """Unanticipated fault."""

    kind = "internal_error"
    status_code = 500


class ClientDisconnected(AnalysisError):
    """The caller went away before the analysis finished."""

    kind = "client_disconnected"
    status_code = 499
