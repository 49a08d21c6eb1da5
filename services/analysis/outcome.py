"""Request outcome logging.

One structured event when an analysis request arrives and one when it ends,
correlated by request id. Successful requests log at INFO, client errors at
WARNING and server errors at ERROR.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from services.shared.errors import AnalysisError

logger = logging.getLogger("services.analysis.outcome")


@dataclass
class RequestContext:
    """Correlation data for a single request.

    Attributes:
        endpoint: Request path
        client_id: Rate-limit identity of the caller
        request_id: Caller-supplied X-Request-ID or a fresh UUID
        started: perf_counter reading at arrival
    """

    endpoint: str
    client_id: str
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started: float = field(default_factory=time.perf_counter)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)

    def as_extra(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "endpoint": self.endpoint,
            "client_id": self.client_id,
        }


class OutcomeLogger:
    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    def received(self, context: RequestContext) -> None:
        self.log.info("Analysis request received", extra=context.as_extra())

    def completed(self, context: RequestContext, summary: dict[str, Any]) -> None:
        self.log.info(
            "Analysis request completed",
            extra=context.as_extra()
            | {"status_code": 200, "duration_ms": context.elapsed_ms()}
            | summary,
        )

    def failed(self, context: RequestContext, error: AnalysisError) -> None:
        level = logging.ERROR if error.status_code >= 500 else logging.WARNING
        self.log.log(
            level,
            f"Analysis request failed: {error.message}",
            extra=context.as_extra()
            | {
                "status_code": error.status_code,
                "duration_ms": context.elapsed_ms(),
                "error_kind": error.kind,
            },
            exc_info=error.__cause__ if error.status_code >= 500 else None,
        )
