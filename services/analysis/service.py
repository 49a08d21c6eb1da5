"""Analysis pipeline: governance, extraction and reconciliation for one request.

Order of operations:

1. Validate the payload (no cost incurred on rejection)
2. Rate limit the caller
3. Check the AI feature switch
4. Render the document (PDF first page or inline image)
5. Extract a draft, bounded by the request timeout
6. Record the invocation in the usage ledger, whatever its outcome
   (cancellation included); the ledger reports advisory ceiling breaches
7. Reconcile the draft (invoices only; skipped if the caller disconnected)

Every request is logged on arrival and completion by the OutcomeLogger.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from prometheus_client import Counter, Histogram

from services.analysis.outcome import OutcomeLogger, RequestContext
from services.analysis.schema import ContractAnalysisResult, to_contract_terms
from services.extraction.base import ExtractionOutcome, ExtractionProvider
from services.governance.rate_limit import RateLimiter
from services.governance.usage import UsageLedger, UsageOperation
from services.intake.normalizer import (
    ContractAnalysisRequest,
    ImageSource,
    InvoiceAnalysisRequest,
    NormalizedDocument,
    RequestNormalizer,
)
from services.reconciliation.engine import ReconciliationEngine
from services.reconciliation.models import AnalysisResult
from services.shared.config import Settings
from services.shared.errors import (
    AnalysisError,
    ClientDisconnected,
    ExtractionFailure,
    ExtractionTimeout,
    FeatureDisabled,
    InternalError,
)

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")
ExtractionT = TypeVar("ExtractionT", bound=ExtractionOutcome)
DisconnectCheck = Callable[[], Awaitable[bool]]

analysis_requests_total = Counter(
    "analysis_requests_total",
    "Analysis requests by operation and outcome",
    ["operation", "outcome"],
)

analysis_duration_seconds = Histogram(
    "analysis_duration_seconds",
    "End-to-end analysis duration in seconds",
    ["operation"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Extraction provider call duration in seconds",
    ["provider"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

discrepancies_total = Counter(
    "discrepancies_total",
    "Discrepancies found by reconciliation",
    ["type", "severity"],
)


class AnalysisService:
    """Runs invoice and contract analyses against injected collaborators.

    All mutable state (rate-limit windows, usage records) lives on the
    collaborators passed in, so separate instances are fully isolated.
    """

    def __init__(
        self,
        settings: Settings,
        provider: ExtractionProvider,
        rate_limiter: RateLimiter,
        ledger: UsageLedger,
        engine: ReconciliationEngine,
        normalizer: RequestNormalizer,
        outcome_logger: OutcomeLogger | None = None,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.ledger = ledger
        self.engine = engine
        self.normalizer = normalizer
        self.outcome_logger = outcome_logger or OutcomeLogger()

    async def analyze_invoice(
        self,
        payload: Mapping[str, Any] | Any,
        context: RequestContext,
        is_disconnected: DisconnectCheck | None = None,
    ) -> AnalysisResult:
        """Analyze an invoice document against optional contract terms.

        Raises:
            AnalysisError: Any subclass, already logged as a failed outcome
        """

        async def run() -> AnalysisResult:
            request = self.normalizer.parse(payload, InvoiceAnalysisRequest)
            document = await self._admit(request, context)

            extraction = await self._extract(
                self.provider.extract_invoice,
                document.image_url,
                UsageOperation.INVOICE_ANALYSIS,
                request.timeout_seconds,
            )
            await self._ensure_connected(is_disconnected, context)

            if extraction.draft is None:
                raise ExtractionFailure("Document extraction failed", details="No data extracted")
            result = self.engine.reconcile(
                extraction.draft,
                terms=request.contract_terms,
                vendor_info=request.vendor_info,
                processing_time_ms=context.elapsed_ms(),
            )
            for discrepancy in result.discrepancies:
                discrepancies_total.labels(
                    type=discrepancy.type.value, severity=discrepancy.severity.value
                ).inc()
            return result

        result = await self._observe(UsageOperation.INVOICE_ANALYSIS, context, run())
        self.outcome_logger.completed(
            context,
            {
                "invoice_number": result.extracted_data.invoice_number
                if result.extracted_data
                else None,
                "confidence": round(result.confidence, 4),
                "discrepancy_count": len(result.discrepancies),
                "compliance_status": result.compliance_status.value,
            },
        )
        return result

    async def analyze_contract(
        self,
        payload: Mapping[str, Any] | Any,
        context: RequestContext,
        is_disconnected: DisconnectCheck | None = None,
    ) -> ContractAnalysisResult:
        """Extract vendor and contract data from a contract document.

        Raises:
            AnalysisError: Any subclass, already logged as a failed outcome
        """

        async def run() -> ContractAnalysisResult:
            request = self.normalizer.parse(payload, ContractAnalysisRequest)
            document = await self._admit(request, context)

            extraction = await self._extract(
                self.provider.extract_contract,
                document.image_url,
                UsageOperation.CONTRACT_PARSING,
                request.timeout_seconds,
            )
            await self._ensure_connected(is_disconnected, context)

            draft = extraction.draft
            if draft is None:
                raise ExtractionFailure("Document extraction failed", details="No data extracted")
            return ContractAnalysisResult(
                success=True,
                confidence=draft.confidence,
                processing_time=context.elapsed_ms(),
                extracted_vendor_data=draft.vendor,
                extracted_contract_data=draft.contract,
                contract_terms=to_contract_terms(draft),
            )

        result = await self._observe(UsageOperation.CONTRACT_PARSING, context, run())
        self.outcome_logger.completed(
            context,
            {
                "vendor_name": result.extracted_vendor_data.vendor_name,
                "confidence": round(result.confidence, 4),
                "pricing_entries": len(result.extracted_contract_data.pricing),
                "has_contract_terms": result.contract_terms is not None,
            },
        )
        return result

    async def _observe(
        self,
        operation: UsageOperation,
        context: RequestContext,
        work: Awaitable[ResultT],
    ) -> ResultT:
        """Run ``work`` with outcome logging and metrics.

        Unanticipated exceptions are converted to InternalError.
        """
        self.outcome_logger.received(context)
        outcome = "success"
        try:
            return await work
        except AnalysisError as e:
            outcome = e.kind
            self.outcome_logger.failed(context, e)
            raise
        except asyncio.CancelledError:
            outcome = "cancelled"
            logger.info("Analysis request cancelled", extra=context.as_extra())
            raise
        except Exception as e:
            outcome = InternalError.kind
            error = InternalError("Internal server error")
            error.__cause__ = e
            self.outcome_logger.failed(context, error)
            raise error from e
        finally:
            analysis_requests_total.labels(operation=operation.value, outcome=outcome).inc()
            analysis_duration_seconds.labels(operation=operation.value).observe(
                time.perf_counter() - context.started
            )

    async def _admit(
        self, request: ImageSource, context: RequestContext
    ) -> NormalizedDocument:
        """Apply governance gates, then render the document."""
        self.rate_limiter.check(context.client_id)

        if not self.settings.ai_features_enabled:
            raise FeatureDisabled("AI features are currently disabled")

        return await asyncio.to_thread(self.normalizer.canonicalize, request)

    async def _extract(
        self,
        call: Callable[[str], ExtractionT],
        image_url: str,
        operation: UsageOperation,
        timeout_seconds: float | None,
    ) -> ExtractionT:
        """Invoke the provider in a worker thread and ledger the attempt.

        A cancelled call is ledgered as a failure before the cancellation
        propagates; the worker thread itself runs to completion.

        Raises:
            ExtractionTimeout: If the provider did not answer in time
            ExtractionFailure: If the provider reported an error
        """
        timeout = timeout_seconds or self.settings.extraction_timeout_seconds
        start = time.perf_counter()

        def elapsed_ms() -> int:
            return int((time.perf_counter() - start) * 1000)

        try:
            result = await asyncio.wait_for(asyncio.to_thread(call, image_url), timeout=timeout)
        except TimeoutError as e:
            self.ledger.record(operation, 0, self.provider.model_name, False, elapsed_ms())
            raise ExtractionTimeout(
                f"Extraction did not complete within {timeout:g} seconds"
            ) from e
        except asyncio.CancelledError:
            self.ledger.record(operation, 0, self.provider.model_name, False, elapsed_ms())
            raise
        except Exception as e:
            self.ledger.record(operation, 0, self.provider.model_name, False, elapsed_ms())
            logger.exception(f"Extraction provider {self.provider.provider_name} raised")
            raise ExtractionFailure("Extraction provider error") from e
        finally:
            extraction_duration_seconds.labels(provider=self.provider.provider_name).observe(
                time.perf_counter() - start
            )

        succeeded = result.success and result.draft is not None
        self.ledger.record(operation, result.tokens_used, result.model, succeeded, elapsed_ms())

        if result.timed_out:
            raise ExtractionTimeout(result.error or "Extraction provider timed out")
        if not succeeded:
            raise ExtractionFailure(
                "Document extraction failed", details=result.error or "No data extracted"
            )
        return result

    @staticmethod
    async def _ensure_connected(
        is_disconnected: DisconnectCheck | None, context: RequestContext
    ) -> None:
        if is_disconnected is not None and await is_disconnected():
            logger.info(
                "Client disconnected after extraction; skipping reconciliation",
                extra=context.as_extra(),
            )
            raise ClientDisconnected("Client disconnected before analysis completed")
