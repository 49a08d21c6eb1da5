"""Unit tests for the analysis pipeline orchestration."""

import asyncio
import logging
import time
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from prometheus_client import REGISTRY

from services.analysis.outcome import RequestContext
from services.analysis.schema import to_contract_terms
from services.analysis.service import AnalysisService
from services.extraction.base import InvoiceExtraction
from services.extraction.mock_provider import (
    MockExtractionProvider,
    mock_contract,
    mock_invoice,
)
from services.governance.rate_limit import RateLimiter
from services.governance.usage import UsageLedger
from services.intake.normalizer import RequestNormalizer
from services.reconciliation.engine import ReconciliationEngine
from services.shared.config import Settings
from services.shared.errors import (
    ClientDisconnected,
    DataIntegrityError,
    ExtractionFailure,
    ExtractionTimeout,
    FeatureDisabled,
    InternalError,
    RateLimitExceeded,
    SchemaValidation,
)

INVOICE_URL = "https://example.com/invoice.jpg"


class NoPdfRasterizer:
    def render_first_page(self, pdf_bytes: bytes) -> bytes:
        raise AssertionError("no PDF expected")


class ScriptedProvider(MockExtractionProvider):
    """Mock provider whose invoice call can be delayed, failed or replaced."""

    def __init__(
        self,
        settings: Settings,
        result: InvoiceExtraction | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(settings)
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    def extract_invoice(self, image_url: str) -> InvoiceExtraction:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result or super().extract_invoice(image_url)


@pytest.fixture
def settings() -> Settings:
    return Settings(mock_mode=True, rate_limit_requests=10, extraction_timeout_seconds=5)


def build_service(
    settings: Settings, provider: MockExtractionProvider | None = None
) -> AnalysisService:
    return AnalysisService(
        settings=settings,
        provider=provider or MockExtractionProvider(settings),
        rate_limiter=RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_ms),
        ledger=UsageLedger.from_settings(settings),
        engine=ReconciliationEngine.from_settings(settings),
        normalizer=RequestNormalizer(rasterizer=NoPdfRasterizer()),
    )


def context() -> RequestContext:
    return RequestContext(endpoint="/analyze/invoice", client_id="203.0.113.7")


def invoice_payload(**extra: Any) -> dict[str, Any]:
    terms = to_contract_terms(mock_contract())
    assert terms is not None
    return {
        "imageUrl": INVOICE_URL,
        "contractTerms": terms.model_dump(mode="json", by_alias=True),
        **extra,
    }


class TestInvoiceAnalysis:
    def test_reconciles_mock_invoice(self, settings: Settings) -> None:
        service = build_service(settings)

        result = asyncio.run(service.analyze_invoice(invoice_payload(), context()))

        assert result.success is True
        types = {d.type.value for d in result.discrepancies}
        assert {"price", "unauthorized_item"} <= types
        price = next(d for d in result.discrepancies if d.type.value == "price")
        assert price.field == "lineItems[0].unitPrice"
        assert result.compliance_status.value != "compliant"

        records = service.ledger.records()
        assert len(records) == 1
        assert records[0].tokens_used == 1500
        assert records[0].model == "mock"
        assert records[0].success is True

    def test_without_contract_terms(self, settings: Settings) -> None:
        service = build_service(settings)

        result = asyncio.run(service.analyze_invoice({"imageUrl": INVOICE_URL}, context()))

        assert result.compliance_status.value == "compliant"
        assert result.discrepancies == ()

    def test_missing_document_is_rejected_without_cost(self, settings: Settings) -> None:
        """A request with neither imageUrl nor imageData never reaches the ledger."""
        service = build_service(settings)

        with pytest.raises(SchemaValidation):
            asyncio.run(service.analyze_invoice({"fileName": "x.jpg"}, context()))

        assert service.ledger.records() == []
        assert len(service.rate_limiter) == 0

    def test_rate_limit_stops_before_extraction(self, settings: Settings) -> None:
        """The 11th request in a window of 10 touches neither the ledger nor the engine."""
        provider = ScriptedProvider(settings)
        service = build_service(settings, provider)

        async def run_all() -> None:
            for _ in range(10):
                await service.analyze_invoice(invoice_payload(), context())
            await service.analyze_invoice(invoice_payload(), context())

        with patch.object(
            service.engine, "reconcile", wraps=service.engine.reconcile
        ) as reconcile:
            with pytest.raises(RateLimitExceeded) as exc_info:
                asyncio.run(run_all())

        assert exc_info.value.retry_after > 0
        assert reconcile.call_count == 10
        assert provider.calls == 10
        assert len(service.ledger.records()) == 10

    def test_feature_switch(self) -> None:
        settings = Settings(mock_mode=True, ai_features_enabled=False)
        provider = ScriptedProvider(settings)
        service = build_service(settings, provider)

        with pytest.raises(FeatureDisabled) as exc_info:
            asyncio.run(service.analyze_invoice(invoice_payload(), context()))

        assert exc_info.value.status_code == 503
        assert provider.calls == 0
        assert service.ledger.records() == []

    def test_failed_extraction_is_ledgered(self, settings: Settings) -> None:
        failed = InvoiceExtraction(
            success=False, error="model refused", tokens_used=321, model="mock", provider="mock"
        )
        service = build_service(settings, ScriptedProvider(settings, result=failed))

        with pytest.raises(ExtractionFailure) as exc_info:
            asyncio.run(service.analyze_invoice(invoice_payload(), context()))

        assert exc_info.value.details == "model refused"
        assert exc_info.value.retriable is True
        records = service.ledger.records()
        assert [(r.tokens_used, r.success) for r in records] == [(321, False)]

    def test_provider_exception_is_ledgered(self, settings: Settings) -> None:
        provider = ScriptedProvider(settings, error=RuntimeError("socket closed"))
        service = build_service(settings, provider)

        with pytest.raises(ExtractionFailure, match="Extraction provider error"):
            asyncio.run(service.analyze_invoice(invoice_payload(), context()))

        assert [r.success for r in service.ledger.records()] == [False]

    def test_timeout_is_ledgered(self, settings: Settings) -> None:
        provider = ScriptedProvider(settings, delay=0.3)
        service = build_service(settings, provider)

        with pytest.raises(ExtractionTimeout) as exc_info:
            asyncio.run(service.analyze_invoice(invoice_payload(timeoutSeconds=0.05), context()))

        assert exc_info.value.status_code == 502
        assert "0.05 seconds" in exc_info.value.message
        records = service.ledger.records()
        assert len(records) == 1
        assert records[0].tokens_used == 0
        assert records[0].success is False

    def test_cancelled_extraction_is_ledgered(self, settings: Settings) -> None:
        """A caller that goes away mid-extraction still leaves a failed ledger entry."""
        service = build_service(settings, ScriptedProvider(settings, delay=0.5))
        labels = {"operation": "invoice_analysis", "outcome": "cancelled"}
        before = REGISTRY.get_sample_value("analysis_requests_total", labels) or 0.0

        async def cancel_during_extraction() -> None:
            task = asyncio.create_task(service.analyze_invoice(invoice_payload(), context()))
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(cancel_during_extraction())

        records = service.ledger.records()
        assert [(r.tokens_used, r.success) for r in records] == [(0, False)]
        assert REGISTRY.get_sample_value("analysis_requests_total", labels) == before + 1

    def test_provider_reported_timeout(self, settings: Settings) -> None:
        timed_out = InvoiceExtraction(
            success=False, error="upstream timed out", timed_out=True, model="mock", provider="mock"
        )
        service = build_service(settings, ScriptedProvider(settings, result=timed_out))

        with pytest.raises(ExtractionTimeout):
            asyncio.run(service.analyze_invoice(invoice_payload(), context()))

    def test_disconnect_skips_reconciliation(self, settings: Settings) -> None:
        service = build_service(settings)
        is_disconnected = AsyncMock(return_value=True)

        with patch.object(service.engine, "reconcile") as reconcile:
            with pytest.raises(ClientDisconnected) as exc_info:
                asyncio.run(service.analyze_invoice(invoice_payload(), context(), is_disconnected))

        reconcile.assert_not_called()
        assert exc_info.value.status_code == 499
        assert len(service.ledger.records()) == 1

    def test_success_without_draft_is_extraction_failure(self, settings: Settings) -> None:
        empty = InvoiceExtraction(success=True, draft=None, model="mock", provider="mock")
        service = build_service(settings, ScriptedProvider(settings, result=empty))

        with pytest.raises(ExtractionFailure) as exc_info:
            asyncio.run(service.analyze_invoice(invoice_payload(), context()))

        assert exc_info.value.details == "No data extracted"
        assert [r.success for r in service.ledger.records()] == [False]

    def test_out_of_range_field_confidence_is_integrity_error(self, settings: Settings) -> None:
        broken = mock_invoice().model_copy(update={"field_confidence": {"totalAmount": -0.2}})
        result = InvoiceExtraction(success=True, draft=broken, model="mock", provider="mock")
        service = build_service(settings, ScriptedProvider(settings, result=result))

        with pytest.raises(DataIntegrityError) as exc_info:
            asyncio.run(service.analyze_invoice(invoice_payload(), context()))

        assert exc_info.value.status_code == 422

    def test_daily_limit_breach_reported_once_per_request(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        settings = Settings(mock_mode=True, daily_request_limit=1)
        service = build_service(settings)
        for _ in range(2):
            service.ledger.record("invoice_analysis", 0, "mock", True, 1)
        caplog.clear()
        labels = {"limit": "daily_requests"}
        before = REGISTRY.get_sample_value("usage_limit_breaches_total", labels) or 0.0

        with caplog.at_level(logging.WARNING, logger="services.governance.usage"):
            asyncio.run(service.analyze_invoice(invoice_payload(), context()))

        warnings = [r for r in caplog.records if r.getMessage() == "Daily request limit exceeded"]
        assert len(warnings) == 1
        assert REGISTRY.get_sample_value("usage_limit_breaches_total", labels) == before + 1

    def test_integrity_error_propagates(self, settings: Settings) -> None:
        broken = mock_invoice().model_copy(update={"total_amount": None})
        result = InvoiceExtraction(success=True, draft=broken, model="mock", provider="mock")
        service = build_service(settings, ScriptedProvider(settings, result=result))

        with pytest.raises(DataIntegrityError) as exc_info:
            asyncio.run(service.analyze_invoice(invoice_payload(), context()))

        assert exc_info.value.status_code == 422

    def test_unexpected_error_becomes_internal_error(self, settings: Settings) -> None:
        service = build_service(settings)

        with patch.object(service.engine, "reconcile", side_effect=KeyError("boom")):
            with pytest.raises(InternalError) as exc_info:
                asyncio.run(service.analyze_invoice(invoice_payload(), context()))

        assert isinstance(exc_info.value.__cause__, KeyError)
        assert exc_info.value.message == "Internal server error"


class TestContractAnalysis:
    def test_extracts_contract_and_terms(self, settings: Settings) -> None:
        service = build_service(settings)

        result = asyncio.run(
            service.analyze_contract({"imageUrl": "https://example.com/contract.jpg"}, context())
        )

        assert result.success is True
        assert result.extracted_vendor_data.vendor_name == "Sysco Food Services"
        assert result.contract_terms is not None
        assert len(result.contract_terms.pricing) == 4
        records = service.ledger.records()
        assert records[0].operation.value == "contract_parsing"

    def test_shares_rate_limit_with_invoices(self) -> None:
        settings = Settings(mock_mode=True, rate_limit_requests=1)
        service = build_service(settings)

        async def run_both() -> None:
            await service.analyze_invoice({"imageUrl": INVOICE_URL}, context())
            await service.analyze_contract({"imageUrl": INVOICE_URL}, context())

        with pytest.raises(RateLimitExceeded):
            asyncio.run(run_both())


class TestOutcomeLogging:
    def test_success_logs_received_and_completed(
        self, settings: Settings, caplog: pytest.LogCaptureFixture
    ) -> None:
        service = build_service(settings)
        ctx = context()

        with caplog.at_level(logging.INFO, logger="services.analysis.outcome"):
            asyncio.run(service.analyze_invoice(invoice_payload(), ctx))

        outcome = [r for r in caplog.records if r.name == "services.analysis.outcome"]
        assert [r.getMessage() for r in outcome] == [
            "Analysis request received",
            "Analysis request completed",
        ]
        assert all(r.request_id == ctx.request_id for r in outcome)
        assert outcome[1].status_code == 200
        assert outcome[1].discrepancy_count >= 2

    def test_client_error_logs_warning(
        self, settings: Settings, caplog: pytest.LogCaptureFixture
    ) -> None:
        service = build_service(settings)

        with caplog.at_level(logging.INFO, logger="services.analysis.outcome"):
            with pytest.raises(SchemaValidation):
                asyncio.run(service.analyze_invoice({}, context()))

        failed = caplog.records[-1]
        assert failed.levelno == logging.WARNING
        assert failed.error_kind == "schema_validation"
        assert failed.status_code == 400

    def test_server_error_logs_error(
        self, settings: Settings, caplog: pytest.LogCaptureFixture
    ) -> None:
        service = build_service(settings, ScriptedProvider(settings, error=RuntimeError("x")))

        with caplog.at_level(logging.INFO, logger="services.analysis.outcome"):
            with pytest.raises(ExtractionFailure):
                asyncio.run(service.analyze_invoice(invoice_payload(), context()))

        failed = [r for r in caplog.records if r.name == "services.analysis.outcome"][-1]
        assert failed.levelno == logging.ERROR
        assert failed.status_code == 502
