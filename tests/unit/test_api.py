"""Unit tests for the reconciliation API.

Tests cover:
- Health, readiness and per-endpoint status checks
- Error body shape and HTTP status mapping
- Rate limiting with Retry-After
- Request id propagation
- Prometheus metrics endpoint
"""

from unittest.mock import patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from services.api.main import REQUEST_ID_HEADER, build_analysis_service, create_app
from services.shared.config import Settings
from services.shared.errors import InternalError

INVOICE = {"imageUrl": "https://example.com/invoice.jpg"}


@pytest.fixture
def settings() -> Settings:
    return Settings(mock_mode=True, rate_limit_requests=3, environment="development")


@pytest.fixture
def client(settings: Settings) -> TestClient:
    """Create test client with an isolated service graph."""
    return TestClient(create_app(settings))


def test_health_check(client: TestClient) -> None:
    """Test health check endpoint."""
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "contract-reconciliation-service"
    assert "version" in data


def test_readiness_check(client: TestClient) -> None:
    response = client.get("/ready")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["ready"] is True


def test_readiness_when_features_disabled() -> None:
    client = TestClient(create_app(Settings(mock_mode=True, ai_features_enabled=False)))

    assert client.get("/ready").json()["ready"] is False


@pytest.mark.parametrize(
    ("path", "name"),
    [
        ("/analyze/invoice", "invoice-analysis"),
        ("/analyze/contract-vendor", "contract-vendor-analysis"),
    ],
)
def test_analysis_status(client: TestClient, path: str, name: str) -> None:
    response = client.get(path)

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["service"] == name
    assert data["status"] == "healthy"
    assert data["mockMode"] is True
    assert data["configured"] is True
    assert "timestamp" in data


def test_analyze_invoice(client: TestClient) -> None:
    response = client.post("/analyze/invoice", json=INVOICE)

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["success"] is True
    assert data["complianceStatus"] == "compliant"
    assert data["extractedData"]["invoiceNumber"] == "INV-2024-001234"
    assert data["extractedData"]["totalAmount"] == 2847.5
    assert isinstance(data["processingTime"], int)


def test_analyze_contract(client: TestClient) -> None:
    response = client.post(
        "/analyze/contract-vendor", json={"imageUrl": "https://example.com/contract.jpg"}
    )

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["extractedVendorData"]["vendorName"] == "Sysco Food Services"
    assert data["contractTerms"]["paymentTerms"] == "Net 30"
    assert data["contractTerms"]["pricing"][0]["price"] == 42.0


class TestErrorResponses:
    def test_missing_document_source(self, client: TestClient) -> None:
        response = client.post("/analyze/invoice", json={"fileName": "invoice.jpg"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["kind"] == "schema_validation"
        assert data["retriable"] is False
        assert data["error"] == "Invalid request data"
        assert isinstance(data["details"], list)

    def test_empty_body(self, client: TestClient) -> None:
        response = client.post("/analyze/invoice", content=b"")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Request body is required"

    def test_malformed_json(self, client: TestClient) -> None:
        response = client.post(
            "/analyze/invoice",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Request body must be valid JSON"

    def test_feature_disabled(self) -> None:
        client = TestClient(create_app(Settings(mock_mode=True, ai_features_enabled=False)))

        response = client.post("/analyze/invoice", json=INVOICE)

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["kind"] == "feature_disabled"

    def test_rate_limit_sets_retry_after(self, client: TestClient) -> None:
        headers = {"X-Forwarded-For": "198.51.100.9"}
        for _ in range(3):
            assert client.post("/analyze/invoice", json=INVOICE, headers=headers).status_code == 200

        response = client.post("/analyze/invoice", json=INVOICE, headers=headers)

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response.json()["retriable"] is True
        assert int(response.headers["Retry-After"]) >= 1

    def test_rate_limit_is_per_client(self, client: TestClient) -> None:
        for _ in range(3):
            client.post("/analyze/invoice", json=INVOICE, headers={"X-Forwarded-For": "10.0.0.1"})

        response = client.post(
            "/analyze/invoice", json=INVOICE, headers={"X-Forwarded-For": "10.0.0.2"}
        )

        assert response.status_code == status.HTTP_200_OK

    def test_internal_error_message_in_development(self, settings: Settings) -> None:
        service = build_analysis_service(settings)
        client = TestClient(create_app(settings, service))
        error = InternalError("Internal server error")
        error.__cause__ = RuntimeError("database on fire")

        with patch.object(service, "analyze_invoice", side_effect=error):
            response = client.post("/analyze/invoice", json=INVOICE)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["message"] == "database on fire"

    def test_internal_error_message_hidden_in_production(self) -> None:
        settings = Settings(mock_mode=True, environment="production")
        service = build_analysis_service(settings)
        client = TestClient(create_app(settings, service))
        error = InternalError("Internal server error")
        error.__cause__ = RuntimeError("database on fire")

        with patch.object(service, "analyze_invoice", side_effect=error):
            response = client.post("/analyze/invoice", json=INVOICE)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert "message" not in response.json()


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.post(
        "/analyze/invoice", json=INVOICE, headers={REQUEST_ID_HEADER: "abc-123"}
    )

    assert response.headers[REQUEST_ID_HEADER] == "abc-123"


def test_request_id_is_generated(client: TestClient) -> None:
    response = client.get("/health")

    assert len(response.headers[REQUEST_ID_HEADER]) == 36


def test_usage_summary(client: TestClient) -> None:
    client.post("/analyze/invoice", json=INVOICE)

    response = client.get("/analyze/usage")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["today"]["totalRequests"] == 1
    assert data["today"]["totalTokens"] == 1500
    assert len(data["last7Days"]) == 7
    assert data["limits"]["dailyRequests"] == 1000


def test_metrics_endpoint(client: TestClient) -> None:
    """Test Prometheus metrics endpoint."""
    client.post("/analyze/invoice", json=INVOICE)

    response = client.get("/metrics")

    assert response.status_code == status.HTTP_200_OK
    assert "text/plain" in response.headers["content-type"]
    assert "http_requests_total" in response.text
    assert "analysis_requests_total" in response.text
    assert "ai_tokens_total" in response.text
