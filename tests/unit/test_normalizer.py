"""Unit tests for request validation and document canonicalization."""

import base64
import io

import pytest
from PIL import Image

from services.intake.normalizer import (
    ContractAnalysisRequest,
    InvoiceAnalysisRequest,
    RequestNormalizer,
)
from services.shared.errors import ConversionFailure, SchemaValidation

FAKE_PNG = b"\x89PNG rendered page"


class FakeRasterizer:
    """Records calls instead of invoking poppler."""

    def __init__(self, result: bytes = FAKE_PNG, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[bytes] = []

    def render_first_page(self, pdf_bytes: bytes) -> bytes:
        self.calls.append(pdf_bytes)
        if self.error is not None:
            raise self.error
        return self.result


def png_base64() -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color="white").save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


@pytest.fixture
def rasterizer() -> FakeRasterizer:
    return FakeRasterizer()


@pytest.fixture
def normalizer(rasterizer: FakeRasterizer) -> RequestNormalizer:
    return RequestNormalizer(rasterizer=rasterizer, max_image_bytes=1024)


class TestParse:
    def test_missing_document_source(self, normalizer: RequestNormalizer) -> None:
        """A request with neither imageUrl nor imageData is rejected."""
        with pytest.raises(SchemaValidation) as exc_info:
            normalizer.parse({"fileName": "invoice.jpg"}, InvoiceAnalysisRequest)

        assert exc_info.value.status_code == 400
        assert exc_info.value.retriable is False
        assert "Either imageUrl or imageData is required" in str(exc_info.value.details)

    def test_both_sources_rejected(self, normalizer: RequestNormalizer) -> None:
        payload = {"imageUrl": "https://example.com/a.jpg", "imageData": png_base64()}

        with pytest.raises(SchemaValidation) as exc_info:
            normalizer.parse(payload, InvoiceAnalysisRequest)

        assert "not both" in str(exc_info.value.details)

    @pytest.mark.parametrize(
        "url",
        [
            "ftp://example.com/invoice.jpg",
            "http://example.com/invoice.jpg",
            "https://",
            "https://example.com/in voice.jpg",
            "data:image/png,notbase64",
        ],
    )
    def test_rejects_unusable_urls(self, normalizer: RequestNormalizer, url: str) -> None:
        with pytest.raises(SchemaValidation):
            normalizer.parse({"imageUrl": url}, InvoiceAnalysisRequest)

    @pytest.mark.parametrize(
        "url",
        [
            "https://example.com/invoice.jpg",
            "http://localhost:8080/invoice.png",
            "http://127.0.0.1/invoice.png",
        ],
    )
    def test_accepts_supported_urls(self, normalizer: RequestNormalizer, url: str) -> None:
        request = normalizer.parse({"imageUrl": url}, ContractAnalysisRequest)

        assert request.image_url == url

    def test_unsupported_image_type(self, normalizer: RequestNormalizer) -> None:
        payload = {"imageData": png_base64(), "imageType": "image/tiff"}

        with pytest.raises(SchemaValidation):
            normalizer.parse(payload, InvoiceAnalysisRequest)

    def test_non_object_payload(self, normalizer: RequestNormalizer) -> None:
        with pytest.raises(SchemaValidation, match="JSON object"):
            normalizer.parse(["imageUrl"], InvoiceAnalysisRequest)

    def test_invalid_contract_terms_reports_details(self, normalizer: RequestNormalizer) -> None:
        payload = {
            "imageUrl": "https://example.com/invoice.jpg",
            "contractTerms": {
                "paymentTerms": "Net 30",
                "pricing": [{"item": "Bread", "price": -1, "unit": "loaf"}],
                "effectiveDate": "2024-01-01",
            },
        }

        with pytest.raises(SchemaValidation) as exc_info:
            normalizer.parse(payload, InvoiceAnalysisRequest)

        locations = [tuple(error["loc"]) for error in exc_info.value.details]
        assert ("contractTerms", "pricing", 0, "price") in locations

    def test_parses_camel_case_contract_terms(self, normalizer: RequestNormalizer) -> None:
        payload = {
            "imageUrl": "https://example.com/invoice.jpg",
            "contractTerms": {
                "paymentTerms": "Net 30",
                "pricing": [{"item": "Bread", "price": 14.10, "unit": "loaf"}],
                "taxRate": 8.5,
                "effectiveDate": "2024-01-01",
            },
            "vendorInfo": {"name": "Sysco", "id": "V-1"},
        }

        request = normalizer.parse(payload, InvoiceAnalysisRequest)

        assert request.contract_terms is not None
        assert request.contract_terms.pricing[0].item == "Bread"
        assert request.vendor_info is not None
        assert request.vendor_info.name == "Sysco"

    def test_timeout_bounds(self, normalizer: RequestNormalizer) -> None:
        with pytest.raises(SchemaValidation):
            normalizer.parse(
                {"imageUrl": "https://example.com/a.jpg", "timeoutSeconds": 0},
                InvoiceAnalysisRequest,
            )


class TestCanonicalize:
    def test_remote_url_passes_through(
        self, normalizer: RequestNormalizer, rasterizer: FakeRasterizer
    ) -> None:
        _, document = normalizer.normalize(
            {"imageUrl": "https://example.com/invoice.pdf"}, InvoiceAnalysisRequest
        )

        assert document.image_url == "https://example.com/invoice.pdf"
        assert document.source == "url"
        assert rasterizer.calls == []

    def test_inline_image_becomes_data_url(self, normalizer: RequestNormalizer) -> None:
        data = png_base64()

        _, document = normalizer.normalize(
            {"imageData": data, "imageType": "image/png", "fileName": "scan.png"},
            InvoiceAnalysisRequest,
        )

        assert document.image_url == f"data:image/png;base64,{data}"
        assert document.source == "inline"
        assert document.file_name == "scan.png"
        assert document.converted_from_pdf is False

    def test_inline_data_url_prefix_is_stripped(self, normalizer: RequestNormalizer) -> None:
        data = png_base64()

        _, document = normalizer.normalize(
            {"imageData": f"data:image/png;base64,{data}"}, InvoiceAnalysisRequest
        )

        assert document.image_url == f"data:image/png;base64,{data}"

    def test_inline_pdf_is_rendered(
        self, normalizer: RequestNormalizer, rasterizer: FakeRasterizer
    ) -> None:
        pdf = b"%PDF-1.4 fake"
        payload = {
            "imageData": base64.b64encode(pdf).decode("ascii"),
            "imageType": "application/pdf",
        }

        _, document = normalizer.normalize(payload, InvoiceAnalysisRequest)

        assert rasterizer.calls == [pdf]
        assert document.converted_from_pdf is True
        expected = base64.b64encode(FAKE_PNG).decode("ascii")
        assert document.image_url == f"data:image/png;base64,{expected}"

    def test_pdf_detected_by_file_name(
        self, normalizer: RequestNormalizer, rasterizer: FakeRasterizer
    ) -> None:
        payload = {
            "imageData": base64.b64encode(b"%PDF-1.7").decode("ascii"),
            "fileName": "Contract.PDF",
        }

        _, document = normalizer.normalize(payload, ContractAnalysisRequest)

        assert document.converted_from_pdf is True
        assert len(rasterizer.calls) == 1

    def test_pdf_data_url_is_rendered(
        self, normalizer: RequestNormalizer, rasterizer: FakeRasterizer
    ) -> None:
        encoded = base64.b64encode(b"%PDF-1.4").decode("ascii")

        _, document = normalizer.normalize(
            {"imageUrl": f"data:application/pdf;base64,{encoded}"}, InvoiceAnalysisRequest
        )

        assert document.converted_from_pdf is True
        assert document.source == "url"

    def test_pdf_render_failure_propagates(self) -> None:
        failing = FakeRasterizer(error=ConversionFailure("Failed to convert PDF to image"))
        normalizer = RequestNormalizer(rasterizer=failing)
        payload = {
            "imageData": base64.b64encode(b"%PDF-broken").decode("ascii"),
            "imageType": "application/pdf",
        }

        with pytest.raises(ConversionFailure):
            normalizer.normalize(payload, InvoiceAnalysisRequest)

    def test_corrupt_image_is_conversion_failure(self, normalizer: RequestNormalizer) -> None:
        payload = {"imageData": base64.b64encode(b"not an image").decode("ascii")}

        with pytest.raises(ConversionFailure) as exc_info:
            normalizer.normalize(payload, InvoiceAnalysisRequest)

        assert exc_info.value.status_code == 400

    def test_invalid_base64(self, normalizer: RequestNormalizer) -> None:
        with pytest.raises(SchemaValidation, match="not valid base64"):
            normalizer.normalize({"imageData": "@@@@"}, InvoiceAnalysisRequest)

    def test_oversized_document(self, normalizer: RequestNormalizer) -> None:
        payload = {"imageData": base64.b64encode(b"x" * 2048).decode("ascii")}

        with pytest.raises(SchemaValidation, match="maximum size"):
            normalizer.normalize(payload, InvoiceAnalysisRequest)

    def test_whitespace_in_base64_is_ignored(self, normalizer: RequestNormalizer) -> None:
        data = png_base64()
        wrapped = "\n".join(data[i : i + 16] for i in range(0, len(data), 16))

        _, document = normalizer.normalize(
            {"imageData": wrapped, "imageType": "image/png"}, InvoiceAnalysisRequest
        )

        assert document.image_url == f"data:image/png;base64,{data}"

    def test_canonicalize_without_source(self, normalizer: RequestNormalizer) -> None:
        request = InvoiceAnalysisRequest.model_construct(image_url=None, image_data=None)

        with pytest.raises(SchemaValidation, match="imageUrl or imageData"):
            normalizer.canonicalize(request)
