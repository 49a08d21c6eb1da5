"""Request validation and document canonicalization.

Every analysis request names its document either by URL or by inline base64
data. The normalizer validates the payload against the request schema and
turns the document into a single image URL the extraction provider can read.
Inline PDFs are rendered to their first page; inline images are checked with
Pillow and wrapped in a data URL.

Parsing is cheap and runs before the rate limiter; canonicalization (which may
render a PDF) runs only for admitted requests.
"""

import base64
import binascii
import io
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

from PIL import Image, UnidentifiedImageError
from pydantic import Field, ValidationError, field_validator, model_validator

from services.intake.pdf import PdfRasterizer
from services.reconciliation.models import ContractTerms, VendorInfo
from services.shared.config import Settings
from services.shared.errors import ConversionFailure, SchemaValidation
from services.shared.schema import CamelModel

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})

_DATA_URL = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w=.-]+)*?;base64,(?P<data>.*)$", re.S
)
_LOCALHOST_URL = re.compile(r"^http://(?:localhost|127\.0\.0\.1)(?::\d+)?(?:/|$)")


class ImageSource(CamelModel):
    """Exactly one of ``image_url`` or ``image_data`` identifies the document."""

    image_url: str | None = Field(None, description="https://, http://localhost or data: URL")
    image_data: str | None = Field(None, description="Base64 document content")
    image_type: str = Field("image/jpeg", description="MIME type of image_data")
    file_name: str | None = None

    @field_validator("image_url")
    @classmethod
    def _check_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if value.startswith("data:"):
            if not _DATA_URL.match(value):
                raise ValueError("data URL must be base64 encoded")
            return value
        if value.startswith("https://") and len(value) > len("https://"):
            if any(ch.isspace() for ch in value):
                raise ValueError("URL must not contain whitespace")
            return value
        if _LOCALHOST_URL.match(value):
            return value
        raise ValueError("imageUrl must be an https://, http://localhost or data: URL")

    @field_validator("image_type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in IMAGE_MIME_TYPES and value != PDF_MIME:
            raise ValueError(f"Unsupported imageType '{value}'")
        return value

    @model_validator(mode="after")
    def _exactly_one_source(self) -> "ImageSource":
        if self.image_url and self.image_data:
            raise ValueError("Provide either imageUrl or imageData, not both")
        if not self.image_url and not self.image_data:
            raise ValueError("Either imageUrl or imageData is required")
        return self


class InvoiceAnalysisRequest(ImageSource):
    contract_terms: ContractTerms | None = None
    vendor_info: VendorInfo | None = None
    timeout_seconds: float | None = Field(
        None, gt=0, le=300, description="Upper bound for the extraction call"
    )


class ContractAnalysisRequest(ImageSource):
    timeout_seconds: float | None = Field(None, gt=0, le=300)


RequestT = TypeVar("RequestT", bound=ImageSource)


@dataclass(frozen=True)
class NormalizedDocument:
    """Canonical document reference handed to the extraction provider.

    Attributes:
        image_url: Remote URL or data URL of a single image
        file_name: Caller-supplied name, if any
        source: Whether the caller sent a URL or inline data
        converted_from_pdf: True when the image is a rendered first PDF page
    """

    image_url: str
    file_name: str | None
    source: Literal["url", "inline"]
    converted_from_pdf: bool = False


class RequestNormalizer:
    """Validates analysis requests and canonicalizes their document."""

    def __init__(self, rasterizer: PdfRasterizer, max_image_bytes: int = 10 * 1024 * 1024):
        self.rasterizer = rasterizer
        self.max_image_bytes = max_image_bytes

    @classmethod
    def from_settings(cls, settings: Settings, rasterizer: PdfRasterizer) -> "RequestNormalizer":
        return cls(rasterizer=rasterizer, max_image_bytes=settings.max_image_bytes)

    def parse(self, payload: Mapping[str, Any] | Any, model: type[RequestT]) -> RequestT:
        """Validate a raw payload against a request model.

        Raises:
            SchemaValidation: With pydantic's error list as details
        """
        if not isinstance(payload, Mapping):
            raise SchemaValidation("Request body must be a JSON object")
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            details = json.loads(e.json(include_url=False, include_input=False))
            raise SchemaValidation("Invalid request data", details=details) from e

    def normalize(
        self, payload: Mapping[str, Any] | Any, model: type[RequestT]
    ) -> tuple[RequestT, NormalizedDocument]:
        """Validate ``payload`` and produce the document for extraction.

        Raises:
            SchemaValidation: Structurally invalid input
            ConversionFailure: Valid input whose document cannot be used
        """
        request = self.parse(payload, model)
        return request, self.canonicalize(request)

    def canonicalize(self, request: ImageSource) -> NormalizedDocument:
        if request.image_url is not None:
            match = _DATA_URL.match(request.image_url)
            if match is None:
                return NormalizedDocument(
                    image_url=request.image_url, file_name=request.file_name, source="url"
                )
            mime = (match.group("mime") or "image/jpeg").lower()
            return self._from_inline(match.group("data"), mime, request.file_name, "url")

        if request.image_data is None:
            raise SchemaValidation("Either imageUrl or imageData is required")
        data = request.image_data
        mime = request.image_type
        match = _DATA_URL.match(data.strip())
        if match is not None:
            data = match.group("data")
            mime = (match.group("mime") or mime).lower()
        return self._from_inline(data, mime, request.file_name, "inline")

    def _from_inline(
        self,
        data: str,
        mime: str,
        file_name: str | None,
        source: Literal["url", "inline"],
    ) -> NormalizedDocument:
        content = self._decode(data)
        is_pdf = mime == PDF_MIME or (file_name or "").lower().endswith(".pdf")

        if is_pdf:
            png = self.rasterizer.render_first_page(content)
            logger.info(
                "Rendered PDF document for extraction",
                extra={"file_name": file_name, "pdf_bytes": len(content), "png_bytes": len(png)},
            )
            return NormalizedDocument(
                image_url=_data_url("image/png", png),
                file_name=file_name,
                source=source,
                converted_from_pdf=True,
            )

        if mime not in IMAGE_MIME_TYPES:
            raise SchemaValidation(f"Unsupported document type '{mime}'")
        self._verify_image(content)
        return NormalizedDocument(
            image_url=_data_url(mime, content), file_name=file_name, source=source
        )

    def _decode(self, data: str) -> bytes:
        compact = "".join(data.split())
        if not compact:
            raise SchemaValidation("imageData is empty")
        # Cheap bound before decoding: base64 inflates by 4/3.
        if len(compact) * 3 // 4 > self.max_image_bytes + 3:
            raise SchemaValidation(
                f"Document exceeds maximum size of {self.max_image_bytes} bytes"
            )
        try:
            content = base64.b64decode(compact, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SchemaValidation("imageData is not valid base64") from e
        if len(content) > self.max_image_bytes:
            raise SchemaValidation(
                f"Document exceeds maximum size of {self.max_image_bytes} bytes"
            )
        return content

    @staticmethod
    def _verify_image(content: bytes) -> None:
        try:
            with Image.open(io.BytesIO(content)) as image:
                image.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ConversionFailure("Document is not a readable image", details=str(e)) from e


def _data_url(mime: str, content: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(content).decode('ascii')}"
