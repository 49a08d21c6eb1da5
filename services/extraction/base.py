"""Abstract base class for document extraction providers.

Enables switching between different vision providers (OpenAI, Ollama, mock)
while keeping one interface in front of the reconciliation pipeline. The
engine only ever sees InvoiceDraft / ContractDraft, never a vendor API shape.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from services.extraction.schema import ContractDraft, InvoiceDraft
from services.shared.config import Settings


class ExtractionOutcome(BaseModel):
    """Fields shared by every extraction result.

    Attributes:
        success: Whether the provider produced a usable draft
        error: Error message if the call failed
        timed_out: True when the provider gave up waiting on the upstream model
        tokens_used: Total tokens reported by the upstream model (0 if unknown)
        model: Model identifier, used for usage pricing
        provider: Name of provider that performed extraction
    """

    success: bool
    error: str | None = None
    timed_out: bool = False
    tokens_used: int = 0
    model: str
    provider: str


class InvoiceExtraction(ExtractionOutcome):
    """Result of invoice extraction."""

    draft: InvoiceDraft | None = None


class ContractExtraction(ExtractionOutcome):
    """Result of contract/vendor extraction."""

    draft: ContractDraft | None = None


class ExtractionProvider(ABC):
    """Abstract base class for document extraction providers.

    Providers never raise for upstream faults: a failed call is returned as
    a result with ``success=False`` so the caller can still account for it.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def extract_invoice(self, image_url: str) -> InvoiceExtraction:
        """Extract a structured invoice draft from a document image.

        Args:
            image_url: HTTPS URL or data URL of the rendered document

        Returns:
            InvoiceExtraction with the draft or an error
        """

    @abstractmethod
    def extract_contract(self, image_url: str) -> ContractExtraction:
        """Extract vendor and contract data from a contract document image.

        Args:
            image_url: HTTPS URL or data URL of the rendered document

        Returns:
            ContractExtraction with the draft or an error
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured and reachable.

        Returns:
            True if provider can be used, False otherwise
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging/metrics (e.g., 'openai', 'mock')."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Model identifier used for usage pricing."""
