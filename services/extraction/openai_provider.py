"""OpenAI vision provider for invoice and contract extraction.

Sends the document image to a vision-capable chat model in JSON mode and
validates the answer into the draft schemas. Includes retry logic with
exponential backoff for transient API errors.

See: https://platform.openai.com/docs/guides/vision
"""

import json
import logging
import os
from typing import Any

import openai
from openai import OpenAI
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.extraction.base import (
    ContractExtraction,
    ExtractionProvider,
    InvoiceExtraction,
)
from services.extraction.prompts import (
    CONTRACT_PROMPT,
    INVOICE_PROMPT,
    SYSTEM_PROMPT,
    parse_contract,
    parse_invoice,
    parse_json_response,
)
from services.shared.config import Settings

logger = logging.getLogger(__name__)

# Upstream faults worth another attempt; auth and request errors are not.
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI vision provider (gpt-4o by default).

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    @property
    def model_name(self) -> str:
        return self.settings.openai_model

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return bool(os.getenv("OPENAI_API_KEY"))

    def extract_invoice(self, image_url: str) -> InvoiceExtraction:
        """Extract an invoice draft from a document image using OpenAI.

        Args:
            image_url: HTTPS or data URL of the invoice image

        Returns:
            InvoiceExtraction with the draft or error, provider='openai'
        """
        outcome = self._run(INVOICE_PROMPT, image_url)
        if outcome["error"] is not None:
            return InvoiceExtraction(**outcome)
        try:
            draft = parse_invoice(outcome.pop("payload"))
        except ValidationError as e:
            logger.warning(f"OpenAI invoice response failed validation: {e.error_count()} errors")
            outcome.pop("payload", None)
            return InvoiceExtraction(**outcome | {"error": f"Invalid invoice data: {e}"})
        return InvoiceExtraction(**outcome | {"success": True, "draft": draft})

    def extract_contract(self, image_url: str) -> ContractExtraction:
        """Extract vendor and contract data from a contract image using OpenAI.

        Args:
            image_url: HTTPS or data URL of the contract image

        Returns:
            ContractExtraction with the draft or error, provider='openai'
        """
        outcome = self._run(CONTRACT_PROMPT, image_url)
        if outcome["error"] is not None:
            return ContractExtraction(**outcome)
        try:
            draft = parse_contract(outcome.pop("payload"))
        except ValidationError as e:
            logger.warning(f"OpenAI contract response failed validation: {e.error_count()} errors")
            outcome.pop("payload", None)
            return ContractExtraction(**outcome | {"error": f"Invalid contract data: {e}"})
        return ContractExtraction(**outcome | {"success": True, "draft": draft})

    def _run(self, prompt: str, image_url: str) -> dict[str, Any]:
        """Call the model and decode its JSON answer.

        Returns:
            Keyword arguments for an extraction result, plus ``payload`` with the
            decoded JSON when ``error`` is None
        """
        outcome: dict[str, Any] = {
            "success": False,
            "error": None,
            "tokens_used": 0,
            "model": self.model_name,
            "provider": self.provider_name,
        }

        # Check for API key at runtime
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            outcome["error"] = "OPENAI_API_KEY environment variable not set"
            return outcome

        try:
            if self._client is None or self._client.api_key != api_key:
                self._client = OpenAI(
                    api_key=api_key,
                    timeout=self.settings.extraction_timeout_seconds,
                    max_retries=0,
                )

            response = self._call_openai_with_retry(prompt, image_url)
            if response.usage is not None:
                outcome["tokens_used"] = response.usage.total_tokens

            content = response.choices[0].message.content
            if not content:
                outcome["error"] = "No content in OpenAI response"
                return outcome

            outcome["payload"] = parse_json_response(content)
            return outcome

        except openai.APITimeoutError as e:
            logger.warning(f"OpenAI extraction timed out: {e}")
            outcome["error"] = f"OpenAI request timed out: {e}"
            outcome["timed_out"] = True
            return outcome
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to parse JSON from OpenAI response: {e}")
            outcome["error"] = f"JSON parsing failed: {e}"
            return outcome
        except openai.OpenAIError as e:
            logger.error(f"OpenAI extraction failed: {e}")
            outcome["error"] = f"Extraction failed: {e}"
            return outcome

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_openai_with_retry(self, prompt: str, image_url: str) -> Any:
        """Call OpenAI API with retry logic for transient errors.

        Uses exponential backoff with jitter to handle rate limits and temporary
        failures. Retries up to 3 times.

        Raises:
            openai.OpenAIError: After all retry attempts are exhausted
        """
        if self._client is None:
            raise RuntimeError("OpenAI client not initialized")

        return self._client.chat.completions.create(  # type: ignore[call-overload]
            model=self.model_name,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                    ],
                },
            ],
            response_format={"type": "json_object"},
            max_tokens=self.settings.openai_max_tokens,
            temperature=self.settings.openai_temperature,
        )
