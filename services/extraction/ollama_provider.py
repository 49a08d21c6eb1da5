"""Ollama-based vision provider for self-hosted inference.

Uses a local Ollama server with a vision-capable model (llava, llama3.2-vision)
for document extraction. Supports data sovereignty requirements by running
entirely on-premises.

Requires Ollama server running on localhost:11434.
See: https://github.com/ollama/ollama/blob/main/docs/api.md#generate-a-chat-completion
"""

import base64
import binascii
import json
import logging
from typing import Any

import httpx
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


class OllamaExtractionProvider(ExtractionProvider):
    """Ollama-based vision provider for self-hosted inference."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        """Initialize Ollama extraction provider.

        Args:
            settings: Application settings
            client: HTTP client (injectable for tests)
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url.rstrip("/")
        self._model = settings.ollama_model
        self._client = client or httpx.Client(timeout=settings.extraction_timeout_seconds)

    @property
    def provider_name(self) -> str:
        return "ollama"

    @property
    def model_name(self) -> str:
        return self._model

    def is_available(self) -> bool:
        """Check if Ollama server is running and model is available.

        Returns:
            True if Ollama server responds and model is pulled
        """
        try:
            response = self._client.get(f"{self._base_url}/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except (httpx.HTTPError, ValueError):
            return False

    def extract_invoice(self, image_url: str) -> InvoiceExtraction:
        """Extract an invoice draft from a document image using Ollama."""
        outcome = self._run(INVOICE_PROMPT, image_url)
        if outcome["error"] is not None:
            return InvoiceExtraction(**outcome)
        try:
            draft = parse_invoice(outcome.pop("payload"))
        except ValidationError as e:
            logger.warning(f"Ollama invoice response failed validation: {e.error_count()} errors")
            return InvoiceExtraction(**outcome | {"error": f"Invalid invoice data: {e}"})
        return InvoiceExtraction(**outcome | {"success": True, "draft": draft})

    def extract_contract(self, image_url: str) -> ContractExtraction:
        """Extract vendor and contract data from a contract image using Ollama."""
        outcome = self._run(CONTRACT_PROMPT, image_url)
        if outcome["error"] is not None:
            return ContractExtraction(**outcome)
        try:
            draft = parse_contract(outcome.pop("payload"))
        except ValidationError as e:
            logger.warning(f"Ollama contract response failed validation: {e.error_count()} errors")
            return ContractExtraction(**outcome | {"error": f"Invalid contract data: {e}"})
        return ContractExtraction(**outcome | {"success": True, "draft": draft})

    def _run(self, prompt: str, image_url: str) -> dict[str, Any]:
        outcome: dict[str, Any] = {
            "success": False,
            "error": None,
            "tokens_used": 0,
            "model": self.model_name,
            "provider": self.provider_name,
        }
        try:
            image_b64 = self._image_as_base64(image_url)
            body = self._call_ollama_with_retry(prompt, image_b64)
            outcome["tokens_used"] = int(body.get("prompt_eval_count", 0)) + int(
                body.get("eval_count", 0)
            )
            content = body.get("message", {}).get("content", "")
            outcome["payload"] = parse_json_response(content)
            return outcome

        except httpx.TimeoutException as e:
            logger.warning(f"Ollama extraction timed out: {e}")
            outcome["error"] = f"Ollama request timed out: {e}"
            outcome["timed_out"] = True
            return outcome
        except httpx.HTTPError as e:
            logger.error(f"Ollama extraction failed: {e}")
            outcome["error"] = f"Extraction failed: {e}"
            return outcome
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to parse JSON from Ollama response: {e}")
            outcome["error"] = f"JSON parsing failed: {e}"
            return outcome

    def _image_as_base64(self, image_url: str) -> str:
        """Ollama takes raw base64 images, not URLs.

        Raises:
            ValueError: If a data URL carries no valid base64 payload
            httpx.HTTPError: If a remote image cannot be fetched
        """
        if image_url.startswith("data:"):
            _, _, data = image_url.partition(",")
            try:
                base64.b64decode(data, validate=True)
            except binascii.Error as e:
                raise ValueError(f"Invalid base64 image data: {e}") from e
            return data

        response = self._client.get(image_url)
        response.raise_for_status()
        return base64.b64encode(response.content).decode("ascii")

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_ollama_with_retry(self, prompt: str, image_b64: str) -> dict[str, Any]:
        """Call Ollama chat API with retry logic for transient errors.

        Returns:
            Decoded response body

        Raises:
            httpx.HTTPError: After all retry attempts exhausted
        """
        response = self._client.post(
            f"{self._base_url}/api/chat",
            json={
                "model": self._model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt, "images": [image_b64]},
                ],
                "format": "json",
                "stream": False,
                "options": {
                    "temperature": self.settings.openai_temperature,
                    "num_predict": self.settings.openai_max_tokens,
                },
            },
        )
        response.raise_for_status()
        result: dict[str, Any] = response.json()
        return result
