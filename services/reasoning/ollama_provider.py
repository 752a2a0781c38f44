"""Ollama-based reasoning provider for self-hosted vision models.

Uses a local Ollama server, so documents never leave the premises.
Requires Ollama server running on localhost:11434.
See: https://ollama.ai/
"""

import base64
import logging
from collections.abc import Sequence

import httpx

from services.reasoning.base import Completion, ImagePart, ReasoningProvider
from services.shared.config import Settings
from services.shared.token_usage import TokenUsage

logger = logging.getLogger(__name__)


class OllamaReasoningProvider(ReasoningProvider):
    """Ollama reasoning provider (Qwen2.5-VL, LLaVA and similar vision models)."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        """Initialize Ollama reasoning provider.

        Args:
            settings: Application settings
            client: HTTP client (created from settings when omitted)
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url
        self._model = settings.ollama_model
        self._client = client or httpx.Client(timeout=settings.ollama_timeout_seconds)

    @property
    def provider_name(self) -> str:
        return "ollama"

    def is_available(self) -> bool:
        """Check if Ollama server is running and model is available.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = self._client.get(f"{self._base_url}/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except Exception:
            return False

    def generate(self, prompt: str, images: Sequence[ImagePart] = ()) -> Completion:
        """Send one prompt to Ollama and return the generated text and token counts.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses (classified by status code)
            httpx.TransportError: On connection failures and timeouts
        """
        body: dict[str, object] = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": 0,  # Deterministic output
                "num_predict": 4096,
            },
        }
        if images:
            body["images"] = [base64.b64encode(image.content).decode("ascii") for image in images]

        response = self._client.post(f"{self._base_url}/api/generate", json=body)
        response.raise_for_status()
        payload = response.json()
        if payload.get("done_reason") == "length":
            logger.warning("Ollama response truncated at num_predict")
        return Completion(
            text=payload.get("response") or "",
            usage=TokenUsage(
                input_tokens=payload.get("prompt_eval_count") or 0,
                output_tokens=payload.get("eval_count") or 0,
            ),
        )
