"""OpenAI-based reasoning provider.

Uses the chat completions API with JSON output and image inputs. The SDK's
own retries are disabled; every call is retried by the CallGovernor instead.

Requires OPENAI_API_KEY environment variable.
"""

import base64
import logging
import os
from collections.abc import Sequence
from typing import Any

from openai import OpenAI

from services.reasoning.base import Completion, ImagePart, ReasoningProvider
from services.shared.config import Settings
from services.shared.errors import ErrorCategory, ReasoningServiceError
from services.shared.token_usage import TokenUsage

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You read financial documents and answer only with JSON."


class OpenAIReasoningProvider(ReasoningProvider):
    """OpenAI reasoning provider (gpt-4o-mini by default)."""

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI reasoning provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def _get_client(self) -> OpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ReasoningServiceError(
                ErrorCategory.AUTH, "OPENAI_API_KEY environment variable not set"
            )
        if self._client is None or self._client.api_key != api_key:
            self._client = OpenAI(
                api_key=api_key,
                timeout=self.settings.openai_timeout_seconds,
                max_retries=0,
            )
        return self._client

    @staticmethod
    def _user_content(prompt: str, images: Sequence[ImagePart]) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for image in images:
            encoded = base64.b64encode(image.content).decode("ascii")
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{image.mime_type};base64,{encoded}"},
                }
            )
        return content

    def generate(self, prompt: str, images: Sequence[ImagePart] = ()) -> Completion:
        """Send one prompt to OpenAI and return the message text and token usage."""
        response = self._get_client().chat.completions.create(  # type: ignore[call-overload]
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self._user_content(prompt, images)},
            ],
            response_format={"type": "json_object"},
            temperature=0,  # Deterministic output
        )
        choice = response.choices[0]
        if choice.finish_reason == "length":
            logger.warning("OpenAI response truncated at the token limit")
        usage = response.usage
        return Completion(
            text=choice.message.content or "",
            usage=TokenUsage(
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
            ),
        )
