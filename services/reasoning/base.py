"""Abstract base class for reasoning-service providers.

A provider sends one prompt (plus optional images) to a model and returns its
raw text. The three operations the pipeline needs are implemented here on top
of that single primitive, so providers differ only in transport.

Providers raise on transport failures; retry and rate limiting belong to the
CallGovernor that wraps every call.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from services.accounting.schema import (
    AccountingEntry,
    DocumentAnalysis,
    Receipt,
    SourceImage,
    coerce_amount,
    coerce_bool,
    coerce_text,
)
from services.matching.models import AnalysisMode, TemplateVerdict
from services.reasoning import prompts
from services.reasoning.parsing import (
    parse_json_object,
    repair_truncated_json,
    salvage_document_text,
)
from services.shared.config import Settings
from services.shared import metrics
from services.shared.errors import ResponseParseError
from services.shared.token_usage import TokenUsage

logger = logging.getLogger(__name__)


class ImagePart(BaseModel):
    """Binary image sent alongside a prompt."""

    content: bytes
    mime_type: str = "image/jpeg"


class Completion(BaseModel):
    """Raw model text with the tokens the call consumed."""

    text: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)


class TextExtraction(BaseModel):
    """Transcription of one image.

    Attributes:
        text: Transcribed text
        confidence: Overall transcription confidence 0-100 (None when unknown)
        text_clarity: Legibility of the image 0-100
        has_handwriting: Whether handwritten text was seen
        handwriting_confidence: Confidence for the handwritten parts
        is_partial: Text was recovered from a malformed response
        fallback_used: The degraded plain-text path produced the text
        token_usage: Reasoning-service tokens spent on the transcription
    """

    text: str
    confidence: float | None = None
    text_clarity: float | None = None
    has_handwriting: bool = False
    handwriting_confidence: float | None = None
    issues: list[str] = Field(default_factory=list)
    is_partial: bool = False
    fallback_used: bool = False
    provider: str
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class StructuringRequest(BaseModel):
    """Input to the structuring call."""

    document_text: str
    images: list[ImagePart] = Field(default_factory=list)
    reference: dict[str, Any]
    mode: AnalysisMode


class StructuredAnalysis(BaseModel):
    """Structured reading of a document set with a proposed entry."""

    document_analysis: DocumentAnalysis | None = None
    source_images: list[SourceImage] = Field(default_factory=list)
    receipt: Receipt = Field(default_factory=Receipt)
    transaction_type: str = "purchase"  # purchase or sale
    accounting_entry: AccountingEntry = Field(default_factory=AccountingEntry)
    is_partial: bool = False
    fallback_used: bool = False
    provider: str
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        provider: str,
        partial: bool = False,
        usage: TokenUsage | None = None,
    ) -> "StructuredAnalysis":
        """Build from the model's JSON, tolerating missing sections.

        Raises:
            ResponseParseError: If a present section has an unusable shape
        """
        raw_entry = payload.get("accounting_entry") or {}
        if not isinstance(raw_entry, dict):
            raise ResponseParseError(
                f"accounting_entry must be an object, got {type(raw_entry).__name__}"
            )
        entry = dict(raw_entry)
        # Recomputed locally from the lines
        entry.pop("balance_check", None)
        for role in ("creditor", "debtor"):
            section = payload.get(role)
            if isinstance(section, dict):
                for key in (f"{role}_code", f"{role}_name"):
                    if not entry.get(key) and section.get(key):
                        entry[key] = section[key]

        kind = coerce_text(payload.get("transaction_type")).lower()
        is_sale = any(word in kind for word in ("sale", "revenue", "income"))
        analysis = payload.get("document_analysis")
        images = payload.get("source_images")
        try:
            return cls(
                document_analysis=analysis if isinstance(analysis, dict) else None,
                source_images=images if isinstance(images, list) else [],
                receipt=payload.get("receipt") or {},
                transaction_type="sale" if is_sale else "purchase",
                accounting_entry=entry,
                is_partial=partial,
                fallback_used=partial,
                provider=provider,
                token_usage=usage or TokenUsage(),
            )
        except ValidationError as e:
            raise ResponseParseError(f"Structured response has an invalid shape: {e}") from e


class ReasoningProvider(ABC):
    """Abstract base class for reasoning-service providers.

    Example implementations:
    - OpenAIReasoningProvider: Uses OpenAI API (cloud-based)
    - OllamaReasoningProvider: Uses a self-hosted Ollama server
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured and reachable."""
        pass

    @abstractmethod
    def generate(self, prompt: str, images: Sequence[ImagePart] = ()) -> Completion:
        """Send one prompt and return the model's raw text with its token usage.

        Raises:
            Exception: Transport or API errors, classified by the governor
        """
        pass

    def _complete(self, prompt: str, images: Sequence[ImagePart] = ()) -> Completion:
        completion = self.generate(prompt, images)
        usage = completion.usage
        if usage.input_tokens:
            metrics.reasoning_tokens_total.labels(
                provider=self.provider_name, direction="input"
            ).inc(usage.input_tokens)
        if usage.output_tokens:
            metrics.reasoning_tokens_total.labels(
                provider=self.provider_name, direction="output"
            ).inc(usage.output_tokens)
        return completion

    def extract_text(self, image: ImagePart) -> TextExtraction:
        """Transcribe one image.

        A malformed response falls back to plain-text salvage, flagged partial.

        Raises:
            ResponseParseError: If no text can be recovered at all
        """
        completion = self._complete(prompts.transcription_prompt(), [image])
        try:
            payload = parse_json_object(completion.text)
        except ResponseParseError:
            text, confidence = salvage_document_text(completion.text)
            if not text:
                raise
            logger.warning(f"{self.provider_name}: transcription recovered from plain text")
            return TextExtraction(
                text=text,
                confidence=confidence,
                is_partial=True,
                fallback_used=True,
                issues=["transcription response was malformed"],
                provider=self.provider_name,
                token_usage=completion.usage,
            )

        issues = payload.get("issues")
        return TextExtraction(
            text=coerce_text(payload.get("text")),
            confidence=_percent(payload.get("confidence", payload.get("overall_confidence"))),
            text_clarity=_percent(payload.get("text_clarity")),
            has_handwriting=bool(coerce_bool(payload.get("has_handwriting"))),
            handwriting_confidence=_percent(payload.get("handwriting_confidence")),
            issues=[str(i) for i in issues] if isinstance(issues, list) else [],
            provider=self.provider_name,
            token_usage=completion.usage,
        )

    def match_template(self, document_text: str, descriptions: list[str]) -> TemplateVerdict:
        """Ask the model which template description fits the document."""
        completion = self._complete(prompts.template_verdict_prompt(document_text, descriptions))
        payload = parse_json_object(completion.text)
        try:
            return TemplateVerdict(
                matched_template=coerce_text(payload.get("matched_template")) or None,
                confidence=_percent(payload.get("confidence")) or 0.0,
                reasoning=coerce_text(payload.get("reasoning")),
                company_name_in_template=(
                    coerce_text(payload.get("company_name_in_template")) or None
                ),
                company_location_in_doc=(
                    coerce_text(payload.get("company_location_in_doc")) or None
                ),
                is_company_issuer=coerce_bool(payload.get("is_company_issuer")),
                token_usage=completion.usage,
            )
        except ValidationError as e:
            raise ResponseParseError(f"Template verdict has an invalid shape: {e}") from e

    def analyze_structure(self, request: StructuringRequest) -> StructuredAnalysis:
        """Produce the structured analysis and proposed entry.

        A truncated response is repaired once, and the result flagged partial.

        Raises:
            ResponseParseError: If the response cannot be parsed or repaired
        """
        prompt = prompts.analysis_prompt(
            request.document_text, max(len(request.images), 1), request.reference
        )
        completion = self._complete(prompt, request.images)
        try:
            return StructuredAnalysis.from_payload(
                parse_json_object(completion.text), self.provider_name, usage=completion.usage
            )
        except ResponseParseError:
            repaired = repair_truncated_json(completion.text)
            if repaired is None:
                raise
            logger.warning(f"{self.provider_name}: structuring response repaired, marked partial")
            return StructuredAnalysis.from_payload(
                repaired, self.provider_name, partial=True, usage=completion.usage
            )


def _percent(value: Any) -> float | None:
    """Coerce a 0-100 score; values in 0-1 are treated as fractions."""
    number = coerce_amount(value)
    if number is None:
        return None
    if 0 < number <= 1:
        number *= 100
    return max(0.0, min(100.0, number))
