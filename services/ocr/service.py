"""Text extraction front for document images.

Two extractors share one interface:
- ReasoningTextExtractor: transcription by the reasoning service's vision model
  (each call goes through the CallGovernor)
- TesseractTextExtractor: local Tesseract OCR, no external calls

Based on pytesseract documentation:
https://github.com/madmaze/pytesseract
"""

import io
import logging
import os
from typing import Protocol

import pytesseract
from PIL import Image

from services.reasoning.base import ImagePart, ReasoningProvider, TextExtraction
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class TextExtractor(Protocol):
    """Protocol for text extractors."""

    @property
    def uses_reasoning_service(self) -> bool:
        """Whether calls must be rate limited by the governor."""
        ...

    @property
    def provider_name(self) -> str: ...

    def extract_text(self, image: ImagePart) -> TextExtraction:
        """Transcribe one image."""
        ...


class ReasoningTextExtractor:
    """Delegates transcription to the reasoning provider."""

    def __init__(self, provider: ReasoningProvider) -> None:
        self._provider = provider

    @property
    def uses_reasoning_service(self) -> bool:
        return True

    @property
    def provider_name(self) -> str:
        return self._provider.provider_name

    def extract_text(self, image: ImagePart) -> TextExtraction:
        return self._provider.extract_text(image)


class TesseractTextExtractor:
    """OCR with the Tesseract engine.

    Confidence is the mean word confidence Tesseract reports.
    """

    def __init__(self, settings: Settings, languages: str = "tha+eng") -> None:
        """Initialize Tesseract extractor.

        Args:
            settings: Application settings
            languages: Tesseract language packs to use
        """
        self.settings = settings
        self.languages = languages
        self._configure_tesseract()

    @property
    def uses_reasoning_service(self) -> bool:
        return False

    @property
    def provider_name(self) -> str:
        return "tesseract"

    def _configure_tesseract(self) -> None:
        """Configure Tesseract command path from environment.

        Allows overriding default Tesseract path via TESSERACT_CMD environment variable.
        """
        tesseract_cmd = os.getenv("TESSERACT_CMD")
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def is_available(self) -> bool:
        try:
            pytesseract.get_tesseract_version()
            return True
        except Exception:
            return False

    def extract_text(self, image: ImagePart) -> TextExtraction:
        """Run OCR on image bytes.

        Raises:
            OSError: If the bytes are not a readable image
            pytesseract.TesseractError: If Tesseract fails
        """
        with Image.open(io.BytesIO(image.content)) as img:
            text = pytesseract.image_to_string(img, lang=self.languages)
            data = pytesseract.image_to_data(
                img, lang=self.languages, output_type=pytesseract.Output.DICT
            )

        confidences = []
        for value in data.get("conf", []):
            try:
                score = float(value)
            except (TypeError, ValueError):
                continue
            if score >= 0:
                confidences.append(score)
        confidence = round(sum(confidences) / len(confidences), 2) if confidences else 0.0
        logger.debug(f"Tesseract read {len(text)} chars, mean confidence {confidence}")

        return TextExtraction(
            text=text.strip(),
            confidence=confidence,
            text_clarity=confidence,
            provider=self.provider_name,
        )
