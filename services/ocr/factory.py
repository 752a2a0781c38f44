"""Factory for creating text extractors based on configuration."""

import logging

from services.ocr.service import ReasoningTextExtractor, TesseractTextExtractor, TextExtractor
from services.reasoning.base import ReasoningProvider
from services.shared.config import Settings

logger = logging.getLogger(__name__)


def create_text_extractor(settings: Settings, provider: ReasoningProvider) -> TextExtractor:
    """Create the text extractor named by settings.ocr_provider.

    Args:
        settings: Application settings with ocr_provider field
        provider: Reasoning provider used for vision transcription

    Raises:
        ValueError: If configured provider is unknown
    """
    name = settings.ocr_provider

    if name == "reasoning":
        logger.info(f"Created text extractor: reasoning ({provider.provider_name})")
        return ReasoningTextExtractor(provider)

    elif name == "tesseract":
        extractor = TesseractTextExtractor(settings)
        if not extractor.is_available():
            logger.warning("Tesseract not available. Install tesseract-ocr with tha and eng packs")
        logger.info("Created text extractor: tesseract")
        return extractor

    else:
        available = ["reasoning", "tesseract"]
        raise ValueError(f"Unknown OCR provider: '{name}'. Available: {', '.join(available)}")
