"""Per-image extraction quality gate and remediation suggestions."""

from services.orchestrator.models import QualityIssue
from services.reasoning.base import TextExtraction
from services.shared.config import Settings

_SUGGESTIONS: dict[str, str] = {
    "no_text_detected": "Make sure the whole document is inside the frame and facing the camera.",
    "low_confidence": "Retake the photo in good, even lighting without shadows or glare.",
    "low_clarity": "Hold the camera steady and make sure the document is in focus.",
    "unclear_handwriting": "Handwritten details must be clearly legible; rewrite or type them.",
}
_GENERAL_SUGGESTION = "Photograph the document flat on a contrasting surface at full resolution."


def evaluate(extraction: TextExtraction, settings: Settings) -> list[QualityIssue]:
    """Return every quality problem found in one image's extraction.

    A confidence the extractor could not report is not held against the image.
    """
    issues: list[QualityIssue] = []
    minimum = settings.min_extraction_confidence

    if not extraction.text.strip():
        issues.append(QualityIssue(field="text", issue="no_text_detected"))

    if extraction.confidence is not None and extraction.confidence < minimum:
        issues.append(
            QualityIssue(
                field="overall_confidence",
                issue="low_confidence",
                current_value=extraction.confidence,
                min_required=minimum,
            )
        )

    if extraction.text_clarity is not None and extraction.text_clarity < minimum:
        issues.append(
            QualityIssue(
                field="text_clarity",
                issue="low_clarity",
                current_value=extraction.text_clarity,
                min_required=minimum,
            )
        )

    if extraction.has_handwriting:
        handwriting = extraction.handwriting_confidence
        if handwriting is None:
            handwriting = extraction.confidence
        if handwriting is not None and handwriting < settings.min_handwriting_confidence:
            issues.append(
                QualityIssue(
                    field="handwriting_confidence",
                    issue="unclear_handwriting",
                    current_value=handwriting,
                    min_required=settings.min_handwriting_confidence,
                )
            )
    return issues


def suggestions_for(issues: list[QualityIssue]) -> list[str]:
    """Remediation advice for a set of issues, most specific first, no duplicates."""
    advice: list[str] = []
    for issue in issues:
        text = _SUGGESTIONS.get(issue.issue)
        if text and text not in advice:
            advice.append(text)
    advice.append(_GENERAL_SUGGESTION)
    return advice
