"""Weighted confidence score for a proposed accounting entry.

Five factors, each 0-100, are combined with fixed weights. The score is a
pure function of its inputs: the same factors always give the same score and
review decision.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from services.accounting.schema import AccountingEntry, BalanceCheck
from services.matching.models import MatchResult
from services.matching.template_matcher import TemplateMatch

# Integer percentages so the weights sum to exactly 100
WEIGHTS: dict[str, int] = {
    "template_match": 30,
    "party_match": 25,
    "data_completeness": 20,
    "field_validation": 15,
    "balance_validation": 10,
}

UNBALANCED_SCORE = 20.0
MALFORMED_LINE_PENALTY = 10.0
REVIEW_OVERALL_BELOW = 85.0
REVIEW_COMPLETENESS_BELOW = 80.0
REVIEW_BALANCE_BELOW = 90.0


class ConfidenceLevel(str, Enum):
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


def level_for(score: float) -> ConfidenceLevel:
    if score >= 95:
        return ConfidenceLevel.VERY_HIGH
    if score >= 85:
        return ConfidenceLevel.HIGH
    if score >= 70:
        return ConfidenceLevel.MEDIUM
    if score >= 50:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.VERY_LOW


class ConfidenceFactors(BaseModel):
    model_config = ConfigDict(frozen=True)

    template_match: float = Field(ge=0, le=100)
    party_match: float = Field(ge=0, le=100)
    data_completeness: float = Field(ge=0, le=100)
    field_validation: float = Field(ge=0, le=100)
    balance_validation: float = Field(ge=0, le=100)
    party_found: bool = True


class ConfidenceResult(BaseModel):
    overall_score: float
    level: ConfidenceLevel
    requires_review: bool
    factors: ConfidenceFactors
    review_reasons: list[str] = Field(default_factory=list)
    breakdown: dict[str, str] = Field(default_factory=dict)


def combine(factors: ConfidenceFactors) -> ConfidenceResult:
    """Weighted sum of the factors, level and review decision."""
    values = factors.model_dump(include=set(WEIGHTS))
    overall = round(sum(values[name] * weight for name, weight in WEIGHTS.items()) / 100, 2)

    reasons: list[str] = []
    if overall < REVIEW_OVERALL_BELOW:
        reasons.append(f"overall confidence {overall:.2f} is below {REVIEW_OVERALL_BELOW:.0f}")
    if not factors.party_found:
        reasons.append("counterparty not found in reference data")
    if factors.data_completeness < REVIEW_COMPLETENESS_BELOW:
        reasons.append(f"data completeness {factors.data_completeness:.0f}% is below 80%")
    if factors.balance_validation < REVIEW_BALANCE_BELOW:
        reasons.append("debits and credits do not balance")

    return ConfidenceResult(
        overall_score=overall,
        level=level_for(overall),
        requires_review=bool(reasons),
        factors=factors,
        review_reasons=reasons,
    )


def completeness(entry: AccountingEntry) -> float:
    fields = (
        entry.creditor_code or entry.debtor_code,
        entry.creditor_name or entry.debtor_name,
        entry.document_date,
        entry.reference_number,
        entry.journal_book_code,
    )
    present = sum(1 for value in fields if value)
    return round(present / len(fields) * 100, 2)


def field_validation(entry: AccountingEntry) -> float:
    if not entry.entries:
        return 0.0
    malformed = sum(1 for line in entry.entries if line.is_malformed)
    return max(0.0, 100.0 - MALFORMED_LINE_PENALTY * malformed)


class ConfidenceScorer:
    """Derives confidence factors from matcher outputs and the entry."""

    def __init__(self, free_mode_baseline: float | None = None) -> None:
        """Initialize the scorer.

        Args:
            free_mode_baseline: Template factor credited when free analysis was
                used; 0 when not supplied
        """
        self.free_mode_baseline = free_mode_baseline

    def score(
        self,
        template_match: TemplateMatch,
        party_match: MatchResult,
        entry: AccountingEntry,
        balance_check: BalanceCheck,
    ) -> ConfidenceResult:
        if template_match.template_used:
            template_factor = template_match.result.confidence_score
            template_note = f"template '{template_match.result.matched_label}' used"
        else:
            template_factor = self.free_mode_baseline or 0.0
            template_note = "free analysis from reference data"

        party_factor = party_match.confidence_score if party_match.found else 0.0
        balance_factor = 100.0 if balance_check.balanced else UNBALANCED_SCORE

        factors = ConfidenceFactors(
            template_match=template_factor,
            party_match=party_factor,
            data_completeness=completeness(entry),
            field_validation=field_validation(entry),
            balance_validation=balance_factor,
            party_found=party_match.found,
        )
        result = combine(factors)
        result.breakdown = {
            "template_match": f"{template_factor:.0f} ({template_note})",
            "party_match": (
                f"{party_factor:.0f} ({party_match.method.value}: {party_match.rationale})"
            ),
            "data_completeness": f"{factors.data_completeness:.0f}% of required fields present",
            "field_validation": f"{factors.field_validation:.0f} over {len(entry.entries)} lines",
            "balance_validation": (
                f"{balance_factor:.0f} (debit {balance_check.total_debit:.2f}, "
                f"credit {balance_check.total_credit:.2f})"
            ),
        }
        return result
