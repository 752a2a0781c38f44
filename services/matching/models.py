"""Match result types shared by the template and party matchers."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from services.shared.token_usage import TokenUsage


class MatchMethod(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    TAX_ID = "tax_id"
    NOT_FOUND = "not_found"


class MatchResult(BaseModel):
    """Outcome of matching an extracted value against reference data.

    Attributes:
        matched_label: Reference label that matched (empty when not found)
        matched_code: Code of the matched record (party code or template id)
        confidence_score: 0-100
        method: How the match was made
        rationale: Short human-readable explanation
    """

    model_config = ConfigDict(frozen=True)

    matched_label: str = ""
    matched_code: str = ""
    confidence_score: float = Field(default=0.0, ge=0, le=100)
    method: MatchMethod = MatchMethod.NOT_FOUND
    rationale: str = ""

    @model_validator(mode="after")
    def _score_agrees_with_method(self) -> "MatchResult":
        if self.method is MatchMethod.NOT_FOUND and self.confidence_score != 0:
            raise ValueError("not_found matches must have confidence 0")
        if self.method in (MatchMethod.EXACT, MatchMethod.TAX_ID) and self.confidence_score != 100:
            raise ValueError(f"{self.method.value} matches must have confidence 100")
        return self

    @property
    def found(self) -> bool:
        return self.method is not MatchMethod.NOT_FOUND

    @classmethod
    def not_found(cls, rationale: str = "") -> "MatchResult":
        return cls(method=MatchMethod.NOT_FOUND, confidence_score=0.0, rationale=rationale)


class AnalysisMode(str, Enum):
    """How much reference data the structuring call may draw on."""

    TEMPLATE_ONLY = "template_only"
    FREE_ANALYSIS = "free_analysis"


class TemplateVerdict(BaseModel):
    """Template choice returned by the reasoning service."""

    matched_template: str | None = None
    confidence: float = Field(default=0.0, ge=0, le=100)
    reasoning: str = ""
    company_name_in_template: str | None = None
    company_location_in_doc: str | None = None
    is_company_issuer: bool | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
