"""Request, state and response types of the analysis pipeline."""

import uuid
from enum import Enum
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field

from services.accounting.schema import AccountingEntry, DocumentAnalysis, Receipt, SourceImage
from services.matching.models import MatchResult
from services.reasoning.base import ImagePart
from services.shared.token_usage import TokenUsage


class OrchestratorState(str, Enum):
    VALIDATING_REFERENCE_DATA = "validating_reference_data"
    EXTRACTING_TEXT = "extracting_text"
    MATCHING_TEMPLATE = "matching_template"
    SELECTING_MODE = "selecting_mode"
    ANALYZING_STRUCTURE = "analyzing_structure"
    VALIDATING_BALANCE = "validating_balance"
    SCORING_CONFIDENCE = "scoring_confidence"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ImageInput(BaseModel):
    """One submitted document image."""

    image_id: str = ""
    content: bytes
    mime_type: str = "image/jpeg"

    def to_part(self) -> ImagePart:
        return ImagePart(content=self.content, mime_type=self.mime_type)


class AnalysisRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    images: list[ImageInput] = Field(min_length=1)
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])


class QualityIssue(BaseModel):
    field: str
    issue: str
    current_value: float | None = None
    min_required: float | None = None


class FailedImage(BaseModel):
    image_index: int
    image_id: str = ""
    issues: list[QualityIssue]


class StepRecord(BaseModel):
    name: str
    status: Literal["running", "completed", "failed"]
    duration_seconds: float = 0.0
    detail: str = ""
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class ProcessingSummary(BaseModel):
    """Progress of a request at the moment it was summarised."""

    current_step: str | None = None
    completed_steps: list[str] = Field(default_factory=list)
    failed_step: str | None = None
    elapsed_seconds: float = 0.0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    steps: list[StepRecord] = Field(default_factory=list)


class TemplateInfo(BaseModel):
    template_used: bool
    template_id: str | None = None
    template_name: str | None = None
    confidence: float = 0.0
    selection_reason: str = ""
    accounts_used: list[str] = Field(default_factory=list)


class ConfidenceSummary(BaseModel):
    level: str
    score: float


class ValidationInfo(BaseModel):
    confidence: ConfidenceSummary
    requires_review: bool
    fields_requiring_review: list[str] = Field(default_factory=list)
    review_reasons: list[str] = Field(default_factory=list)
    confidence_breakdown: dict[str, str] = Field(default_factory=dict)


class OCRWarning(BaseModel):
    image_index: int
    is_partial: bool = False
    fallback_used: bool = False
    warning: str = ""


class ResponseMetadata(BaseModel):
    request_id: str
    duration: float
    images_processed: int
    mode: str
    ocr_provider: str
    reasoning_provider: str
    ocr_warnings: list[OCRWarning] = Field(default_factory=list)
    partial: bool = False
    stale_reference_data: bool = False
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class AnalysisSuccess(BaseModel):
    terminal_state: ClassVar[OrchestratorState] = OrchestratorState.DONE

    status: Literal["success"] = "success"
    document_analysis: DocumentAnalysis
    source_images: list[SourceImage] = Field(default_factory=list)
    receipt: Receipt
    party_match: MatchResult
    accounting_entry: AccountingEntry
    template_info: TemplateInfo
    validation: ValidationInfo
    metadata: ResponseMetadata


class AnalysisRejection(BaseModel):
    terminal_state: ClassVar[OrchestratorState] = OrchestratorState.REJECTED

    status: Literal["rejected"] = "rejected"
    reason: Literal["master_data_not_found", "extraction_quality_insufficient"]
    message: str
    failed_images: list[FailedImage] = Field(default_factory=list)
    passed_images: list[int] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    request_id: str
    total_images: int
    failed_count: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class AnalysisFailure(BaseModel):
    terminal_state: ClassVar[OrchestratorState] = OrchestratorState.FAILED

    status: Literal["error"] = "error"
    error: str
    category: str
    message: str
    suggestion: str
    retry_recommended: bool = False
    request_id: str
    processing_summary: ProcessingSummary | None = None


class AnalysisTimeout(BaseModel):
    terminal_state: ClassVar[OrchestratorState] = OrchestratorState.TIMED_OUT

    status: Literal["error"] = "error"
    error: Literal["processing_timeout"] = "processing_timeout"
    message: str
    suggestions: list[str] = Field(default_factory=list)
    request_id: str
    processing_summary: ProcessingSummary


AnalysisResponse = AnalysisSuccess | AnalysisRejection | AnalysisFailure | AnalysisTimeout
