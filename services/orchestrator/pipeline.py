"""Analysis pipeline: photographed documents in, annotated accounting entry out.

States run in a fixed order:

    validating_reference_data -> extracting_text -> matching_template
    -> selecting_mode -> analyzing_structure -> validating_balance
    -> scoring_confidence -> done

and any of them may end the run as rejected, failed or timed_out instead.
The run executes on a worker thread so the caller can enforce one deadline
over all of it. Whichever of completion and deadline comes first produces
the only response; the other is discarded.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from services.accounting.balance import BalanceValidator
from services.accounting.confidence import ConfidenceScorer
from services.accounting.schema import AccountingEntry
from services.governor.call_governor import CallGovernor
from services.matching.models import MatchResult
from services.matching.party_matcher import PartyMatcher
from services.matching.template_matcher import TemplateMatch, TemplateMatcher
from services.ocr.service import TextExtractor
from services.orchestrator import quality
from services.orchestrator.disclosure import build_reference_payload
from services.orchestrator.models import (
    AnalysisFailure,
    AnalysisRejection,
    AnalysisRequest,
    AnalysisResponse,
    AnalysisSuccess,
    AnalysisTimeout,
    ConfidenceSummary,
    FailedImage,
    ImageInput,
    OCRWarning,
    OrchestratorState,
    ResponseMetadata,
    TemplateInfo,
    ValidationInfo,
)
from services.orchestrator.relationship import resolve_relationship
from services.orchestrator.trace import ProcessingTrace
from services.reasoning.base import (
    ReasoningProvider,
    StructuredAnalysis,
    StructuringRequest,
    TextExtraction,
)
from services.reference.cache import ReferenceDataCache
from services.reference.records import PartyRole, ReferenceDataSnapshot
from services.shared import metrics
from services.shared.config import Settings
from services.shared.errors import (
    BackingStoreError,
    OperationCancelledError,
    ReasoningServiceError,
    ResponseParseError,
    RetriesExhaustedError,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_VALUES = frozenset({"", "n/a", "unknown vendor", "unknown"})
_TITLE_WORDS = ("receipt", "invoice", "ใบเสร็จ", "ใบกำกับ", "tax", "บิล", "copy", "สำเนา")

TIMEOUT_SUGGESTIONS = [
    "Try again with fewer images in one request.",
    "Make sure the images are sharp so text extraction finishes quickly.",
    "If the reasoning service is busy, retry in a few minutes.",
]


class _Halt(Exception):
    """Ends the run early with a finished response."""

    def __init__(self, response: AnalysisResponse) -> None:
        super().__init__(response.status)
        self.response = response


class _ResponseLatch:
    """Accepts exactly one response; later offers are refused."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self.response: AnalysisResponse | None = None

    def offer(self, response: AnalysisResponse) -> bool:
        with self._lock:
            if self.response is not None:
                return False
            self.response = response
        self._ready.set()
        return True

    def wait(self, timeout: float) -> bool:
        return self._ready.wait(timeout)


class Orchestrator:
    """Sequences the decision pipeline for one request at a time per call."""

    def __init__(
        self,
        settings: Settings,
        cache: ReferenceDataCache,
        governor: CallGovernor,
        provider: ReasoningProvider,
        text_extractor: TextExtractor,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Thresholds, deadline and worker limits
            cache: Shared reference data cache
            governor: Shared call governor for every reasoning-service call
            provider: Reasoning provider for template verdicts and structuring
            text_extractor: Per-image transcription
        """
        self.settings = settings
        self.cache = cache
        self.governor = governor
        self.provider = provider
        self.text_extractor = text_extractor
        self.template_matcher = TemplateMatcher(settings.template_confidence_threshold)
        self.party_matcher = PartyMatcher(settings.party_match_threshold)
        self.balance_validator = BalanceValidator(settings.balance_tolerance)
        self.scorer = ConfidenceScorer(settings.free_mode_template_baseline)

    def analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        """Run the full pipeline under the request deadline.

        Returns:
            Exactly one of AnalysisSuccess, AnalysisRejection, AnalysisFailure
            or AnalysisTimeout
        """
        trace = ProcessingTrace(request.request_id)
        cancel = threading.Event()
        latch = _ResponseLatch()
        trace.log(
            logging.INFO,
            f"Analysis started: tenant={request.tenant_id}, images={len(request.images)}",
        )

        worker = threading.Thread(
            target=self._run_and_offer,
            args=(request, trace, cancel, latch),
            name=f"analysis-{request.request_id}",
            daemon=True,
        )
        worker.start()

        if not latch.wait(self.settings.request_deadline_seconds):
            cancel.set()
            timeout = self._timeout_response(request, trace)
            if latch.offer(timeout):
                trace.log(
                    logging.WARNING,
                    f"Deadline of {self.settings.request_deadline_seconds:.0f}s exceeded "
                    f"during {timeout.processing_summary.current_step}",
                )

        response = latch.response
        if response is None:
            raise RuntimeError(f"Analysis {request.request_id} finished without a response")
        metrics.analysis_requests_total.labels(state=response.terminal_state.value).inc()
        metrics.analysis_duration_seconds.observe(trace.elapsed)
        trace.log(
            logging.INFO,
            f"Analysis finished: {response.terminal_state.value} in {trace.elapsed:.2f}s",
        )
        return response

    def _run_and_offer(
        self,
        request: AnalysisRequest,
        trace: ProcessingTrace,
        cancel: threading.Event,
        latch: _ResponseLatch,
    ) -> None:
        try:
            response = self._run(request, trace, cancel)
        except _Halt as halt:
            response = halt.response
        except ReasoningServiceError as e:
            response = self._service_failure(request, trace, e)
        except ResponseParseError as e:
            trace.log(logging.ERROR, f"Unparseable reasoning-service response: {e}")
            response = AnalysisFailure(
                error="response_parse_failed",
                category="parse_failure",
                message=str(e),
                suggestion="The analysis result could not be read. Try again.",
                retry_recommended=True,
                request_id=request.request_id,
                processing_summary=trace.summary(),
            )
        except OperationCancelledError as e:
            response = AnalysisFailure(
                error="cancelled",
                category="canceled",
                message=str(e),
                suggestion="The request was cancelled before it completed.",
                request_id=request.request_id,
                processing_summary=trace.summary(),
            )
        except Exception as e:
            logger.exception(f"[{request.request_id}] Unexpected pipeline error")
            response = AnalysisFailure(
                error="internal_error",
                category="internal",
                message=f"{type(e).__name__}: {e}",
                suggestion="An unexpected error occurred. Try again or contact support.",
                request_id=request.request_id,
                processing_summary=trace.summary(),
            )

        if not latch.offer(response):
            trace.log(logging.WARNING, f"Discarding late {response.status} result after deadline")

    def _service_failure(
        self, request: AnalysisRequest, trace: ProcessingTrace, error: ReasoningServiceError
    ) -> AnalysisFailure:
        exhausted = isinstance(error, RetriesExhaustedError)
        trace.log(
            logging.ERROR,
            f"Reasoning service failed [{error.category.value}]"
            f"{' after retries' if exhausted else ''}: {error}",
        )
        return AnalysisFailure(
            error="reasoning_service_unavailable" if exhausted else "reasoning_service_error",
            category=error.category.value,
            message=str(error),
            suggestion=error.user_message(),
            retry_recommended=error.retryable,
            request_id=request.request_id,
            processing_summary=trace.summary(),
        )

    def _timeout_response(
        self, request: AnalysisRequest, trace: ProcessingTrace
    ) -> AnalysisTimeout:
        summary = trace.summary()
        return AnalysisTimeout(
            message=(
                f"Processing exceeded {self.settings.request_deadline_seconds:.0f} seconds "
                f"while {summary.current_step or 'starting'}"
            ),
            suggestions=TIMEOUT_SUGGESTIONS,
            request_id=request.request_id,
            processing_summary=summary,
        )

    @staticmethod
    def _check_cancelled(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise OperationCancelledError("Deadline exceeded")

    def _run(
        self, request: AnalysisRequest, trace: ProcessingTrace, cancel: threading.Event
    ) -> AnalysisResponse:
        started = time.monotonic()

        with trace.step(OrchestratorState.VALIDATING_REFERENCE_DATA):
            snapshot, stale = self._load_reference_data(request, trace)

        self._check_cancelled(cancel)
        with trace.step(OrchestratorState.EXTRACTING_TEXT):
            extractions = self._extract_all(request.images, trace, cancel)
            self._quality_gate(request, extractions, trace)

        document_text = "\n\n".join(e.text.strip() for e in extractions)

        self._check_cancelled(cancel)
        with trace.step(OrchestratorState.MATCHING_TEMPLATE):
            template_match = self._match_template(document_text, snapshot, trace, cancel)

        with trace.step(OrchestratorState.SELECTING_MODE, template_match.mode.value):
            reference = build_reference_payload(snapshot, template_match)
            metrics.template_mode_total.labels(mode=template_match.mode.value).inc()
            trace.log(
                logging.INFO,
                f"Mode {template_match.mode.value} (template score "
                f"{template_match.best_score:.0f}, threshold "
                f"{self.settings.template_confidence_threshold:.0f})",
            )

        self._check_cancelled(cancel)
        with trace.step(OrchestratorState.ANALYZING_STRUCTURE):
            structuring = StructuringRequest(
                document_text=document_text,
                images=[image.to_part() for image in request.images],
                reference=reference,
                mode=template_match.mode,
            )
            analysis = self.governor.execute(
                lambda: self.provider.analyze_structure(structuring),
                cancel_event=cancel,
                operation="analyze_structure",
            )
            trace.record_usage(analysis.token_usage)
            if analysis.is_partial:
                trace.log(logging.WARNING, "Structured result recovered from a partial response")
            party_match, entry = self._resolve_party(analysis, extractions, snapshot, trace)

        with trace.step(OrchestratorState.VALIDATING_BALANCE):
            balance = self.balance_validator.check(entry.entries)
            entry = entry.model_copy(update={"balance_check": balance})
            if not balance.balanced:
                trace.log(
                    logging.WARNING,
                    f"Entry is unbalanced: debit {balance.total_debit:.2f} "
                    f"vs credit {balance.total_credit:.2f}",
                )

        with trace.step(OrchestratorState.SCORING_CONFIDENCE):
            confidence = self.scorer.score(template_match, party_match, entry, balance)
            review_fields = self._fields_requiring_review(analysis, entry, template_match)
            ocr_warnings = self._ocr_warnings(extractions)
            partial = analysis.is_partial or any(e.is_partial for e in extractions)
            review_reasons = list(confidence.review_reasons)
            if partial:
                review_reasons.append("result recovered from a partial response")
            if stale:
                review_reasons.append("reference data may be out of date")
            if review_fields:
                review_reasons.append(f"fields need review: {', '.join(review_fields)}")

        with trace.step(OrchestratorState.DONE):
            template = template_match.template
            return AnalysisSuccess(
                document_analysis=resolve_relationship(
                    analysis, len(request.images), self.settings.balance_tolerance
                ),
                source_images=analysis.source_images,
                receipt=analysis.receipt,
                party_match=party_match,
                accounting_entry=entry,
                template_info=TemplateInfo(
                    template_used=template_match.template_used,
                    template_id=template.id if template and template_match.template_used else None,
                    template_name=(
                        template.description if template and template_match.template_used else None
                    ),
                    confidence=template_match.best_score,
                    selection_reason=template_match.result.rationale,
                    accounts_used=list(dict.fromkeys(line.account_code for line in entry.entries)),
                ),
                validation=ValidationInfo(
                    confidence=ConfidenceSummary(
                        level=confidence.level.value, score=confidence.overall_score
                    ),
                    requires_review=bool(review_reasons),
                    fields_requiring_review=review_fields,
                    review_reasons=review_reasons,
                    confidence_breakdown=confidence.breakdown,
                ),
                metadata=ResponseMetadata(
                    request_id=request.request_id,
                    duration=round(time.monotonic() - started, 3),
                    images_processed=len(request.images),
                    mode=template_match.mode.value,
                    ocr_provider=self.text_extractor.provider_name,
                    reasoning_provider=self.provider.provider_name,
                    ocr_warnings=ocr_warnings,
                    partial=partial,
                    stale_reference_data=stale,
                    token_usage=trace.token_usage,
                ),
            )

    def _load_reference_data(
        self, request: AnalysisRequest, trace: ProcessingTrace
    ) -> tuple[ReferenceDataSnapshot, bool]:
        stale = False
        try:
            snapshot = self.cache.get(request.tenant_id)
        except BackingStoreError as e:
            previous = self.cache.peek(request.tenant_id)
            if not (self.settings.allow_stale_reference_data and previous is not None):
                trace.log(logging.ERROR, f"Reference data unavailable: {e}")
                raise _Halt(
                    AnalysisFailure(
                        error="reference_data_unavailable",
                        category="backing_store",
                        message=str(e),
                        suggestion="Reference data could not be loaded. Try again shortly.",
                        retry_recommended=True,
                        request_id=request.request_id,
                        processing_summary=trace.summary(),
                    )
                ) from e
            trace.log(
                logging.WARNING,
                f"Using stale reference data loaded at {previous.loaded_at.isoformat()}: {e}",
            )
            snapshot, stale = previous, True

        missing = [
            name
            for name, present in (("accounts", snapshot.accounts), ("journals", snapshot.journals))
            if not present
        ]
        if missing:
            trace.log(logging.WARNING, f"Missing reference data: {', '.join(missing)}")
            raise _Halt(
                AnalysisRejection(
                    reason="master_data_not_found",
                    message=(
                        f"No {' or '.join(missing)} configured for this business. "
                        "Accounting entries cannot be produced without them."
                    ),
                    suggestions=[
                        f"Set up the {' and '.join(missing)} before submitting documents.",
                        "Contact your administrator if the data was set up recently.",
                    ],
                    request_id=request.request_id,
                    total_images=len(request.images),
                    details={"missing": missing},
                )
            )
        return snapshot, stale

    def _extract_one(
        self, index: int, image: ImageInput, trace: ProcessingTrace, cancel: threading.Event
    ) -> TextExtraction:
        part = image.to_part()
        if self.text_extractor.uses_reasoning_service:
            extraction = self.governor.execute(
                lambda: self.text_extractor.extract_text(part),
                cancel_event=cancel,
                operation="extract_text",
            )
        else:
            extraction = self.text_extractor.extract_text(part)
        trace.record_usage(extraction.token_usage)
        trace.log(
            logging.INFO,
            f"Image {index}: {len(extraction.text)} chars, confidence {extraction.confidence}",
        )
        return extraction

    def _extract_all(
        self, images: list[ImageInput], trace: ProcessingTrace, cancel: threading.Event
    ) -> list[TextExtraction]:
        """Extract every image on a bounded pool; results keep submission order."""
        workers = max(1, min(self.settings.ocr_max_workers, len(images)))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"ocr-{trace.request_id}"
        ) as pool:
            futures = [
                pool.submit(self._extract_one, index, image, trace, cancel)
                for index, image in enumerate(images)
            ]
            try:
                return [future.result() for future in futures]
            except BaseException:
                # One failed image fails the batch; stop the others waiting on tokens
                cancel.set()
                for future in futures:
                    future.cancel()
                raise

    def _quality_gate(
        self,
        request: AnalysisRequest,
        extractions: list[TextExtraction],
        trace: ProcessingTrace,
    ) -> None:
        failed: list[FailedImage] = []
        passed: list[int] = []
        for index, (image, extraction) in enumerate(zip(request.images, extractions)):
            issues = quality.evaluate(extraction, self.settings)
            if issues:
                failed.append(
                    FailedImage(image_index=index, image_id=image.image_id, issues=issues)
                )
            else:
                passed.append(index)

        if not failed:
            return

        trace.log(
            logging.WARNING,
            f"Quality gate failed for images {[f.image_index for f in failed]}",
        )
        all_issues = [issue for image in failed for issue in image.issues]
        raise _Halt(
            AnalysisRejection(
                reason="extraction_quality_insufficient",
                message=(
                    f"{len(failed)} of {len(extractions)} images are not clear enough to "
                    "produce a reliable accounting entry. Please retake them."
                ),
                failed_images=failed,
                passed_images=passed,
                suggestions=quality.suggestions_for(all_issues),
                request_id=request.request_id,
                total_images=len(extractions),
                failed_count=len(failed),
            )
        )

    def _match_template(
        self,
        document_text: str,
        snapshot: ReferenceDataSnapshot,
        trace: ProcessingTrace,
        cancel: threading.Event,
    ) -> TemplateMatch:
        templates = snapshot.templates
        if self.settings.template_matching_strategy == "reasoning" and templates:
            try:
                verdict = self.governor.execute(
                    lambda: self.provider.match_template(
                        document_text, [t.combined_description for t in templates]
                    ),
                    cancel_event=cancel,
                    operation="match_template",
                )
                trace.record_usage(verdict.token_usage)
                return self.template_matcher.apply_verdict(document_text, verdict, templates)
            except (ReasoningServiceError, ResponseParseError) as e:
                trace.log(logging.WARNING, f"Template verdict unavailable, matching locally: {e}")
        return self.template_matcher.match(document_text, templates)

    def _resolve_party(
        self,
        analysis: StructuredAnalysis,
        extractions: list[TextExtraction],
        snapshot: ReferenceDataSnapshot,
        trace: ProcessingTrace,
    ) -> tuple[MatchResult, AccountingEntry]:
        """Match the counterparty and clear party codes unknown to the tenant."""
        receipt = analysis.receipt
        if analysis.transaction_type == "sale":
            role = PartyRole.DEBTOR
            name, tax_id = receipt.customer_name, receipt.customer_tax_id
        else:
            role = PartyRole.CREDITOR
            name, tax_id = receipt.vendor_name, receipt.vendor_tax_id
            if name.lower() in PLACEHOLDER_VALUES and not tax_id and extractions:
                name = _issuer_line(extractions[0].text)
        if name.lower() in PLACEHOLDER_VALUES:
            name = ""

        party_match = self.party_matcher.match(name, tax_id, snapshot.parties(role))
        trace.log(
            logging.INFO,
            f"{role.value.capitalize()} match for '{name}': {party_match.method.value} "
            f"({party_match.confidence_score:.0f})",
        )

        updates: dict[str, str] = {}
        for party_role in PartyRole:
            code_field = f"{party_role.value}_code"
            code = getattr(analysis.accounting_entry, code_field)
            if code and not snapshot.has_party_code(party_role, code):
                trace.log(logging.WARNING, f"Clearing unknown {code_field} '{code}'")
                updates[code_field] = ""
        if party_match.found:
            updates[f"{role.value}_code"] = party_match.matched_code
            updates[f"{role.value}_name"] = party_match.matched_label
        return party_match, analysis.accounting_entry.model_copy(update=updates)

    @staticmethod
    def _fields_requiring_review(
        analysis: StructuredAnalysis, entry: AccountingEntry, template_match: TemplateMatch
    ) -> list[str]:
        """Fields a reviewer must fill or check before posting.

        On a sale the tenant is the vendor, so the customer fields are checked.
        """
        receipt = analysis.receipt
        if analysis.transaction_type == "sale":
            party_fields = (
                ("customer_name", receipt.customer_name),
                ("customer_tax_id", receipt.customer_tax_id),
            )
        else:
            party_fields = (
                ("vendor_name", receipt.vendor_name),
                ("vendor_tax_id", receipt.vendor_tax_id),
            )
        fields = [name for name, value in party_fields if value.lower() in PLACEHOLDER_VALUES]
        if template_match.template_used and template_match.template:
            expected = set(template_match.template.account_codes)
            used = {line.account_code for line in entry.entries}
            if used != expected:
                fields.append("entries")
        return fields

    @staticmethod
    def _ocr_warnings(extractions: list[TextExtraction]) -> list[OCRWarning]:
        return [
            OCRWarning(
                image_index=index,
                is_partial=e.is_partial,
                fallback_used=e.fallback_used,
                warning="; ".join(e.issues),
            )
            for index, e in enumerate(extractions)
            if e.is_partial or e.fallback_used
        ]


def _issuer_line(text: str) -> str:
    """First line that reads like a business name rather than a document title."""
    for line in text.splitlines():
        stripped = line.strip()
        if len(stripped) < 3 or not any(ch.isalpha() for ch in stripped):
            continue
        if any(word in stripped.lower() for word in _TITLE_WORDS):
            continue
        return stripped
    return ""
