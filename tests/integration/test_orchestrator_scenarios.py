"""End-to-end pipeline scenarios.

The reasoning service and text extractor are in-process fakes; reference data,
governor, matchers, validation and scoring are the real implementations.
Use pytest -v -m integration to run only integration tests.
"""

import json
import threading
from collections.abc import Sequence
from unittest.mock import patch

import pytest

from services.accounting.schema import (
    AccountingEntry,
    AccountingEntryLine,
    Receipt,
    SourceImage,
)
from services.governor.call_governor import CallGovernor, RetryPolicy
from services.governor.rate_limiter import TokenBucket
from services.matching.models import MatchMethod, TemplateVerdict
from services.orchestrator.models import (
    AnalysisFailure,
    AnalysisRejection,
    AnalysisRequest,
    AnalysisSuccess,
    AnalysisTimeout,
    ImageInput,
)
from services.orchestrator.pipeline import Orchestrator
from services.reasoning.base import (
    Completion,
    ImagePart,
    ReasoningProvider,
    StructuredAnalysis,
    StructuringRequest,
    TextExtraction,
)
from services.reference.cache import ReferenceDataCache
from services.reference.store import InMemoryReferenceStore, Row
from services.shared.config import Settings
from services.shared.errors import (
    BackingStoreError,
    ErrorCategory,
    ReasoningServiceError,
    ResponseParseError,
)
from services.shared.token_usage import TokenUsage
from tests.sample_data import TENANT_ID, tenant_rows

pytestmark = pytest.mark.integration

ACCOUNTING_RECEIPT = """บริษัท สยามการบัญชี จำกัด
ใบเสร็จรับเงิน/ใบกำกับภาษี
เลขที่ INV-001
ค่าทำบัญชี 5,000.00
รวม 5,000.00"""

PAYMENT_SLIP = """โอนเงินสำเร็จ
จำนวนเงิน 5,000.00"""


def _extraction(text: str, confidence: float = 95.0) -> TextExtraction:
    return TextExtraction(text=text, confidence=confidence, text_clarity=92.0, provider="fake-ocr")


def _image(index: int) -> ImageInput:
    return ImageInput(image_id=f"img-{index}", content=f"image-{index}".encode())


def _request(image_count: int = 1) -> AnalysisRequest:
    return AnalysisRequest(
        tenant_id=TENANT_ID,
        images=[_image(i) for i in range(image_count)],
        request_id="req-test",
    )


def _accounting_entry(**overrides: object) -> AccountingEntry:
    data: dict[str, object] = {
        "document_date": "2026-01-15",
        "reference_number": "INV-001",
        "journal_book_code": "02",
        "creditor_code": "AP001",
        "creditor_name": "Siam Accounting",
        "entries": [
            AccountingEntryLine(account_code="531000", account_label="ค่าทำบัญชี", debit=5000.0),
            AccountingEntryLine(account_code="111000", account_label="เงินสด", credit=5000.0),
        ],
    }
    data.update(overrides)
    return AccountingEntry(**data)


def _analysis(**overrides: object) -> StructuredAnalysis:
    data: dict[str, object] = {
        "receipt": Receipt(
            number="INV-001",
            date="2026-01-15",
            vendor_name="บริษัท สยามการบัญชี จำกัด",
            vendor_tax_id="0105551234567",
            total=5000.0,
        ),
        "accounting_entry": _accounting_entry(),
        "provider": "fake-llm",
    }
    data.update(overrides)
    return StructuredAnalysis(**data)


class FakeTextExtractor:
    """Returns a fixed extraction per image, keyed by image bytes."""

    def __init__(self, extractions: dict[bytes, TextExtraction]) -> None:
        self.extractions = extractions
        self.calls = 0
        self._lock = threading.Lock()

    @property
    def uses_reasoning_service(self) -> bool:
        return True

    @property
    def provider_name(self) -> str:
        return "fake-ocr"

    def extract_text(self, image: ImagePart) -> TextExtraction:
        with self._lock:
            self.calls += 1
        return self.extractions[image.content]


class FakeReasoningProvider(ReasoningProvider):
    """Canned template verdicts and structured analyses.

    Either canned value may be an exception, raised on every call.
    """

    def __init__(
        self,
        analysis: StructuredAnalysis | Exception,
        verdict: TemplateVerdict | Exception | None = None,
        release: threading.Event | None = None,
    ) -> None:
        super().__init__(Settings())
        self.analysis = analysis
        self.verdict = verdict
        self.release = release
        self.calls: list[str] = []
        self.requests: list[StructuringRequest] = []

    @property
    def provider_name(self) -> str:
        return "fake-llm"

    def is_available(self) -> bool:
        return True

    def generate(self, prompt: str, images: Sequence[ImagePart] = ()) -> Completion:
        raise AssertionError("operations are faked directly")

    def match_template(self, document_text: str, descriptions: list[str]) -> TemplateVerdict:
        self.calls.append("match_template")
        if isinstance(self.verdict, Exception):
            raise self.verdict
        assert self.verdict is not None
        return self.verdict

    def analyze_structure(self, request: StructuringRequest) -> StructuredAnalysis:
        self.calls.append("analyze_structure")
        self.requests.append(request)
        if self.release is not None:
            self.release.wait(5)
        if isinstance(self.analysis, Exception):
            raise self.analysis
        return self.analysis


class ScriptedJsonProvider(ReasoningProvider):
    """Answers every prompt with the same raw model text."""

    def __init__(self, reply: str, usage: TokenUsage | None = None) -> None:
        super().__init__(Settings())
        self.reply = reply
        self.usage = usage or TokenUsage()

    @property
    def provider_name(self) -> str:
        return "scripted"

    def is_available(self) -> bool:
        return True

    def generate(self, prompt: str, images: Sequence[ImagePart] = ()) -> Completion:
        return Completion(text=self.reply, usage=self.usage)


class FlakyStore(InMemoryReferenceStore):
    """In-memory store that can be switched to fail every read."""

    def __init__(self) -> None:
        super().__init__()
        self.failing = False

    def load_accounts(self, tenant_id: str) -> list[Row]:
        if self.failing:
            raise BackingStoreError(tenant_id, "accounts", ConnectionError("store down"))
        return super().load_accounts(tenant_id)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def store() -> FlakyStore:
    store = FlakyStore()
    store.put_tenant(TENANT_ID, **tenant_rows())
    return store


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def governor() -> CallGovernor:
    bucket = TokenBucket(capacity=100, refill_tokens=10, refill_interval=1.0)
    return CallGovernor(bucket, RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0))


def _orchestrator(
    provider: ReasoningProvider,
    extractor: FakeTextExtractor,
    store: InMemoryReferenceStore,
    governor: CallGovernor,
    clock: FakeClock | None = None,
    **settings: object,
) -> Orchestrator:
    config = Settings(**settings)
    cache = ReferenceDataCache(store, ttl_seconds=300, clock=clock or FakeClock())
    return Orchestrator(config, cache, governor, provider, extractor)


def _single_receipt_extractor(confidence: float = 95.0) -> FakeTextExtractor:
    return FakeTextExtractor({b"image-0": _extraction(ACCOUNTING_RECEIPT, confidence)})


class TestRejections:
    """Requests that end before the structuring call."""

    def test_missing_accounts_rejected_without_calls(
        self, governor: CallGovernor, clock: FakeClock
    ) -> None:
        store = InMemoryReferenceStore()
        rows = tenant_rows()
        rows["accounts"] = []
        store.put_tenant(TENANT_ID, **rows)
        provider = FakeReasoningProvider(_analysis())
        extractor = _single_receipt_extractor()

        result = _orchestrator(provider, extractor, store, governor, clock).analyze(_request())

        assert isinstance(result, AnalysisRejection)
        assert result.reason == "master_data_not_found"
        assert result.details == {"missing": ["accounts"]}
        assert provider.calls == []
        assert extractor.calls == 0

    def test_unknown_tenant_rejected(self, governor: CallGovernor, store: FlakyStore) -> None:
        request = AnalysisRequest(tenant_id="no-such-tenant", images=[_image(0)])
        orchestrator = _orchestrator(
            FakeReasoningProvider(_analysis()), _single_receipt_extractor(), store, governor
        )

        result = orchestrator.analyze(request)

        assert isinstance(result, AnalysisRejection)
        assert result.details == {"missing": ["accounts", "journals"]}

    def test_low_confidence_image_rejected(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        provider = FakeReasoningProvider(_analysis())
        orchestrator = _orchestrator(
            provider, _single_receipt_extractor(confidence=60.0), store, governor
        )

        result = orchestrator.analyze(_request())

        assert isinstance(result, AnalysisRejection)
        assert result.reason == "extraction_quality_insufficient"
        assert result.failed_count == 1
        assert result.failed_images[0].image_index == 0
        assert result.failed_images[0].issues[0].issue == "low_confidence"
        assert result.suggestions
        assert provider.calls == []

    def test_failed_and_passed_images_listed(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        extractor = FakeTextExtractor(
            {
                b"image-0": _extraction(ACCOUNTING_RECEIPT, 40.0),
                b"image-1": _extraction(PAYMENT_SLIP, 95.0),
            }
        )
        orchestrator = _orchestrator(FakeReasoningProvider(_analysis()), extractor, store, governor)

        result = orchestrator.analyze(_request(image_count=2))

        assert isinstance(result, AnalysisRejection)
        assert [f.image_index for f in result.failed_images] == [0]
        assert result.passed_images == [1]
        assert result.total_images == 2


class TestSuccess:
    """Requests that produce a proposed entry."""

    def test_template_verdict_with_tax_id_party(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        """A confident template verdict and a tax id match should need no review."""
        provider = FakeReasoningProvider(
            _analysis(),
            verdict=TemplateVerdict(
                matched_template="ค่าทำบัญชี | ค่าบริการทำบัญชีรายเดือน",
                confidence=92,
                reasoning="Monthly bookkeeping fee",
            ),
        )
        orchestrator = _orchestrator(
            provider,
            _single_receipt_extractor(),
            store,
            governor,
            template_matching_strategy="reasoning",
        )

        result = orchestrator.analyze(_request())

        assert isinstance(result, AnalysisSuccess)
        assert provider.calls == ["match_template", "analyze_structure"]
        assert result.template_info.template_used
        assert result.template_info.template_id == "tpl-accounting"
        assert result.template_info.accounts_used == ["531000", "111000"]
        assert result.party_match.method is MatchMethod.TAX_ID
        assert "vendor_name" not in result.validation.fields_requiring_review
        assert "vendor_tax_id" not in result.validation.fields_requiring_review

    def test_sale_without_customer_needs_review(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        """Should ask for the customer, not the vendor, on a sale."""
        analysis = _analysis(
            transaction_type="sale",
            receipt=Receipt(
                vendor_name="บริษัท สยามการบัญชี จำกัด",
                vendor_tax_id="0105551234567",
                customer_name="",
                customer_tax_id="",
            ),
            accounting_entry=_accounting_entry(creditor_code="", creditor_name=""),
        )

        result = _orchestrator(
            FakeReasoningProvider(analysis), _single_receipt_extractor(), store, governor
        ).analyze(_request())

        assert isinstance(result, AnalysisSuccess)
        fields = result.validation.fields_requiring_review
        assert "customer_name" in fields
        assert "customer_tax_id" in fields
        assert "vendor_name" not in fields
        assert result.validation.requires_review

    def test_token_usage_totalled(self, governor: CallGovernor, store: FlakyStore) -> None:
        """Should report tokens from transcription and structuring together."""
        extraction = _extraction(ACCOUNTING_RECEIPT).model_copy(
            update={"token_usage": TokenUsage(input_tokens=1500, output_tokens=200)}
        )
        analysis = _analysis(token_usage=TokenUsage(input_tokens=3000, output_tokens=600))

        result = _orchestrator(
            FakeReasoningProvider(analysis),
            FakeTextExtractor({b"image-0": extraction}),
            store,
            governor,
        ).analyze(_request())

        assert isinstance(result, AnalysisSuccess)
        assert result.metadata.token_usage == TokenUsage(input_tokens=4500, output_tokens=800)
        assert result.metadata.token_usage.total_tokens == 5300
        assert result.accounting_entry.creditor_code == "AP001"
        assert result.accounting_entry.creditor_name == "บริษัท สยามการบัญชี จำกัด"
        assert result.accounting_entry.balance_check is not None
        assert result.accounting_entry.balance_check.balanced
        assert result.validation.confidence.score == pytest.approx(97.6)
        assert result.validation.confidence.level == "very_high"
        assert not result.validation.requires_review
        assert result.metadata.mode == "template_only"
        assert result.metadata.ocr_provider == "fake-ocr"
        assert result.metadata.reasoning_provider == "fake-llm"
        assert result.document_analysis.relationship == "single_document"

    def test_template_only_mode_discloses_only_template(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        provider = FakeReasoningProvider(
            _analysis(), verdict=TemplateVerdict(matched_template="ค่าทำบัญชี", confidence=95)
        )
        orchestrator = _orchestrator(
            provider,
            _single_receipt_extractor(),
            store,
            governor,
            template_matching_strategy="reasoning",
        )

        orchestrator.analyze(_request())

        reference = provider.requests[0].reference
        assert reference["mode"] == "template_only"
        assert "accounts" not in reference

    def test_verdict_failure_falls_back_to_local_matching(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        provider = FakeReasoningProvider(
            _analysis(), verdict=ResponseParseError("not json", raw_text="maybe the first")
        )
        orchestrator = _orchestrator(
            provider,
            _single_receipt_extractor(),
            store,
            governor,
            template_matching_strategy="reasoning",
        )

        result = orchestrator.analyze(_request())

        assert isinstance(result, AnalysisSuccess)
        assert result.template_info.template_id == "tpl-accounting"

    def test_receipt_with_payment_proof(self, governor: CallGovernor, store: FlakyStore) -> None:
        """Should derive the relationship when the service does not report one."""
        extractor = FakeTextExtractor(
            {b"image-0": _extraction(ACCOUNTING_RECEIPT), b"image-1": _extraction(PAYMENT_SLIP)}
        )
        analysis = _analysis(
            document_analysis=None,
            source_images=[
                SourceImage(image_index=0, type="receipt", receipt_number="INV-001", amount=5000),
                SourceImage(image_index=1, type="payment_slip", amount=5000),
            ],
        )
        provider = FakeReasoningProvider(analysis)

        result = _orchestrator(provider, extractor, store, governor).analyze(_request(2))

        assert isinstance(result, AnalysisSuccess)
        assert result.document_analysis.relationship == "receipt_with_payment_proof"
        assert result.document_analysis.total_images == 2
        assert result.metadata.images_processed == 2
        assert "บริษัท สยามการบัญชี" in provider.requests[0].document_text
        assert "โอนเงินสำเร็จ" in provider.requests[0].document_text
        assert len(provider.requests[0].images) == 2

    def test_unbalanced_entry_reported_not_fixed(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        entry = _accounting_entry(
            entries=[
                AccountingEntryLine(account_code="531000", debit=5000.0),
                AccountingEntryLine(account_code="111000", credit=4000.0),
            ]
        )
        provider = FakeReasoningProvider(_analysis(accounting_entry=entry))

        result = _orchestrator(provider, _single_receipt_extractor(), store, governor).analyze(
            _request()
        )

        assert isinstance(result, AnalysisSuccess)
        check = result.accounting_entry.balance_check
        assert check is not None and not check.balanced
        assert result.accounting_entry.entries[1].credit == 4000.0
        assert result.validation.requires_review
        assert "debits and credits do not balance" in result.validation.review_reasons

    def test_unknown_party_code_cleared(self, governor: CallGovernor, store: FlakyStore) -> None:
        analysis = _analysis(
            receipt=Receipt(vendor_name="ร้านกาแฟมุมสุข"),
            accounting_entry=_accounting_entry(creditor_code="AP999", creditor_name="Made up"),
        )

        result = _orchestrator(
            FakeReasoningProvider(analysis), _single_receipt_extractor(), store, governor
        ).analyze(_request())

        assert isinstance(result, AnalysisSuccess)
        assert result.accounting_entry.creditor_code == ""
        assert not result.party_match.found
        assert result.validation.requires_review
        assert "vendor_tax_id" in result.validation.fields_requiring_review

    def test_placeholder_vendor_falls_back_to_issuer_line(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        """Should match the counterparty from the document header."""
        analysis = _analysis(receipt=Receipt(vendor_name="Unknown Vendor"))

        result = _orchestrator(
            FakeReasoningProvider(analysis), _single_receipt_extractor(), store, governor
        ).analyze(_request())

        assert isinstance(result, AnalysisSuccess)
        assert result.party_match.matched_code == "AP001"
        assert "vendor_name" in result.validation.fields_requiring_review

    def test_sale_matches_debtors(self, governor: CallGovernor, store: FlakyStore) -> None:
        analysis = _analysis(
            transaction_type="sale",
            receipt=Receipt(customer_name="ลูกค้าดี", customer_tax_id="0103559876543"),
            accounting_entry=_accounting_entry(creditor_code="", creditor_name=""),
        )

        result = _orchestrator(
            FakeReasoningProvider(analysis), _single_receipt_extractor(), store, governor
        ).analyze(_request())

        assert isinstance(result, AnalysisSuccess)
        assert result.accounting_entry.debtor_code == "AR001"
        assert result.party_match.method is MatchMethod.TAX_ID

    def test_raw_model_output_parsed(self, governor: CallGovernor, store: FlakyStore) -> None:
        """Should run end to end from the model's raw JSON text."""
        reply = json.dumps(
            {
                "document_analysis": {"total_images": 1, "relationship": "single_document"},
                "receipt": {
                    "number": "INV-001",
                    "vendor_name": "Siam Accounting Co., Ltd.",
                    "vendor_tax_id": "0105551234567",
                    "total": "5,000.00",
                },
                "transaction_type": "purchase",
                "accounting_entry": {
                    "document_date": "2026-01-15",
                    "reference_number": "INV-001",
                    "journal_book_code": "02",
                    "entries": [
                        {"account_code": "531000", "account_name": "ค่าทำบัญชี", "debit": "5,000"},
                        {"account_code": "111000", "account_name": "เงินสด", "credit": 5000},
                    ],
                },
            },
            ensure_ascii=False,
        )

        result = _orchestrator(
            ScriptedJsonProvider(reply), _single_receipt_extractor(), store, governor
        ).analyze(_request())

        assert isinstance(result, AnalysisSuccess)
        assert result.receipt.total == 5000.0
        assert result.accounting_entry.creditor_code == "AP001"
        assert result.accounting_entry.balance_check is not None
        assert result.accounting_entry.balance_check.balanced
        assert not result.metadata.partial

    def test_truncated_model_output_flagged_partial(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        reply = (
            '{"receipt": {"number": "INV-001", "vendor_tax_id": "0105551234567"}, '
            '"accounting_entry": {"entries": [{"account_code": "531000", "debit": 5000}, '
            '{"account_code": "111000", "credit": 50'
        )

        result = _orchestrator(
            ScriptedJsonProvider(reply), _single_receipt_extractor(), store, governor
        ).analyze(_request())

        assert isinstance(result, AnalysisSuccess)
        assert result.metadata.partial
        assert result.validation.requires_review
        assert "result recovered from a partial response" in result.validation.review_reasons


class TestFailures:
    """Requests that end in an error response."""

    def test_retries_exhausted(self, governor: CallGovernor, store: FlakyStore) -> None:
        provider = FakeReasoningProvider(
            ReasoningServiceError(ErrorCategory.SERVER_ERROR, "503 Service Unavailable")
        )

        result = _orchestrator(provider, _single_receipt_extractor(), store, governor).analyze(
            _request()
        )

        assert isinstance(result, AnalysisFailure)
        assert result.error == "reasoning_service_unavailable"
        assert result.category == "server_error"
        assert result.retry_recommended
        assert provider.calls == ["analyze_structure"] * 3
        assert result.processing_summary is not None
        assert result.processing_summary.failed_step == "analyzing_structure"

    def test_non_retryable_error_not_retried(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        provider = FakeReasoningProvider(
            ReasoningServiceError(ErrorCategory.AUTH, "401 Unauthorized", status_code=401)
        )

        result = _orchestrator(provider, _single_receipt_extractor(), store, governor).analyze(
            _request()
        )

        assert isinstance(result, AnalysisFailure)
        assert result.error == "reasoning_service_error"
        assert result.category == "auth"
        assert not result.retry_recommended
        assert provider.calls == ["analyze_structure"]

    def test_unparseable_response(self, governor: CallGovernor, store: FlakyStore) -> None:
        result = _orchestrator(
            ScriptedJsonProvider("I cannot help with that."),
            _single_receipt_extractor(),
            store,
            governor,
        ).analyze(_request())

        assert isinstance(result, AnalysisFailure)
        assert result.error == "response_parse_failed"

    def test_non_object_entry_is_parse_failure(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        """Should not report a malformed entry section as a service error."""
        reply = '{"receipt": {"number": "INV-001"}, "accounting_entry": "n/a"}'

        result = _orchestrator(
            ScriptedJsonProvider(reply), _single_receipt_extractor(), store, governor
        ).analyze(_request())

        assert isinstance(result, AnalysisFailure)
        assert result.error == "response_parse_failed"
        assert result.category == "parse_failure"

    def test_deadline_exceeded(self, governor: CallGovernor, store: FlakyStore) -> None:
        """Should answer with a timeout naming the step in progress."""
        release = threading.Event()
        provider = FakeReasoningProvider(_analysis(), release=release)
        orchestrator = _orchestrator(
            provider,
            _single_receipt_extractor(),
            store,
            governor,
            request_deadline_seconds=0.2,
        )

        try:
            result = orchestrator.analyze(_request())
        finally:
            release.set()

        assert isinstance(result, AnalysisTimeout)
        assert result.error == "processing_timeout"
        assert result.processing_summary.current_step == "analyzing_structure"
        assert "extracting_text" in result.processing_summary.completed_steps
        assert result.suggestions

    def test_timeout_reports_tokens_per_step(
        self, governor: CallGovernor, store: FlakyStore
    ) -> None:
        release = threading.Event()
        extraction = _extraction(ACCOUNTING_RECEIPT).model_copy(
            update={"token_usage": TokenUsage(input_tokens=1500, output_tokens=200)}
        )
        orchestrator = _orchestrator(
            FakeReasoningProvider(_analysis(), release=release),
            FakeTextExtractor({b"image-0": extraction}),
            store,
            governor,
            request_deadline_seconds=0.2,
        )

        try:
            result = orchestrator.analyze(_request())
        finally:
            release.set()

        assert isinstance(result, AnalysisTimeout)
        steps = {s.name: s for s in result.processing_summary.steps}
        assert steps["extracting_text"].token_usage.total_tokens == 1700
        assert result.processing_summary.token_usage.input_tokens == 1500

    def test_missing_response_raises(self, governor: CallGovernor, store: FlakyStore) -> None:
        """Should fail loudly rather than return nothing when no outcome was offered."""
        orchestrator = _orchestrator(
            FakeReasoningProvider(_analysis()), _single_receipt_extractor(), store, governor
        )

        with (
            patch.object(Orchestrator, "_run_and_offer"),
            patch("services.orchestrator.pipeline._ResponseLatch.wait", return_value=True),
        ):
            with pytest.raises(RuntimeError, match="finished without a response"):
                orchestrator.analyze(_request())


class TestReferenceDataOutage:
    """Backing store failures after a snapshot was cached."""

    def _warm_then_fail(
        self, orchestrator: Orchestrator, store: FlakyStore, clock: FakeClock
    ) -> None:
        assert isinstance(orchestrator.analyze(_request()), AnalysisSuccess)
        store.failing = True
        clock.now += 301

    def test_outage_fails_by_default(
        self, governor: CallGovernor, store: FlakyStore, clock: FakeClock
    ) -> None:
        orchestrator = _orchestrator(
            FakeReasoningProvider(_analysis()), _single_receipt_extractor(), store, governor, clock
        )
        self._warm_then_fail(orchestrator, store, clock)

        result = orchestrator.analyze(_request())

        assert isinstance(result, AnalysisFailure)
        assert result.error == "reference_data_unavailable"
        assert result.category == "backing_store"
        assert result.retry_recommended

    def test_stale_snapshot_used_when_allowed(
        self, governor: CallGovernor, store: FlakyStore, clock: FakeClock
    ) -> None:
        orchestrator = _orchestrator(
            FakeReasoningProvider(_analysis()),
            _single_receipt_extractor(),
            store,
            governor,
            clock,
            allow_stale_reference_data=True,
        )
        self._warm_then_fail(orchestrator, store, clock)

        result = orchestrator.analyze(_request())

        assert isinstance(result, AnalysisSuccess)
        assert result.metadata.stale_reference_data
        assert result.validation.requires_review
        assert "reference data may be out of date" in result.validation.review_reasons
