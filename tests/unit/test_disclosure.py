"""Unit tests for the reference data disclosed to the structuring call."""

from services.matching.models import AnalysisMode, MatchMethod, MatchResult
from services.matching.template_matcher import DocumentCategory, TemplateMatch
from services.orchestrator.disclosure import build_reference_payload
from services.reference.records import ReferenceDataSnapshot


def _template_only(snapshot: ReferenceDataSnapshot) -> TemplateMatch:
    template = snapshot.templates[0]
    return TemplateMatch(
        result=MatchResult(
            matched_label=template.description,
            matched_code=template.id,
            confidence_score=92,
            method=MatchMethod.FUZZY,
        ),
        template=template,
        mode=AnalysisMode.TEMPLATE_ONLY,
        category=DocumentCategory(),
        best_score=92,
    )


def _free(best_score: float = 40.0) -> TemplateMatch:
    return TemplateMatch(
        result=MatchResult.not_found(),
        mode=AnalysisMode.FREE_ANALYSIS,
        category=DocumentCategory(),
        best_score=best_score,
    )


class TestTemplateOnlyPayload:
    def test_discloses_only_template_accounts(self, snapshot: ReferenceDataSnapshot) -> None:
        payload = build_reference_payload(snapshot, _template_only(snapshot))

        assert payload["mode"] == "template_only"
        assert [a["code"] for a in payload["template"]["accounts"]] == ["531000", "111000"]
        assert payload["template"]["journal_code"] == "02"
        assert "accounts" not in payload
        assert "templates" not in payload

    def test_lookup_lists_without_tax_ids(self, snapshot: ReferenceDataSnapshot) -> None:
        payload = build_reference_payload(snapshot, _template_only(snapshot))

        assert {"code": "AP001", "name": "บริษัท สยามการบัญชี จำกัด"} in payload["creditors"]
        assert all("tax_id" not in row for row in payload["creditors"])


class TestFreeAnalysisPayload:
    def test_discloses_posting_accounts_only(self, snapshot: ReferenceDataSnapshot) -> None:
        """Should leave out header accounts that cannot carry postings."""
        payload = build_reference_payload(snapshot, _free())

        codes = [a["code"] for a in payload["accounts"]]
        assert payload["mode"] == "free_analysis"
        assert "1000" not in codes
        assert "531000" in codes

    def test_discloses_templates_and_profile(self, snapshot: ReferenceDataSnapshot) -> None:
        payload = build_reference_payload(snapshot, _free())

        assert [t["id"] for t in payload["templates"]] == ["tpl-accounting", "tpl-fuel"]
        assert payload["business"]["guidance"] == "ร้านค้าปลีกขนาดเล็ก"
        assert payload["creditors"][0]["tax_id"] == "0105551234567"

    def test_template_mode_without_template_falls_back_to_free(
        self, snapshot: ReferenceDataSnapshot
    ) -> None:
        match = _template_only(snapshot).model_copy(update={"template": None})

        assert build_reference_payload(snapshot, match)["mode"] == "free_analysis"
