"""Scores a document against tenant entry templates and selects the analysis mode.

The document is reduced to a short category phrase (what was bought or
paid for). Each template description is compared with it:

* normalised equality                          -> 100 (exact)
* one phrase contains the other                -> 95
* both resolve to the same expense concept     -> 90
* they resolve to different concepts           -> 0 (unrelated domains)
* otherwise, scaled edit-distance similarity   -> at most 80

A template bound to a named counterparty only qualifies when that
counterparty issued the document. Seeing the name in a "received from" or
"bill to" block forces the template's score to 0.
"""

import logging
import re
from collections.abc import Sequence
from enum import Enum

from pydantic import BaseModel, ConfigDict

from services.matching.models import AnalysisMode, MatchMethod, MatchResult, TemplateVerdict
from services.matching.text import (
    contains_phrase,
    jaccard,
    normalize_party_name,
    normalize_text,
    similarity,
    tokens,
)
from services.matching.vocabulary import concepts_in, primary_concept
from services.reference.records import EntryTemplate

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 85.0
CONTAINMENT_SCORE = 95.0
SEMANTIC_SCORE = 90.0
FUZZY_CEILING = 80.0
DESCRIPTION_RESOLVE_THRESHOLD = 0.75
CONTAINMENT_BONUS = 0.2
HEADER_LINES = 3

WITHHOLDING_MARKERS = (
    "หนังสือรับรองการหักภาษี",
    "50 ทวิ",
    "ภ.ง.ด",
    "withholding tax certificate",
    "certificate of tax withheld",
)
INCOME_TYPE_LABELS = ("ประเภทเงินได้", "type of income", "income type")
_SECTION_CODE = re.compile(r"40\s*\(\s*(\d)\s*\)")
_SECTION_CONCEPTS = {"1": "salary", "2": "fees_commission", "8": "service"}

ITEM_HEADER_LABELS = ("รายการ", "description", "item", "สินค้า", "particulars")


class PartyLocation(str, Enum):
    DOCUMENT_HEADER = "document_header"
    ISSUER = "issuer"
    RECEIVED_FROM = "received_from"
    CUSTOMER_NAME = "customer_name"
    BILL_TO = "bill_to"
    PAYER = "payer"
    BODY = "body"
    NOT_FOUND = "not_found"


ISSUER_LOCATIONS = frozenset({PartyLocation.DOCUMENT_HEADER, PartyLocation.ISSUER})

# Reasoning-service location strings that mean "this company paid"
PAYER_LOCATION_HINTS = ("received_from", "customer_name", "customer", "bill_to", "payer", "buyer")

_PAYER_LABELS: tuple[tuple[tuple[str, ...], PartyLocation], ...] = (
    (("received from", "ได้รับเงินจาก", "รับเงินจาก"), PartyLocation.RECEIVED_FROM),
    (("bill to", "billed to", "sold to", "ship to"), PartyLocation.BILL_TO),
    (("customer", "ลูกค้า", "ผู้ซื้อ", "buyer"), PartyLocation.CUSTOMER_NAME),
    (("payer", "ผู้จ่ายเงิน", "ผู้ชำระเงิน", "paid by"), PartyLocation.PAYER),
)
_ISSUER_LABELS = ("seller", "vendor", "issued by", "supplier", "ผู้ขาย", "ผู้ออก", "ผู้รับเงิน")

_NAMED_PARTY = re.compile(
    r"((?:บริษัท|หจก\.?|ห้างหุ้นส่วนจำกัด)\s*[^\s|,]+(?:\s*จำกัด)?(?:\s*\(มหาชน\))?"
    r"|[A-Z][\w&.\-]*(?:\s+[A-Z][\w&.\-]*)*\s+(?:Co\.,?\s*Ltd\.?|Company Limited|Ltd\.?|Inc\.?))"
)


class DocumentCategory(BaseModel):
    """Short description of what the document is for."""

    model_config = ConfigDict(frozen=True)

    label: str = ""
    concept: str | None = None
    source: str = "none"  # income_type, line_item, header, none
    is_withholding_certificate: bool = False


class TemplateCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    template_id: str
    description: str
    score: float
    method: MatchMethod
    rationale: str


class TemplateMatch(BaseModel):
    """Result of template matching plus the mode decision."""

    model_config = ConfigDict(frozen=True)

    result: MatchResult
    template: EntryTemplate | None = None
    mode: AnalysisMode
    category: DocumentCategory
    best_score: float = 0.0
    candidates: tuple[TemplateCandidate, ...] = ()

    @property
    def template_used(self) -> bool:
        return self.mode is AnalysisMode.TEMPLATE_ONLY


def _lines(document_text: str) -> list[str]:
    return [line.strip() for line in document_text.splitlines() if line.strip()]


def _value_after_label(line: str, label: str) -> str:
    index = line.lower().find(label)
    rest = line[index + len(label) :] if index >= 0 else line
    return rest.strip(" :：-\t")


def _income_type(lines: list[str]) -> str:
    for i, line in enumerate(lines):
        lowered = line.lower()
        for label in INCOME_TYPE_LABELS:
            if label in lowered:
                value = _value_after_label(line, label)
                if not value and i + 1 < len(lines):
                    value = lines[i + 1]
                return value
    return ""


def derive_category(document_text: str) -> DocumentCategory:
    """Derive the document's main category phrase.

    Withholding-tax certificates take their category from the income type
    field only; their line items describe the payer's business, not the
    income. Other documents prefer line items over the issuer header.
    """
    lines = _lines(document_text)
    if not lines:
        return DocumentCategory()

    normalized_text = document_text.lower()
    if any(marker in normalized_text for marker in WITHHOLDING_MARKERS):
        income = _income_type(lines)
        section = _SECTION_CODE.search(income) or (
            None if income else _SECTION_CODE.search(document_text)
        )
        concept = primary_concept(income) if income else None
        if concept is None and section:
            concept = _SECTION_CONCEPTS.get(section.group(1))
        label = income or (section.group(0) if section else "")
        return DocumentCategory(
            label=label,
            concept=concept,
            source="income_type" if label else "none",
            is_withholding_certificate=True,
        )

    header, body = lines[:HEADER_LINES], lines[HEADER_LINES:]
    for line in body:
        concept = primary_concept(line)
        if concept:
            return DocumentCategory(label=line, concept=concept, source="line_item")

    for i, line in enumerate(body):
        if any(label in line.lower() for label in ITEM_HEADER_LABELS):
            for candidate in body[i + 1 :]:
                if re.search(r"[^\W\d_]", candidate):
                    return DocumentCategory(label=candidate, source="line_item")

    header_text = " ".join(header)
    return DocumentCategory(
        label=header_text, concept=primary_concept(header_text), source="header"
    )


def named_party(template: EntryTemplate) -> str:
    """Counterparty a template is bound to, if any."""
    if template.party_name:
        return template.party_name
    match = _NAMED_PARTY.search(template.combined_description)
    return match.group(1).strip() if match else ""


def locate_party(document_text: str, party_name: str) -> PartyLocation:
    """Where a party's name appears on the document."""
    target = normalize_party_name(party_name)
    if not target:
        return PartyLocation.NOT_FOUND

    lines = _lines(document_text)
    for i, line in enumerate(lines):
        normalized = normalize_party_name(line)
        if target not in normalized and similarity(target, normalized) < 85:
            continue

        context = " ".join(lines[max(0, i - 1) : i + 1]).lower()
        own_line = line.lower()
        for labels, location in _PAYER_LABELS:
            if any(label in own_line for label in labels):
                return location
        if any(label in own_line for label in _ISSUER_LABELS):
            return PartyLocation.ISSUER
        if i < HEADER_LINES:
            return PartyLocation.DOCUMENT_HEADER
        for labels, location in _PAYER_LABELS:
            if any(label in context for label in labels):
                return location
        if any(label in context for label in _ISSUER_LABELS):
            return PartyLocation.ISSUER
        return PartyLocation.BODY
    return PartyLocation.NOT_FOUND


def issuer_conflict(document_text: str, template: EntryTemplate) -> str:
    """Why a party-bound template cannot apply to the document, or "" when it can."""
    party = named_party(template)
    if not party:
        return ""
    location = locate_party(document_text, party)
    if location in ISSUER_LOCATIONS:
        return ""
    return f"'{party}' appears as {location.value}, not as the issuer"


def score_template(
    category: DocumentCategory, template: EntryTemplate
) -> tuple[float, MatchMethod, str]:
    """Score one template against the document category (0-100)."""
    category_text = normalize_text(category.label)
    description = normalize_text(template.description)
    if not description:
        return 0.0, MatchMethod.NOT_FOUND, "Template has no description"
    if not category_text and category.concept is None:
        return 0.0, MatchMethod.NOT_FOUND, "No category could be derived from the document"

    if category_text and category_text == description:
        return 100.0, MatchMethod.EXACT, "Category equals template description"

    shorter = min(category_text, description, key=len)
    if len(shorter) >= 2 and (
        contains_phrase(description, category_text) or contains_phrase(category_text, description)
    ):
        return CONTAINMENT_SCORE, MatchMethod.FUZZY, "Category and description contain each other"

    template_concepts = concepts_in(template.combined_description)
    if category.concept and category.concept in template_concepts:
        return SEMANTIC_SCORE, MatchMethod.FUZZY, f"Both describe {category.concept}"
    if category.concept and template_concepts:
        return (
            0.0,
            MatchMethod.NOT_FOUND,
            f"Unrelated: document is {category.concept}, template is {template_concepts[0]}",
        )

    best = similarity(category_text, description)
    for word in tokens(category.label):
        for other in tokens(template.description):
            if len(word) >= 3 and len(other) >= 3:
                best = max(best, similarity(word, other))
    score = round(best * FUZZY_CEILING / 100.0, 2)
    if score == 0:
        return 0.0, MatchMethod.NOT_FOUND, "No lexical overlap"
    return score, MatchMethod.FUZZY, f"Lexical similarity {best:.1f}%"


class TemplateMatcher:
    """Selects the best template and decides between template-only and free analysis."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD) -> None:
        self.threshold = threshold

    def _decide(
        self,
        category: DocumentCategory,
        candidates: list[TemplateCandidate],
        templates: Sequence[EntryTemplate],
    ) -> TemplateMatch:
        best: TemplateCandidate | None = None
        for candidate in candidates:
            # Strict comparison keeps the first template on ties
            if best is None or candidate.score > best.score:
                best = candidate

        if best is None or best.score < self.threshold:
            best_score = best.score if best else 0.0
            reason = (
                f"Best template score {best_score:.0f} below {self.threshold:.0f}"
                if best
                else "No template candidates"
            )
            return TemplateMatch(
                result=MatchResult.not_found(reason),
                mode=AnalysisMode.FREE_ANALYSIS,
                category=category,
                best_score=best_score,
                candidates=tuple(candidates),
            )

        template = next(t for t in templates if t.id == best.template_id)
        return TemplateMatch(
            result=MatchResult(
                matched_label=template.description,
                matched_code=template.id,
                confidence_score=best.score,
                method=best.method,
                rationale=best.rationale,
            ),
            template=template,
            mode=AnalysisMode.TEMPLATE_ONLY,
            category=category,
            best_score=best.score,
            candidates=tuple(candidates),
        )

    def match(self, document_text: str, templates: Sequence[EntryTemplate]) -> TemplateMatch:
        """Match consolidated document text against templates.

        Args:
            document_text: Text of every image, in image order
            templates: Tenant templates in store order

        Returns:
            TemplateMatch in template-only mode when the best score reaches the
            threshold, otherwise free-analysis mode with a not_found result
        """
        category = derive_category(document_text)
        candidates: list[TemplateCandidate] = []
        for template in templates:
            score, method, rationale = score_template(category, template)
            if score > 0:
                conflict = issuer_conflict(document_text, template)
                if conflict:
                    score, method, rationale = 0.0, MatchMethod.NOT_FOUND, conflict
            candidates.append(
                TemplateCandidate(
                    template_id=template.id,
                    description=template.description,
                    score=score,
                    method=method,
                    rationale=rationale,
                )
            )

        decision = self._decide(category, candidates, templates)
        logger.info(
            f"Template match: category='{category.label[:60]}' ({category.source}), "
            f"best={decision.best_score:.0f}, mode={decision.mode.value}"
        )
        return decision

    def resolve_description(
        self, description: str, templates: Sequence[EntryTemplate]
    ) -> EntryTemplate | None:
        """Find the template a free-text description refers to."""
        wanted = normalize_text(description)
        if not wanted:
            return None
        for template in templates:
            if wanted in (
                normalize_text(template.description),
                normalize_text(template.combined_description),
            ):
                return template

        best_template: EntryTemplate | None = None
        best_score = 0.0
        for template in templates:
            own = normalize_text(template.description)
            score = jaccard(wanted, own)
            if own and (contains_phrase(wanted, own) or contains_phrase(own, wanted)):
                score += CONTAINMENT_BONUS
            if score > best_score:
                best_template, best_score = template, score
        if best_score > DESCRIPTION_RESOLVE_THRESHOLD:
            return best_template
        return None

    def apply_verdict(
        self,
        document_text: str,
        verdict: TemplateVerdict,
        templates: Sequence[EntryTemplate],
    ) -> TemplateMatch:
        """Turn a reasoning-service template verdict into a TemplateMatch.

        The issuer rule is enforced again locally: a verdict placing the named
        company in a payer position, or denying it is the issuer, scores 0, and
        so does a resolved template whose bound party does not issue the document.
        """
        category = derive_category(document_text)
        confidence = verdict.confidence
        rationale = verdict.reasoning or "Template selected by reasoning service"

        location = (verdict.company_location_in_doc or "").lower()
        if verdict.company_name_in_template:
            if any(hint in location for hint in PAYER_LOCATION_HINTS):
                confidence = 0.0
                rationale = (
                    f"'{verdict.company_name_in_template}' appears as {location}, not as the issuer"
                )
            elif verdict.is_company_issuer is False:
                confidence = 0.0
                rationale = f"'{verdict.company_name_in_template}' is not the document issuer"

        template = (
            self.resolve_description(verdict.matched_template, templates)
            if verdict.matched_template
            else None
        )
        if template is not None and confidence > 0:
            conflict = issuer_conflict(document_text, template)
            if conflict:
                confidence, rationale = 0.0, conflict
        if template is None:
            candidates: list[TemplateCandidate] = []
        else:
            candidates = [
                TemplateCandidate(
                    template_id=template.id,
                    description=template.description,
                    score=confidence,
                    method=MatchMethod.FUZZY if confidence else MatchMethod.NOT_FOUND,
                    rationale=rationale,
                )
            ]
        return self._decide(category, candidates, templates)
