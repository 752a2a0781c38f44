"""Counterparty resolution by tax id or fuzzy name.

Only lexical or identifier evidence counts. Two businesses that merely sell
the same kind of thing are never matched.
"""

import logging
from collections.abc import Iterable

from services.matching.models import MatchMethod, MatchResult
from services.matching.text import normalize_party_name, normalize_tax_id, similarity
from services.reference.records import Party

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 70.0


class PartyMatcher:
    """Matches an extracted name and tax id against creditors or debtors."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD) -> None:
        self.threshold = threshold

    def match(
        self, extracted_name: str, extracted_tax_id: str, parties: Iterable[Party]
    ) -> MatchResult:
        """Find the best matching party.

        Args:
            extracted_name: Counterparty name read from the document
            extracted_tax_id: Tax id read from the document (may be empty)
            parties: Candidate parties in store order

        Returns:
            tax_id match (100) when identifiers agree, exact (100) on equal
            normalised names, fuzzy at or above the threshold, otherwise not_found
        """
        candidates = list(parties)

        tax_id = normalize_tax_id(extracted_tax_id)
        if tax_id:
            for party in candidates:
                if party.tax_id and normalize_tax_id(party.tax_id) == tax_id:
                    return MatchResult(
                        matched_label=party.display_name,
                        matched_code=party.code,
                        confidence_score=100.0,
                        method=MatchMethod.TAX_ID,
                        rationale=f"Tax id {tax_id} matches party {party.code}",
                    )

        query = normalize_party_name(extracted_name)
        if not query:
            return MatchResult.not_found("No counterparty name or matching tax id on the document")

        best_score = 0.0
        best_party: Party | None = None
        best_name = ""
        for party in candidates:
            for name in party.names:
                normalized = normalize_party_name(name)
                if not normalized:
                    continue
                if normalized == query:
                    return MatchResult(
                        matched_label=name,
                        matched_code=party.code,
                        confidence_score=100.0,
                        method=MatchMethod.EXACT,
                        rationale=f"'{extracted_name}' equals '{name}' after normalisation",
                    )
                score = similarity(query, normalized)
                if score > best_score:
                    best_score, best_party, best_name = score, party, name

        if best_party is None or best_score < self.threshold:
            logger.debug(f"No party match for '{extracted_name}' (best {best_score:.1f})")
            return MatchResult.not_found(
                f"Best name similarity {best_score:.1f} is below {self.threshold:.0f}"
            )

        return MatchResult(
            matched_label=best_name,
            matched_code=best_party.code,
            confidence_score=round(best_score, 2),
            method=MatchMethod.FUZZY,
            rationale=f"'{extracted_name}' is {best_score:.1f}% similar to '{best_name}'",
        )
