"""Text normalisation and similarity helpers shared by the matchers.

Names and descriptions mix Thai and English. Thai has no word spacing, so
legal-entity markers are removed by substring, while English markers are
removed on word boundaries.
"""

import re
import unicodedata

from rapidfuzz.distance import Levenshtein

# Longest first so "ห้างหุ้นส่วนจำกัด" is removed before "จำกัด"
_THAI_LEGAL_MARKERS = (
    "ห้างหุ้นส่วนจำกัด",
    "ห้างหุ้นส่วนสามัญ",
    "(สำนักงานใหญ่)",
    "สำนักงานใหญ่",
    "ห.จำกัด",
    "(มหาชน)",
    "บริษัท",
    "บจำกัด",
    "บมหาชน",
    "บจก.",
    "บมจ.",
    "หจก.",
    "จำกัด",
    "มหาชน",
)

_ENGLISH_LEGAL_MARKERS = re.compile(
    r"\b(?:public company|company|co\.|corporation|corp\.?|limited|ltd\.?|inc\.?|"
    r"llc|plc|partnership|head office|headquarters|branch \d+)(?=\W|$)",
    re.IGNORECASE,
)

_CONNECTORS = (
    (re.compile(r"แอนด์"), " and "),
    (re.compile(r"และ"), " and "),
    (re.compile(r"&|\+"), " and "),
)

# A consonant optionally doubled before the silencing mark (e.g. "ลล์" or "ล์") reads as one
_SILENCED_CONSONANT = re.compile(r"([ก-ฮ])\1?์")
_REPEATED_TONE_MARK = re.compile(r"([่-๋])\1+")
_WHITESPACE = re.compile(r"\s+")


def _letters_and_digits(text: str) -> str:
    """Replace everything but letters, digits and combining marks with spaces."""
    return "".join(ch if unicodedata.category(ch)[0] in "LNM" else " " for ch in text)


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def normalize_text(text: str) -> str:
    """Lowercase, fold Thai vowel variants, strip punctuation and extra spaces."""
    if not text:
        return ""
    text = unicodedata.normalize("NFC", text).lower()
    # "ํา" (nikhahit + sara aa) is a common OCR rendering of "ำ"
    text = text.replace("ํา", "ำ")
    return collapse_whitespace(_letters_and_digits(text))


def normalize_party_name(name: str) -> str:
    """Canonical form of a counterparty name for comparison."""
    if not name:
        return ""
    text = unicodedata.normalize("NFC", name).lower().replace("ํา", "ำ")
    for marker in _THAI_LEGAL_MARKERS:
        text = text.replace(marker, " ")
    text = _ENGLISH_LEGAL_MARKERS.sub(" ", text)
    # Connectors first: "แอนด์" carries a silencing mark
    for pattern, replacement in _CONNECTORS:
        text = pattern.sub(replacement, text)
    text = _SILENCED_CONSONANT.sub(r"\1", text)
    text = _REPEATED_TONE_MARK.sub(r"\1", text)
    return collapse_whitespace(_letters_and_digits(text))


def normalize_tax_id(tax_id: str) -> str:
    """Strip separators and whitespace from a tax identifier."""
    if not tax_id:
        return ""
    return re.sub(r"[\s\-./]", "", tax_id)


def similarity(a: str, b: str) -> float:
    """Edit-distance similarity in percent: (1 - distance / longer length) * 100."""
    if not a or not b:
        return 0.0
    if a == b:
        return 100.0
    return Levenshtein.normalized_similarity(a, b) * 100.0


def tokens(text: str) -> list[str]:
    return [t for t in normalize_text(text).split(" ") if t]


def jaccard(a: str, b: str) -> float:
    """Word-set Jaccard similarity of two normalised strings (0-1)."""
    set_a, set_b = set(tokens(a)), set(tokens(b))
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def phrase_position(phrase: str, text: str) -> int:
    """Position of ``phrase`` in normalised ``text``, or -1.

    ASCII phrases must sit on word boundaries ("oil" is not in "toilet").
    Thai has no word spacing, so other phrases match anywhere.
    """
    if not phrase:
        return -1
    if phrase.isascii():
        match = re.search(rf"(?<![a-z0-9]){re.escape(phrase)}(?![a-z0-9])", text)
        return match.start() if match else -1
    return text.find(phrase)


def contains_phrase(text: str, phrase: str) -> bool:
    return phrase_position(phrase, text) >= 0
