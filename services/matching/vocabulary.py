"""Expense and income concepts with their English and Thai synonyms.

A concept groups words that describe the same kind of transaction. The
template matcher treats two phrases that resolve to the same concept as
semantically close, and two phrases that resolve to different concepts as
unrelated.
"""

from services.matching.text import normalize_text, phrase_position

CONCEPTS: dict[str, tuple[str, ...]] = {
    "fuel": (
        "fuel",
        "petrol",
        "gasoline",
        "diesel",
        "gas station",
        "น้ำมัน",
        "เชื้อเพลิง",
        "ดีเซล",
        "เบนซิน",
        "แก๊สโซฮอล์",
        "ปั๊ม",
    ),
    "electricity": ("electricity", "electric", "power bill", "ไฟฟ้า", "ค่าไฟ", "พลังงานไฟฟ้า"),
    "water": ("water supply", "water bill", "ค่าน้ำประปา", "ประปา"),
    "telephone": ("telephone", "mobile", "phone", "โทรศัพท์", "มือถือ"),
    "internet": ("internet", "broadband", "wifi", "fiber", "อินเทอร์เน็ต", "อินเตอร์เน็ต"),
    "accounting_service": (
        "accounting",
        "bookkeeping",
        "audit",
        "ทำบัญชี",
        "บริการบัญชี",
        "สอบบัญชี",
        "ค่าทำบัญชี",
    ),
    "salary": ("salary", "wage", "payroll", "เงินเดือน", "ค่าจ้าง", "ค่าแรง", "40(1)"),
    "fees_commission": (
        "commission",
        "professional fee",
        "consulting fee",
        "ค่านายหน้า",
        "ค่าธรรมเนียม",
        "ค่าที่ปรึกษา",
        "40(2)",
    ),
    "rent": ("rent", "rental", "lease", "ค่าเช่า", "เช่า"),
    "transport": (
        "transport",
        "shipping",
        "delivery",
        "freight",
        "courier",
        "ขนส่ง",
        "ค่าส่ง",
        "ไปรษณีย์",
    ),
    "food": ("food", "meal", "restaurant", "catering", "beverage", "อาหาร", "เครื่องดื่ม"),
    "office_supplies": (
        "office supplies",
        "stationery",
        "paper",
        "printer ink",
        "เครื่องเขียน",
        "วัสดุสำนักงาน",
        "อุปกรณ์สำนักงาน",
    ),
    "repair": ("repair", "maintenance", "ซ่อม", "ซ่อมแซม", "บำรุงรักษา"),
    "advertising": ("advertising", "marketing", "ads", "โฆษณา", "การตลาด"),
    "insurance": ("insurance", "premium", "ประกัน", "เบี้ยประกัน"),
    "travel": ("hotel", "accommodation", "airfare", "flight", "ที่พัก", "โรงแรม", "ตั๋วเครื่องบิน"),
    "software": ("software", "subscription", "license", "cloud", "ซอฟต์แวร์", "ค่าสมาชิก"),
    "service": ("service fee", "service charge", "ค่าบริการ", "ค่าจ้างทำของ", "40(8)"),
}

# Matched only when no more specific concept is present ("ค่าบริการอินเทอร์เน็ต" is internet)
GENERIC_CONCEPTS = frozenset({"service"})

_NORMALIZED: tuple[tuple[str, tuple[str, ...]], ...] = tuple(
    (concept, tuple(normalize_text(s) for s in synonyms)) for concept, synonyms in CONCEPTS.items()
)


def concepts_in(text: str) -> list[str]:
    """Concepts mentioned in ``text``, in order of first appearance.

    A synonym lying inside a longer synonym of another concept does not
    count ("ค่าจ้างทำของ" is a service, not a wage).
    """
    normalized = normalize_text(text)
    if not normalized:
        return []
    hits: list[tuple[int, int, int, str]] = []
    for order, (concept, synonyms) in enumerate(_NORMALIZED):
        for synonym in synonyms:
            position = phrase_position(synonym, normalized)
            if position >= 0:
                hits.append((position, position + len(synonym), order, concept))

    first: dict[str, tuple[int, int, int]] = {}
    for start, end, order, concept in hits:
        covered = any(
            other[3] != concept
            and other[0] <= start
            and end <= other[1]
            and other[1] - other[0] > end - start
            for other in hits
        )
        key = (start, start - end, order)
        if not covered and (concept not in first or key < first[concept]):
            first[concept] = key
    ordered = sorted(first, key=lambda concept: first[concept])
    specific = [c for c in ordered if c not in GENERIC_CONCEPTS]
    return specific + [c for c in ordered if c in GENERIC_CONCEPTS]


def primary_concept(text: str) -> str | None:
    found = concepts_in(text)
    return found[0] if found else None
