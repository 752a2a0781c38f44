"""How a multi-image submission fits together.

The reasoning service normally reports the relationship itself. When it
does not, the relationship is derived from the per-image readings.
"""

from services.accounting.schema import DocumentAnalysis, SourceImage
from services.reasoning.base import StructuredAnalysis

SINGLE_DOCUMENT = "single_document"
RECEIPT_WITH_PAYMENT_PROOF = "receipt_with_payment_proof"
MULTI_PAGE_RECEIPT = "multi_page_receipt"
SEPARATE_RECEIPTS = "separate_receipts"

RELATIONSHIPS = frozenset(
    {SINGLE_DOCUMENT, RECEIPT_WITH_PAYMENT_PROOF, MULTI_PAGE_RECEIPT, SEPARATE_RECEIPTS}
)

_BILL_TYPES = frozenset({"receipt", "invoice", "tax_invoice"})
_PAYMENT_TYPES = frozenset({"payment_slip", "transfer_slip", "payment_proof"})


def _amounts_agree(a: float | None, b: float | None, tolerance: float) -> bool:
    return a is not None and b is not None and abs(a - b) <= tolerance


def _derive(images: list[SourceImage], receipt_total: float | None, tolerance: float) -> str:
    bills = [i for i in images if i.type in _BILL_TYPES]
    payments = [i for i in images if i.type in _PAYMENT_TYPES]

    if bills and payments and len(bills) + len(payments) == len(images):
        bill_totals = [b.amount for b in bills if b.amount is not None] or [receipt_total]
        if all(
            any(_amounts_agree(p.amount, total, tolerance) for total in bill_totals)
            for p in payments
        ):
            return RECEIPT_WITH_PAYMENT_PROOF

    numbers = {i.receipt_number for i in images}
    types = {i.type for i in images}
    if len(types) == 1 and len(numbers) == 1 and "" not in numbers:
        return MULTI_PAGE_RECEIPT
    return SEPARATE_RECEIPTS


def resolve_relationship(
    analysis: StructuredAnalysis, image_count: int, tolerance: float = 0.01
) -> DocumentAnalysis:
    """Keep the reported relationship when valid, otherwise derive one."""
    reported = analysis.document_analysis
    if reported is not None and reported.relationship in RELATIONSHIPS:
        return reported.model_copy(update={"total_images": image_count})

    if image_count <= 1:
        relationship = SINGLE_DOCUMENT
        notes = "Single image"
    elif analysis.source_images:
        relationship = _derive(analysis.source_images, analysis.receipt.total, tolerance)
        notes = "Derived from per-image document types and amounts"
    elif analysis.receipt.payment_proof_available:
        relationship = RECEIPT_WITH_PAYMENT_PROOF
        notes = "Derived from the reported payment proof"
    else:
        relationship = SEPARATE_RECEIPTS
        notes = "No per-image information reported"
    return DocumentAnalysis(
        total_images=image_count, relationship=relationship, analysis_notes=notes
    )
