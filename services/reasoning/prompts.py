"""Prompt builders for the reasoning service.

Prompts only state the task and the output shape; accounting knowledge
lives in tenant reference data and templates.
"""

import json
from typing import Any

TRANSCRIPTION_SCHEMA = (
    '{"text": string, "confidence": number 0-100, "text_clarity": number 0-100, '
    '"has_handwriting": boolean, "handwriting_confidence": number 0-100 | null, '
    '"issues": [string]}'
)

VERDICT_SCHEMA = (
    '{"matched_template": string | null, "confidence": number 0-100, "reasoning": string, '
    '"company_name_in_template": string | null, '
    '"company_location_in_doc": "document_header" | "issuer" | "received_from" | '
    '"customer_name" | "bill_to" | "payer" | "not_found" | null, '
    '"is_company_issuer": boolean | null}'
)

ANALYSIS_SCHEMA = (
    '{"document_analysis": {"total_images": number, "relationship": '
    '"single_document" | "receipt_with_payment_proof" | "multi_page_receipt" | '
    '"separate_receipts", "confidence": number, "analysis_notes": string}, '
    '"source_images": [{"image_index": number, "type": "receipt" | "invoice" | '
    '"tax_invoice" | "payment_slip" | "unknown", "receipt_number": string, '
    '"amount": number, "date": "YYYY-MM-DD"}], '
    '"receipt": {"number": string, "date": "YYYY-MM-DD", "vendor_name": string, '
    '"vendor_tax_id": string, "customer_name": string, "customer_tax_id": string, '
    '"total": number, "vat": number | null, "payment_method": string, '
    '"payment_proof_available": boolean}, '
    '"transaction_type": "purchase" | "sale", '
    '"accounting_entry": {"document_date": "YYYY-MM-DD", "reference_number": string, '
    '"journal_book_code": string, "journal_book_name": string, '
    '"creditor_code": string | null, "creditor_name": string, '
    '"debtor_code": string | null, "debtor_name": string, '
    '"entries": [{"account_code": string, "account_name": string, "debit": number, '
    '"credit": number, "description": string, "selection_reason": string}]}}'
)


def transcription_prompt() -> str:
    return (
        "Transcribe all text on this document image exactly as written, keeping line breaks. "
        "Rate how confident you are in the transcription and how legible the image is, and "
        "say whether any of the text is handwritten.\n"
        f"Return ONLY JSON matching: {TRANSCRIPTION_SCHEMA}"
    )


def template_verdict_prompt(document_text: str, descriptions: list[str]) -> str:
    options = "\n".join(f"- {d}" for d in descriptions)
    return (
        "Choose the entry template that describes what this document is for, or null if "
        "none does. If a template names a company, report where that company appears on the "
        "document and whether it is the issuer.\n\n"
        f"TEMPLATES:\n{options}\n\nDOCUMENT TEXT:\n{document_text}\n\n"
        f"Return ONLY JSON matching: {VERDICT_SCHEMA}"
    )


def analysis_prompt(document_text: str, image_count: int, reference: dict[str, Any]) -> str:
    reference_json = json.dumps(reference, ensure_ascii=False, separators=(",", ":"))
    return (
        f"Analyse these {image_count} document image(s) and propose one accounting entry. "
        "Use only codes that appear in the reference data. Report amounts exactly as printed; "
        "do not adjust them to make debits equal credits.\n\n"
        f"REFERENCE DATA:\n{reference_json}\n\nDOCUMENT TEXT:\n{document_text}\n\n"
        f"Return ONLY JSON matching: {ANALYSIS_SCHEMA}"
    )
