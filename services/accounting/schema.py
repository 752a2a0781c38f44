"""Pydantic schemas for structured documents and accounting entries.

Reasoning-service output is loosely formatted (amounts as "1,250.00", booleans
as "true"), so numeric and boolean fields are coerced on the way in.
"""

import re
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

_NUMBER_NOISE = re.compile(r"[^\d.\-]")


def coerce_amount(value: Any) -> float | None:
    """Parse an amount written with separators or currency symbols."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _NUMBER_NOISE.sub("", str(value))
    if cleaned in ("", "-", ".", "-."):
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def coerce_bool(value: Any) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "yes", "1", "y"):
        return True
    if text in ("false", "no", "0", "n"):
        return False
    return None


def coerce_text(value: Any) -> str:
    if value is None:
        return ""
    text = str(value).strip()
    return "" if text.lower() in ("null", "none") else text


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class AccountingEntryLine(_Lenient):
    """One debit or credit line.

    Attributes:
        account_code: Chart-of-accounts code
        account_label: Account name as shown to the user
        debit: Debit amount (>= 0)
        credit: Credit amount (>= 0)
    """

    account_code: str = ""
    account_label: str = Field(
        default="", validation_alias=AliasChoices("account_label", "account_name")
    )
    debit: float = Field(default=0.0, ge=0)
    credit: float = Field(default=0.0, ge=0)
    description: str = ""
    selection_reason: str = ""
    side_reason: str = ""

    @field_validator("debit", "credit", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> float:
        return coerce_amount(value) or 0.0

    @field_validator(
        "account_code", "account_label", "description", "selection_reason", "side_reason",
        mode="before",
    )
    @classmethod
    def _text(cls, value: Any) -> str:
        return coerce_text(value)

    @property
    def is_malformed(self) -> bool:
        return not self.account_code or (self.debit == 0 and self.credit == 0)


class BalanceCheck(BaseModel):
    balanced: bool
    total_debit: float
    total_credit: float


class AccountingEntry(_Lenient):
    """Journal entry proposed for one document set."""

    document_date: str = ""
    reference_number: str = ""
    journal_book_code: str = ""
    journal_book_name: str = ""
    creditor_code: str = ""
    creditor_name: str = ""
    debtor_code: str = ""
    debtor_name: str = ""
    entries: list[AccountingEntryLine] = Field(default_factory=list)
    balance_check: BalanceCheck | None = None

    @field_validator(
        "document_date",
        "reference_number",
        "journal_book_code",
        "journal_book_name",
        "creditor_code",
        "creditor_name",
        "debtor_code",
        "debtor_name",
        mode="before",
    )
    @classmethod
    def _text(cls, value: Any) -> str:
        return coerce_text(value)

    @field_validator("entries", mode="before")
    @classmethod
    def _entries(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []


class Receipt(_Lenient):
    number: str = ""
    date: str = ""
    vendor_name: str = ""
    vendor_tax_id: str = ""
    customer_name: str = ""
    customer_tax_id: str = ""
    total: float | None = None
    vat: float | None = None
    payment_method: str = ""
    payment_proof_available: bool | None = None

    @field_validator("total", "vat", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> float | None:
        return coerce_amount(value)

    @field_validator("payment_proof_available", mode="before")
    @classmethod
    def _bool(cls, value: Any) -> bool | None:
        return coerce_bool(value)

    @field_validator(
        "number",
        "date",
        "vendor_name",
        "vendor_tax_id",
        "customer_name",
        "customer_tax_id",
        "payment_method",
        mode="before",
    )
    @classmethod
    def _text(cls, value: Any) -> str:
        return coerce_text(value)


class SourceImage(_Lenient):
    """What the reasoning service saw on one image."""

    image_index: int = 0
    type: str = "unknown"  # receipt, invoice, tax_invoice, payment_slip, unknown
    receipt_number: str = ""
    amount: float | None = None
    date: str = ""

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> float | None:
        return coerce_amount(value)

    @field_validator("image_index", mode="before")
    @classmethod
    def _index(cls, value: Any) -> int:
        amount = coerce_amount(value)
        return int(amount) if amount is not None else 0

    @field_validator("type", "receipt_number", "date", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return coerce_text(value)


class DocumentAnalysis(_Lenient):
    """How the submitted images relate to each other."""

    total_images: int = 1
    relationship: str = "single_document"
    confidence: float | None = None
    analysis_notes: str = ""

    @field_validator("total_images", mode="before")
    @classmethod
    def _count(cls, value: Any) -> int:
        amount = coerce_amount(value)
        return int(amount) if amount else 1

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float | None:
        return coerce_amount(value)

    @field_validator("relationship", "analysis_notes", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return coerce_text(value)
