"""Typed tenant reference data.

Store rows arrive as loosely-typed dictionaries. They are decoded into these
frozen records exactly once, when the cache loads a tenant, so matching and
scoring code never inspects row shapes at runtime.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

POSTING_ACCOUNT_MIN_LEVEL = 3


class PartyRole(str, Enum):
    CREDITOR = "creditor"
    DEBTOR = "debtor"


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


class Account(_Record):
    code: str
    name: str
    level: int = 0


class Journal(_Record):
    code: str
    name: str


class Party(_Record):
    """Creditor or debtor. ``names`` holds every non-deleted name variant, preferred first."""

    code: str
    names: tuple[str, ...]
    tax_id: str = ""
    role: PartyRole

    @property
    def display_name(self) -> str:
        return self.names[0] if self.names else ""


class TemplateLine(_Record):
    account_code: str
    account_label: str = ""


class EntryTemplate(_Record):
    """Reusable entry template.

    Attributes:
        id: Template identifier
        description: Short description matched against the document category
        guidance: Free-text usage guidance
        lines: Ordered account lines the template prescribes
        journal_code: Journal book the template posts to, if fixed
        party_name: Counterparty the template is bound to, if any
    """

    id: str
    description: str
    guidance: str = ""
    lines: tuple[TemplateLine, ...]
    journal_code: str = ""
    party_name: str = ""

    @property
    def combined_description(self) -> str:
        if self.guidance:
            return f"{self.description} | {self.guidance}"
        return self.description

    @property
    def account_codes(self) -> tuple[str, ...]:
        return tuple(line.account_code for line in self.lines)


class BusinessProfile(_Record):
    name: str = ""
    tax_id: str = ""
    guidance: str = ""


class ReferenceDataSnapshot(_Record):
    """Immutable per-tenant view of all reference collections."""

    tenant_id: str
    accounts: tuple[Account, ...] = ()
    journals: tuple[Journal, ...] = ()
    creditors: tuple[Party, ...] = ()
    debtors: tuple[Party, ...] = ()
    templates: tuple[EntryTemplate, ...] = ()
    profile: BusinessProfile = Field(default_factory=BusinessProfile)
    loaded_at: datetime

    def posting_accounts(self) -> tuple[Account, ...]:
        """Accounts that can carry postings (header levels excluded)."""
        return tuple(a for a in self.accounts if a.level >= POSTING_ACCOUNT_MIN_LEVEL)

    def parties(self, role: PartyRole) -> tuple[Party, ...]:
        return self.creditors if role is PartyRole.CREDITOR else self.debtors

    def account(self, code: str) -> Account | None:
        return next((a for a in self.accounts if a.code == code), None)

    def has_party_code(self, role: PartyRole, code: str) -> bool:
        return any(p.code == code for p in self.parties(role))


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _preferred_names(row: dict[str, Any]) -> tuple[str, ...]:
    """Non-deleted name variants, Thai entry first when present."""
    raw = row.get("names") or []
    live = [
        n for n in raw if isinstance(n, dict) and not n.get("isdelete") and _text(n.get("name"))
    ]
    live.sort(key=lambda n: 0 if n.get("code") == "th" else 1)
    names = [_text(n["name"]) for n in live]
    # Legacy rows carry a single name field
    for key in ("name", "name1"):
        if _text(row.get(key)) and _text(row.get(key)) not in names:
            names.append(_text(row[key]))
    return tuple(names)


def decode_account(row: dict[str, Any]) -> Account:
    level = row.get("accountlevel", row.get("level", 0))
    try:
        level = int(level)
    except (TypeError, ValueError):
        level = 0
    return Account(
        code=_text(row.get("accountcode", row.get("code"))),
        name=_text(row.get("accountname", row.get("name"))),
        level=level,
    )


def decode_journal(row: dict[str, Any]) -> Journal:
    return Journal(code=_text(row.get("code")), name=_text(row.get("name1", row.get("name"))))


def decode_party(row: dict[str, Any], role: PartyRole) -> Party:
    return Party(
        code=_text(row.get("code")),
        names=_preferred_names(row),
        tax_id=_text(row.get("taxid", row.get("tax_id"))),
        role=role,
    )


def decode_template(row: dict[str, Any]) -> EntryTemplate:
    lines = tuple(
        TemplateLine(
            account_code=_text(d.get("accountcode")),
            account_label=_text(d.get("detail", d.get("accountname"))),
        )
        for d in row.get("details") or []
        if isinstance(d, dict) and _text(d.get("accountcode"))
    )
    return EntryTemplate(
        id=_text(row.get("guidfixed") or row.get("_id") or row.get("id")),
        description=_text(row.get("description")),
        guidance=_text(row.get("promptdescription")),
        lines=lines,
        journal_code=_text(row.get("journalbookcode")),
        party_name=_text(row.get("partyname")),
    )


def decode_profile(row: dict[str, Any] | None) -> BusinessProfile:
    if not row:
        return BusinessProfile()
    names = _preferred_names(row)
    settings = row.get("settings") or {}
    return BusinessProfile(
        name=names[0] if names else "",
        tax_id=_text(settings.get("taxid") if isinstance(settings, dict) else ""),
        guidance=_text(row.get("promptshopinfo")),
    )


def build_snapshot(
    tenant_id: str,
    *,
    accounts: list[dict[str, Any]],
    journals: list[dict[str, Any]],
    creditors: list[dict[str, Any]],
    debtors: list[dict[str, Any]],
    templates: list[dict[str, Any]],
    profile: dict[str, Any] | None,
    loaded_at: datetime,
) -> ReferenceDataSnapshot:
    """Decode raw rows into a snapshot.

    Templates without account lines are dropped since they cannot drive a posting.
    """
    decoded_templates = [decode_template(row) for row in templates]
    usable = tuple(t for t in decoded_templates if t.lines)
    if len(usable) < len(decoded_templates):
        logger.info(
            f"Tenant {tenant_id}: skipped {len(decoded_templates) - len(usable)} "
            "templates without account lines"
        )
    return ReferenceDataSnapshot(
        tenant_id=tenant_id,
        accounts=tuple(decode_account(r) for r in accounts),
        journals=tuple(decode_journal(r) for r in journals),
        creditors=tuple(decode_party(r, PartyRole.CREDITOR) for r in creditors),
        debtors=tuple(decode_party(r, PartyRole.DEBTOR) for r in debtors),
        templates=usable,
        profile=decode_profile(profile),
        loaded_at=loaded_at,
    )
