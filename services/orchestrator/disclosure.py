"""Reference data sent with the structuring call.

Template-only mode discloses the matched template plus short lookup lists;
free analysis discloses the posting chart of accounts, all templates and the
business profile.
"""

from typing import Any

from services.matching.models import AnalysisMode
from services.matching.template_matcher import TemplateMatch
from services.reference.records import Party, ReferenceDataSnapshot


def _lookup(parties: tuple[Party, ...], with_tax_id: bool = False) -> list[dict[str, str]]:
    rows = []
    for party in parties:
        row = {"code": party.code, "name": party.display_name}
        if with_tax_id and party.tax_id:
            row["tax_id"] = party.tax_id
        rows.append(row)
    return rows


def build_reference_payload(
    snapshot: ReferenceDataSnapshot, template_match: TemplateMatch
) -> dict[str, Any]:
    journals = [{"code": j.code, "name": j.name} for j in snapshot.journals]

    if template_match.mode is AnalysisMode.TEMPLATE_ONLY and template_match.template:
        template = template_match.template
        return {
            "mode": AnalysisMode.TEMPLATE_ONLY.value,
            "rule": "Use exactly the template accounts: no additions, no omissions.",
            "template": {
                "id": template.id,
                "description": template.description,
                "guidance": template.guidance,
                "journal_code": template.journal_code,
                "accounts": [
                    {"code": line.account_code, "name": line.account_label}
                    for line in template.lines
                ],
            },
            "journals": journals,
            "creditors": _lookup(snapshot.creditors),
            "debtors": _lookup(snapshot.debtors),
            "business": {"name": snapshot.profile.name, "tax_id": snapshot.profile.tax_id},
        }

    return {
        "mode": AnalysisMode.FREE_ANALYSIS.value,
        "accounts": [{"code": a.code, "name": a.name} for a in snapshot.posting_accounts()],
        "journals": journals,
        "creditors": _lookup(snapshot.creditors, with_tax_id=True),
        "debtors": _lookup(snapshot.debtors, with_tax_id=True),
        "templates": [
            {"id": t.id, "description": t.combined_description, "accounts": list(t.account_codes)}
            for t in snapshot.templates
        ],
        "business": {
            "name": snapshot.profile.name,
            "tax_id": snapshot.profile.tax_id,
            "guidance": snapshot.profile.guidance,
        },
    }
