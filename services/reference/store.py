"""Read contract for tenant reference data and an in-memory implementation."""

import copy
import threading
from typing import Any, Protocol

from services.reference.records import PartyRole

Row = dict[str, Any]


class BackingStore(Protocol):
    """Read-only source of tenant reference rows.

    Each loader returns an ordered list of plain rows, empty when the tenant
    has none. Failures raise.
    """

    def load_accounts(self, tenant_id: str) -> list[Row]: ...

    def load_journals(self, tenant_id: str) -> list[Row]: ...

    def load_parties(self, tenant_id: str, role: PartyRole) -> list[Row]: ...

    def load_templates(self, tenant_id: str) -> list[Row]: ...

    def load_profile(self, tenant_id: str) -> Row | None: ...


class InMemoryReferenceStore:
    """Dictionary-backed store for development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Any]] = {}

    def put_tenant(
        self,
        tenant_id: str,
        *,
        accounts: list[Row] | None = None,
        journals: list[Row] | None = None,
        creditors: list[Row] | None = None,
        debtors: list[Row] | None = None,
        templates: list[Row] | None = None,
        profile: Row | None = None,
    ) -> None:
        with self._lock:
            self._data[tenant_id] = {
                "accounts": accounts or [],
                "journals": journals or [],
                PartyRole.CREDITOR.value: creditors or [],
                PartyRole.DEBTOR.value: debtors or [],
                "templates": templates or [],
                "profile": profile,
            }

    def _rows(self, tenant_id: str, collection: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._data.get(tenant_id, {}).get(collection))

    def load_accounts(self, tenant_id: str) -> list[Row]:
        return self._rows(tenant_id, "accounts") or []

    def load_journals(self, tenant_id: str) -> list[Row]:
        return self._rows(tenant_id, "journals") or []

    def load_parties(self, tenant_id: str, role: PartyRole) -> list[Row]:
        return self._rows(tenant_id, role.value) or []

    def load_templates(self, tenant_id: str) -> list[Row]:
        return self._rows(tenant_id, "templates") or []

    def load_profile(self, tenant_id: str) -> Row | None:
        result: Row | None = self._rows(tenant_id, "profile")
        return result
