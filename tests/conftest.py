"""Shared fixtures."""

from datetime import datetime, timezone
from typing import Any

import pytest

from services.reference.records import ReferenceDataSnapshot, build_snapshot
from tests.sample_data import TENANT_ID, tenant_rows


@pytest.fixture
def rows() -> dict[str, Any]:
    return tenant_rows()


@pytest.fixture
def snapshot(rows: dict[str, Any]) -> ReferenceDataSnapshot:
    return build_snapshot(
        TENANT_ID,
        accounts=rows["accounts"],
        journals=rows["journals"],
        creditors=rows["creditors"],
        debtors=rows["debtors"],
        templates=rows["templates"],
        profile=rows["profile"],
        loaded_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
