"""Per-tenant, time-bounded cache of reference data snapshots.

Each tenant has its own lock so a slow load for one tenant never blocks
another. Loads use double-checked locking: concurrent callers that find a
stale snapshot queue on the tenant lock, and only the first performs the
reload; the rest see the fresh snapshot when they get the lock.
"""

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone

from services.reference.records import PartyRole, ReferenceDataSnapshot, build_snapshot
from services.reference.store import BackingStore
from services.shared import metrics
from services.shared.config import Settings
from services.shared.errors import BackingStoreError

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("snapshot", "loaded_at")

    def __init__(self, snapshot: ReferenceDataSnapshot, loaded_at: float) -> None:
        self.snapshot = snapshot
        self.loaded_at = loaded_at


class ReferenceDataCache:
    """Caches one immutable snapshot per tenant for ``ttl_seconds``."""

    def __init__(
        self,
        store: BackingStore,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            store: Backing store to load reference rows from
            ttl_seconds: Maximum snapshot age before a reload
            clock: Monotonic clock (injectable for tests)
        """
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._tenant_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, store: BackingStore) -> "ReferenceDataCache":
        return cls(store, ttl_seconds=settings.reference_cache_ttl_seconds)

    def _lock_for(self, tenant_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._tenant_locks.get(tenant_id)
            if lock is None:
                lock = threading.Lock()
                self._tenant_locks[tenant_id] = lock
            return lock

    def _live(self, tenant_id: str) -> ReferenceDataSnapshot | None:
        entry = self._entries.get(tenant_id)
        if entry is not None and self._clock() - entry.loaded_at < self._ttl:
            return entry.snapshot
        return None

    def get(self, tenant_id: str) -> ReferenceDataSnapshot:
        """Return the tenant's snapshot, loading it when missing or expired.

        Raises:
            BackingStoreError: If any collection could not be read. A previously
                cached snapshot is kept and stays available through ``peek``.
        """
        snapshot = self._live(tenant_id)
        if snapshot is not None:
            metrics.reference_cache_requests_total.labels(result="hit").inc()
            return snapshot

        with self._lock_for(tenant_id):
            snapshot = self._live(tenant_id)
            if snapshot is not None:
                metrics.reference_cache_requests_total.labels(result="hit").inc()
                return snapshot

            metrics.reference_cache_requests_total.labels(result="miss").inc()
            snapshot = self._load(tenant_id)
            self._entries[tenant_id] = _Entry(snapshot, self._clock())
            return snapshot

    def peek(self, tenant_id: str) -> ReferenceDataSnapshot | None:
        """Return whatever snapshot is cached for the tenant, fresh or stale."""
        entry = self._entries.get(tenant_id)
        return entry.snapshot if entry else None

    def invalidate(self, tenant_id: str) -> None:
        with self._lock_for(tenant_id):
            self._entries.pop(tenant_id, None)
        logger.info(f"Invalidated reference data for tenant {tenant_id}")

    def clear_all(self) -> None:
        with self._registry_lock:
            self._entries.clear()
        logger.info("Cleared reference data cache")

    def _load(self, tenant_id: str) -> ReferenceDataSnapshot:
        start = time.monotonic()
        collection = "accounts"
        try:
            accounts = self._store.load_accounts(tenant_id)
            collection = "journals"
            journals = self._store.load_journals(tenant_id)
            collection = "creditors"
            creditors = self._store.load_parties(tenant_id, PartyRole.CREDITOR)
            collection = "debtors"
            debtors = self._store.load_parties(tenant_id, PartyRole.DEBTOR)
            collection = "templates"
            templates = self._store.load_templates(tenant_id)
            collection = "profile"
            profile = self._store.load_profile(tenant_id)
        except BackingStoreError:
            metrics.reference_cache_loads_total.labels(status="failed").inc()
            raise
        except Exception as e:
            metrics.reference_cache_loads_total.labels(status="failed").inc()
            logger.error(f"Reference load failed for tenant {tenant_id} ({collection}): {e}")
            raise BackingStoreError(tenant_id, collection, e) from e

        snapshot = build_snapshot(
            tenant_id,
            accounts=accounts,
            journals=journals,
            creditors=creditors,
            debtors=debtors,
            templates=templates,
            profile=profile,
            loaded_at=datetime.now(timezone.utc),
        )
        metrics.reference_cache_loads_total.labels(status="success").inc()
        logger.info(
            f"Loaded reference data for tenant {tenant_id} in {time.monotonic() - start:.2f}s: "
            f"{len(snapshot.accounts)} accounts, {len(snapshot.journals)} journals, "
            f"{len(snapshot.creditors)} creditors, {len(snapshot.debtors)} debtors, "
            f"{len(snapshot.templates)} templates"
        )
        return snapshot
