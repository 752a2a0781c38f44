"""Reference data store backed by S3-compatible object storage (MinIO).

Each tenant collection is one JSON document:

    <bucket>/<tenant_id>/accounts.json
    <bucket>/<tenant_id>/journals.json
    <bucket>/<tenant_id>/creditors.json
    <bucket>/<tenant_id>/debtors.json
    <bucket>/<tenant_id>/templates.json
    <bucket>/<tenant_id>/profile.json

A missing object means the tenant has no rows for that collection.

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import json
import logging
from typing import Any

from minio import Minio
from minio.error import S3Error
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.reference.records import PartyRole
from services.reference.store import Row
from services.shared.config import Settings
from services.shared.errors import BackingStoreError

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NoSuchObject"})


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, S3Error) and exc.code not in _MISSING_CODES


class ObjectStorageReferenceStore:
    """Reads tenant reference collections from MinIO."""

    def __init__(self, settings: Settings, client: Minio | None = None) -> None:
        """Initialize the store.

        Args:
            settings: Application settings with storage configuration
            client: Preconfigured client (created lazily from settings when omitted)
        """
        self.settings = settings
        self._client = client

    def _get_client(self) -> Minio:
        """Get or create MinIO client (lazy initialization).

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is None:
            if not self.settings.storage_access_key or not self.settings.storage_secret_key:
                raise ValueError(
                    "Storage credentials not configured. "
                    "Set APP_STORAGE_ACCESS_KEY and APP_STORAGE_SECRET_KEY."
                )
            self._client = Minio(
                endpoint=self.settings.storage_endpoint,
                access_key=self.settings.storage_access_key,
                secret_key=self.settings.storage_secret_key,
                secure=self.settings.storage_secure,
            )
            logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")
        return self._client

    def health_check(self) -> bool:
        """Check if the reference bucket is reachable."""
        try:
            return bool(self._get_client().bucket_exists(self.settings.storage_bucket))
        except Exception as e:
            logger.warning(f"Reference store health check failed: {e}")
            return False

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _fetch(self, object_name: str) -> bytes | None:
        client = self._get_client()
        try:
            response = client.get_object(self.settings.storage_bucket, object_name)
        except S3Error as e:
            if e.code in _MISSING_CODES:
                return None
            raise
        try:
            data: bytes = response.read()
            return data
        finally:
            response.close()
            response.release_conn()

    def _load(self, tenant_id: str, collection: str) -> Any:
        object_name = f"{tenant_id}/{collection}.json"
        try:
            data = self._fetch(object_name)
            if data is None:
                return None
            return json.loads(data)
        except (S3Error, ValueError, OSError) as e:
            logger.error(f"Failed to read {object_name} from {self.settings.storage_bucket}: {e}")
            raise BackingStoreError(tenant_id, collection, e) from e

    def _load_rows(self, tenant_id: str, collection: str) -> list[Row]:
        payload = self._load(tenant_id, collection)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise BackingStoreError(
                tenant_id, collection, ValueError("expected a JSON array of rows")
            )
        return [row for row in payload if isinstance(row, dict)]

    def load_accounts(self, tenant_id: str) -> list[Row]:
        return self._load_rows(tenant_id, "accounts")

    def load_journals(self, tenant_id: str) -> list[Row]:
        return self._load_rows(tenant_id, "journals")

    def load_parties(self, tenant_id: str, role: PartyRole) -> list[Row]:
        return self._load_rows(tenant_id, f"{role.value}s")

    def load_templates(self, tenant_id: str) -> list[Row]:
        return self._load_rows(tenant_id, "templates")

    def load_profile(self, tenant_id: str) -> Row | None:
        payload = self._load(tenant_id, "profile")
        return payload if isinstance(payload, dict) else None
