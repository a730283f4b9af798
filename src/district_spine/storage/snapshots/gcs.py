"""Google Cloud Storage snapshot store.

Object layout::

    {prefix}/{snapshot_id}/manifest.json
    {prefix}/{snapshot_id}/metadata.json
    {prefix}/{snapshot_id}/district_{id}.json
    {prefix}/{snapshot_id}/all-districts-rankings.json

Snapshot ids are enumerated from the ``{prefix}/`` delimiter listing, so
``list_snapshots`` never downloads more than the metadata it returns.
"""

from __future__ import annotations

import json
from typing import Any

from district_spine.core.errors import ConfigError, SpineError, StorageCorruptionError
from district_spine.core.logging import get_logger
from district_spine.execution.circuit_breaker import CircuitBreaker
from district_spine.storage.cloud import run_cloud_call
from district_spine.storage.snapshots.base import SnapshotStore, district_file_name

logger = get_logger(__name__)


class GCSSnapshotStore(SnapshotStore):
    """Snapshot store over a GCS bucket.

    Args:
        bucket_name: Bucket holding the snapshots
        prefix: Key prefix (default ``snapshots``)
        project: GCP project for the default client
        client: A ``google.cloud.storage.Client`` (or compatible); created if omitted
        breaker: Circuit breaker guarding every call; a dedicated one if omitted
    """

    backend_name = "gcs"

    def __init__(
        self,
        bucket_name: str,
        *,
        prefix: str = "snapshots",
        project: str | None = None,
        client: Any = None,
        breaker: CircuitBreaker | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        if client is None:
            try:
                from google.cloud import storage
            except ImportError:
                raise ConfigError(
                    "google-cloud-storage is required for the GCS snapshot store. "
                    "Install with: pip install google-cloud-storage"
                ) from None
            client = storage.Client(project=project)

        self.bucket_name = bucket_name
        self.prefix = prefix.strip("/")
        self._client = client
        self._bucket = client.bucket(bucket_name)
        self._breaker = breaker or CircuitBreaker(
            name="gcs-snapshot", failure_threshold=5, recovery_timeout=60.0
        )
        logger.info("snapshot_store.initialized", backend=self.backend_name, bucket=bucket_name, prefix=self.prefix)

    def _key(self, snapshot_id: str, name: str) -> str:
        return f"{self.prefix}/{snapshot_id}/{name}"

    async def _read_json(self, snapshot_id: str, name: str) -> dict[str, Any] | None:
        key = self._key(snapshot_id, name)
        text = await run_cloud_call(
            self._breaker,
            lambda: self._bucket.blob(key).download_as_text(),
            operation="read",
            backend=self.backend_name,
        )
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise StorageCorruptionError(
                f"gs://{self.bucket_name}/{key} is not valid JSON: {e.msg}",
                path=key,
                cause=e,
            ).with_context(snapshot_id=snapshot_id, backend=self.backend_name) from e

    async def _write_json(self, snapshot_id: str, name: str, data: dict[str, Any]) -> int:
        key = self._key(snapshot_id, name)
        payload = json.dumps(data, indent=2)
        await run_cloud_call(
            self._breaker,
            lambda: self._bucket.blob(key).upload_from_string(
                payload, content_type="application/json"
            ),
            operation="write",
            backend=self.backend_name,
        )
        return len(payload.encode("utf-8"))

    async def _write_district_batch(
        self, snapshot_id: str, items: list[tuple[str, dict[str, Any]]]
    ) -> dict[str, int]:
        sizes: dict[str, int] = {}
        for district_id, record in items:
            sizes[district_id] = await self._write_json(
                snapshot_id, district_file_name(district_id), record
            )
        return sizes

    async def _list_snapshot_ids(self) -> list[str]:
        root = f"{self.prefix}/"

        def _list() -> list[str]:
            iterator = self._client.list_blobs(self.bucket_name, prefix=root, delimiter="/")
            for _ in iterator:
                pass
            return sorted(iterator.prefixes)

        prefixes = await run_cloud_call(
            self._breaker, _list, operation="list", backend=self.backend_name, not_found=[]
        )
        return [p[len(root) :].rstrip("/") for p in prefixes]

    async def _delete_snapshot(self, snapshot_id: str) -> bool:
        def _delete() -> int:
            blobs = list(
                self._client.list_blobs(self.bucket_name, prefix=f"{self.prefix}/{snapshot_id}/")
            )
            for blob in blobs:
                blob.delete()
            return len(blobs)

        deleted = await run_cloud_call(
            self._breaker, _delete, operation="delete", backend=self.backend_name, not_found=0
        )
        return deleted > 0

    async def is_ready(self) -> bool:
        try:
            return bool(
                await run_cloud_call(
                    self._breaker,
                    self._bucket.exists,
                    operation="health_check",
                    backend=self.backend_name,
                    not_found=False,
                )
            )
        except SpineError as e:
            logger.error("snapshot_store.not_ready", backend=self.backend_name, error=e.message)
            return False
