"""Firestore snapshot store.

Document layout::

    {collection}/{snapshot_id}                  fields: manifest, metadata, rankings
    {collection}/{snapshot_id}/districts/{id}   one document per district

District documents are committed with one ``WriteBatch`` per district
batch, so a batch either lands whole or not at all.
"""

from __future__ import annotations

import json
from typing import Any

from district_spine.core.errors import ConfigError, SpineError, StorageCorruptionError
from district_spine.core.logging import get_logger
from district_spine.execution.circuit_breaker import CircuitBreaker
from district_spine.storage.cloud import run_cloud_call
from district_spine.storage.snapshots.base import (
    MANIFEST_FILE,
    METADATA_FILE,
    RANKINGS_FILE,
    SnapshotStore,
    parse_district_file_name,
)

logger = get_logger(__name__)

DISTRICTS_SUBCOLLECTION = "districts"

_FIELD_BY_FILE = {
    MANIFEST_FILE: "manifest",
    METADATA_FILE: "metadata",
    RANKINGS_FILE: "rankings",
}


def _field_for(name: str) -> str:
    try:
        return _FIELD_BY_FILE[name]
    except KeyError:
        raise ValueError(f"Unknown snapshot object: {name}") from None


class FirestoreSnapshotStore(SnapshotStore):
    """Snapshot store over a Firestore collection."""

    backend_name = "firestore"

    def __init__(
        self,
        collection: str = "snapshots",
        *,
        project: str | None = None,
        client: Any = None,
        breaker: CircuitBreaker | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        if client is None:
            try:
                from google.cloud import firestore
            except ImportError:
                raise ConfigError(
                    "google-cloud-firestore is required for the Firestore snapshot store. "
                    "Install with: pip install google-cloud-firestore"
                ) from None
            client = firestore.Client(project=project)

        self.collection = collection
        self._client = client
        self._breaker = breaker or CircuitBreaker(
            name="firestore-snapshot", failure_threshold=5, recovery_timeout=60.0
        )
        logger.info("snapshot_store.initialized", backend=self.backend_name, collection=collection)

    def _doc(self, snapshot_id: str) -> Any:
        return self._client.collection(self.collection).document(snapshot_id)

    async def _call(self, func: Any, operation: str, not_found: Any = None) -> Any:
        return await run_cloud_call(
            self._breaker, func, operation=operation, backend=self.backend_name, not_found=not_found
        )

    async def _read_json(self, snapshot_id: str, name: str) -> dict[str, Any] | None:
        district_id = parse_district_file_name(name)
        if district_id is not None:
            ref = self._doc(snapshot_id).collection(DISTRICTS_SUBCOLLECTION).document(district_id)
            doc = await self._call(ref.get, "read")
            if doc is None or not doc.exists:
                return None
            return doc.to_dict() or {}

        field_name = _field_for(name)
        doc = await self._call(self._doc(snapshot_id).get, "read")
        if doc is None or not doc.exists:
            return None
        value = (doc.to_dict() or {}).get(field_name)
        if value is not None and not isinstance(value, dict):
            raise StorageCorruptionError(
                f"Field '{field_name}' of snapshot document {snapshot_id} is not a map",
                path=f"{self.collection}/{snapshot_id}#{field_name}",
            ).with_context(snapshot_id=snapshot_id, backend=self.backend_name)
        return value

    async def _write_json(self, snapshot_id: str, name: str, data: dict[str, Any]) -> int:
        field_name = _field_for(name)
        ref = self._doc(snapshot_id)
        await self._call(lambda: ref.set({field_name: data}, merge=True), "write")
        return len(json.dumps(data).encode("utf-8"))

    async def _write_district_batch(
        self, snapshot_id: str, items: list[tuple[str, dict[str, Any]]]
    ) -> dict[str, int]:
        districts = self._doc(snapshot_id).collection(DISTRICTS_SUBCOLLECTION)

        def _commit() -> None:
            batch = self._client.batch()
            for district_id, record in items:
                batch.set(districts.document(district_id), record)
            batch.commit()

        await self._call(_commit, "batch_write")
        return {
            district_id: len(json.dumps(record).encode("utf-8")) for district_id, record in items
        }

    async def _list_snapshot_ids(self) -> list[str]:
        def _list() -> list[str]:
            return [ref.id for ref in self._client.collection(self.collection).list_documents()]

        return await self._call(_list, "list", not_found=[])

    async def _delete_snapshot(self, snapshot_id: str) -> bool:
        ref = self._doc(snapshot_id)

        def _delete() -> bool:
            existed = ref.get().exists
            children = list(ref.collection(DISTRICTS_SUBCOLLECTION).list_documents())
            for child in children:
                child.delete()
            ref.delete()
            return existed or bool(children)

        return await self._call(_delete, "delete", not_found=False)

    async def is_ready(self) -> bool:
        def _probe() -> bool:
            list(self._client.collection(self.collection).limit(1).stream())
            return True

        try:
            return await self._call(_probe, "health_check", not_found=False)
        except SpineError as e:
            logger.error("snapshot_store.not_ready", backend=self.backend_name, error=e.message)
            return False
