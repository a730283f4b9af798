"""Firestore job storage.

Documents::

    {collection}/{jobId}     one job record (camelCase fields)
    config/rate-limit        the global rate-limit record
"""

from __future__ import annotations

from typing import Any

import pydantic

from district_spine.core.errors import ConfigError, SpineError
from district_spine.core.logging import get_logger
from district_spine.domain.models import BackfillJob, RateLimitConfig
from district_spine.execution.circuit_breaker import CircuitBreaker
from district_spine.storage.cloud import run_cloud_call
from district_spine.storage.jobs.base import BackfillJobStorage

logger = get_logger(__name__)

RATE_LIMIT_DOCUMENT = "config/rate-limit"


class FirestoreBackfillJobStorage(BackfillJobStorage):
    backend_name = "firestore"

    def __init__(
        self,
        collection: str = "backfill-jobs",
        *,
        project: str | None = None,
        client: Any = None,
        breaker: CircuitBreaker | None = None,
    ):
        super().__init__()
        if client is None:
            try:
                from google.cloud import firestore
            except ImportError:
                raise ConfigError(
                    "google-cloud-firestore is required for Firestore job storage. "
                    "Install with: pip install google-cloud-firestore"
                ) from None
            client = firestore.Client(project=project)

        self.collection = collection
        self._client = client
        self._breaker = breaker or CircuitBreaker(
            name="firestore-jobs", failure_threshold=5, recovery_timeout=60.0
        )

    async def _call(self, func: Any, operation: str, not_found: Any = None) -> Any:
        return await run_cloud_call(
            self._breaker, func, operation=operation, backend=self.backend_name, not_found=not_found
        )

    def _ref(self, job_id: str) -> Any:
        return self._client.collection(self.collection).document(job_id)

    def _parse_job(self, doc_id: str, raw: dict[str, Any] | None) -> BackfillJob | None:
        try:
            return BackfillJob.model_validate(raw or {})
        except pydantic.ValidationError as e:
            logger.warning(
                "job_storage.invalid_job_document",
                job_id=doc_id,
                errors=e.error_count(),
                backend=self.backend_name,
            )
            return None

    async def _load_job(self, job_id: str) -> BackfillJob | None:
        doc = await self._call(self._ref(job_id).get, "get_job")
        if doc is None or not doc.exists:
            return None
        return self._parse_job(job_id, doc.to_dict())

    async def _load_all_jobs(self) -> list[BackfillJob]:
        def _stream() -> list[tuple[str, dict[str, Any] | None]]:
            return [(d.id, d.to_dict()) for d in self._client.collection(self.collection).stream()]

        docs = await self._call(_stream, "list_jobs", not_found=[])
        jobs = [self._parse_job(doc_id, raw) for doc_id, raw in docs]
        return [job for job in jobs if job is not None]

    async def _save_job(self, job: BackfillJob) -> None:
        ref = self._ref(job.job_id)
        record = job.to_record()
        await self._call(lambda: ref.set(record), "save_job")

    async def _remove_job(self, job_id: str) -> bool:
        ref = self._ref(job_id)

        def _delete() -> bool:
            if not ref.get().exists:
                return False
            ref.delete()
            return True

        return await self._call(_delete, "delete_job", not_found=False)

    async def _load_rate_limit_config(self) -> RateLimitConfig | None:
        doc = await self._call(self._client.document(RATE_LIMIT_DOCUMENT).get, "get_rate_limit")
        if doc is None or not doc.exists:
            return None
        try:
            return RateLimitConfig.model_validate(doc.to_dict() or {})
        except pydantic.ValidationError:
            logger.warning("job_storage.invalid_rate_limit_config", backend=self.backend_name)
            return RateLimitConfig()

    async def _save_rate_limit_config(self, config: RateLimitConfig) -> None:
        ref = self._client.document(RATE_LIMIT_DOCUMENT)
        record = config.to_record()
        await self._call(lambda: ref.set(record), "set_rate_limit")

    async def is_ready(self) -> bool:
        def _probe() -> bool:
            list(self._client.collection(self.collection).limit(1).stream())
            return True

        try:
            return await self._call(_probe, "health_check", not_found=False)
        except SpineError as e:
            logger.warning("job_storage.not_ready", backend=self.backend_name, error=e.message)
            return False
