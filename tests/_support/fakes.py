"""
In-process fakes for the collaborators and cloud SDK surfaces.

Nothing here talks to the network. The GCS and Firestore fakes implement
only the client calls the storage backends make, with the same 404 shape
(an exception carrying ``code = 404``) the real SDKs raise.

Usage in test code::

    from tests._support.fakes import FakeGCSClient, make_snapshot

    client = FakeGCSClient()
    store = GCSSnapshotStore("bucket", client=client)
    client.bucket("bucket").upload_error = lambda key: ServiceUnavailable()
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from typing import Any

from district_spine.domain.models import (
    DistrictStatistics,
    NormalizedData,
    Snapshot,
    SnapshotPayloadMetadata,
)
from district_spine.domain.protocols import FetchResult


# =============================================================================
# Builders
# =============================================================================


async def no_sleep(_seconds: float) -> None:
    return None


def make_district(
    district_id: str,
    *,
    club_growth: str = "5.0%",
    payment_growth: str = "3.0%",
    active_clubs: int = 20,
    distinguished_clubs: int = 10,
    as_of_date: str | None = None,
) -> DistrictStatistics:
    return DistrictStatistics(
        district_id=district_id,
        as_of_date=as_of_date,
        district_performance=[
            {
                "DISTRICT": district_id,
                "REGION": "01",
                "% Club Growth": club_growth,
                "% Payment Growth": payment_growth,
                "Active Clubs": str(active_clubs),
                "Total Distinguished Clubs": str(distinguished_clubs),
                "Paid Clubs": "100",
                "Paid Club Base": "95",
                "Total YTD Payments": "2,000",
                "Payment Base": "1,900",
                "Select Distinguished Clubs": "2",
                "Presidents Distinguished Clubs": "1",
            }
        ],
    )


def make_snapshot(
    snapshot_id: str,
    districts: tuple[str, ...] | list[str] = ("42", "61"),
    *,
    status: str = "success",
    errors: list[str] | None = None,
    created_at: str | None = None,
    collection_date: str | None = None,
) -> Snapshot:
    records = [make_district(d, as_of_date=snapshot_id) for d in districts]
    return Snapshot(
        snapshot_id=snapshot_id,
        created_at=created_at or f"{snapshot_id}T06:00:00+00:00",
        status=status,
        errors=errors or [],
        payload=NormalizedData(
            districts=records,
            metadata=SnapshotPayloadMetadata(
                data_as_of_date=collection_date or snapshot_id,
                district_count=len(records),
                collection_date=collection_date,
            ),
        ),
    )


# =============================================================================
# Collection service
# =============================================================================


class FakeCollectionService:
    """Returns one record per requested district, with scripted failures.

    Attributes:
        district_failures: date → {district id: error} for partial failures
        date_errors: date → error raised for the whole date, or a list of
            errors raised on successive calls (then the call succeeds)
        data_months: date → data month reported with the fetch
        as_of_dates: date → as-of date reported (defaults to the date itself)
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str]]] = []
        self.district_failures: dict[str, dict[str, BaseException]] = {}
        self.date_errors: dict[str, BaseException | list[BaseException]] = {}
        self.data_months: dict[str, str] = {}
        self.as_of_dates: dict[str, str] = {}
        self.on_fetch: Callable[[str], None] | None = None

    @property
    def fetched_dates(self) -> list[str]:
        return [date for date, _ in self.calls]

    async def fetch_for_date(self, date: str, districts: list[str]) -> FetchResult:
        self.calls.append((date, list(districts)))
        if self.on_fetch is not None:
            self.on_fetch(date)

        scripted = self.date_errors.get(date)
        if isinstance(scripted, list):
            if scripted:
                raise scripted.pop(0)
        elif scripted is not None:
            raise scripted

        failures = dict(self.district_failures.get(date, {}))
        as_of = self.as_of_dates.get(date, date)
        return FetchResult(
            records=[make_district(d, as_of_date=as_of) for d in districts if d not in failures],
            failures=failures,
            data_month=self.data_months.get(date),
            as_of_date=as_of,
        )


# =============================================================================
# Google Cloud Storage
# =============================================================================


class NotFound(Exception):
    """Shape of ``google.api_core.exceptions.NotFound``."""

    code = 404


class ServiceUnavailable(Exception):
    code = 503


class Forbidden(Exception):
    code = 403


class FakeBlob:
    def __init__(self, bucket: FakeBucket, name: str):
        self._bucket = bucket
        self.name = name

    def download_as_text(self) -> str:
        if self._bucket.download_error is not None:
            error = self._bucket.download_error(self.name)
            if error is not None:
                raise error
        if self.name not in self._bucket.objects:
            raise NotFound(f"No such object: {self._bucket.name}/{self.name}")
        return self._bucket.objects[self.name]

    def upload_from_string(self, data: str, content_type: str | None = None) -> None:
        if self._bucket.upload_error is not None:
            error = self._bucket.upload_error(self.name)
            if error is not None:
                raise error
        self._bucket.objects[self.name] = data
        self._bucket.uploads.append(self.name)

    def delete(self) -> None:
        if self._bucket.objects.pop(self.name, None) is None:
            raise NotFound(self.name)


class FakeBucket:
    def __init__(self, name: str):
        self.name = name
        self.objects: dict[str, str] = {}
        self.uploads: list[str] = []
        self.upload_error: Callable[[str], BaseException | None] | None = None
        self.download_error: Callable[[str], BaseException | None] | None = None
        self.exists_error: BaseException | None = None

    def blob(self, name: str) -> FakeBlob:
        return FakeBlob(self, name)

    def exists(self) -> bool:
        if self.exists_error is not None:
            raise self.exists_error
        return True


class FakeBlobIterator:
    """``list_blobs`` result: iterate blobs, then read ``prefixes``."""

    def __init__(self, blobs: list[FakeBlob], prefixes: set[str]):
        self._blobs = blobs
        self.prefixes = prefixes

    def __iter__(self):
        return iter(self._blobs)


class FakeGCSClient:
    def __init__(self) -> None:
        self.buckets: dict[str, FakeBucket] = {}

    def bucket(self, name: str) -> FakeBucket:
        return self.buckets.setdefault(name, FakeBucket(name))

    def list_blobs(
        self, bucket_name: str, prefix: str = "", delimiter: str | None = None
    ) -> FakeBlobIterator:
        bucket = self.bucket(bucket_name)
        blobs: list[FakeBlob] = []
        prefixes: set[str] = set()
        for key in sorted(bucket.objects):
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix) :]
            if delimiter and delimiter in rest:
                prefixes.add(prefix + rest.split(delimiter, 1)[0] + delimiter)
            else:
                blobs.append(FakeBlob(bucket, key))
        return FakeBlobIterator(blobs, prefixes)


# =============================================================================
# Firestore
# =============================================================================


class FakeDocumentSnapshot:
    def __init__(self, reference: FakeDocumentReference, data: dict[str, Any] | None):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> dict[str, Any] | None:
        return copy.deepcopy(self._data)


class FakeDocumentReference:
    def __init__(self, client: FakeFirestoreClient, path: str):
        self._client = client
        self.path = path
        self.id = path.rsplit("/", 1)[-1]

    def get(self) -> FakeDocumentSnapshot:
        self._client.check("get", self.path)
        return FakeDocumentSnapshot(self, self._client.docs.get(self.path))

    def set(self, data: dict[str, Any], merge: bool = False) -> None:
        self._client.check("set", self.path)
        if merge and self.path in self._client.docs:
            self._client.docs[self.path].update(copy.deepcopy(data))
        else:
            self._client.docs[self.path] = copy.deepcopy(data)

    def delete(self) -> None:
        self._client.docs.pop(self.path, None)

    def collection(self, name: str) -> FakeCollectionReference:
        return FakeCollectionReference(self._client, f"{self.path}/{name}")


class FakeQuery:
    def __init__(self, collection: FakeCollectionReference, count: int):
        self._collection = collection
        self._count = count

    def stream(self):
        return iter(list(self._collection.stream())[: self._count])


class FakeCollectionReference:
    def __init__(self, client: FakeFirestoreClient, path: str):
        self._client = client
        self.path = path

    def document(self, doc_id: str) -> FakeDocumentReference:
        return FakeDocumentReference(self._client, f"{self.path}/{doc_id}")

    def _child_ids(self) -> list[str]:
        root = f"{self.path}/"
        ids = {key[len(root) :].split("/", 1)[0] for key in self._client.docs if key.startswith(root)}
        return sorted(ids)

    def list_documents(self):
        """Like the SDK, includes documents that only hold subcollections."""
        self._client.check("list", self.path)
        return [self.document(doc_id) for doc_id in self._child_ids()]

    def stream(self):
        self._client.check("stream", self.path)
        for doc_id in self._child_ids():
            ref = self.document(doc_id)
            data = self._client.docs.get(ref.path)
            if data is not None:
                yield FakeDocumentSnapshot(ref, data)

    def limit(self, count: int) -> FakeQuery:
        return FakeQuery(self, count)


class FakeWriteBatch:
    def __init__(self, client: FakeFirestoreClient):
        self._client = client
        self._writes: list[tuple[FakeDocumentReference, dict[str, Any]]] = []

    def set(self, reference: FakeDocumentReference, data: dict[str, Any], merge: bool = False) -> None:
        self._writes.append((reference, data))

    def commit(self) -> None:
        self._client.check("commit", self._writes[0][0].path if self._writes else "")
        for reference, data in self._writes:
            self._client.docs[reference.path] = copy.deepcopy(data)
        self._client.commits += 1


class FakeFirestoreClient:
    """Documents stored by full path (``collection/doc/sub/doc``).

    ``faults`` maps an operation name (get, set, commit, list, stream) to a
    callable taking the document path and returning an exception or None.
    """

    def __init__(self) -> None:
        self.docs: dict[str, dict[str, Any]] = {}
        self.faults: dict[str, Callable[[str], BaseException | None]] = {}
        self.commits = 0

    def check(self, operation: str, path: str) -> None:
        fault = self.faults.get(operation)
        if fault is not None:
            error = fault(path)
            if error is not None:
                raise error

    def collection(self, name: str) -> FakeCollectionReference:
        return FakeCollectionReference(self, name)

    def document(self, path: str) -> FakeDocumentReference:
        return FakeDocumentReference(self, path)

    def batch(self) -> FakeWriteBatch:
        return FakeWriteBatch(self)
