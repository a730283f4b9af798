"""Local filesystem snapshot store.

Layout::

    {root}/snapshots/{snapshot_id}/manifest.json
                                  /metadata.json
                                  /district_{id}.json
                                  /all-districts-rankings.json

Every object is written with an atomic temp-file + rename.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any

from district_spine.core.errors import SpineError
from district_spine.core.logging import get_logger
from district_spine.storage.files import atomic_write_json, read_json_file
from district_spine.storage.snapshots.base import SnapshotStore, district_file_name

logger = get_logger(__name__)


class LocalSnapshotStore(SnapshotStore):
    """Snapshot store rooted at a local directory."""

    backend_name = "local"

    def __init__(self, root: str | Path, **kwargs: Any):
        super().__init__(**kwargs)
        self.root = Path(root)
        self.snapshots_dir = self.root / "snapshots"

    def _path(self, snapshot_id: str, name: str) -> Path:
        return self.snapshots_dir / snapshot_id / name

    async def _read_json(self, snapshot_id: str, name: str) -> dict[str, Any] | None:
        try:
            return read_json_file(self._path(snapshot_id, name))
        except SpineError as e:
            raise e.with_context(snapshot_id=snapshot_id, backend=self.backend_name)

    async def _write_json(self, snapshot_id: str, name: str, data: dict[str, Any]) -> int:
        return atomic_write_json(self._path(snapshot_id, name), data)

    async def _write_district_batch(
        self, snapshot_id: str, items: list[tuple[str, dict[str, Any]]]
    ) -> dict[str, int]:
        return {
            district_id: atomic_write_json(
                self._path(snapshot_id, district_file_name(district_id)), record
            )
            for district_id, record in items
        }

    async def _list_snapshot_ids(self) -> list[str]:
        if not self.snapshots_dir.is_dir():
            return []
        return [p.name for p in self.snapshots_dir.iterdir() if p.is_dir()]

    async def _delete_snapshot(self, snapshot_id: str) -> bool:
        target = self.snapshots_dir / snapshot_id
        if not target.exists():
            return False
        shutil.rmtree(target)
        return True

    async def is_ready(self) -> bool:
        try:
            self.snapshots_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("snapshot_store.not_ready", backend=self.backend_name, error=str(e))
            return False
        return os.access(self.snapshots_dir, os.W_OK)
