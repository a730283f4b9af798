"""Progress and checkpoint reporting shared by the collector and the generator."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ProgressUpdate:
    """Counters reported before and after each item."""

    total_items: int
    processed_items: int
    failed_items: int
    skipped_items: int
    current_item: str | None = None

    @property
    def percent_complete(self) -> int:
        if self.total_items == 0:
            return 100
        done = self.processed_items + self.failed_items + self.skipped_items
        return round(done / self.total_items * 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalItems": self.total_items,
            "processedItems": self.processed_items,
            "failedItems": self.failed_items,
            "skippedItems": self.skipped_items,
            "currentItem": self.current_item,
            "percentComplete": self.percent_complete,
        }


@dataclass(frozen=True)
class ItemError:
    """A per-item failure; ``is_retryable`` decides whether a resume retries it."""

    item_id: str
    message: str
    is_retryable: bool


ProgressCallback = Callable[[ProgressUpdate], Awaitable[None] | None]
CheckpointCallback = Callable[[str], Awaitable[None] | None]


async def notify(callback: Callable[[Any], Awaitable[None] | None] | None, value: Any) -> None:
    """Invoke a sync or async callback."""
    if callback is None:
        return
    result = callback(value)
    if inspect.isawaitable(result):
        await result
