"""Diff helpers for mirroring Discord state.

Reconciliation compares the rows we hold for a guild with the current set
Discord reports. Rows whose platform id is gone are deleted; every current
item is upserted. Keeping this a pure function over plain values means it
can be tested without a database.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")
L = TypeVar("L")


@dataclass(frozen=True)
class ReconcileDiff(Generic[T]):
    """Result of diffing local rows against the current platform state.

    Attributes:
        to_delete: Platform ids present locally but absent from the current set.
        to_upsert: Current items, deduplicated by platform id (last one wins).
    """

    to_delete: list[str] = field(default_factory=list)
    to_upsert: list[T] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_delete and not self.to_upsert


def diff(
    local: Iterable[L],
    current: Iterable[T],
    local_key: Callable[[L], str],
    current_key: Callable[[T], str] | None = None,
) -> ReconcileDiff[T]:
    """Compute which local rows to delete and which items to upsert.

    Args:
        local: Rows currently stored for the guild.
        current: Items Discord reports right now.
        local_key: Extracts the platform id from a local row.
        current_key: Extracts the platform id from a current item. Defaults
            to ``local_key`` when both sides share a type.

    Returns:
        ReconcileDiff with ids to delete (in local order) and items to upsert
        (in first-seen order).
    """
    current_key = current_key or local_key  # type: ignore[assignment]

    by_id: dict[str, T] = {}
    for item in current:
        by_id[current_key(item)] = item  # type: ignore[misc]

    to_delete: list[str] = []
    seen: set[str] = set()
    for row in local:
        row_id = local_key(row)
        if row_id not in by_id and row_id not in seen:
            to_delete.append(row_id)
        seen.add(row_id)

    return ReconcileDiff(to_delete=to_delete, to_upsert=list(by_id.values()))
