"""
Change records delivered to changefeed handlers.

Each batch a feed delivers is a sequence of change records. A record
carries the value before the change (``old_val``) and after it
(``new_val``):

- no ``old_val``: the record was created
- no ``new_val``: the record was deleted
- both present: the record was updated
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ChangeKind(Enum):
    """Kind of change a record represents."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeRecord(BaseModel):
    """
    A single change emitted by a feed.

    Attributes:
        old_val: Value before the change (None for creations)
        new_val: Value after the change (None for deletions)

    Example:
        >>> record = ChangeRecord(new_val={"id": 1, "name": "Ada"})
        >>> record.kind
        <ChangeKind.CREATE: 'create'>
    """

    model_config = ConfigDict(frozen=True)

    old_val: Any | None = Field(default=None, description="Value before the change")
    new_val: Any | None = Field(default=None, description="Value after the change")

    @property
    def kind(self) -> ChangeKind:
        if self.old_val is None:
            return ChangeKind.CREATE
        if self.new_val is None:
            return ChangeKind.DELETE
        return ChangeKind.UPDATE

    @property
    def is_create(self) -> bool:
        return self.kind is ChangeKind.CREATE

    @property
    def is_update(self) -> bool:
        return self.kind is ChangeKind.UPDATE

    @property
    def is_delete(self) -> bool:
        return self.kind is ChangeKind.DELETE

    @property
    def value(self) -> Any | None:
        """The current value, or the last known value for a deletion."""
        return self.new_val if self.new_val is not None else self.old_val

    @classmethod
    def from_raw(cls, raw: ChangeRecord | Mapping[str, Any]) -> ChangeRecord:
        """
        Build a record from a driver-level mapping.

        Args:
            raw: A ChangeRecord or a mapping with "old_val"/"new_val" keys

        Returns:
            The corresponding ChangeRecord
        """
        if isinstance(raw, ChangeRecord):
            return raw
        return cls(old_val=raw.get("old_val"), new_val=raw.get("new_val"))


def parse_batch(raw: Iterable[ChangeRecord | Mapping[str, Any]]) -> list[ChangeRecord]:
    """
    Convert a raw batch into change records, preserving order.

    Args:
        raw: Records or mappings as produced by a feed client

    Returns:
        List of ChangeRecord in delivery order
    """
    return [ChangeRecord.from_raw(item) for item in raw]


__all__ = [
    "ChangeKind",
    "ChangeRecord",
    "parse_batch",
]
