"""
Change detection — classify a polled batch against the mapping snapshot.

No DB access here. The reconciliation service reads the snapshot and
hands it in.

Rule per RawExternalRecord, keyed by external_id:
  no mapping                              → new      (existing_internal_id = None)
  record.modified >  mapping.modified     → changed  (existing_internal_id = mapping's)
  record.modified <= mapping.modified     → unchanged, not emitted
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping

from assignment_sync.integrations.base import RawExternalRecord
from assignment_sync.models.sync import ensure_utc


@dataclass(frozen=True)
class MappedState:
    """What the mapping store knows about one external item."""

    internal_id: str
    external_modified_at: datetime


@dataclass(frozen=True)
class WorkItem:
    """A new or changed external record awaiting the caller's resolution."""

    record: RawExternalRecord
    existing_internal_id: str | None = None

    @property
    def external_id(self) -> str:
        return self.record.external_id

    @property
    def is_new(self) -> bool:
        return self.existing_internal_id is None

    def to_dict(self) -> dict:
        data = self.record.to_dict()
        if self.existing_internal_id is not None:
            data["existing_internal_id"] = self.existing_internal_id
        return data


def classify_record(record: RawExternalRecord, state: MappedState | None) -> WorkItem | None:
    """Classify one record; None means unchanged."""
    if state is None:
        return WorkItem(record=record)
    if ensure_utc(record.external_modified_at) > ensure_utc(state.external_modified_at):
        return WorkItem(record=record, existing_internal_id=state.internal_id)
    return None


def classify_changes(
    records: Iterable[RawExternalRecord],
    snapshot: Mapping[str, MappedState],
) -> list[WorkItem]:
    """Return the work list for a batch, preserving input order."""
    work: list[WorkItem] = []
    for record in records:
        item = classify_record(record, snapshot.get(record.external_id))
        if item is not None:
            work.append(item)
    return work
