"""
Mapping store — (source account, external id) → (internal id, last-seen modification time).

  record_internal_sync   idempotent upsert; last writer wins on a race
  get_mapped_internal_id point lookup
  mappings_for_source    full listing for one account
  mapping_snapshot       read-only view handed to change detection

Every query joins on SourceAccount, so mappings left behind by an
interrupted disconnect are invisible until reap_orphaned_mappings() runs.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from assignment_sync.core.exceptions import NotFoundError, ValidationError
from assignment_sync.models import db
from assignment_sync.models.sync import AssignmentMapping, SourceAccount, ensure_utc
from assignment_sync.services.change_detection import MappedState
from assignment_sync.services.source_account_service import get_source

logger = logging.getLogger(__name__)

_UPSERT_ATTEMPTS = 2


def _live_mappings(source_account_id: str):
    return (
        select(AssignmentMapping)
        .join(SourceAccount, SourceAccount.id == AssignmentMapping.source_account_id)
        .where(AssignmentMapping.source_account_id == source_account_id)
    )


def _find(source_account_id: str, external_id: str) -> AssignmentMapping | None:
    stmt = _live_mappings(source_account_id).where(
        AssignmentMapping.external_id == external_id
    )
    return db.session.execute(stmt).scalar_one_or_none()


def record_internal_sync(
    source_account_id: str,
    external_id: str,
    internal_id: str,
    external_modified_at: datetime,
    owner: str | None = None,
) -> AssignmentMapping:
    """Insert or overwrite the mapping for (source_account_id, external_id).

    This is the caller's attestation that internal record `internal_id`
    reflects the external item as of `external_modified_at`. Repeating the
    call with the same arguments leaves the same final state.

    Raises:
        SourceNotFoundError: Unknown account, or not owned by owner.
        ValidationError: Blank external_id / internal_id or missing timestamp.
    """
    if not str(external_id or "").strip():
        raise ValidationError("external_id is required", details={"external_id": "required"})
    if not str(internal_id or "").strip():
        raise ValidationError("internal_id is required", details={"internal_id": "required"})
    if external_modified_at is None:
        raise ValidationError(
            "external_modification_timestamp is required",
            details={"external_modification_timestamp": "required"},
        )
    external_id = str(external_id)
    internal_id = str(internal_id)
    modified = ensure_utc(external_modified_at)

    get_source(source_account_id, owner)

    for attempt in range(1, _UPSERT_ATTEMPTS + 1):
        mapping = _find(source_account_id, external_id)
        if mapping is None:
            mapping = AssignmentMapping(
                source_account_id=source_account_id,
                external_id=external_id,
            )
            db.session.add(mapping)
        mapping.internal_record_id = internal_id
        mapping.last_external_modified_at = modified
        try:
            db.session.commit()
        except IntegrityError:
            # Concurrent insert of the same key; retry as an update.
            db.session.rollback()
            if attempt == _UPSERT_ATTEMPTS:
                raise
            logger.info(
                "Mapping upsert raced, retrying source_account=%s external_id=%s",
                source_account_id, external_id,
            )
            continue
        break

    logger.debug(
        "Mapping recorded source_account=%s external_id=%s internal_id=%s",
        source_account_id, external_id, internal_id,
    )
    return mapping


def get_mapped_internal_id(
    source_account_id: str,
    external_id: str,
    owner: str | None = None,
) -> str:
    """Return the internal id mapped to an external item.

    Raises:
        SourceNotFoundError: Unknown account, or not owned by owner.
        NotFoundError: No mapping for external_id.
    """
    get_source(source_account_id, owner)
    mapping = _find(source_account_id, str(external_id))
    if mapping is None:
        raise NotFoundError("AssignmentMapping", str(external_id))
    return mapping.internal_record_id


def mappings_for_source(source_account_id: str, owner: str | None = None) -> list[dict]:
    """Return all live mappings for one account, ordered by external_id."""
    get_source(source_account_id, owner)
    stmt = _live_mappings(source_account_id).order_by(AssignmentMapping.external_id)
    return [m.to_dict() for m in db.session.execute(stmt).scalars().all()]


def mapping_snapshot(
    source_account_id: str,
    external_ids: Iterable[str] | None = None,
) -> dict[str, MappedState]:
    """Return {external_id: MappedState} for change detection.

    Restrict to external_ids when given. Read-only.
    """
    stmt = _live_mappings(source_account_id)
    if external_ids is not None:
        ids = list({str(e) for e in external_ids})
        if not ids:
            return {}
        stmt = stmt.where(AssignmentMapping.external_id.in_(ids))
    return {
        m.external_id: MappedState(
            internal_id=m.internal_record_id,
            external_modified_at=ensure_utc(m.last_external_modified_at),
        )
        for m in db.session.execute(stmt).scalars().all()
    }
