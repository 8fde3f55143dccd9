"""
Source account registry — connect / disconnect / query external connections.

Business logic for SourceAccount lifecycle:
  - connect: input shape → duplicate (owner, source_name) → remote
    credential check → persist. Nothing is written on any failure path.
  - disconnect: mappings and account removed in one transaction.
  - freshness: last_successful_poll only ever moves forward.

All outbound HTTP: delegated to the connector selected by source_type via
`assignment_sync.integrations.base.build_connector`.
Direct `requests` usage is FORBIDDEN in this module.

Owner scoping:
  Lookups that receive an owner report someone else's account as
  SourceNotFoundError, never as "forbidden".
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from assignment_sync.core.exceptions import (
    DuplicateSourceError,
    InvalidCredentialsError,
    NetworkError,
    SourceNotFoundError,
    SyncError,
    ValidationError,
)
from assignment_sync.integrations.base import BaseConnector, build_connector
from assignment_sync.models import db
from assignment_sync.models.sync import AssignmentMapping, SourceAccount, ensure_utc
from assignment_sync.utils.crypto import decrypt_details, encrypt_details

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def connector_for(source_type: str) -> BaseConnector:
    """Build the registered connector for source_type with app transport settings."""
    cfg = current_app.config
    return build_connector(
        source_type,
        timeout=cfg.get("CONNECTOR_TIMEOUT_SECONDS", 30),
        page_size=cfg.get("CONNECTOR_PAGE_SIZE", 100),
        max_pages=cfg.get("CONNECTOR_MAX_PAGES", 50),
    )


def _find_by_name(owner: str, source_name: str) -> SourceAccount | None:
    stmt = select(SourceAccount).where(
        SourceAccount.owner == owner,
        SourceAccount.source_name == source_name,
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _require_text(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", details={field: "required"})
    return value.strip()


def get_source(source_account_id: str, owner: str | None = None) -> SourceAccount:
    """Return the SourceAccount, optionally scoped to owner.

    Raises:
        SourceNotFoundError: If no such account exists, or owner is given
            and does not own it.
    """
    account = db.session.get(SourceAccount, source_account_id)
    if account is None or (owner is not None and account.owner != owner):
        raise SourceNotFoundError(source_account_id)
    return account


def connection_details_for(account: SourceAccount) -> dict:
    """Decrypt an account's credential bundle for handing to its connector."""
    return decrypt_details(account.encrypted_connection_details)


# ═════════════════════════════════════════════════════════════════════════════
# Connect / disconnect
# ═════════════════════════════════════════════════════════════════════════════


def connect_source(
    owner: str,
    source_type: str,
    source_name: str,
    connection_details: dict,
    *,
    connector: BaseConnector | None = None,
) -> str:
    """Validate credentials remotely and persist a new SourceAccount.

    Args:
        owner: Authenticated caller identity.
        source_type: Platform discriminator, e.g. "Canvas".
        source_name: User-chosen label, unique per owner.
        connection_details: Platform credential bundle
            (Canvas: {"api_token", "base_url"}).
        connector: Optional pre-built connector (tests inject mocks here).

    Returns:
        The new source account id.

    Raises:
        ValidationError: Missing fields, unsupported source_type, or
            connection_details lacking the connector's required keys.
        DuplicateSourceError: (owner, source_name) already exists. Checked
            before any remote call.
        InvalidCredentialsError: Platform rejected the credentials.
        NetworkError: Platform unreachable, throttling or 5xx.
        RuntimeError: ENCRYPTION_KEY is not set. Raised before any remote call.
    """
    owner = _require_text(owner, "owner")
    source_type = _require_text(source_type, "source_type")
    source_name = _require_text(source_name, "source_name")

    if connector is None:
        connector = connector_for(source_type)
    connector.check_details(connection_details)
    # Fails on a missing ENCRYPTION_KEY before the platform is contacted.
    encrypted_details = encrypt_details(connection_details)

    if _find_by_name(owner, source_name) is not None:
        logger.info("Duplicate source rejected owner=%s source_name=%s", owner, source_name)
        raise DuplicateSourceError(owner, source_name)

    try:
        valid = connector.validate_credentials(connection_details)
    except SyncError:
        raise
    except Exception as exc:
        logger.exception("Credential check failed unexpectedly source_type=%s", source_type)
        raise NetworkError("Network error connecting to external platform.") from exc

    if not valid:
        logger.info("Credentials rejected owner=%s source_type=%s", owner, source_type)
        raise InvalidCredentialsError("Invalid credentials or base URL.")

    account = SourceAccount(
        owner=owner,
        source_type=source_type,
        source_name=source_name,
        encrypted_connection_details=encrypted_details,
    )
    db.session.add(account)
    try:
        db.session.commit()
    except IntegrityError as exc:
        # A concurrent connect won the (owner, source_name) race.
        db.session.rollback()
        raise DuplicateSourceError(owner, source_name) from exc

    logger.info(
        "SourceAccount connected source_account=%s owner=%s source_type=%s",
        account.id, owner, source_type,
    )
    return account.id


def disconnect_source(source_account_id: str, owner: str | None = None) -> None:
    """Delete a SourceAccount and all its mappings in one transaction.

    Raises:
        SourceNotFoundError: Unknown id, or not owned by owner.
    """
    account = get_source(source_account_id, owner)
    try:
        db.session.execute(
            delete(AssignmentMapping).where(
                AssignmentMapping.source_account_id == account.id
            )
        )
        db.session.delete(account)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("SourceAccount disconnected source_account=%s", source_account_id)


# ═════════════════════════════════════════════════════════════════════════════
# Queries / freshness
# ═════════════════════════════════════════════════════════════════════════════


def sources_for_owner(owner: str, include_connection_details: bool = False) -> list[dict]:
    """Return the owner's accounts, oldest first.

    include_connection_details is for internal callers only; the API never
    sets it.
    """
    stmt = (
        select(SourceAccount)
        .where(SourceAccount.owner == owner)
        .order_by(SourceAccount.created_at, SourceAccount.id)
    )
    accounts = db.session.execute(stmt).scalars().all()
    return [a.to_dict(include_connection_details=include_connection_details) for a in accounts]


def all_source_ids(owner: str | None = None) -> list[str]:
    """Return every source account id, optionally for one owner."""
    stmt = select(SourceAccount.id).order_by(SourceAccount.created_at, SourceAccount.id)
    if owner is not None:
        stmt = stmt.where(SourceAccount.owner == owner)
    return list(db.session.execute(stmt).scalars().all())


def mark_poll_success(source_account_id: str, at: datetime | None = None) -> datetime:
    """Advance last_successful_poll to max(existing, at).

    Returns the stored value. Never moves the timestamp backwards.
    """
    account = get_source(source_account_id)
    at = ensure_utc(at) or datetime.now(timezone.utc)
    current = ensure_utc(account.last_successful_poll)
    if current is None or at > current:
        account.last_successful_poll = at
        db.session.commit()
        current = at
    return current


def reap_orphaned_mappings() -> int:
    """Delete mappings whose source account no longer exists.

    Returns the number of rows removed.
    """
    live_ids = select(SourceAccount.id)
    result = db.session.execute(
        delete(AssignmentMapping)
        .where(AssignmentMapping.source_account_id.not_in(live_ids))
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    removed = result.rowcount or 0
    if removed:
        logger.warning("Reaped %d orphaned assignment mappings", removed)
    return removed
