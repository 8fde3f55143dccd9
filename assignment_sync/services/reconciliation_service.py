"""
Reconciliation coordinator — one poll → classify → resolve cycle per source account.

Sequencing:
  poll_source        connector fetch; advances last_successful_poll on success only
  identify_changes   classify the batch against the mapping snapshot
  (caller resolves each work item into an internal record)
  record_sync        caller's resolution → mapping upsert

run_cycle() chains the three under the account's lock, asking a resolver
callable for each internal id. run_all_cycles() drives every account from
a thread pool; accounts are independent, one account's failure never
touches another.

Error mapping at the connector seam:
  InvalidCredentialsError  → SourceConnectionError (the account already exists)
  RateLimitError / NetworkError pass through
  anything else            → NetworkError (logged with traceback)
Nothing is persisted on a failed poll.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Iterator

from cryptography.fernet import InvalidToken
from flask import Flask

from assignment_sync.core.exceptions import (
    InvalidCredentialsError,
    NetworkError,
    RateLimitError,
    SourceConnectionError,
    SyncError,
)
from assignment_sync.integrations.base import BaseConnector, RawExternalRecord
from assignment_sync.middleware.logging_config import bind_source_account
from assignment_sync.models import db
from assignment_sync.services import mapping_service
from assignment_sync.services.change_detection import WorkItem, classify_changes
from assignment_sync.services.source_account_service import (
    all_source_ids,
    connection_details_for,
    connector_for,
    disconnect_source,
    get_source,
    mark_poll_success,
)

logger = logging.getLogger(__name__)

Resolver = Callable[[str, WorkItem], "str | None"]


# ═════════════════════════════════════════════════════════════════════════════
# Per-account serialisation
# ═════════════════════════════════════════════════════════════════════════════

_locks_guard = threading.Lock()
_account_locks: dict[str, threading.RLock] = {}


def _lock_for(source_account_id: str) -> threading.RLock:
    with _locks_guard:
        lock = _account_locks.get(source_account_id)
        if lock is None:
            lock = _account_locks[source_account_id] = threading.RLock()
        return lock


@contextmanager
def reconciliation_lock(source_account_id: str) -> Iterator[None]:
    """Hold the account's reconciliation lock. Re-entrant within a thread."""
    lock = _lock_for(source_account_id)
    with lock:
        yield


def release_lock(source_account_id: str) -> None:
    """Forget an account's lock (after disconnect)."""
    with _locks_guard:
        _account_locks.pop(source_account_id, None)


# ═════════════════════════════════════════════════════════════════════════════
# Change handler registry
# ═════════════════════════════════════════════════════════════════════════════

_change_handler: Resolver | None = None


def register_change_handler(fn: Resolver) -> Resolver:
    """Decorator installing the owning application's resolver.

    Usage:
        @register_change_handler
        def upsert_task(source_account_id, item):
            ...
            return task.id

    The batch poll command calls it for every work item. Returning None
    leaves the item unresolved so it surfaces again on the next cycle.
    """
    global _change_handler
    _change_handler = fn
    logger.info("Change handler registered fn=%s", getattr(fn, "__name__", repr(fn)))
    return fn


def get_change_handler() -> Resolver | None:
    return _change_handler


def clear_change_handler() -> None:
    global _change_handler
    _change_handler = None


# ═════════════════════════════════════════════════════════════════════════════
# Cycle steps
# ═════════════════════════════════════════════════════════════════════════════


def poll_source(
    source_account_id: str,
    owner: str | None = None,
    *,
    connector: BaseConnector | None = None,
) -> list[RawExternalRecord]:
    """Fetch the account's current external items.

    Advances last_successful_poll only when the whole poll succeeds.

    Raises:
        SourceNotFoundError: Unknown account, or not owned by owner.
        SourceConnectionError: Stored credentials no longer accepted.
        RateLimitError: Platform throttling.
        NetworkError: Timeout, 5xx, transport or unclassified failure.
    """
    account = get_source(source_account_id, owner)
    source_type = account.source_type

    with reconciliation_lock(source_account_id):
        if connector is None:
            connector = connector_for(source_type)
        try:
            details = connection_details_for(account)
            records = connector.poll(details)
        except (InvalidCredentialsError, InvalidToken) as exc:
            db.session.rollback()
            logger.warning(
                "Stored credentials rejected source_account=%s source_type=%s",
                source_account_id, source_type,
            )
            raise SourceConnectionError(
                "Stored credentials for this source are no longer valid. Reconnect the source."
            ) from exc
        except (RateLimitError, NetworkError) as exc:
            db.session.rollback()
            logger.warning(
                "Poll failed source_account=%s code=%s error=%s",
                source_account_id, exc.code, exc,
            )
            raise
        except Exception as exc:
            db.session.rollback()
            logger.exception("Unclassified connector failure source_account=%s", source_account_id)
            raise NetworkError("Network error during external API call.") from exc

        mark_poll_success(source_account_id)

    logger.info("Poll succeeded source_account=%s records=%d", source_account_id, len(records))
    return records


def identify_changes(
    source_account_id: str,
    records: Iterable[RawExternalRecord],
    owner: str | None = None,
) -> list[WorkItem]:
    """Classify a polled batch into new and changed work items. Read-only."""
    get_source(source_account_id, owner)
    records = list(records)
    with reconciliation_lock(source_account_id):
        snapshot = mapping_service.mapping_snapshot(
            source_account_id, [r.external_id for r in records]
        )
        work = classify_changes(records, snapshot)
    logger.info(
        "Changes identified source_account=%s records=%d work_items=%d",
        source_account_id, len(records), len(work),
    )
    return work


def disconnect(source_account_id: str, owner: str | None = None) -> None:
    """Disconnect an account once no cycle for it is in flight."""
    with reconciliation_lock(source_account_id):
        disconnect_source(source_account_id, owner)
    release_lock(source_account_id)


def record_sync(
    source_account_id: str,
    external_id: str,
    internal_id: str,
    external_modified_at: datetime,
    owner: str | None = None,
) -> None:
    """Record the caller's resolution of one work item."""
    with reconciliation_lock(source_account_id):
        mapping_service.record_internal_sync(
            source_account_id, external_id, internal_id, external_modified_at, owner
        )


# ═════════════════════════════════════════════════════════════════════════════
# Full cycles
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class CycleResult:
    """Outcome of one reconciliation cycle for one account."""

    source_account_id: str
    status: str = "success"
    polled: int = 0
    pending: int = 0
    resolved: int = 0
    code: str | None = None
    error: str | None = None
    unresolved: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "source_account_id": self.source_account_id,
            "status": self.status,
            "polled": self.polled,
            "pending": self.pending,
            "resolved": self.resolved,
            "unresolved": list(self.unresolved),
            "code": self.code,
            "error": self.error,
        }


def run_cycle(
    source_account_id: str,
    resolver: Resolver | None = None,
    *,
    connector: BaseConnector | None = None,
) -> CycleResult:
    """Run poll → identify → resolve for one account under its lock.

    Without a resolver only poll and identify run; the work items are
    counted as pending. Errors from the poll propagate unchanged.
    """
    result = CycleResult(source_account_id=source_account_id)
    with reconciliation_lock(source_account_id):
        records = poll_source(source_account_id, connector=connector)
        work = identify_changes(source_account_id, records)
        result.polled = len(records)
        result.pending = len(work)
        if resolver is None:
            return result

        for item in work:
            internal_id = resolver(source_account_id, item)
            if internal_id is None:
                result.unresolved.append(item.external_id)
                continue
            record_sync(
                source_account_id,
                item.external_id,
                internal_id,
                item.record.external_modified_at,
            )
            result.resolved += 1

    logger.info(
        "Cycle complete source_account=%s polled=%d pending=%d resolved=%d",
        source_account_id, result.polled, result.pending, result.resolved,
    )
    return result


def _run_cycle_in_context(app: Flask, source_account_id: str, resolver: Resolver | None) -> CycleResult:
    """Worker body: own app context, failures reported not raised."""
    with app.app_context(), bind_source_account(source_account_id):
        try:
            return run_cycle(source_account_id, resolver)
        except SyncError as exc:
            db.session.rollback()
            return CycleResult(
                source_account_id=source_account_id,
                status="failed",
                code=exc.code,
                error=str(exc),
            )
        except Exception as exc:
            db.session.rollback()
            logger.exception("Cycle crashed source_account=%s", source_account_id)
            return CycleResult(
                source_account_id=source_account_id,
                status="failed",
                code="ERR_INTERNAL",
                error=str(exc),
            )


def run_all_cycles(
    app: Flask,
    owner: str | None = None,
    max_workers: int | None = None,
    resolver: Resolver | None = None,
) -> list[CycleResult]:
    """Run one cycle per source account, accounts in parallel.

    Uses the registered change handler when no resolver is given.
    Results are returned in account order.
    """
    if resolver is None:
        resolver = get_change_handler()
    if max_workers is None:
        max_workers = app.config.get("POLL_MAX_WORKERS", 4)

    with app.app_context():
        ids = all_source_ids(owner)
    if not ids:
        logger.info("No source accounts to poll owner=%s", owner)
        return []

    workers = max(1, min(int(max_workers), len(ids)))
    logger.info("Polling %d source accounts workers=%d", len(ids), workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="poll") as pool:
        results = list(pool.map(lambda sid: _run_cycle_in_context(app, sid, resolver), ids))

    failed = sum(1 for r in results if r.status != "success")
    logger.info("Batch poll finished accounts=%d failed=%d", len(results), failed)
    return results
