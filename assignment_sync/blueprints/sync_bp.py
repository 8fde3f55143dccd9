"""External assignment sync blueprint.

REST API over the source-account registry, mapping store and
reconciliation coordinator.

Endpoint groups:
  Source accounts   POST   /api/v1/external-sync/sources
                    GET    /api/v1/external-sync/sources
                    DELETE /api/v1/external-sync/sources/<id>
  Reconciliation    POST   /api/v1/external-sync/sources/<id>/poll
                    POST   /api/v1/external-sync/sources/<id>/changes
  Mappings          PUT    /api/v1/external-sync/sources/<id>/mappings/<external_id>
                    GET    /api/v1/external-sync/sources/<id>/mappings/<external_id>
                    GET    /api/v1/external-sync/sources/<id>/mappings

owner is resolved from the X-User header, falling back to the query string
or JSON body. The caller is trusted to have authenticated it already.
Service layer owns all business logic and commits; every error leaves here
as {"error", "code"} via api_error().
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

import assignment_sync.services.mapping_service as mapping_svc
import assignment_sync.services.reconciliation_service as recon_svc
import assignment_sync.services.source_account_service as source_svc
from assignment_sync.core.exceptions import (
    NotFoundError,
    SyncError,
    ValidationError,
)
from assignment_sync.integrations.base import RawExternalRecord
from assignment_sync.models import db
from assignment_sync.utils.errors import E, api_error
from assignment_sync.utils.helpers import parse_timestamp_input

logger = logging.getLogger(__name__)

sync_bp = Blueprint("external_sync", __name__, url_prefix="/api/v1/external-sync")


# ── Owner helpers ─────────────────────────────────────────────────────────────


def _owner() -> str | None:
    """Extract the caller identity from header, query string or JSON body."""
    owner = request.headers.get("X-User") or request.args.get("owner")
    if owner:
        return owner.strip() or None
    data = request.get_json(silent=True)
    if isinstance(data, dict) and isinstance(data.get("owner"), str):
        return data["owner"].strip() or None
    return None


def _owner_required() -> tuple[str | None, tuple | None]:
    owner = _owner()
    if not owner:
        return None, api_error(E.VALIDATION_REQUIRED, "owner is required (X-User header)")
    return owner, None


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ── Error handlers ────────────────────────────────────────────────────────────


@sync_bp.errorhandler(SyncError)
def _handle_sync_error(error: SyncError):
    db.session.rollback()
    return api_error(error.code, str(error))


@sync_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    db.session.rollback()
    return api_error(E.NOT_FOUND, str(error))


@sync_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    db.session.rollback()
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@sync_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    db.session.rollback()
    logger.exception("Unexpected error in external_sync endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Source accounts
# ═════════════════════════════════════════════════════════════════════════


@sync_bp.route("/sources", methods=["POST"])
def connect_source():
    """Connect a new external source for the caller.

    Body: {source_type, source_name, connection_details}
    Returns: {"source_account": id} (201).
    """
    owner, err = _owner_required()
    if err:
        return err
    data = _json_body()

    details = data.get("connection_details")
    if not isinstance(details, dict):
        return api_error(E.VALIDATION_REQUIRED, "connection_details must be an object")

    source_account_id = source_svc.connect_source(
        owner,
        data.get("source_type"),
        data.get("source_name"),
        details,
    )
    return jsonify({"source_account": source_account_id}), 201


@sync_bp.route("/sources", methods=["GET"])
def list_sources():
    """List the caller's connected sources (never includes credentials)."""
    owner, err = _owner_required()
    if err:
        return err
    return jsonify({"sources": source_svc.sources_for_owner(owner)}), 200


@sync_bp.route("/sources/<source_account_id>", methods=["DELETE"])
def disconnect_source(source_account_id):
    """Disconnect a source and drop all of its mappings."""
    recon_svc.disconnect(source_account_id, _owner())
    return "", 204


# ═════════════════════════════════════════════════════════════════════════
# Reconciliation
# ═════════════════════════════════════════════════════════════════════════


@sync_bp.route("/sources/<source_account_id>/poll", methods=["POST"])
def poll_source(source_account_id):
    """Fetch the source's current actionable items from the platform."""
    records = recon_svc.poll_source(source_account_id, _owner())
    return jsonify({"raw_external_assignments": [r.to_dict() for r in records]}), 200


@sync_bp.route("/sources/<source_account_id>/changes", methods=["POST"])
def identify_changes(source_account_id):
    """Classify a polled batch into new and changed work items.

    Body: {"raw_external_assignments": [...]} as returned by /poll.
    """
    data = _json_body()
    raw = data.get("raw_external_assignments")
    if not isinstance(raw, list):
        return api_error(E.VALIDATION_REQUIRED, "raw_external_assignments must be a list")
    try:
        records = [RawExternalRecord.from_dict(item or {}) for item in raw]
    except (ValueError, AttributeError, TypeError) as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))

    work = recon_svc.identify_changes(source_account_id, records, _owner())
    return jsonify({"assignments_to_process": [w.to_dict() for w in work]}), 200


# ═════════════════════════════════════════════════════════════════════════
# Mappings
# ═════════════════════════════════════════════════════════════════════════


@sync_bp.route("/sources/<source_account_id>/mappings/<external_id>", methods=["PUT"])
def record_internal_sync(source_account_id, external_id):
    """Record that an internal record now reflects the external item.

    Body: {internal_id, external_modification_timestamp}
    """
    data = _json_body()
    internal_id = data.get("internal_id")
    if internal_id is None or str(internal_id).strip() == "":
        return api_error(E.VALIDATION_REQUIRED, "internal_id is required")
    try:
        modified = parse_timestamp_input(
            data.get("external_modification_timestamp"),
            field="external_modification_timestamp",
        )
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))

    recon_svc.record_sync(source_account_id, external_id, str(internal_id), modified, _owner())
    return jsonify({}), 200


@sync_bp.route("/sources/<source_account_id>/mappings/<external_id>", methods=["GET"])
def get_mapping(source_account_id, external_id):
    """Return the internal id mapped to one external item."""
    internal_id = mapping_svc.get_mapped_internal_id(source_account_id, external_id, _owner())
    return jsonify({"internal_id": internal_id}), 200


@sync_bp.route("/sources/<source_account_id>/mappings", methods=["GET"])
def list_mappings(source_account_id):
    """List every mapping of one source."""
    mappings = mapping_svc.mappings_for_source(source_account_id, _owner())
    return jsonify({"assignments": mappings}), 200
