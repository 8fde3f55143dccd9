"""Standardised API error responses.

Usage
-----
    from assignment_sync.utils.errors import api_error, E

    return api_error(E.SOURCE_NOT_FOUND, "SourceAccount id=... not found")
    return api_error(E.VALIDATION_REQUIRED, "source_name is required")
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    The sync vocabulary (DUPLICATE_SOURCE ... SOURCE_NOT_FOUND) matches the
    ``code`` attribute of the exceptions in assignment_sync.core.exceptions.
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"
    SOURCE_NOT_FOUND = "ERR_SOURCE_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    DUPLICATE_SOURCE = "ERR_DUPLICATE_SOURCE"

    # External platform
    INVALID_CREDENTIALS = "ERR_INVALID_CREDENTIALS"
    SOURCE_CONNECTION = "ERR_SOURCE_CONNECTION"
    NETWORK = "ERR_NETWORK"
    RATE_LIMIT = "ERR_RATE_LIMIT"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.SOURCE_NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.DUPLICATE_SOURCE: 409,
    E.INVALID_CREDENTIALS: 422,
    E.SOURCE_CONNECTION: 424,
    E.NETWORK: 502,
    E.RATE_LIMIT: 429,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field-level validation errors, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
