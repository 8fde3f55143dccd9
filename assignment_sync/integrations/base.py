"""Connector capability shared by every external platform.

Architecture:
  Each platform (Canvas, ...) implements BaseConnector independently and
  registers itself under its source_type discriminator via
  @register_connector. Shared code never branches on source_type; it asks
  build_connector() for the implementation and talks to the interface.

Connector contract:
  validate_credentials(details) -> bool
      True = credentials accepted, False = platform said "unauthenticated".
      Raises NetworkError for timeouts / 5xx / transport failures.
  poll(details) -> list[RawExternalRecord]
      Raises InvalidCredentialsError, RateLimitError or NetworkError only.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from assignment_sync.core.exceptions import ValidationError
from assignment_sync.utils.helpers import isoformat_or_none, parse_timestamp

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30
_DEFAULT_PAGE_SIZE = 100
_DEFAULT_MAX_PAGES = 50


# ── Value objects ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExternalItemDetails:
    """Platform-independent details of one external item."""

    name: str
    description: str | None = None
    due_date: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "due_date": isoformat_or_none(self.due_date),
        }


@dataclass(frozen=True)
class RawExternalRecord:
    """One normalised item as reported by the platform (transient)."""

    external_id: str
    details: ExternalItemDetails
    external_modified_at: datetime

    def to_dict(self) -> dict:
        return {
            "external_id": self.external_id,
            "details": self.details.to_dict(),
            "external_modification_timestamp": isoformat_or_none(self.external_modified_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RawExternalRecord":
        """Rebuild a record from its to_dict() form (request bodies).

        Raises:
            ValueError: If external_id, details.name or the timestamp is
                missing or unparseable.
        """
        external_id = data.get("external_id")
        if external_id is None or str(external_id).strip() == "":
            raise ValueError("external_id is required")
        details = data.get("details") or {}
        name = details.get("name")
        if not name:
            raise ValueError(f"details.name is required (external_id={external_id})")
        modified = parse_timestamp(data.get("external_modification_timestamp"))
        if modified is None:
            raise ValueError(
                f"external_modification_timestamp is required (external_id={external_id})"
            )
        return cls(
            external_id=str(external_id),
            details=ExternalItemDetails(
                name=name,
                description=details.get("description"),
                due_date=parse_timestamp(details.get("due_date")),
            ),
            external_modified_at=modified,
        )


# ── Connector interface ──────────────────────────────────────────────────────


class BaseConnector(ABC):
    """Abstract connector, one subclass per external platform.

    Subclasses set ``source_type`` and ``required_details`` and implement
    the two remote operations. Transport settings are passed in by
    build_connector() from app config so every remote call is bounded.
    """

    source_type: str = ""
    required_details: tuple[str, ...] = ()

    def __init__(
        self,
        *,
        session=None,
        timeout: float = _DEFAULT_TIMEOUT,
        page_size: int = _DEFAULT_PAGE_SIZE,
        max_pages: int = _DEFAULT_MAX_PAGES,
    ) -> None:
        self._session = session
        self.timeout = timeout
        self.page_size = page_size
        self.max_pages = max_pages

    def check_details(self, details: dict) -> None:
        """Local shape check of a connection-details bundle.

        Raises:
            ValidationError: If any required key is missing or blank.
        """
        if not isinstance(details, dict):
            raise ValidationError("connection_details must be an object")
        missing = [k for k in self.required_details if not str(details.get(k) or "").strip()]
        if missing:
            raise ValidationError(
                f"connection_details missing required fields for {self.source_type}: {missing}",
                details={k: "required" for k in missing},
            )

    @abstractmethod
    def validate_credentials(self, details: dict) -> bool:
        """Return True if the platform accepts the credentials."""

    @abstractmethod
    def poll(self, details: dict) -> list[RawExternalRecord]:
        """Fetch, filter and normalise the platform's current items."""


# ── Registry ─────────────────────────────────────────────────────────────────

_connector_registry: dict[str, type[BaseConnector]] = {}


def register_connector(source_type: str) -> Callable:
    """Class decorator registering a connector under a source_type.

    Usage:
        @register_connector("Canvas")
        class CanvasConnector(BaseConnector):
            ...

    Lookup is case-insensitive; the stored account keeps the caller's casing.
    """
    def decorator(cls: type[BaseConnector]) -> type[BaseConnector]:
        cls.source_type = source_type
        _connector_registry[source_type.lower()] = cls
        logger.debug("Registered connector source_type=%s cls=%s", source_type, cls.__name__)
        return cls
    return decorator


def unregister_connector(source_type: str) -> None:
    """Remove a connector from the registry (tests, plugin reloads)."""
    _connector_registry.pop((source_type or "").lower(), None)


def get_registered_connectors() -> dict[str, type[BaseConnector]]:
    """Return all registered connector classes keyed by lower-cased source_type."""
    return dict(_connector_registry)


def build_connector(source_type: str, **settings) -> BaseConnector:
    """Instantiate the connector registered for source_type.

    Raises:
        ValidationError: If no connector is registered for source_type, so an
            unsupported platform fails before any state is touched.
    """
    cls = _connector_registry.get((source_type or "").lower())
    if cls is None:
        supported = sorted(c.source_type for c in _connector_registry.values())
        raise ValidationError(
            f"Unsupported source_type '{source_type}'. Must be one of: {', '.join(supported)}"
        )
    return cls(**settings)
