"""External assignment sync data models.

Two models:
  SourceAccount      — one stored connection from an owner to an external
                       platform (Canvas, ...). Credentials are Fernet-encrypted.
  AssignmentMapping  — reconciled identity link between one external item and
                       one internal record, plus the external item's last-seen
                       modification time.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from assignment_sync.models import db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to aware UTC.

    SQLite hands back naive datetimes even for timezone-aware columns, so every
    value read from the DB goes through here before it is compared.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    dt = ensure_utc(dt)
    return dt.isoformat() if dt else None


# ── SourceAccount ────────────────────────────────────────────────────────────


class SourceAccount(db.Model):
    """A connection from one owner to one external academic platform.

    Design decisions:
    - (owner, source_name) is unique: a user labels each connection once.
    - connection_details (API token, base URL, ...) are stored as a
      Fernet-encrypted JSON document and never leave this subsystem via
      to_dict() unless an internal caller asks for them explicitly.
    - last_successful_poll only moves forward, and only after a fully
      successful poll.
    """

    __tablename__ = "external_source_accounts"
    __table_args__ = (
        db.UniqueConstraint("owner", "source_name", name="uq_source_owner_name"),
        {"extend_existing": True},
    )

    SENSITIVE_FIELDS: frozenset[str] = frozenset({"encrypted_connection_details"})

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    owner = db.Column(
        db.String(200),
        nullable=False,
        index=True,
        comment="Opaque reference to the owning user.",
    )
    source_type = db.Column(
        db.String(50),
        nullable=False,
        comment="Platform discriminator, e.g. Canvas.",
    )
    source_name = db.Column(
        db.String(200),
        nullable=False,
        comment="User-chosen label, e.g. '6.104 Canvas'.",
    )
    encrypted_connection_details = db.Column(
        db.Text,
        nullable=False,
        comment="Fernet-encrypted JSON credential bundle. NEVER log or expose.",
    )
    last_successful_poll = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    mappings = db.relationship(
        "AssignmentMapping",
        back_populates="source_account",
        lazy="select",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_dict(self, include_connection_details: bool = False) -> dict:
        """Serialize without credentials.

        Columns named in SENSITIVE_FIELDS are never emitted. A new
        credential column must be added there.

        include_connection_details decrypts the bundle for internal callers
        (connectors, smoke scripts). API responses never set it.
        """
        data = {}
        for column in self.__table__.columns:
            if column.name in self.SENSITIVE_FIELDS:
                continue
            value = getattr(self, column.name)
            data[column.name] = _iso(value) if isinstance(value, datetime) else value
        if include_connection_details:
            from assignment_sync.utils.crypto import decrypt_details

            data["connection_details"] = decrypt_details(self.encrypted_connection_details)
        return data


# ── AssignmentMapping ────────────────────────────────────────────────────────


class AssignmentMapping(db.Model):
    """Maps one external item to its internal counterpart.

    At most one mapping exists per (source_account_id, external_id). Rows are
    inserted on first resolution, updated in place afterwards, and removed
    only by cascade when the owning SourceAccount is disconnected.
    """

    __tablename__ = "external_assignment_mappings"
    __table_args__ = (
        db.UniqueConstraint(
            "source_account_id", "external_id", name="uq_mapping_source_external"
        ),
        {"extend_existing": True},
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    source_account_id = db.Column(
        db.String(36),
        db.ForeignKey("external_source_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id = db.Column(
        db.String(100),
        nullable=False,
        comment="Platform-native item id, stringified.",
    )
    internal_record_id = db.Column(
        db.String(200),
        nullable=False,
        comment="Opaque reference into the owning application's domain.",
    )
    last_external_modified_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        comment="Platform's own last-modified time as of the last resolution.",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    source_account = db.relationship("SourceAccount", back_populates="mappings")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_account_id": self.source_account_id,
            "external_id": self.external_id,
            "internal_id": self.internal_record_id,
            "last_external_modification_timestamp": _iso(self.last_external_modified_at),
            "updated_at": _iso(self.updated_at),
        }
