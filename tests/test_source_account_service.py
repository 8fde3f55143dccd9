"""Unit tests for assignment_sync.services.source_account_service.

Remote credential checks go through the "Fake" connector registered in
conftest.py; each test scripts its answer via the fake_connector fixture.

Coverage
--------
    1. connect persists an encrypted account only after validation
    2. duplicate (owner, name) is rejected before any remote call
    3. invalid credentials / network failures write nothing
    4. shape checks (missing fields, unsupported source_type)
    5. disconnect cascades mappings; owner scoping on lookups
    6. last_successful_poll never moves backwards
    7. orphaned mappings are reaped
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, text

from assignment_sync.core.exceptions import (
    DuplicateSourceError,
    InvalidCredentialsError,
    NetworkError,
    SourceNotFoundError,
    ValidationError,
)
from assignment_sync.models import db
from assignment_sync.models.sync import AssignmentMapping, SourceAccount, ensure_utc
import assignment_sync.services.source_account_service as source_svc

OWNER = "alice@example.edu"


def _account_count() -> int:
    return db.session.execute(select(func.count()).select_from(SourceAccount)).scalar()


def _make_mapping(source_account_id: str, external_id: str = "1") -> AssignmentMapping:
    mapping = AssignmentMapping(
        source_account_id=source_account_id,
        external_id=external_id,
        internal_record_id=f"I{external_id}",
        last_external_modified_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    db.session.add(mapping)
    db.session.commit()
    return mapping


class TestConnect:
    def test_connect_persists_account_with_encrypted_details(self, fake_connector):
        account_id = source_svc.connect_source(OWNER, "Fake", "My LMS", {"token": "s3cret"})

        account = db.session.get(SourceAccount, account_id)
        assert account.owner == OWNER
        assert account.source_type == "Fake"
        assert account.last_successful_poll is None
        assert "s3cret" not in account.encrypted_connection_details
        assert source_svc.connection_details_for(account) == {"token": "s3cret"}
        assert fake_connector.validate_calls == 1

    def test_duplicate_name_rejected_before_remote_check(self, fake_connector, source_account):
        """Given an existing (owner, name) / When connecting again / Then no remote call is made."""
        with pytest.raises(DuplicateSourceError) as exc_info:
            source_svc.connect_source(OWNER, "Fake", "My LMS", {"token": "other"})

        assert exc_info.value.code == "ERR_DUPLICATE_SOURCE"
        assert fake_connector.validate_calls == 0
        assert _account_count() == 1

    def test_same_name_for_another_owner_is_allowed(self, source_account):
        other = source_svc.connect_source("bob@example.edu", "Fake", "My LMS", {"token": "t"})

        assert other != source_account
        assert _account_count() == 2

    def test_invalid_credentials_writes_nothing(self, fake_connector):
        fake_connector.valid = False

        with pytest.raises(InvalidCredentialsError):
            source_svc.connect_source(OWNER, "Fake", "My LMS", {"token": "bad"})

        assert _account_count() == 0

    def test_network_failure_writes_nothing(self, fake_connector):
        fake_connector.validate_error = NetworkError("timed out")

        with pytest.raises(NetworkError):
            source_svc.connect_source(OWNER, "Fake", "My LMS", {"token": "t"})

        assert _account_count() == 0

    def test_unexpected_connector_failure_is_network(self, fake_connector):
        fake_connector.validate_error = RuntimeError("boom")

        with pytest.raises(NetworkError):
            source_svc.connect_source(OWNER, "Fake", "My LMS", {"token": "t"})

        assert _account_count() == 0

    def test_missing_required_detail_is_validation_error(self, fake_connector):
        with pytest.raises(ValidationError):
            source_svc.connect_source(OWNER, "Fake", "My LMS", {})

        assert fake_connector.validate_calls == 0

    def test_missing_encryption_key_fails_before_remote_check(self, fake_connector, monkeypatch):
        """Given no ENCRYPTION_KEY / When connecting / Then the platform is never contacted."""
        monkeypatch.delenv("ENCRYPTION_KEY")

        with pytest.raises(RuntimeError, match="ENCRYPTION_KEY"):
            source_svc.connect_source(OWNER, "Fake", "My LMS", {"token": "t"})

        assert fake_connector.validate_calls == 0
        assert _account_count() == 0

    def test_unsupported_source_type(self):
        with pytest.raises(ValidationError):
            source_svc.connect_source(OWNER, "Moodle", "My LMS", {"token": "t"})

    @pytest.mark.parametrize("field", ["owner", "source_type", "source_name"])
    def test_blank_fields_rejected(self, field):
        args = {"owner": OWNER, "source_type": "Fake", "source_name": "My LMS"}
        args[field] = "  "

        with pytest.raises(ValidationError):
            source_svc.connect_source(
                args["owner"], args["source_type"], args["source_name"], {"token": "t"}
            )


class TestQueries:
    def test_sources_for_owner_excludes_credentials(self, source_account):
        sources = source_svc.sources_for_owner(OWNER)

        assert [s["id"] for s in sources] == [source_account]
        assert "connection_details" not in sources[0]
        assert "encrypted_connection_details" not in sources[0]

    def test_to_dict_omits_every_sensitive_field(self, source_account):
        account = db.session.get(SourceAccount, source_account)

        data = account.to_dict()

        assert SourceAccount.SENSITIVE_FIELDS.isdisjoint(data)
        assert data["source_name"] == "My LMS"
        assert data["last_successful_poll"] is None
        assert isinstance(data["created_at"], str)

    def test_sources_for_owner_internal_view_includes_credentials(self, source_account):
        sources = source_svc.sources_for_owner(OWNER, include_connection_details=True)

        assert sources[0]["connection_details"] == {"token": "secret-token"}

    def test_sources_for_other_owner_is_empty(self, source_account):
        assert source_svc.sources_for_owner("bob@example.edu") == []

    def test_get_source_hides_other_owners_account(self, source_account):
        with pytest.raises(SourceNotFoundError):
            source_svc.get_source(source_account, owner="bob@example.edu")

    def test_get_source_unknown_id(self):
        with pytest.raises(SourceNotFoundError):
            source_svc.get_source("does-not-exist")


class TestDisconnect:
    def test_disconnect_removes_account_and_mappings(self, source_account):
        _make_mapping(source_account, "1")
        _make_mapping(source_account, "2")

        source_svc.disconnect_source(source_account)

        assert source_svc.sources_for_owner(OWNER) == []
        remaining = db.session.execute(
            select(func.count()).select_from(AssignmentMapping)
        ).scalar()
        assert remaining == 0

    def test_disconnect_unknown_account(self):
        with pytest.raises(SourceNotFoundError):
            source_svc.disconnect_source("does-not-exist")

    def test_disconnect_by_non_owner_is_not_found(self, source_account):
        with pytest.raises(SourceNotFoundError):
            source_svc.disconnect_source(source_account, owner="bob@example.edu")

        assert _account_count() == 1


class TestFreshness:
    def test_mark_poll_success_sets_timestamp(self, source_account):
        at = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)

        stored = source_svc.mark_poll_success(source_account, at)

        assert stored == at
        assert ensure_utc(db.session.get(SourceAccount, source_account).last_successful_poll) == at

    def test_mark_poll_success_never_moves_backwards(self, source_account):
        later = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
        source_svc.mark_poll_success(source_account, later)

        stored = source_svc.mark_poll_success(source_account, later - timedelta(hours=1))

        assert stored == later


class TestReapOrphans:
    def test_reaps_mappings_without_account(self, source_account):
        _make_mapping(source_account, "1")
        # Simulate an interrupted disconnect: account row gone, mapping left.
        db.session.execute(text("PRAGMA foreign_keys=OFF"))
        db.session.execute(
            text("DELETE FROM external_source_accounts WHERE id = :id"), {"id": source_account}
        )
        db.session.commit()
        db.session.execute(text("PRAGMA foreign_keys=ON"))
        db.session.expunge_all()

        removed = source_svc.reap_orphaned_mappings()

        assert removed == 1
        remaining = db.session.execute(
            select(func.count()).select_from(AssignmentMapping)
        ).scalar()
        assert remaining == 0

    def test_nothing_to_reap(self, source_account):
        _make_mapping(source_account, "1")

        assert source_svc.reap_orphaned_mappings() == 0
