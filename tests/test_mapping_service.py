"""Unit tests for assignment_sync.services.mapping_service.

Coverage
--------
    1. first resolution inserts, later resolutions update in place
    2. resolve is idempotent
    3. point lookup / listing / snapshot
    4. owner scoping and unknown accounts
    5. a racing insert of the same key is retried as an update
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select

from assignment_sync.core.exceptions import NotFoundError, SourceNotFoundError, ValidationError
from assignment_sync.models import db
from assignment_sync.models.sync import AssignmentMapping, ensure_utc
from assignment_sync.services.change_detection import MappedState
import assignment_sync.services.mapping_service as mapping_svc

T100 = datetime.fromtimestamp(100, tz=timezone.utc)
T150 = datetime.fromtimestamp(150, tz=timezone.utc)


def _mapping_rows() -> list[AssignmentMapping]:
    return list(db.session.execute(select(AssignmentMapping)).scalars().all())


class TestRecordInternalSync:
    def test_first_resolution_inserts(self, source_account):
        mapping_svc.record_internal_sync(source_account, "1", "I1", T100)

        rows = _mapping_rows()
        assert len(rows) == 1
        assert rows[0].external_id == "1"
        assert rows[0].internal_record_id == "I1"
        assert ensure_utc(rows[0].last_external_modified_at) == T100

    def test_second_resolution_updates_in_place(self, source_account):
        mapping_svc.record_internal_sync(source_account, "1", "I1", T100)
        first_id = _mapping_rows()[0].id

        mapping_svc.record_internal_sync(source_account, "1", "I1-v2", T150)

        rows = _mapping_rows()
        assert [r.id for r in rows] == [first_id]
        assert rows[0].internal_record_id == "I1-v2"
        assert ensure_utc(rows[0].last_external_modified_at) == T150

    def test_idempotent(self, source_account):
        mapping_svc.record_internal_sync(source_account, "1", "I1", T100)
        once = mapping_svc.mappings_for_source(source_account)

        mapping_svc.record_internal_sync(source_account, "1", "I1", T100)
        twice = mapping_svc.mappings_for_source(source_account)

        strip = [{k: v for k, v in m.items() if k != "updated_at"} for m in once]
        assert [{k: v for k, v in m.items() if k != "updated_at"} for m in twice] == strip

    def test_unknown_account(self):
        with pytest.raises(SourceNotFoundError):
            mapping_svc.record_internal_sync("nope", "1", "I1", T100)

    def test_non_owner_is_not_found(self, source_account):
        with pytest.raises(SourceNotFoundError):
            mapping_svc.record_internal_sync(source_account, "1", "I1", T100, owner="mallory")

        assert _mapping_rows() == []

    @pytest.mark.parametrize("external_id, internal_id, modified", [
        ("", "I1", T100),
        ("1", "", T100),
        ("1", "I1", None),
    ])
    def test_missing_values_rejected(self, source_account, external_id, internal_id, modified):
        with pytest.raises(ValidationError):
            mapping_svc.record_internal_sync(source_account, external_id, internal_id, modified)

    def test_concurrent_insert_retried_as_update(self, source_account):
        """Given another writer inserts the key first / Then our write lands as an update."""
        real_find = mapping_svc._find
        calls = {"n": 0}

        def _racing_find(source_account_id, external_id):
            calls["n"] += 1
            if calls["n"] == 1:
                # The competing writer commits between our lookup and our insert.
                db.session.add(AssignmentMapping(
                    source_account_id=source_account_id,
                    external_id=external_id,
                    internal_record_id="I-other",
                    last_external_modified_at=T100,
                ))
                db.session.commit()
                return None
            return real_find(source_account_id, external_id)

        with patch.object(mapping_svc, "_find", side_effect=_racing_find):
            mapping_svc.record_internal_sync(source_account, "1", "I-mine", T150)

        rows = _mapping_rows()
        assert len(rows) == 1
        assert rows[0].internal_record_id == "I-mine"
        assert calls["n"] == 2


class TestReads:
    def test_get_mapped_internal_id(self, source_account):
        mapping_svc.record_internal_sync(source_account, "1", "I1", T100)

        assert mapping_svc.get_mapped_internal_id(source_account, "1") == "I1"

    def test_get_mapped_internal_id_missing(self, source_account):
        with pytest.raises(NotFoundError) as exc_info:
            mapping_svc.get_mapped_internal_id(source_account, "404")

        assert not isinstance(exc_info.value, SourceNotFoundError)

    def test_mappings_for_source_lists_only_that_source(self, source_account):
        from assignment_sync.services.source_account_service import connect_source

        other = connect_source("alice@example.edu", "Fake", "Second LMS", {"token": "t"})
        mapping_svc.record_internal_sync(source_account, "2", "I2", T100)
        mapping_svc.record_internal_sync(source_account, "1", "I1", T100)
        mapping_svc.record_internal_sync(other, "1", "J1", T100)

        listed = mapping_svc.mappings_for_source(source_account)

        assert [(m["external_id"], m["internal_id"]) for m in listed] == [("1", "I1"), ("2", "I2")]
        assert listed[0]["last_external_modification_timestamp"] == T100.isoformat()

    def test_snapshot_restricted_to_ids(self, source_account):
        mapping_svc.record_internal_sync(source_account, "1", "I1", T100)
        mapping_svc.record_internal_sync(source_account, "2", "I2", T150)

        snapshot = mapping_svc.mapping_snapshot(source_account, ["2", "3"])

        assert snapshot == {"2": MappedState("I2", T150)}

    def test_snapshot_empty_id_list(self, source_account):
        mapping_svc.record_internal_sync(source_account, "1", "I1", T100)

        assert mapping_svc.mapping_snapshot(source_account, []) == {}

