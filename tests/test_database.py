from datetime import datetime, timezone

import pytest
from bson import ObjectId

import database
from errors import ConcurrentModification, ServerError, ValidationError


def test_update_document_bumps_revision(mongo):
    oid = database.create_document(mongo, "job", {"title": "Paint fence"})
    doc = mongo["job"].find_one({"_id": oid})
    assert doc["revision"] == 0

    updated = database.update_document(mongo, "job", doc, {"title": "Paint gate"})
    assert updated["title"] == "Paint gate"
    assert updated["revision"] == 1


def test_update_document_detects_lost_update(mongo):
    oid = database.create_document(mongo, "job", {"title": "Paint fence"})
    first = mongo["job"].find_one({"_id": oid})
    second = mongo["job"].find_one({"_id": oid})

    database.update_document(mongo, "job", first, {"title": "First writer"})
    with pytest.raises(ConcurrentModification) as exc:
        database.update_document(mongo, "job", second, {"title": "Second writer"})
    assert exc.value.status_code == 409
    assert mongo["job"].find_one({"_id": oid})["title"] == "First writer"


def test_update_document_unsets_fields(mongo):
    oid = database.create_document(mongo, "user", {"email": "a@acme.io", "phone": "555"})
    doc = mongo["user"].find_one({"_id": oid})
    updated = database.update_document(mongo, "user", doc, unset_fields=["phone"])
    assert "phone" not in updated


def test_to_public_id_converts_nested_values():
    oid, ref = ObjectId(), ObjectId()
    naive = datetime(2024, 1, 2, 3, 4, 5)
    doc = {"_id": oid, "items": [{"worker": ref, "at": naive}], "n": 3}
    assert database.to_public_id(doc) == {
        "id": str(oid),
        "items": [{"worker": str(ref), "at": "2024-01-02T03:04:05+00:00"}],
        "n": 3,
    }


def test_to_object_id_rejects_garbage():
    with pytest.raises(ValidationError):
        database.to_object_id("zzz")


def test_get_db_without_connection(monkeypatch):
    monkeypatch.setattr(database, "db", None)
    with pytest.raises(ServerError):
        database.get_db()


def test_as_utc():
    assert database.as_utc(None) is None
    assert database.as_utc(datetime(2024, 1, 1)).tzinfo == timezone.utc
