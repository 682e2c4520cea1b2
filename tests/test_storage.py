"""
Tests for the storage layer.

Tests cover:
- Model serialization and validation
- SqliteRecordStore paging, writes, cascades and the restore lock
- Identifier mappings recorded by restores
- LocalBlobStore streaming and atomic writes
- HttpBlobStore request construction and error classification
"""

from __future__ import annotations

import io
import shutil
import sqlite3
import tempfile
import time
import unittest
from contextlib import closing
from pathlib import Path
from unittest.mock import MagicMock

import requests

from ranchvault.storage.blob_store import (
    BlobNotFoundError,
    BlobStoreError,
    BlobTransferError,
    HttpBlobStore,
    LocalBlobStore,
    normalize_blob_path,
)
from ranchvault.storage.models import (
    ENTITY_ANIMALS,
    ENTITY_FIELD_DEFINITIONS,
    ENTITY_FIELD_VALUES,
    ENTITY_MEDICAL_HISTORY,
    ENTITY_PHOTOS,
    AnimalRecord,
    CustomFieldDefinition,
    CustomFieldValue,
    MedicalHistoryRecord,
    PhotoRecord,
    Ranch,
    RanchSettings,
    record_from_dict,
)
from ranchvault.storage.record_store import (
    SCHEMA_VERSION,
    ConstraintViolationError,
    IdMapping,
    RanchNotFoundError,
    SqliteRecordStore,
)


class TestModels(unittest.TestCase):
    """Tests for record dataclasses."""

    def test_animal_round_trip(self) -> None:
        animal = AnimalRecord(
            id="a1", ranch_id="r1", tag_number="101", sex="COW",
            weight_lbs=1150.5, mother_id="a0",
        )
        self.assertEqual(AnimalRecord.from_dict(animal.to_dict()), animal)

    def test_animal_missing_id(self) -> None:
        with self.assertRaises(ValueError):
            AnimalRecord.from_dict({"ranch_id": "r1"})

    def test_empty_strings_become_none(self) -> None:
        animal = AnimalRecord.from_dict({"id": "a1", "ranch_id": "r1", "mother_id": ""})
        self.assertIsNone(animal.mother_id)

    def test_unknown_field_type(self) -> None:
        with self.assertRaises(ValueError):
            CustomFieldDefinition.from_dict(
                {"id": "f1", "ranch_id": "r1", "field_name": "X", "field_type": "blob"}
            )

    def test_photo_filename(self) -> None:
        photo = PhotoRecord(id="p1", animal_id="a1", ranch_id="r1", storage_path="r1/a1/calf.jpg")
        self.assertEqual(photo.filename, "calf.jpg")

    def test_settings_id_is_ranch(self) -> None:
        self.assertEqual(RanchSettings(ranch_id="r1").id, "r1")

    def test_record_from_dict_rejects_non_object(self) -> None:
        with self.assertRaises(ValueError):
            record_from_dict(ENTITY_ANIMALS, ["not", "an", "object"])

    def test_record_from_dict_dispatches(self) -> None:
        record = record_from_dict(
            ENTITY_MEDICAL_HISTORY,
            {"id": "m1", "animal_id": "a1", "ranch_id": "r1", "date": "2024-01-01", "description": "x"},
        )
        self.assertIsInstance(record, MedicalHistoryRecord)


class RecordStoreTestCase(unittest.TestCase):
    """Shared fixture: a fresh store with one ranch."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.store = SqliteRecordStore(data_dir=Path(self.temp_dir))
        self.store.create_ranch(Ranch(id="r1", name="Home Place"))

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def add_animals(self, count: int, ranch_id: str = "r1", prefix: str = "a") -> list[AnimalRecord]:
        animals = [
            AnimalRecord(id=f"{prefix}{i}", ranch_id=ranch_id, tag_number=str(i))
            for i in range(count)
        ]
        self.store.insert_records(ENTITY_ANIMALS, animals)
        return animals


class TestSqliteRecordStore(RecordStoreTestCase):
    """Tests for SqliteRecordStore."""

    def test_database_created(self) -> None:
        self.assertTrue(self.store.db_path.exists())

    def test_older_schema_upgraded(self) -> None:
        with closing(sqlite3.connect(self.store.db_path)) as conn:
            conn.execute("DROP TABLE restore_id_map")
            conn.execute("DELETE FROM schema_version")
            conn.execute("INSERT INTO schema_version (version, applied_at) VALUES (1, 'earlier')")
            conn.commit()

        reopened = SqliteRecordStore(data_dir=Path(self.temp_dir))

        self.assertEqual(reopened.find_restored_ids("r1", ENTITY_ANIMALS, ["x"]), {})
        with closing(sqlite3.connect(self.store.db_path)) as conn:
            versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version")]
        self.assertEqual(versions, [1, SCHEMA_VERSION])

    def test_ranch_lookup(self) -> None:
        self.assertEqual(self.store.get_ranch("r1").name, "Home Place")
        self.assertIsNone(self.store.get_ranch("nope"))
        self.assertEqual(self.store.find_ranch_by_name("Home Place").id, "r1")
        self.assertEqual([r.id for r in self.store.list_ranches()], ["r1"])

    def test_delete_missing_ranch(self) -> None:
        with self.assertRaises(RanchNotFoundError):
            self.store.delete_ranch("nope")

    def test_fetch_page_cursor(self) -> None:
        self.add_animals(5)

        first, cursor = self.store.fetch_page(ENTITY_ANIMALS, "r1", page_size=2)
        self.assertEqual(len(first), 2)
        self.assertIsNotNone(cursor)

        second, cursor = self.store.fetch_page(ENTITY_ANIMALS, "r1", page_size=2, after=cursor)
        third, cursor = self.store.fetch_page(ENTITY_ANIMALS, "r1", page_size=2, after=cursor)

        self.assertEqual(len(second), 2)
        self.assertEqual(len(third), 1)
        self.assertIsNone(cursor)
        ids = [a.id for a in first + second + third]
        self.assertEqual(ids, [f"a{i}" for i in range(5)])

    def test_iter_pages_scoped_to_ranch(self) -> None:
        self.store.create_ranch(Ranch(id="r2", name="Other"))
        self.add_animals(3)
        self.add_animals(2, ranch_id="r2", prefix="b")

        pages = list(self.store.iter_pages(ENTITY_ANIMALS, "r2", page_size=10))

        self.assertEqual(len(pages), 1)
        self.assertEqual({a.id for a in pages[0]}, {"b0", "b1"})

    def test_field_values_scoped_through_animals(self) -> None:
        self.add_animals(1)
        self.store.insert_records(
            ENTITY_FIELD_DEFINITIONS,
            [CustomFieldDefinition(id="f1", ranch_id="r1", field_name="Pasture")],
        )
        self.store.insert_records(
            ENTITY_FIELD_VALUES,
            [CustomFieldValue(id="v1", animal_id="a0", field_id="f1", value="North")],
        )

        self.assertEqual(self.store.count(ENTITY_FIELD_VALUES, "r1"), 1)
        self.assertEqual(self.store.find_owners(ENTITY_FIELD_VALUES, ["v1"]), {"v1": "r1"})

    def test_field_value_upsert(self) -> None:
        self.add_animals(1)
        self.store.insert_records(
            ENTITY_FIELD_DEFINITIONS,
            [CustomFieldDefinition(id="f1", ranch_id="r1", field_name="Pasture")],
        )
        self.store.insert_records(
            ENTITY_FIELD_VALUES, [CustomFieldValue(id="v1", animal_id="a0", field_id="f1", value="North")]
        )
        self.store.insert_records(
            ENTITY_FIELD_VALUES, [CustomFieldValue(id="v2", animal_id="a0", field_id="f1", value="South")]
        )

        values, _ = self.store.fetch_page(ENTITY_FIELD_VALUES, "r1", page_size=10)
        self.assertEqual(len(values), 1)
        self.assertEqual(values[0].value, "South")

    def test_insert_duplicate_id_is_constraint_violation(self) -> None:
        self.add_animals(1)
        with self.assertRaises(ConstraintViolationError):
            self.add_animals(1)

    def test_insert_batch_is_atomic(self) -> None:
        self.add_animals(1)
        batch = [
            AnimalRecord(id="new", ranch_id="r1"),
            AnimalRecord(id="a0", ranch_id="r1"),
        ]
        with self.assertRaises(ConstraintViolationError):
            self.store.insert_records(ENTITY_ANIMALS, batch)
        self.assertIsNone(self.store.get_animal("new"))

    def test_foreign_keys_enforced(self) -> None:
        orphan = MedicalHistoryRecord(
            id="m1", animal_id="missing", ranch_id="r1", date="2024-01-01", description="x"
        )
        with self.assertRaises(ConstraintViolationError):
            self.store.insert_records(ENTITY_MEDICAL_HISTORY, [orphan])

    def test_delete_animals_cascades(self) -> None:
        self.add_animals(2)
        self.store.set_animal_parents("a1", "a0", None)
        self.store.insert_records(
            ENTITY_MEDICAL_HISTORY,
            [MedicalHistoryRecord(id="m1", animal_id="a0", ranch_id="r1", date="2024-01-01", description="x")],
        )
        self.store.insert_records(
            ENTITY_PHOTOS,
            [PhotoRecord(id="p1", animal_id="a0", ranch_id="r1", storage_path="r1/a0/x.jpg")],
        )

        deleted = self.store.delete_animals("r1")

        self.assertEqual(deleted, 2)
        stats = self.store.get_statistics("r1")
        self.assertEqual(stats[ENTITY_ANIMALS], 0)
        self.assertEqual(stats[ENTITY_MEDICAL_HISTORY], 0)
        self.assertEqual(stats[ENTITY_PHOTOS], 0)

    def test_parent_link_nulled_when_parent_deleted(self) -> None:
        self.store.create_ranch(Ranch(id="r2", name="Other"))
        self.add_animals(1)
        self.add_animals(1, ranch_id="r2", prefix="b")
        self.store.set_animal_parents("b0", "a0", None)

        self.store.delete_animals("r1")

        self.assertIsNone(self.store.get_animal("b0").mother_id)

    def test_update_animal_keeps_parents(self) -> None:
        self.add_animals(2)
        self.store.set_animal_parents("a1", "a0", None)

        self.store.update_animal(AnimalRecord(id="a1", ranch_id="r1", tag_number="99", name="Bessie"))

        animal = self.store.get_animal("a1")
        self.assertEqual(animal.tag_number, "99")
        self.assertEqual(animal.name, "Bessie")
        self.assertEqual(animal.mother_id, "a0")

    def test_settings_upsert(self) -> None:
        self.assertIsNone(self.store.get_settings("r1"))
        self.store.save_settings(RanchSettings(ranch_id="r1", report_line1="One"))
        self.store.save_settings(RanchSettings(ranch_id="r1", report_line1="Two"))
        self.assertEqual(self.store.get_settings("r1").report_line1, "Two")

    def test_set_photo_synced(self) -> None:
        self.add_animals(1)
        self.store.insert_records(
            ENTITY_PHOTOS,
            [PhotoRecord(id="p1", animal_id="a0", ranch_id="r1", storage_path="r1/a0/x.jpg")],
        )
        self.store.set_photo_synced("p1", False)

        photos, _ = self.store.fetch_page(ENTITY_PHOTOS, "r1", page_size=10)
        self.assertFalse(photos[0].is_synced)

    def test_find_owners(self) -> None:
        self.store.create_ranch(Ranch(id="r2", name="Other"))
        self.add_animals(1)
        self.add_animals(1, ranch_id="r2", prefix="b")

        owners = self.store.find_owners(ENTITY_ANIMALS, ["a0", "b0", "zz"])

        self.assertEqual(owners, {"a0": "r1", "b0": "r2"})

    def test_find_owners_many_ids(self) -> None:
        self.add_animals(3)
        ids = [f"x{i}" for i in range(1200)] + ["a2"]
        self.assertEqual(self.store.find_owners(ENTITY_ANIMALS, ids), {"a2": "r1"})

    def test_find_medical_keys(self) -> None:
        self.add_animals(2)
        self.store.insert_records(
            ENTITY_MEDICAL_HISTORY,
            [
                MedicalHistoryRecord(id="m1", animal_id="a0", ranch_id="r1", date="2024-01-01", description="Tagged"),
                MedicalHistoryRecord(id="m2", animal_id="a1", ranch_id="r1", date="2024-02-01", description="Wormed"),
            ],
        )

        self.assertEqual(self.store.find_medical_keys(["a0"]), {("a0", "2024-01-01", "Tagged")})
        self.assertEqual(self.store.find_medical_keys([]), set())


class TestRestoredIds(RecordStoreTestCase):
    """Tests for archived-to-restored identifier mappings."""

    def test_mapping_written_with_records(self) -> None:
        self.store.insert_records(
            ENTITY_ANIMALS,
            [AnimalRecord(id="new-1", ranch_id="r1"), AnimalRecord(id="same", ranch_id="r1")],
            [IdMapping("r1", "old-1", "new-1")],
        )

        restored = self.store.find_restored_ids("r1", ENTITY_ANIMALS, ["old-1", "same", "unknown"])

        self.assertEqual(restored, {"old-1": "new-1"})

    def test_mappings_scoped_by_ranch_and_entity(self) -> None:
        self.store.create_ranch(Ranch(id="r2", name="Other"))
        self.store.insert_records(
            ENTITY_ANIMALS, [AnimalRecord(id="new-1", ranch_id="r1")], [IdMapping("r1", "old-1", "new-1")]
        )

        self.assertEqual(self.store.find_restored_ids("r2", ENTITY_ANIMALS, ["old-1"]), {})
        self.assertEqual(self.store.find_restored_ids("r1", ENTITY_PHOTOS, ["old-1"]), {})

    def test_mapping_to_deleted_record_ignored(self) -> None:
        self.store.insert_records(
            ENTITY_ANIMALS, [AnimalRecord(id="new-1", ranch_id="r1")], [IdMapping("r1", "old-1", "new-1")]
        )
        self.store.delete_animals("r1")

        self.assertEqual(self.store.find_restored_ids("r1", ENTITY_ANIMALS, ["old-1"]), {})

    def test_mapping_replaced(self) -> None:
        self.store.insert_records(
            ENTITY_ANIMALS, [AnimalRecord(id="new-1", ranch_id="r1")], [IdMapping("r1", "old-1", "new-1")]
        )
        self.store.insert_records(
            ENTITY_ANIMALS, [AnimalRecord(id="new-2", ranch_id="r1")], [IdMapping("r1", "old-1", "new-2")]
        )

        self.assertEqual(self.store.find_restored_ids("r1", ENTITY_ANIMALS, ["old-1"]), {"old-1": "new-2"})

    def test_field_value_mapping(self) -> None:
        self.add_animals(1)
        self.store.insert_records(
            ENTITY_FIELD_DEFINITIONS, [CustomFieldDefinition(id="f1", ranch_id="r1", field_name="Pasture")]
        )
        self.store.insert_records(
            ENTITY_FIELD_VALUES,
            [CustomFieldValue(id="v-new", animal_id="a0", field_id="f1", value="North")],
            [IdMapping("r1", "v-old", "v-new")],
        )

        self.assertEqual(
            self.store.find_restored_ids("r1", ENTITY_FIELD_VALUES, ["v-old"]), {"v-old": "v-new"}
        )

    def test_failed_insert_writes_no_mapping(self) -> None:
        self.add_animals(1)
        with self.assertRaises(ConstraintViolationError):
            self.store.insert_records(
                ENTITY_ANIMALS,
                [AnimalRecord(id="fresh", ranch_id="r1"), AnimalRecord(id="a0", ranch_id="r1")],
                [IdMapping("r1", "old-a0", "fresh")],
            )

        self.assertIsNone(self.store.get_animal("fresh"))
        self.assertEqual(self.store.find_restored_ids("r1", ENTITY_ANIMALS, ["old-a0"]), {})

    def test_mappings_deleted_with_ranch(self) -> None:
        self.store.insert_records(
            ENTITY_ANIMALS, [AnimalRecord(id="new-1", ranch_id="r1")], [IdMapping("r1", "old-1", "new-1")]
        )
        self.store.delete_ranch("r1")
        self.store.create_ranch(Ranch(id="r1", name="Home Place"))
        self.store.insert_records(ENTITY_ANIMALS, [AnimalRecord(id="new-1", ranch_id="r1")])

        self.assertEqual(self.store.find_restored_ids("r1", ENTITY_ANIMALS, ["old-1"]), {})


class TestRestoreLock(RecordStoreTestCase):
    """Tests for the advisory restore lock."""

    def test_exclusive(self) -> None:
        self.assertTrue(self.store.acquire_lock("r1", "first", ttl_seconds=60))
        self.assertFalse(self.store.acquire_lock("r1", "second", ttl_seconds=60))

    def test_reentrant_for_holder(self) -> None:
        self.assertTrue(self.store.acquire_lock("r1", "first", ttl_seconds=60))
        self.assertTrue(self.store.acquire_lock("r1", "first", ttl_seconds=60))

    def test_release(self) -> None:
        self.store.acquire_lock("r1", "first", ttl_seconds=60)
        self.store.release_lock("r1", "first")
        self.assertTrue(self.store.acquire_lock("r1", "second", ttl_seconds=60))

    def test_release_by_other_holder_is_ignored(self) -> None:
        self.store.acquire_lock("r1", "first", ttl_seconds=60)
        self.store.release_lock("r1", "second")
        self.assertFalse(self.store.acquire_lock("r1", "second", ttl_seconds=60))

    def test_stale_lock_taken_over(self) -> None:
        self.store.acquire_lock("r1", "crashed", ttl_seconds=60)
        time.sleep(0.05)
        self.assertTrue(self.store.acquire_lock("r1", "second", ttl_seconds=0.01))

    def test_refresh_keeps_lock_alive(self) -> None:
        self.store.acquire_lock("r1", "first", ttl_seconds=60)
        time.sleep(0.05)

        self.assertTrue(self.store.refresh_lock("r1", "first"))
        self.assertFalse(self.store.acquire_lock("r1", "second", ttl_seconds=0.04))

    def test_refresh_after_takeover(self) -> None:
        self.store.acquire_lock("r1", "first", ttl_seconds=60)
        time.sleep(0.05)
        self.store.acquire_lock("r1", "second", ttl_seconds=0.01)

        self.assertFalse(self.store.refresh_lock("r1", "first"))
        self.assertTrue(self.store.refresh_lock("r1", "second"))

    def test_refresh_without_lock(self) -> None:
        self.assertFalse(self.store.refresh_lock("r1", "first"))

    def test_locks_are_per_ranch(self) -> None:
        self.store.acquire_lock("r1", "first", ttl_seconds=60)
        self.assertTrue(self.store.acquire_lock("r2", "second", ttl_seconds=60))

    def test_lock_visible_across_instances(self) -> None:
        other = SqliteRecordStore(data_dir=Path(self.temp_dir))
        self.store.acquire_lock("r1", "first", ttl_seconds=60)
        self.assertFalse(other.acquire_lock("r1", "second", ttl_seconds=60))


class TestNormalizeBlobPath(unittest.TestCase):
    """Tests for blob path validation."""

    def test_valid(self) -> None:
        self.assertEqual(normalize_blob_path("r1/a1/x.jpg"), "r1/a1/x.jpg")

    def test_rejects_escapes(self) -> None:
        for path in ("", "/etc/passwd", "r1/../x", "./x", "r1\\a1"):
            with self.subTest(path=path):
                with self.assertRaises(BlobStoreError):
                    normalize_blob_path(path)


class TestLocalBlobStore(unittest.TestCase):
    """Tests for LocalBlobStore."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.store = LocalBlobStore(self.temp_dir, chunk_size=4)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_put_and_get(self) -> None:
        self.store.put("r1/a1/x.jpg", io.BytesIO(b"0123456789"))

        chunks = list(self.store.get("r1/a1/x.jpg"))

        self.assertEqual(b"".join(chunks), b"0123456789")
        self.assertEqual(len(chunks), 3)
        self.assertTrue(self.store.exists("r1/a1/x.jpg"))

    def test_get_missing_raises_immediately(self) -> None:
        with self.assertRaises(BlobNotFoundError):
            self.store.get("r1/a1/missing.jpg")

    def test_put_replaces(self) -> None:
        self.store.put("r1/a1/x.jpg", io.BytesIO(b"old"))
        self.store.put("r1/a1/x.jpg", io.BytesIO(b"new"))
        self.assertEqual(b"".join(self.store.get("r1/a1/x.jpg")), b"new")

    def test_no_temp_files_left(self) -> None:
        self.store.put("r1/a1/x.jpg", io.BytesIO(b"data"))
        leftovers = [p.name for p in (Path(self.temp_dir) / "r1" / "a1").iterdir()]
        self.assertEqual(leftovers, ["x.jpg"])

    def test_delete(self) -> None:
        self.store.put("r1/a1/x.jpg", io.BytesIO(b"data"))
        self.store.delete("r1/a1/x.jpg")
        self.assertFalse(self.store.exists("r1/a1/x.jpg"))
        with self.assertRaises(BlobNotFoundError):
            self.store.delete("r1/a1/x.jpg")


def _response(status: int, text: str = "", chunks: list[bytes] | None = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.iter_content.return_value = iter(chunks or [])
    return response


class TestHttpBlobStore(unittest.TestCase):
    """Tests for HttpBlobStore with a mocked requests session."""

    def setUp(self) -> None:
        self.session = MagicMock()
        self.session.headers = {}
        self.store = HttpBlobStore(
            url="https://blobs.example.test/",
            bucket="animal-photos",
            service_key="secret",
            session=self.session,
        )

    def test_auth_headers(self) -> None:
        self.assertEqual(self.session.headers["Authorization"], "Bearer secret")
        self.assertEqual(self.session.headers["apikey"], "secret")

    def test_get_streams(self) -> None:
        self.session.get.return_value = _response(200, chunks=[b"ab", b"", b"cd"])

        data = b"".join(self.store.get("r1/a1/x.jpg"))

        self.assertEqual(data, b"abcd")
        url = self.session.get.call_args[0][0]
        self.assertEqual(
            url, "https://blobs.example.test/storage/v1/object/animal-photos/r1/a1/x.jpg"
        )
        self.assertTrue(self.session.get.call_args[1]["stream"])

    def test_get_not_found(self) -> None:
        self.session.get.return_value = _response(404)
        with self.assertRaises(BlobNotFoundError):
            self.store.get("r1/a1/x.jpg")

    def test_get_not_found_as_400(self) -> None:
        self.session.get.return_value = _response(400, text='{"error":"not_found"}')
        with self.assertRaises(BlobNotFoundError):
            self.store.get("r1/a1/x.jpg")

    def test_get_server_error_is_transient(self) -> None:
        self.session.get.return_value = _response(503)
        with self.assertRaises(BlobTransferError):
            self.store.get("r1/a1/x.jpg")

    def test_connection_error_is_transient(self) -> None:
        self.session.get.side_effect = requests.ConnectionError("reset")
        with self.assertRaises(BlobTransferError):
            self.store.get("r1/a1/x.jpg")

    def test_forbidden_is_permanent(self) -> None:
        self.session.post.return_value = _response(403, text="denied")
        with self.assertRaises(BlobStoreError) as ctx:
            self.store.put("r1/a1/x.jpg", io.BytesIO(b"data"), size=4)
        self.assertNotIsInstance(ctx.exception, BlobTransferError)

    def test_put_headers(self) -> None:
        self.session.post.return_value = _response(200)

        self.store.put("r1/a1/x.jpg", io.BytesIO(b"data"), size=4, content_type="image/jpeg")

        headers = self.session.post.call_args[1]["headers"]
        self.assertEqual(headers["Content-Type"], "image/jpeg")
        self.assertEqual(headers["Content-Length"], "4")
        self.assertEqual(headers["x-upsert"], "true")

    def test_exists(self) -> None:
        self.session.head.return_value = _response(200)
        self.assertTrue(self.store.exists("r1/a1/x.jpg"))
        self.session.head.return_value = _response(404)
        self.assertFalse(self.store.exists("r1/a1/x.jpg"))


if __name__ == "__main__":
    unittest.main()
