"""
Tests for the demo data generator.

Tests cover:
- Generated herd shape and record counts
- Reproducibility with a seed
- Existing demo ranch handling
- The demo ranch surviving an export/restore round trip
"""

from __future__ import annotations

import shutil
import tempfile
import unittest
from pathlib import Path

from helpers import fast_settings

from ranchvault.backup import RestoreOptions, RestoreOrchestrator, SnapshotBuilder
from ranchvault.demo import (
    DEMO_RANCH_NAME,
    DemoConfig,
    DemoGenerator,
    DemoRanchExistsError,
    generate_demo_data,
)
from ranchvault.storage import LocalBlobStore, SqliteRecordStore
from ranchvault.storage.models import ENTITY_ANIMALS, ENTITY_PHOTOS


class TestDemoGenerator(unittest.TestCase):
    """Tests for DemoGenerator."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        self.store = SqliteRecordStore(data_dir=self.temp_dir / "data")
        self.blobs = LocalBlobStore(self.temp_dir / "blobs")

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def animals(self, ranch_id: str) -> list:
        return [a for page in self.store.iter_pages(ENTITY_ANIMALS, ranch_id, 100) for a in page]

    def test_generate_counts_match_store(self) -> None:
        summary = generate_demo_data(self.store, self.blobs, seed=1)

        stats = self.store.get_statistics(summary["ranch_id"])
        self.assertEqual(summary["ranch_name"], DEMO_RANCH_NAME)
        self.assertEqual(stats["animals"], summary["animals"])
        self.assertEqual(stats["medical_history"], summary["medical_records"])
        self.assertEqual(stats["custom_field_values"], summary["custom_field_values"])
        self.assertEqual(stats["animal_photos"], summary["photos"])
        self.assertEqual(stats["custom_field_definitions"], summary["custom_fields"])
        self.assertIsNotNone(self.store.get_settings(summary["ranch_id"]))

    def test_herd_shape(self) -> None:
        """One bull, the founder cows, and two generations of calves."""
        config = DemoConfig(founder_cows=4, calves_per_cow=2, seed=5)
        summary = DemoGenerator(self.store, self.blobs, config).generate()

        animals = self.animals(summary["ranch_id"])
        by_id = {a.id: a for a in animals}
        founders = [a for a in animals if a.mother_id is None]
        self.assertEqual(len(founders), 1 + config.founder_cows)
        self.assertGreaterEqual(len(animals), 1 + config.founder_cows * (1 + config.calves_per_cow))
        for animal in animals:
            if animal.mother_id is not None:
                self.assertIn(animal.mother_id, by_id)
                self.assertIn(animal.father_id, by_id)

    def test_seed_is_reproducible(self) -> None:
        first = generate_demo_data(self.store, self.blobs, seed=42)
        second = generate_demo_data(self.store, self.blobs, force=True, seed=42)

        for key in ("animals", "medical_records", "custom_field_values", "photos"):
            self.assertEqual(first[key], second[key])

    def test_photos_written_to_blob_store(self) -> None:
        summary = generate_demo_data(self.store, self.blobs, seed=2)

        photos = [p for page in self.store.iter_pages(ENTITY_PHOTOS, summary["ranch_id"], 100) for p in page]
        for photo in photos:
            data = b"".join(self.blobs.get(photo.storage_path))
            self.assertEqual(len(data), photo.byte_size)
            self.assertTrue(data.startswith(b"\xff\xd8"))

    def test_existing_demo_ranch(self) -> None:
        summary = generate_demo_data(self.store, self.blobs, seed=1)

        with self.assertRaises(DemoRanchExistsError) as cm:
            generate_demo_data(self.store, self.blobs)

        self.assertEqual(cm.exception.ranch_id, summary["ranch_id"])

    def test_force_recreates(self) -> None:
        first = generate_demo_data(self.store, self.blobs, seed=1)
        second = generate_demo_data(self.store, self.blobs, force=True, seed=1)

        self.assertNotEqual(first["ranch_id"], second["ranch_id"])
        self.assertIsNone(self.store.get_ranch(first["ranch_id"]))
        self.assertEqual([r.id for r in self.store.list_ranches()], [second["ranch_id"]])

    def test_export_and_replace_restore(self) -> None:
        settings = fast_settings(self.temp_dir)
        summary = generate_demo_data(self.store, self.blobs, seed=9)
        ranch_id = summary["ranch_id"]
        before = {a.tag_number for a in self.animals(ranch_id)}

        result = SnapshotBuilder(self.store, self.blobs, settings).export(ranch_id, self.temp_dir / "out")
        restored = RestoreOrchestrator(self.store, self.blobs, settings).restore(
            result.path, RestoreOptions(mode="replace", ranch_id=ranch_id)
        )

        self.assertEqual(restored.animals_restored, summary["animals"])
        self.assertEqual(restored.media_restored, summary["photos"])
        self.assertEqual(restored.media_failed, 0)
        self.assertEqual(restored.parent_links_cleared, 0)
        self.assertEqual({a.tag_number for a in self.animals(ranch_id)}, before)


if __name__ == "__main__":
    unittest.main()
