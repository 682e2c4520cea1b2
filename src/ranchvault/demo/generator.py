"""
Demo data generator for ranchvault.

Creates a "Demo Ranch" populated with realistic records: ranch settings,
custom field definitions, three generations of cattle linked by mother and
father, medical history, custom field values, and small placeholder photos
in the blob store. Useful for trying export and restore without real data.
"""

from __future__ import annotations

import io
import logging
import random
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from ranchvault.storage.blob_store import BlobStore
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
    new_id,
)
from ranchvault.storage.record_store import SqliteRecordStore

logger = logging.getLogger(__name__)

DEMO_RANCH_NAME = "Demo Ranch"
DEMO_RANCH_LOCATION = "Demo Location"

DEMO_FIELDS = [
    ("Pasture", "text", False),
    ("Purchase Price", "dollar", True),
    ("Registration #", "text", False),
]

PASTURES = ["North Forty", "Creek Bottom", "Home Place", "East Section", "Hay Meadow"]
TAG_COLORS = ["Yellow", "Green", "Orange", "White", "Blue"]
TREATMENTS = [
    "Annual vaccinations (7-way clostridial)",
    "Dewormed with ivermectin pour-on",
    "Treated for pinkeye, LA-200",
    "Hoof trimmed",
    "Pregnancy check: bred",
    "Pregnancy check: open",
    "BVD test negative",
    "Castrated and banded",
]

# Minimal JPEG framing around random payload bytes
JPEG_HEADER = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00"
JPEG_TRAILER = b"\xff\xd9"


class DemoRanchExistsError(Exception):
    """Raised when the demo ranch already exists and force was not given."""

    def __init__(self, ranch_id: str) -> None:
        self.ranch_id = ranch_id
        super().__init__(
            f"{DEMO_RANCH_NAME} already exists ({ranch_id}). Use --force to recreate it."
        )


@dataclass
class DemoConfig:
    """Configuration for demo data generation."""

    founder_cows: int = 6
    calves_per_cow: int = 2
    photo_ratio: float = 0.4
    seed: int | None = None


class DemoGenerator:
    """
    Generates a demo ranch in a record store and blob store.
    """

    def __init__(
        self,
        record_store: SqliteRecordStore,
        blob_store: BlobStore,
        config: DemoConfig | None = None,
    ) -> None:
        self.record_store = record_store
        self.blob_store = blob_store
        self.config = config or DemoConfig()
        self._random = random.Random(self.config.seed)

    def generate(self, force: bool = False) -> dict[str, Any]:
        """
        Create the demo ranch.

        Args:
            force: Delete and recreate the demo ranch if it already exists.

        Returns:
            Summary of generated data.

        Raises:
            DemoRanchExistsError: If the ranch exists and force is False.
        """
        existing = self.record_store.find_ranch_by_name(DEMO_RANCH_NAME)
        if existing is not None:
            if not force:
                raise DemoRanchExistsError(existing.id)
            logger.info(f"Deleting existing demo ranch {existing.id}")
            self.record_store.delete_ranch(existing.id)

        ranch = Ranch(id=new_id(), name=DEMO_RANCH_NAME, location=DEMO_RANCH_LOCATION)
        self.record_store.create_ranch(ranch)
        self.record_store.save_settings(
            RanchSettings(
                ranch_id=ranch.id,
                report_line1=DEMO_RANCH_NAME,
                report_line2=DEMO_RANCH_LOCATION,
            )
        )

        fields = self._generate_field_definitions(ranch.id)
        self.record_store.insert_records(ENTITY_FIELD_DEFINITIONS, fields)

        animals = self._generate_herd(ranch.id)
        # Parents first, so every mother/father reference already exists
        self.record_store.insert_records(ENTITY_ANIMALS, animals)

        medical = self._generate_medical_history(animals)
        self.record_store.insert_records(ENTITY_MEDICAL_HISTORY, medical)

        values = self._generate_field_values(animals, fields)
        self.record_store.insert_records(ENTITY_FIELD_VALUES, values)

        photos = self._generate_photos(animals)
        self.record_store.insert_records(ENTITY_PHOTOS, photos)

        summary = {
            "ranch_id": ranch.id,
            "ranch_name": ranch.name,
            "animals": len(animals),
            "medical_records": len(medical),
            "custom_fields": len(fields),
            "custom_field_values": len(values),
            "photos": len(photos),
        }
        logger.info(f"Demo ranch created: {len(animals)} animals, {len(photos)} photos")
        return summary

    def _generate_field_definitions(self, ranch_id: str) -> list[CustomFieldDefinition]:
        return [
            CustomFieldDefinition(
                id=new_id(),
                ranch_id=ranch_id,
                field_name=name,
                field_type=field_type,
                include_in_totals=totals,
                display_order=order,
            )
            for order, (name, field_type, totals) in enumerate(DEMO_FIELDS)
        ]

    def _animal(
        self,
        ranch_id: str,
        tag: int,
        sex: str,
        birth: date,
        mother: AnimalRecord | None = None,
        father: AnimalRecord | None = None,
    ) -> AnimalRecord:
        weaning = birth + timedelta(days=205)
        return AnimalRecord(
            id=new_id(),
            ranch_id=ranch_id,
            tag_number=str(tag),
            name=f"{sex.title()} {tag}",
            sex=sex,
            birth_date=birth.isoformat(),
            status="PRESENT",
            source="Born on ranch" if mother else "Purchased",
            tag_color=self._random.choice(TAG_COLORS),
            weaning_date=weaning.isoformat() if weaning < date.today() else None,
            weight_lbs=float(self._random.randint(450, 1600)),
            mother_id=mother.id if mother else None,
            father_id=father.id if father else None,
        )

    def _generate_herd(self, ranch_id: str) -> list[AnimalRecord]:
        """Founders, their calves, and calves of the first-generation heifers."""
        today = date.today()
        tag = 100
        bull = self._animal(ranch_id, tag, "BULL", today - timedelta(days=365 * 6))
        herd = [bull]

        cows = []
        for _ in range(self.config.founder_cows):
            tag += 1
            cow = self._animal(
                ranch_id, tag, "COW", today - timedelta(days=365 * self._random.randint(4, 8))
            )
            cows.append(cow)
        herd.extend(cows)

        heifers = []
        for cow in cows:
            for _ in range(self.config.calves_per_cow):
                tag += 1
                calf = self._calf(ranch_id, tag, cow, bull, years_ago=3)
                herd.append(calf)
                if calf.sex == "HEIFER":
                    heifers.append(calf)

        for heifer in heifers:
            tag += 1
            herd.append(self._calf(ranch_id, tag, heifer, bull, years_ago=1))

        return herd

    def _calf(
        self, ranch_id: str, tag: int, mother: AnimalRecord, father: AnimalRecord, years_ago: int
    ) -> AnimalRecord:
        sex = self._random.choice(["HEIFER", "STEER", "BULL"])
        birth = date.today() - timedelta(days=365 * years_ago + self._random.randint(0, 90))
        return self._animal(ranch_id, tag, sex, birth, mother=mother, father=father)

    def _generate_medical_history(self, animals: list[AnimalRecord]) -> list[MedicalHistoryRecord]:
        records = []
        for animal in animals:
            born = date.fromisoformat(animal.birth_date or date.today().isoformat())
            for _ in range(self._random.randint(0, 3)):
                when = born + timedelta(days=self._random.randint(30, max(31, (date.today() - born).days)))
                records.append(
                    MedicalHistoryRecord(
                        id=new_id(),
                        animal_id=animal.id,
                        ranch_id=animal.ranch_id,
                        date=min(when, date.today()).isoformat(),
                        description=self._random.choice(TREATMENTS),
                    )
                )
        return records

    def _generate_field_values(
        self, animals: list[AnimalRecord], fields: list[CustomFieldDefinition]
    ) -> list[CustomFieldValue]:
        by_name = {f.field_name: f for f in fields}
        values = []
        for animal in animals:
            values.append(
                CustomFieldValue(
                    id=new_id(),
                    animal_id=animal.id,
                    field_id=by_name["Pasture"].id,
                    value=self._random.choice(PASTURES),
                )
            )
            if animal.source == "Purchased":
                values.append(
                    CustomFieldValue(
                        id=new_id(),
                        animal_id=animal.id,
                        field_id=by_name["Purchase Price"].id,
                        value=f"{self._random.randint(1200, 4500)}.00",
                    )
                )
            if animal.sex == "BULL":
                values.append(
                    CustomFieldValue(
                        id=new_id(),
                        animal_id=animal.id,
                        field_id=by_name["Registration #"].id,
                        value=f"AAA{self._random.randint(10_000_000, 99_999_999)}",
                    )
                )
        return values

    def _generate_photos(self, animals: list[AnimalRecord]) -> list[PhotoRecord]:
        photos = []
        for animal in animals:
            if self._random.random() >= self.config.photo_ratio:
                continue

            payload = JPEG_HEADER + self._random.randbytes(self._random.randint(512, 4096)) + JPEG_TRAILER
            path = f"{animal.ranch_id}/{animal.id}/tag-{animal.tag_number}.jpg"
            self.blob_store.put(path, io.BytesIO(payload), len(payload), "image/jpeg")

            photos.append(
                PhotoRecord(
                    id=new_id(),
                    animal_id=animal.id,
                    ranch_id=animal.ranch_id,
                    storage_path=path,
                    media_type="image/jpeg",
                    byte_size=len(payload),
                    is_primary=True,
                    taken_at=date.today().isoformat(),
                )
            )
        return photos


def generate_demo_data(
    record_store: SqliteRecordStore,
    blob_store: BlobStore,
    force: bool = False,
    seed: int | None = None,
) -> dict[str, Any]:
    """
    Generate the demo ranch with a single function call.

    Example:
        summary = generate_demo_data(store, blobs, force=True)
        print(summary["ranch_id"])
    """
    generator = DemoGenerator(record_store, blob_store, DemoConfig(seed=seed))
    return generator.generate(force=force)
