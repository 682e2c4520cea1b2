"""
Data models for ranch records.

This module defines the dataclasses that represent one ranch's records in
the record store and inside backup archives.

Schema Design Decisions:
    - IDs are strings (UUIDs when generated here) for portability
    - Dates are ISO-8601 strings, never parsed, so archives round-trip exactly
    - mother_id/father_id are weak references: nullable, no ownership
    - Subordinate records (medical history, custom field values, photos)
      hold a reference to their owning animal
    - from_dict() raises ValueError for records missing required fields, so
      a corrupt archive fails loudly instead of restoring half a record
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from typing import Any

ENTITY_RANCH_SETTINGS = "ranch_settings"
ENTITY_FIELD_DEFINITIONS = "custom_field_definitions"
ENTITY_ANIMALS = "animals"
ENTITY_MEDICAL_HISTORY = "medical_history"
ENTITY_FIELD_VALUES = "custom_field_values"
ENTITY_PHOTOS = "animal_photos"

# Fixed order of entity sections in an archive. Configuration comes before
# animals, animals before anything that references them.
ENTITY_ORDER: tuple[str, ...] = (
    ENTITY_RANCH_SETTINGS,
    ENTITY_FIELD_DEFINITIONS,
    ENTITY_ANIMALS,
    ENTITY_MEDICAL_HISTORY,
    ENTITY_FIELD_VALUES,
    ENTITY_PHOTOS,
)

ANIMAL_SEXES = ("BULL", "STEER", "HEIFER", "COW")
ANIMAL_STATUSES = ("PRESENT", "SOLD", "BUTCHERED", "DEAD")
FIELD_TYPES = ("text", "dollar", "integer", "decimal")


def new_id() -> str:
    """Generate a fresh record identifier."""
    return str(uuid.uuid4())


def _required(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None or value == "":
        raise ValueError(f"Missing required field: {key}")
    return str(value)


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


@dataclass
class Ranch:
    """A tenant owning animals and their records."""

    id: str
    name: str
    location: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Ranch:
        return cls(
            id=_required(data, "id"),
            name=str(data.get("name") or ""),
            location=_optional_str(data.get("location")),
        )


@dataclass
class RanchSettings:
    """
    Ranch-wide preferences used by reports.

    Keyed by ranch_id; a ranch has at most one settings row.
    """

    ranch_id: str
    report_line1: str = ""
    report_line2: str = ""
    adult_age_years: int = 2
    time_zone: str = "America/Los_Angeles"

    @property
    def id(self) -> str:
        return self.ranch_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RanchSettings:
        return cls(
            ranch_id=_required(data, "ranch_id"),
            report_line1=str(data.get("report_line1") or ""),
            report_line2=str(data.get("report_line2") or ""),
            adult_age_years=int(data.get("adult_age_years", 2)),
            time_zone=str(data.get("time_zone") or "America/Los_Angeles"),
        )


@dataclass
class CustomFieldDefinition:
    """
    A ranch-defined extra column on animals.

    Definitions are matched across ranches by field_name.
    """

    id: str
    ranch_id: str
    field_name: str
    field_type: str = "text"
    include_in_totals: bool = False
    is_required: bool = False
    display_order: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CustomFieldDefinition:
        field_type = str(data.get("field_type") or "text")
        if field_type not in FIELD_TYPES:
            raise ValueError(f"Unknown custom field type: {field_type}")
        return cls(
            id=_required(data, "id"),
            ranch_id=_required(data, "ranch_id"),
            field_name=_required(data, "field_name"),
            field_type=field_type,
            include_in_totals=bool(data.get("include_in_totals", False)),
            is_required=bool(data.get("is_required", False)),
            display_order=int(data.get("display_order") or 0),
        )


@dataclass
class AnimalRecord:
    """
    One animal on a ranch.

    Attributes:
        id: Record identifier, unique across the store.
        ranch_id: Owning ranch.
        tag_number: Ear tag; the human-facing identity of the animal.
        mother_id: Weak reference to the dam, or None.
        father_id: Weak reference to the sire, or None.

    Database Table: animals
        - mother_id/father_id REFERENCES animals(id) ON DELETE SET NULL
    """

    id: str
    ranch_id: str
    tag_number: str | None = None
    name: str | None = None
    sex: str | None = None
    birth_date: str | None = None
    status: str = "PRESENT"
    source: str | None = None
    tag_color: str | None = None
    description: str | None = None
    weaning_date: str | None = None
    exit_date: str | None = None
    weight_lbs: float | None = None
    sale_price: float | None = None
    notes: str | None = None
    mother_id: str | None = None
    father_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnimalRecord:
        return cls(
            id=_required(data, "id"),
            ranch_id=_required(data, "ranch_id"),
            tag_number=_optional_str(data.get("tag_number")),
            name=_optional_str(data.get("name")),
            sex=_optional_str(data.get("sex")),
            birth_date=_optional_str(data.get("birth_date")),
            status=str(data.get("status") or "PRESENT"),
            source=_optional_str(data.get("source")),
            tag_color=_optional_str(data.get("tag_color")),
            description=_optional_str(data.get("description")),
            weaning_date=_optional_str(data.get("weaning_date")),
            exit_date=_optional_str(data.get("exit_date")),
            weight_lbs=_optional_float(data.get("weight_lbs")),
            sale_price=_optional_float(data.get("sale_price")),
            notes=_optional_str(data.get("notes")),
            mother_id=_optional_str(data.get("mother_id")),
            father_id=_optional_str(data.get("father_id")),
        )


@dataclass
class MedicalHistoryRecord:
    """A dated treatment or observation for one animal."""

    id: str
    animal_id: str
    ranch_id: str
    date: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MedicalHistoryRecord:
        return cls(
            id=_required(data, "id"),
            animal_id=_required(data, "animal_id"),
            ranch_id=_required(data, "ranch_id"),
            date=_required(data, "date"),
            description=_required(data, "description"),
        )


@dataclass
class CustomFieldValue:
    """The value of one custom field for one animal."""

    id: str
    animal_id: str
    field_id: str
    value: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CustomFieldValue:
        return cls(
            id=_required(data, "id"),
            animal_id=_required(data, "animal_id"),
            field_id=_required(data, "field_id"),
            value=_optional_str(data.get("value")),
        )


@dataclass
class PhotoRecord:
    """
    Metadata for one animal photo.

    The bytes live in the blob store under storage_path, laid out as
    <ranch_id>/<animal_id>/<filename>. is_synced is False when the blob is
    missing or failed to upload; the row is kept so the UI can show a broken
    thumbnail.
    """

    id: str
    animal_id: str
    ranch_id: str
    storage_path: str
    media_type: str = "image/jpeg"
    byte_size: int | None = None
    is_primary: bool = False
    caption: str | None = None
    taken_at: str | None = None
    is_synced: bool = True

    @property
    def filename(self) -> str:
        return self.storage_path.rstrip("/").rsplit("/", 1)[-1]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhotoRecord:
        byte_size = data.get("byte_size")
        return cls(
            id=_required(data, "id"),
            animal_id=_required(data, "animal_id"),
            ranch_id=_required(data, "ranch_id"),
            storage_path=_required(data, "storage_path"),
            media_type=str(data.get("media_type") or "image/jpeg"),
            byte_size=int(byte_size) if byte_size is not None else None,
            is_primary=bool(data.get("is_primary", False)),
            caption=_optional_str(data.get("caption")),
            taken_at=_optional_str(data.get("taken_at")),
            is_synced=bool(data.get("is_synced", True)),
        )


ENTITY_MODELS: dict[str, type] = {
    ENTITY_RANCH_SETTINGS: RanchSettings,
    ENTITY_FIELD_DEFINITIONS: CustomFieldDefinition,
    ENTITY_ANIMALS: AnimalRecord,
    ENTITY_MEDICAL_HISTORY: MedicalHistoryRecord,
    ENTITY_FIELD_VALUES: CustomFieldValue,
    ENTITY_PHOTOS: PhotoRecord,
}


def record_from_dict(entity: str, data: dict[str, Any]) -> Any:
    """
    Build the model for an entity type from a plain dictionary.

    Raises:
        KeyError: If the entity type is unknown.
        ValueError: If the record is malformed.
    """
    model = ENTITY_MODELS[entity]
    if not isinstance(data, dict):
        raise ValueError(f"Expected an object for {entity} record, got {type(data).__name__}")
    return model.from_dict(data)
