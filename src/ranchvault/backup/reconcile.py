"""
Identifier reconciliation for restores.

Archived records carry the identifiers they had in the source store. A
restore has to decide, for every archived animal, which identifier it gets
in the target ranch, and then rewrite every reference to it. This happens
in two passes because a parent can appear after its offspring:

Pass 1 (identity assignment), run over the archive before anything is
written:
    - replace mode: every animal gets a fresh identifier
    - missing mode: the archived identifier is reused when no live animal
      has it. When the target ranch already holds the animal, either under
      the archived identifier or under the one an earlier restore gave it,
      the duplicate policy decides (skip, update or error). When an animal
      of another ranch has it, a fresh identifier is assigned.

Every fresh identifier is recorded against its archived one when the
record is written (see IdMapping), which is how a later restore of the
same archive recognizes records it already brought in.

Pass 2 (reference rewrite): mother_id/father_id are rewritten through the
lookup table. References to skipped duplicates or to animals absent from
the archive become null. Resolution is a single table lookup, never a walk
of the parent graph, so cyclic data terminates.

Subordinate records (medical history, custom field values, photos) follow
their animal. Those of skipped animals are skipped; those whose animal
cannot be resolved at all are dropped and counted.

Medical history restored onto an existing animal is also merged on its
natural key (date, description), so the same treatment is never recorded
twice.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from ranchvault.backup.errors import ReconciliationError
from ranchvault.storage.models import (
    ENTITY_ANIMALS,
    ENTITY_FIELD_DEFINITIONS,
    ENTITY_FIELD_VALUES,
    ENTITY_MEDICAL_HISTORY,
    ENTITY_PHOTOS,
    AnimalRecord,
    CustomFieldDefinition,
    PhotoRecord,
    new_id,
)
from ranchvault.storage.record_store import IdMapping, RecordStore

logger = logging.getLogger(__name__)

MODE_MISSING = "missing"
MODE_REPLACE = "replace"
RESTORE_MODES = (MODE_MISSING, MODE_REPLACE)

POLICY_SKIP = "skip"
POLICY_UPDATE = "update"
POLICY_ERROR = "error"
DUPLICATE_POLICIES = (POLICY_SKIP, POLICY_UPDATE, POLICY_ERROR)

SUBORDINATE_ENTITIES = (ENTITY_MEDICAL_HISTORY, ENTITY_FIELD_VALUES, ENTITY_PHOTOS)


@dataclass
class PhotoTarget:
    """Where a restored photo's bytes go."""

    photo_id: str
    storage_path: str
    media_type: str


@dataclass
class ReconciliationStats:
    """Counters accumulated across both passes."""

    animals_new: int = 0
    animals_skipped: int = 0
    animals_updated: int = 0
    parent_links_cleared: int = 0
    records_skipped: dict[str, int] = field(default_factory=dict)
    records_dropped: dict[str, int] = field(default_factory=dict)

    def skip(self, entity: str, count: int = 1) -> None:
        self.records_skipped[entity] = self.records_skipped.get(entity, 0) + count

    def drop(self, entity: str, count: int = 1) -> None:
        self.records_dropped[entity] = self.records_dropped.get(entity, 0) + count


class IdReconciliationMap:
    """
    Lookup tables mapping archived identifiers to target identifiers.

    Only identifiers are held in memory, never whole records, so the map
    stays small relative to the archive.

    Example:
        recon = IdReconciliationMap(store, "ranch-1", MODE_MISSING)
        for batch in reader.iter_batches("animals", 500):
            recon.register_animals(batch)
        ...
        mother, father = recon.resolve_parents(animal)
    """

    def __init__(
        self,
        record_store: RecordStore,
        target_ranch_id: str,
        mode: str,
        duplicate_policy: str = POLICY_SKIP,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        if mode not in RESTORE_MODES:
            raise ValueError(f"Unknown restore mode: {mode}")
        if duplicate_policy not in DUPLICATE_POLICIES:
            raise ValueError(f"Unknown duplicate policy: {duplicate_policy}")

        self.record_store = record_store
        self.target_ranch_id = target_ranch_id
        self.mode = mode
        self.duplicate_policy = duplicate_policy
        self._new_id = id_factory

        self.stats = ReconciliationStats()

        # archived animal id -> target id, for animals inserted or updated
        self.animal_ids: dict[str, str] = {}
        self.skipped_animals: set[str] = set()
        self.updated_animals: set[str] = set()

        # archived field definition id -> target id
        self.field_ids: dict[str, str] = {}
        self.pending_field_definitions: list[CustomFieldDefinition] = []
        self._live_fields: dict[str, str] | None = None

        # archived photo id -> target location of its bytes
        self.photo_targets: dict[str, PhotoTarget] = {}
        self._photo_paths: set[str] = set()

        # entity -> fresh target id -> archived id, until the record is written
        self._origins: dict[str, dict[str, str]] = {}

        # (target animal, date, description) of medical records on updated animals
        self._medical_keys: set[tuple[str, str, str]] = set()
        self._medical_loaded: set[str] = set()

    # -------------------------------------------------------------------------
    # Pass 1
    # -------------------------------------------------------------------------

    def _identity(self, entity: str, archived_id: str, owner: str | None) -> str:
        """Identifier for a record that is not a same-ranch duplicate."""
        if self.mode == MODE_REPLACE or owner is not None:
            target_id = self._new_id()
            self._origins.setdefault(entity, {})[target_id] = archived_id
            return target_id
        return archived_id

    def _restored_ids(self, entity: str, archived_ids: list[str]) -> tuple[dict[str, str], dict[str, str]]:
        """Current owners of the archived ids, and targets earlier restores gave them."""
        if self.mode != MODE_MISSING or not archived_ids:
            return {}, {}
        owners = self.record_store.find_owners(entity, archived_ids)
        restored = self.record_store.find_restored_ids(self.target_ranch_id, entity, archived_ids)
        return owners, restored

    def register_animals(self, batch: list[AnimalRecord]) -> None:
        """
        Assign target identifiers to a batch of archived animals.

        Raises:
            ReconciliationError: On an identifier repeated inside the archive,
                or a duplicate under the "error" policy.
        """
        batch_ids: set[str] = set()
        for animal in batch:
            if (
                animal.id in batch_ids
                or animal.id in self.animal_ids
                or animal.id in self.skipped_animals
            ):
                raise ReconciliationError(
                    f"Animal {animal.id} appears more than once in the archive",
                    entity=ENTITY_ANIMALS,
                    record_id=animal.id,
                )
            batch_ids.add(animal.id)

        owners, restored = self._restored_ids(ENTITY_ANIMALS, [a.id for a in batch])

        for animal in batch:
            owner = owners.get(animal.id)
            existing = restored.get(animal.id)
            if existing is None and owner == self.target_ranch_id:
                existing = animal.id

            if existing is not None:
                if self.duplicate_policy == POLICY_ERROR:
                    raise ReconciliationError(
                        f"Animal {animal.id} (tag {animal.tag_number}) already exists "
                        f"in ranch {self.target_ranch_id}",
                        entity=ENTITY_ANIMALS,
                        record_id=animal.id,
                    )
                if self.duplicate_policy == POLICY_SKIP:
                    self.skipped_animals.add(animal.id)
                    self.stats.animals_skipped += 1
                    continue
                self.animal_ids[animal.id] = existing
                self.updated_animals.add(animal.id)
                self.stats.animals_updated += 1
                continue

            self.animal_ids[animal.id] = self._identity(ENTITY_ANIMALS, animal.id, owner)
            self.stats.animals_new += 1

    def _live_field_names(self) -> dict[str, str]:
        if self._live_fields is None:
            self._live_fields = {
                definition.field_name: definition.id
                for definition in self.record_store.list_field_definitions(self.target_ranch_id)
            }
        return self._live_fields

    def register_field_definitions(self, batch: list[CustomFieldDefinition]) -> None:
        """
        Match archived field definitions to the target ranch's by field_name.

        A definition the ranch already holds under its archived identifier,
        or under one an earlier restore gave it, is matched even if it has
        been renamed since. Unmatched definitions are queued in
        pending_field_definitions for creation; nothing is written here.
        """
        live = self._live_field_names()
        owners, restored = self._restored_ids(ENTITY_FIELD_DEFINITIONS, [d.id for d in batch])

        for definition in batch:
            if definition.id in self.field_ids:
                raise ReconciliationError(
                    f"Custom field {definition.id} appears more than once in the archive",
                    entity=ENTITY_FIELD_DEFINITIONS,
                    record_id=definition.id,
                )

            if definition.field_name in live:
                self.field_ids[definition.id] = live[definition.field_name]
                continue

            owner = owners.get(definition.id)
            if definition.id in restored:
                self.field_ids[definition.id] = restored[definition.id]
                continue
            if owner == self.target_ranch_id:
                self.field_ids[definition.id] = definition.id
                continue

            target_id = self._identity(ENTITY_FIELD_DEFINITIONS, definition.id, owner)
            self.field_ids[definition.id] = target_id
            # Later archived definitions with the same name share this one
            live[definition.field_name] = target_id
            self.pending_field_definitions.append(
                replace(definition, id=target_id, ranch_id=self.target_ranch_id)
            )

    @property
    def animals_to_insert(self) -> int:
        return self.stats.animals_new

    # -------------------------------------------------------------------------
    # Pass 2
    # -------------------------------------------------------------------------

    def target_animal_id(self, archived_id: str | None) -> str | None:
        """Target identifier of an archived animal, or None if skipped or absent."""
        if archived_id is None:
            return None
        return self.animal_ids.get(archived_id)

    def prepare_animal(self, animal: AnimalRecord) -> AnimalRecord | None:
        """
        The record to write for an archived animal, with parents cleared.

        Returns None for skipped duplicates. Parents are set in a second
        pass, once every animal exists.
        """
        target_id = self.animal_ids.get(animal.id)
        if target_id is None:
            return None
        return replace(
            animal,
            id=target_id,
            ranch_id=self.target_ranch_id,
            mother_id=None,
            father_id=None,
        )

    def resolve_parents(self, animal: AnimalRecord) -> tuple[str | None, str | None]:
        """
        Rewrite an animal's parent links to target identifiers.

        A link to a skipped duplicate or to an animal missing from the
        archive becomes None and is counted in parent_links_cleared.
        """
        resolved = []
        for parent_id in (animal.mother_id, animal.father_id):
            target = self.target_animal_id(parent_id)
            if parent_id is not None and target is None:
                self.stats.parent_links_cleared += 1
                logger.debug(
                    f"Clearing parent link {parent_id} of animal {animal.id}: "
                    "parent not restored"
                )
            resolved.append(target)
        return resolved[0], resolved[1]

    def _photo_path(self, animal_id: str, photo_id: str, filename: str) -> str:
        """<target_ranch>/<target_animal>/<filename>, unique within this restore."""
        path = f"{self.target_ranch_id}/{animal_id}/{filename}"
        if path in self._photo_paths:
            path = f"{self.target_ranch_id}/{animal_id}/{photo_id}-{filename}"
        self._photo_paths.add(path)
        return path

    def prepare_subordinates(self, entity: str, batch: Iterable[Any]) -> list[Any]:
        """
        Re-attach a batch of subordinate records to their target animals.

        Records of skipped animals are skipped. Records whose animal (or, for
        custom field values, whose field definition) cannot be resolved are
        dropped. In missing mode a record the target ranch already holds,
        under its archived identifier or a restored one, is skipped, so
        restoring twice changes nothing. So is a medical record of an
        updated animal that matches one of its live records on date and
        description.

        Returns:
            Records ready to insert.
        """
        if entity not in SUBORDINATE_ENTITIES:
            raise ValueError(f"Not a subordinate entity: {entity}")

        attached = []
        for record in batch:
            if record.animal_id in self.skipped_animals:
                self.stats.skip(entity)
                continue

            animal_id = self.animal_ids.get(record.animal_id)
            if animal_id is None:
                self.stats.drop(entity)
                logger.debug(f"Dropping {entity} {record.id}: animal {record.animal_id} not in archive")
                continue

            if entity == ENTITY_FIELD_VALUES:
                field_id = self.field_ids.get(record.field_id)
                if field_id is None:
                    self.stats.drop(entity)
                    logger.debug(f"Dropping {entity} {record.id}: unknown field {record.field_id}")
                    continue
                attached.append((record, {"animal_id": animal_id, "field_id": field_id}))
            else:
                attached.append((record, {"animal_id": animal_id, "ranch_id": self.target_ranch_id}))

        owners, restored = self._restored_ids(entity, [record.id for record, _ in attached])
        if entity == ENTITY_MEDICAL_HISTORY:
            self._load_medical_keys(
                changes["animal_id"]
                for record, changes in attached
                if record.animal_id in self.updated_animals
            )

        prepared = []
        for record, changes in attached:
            owner = owners.get(record.id)
            if owner == self.target_ranch_id or record.id in restored:
                self.stats.skip(entity)
                continue

            if entity == ENTITY_MEDICAL_HISTORY and record.animal_id in self.updated_animals:
                key = (changes["animal_id"], record.date, record.description)
                if key in self._medical_keys:
                    self.stats.skip(entity)
                    logger.debug(f"Skipping medical record {record.id}: already recorded on {record.date}")
                    continue
                self._medical_keys.add(key)

            changes["id"] = self._identity(entity, record.id, owner)
            if entity == ENTITY_PHOTOS:
                changes["storage_path"] = self._photo_path(
                    changes["animal_id"], changes["id"], record.filename
                )
                changes["is_synced"] = False
            target = replace(record, **changes)

            if isinstance(target, PhotoRecord):
                self.photo_targets[record.id] = PhotoTarget(
                    photo_id=target.id,
                    storage_path=target.storage_path,
                    media_type=target.media_type,
                )
            prepared.append(target)

        return prepared

    def _load_medical_keys(self, animal_ids: Iterable[str]) -> None:
        pending = set(animal_ids) - self._medical_loaded
        if pending:
            self._medical_keys |= self.record_store.find_medical_keys(pending)
            self._medical_loaded |= pending

    def id_mappings(self, entity: str, records: Iterable[Any]) -> list[IdMapping]:
        """
        Archived identifiers of the records about to be written under fresh ones.

        Pass the result to insert_records() with the same records. Each
        mapping is handed out once.
        """
        origins = self._origins.get(entity, {})
        mappings = []
        for record in records:
            archived_id = origins.pop(record.id, None)
            if archived_id is not None:
                mappings.append(IdMapping(self.target_ranch_id, archived_id, record.id))
        return mappings

    def records_skipped(self) -> int:
        return sum(self.stats.records_skipped.values())

    def records_dropped(self) -> int:
        return sum(self.stats.records_dropped.values())
