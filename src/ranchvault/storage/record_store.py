"""
Record store for ranch data.

This module defines the RecordStore protocol the backup engine talks to,
and SqliteRecordStore, a SQLite implementation of it.

The protocol is deliberately narrow: paged reads scoped by ranch, batch
inserts, a handful of targeted updates, a cascading delete of a ranch's
animals, identifier lookups, and an advisory per-ranch lock.
Production deployments can put any relational store behind it.

Storage Structure:
    data/
        ranchvault.db    # SQLite database

Design Decisions:
    - Keyset pagination (rowid > last) so pages stay cheap deep into a table
    - Foreign keys are enforced; deleting an animal cascades to its medical
      history, custom field values and photos, and nulls out parent links
    - sqlite3.OperationalError ("database is locked", disk I/O) is surfaced
      as TransientStoreError so callers can retry it
    - Connection-per-operation, so one store may be shared across threads

Thread Safety:
    Multiple processes may open the same database file. The restore lock
    lives in the database, so it is honored across processes.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Generator, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from ranchvault.storage.models import (
    ENTITY_ANIMALS,
    ENTITY_FIELD_DEFINITIONS,
    ENTITY_FIELD_VALUES,
    ENTITY_MEDICAL_HISTORY,
    ENTITY_PHOTOS,
    ENTITY_RANCH_SETTINGS,
    AnimalRecord,
    CustomFieldDefinition,
    Ranch,
    RanchSettings,
    record_from_dict,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class TransientStoreError(StorageError):
    """Raised for failures that may succeed on retry (locked database, I/O)."""

    pass


class ConstraintViolationError(StorageError):
    """Raised when a write violates a key or foreign key constraint."""

    pass


class RanchNotFoundError(StorageError):
    """Raised when a ranch does not exist."""

    pass


SCHEMA_VERSION = 2

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ranches (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    location TEXT
);

CREATE TABLE IF NOT EXISTS ranch_settings (
    ranch_id TEXT PRIMARY KEY REFERENCES ranches(id) ON DELETE CASCADE,
    report_line1 TEXT DEFAULT '',
    report_line2 TEXT DEFAULT '',
    adult_age_years INTEGER DEFAULT 2,
    time_zone TEXT DEFAULT 'America/Los_Angeles'
);

CREATE TABLE IF NOT EXISTS custom_field_definitions (
    id TEXT PRIMARY KEY,
    ranch_id TEXT NOT NULL REFERENCES ranches(id) ON DELETE CASCADE,
    field_name TEXT NOT NULL,
    field_type TEXT NOT NULL,
    include_in_totals INTEGER DEFAULT 0,
    is_required INTEGER DEFAULT 0,
    display_order INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_field_defs_ranch ON custom_field_definitions(ranch_id);

CREATE TABLE IF NOT EXISTS animals (
    id TEXT PRIMARY KEY,
    ranch_id TEXT NOT NULL REFERENCES ranches(id) ON DELETE CASCADE,
    tag_number TEXT,
    name TEXT,
    sex TEXT,
    birth_date TEXT,
    status TEXT DEFAULT 'PRESENT',
    source TEXT,
    tag_color TEXT,
    description TEXT,
    weaning_date TEXT,
    exit_date TEXT,
    weight_lbs REAL,
    sale_price REAL,
    notes TEXT,
    mother_id TEXT REFERENCES animals(id) ON DELETE SET NULL,
    father_id TEXT REFERENCES animals(id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_animals_ranch ON animals(ranch_id);

CREATE TABLE IF NOT EXISTS medical_history (
    id TEXT PRIMARY KEY,
    animal_id TEXT NOT NULL REFERENCES animals(id) ON DELETE CASCADE,
    ranch_id TEXT NOT NULL REFERENCES ranches(id) ON DELETE CASCADE,
    date TEXT NOT NULL,
    description TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_medical_ranch ON medical_history(ranch_id);

CREATE TABLE IF NOT EXISTS custom_field_values (
    id TEXT PRIMARY KEY,
    animal_id TEXT NOT NULL REFERENCES animals(id) ON DELETE CASCADE,
    field_id TEXT NOT NULL REFERENCES custom_field_definitions(id) ON DELETE CASCADE,
    value TEXT,
    UNIQUE(animal_id, field_id)
);

CREATE TABLE IF NOT EXISTS animal_photos (
    id TEXT PRIMARY KEY,
    animal_id TEXT NOT NULL REFERENCES animals(id) ON DELETE CASCADE,
    ranch_id TEXT NOT NULL REFERENCES ranches(id) ON DELETE CASCADE,
    storage_path TEXT NOT NULL,
    media_type TEXT,
    byte_size INTEGER,
    is_primary INTEGER DEFAULT 0,
    caption TEXT,
    taken_at TEXT,
    is_synced INTEGER DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_photos_ranch ON animal_photos(ranch_id);

CREATE TABLE IF NOT EXISTS restore_locks (
    ranch_id TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS restore_id_map (
    ranch_id TEXT NOT NULL REFERENCES ranches(id) ON DELETE CASCADE,
    entity TEXT NOT NULL,
    archived_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    PRIMARY KEY (ranch_id, entity, archived_id)
);
"""

# entity -> (table, columns). Column order matches the model fields.
TABLE_COLUMNS: dict[str, tuple[str, tuple[str, ...]]] = {
    ENTITY_RANCH_SETTINGS: (
        "ranch_settings",
        ("ranch_id", "report_line1", "report_line2", "adult_age_years", "time_zone"),
    ),
    ENTITY_FIELD_DEFINITIONS: (
        "custom_field_definitions",
        (
            "id", "ranch_id", "field_name", "field_type",
            "include_in_totals", "is_required", "display_order",
        ),
    ),
    ENTITY_ANIMALS: (
        "animals",
        (
            "id", "ranch_id", "tag_number", "name", "sex", "birth_date", "status",
            "source", "tag_color", "description", "weaning_date", "exit_date",
            "weight_lbs", "sale_price", "notes", "mother_id", "father_id",
        ),
    ),
    ENTITY_MEDICAL_HISTORY: (
        "medical_history",
        ("id", "animal_id", "ranch_id", "date", "description"),
    ),
    ENTITY_FIELD_VALUES: (
        "custom_field_values",
        ("id", "animal_id", "field_id", "value"),
    ),
    ENTITY_PHOTOS: (
        "animal_photos",
        (
            "id", "animal_id", "ranch_id", "storage_path", "media_type",
            "byte_size", "is_primary", "caption", "taken_at", "is_synced",
        ),
    ),
}

# custom_field_values has no ranch_id column; it is scoped through its animal
_RANCH_SCOPE_SQL: dict[str, str] = {
    ENTITY_FIELD_VALUES: "animal_id IN (SELECT id FROM animals WHERE ranch_id = ?)",
}


@dataclass(frozen=True)
class IdMapping:
    """
    A record restored into a ranch under a different identifier.

    Written alongside the record so a later restore of the same archive
    recognizes it as already present.
    """

    ranch_id: str
    archived_id: str
    target_id: str


class RecordStore(Protocol):
    """Operations the backup engine needs from the relational store."""

    def get_ranch(self, ranch_id: str) -> Ranch | None: ...

    def fetch_page(
        self, entity: str, ranch_id: str, page_size: int, after: Any = None
    ) -> tuple[list[Any], Any]: ...

    def count(self, entity: str, ranch_id: str) -> int: ...

    def get_settings(self, ranch_id: str) -> RanchSettings | None: ...

    def save_settings(self, settings: RanchSettings) -> None: ...

    def list_field_definitions(self, ranch_id: str) -> list[CustomFieldDefinition]: ...

    def insert_records(
        self, entity: str, records: list[Any], id_mappings: list[IdMapping] | None = None
    ) -> int: ...

    def update_animal(self, animal: AnimalRecord) -> None: ...

    def set_animal_parents(
        self, animal_id: str, mother_id: str | None, father_id: str | None
    ) -> None: ...

    def set_photo_synced(self, photo_id: str, synced: bool) -> None: ...

    def delete_animals(self, ranch_id: str) -> int: ...

    def find_owners(self, entity: str, ids: Iterable[str]) -> dict[str, str]: ...

    def find_restored_ids(
        self, ranch_id: str, entity: str, archived_ids: Iterable[str]
    ) -> dict[str, str]: ...

    def find_medical_keys(self, animal_ids: Iterable[str]) -> set[tuple[str, str, str]]: ...

    def acquire_lock(self, ranch_id: str, holder: str, ttl_seconds: float) -> bool: ...

    def refresh_lock(self, ranch_id: str, holder: str) -> bool: ...

    def release_lock(self, ranch_id: str, holder: str) -> None: ...


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    return value


class SqliteRecordStore:
    """
    SQLite-backed RecordStore.

    Example:
        store = SqliteRecordStore(data_dir=Path("./data"))
        store.create_ranch(Ranch(id="r1", name="Home Place"))
        for page in store.iter_pages("animals", "r1", page_size=500):
            ...

    Attributes:
        data_dir: Base directory for the database file.
        db_path: Path to the SQLite database file.
    """

    DATABASE_FILE = "ranchvault.db"

    def __init__(self, data_dir: Path | str | None = None, timeout: float = 5.0) -> None:
        """
        Initialize the record store.

        Args:
            data_dir: Base directory for data storage. Defaults to ~/.ranchvault/data
            timeout: Seconds SQLite waits on a locked database before failing.
        """
        if data_dir is None:
            data_dir = Path.home() / ".ranchvault" / "data"
        elif isinstance(data_dir, str):
            data_dir = Path(data_dir)

        self.data_dir = data_dir
        self.db_path = data_dir / self.DATABASE_FILE
        self.timeout = timeout

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(CREATE_TABLES_SQL)

            cursor = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = cursor.fetchone()

            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(UTC).isoformat()),
                )
                logger.info(f"Initialized database schema version {SCHEMA_VERSION}")
            elif row[0] < SCHEMA_VERSION:
                # Versions so far only add tables, which executescript created
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(UTC).isoformat()),
                )
                logger.info(
                    f"Upgraded database schema from version {row[0]} to {SCHEMA_VERSION}"
                )

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection with foreign keys enabled.

        Raises:
            TransientStoreError: For operational errors (locked, I/O).
            ConstraintViolationError: For integrity errors.
        """
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,  # Autocommit mode, we manage transactions manually
                check_same_thread=False,
                timeout=self.timeout,
            )
        except sqlite3.OperationalError as e:
            raise TransientStoreError(f"Cannot open record store: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.IntegrityError as e:
            raise ConstraintViolationError(str(e)) from e
        except sqlite3.OperationalError as e:
            raise TransientStoreError(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Generator[sqlite3.Connection, None, None]:
        """Run the block inside BEGIN/COMMIT, rolling back on any error."""
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # -------------------------------------------------------------------------
    # Ranches
    # -------------------------------------------------------------------------

    def create_ranch(self, ranch: Ranch) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO ranches (id, name, location) VALUES (?, ?, ?)",
                (ranch.id, ranch.name, ranch.location),
            )
        logger.info(f"Created ranch {ranch.name} ({ranch.id})")

    def get_ranch(self, ranch_id: str) -> Ranch | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT id, name, location FROM ranches WHERE id = ?", (ranch_id,)
            ).fetchone()
        return Ranch.from_dict(dict(row)) if row else None

    def find_ranch_by_name(self, name: str) -> Ranch | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT id, name, location FROM ranches WHERE name = ? LIMIT 1", (name,)
            ).fetchone()
        return Ranch.from_dict(dict(row)) if row else None

    def list_ranches(self) -> list[Ranch]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT id, name, location FROM ranches ORDER BY name"
            ).fetchall()
        return [Ranch.from_dict(dict(row)) for row in rows]

    def delete_ranch(self, ranch_id: str) -> None:
        """
        Delete a ranch and, by cascade, everything it owns.

        Raises:
            RanchNotFoundError: If no such ranch exists.
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM ranches WHERE id = ?", (ranch_id,))
            if cursor.rowcount == 0:
                raise RanchNotFoundError(f"Ranch not found: {ranch_id}")
        logger.info(f"Deleted ranch {ranch_id}")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _scope(self, entity: str) -> str:
        return _RANCH_SCOPE_SQL.get(entity, "ranch_id = ?")

    def fetch_page(
        self, entity: str, ranch_id: str, page_size: int, after: Any = None
    ) -> tuple[list[Any], Any]:
        """
        Fetch one page of a ranch's records of an entity type.

        Args:
            entity: Entity type name (see ENTITY_ORDER).
            ranch_id: Ranch to scope the read to.
            page_size: Maximum records to return.
            after: Cursor returned by the previous call, or None to start.

        Returns:
            Tuple of (records, cursor). The cursor is None once the last
            page has been returned.
        """
        table, columns = TABLE_COLUMNS[entity]
        sql = (
            f"SELECT rowid AS _rowid, {', '.join(columns)} FROM {table} "  # noqa: S608
            f"WHERE {self._scope(entity)} AND rowid > ? ORDER BY rowid LIMIT ?"
        )

        with self._get_connection() as conn:
            rows = conn.execute(sql, (ranch_id, after or 0, page_size)).fetchall()

        records = []
        for row in rows:
            data = dict(row)
            data.pop("_rowid")
            records.append(record_from_dict(entity, data))

        cursor = rows[-1]["_rowid"] if len(rows) == page_size else None
        return records, cursor

    def iter_pages(self, entity: str, ranch_id: str, page_size: int) -> Iterator[list[Any]]:
        """
        Yield one ranch's records of an entity type, page by page.

        Each page is fetched with its own query, so a caller that stops
        early never reads the rest of the table.
        """
        cursor: Any = None
        while True:
            records, cursor = self.fetch_page(entity, ranch_id, page_size, after=cursor)
            if records:
                yield records
            if cursor is None:
                return

    def count(self, entity: str, ranch_id: str) -> int:
        table, _ = TABLE_COLUMNS[entity]
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE {self._scope(entity)}",  # noqa: S608
                (ranch_id,),
            ).fetchone()
        return int(row[0])

    def get_animal(self, animal_id: str) -> AnimalRecord | None:
        _, columns = TABLE_COLUMNS[ENTITY_ANIMALS]
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {', '.join(columns)} FROM animals WHERE id = ?",  # noqa: S608
                (animal_id,),
            ).fetchone()
        return AnimalRecord.from_dict(dict(row)) if row else None

    def get_settings(self, ranch_id: str) -> RanchSettings | None:
        _, columns = TABLE_COLUMNS[ENTITY_RANCH_SETTINGS]
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {', '.join(columns)} FROM ranch_settings WHERE ranch_id = ?",  # noqa: S608
                (ranch_id,),
            ).fetchone()
        return RanchSettings.from_dict(dict(row)) if row else None

    def list_field_definitions(self, ranch_id: str) -> list[CustomFieldDefinition]:
        definitions: list[CustomFieldDefinition] = []
        for page in self.iter_pages(ENTITY_FIELD_DEFINITIONS, ranch_id, page_size=500):
            definitions.extend(page)
        return definitions

    def find_owners(self, entity: str, ids: Iterable[str]) -> dict[str, str]:
        """
        Map each identifier that already exists to the ranch that owns it.

        Identifiers are global, so a restore must know whether an id is free,
        taken in the target ranch, or taken by some other ranch.
        """
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return {}

        table, _ = TABLE_COLUMNS[entity]
        if entity == ENTITY_FIELD_VALUES:
            select = (
                "SELECT v.id AS id, a.ranch_id AS ranch_id FROM custom_field_values v "
                "JOIN animals a ON a.id = v.animal_id WHERE v.id IN ({})"
            )
        elif entity == ENTITY_RANCH_SETTINGS:
            select = "SELECT ranch_id AS id, ranch_id FROM ranch_settings WHERE ranch_id IN ({})"
        else:
            select = f"SELECT id, ranch_id FROM {table} WHERE id IN ({{}})"  # noqa: S608

        owners: dict[str, str] = {}
        with self._get_connection() as conn:
            # Stay under SQLite's bound-parameter limit
            for start in range(0, len(id_list), 500):
                chunk = id_list[start:start + 500]
                placeholders = ", ".join("?" for _ in chunk)
                for row in conn.execute(select.format(placeholders), chunk):
                    owners[row["id"]] = row["ranch_id"]
        return owners

    def find_restored_ids(
        self, ranch_id: str, entity: str, archived_ids: Iterable[str]
    ) -> dict[str, str]:
        """
        Map archived identifiers to the identifiers an earlier restore gave them.

        Only mappings whose target record still exists are returned, so a
        record deleted since (by a replace restore, say) is free to be
        restored again.
        """
        id_list = list(dict.fromkeys(archived_ids))
        if not id_list:
            return {}

        table, _ = TABLE_COLUMNS[entity]
        select = (
            f"SELECT m.archived_id, m.target_id FROM restore_id_map m "  # noqa: S608
            f"JOIN {table} t ON t.id = m.target_id "
            "WHERE m.ranch_id = ? AND m.entity = ? AND m.archived_id IN ({})"
        )

        restored: dict[str, str] = {}
        with self._get_connection() as conn:
            for start in range(0, len(id_list), 500):
                chunk = id_list[start:start + 500]
                placeholders = ", ".join("?" for _ in chunk)
                for row in conn.execute(select.format(placeholders), (ranch_id, entity, *chunk)):
                    restored[row["archived_id"]] = row["target_id"]
        return restored

    def find_medical_keys(self, animal_ids: Iterable[str]) -> set[tuple[str, str, str]]:
        """(animal_id, date, description) of every medical record of the given animals."""
        id_list = list(dict.fromkeys(animal_ids))
        keys: set[tuple[str, str, str]] = set()
        with self._get_connection() as conn:
            for start in range(0, len(id_list), 500):
                chunk = id_list[start:start + 500]
                placeholders = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    "SELECT animal_id, date, description FROM medical_history "  # noqa: S608
                    f"WHERE animal_id IN ({placeholders})",
                    chunk,
                )
                keys.update((row["animal_id"], row["date"], row["description"]) for row in rows)
        return keys

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert_records(
        self, entity: str, records: list[Any], id_mappings: list[IdMapping] | None = None
    ) -> int:
        """
        Insert a batch of records in one transaction.

        Custom field values are upserted on (animal_id, field_id).

        Args:
            entity: Entity type name.
            records: Records to insert.
            id_mappings: Archived identifiers of records that were restored
                under new ones, committed with the records themselves.

        Returns:
            Number of records written.
        """
        if not records:
            return 0

        table, columns = TABLE_COLUMNS[entity]
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"  # noqa: S608
        if entity == ENTITY_FIELD_VALUES:
            sql += " ON CONFLICT(animal_id, field_id) DO UPDATE SET value = excluded.value"

        rows = [
            tuple(_to_db(getattr(record, column)) for column in columns)
            for record in records
        ]

        with self._transaction() as conn:
            conn.executemany(sql, rows)
            if id_mappings:
                conn.executemany(
                    "INSERT OR REPLACE INTO restore_id_map "
                    "(ranch_id, entity, archived_id, target_id) VALUES (?, ?, ?, ?)",
                    [(m.ranch_id, entity, m.archived_id, m.target_id) for m in id_mappings],
                )

        logger.debug(f"Inserted {len(rows)} {entity} records")
        return len(rows)

    def save_settings(self, settings: RanchSettings) -> None:
        _, columns = TABLE_COLUMNS[ENTITY_RANCH_SETTINGS]
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "ranch_id")
        with self._get_connection() as conn:
            conn.execute(
                f"INSERT INTO ranch_settings ({', '.join(columns)}) "  # noqa: S608
                f"VALUES ({', '.join('?' for _ in columns)}) "
                f"ON CONFLICT(ranch_id) DO UPDATE SET {updates}",
                tuple(getattr(settings, c) for c in columns),
            )

    def update_animal(self, animal: AnimalRecord) -> None:
        """Overwrite an animal's descriptive fields (identity and parents kept)."""
        _, columns = TABLE_COLUMNS[ENTITY_ANIMALS]
        fields = [c for c in columns if c not in ("id", "ranch_id", "mother_id", "father_id")]
        with self._get_connection() as conn:
            conn.execute(
                f"UPDATE animals SET {', '.join(f'{c} = ?' for c in fields)} "  # noqa: S608
                "WHERE id = ?",
                (*(getattr(animal, c) for c in fields), animal.id),
            )

    def set_animal_parents(
        self, animal_id: str, mother_id: str | None, father_id: str | None
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE animals SET mother_id = ?, father_id = ? WHERE id = ?",
                (mother_id, father_id, animal_id),
            )

    def set_photo_synced(self, photo_id: str, synced: bool) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE animal_photos SET is_synced = ? WHERE id = ?",
                (1 if synced else 0, photo_id),
            )

    def delete_animals(self, ranch_id: str) -> int:
        """
        Delete every animal of a ranch.

        Medical history, custom field values and photo rows go with them by
        cascade. Photo blobs are not touched.

        Returns:
            Number of animals deleted.
        """
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM animals WHERE ranch_id = ?", (ranch_id,))
            deleted = cursor.rowcount
        logger.info(f"Deleted {deleted} animals from ranch {ranch_id}")
        return deleted

    # -------------------------------------------------------------------------
    # Restore lock
    # -------------------------------------------------------------------------

    def acquire_lock(self, ranch_id: str, holder: str, ttl_seconds: float) -> bool:
        """
        Take the exclusive restore lock for a ranch.

        A lock not refreshed for ttl_seconds is considered abandoned (its
        holder crashed) and is taken over. A running restore keeps its lock
        alive with refresh_lock().

        Returns:
            True if the lock is now held by holder, False if someone else holds it.
        """
        now = time.time()
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT holder, acquired_at FROM restore_locks WHERE ranch_id = ?",
                (ranch_id,),
            ).fetchone()

            if row is not None and row["holder"] != holder:
                if now - row["acquired_at"] < ttl_seconds:
                    return False
                logger.warning(
                    f"Taking over stale restore lock on ranch {ranch_id} "
                    f"held by {row['holder']}"
                )

            conn.execute(
                "INSERT OR REPLACE INTO restore_locks (ranch_id, holder, acquired_at) "
                "VALUES (?, ?, ?)",
                (ranch_id, holder, now),
            )
        return True

    def refresh_lock(self, ranch_id: str, holder: str) -> bool:
        """
        Restart the lock's TTL.

        Returns:
            False if holder no longer owns the lock (it was taken over as stale).
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE restore_locks SET acquired_at = ? WHERE ranch_id = ? AND holder = ?",
                (time.time(), ranch_id, holder),
            )
            return cursor.rowcount > 0

    def release_lock(self, ranch_id: str, holder: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "DELETE FROM restore_locks WHERE ranch_id = ? AND holder = ?",
                (ranch_id, holder),
            )

    def get_statistics(self, ranch_id: str) -> dict[str, int]:
        """Record counts per entity type for one ranch."""
        return {entity: self.count(entity, ranch_id) for entity in TABLE_COLUMNS}
