"""SQLite-backed persistent store for accounts, gallery and history images.

The database holds three independent tables plus one secondary index:

==========  ==========  ===============================================
Table       Key         Notes
==========  ==========  ===============================================
accounts    email       one row per registered account
gallery     image id    ``gallery_by_owner`` index on ``owner_id``
history     image id    every image produced on this device
==========  ==========  ===============================================

Schema versioning
-----------------
The on-disk schema version lives in ``PRAGMA user_version``.  :meth:`ImageStore.open`
compares it with :data:`SCHEMA_VERSION` and runs every pending step of
:data:`MIGRATIONS` inside a single transaction.  Steps are additive only
(``CREATE ... IF NOT EXISTS``), so they can run against tables that already
hold rows written by an older version.  If any step fails, the transaction is
rolled back, the version is left untouched and
``StoreError(MIGRATION_FAILED)`` is raised.

Concurrency
-----------
Each public write runs in its own connection and transaction, making it
atomic for the single entity it touches.  Writes from parallel generation
workers are serialised by an in-process lock; SQLite's own file locking covers
other processes.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from enum import Enum
from pathlib import Path

from dreampix.core.errors import StoreError, StoreErrorKind
from dreampix.core.models import Account, GeneratedImage

logger = logging.getLogger(__name__)


class Collection(str, Enum):
    """Image collections.  Values double as table names."""

    GALLERY = "gallery"
    HISTORY = "history"


_IMAGE_COLUMNS = (
    "id",
    "owner_id",
    "prompt",
    "enhanced_prompt",
    "image_bytes",
    "created_at",
    "is_enhanced_variant",
    "aspect_ratio",
    "is_collage",
)

_IMAGE_TABLE_DDL = """
    CREATE TABLE IF NOT EXISTS {table} (
        id TEXT PRIMARY KEY,
        owner_id TEXT,
        prompt TEXT NOT NULL,
        enhanced_prompt TEXT,
        image_bytes BLOB NOT NULL,
        created_at INTEGER NOT NULL,
        is_enhanced_variant INTEGER NOT NULL DEFAULT 0,
        aspect_ratio TEXT NOT NULL DEFAULT '1:1',
        is_collage INTEGER NOT NULL DEFAULT 0
    )
"""


# ---------------------------------------------------------------------------
# Migration steps.  Index i migrates the schema from version i to i + 1.
# ---------------------------------------------------------------------------


def _create_gallery(conn: sqlite3.Connection) -> None:
    conn.execute(_IMAGE_TABLE_DDL.format(table=Collection.GALLERY.value))


def _create_history_and_owner_index(conn: sqlite3.Connection) -> None:
    conn.execute(_IMAGE_TABLE_DDL.format(table=Collection.HISTORY.value))
    # A version 1 gallery may already hold rows; building the index over them
    # is safe.
    conn.execute("""
        CREATE INDEX IF NOT EXISTS gallery_by_owner
        ON gallery(owner_id, created_at DESC)
        """)


def _create_accounts(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS accounts (
            email TEXT PRIMARY KEY,
            id TEXT NOT NULL,
            credential TEXT NOT NULL,
            display_name TEXT
        )
        """)


MigrationStep = Callable[[sqlite3.Connection], None]

MIGRATIONS: tuple[MigrationStep, ...] = (
    _create_gallery,
    _create_history_and_owner_index,
    _create_accounts,
)

SCHEMA_VERSION = len(MIGRATIONS)


class ImageStore:
    """Versioned local database for accounts and generated images.

    The store is opened lazily by the first operation, or explicitly through
    :meth:`open`, which is idempotent.

    Example::

        store = ImageStore(config.db_path).open()
        store.put_image(Collection.HISTORY, image)
        recent = store.list_all(Collection.HISTORY)
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        migrations: Sequence[MigrationStep] = MIGRATIONS,
        timeout: float = 5.0,
    ) -> None:
        """Initialise the store without touching the file system.

        Args:
            db_path: Path to the SQLite database file.
            migrations: Ordered migration steps; the expected schema version
                is their count.
            timeout: Seconds SQLite waits on a locked database.
        """
        self.db_path = Path(db_path)
        self._migrations = tuple(migrations)
        self._timeout = timeout
        self._write_lock = threading.Lock()
        self._open_lock = threading.Lock()
        self._opened = False

    @property
    def expected_version(self) -> int:
        return len(self._migrations)

    # -- Lifecycle ----------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self._timeout)
        except sqlite3.Error as e:
            raise StoreError(
                StoreErrorKind.UNAVAILABLE, f"Cannot open database {self.db_path}: {e}"
            ) from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def open(self) -> ImageStore:
        """Open the database and bring its schema up to date.

        Safe to call repeatedly; the migration check only runs once per
        instance.

        Returns:
            This store, for chaining.

        Raises:
            StoreError: ``UNAVAILABLE`` if the file cannot be opened,
                ``MIGRATION_FAILED`` if any migration step fails.
        """
        with self._open_lock:
            if self._opened:
                return self
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StoreError(
                    StoreErrorKind.UNAVAILABLE, f"Cannot create {self.db_path.parent}: {e}"
                ) from e
            with self._connect() as conn:
                self._migrate(conn)
            self._opened = True
        logger.info(f"Opened image store at {self.db_path}")
        return self

    def _migrate(self, conn: sqlite3.Connection) -> None:
        try:
            current = conn.execute("PRAGMA user_version").fetchone()[0]
        except sqlite3.Error as e:
            # Not a database, or unreadable.
            raise StoreError(StoreErrorKind.UNAVAILABLE, str(e)) from e

        expected = self.expected_version
        if current > expected:
            logger.warning(
                f"Database schema version {current} is newer than supported version {expected}"
            )
            return
        if current == expected:
            return

        # Manual transaction control so DDL and the version bump commit or
        # roll back together.
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            for version in range(current, expected):
                logger.info(f"Migrating store schema v{version} -> v{version + 1}")
                self._migrations[version](conn)
            conn.execute(f"PRAGMA user_version = {expected:d}")
            conn.execute("COMMIT")
        except Exception as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error(f"Store migration failed at {self.db_path}: {e}")
            raise StoreError(
                StoreErrorKind.MIGRATION_FAILED, f"Migration to v{expected} failed: {e}"
            ) from e

    def _ensure_open(self) -> None:
        if not self._opened:
            self.open()

    @property
    def schema_version(self) -> int:
        """Schema version currently recorded on disk."""
        with self._connect() as conn:
            return conn.execute("PRAGMA user_version").fetchone()[0]

    # -- Accounts -----------------------------------------------------------

    def put_account(self, account: Account) -> None:
        """Insert a new account.

        Raises:
            StoreError: ``ALREADY_EXISTS`` if the email is taken (the existing
                row is left untouched), ``WRITE_FAILED`` on other errors.
        """
        self._ensure_open()
        with self._write_lock, self._connect() as conn:
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO accounts (email, id, credential, display_name)
                        VALUES (?, ?, ?, ?)
                        """,
                        (account.email, account.id, account.credential, account.display_name),
                    )
            except sqlite3.IntegrityError as e:
                raise StoreError(
                    StoreErrorKind.ALREADY_EXISTS, f"Account {account.email} already exists"
                ) from e
            except sqlite3.Error as e:
                raise StoreError(StoreErrorKind.WRITE_FAILED, str(e)) from e
        logger.debug(f"Stored account {account.email}")

    def get_account(self, email: str) -> Account | None:
        """Look up an account by email; ``None`` when absent."""
        self._ensure_open()
        with self._connect() as conn:
            row = self._read(
                conn,
                "SELECT id, email, credential, display_name FROM accounts WHERE email = ?",
                (email,),
            ).fetchone()
        if row is None:
            return None
        return Account(
            id=row["id"],
            email=row["email"],
            credential=row["credential"],
            display_name=row["display_name"],
        )

    # -- Images -------------------------------------------------------------

    def put_image(self, collection: Collection, image: GeneratedImage) -> None:
        """Insert or overwrite an image keyed by its id.

        Re-writing the same id replaces the row, so retries are idempotent.

        Raises:
            StoreError: ``WRITE_FAILED`` if the write cannot be committed.
        """
        table = Collection(collection).value
        self._ensure_open()
        placeholders = ", ".join("?" for _ in _IMAGE_COLUMNS)
        with self._write_lock, self._connect() as conn:
            try:
                with conn:
                    conn.execute(
                        f"INSERT OR REPLACE INTO {table} ({', '.join(_IMAGE_COLUMNS)}) "
                        f"VALUES ({placeholders})",
                        _image_to_row(image),
                    )
            except sqlite3.Error as e:
                logger.error(f"Error writing image {image.id} to {table}: {e}")
                raise StoreError(
                    StoreErrorKind.WRITE_FAILED, f"Could not write {image.id} to {table}: {e}"
                ) from e
        logger.debug(f"Stored image {image.id} in {table}")

    def get_image(self, collection: Collection, image_id: str) -> GeneratedImage | None:
        """Fetch a single image by id; ``None`` when absent."""
        table = Collection(collection).value
        self._ensure_open()
        with self._connect() as conn:
            row = self._read(
                conn,
                f"SELECT {', '.join(_IMAGE_COLUMNS)} FROM {table} WHERE id = ?",
                (image_id,),
            ).fetchone()
        return _row_to_image(row) if row is not None else None

    def list_by_owner(self, collection: Collection, owner_id: str) -> list[GeneratedImage]:
        """List one owner's gallery images, newest first.

        Served by the ``gallery_by_owner`` index rather than a table scan.
        """
        if Collection(collection) is not Collection.GALLERY:
            raise ValueError("Only the gallery is indexed by owner")
        self._ensure_open()
        with self._connect() as conn:
            rows = self._read(
                conn,
                f"""
                SELECT {', '.join(_IMAGE_COLUMNS)} FROM gallery INDEXED BY gallery_by_owner
                WHERE owner_id = ?
                ORDER BY created_at DESC, id DESC
                """,
                (owner_id,),
            ).fetchall()
        return [_row_to_image(row) for row in rows]

    def list_all(self, collection: Collection) -> list[GeneratedImage]:
        """List every image in a collection, newest first."""
        table = Collection(collection).value
        self._ensure_open()
        with self._connect() as conn:
            rows = self._read(
                conn,
                f"SELECT {', '.join(_IMAGE_COLUMNS)} FROM {table} "
                "ORDER BY created_at DESC, id DESC",
            ).fetchall()
        return [_row_to_image(row) for row in rows]

    def count(self, collection: Collection) -> int:
        table = Collection(collection).value
        self._ensure_open()
        with self._connect() as conn:
            return self._read(conn, f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def delete_image(
        self,
        collection: Collection,
        image_id: str,
        *,
        owner_id: str | None = None,
    ) -> bool:
        """Delete an image by id.  Deleting a missing id is a no-op.

        Args:
            collection: Collection to delete from.
            image_id: Id of the image.
            owner_id: When given, only delete if the image belongs to this
                owner.

        Returns:
            True if a row was removed.
        """
        table = Collection(collection).value
        self._ensure_open()
        query = f"DELETE FROM {table} WHERE id = ?"
        params: tuple = (image_id,)
        if owner_id is not None:
            query += " AND owner_id = ?"
            params = (image_id, owner_id)
        with self._write_lock, self._connect() as conn:
            try:
                with conn:
                    cursor = conn.execute(query, params)
            except sqlite3.Error as e:
                raise StoreError(StoreErrorKind.WRITE_FAILED, str(e)) from e

        was_deleted = cursor.rowcount > 0
        if was_deleted:
            logger.info(f"Deleted {image_id} from {table}")
        else:
            logger.debug(f"Not in {table}: {image_id}")
        return was_deleted

    def clear_collection(self, collection: Collection) -> None:
        """Remove every row from a collection."""
        table = Collection(collection).value
        self._ensure_open()
        with self._write_lock, self._connect() as conn:
            try:
                with conn:
                    conn.execute(f"DELETE FROM {table}")
            except sqlite3.Error as e:
                raise StoreError(StoreErrorKind.WRITE_FAILED, str(e)) from e
        logger.info(f"Cleared all images from {table}")

    # -- Helpers ------------------------------------------------------------

    @staticmethod
    def _read(conn: sqlite3.Connection, query: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return conn.execute(query, params)
        except sqlite3.Error as e:
            raise StoreError(StoreErrorKind.UNAVAILABLE, str(e)) from e


def _image_to_row(image: GeneratedImage) -> tuple:
    return (
        image.id,
        image.owner_id,
        image.prompt,
        image.enhanced_prompt,
        sqlite3.Binary(image.image_bytes),
        image.created_at,
        int(image.is_enhanced_variant),
        image.aspect_ratio,
        int(image.is_collage),
    )


def _row_to_image(row: sqlite3.Row) -> GeneratedImage:
    return GeneratedImage(
        id=row["id"],
        owner_id=row["owner_id"],
        prompt=row["prompt"],
        enhanced_prompt=row["enhanced_prompt"],
        image_bytes=bytes(row["image_bytes"]),
        created_at=row["created_at"],
        is_enhanced_variant=bool(row["is_enhanced_variant"]),
        aspect_ratio=row["aspect_ratio"],
        is_collage=bool(row["is_collage"]),
    )
