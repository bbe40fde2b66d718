"""
SQLite catalog storage for tracksync.

One catalog per library directory: the track table, an FTS5 search index kept
consistent by triggers, a derived albums view and a single state record.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from loguru import logger

from tracksync.domain.library.models import Album, FileState, SyncState, Track

from .errors import CatalogError, CatalogKindMismatch, NotInitialized, SchemaVersionMismatch

# Database schema version, checked on every open
SCHEMA_VERSION = 1

DATABASE_FILENAME = "tracksync.db"

# Shortest query the trigram tokenizer can answer through MATCH
TRIGRAM_MIN_QUERY = 3

TRACK_COLUMNS = (
    "track_id",
    "title",
    "artist",
    "album",
    "number",
    "disc_number",
    "disc_total",
    "file_state",
    "file_path",
    "extension",
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS state (
    id          INTEGER PRIMARY KEY CHECK (id = 1), -- Ensure only one row
    version     INTEGER NOT NULL,
    is_external BOOLEAN NOT NULL
);

CREATE TABLE IF NOT EXISTS tracks (
    id          INTEGER PRIMARY KEY AUTOINCREMENT, -- Never reused
    track_id    TEXT NOT NULL,
    title       TEXT NOT NULL,
    artist      TEXT NOT NULL,
    album       TEXT NOT NULL,
    number      INTEGER NOT NULL,
    disc_number INTEGER NOT NULL,
    disc_total  INTEGER NOT NULL,
    file_state  INTEGER NOT NULL,
    file_path   TEXT NOT NULL,
    extension   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tracks_track_id ON tracks (track_id);
CREATE INDEX IF NOT EXISTS idx_tracks_file_path ON tracks (file_path);
CREATE INDEX IF NOT EXISTS idx_tracks_file_state ON tracks (file_state);

CREATE TABLE IF NOT EXISTS directories (
    directory TEXT PRIMARY KEY NOT NULL
);

CREATE VIEW IF NOT EXISTS albums (
    title,
    artist,
    format
) AS SELECT DISTINCT album, artist, extension FROM tracks;

CREATE VIRTUAL TABLE IF NOT EXISTS track_fts USING fts5(
    track_id, title, album, artist, extension,
    content='tracks', content_rowid='id', tokenize='trigram'
);

-- External-content index: deletes must carry the old values
CREATE TRIGGER IF NOT EXISTS track_fts_insert AFTER INSERT ON tracks BEGIN
    INSERT INTO track_fts (rowid, track_id, title, album, artist, extension)
    VALUES (new.id, new.track_id, new.title, new.album, new.artist, new.extension);
END;

CREATE TRIGGER IF NOT EXISTS track_fts_delete AFTER DELETE ON tracks BEGIN
    INSERT INTO track_fts (track_fts, rowid, track_id, title, album, artist, extension)
    VALUES ('delete', old.id, old.track_id, old.title, old.album, old.artist, old.extension);
END;

CREATE TRIGGER IF NOT EXISTS track_fts_update AFTER UPDATE ON tracks BEGIN
    INSERT INTO track_fts (track_fts, rowid, track_id, title, album, artist, extension)
    VALUES ('delete', old.id, old.track_id, old.title, old.album, old.artist, old.extension);
    INSERT INTO track_fts (rowid, track_id, title, album, artist, extension)
    VALUES (new.id, new.track_id, new.title, new.album, new.artist, new.extension);
END;
"""


def get_database_path(library_dir: str | Path) -> Path:
    """Get the path to the catalog database file of a library directory."""
    return Path(library_dir).expanduser() / DATABASE_FILENAME


def get_db_connection(db_path: Path, create: bool = False) -> sqlite3.Connection:
    """Open a catalog connection with WAL journaling.

    Args:
        db_path: Path to the database file
        create: Create the file if missing (otherwise opening a missing file fails)
    """
    if create:
        conn = sqlite3.connect(db_path, timeout=30.0)
    else:
        conn = sqlite3.connect(f"{db_path.resolve().as_uri()}?mode=rw", uri=True, timeout=30.0)
    conn.row_factory = sqlite3.Row

    # WAL keeps readers consistent during writes; FULL sync makes each commit durable
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=FULL")
    return conn


def _read_state(conn: sqlite3.Connection) -> Optional[SyncState]:
    try:
        row = conn.execute("SELECT version, is_external FROM state WHERE id = 1").fetchone()
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            return None
        raise
    if row is None:
        return None
    return SyncState(schema_version=row["version"], is_external=bool(row["is_external"]))


def _check_kind(state: SyncState, expect_external: Optional[bool], db_path: Path) -> None:
    if expect_external is None or state.is_external == expect_external:
        return
    actual = "destination" if state.is_external else "source"
    wanted = "destination" if expect_external else "source"
    raise CatalogKindMismatch(f"Catalog at {db_path} is a {actual} catalog, expected a {wanted} one")


def init_catalog(library_dir: str | Path, is_external: bool = False) -> "Catalog":
    """Create the schema and state record of a catalog.

    Initializing an existing catalog of the same kind just opens it.

    Raises:
        CatalogKindMismatch: If the catalog exists with the other kind
        SchemaVersionMismatch: If the catalog exists with another schema version
        CatalogError: If the database cannot be created
    """
    db_path = get_database_path(library_dir)
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = get_db_connection(db_path, create=True)
    except (OSError, sqlite3.Error) as e:
        raise CatalogError(f"Cannot create catalog at {db_path}: {e}") from e

    try:
        state = _read_state(conn)
        if state is None:
            conn.executescript(
                "BEGIN;\n"
                + SCHEMA
                + f"\nINSERT INTO state (id, version, is_external) "
                f"VALUES (1, {SCHEMA_VERSION}, {int(is_external)});\n"
                "COMMIT;"
            )
            state = SyncState(schema_version=SCHEMA_VERSION, is_external=is_external)
            kind = "destination" if is_external else "source"
            logger.info(f"Initialized {kind} catalog at {db_path}")
        elif state.schema_version != SCHEMA_VERSION:
            raise SchemaVersionMismatch(str(db_path), state.schema_version, SCHEMA_VERSION)
        else:
            _check_kind(state, is_external, db_path)
    except sqlite3.Error as e:
        if conn.in_transaction:
            conn.rollback()
        conn.close()
        raise CatalogError(f"Cannot initialize catalog at {db_path}: {e}") from e
    except CatalogError:
        conn.close()
        raise

    return Catalog(conn, db_path, state)


def open_catalog(library_dir: str | Path, expect_external: Optional[bool] = None) -> "Catalog":
    """Open an initialized catalog.

    Args:
        library_dir: Directory holding the catalog database
        expect_external: If given, fail unless the catalog is of that kind

    Raises:
        NotInitialized: If there is no database or no state record
        SchemaVersionMismatch: If the stored schema version differs from SCHEMA_VERSION
        CatalogKindMismatch: If the catalog kind differs from expect_external
    """
    db_path = get_database_path(library_dir)
    if not db_path.is_file():
        raise NotInitialized(f"No catalog found at {db_path}")

    try:
        conn = get_db_connection(db_path)
        state = _read_state(conn)
    except sqlite3.Error as e:
        raise CatalogError(f"Cannot open catalog at {db_path}: {e}") from e

    try:
        if state is None:
            raise NotInitialized(f"Catalog at {db_path} has no state record")
        if state.schema_version != SCHEMA_VERSION:
            raise SchemaVersionMismatch(str(db_path), state.schema_version, SCHEMA_VERSION)
        _check_kind(state, expect_external, db_path)
    except CatalogError:
        conn.close()
        raise

    return Catalog(conn, db_path, state)


def _row_to_track(row: sqlite3.Row) -> Track:
    return Track(
        track_id=row["track_id"],
        title=row["title"],
        artist=row["artist"],
        album=row["album"],
        number=row["number"],
        disc_number=row["disc_number"],
        disc_total=row["disc_total"],
        file_path=row["file_path"],
        extension=row["extension"],
        file_state=FileState.from_db(row["file_state"]),
        surrogate_id=row["id"],
    )


def _track_values(track: Track) -> Tuple:
    return (
        track.track_id,
        track.title,
        track.artist,
        track.album,
        track.number,
        track.disc_number,
        track.disc_total,
        int(track.file_state),
        track.file_path,
        track.extension,
    )


def _fts_phrase(text: str) -> str:
    """Quote free text as a single FTS5 phrase (substring match under trigram)."""
    return '"' + text.replace('"', '""') + '"'


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class Catalog:
    """An open catalog: one library's tracks, search index and state.

    A Catalog wraps a single SQLite connection and must be used from the
    thread that opened it. All writes go through that one connection, and each
    write commits in one transaction together with its trigger-driven index
    update.
    """

    def __init__(self, conn: sqlite3.Connection, db_path: Path, state: SyncState):
        self._conn = conn
        self.db_path = db_path
        self.state = state

    @property
    def library_dir(self) -> Path:
        return self.db_path.parent

    @property
    def is_external(self) -> bool:
        return self.state.is_external

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "Catalog":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        kind = "destination" if self.is_external else "source"
        return f"<Catalog {kind} {self.db_path}>"

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with self._conn:
                yield self._conn
        except sqlite3.Error as e:
            raise CatalogError(f"Catalog write failed ({self.db_path}): {e}") from e

    def _query(self, sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
        try:
            return self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise CatalogError(f"Catalog read failed ({self.db_path}): {e}") from e

    def _write_track(self, conn: sqlite3.Connection, track: Track) -> int:
        values = _track_values(track)
        if track.surrogate_id is None:
            placeholders = ", ".join("?" for _ in TRACK_COLUMNS)
            cursor = conn.execute(
                f"INSERT INTO tracks ({', '.join(TRACK_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
            return cursor.lastrowid

        assignments = ", ".join(f"{col} = ?" for col in TRACK_COLUMNS)
        cursor = conn.execute(
            f"UPDATE tracks SET {assignments} WHERE id = ?",
            values + (track.surrogate_id,),
        )
        if cursor.rowcount == 0:
            raise CatalogError(f"No track with surrogate id {track.surrogate_id} in {self.db_path}")
        return track.surrogate_id

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upsert_track(self, track: Track) -> int:
        """Insert a track, or update it in place when surrogate_id is set.

        Returns:
            The track's surrogate id
        """
        with self._transaction() as conn:
            return self._write_track(conn, track)

    def upsert_tracks(self, tracks: Iterable[Track]) -> List[int]:
        """Upsert many tracks in a single transaction."""
        with self._transaction() as conn:
            return [self._write_track(conn, track) for track in tracks]

    def replace_track(self, track: Track, replaced_id: int) -> int:
        """Delete one row and upsert track in its place, in one transaction.

        Used when a track takes over the path of a row that left the source.
        """
        with self._transaction() as conn:
            conn.execute("DELETE FROM tracks WHERE id = ?", (replaced_id,))
            return self._write_track(conn, track)

    def delete_track(self, surrogate_id: int) -> None:
        """Delete a track row; the delete trigger removes its index entry."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM tracks WHERE id = ?", (surrogate_id,))

    def delete_tracks(self, surrogate_ids: Iterable[int]) -> None:
        """Delete many track rows in a single transaction."""
        with self._transaction() as conn:
            conn.executemany("DELETE FROM tracks WHERE id = ?", [(sid,) for sid in surrogate_ids])

    def set_file_state(self, surrogate_id: int, state: FileState) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE tracks SET file_state = ? WHERE id = ?",
                (int(state), surrogate_id),
            )

    def add_directory(self, directory: str) -> None:
        """Remember a scanned source directory for later 'update' runs."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO directories (directory) VALUES (?)", (directory,)
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_track_id(self, track_id: str) -> Optional[Track]:
        rows = self._query(
            "SELECT * FROM tracks WHERE track_id = ? ORDER BY id LIMIT 1", (track_id,)
        )
        return _row_to_track(rows[0]) if rows else None

    def find_by_path(self, file_path: str) -> Optional[Track]:
        rows = self._query(
            "SELECT * FROM tracks WHERE file_path = ? ORDER BY id LIMIT 1", (file_path,)
        )
        return _row_to_track(rows[0]) if rows else None

    def list_tracks(self, state: Optional[FileState] = None) -> List[Track]:
        """All tracks (optionally only those in one state), ordered by path."""
        if state is None:
            rows = self._query("SELECT * FROM tracks ORDER BY file_path, id")
        else:
            rows = self._query(
                "SELECT * FROM tracks WHERE file_state = ? ORDER BY file_path, id",
                (int(state),),
            )
        return [_row_to_track(row) for row in rows]

    def count_tracks(self) -> int:
        return self._query("SELECT COUNT(*) AS count FROM tracks")[0]["count"]

    def known_paths(self, prefix: Optional[str] = None) -> Set[str]:
        """File paths already in the catalog, optionally under a directory prefix."""
        if prefix is None:
            rows = self._query("SELECT file_path FROM tracks")
        else:
            # substr() keeps the comparison case-sensitive, unlike LIKE
            rows = self._query(
                "SELECT file_path FROM tracks WHERE substr(file_path, 1, length(?)) = ?",
                (prefix, prefix),
            )
        return {row["file_path"] for row in rows}

    def directories(self) -> List[str]:
        return [row["directory"] for row in self._query("SELECT directory FROM directories ORDER BY directory")]

    def search(self, query: str, limit: Optional[int] = None) -> List[Track]:
        """Full-text search over track_id, title, album, artist and extension.

        Queries of three or more characters go through the trigram index and
        are ranked by bm25; shorter ones are answered with LIKE on the index.
        """
        text = query.strip()
        if not text:
            return []

        if len(text) >= TRIGRAM_MIN_QUERY:
            sql = """
                SELECT tracks.* FROM track_fts
                JOIN tracks ON tracks.id = track_fts.rowid
                WHERE track_fts MATCH ?
                ORDER BY track_fts.rank
            """
            params: List = [_fts_phrase(text)]
        else:
            pattern = _like_pattern(text)
            columns = ("track_id", "title", "album", "artist", "extension")
            where = " OR ".join(f"track_fts.{col} LIKE ? ESCAPE '\\'" for col in columns)
            sql = f"""
                SELECT tracks.* FROM track_fts
                JOIN tracks ON tracks.id = track_fts.rowid
                WHERE {where}
                ORDER BY tracks.id
            """
            params = [pattern] * len(columns)

        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        return [_row_to_track(row) for row in self._query(sql, params)]

    def list_albums(self) -> List[Album]:
        rows = self._query("SELECT title, artist, format FROM albums ORDER BY artist, title, format")
        return [Album(title=row["title"], artist=row["artist"], format=row["format"]) for row in rows]

    def duplicate_albums(self) -> List[Tuple[Album, int]]:
        """Albums stored in more than one format, with their format count."""
        rows = self._query(
            """
            SELECT artist, title, COUNT(*) AS count FROM albums
            GROUP BY artist, title
            HAVING count > 1
            ORDER BY artist, title
            """
        )
        return [
            (Album(title=row["title"], artist=row["artist"], format=""), row["count"])
            for row in rows
        ]

    def album_formats(self, title: str, artist: str) -> List[Tuple[str, str]]:
        """(directory, format) pairs where an album's tracks live, one per format."""
        rows = self._query(
            """
            SELECT MIN(file_path) AS file_path, extension FROM tracks
            WHERE album = ? AND artist = ?
            GROUP BY extension
            ORDER BY extension
            """,
            (title, artist),
        )
        return [(str(Path(row["file_path"]).parent), row["extension"]) for row in rows]
