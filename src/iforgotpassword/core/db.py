# Core Module — SQLite Connection and Migration Helpers
#
# Every iforgotpassword SQLite database opens through `connect()` and
# evolves through `apply_migrations()`:
#
#   - WAL journal mode so the autofill matcher and the UI can read the
#     local store while a sync pass writes it
#   - busy_timeout instead of immediate SQLITE_BUSY
#   - secure_delete so purged ciphertext is zeroed on disk
#
# Migrations are (version, [statements]) pairs, additive only.  The applied
# level lives in a one-column `schema_version` table.

import logging
import sqlite3
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

Migration = Tuple[int, Sequence[str]]


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and safe PRAGMAs.

    Args:
        db_path: Path to the database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        check_same_thread: Passed to sqlite3.connect().
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=check_same_thread)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA secure_delete=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


def schema_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration, 0 for a fresh database."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def apply_migrations(conn: sqlite3.Connection, migrations: Iterable[Migration]) -> List[int]:
    """Run every migration newer than the stored level, in order.

    The caller owns the transaction.  Returns the versions applied.
    """
    current = schema_version(conn)
    applied = []
    for version, statements in sorted(migrations, key=lambda m: m[0]):
        if version <= current:
            continue
        for sql in statements:
            conn.execute(sql)
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
        applied.append(version)
        logger.info("%s migrated to schema v%d", _db_name(conn), version)
    return applied


def _db_name(conn: sqlite3.Connection) -> str:
    row = conn.execute("PRAGMA database_list").fetchone()
    return Path(row[2]).name if row and row[2] else "database"
