"""
Database connection management for the SQLite usage ledger.
"""

import sqlite3

DEFAULT_DB_PATH = ".guard402.db"

# Seconds a writer waits on a locked database before sqlite3 gives up.
LOCK_TIMEOUT_SECONDS = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection to the ledger database.

    The CLI and a running client may share one ledger file, so writers wait
    for a lock instead of failing immediately.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    return sqlite3.connect(db_path, timeout=LOCK_TIMEOUT_SECONDS)
