"""
SQLite state persistence for incremental sync tracking.
"""

import logging
import sqlite3
import threading
import time
from pathlib import Path

from calendar_bridge.models import EventMapping
from calendar_bridge.models import SyncState

logger = logging.getLogger(__name__)


class StateStore:
    """Change tokens and event mappings, shared by every sync run.

    Every public method holds a single lock for its whole duration, so a UI
    thread and a background timer can share one store; operations never
    interleave.  Storage errors propagate as ``sqlite3.Error``.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open the state database, creating the schema on first use."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS sync_state (
                    account_id TEXT NOT NULL,
                    calendar_id TEXT NOT NULL,
                    change_token TEXT,
                    local_calendar_id TEXT,
                    created_at INTEGER NOT NULL,
                    last_sync_at INTEGER NOT NULL,
                    PRIMARY KEY (account_id, calendar_id)
                );
                CREATE TABLE IF NOT EXISTS event_mapping (
                    account_id TEXT NOT NULL,
                    calendar_id TEXT NOT NULL,
                    foreign_event_id TEXT NOT NULL,
                    local_event_id TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    last_modified TEXT,
                    created_at INTEGER NOT NULL,
                    last_sync_at INTEGER NOT NULL,
                    PRIMARY KEY (account_id, calendar_id, foreign_event_id)
                );
            """)
            self.conn.commit()

    # ------------------------------------------------------------------ #
    # Sync state (one row per account + calendar)                          #
    # ------------------------------------------------------------------ #

    def add_calendar(
        self, account_id: str, calendar_id: str, local_calendar_id: str | None = None
    ):
        """Register a calendar for syncing.

        Selecting a calendar again resets its change token, forcing the next
        run to do a full windowed fetch.
        """
        timestamp = int(time.time())
        with self._lock:
            self.conn.execute(
                "INSERT INTO sync_state "
                "(account_id, calendar_id, change_token, local_calendar_id, "
                " created_at, last_sync_at) "
                "VALUES (?, ?, NULL, ?, ?, ?) "
                "ON CONFLICT(account_id, calendar_id) DO UPDATE SET "
                "change_token = NULL, "
                "local_calendar_id = COALESCE(excluded.local_calendar_id, local_calendar_id)",
                (account_id, calendar_id, local_calendar_id, timestamp, timestamp),
            )
            self.conn.commit()

    def get_change_token(self, account_id: str, calendar_id: str) -> str | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT change_token FROM sync_state WHERE account_id = ? AND calendar_id = ?",
                (account_id, calendar_id),
            ).fetchone()
        return row["change_token"] if row else None

    def save_change_token(self, account_id: str, calendar_id: str, token: str | None):
        """Store the token for the next incremental fetch (last write wins).

        ``None`` is a legal value and forces a full refetch next run.
        """
        timestamp = int(time.time())
        with self._lock:
            self.conn.execute(
                "INSERT INTO sync_state "
                "(account_id, calendar_id, change_token, created_at, last_sync_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(account_id, calendar_id) DO UPDATE SET "
                "change_token = excluded.change_token, last_sync_at = excluded.last_sync_at",
                (account_id, calendar_id, token, timestamp, timestamp),
            )
            self.conn.commit()

    def get_sync_state(self, account_id: str, calendar_id: str) -> SyncState | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM sync_state WHERE account_id = ? AND calendar_id = ?",
                (account_id, calendar_id),
            ).fetchone()
        return _row_to_state(row) if row else None

    def list_sync_states(self) -> list[SyncState]:
        with self._lock:
            rows = self.conn.execute("SELECT * FROM sync_state ORDER BY rowid").fetchall()
        return [_row_to_state(row) for row in rows]

    def list_accounts(self) -> list[str]:
        """Return every account with at least one selected calendar."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT account_id FROM sync_state GROUP BY account_id ORDER BY MIN(rowid)"
            ).fetchall()
        return [row["account_id"] for row in rows]

    def list_calendars(self) -> list[tuple[str, str]]:
        """Return every (account_id, calendar_id) pair, in selection order."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT account_id, calendar_id FROM sync_state ORDER BY rowid"
            ).fetchall()
        return [(row["account_id"], row["calendar_id"]) for row in rows]

    # ------------------------------------------------------------------ #
    # Event mappings (keyed on the foreign, i.e. cloud-side, event id)     #
    # ------------------------------------------------------------------ #

    def get_mapping(
        self, account_id: str, calendar_id: str, foreign_event_id: str
    ) -> EventMapping | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM event_mapping "
                "WHERE account_id = ? AND calendar_id = ? AND foreign_event_id = ?",
                (account_id, calendar_id, foreign_event_id),
            ).fetchone()
        return _row_to_mapping(row) if row else None

    def save_mapping(
        self,
        account_id: str,
        calendar_id: str,
        foreign_event_id: str,
        local_event_id: str,
        content_hash: str,
        last_modified: str | None = None,
    ):
        """Upsert the mapping for a foreign event id.

        Re-saving replaces the local id and hash but keeps ``created_at``, so
        the mapping survives the local event being deleted and recreated.
        """
        timestamp = int(time.time())
        with self._lock:
            self.conn.execute(
                "INSERT INTO event_mapping "
                "(account_id, calendar_id, foreign_event_id, local_event_id, "
                " content_hash, last_modified, created_at, last_sync_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(account_id, calendar_id, foreign_event_id) DO UPDATE SET "
                "local_event_id = excluded.local_event_id, "
                "content_hash = excluded.content_hash, "
                "last_modified = excluded.last_modified, "
                "last_sync_at = excluded.last_sync_at",
                (
                    account_id,
                    calendar_id,
                    foreign_event_id,
                    local_event_id,
                    content_hash,
                    last_modified,
                    timestamp,
                    timestamp,
                ),
            )
            self.conn.commit()

    def list_mappings(self, account_id: str, calendar_id: str) -> list[EventMapping]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM event_mapping WHERE account_id = ? AND calendar_id = ? "
                "ORDER BY rowid",
                (account_id, calendar_id),
            ).fetchall()
        return [_row_to_mapping(row) for row in rows]

    def mapping_counts(self) -> dict[tuple[str, str], int]:
        """Return the number of tracked events per (account_id, calendar_id)."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT account_id, calendar_id, COUNT(*) AS count FROM event_mapping "
                "GROUP BY account_id, calendar_id"
            ).fetchall()
        return {(row["account_id"], row["calendar_id"]): row["count"] for row in rows}

    def remove_account(self, account_id: str) -> int:
        """Delete all state for an account.  Returns the number of calendars removed."""
        with self._lock:
            cur = self.conn.execute("DELETE FROM sync_state WHERE account_id = ?", (account_id,))
            removed = cur.rowcount
            self.conn.execute("DELETE FROM event_mapping WHERE account_id = ?", (account_id,))
            self.conn.commit()
        logger.info("Removed state for account %s (%d calendar(s))", account_id, removed)
        return removed

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None


def _row_to_state(row: sqlite3.Row) -> SyncState:
    return SyncState(
        account_id=row["account_id"],
        calendar_id=row["calendar_id"],
        change_token=row["change_token"],
        last_sync_at=row["last_sync_at"],
        local_calendar_id=row["local_calendar_id"],
    )


def _row_to_mapping(row: sqlite3.Row) -> EventMapping:
    return EventMapping(
        account_id=row["account_id"],
        calendar_id=row["calendar_id"],
        foreign_event_id=row["foreign_event_id"],
        local_event_id=row["local_event_id"],
        content_hash=row["content_hash"],
        last_modified=row["last_modified"],
    )
