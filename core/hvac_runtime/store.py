"""
Session Store

Persisted mirror of device snapshots and runtime session records. The engine
treats the store as best-effort: failures raise PersistenceFailure, get logged,
and in-memory state stays authoritative.

Two implementations:
- MemorySessionStore: thread-safe in-memory store (development, tests)
- SqliteSessionStore: SQLite file (single-node production)
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from pathlib import Path

from .exceptions import PersistenceFailure
from .models import DeviceSessionState, RuntimeSessionRecord

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Persistence interface consumed by the engine and recovery."""

    @abstractmethod
    def load_running_devices(self) -> list[DeviceSessionState]:
        """Device snapshots flagged as currently running."""

    @abstractmethod
    def upsert_device_state(self, state: DeviceSessionState) -> None:
        """Insert or replace a device snapshot."""

    @abstractmethod
    def insert_session_record(self, record: RuntimeSessionRecord) -> None:
        """Insert a session record (open or already closed). Idempotent by session_id."""

    @abstractmethod
    def close_session_record(
        self,
        session_id: str,
        ended_at: datetime,
        duration_seconds: int | None,
        end_temp_c: float | None = None,
        discarded: bool = False,
        abandoned: bool = False,
    ) -> None:
        """Mark a session as ended."""

    @abstractmethod
    def get_device_state(self, device_id: str) -> DeviceSessionState | None:
        """Snapshot for one device."""

    @abstractmethod
    def list_device_states(self) -> list[DeviceSessionState]:
        """All device snapshots."""

    @abstractmethod
    def list_sessions(self, device_id: str, limit: int = 50) -> list[RuntimeSessionRecord]:
        """Most recent sessions for a device, newest first."""

    def save_closed_record(self, record: RuntimeSessionRecord) -> None:
        """Persist a record that closed in memory, whether or not it was inserted open."""
        self.insert_session_record(record)
        self.close_session_record(
            record.session_id,
            record.ended_at,
            record.duration_seconds,
            end_temp_c=record.end_temp_c,
            discarded=record.discarded,
            abandoned=record.abandoned,
        )

    def close(self) -> None:
        """Release resources."""


class MemorySessionStore(SessionStore):
    """In-memory store with bounded session history per device."""

    def __init__(self, max_sessions_per_device: int = 1000):
        self.max_sessions_per_device = max_sessions_per_device
        self.devices: dict[str, dict] = {}
        self.sessions: dict[str, deque[RuntimeSessionRecord]] = {}
        self._by_id: dict[str, RuntimeSessionRecord] = {}
        self.lock = threading.Lock()

    def load_running_devices(self) -> list[DeviceSessionState]:
        with self.lock:
            rows = [dict(row) for row in self.devices.values() if row.get("is_running")]
        return [DeviceSessionState.from_dict(row) for row in rows]

    def upsert_device_state(self, state: DeviceSessionState) -> None:
        with self.lock:
            self.devices[state.device_id] = state.to_dict()

    def insert_session_record(self, record: RuntimeSessionRecord) -> None:
        with self.lock:
            if record.session_id in self._by_id:
                return
            copy = RuntimeSessionRecord.from_dict(record.to_dict())
            history = self.sessions.setdefault(
                record.device_id, deque(maxlen=self.max_sessions_per_device)
            )
            if len(history) == history.maxlen:
                self._by_id.pop(history[0].session_id, None)
            history.append(copy)
            self._by_id[record.session_id] = copy

    def close_session_record(self, session_id, ended_at, duration_seconds, end_temp_c=None,
                             discarded=False, abandoned=False) -> None:
        with self.lock:
            record = self._by_id.get(session_id)
            if record is None:
                logger.warning(f"Cannot close unknown session {session_id}")
                return
            record.ended_at = ended_at
            record.duration_seconds = duration_seconds
            if end_temp_c is not None:
                record.end_temp_c = end_temp_c
            record.discarded = discarded
            record.abandoned = abandoned

    def get_device_state(self, device_id: str) -> DeviceSessionState | None:
        with self.lock:
            row = self.devices.get(device_id)
            row = dict(row) if row else None
        return DeviceSessionState.from_dict(row) if row else None

    def list_device_states(self) -> list[DeviceSessionState]:
        with self.lock:
            rows = [dict(row) for row in self.devices.values()]
        return [DeviceSessionState.from_dict(row) for row in rows]

    def list_sessions(self, device_id: str, limit: int = 50) -> list[RuntimeSessionRecord]:
        with self.lock:
            records = list(self.sessions.get(device_id, ()))
        records.reverse()
        return [RuntimeSessionRecord.from_dict(r.to_dict()) for r in records[:limit]]


class SqliteSessionStore(SessionStore):
    """SQLite-backed store.

    Tables:
    - device_status: one JSON snapshot per device plus an is_running flag
    - runtime_sessions: one row per session
    """

    def __init__(self, db_file: str = "data/runtime.db"):
        """Initialize the database.

        Args:
            db_file: Path to the SQLite file
        """
        self.db_file = Path(db_file)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_file, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._initialize_database()

    def _initialize_database(self) -> None:
        with self.lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS device_status (
                    device_key TEXT PRIMARY KEY,
                    is_running INTEGER NOT NULL DEFAULT 0,
                    state_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS runtime_sessions (
                    session_id TEXT PRIMARY KEY,
                    device_key TEXT NOT NULL,
                    equipment_label TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    duration_seconds INTEGER,
                    start_temp_c REAL,
                    end_temp_c REAL,
                    heat_setpoint_c REAL,
                    cool_setpoint_c REAL,
                    discarded INTEGER NOT NULL DEFAULT 0,
                    abandoned INTEGER NOT NULL DEFAULT 0
                );

                CREATE INDEX IF NOT EXISTS idx_runtime_sessions_device_time
                ON runtime_sessions (device_key, started_at DESC);
            """)
            self._conn.commit()
        logger.info(f"Session store initialized: {self.db_file}")

    def _execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self.lock:
                cursor = self._conn.execute(sql, params)
                rows = cursor.fetchall()
                self._conn.commit()
            return rows
        except sqlite3.Error as e:
            raise PersistenceFailure(f"SQLite error: {e}")

    def load_running_devices(self) -> list[DeviceSessionState]:
        rows = self._execute("SELECT state_json FROM device_status WHERE is_running = 1")
        return [DeviceSessionState.from_dict(json.loads(row["state_json"])) for row in rows]

    def upsert_device_state(self, state: DeviceSessionState) -> None:
        self._execute(
            """
            INSERT INTO device_status (device_key, is_running, state_json, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT (device_key) DO UPDATE SET
                is_running = excluded.is_running,
                state_json = excluded.state_json,
                updated_at = CURRENT_TIMESTAMP
            """,
            (state.device_id, int(state.is_running), json.dumps(state.to_dict())),
        )

    def insert_session_record(self, record: RuntimeSessionRecord) -> None:
        data = record.to_dict()
        self._execute(
            """
            INSERT OR IGNORE INTO runtime_sessions (
                session_id, device_key, equipment_label, started_at, ended_at,
                duration_seconds, start_temp_c, end_temp_c, heat_setpoint_c,
                cool_setpoint_c, discarded, abandoned
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                data["session_id"], data["device_id"], data["equipment_label"],
                data["started_at"], data["ended_at"], data["duration_seconds"],
                data["start_temp_c"], data["end_temp_c"], data["heat_setpoint_c"],
                data["cool_setpoint_c"], int(data["discarded"]), int(data["abandoned"]),
            ),
        )

    def close_session_record(self, session_id, ended_at, duration_seconds, end_temp_c=None,
                             discarded=False, abandoned=False) -> None:
        self._execute(
            """
            UPDATE runtime_sessions SET
                ended_at = ?,
                duration_seconds = ?,
                end_temp_c = COALESCE(?, end_temp_c),
                discarded = ?,
                abandoned = ?
            WHERE session_id = ?
            """,
            (ended_at.isoformat(), duration_seconds, end_temp_c, int(discarded), int(abandoned),
             session_id),
        )

    def get_device_state(self, device_id: str) -> DeviceSessionState | None:
        rows = self._execute(
            "SELECT state_json FROM device_status WHERE device_key = ?", (device_id,)
        )
        return DeviceSessionState.from_dict(json.loads(rows[0]["state_json"])) if rows else None

    def list_device_states(self) -> list[DeviceSessionState]:
        rows = self._execute("SELECT state_json FROM device_status ORDER BY device_key")
        return [DeviceSessionState.from_dict(json.loads(row["state_json"])) for row in rows]

    def list_sessions(self, device_id: str, limit: int = 50) -> list[RuntimeSessionRecord]:
        rows = self._execute(
            """
            SELECT * FROM runtime_sessions
            WHERE device_key = ?
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (device_id, limit),
        )
        records = []
        for row in rows:
            data = dict(row)
            data["device_id"] = data.pop("device_key")
            records.append(RuntimeSessionRecord.from_dict(data))
        return records

    def close(self) -> None:
        with self.lock:
            self._conn.close()


def create_store(database_path: str) -> SessionStore:
    """SQLite store when a path is configured, in-memory otherwise."""
    if database_path:
        return SqliteSessionStore(database_path)
    logger.warning("No database_path configured, session state is kept in memory only")
    return MemorySessionStore()
