from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from notewallet.api.logging_config import get_logger

logger = get_logger("database.storage")

DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv(
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
"""


class StorageError(Exception):
    """Backend unavailable, locked or corrupt."""


class Storage(Protocol):
    """String key/value persistence shared by every NoteStore on the same data."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> List[str]: ...

    def change_token(self) -> int:
        """Changes when someone *else* wrote since this handle last looked."""
        ...


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ---------- sqlite ----------
class SqliteStorage:
    """
    Single `kv` table in WAL mode.

    One long-lived connection per instance: `PRAGMA data_version` only moves
    for commits made through other connections, which is what
    change_token() needs to report.
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._cx: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _conn(self) -> sqlite3.Connection:
        if self._cx is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                cx = sqlite3.connect(
                    self.db_path, timeout=self.timeout, isolation_level=None, check_same_thread=False
                )
                cx.executescript(DDL)
            except (sqlite3.Error, OSError) as e:
                raise StorageError(f"Cannot open {self.db_path}: {e}") from e
            self._cx = cx
        return self._cx

    def _run(self, sql: str, params: tuple = ()) -> List[tuple]:
        with self._lock:
            try:
                return self._conn().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"{self.db_path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        rows = self._run("SELECT value FROM kv WHERE key=?", (key,))
        return rows[0][0] if rows else None

    def set(self, key: str, value: str) -> None:
        self._run(
            "INSERT INTO kv(key,value,updated_at) VALUES(?,?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
            (key, value, _now()),
        )

    def delete(self, key: str) -> None:
        self._run("DELETE FROM kv WHERE key=?", (key,))

    def keys(self, prefix: str = "") -> List[str]:
        rows = self._run(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key", (len(prefix), prefix)
        )
        return [r[0] for r in rows]

    def change_token(self) -> int:
        rows = self._run("PRAGMA data_version")
        return int(rows[0][0])

    def close(self) -> None:
        with self._lock:
            if self._cx is not None:
                self._cx.close()
                self._cx = None


# ---------- memory ----------
class _Backing:
    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.version = 0


class MemoryStorage:
    """
    Dict-backed storage. `connect()` hands out another handle on the same
    data, with data_version-like change tracking per handle.
    """

    def __init__(self, _backing: Optional[_Backing] = None):
        self._b = _backing or _Backing()
        self._own_writes = 0

    def connect(self) -> "MemoryStorage":
        return MemoryStorage(self._b)

    def _bump(self) -> None:
        self._b.version += 1
        self._own_writes += 1

    def get(self, key: str) -> Optional[str]:
        return self._b.data.get(key)

    def set(self, key: str, value: str) -> None:
        self._b.data[key] = value
        self._bump()

    def delete(self, key: str) -> None:
        if self._b.data.pop(key, None) is not None:
            self._bump()

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._b.data if k.startswith(prefix))

    def change_token(self) -> int:
        return self._b.version - self._own_writes


__all__ = ["StorageError", "Storage", "SqliteStorage", "MemoryStorage"]
