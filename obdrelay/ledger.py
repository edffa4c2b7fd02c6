from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, TypeVar


logger = logging.getLogger("obdrelay.ledger")

SCHEMA_SQL = (
    """
CREATE TABLE IF NOT EXISTS data_records (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  key TEXT NOT NULL,
  value TEXT NOT NULL,
  timestamp INTEGER NOT NULL,
  sent INTEGER NOT NULL DEFAULT 0
);
""",
    "CREATE INDEX IF NOT EXISTS idx_data_records_timestamp ON data_records(timestamp);",
    "CREATE INDEX IF NOT EXISTS idx_data_records_sent ON data_records(sent);",
)

_T = TypeVar("_T")

_CORRUPTION_MARKERS = (
    "database disk image is malformed",
    "malformed database schema",
    "file is not a database",
    "not a database",
    "database corrupt",
)

_ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
_ALLOWED_SYNCHRONOUS = {"OFF", "NORMAL", "FULL", "EXTRA"}

_COLUMNS = "id, key, value, timestamp, sent"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class LedgerRecord:
    id: int
    key: str
    value: str
    timestamp: int
    sent: bool


class SqliteLedger:
    """Audit trail of every sample handed to the publisher.

    Records start unsent and are flagged sent only after a confirmed publish.
    Sent records older than the retention window are purge-eligible. Timestamps
    are epoch milliseconds.
    """

    def __init__(
        self,
        path: str,
        *,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
        recover_corruption: bool = True,
    ) -> None:
        self.path = Path(path)
        self.journal_mode = self._normalize_pragma(
            "journal_mode",
            journal_mode,
            allowed=_ALLOWED_JOURNAL_MODES,
            default="WAL",
        )
        self.synchronous = self._normalize_pragma(
            "synchronous",
            synchronous,
            allowed=_ALLOWED_SYNCHRONOUS,
            default="NORMAL",
        )
        self.recover_corruption = bool(recover_corruption)
        self._init_db(allow_recovery=True)

    @staticmethod
    def _normalize_pragma(name: str, value: str, *, allowed: set[str], default: str) -> str:
        candidate = (value or "").strip().upper()
        if candidate in allowed:
            return candidate
        logger.warning("invalid %s=%r; using %s", name, value, default)
        return default

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        conn.execute(f"PRAGMA synchronous={self.synchronous}")
        return conn

    def _create_schema(self) -> None:
        with self._conn() as conn:
            for stmt in SCHEMA_SQL:
                conn.execute(stmt)
            conn.commit()

    def _init_db(self, *, allow_recovery: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create_schema()
        except sqlite3.DatabaseError as exc:
            if allow_recovery and self._is_corruption_error(exc) and self._recover_from_corruption():
                self._create_schema()
                return
            raise

    @staticmethod
    def _is_corruption_error(exc: BaseException) -> bool:
        text = str(exc).strip().lower()
        return any(marker in text for marker in _CORRUPTION_MARKERS)

    def _corrupt_backup_path(self, source: Path, *, stamp: str) -> Path:
        base = source.with_name(f"{source.name}.corrupt-{stamp}")
        if not base.exists():
            return base
        idx = 1
        while True:
            candidate = source.with_name(f"{source.name}.corrupt-{stamp}-{idx}")
            if not candidate.exists():
                return candidate
            idx += 1

    def _recover_from_corruption(self) -> bool:
        if not self.recover_corruption:
            return False

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        moved: list[Path] = []
        for source in (
            self.path,
            self.path.with_name(f"{self.path.name}-wal"),
            self.path.with_name(f"{self.path.name}-shm"),
        ):
            if not source.exists():
                continue
            target = self._corrupt_backup_path(source, stamp=stamp)
            try:
                source.replace(target)
            except OSError as exc:
                logger.error("failed to move corrupt ledger file %s: %r", source, exc)
                return False
            moved.append(target)

        if moved:
            logger.warning("detected ledger corruption; moved files: %s", ", ".join(str(p) for p in moved))

        try:
            self._init_db(allow_recovery=False)
        except sqlite3.Error as exc:
            logger.error("failed to reinitialize ledger after corruption: %r", exc)
            return False
        return True

    def _run_db(self, fn: Callable[[sqlite3.Connection], _T], *, fallback: _T) -> _T:
        try:
            with self._conn() as conn:
                return fn(conn)
        except sqlite3.DatabaseError as exc:
            if self._is_corruption_error(exc) and self._recover_from_corruption():
                try:
                    with self._conn() as conn:
                        return fn(conn)
                except sqlite3.Error as retry_exc:
                    logger.error("ledger operation failed after recovery: %r", retry_exc)
                    return fallback
            logger.error("ledger database error: %r", exc)
            return fallback
        except sqlite3.Error as exc:
            logger.error("ledger sqlite error: %r", exc)
            return fallback

    @staticmethod
    def _to_record(row: tuple) -> LedgerRecord:
        record_id, key, value, timestamp, sent = row
        return LedgerRecord(
            id=int(record_id),
            key=str(key),
            value=str(value),
            timestamp=int(timestamp),
            sent=int(sent) == 1,
        )

    def insert_record(self, key: str, value: str, timestamp: int | None = None) -> int | None:
        """Record a sample as unsent. Returns its id, or None if the write failed."""

        ts = now_ms() if timestamp is None else int(timestamp)

        def _op(conn: sqlite3.Connection) -> int | None:
            cur = conn.execute(
                "INSERT INTO data_records(key, value, timestamp, sent) VALUES(?,?,?,0)",
                (key, value, ts),
            )
            conn.commit()
            return int(cur.lastrowid) if cur.lastrowid is not None else None

        return self._run_db(_op, fallback=None)

    def unsent_records(self, limit: int | None = None) -> List[LedgerRecord]:
        def _op(conn: sqlite3.Connection) -> List[LedgerRecord]:
            sql = f"SELECT {_COLUMNS} FROM data_records WHERE sent = 0 ORDER BY timestamp ASC, id ASC"
            params: tuple = ()
            if limit is not None:
                sql += " LIMIT ?"
                params = (max(0, int(limit)),)
            return [self._to_record(row) for row in conn.execute(sql, params).fetchall()]

        return self._run_db(_op, fallback=[])

    def records_by_time_range(
        self,
        start_ms: int,
        end_ms: int,
        *,
        unsent_only: bool = False,
    ) -> List[LedgerRecord]:
        def _op(conn: sqlite3.Connection) -> List[LedgerRecord]:
            sql = f"SELECT {_COLUMNS} FROM data_records WHERE timestamp >= ? AND timestamp <= ?"
            if unsent_only:
                sql += " AND sent = 0"
            sql += " ORDER BY timestamp ASC, id ASC"
            rows = conn.execute(sql, (int(start_ms), int(end_ms))).fetchall()
            return [self._to_record(row) for row in rows]

        return self._run_db(_op, fallback=[])

    def mark_sent(self, record_ids: int | Iterable[int]) -> int:
        ids = [int(record_ids)] if isinstance(record_ids, int) else [int(i) for i in record_ids]
        if not ids:
            return 0

        def _op(conn: sqlite3.Connection) -> int:
            updated = 0
            for record_id in ids:
                cur = conn.execute("UPDATE data_records SET sent = 1 WHERE id = ?", (record_id,))
                updated += int(cur.rowcount or 0)
            conn.commit()
            return updated

        return int(self._run_db(_op, fallback=0))

    def delete_old_sent(self, older_than_ms: int) -> int:
        def _op(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                "DELETE FROM data_records WHERE sent = 1 AND timestamp < ?",
                (int(older_than_ms),),
            )
            conn.commit()
            return int(cur.rowcount or 0)

        return int(self._run_db(_op, fallback=0))

    def count(self) -> int:
        def _op(conn: sqlite3.Connection) -> int:
            (n,) = conn.execute("SELECT COUNT(*) FROM data_records").fetchone()
            return int(n)

        return int(self._run_db(_op, fallback=0))

    def unsent_count(self) -> int:
        def _op(conn: sqlite3.Connection) -> int:
            (n,) = conn.execute("SELECT COUNT(*) FROM data_records WHERE sent = 0").fetchone()
            return int(n)

        return int(self._run_db(_op, fallback=0))

    def clear(self) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM data_records")
            conn.commit()

        self._run_db(_op, fallback=None)
        logger.info("ledger cleared")

    def metrics(self) -> Dict[str, int]:
        return {
            "ledger_records": self.count(),
            "ledger_unsent": self.unsent_count(),
        }
