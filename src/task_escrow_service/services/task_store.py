"""SQLite-backed task storage with nested, all-or-nothing transactions."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

from task_escrow_service.services.events import LedgerEvent, event_from_record
from task_escrow_service.services.models import Task, TaskStatus

if TYPE_CHECKING:
    from collections.abc import Iterator


class TaskStore:
    """
    Persistent state of the ledger: the task counter, task records, the
    custody balance and the event log.

    Mutations are only allowed inside transaction(). Transactions nest:
    each level is a SQLite SAVEPOINT, so a failing inner call rolls back
    only its own effects while a failing outer call rolls back everything
    done beneath it, including nested calls that had succeeded.

    Amounts are stored as decimal TEXT so they are not bounded by SQLite's
    64-bit INTEGER.
    """

    _TASK_COLUMNS_SQL = (
        "task_id, poster, worker, description, reward, status, "
        "created_at, accepted_at, completed_at"
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transaction boundaries are managed with explicit savepoints.
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._depth = 0
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id INTEGER PRIMARY KEY,
                    poster TEXT NOT NULL,
                    worker TEXT,
                    description TEXT NOT NULL,
                    reward TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    accepted_at TEXT,
                    completed_at TEXT
                );

                CREATE TABLE IF NOT EXISTS ledger_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS events (
                    seq INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    task_id INTEGER NOT NULL,
                    fields TEXT NOT NULL
                );

                INSERT OR IGNORE INTO ledger_meta (key, value) VALUES ('task_count', '0');
                INSERT OR IGNORE INTO ledger_meta (key, value) VALUES ('custody_balance', '0');
                """
            )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run the enclosed block as one atomic unit.

        On exception every change made inside the block (including nested
        transactions that already completed) is rolled back and the
        exception propagates.
        """
        with self._lock:
            savepoint = f"sp_{self._depth}"
            self._db.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                self._db.execute(f"ROLLBACK TO {savepoint}")
                self._db.execute(f"RELEASE {savepoint}")
                raise
            self._depth -= 1
            self._db.execute(f"RELEASE {savepoint}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def _require_transaction(self) -> None:
        if self._depth == 0:
            msg = "TaskStore mutations must run inside transaction()"
            raise RuntimeError(msg)

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def _get_meta(self, key: str) -> int:
        with self._lock:
            row = self._db.execute("SELECT value FROM ledger_meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            msg = f"Missing ledger metadata: {key}"
            raise RuntimeError(msg)
        return int(row["value"])

    def _set_meta(self, key: str, value: int) -> None:
        self._db.execute("UPDATE ledger_meta SET value = ? WHERE key = ?", (str(value), key))

    def task_count(self) -> int:
        """Number of tasks ever created; the next task id."""
        return self._get_meta("task_count")

    def custody_balance(self) -> int:
        """Total reward value currently held for non-terminal tasks."""
        return self._get_meta("custody_balance")

    def adjust_custody(self, delta: int) -> int:
        """Add delta to the custody balance and return the new balance."""
        with self._lock:
            self._require_transaction()
            balance = self.custody_balance() + delta
            if balance < 0:
                msg = "Custody balance cannot go negative"
                raise RuntimeError(msg)
            self._set_meta("custody_balance", balance)
            return balance

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            task_id=int(row["task_id"]),
            poster=row["poster"],
            worker=row["worker"],
            description=row["description"],
            reward=int(row["reward"]),
            status=TaskStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            accepted_at=_parse_optional(row["accepted_at"]),
            completed_at=_parse_optional(row["completed_at"]),
        )

    def _task_values(self, task: Task) -> tuple[Any, ...]:
        return (
            task.task_id,
            task.poster,
            task.worker,
            task.description,
            str(task.reward),
            task.status.value,
            task.created_at.isoformat(),
            _format_optional(task.accepted_at),
            _format_optional(task.completed_at),
        )

    def insert_task(self, task: Task) -> None:
        """Append a task. Its id must equal the current task count."""
        with self._lock:
            self._require_transaction()
            count = self.task_count()
            if task.task_id != count:
                msg = f"Task id {task.task_id} does not match next id {count}"
                raise ValueError(msg)
            self._db.execute(
                f"INSERT INTO tasks ({self._TASK_COLUMNS_SQL}) "  # nosec B608
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._task_values(task),
            )
            self._set_meta("task_count", count + 1)

    def update_task(self, task: Task) -> None:
        """Overwrite the stored record for task.task_id."""
        with self._lock:
            self._require_transaction()
            values = self._task_values(task)
            cursor = self._db.execute(
                "UPDATE tasks SET poster = ?, worker = ?, description = ?, reward = ?, "
                "status = ?, created_at = ?, accepted_at = ?, completed_at = ? "
                "WHERE task_id = ?",
                (*values[1:], values[0]),
            )
            if cursor.rowcount != 1:
                msg = f"Task {task.task_id} not found for update"
                raise RuntimeError(msg)

    def get_task(self, task_id: int) -> Task | None:
        """Fetch a task by id."""
        with self._lock:
            row = self._db.execute(
                f"SELECT {self._TASK_COLUMNS_SQL} FROM tasks WHERE task_id = ?",  # nosec B608
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def iter_tasks(self) -> list[Task]:
        """All tasks in ascending id order."""
        with self._lock:
            rows = self._db.execute(
                f"SELECT {self._TASK_COLUMNS_SQL} FROM tasks ORDER BY task_id"  # nosec B608
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_event(self, event: LedgerEvent) -> int:
        """Record an event and return its sequence number."""
        with self._lock:
            self._require_transaction()
            fields = event.fields()
            cursor = self._db.execute(
                "INSERT INTO events (name, task_id, fields) VALUES (?, ?, ?)",
                (event.name, event.task_id, json.dumps(fields, sort_keys=True)),
            )
            return int(cursor.lastrowid or 0)

    def event_count(self) -> int:
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM events").fetchone()
        return int(row[0]) if row is not None else 0

    def get_events(self, offset: int, limit: int | None) -> list[LedgerEvent]:
        """Events in emission order, skipping the first offset."""
        query = "SELECT name, fields FROM events ORDER BY seq LIMIT ? OFFSET ?"
        with self._lock:
            rows = self._db.execute(query, (-1 if limit is None else limit, offset)).fetchall()
        return [event_from_record(row["name"], json.loads(row["fields"])) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()


def _parse_optional(value: str | None) -> datetime | None:
    return None if value is None else datetime.fromisoformat(value)


def _format_optional(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()
