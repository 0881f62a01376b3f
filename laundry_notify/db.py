"""
Laundry-notify database layer: SQLite-backed storage for users, cycles, registrations.

Design principles:
- Cycles and registrations are never deleted (fulfilled rows are history)
- Uniqueness rules in the schema back up every idempotency decision
- One transaction per message or request; nested store calls join it
- WAL mode for concurrent reads during writes
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Tuple, Union

from laundry_notify.errors import (
    ConflictError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from laundry_notify.models import (
    Cycle,
    MachineType,
    Registration,
    User,
    from_rfc3339,
    now_utc,
    to_rfc3339,
)

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]
MachineLike = Union[MachineType, str]

SEARCH_PAGE_SIZE = 5


MIGRATIONS: List[Tuple[str, str]] = [
    ("0001_initial", """
CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE CHECK(length(name) > 0),
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_created ON users(created_at);

CREATE TABLE IF NOT EXISTS cycles (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  type TEXT NOT NULL CHECK(type IN ('washer', 'dryer')),
  started_at TEXT NOT NULL,
  finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_cycles_type_started ON cycles(type, started_at);

CREATE TABLE IF NOT EXISTS registrations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL,
  cycle_id INTEGER,
  type TEXT NOT NULL CHECK(type IN ('washer', 'dryer')),
  created_at TEXT NOT NULL,
  FOREIGN KEY(user_id) REFERENCES users(id),
  FOREIGN KEY(cycle_id) REFERENCES cycles(id)
);

CREATE INDEX IF NOT EXISTS idx_reg_cycle ON registrations(cycle_id);
CREATE INDEX IF NOT EXISTS idx_reg_type_pending ON registrations(type, created_at)
  WHERE cycle_id IS NULL;
"""),
    ("0002_uniqueness", """
CREATE UNIQUE INDEX IF NOT EXISTS uq_cycles_one_open ON cycles(type)
  WHERE finished_at IS NULL;

CREATE UNIQUE INDEX IF NOT EXISTS uq_reg_pending ON registrations(user_id, type)
  WHERE cycle_id IS NULL;

CREATE UNIQUE INDEX IF NOT EXISTS uq_reg_attached ON registrations(user_id, type, cycle_id)
  WHERE cycle_id IS NOT NULL;
"""),
]


def _machine(value: Optional[MachineLike]) -> MachineType:
    if isinstance(value, MachineType):
        return value
    if not value:
        raise ValidationError("machine type required")
    return MachineType.parse(value)


def _ts(value: Optional[str]) -> Optional[datetime]:
    return from_rfc3339(value) if value else None


def _cycle(row: sqlite3.Row) -> Cycle:
    return Cycle(
        id=int(row["id"]),
        machine_type=MachineType(row["type"]),
        started_at=from_rfc3339(row["started_at"]),
        finished_at=_ts(row["finished_at"]),
    )


def _user(row: sqlite3.Row) -> User:
    return User(
        id=int(row["id"]),
        name=row["name"],
        created_at=from_rfc3339(row["created_at"]),
    )


def _registration(row: sqlite3.Row) -> Registration:
    cycle_id = row["cycle_id"]
    return Registration(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        machine_type=MachineType(row["type"]),
        cycle_id=int(cycle_id) if cycle_id is not None else None,
        created_at=from_rfc3339(row["created_at"]),
    )


class Database:
    """
    SQLite handle shared by the stores.

    Connection-per-transaction; the connection of the transaction running
    on the current thread is reused by every store call made inside it, so
    a whole message-handling step commits or rolls back as one unit.
    """

    def __init__(self, db_path: str, now: Clock = now_utc) -> None:
        self.db_path = db_path
        self.now = now
        self._local = threading.local()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=30,
            check_same_thread=False,
            isolation_level=None,  # explicit BEGIN/COMMIT only
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        """Apply pending schema migrations. Safe to call on every boot."""
        try:
            with self._conn() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS migrations (name TEXT PRIMARY KEY)"
                )
                done = {
                    r["name"] for r in conn.execute("SELECT name FROM migrations")
                }
                for name, sql in MIGRATIONS:
                    if name in done:
                        continue
                    log.debug("applying migration %s", name)
                    conn.executescript(
                        f"BEGIN;\n{sql}\nINSERT INTO migrations (name) VALUES ('{name}');\nCOMMIT;"
                    )
        except sqlite3.Error as e:
            raise StoreError(f"cannot initialize database {self.db_path}: {e}") from e

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "conn", None) is not None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a read-then-write step atomically.

        BEGIN IMMEDIATE takes the write lock up front so concurrent steps
        (bus processor, web requests) serialize instead of interleaving.
        sqlite3 errors surface as StoreError, uniqueness violations as
        ConflictError.
        """
        outer = getattr(self._local, "conn", None)
        if outer is not None:
            try:
                yield outer
            except sqlite3.IntegrityError as e:
                raise ConflictError(str(e)) from e
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e
            return

        try:
            with self._conn() as conn:
                conn.execute("BEGIN IMMEDIATE")
                self._local.conn = conn
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                else:
                    conn.execute("COMMIT")
                finally:
                    self._local.conn = None
        except sqlite3.IntegrityError as e:
            raise ConflictError(str(e)) from e
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Connection for read-only queries; joins a running transaction."""
        outer = getattr(self._local, "conn", None)
        if outer is not None:
            yield outer
            return
        try:
            with self._conn() as conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e


class CycleStore:
    """Owns cycle rows."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, cycle_id: int) -> Cycle:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM cycles WHERE id = ?", (cycle_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"cycle not found: {cycle_id}")
        return _cycle(row)

    def find_most_recent(self, machine_type: MachineLike) -> Optional[Cycle]:
        """Most recently started cycle of a type, open or finished."""
        mt = _machine(machine_type)
        with self.db.read() as conn:
            row = conn.execute(
                """SELECT * FROM cycles
                   WHERE type = ?
                   ORDER BY started_at DESC, id DESC
                   LIMIT 1""",
                (mt.value,),
            ).fetchone()
        return _cycle(row) if row else None

    def find_open(self, machine_type: MachineLike) -> Optional[Cycle]:
        mt = _machine(machine_type)
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM cycles WHERE type = ? AND finished_at IS NULL",
                (mt.value,),
            ).fetchone()
        return _cycle(row) if row else None

    def list_recent(self, limit: int = 10) -> List[Cycle]:
        """Recent cycles of all types, newest start first."""
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM cycles ORDER BY started_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_cycle(r) for r in rows]

    def create(
        self, machine_type: Optional[MachineLike], started_at: Optional[datetime]
    ) -> Cycle:
        """Open a new cycle. The schema refuses a second open cycle per type."""
        mt = _machine(machine_type)
        if started_at is None:
            raise ValidationError("cycle start time required")
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO cycles (type, started_at, finished_at) VALUES (?, ?, NULL)",
                (mt.value, to_rfc3339(started_at)),
            )
            cycle_id = int(cursor.lastrowid or 0)
        return Cycle(id=cycle_id, machine_type=mt, started_at=started_at)

    def mark_finished(self, cycle_id: int, finished_at: Optional[datetime]) -> Cycle:
        if finished_at is None:
            raise ValidationError("cycle finish time required")
        with self.db.transaction() as conn:
            cycle = self.get(cycle_id)
            if cycle.is_finished:
                raise ValidationError(f"cycle {cycle_id} already finished")
            if finished_at < cycle.started_at:
                raise ValidationError(
                    f"cycle {cycle_id} cannot finish before it started"
                )
            conn.execute(
                "UPDATE cycles SET finished_at = ? WHERE id = ?",
                (to_rfc3339(finished_at), cycle_id),
            )
        return Cycle(
            id=cycle.id,
            machine_type=cycle.machine_type,
            started_at=cycle.started_at,
            finished_at=finished_at,
        )


class UserStore:
    """Owns user rows. Names are unique."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, user_id: int) -> User:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"user not found: {user_id}")
        return _user(row)

    def find_by_name(self, name: str) -> Optional[User]:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE name = ?", (name,)
            ).fetchone()
        return _user(row) if row else None

    def create(self, name: str) -> User:
        """Create a user. Raises ConflictError if the name is taken."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("user name required")
        created_at = self.db.now()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO users (name, created_at) VALUES (?, ?)",
                (name, to_rfc3339(created_at)),
            )
            user_id = int(cursor.lastrowid or 0)
        return User(id=user_id, name=name, created_at=created_at)

    def search(self, name_prefix: str = "", limit: int = SEARCH_PAGE_SIZE) -> List[User]:
        """Users whose name starts with the prefix, most recent first."""
        prefix = (name_prefix or "").strip()
        escaped = (
            prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        )
        with self.db.read() as conn:
            rows = conn.execute(
                """SELECT * FROM users
                   WHERE name LIKE ? ESCAPE '\\'
                   ORDER BY created_at DESC, id DESC
                   LIMIT ?""",
                (escaped + "%", limit),
            ).fetchall()
        return [_user(r) for r in rows]


class RegistrationStore:
    """Owns registration rows."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, registration_id: int) -> Registration:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM registrations WHERE id = ?", (registration_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"registration not found: {registration_id}")
        return _registration(row)

    def find_pending_for_type(self, machine_type: MachineLike) -> List[Registration]:
        """Registrations waiting for the next cycle, first registered first."""
        mt = _machine(machine_type)
        with self.db.read() as conn:
            rows = conn.execute(
                """SELECT * FROM registrations
                   WHERE type = ? AND cycle_id IS NULL
                   ORDER BY created_at ASC, id ASC""",
                (mt.value,),
            ).fetchall()
        return [_registration(r) for r in rows]

    def find_outstanding_for_user(
        self, user_name: str, machine_type: MachineLike
    ) -> List[Registration]:
        """Pending registrations plus those attached to a still-open cycle."""
        mt = _machine(machine_type)
        with self.db.read() as conn:
            rows = conn.execute(
                """SELECT r.* FROM registrations r
                   JOIN users u ON u.id = r.user_id
                   LEFT JOIN cycles c ON c.id = r.cycle_id
                   WHERE u.name = ? AND r.type = ?
                     AND (r.cycle_id IS NULL OR c.finished_at IS NULL)
                   ORDER BY r.created_at DESC, r.id DESC""",
                (user_name, mt.value),
            ).fetchall()
        return [_registration(r) for r in rows]

    def find_for_cycle(self, cycle_id: int) -> List[Registration]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM registrations WHERE cycle_id = ? ORDER BY id",
                (cycle_id,),
            ).fetchall()
        return [_registration(r) for r in rows]

    def find_recipients_for_cycle(self, cycle_id: int) -> List[str]:
        """Distinct names of users attached to a cycle, in registration order."""
        with self.db.read() as conn:
            rows = conn.execute(
                """SELECT u.name AS name, MIN(r.id) AS first_id
                   FROM registrations r
                   JOIN users u ON u.id = r.user_id
                   WHERE r.cycle_id = ?
                   GROUP BY u.name
                   ORDER BY first_id""",
                (cycle_id,),
            ).fetchall()
        return [r["name"] for r in rows]

    def create(
        self,
        user_id: int,
        machine_type: Optional[MachineLike],
        cycle_id: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> Registration:
        if not user_id or user_id <= 0:
            raise ValidationError("user id required")
        mt = _machine(machine_type)
        created_at = created_at or self.db.now()
        if created_at is None:
            raise ValidationError("registration creation time required")
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO registrations (user_id, cycle_id, type, created_at)
                   VALUES (?, ?, ?, ?)""",
                (user_id, cycle_id, mt.value, to_rfc3339(created_at)),
            )
            reg_id = int(cursor.lastrowid or 0)
        return Registration(
            id=reg_id,
            user_id=user_id,
            machine_type=mt,
            cycle_id=cycle_id,
            created_at=created_at,
        )

    def attach_cycle(self, registration_id: int, cycle_id: int) -> Registration:
        with self.db.transaction() as conn:
            reg = self.get(registration_id)
            conn.execute(
                "UPDATE registrations SET cycle_id = ? WHERE id = ?",
                (cycle_id, registration_id),
            )
        return Registration(
            id=reg.id,
            user_id=reg.user_id,
            machine_type=reg.machine_type,
            cycle_id=cycle_id,
            created_at=reg.created_at,
        )
