"""Durable SQLite storage for souls and the global pause flag."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Mapping, Optional, TypeVar

from .errors import SoulConflictError, SoulNotFoundError, StoreError
from .pause import PAUSE_FILE_NAME, PauseFlag
from .schema import (
    Bug,
    Feature,
    IterationKind,
    Soul,
    SoulFeedback,
    SoulIteration,
    SoulStatus,
    TestResult,
)

DEFAULT_DATA_DIR = Path("~/.soulloop")
DEFAULT_DB_NAME = "souls.db"
LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_SOUL_COLUMNS = (
    "id, name, project_path, objectives, requirements, status, feedback, "
    "iterations, created_at, updated_at"
)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    serialisable = default if data is None else data
    return json.dumps(serialisable, ensure_ascii=False)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class SoulStore:
    """SQLite-backed persistence for souls.

    A single store-wide lock serialises every call. The read-modify-write
    helpers (``update_objectives``, ``add_bug`` …) hold that lock for the whole
    fetch/mutate/save cycle, so two helpers touching the same soul cannot
    drop each other's writes. Callers that ``get`` and later ``update`` on their
    own get no such guarantee.
    """

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "soulloop" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        resolved = requested.expanduser().resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists():
            if resolved.exists() and os.access(resolved, os.R_OK):
                try:
                    shutil.copy2(resolved, fallback)
                except OSError:
                    fallback.touch(exist_ok=True)
            else:
                fallback.touch(exist_ok=True)
        if not cls._is_writable(fallback):
            raise StoreError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def __init__(
        self,
        db_path: Path | str = DEFAULT_DATA_DIR / DEFAULT_DB_NAME,
        *,
        pause_path: Path | str | None = None,
    ) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if self.db_path != requested_path.expanduser().resolve():
            LOGGER.warning(
                "Database path %s is not writable; using fallback %s",
                requested_path,
                self.db_path,
            )
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._bootstrap()
        if pause_path is None:
            pause_path = self.db_path.parent / PAUSE_FILE_NAME
        self.pause = PauseFlag(pause_path)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SoulStore":
        paths = config.get("paths") or {}
        data_path = Path(paths.get("data") or DEFAULT_DATA_DIR)
        db_path = paths.get("db_path") or data_path / DEFAULT_DB_NAME
        pause_path = paths.get("pause_file") or Path(db_path).expanduser().parent / PAUSE_FILE_NAME
        return cls(Path(db_path), pause_path=pause_path)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                finally:
                    self._conn = None

    def __enter__(self) -> "SoulStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        except sqlite3.Error as error:
            raise StoreError(f"Failed to open soul database {self.db_path}: {error}") from error
        connection.row_factory = sqlite3.Row
        return connection

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Soul store is closed")
        return self._conn

    def _bootstrap(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS souls (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                project_path TEXT NOT NULL UNIQUE,
                objectives TEXT NOT NULL,
                requirements TEXT NOT NULL,
                status TEXT NOT NULL,
                feedback TEXT NOT NULL,
                iterations TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_souls_project_path
                ON souls(project_path);
            CREATE INDEX IF NOT EXISTS idx_souls_status
                ON souls(status);
            """
        )
        self._db.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            connection = self._db
            try:
                yield connection
                connection.commit()
            except Exception:
                connection.rollback()
                raise

    # CRUD ----------------------------------------------------------------------------
    def create(self, soul: Soul) -> None:
        """Insert ``soul``; a second soul for the same project path is rejected."""
        try:
            with self._transaction() as connection:
                connection.execute(
                    f"""
                    INSERT INTO souls ({_SOUL_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        soul.id,
                        soul.name,
                        soul.project_path,
                        *self._serialise_body(soul),
                        _as_iso(soul.created_at),
                        _as_iso(soul.updated_at),
                    ),
                )
        except sqlite3.IntegrityError as error:
            raise SoulConflictError(
                f"A soul already exists for project path {soul.project_path} (id {soul.id})"
            ) from error
        except sqlite3.Error as error:
            raise StoreError(f"Failed to create soul {soul.id}: {error}") from error

    def update(self, soul: Soul) -> None:
        try:
            with self._transaction() as connection:
                cursor = connection.execute(
                    """
                    UPDATE souls
                    SET name = ?, project_path = ?, objectives = ?, requirements = ?,
                        status = ?, feedback = ?, iterations = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        soul.name,
                        soul.project_path,
                        *self._serialise_body(soul),
                        _as_iso(soul.updated_at),
                        soul.id,
                    ),
                )
                updated = cursor.rowcount
        except sqlite3.IntegrityError as error:
            raise SoulConflictError(
                f"A soul already exists for project path {soul.project_path}"
            ) from error
        except sqlite3.Error as error:
            raise StoreError(f"Failed to update soul {soul.id}: {error}") from error
        if updated == 0:
            raise SoulNotFoundError(f"Soul with ID {soul.id} not found")

    def get(self, soul_id: str) -> Soul:
        row = self._fetch_one(f"SELECT {_SOUL_COLUMNS} FROM souls WHERE id = ?", (soul_id,))
        if row is None:
            raise SoulNotFoundError(f"Soul with ID {soul_id} not found")
        return self._row_to_soul(row)

    def get_by_project_path(self, project_path: str) -> Soul:
        row = self._fetch_one(
            f"SELECT {_SOUL_COLUMNS} FROM souls WHERE project_path = ?",
            (project_path,),
        )
        if row is None:
            raise SoulNotFoundError(f"Soul for project path {project_path} not found")
        return self._row_to_soul(row)

    def list(self, *, status: Optional[SoulStatus] = None) -> List[Soul]:
        """Return souls, most recently updated first."""
        query = f"SELECT {_SOUL_COLUMNS} FROM souls"
        params: List[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(SoulStatus(status).value)
        query += " ORDER BY updated_at DESC, created_at DESC"
        with self._lock:
            try:
                rows = self._db.execute(query, params).fetchall()
            except sqlite3.Error as error:
                raise StoreError(f"Failed to list souls: {error}") from error
        return [self._row_to_soul(row) for row in rows]

    def delete(self, soul_id: str) -> None:
        try:
            with self._transaction() as connection:
                cursor = connection.execute("DELETE FROM souls WHERE id = ?", (soul_id,))
                deleted = cursor.rowcount
        except sqlite3.Error as error:
            raise StoreError(f"Failed to delete soul {soul_id}: {error}") from error
        if deleted == 0:
            raise SoulNotFoundError(f"Soul with ID {soul_id} not found")

    # Read-modify-write helpers -------------------------------------------------------
    def mutate(self, soul_id: str, mutator: Callable[[Soul], T]) -> T:
        """Fetch a soul, apply ``mutator`` and save it under the store lock."""
        with self._lock:
            soul = self.get(soul_id)
            outcome = mutator(soul)
            self.update(soul)
            return outcome

    def create_soul(
        self,
        project_path: str,
        *,
        name: Optional[str] = None,
        objectives: Iterable[str] = (),
        requirements: Iterable[str] = (),
    ) -> Soul:
        soul = Soul.new(project_path, name)
        for objective in objectives:
            if objective.strip():
                soul.add_objective(objective.strip())
        for requirement in requirements:
            if requirement.strip():
                soul.add_requirement(requirement.strip())
        self.create(soul)
        return soul

    def update_objectives(self, soul_id: str, objectives: List[str]) -> None:
        self.mutate(soul_id, lambda soul: soul.set_objectives(objectives))

    def update_requirements(self, soul_id: str, requirements: List[str]) -> None:
        self.mutate(soul_id, lambda soul: soul.set_requirements(requirements))

    def set_status(self, soul_id: str, status: SoulStatus) -> None:
        self.mutate(soul_id, lambda soul: soul.set_status(status))

    def start_iteration(
        self,
        soul_id: str,
        agent_id: str,
        purpose: str,
        kind: IterationKind = IterationKind.DEVELOPMENT,
    ) -> SoulIteration:
        iteration = self.mutate(soul_id, lambda soul: soul.start_iteration(agent_id, purpose, kind))
        return iteration.model_copy(deep=True)

    def complete_iteration(self, soul_id: str, agent_id: str, result: str) -> Optional[SoulIteration]:
        iteration = self.mutate(soul_id, lambda soul: soul.complete_iteration(agent_id, result))
        return iteration.model_copy(deep=True) if iteration is not None else None

    def add_bug(self, soul_id: str, bug: Bug) -> None:
        self.mutate(soul_id, lambda soul: soul.add_bug(bug))

    def add_test_result(self, soul_id: str, result: TestResult) -> None:
        self.mutate(soul_id, lambda soul: soul.add_test_result(result))

    def record_feedback(
        self,
        soul_id: str,
        *,
        features: Iterable[Feature] = (),
        bugs: Iterable[Bug] = (),
        test_results: Iterable[TestResult] = (),
    ) -> None:
        """Append a batch of extracted facts in a single write."""

        def _apply(soul: Soul) -> None:
            for feature in features:
                soul.add_implemented_feature(feature)
            for bug in bugs:
                soul.add_bug(bug)
            for result in test_results:
                soul.add_test_result(result)

        self.mutate(soul_id, _apply)

    # Pause flag ----------------------------------------------------------------------
    def is_paused(self) -> bool:
        return self.pause.is_paused()

    def set_paused(self, paused: bool) -> None:
        self.pause.set_paused(paused)

    def toggle_pause(self) -> bool:
        return self.pause.toggle()

    # Internals -----------------------------------------------------------------------
    def _fetch_one(self, query: str, params: tuple[Any, ...]) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self._db.execute(query, params).fetchone()
            except sqlite3.Error as error:
                raise StoreError(f"Failed to query souls: {error}") from error

    @staticmethod
    def _serialise_body(soul: Soul) -> tuple[str, str, str, str, str]:
        return (
            _dump_json(soul.objectives, default=[]),
            _dump_json(soul.requirements, default=[]),
            soul.status.value,
            _dump_json(soul.feedback.model_dump(mode="json"), default={}),
            _dump_json([item.model_dump(mode="json") for item in soul.iterations], default=[]),
        )

    @staticmethod
    def _row_to_soul(row: sqlite3.Row) -> Soul:
        return Soul(
            id=row["id"],
            name=row["name"],
            project_path=row["project_path"],
            objectives=_load_json(row["objectives"], default=[]),
            requirements=_load_json(row["requirements"], default=[]),
            status=SoulStatus(row["status"]),
            feedback=SoulFeedback.model_validate(_load_json(row["feedback"], default={})),
            iterations=[
                SoulIteration.model_validate(item)
                for item in _load_json(row["iterations"], default=[])
            ],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )


__all__ = [
    "DEFAULT_DATA_DIR",
    "SoulConflictError",
    "SoulNotFoundError",
    "SoulStore",
    "StoreError",
]
