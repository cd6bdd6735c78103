"""
Transition store for the Document Workflow engine.

Persists one record per execution (identity, document reference, status) and
its append-only audit trail of transition records. The audit trail is what
makes crash recovery possible: replaying the recorded segments rebuilds the
execution context, and the last record names the state to resume at.

Classes:
    TransitionStore: Abstract async store interface.
    InMemoryTransitionStore: Process-local store, used for tests and embedding.
    SQLiteTransitionStore: Durable store on SQLite in WAL mode.

Typical usage example:
    store = SQLiteTransitionStore(db_path="./data/executions.db")
    await store.create("EXE-1", document)
    await store.append("EXE-1", record)
    execution_record = await store.load("EXE-1")
"""

import asyncio
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..models.data_structures import (
    Document,
    ExecutionRecord,
    ExecutionStatus,
    TransitionRecord,
)
from ..utils.error_handlers import ExecutionNotFound, PersistenceError
from ..utils.file_utils import ensure_directory

logger = logging.getLogger(__name__)


# Constants
DEFAULT_CONNECTION_TIMEOUT: float = 30.0


class TransitionStore(ABC):
    """Append-only store of execution records keyed by execution id."""

    @abstractmethod
    async def create(self, execution_id: str, document: Document) -> None:
        """Create the record of a new, running execution.

        Raises:
            PersistenceError: If the execution id already exists.
        """
        pass

    @abstractmethod
    async def append(self, execution_id: str, record: TransitionRecord) -> None:
        """Append a transition record to the execution's history.

        Raises:
            ExecutionNotFound: If the execution was never created.
        """
        pass

    @abstractmethod
    async def set_status(self, execution_id: str, status: ExecutionStatus) -> None:
        """Update the execution status.

        Raises:
            ExecutionNotFound: If the execution was never created.
        """
        pass

    @abstractmethod
    async def load(self, execution_id: str) -> Optional[ExecutionRecord]:
        """Return the execution record with its full history, or None."""
        pass

    @abstractmethod
    async def list_ids(self, status: Optional[ExecutionStatus] = None) -> List[str]:
        """Return execution ids in creation order, optionally by status."""
        pass

    async def close(self) -> None:
        """Release resources held by the store."""
        pass


class InMemoryTransitionStore(TransitionStore):
    """Transition store kept in process memory.

    Records are frozen dataclasses, so handing them out cannot alter the
    stored history.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, Dict[str, Any]] = {}

    async def create(self, execution_id: str, document: Document) -> None:
        if execution_id in self._executions:
            raise PersistenceError(
                f"Execution already exists: {execution_id}",
                execution_id=execution_id,
                operation="create",
                recoverable=False,
            )
        self._executions[execution_id] = {
            "document": document,
            "status": ExecutionStatus.RUNNING,
            "history": [],
        }

    def _entry(self, execution_id: str) -> Dict[str, Any]:
        entry = self._executions.get(execution_id)
        if entry is None:
            raise ExecutionNotFound(execution_id)
        return entry

    async def append(self, execution_id: str, record: TransitionRecord) -> None:
        self._entry(execution_id)["history"].append(record)

    async def set_status(self, execution_id: str, status: ExecutionStatus) -> None:
        self._entry(execution_id)["status"] = status

    async def load(self, execution_id: str) -> Optional[ExecutionRecord]:
        entry = self._executions.get(execution_id)
        if entry is None:
            return None
        document: Document = entry["document"]
        return ExecutionRecord(
            execution_id=execution_id,
            document_ref=document.location,
            status=entry["status"],
            history=tuple(entry["history"]),
            document=document.to_dict(),
        )

    async def list_ids(self, status: Optional[ExecutionStatus] = None) -> List[str]:
        return [
            execution_id
            for execution_id, entry in self._executions.items()
            if status is None or entry["status"] is status
        ]


class SQLiteTransitionStore(TransitionStore):
    """
    Transition store on SQLite.

    Thread Safety:
        Blocking SQLite calls run in worker threads via ``asyncio.to_thread``.
        Each worker thread keeps its own connection (thread-local), and WAL
        mode lets readers proceed while another thread writes. Appends
        compute the sequence number inside the INSERT statement, so each
        append is a single atomic write.

    Attributes:
        db_path: Path to the SQLite database file.
        schema_path: Path to the SQL schema definition file.

    Raises:
        PersistenceError: For all database operation failures.
    """

    _SQL_INSERT_EXECUTION = """
        INSERT INTO executions (
            execution_id, document_ref, document_json, status,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?)
    """

    _SQL_INSERT_TRANSITION = """
        INSERT INTO transitions (
            execution_id, seq, state, entered_at, input_snapshot,
            output_snapshot, error, segment, next_state
        )
        SELECT ?, COALESCE(MAX(seq), -1) + 1, ?, ?, ?, ?, ?, ?, ?
        FROM transitions WHERE execution_id = ?
    """

    _SQL_UPDATE_STATUS = """
        UPDATE executions SET status = ?, updated_at = ? WHERE execution_id = ?
    """

    def __init__(self, db_path: str, schema_path: Optional[str] = None) -> None:
        """
        Initialize the store and create the schema.

        Args:
            db_path: Path to SQLite database file. Parent directories will be
                created if they don't exist.
            schema_path: Optional path to schema SQL file. Defaults to
                schema.sql next to this module.

        Raises:
            PersistenceError: If the schema cannot be applied.
        """
        self.db_path: str = db_path
        self.schema_path: str = schema_path or str(Path(__file__).parent / "schema.sql")

        self._local: threading.local = threading.local()
        self._lock: threading.Lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []

        ensure_directory(str(Path(db_path).parent))
        self.initialize_database()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get or create the calling thread's connection.

        Raises:
            PersistenceError: If connection cannot be established.
        """
        connection = getattr(self._local, "connection", None)
        if connection is None:
            try:
                # Connections are closed from the event loop thread in close()
                connection = sqlite3.connect(
                    self.db_path,
                    timeout=DEFAULT_CONNECTION_TIMEOUT,
                    check_same_thread=False,
                )
                connection.execute("PRAGMA foreign_keys = ON")

                cursor = connection.execute("PRAGMA journal_mode = WAL")
                mode = cursor.fetchone()[0]
                if mode.upper() != "WAL":
                    logger.warning(f"Failed to enable WAL mode, using {mode} instead")

                connection.execute("PRAGMA synchronous = NORMAL")
                connection.row_factory = sqlite3.Row
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Failed to connect to database: {e}",
                    operation="connect",
                    original_error=e,
                ) from e

            self._local.connection = connection
            with self._lock:
                self._connections.append(connection)
        return connection

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions.

        Yields:
            sqlite3.Connection: Database connection with active transaction.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def initialize_database(self) -> None:
        """
        Create tables and indexes from the schema file (idempotent).

        Raises:
            PersistenceError: If the schema file is missing or fails.
        """
        try:
            with open(self.schema_path, "r", encoding="utf-8") as f:
                schema_sql = f.read()

            with self._lock:
                conn = sqlite3.connect(self.db_path, timeout=DEFAULT_CONNECTION_TIMEOUT)
                try:
                    conn.executescript(schema_sql)
                    conn.commit()
                finally:
                    conn.close()
            logger.info(f"Transition store initialized: {self.db_path}")
        except FileNotFoundError as e:
            raise PersistenceError(
                f"Schema file not found: {self.schema_path}",
                operation="initialize",
                recoverable=False,
                original_error=e,
            ) from e
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to initialize database: {e}",
                operation="initialize",
                original_error=e,
            ) from e

    @staticmethod
    def _dumps(value: Any, operation: str, execution_id: str) -> Optional[str]:
        if value is None:
            return None
        try:
            return json.dumps(value)
        except (TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to serialize {operation} payload: {e}",
                execution_id=execution_id,
                operation=operation,
                recoverable=False,
                original_error=e,
            ) from e

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    # Synchronous operations, run in worker threads

    def _create_sync(self, execution_id: str, document: Document) -> None:
        document_json = self._dumps(document.to_dict(), "create", execution_id)
        now = self._now()
        try:
            with self._transaction() as conn:
                conn.execute(
                    self._SQL_INSERT_EXECUTION,
                    (
                        execution_id,
                        document.location,
                        document_json,
                        ExecutionStatus.RUNNING.value,
                        now,
                        now,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise PersistenceError(
                f"Execution already exists: {execution_id}",
                execution_id=execution_id,
                operation="create",
                recoverable=False,
                original_error=e,
            ) from e
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to create execution: {e}",
                execution_id=execution_id,
                operation="create",
                original_error=e,
            ) from e

    def _ensure_exists(self, conn: sqlite3.Connection, execution_id: str) -> None:
        row = conn.execute(
            "SELECT 1 FROM executions WHERE execution_id = ?", (execution_id,)
        ).fetchone()
        if row is None:
            raise ExecutionNotFound(execution_id)

    def _append_sync(self, execution_id: str, record: TransitionRecord) -> None:
        data = record.to_dict()
        params = (
            execution_id,
            data["state"],
            data["entered_at"],
            self._dumps(data["input_snapshot"], "append", execution_id),
            self._dumps(data["output_snapshot"], "append", execution_id),
            self._dumps(data["error"], "append", execution_id),
            data["segment"],
            data["next_state"],
            execution_id,
        )
        try:
            with self._transaction() as conn:
                self._ensure_exists(conn, execution_id)
                conn.execute(self._SQL_INSERT_TRANSITION, params)
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to append transition: {e}",
                execution_id=execution_id,
                operation="append",
                original_error=e,
            ) from e

    def _set_status_sync(self, execution_id: str, status: ExecutionStatus) -> None:
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    self._SQL_UPDATE_STATUS, (status.value, self._now(), execution_id)
                )
                if cursor.rowcount == 0:
                    raise ExecutionNotFound(execution_id)
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to update status: {e}",
                execution_id=execution_id,
                operation="set_status",
                original_error=e,
            ) from e

    def _load_sync(self, execution_id: str) -> Optional[ExecutionRecord]:
        try:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT * FROM executions WHERE execution_id = ?", (execution_id,)
            ).fetchone()
            if row is None:
                return None
            rows = conn.execute(
                "SELECT * FROM transitions WHERE execution_id = ? ORDER BY seq",
                (execution_id,),
            ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to load execution: {e}",
                execution_id=execution_id,
                operation="load",
                original_error=e,
            ) from e

        history: Tuple[TransitionRecord, ...] = tuple(
            TransitionRecord.from_dict(
                {
                    "state": r["state"],
                    "entered_at": r["entered_at"],
                    "input_snapshot": json.loads(r["input_snapshot"]),
                    "output_snapshot": (
                        json.loads(r["output_snapshot"]) if r["output_snapshot"] else None
                    ),
                    "error": json.loads(r["error"]) if r["error"] else None,
                    "segment": r["segment"],
                    "next_state": r["next_state"],
                }
            )
            for r in rows
        )
        return ExecutionRecord(
            execution_id=row["execution_id"],
            document_ref=row["document_ref"],
            status=ExecutionStatus(row["status"]),
            history=history,
            document=json.loads(row["document_json"]) if row["document_json"] else None,
        )

    def _list_ids_sync(self, status: Optional[ExecutionStatus]) -> List[str]:
        query = "SELECT execution_id FROM executions"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY created_at, rowid"
        try:
            rows = self._get_connection().execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to list executions: {e}", operation="list_ids", original_error=e
            ) from e
        return [r["execution_id"] for r in rows]

    # Async interface

    async def create(self, execution_id: str, document: Document) -> None:
        await asyncio.to_thread(self._create_sync, execution_id, document)

    async def append(self, execution_id: str, record: TransitionRecord) -> None:
        await asyncio.to_thread(self._append_sync, execution_id, record)

    async def set_status(self, execution_id: str, status: ExecutionStatus) -> None:
        await asyncio.to_thread(self._set_status_sync, execution_id, status)

    async def load(self, execution_id: str) -> Optional[ExecutionRecord]:
        return await asyncio.to_thread(self._load_sync, execution_id)

    async def list_ids(self, status: Optional[ExecutionStatus] = None) -> List[str]:
        return await asyncio.to_thread(self._list_ids_sync, status)

    async def close(self) -> None:
        """Close every connection opened by the store."""
        with self._lock:
            connections = list(self._connections)
            self._connections.clear()
        for connection in connections:
            connection.close()
        self._local = threading.local()
        logger.debug("Transition store connections closed")


def create_transition_store(persistence_section: Dict[str, Any]) -> TransitionStore:
    """Build the store named by the ``persistence`` configuration section.

    Args:
        persistence_section: Mapping with ``backend`` ("memory" or "sqlite")
            and, for sqlite, ``sqlite_path``.

    Raises:
        ValueError: If the backend is unknown.
    """
    backend = persistence_section.get("backend", "memory")
    if backend == "memory":
        return InMemoryTransitionStore()
    if backend == "sqlite":
        return SQLiteTransitionStore(db_path=persistence_section["sqlite_path"])
    raise ValueError(f"Unknown persistence backend: {backend}")
