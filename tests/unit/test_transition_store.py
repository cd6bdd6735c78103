"""
Unit tests for transition_store module.

The same behaviour is checked against the in-memory and the SQLite store.
"""

from datetime import datetime, timezone

import pytest

from document_workflow.database.transition_store import (
    InMemoryTransitionStore,
    SQLiteTransitionStore,
    create_transition_store,
)
from document_workflow.models.data_structures import (
    Document,
    ExecutionStatus,
    TransitionRecord,
)
from document_workflow.utils.error_handlers import ExecutionNotFound, PersistenceError


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Create each transition store implementation."""
    if request.param == "memory":
        return InMemoryTransitionStore()
    return SQLiteTransitionStore(db_path=str(tmp_path / "db" / "executions.db"))


def _record(state, seq, next_state=None, segment=None, output=None, error=None):
    return TransitionRecord(
        state=state,
        entered_at=datetime(2026, 10, 18, 12, 0, seq, tzinfo=timezone.utc),
        input_snapshot={"document": {"location": "s3://b/k.pdf"}},
        output_snapshot=output,
        error=error,
        segment=segment,
        next_state=next_state,
    )


class TestTransitionStore:
    """Tests shared by every store implementation."""

    @pytest.mark.asyncio
    async def test_create_and_load(self, store, document):
        await store.create("EXE-1", document)

        record = await store.load("EXE-1")

        assert record.execution_id == "EXE-1"
        assert record.document_ref == document.location
        assert record.status is ExecutionStatus.RUNNING
        assert record.history == ()
        assert record.load_document() == document
        await store.close()

    @pytest.mark.asyncio
    async def test_history_preserves_append_order(self, store, document):
        await store.create("EXE-1", document)
        records = [
            _record(
                "Classify",
                0,
                next_state="AwaitClassification",
                segment="classification_job",
                output={"job_id": "job-1"},
            ),
            _record(
                "AwaitClassification",
                1,
                error=({"kind": "TimeoutError", "message": "late"},),
                segment="classification_error",
                next_state="ClassificationFailed",
            ),
            _record("ClassificationFailed", 2, output={"status": "failed"}),
        ]
        for record in records:
            await store.append("EXE-1", record)

        loaded = await store.load("EXE-1")

        assert [r.state for r in loaded.history] == [r.state for r in records]
        assert loaded.history[0].output_snapshot["job_id"] == "job-1"
        assert loaded.history[0].entered_at == records[0].entered_at
        assert loaded.history[1].error[0]["kind"] == "TimeoutError"
        assert loaded.history[1].segment == "classification_error"
        assert loaded.history[2].next_state is None
        await store.close()

    @pytest.mark.asyncio
    async def test_set_status_and_list_ids(self, store, document):
        await store.create("EXE-1", document)
        await store.create("EXE-2", document)

        await store.set_status("EXE-1", ExecutionStatus.SUCCEEDED)

        assert (await store.load("EXE-1")).status is ExecutionStatus.SUCCEEDED
        assert await store.list_ids() == ["EXE-1", "EXE-2"]
        assert await store.list_ids(ExecutionStatus.RUNNING) == ["EXE-2"]
        await store.close()

    @pytest.mark.asyncio
    async def test_duplicate_create_rejected(self, store, document):
        await store.create("EXE-1", document)

        with pytest.raises(PersistenceError):
            await store.create("EXE-1", document)
        await store.close()

    @pytest.mark.asyncio
    async def test_unknown_execution(self, store):
        assert await store.load("EXE-404") is None
        with pytest.raises(ExecutionNotFound):
            await store.append("EXE-404", _record("Classify", 0))
        with pytest.raises(ExecutionNotFound):
            await store.set_status("EXE-404", ExecutionStatus.FAILED)
        await store.close()


class TestSQLiteTransitionStore:
    """Tests specific to the SQLite store."""

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path, document):
        """Test that a new store instance sees previously written records."""
        db_path = str(tmp_path / "executions.db")
        first = SQLiteTransitionStore(db_path=db_path)
        await first.create("EXE-1", document)
        await first.append("EXE-1", _record("Classify", 0, next_state="Await"))
        await first.close()

        second = SQLiteTransitionStore(db_path=db_path)
        record = await second.load("EXE-1")

        assert [r.state for r in record.history] == ["Classify"]
        assert record.load_document().metadata["source"] == "email"
        await second.close()

    def test_missing_schema_file(self, tmp_path):
        with pytest.raises(PersistenceError) as exc_info:
            SQLiteTransitionStore(
                db_path=str(tmp_path / "x.db"), schema_path=str(tmp_path / "none.sql")
            )

        assert exc_info.value.operation == "initialize"

    @pytest.mark.asyncio
    async def test_unserialisable_output_rejected(self, tmp_path, document):
        store = SQLiteTransitionStore(db_path=str(tmp_path / "x.db"))
        await store.create("EXE-1", document)

        with pytest.raises(PersistenceError):
            await store.append("EXE-1", _record("Classify", 0, output={"when": object()}))
        await store.close()


class TestCreateTransitionStore:
    """Tests for create_transition_store."""

    def test_memory_backend(self):
        assert isinstance(
            create_transition_store({"backend": "memory"}), InMemoryTransitionStore
        )

    def test_sqlite_backend(self, tmp_path):
        store = create_transition_store(
            {"backend": "sqlite", "sqlite_path": str(tmp_path / "e.db")}
        )

        assert isinstance(store, SQLiteTransitionStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_transition_store({"backend": "postgres"})

    def test_document_round_trip(self):
        document = Document(location="s3://b/k.pdf", metadata={"a": [1]})

        assert Document.from_dict(document.to_dict()) == document
