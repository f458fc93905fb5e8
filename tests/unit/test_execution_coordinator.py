"""Unit tests for the ExecutionCoordinator turn state machine."""

import asyncio

import pytest

from agentic_sql.domain.base_enums import (
    AssistantMode,
    ExtractionStrategy,
    FailureClassification,
    PipelineStatus,
)
from agentic_sql.domain.context import ConversationContext
from agentic_sql.domain.errors import LLMError
from agentic_sql.services.fallback_content import API_KEY_SETTING

TRANSIENT = LLMError("The model is overloaded", details={"status_code": 503})
UNAUTHORIZED = LLMError("Invalid API key", details={"status_code": 401})

SIGNUPS_SQL = "SELECT COUNT(*) FROM users WHERE created_at >= DATE('now','-30 days');"


def fenced(statement: str) -> str:
    return f"Here is the query:\n```sql\n{statement}\n```"


class StallingAnalysisLLM:
    """Answers the first call, then hangs on the analysis call until cancelled."""

    def __init__(self, first_response: str):
        self.first_response = first_response
        self.calls = 0
        self.analysis_started = asyncio.Event()

    async def generate(self, prompt, system_prompt=None, temperature=None, max_tokens=None, model=None):
        self.calls += 1
        if self.calls == 1:
            return self.first_response
        self.analysis_started.set()
        await asyncio.Event().wait()


async def context_for(engine, database_id, selected_table=None) -> ConversationContext:
    tables = await engine.introspect_tables(database_id)
    schemas = {table: await engine.introspect_schema(database_id, table) for table in tables}
    return ConversationContext(
        database_id=database_id,
        selected_table=selected_table,
        tables=tables,
        schemas=schemas,
    )


@pytest.fixture
async def signups_engine(engine_client):
    """Database whose users table holds 42 recent signups and 3 old ones."""
    await engine_client.create_database("app")
    rows = ", ".join(["(DATE('now', '-1 day'))"] * 42 + ["(DATE('now', '-200 days'))"] * 3)
    await engine_client.execute_sequence(
        "app",
        f"CREATE TABLE users (id INTEGER PRIMARY KEY, created_at TEXT); INSERT INTO users (created_at) VALUES {rows};",
    )
    return engine_client


class TestScenarios:
    """End-to-end turns over a real embedded database with a scripted model."""

    @pytest.mark.asyncio
    async def test_read_question_answered(self, signups_engine, snapshot_store, make_llm, make_coordinator):
        """A fenced SELECT is executed and its real result narrated."""
        llm = make_llm([fenced(SIGNUPS_SQL), "42 users signed up in the last month."])
        coordinator = make_coordinator(llm, signups_engine, snapshot_store)
        context = await context_for(signups_engine, "app")

        result = await coordinator.run_turn("How many users signed up last month?", context)

        assert result.status == PipelineStatus.COMPLETED
        assert result.execution.result.rows == [(42,)]
        assert result.extraction_strategy == ExtractionStrategy.FENCED_BLOCK
        assert "42" in result.content
        assert "42" in llm.calls[1]["prompt"]
        assert result.persisted is None
        assert snapshot_store.saved == []

    @pytest.mark.asyncio
    async def test_prose_only_twice_fails_extraction(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        """Prose-only answers, even after the forced regeneration, end without execution."""
        llm = make_llm(["I'm not sure what you mean.", "Sorry, I still can't help with that."])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn("Do the thing", await context_for(shop_engine, "shop"))

        assert result.status == PipelineStatus.EXTRACTION_FAILED
        assert result.execution is None
        assert result.forced_regenerations == 1
        assert "Sorry, I still can't help with that." in result.content

    @pytest.mark.asyncio
    async def test_transient_failures_retried(
        self, signups_engine, snapshot_store, make_llm, make_coordinator, recording_sleep
    ):
        """Two transient failures are retried after 2s and 4s, then the turn completes."""
        llm = make_llm([TRANSIENT, TRANSIENT, fenced(SIGNUPS_SQL), "42 signups."])
        coordinator = make_coordinator(llm, signups_engine, snapshot_store)

        result = await coordinator.run_turn("How many users signed up last month?", await context_for(signups_engine, "app"))

        assert result.status == PipelineStatus.COMPLETED
        assert recording_sleep.delays == [2.0, 4.0]
        assert sum(recording_sleep.delays) >= 6

    @pytest.mark.asyncio
    async def test_unauthorized_not_retried(
        self, shop_engine, snapshot_store, make_llm, make_coordinator, recording_sleep
    ):
        """An unauthorized failure ends the turn with credential guidance and no retries."""
        llm = make_llm([UNAUTHORIZED, fenced("SELECT * FROM users")])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn("List users", await context_for(shop_engine, "shop"))

        assert result.status == PipelineStatus.GENERATION_FAILED
        assert result.failure_classification == FailureClassification.UNAUTHORIZED
        assert len(llm.calls) == 1
        assert recording_sleep.delays == []
        assert API_KEY_SETTING in result.content

    @pytest.mark.asyncio
    async def test_delete_persists_and_invalidates(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        """A successful modification is saved once and the selected table invalidated once."""
        llm = make_llm([fenced("DELETE FROM orders WHERE id = 7"), "Order 7 was deleted."])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)
        invalidated = []

        result = await coordinator.run_turn(
            "Delete order 7",
            await context_for(shop_engine, "shop", selected_table="orders"),
            on_table_invalidated=invalidated.append,
        )

        assert result.status == PipelineStatus.COMPLETED
        assert result.execution.modifying
        assert result.persisted is True
        assert snapshot_store.saved == ["shop"]
        assert invalidated == ["orders"]
        remaining = await shop_engine.execute("shop", "SELECT id FROM orders")
        assert remaining.rows == [(8,)]


class TestForcedRegeneration:

    @pytest.mark.asyncio
    async def test_repair_then_success(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        llm = make_llm(["Let me think about it.", fenced("SELECT name FROM users"), "Ada and Grace."])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn("Who are the users?", await context_for(shop_engine, "shop"))

        assert result.status == PipelineStatus.COMPLETED
        assert result.forced_regenerations == 1
        assert llm.calls[1]["temperature"] == 0.0
        assert "Let me think about it." in llm.calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_only_one_repair(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        llm = make_llm(["no sql", "still no sql", fenced("SELECT name FROM users")])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn("Who?", await context_for(shop_engine, "shop"))

        assert result.status == PipelineStatus.EXTRACTION_FAILED
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_invalid_candidate_triggers_repair(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        """A fenced block without a verb/clause pair is rejected before execution."""
        llm = make_llm([fenced("SELECT 1 + 1"), fenced("SELECT COUNT(*) FROM users"), "Two users."])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn("How many users?", await context_for(shop_engine, "shop"))

        assert result.status == PipelineStatus.COMPLETED
        assert result.statement == "SELECT COUNT(*) FROM users"
        assert result.forced_regenerations == 1

    @pytest.mark.asyncio
    async def test_repair_generation_failure(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        llm = make_llm(["no sql", UNAUTHORIZED])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn("Who?", await context_for(shop_engine, "shop"))

        assert result.status == PipelineStatus.GENERATION_FAILED
        assert result.failure_classification == FailureClassification.UNAUTHORIZED


class TestFailureBranches:

    @pytest.mark.asyncio
    async def test_engine_error_reported_verbatim(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        llm = make_llm([fenced("SELECT * FROM invoices")])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn("Show invoices", await context_for(shop_engine, "shop"))

        assert result.status == PipelineStatus.EXECUTION_FAILED
        assert result.execution.error == "no such table: invoices"
        assert "Error: no such table: invoices" in result.content
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_analysis_failure_degrades(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        llm = make_llm([fenced("SELECT name FROM users ORDER BY id"), RuntimeError("connection reset")])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn("Who?", await context_for(shop_engine, "shop"))

        assert result.status == PipelineStatus.COMPLETED
        assert result.analysis_degraded
        assert result.warnings
        assert "name: Ada" in result.content
        assert "**2** rows returned" in result.content

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_result(self, shop_engine, failing_store, make_llm, make_coordinator):
        llm = make_llm([fenced("DELETE FROM orders WHERE id = 8"), "Deleted."])
        coordinator = make_coordinator(llm, shop_engine, failing_store)

        result = await coordinator.run_turn("Delete order 8", await context_for(shop_engine, "shop"))

        assert result.status == PipelineStatus.COMPLETED
        assert result.persisted is False
        assert failing_store.save_calls == 1
        assert any("could not be saved" in warning for warning in result.warnings)
        assert result.content == "Deleted."

    @pytest.mark.asyncio
    async def test_quota_failure_suggests_query(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        quota = LLMError("rate limit", details={"status_code": 429})
        llm = make_llm([quota, quota, quota])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn("Who?", await context_for(shop_engine, "shop", selected_table="users"))

        assert result.status == PipelineStatus.GENERATION_FAILED
        assert result.failure_classification == FailureClassification.QUOTA_EXCEEDED
        assert result.suggested_query == 'SELECT id, name, created_at FROM "users" LIMIT 10;'
        assert len(llm.calls) == 3


class TestCancellation:
    """A cancelled turn never loses a modification that was already applied."""

    @pytest.mark.asyncio
    async def test_cancel_during_analysis_keeps_snapshot(self, shop_engine, snapshot_store, make_coordinator):
        llm = StallingAnalysisLLM(fenced("DELETE FROM orders WHERE id = 7"))
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)
        context = await context_for(shop_engine, "shop")

        task = asyncio.create_task(coordinator.run_turn("Delete order 7", context))
        await asyncio.wait_for(llm.analysis_started.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert snapshot_store.saved == ["shop"]
        await shop_engine.create_database("restored", await snapshot_store.load("shop"))
        result = await shop_engine.execute("restored", "SELECT id FROM orders")
        assert result.rows == [(8,)]

    @pytest.mark.asyncio
    async def test_cancel_during_save_still_saves(self, shop_engine, gated_store, make_llm, make_coordinator):
        """The save is shielded: cancelling the turn does not cancel it."""
        llm = make_llm([fenced("DELETE FROM orders WHERE id = 7"), "Deleted."])
        coordinator = make_coordinator(llm, shop_engine, gated_store)
        context = await context_for(shop_engine, "shop")

        task = asyncio.create_task(coordinator.run_turn("Delete order 7", context))
        await asyncio.wait_for(gated_store.entered.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        gated_store.release.set()
        await asyncio.wait_for(gated_store.done.wait(), timeout=5)
        assert gated_store.saved == ["shop"]
        assert len(llm.calls) == 1


class TestInvalidation:

    @pytest.mark.asyncio
    async def test_other_table_not_invalidated(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        llm = make_llm([fenced("DELETE FROM orders WHERE id = 7"), "Deleted."])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)
        invalidated = []

        await coordinator.run_turn(
            "Delete order 7",
            await context_for(shop_engine, "shop", selected_table="users"),
            on_table_invalidated=invalidated.append,
        )

        assert invalidated == []
        assert snapshot_store.saved == ["shop"]

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        llm = make_llm([fenced("UPDATE orders SET total = 1 WHERE id = 7"), "Updated."])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)
        seen = []

        async def refresh(table):
            seen.append(table)

        await coordinator.run_turn(
            "Set order 7 total to 1",
            await context_for(shop_engine, "shop", selected_table="ORDERS"),
            on_table_invalidated=refresh,
        )

        assert seen == ["ORDERS"]

    @pytest.mark.asyncio
    async def test_callback_error_becomes_warning(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        llm = make_llm([fenced("DELETE FROM orders WHERE id = 7"), "Deleted."])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        def broken(table):
            raise RuntimeError("view gone")

        result = await coordinator.run_turn(
            "Delete order 7",
            await context_for(shop_engine, "shop", selected_table="orders"),
            on_table_invalidated=broken,
        )

        assert result.status == PipelineStatus.COMPLETED
        assert any("view gone" in warning for warning in result.warnings)


class TestAskMode:

    @pytest.mark.asyncio
    async def test_suggests_without_executing(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        answer = "You can remove it with:\n```sql\nDELETE FROM orders WHERE id = 7;\n```"
        llm = make_llm([answer])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn(
            "How would I delete order 7?",
            await context_for(shop_engine, "shop"),
            mode=AssistantMode.ASK,
        )

        assert result.status == PipelineStatus.COMPLETED
        assert result.mode == AssistantMode.ASK
        assert result.execution is None
        assert result.content == answer
        assert result.suggested_query == "DELETE FROM orders WHERE id = 7;"
        assert "MODE: ASK" in llm.calls[0]["system_prompt"]
        remaining = await shop_engine.execute("shop", "SELECT COUNT(*) FROM orders")
        assert remaining.rows == [(2,)]

    @pytest.mark.asyncio
    async def test_explanation_without_sql(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        llm = make_llm(["A LEFT JOIN keeps every row from the left table."])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)

        result = await coordinator.run_turn(
            "What is a left join?", await context_for(shop_engine, "shop"), mode=AssistantMode.ASK
        )

        assert result.status == PipelineStatus.COMPLETED
        assert result.suggested_query is None
        assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_result_carries_trace_id(shop_engine, snapshot_store, make_llm, make_coordinator):
    """Every result carries the trace id of its turn, including failures."""
    coordinator = make_coordinator(make_llm([UNAUTHORIZED]), shop_engine, snapshot_store)

    result = await coordinator.run_turn("List users", await context_for(shop_engine, "shop"))

    assert result.trace_id
    assert result.total_time_ms >= 0


class TestPopulateMode:

    @pytest.mark.asyncio
    async def test_inserts_run_and_summarized(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        script = (
            "```sql\n"
            "-- parents first\n"
            "INSERT INTO users (name, created_at) VALUES ('Linus', DATE('now'));\n"
            "INSERT INTO orders (id, user_id, total) VALUES (9, 3, 12.0);\n"
            "```"
        )
        llm = make_llm([script])
        coordinator = make_coordinator(llm, shop_engine, snapshot_store)
        invalidated = []

        result = await coordinator.run_turn(
            "Fill the shop with sample data",
            await context_for(shop_engine, "shop", selected_table="orders"),
            mode=AssistantMode.POPULATE,
            on_table_invalidated=invalidated.append,
        )

        assert result.status == PipelineStatus.COMPLETED
        assert result.mode == AssistantMode.POPULATE
        assert "Executed 2 INSERT statements" in result.content
        assert "- users: 3" in result.content
        assert "- orders: 3" in result.content
        assert result.execution.statement_count == 2
        assert result.persisted is True
        assert snapshot_store.saved == ["shop"]
        assert invalidated == ["orders"]

        assert len(llm.calls) == 1
        assert "DATA POPULATION TASK" in llm.calls[0]["prompt"]
        assert "MODE: POPULATE" in llm.calls[0]["system_prompt"]

    @pytest.mark.asyncio
    async def test_non_insert_script_rejected(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        script = "```sql\nDELETE FROM orders;\nINSERT INTO users (name) VALUES ('Linus');\n```"
        coordinator = make_coordinator(make_llm([script]), shop_engine, snapshot_store)

        result = await coordinator.run_turn(
            "Add sample rows", await context_for(shop_engine, "shop"), mode=AssistantMode.POPULATE
        )

        assert result.status == PipelineStatus.EXTRACTION_FAILED
        assert result.execution is None
        assert snapshot_store.saved == []
        orders = await shop_engine.execute("shop", "SELECT COUNT(*) FROM orders")
        users = await shop_engine.execute("shop", "SELECT COUNT(*) FROM users")
        assert orders.rows == [(2,)]
        assert users.rows == [(2,)]

    @pytest.mark.asyncio
    async def test_partial_failure_still_saved(self, shop_engine, snapshot_store, make_llm, make_coordinator):
        """Statements before the failing one stay applied and are persisted."""
        script = (
            "```sql\n"
            "INSERT INTO users (name) VALUES ('Linus');\n"
            "INSERT INTO invoices (id) VALUES (1);\n"
            "```"
        )
        coordinator = make_coordinator(make_llm([script]), shop_engine, snapshot_store)

        result = await coordinator.run_turn(
            "Add sample rows", await context_for(shop_engine, "shop"), mode=AssistantMode.POPULATE
        )

        assert result.status == PipelineStatus.EXECUTION_FAILED
        assert "no such table: invoices" in result.execution.error
        assert result.persisted is True
        assert snapshot_store.saved == ["shop"]
        users = await shop_engine.execute("shop", "SELECT COUNT(*) FROM users")
        assert users.rows == [(3,)]

    @pytest.mark.asyncio
    async def test_no_tables_skips_model(self, engine_client, snapshot_store, make_llm, make_coordinator):
        await engine_client.create_database("empty")
        llm = make_llm([])
        coordinator = make_coordinator(llm, engine_client, snapshot_store)

        result = await coordinator.run_turn(
            "Add sample rows", await context_for(engine_client, "empty"), mode=AssistantMode.POPULATE
        )

        assert result.status == PipelineStatus.COMPLETED
        assert "Nothing to populate" in result.content
        assert llm.calls == []
        assert snapshot_store.saved == []
