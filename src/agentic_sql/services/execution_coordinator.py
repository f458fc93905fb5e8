"""
Execution Coordinator - Orchestrator for one agentic chat turn.

This service is a THIN ORCHESTRATOR over the repositories:
1. GenerationClient - LLM calls with classification and retry
2. StatementExtractor - Statement recovery from model text
3. StatementValidator - Plausibility gate before execution
4. SQLExecutionRepository - Execution against the embedded engine
5. SnapshotStore - Persistence after modifying statements

Turn states (agentic mode):
    Generating -> Extracting -> Validating -> (ForcedRegenerate -> Extracting)
    -> Executing -> Persisting (modifying only) -> Analyzing -> Completed
Turn states (populate mode):
    Generating -> Extracting -> Validating -> Executing (script) -> Persisting -> Completed
Terminal failures: GenerationFailed, ExtractionFailed, ExecutionFailed.

Key rules:
- At most one statement is executed per agentic turn, and only after validation
- Populate turns run an INSERT-only script; every statement is validated first
- The coordinator never writes SQL itself; repair means asking the model again
- Engine errors are reported verbatim and never retried
- Persistence runs shielded from cancellation, and its failure only adds a warning
- Every turn ends in a PipelineResult; generation errors never raise
"""

import asyncio
import inspect
import time
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from agentic_sql.config import PipelineConfig
from agentic_sql.domain.base_enums import (
    AssistantMode,
    FailureClassification,
    GenerationIntent,
    PipelineStatus,
    PipelineStepName,
)
from agentic_sql.domain.context import ConversationContext
from agentic_sql.domain.errors import DatabaseQueryError
from agentic_sql.domain.execution import ExecutionAttempt, ExtractedStatement, QueryResult
from agentic_sql.domain.generation import GenerationOutcome, GenerationRequest
from agentic_sql.domain.pipeline import PipelineState
from agentic_sql.domain.responses import PipelineResult
from agentic_sql.infrastructure.engine_client import EngineClient, quote_identifier, split_statements
from agentic_sql.repositories.generation import GenerationClient
from agentic_sql.repositories.prompt_builder import PromptBuilder
from agentic_sql.repositories.snapshot_store import SnapshotStore
from agentic_sql.repositories.sql_execution import SQLExecutionRepository, leading_keyword, target_tables
from agentic_sql.repositories.sql_extraction import StatementExtractor
from agentic_sql.repositories.sql_validation import StatementValidator
from agentic_sql.services import fallback_content
from agentic_sql.utils.logging import get_module_logger
from agentic_sql.utils.tracing import current_trace_id, trace_scope

logger = get_module_logger()

TableInvalidatedCallback = Callable[[str], Union[None, Awaitable[None]]]

# Forced regeneration asks for a deterministic answer
FORCED_REGENERATION_TEMPERATURE = 0.0


class ExecutionCoordinator:
    """
    Runs one chat turn from question to PipelineResult.

    Usage:
        coordinator = ExecutionCoordinator(...)
        result = await coordinator.run_turn(
            "How many users signed up last month?",
            context,
            on_table_invalidated=refresh_table_view,
        )
    """

    def __init__(
        self,
        generation_client: GenerationClient,
        statement_extractor: StatementExtractor,
        statement_validator: StatementValidator,
        execution_repository: SQLExecutionRepository,
        engine_client: EngineClient,
        snapshot_store: SnapshotStore,
        prompt_builder: PromptBuilder,
        config: PipelineConfig,
    ):
        self.generation_client = generation_client
        self.extractor = statement_extractor
        self.validator = statement_validator
        self.execution_repo = execution_repository
        self.engine_client = engine_client
        self.snapshot_store = snapshot_store
        self.prompt_builder = prompt_builder
        self.config = config

        logger.info(
            "ExecutionCoordinator initialized",
            max_generation_attempts=config.max_generation_attempts,
            max_forced_regenerations=config.max_forced_regenerations,
            snapshot_backend=snapshot_store.backend.value,
            trace_id=current_trace_id(),
        )

    async def run_turn(
        self,
        question: str,
        context: ConversationContext,
        mode: AssistantMode = AssistantMode.AGENTIC,
        on_table_invalidated: Optional[TableInvalidatedCallback] = None,
    ) -> PipelineResult:
        """
        Run one chat turn.

        Args:
            question: Natural language question
            context: Snapshot of the database the question is about
            mode: AGENTIC executes a statement; ASK only explains and suggests;
                POPULATE runs generated INSERT statements
            on_table_invalidated: Called once with the selected table when a
                successful modification targeted it (sync or async)

        Returns:
            PipelineResult with status, user-facing content and the execution record
        """
        with trace_scope() as trace_id:
            start = time.perf_counter()
            state = PipelineState(
                question=question,
                context=context,
                mode=mode,
                forced_regenerations_remaining=self.config.max_forced_regenerations,
            )

            logger.info(
                "Starting chat turn",
                database_id=context.database_id,
                mode=mode.value,
                question_length=len(question),
                selected_table=context.selected_table,
                trace_id=trace_id,
            )

            if mode == AssistantMode.ASK:
                status = await self._run_ask(state)
            elif mode == AssistantMode.POPULATE:
                status = await self._run_populate(state, on_table_invalidated)
            else:
                status = await self._run_agentic(state, on_table_invalidated)

            return self._build_result(state, status, start, trace_id)

    # =========================================================================
    # Flows
    # =========================================================================

    async def _run_agentic(
        self,
        state: PipelineState,
        on_table_invalidated: Optional[TableInvalidatedCallback],
    ) -> PipelineStatus:
        system_prompt = self.prompt_builder.system_prompt(state.context, AssistantMode.AGENTIC)

        # Step 1: Generation
        outcome = await self._step_generate(
            state,
            GenerationRequest(
                prompt=self.prompt_builder.generation_prompt(state.question),
                intent=GenerationIntent.GENERATE,
                system_prompt=system_prompt,
                context=state.context,
            ),
        )
        if not outcome.success:
            return self._fail_generation(state, outcome)

        # Steps 2-3: Extraction + validation, with forced regeneration
        statement = self._step_extract_and_validate(state)
        while statement is None:
            if state.forced_regenerations_remaining <= 0:
                state.content = fallback_content.extraction_failure_content(state.question, state.response_text)
                logger.warning(
                    "No valid statement after forced regeneration",
                    forced_regenerations=state.forced_regenerations_used,
                    trace_id=current_trace_id(),
                )
                return PipelineStatus.EXTRACTION_FAILED

            outcome = await self._step_forced_regenerate(state, system_prompt)
            if not outcome.success:
                return self._fail_generation(state, outcome)
            statement = self._step_extract_and_validate(state)

        # Step 4: Execution
        attempt = await self._step_execute(state, statement)
        if attempt.result is None:
            return PipelineStatus.EXECUTION_FAILED

        # Step 5: Persistence (modifying statements only)
        if attempt.modifying:
            state.advance(PipelineStepName.PERSISTING)
            await asyncio.shield(self._step_persist(state))
            await self._notify_invalidated(state, target_tables([attempt.statement]), on_table_invalidated)

        # Step 6: Analysis
        await self._step_analyze(state, system_prompt, attempt.statement, attempt.result)

        state.advance(PipelineStepName.COMPLETED)
        return PipelineStatus.COMPLETED

    async def _run_ask(self, state: PipelineState) -> PipelineStatus:
        outcome = await self._step_generate(
            state,
            GenerationRequest(
                prompt=self.prompt_builder.ask_prompt(state.question),
                intent=GenerationIntent.ASK,
                system_prompt=self.prompt_builder.system_prompt(state.context, AssistantMode.ASK),
                context=state.context,
            ),
        )
        if not outcome.success:
            return self._fail_generation(state, outcome)

        state.content = state.response_text or ""

        # Suggest, never execute
        candidate = self.extractor.extract(state.response_text or "", state.structured_query)
        if candidate is not None and self.validator.validate(candidate.text):
            state.statement = candidate
            state.suggested_query = candidate.text

        state.advance(PipelineStepName.COMPLETED)
        return PipelineStatus.COMPLETED

    async def _run_populate(
        self,
        state: PipelineState,
        on_table_invalidated: Optional[TableInvalidatedCallback],
    ) -> PipelineStatus:
        if not state.context.tables:
            state.content = fallback_content.population_no_tables_content()
            state.advance(PipelineStepName.COMPLETED)
            return PipelineStatus.COMPLETED

        outcome = await self._step_generate(
            state,
            GenerationRequest(
                prompt=self.prompt_builder.population_prompt(state.question, state.context),
                intent=GenerationIntent.POPULATE,
                system_prompt=self.prompt_builder.system_prompt(state.context, AssistantMode.POPULATE),
                context=state.context,
            ),
        )
        if not outcome.success:
            return self._fail_generation(state, outcome)

        script = self._step_extract_script(state)
        if script is None:
            state.content = fallback_content.extraction_failure_content(state.question, state.response_text)
            return PipelineStatus.EXTRACTION_FAILED

        state.advance(PipelineStepName.EXECUTING)
        attempt = await self.execution_repo.execute_script(state.context.database_id, script.text)
        state.execution = attempt

        # Statements before a failing one stay applied, so save either way
        state.advance(PipelineStepName.PERSISTING)
        await asyncio.shield(self._step_persist(state))

        if not attempt.succeeded:
            state.content = fallback_content.execution_failure_content(attempt.statement, attempt.error or "")
            return PipelineStatus.EXECUTION_FAILED

        tables = target_tables(split_statements(attempt.statement))
        await self._notify_invalidated(state, tables, on_table_invalidated)

        counts = await self._row_counts(state.context.database_id, tables)
        state.content = fallback_content.population_summary_content(attempt.statement_count, counts)

        state.advance(PipelineStepName.COMPLETED)
        return PipelineStatus.COMPLETED

    # =========================================================================
    # Pipeline Steps
    # =========================================================================

    async def _step_generate(self, state: PipelineState, request: GenerationRequest) -> GenerationOutcome:
        state.advance(PipelineStepName.GENERATING)
        outcome = await self.generation_client.generate(request)
        if outcome.success:
            state.response_text = outcome.text
            state.structured_query = outcome.structured_query
        return outcome

    def _step_extract_and_validate(self, state: PipelineState) -> Optional[ExtractedStatement]:
        """Steps 2-3: recover a candidate and gate it. None when nothing passed."""
        state.advance(PipelineStepName.EXTRACTING)
        candidate = self.extractor.extract(state.response_text or "", state.structured_query)

        state.advance(PipelineStepName.VALIDATING)
        if candidate is None or not self.validator.validate(candidate.text):
            logger.info(
                "No valid statement in response",
                extracted=candidate is not None,
                strategy=candidate.strategy.value if candidate else None,
                forced_regenerations_remaining=state.forced_regenerations_remaining,
                trace_id=current_trace_id(),
            )
            return None

        state.statement = candidate
        return candidate

    def _step_extract_script(self, state: PipelineState) -> Optional[ExtractedStatement]:
        """Recover an INSERT-only script; every statement must pass the validator."""
        state.advance(PipelineStepName.EXTRACTING)
        candidate = self.extractor.extract(state.response_text or "", state.structured_query)

        state.advance(PipelineStepName.VALIDATING)
        statements = split_statements(candidate.text) if candidate else []
        rejected = [
            statement for statement in statements
            if leading_keyword(statement) != "INSERT" or not self.validator.validate(statement)
        ]
        if not statements or rejected:
            logger.info(
                "No valid population script in response",
                extracted=candidate is not None,
                statement_count=len(statements),
                rejected=len(rejected),
                trace_id=current_trace_id(),
            )
            return None

        state.statement = candidate
        return candidate

    async def _row_counts(self, database_id: str, tables: List[str]) -> List[Tuple[str, int]]:
        """Current row count of each table; tables that cannot be counted are skipped."""
        counts: List[Tuple[str, int]] = []
        for table in tables:
            try:
                result = await self.engine_client.execute(database_id, f"SELECT COUNT(*) FROM {quote_identifier(table)}")
            except DatabaseQueryError:
                continue
            counts.append((table, result.rows[0][0]))
        return counts

    async def _step_forced_regenerate(self, state: PipelineState, system_prompt: str) -> GenerationOutcome:
        state.advance(PipelineStepName.FORCED_REGENERATE)
        state.forced_regenerations_remaining -= 1
        state.forced_regenerations_used += 1

        logger.info(
            "Forcing regeneration",
            forced_regenerations_used=state.forced_regenerations_used,
            trace_id=current_trace_id(),
        )

        return await self._step_generate(
            state,
            GenerationRequest(
                prompt=self.prompt_builder.forced_regeneration_prompt(state.question, state.response_text),
                intent=GenerationIntent.FORCE_REGENERATE,
                system_prompt=system_prompt,
                context=state.context,
                temperature=FORCED_REGENERATION_TEMPERATURE,
            ),
        )

    async def _step_execute(self, state: PipelineState, statement: ExtractedStatement) -> ExecutionAttempt:
        """Step 4: execute the validated statement; failures set the turn's content."""
        state.advance(PipelineStepName.EXECUTING)

        attempt = await self.execution_repo.execute(state.context.database_id, statement.text)
        state.execution = attempt

        if not attempt.succeeded:
            state.content = fallback_content.execution_failure_content(attempt.statement, attempt.error or "")
        return attempt

    async def _step_persist(self, state: PipelineState) -> None:
        """Step 5: export the database and hand the image to the snapshot store."""
        database_id = state.context.database_id
        trace_id = current_trace_id()

        try:
            data = await self.engine_client.export_snapshot(database_id)
            await self.snapshot_store.save(database_id, state.context.name_hint, data)
            state.persisted = True
        except Exception as e:
            state.persisted = False
            state.warnings.append(f"Changes were applied but could not be saved: {e}")
            logger.error(
                "Persisting database snapshot failed",
                database_id=database_id,
                error=str(e),
                error_type=type(e).__name__,
                trace_id=trace_id,
            )

    async def _notify_invalidated(
        self,
        state: PipelineState,
        targets: List[str],
        on_table_invalidated: Optional[TableInvalidatedCallback],
    ) -> None:
        selected = state.context.selected_table
        if not selected or selected.lower() not in {target.lower() for target in targets}:
            return

        state.invalidated_tables.append(selected)
        if on_table_invalidated is None:
            return

        try:
            outcome = on_table_invalidated(selected)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            state.warnings.append(f"Refreshing table '{selected}' failed: {e}")
            logger.error(
                "Table invalidation callback failed",
                table=selected,
                error=str(e),
                trace_id=current_trace_id(),
            )

    async def _step_analyze(
        self,
        state: PipelineState,
        system_prompt: str,
        statement: str,
        result: QueryResult,
    ) -> None:
        """Step 6: narrate real results, or fall back to a templated summary."""
        state.advance(PipelineStepName.ANALYZING)

        outcome = await self.generation_client.generate(
            GenerationRequest(
                prompt=self.prompt_builder.analysis_prompt(state.question, statement, result),
                intent=GenerationIntent.ANALYZE,
                system_prompt=system_prompt,
                context=state.context,
            )
        )

        if outcome.success and outcome.text and outcome.text.strip():
            state.content = outcome.text
            return

        reason = outcome.classification.value if outcome.classification else "empty response"
        state.analysis_degraded = True
        state.warnings.append(f"Result analysis unavailable ({reason}); showing a summary instead")
        state.content = fallback_content.analysis_fallback_content(
            state.question,
            statement,
            result,
            self.config.fallback_preview_rows,
            self.config.max_cell_chars,
        )
        logger.warning(
            "Analysis failed, using templated summary",
            reason=reason,
            row_count=result.row_count,
            trace_id=current_trace_id(),
        )

    def _fail_generation(self, state: PipelineState, outcome: GenerationOutcome) -> PipelineStatus:
        classification = outcome.classification or FailureClassification.UNKNOWN
        state.failure_classification = classification
        state.raw_error = outcome.raw_error
        state.suggested_query = fallback_content.suggested_query(state.context)
        state.content = fallback_content.generation_failure_content(
            classification,
            outcome.raw_error,
            state.mode,
            state.question,
            state.context,
        )
        logger.warning(
            "Chat turn ended by generation failure",
            step=state.step.value,
            classification=classification.value,
            attempts=outcome.attempts,
            trace_id=current_trace_id(),
        )
        return PipelineStatus.GENERATION_FAILED

    # =========================================================================
    # Result Building
    # =========================================================================

    def _build_result(
        self,
        state: PipelineState,
        status: PipelineStatus,
        start: float,
        trace_id: str,
    ) -> PipelineResult:
        total_time_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "Chat turn finished",
            status=status.value,
            mode=state.mode.value,
            extraction_strategy=state.extraction_strategy.value if state.extraction_strategy else None,
            forced_regenerations=state.forced_regenerations_used,
            executed=state.execution is not None,
            persisted=state.persisted,
            analysis_degraded=state.analysis_degraded,
            warnings=len(state.warnings),
            total_time_ms=round(total_time_ms, 2),
            trace_id=trace_id,
        )

        return PipelineResult(
            status=status,
            content=state.content or "",
            statement=state.execution.statement if state.execution else None,
            execution=state.execution,
            mode=state.mode,
            suggested_query=state.suggested_query,
            extraction_strategy=state.extraction_strategy,
            failure_classification=state.failure_classification,
            forced_regenerations=state.forced_regenerations_used,
            analysis_degraded=state.analysis_degraded,
            persisted=state.persisted,
            warnings=list(state.warnings),
            trace_id=trace_id,
            total_time_ms=total_time_ms,
        )
