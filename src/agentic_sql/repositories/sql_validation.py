"""
SQL Validation Repository.

Cheap plausibility gate between extraction and execution. A candidate
passes when it is longer than the configured minimum and contains one of
the verb/clause pairs as whole words (case-insensitive):

    SELECT + FROM, DELETE + FROM, INSERT + INTO, UPDATE + SET

This does not check semantics or syntax; the engine is the final judge.
Its job is to keep obviously partial or prose-only text from reaching
the engine.
"""

from typing import Tuple

from agentic_sql.config import PipelineConfig
from agentic_sql.repositories.sql_extraction import COMPANION_CLAUSES, contains_word
from agentic_sql.utils.logging import get_module_logger
from agentic_sql.utils.tracing import current_trace_id

logger = get_module_logger()


class StatementValidator:
    """Repository for the pre-execution plausibility check."""

    def __init__(self, config: PipelineConfig):
        self.config = config

    def validate(self, candidate: str) -> bool:
        """
        Accept or reject a candidate statement.

        Returns:
            True iff the trimmed text is longer than min_statement_length
            and contains a verb together with its companion clause
        """
        passed, reason = self._check(candidate)
        if not passed:
            logger.info(
                "Statement rejected by validator",
                reason=reason,
                statement=(candidate or "")[:200],
                trace_id=current_trace_id(),
            )
        return passed

    def _check(self, candidate: str) -> Tuple[bool, str]:
        text = (candidate or "").strip()

        if len(text) <= self.config.min_statement_length:
            return False, f"shorter than {self.config.min_statement_length + 1} characters"

        for verb, clause in COMPANION_CLAUSES.items():
            if contains_word(text, verb) and contains_word(text, clause):
                return True, "ok"

        return False, "no verb/clause pair"
