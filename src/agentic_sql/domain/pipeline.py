"""
Pipeline state model for the agentic query pipeline.

This model represents the mutable state that flows through the
coordinator's steps for a single chat turn.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .base_enums import (
    AssistantMode,
    ExtractionStrategy,
    FailureClassification,
    PipelineStepName,
)
from .context import ConversationContext
from .execution import ExecutionAttempt, ExtractedStatement


@dataclass
class PipelineState:
    """
    Mutable state passed through coordinator steps.

    Tracks every intermediate result of one turn: the generated text,
    the recovered statement, the execution record and the warnings
    collected along the way. Never leaves the coordinator.
    """

    # Input
    question: str
    context: ConversationContext
    mode: AssistantMode = AssistantMode.AGENTIC

    # Current step
    step: PipelineStepName = PipelineStepName.GENERATING

    # Generation
    response_text: Optional[str] = None
    structured_query: Optional[str] = None
    failure_classification: Optional[FailureClassification] = None
    raw_error: Optional[str] = None

    # Extraction
    statement: Optional[ExtractedStatement] = None
    suggested_query: Optional[str] = None
    forced_regenerations_remaining: int = 0
    forced_regenerations_used: int = 0

    # Execution
    execution: Optional[ExecutionAttempt] = None
    persisted: Optional[bool] = None
    invalidated_tables: List[str] = field(default_factory=list)

    # Analysis
    content: Optional[str] = None
    analysis_degraded: bool = False

    warnings: List[str] = field(default_factory=list)

    @property
    def extraction_strategy(self) -> Optional[ExtractionStrategy]:
        return self.statement.strategy if self.statement else None

    def advance(self, step: PipelineStepName) -> None:
        self.step = step
