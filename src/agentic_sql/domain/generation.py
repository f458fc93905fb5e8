"""
Generation request/outcome models.

GenerationOutcome is the only thing the generation client hands back:
either the model's text, or a classified failure. Callers branch on
`classification`, never on error strings.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, Field

from .base_enums import FailureClassification, GenerationIntent
from .context import ConversationContext


class GenerationRequest(BaseModel):
    """One logical call to the generation service."""

    prompt: str = Field(..., description="User-facing prompt text")
    intent: GenerationIntent = Field(..., description="Why the call is made")
    system_prompt: Optional[str] = Field(default=None, description="Schema-aware system prompt")
    context: Optional[ConversationContext] = Field(default=None, description="Context the prompt was built from")
    temperature: Optional[float] = Field(default=None, description="Temperature override for this call")


class GenerationOutcome(BaseModel):
    """
    Result of a generation call: Success{text} or Failure{classification, raw_error}.

    `structured_query` carries SQL the service returned out-of-band from
    the prose, when it did.
    """

    success: bool = Field(..., description="Whether the service produced text")
    text: Optional[str] = Field(default=None, description="Generated text (success only)")
    structured_query: Optional[str] = Field(default=None, description="Out-of-band query field, if any")
    classification: Optional[FailureClassification] = Field(default=None, description="Failure kind (failure only)")
    raw_error: Optional[str] = Field(default=None, description="Last underlying error message (failure only)")
    attempts: int = Field(default=1, description="Attempts made for this request")
    total_delay_seconds: float = Field(default=0.0, description="Backoff delay slept between attempts")

    @classmethod
    def succeeded(
        cls,
        text: str,
        structured_query: Optional[str] = None,
        attempts: int = 1,
        total_delay_seconds: float = 0.0,
    ) -> "GenerationOutcome":
        return cls(
            success=True,
            text=text,
            structured_query=structured_query,
            attempts=attempts,
            total_delay_seconds=total_delay_seconds,
        )

    @classmethod
    def failed(
        cls,
        classification: FailureClassification,
        raw_error: str,
        attempts: int = 1,
        total_delay_seconds: float = 0.0,
    ) -> "GenerationOutcome":
        return cls(
            success=False,
            classification=classification,
            raw_error=raw_error,
            attempts=attempts,
            total_delay_seconds=total_delay_seconds,
        )


def backoff_schedule(max_attempts: int, base_seconds: float) -> List[float]:
    """
    Delays slept after each failed attempt that may still be retried.

    The delay after failed attempt k (1-based) is base ** k, so three
    attempts with base 2 give [2.0, 4.0].
    """
    return [float(base_seconds ** attempt) for attempt in range(1, max_attempts)]


@dataclass
class RetryState:
    """
    Retry bookkeeping for a single generation request.

    Lives only for the duration of one GenerationClient.generate call.
    """

    max_attempts: int
    delays: List[float]
    attempt: int = 0
    cumulative_delay: float = 0.0
    last_error: Optional[str] = None
    history: List[FailureClassification] = field(default_factory=list)

    @classmethod
    def start(cls, max_attempts: int, base_seconds: float) -> "RetryState":
        return cls(max_attempts=max_attempts, delays=backoff_schedule(max_attempts, base_seconds))

    def begin_attempt(self) -> int:
        self.attempt += 1
        return self.attempt

    def record_failure(self, classification: FailureClassification, error: str) -> None:
        self.history.append(classification)
        self.last_error = error

    def can_retry(self, classification: FailureClassification) -> bool:
        return classification.retryable and self.attempt < self.max_attempts

    def next_delay(self) -> float:
        """Delay before the next attempt; accumulates into cumulative_delay."""
        delay = self.delays[self.attempt - 1]
        self.cumulative_delay += delay
        return delay
