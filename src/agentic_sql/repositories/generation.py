"""
Generation Repository.

Wraps every call to the LLM with failure classification and retry:

- Classification happens once, here, into a closed enum
  (transient / quota_exceeded / unauthorized / unknown). Callers branch
  on the enum, never on error strings.
- Only transient and quota failures are retried, up to
  `max_generation_attempts` in total, sleeping `base ** k` seconds after
  failed attempt k (2s then 4s with the defaults).
- Service errors never escape as exceptions: the caller always gets a
  GenerationOutcome.

The sleep function is injectable so tests can record delays instead of
waiting for them.
"""

import asyncio
import re
from typing import Awaitable, Callable, Iterator, Optional

from agentic_sql.config import PipelineConfig
from agentic_sql.domain.base_enums import FailureClassification
from agentic_sql.domain.generation import GenerationOutcome, GenerationRequest, RetryState
from agentic_sql.infrastructure.llm_client import LLMClient
from agentic_sql.utils.logging import get_module_logger
from agentic_sql.utils.tracing import current_trace_id

logger = get_module_logger()

SleepFn = Callable[[float], Awaitable[None]]

_TRANSIENT_STATUS = 503
_QUOTA_STATUS = 429
_UNAUTHORIZED_STATUS = 401

_TRANSIENT_PATTERN = re.compile(r"\b503\b|overloaded|service unavailable", re.IGNORECASE)
_QUOTA_PATTERN = re.compile(
    r"\b429\b|quota|rate[\s_-]?limit|too many requests|resource[\s_]exhausted",
    re.IGNORECASE,
)
_UNAUTHORIZED_PATTERN = re.compile(
    r"\b401\b|unauthori[sz]ed|authentication|api[\s_-]?key",
    re.IGNORECASE,
)


def _error_chain(error: BaseException) -> Iterator[BaseException]:
    """The error followed by its causes, stopping on cycles."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _status_code(error: BaseException) -> Optional[int]:
    for item in _error_chain(error):
        status = getattr(item, "status_code", None)
        if isinstance(status, int):
            return status
        details = getattr(item, "details", None)
        if isinstance(details, dict) and isinstance(details.get("status_code"), int):
            return details["status_code"]
    return None


def classify_generation_error(error: BaseException) -> FailureClassification:
    """
    Map a generation error to its failure classification.

    The HTTP status (from the error, its details or its cause chain) wins;
    otherwise the messages of the whole chain are matched against known
    phrasing.
    """
    status = _status_code(error)
    if status == _TRANSIENT_STATUS:
        return FailureClassification.TRANSIENT
    if status == _QUOTA_STATUS:
        return FailureClassification.QUOTA_EXCEEDED
    if status == _UNAUTHORIZED_STATUS:
        return FailureClassification.UNAUTHORIZED

    message = " ".join(str(item) for item in _error_chain(error))
    if _TRANSIENT_PATTERN.search(message):
        return FailureClassification.TRANSIENT
    if _QUOTA_PATTERN.search(message):
        return FailureClassification.QUOTA_EXCEEDED
    if _UNAUTHORIZED_PATTERN.search(message):
        return FailureClassification.UNAUTHORIZED
    return FailureClassification.UNKNOWN


class GenerationClient:
    """
    Repository for LLM generation with classification and retry.

    Usage:
        client = GenerationClient(llm_client, settings.pipeline)
        outcome = await client.generate(GenerationRequest(prompt=..., intent=GenerationIntent.GENERATE))
        if outcome.success:
            ...
        elif outcome.classification == FailureClassification.UNAUTHORIZED:
            ...
    """

    def __init__(
        self,
        llm_client: LLMClient,
        config: PipelineConfig,
        sleep: Optional[SleepFn] = None,
    ):
        self.llm_client = llm_client
        self.config = config
        self._sleep: SleepFn = sleep or asyncio.sleep

    async def generate(self, request: GenerationRequest) -> GenerationOutcome:
        """
        Run one logical generation request.

        Returns:
            GenerationOutcome: success with text, or failure with the
            classification and message of the last attempt
        """
        trace_id = current_trace_id()
        state = RetryState.start(self.config.max_generation_attempts, self.config.backoff_base_seconds)

        while True:
            attempt = state.begin_attempt()
            logger.debug(
                "Calling LLM",
                intent=request.intent.value,
                attempt=attempt,
                max_attempts=state.max_attempts,
                trace_id=trace_id,
            )

            try:
                text = await self.llm_client.generate(
                    prompt=request.prompt,
                    system_prompt=request.system_prompt,
                    temperature=request.temperature,
                )
            except Exception as e:
                classification = classify_generation_error(e)
                state.record_failure(classification, str(e))

                if not state.can_retry(classification):
                    logger.warning(
                        "Generation failed",
                        intent=request.intent.value,
                        classification=classification.value,
                        attempts=attempt,
                        total_delay_seconds=state.cumulative_delay,
                        error=str(e),
                        trace_id=trace_id,
                    )
                    return GenerationOutcome.failed(
                        classification=classification,
                        raw_error=str(e),
                        attempts=attempt,
                        total_delay_seconds=state.cumulative_delay,
                    )

                delay = state.next_delay()
                logger.warning(
                    "Generation attempt failed, retrying",
                    intent=request.intent.value,
                    classification=classification.value,
                    attempt=attempt,
                    delay_seconds=delay,
                    trace_id=trace_id,
                )
                await self._sleep(delay)
                continue

            logger.info(
                "Generation succeeded",
                intent=request.intent.value,
                attempts=attempt,
                response_length=len(text),
                total_delay_seconds=state.cumulative_delay,
                trace_id=trace_id,
            )
            return GenerationOutcome.succeeded(
                text=text,
                attempts=attempt,
                total_delay_seconds=state.cumulative_delay,
            )
