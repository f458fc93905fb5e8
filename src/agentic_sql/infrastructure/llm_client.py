"""
OpenRouter chat client built on LangChain's ChatOpenAI.

One call to `generate()` is one upstream request. Retry, backoff and
failure classification live in `repositories/generation.py`; this client
only reports what happened, keeping the upstream HTTP status in
`LLMError.details["status_code"]` when the SDK exposes one.
"""

from typing import Any, Dict, List, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_core.runnables import Runnable
from langchain_openai import ChatOpenAI
from pydantic import SecretStr

from ..config import LLMConfig
from ..domain.errors import LLMError
from ..utils.logging import get_module_logger
from ..utils.token_utils import InputValidator
from ..utils.tracing import current_trace_id

logger = get_module_logger()

# Reported when generation is attempted without an API key
MISSING_KEY_STATUS = 401


def _upstream_status_code(error: BaseException) -> Optional[int]:
    """HTTP status carried by an SDK error or its response, if any."""
    for candidate in (error, getattr(error, "response", None)):
        status = getattr(candidate, "status_code", None)
        if isinstance(status, int):
            return status
    return None


def _with_overrides(
    llm: BaseChatModel,
    temperature: Optional[float],
    max_tokens: Optional[int],
    model: Optional[str],
) -> Runnable:
    """Per-call settings bound onto the shared model; unset values keep the configured ones."""
    overrides: Dict[str, Any] = {}
    if model is not None:
        overrides["model"] = model
    if temperature is not None:
        overrides["temperature"] = temperature
    if max_tokens is not None:
        overrides["max_completion_tokens"] = max_tokens
    return llm.bind(**overrides) if overrides else llm


def _build_messages(prompt: str, system_prompt: Optional[str]) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


class LLMClient:
    """
    Chat client for OpenRouter models.

    Without an API key the client stays disconnected and every
    `generate()` raises LLMError with status 401, so callers see the same
    failure shape as a rejected key.

    Usage:
        client = LLMClient(settings.llm)
        await client.connect()
        text = await client.generate(
            "How many users signed up last month?",
            system_prompt="You are a SQLite assistant.",
            temperature=0.0,
        )
        await client.close()
    """

    def __init__(self, config: LLMConfig):
        self.config = config
        self._llm: Optional[ChatOpenAI] = None

        logger.info(
            "LLMClient initialized",
            default_model=config.default_model,
            base_url=config.base_url,
            has_credentials=self.has_credentials,
            trace_id=current_trace_id()
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.config.openrouter_api_key.strip())

    def is_connected(self) -> bool:
        return self._llm is not None

    async def connect(self) -> None:
        """
        Build the ChatOpenAI model. No request is sent until the first generate().

        Raises:
            LLMError: If the model cannot be constructed
        """
        trace_id = current_trace_id()
        if self.is_connected():
            logger.warning("LLM client already connected", trace_id=trace_id)
            return

        if not self.has_credentials:
            logger.warning("No OpenRouter API key configured, LLM client left disconnected", trace_id=trace_id)
            return

        try:
            # SDK retries stay at config.max_retries (0 by default); the generation client owns retry
            self._llm = ChatOpenAI(
                model=self.config.default_model,
                api_key=SecretStr(self.config.openrouter_api_key),
                base_url=self.config.base_url,
                temperature=self.config.temperature,
                max_completion_tokens=self.config.max_tokens,
                top_p=self.config.top_p,
                timeout=self.config.timeout_seconds,
                max_retries=self.config.max_retries
            )
        except Exception as e:
            error_msg = f"Failed to initialize LLM client: {e}"
            logger.error(error_msg, error_type=type(e).__name__, trace_id=trace_id)
            raise LLMError(error_msg) from e

        logger.info("LLM client connected", model=self.config.default_model, trace_id=trace_id)

    async def close(self) -> None:
        # ChatOpenAI holds no resources that need explicit release
        self._llm = None
        logger.info("LLM client closed", trace_id=current_trace_id())

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None
    ) -> str:
        """
        Send one chat request and return the response text.

        Raises:
            LLMError: On any failure. details["status_code"] is the upstream
                HTTP status when known, and 401 when no API key is configured.
        """
        llm = self._llm
        if llm is None:
            if not self.has_credentials:
                raise LLMError(
                    "LLM client is not connected: no API key configured",
                    details={"status_code": MISSING_KEY_STATUS}
                )
            raise LLMError("LLM client is not connected")

        try:
            InputValidator.validate_total_chars(
                prompt=prompt,
                system_prompt=system_prompt,
                max_chars=self.config.max_input_chars
            )
        except ValueError as e:
            raise LLMError(str(e)) from e

        trace_id = current_trace_id()
        logger.info(
            "Sending LLM request",
            prompt_length=len(prompt),
            system_prompt_length=len(system_prompt) if system_prompt else 0,
            temperature=temperature if temperature is not None else self.config.temperature,
            model=model or self.config.default_model,
            trace_id=trace_id
        )

        try:
            response = await _with_overrides(llm, temperature, max_tokens, model).ainvoke(
                _build_messages(prompt, system_prompt)
            )
        except Exception as e:
            status_code = _upstream_status_code(e)
            error_msg = f"LLM generation failed: {e}"
            logger.error(error_msg, error_type=type(e).__name__, status_code=status_code, trace_id=trace_id)
            raise LLMError(
                error_msg,
                details={"status_code": status_code} if status_code is not None else None
            ) from e

        content = str(response.content) if response is not None and response.content else ""
        if not content:
            raise LLMError("LLM returned empty response")

        logger.info("LLM response received", response_length=len(content), trace_id=trace_id)
        return content
