"""
LLM Engine - the market-data oracle.
Wraps an OpenAI-compatible chat model behind a prompt-in/text-out contract,
with optional hosted web search and JSON-schema structured output.
Transport failures are retried with tenacity and mapped onto the
application's exception hierarchy.
"""

from typing import Any, Dict, Optional, Protocol
import logging

import openai
from langchain_openai import ChatOpenAI
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from config import get_settings
from exceptions import (
    OracleBlockedError,
    OracleConfigurationError,
    OracleEmptyResponseError,
    OracleUnavailableError,
)
from prompts import get_system_prompt

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL = {"type": "web_search_preview"}


class Oracle(Protocol):
    """Anything that can answer a market-data prompt with text."""

    def generate(
        self,
        prompt: str,
        use_search: bool = False,
        schema: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
    ) -> str:
        ...


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, OracleUnavailableError) and exc.retryable


def _message_text(content: Any) -> str:
    """Flatten message content (plain string or list of content blocks) to text."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") in ("text", "output_text"):
            parts.append(block.get("text") or "")
    return "".join(parts)


def _refusal(message: BaseMessage) -> Optional[str]:
    refusal = message.additional_kwargs.get("refusal")
    if refusal:
        return refusal
    if isinstance(message.content, list):
        for block in message.content:
            if isinstance(block, dict) and block.get("type") == "refusal":
                return block.get("refusal") or "refused"
    return None


class OracleClient:
    """
    Client for the hosted language model used as the sole market-data source.
    Uses centralized configuration from config.py.
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        temperature: Optional[float] = None,
        web_search: Optional[bool] = None,
        max_retries: Optional[int] = None,
        llm: Optional[ChatOpenAI] = None,
        retry_wait=None
    ):
        """
        Initialize the oracle client.

        Args:
            model_name: Model name (e.g., "gpt-4o-mini"); defaults to OPENAI_MODEL
            base_url: Base URL for an OpenAI-compatible API
            api_key: API key; defaults to OPENAI_API_KEY
            temperature: Default sampling temperature
            web_search: Allow the hosted web-search tool for real-time queries
            max_retries: Attempts per call for transport failures
            llm: Pre-built chat model (tests)
            retry_wait: tenacity wait strategy between attempts
        """
        settings = get_settings()
        self.model_name = model_name or settings.openai_model
        self.temperature = settings.oracle_temperature if temperature is None else temperature
        self.web_search = settings.oracle_web_search if web_search is None else web_search
        self.max_retries = max_retries or settings.oracle_max_retries
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=10)

        self.llm = llm or self._create_llm(base_url, api_key)

    def _create_llm(self, base_url: Optional[str], api_key: Optional[str]) -> ChatOpenAI:
        """Create a ChatOpenAI instance from explicit arguments or settings."""
        settings = get_settings()
        url = base_url or settings.openai_base_url
        key = api_key or settings.openai_api_key

        if not key:
            raise OracleConfigurationError("API key not found. Set OPENAI_API_KEY environment variable.")

        logger.info(f"Initializing oracle: {self.model_name} at {url or 'OpenAI official'}")
        return ChatOpenAI(
            model=self.model_name,
            api_key=key,
            base_url=url,
            temperature=self.temperature,
            max_retries=0  # Retried in generate()
        )

    def _bind(self, use_search: bool, schema: Optional[Dict[str, Any]], temperature: Optional[float]):
        kwargs: Dict[str, Any] = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        if schema is not None:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "oracle_response", "schema": schema, "strict": True},
            }

        if use_search and self.web_search:
            return self.llm.bind_tools([WEB_SEARCH_TOOL], **kwargs)
        if kwargs:
            return self.llm.bind(**kwargs)
        return self.llm

    def _call(self, runnable, messages) -> BaseMessage:
        """Invoke the model once, translating SDK errors into application errors."""
        try:
            return runnable.invoke(messages)
        except openai.APIConnectionError as e:  # includes timeouts
            raise OracleUnavailableError(f"Oracle unreachable: {e}") from e
        except openai.RateLimitError as e:
            raise OracleUnavailableError(f"Oracle rate limit reached: {e}") from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise OracleConfigurationError(f"Oracle rejected the API key: {e}") from e
        except openai.APIStatusError as e:
            body = str(e).lower()
            if "content_filter" in body or "content_policy" in body:
                raise OracleBlockedError(f"Oracle blocked the request: {e}") from e
            raise OracleUnavailableError(
                f"Oracle error (HTTP {e.status_code}): {e}",
                retryable=e.status_code >= 500
            ) from e
        except openai.APIError as e:
            raise OracleUnavailableError(f"Oracle returned an unusable response: {e}", retryable=False) from e

    def generate(
        self,
        prompt: str,
        use_search: bool = False,
        schema: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None
    ) -> str:
        """
        Send one prompt and return the oracle's answer text.

        Args:
            prompt: The instruction built by the prompts package
            use_search: Ground the answer in a real-time web search
            schema: JSON schema for structured output, or None for free text
            temperature: Per-call temperature override

        Returns:
            Non-empty answer text

        Raises:
            OracleUnavailableError: transport failure after all retries
            OracleBlockedError: the model refused (content policy)
            OracleEmptyResponseError: the model answered with no text
        """
        messages = [SystemMessage(content=get_system_prompt()), HumanMessage(content=prompt)]
        runnable = self._bind(use_search, schema, temperature)
        logger.debug(f"Oracle prompt (search={use_search}, schema={schema is not None}): {prompt}")

        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self.retry_wait,
            retry=retry_if_exception(_is_retryable),
            reraise=True
        )
        response = retrying(self._call, runnable, messages)

        finish_reason = (response.response_metadata or {}).get("finish_reason")
        refusal = _refusal(response)
        if finish_reason == "content_filter" or refusal:
            raise OracleBlockedError(f"Oracle refused to answer: {refusal or finish_reason}")

        text = _message_text(response.content)
        if not text.strip():
            raise OracleEmptyResponseError("Oracle returned an empty response")
        return text


def create_oracle_from_settings() -> OracleClient:
    """Create the application's oracle. Raises OracleConfigurationError without an API key."""
    get_settings().require_oracle()
    return OracleClient()
