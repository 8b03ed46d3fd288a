import httpx
import openai
import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from tenacity import wait_none

from config import reload_settings
from exceptions import (
    OracleBlockedError,
    OracleConfigurationError,
    OracleEmptyResponseError,
    OracleUnavailableError,
)
from llm_engine import WEB_SEARCH_TOOL, OracleClient, create_oracle_from_settings

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def status_error(cls, status: int, message: str = "error"):
    return cls(message, response=httpx.Response(status, request=REQUEST), body=None)


def reply(content, finish_reason="stop", **additional_kwargs):
    return AIMessage(
        content=content,
        response_metadata={"finish_reason": finish_reason},
        additional_kwargs=additional_kwargs,
    )


class FakeChatModel:
    """Stands in for ChatOpenAI: records bindings and invocations."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.invocations = []
        self.bindings = []

    def bind(self, **kwargs):
        self.bindings.append(("bind", None, kwargs))
        return self

    def bind_tools(self, tools, **kwargs):
        self.bindings.append(("bind_tools", tools, kwargs))
        return self

    def invoke(self, messages):
        self.invocations.append(messages)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_client(llm, **kwargs):
    return OracleClient(llm=llm, retry_wait=wait_none(), max_retries=3, **kwargs)


def test_generate_sends_system_and_user_messages():
    llm = FakeChatModel(reply("TICKER:::AAPL"))
    assert make_client(llm).generate("price of AAPL") == "TICKER:::AAPL"

    messages = llm.invocations[0]
    assert isinstance(messages[0], SystemMessage)
    assert "FolioOracle" in messages[0].content
    assert messages[1] == HumanMessage(content="price of AAPL")
    assert llm.bindings == []


def test_search_binds_web_search_tool():
    llm = FakeChatModel(reply("ok"))
    make_client(llm, web_search=True).generate("news", use_search=True, temperature=0.0)
    kind, tools, kwargs = llm.bindings[0]
    assert kind == "bind_tools"
    assert tools == [WEB_SEARCH_TOOL]
    assert kwargs == {"temperature": 0.0}


def test_search_disabled_by_settings_falls_back_to_plain_call():
    llm = FakeChatModel(reply("ok"))
    make_client(llm, web_search=False).generate("news", use_search=True)
    assert llm.bindings == []


def test_schema_requests_structured_output():
    schema = {"type": "object", "properties": {}, "required": [], "additionalProperties": False}
    llm = FakeChatModel(reply("{}"))
    make_client(llm, web_search=False).generate("details", schema=schema)
    kind, _, kwargs = llm.bindings[0]
    assert kind == "bind"
    assert kwargs["response_format"]["type"] == "json_schema"
    assert kwargs["response_format"]["json_schema"]["schema"] is schema


def test_transport_errors_are_retried():
    llm = FakeChatModel(
        openai.APIConnectionError(request=REQUEST),
        status_error(openai.RateLimitError, 429),
        reply("ok"),
    )
    assert make_client(llm).generate("price") == "ok"
    assert len(llm.invocations) == 3


def test_retries_are_bounded():
    llm = FakeChatModel(*[status_error(openai.InternalServerError, 500) for _ in range(5)])
    with pytest.raises(OracleUnavailableError) as exc_info:
        make_client(llm).generate("price")
    assert exc_info.value.retryable
    assert len(llm.invocations) == 3


def test_client_errors_are_not_retried():
    llm = FakeChatModel(status_error(openai.BadRequestError, 400, "bad model"))
    with pytest.raises(OracleUnavailableError) as exc_info:
        make_client(llm).generate("price")
    assert not exc_info.value.retryable
    assert len(llm.invocations) == 1


def test_invalid_response_body_is_unavailable():
    error = openai.APIResponseValidationError(httpx.Response(200, request=REQUEST), body="<html>")
    llm = FakeChatModel(error)
    with pytest.raises(OracleUnavailableError) as exc_info:
        make_client(llm).generate("price")
    assert not exc_info.value.retryable
    assert exc_info.value.__cause__ is error
    assert len(llm.invocations) == 1


def test_rejected_key_is_a_configuration_error():
    llm = FakeChatModel(status_error(openai.AuthenticationError, 401))
    with pytest.raises(OracleConfigurationError):
        make_client(llm).generate("price")
    assert len(llm.invocations) == 1


def test_content_filter_status_is_blocked():
    llm = FakeChatModel(status_error(openai.BadRequestError, 400, "content_filter triggered"))
    with pytest.raises(OracleBlockedError):
        make_client(llm).generate("price")


def test_content_filter_finish_reason_is_blocked():
    llm = FakeChatModel(reply("", finish_reason="content_filter"))
    with pytest.raises(OracleBlockedError):
        make_client(llm).generate("price")


def test_refusal_is_blocked():
    llm = FakeChatModel(reply("", refusal="I can't help with that."))
    with pytest.raises(OracleBlockedError):
        make_client(llm).generate("price")


def test_empty_answer_raises():
    llm = FakeChatModel(reply("   "))
    with pytest.raises(OracleEmptyResponseError):
        make_client(llm).generate("price")


def test_content_blocks_are_flattened():
    llm = FakeChatModel(reply([
        {"type": "text", "text": "TICKER:::AAPL", "annotations": []},
        {"type": "text", "text": "|||NAME:::Apple"},
    ]))
    assert make_client(llm).generate("price") == "TICKER:::AAPL|||NAME:::Apple"


def test_missing_api_key_fails_at_startup(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "")
    reload_settings()
    with pytest.raises(OracleConfigurationError):
        create_oracle_from_settings()
    with pytest.raises(OracleConfigurationError):
        OracleClient()


def test_client_built_from_settings(monkeypatch):
    monkeypatch.setenv("OPENAI_MODEL", "gpt-test")
    reload_settings()
    client = create_oracle_from_settings()
    assert client.model_name == "gpt-test"
    assert client.max_retries == 3
