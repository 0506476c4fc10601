from unittest.mock import MagicMock, patch

import pytest

from autolead.model import CompletionRound, ModelError, make_completer, raw_completion, text_round


def _mock_response(data: dict, status_code: int = 200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = data
    resp.text = str(data)
    return resp


def _anthropic(content, stop_reason="end_turn", usage=None):
    data = {"content": content, "stop_reason": stop_reason}
    if usage:
        data["usage"] = usage
    return _mock_response(data)


MESSAGES = [
    {"role": "system", "content": "You are helpful."},
    {"role": "user", "content": "hi"},
]


# --- Anthropic ---

@patch("autolead.model.httpx.post")
def test_anthropic_url_and_headers(mock_post):
    mock_post.return_value = _anthropic([{"type": "text", "text": "hello"}])
    raw_completion("https://api.anthropic.com/", "claude-test", MESSAGES, api_key="sk-test")
    assert mock_post.call_args[0][0] == "https://api.anthropic.com/v1/messages"
    headers = mock_post.call_args[1]["headers"]
    assert headers["x-api-key"] == "sk-test"
    assert headers["anthropic-version"] == "2023-06-01"


@patch("autolead.model.httpx.post")
def test_anthropic_system_is_top_level(mock_post):
    mock_post.return_value = _anthropic([{"type": "text", "text": "hello"}])
    raw_completion("https://api.anthropic.com", "claude-test", MESSAGES)
    body = mock_post.call_args[1]["json"]
    assert body["system"][0]["text"] == "You are helpful."
    assert body["system"][0]["cache_control"] == {"type": "ephemeral"}
    assert body["messages"] == [{"role": "user", "content": "hi"}]


@patch("autolead.model.httpx.post")
def test_anthropic_tools_passed_through(mock_post):
    mock_post.return_value = _anthropic([{"type": "text", "text": "ok"}])
    tools = [{"name": "read_file", "input_schema": {"type": "object"}}]
    raw_completion("https://api.anthropic.com", "m", MESSAGES, tools=tools, max_tokens=123)
    body = mock_post.call_args[1]["json"]
    assert body["tools"] == tools
    assert body["max_tokens"] == 123


@patch("autolead.model.httpx.post")
def test_anthropic_tool_calls_parsed(mock_post):
    mock_post.return_value = _anthropic([
        {"type": "text", "text": "Reading."},
        {"type": "tool_use", "id": "tu_1", "name": "read_file", "input": {"path": "a.ts"}},
    ], stop_reason="tool_use")
    rnd = raw_completion("https://api.anthropic.com", "m", MESSAGES)
    assert rnd.content == "Reading."
    assert rnd.tool_calls == [{"name": "read_file", "input": {"path": "a.ts"}, "id": "tu_1"}]
    assert rnd.stop_reason == "tool_use"


@patch("autolead.model.httpx.post")
def test_anthropic_max_tokens_drops_tool_calls(mock_post):
    mock_post.return_value = _anthropic([
        {"type": "tool_use", "id": "tu_1", "name": "write_file", "input": {"path": "a.ts"}},
    ], stop_reason="max_tokens")
    rnd = raw_completion("https://api.anthropic.com", "m", MESSAGES)
    assert rnd.tool_calls == []
    assert "truncated" in rnd.content
    assert rnd.assistant_message()["content"][0]["type"] == "text"


@patch("autolead.model.httpx.post")
def test_api_error_raises(mock_post):
    mock_post.return_value = _mock_response({"error": {"message": "invalid x-api-key"}}, status_code=401)
    with pytest.raises(ModelError, match=r"API error \(401\): invalid x-api-key"):
        raw_completion("https://api.anthropic.com", "m", MESSAGES)


# --- OpenAI-compatible ---

@patch("autolead.model.httpx.post")
def test_openai_tools_converted(mock_post):
    mock_post.return_value = _mock_response({
        "choices": [{"message": {"role": "assistant", "content": "hi"}, "finish_reason": "stop"}],
    })
    tools = [{"name": "read_file", "description": "Read", "input_schema": {"type": "object"}}]
    rnd = raw_completion("http://localhost:11434", "qwen", MESSAGES, provider="openai", tools=tools)
    assert mock_post.call_args[0][0] == "http://localhost:11434/v1/chat/completions"
    body = mock_post.call_args[1]["json"]
    assert body["tools"][0]["function"]["name"] == "read_file"
    assert body["tools"][0]["function"]["parameters"] == {"type": "object"}
    assert "Authorization" not in mock_post.call_args[1]["headers"]
    assert rnd.content == "hi"
    assert rnd.stop_reason == "stop"


@patch("autolead.model.httpx.post")
def test_openai_bad_arguments_become_empty(mock_post):
    mock_post.return_value = _mock_response({
        "choices": [{"message": {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": "c1", "function": {"name": "read_file", "arguments": "{not json"}}],
        }}],
    })
    rnd = raw_completion("http://x", "m", MESSAGES, provider="openai", api_key="k")
    assert rnd.tool_calls == [{"name": "read_file", "input": {}, "id": "c1"}]
    assert mock_post.call_args[1]["headers"]["Authorization"] == "Bearer k"


# --- continuation ---

def test_anthropic_continuation_marks_errors():
    rnd = CompletionRound(
        content="", tool_calls=[], _provider="anthropic",
        _raw={"content_blocks": [{"type": "tool_use", "id": "a", "name": "x", "input": {}}]},
    )
    msgs = rnd.build_continuation([{"id": "a", "result": "Error: nope", "is_error": True}])
    assert msgs[0]["role"] == "assistant"
    assert msgs[1]["content"][0] == {
        "type": "tool_result", "tool_use_id": "a", "content": "Error: nope", "is_error": True,
    }


def test_text_round_openai():
    rnd = text_round("hello", provider="openai")
    assert rnd.assistant_message() == {"role": "assistant", "content": "hello"}


# --- make_completer ---

@patch("autolead.model.httpx.post")
def test_make_completer_binds_config(mock_post):
    mock_post.return_value = _anthropic([{"type": "text", "text": "ok"}])
    complete = make_completer({
        "provider": "anthropic",
        "base_url": "https://api.anthropic.com",
        "model": "claude-test",
        "api_key": "sk",
    })
    rnd = complete(MESSAGES, None, 50)
    assert rnd.content == "ok"
    body = mock_post.call_args[1]["json"]
    assert body["model"] == "claude-test"
    assert body["max_tokens"] == 50
    assert "tools" not in body
