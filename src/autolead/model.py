from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable

import httpx
from loguru import logger

from autolead.types import ModelConfigDict, ToolCallDict


class ModelError(Exception):
    """Raised when the reasoning service returns an error response."""
    pass


@dataclass
class CompletionRound:
    """Result of a single LLM round that may contain tool calls."""
    content: str
    tool_calls: list[ToolCallDict]
    _provider: str
    _raw: dict                # Provider-specific raw response data
    stop_reason: str = ""

    def assistant_message(self) -> dict:
        """The assistant turn as it must be replayed to the provider."""
        if self._provider == "anthropic":
            return {"role": "assistant", "content": self._raw["content_blocks"]}
        return self._raw["message"]

    def build_continuation(self, tool_results: list[dict]) -> list[dict]:
        """Build messages to append for the next LLM round.

        Args: tool_results = [{"id": str, "result": str, "is_error": bool}, ...]
        Returns: list of message dicts (provider-formatted)
        """
        if self._provider == "anthropic":
            return [
                self.assistant_message(),
                {"role": "user", "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": r["id"],
                        "content": r["result"],
                        "is_error": bool(r.get("is_error")),
                    }
                    for r in tool_results
                ]},
            ]
        msgs = [self.assistant_message()]
        for r in tool_results:
            msgs.append({"role": "tool", "tool_call_id": r["id"], "content": r["result"]})
        return msgs


# (messages, tools, max_tokens) -> CompletionRound
Completer = Callable[[list[dict], "list[dict] | None", int], CompletionRound]


def _check_response(resp: httpx.Response) -> None:
    """Raise ModelError with the API error message on failure."""
    if resp.status_code >= 400:
        try:
            error_data = resp.json()
            # Anthropic and OpenAI: {"error": {"message": "..."}}
            error_msg = error_data.get("error", {}).get("message", resp.text)
        except ValueError:
            error_msg = resp.text
        raise ModelError(f"API error ({resp.status_code}): {error_msg}")


def raw_completion(
    base_url: str,
    model: str,
    messages: list[dict],
    api_key: str | None = None,
    provider: str = "anthropic",
    tools: list[dict] | None = None,
    max_tokens: int = 4096,
    timeout: float = 600.0,
) -> CompletionRound:
    """Single-round completion for engine-driven tool loops."""
    if provider == "anthropic":
        return _anthropic_raw(base_url, model, messages, api_key, tools, max_tokens, timeout)
    return _openai_raw(base_url, model, messages, api_key, tools, max_tokens, timeout)


def _anthropic_raw(
    base_url: str,
    model: str,
    messages: list[dict],
    api_key: str | None,
    tools: list[dict] | None,
    max_tokens: int,
    timeout: float,
) -> CompletionRound:
    url = f"{base_url.rstrip('/')}/v1/messages"
    headers = {
        "x-api-key": api_key or "",
        "anthropic-version": "2023-06-01",
        "content-type": "application/json",
    }

    # Anthropic: system is a top-level field, not a message
    system = None
    chat_messages = []
    for msg in messages:
        if msg["role"] == "system":
            system = msg["content"]
        elif msg.get("content"):
            chat_messages.append({"role": msg["role"], "content": msg["content"]})

    body = {
        "model": model,
        "max_tokens": max_tokens,
        "messages": chat_messages,
    }
    if system:
        body["system"] = [
            {
                "type": "text",
                "text": system,
                "cache_control": {"type": "ephemeral"},
            }
        ]
    if tools:
        body["tools"] = tools

    resp = httpx.post(url, json=body, headers=headers, timeout=timeout)
    _check_response(resp)
    data = resp.json()

    usage = data.get("usage", {})
    if usage:
        logger.debug(
            f"[MODEL] tokens in={usage.get('input_tokens', 0)} "
            f"out={usage.get('output_tokens', 0)} "
            f"cache_read={usage.get('cache_read_input_tokens', 0)}"
        )

    content_blocks = data.get("content", [])
    stop_reason = data.get("stop_reason", "")
    text_parts = []
    tool_calls = []

    # If stopped due to max_tokens, tool_use blocks may be truncated;
    # discard them to avoid executing malformed tool calls
    include_tools = stop_reason != "max_tokens"

    for block in content_blocks:
        if block["type"] == "text":
            text_parts.append(block["text"])
        elif block["type"] == "tool_use" and include_tools:
            tool_calls.append({"name": block["name"], "input": block["input"], "id": block["id"]})

    if not include_tools:
        content_blocks = [b for b in content_blocks if b["type"] != "tool_use"]
        if not text_parts:
            text_parts.append(
                "[Output was truncated due to length. "
                "Try breaking large file writes into smaller pieces.]"
            )
            content_blocks = [{"type": "text", "text": text_parts[0]}]

    return CompletionRound(
        content="\n\n".join(text_parts),
        tool_calls=tool_calls,
        _provider="anthropic",
        _raw={"content_blocks": content_blocks},
        stop_reason=stop_reason,
    )


def _openai_raw(
    base_url: str,
    model: str,
    messages: list[dict],
    api_key: str | None,
    tools: list[dict] | None,
    max_tokens: int,
    timeout: float,
) -> CompletionRound:
    url = f"{base_url.rstrip('/')}/v1/chat/completions"
    headers = {}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    body: dict = {"model": model, "messages": messages, "max_tokens": max_tokens}
    if tools:
        body["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t["input_schema"],
                },
            }
            for t in tools
        ]

    resp = httpx.post(url, json=body, headers=headers, timeout=timeout)
    _check_response(resp)
    data = resp.json()
    choice = data["choices"][0]
    message = choice["message"]

    content = message.get("content") or ""
    tool_calls = []
    for tc in message.get("tool_calls") or []:
        try:
            arguments = json.loads(tc["function"]["arguments"] or "{}")
        except json.JSONDecodeError:
            arguments = {}
        tool_calls.append({"name": tc["function"]["name"], "input": arguments, "id": tc["id"]})

    return CompletionRound(
        content=content,
        tool_calls=tool_calls,
        _provider="openai",
        _raw={"message": message},
        stop_reason=choice.get("finish_reason") or "",
    )


def make_completer(model_config: ModelConfigDict) -> Completer:
    """Bind a model config to a (messages, tools, max_tokens) completer."""
    def complete(messages: list[dict], tools: list[dict] | None = None, max_tokens: int = 4096) -> CompletionRound:
        return raw_completion(
            base_url=model_config["base_url"],
            model=model_config["model"],
            messages=messages,
            api_key=model_config.get("api_key"),
            provider=model_config.get("provider", "anthropic"),
            tools=tools,
            max_tokens=max_tokens,
            timeout=model_config.get("timeout_seconds", 600.0),
        )
    return complete


def text_round(text: str, provider: str = "anthropic") -> CompletionRound:
    """Wrap plain text as a tool-free round."""
    if provider == "anthropic":
        raw = {"content_blocks": [{"type": "text", "text": text}]}
    else:
        raw = {"message": {"role": "assistant", "content": text}}
    return CompletionRound(content=text, tool_calls=[], _provider=provider, _raw=raw)
