import json
from typing import Any, Dict, List, Optional

from openai import OpenAI, OpenAIError

from memagent.errors import ProviderError
from memagent.llm.base import ModelResponse, clamp_max_tokens
from memagent.logging import logger

DEFAULT_MODEL = "gpt-5"


def to_openai_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert {name, description, input_schema} tool specs to function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t["description"],
                "parameters": t["input_schema"],
            },
        }
        for t in tools
    ]


def to_openai_messages(system: str, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Translate a content-block transcript to chat-completions messages."""
    out: List[Dict[str, Any]] = [{"role": "system", "content": system}]
    for m in messages:
        role, content = m["role"], m["content"]
        if isinstance(content, str):
            out.append({"role": role, "content": content})
            continue

        if role == "assistant":
            text = "".join(b.get("text", "") for b in content if b.get("type") == "text")
            msg: Dict[str, Any] = {"role": "assistant", "content": text or None}
            calls = [
                {
                    "id": b["id"],
                    "type": "function",
                    "function": {"name": b["name"], "arguments": json.dumps(b.get("input") or {})},
                }
                for b in content if b.get("type") == "tool_use"
            ]
            if calls:
                msg["tool_calls"] = calls
            out.append(msg)
            continue

        # user turn: tool results become tool messages, any text stays a user message
        texts = []
        for b in content:
            if b.get("type") == "tool_result":
                out.append({"role": "tool", "tool_call_id": b["tool_use_id"], "content": b.get("content", "")})
            elif b.get("type") == "text":
                texts.append(b.get("text", ""))
        if texts:
            out.append({"role": "user", "content": "".join(texts)})
    return out


def _parse_arguments(raw: Optional[str]) -> Any:
    try:
        return json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        # Hand the raw string through; dispatch rejects non-object input.
        return raw


class OpenAIClient:
    """Chat-completions tool calling, presented as content blocks."""

    kind = "openai"

    def __init__(self, api_key: str, *, model: str = "", timeout_ms: int = 120_000, client: Optional[OpenAI] = None):
        self.default_model = (model or "").strip() or DEFAULT_MODEL
        # Retries stay with the caller; the SDK's own retry loop is disabled.
        self.client = client or OpenAI(api_key=api_key, timeout=timeout_ms / 1000.0, max_retries=0)

    def complete(
        self,
        *,
        system: str,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        max_tokens: int,
        model: Optional[str] = None,
    ) -> ModelResponse:
        model = (model or "").strip() or self.default_model
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": to_openai_messages(system, messages),
            "max_completion_tokens": clamp_max_tokens(max_tokens),
        }
        if tools:
            kwargs["tools"] = to_openai_tools(tools)

        try:
            response = self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            logger.error(f"OpenAI API call failed: {e}")
            raise ProviderError(f"OpenAI API error: {e}") from e

        if not response.choices:
            raise ProviderError("OpenAI API returned no choices")
        choice = response.choices[0]
        message = choice.message

        blocks: List[Dict[str, Any]] = []
        if message.content:
            blocks.append({"type": "text", "text": message.content})
        for tc in message.tool_calls or []:
            blocks.append({
                "type": "tool_use",
                "id": tc.id,
                "name": tc.function.name,
                "input": _parse_arguments(tc.function.arguments),
            })

        usage = response.usage
        return ModelResponse(
            blocks=blocks,
            model=getattr(response, "model", None) or model,
            stop_reason=choice.finish_reason,
            usage={
                "input_tokens": usage.prompt_tokens if usage else 0,
                "output_tokens": usage.completion_tokens if usage else 0,
            },
        )
