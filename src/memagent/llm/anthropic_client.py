from typing import Any, Dict, List, Optional

from memagent.errors import HttpStatusError, ProviderError
from memagent.llm.base import ModelResponse, clamp_max_tokens
from memagent.logging import logger
from memagent.transport import request_json

DEFAULT_MODEL = "claude-opus-4-5-20251101"
DEFAULT_VERSION = "2023-06-01"
DEFAULT_BASE_URL = "https://api.anthropic.com"


class AnthropicClient:
    """Messages API client over the shared transport layer."""

    kind = "anthropic"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "",
        version: str = "",
        base_url: str = DEFAULT_BASE_URL,
        timeout_ms: int = 120_000,
        http=None,
    ):
        if not (api_key or "").strip():
            raise ValueError("ANTHROPIC_API_KEY is required")
        self._api_key = api_key.strip()
        self.default_model = (model or "").strip() or DEFAULT_MODEL
        self.version = (version or "").strip() or DEFAULT_VERSION
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout_ms = timeout_ms
        self._http = http

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
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": clamp_max_tokens(max_tokens),
            "system": system,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
        }
        if tools:
            payload["tools"] = tools

        try:
            data = request_json(
                f"{self.base_url}/v1/messages",
                method="POST",
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": self.version,
                },
                json=payload,
                timeout_ms=self.timeout_ms,
                client=self._http,
            )
        except HttpStatusError as e:
            logger.error(f"Anthropic API error ({e.status})")
            raise ProviderError(f"Anthropic API error ({e.status}): {e.body or e.reason}") from e

        if not isinstance(data, dict):
            raise ProviderError("Anthropic API returned an empty response")

        blocks = data.get("content")
        usage = data.get("usage") or {}
        return ModelResponse(
            blocks=blocks if isinstance(blocks, list) else [],
            model=str(data.get("model") or model),
            stop_reason=data.get("stop_reason"),
            usage={
                "input_tokens": int(usage.get("input_tokens") or 0),
                "output_tokens": int(usage.get("output_tokens") or 0),
            },
        )
