"""
Provider-neutral model response.

The transcript is kept in content-block form (``text``, ``tool_use``,
``tool_result``); providers that speak another wire format translate at their
own boundary.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

MIN_MAX_TOKENS = 128
MAX_MAX_TOKENS = 2048


def clamp_max_tokens(n: int) -> int:
    return max(MIN_MAX_TOKENS, min(MAX_MAX_TOKENS, int(n)))


@dataclass
class ModelResponse:
    blocks: List[Dict[str, Any]]
    model: str
    stop_reason: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def tool_uses(self) -> List[Dict[str, Any]]:
        return [b for b in self.blocks if isinstance(b, dict) and b.get("type") == "tool_use"]

    @property
    def text(self) -> str:
        return "".join(
            b["text"] for b in self.blocks
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ).strip()


class ModelProvider(Protocol):
    kind: str
    default_model: str

    def complete(
        self,
        *,
        system: str,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        max_tokens: int,
        model: Optional[str] = None,
    ) -> ModelResponse:
        ...
