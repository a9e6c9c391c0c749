"""
Tool registry and dispatch boundary.

Each tool is registered with:
- name: a ToolName member, matching the name advertised to the model
- description: for the LLM
- parameters: JSON Schema for the tool input
- input_model: pydantic model that validates and normalizes the raw input
- handler: callable(ctx, args) -> dict

``dispatch_tool`` is the only way the loop runs a tool. It always returns a
ToolResult; no tool failure propagates past it.
"""
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from memagent.errors import ToolError, TransportError
from memagent.logging import logger


class ToolName(str, Enum):
    SEARCH_EVIDENCE = "search_evidence"
    READ_ASSET_TEXT = "read_asset_text"
    LIST_ASSETS = "list_assets"
    RECORD_MEMORY = "record_memory"
    ATTACH_ASSET_TO_MEMORY = "attach_asset_to_memory"
    LIST_ARTIFACTS = "list_artifacts"
    INDEX_ARTIFACT_PAGEINDEX = "index_artifact_pageindex"
    READ_DOCUMENT_NODE = "read_document_node"


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    parameters: Dict[str, Any]
    input_model: Type[BaseModel]
    handler: Callable[..., Dict[str, Any]]


@dataclass
class ToolResult:
    """Outcome of one tool call: a success payload or an error message."""
    ok: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    kind: Optional[str] = None  # error kind: input, rejected, transport, unknown_tool, dropped, internal
    duration_ms: int = 0

    @classmethod
    def success(cls, payload: Dict[str, Any]) -> "ToolResult":
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, error: str, kind: str) -> "ToolResult":
        return cls(ok=False, error=error, kind=kind)

    def content(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, **self.payload}
        return {"ok": False, "error": self.error}

    def to_block(self, tool_use_id: str) -> Dict[str, Any]:
        block = {
            "type": "tool_result",
            "tool_use_id": tool_use_id,
            "content": json.dumps(self.content(), default=str),
        }
        if not self.ok:
            block["is_error"] = True
        return block


_REGISTRY: Dict[ToolName, ToolSpec] = {}


def register_tool(
    name: ToolName,
    description: str,
    parameters: Dict[str, Any],
    input_model: Type[BaseModel],
    handler: Callable[..., Dict[str, Any]],
):
    """Register a tool in the registry."""
    _REGISTRY[name] = ToolSpec(
        name=name,
        description=description,
        parameters=parameters,
        input_model=input_model,
        handler=handler,
    )


def get_tool(name: str) -> ToolSpec:
    """Return the spec for a registered tool. Raises KeyError for unknown names."""
    try:
        return _REGISTRY[ToolName(name)]
    except ValueError:
        raise KeyError(name) from None


def missing_tools() -> List[str]:
    """ToolName members without a registered handler; empty when the registry is complete."""
    return [t.value for t in ToolName if t not in _REGISTRY]


def get_tools_schema() -> List[Dict[str, Any]]:
    """Return tool definitions as {name, description, input_schema}."""
    return [
        {
            "name": spec.name.value,
            "description": spec.description,
            "input_schema": spec.parameters,
        }
        for spec in _REGISTRY.values()
    ]


def _validation_message(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "input"
        msg = str(err.get("msg", "invalid value"))
        # Custom validators report "Value error, <message>"
        parts.append(f"{loc}: {msg.removeprefix('Value error, ')}")
    return "; ".join(parts) or "invalid input"


def dispatch_tool(ctx, name: str, raw_input: Any) -> ToolResult:
    """Validate and run one tool call, converting every failure into an error result."""
    t0 = time.monotonic()
    result = _dispatch(ctx, name, raw_input)
    result.duration_ms = int((time.monotonic() - t0) * 1000)
    return result


def _dispatch(ctx, name: str, raw_input: Any) -> ToolResult:
    try:
        spec = get_tool(name)
    except KeyError:
        return ToolResult.failure(f"Unknown tool: {name}", kind="unknown_tool")

    if raw_input is None:
        raw_input = {}
    if not isinstance(raw_input, dict):
        return ToolResult.failure("Tool input must be a JSON object.", kind="input")

    try:
        args = spec.input_model.model_validate(raw_input)
    except ValidationError as e:
        return ToolResult.failure(_validation_message(e), kind="input")

    try:
        return ToolResult.success(spec.handler(ctx, args))
    except ToolError as e:
        return ToolResult.failure(str(e), kind=e.kind)
    except TransportError as e:
        logger.warning(f"Tool {name} transport failure: {e}")
        return ToolResult.failure(str(e), kind="transport")
    except Exception as e:
        logger.exception(f"Tool {name} failed")
        return ToolResult.failure(str(e) or e.__class__.__name__, kind="internal")


# Expose for convenience
TOOL_REGISTRY = _REGISTRY
