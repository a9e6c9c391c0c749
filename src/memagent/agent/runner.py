"""
Agent runner: bounded tool-use loop.

Drives the conversation between the transcript, the model provider and the
tool dispatcher. Every round either ends the run with a text answer or feeds
tool results back for the next round; after ``max_rounds`` the loop gives up
without an answer and the caller falls back to a deterministic summary.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from memagent.agent.context import RunContext
from memagent.agent.registry import ToolResult, dispatch_tool, get_tools_schema
from memagent.evidence import format_evidence_digest
from memagent.llm.base import ModelProvider, clamp_max_tokens
from memagent.logging import logger

# Ensure all tools are registered on import
import memagent.agent.tools  # noqa: F401

MAX_ROUNDS = 8
MAX_TOOL_CALLS_PER_ROUND = 6
DROPPED_CALL_MESSAGE = (
    f"Not executed: at most {MAX_TOOL_CALLS_PER_ROUND} tool calls are processed per round. "
    "Re-issue it next round if still needed."
)


SYSTEM_PROMPT = """\
You are the Project Memory Agent, a tool-using assistant for a game-dev team.
You are chatting with a user about their project.

You have tools to search project memories and page-indexed documents, read chunks of text assets (logs, config), \
list assets and artifacts, and build or read document indexes.

Rules:
- Use ONLY project memories, document sections and asset contents/metadata as evidence.
- If evidence is insufficient, say so and propose exactly what to record or upload next.
- Cite memories as [mem:<id>], assets as [asset:<id>] and documents as [doc:<artifact_id>#<node_id>] when used.
- Only use record_memory or attach_asset_to_memory when the user explicitly asks you to save, record or attach something.
- Keep the answer concise and action-oriented.
"""


@dataclass
class AgentStep:
    """One step in the agent trace."""
    role: str  # "assistant", "tool"
    content: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_name: Optional[str] = None
    tool_args: Optional[Any] = None
    tool_result: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None


@dataclass
class AgentResult:
    """Final result of an agent loop."""
    steps: List[AgentStep] = field(default_factory=list)
    answer: Optional[str] = None
    model: Optional[str] = None
    rounds: int = 0
    stopped_reason: str = ""  # "complete", "max_rounds"
    notes: List[str] = field(default_factory=list)


def build_initial_messages(query: str, history: List[Dict[str, str]], ctx: RunContext) -> List[Dict[str, Any]]:
    """Prior turns followed by one user turn carrying the evidence digest and the question."""
    # The last turn is the one being answered now; it is re-asked below with the digest
    older = list(history or [])[:-1]

    messages: List[Dict[str, Any]] = [{"role": m["role"], "content": m["content"]} for m in older]
    messages.append({
        "role": "user",
        "content": (
            f"Initial evidence (from memory search):\n{format_evidence_digest(ctx.evidence)}\n\n"
            f"Question:\n{query}\n\n"
            "If you need more evidence, use the tools."
        ),
    })
    return messages


def _summarize_input(raw: Any) -> Any:
    return raw if isinstance(raw, dict) else str(raw)


def run_agent_loop(
    ctx: RunContext,
    provider: ModelProvider,
    query: str,
    history: Optional[List[Dict[str, str]]] = None,
    max_tokens: int = 900,
    model: Optional[str] = None,
    max_rounds: int = MAX_ROUNDS,
) -> AgentResult:
    """
    Execute the agent loop.

    1. Send the transcript + tool schemas to the model provider.
    2. If the reply has tool_use blocks, dispatch up to six of them and feed
       the results back as one user turn.
    3. Repeat until the model replies without tool calls or max_rounds is reached.

    Once the provider discloses which model served a round, that model is
    requested for every following round. Provider errors propagate and fail
    the run.
    """
    result = AgentResult(model=model or None)
    tools = get_tools_schema()
    messages = build_initial_messages(query, history or [], ctx)
    budget = clamp_max_tokens(max_tokens)
    rounds = max(1, min(MAX_ROUNDS, max_rounds))

    for round_num in range(1, rounds + 1):
        logger.info(f"Agent round {round_num}/{rounds}")

        response = provider.complete(
            system=SYSTEM_PROMPT,
            messages=messages,
            tools=tools,
            max_tokens=budget,
            model=result.model,
        )

        result.model = response.model or result.model
        result.rounds = round_num
        ctx.progress.emit(
            "llm_call",
            round=round_num,
            model=result.model,
            stopReason=response.stop_reason,
            toolUses=len(response.tool_uses),
            inputTokens=response.usage.get("input_tokens", 0),
            outputTokens=response.usage.get("output_tokens", 0),
        )

        tool_uses = response.tool_uses

        # No tool calls: the text is the final answer
        if not tool_uses:
            text = response.text
            result.steps.append(AgentStep(role="assistant", content=text))
            result.answer = text or None
            result.stopped_reason = "complete"
            return result

        result.steps.append(AgentStep(
            role="assistant",
            content=response.text or None,
            tool_calls=[{"id": tu.get("id"), "name": tu.get("name"), "input": tu.get("input")} for tu in tool_uses],
        ))
        messages.append({"role": "assistant", "content": response.blocks})

        tool_results: List[Dict[str, Any]] = []
        for tu in tool_uses[:MAX_TOOL_CALLS_PER_ROUND]:
            tool_results.append(_run_tool(ctx, result, tu))

        for tu in tool_uses[MAX_TOOL_CALLS_PER_ROUND:]:
            name = str(tu.get("name") or "")
            logger.warning(f"Dropping tool call {name}: per-round limit reached")
            ctx.progress.emit("tool_result", name=name, ok=False, error="dropped: per-round limit")
            dropped = ToolResult.failure(DROPPED_CALL_MESSAGE, kind="dropped")
            result.steps.append(AgentStep(role="tool", tool_name=name, tool_args=_summarize_input(tu.get("input")), tool_result=dropped.content()))
            tool_results.append(dropped.to_block(str(tu.get("id") or "")))

        # Tool results go back to the model as a user turn
        messages.append({"role": "user", "content": tool_results})

    result.stopped_reason = "max_rounds"
    logger.info(f"Agent loop reached {rounds} rounds without a final answer")
    return result


def _run_tool(ctx: RunContext, result: AgentResult, tool_use: Dict[str, Any]) -> Dict[str, Any]:
    name = str(tool_use.get("name") or "").strip()
    raw_input = tool_use.get("input")

    ctx.progress.emit("tool_call", name=name, input=_summarize_input(raw_input))
    outcome = dispatch_tool(ctx, name, raw_input)

    if outcome.ok:
        ctx.progress.emit("tool_result", name=name, ok=True, durationMs=outcome.duration_ms)
    else:
        logger.info(f"Tool {name} returned error ({outcome.kind}): {outcome.error}")
        ctx.progress.emit("tool_result", name=name, ok=False, error=outcome.error, durationMs=outcome.duration_ms)

    result.steps.append(AgentStep(
        role="tool",
        tool_name=name,
        tool_args=_summarize_input(raw_input),
        tool_result=outcome.content(),
        duration_ms=outcome.duration_ms,
    ))
    return outcome.to_block(str(tool_use.get("id") or ""))

