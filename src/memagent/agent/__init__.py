from memagent.agent.runner import run_agent_loop
from memagent.agent.registry import TOOL_REGISTRY, get_tools_schema

__all__ = [
    "run_agent_loop",
    "TOOL_REGISTRY",
    "get_tools_schema",
]
