"""
Run driver: one process invocation, one RunResult line.

    validate config -> seed retrieval -> agent loop (unless disabled) -> fallback -> emit

``main`` owns the output contract. Whatever happens inside, including a
configuration that cannot be loaded, exactly one RunResult JSON line is
written to the result stream.
"""
import json
import os
import sys
from typing import List, Optional, TextIO

from pydantic import BaseModel, ConfigDict, Field

from memagent.agent.context import RunContext
from memagent.agent.runner import run_agent_loop
from memagent.config import Settings
from memagent.errors import ConfigError
from memagent.evidence import EvidenceSet, build_fallback_answer
from memagent.knowledge import KnowledgeClient, normalize_base_url
from memagent.llm.anthropic_client import AnthropicClient
from memagent.llm.base import ModelProvider
from memagent.llm.openai_client import OpenAIClient
from memagent.logging import logger, set_session_id
from memagent.progress import ProgressSink

DRY_RUN_NOTE = "dry_run=true: retrieval only (no synthesis)."
NO_ANSWER_NOTE = "Agent loop ended without a final text answer; returning best-effort fallback."


class ProviderInfo(BaseModel):
    kind: str = "none"  # none, anthropic, openai
    model: Optional[str] = None


class RunResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    session_id: str = Field("", alias="sessionId")
    project_id: str = Field("", alias="projectId")
    query: str = ""
    provider: ProviderInfo = Field(default_factory=ProviderInfo)
    retrieved: EvidenceSet = Field(default_factory=EvidenceSet)
    answer: Optional[str] = None
    notes: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    def to_json_line(self) -> str:
        data = self.model_dump(mode="json", by_alias=True)
        if data["error"] is None:
            data.pop("error")
        if data["provider"]["model"] is None:
            data["provider"].pop("model")
        return json.dumps(data, ensure_ascii=False)


def required(name: str, value: Optional[str]) -> str:
    s = (value or "").strip()
    if not s:
        raise ConfigError(f"{name} is required")
    return s


def build_provider(settings: Settings) -> ModelProvider:
    if settings.LLM_PROVIDER == "openai":
        return OpenAIClient(
            settings.secret("OPENAI_API_KEY"),
            model=settings.OPENAI_MODEL_AGENT,
            timeout_ms=settings.LLM_TIMEOUT_MS,
        )
    return AnthropicClient(
        settings.secret("ANTHROPIC_API_KEY"),
        model=settings.ANTHROPIC_MODEL,
        version=settings.ANTHROPIC_VERSION,
        base_url=settings.ANTHROPIC_BASE_URL,
        timeout_ms=settings.LLM_TIMEOUT_MS,
    )


def execute_run(
    settings: Settings,
    progress: ProgressSink,
    knowledge: Optional[KnowledgeClient] = None,
    provider: Optional[ModelProvider] = None,
) -> RunResult:
    """Run the agent once. Raises on fatal errors; ``main`` turns those into a failure result."""
    session_id = required("SESSION_ID", settings.SESSION_ID)
    project_id = required("PROJECT_ID", settings.PROJECT_ID)
    query = required("PROMPT", settings.PROMPT)
    base_url = normalize_base_url(required("API_BASE_URL", settings.API_BASE_URL))

    progress.status("sandbox agent started", projectId=project_id)

    owns_knowledge = knowledge is None
    if owns_knowledge:
        knowledge = KnowledgeClient(base_url, settings.secret("AUTHORIZATION"))
    try:
        ctx = RunContext(
            knowledge=knowledge,
            project_id=project_id,
            session_id=session_id,
            evidence_limit=settings.EVIDENCE_LIMIT,
            include_assets=settings.INCLUDE_ASSETS,
            memory_mode=settings.MEMORY_MODE,
            progress=progress,
        )

        progress.status("retrieving evidence from knowledge service")
        ctx.retrieve(query)
        progress.emit(
            "evidence",
            memoryCount=len(ctx.evidence.memories),
            docCount=len(ctx.evidence.documents),
            assetCount=ctx.evidence.asset_count(),
        )

        provider_info = ProviderInfo()
        answer: Optional[str] = None
        notes: List[str] = []

        if settings.DRY_RUN:
            notes.append(DRY_RUN_NOTE)
        elif provider is None and not settings.secret(settings.provider_key_name):
            notes.append(f"{settings.provider_key_name} not configured for this run (no synthesis).")
        else:
            provider = provider or build_provider(settings)
            progress.status(f"running agent loop ({provider.kind} tools)")
            loop = run_agent_loop(
                ctx,
                provider,
                query,
                history=settings.history,
                max_tokens=settings.MAX_TOKENS,
                model=settings.provider_model or None,
                max_rounds=settings.MAX_ROUNDS,
            )
            logger.info(f"Agent loop finished: {loop.stopped_reason} after {loop.rounds} round(s)")
            notes.extend(loop.notes)
            answer = loop.answer
            provider_info = ProviderInfo(kind=provider.kind, model=loop.model)
            if not answer:
                notes.append(NO_ANSWER_NOTE)

        if not answer:
            answer = build_fallback_answer(ctx.evidence)

        progress.status("done", cache=ctx.cache.stats())
        return RunResult(
            success=True,
            session_id=session_id,
            project_id=project_id,
            query=query,
            provider=provider_info,
            retrieved=ctx.evidence,
            answer=answer,
            notes=notes,
        )
    finally:
        if owns_knowledge:
            knowledge.close()


def failure_result(error: BaseException, settings: Optional[Settings] = None) -> RunResult:
    """Failure result using whatever run identifiers are resolvable."""
    def resolve(name: str) -> str:
        value = getattr(settings, name, None) if settings is not None else None
        return (value if isinstance(value, str) else os.environ.get(name, "")).strip()

    return RunResult(
        success=False,
        session_id=resolve("SESSION_ID"),
        project_id=resolve("PROJECT_ID"),
        query=resolve("PROMPT"),
        provider=ProviderInfo(),
        retrieved=EvidenceSet(),
        answer=None,
        notes=[],
        error=str(error) or error.__class__.__name__,
    )


def emit_result(result: RunResult, out: TextIO) -> None:
    out.write(result.to_json_line() + "\n")
    out.flush()


def main(
    settings: Optional[Settings] = None,
    *,
    out: Optional[TextIO] = None,
    progress: Optional[ProgressSink] = None,
    knowledge: Optional[KnowledgeClient] = None,
    provider: Optional[ModelProvider] = None,
) -> RunResult:
    """Run once and write exactly one RunResult line to *out* (stdout by default)."""
    out = out or sys.stdout
    owns_progress = progress is None
    try:
        try:
            settings = settings or Settings()
            set_session_id(settings.SESSION_ID)
            if owns_progress:
                progress = ProgressSink.open(settings.PROGRESS_PATH, settings.SESSION_ID)
            result = execute_run(settings, progress, knowledge=knowledge, provider=provider)
        except KeyboardInterrupt as e:
            emit_result(failure_result(e, settings), out)
            raise
        except Exception as e:
            logger.error(f"Run failed: {e}")
            if progress is None:
                progress = ProgressSink.stderr(os.environ.get("SESSION_ID", "").strip())
            progress.emit("error", message=str(e))
            result = failure_result(e, settings)
        emit_result(result, out)
        return result
    finally:
        if owns_progress and progress is not None:
            progress.close()
