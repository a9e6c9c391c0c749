import copy
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from memagent.agent.context import RunContext
from memagent.knowledge import KnowledgeClient
from memagent.llm.base import ModelResponse
from memagent.progress import ProgressSink

BASE_URL = "http://knowledge.test"
AUTH = "Bearer test-token"


class RecordingProgressSink(ProgressSink):
    """Keeps events in memory instead of writing JSON lines."""

    def __init__(self, session_id: str = "sess-1"):
        super().__init__(None, session_id)
        self.disabled = False
        self.events: List[Dict[str, Any]] = []

    def emit(self, type: str, **fields: Any) -> None:
        self.events.append({"type": type, "sessionId": self.session_id, **fields})

    def of_type(self, type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["type"] == type]


class FakeKnowledgeService:
    """In-memory knowledge service behind httpx.MockTransport."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Any] = {}

    def route(self, method: str, path: str, response: Any) -> None:
        """*response* is a JSON-able payload, an httpx.Response, or a callable(request) returning either."""
        self.routes[(method, path)] = response

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"error": "not found"})
        response = self.routes[key]
        if callable(response):
            response = response(request)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    def client(self, authorization: str = AUTH) -> KnowledgeClient:
        http = httpx.Client(transport=httpx.MockTransport(self.handle))
        return KnowledgeClient(BASE_URL, authorization, http=http)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def bodies(self, method: str, path: str) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.calls(method, path)]


class FakeProvider:
    """Model provider that replays queued responses and records each request."""

    kind = "anthropic"
    default_model = "claude-test"

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.requests: List[Dict[str, Any]] = []

    def complete(self, *, system, messages, tools, max_tokens, model=None) -> ModelResponse:
        self.requests.append({
            "system": system,
            "messages": copy.deepcopy(messages),
            "tools": tools,
            "max_tokens": max_tokens,
            "model": model,
        })
        if not self.responses:
            raise AssertionError("FakeProvider ran out of responses")
        nxt = self.responses.pop(0)
        if isinstance(nxt, BaseException):
            raise nxt
        if callable(nxt):
            return nxt()
        return nxt


def text_response(text: str, model: str = "claude-test") -> ModelResponse:
    return ModelResponse(
        blocks=[{"type": "text", "text": text}],
        model=model,
        stop_reason="end_turn",
        usage={"input_tokens": 10, "output_tokens": 5},
    )


def tool_response(*calls: Tuple[str, Any], model: str = "claude-test", text: str = "") -> ModelResponse:
    blocks: List[Dict[str, Any]] = []
    if text:
        blocks.append({"type": "text", "text": text})
    for i, (name, args) in enumerate(calls, 1):
        blocks.append({"type": "tool_use", "id": f"toolu_{len(blocks)}_{i}", "name": name, "input": args})
    return ModelResponse(blocks=blocks, model=model, stop_reason="tool_use", usage={"input_tokens": 10, "output_tokens": 5})


def memory(mem_id: str, title: str = "", category: str = "bug", **extra: Any) -> Dict[str, Any]:
    return {
        "id": mem_id,
        "project_id": "proj-1",
        "category": category,
        "title": title or f"Memory {mem_id}",
        "content_excerpt": f"Details for {mem_id}",
        "tags": ["crash"],
        "confidence": 0.8,
        "updated_at": "2025-01-01T00:00:00Z",
        **extra,
    }


def asset(asset_id: str, status: str = "ready", content_type: str = "text/plain", **extra: Any) -> Dict[str, Any]:
    return {
        "id": asset_id,
        "project_id": "proj-1",
        "status": status,
        "content_type": content_type,
        "byte_size": 42,
        "original_name": f"{asset_id}.log",
        "created_at": "2025-01-01T00:00:00Z",
        **extra,
    }


def document(artifact_id: str, node_id: str, title: str = "Section", **extra: Any) -> Dict[str, Any]:
    return {
        "kind": "pageindex",
        "artifact_id": artifact_id,
        "project_id": "proj-1",
        "node_id": node_id,
        "title": title,
        "path": ["Manual", title],
        "excerpt": f"Excerpt of {title}",
        "score": 3,
        **extra,
    }


def ask_payload(memories=(), assets_index=None, documents=()) -> Dict[str, Any]:
    return {
        "retrieved": {
            "memories": list(memories),
            "assets_index": assets_index or {},
            "documents": list(documents),
        }
    }


@pytest.fixture
def service() -> FakeKnowledgeService:
    return FakeKnowledgeService()


@pytest.fixture
def progress() -> RecordingProgressSink:
    return RecordingProgressSink()


@pytest.fixture
def ctx(service, progress):
    knowledge = service.client()
    yield RunContext(knowledge=knowledge, project_id="proj-1", session_id="sess-1", progress=progress)
    knowledge.close()


@pytest.fixture
def run_env(monkeypatch, tmp_path):
    """Clears run-related environment so Settings() only sees what a test sets."""
    for name in (
        "SESSION_ID", "PROJECT_ID", "PROMPT", "API_BASE_URL", "AUTHORIZATION", "HISTORY_JSON",
        "DRY_RUN", "INCLUDE_ASSETS", "MEMORY_MODE", "EVIDENCE_LIMIT", "MAX_TOKENS", "MAX_ROUNDS",
        "LLM_PROVIDER", "LLM_TIMEOUT_MS", "ANTHROPIC_API_KEY", "ANTHROPIC_MODEL", "ANTHROPIC_VERSION",
        "ANTHROPIC_BASE_URL", "OPENAI_API_KEY", "OPENAI_MODEL_AGENT", "PROGRESS_PATH", "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.chdir(tmp_path)
    return monkeypatch
