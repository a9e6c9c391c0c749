import io
import json
from unittest.mock import patch

import httpx
import pytest

from memagent.config import Settings
from memagent.driver import (
    DRY_RUN_NOTE,
    NO_ANSWER_NOTE,
    RunResult,
    build_provider,
    execute_run,
    failure_result,
    main,
)
from memagent.llm.anthropic_client import AnthropicClient
from memagent.llm.openai_client import OpenAIClient

from conftest import (
    FakeProvider,
    RecordingProgressSink,
    asset,
    ask_payload,
    document,
    memory,
    text_response,
    tool_response,
)


def make_settings(**overrides):
    values = {
        "SESSION_ID": "sess-1",
        "PROJECT_ID": "proj-1",
        "PROMPT": "why did PIE crash",
        "API_BASE_URL": "http://knowledge.test/",
    }
    values.update(overrides)
    return Settings(**values)


def run(settings, service, provider=None):
    out = io.StringIO()
    progress = RecordingProgressSink()
    result = main(settings, out=out, progress=progress, knowledge=service.client(), provider=provider)
    lines = out.getvalue().splitlines()
    assert len(lines) == 1
    return result, json.loads(lines[0]), progress


def test_pie_crash_scenario(run_env, service):
    service.route("POST", "/api/agent/ask", ask_payload(
        [memory("m1", title="PIE crash on shader compile"), memory("m2", title="Editor OOM")],
        documents=[document("art1", "n3", title="Crash handling")],
    ))
    service.route("GET", "/api/assets/X", asset("X", status="uploading"))
    provider = FakeProvider([
        tool_response(("read_asset_text", {"asset_id": "X"})),
        text_response("PIE crashed in shader compilation [mem:m1]."),
    ])

    result, line, _ = run(make_settings(), service, provider)

    assert line["success"] is True
    assert line["sessionId"] == "sess-1"
    assert line["projectId"] == "proj-1"
    assert line["query"] == "why did PIE crash"
    assert line["answer"] == "PIE crashed in shader compilation [mem:m1]."
    assert line["notes"] == []
    assert line["provider"] == {"kind": "anthropic", "model": "claude-test"}
    assert "error" not in line
    assert [m["id"] for m in line["retrieved"]["memories"]] == ["m1", "m2"]
    assert [(d["artifact_id"], d["node_id"]) for d in line["retrieved"]["documents"]] == [("art1", "n3")]
    assert line["retrieved"]["assets_index"] == {}

    rejected = json.loads(provider.requests[1]["messages"][-1]["content"][0]["content"])
    assert rejected == {"ok": False, "error": "Asset is not ready (status=uploading)"}
    assert service.calls("GET", "/api/assets/X/object") == []
    assert result.success


def test_dry_run_without_matches(run_env, service):
    service.route("POST", "/api/agent/ask", ask_payload())
    provider = FakeProvider()

    _, line, progress = run(make_settings(DRY_RUN="true"), service, provider)

    assert line["success"] is True
    assert "No memories matched this query." in line["answer"]
    assert line["notes"] == [DRY_RUN_NOTE]
    assert line["provider"] == {"kind": "none"}
    assert provider.requests == []
    assert progress.of_type("evidence")[0]["memoryCount"] == 0


def test_seed_request_uses_run_settings(run_env, service):
    service.route("POST", "/api/agent/ask", ask_payload())
    settings = make_settings(DRY_RUN=True, EVIDENCE_LIMIT="20", INCLUDE_ASSETS="yes", MEMORY_MODE="deep")

    run(settings, service)

    body = service.bodies("POST", "/api/agent/ask")[0]
    assert body["query"] == "why did PIE crash"
    assert body["project_id"] == "proj-1"
    assert body["limit"] == 20
    assert body["include_assets"] is True
    assert body["memory_mode"] == "deep"
    assert body["dry_run"] is True


def test_missing_key_skips_synthesis(run_env, service):
    service.route("POST", "/api/agent/ask", ask_payload([memory("m1", title="Known crash")]))

    _, line, _ = run(make_settings(), service)

    assert line["success"] is True
    assert line["notes"] == ["ANTHROPIC_API_KEY not configured for this run (no synthesis)."]
    assert line["answer"].startswith("No synthesis answer available.")
    assert "- [mem:m1] Known crash (bug)" in line["answer"]


def test_missing_openai_key_is_named(run_env, service):
    service.route("POST", "/api/agent/ask", ask_payload())
    _, line, _ = run(make_settings(LLM_PROVIDER="openai"), service)
    assert line["notes"] == ["OPENAI_API_KEY not configured for this run (no synthesis)."]


def test_round_exhaustion_falls_back(run_env, service):
    service.route("POST", "/api/agent/ask", ask_payload([memory("m1")]))
    provider = FakeProvider([tool_response(("search_evidence", {"query": "more"})) for _ in range(3)])

    _, line, _ = run(make_settings(MAX_ROUNDS="3"), service, provider)

    assert line["success"] is True
    assert line["notes"] == [NO_ANSWER_NOTE]
    assert line["answer"].startswith("No synthesis answer available.")
    assert len(provider.requests) == 3
    # seed query plus one distinct tool query; repeats are cache hits
    assert len(service.calls("POST", "/api/agent/ask")) == 2


def test_seed_retrieval_is_shared_with_identical_tool_call(run_env, service):
    service.route("POST", "/api/agent/ask", ask_payload([memory("m1")]))
    provider = FakeProvider([
        tool_response(("search_evidence", {"query": "why did PIE crash"})),
        text_response("done"),
    ])

    run(make_settings(), service, provider)

    assert len(service.calls("POST", "/api/agent/ask")) == 1


def test_loop_evidence_replaces_seed_evidence(run_env, service):
    def ask(request):
        query = json.loads(request.content)["query"]
        if query == "why did PIE crash":
            return ask_payload([memory("m1")])
        return ask_payload([memory("m1"), memory("m9")])

    service.route("POST", "/api/agent/ask", ask)
    provider = FakeProvider([
        tool_response(("search_evidence", {"query": "shader cache"})),
        text_response("See [mem:m9]."),
    ])

    _, line, _ = run(make_settings(), service, provider)

    assert [m["id"] for m in line["retrieved"]["memories"]] == ["m1", "m9"]


def test_provider_failure_fails_run(run_env, service):
    from memagent.errors import ProviderError

    service.route("POST", "/api/agent/ask", ask_payload([memory("m1")]))
    provider = FakeProvider([ProviderError("Anthropic API error (401): invalid x-api-key")])

    result, line, progress = run(make_settings(), service, provider)

    assert result.success is False
    assert line["success"] is False
    assert line["error"] == "Anthropic API error (401): invalid x-api-key"
    assert line["answer"] is None
    assert line["provider"] == {"kind": "none"}
    assert progress.of_type("error")[0]["message"] == "Anthropic API error (401): invalid x-api-key"


@pytest.mark.parametrize("missing", ["SESSION_ID", "PROJECT_ID", "PROMPT", "API_BASE_URL"])
def test_missing_required_parameter(run_env, service, missing):
    _, line, progress = run(make_settings(**{missing: "   "}), service)

    assert line["success"] is False
    assert line["error"] == f"{missing} is required"
    assert line["answer"] is None
    assert line["notes"] == []
    assert line["provider"] == {"kind": "none"}
    assert line["retrieved"] == {"memories": [], "assets_index": {}, "documents": []}
    assert service.requests == []
    assert progress.of_type("error")[0]["message"] == f"{missing} is required"


def test_seed_failure_is_fatal(run_env, service):
    service.route("POST", "/api/agent/ask", httpx.Response(502, text="bad gateway"))

    _, line, _ = run(make_settings(), service)

    assert line["success"] is False
    assert line["error"].startswith("HTTP 502 Bad Gateway")
    assert line["sessionId"] == "sess-1"
    assert line["query"] == "why did PIE crash"


def test_settings_failure_still_emits_one_line(run_env):
    run_env.setenv("SESSION_ID", "sess-env")
    run_env.setenv("PROJECT_ID", "proj-env")
    out = io.StringIO()

    with patch("memagent.driver.Settings", side_effect=RuntimeError("settings exploded")):
        result = main(out=out, progress=RecordingProgressSink())

    lines = out.getvalue().splitlines()
    assert len(lines) == 1
    line = json.loads(lines[0])
    assert line["success"] is False
    assert line["error"] == "settings exploded"
    assert line["sessionId"] == "sess-env"
    assert line["projectId"] == "proj-env"
    assert not result.success


def test_interrupt_emits_line_and_propagates(run_env, service):
    service.route("POST", "/api/agent/ask", ask_payload())
    out = io.StringIO()

    with patch("memagent.driver.execute_run", side_effect=KeyboardInterrupt()):
        with pytest.raises(KeyboardInterrupt):
            main(make_settings(), out=out, progress=RecordingProgressSink())

    line = json.loads(out.getvalue())
    assert line["success"] is False
    assert line["error"] == "KeyboardInterrupt"


def test_progress_events(run_env, service):
    service.route("POST", "/api/agent/ask", ask_payload([memory("m1")], documents=[document("a", "1")]))
    provider = FakeProvider([text_response("ok")])

    _, _, progress = run(make_settings(), service, provider)

    messages = [e["message"] for e in progress.of_type("status")]
    assert messages[0] == "sandbox agent started"
    assert messages[-1] == "done"
    assert progress.of_type("evidence")[0] == {
        "type": "evidence", "sessionId": "sess-1", "memoryCount": 1, "docCount": 1, "assetCount": 0,
    }
    assert progress.of_type("status")[-1]["cache"] == {"hits": 0, "misses": 1}
    assert all("Bearer" not in json.dumps(e) for e in progress.events)


def test_execute_run_owns_knowledge_client(run_env):
    settings = make_settings(DRY_RUN=True)
    with patch("memagent.driver.KnowledgeClient") as mock_client:
        mock_client.return_value.ask.return_value = ask_payload()
        result = execute_run(settings, RecordingProgressSink())

    mock_client.assert_called_once_with("http://knowledge.test", "")
    mock_client.return_value.close.assert_called_once()
    assert result.success


def test_run_result_json_shape():
    line = json.loads(RunResult(success=True, session_id="s", project_id="p", query="q").to_json_line())
    assert set(line) == {"success", "sessionId", "projectId", "query", "provider", "retrieved", "answer", "notes"}

    failed = json.loads(failure_result(ValueError("bad")).to_json_line())
    assert failed["error"] == "bad"
    assert failed["answer"] is None


def test_build_provider(run_env):
    anthropic = build_provider(make_settings(ANTHROPIC_API_KEY="sk-ant", ANTHROPIC_MODEL="claude-x"))
    assert isinstance(anthropic, AnthropicClient)
    assert anthropic.default_model == "claude-x"
    assert anthropic.version == "2023-06-01"

    openai = build_provider(make_settings(LLM_PROVIDER="openai", OPENAI_API_KEY="sk-oai"))
    assert isinstance(openai, OpenAIClient)
    assert openai.default_model == "gpt-5"
