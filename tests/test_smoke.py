import json
from unittest.mock import MagicMock, patch

from typer.testing import CliRunner

from memagent.cli import app
from memagent.config import Settings
from memagent.driver import RunResult

runner = CliRunner()


def test_settings_load(run_env):
    """Settings load with nothing configured."""
    run_env.setenv("OPENAI_API_KEY", "sk-test-dummy-key")
    settings = Settings()
    assert settings.OPENAI_MODEL_AGENT == "gpt-5"
    assert settings.ANTHROPIC_BASE_URL == "https://api.anthropic.com"


def test_cli_doctor():
    """Verify the doctor command runs and masks secrets."""
    with patch("memagent.cli.settings") as mock_settings:
        mock_settings.SESSION_ID = "sess-1"
        mock_settings.PROJECT_ID = "proj-1"
        mock_settings.API_BASE_URL = "http://knowledge.test"
        mock_settings.PROMPT = "why"
        mock_settings.LLM_PROVIDER = "anthropic"
        mock_settings.provider_model = ""
        mock_settings.secret.side_effect = lambda name: "sk-secret-value" if name == "ANTHROPIC_API_KEY" else ""

        result = runner.invoke(app, ["doctor"])

    assert result.exit_code == 0
    assert "Memory Agent Doctor" in result.stdout
    assert "ANTHROPIC_API_KEY:        ✅ Set" in result.stdout
    assert "OPENAI_API_KEY:           ❌ Missing" in result.stdout
    assert "sk-secret-value" not in result.stdout


def test_cli_tools():
    result = runner.invoke(app, ["tools"])
    assert result.exit_code == 0
    schema = json.loads(result.stdout)
    assert {t["name"] for t in schema} >= {"search_evidence", "read_asset_text", "read_document_node"}


def test_cli_run_overrides_settings(run_env):
    run_env.setenv("SESSION_ID", "from-env")
    fake_main = MagicMock(return_value=RunResult(success=True))

    with patch("memagent.driver.main", fake_main):
        result = runner.invoke(app, ["run", "--session-id", "sess-cli", "--query", "why", "--dry-run"])

    assert result.exit_code == 0
    settings = fake_main.call_args.args[0]
    assert settings.SESSION_ID == "sess-cli"
    assert settings.PROMPT == "why"
    assert settings.DRY_RUN is True


def test_cli_run_failure_exit_code(run_env):
    result = runner.invoke(app, ["run"])
    assert result.exit_code == 1
    line = json.loads(result.stdout.strip().splitlines()[-1])
    assert line["success"] is False
    assert line["error"] == "SESSION_ID is required"
