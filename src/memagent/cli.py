import json
import sys
from typing import Optional

import typer

from memagent.config import Settings, settings
from memagent.logging import get_session_id, logger, set_log_level

app = typer.Typer(no_args_is_help=True)


@app.callback()
def main():
    """
    Project memory agent CLI.
    """
    pass


@app.command(name="run")
def run(
    session_id: Optional[str] = typer.Option(None, "--session-id", help="Overrides SESSION_ID"),
    project_id: Optional[str] = typer.Option(None, "--project-id", help="Overrides PROJECT_ID"),
    query: Optional[str] = typer.Option(None, "--query", help="Overrides PROMPT"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Retrieval only, skip synthesis"),
):
    """
    Answer one question and print a single RunResult JSON line.
    """
    from memagent.driver import failure_result, emit_result, main as run_once

    overrides = {}
    if session_id is not None:
        overrides["SESSION_ID"] = session_id
    if project_id is not None:
        overrides["PROJECT_ID"] = project_id
    if query is not None:
        overrides["PROMPT"] = query
    if dry_run:
        overrides["DRY_RUN"] = True

    try:
        run_settings = Settings(**overrides)
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        emit_result(failure_result(e), sys.stdout)
        raise typer.Exit(code=1)

    set_log_level(run_settings.LOG_LEVEL)
    result = run_once(run_settings, out=sys.stdout)
    if not result.success:
        raise typer.Exit(code=1)


@app.command(name="doctor")
def doctor():
    """
    Check configuration and environment health.
    """
    logger.info("Running doctor check...")

    print("\n🩺 Memory Agent Doctor\n")

    # Check 1: Environment / Interpreter
    print(f"Python: {sys.version.split()[0]}")
    print(f"Prefix: {sys.prefix}")
    print(f"Session ID: {get_session_id()}")

    # Check 2: Run parameters
    print("\n[Run]")
    for name in ("SESSION_ID", "PROJECT_ID", "API_BASE_URL"):
        value = getattr(settings, name)
        print(f"{name + ':':<26}{value if value else '❌ Missing'}")
    print(f"{'PROMPT:':<26}{'✅ Set' if settings.PROMPT else '❌ Missing'}")
    print(f"{'DRY_RUN:':<26}{settings.DRY_RUN}")
    print(f"{'MEMORY_MODE:':<26}{settings.MEMORY_MODE}")
    print(f"{'EVIDENCE_LIMIT:':<26}{settings.EVIDENCE_LIMIT}")
    print(f"{'MAX_TOKENS:':<26}{settings.MAX_TOKENS}")

    # Check 3: Model provider; mask keys
    print("\n[Model Provider]")
    print(f"{'LLM_PROVIDER:':<26}{settings.LLM_PROVIDER}")
    print(f"{'Model:':<26}{settings.provider_model or '(client default)'}")
    for name in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "AUTHORIZATION"):
        status = "✅ Set" if settings.secret(name) else "❌ Missing"
        print(f"{name + ':':<26}{status}")

    print("\nDoctor check complete.")


@app.command(name="tools")
def tools():
    """
    Print the tool schemas advertised to the model.
    """
    from memagent.agent import get_tools_schema

    print(json.dumps(get_tools_schema(), indent=2))


if __name__ == "__main__":
    app()
