"""covpipe CLI commands"""

import os
import shutil
import signal
import logging
from typing import Optional

import typer

from covpipe.core import config as settings
from covpipe.core.constants import EXIT_CONFIG_ERROR, EXIT_PUBLISH_FAILED
from covpipe.core.errors import ConfigError
from covpipe.models.pipeline_run import PipelineRun, RunStatus
from covpipe.models.trigger_event import EventType, TriggerEvent
from covpipe.parser.pipeline_config import PipelineConfig, load_pipeline_config
from covpipe.pipeline.orchestrator import Orchestrator
from covpipe.services.report_publisher import build_publisher
from covpipe.trigger.policy import TriggerPolicy
from covpipe.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="covpipe",
    help="covpipe - instrumented Rust build, test and LCOV coverage extraction.",
    no_args_is_help=True,
)


def _emit_error(message: str, code: int, suggestion: Optional[str] = None):
    typer.echo(f"Error: {message}", err=True)
    if suggestion:
        typer.echo(f"Suggestion: {suggestion}", err=True)
    raise typer.Exit(code)


def _load_config(path: str) -> PipelineConfig:
    try:
        return load_pipeline_config(path)
    except ConfigError as e:
        _emit_error(str(e), EXIT_CONFIG_ERROR, f"Check {os.path.basename(path)}")


def _print_run(run: PipelineRun) -> None:
    typer.echo(f"Run {run.run_id}: {run.describe()}")
    for step in run.steps:
        line = f"  {step.name:<11} {step.status:<10} {step.duration_seconds:>8.2f}s"
        if step.error:
            line += f"  {step.error}"
        typer.echo(line)
    if run.report is not None:
        typer.echo(
            f"Coverage: {run.report.lines_hit}/{run.report.lines_found} lines, "
            f"{run.report.branches_hit}/{run.report.branches_found} branches "
            f"({run.report.source_count} sources, {run.report.line_rate:.2%} line rate)"
        )
    if run.failure is not None and run.failure.kind != "RunCancelled":
        step = run.step(run.failure.stage)
        if step is not None and step.log_excerpt:
            typer.echo("--- log excerpt ---", err=True)
            typer.echo(step.log_excerpt, err=True)
    if run.publish_error:
        typer.echo(f"Publish failed: {run.publish_error}", err=True)


@app.callback()
def main(
    log_level: str = typer.Option(settings.LOG_LEVEL, "--log-level", help="DEBUG, INFO, WARNING, ERROR"),
):
    setup_logging(level=log_level)


@app.command()
def run(
    ref: str = typer.Option(..., "--ref", help="Commit SHA (or ref) to build"),
    repo: Optional[str] = typer.Option(None, "--repo", help="Repository URL (defaults to config / REPO_URL)"),
    branch: str = typer.Option("", "--branch", help="Branch name recorded on the run"),
    config: str = typer.Option(settings.PIPELINE_CONFIG, "--config", "-c", help="Path to pipeline.yml"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Where to copy the LCOV report"),
    backend: str = typer.Option(settings.EXECUTOR_BACKEND, "--backend", help="local or docker"),
    keep_workspace: bool = typer.Option(False, "--keep-workspace", help="Keep the run workspace after success"),
):
    """Manually dispatch one pipeline run and wait for it."""
    pipeline = _load_config(config)
    if backend not in ("local", "docker"):
        _emit_error(f"Invalid backend: {backend}", EXIT_CONFIG_ERROR, "Use local or docker")

    try:
        event = TriggerEvent(
            event_type=EventType.MANUAL,
            commit_sha=ref,
            branch=branch,
            repo_url=repo or "",
        )
    except ValueError as e:
        _emit_error(f"Invalid --ref: {e}", EXIT_CONFIG_ERROR)

    decision = TriggerPolicy(pipeline.triggers)(event)
    if not decision.run:
        typer.echo(f"Skipped: {decision.reason}")
        raise typer.Exit(0)

    output_path = os.path.abspath(output or pipeline.coverage.output)
    # A report left over from an earlier run must not look like this run's output
    if os.path.exists(output_path):
        os.remove(output_path)

    publisher = build_publisher(pipeline.publish)
    orchestrator = Orchestrator(pipeline, event, publisher=publisher, backend=backend)

    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: orchestrator.cancel())
    try:
        result = orchestrator.execute()
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if result.status == RunStatus.SUCCEEDED:
        if result.report.path != output_path:
            os.makedirs(os.path.dirname(output_path), exist_ok=True)
            shutil.copyfile(result.report.path, output_path)
        if not keep_workspace and result.workspace_path:
            shutil.rmtree(result.workspace_path, ignore_errors=True)
    elif result.workspace_path:
        typer.echo(f"Workspace kept for inspection: {result.workspace_path}", err=True)

    _print_run(result)
    if result.status == RunStatus.SUCCEEDED:
        typer.echo(f"Report: {output_path}")

    exit_code = result.exit_code
    if exit_code == 0 and result.publish_error and publisher.fail_on_error:
        exit_code = EXIT_PUBLISH_FAILED
    raise typer.Exit(exit_code)


@app.command("check-trigger")
def check_trigger(
    event: EventType = typer.Option(..., "--event", help="push, pull_request or manual"),
    branch: str = typer.Option("", "--branch", help="Pushed branch, or PR base branch"),
    config: str = typer.Option(settings.PIPELINE_CONFIG, "--config", "-c", help="Path to pipeline.yml"),
):
    """Show whether an event would start a run."""
    pipeline = _load_config(config)
    decision = TriggerPolicy(pipeline.triggers)(
        TriggerEvent(event_type=event, commit_sha="HEAD", branch=branch)
    )
    typer.echo(f"{decision.label}: {decision.reason}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind host"),
    port: int = typer.Option(8000, help="Server port"),
):
    """Start the webhook / API server."""
    import uvicorn

    uvicorn.run("main:app", host=host, port=port)


if __name__ == "__main__":
    app()
