from __future__ import annotations

import json
from pathlib import Path

import click

from coach_pipeline.config import get_settings
from coach_pipeline.errors import PipelineError
from coach_pipeline.utils.log import set_log_level


@click.group(name="coach-pipeline")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this invocation.")
def cli(log_level: str | None) -> None:
    """Sales-call analysis pipeline."""
    if log_level:
        set_log_level(log_level)


@cli.command("serve")
@click.option("--host", default=None, help="Bind host (defaults to HOST).")
@click.option("--port", type=int, default=None, help="Bind port (defaults to PORT).")
def serve(host: str | None, port: int | None) -> None:
    """Run the HTTP API and the analysis worker."""
    import uvicorn

    s = get_settings()
    uvicorn.run(
        "coach_pipeline.server:app",
        host=str(host or s.host),
        port=int(port or s.port),
        log_config=None,
    )


@cli.command("config")
def show_config() -> None:
    """Print the effective configuration (secrets shown as SET/UNSET)."""
    from coach_pipeline.config import get_safe_config_report

    click.echo(json.dumps(get_safe_config_report(), indent=2, sort_keys=True, default=str))


@cli.command("token")
@click.argument("user_id", required=True, type=str)
def token(user_id: str) -> None:
    """Issue a bearer token for USER_ID."""
    from coach_pipeline.api.deps import issue_token

    click.echo(issue_token(user_id))


@cli.group("recordings")
def recordings() -> None:
    """Recording catalog."""


@recordings.command("add")
@click.argument("owner_id", required=True, type=str)
@click.argument("file_path", required=True, type=str)
@click.option("--duration-s", type=float, default=None, help="Known media duration in seconds.")
@click.option("--size-bytes", type=int, default=None, help="File size; read from storage when omitted.")
def recordings_add(owner_id: str, file_path: str, duration_s: float | None, size_bytes: int | None) -> None:
    """Register FILE_PATH (relative to the storage root) for OWNER_ID."""
    from coach_pipeline.server import open_stores

    if size_bytes is None:
        p = Path(get_settings().storage_dir) / file_path.lstrip("/")
        if p.is_file():
            size_bytes = p.stat().st_size
    _, recs = open_stores()
    rec = recs.add(owner_id=owner_id, file_path=file_path, duration_s=duration_s, file_size_bytes=size_bytes)
    click.echo(json.dumps(rec.to_dict(), indent=2, sort_keys=True))


@cli.command("submit")
@click.argument("recording_id", required=True, type=str)
@click.option("--owner", "owner_id", required=True, type=str)
@click.option("--run/--no-run", default=True, show_default=True, help="Run the job in this process.")
def submit(recording_id: str, owner_id: str, run: bool) -> None:
    """
    Admit RECORDING_ID for analysis.

    With --run the job (and any job chained after it) is processed in the foreground;
    otherwise a running server's worker picks it up.
    """
    from coach_pipeline.jobs.admission import AdmissionController, Queued
    from coach_pipeline.jobs.chainer import QueueChainer
    from coach_pipeline.jobs.limits import get_limits
    from coach_pipeline.jobs.pipeline import AnalysisPipeline
    from coach_pipeline.providers import get_provider
    from coach_pipeline.server import open_stores

    s = get_settings()
    limits = get_limits()
    store, recs = open_stores()
    admission = AdmissionController(store, recs, limits=limits, model_name=str(s.model_name))
    try:
        outcome = admission.submit(recording_id, owner_id=owner_id)
    except PipelineError as ex:
        raise click.ClickException(str(ex)) from ex

    if isinstance(outcome, Queued):
        click.echo(
            json.dumps(
                {
                    "queued": True,
                    "analysisId": outcome.job.id,
                    "queuePosition": outcome.position,
                    "activeCount": outcome.active_count,
                    "maxConcurrent": outcome.max_concurrent,
                },
                indent=2,
            )
        )
        return
    click.echo(
        json.dumps(
            {
                "analysisId": outcome.job.id,
                "totalChunks": outcome.total_chunks,
                "estimatedMinutes": outcome.estimated_minutes,
            },
            indent=2,
        )
    )
    if not run:
        return

    todo: list[str] = [outcome.job.id]
    chainer = QueueChainer(store, recs, hand_off=todo.append, limits=limits)
    pipeline = AnalysisPipeline(store, recs, get_provider, chainer=chainer, limits=limits)
    while todo:
        job = pipeline.run(todo.pop(0))
        if job is not None:
            click.echo(f"{job.id}: {job.status.value} {job.title or job.error_message or ''}".rstrip())


@cli.command("status")
@click.argument("recording_id", required=True, type=str)
@click.option("--full", is_flag=True, default=False, help="Print the whole job document.")
def status(recording_id: str, full: bool) -> None:
    """Show the analysis state for RECORDING_ID."""
    from coach_pipeline.server import open_stores

    store, _ = open_stores()
    job = store.get_by_recording(recording_id)
    if job is None:
        raise click.ClickException(f"No analysis for recording {recording_id}")
    if full:
        out = job.to_dict()
        out["usage"] = store.usage_totals(job.id)
    else:
        out = {
            "analysisId": job.id,
            "status": job.status.value,
            "stage": job.stage.value,
            "totalChunks": job.total_chunks,
            "completedChunks": job.completed_chunks,
            "message": job.progress_message,
            "attempt": job.attempt,
            "totalTokens": job.total_tokens,
            "estimatedCostUsd": job.estimated_cost_usd,
        }
    click.echo(json.dumps(out, indent=2, sort_keys=True, default=str))


def main() -> None:
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
