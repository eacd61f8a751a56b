import asyncio
import json
import signal
from pathlib import Path
from typing import List, Optional

import click

from appforge_engine.build_history import BuildHistoryLog
from appforge_engine.build_service import BuildServiceClient
from appforge_engine.build_tracker import BuildStatusTracker
from appforge_engine.clock import CancelToken, Clock
from appforge_engine.config import ServiceSettings, load_global_config
from appforge_engine.errors import PipelineError
from appforge_engine.events import (BatchCompleted, BatchStarted, JobCompleted, JobStageProgress, JobStarted,
                                    PipelineEvent)
from appforge_engine.http_client import build_async_client
from appforge_engine.logger_setup import logger
from appforge_engine.models import BatchReport, GlobalConfig, TemplateDescriptor
from appforge_engine.orchestrator import PipelineOrchestrator
from appforge_engine.repository_client import RepositoryClient
from appforge_engine.template_catalog import TemplateCatalog


def echo_event(event: PipelineEvent):
    if isinstance(event, BatchStarted):
        click.echo(f"Batch {event.batch_id}: {event.total} job(s)")
    elif isinstance(event, JobStarted):
        click.echo(f"[{event.index + 1}] {event.template_id}")
    elif isinstance(event, JobStageProgress):
        if event.snapshot is not None or "path" not in event.detail:
            click.echo(f"    {event.stage.value}: {event.message}")
        elif event.detail.get("error"):
            click.echo(f"    {event.message}: {event.detail['error']}")
    elif isinstance(event, JobCompleted):
        result = event.result
        line = f"    -> {result.status.value}"
        if result.build_handle and result.build_handle.build_url:
            line += f" ({result.build_handle.build_url})"
        if result.error:
            line += f": {result.error}"
        click.echo(line)
    elif isinstance(event, BatchCompleted):
        report = event.report
        click.echo(f"Done in {report.duration_seconds:.1f}s: {report.succeeded} succeeded, "
                   f"{report.failed} failed, {report.cancelled} cancelled (of {report.total})")


async def run_pipeline(settings: ServiceSettings, config: GlobalConfig, templates: List[TemplateDescriptor],
                       pause_on_rate_limit: bool = False) -> BatchReport:
    clock = Clock()
    retry_policy = settings.retry_policy()
    github_http = build_async_client(settings.github_api_url, settings.http_timeout, {
        "Authorization": f"token {settings.github_token or ''}",
        "Accept": "application/vnd.github.v3+json",
    })
    codemagic_http = build_async_client(settings.codemagic_api_url, settings.http_timeout, {
        "x-auth-token": settings.codemagic_token or "",
    })

    async with RepositoryClient(github_http, config.github_username, retry_policy=retry_policy, clock=clock) as repos, \
            BuildServiceClient(codemagic_http, team_id=settings.codemagic_team_id,
                               retry_policy=retry_policy, clock=clock) as builds:
        tracker = BuildStatusTracker(builds, policy=settings.poll_policy(), clock=clock)
        orchestrator = PipelineOrchestrator(repos, builds, tracker=tracker, clock=clock,
                                            log_dir=settings.data_dir / "batch_logs",
                                            pause_on_rate_limit=pause_on_rate_limit)
        orchestrator.events.subscribe(echo_event)
        BuildHistoryLog(settings.data_dir, clock=clock).attach(orchestrator.events)

        cancel_token = CancelToken()
        loop = asyncio.get_running_loop()
        try:
            # Ctrl+C stops at the next stage boundary instead of killing an in-flight call
            loop.add_signal_handler(signal.SIGINT, cancel_token.cancel, "interrupted by user")
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers not supported here, Ctrl+C will abort immediately")
        try:
            return await orchestrator.run_batch(templates, config, cancel_token=cancel_token)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass


@click.group()
def cli():
    """AppForge: generate app projects from templates and build them remotely."""
    pass


@cli.command("list-templates")
@click.option("--templates-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory with additional template YAML files.")
@click.option("--category", default=None, help="Only show templates in this category.")
def list_templates(templates_dir: Optional[Path], category: Optional[str]):
    """Lists the available app templates."""
    catalog = TemplateCatalog(templates_dir)
    templates = catalog.list_templates(category)
    if not templates:
        click.echo("No templates found.")
        return
    click.echo("Available templates:")
    for t in templates:
        click.echo(f"- {t.id} ({t.display_name}) [{t.category}] ~{t.estimated_minutes} min")
        click.echo(f"  {t.description}")
        if t.plugins:
            click.echo(f"  Plugins: {', '.join(t.plugins)}")


@cli.command("run-batch")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("template_ids", nargs=-1)
@click.option("--all", "all_templates", is_flag=True, help="Run every template in the catalog.")
@click.option("--templates-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory with additional template YAML files.")
@click.option("--pause-on-rate-limit", is_flag=True,
              help="Wait for the rate limit to reset before the next job after a rate-limited failure.")
@click.option("--report", "report_file", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the batch report as JSON to this file.")
def run_batch(config_file: Path, template_ids: tuple, all_templates: bool, templates_dir: Optional[Path],
              pause_on_rate_limit: bool, report_file: Optional[Path]):
    """Generates, pushes and builds one app per TEMPLATE_ID using the batch settings in CONFIG_FILE."""
    catalog = TemplateCatalog(templates_dir)
    try:
        config = load_global_config(config_file)
        settings = ServiceSettings.from_env()
        if all_templates:
            templates = catalog.list_templates()
        elif template_ids:
            templates = catalog.select(list(template_ids))
        else:
            raise click.UsageError("Give at least one TEMPLATE_ID or --all.")
    except ValueError as e:
        raise click.ClickException(str(e))

    missing = settings.missing_credentials(config)
    if missing:
        raise click.ClickException(f"Missing credentials: {', '.join(missing)}")

    try:
        report = asyncio.run(run_pipeline(settings, config, templates, pause_on_rate_limit))
    except PipelineError as e:
        raise click.ClickException(e.describe())

    if report_file:
        report_file.parent.mkdir(parents=True, exist_ok=True)
        with open(report_file, "w", encoding="utf-8") as f:
            json.dump(report.to_dict(), f, indent=4)
        click.echo(f"Report written to {report_file}")

    if report.failed:
        raise SystemExit(1)


@cli.command("build-history")
@click.option("--app", "app_name", default=None, help="Only show builds for this template id.")
@click.option("--limit", default=10, type=int, help="Number of recent builds to show.")
@click.option("--clean", is_flag=True, help="Drop records older than the expiration window first.")
@click.option("--clear", "clear_all", is_flag=True, help="Delete every recorded build.")
def build_history(app_name: Optional[str], limit: int, clean: bool, clear_all: bool):
    """Lists recently triggered remote builds."""
    history = BuildHistoryLog(ServiceSettings.from_env().data_dir)
    if clear_all:
        history.clear()
        click.echo("Build history cleared.")
        return
    if clean:
        removed = history.clean_expired()
        click.echo(f"Removed {removed} expired record(s).")

    builds = history.builds_for_app(app_name) if app_name else history.load_history()
    if not builds:
        click.echo("No builds recorded.")
        return
    for b in builds[:limit]:
        started = (b.get('timestamp') or 'N/A').split('.')[0].replace('T', ' ')
        click.echo(f"  - {b.get('app_name')} | Build {b['build_id']} | Status: {b.get('status', 'unknown')} "
                   f"| Started: {started} | {b.get('build_url') or ''}")
        for artifact in b.get('artifacts') or []:
            click.echo(f"      {artifact['name']}: {artifact.get('url')}")


@cli.command("build-stats")
def build_stats():
    """Shows counts and success rate over the recorded builds."""
    stats = BuildHistoryLog(ServiceSettings.from_env().data_dir).stats()
    click.echo(json.dumps(stats, indent=2))


if __name__ == '__main__':
    cli()
