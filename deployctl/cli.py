import json
import logging
import os

import click

from .config import QUEUE_DIR_ENV, DEFAULT_QUEUE_DIR, config_int
from .deploy import build_deployment
from .dispatcher import Dispatcher
from .errors import DeployctlError, JobStoreError, QueueLockedError
from .hooks import ProjectLayout, discover_hooks, resolve_hooks
from .logging_config import setup_logging
from .models import ENVIRONMENTS, PARTITIONS, PENDING, PRE_DEPLOY, POST_DEPLOY
from .repository import (
    enqueue_deployment, list_jobs, counts, find_stale, fail_stale,
    failed_list, retry_failed, get_config, set_config,
)
from .store import FileJobStore
from .utils import parse_duration_to_seconds
from .watcher import Watcher

logger = logging.getLogger("deployctl.cli")


def _fail(message: str):
    click.secho(f"Error: {message}", fg="red")
    raise SystemExit(1)


def _build_dispatcher(store: FileJobStore) -> Dispatcher:
    cfg = get_config(store)
    return Dispatcher(
        store,
        build_deployment(cfg),
        projects_dir=cfg["projects_dir"],
        deploy_timeout=config_int(cfg, "deploy_timeout_seconds"),
        hook_timeout=config_int(cfg, "hook_timeout_seconds"),
    )


@click.group(help="deployctl: push-to-deploy queue for self-hosted projects")
@click.option("--queue-dir", envvar=QUEUE_DIR_ENV, default=DEFAULT_QUEUE_DIR, show_default=True,
              help="Job store root (pending/, processed/, failed/)")
@click.option("--log-level", envvar="DEPLOYCTL_LOG_LEVEL", default="INFO", show_default=True)
@click.option("--log-format", envvar="DEPLOYCTL_LOG_FORMAT", default="text", show_default=True,
              type=click.Choice(["text", "json"]))
@click.pass_context
def cli(ctx, queue_dir, log_level, log_format):
    setup_logging(log_level, log_format)
    # Ensure the store layout exists before any command runs
    try:
        ctx.obj = FileJobStore(queue_dir).init()
    except JobStoreError as e:
        _fail(str(e))


# ---------- Producer ----------
@cli.command("enqueue", help="Queue a deployment for a push event")
@click.option("--project", required=True, help="Project (repository) name")
@click.option("--ref", required=True, help="Pushed ref, e.g. refs/heads/main")
@click.option("--commit", default="", help="Commit SHA")
@click.option("--actor", default="", help="Who pushed")
@click.option("--clone-url", default="", help="HTTPS clone URL")
@click.option("--ssh-url", default="", help="SSH clone URL")
@click.pass_obj
def enqueue_cmd(store, project, ref, commit, actor, clone_url, ssh_url):
    try:
        record = enqueue_deployment(
            store,
            project=project,
            ref=ref,
            commit=commit,
            actor=actor,
            source_urls=[ssh_url, clone_url],
        )
    except (ValueError, DeployctlError) as e:
        _fail(str(e))

    if record is None:
        click.secho(f"Branch of {ref} is not supported for deployment; nothing queued.", fg="yellow")
        return
    click.secho(f"Queued {record.id} ({record.project} -> {record.environment})", fg="green")


# ---------- Engine ----------
@cli.command("run", help="Process pending requests, then watch for new ones")
@click.pass_obj
def run_cmd(store):
    cfg = get_config(store)
    watcher = Watcher(
        store,
        _build_dispatcher(store),
        stale_after=config_int(cfg, "stale_processing_seconds"),
        projects_dir=cfg["projects_dir"],
        min_free_disk_mb=config_int(cfg, "min_free_disk_mb"),
    )
    click.secho(f"Deployment processor watching {store.partition_dir(PENDING)}. Press Ctrl+C to stop…", fg="cyan")
    try:
        watcher.run()
    except QueueLockedError as e:
        _fail(str(e))
    except JobStoreError as e:
        logger.critical("Job store failure, stopping: %s", e)
        _fail(str(e))
    click.secho("Deployment processor stopped.", fg="yellow")


@cli.command("process", help="Dispatch one pending request now")
@click.argument("job_id")
@click.pass_obj
def process_cmd(store, job_id):
    if not store.exists(job_id, PENDING):
        _fail(f"Job {job_id} is not pending.")
    try:
        with store.consumer_lock():
            outcome = _build_dispatcher(store).dispatch_id(job_id)
    except (QueueLockedError, JobStoreError) as e:
        _fail(str(e))
    click.echo(f"{job_id}: {outcome}")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--partition", type=click.Choice(list(PARTITIONS)), default=None)
@click.pass_obj
def list_cmd(store, partition):
    rows = list_jobs(store, partition=partition)
    if not rows:
        click.echo("No jobs.")
        return

    for part, r in rows:
        click.echo(
            f"{r.id:>40} | {part:<9} | {r.status:<10} | {r.project} -> {r.environment or '-'} "
            f"| ref={r.ref or r.branch} | commit={r.commit or '-'} | reason={r.reason or '-'}"
        )


@cli.command("status")
@click.pass_obj
def status_cmd(store):
    click.echo(json.dumps(counts(store), indent=2))


@cli.command("stale", help="List (or fail) requests stuck in processing")
@click.option("--older-than", default=None, help="e.g. 30m, 2h (default: stale_processing_seconds)")
@click.option("--fail", "mark_failed", is_flag=True, help="Move stale requests to failed")
@click.pass_obj
def stale_cmd(store, older_than, mark_failed):
    try:
        threshold = (parse_duration_to_seconds(older_than) if older_than
                     else config_int(get_config(store), "stale_processing_seconds"))
    except ValueError as e:
        _fail(str(e))

    if mark_failed:
        ids = fail_stale(store, threshold)
        if not ids:
            click.echo("No stale jobs.")
        for job_id in ids:
            click.secho(f"Marked {job_id} failed.", fg="yellow")
        return

    stale = find_stale(store, threshold)
    if not stale:
        click.echo("No stale jobs.")
        return
    for r in stale:
        click.echo(f"{r.id} | {r.project} -> {r.environment} | started_at={r.started_at or '-'}")


# ---------- Failed ----------
@cli.group("failed", help="Failed deployment requests")
def failed_group():
    pass


@failed_group.command("list")
@click.pass_obj
def failed_list_cmd(store):
    rows = failed_list(store)
    if not rows:
        click.echo("No failed jobs.")
        return

    for r in rows:
        click.echo(f"{r.id} | {r.project or '-'} -> {r.environment or '-'} | reason={r.reason or '-'}")


@failed_group.command("retry")
@click.argument("job_id")
@click.pass_obj
def failed_retry_cmd(store, job_id):
    try:
        record = retry_failed(store, job_id)
    except KeyError:
        _fail(f"Job {job_id} not found in failed.")
    except (ValueError, DeployctlError) as e:
        _fail(str(e))

    if record is None:
        click.secho(f"Job {job_id} is for an unsupported branch; nothing queued.", fg="yellow")
        return
    click.secho(f"Queued {record.id} as a retry of {job_id}.", fg="green")


# ---------- Hooks ----------
@cli.command("hooks", help="Show which hooks a deployment would run")
@click.argument("project")
@click.argument("environment", type=click.Choice(list(ENVIRONMENTS)))
@click.pass_obj
def hooks_cmd(store, project, environment):
    layout = ProjectLayout(get_config(store)["projects_dir"], project, environment)
    discovered = discover_hooks(layout)
    for stage in (PRE_DEPLOY, POST_DEPLOY):
        scoped, general = resolve_hooks(discovered, stage)
        click.echo(f"{stage}:")
        if not scoped and not general:
            click.echo("  (none)")
        for hook in scoped + ([general] if general else []):
            click.echo(f"  {hook.scope:<12} {os.path.relpath(hook.path, layout.projects_dir)} ({hook.origin})")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(store):
    click.echo(json.dumps(get_config(store), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(store, key, value):
    try:
        set_config(store, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except (ValueError, JobStoreError) as e:
        _fail(str(e))


def main():
    cli()
