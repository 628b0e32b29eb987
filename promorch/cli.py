"""
CLI interface for the promorch promotion pipeline.

Provides commands to start promotions, run scheduler ticks and workers,
and inspect the record store.

Stages (discovery, transform, copy, promote, verify) are scheduled with
``promorch tick STAGE`` and dispatched to the registered stage workers.
"""

import json
import threading
from pathlib import Path

import click
import yaml

from promorch import __version__
from promorch.stages import STAGES


STAGE_CHOICE = click.Choice(list(STAGES))


def _require_runtime(ctx):
    """Build the runtime from the loaded config, or exit with the config error."""
    from promorch.runtime import Runtime

    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'promorch init' to create a configuration file.", err=True)
        raise SystemExit(1)
    if "runtime" not in ctx.obj:
        ctx.obj["runtime"] = Runtime.from_config(ctx.obj["config"])
    return ctx.obj["runtime"]


@click.group()
@click.version_option(version=__version__, prog_name="promorch")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.pass_context
def main(ctx, config_path):
    """
    promorch - Content promotion pipeline orchestrator.

    Moves a promotion project through discovery, transform, copy, promote
    and verify, one scheduler tick at a time.
    """
    from promorch.config import load_config
    from promorch.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except Exception as e:
        # init works without a config; other commands report this error
        ctx.obj["config_error"] = str(e)
        return
    ctx.obj["config"] = config
    setup_logging(Path(config.log_file), config.log_level, config.log_format, console_output=False)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize promorch configuration."""
    from promorch.config import PromorchConfig, get_promorch_home

    home = get_promorch_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = PromorchConfig(env_file=str(home / ".env")).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# PROMORCH_ADMIN_API_KEY=...\n")

    click.echo(f"Initialized promorch config at {cfg_path}")


@main.command("initiate")
@click.argument("params_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def initiate(ctx, params_file: Path):
    """
    Start a promotion from a JSON or YAML parameters file.

    Example:

        promorch initiate summit.yaml
    """
    from promorch.errors import ConfigError
    from promorch.initiate import initiate_project

    runtime = _require_runtime(ctx)
    params = yaml.safe_load(params_file.read_text()) or {}
    if not isinstance(params, dict):
        click.echo("✗ Parameters file must contain a mapping", err=True)
        raise SystemExit(1)
    try:
        record = initiate_project(runtime.records, params)
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Initiated {record.project_path}")


@main.command("tick")
@click.argument("stage", type=STAGE_CHOICE)
@click.option("--loop", is_flag=True, help="Keep ticking until interrupted")
@click.option("--interval", default=60.0, show_default=True, type=float, help="Seconds between ticks with --loop")
@click.option("--inline", is_flag=True, help="Run dispatched workers synchronously")
@click.pass_context
def tick(ctx, stage: str, loop: bool, interval: float, inline: bool):
    """
    Run the scheduler of a stage.

    Examples:

        promorch tick copy

        promorch tick promote --loop --interval 30
    """
    runtime = _require_runtime(ctx)
    dispatcher = runtime.dispatcher(inline=inline)
    scheduler = runtime.scheduler(stage, dispatcher)
    try:
        if loop:
            stop = threading.Event()
            try:
                scheduler.run_forever(interval, stop)
            except KeyboardInterrupt:
                stop.set()
                runtime.shutdown()
            return
        result = scheduler.tick()
    finally:
        dispatcher.shutdown(wait=True)

    click.echo(f"{stage}: dispatched {len(result.dispatched)}, skipped {len(result.skipped)}, errors {len(result.errors)}")
    for label in result.dispatched:
        click.echo(f"  → {label}")
    for label in result.errors:
        click.echo(f"  ✗ {label}", err=True)
    if result.errors:
        raise SystemExit(1)


@main.command("work")
@click.argument("stage", type=STAGE_CHOICE)
@click.argument("project")
@click.option("--batch", help="Batch name (batch stages)")
@click.option("--finalize", is_flag=True, help="Run the stage's boundary work instead of a batch")
@click.pass_context
def work(ctx, stage: str, project: str, batch: str | None, finalize: bool):
    """
    Run one worker invocation directly.

    The work must already be claimed (see ``tick``); unclaimed work is skipped.
    """
    runtime = _require_runtime(ctx)
    params = {"project": project}
    if STAGES[stage].is_batch_stage:
        if finalize:
            params["finalize"] = True
        elif batch:
            params["batch"] = batch
        else:
            raise click.UsageError(f"{stage} is a batch stage: pass --batch or --finalize")

    result = runtime.run_worker(stage, params)
    click.echo(json.dumps(result.to_dict(), indent=2))
    if result.status == "failed":
        raise SystemExit(1)


@main.command("status")
@click.argument("project", required=False)
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
@click.pass_context
def status(ctx, project: str | None, as_json: bool):
    """
    Show the project queue, or one project's report.

    Examples:

        promorch status

        promorch status /gb/summit --json
    """
    from promorch.initiate import project_report

    runtime = _require_runtime(ctx)
    if project is None:
        queue = runtime.records.queue()
        if not queue:
            click.echo("No projects.")
            return
        for record in queue:
            click.echo(f"{record.status.value:<24} {record.project_path}  (created {record.created_time.isoformat()})")
        return

    report = project_report(runtime.records, project)
    if report is None:
        click.echo(f"✗ Unknown project: {project}", err=True)
        raise SystemExit(1)
    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
        return

    click.echo(f"Project: {report['project']}")
    click.echo(f"Status: {report['status']}")
    for group, table in report["batches"].items():
        if table:
            counts = {}
            for s in table.values():
                counts[s] = counts.get(s, 0) + 1
            click.echo(f"{group}: " + ", ".join(f"{n} {s}" for s, n in sorted(counts.items())))
    for stage_name, summary in report["retries"].items():
        click.echo(f"retries[{stage_name}]: " + ", ".join(f"{k}={v}" for k, v in summary.items()))
    for tracking_file, counts in report["tracking"].items():
        if any(counts.values()):
            click.echo(f"{tracking_file}: " + ", ".join(f"{k}={v}" for k, v in counts.items()))


@main.command("pause")
@click.argument("project")
@click.pass_context
def pause(ctx, project: str):
    """Pause a project; it will not be scheduled again."""
    from promorch.initiate import pause_project

    runtime = _require_runtime(ctx)
    if not pause_project(runtime.records, project):
        click.echo(f"✗ Cannot pause {project}: unknown or already finished", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Paused {project}")


@main.command("show")
@click.argument("path")
@click.pass_context
def show(ctx, path: str):
    """Print one stored document with its version."""
    runtime = _require_runtime(ctx)
    record = runtime.records.store.read_record(path)
    if record is None:
        click.echo(f"✗ No document at {path}", err=True)
        raise SystemExit(1)
    click.echo(f"# version {record.version}, updated {record.updated_at.isoformat()}")
    click.echo(json.dumps(record.doc, indent=2))


@main.command("ls")
@click.argument("prefix", default="")
@click.pass_context
def ls(ctx, prefix: str):
    """List stored document paths under PREFIX."""
    runtime = _require_runtime(ctx)
    for path in runtime.records.store.list(prefix):
        click.echo(path)


@main.command("rm")
@click.argument("path")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def rm(ctx, path: str, yes: bool):
    """Delete one stored document."""
    runtime = _require_runtime(ctx)
    if not yes:
        click.confirm(f"Delete {path}?", abort=True)
    if not runtime.records.store.delete(path):
        click.echo(f"✗ No document at {path}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Deleted {path}")


if __name__ == "__main__":
    main()
