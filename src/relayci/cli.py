# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import click

from relayci.conditions import ConditionContext
from relayci.config import Settings
from relayci.dag import build_dag, topo_levels
from relayci.errors import CIError
from relayci.git import get_current_ref, get_remote_url, head_sha, is_dirty, repo_root
from relayci.loader import load_pipeline
from relayci.model import JobStatus, Trigger
from relayci.runlog import RunStore
from relayci.runner import build_scheduler, run_pipeline
from relayci.scheduler import new_run_id
from relayci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("relayci_workflow.py", "relayci.yml", "relayci.yaml", "relayci.json")


def find_workflow_files() -> list[Path]:
    """Workflow files in the current directory, the default one first."""
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()]
    for path in sorted(current_dir.glob("*_workflow.py")):
        if path not in found:
            found.append(path)
    return found


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the CLI argument, or discover the single
    one in the current directory. Exits with status 1 when that fails.
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  relayci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOWS), "  *_workflow.py"],
            suggestion="Create relayci_workflow.py, or specify a workflow explicitly:\n  relayci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  relayci run --workflow relayci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def resolve_trigger(revision: str | None, ref: str | None, event: str) -> Trigger:
    console = get_console()
    from_head = revision is None
    try:
        revision = revision or head_sha()
        ref = ref or get_current_ref()
        dirty = from_head and is_dirty()
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_error(
            "Could not determine revision",
            "Not inside a git checkout (or git is not installed).",
            suggestion="Pass them explicitly:\n  relayci run --revision <sha> --ref refs/heads/<branch>",
        )
        sys.exit(1)
    if dirty:
        console.print_info(f"Warning: uncommitted changes are not part of revision {revision[:12]}")
    console.print_debug(f"Using git ref: {ref} at {revision}")
    return Trigger(revision=revision, ref=ref, event=event)


def checkout_root() -> Path:
    """Top of the git checkout, or the current directory outside one."""
    try:
        return repo_root()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve()


def _repository_name() -> str:
    try:
        url = get_remote_url("origin")
        return url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: run a CI job graph locally, deterministically and cache-aware."""
    settings = Settings.from_env()
    settings.debug = settings.debug or debug
    set_console(Console(debug=settings.debug))
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yml, .yaml or .json)")
@click.option("--workers", default=None, type=int, help="Number of jobs running at once")
@click.option("--cache-dir", default=None, help="Artifact cache directory")
@click.option("--runs-dir", default=None, help="Where run summaries and job logs are kept")
@click.option("--revision", default=None, help="Source revision (defaults to git HEAD)")
@click.option("--ref", default=None, help="Ref the revision is on (defaults to the current branch)")
@click.option("--event", default="push", show_default=True, help="Event that triggered the run")
@click.option("--protected-branch", "protected", multiple=True, help="Branch allowed to publish (repeatable)")
@click.pass_context
def run(ctx, workflow, workers, cache_dir, runs_dir, revision, ref, event, protected):
    """Run a workflow once for the current revision."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]

    workflow_path = discover_workflow(workflow)

    try:
        pipeline = load_pipeline(workflow_path)
    except (CIError, FileNotFoundError) as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {workflow_path}", details=str(e).splitlines())
        sys.exit(1)
    except Exception as e:
        # the workflow file is user code
        console.print_error("Failed to load workflow", f"{workflow_path} raised while loading")
        console.print_exception(e)
        sys.exit(1)

    trigger = resolve_trigger(revision, ref, event)
    protected_branches = list(protected) or pipeline.protected_branches or settings.protected_branches
    scheduler = build_scheduler(
        repo_root=checkout_root(),
        cache_root=cache_dir or settings.cache_dir,
        max_workers=workers or settings.workers,
        protected_branches=protected_branches,
        registry_username=settings.registry_username,
        registry_password=settings.registry_password,
        console=console,
    )

    try:
        run_id = new_run_id()
        console.print_run_started(
            run_id=run_id,
            repository=_repository_name(),
            workflow=workflow_path.name,
            job_count=len(pipeline.jobs),
            revision=trigger.revision,
            ref=trigger.ref,
        )
        result = run_pipeline(
            pipeline.jobs,
            trigger,
            scheduler=scheduler,
            runs_root=runs_dir or settings.runs_dir,
            run_id=run_id,
        )
    except CIError as e:
        console.print_error("Run failed", e.message, details=str(e).splitlines()[1:])
        sys.exit(1)
    except KeyboardInterrupt:
        scheduler.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(130)

    console.print_results(result.statuses(), result.status)
    console.print_info(f"Logs: relayci logs {result.run_id}")
    if result.cancelled and result.fatal is None:
        sys.exit(130)
    if not result.ok:
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yml, .yaml or .json)")
@click.option("--ref", default=None, help="Ref to preview predicates for (defaults to the current branch)")
@click.option("--event", default="push", show_default=True)
def plan(workflow, ref, event):
    """Show execution stages and which predicates hold if everything succeeds."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        pipeline = load_pipeline(workflow_path)
        adj, indeg = build_dag(pipeline.jobs)
    except (CIError, FileNotFoundError) as e:
        console.print_error("Invalid workflow", str(e).splitlines()[0], details=str(e).splitlines()[1:])
        sys.exit(1)

    trigger = resolve_trigger("0" * 40, ref, event)
    by_name = {j.name: j for j in pipeline.jobs}
    console.print_header(f"Plan for {workflow_path.name} on {trigger.branch} ({event})")
    for i, level in enumerate(topo_levels(adj, indeg), start=1):
        console.print_plan_stage(i, level)
        for name in level:
            job = by_name[name]
            preview = ConditionContext(
                trigger=trigger,
                upstream={d: JobStatus.SUCCEEDED for d in job.dependencies},
            )
            verdict = "runs" if job.condition(preview) else "skipped(predicate)"
            console.print_plan_job(name, f"{job.kind}, when {job.condition.description}: {verdict}")


@cli.command()
@click.argument("run_id", required=False)
@click.argument("job", required=False)
@click.option("--runs-dir", default=None, help="Where run summaries and job logs are kept")
@click.pass_context
def logs(ctx, run_id, job, runs_dir):
    """Print a retained run summary, or one job's log. RUN_ID defaults to the latest run."""
    console = get_console()
    store = RunStore(runs_dir or ctx.obj["settings"].runs_dir)
    run_id = run_id or store.latest()
    if run_id is None:
        console.print_error("No runs", f"No retained runs under {store.root}")
        sys.exit(1)
    try:
        if job:
            click.echo(store.load_log(run_id, job), nl=False)
            return
        summary = store.load_summary(run_id)
    except FileNotFoundError as e:
        console.print_error("Not found", str(e))
        sys.exit(1)

    console.print_header(f"Run {summary['run_id']}: {summary['status']}")
    for name, j in summary["jobs"].items():
        line = f"  {name}: {j['label']}"
        if j.get("error"):
            line += f" ({j['error']['kind']}: {j['error']['message']})"
        click.echo(line)
    if ctx.obj["settings"].debug:
        click.echo(json.dumps(summary, indent=2, sort_keys=True))


if __name__ == "__main__":
    cli()
