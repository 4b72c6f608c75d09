# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click
import yaml

from . import settings
from .cache import CacheStore
from .compiler import compile_job, validate_pipeline
from .config import DEFAULT_CONFIG_CANDIDATES, discover_config, dump_pipeline_yaml, load_pipeline, step_to_dict
from .errors import CIError, ConfigError, ReportError
from .git_facts import git
from .presets.rust import rust_pipeline
from .reports import convert_libtest_json
from .runner import detect_context, run_workflow, single_job_workflow
from .ui.console import Console, get_console, set_console


def _parse_params(values: tuple[str, ...]) -> dict:
    """-p key=value; values are YAML scalars, so -p flag=true gives a boolean."""
    out = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--param")
        k, v = item.split("=", 1)
        out[k.strip()] = yaml.safe_load(v) if v else ""
    return out


def _load(config: str | None):
    """Discover and load the pipeline file, turning failures into console errors + exit 1."""
    console = get_console()
    try:
        path = discover_config(config)
    except FileNotFoundError as e:
        console.print_error(
            "No pipeline file found",
            str(e),
            details=["Looked for:", *(f"  {c}" for c in DEFAULT_CONFIG_CANDIDATES)],
            suggestion="Create one with:\n  cinderci init\n\nOr point at a file:\n  cinderci run --config path/to/config.yml",
        )
        sys.exit(1)

    try:
        return path, load_pipeline(path)
    except (ConfigError, TypeError, ValueError) as e:
        console.print_error("Invalid pipeline", f"Could not load {path}", details=[str(e)])
        sys.exit(1)


def _repo_name() -> str:
    try:
        url = git.get_remote_url("origin")
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
@click.option("--quiet", is_flag=True, default=False, help="Do not echo step output (step logs are still written)")
@click.pass_context
def cli(ctx, debug, quiet):
    """cinderci: run CircleCI-style pipelines locally, in containers, with a local cache."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config", "config", default=None, help="Pipeline file (defaults to .cinderci/config.yml, .circleci/config.yml)")
@click.option("--workflow", default=None, help="Workflow to run (defaults to the only/first workflow)")
@click.option("--job", "job_name", default=None, help="Run a single job (by workflow name or job definition)")
@click.option("--local", "force_local", is_flag=True, default=False, help="Run every job on the host instead of docker")
@click.option("--branch", default=None, help="Branch the pipeline sees (defaults to the current branch)")
@click.option("--revision", default=None, help="Revision to check out (defaults to HEAD)")
@click.option("-p", "--param", "params", multiple=True, help="Pipeline parameter, key=value (repeatable)")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, envvar="CINDERCI_MAX_WORKERS", help="Number of parallel jobs")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Stop scheduling new jobs after the first failure")
@click.option("--state-dir", default=settings.STATE_DIR, envvar="CINDERCI_HOME", show_default=True, help="Cache, logs and artifacts")
@click.option("--shell", default=None, envvar="CINDERCI_SHELL", help="Default shell for run steps")
@click.option("--cache-keep", default=settings.CACHE_KEEP, type=int, envvar="CINDERCI_CACHE_KEEP", show_default=True, help="Cache entries kept per key family")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print selected/filtered jobs")
@click.pass_context
def run(ctx, config, workflow, job_name, force_local, branch, revision, params, workers, fail_fast, state_dir, shell, cache_keep, print_plan):
    """Run a workflow (or one job) of the pipeline."""
    console = get_console()
    path, pipeline = _load(config)

    try:
        try:
            root = git.repo_root()
        except (subprocess.CalledProcessError, FileNotFoundError):
            root = Path(".").resolve()
        context = detect_context(root, branch=branch, revision=revision, parameters=_parse_params(params))
        if revision is None and git.is_dirty(root):
            console.print_warning("run", "uncommitted changes are not part of the run; jobs check out the last commit")

        only = None
        if workflow is None and pipeline.workflows:
            workflow = next(iter(pipeline.workflows))
        if job_name is not None:
            wf = pipeline.workflows.get(workflow) if workflow else None
            if wf is not None and any(wj.run_name == job_name for wj in wf.jobs):
                target = wf
                only = {job_name}
            else:
                target = single_job_workflow(pipeline, job_name)
        elif workflow is None:
            console.print_error("Nothing to run", f"{path} defines no workflows", suggestion="Run one job:\n  cinderci run --job <name>")
            sys.exit(1)
        else:
            target = workflow

        wf_obj = pipeline.workflows.get(target) if isinstance(target, str) else target
        console.print_run_started(
            repository=_repo_name(),
            workflow=wf_obj.name if wf_obj else str(target),
            branch=context.branch,
            revision=context.revision,
            job_count=len(only) if only else (len(wf_obj.jobs) if wf_obj else 0),
        )

        results = run_workflow(
            pipeline,
            target,
            context,
            repo_root=root,
            state_dir=state_dir,
            max_workers=workers,
            fail_fast=fail_fast,
            force_local=force_local,
            shell=shell,
            only=only,
            cache_keep=cache_keep,
            print_plan=print_plan,
        )

        console.print_results({name: r.status for name, r in results.items()})
        for name, r in results.items():
            if r.tests is not None:
                console.print_info(f"  {name} tests: {r.tests}")

        if any(r.status in ("failed", "blocked") for r in results.values()):
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    except CIError as e:
        console.print_error(e.kind.replace("_", " ").capitalize(), str(e), suggestion=e.details.get("hint"))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--config", "config", default=None, help="Pipeline file")
@click.option("--branch", default=None, help="Also compile every job as this branch would see it")
@click.option("-p", "--param", "params", multiple=True, help="Pipeline parameter, key=value (repeatable)")
def validate(config, branch, params):
    """Check references, parameters and workflow graphs."""
    from .model import PipelineContext

    console = get_console()
    path, pipeline = _load(config)
    context = None
    if branch is not None:
        context = PipelineContext(branch=branch, revision="0" * 40, parameters=_parse_params(params))

    problems = validate_pipeline(pipeline, context)
    if problems:
        console.print_error("Invalid pipeline", f"{path}: {len(problems)} problem(s)", details=problems)
        sys.exit(1)
    console.print_info(
        f"{path}: OK ({len(pipeline.jobs)} jobs, {len(pipeline.commands)} commands, {len(pipeline.workflows)} workflows)"
    )


@cli.command()
@click.option("--config", "config", default=None, help="Pipeline file")
@click.option("--job", "job_names", multiple=True, help="Only these jobs (repeatable)")
@click.option("--branch", default="main", show_default=True, help="Branch to expand when/unless conditions for")
@click.option("-p", "--param", "params", multiple=True, help="Pipeline parameter, key=value (repeatable)")
def plan(config, job_names, branch, params):
    """Print the flat step list each job would run."""
    from .model import PipelineContext

    console = get_console()
    _path, pipeline = _load(config)
    context = PipelineContext(branch=branch, revision="0" * 40, parameters=_parse_params(params))

    try:
        for name in job_names or list(pipeline.jobs):
            compiled = compile_job(pipeline, name, context)
            console.print_header(f"{name} ({compiled.executor.kind}: {compiled.executor.image or 'host'})")
            console.print_info(yaml.safe_dump([step_to_dict(s) for s in compiled.steps], sort_keys=False, width=100).rstrip())
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)


@cli.command()
@click.option("--output", default=".cinderci/config.yml", show_default=True, help="Where to write the pipeline")
@click.option("--main-branch", default="main", show_default=True, help="Branch whose builds save caches")
@click.option("--image", default=None, help="Builder image")
@click.option("--nested-repo", default="mobilecoin", show_default=True, help="Submodule with a pinned rust-toolchain ('' to skip)")
@click.option("--fetch-dir", "fetch_dirs", multiple=True, help="Extra crate with its own Cargo.lock (repeatable)")
@click.option("--lint-script", default="./tools/lint.sh", show_default=True, help="Lint entry point")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file")
def init(output, main_branch, image, nested_repo, fetch_dirs, lint_script, force):
    """Write the Rust workspace pipeline as YAML."""
    console = get_console()
    out = Path(output)
    if out.exists() and not force:
        console.print_error("File exists", f"{out} already exists", suggestion="Use --force to overwrite it.")
        sys.exit(1)

    kwargs = {"main_branch": main_branch, "nested_repo": nested_repo or None, "lint_script": lint_script}
    if image:
        kwargs["image"] = image
    if fetch_dirs:
        kwargs["fetch_dirs"] = fetch_dirs
    elif not nested_repo:
        kwargs["fetch_dirs"] = ()

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(dump_pipeline_yaml(rust_pipeline(**kwargs)), encoding="utf-8")
    console.print_info(f"Wrote {out}")


@cli.group()
def cache():
    """Inspect and clean the local cache."""


def _store(state_dir: str) -> CacheStore:
    return CacheStore(Path(state_dir) / "cache")


@cache.command("list")
@click.option("--state-dir", default=settings.STATE_DIR, envvar="CINDERCI_HOME", show_default=True)
def cache_list(state_dir):
    """List cache entries, newest first."""
    console = get_console()
    store = _store(state_dir)
    entries = store.entries()
    if not entries:
        console.print_info("Cache is empty")
        return
    for e in entries:
        console.print_info(f"{e.key}  ({e.size} bytes, family {e.family})")
    stats = store.stats()
    console.print_info(f"{stats['entries']} entries, {stats['bytes']} bytes")


@cache.command("prune")
@click.option("--state-dir", default=settings.STATE_DIR, envvar="CINDERCI_HOME", show_default=True)
@click.option("--keep", default=settings.CACHE_KEEP, type=int, envvar="CINDERCI_CACHE_KEEP", show_default=True)
def cache_prune(state_dir, keep):
    """Keep only the newest entries of every key family."""
    console = get_console()
    removed = _store(state_dir).prune(keep)
    for key in removed:
        console.print_info(f"removed {key}")
    console.print_info(f"Pruned {len(removed)} entries")


@cache.command("clear")
@click.option("--state-dir", default=settings.STATE_DIR, envvar="CINDERCI_HOME", show_default=True)
def cache_clear(state_dir):
    """Delete every cache entry."""
    _store(state_dir).clear()
    get_console().print_info("Cache cleared")


@cli.command("convert-report")
@click.argument("source", type=click.File("r"), default="-")
@click.option("--output", "-o", type=click.File("w"), default="-", help="Where to write the JUnit XML")
def convert_report(source, output):
    """Convert a libtest JSON stream (cargo test --format json) to JUnit XML."""
    try:
        xml = convert_libtest_json(line.rstrip("\n") for line in source)
    except ReportError as e:
        get_console().print_error("Conversion failed", str(e))
        sys.exit(1)
    output.write(xml)


if __name__ == "__main__":
    cli()
