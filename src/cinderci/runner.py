# runner.py
from __future__ import annotations

import hashlib
import json
import os
import posixpath
import re
import shlex
import subprocess
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Set

from . import model as m
from . import settings
from .artifacts import ArtifactStore, TestSummary
from .cache import CacheStore
from .compiler import compile_job, workflow_enabled
from .dag import build_dag, descendants, workflow_requires
from .errors import CIError, ConfigError, ReportError, StepFailure
from .executors import BaseExecutor, NoOutputTimeout, make_executor
from .git_facts import git
from .model import CompiledJob, JobResult, Pipeline, PipelineContext, Step, Workflow
from .reports import get_converter
from .templating import KeyFacts, cache_key_family, render_cache_key
from .ui.console import get_console


# local dev ---> commit ---> cinderci run ---> same jobs the CI provider would run

CHECKOUT_SHELL = "/bin/sh -e"


# ----------------------------------------------------------------------
# Pipeline context
# ----------------------------------------------------------------------

def detect_context(
    repo_root: str | Path = ".",
    *,
    branch: str | None = None,
    revision: str | None = None,
    parameters: Optional[Dict] = None,
    number: int | None = None,
) -> PipelineContext:
    """
    Pipeline facts from the host repository; explicit values win.
    """
    root = Path(repo_root).resolve()
    try:
        branch = branch or git.current_branch(root)
        revision = revision or git.head_sha(root)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise CIError(
            kind="not_a_repository",
            job="",
            step=None,
            message=f"could not read git facts from {root}",
            details={"error": str(e)},
        ) from e

    return PipelineContext(
        branch=branch,
        revision=revision,
        number=number or 1,
        id=str(uuid.uuid4()),
        repo_root=str(root),
        parameters=dict(parameters or {}),
    )


# ----------------------------------------------------------------------
# One job
# ----------------------------------------------------------------------

class _JobRun:
    """State for one job on one executor: environment, failure flag, result."""

    def __init__(
        self,
        compiled: CompiledJob,
        executor: BaseExecutor,
        *,
        context: PipelineContext,
        cache: CacheStore,
        artifacts: ArtifactStore,
        cache_keep: int,
        node_index: int,
        origin_url: str,
        artifact_job: str,
    ):
        self.compiled = compiled
        self.executor = executor
        self.context = context
        self.cache = cache
        self.artifacts = artifacts
        self.cache_keep = cache_keep
        self.node_index = node_index
        self.origin_url = origin_url
        self.artifact_job = artifact_job
        self.console = get_console()
        self.result = JobResult(name=compiled.name, status="ok")
        self.failed = False
        self._log = None

    # -- helpers -------------------------------------------------------

    @property
    def name(self) -> str:
        return self.compiled.name

    def env(self, step: Step | None = None) -> Dict[str, str]:
        env = {
            "CI": "true",
            "CINDERCI": "true",
            "CIRCLE_JOB": self.compiled.name,
            "CIRCLE_BRANCH": self.context.branch,
            "CIRCLE_SHA1": self.context.revision,
            "CIRCLE_BUILD_NUM": str(self.context.number),
            "CIRCLE_WORKING_DIRECTORY": self.executor.working_directory,
            "CIRCLE_NODE_TOTAL": str(self.compiled.parallelism),
            "CIRCLE_NODE_INDEX": str(self.node_index),
        }
        env.update(self.compiled.environment)
        if step is not None:
            env.update(step.environment)
        return env

    def emit(self, line: str) -> None:
        if self._log is not None:
            self._log.write(line + "\n")
        self.console.print_output(self.name, line)

    def _echo(self, line: str) -> None:
        self.console.print_output(self.name, line)

    def key_facts(self) -> KeyFacts:
        return KeyFacts(
            arch=self.executor.arch(),
            branch=self.context.branch,
            revision=self.context.revision,
            build_num=self.context.number,
            environment=self.env(),
            checksum=self._checksum,
        )

    def _checksum(self, path: str) -> str:
        try:
            data = self.executor.read_file(path)
        except FileNotFoundError as e:
            raise ConfigError(f"checksum: file not found: {path}") from e
        return hashlib.sha256(data).hexdigest()

    def _run_script(self, step: Step, script: str, **kw) -> int:
        return self.executor.run(
            script,
            env=self.env(step),
            cwd=kw.pop("cwd", step.working_directory),
            shell=kw.pop("shell", step.shell),
            no_output_timeout=kw.pop("no_output_timeout", step.no_output_timeout or settings.NO_OUTPUT_TIMEOUT),
            on_output=kw.pop("on_output", self.emit),
            **kw,
        )

    # -- steps ---------------------------------------------------------

    def step_run(self, step: Step) -> None:
        if step.background:
            # the step log is closed once this returns; later output only reaches the console
            self.emit(f"started in background: {step.run or ''}")
            self._run_script(step, step.run or "", background=True, on_output=self._echo)
            return
        rc = self._run_script(step, step.run or "")
        if rc != 0:
            raise StepFailure(job=self.name, step=step.display_name, cmd=step.run or "", exit_code=rc)

    def step_checkout(self, step: Step) -> None:
        target = step.path or "."
        branch = self.context.branch
        lines = [
            f"mkdir -p {shlex.quote(target)} && cd {shlex.quote(target)}",
            "[ -d .git ] || git init -q .",
            "git -c safe.directory='*' fetch -q --no-tags {src} '+HEAD:refs/remotes/cinderci/HEAD' "
            "'+refs/heads/*:refs/remotes/cinderci/*'".format(src=shlex.quote(self.executor.source_path())),
        ]
        if branch and branch != "HEAD":
            lines.append(f"git -c advice.detachedHead=false checkout -q -f -B {shlex.quote(branch)} {self.context.revision}")
        else:
            lines.append(f"git -c advice.detachedHead=false checkout -q -f {self.context.revision}")
        if self.origin_url:
            url = shlex.quote(self.origin_url)
            lines.append(f"git remote add origin {url} 2>/dev/null || git remote set-url origin {url}")

        rc = self._run_script(step, "\n".join(lines), cwd=None, shell=CHECKOUT_SHELL)
        if rc != 0:
            raise StepFailure(job=self.name, step=step.display_name, cmd="git checkout", exit_code=rc)

    def step_restore_cache(self, step: Step) -> None:
        facts = self.key_facts()
        keys = [render_cache_key(k, facts) for k in step.keys]
        hit = self.cache.restore(keys, self.executor)
        if hit.hit:
            self.console.print_cache_hit(self.name, hit.key, hit.reason)
            self.result.cache[step.display_name] = f"hit:{hit.key}"
        else:
            self.console.print_cache_miss(self.name, keys)
            self.result.cache[step.display_name] = "miss"

    def step_save_cache(self, step: Step) -> None:
        facts = self.key_facts()
        key = render_cache_key(step.key or "", facts)
        family = cache_key_family(step.key or "", facts)
        saved = self.cache.save(key, list(step.paths), self.executor, family=family, extra={"job": self.name})
        for p in saved.missing:
            self.console.print_warning(self.name, f"cache path not found, skipped: {p}")
        if not saved.saved:
            self.console.print_warning(self.name, f"nothing to save for {key}")
            self.result.cache[step.display_name] = "empty"
            return
        self.console.print_cache_saved(self.name, key, saved.size)
        self.result.cache[step.display_name] = f"saved:{key}"
        for removed in self.cache.prune(self.cache_keep, family=family):
            self.console.print_debug(f"[{self.name}] pruned cache entry {removed}")

    def step_store_artifacts(self, step: Step) -> None:
        out = self.artifacts.store(self.executor, self.artifact_job, step.path or "", step.destination)
        if out is None:
            self.console.print_warning(self.name, f"no artifact found at {step.path}")
        else:
            self.emit(f"stored artifact {step.path} -> {out}")

    def step_store_test_results(self, step: Step) -> None:
        summary = self.artifacts.store_test_results(self.executor, self.artifact_job, step.path or "")
        if summary is None:
            self.console.print_warning(self.name, f"no test results found at {step.path}")
            return
        if self.result.tests is None:
            self.result.tests = TestSummary()
        self.result.tests.merge(summary)
        self.emit(f"test results: {summary}")

    def step_run_tests(self, step: Step) -> None:
        results_dir = step.path or "/tmp/test-results"
        lines: List[str] = []

        def capture(line: str) -> None:
            lines.append(line)
            self.emit(line)

        rc = self._run_script(step, step.run or "", on_output=capture)

        self.executor.write_file(posixpath.join(results_dir, "output.log"), ("\n".join(lines) + "\n").encode("utf-8"))
        # a broken report must not hide the test exit code
        try:
            xml = get_converter(step.converter or "libtest-json")(lines)
            self.executor.write_file(posixpath.join(results_dir, "results.xml"), xml.encode("utf-8"))
        except ReportError as e:
            self.console.print_warning(self.name, f"test report conversion failed: {e}")

        if rc != 0:
            raise StepFailure(job=self.name, step=step.display_name, cmd=step.run or "", exit_code=rc)

    def step_check_dirty(self, step: Step) -> None:
        lines: List[str] = []
        rc = self._run_script(step, "git status --porcelain", cwd=None, shell=CHECKOUT_SHELL, on_output=lines.append)
        if rc != 0:
            raise StepFailure(job=self.name, step=step.display_name, cmd="git status --porcelain", exit_code=rc)
        changed = [ln for ln in lines if ln.strip()]
        if changed:
            self.emit("repo is dirty")
            for ln in changed:
                self.emit(ln)
            raise CIError(
                kind="dirty_tree",
                job=self.name,
                step=step.display_name,
                message="working tree was modified by the build",
                details={"changed": len(changed), "first": changed[0].strip()},
            )

    # -- driver --------------------------------------------------------

    def should_run(self, step: Step) -> bool:
        if step.when == m.ALWAYS:
            return True
        if step.when == m.ON_FAIL:
            return self.failed
        return not self.failed

    def run(self) -> JobResult:
        handlers = {
            m.RUN: self.step_run,
            m.CHECKOUT: self.step_checkout,
            m.RESTORE_CACHE: self.step_restore_cache,
            m.SAVE_CACHE: self.step_save_cache,
            m.STORE_ARTIFACTS: self.step_store_artifacts,
            m.STORE_TEST_RESULTS: self.step_store_test_results,
            m.RUN_TESTS: self.step_run_tests,
            m.CHECK_DIRTY: self.step_check_dirty,
        }

        started = time.monotonic()
        for idx, step in enumerate(self.compiled.steps, start=1):
            name = step.display_name
            if not self.should_run(step):
                self.console.print_step_skipped(self.name, name, "earlier step failed" if self.failed else f"when: {step.when}")
                continue

            handler = handlers.get(step.kind)
            if handler is None:
                raise ValueError(f"[{self.name}] cannot execute step kind {step.kind!r}; was the job compiled?")

            self.console.print_step(self.name, name)
            log_path = self.artifacts.step_log(self.artifact_job, idx, name)
            with log_path.open("w", encoding="utf-8") as fh:
                self._log = fh
                try:
                    handler(step)
                except StepFailure as e:
                    self._fail(name, str(e), exit_code=e.exit_code)
                except CIError as e:
                    self._fail(name, str(e), hint=e.details.get("hint"))
                except NoOutputTimeout as e:
                    self._fail(name, f"Too long with no output (exceeded {e.seconds:.0f}s)")
                except (ConfigError, FileNotFoundError) as e:
                    self._fail(name, str(e))
                finally:
                    self._log = None

        self.result.duration = time.monotonic() - started
        self.result.status = "failed" if self.failed else "ok"
        return self.result

    def _fail(self, step_name: str, reason: str, exit_code: int | None = None, hint: str | None = None) -> None:
        self.failed = True
        self.result.failures.append(f"{step_name}: {reason.splitlines()[0] if reason else 'failed'}")
        if self._log is not None:
            self._log.write(reason + "\n")
        self.console.print_failure(f"[{self.name}] {step_name}", reason, exit_code=exit_code, hint=hint)


def run_job(
    compiled: CompiledJob,
    executor: BaseExecutor,
    *,
    context: PipelineContext,
    cache: CacheStore,
    artifacts: ArtifactStore,
    cache_keep: int = settings.CACHE_KEEP,
    node_index: int = 0,
    origin_url: str = "",
    artifact_job: str | None = None,
) -> JobResult:
    """Run every step of an (already started) executor's job in order."""
    return _JobRun(
        compiled,
        executor,
        context=context,
        cache=cache,
        artifacts=artifacts,
        cache_keep=cache_keep,
        node_index=node_index,
        origin_url=origin_url,
        artifact_job=artifact_job or compiled.name,
    ).run()


def _run_compiled(
    compiled: CompiledJob,
    *,
    context: PipelineContext,
    repo_root: Path,
    state_dir: Path,
    run_id: str,
    cache: CacheStore,
    artifacts: ArtifactStore,
    cache_keep: int,
    force_local: bool,
    shell: str | None,
    origin_url: str,
) -> JobResult:
    """Run all parallelism nodes of a job, one after another, each on a fresh executor."""
    console = get_console()
    total = JobResult(name=compiled.name, status="ok")

    for node in range(compiled.parallelism):
        node_name = compiled.name if compiled.parallelism == 1 else f"{compiled.name}-{node}"
        spec = replace(compiled.executor, working_directory=compiled.working_directory)
        executor = make_executor(
            spec,
            node_name,
            repo_root=repo_root,
            workspace=state_dir / "work" / run_id / node_name,
            run_id=run_id,
            force_local=force_local,
            shell=shell,
        )
        console.print_job_start(node_name, executor.kind if executor.kind == "local" else f"docker {compiled.executor.image}")
        with executor:
            res = run_job(
                compiled,
                executor,
                context=context,
                cache=cache,
                artifacts=artifacts,
                cache_keep=cache_keep,
                node_index=node,
                origin_url=origin_url,
                artifact_job=node_name,
            )
        console.print_job_finished(node_name, res.status, res.duration)

        total.duration += res.duration
        total.failures.extend(res.failures)
        total.cache.update(res.cache)
        if res.tests is not None:
            if total.tests is None:
                total.tests = TestSummary()
            total.tests.merge(res.tests)
        if res.status != "ok":
            total.status = "failed"

    return total


# ----------------------------------------------------------------------
# Workflow
# ----------------------------------------------------------------------

def branch_allowed(wj: m.WorkflowJob, branch: str) -> bool:
    """Branch filters: plain names match exactly, /regex/ patterns must fully match."""

    def matches(pattern: str) -> bool:
        if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
            return re.fullmatch(pattern[1:-1], branch) is not None
        return pattern == branch

    if wj.branches_only is not None and not any(matches(p) for p in wj.branches_only):
        return False
    if wj.branches_ignore is not None and any(matches(p) for p in wj.branches_ignore):
        return False
    return True


def run_workflow(
    pipeline: Pipeline,
    workflow: Workflow | str,
    context: PipelineContext,
    *,
    repo_root: str | Path = ".",
    state_dir: str | Path = settings.STATE_DIR,
    run_id: str | None = None,
    max_workers: int | None = None,
    fail_fast: bool = False,
    force_local: bool = False,
    shell: str | None = None,
    only: Optional[Set[str]] = None,
    cache_keep: int = settings.CACHE_KEEP,
    print_plan: bool = True,
) -> Dict[str, JobResult]:
    """
    Run a workflow's jobs as a DAG (`requires`), in parallel where possible.

    Statuses: ok | failed | blocked (a requirement failed) | filtered (branch filters)
              | skipped (not scheduled after a failure with fail_fast)
    """
    console = get_console()
    if isinstance(workflow, str):
        wf = pipeline.workflows.get(workflow)
        if wf is None:
            raise ConfigError(f"unknown workflow '{workflow}'; known: {sorted(pipeline.workflows)}", "workflows")
    else:
        wf = workflow

    if not workflow_enabled(pipeline, wf, context):
        console.print_info(f"Workflow '{wf.name}' is disabled by its when/unless condition")
        return {}

    repo_root_p = Path(repo_root).resolve()
    state_p = Path(state_dir).resolve()
    run_id = run_id or time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]
    cache = CacheStore(state_p / "cache")
    artifacts = ArtifactStore(state_p / "runs" / run_id)

    try:
        origin_url = git.get_remote_url("origin", cwd=repo_root_p)
    except (subprocess.CalledProcessError, FileNotFoundError):
        origin_url = ""

    deps = workflow_requires(wf)
    adj_all, _ = build_dag(deps)
    entries = {wj.run_name: wj for wj in wf.jobs}

    results: Dict[str, JobResult] = {}
    selected: Set[str] = set()
    if print_plan:
        console.print_header("Plan")
    for name, wj in entries.items():
        if only is not None and name not in only:
            continue
        if branch_allowed(wj, context.branch):
            selected.add(name)
            if print_plan:
                console.print_plan_job(name, "selected")
        else:
            results[name] = JobResult(name=name, status="filtered", failures=[f"branch '{context.branch}' filtered out"])
            if print_plan:
                console.print_plan_job_skipped(name, f"branch filter excludes '{context.branch}'")

    for name in [n for n, r in results.items() if r.status == "filtered"]:
        for d in descendants(adj_all, name):
            if d in selected:
                selected.discard(d)
                results[d] = JobResult(name=d, status="filtered", failures=[f"requires filtered job '{name}'"])
                if print_plan:
                    console.print_plan_job_skipped(d, f"requires filtered job '{name}'")

    # compile everything before running anything
    compiled = {
        n: compile_job(pipeline, entries[n].job, context, entries[n].arguments, run_name=n)
        for n in selected
    }

    adj, indeg = build_dag({n: [r for r in deps[n] if r in selected] for n in selected})
    ready: List[str] = sorted(n for n, d in indeg.items() if d == 0)
    failed = False

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    in_flight: Dict = {}

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            # schedule all currently ready
            while ready and not (fail_fast and failed):
                name = ready.pop(0)
                fut = pool.submit(
                    _run_compiled,
                    compiled[name],
                    context=context,
                    repo_root=repo_root_p,
                    state_dir=state_p,
                    run_id=run_id,
                    cache=cache,
                    artifacts=artifacts,
                    cache_keep=cache_keep,
                    force_local=force_local,
                    shell=shell,
                    origin_url=origin_url,
                )
                in_flight[fut] = name

            if not in_flight:
                break

            # wait for one completion, then loop to schedule newly-ready jobs
            fut = next(as_completed(list(in_flight.keys())))
            name = in_flight.pop(fut)

            try:
                results[name] = fut.result()
            except Exception as e:
                console.print_failure(name, str(e), is_job=True)
                results[name] = JobResult(name=name, status="failed", failures=[str(e).splitlines()[0] if str(e) else type(e).__name__])

            # unlock dependents only on success
            if results[name].status == "ok":
                for nxt in sorted(adj[name]):
                    indeg[nxt] -= 1
                    if indeg[nxt] == 0:
                        ready.append(nxt)
            else:
                failed = True

    for name in [n for n, r in results.items() if r.status == "failed"]:
        for d in descendants(adj, name):
            if d not in results:
                results[d] = JobResult(name=d, status="blocked", failures=[f"requires failed job '{name}'"])
    for name in selected:
        if name not in results:
            results[name] = JobResult(name=name, status="skipped")

    ordered = {n: results[n] for n in entries if n in results}
    _write_summary(artifacts.root / "summary.json", wf.name, context, ordered)
    return ordered


def _write_summary(path: Path, workflow: str, context: PipelineContext, results: Dict[str, JobResult]) -> None:
    doc = {
        "workflow": workflow,
        "branch": context.branch,
        "revision": context.revision,
        "pipeline_id": context.id,
        "jobs": {
            name: {
                "status": r.status,
                "duration": round(r.duration, 3),
                "failures": r.failures,
                "cache": r.cache,
                "tests": None
                if r.tests is None
                else {
                    "tests": r.tests.tests,
                    "failures": r.tests.failures,
                    "errors": r.tests.errors,
                    "skipped": r.tests.skipped,
                },
            }
            for name, r in results.items()
        },
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc, indent=2, sort_keys=True), encoding="utf-8")


def single_job_workflow(pipeline: Pipeline, job_name: str) -> Workflow:
    """Ad-hoc workflow running one job definition with its default parameters."""
    if job_name not in pipeline.jobs:
        raise ConfigError(f"unknown job '{job_name}'; known: {sorted(pipeline.jobs)}", "jobs")
    return Workflow(name=f"job:{job_name}", jobs=[m.WorkflowJob(job=job_name)])
