# src/cinderci/dsl.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from . import model as m
from .model import Command, Executor, Job, Parameter, Pipeline, Step, Workflow, WorkflowJob


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str | None,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    when: str = m.ON_SUCCESS,
    no_output_timeout: float | None = None,
    shell: str | None = None,
    background: bool = False,
) -> Step:
    """Create a shell step."""
    return Step(
        kind=m.RUN,
        name=name,
        run=cmd,
        working_directory=cwd,
        environment=dict(env or {}),
        when=when,
        no_output_timeout=no_output_timeout,
        shell=shell,
        background=background,
    )


def checkout(path: str | None = None) -> Step:
    return Step(kind=m.CHECKOUT, path=path)


def check_dirty(name: str | None = None) -> Step:
    """Fail the job if the build modified tracked files or left untracked ones."""
    return Step(kind=m.CHECK_DIRTY, name=name)


def restore_cache(*keys: str, name: str | None = None) -> Step:
    """Keys are tried in order: exact match first, then newest entry with the key as prefix."""
    if not keys:
        raise ValueError("restore_cache needs at least one key")
    return Step(kind=m.RESTORE_CACHE, name=name, keys=tuple(keys))


def save_cache(key: str, paths: Sequence[str], *, name: str | None = None, when: str = m.ON_SUCCESS) -> Step:
    if not paths:
        raise ValueError("save_cache needs at least one path")
    return Step(kind=m.SAVE_CACHE, name=name, key=key, paths=tuple(paths), when=when)


def store_artifacts(path: str, destination: str | None = None, *, name: str | None = None) -> Step:
    return Step(kind=m.STORE_ARTIFACTS, name=name, path=path, destination=destination, when=m.ALWAYS)


def store_test_results(path: str, *, name: str | None = None) -> Step:
    return Step(kind=m.STORE_TEST_RESULTS, name=name, path=path, when=m.ALWAYS)


def run_tests(
    cmd: str,
    *,
    path: str = "/tmp/test-results",
    converter: str = "libtest-json",
    name: str | None = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
) -> Step:
    """
    Run a test command, keep its output in <path>/output.log and convert it
    to <path>/results.xml. The step fails with the test command's exit code.
    """
    return Step(
        kind=m.RUN_TESTS,
        name=name,
        run=cmd,
        path=path,
        converter=converter,
        environment=dict(env or {}),
        working_directory=cwd,
    )


def invoke(command: str, name: str | None = None, **arguments: Any) -> Step:
    """Call a reusable command: invoke("cargo-check", extra_args="--release")."""
    return Step(kind=m.INVOKE, command=command, name=name, arguments=dict(arguments))


def when(condition: Any, *steps: Step) -> Step:
    return Step(kind=m.WHEN, condition=condition, steps=tuple(steps))


def unless(condition: Any, *steps: Step) -> Step:
    return Step(kind=m.UNLESS, condition=condition, steps=tuple(steps))


def param(type: str = "string", default: Any = m.MISSING, description: str = "", enum: Sequence[str] = ()) -> Parameter:
    """Parameter declaration; the name is filled in from the mapping key."""
    if type not in m.PARAMETER_TYPES:
        raise ValueError(f"unknown parameter type {type!r}; expected one of {list(m.PARAMETER_TYPES)}")
    if type == "steps" and default is not m.MISSING:
        default = tuple(default)
    return Parameter(name="", type=type, default=default, description=description, enum=tuple(enum))


def _named(params: Optional[Dict[str, Parameter]]) -> Dict[str, Parameter]:
    return {n: Parameter(name=n, type=p.type, default=p.default, description=p.description, enum=p.enum)
            for n, p in (params or {}).items()}


# ---------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------

def command(
    name: str,
    *steps: Step,
    parameters: Optional[Dict[str, Parameter]] = None,
    description: str = "",
) -> Command:
    if not steps:
        raise ValueError(f"command({name!r}) must have at least one step")
    return Command(name=name, steps=list(steps), parameters=_named(parameters), description=description)


def docker_executor(
    name: str,
    image: str,
    *,
    resource_class: str | None = None,
    env: Optional[Dict[str, str]] = None,
    working_directory: str | None = None,
) -> Executor:
    return Executor(
        name=name,
        kind="docker",
        image=image,
        resource_class=resource_class,
        environment=dict(env or {}),
        working_directory=working_directory,
    )


def local_executor(name: str = "local", *, env: Optional[Dict[str, str]] = None) -> Executor:
    return Executor(name=name, kind="local", environment=dict(env or {}))


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    executor: str,
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    env: Optional[Dict[str, str]] = None,
    parameters: Optional[Dict[str, Parameter]] = None,
    parallelism: int = 1,
    working_directory: str | None = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")
    if parallelism < 1:
        raise ValueError(f"job({name!r}) parallelism must be >= 1")

    return Job(
        name=name,
        executor=executor,
        steps=steps_final,
        environment={k: str(v) for k, v in (env or {}).items()},
        parameters=_named(parameters),
        parallelism=parallelism,
        working_directory=working_directory,
    )


def scheduled(
    job_name: str,
    *,
    name: str | None = None,
    requires: Sequence[str] = (),
    only: Optional[Sequence[str]] = None,
    ignore: Optional[Sequence[str]] = None,
    **arguments: Any,
) -> WorkflowJob:
    """One workflow entry: scheduled("run-tests", requires=["build"], only=["main"])."""
    return WorkflowJob(
        job=job_name,
        name=name,
        requires=list(requires),
        arguments=dict(arguments),
        branches_only=list(only) if only is not None else None,
        branches_ignore=list(ignore) if ignore is not None else None,
    )


def workflow(name: str, *entries: WorkflowJob | str, when: Any = None, unless: Any = None) -> Workflow:
    jobs = [WorkflowJob(job=e) if isinstance(e, str) else e for e in entries]
    if not jobs:
        raise ValueError(f"workflow({name!r}) must schedule at least one job")
    return Workflow(name=name, jobs=jobs, when=when, unless=unless)


def define_pipeline(
    *,
    executors: Sequence[Executor] = (),
    commands: Sequence[Command] = (),
    jobs: Sequence[Job] = (),
    workflows: Sequence[Workflow] = (),
    parameters: Optional[Dict[str, Parameter]] = None,
) -> Pipeline:
    """
    Assemble a pipeline from definitions. Names must be unique per kind.

    Users can write, in cinderci_pipeline.py:
        from cinderci.dsl import define_pipeline, job, sh, workflow, local_executor

        def pipeline():
            return define_pipeline(...)
    or set PIPELINE = define_pipeline(...) at module level.
    """

    def index(items, kind):
        out = {}
        for item in items:
            if item.name in out:
                raise ValueError(f"duplicate {kind} {item.name!r}")
            out[item.name] = item
        return out

    return Pipeline(
        executors=index(executors, "executor"),
        commands=index(commands, "command"),
        jobs=index(jobs, "job"),
        workflows=index(workflows, "workflow"),
        parameters=_named(parameters),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str, executor: str):
        self.name = name
        self.executor = executor
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._parameters: dict[str, Parameter] = {}
        self._parallelism = 1

    def define_step(self, name: str | None, run: str, cwd: str | None = None):
        self._steps.append(sh(name, run, cwd=cwd))
        return self

    def add(self, *steps: Step):
        self._steps.extend(steps)
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_parameter(self, name: str, parameter: Parameter):
        self._parameters[name] = parameter
        return self

    def parallel(self, n: int):
        self._parallelism = n
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            executor=self.executor,
            env=self._env,
            parameters=self._parameters,
            parallelism=self._parallelism,
        )


def build(name: str, executor: str) -> JobBuilder:
    """Convenience: build('test', 'rust').define_step(...).build()"""
    return JobBuilder(name, executor)
