# compiler.py
# Turns a job definition into the flat list of steps the runner executes:
#   - command invocations are expanded (recursively) with their parameters bound
#   - << parameters.* >> / << pipeline.* >> are substituted
#   - when / unless blocks are decided against the pipeline context
from __future__ import annotations

import re
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from . import model as m
from .conditions import evaluate
from .config import parse_steps
from .dag import build_dag, topo_levels, workflow_requires
from .errors import ConfigError
from .model import CompiledJob, Parameter, Pipeline, PipelineContext, Step
from .templating import interpolate, interpolate_value, single_reference


_ENV_VAR_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def base_scope(pipeline: Pipeline, context: PipelineContext) -> Dict[str, Any]:
    """`<< pipeline.* >>` values, including bound pipeline parameters."""
    scope: Dict[str, Any] = dict(context.values())
    bound = bind_parameters(pipeline.parameters, context.parameters, scope={}, where="parameters")
    for k, v in bound.items():
        scope[f"pipeline.parameters.{k}"] = v
    return scope


def bind_parameters(
    params: Mapping[str, Parameter],
    args: Mapping[str, Any],
    *,
    scope: Mapping[str, Any],
    where: str,
) -> Dict[str, Any]:
    """
    Match invocation arguments against declared parameters.

    Applies defaults, rejects unknown and missing arguments and checks types.
    `scope` is the caller's scope, used for steps-typed arguments and string defaults.
    """
    unknown = sorted(set(args) - set(params))
    if unknown:
        raise ConfigError(f"unknown argument(s) {unknown}; declared parameters: {sorted(params)}", where)

    bound: Dict[str, Any] = {}
    for name, p in params.items():
        if name in args:
            value = args[name]
            from_default = False
        elif p.required:
            raise ConfigError(f"missing required parameter '{name}'", where)
        else:
            value = p.default
            from_default = True

        pwhere = f"{where}.{name}"
        if p.type == "steps":
            raw = value if value is not None else []
            if not isinstance(raw, (list, tuple)):
                raise ConfigError("steps parameter needs a list of steps", pwhere)
            steps: List[Step] = []
            for item in raw:
                if isinstance(item, Step):
                    steps.append(item)
                elif isinstance(item, (list, tuple)) and all(isinstance(s, Step) for s in item):
                    # an interpolated `- << parameters.steps >>` inside the argument list
                    steps.extend(item)
                else:
                    steps.extend(parse_steps([item], pwhere))
            bound[name] = tuple(steps) if from_default else tuple(_substitute_steps(steps, scope, pwhere))
            continue

        if from_default and isinstance(value, str):
            value = interpolate(value, scope, where=pwhere)
        bound[name] = _coerce(p, value, pwhere)

    return bound


def _coerce(p: Parameter, value: Any, where: str) -> Any:
    if p.type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise ConfigError(f"expected boolean, got {value!r}", where)

    if p.type == "integer":
        if isinstance(value, bool):
            raise ConfigError(f"expected integer, got {value!r}", where)
        if isinstance(value, int):
            return value
        if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
            return int(value)
        raise ConfigError(f"expected integer, got {value!r}", where)

    if p.type == "enum":
        if str(value) not in p.enum:
            raise ConfigError(f"{value!r} is not one of {list(p.enum)}", where)
        return str(value)

    if p.type == "env_var_name":
        if not isinstance(value, str) or not _ENV_VAR_NAME_RE.match(value):
            raise ConfigError(f"{value!r} is not a valid environment variable name", where)
        return value

    # string
    if isinstance(value, bool) or value is None or isinstance(value, (dict, list, tuple)):
        raise ConfigError(f"expected string, got {value!r}", where)
    return str(value)


# ----------------------------------------------------------------------
# Substitution (no expansion)
# ----------------------------------------------------------------------

def _substitute_steps(steps: List[Step], scope: Mapping[str, Any], where: str) -> List[Step]:
    out: List[Step] = []
    for i, step in enumerate(steps):
        swhere = f"{where}[{i}]"
        if step.kind == m.INVOKE and step.command and single_reference(step.command):
            value = interpolate(step.command, scope, where=swhere)
            if not isinstance(value, (list, tuple)) or not all(isinstance(s, Step) for s in value):
                raise ConfigError(f"{step.command} is not a steps parameter", swhere)
            out.extend(_substitute_steps(list(value), scope, swhere))
            continue
        out.append(_substitute_step(step, scope, swhere))
    return out


def _substitute_step(step: Step, scope: Mapping[str, Any], where: str) -> Step:
    def s(v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        out = interpolate(v, scope, where=where)
        return out if isinstance(out, str) else _as_text(out)

    changes: Dict[str, Any] = {
        "name": s(step.name),
        "run": s(step.run),
        "environment": {k: _as_text(interpolate(v, scope, where=where)) for k, v in step.environment.items()},
        "working_directory": s(step.working_directory),
        "shell": s(step.shell),
        "keys": tuple(s(k) for k in step.keys),
        "key": s(step.key),
        "paths": tuple(s(p) for p in step.paths),
        "path": s(step.path),
        "destination": s(step.destination),
        "arguments": interpolate_value(step.arguments, scope, where=where),
    }
    if step.kind in (m.WHEN, m.UNLESS):
        changes["condition"] = interpolate_value(step.condition, scope, where=where)
        changes["steps"] = tuple(_substitute_steps(list(step.steps), scope, f"{where}.steps"))
    return replace(step, **changes)


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, dict)):
        raise ConfigError(f"cannot use {type(value).__name__} value inside text")
    return "" if value is None else str(value)


# ----------------------------------------------------------------------
# Expansion
# ----------------------------------------------------------------------

def expand_steps(
    pipeline: Pipeline,
    steps: List[Step],
    scope: Mapping[str, Any],
    base: Mapping[str, Any],
    *,
    where: str,
    stack: tuple = (),
) -> List[Step]:
    out: List[Step] = []
    for i, step in enumerate(_substitute_steps(list(steps), scope, where)):
        swhere = f"{where}[{i}]"

        if step.kind == m.INVOKE:
            name = step.command or ""
            cmd = pipeline.commands.get(name)
            if cmd is None:
                raise ConfigError(f"unknown command '{name}'", swhere)
            if name in stack:
                chain = " -> ".join(stack + (name,))
                raise ConfigError(f"command invocation cycle: {chain}", swhere)

            bound = bind_parameters(cmd.parameters, step.arguments, scope=scope, where=swhere)
            cmd_scope = dict(base)
            cmd_scope.update({f"parameters.{k}": v for k, v in bound.items()})
            out.extend(
                expand_steps(
                    pipeline,
                    cmd.steps,
                    cmd_scope,
                    base,
                    where=f"commands.{name}.steps",
                    stack=stack + (name,),
                )
            )
            continue

        if step.kind in (m.WHEN, m.UNLESS):
            ok = evaluate(step.condition, where=swhere)
            if step.kind == m.UNLESS:
                ok = not ok
            if ok:
                out.extend(expand_steps(pipeline, list(step.steps), scope, base, where=f"{swhere}.steps", stack=stack))
            continue

        if step.kind not in m.BUILTIN_KINDS:
            raise ConfigError(f"unknown step kind '{step.kind}'", swhere)
        out.append(step)
    return out


def compile_job(
    pipeline: Pipeline,
    job_name: str,
    context: PipelineContext,
    arguments: Optional[Mapping[str, Any]] = None,
    *,
    run_name: str | None = None,
) -> CompiledJob:
    job = pipeline.jobs.get(job_name)
    if job is None:
        raise ConfigError(f"unknown job '{job_name}'", "jobs")

    executor = pipeline.executors.get(job.executor)
    if executor is None:
        raise ConfigError(f"unknown executor '{job.executor}'", f"jobs.{job_name}.executor")

    base = base_scope(pipeline, context)
    args = interpolate_value(dict(arguments or {}), base, where=f"jobs.{job_name}")
    bound = bind_parameters(job.parameters, args, scope=base, where=f"jobs.{job_name}.parameters")

    scope = dict(base)
    scope.update({f"parameters.{k}": v for k, v in bound.items()})

    env = dict(executor.environment)
    for k, v in job.environment.items():
        env[k] = _as_text(interpolate(v, scope, where=f"jobs.{job_name}.environment.{k}"))

    steps = expand_steps(pipeline, job.steps, scope, base, where=f"jobs.{job_name}.steps")

    return CompiledJob(
        name=run_name or job_name,
        job=job_name,
        executor=executor,
        steps=steps,
        environment=env,
        parallelism=job.parallelism,
        working_directory=job.working_directory or executor.working_directory,
    )


def workflow_enabled(pipeline: Pipeline, workflow: m.Workflow, context: PipelineContext) -> bool:
    base = base_scope(pipeline, context)
    where = f"workflows.{workflow.name}"
    if workflow.when is not None and not evaluate(interpolate_value(workflow.when, base, where=where), where=where):
        return False
    if workflow.unless is not None and evaluate(interpolate_value(workflow.unless, base, where=where), where=where):
        return False
    return True


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def _walk(steps, where):
    for i, step in enumerate(steps):
        swhere = f"{where}[{i}]"
        yield step, swhere
        if step.steps:
            yield from _walk(step.steps, f"{swhere}.steps")


def validate_pipeline(pipeline: Pipeline, context: Optional[PipelineContext] = None) -> List[str]:
    """
    Check that every referenced name exists and workflow graphs are acyclic.
    With a context, every scheduled job is also compiled.
    Returns a list of problems (empty when valid).
    """
    problems: List[str] = []

    def refs_in(steps, where):
        for step, swhere in _walk(steps, where):
            if step.kind == m.INVOKE and step.command and not single_reference(step.command):
                if step.command not in pipeline.commands:
                    problems.append(f"{swhere}: unknown command '{step.command}'")
                yield step.command

    calls: Dict[str, set] = {}
    for name, cmd in pipeline.commands.items():
        calls[name] = {c for c in refs_in(cmd.steps, f"commands.{name}.steps") if c in pipeline.commands}

    for name, job in pipeline.jobs.items():
        if job.executor not in pipeline.executors:
            problems.append(f"jobs.{name}.executor: unknown executor '{job.executor}'")
        list(refs_in(job.steps, f"jobs.{name}.steps"))

    # command -> command invocation cycles
    try:
        topo_levels(*build_dag({n: sorted(c) for n, c in calls.items()}))
    except ValueError as e:
        problems.append(f"commands: invocation cycle ({e})")

    for wname, wf in pipeline.workflows.items():
        for i, wj in enumerate(wf.jobs):
            if wj.job not in pipeline.jobs:
                problems.append(f"workflows.{wname}.jobs[{i}]: unknown job '{wj.job}'")
        try:
            topo_levels(*build_dag(workflow_requires(wf)))
        except ValueError as e:
            problems.append(f"workflows.{wname}: {e}")

    if context is not None and not problems:
        for wname, wf in pipeline.workflows.items():
            for wj in wf.jobs:
                try:
                    compile_job(pipeline, wj.job, context, wj.arguments, run_name=wj.run_name)
                except ConfigError as e:
                    problems.append(f"workflows.{wname}.{wj.run_name}: {e}")

    return problems
