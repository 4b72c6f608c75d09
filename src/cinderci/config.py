# config.py
from __future__ import annotations

import re
import runpy
from pathlib import Path
from typing import Any, Dict, List

import yaml

from . import model as m
from .errors import ConfigError
from .model import (
    Command,
    Executor,
    Job,
    MISSING,
    Parameter,
    Pipeline,
    Step,
    Workflow,
    WorkflowJob,
)
from .templating import single_reference


DEFAULT_CONFIG_CANDIDATES = [
    ".cinderci/config.yml",
    ".circleci/config.yml",
    "cinderci_pipeline.py",
]

_UNSUPPORTED_STEPS = {"setup_remote_docker", "persist_to_workspace", "attach_workspace", "add_ssh_keys"}
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def discover_config(path_arg: str | None = None, *, root: str | Path = ".") -> Path:
    """
    Resolve the pipeline file: explicit path, else the first default candidate that exists.
    """
    root_p = Path(root)
    if path_arg:
        p = Path(path_arg)
        if not p.is_absolute():
            p = root_p / p
        if not p.exists():
            raise FileNotFoundError(f"Pipeline file not found: {p}")
        return p

    for cand in DEFAULT_CONFIG_CANDIDATES:
        p = root_p / cand
        if p.exists():
            return p

    raise FileNotFoundError(
        "No pipeline file found. Looked for: " + ", ".join(DEFAULT_CONFIG_CANDIDATES)
    )


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a YAML document or a python file.

    A python file must define either:
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    if p.suffix in (".yml", ".yaml"):
        try:
            doc = yaml.safe_load(p.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML: {e}", str(p)) from e
        return parse_pipeline(doc)

    if p.suffix == ".py":
        globals_dict = runpy.run_path(str(p), run_name=f"cinderci_pipeline_{p.stem}")
        pipeline = None
        if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
            pipeline = globals_dict["pipeline"]()
        elif "PIPELINE" in globals_dict:
            pipeline = globals_dict["PIPELINE"]
        if not isinstance(pipeline, Pipeline):
            raise TypeError(
                "Pipeline file must return/define a Pipeline. "
                "Define pipeline() -> Pipeline or PIPELINE = Pipeline(...)."
            )
        return pipeline

    raise ValueError(f"Pipeline must be a .yml/.yaml or .py file, got: {p.name}")


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def parse_pipeline(doc: Any) -> Pipeline:
    if not isinstance(doc, dict):
        raise ConfigError("top level must be a mapping")

    if "orbs" in doc:
        raise ConfigError("orbs are not supported", "orbs")

    pipeline = Pipeline(version=str(doc.get("version", "2.1")))

    for name, raw in _mapping(doc.get("parameters"), "parameters").items():
        pipeline.parameters[name] = parse_parameter(name, raw, f"parameters.{name}")

    for name, raw in _mapping(doc.get("executors"), "executors").items():
        pipeline.executors[name] = parse_executor(name, raw, f"executors.{name}")

    for name, raw in _mapping(doc.get("commands"), "commands").items():
        pipeline.commands[name] = parse_command(name, raw, f"commands.{name}")

    for name, raw in _mapping(doc.get("jobs"), "jobs").items():
        pipeline.jobs[name] = parse_job(name, raw, pipeline, f"jobs.{name}")

    for name, raw in _mapping(doc.get("workflows"), "workflows").items():
        if name == "version":
            continue
        pipeline.workflows[name] = parse_workflow(name, raw, f"workflows.{name}")

    return pipeline


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError("expected a mapping", where)
    return value


def _str_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return [str(v) for v in value]
    raise ConfigError("expected a string or list of strings", where)


def _env(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, list):
        # [{K: V}, ...] and ["K=V", ...] forms
        out: Dict[str, str] = {}
        for i, item in enumerate(value):
            if isinstance(item, dict):
                out.update({str(k): _env_value(v) for k, v in item.items()})
            elif isinstance(item, str) and "=" in item:
                k, v = item.split("=", 1)
                out[k] = v
            else:
                raise ConfigError("invalid environment entry", f"{where}[{i}]")
        return out
    if not isinstance(value, dict):
        raise ConfigError("environment must be a mapping", where)
    return {str(k): _env_value(v) for k, v in value.items()}


def _env_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return "" if v is None else str(v)


def parse_duration(value: Any, where: str) -> float:
    """'10m' / '90s' / '1h' / 30 -> seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    mt = _DURATION_RE.match(str(value))
    if not mt:
        raise ConfigError(f"invalid duration {value!r}", where)
    n = float(mt.group(1))
    unit = mt.group(2) or "s"
    return n * {"s": 1, "m": 60, "h": 3600}[unit]


def parse_parameter(name: str, raw: Any, where: str) -> Parameter:
    raw = _mapping(raw, where)
    ptype = raw.get("type", "string")
    if ptype not in m.PARAMETER_TYPES:
        raise ConfigError(f"unknown parameter type '{ptype}'", where)
    enum = tuple(_str_list(raw.get("enum"), f"{where}.enum"))
    if ptype == "enum" and not enum:
        raise ConfigError("enum parameter needs 'enum' values", where)
    default = raw.get("default", MISSING)
    if ptype == "steps" and default is not MISSING:
        default = tuple(parse_steps(default or [], f"{where}.default"))
    return Parameter(
        name=name,
        type=ptype,
        default=default,
        description=str(raw.get("description", "")),
        enum=enum,
    )


def parse_executor(name: str, raw: Any, where: str) -> Executor:
    raw = _mapping(raw, where)
    env = _env(raw.get("environment"), f"{where}.environment")
    workdir = raw.get("working_directory")
    resource_class = raw.get("resource_class")

    if "docker" in raw:
        images = raw["docker"]
        if not isinstance(images, list) or not images or not isinstance(images[0], dict) or "image" not in images[0]:
            raise ConfigError("docker executor needs a list with at least one {image: ...}", f"{where}.docker")
        if len(images) > 1:
            raise ConfigError("secondary (service) containers are not supported", f"{where}.docker")
        primary = images[0]
        env = {**_env(primary.get("environment"), f"{where}.docker[0].environment"), **env}
        return Executor(
            name=name,
            kind="docker",
            image=str(primary["image"]),
            resource_class=resource_class,
            environment=env,
            working_directory=workdir,
        )

    if "local" in raw:
        return Executor(name=name, kind="local", resource_class=resource_class, environment=env, working_directory=workdir)

    for unsupported in ("machine", "macos", "windows"):
        if unsupported in raw:
            raise ConfigError(f"'{unsupported}' executors are not supported (use docker or local)", where)

    raise ConfigError("executor needs a 'docker' or 'local' section", where)


def parse_command(name: str, raw: Any, where: str) -> Command:
    raw = _mapping(raw, where)
    if "steps" not in raw:
        raise ConfigError("command has no steps", where)
    params = {
        pname: parse_parameter(pname, praw, f"{where}.parameters.{pname}")
        for pname, praw in _mapping(raw.get("parameters"), f"{where}.parameters").items()
    }
    return Command(
        name=name,
        steps=parse_steps(raw["steps"], f"{where}.steps"),
        parameters=params,
        description=str(raw.get("description", "")),
    )


def parse_job(name: str, raw: Any, pipeline: Pipeline, where: str) -> Job:
    raw = _mapping(raw, where)

    executor_ref = raw.get("executor")
    if isinstance(executor_ref, dict):
        if set(executor_ref) - {"name"}:
            raise ConfigError("executor parameters are not supported", f"{where}.executor")
        executor_ref = executor_ref.get("name")

    if executor_ref is None:
        # inline executor (docker: / local:) on the job itself
        if any(k in raw for k in ("docker", "local", "machine", "macos", "windows")):
            inline_name = f"{name}-executor"
            inline = {k: raw[k] for k in ("docker", "local", "machine", "macos", "windows", "resource_class") if k in raw}
            pipeline.executors[inline_name] = parse_executor(inline_name, inline, where)
            executor_ref = inline_name
        else:
            raise ConfigError("job has no executor", where)

    if "steps" not in raw:
        raise ConfigError("job has no steps", where)

    parallelism = raw.get("parallelism", 1)
    if isinstance(parallelism, bool) or not isinstance(parallelism, int) or parallelism < 1:
        raise ConfigError("parallelism must be a positive integer", f"{where}.parallelism")

    params = {
        pname: parse_parameter(pname, praw, f"{where}.parameters.{pname}")
        for pname, praw in _mapping(raw.get("parameters"), f"{where}.parameters").items()
    }

    return Job(
        name=name,
        executor=str(executor_ref),
        steps=parse_steps(raw["steps"], f"{where}.steps"),
        environment=_env(raw.get("environment"), f"{where}.environment"),
        parameters=params,
        parallelism=parallelism,
        working_directory=raw.get("working_directory"),
        description=str(raw.get("description", "")),
    )


def parse_workflow(name: str, raw: Any, where: str) -> Workflow:
    raw = _mapping(raw, where)
    entries = raw.get("jobs")
    if not isinstance(entries, list) or not entries:
        raise ConfigError("workflow needs a non-empty 'jobs' list", where)

    jobs: List[WorkflowJob] = []
    for i, entry in enumerate(entries):
        ewhere = f"{where}.jobs[{i}]"
        if isinstance(entry, str):
            jobs.append(WorkflowJob(job=entry))
            continue
        if not isinstance(entry, dict) or len(entry) != 1:
            raise ConfigError("workflow job must be a name or a single-key mapping", ewhere)

        job_name, opts = next(iter(entry.items()))
        opts = dict(_mapping(opts, ewhere))
        requires = _str_list(opts.pop("requires", None), f"{ewhere}.requires")
        alias = opts.pop("name", None)
        opts.pop("context", None)

        only = ignore = None
        filters = _mapping(opts.pop("filters", None), f"{ewhere}.filters")
        branches = _mapping(filters.get("branches"), f"{ewhere}.filters.branches")
        if "only" in branches:
            only = _str_list(branches["only"], f"{ewhere}.filters.branches.only")
        if "ignore" in branches:
            ignore = _str_list(branches["ignore"], f"{ewhere}.filters.branches.ignore")

        jobs.append(
            WorkflowJob(
                job=str(job_name),
                name=str(alias) if alias is not None else None,
                requires=requires,
                arguments=opts,
                branches_only=only,
                branches_ignore=ignore,
            )
        )

    return Workflow(name=name, jobs=jobs, when=raw.get("when"), unless=raw.get("unless"))


def parse_steps(raw: Any, where: str) -> List[Step]:
    if isinstance(raw, str) and single_reference(raw):
        # `steps: << parameters.steps >>`
        return [Step(kind=m.INVOKE, command=raw)]
    if not isinstance(raw, list):
        raise ConfigError("steps must be a list", where)
    return [parse_step(item, f"{where}[{i}]") for i, item in enumerate(raw)]


def parse_step(raw: Any, where: str) -> Step:
    if isinstance(raw, Step):
        return raw

    if isinstance(raw, str):
        if raw == m.CHECKOUT:
            return Step(kind=m.CHECKOUT)
        if raw == m.CHECK_DIRTY:
            return Step(kind=m.CHECK_DIRTY)
        if raw in _UNSUPPORTED_STEPS:
            raise ConfigError(f"step '{raw}' is not supported", where)
        # command invocation without arguments, or `- << parameters.steps >>`
        return Step(kind=m.INVOKE, command=raw)

    if not isinstance(raw, dict) or len(raw) != 1:
        raise ConfigError("step must be a string or a single-key mapping", where)

    kind, body = next(iter(raw.items()))
    kind = str(kind)
    swhere = f"{where}.{kind}"

    if kind in _UNSUPPORTED_STEPS:
        raise ConfigError(f"step '{kind}' is not supported", where)

    if kind == m.RUN:
        if isinstance(body, str):
            return Step(kind=m.RUN, run=body)
        body = _mapping(body, swhere)
        if "command" not in body:
            raise ConfigError("run step needs a command", swhere)
        return Step(
            kind=m.RUN,
            name=body.get("name"),
            run=str(body["command"]),
            environment=_env(body.get("environment"), f"{swhere}.environment"),
            working_directory=body.get("working_directory"),
            shell=body.get("shell"),
            when=_step_when(body.get("when"), swhere),
            no_output_timeout=(
                parse_duration(body["no_output_timeout"], f"{swhere}.no_output_timeout")
                if "no_output_timeout" in body
                else None
            ),
            background=bool(body.get("background", False)),
        )

    if kind == m.CHECKOUT:
        body = _mapping(body, swhere)
        return Step(kind=m.CHECKOUT, path=body.get("path"))

    if kind == m.CHECK_DIRTY:
        body = _mapping(body, swhere)
        return Step(kind=m.CHECK_DIRTY, name=body.get("name"), when=_step_when(body.get("when"), swhere))

    if kind == m.RESTORE_CACHE:
        body = _mapping(body, swhere)
        keys = _str_list(body.get("keys"), f"{swhere}.keys")
        if "key" in body:
            keys = [str(body["key"])] + keys
        if not keys:
            raise ConfigError("restore_cache needs 'key' or 'keys'", swhere)
        return Step(kind=m.RESTORE_CACHE, name=body.get("name"), keys=tuple(keys))

    if kind == m.SAVE_CACHE:
        body = _mapping(body, swhere)
        if "key" not in body:
            raise ConfigError("save_cache needs a key", swhere)
        paths = _str_list(body.get("paths"), f"{swhere}.paths")
        if not paths:
            raise ConfigError("save_cache needs paths", swhere)
        return Step(
            kind=m.SAVE_CACHE,
            name=body.get("name"),
            key=str(body["key"]),
            paths=tuple(paths),
            when=_step_when(body.get("when"), swhere),
        )

    if kind == m.STORE_ARTIFACTS:
        body = _mapping(body, swhere)
        if "path" not in body:
            raise ConfigError("store_artifacts needs a path", swhere)
        return Step(
            kind=m.STORE_ARTIFACTS,
            name=body.get("name"),
            path=str(body["path"]),
            destination=body.get("destination"),
            when=_step_when(body.get("when"), swhere, default=m.ALWAYS),
        )

    if kind == m.STORE_TEST_RESULTS:
        body = _mapping(body, swhere)
        if "path" not in body:
            raise ConfigError("store_test_results needs a path", swhere)
        return Step(
            kind=m.STORE_TEST_RESULTS,
            name=body.get("name"),
            path=str(body["path"]),
            when=_step_when(body.get("when"), swhere, default=m.ALWAYS),
        )

    if kind == m.RUN_TESTS:
        body = _mapping(body, swhere)
        if "command" not in body:
            raise ConfigError("run_tests needs a command", swhere)
        return Step(
            kind=m.RUN_TESTS,
            name=body.get("name"),
            run=str(body["command"]),
            path=str(body.get("path", "/tmp/test-results")),
            converter=body.get("converter", "libtest-json"),
            environment=_env(body.get("environment"), f"{swhere}.environment"),
            working_directory=body.get("working_directory"),
        )

    if kind in (m.WHEN, m.UNLESS):
        body = _mapping(body, swhere)
        if "condition" not in body or "steps" not in body:
            raise ConfigError(f"'{kind}' needs condition and steps", swhere)
        return Step(
            kind=kind,
            condition=body["condition"],
            steps=tuple(parse_steps(body["steps"], f"{swhere}.steps")),
        )

    # command invocation with arguments; arguments stay raw until the command is known
    if body is not None and not isinstance(body, dict):
        raise ConfigError("command arguments must be a mapping", swhere)
    args = dict(body or {})
    name = args.pop("name", None)
    return Step(kind=m.INVOKE, command=kind, arguments=args, name=name)


def _step_when(value: Any, where: str, default: str = m.ON_SUCCESS) -> str:
    if value is None:
        return default
    if value not in m.STEP_WHEN:
        raise ConfigError(f"step 'when' must be one of {list(m.STEP_WHEN)}", where)
    return value


# ----------------------------------------------------------------------
# Dumping (Pipeline -> plain dict, e.g. for `cinderci init`)
# ----------------------------------------------------------------------

def parameter_to_dict(p: Parameter) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": p.type}
    if p.description:
        out["description"] = p.description
    if p.default is not MISSING:
        out["default"] = [step_to_dict(s) for s in p.default] if p.type == "steps" else p.default
    if p.enum:
        out["enum"] = list(p.enum)
    return out


def step_to_dict(step: Step) -> Any:
    k = step.kind
    if k == m.CHECKOUT:
        return "checkout" if not step.path else {"checkout": {"path": step.path}}
    if k == m.CHECK_DIRTY:
        return "check_dirty" if not step.name else {"check_dirty": {"name": step.name}}
    if k == m.RUN:
        body: Dict[str, Any] = {"command": step.run}
        if step.name:
            body["name"] = step.name
        if step.environment:
            body["environment"] = dict(step.environment)
        if step.working_directory:
            body["working_directory"] = step.working_directory
        if step.shell:
            body["shell"] = step.shell
        if step.when != m.ON_SUCCESS:
            body["when"] = step.when
        if step.no_output_timeout is not None:
            body["no_output_timeout"] = f"{int(step.no_output_timeout)}s"
        if step.background:
            body["background"] = True
        return {"run": body}
    if k == m.RESTORE_CACHE:
        body = {"keys": list(step.keys)} if len(step.keys) > 1 else {"key": step.keys[0]}
        if step.name:
            body["name"] = step.name
        return {"restore_cache": body}
    if k == m.SAVE_CACHE:
        body = {"key": step.key, "paths": list(step.paths)}
        if step.name:
            body["name"] = step.name
        if step.when != m.ON_SUCCESS:
            body["when"] = step.when
        return {"save_cache": body}
    if k == m.STORE_ARTIFACTS:
        body = {"path": step.path}
        if step.destination:
            body["destination"] = step.destination
        return {"store_artifacts": body}
    if k == m.STORE_TEST_RESULTS:
        return {"store_test_results": {"path": step.path}}
    if k == m.RUN_TESTS:
        body = {"command": step.run, "path": step.path}
        if step.name:
            body["name"] = step.name
        if step.converter and step.converter != "libtest-json":
            body["converter"] = step.converter
        if step.environment:
            body["environment"] = dict(step.environment)
        return {"run_tests": body}
    if k in (m.WHEN, m.UNLESS):
        return {k: {"condition": step.condition, "steps": [step_to_dict(s) for s in step.steps]}}
    if k == m.INVOKE:
        if not step.arguments and not step.name:
            return step.command
        args = dict(step.arguments)
        if step.name:
            args["name"] = step.name
        return {step.command: args}
    raise ValueError(f"cannot serialize step kind {k!r}")


def pipeline_to_dict(pipeline: Pipeline) -> Dict[str, Any]:
    doc: Dict[str, Any] = {"version": pipeline.version}

    if pipeline.parameters:
        doc["parameters"] = {n: parameter_to_dict(p) for n, p in pipeline.parameters.items()}

    executors: Dict[str, Any] = {}
    for name, ex in pipeline.executors.items():
        body: Dict[str, Any] = {"docker": [{"image": ex.image}]} if ex.kind == "docker" else {"local": {}}
        if ex.resource_class:
            body["resource_class"] = ex.resource_class
        if ex.environment:
            body["environment"] = dict(ex.environment)
        if ex.working_directory:
            body["working_directory"] = ex.working_directory
        executors[name] = body
    doc["executors"] = executors

    commands: Dict[str, Any] = {}
    for name, cmd in pipeline.commands.items():
        body = {}
        if cmd.description:
            body["description"] = cmd.description
        if cmd.parameters:
            body["parameters"] = {n: parameter_to_dict(p) for n, p in cmd.parameters.items()}
        body["steps"] = [step_to_dict(s) for s in cmd.steps]
        commands[name] = body
    doc["commands"] = commands

    jobs: Dict[str, Any] = {}
    for name, job in pipeline.jobs.items():
        body = {"executor": job.executor}
        if job.parallelism != 1:
            body["parallelism"] = job.parallelism
        if job.environment:
            body["environment"] = dict(job.environment)
        if job.parameters:
            body["parameters"] = {n: parameter_to_dict(p) for n, p in job.parameters.items()}
        if job.working_directory:
            body["working_directory"] = job.working_directory
        body["steps"] = [step_to_dict(s) for s in job.steps]
        jobs[name] = body
    doc["jobs"] = jobs

    workflows: Dict[str, Any] = {"version": 2}
    for name, wf in pipeline.workflows.items():
        entries: List[Any] = []
        for wj in wf.jobs:
            opts: Dict[str, Any] = dict(wj.arguments)
            if wj.name:
                opts["name"] = wj.name
            if wj.requires:
                opts["requires"] = list(wj.requires)
            branches: Dict[str, Any] = {}
            if wj.branches_only is not None:
                branches["only"] = list(wj.branches_only)
            if wj.branches_ignore is not None:
                branches["ignore"] = list(wj.branches_ignore)
            if branches:
                opts["filters"] = {"branches": branches}
            entries.append({wj.job: opts} if opts else wj.job)
        body = {"jobs": entries}
        if wf.when is not None:
            body["when"] = wf.when
        if wf.unless is not None:
            body["unless"] = wf.unless
        workflows[name] = body
    doc["workflows"] = workflows

    return doc


class _Dumper(yaml.SafeDumper):
    """Plain output: no anchors for shared objects, block style for multi-line scripts."""

    def ignore_aliases(self, data):
        return True


def _represent_str(dumper, data):
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_Dumper.add_representer(str, _represent_str)


def dump_pipeline_yaml(pipeline: Pipeline) -> str:
    return yaml.dump(pipeline_to_dict(pipeline), Dumper=_Dumper, sort_keys=False, default_flow_style=False, width=100)
