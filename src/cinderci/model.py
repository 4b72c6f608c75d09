# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


# Step kinds
RUN = "run"
CHECKOUT = "checkout"
RESTORE_CACHE = "restore_cache"
SAVE_CACHE = "save_cache"
STORE_ARTIFACTS = "store_artifacts"
STORE_TEST_RESULTS = "store_test_results"
RUN_TESTS = "run_tests"
CHECK_DIRTY = "check_dirty"
INVOKE = "invoke"
WHEN = "when"
UNLESS = "unless"

BUILTIN_KINDS = (
    RUN,
    CHECKOUT,
    RESTORE_CACHE,
    SAVE_CACHE,
    STORE_ARTIFACTS,
    STORE_TEST_RESULTS,
    RUN_TESTS,
    CHECK_DIRTY,
    WHEN,
    UNLESS,
)

# Step `when` attribute: decides if a step runs after an earlier failure
ON_SUCCESS = "on_success"
ON_FAIL = "on_fail"
ALWAYS = "always"
STEP_WHEN = (ON_SUCCESS, ON_FAIL, ALWAYS)

PARAMETER_TYPES = ("string", "boolean", "integer", "enum", "steps", "env_var_name")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


@dataclass(frozen=True)
class Step:
    """
    A single step inside a job or command.

    One dataclass covers every step kind; which fields matter depends on `kind`:
      run                 -> run, environment, working_directory, shell, no_output_timeout, background
      run_tests           -> run (test command), path (results dir), converter
      restore_cache       -> keys
      save_cache          -> key, paths
      store_artifacts     -> path, destination
      store_test_results  -> path
      invoke              -> command, arguments
      when / unless       -> condition, steps
    """
    kind: str
    name: str | None = None
    run: str | None = None
    environment: Dict[str, str] = field(default_factory=dict)
    working_directory: str | None = None
    shell: str | None = None
    when: str = ON_SUCCESS
    no_output_timeout: float | None = None
    background: bool = False
    keys: Tuple[str, ...] = ()
    key: str | None = None
    paths: Tuple[str, ...] = ()
    path: str | None = None
    destination: str | None = None
    converter: str | None = None
    command: str | None = None
    arguments: Dict[str, Any] = field(default_factory=dict)
    condition: Any = None
    steps: Tuple["Step", ...] = ()

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.kind == RUN and self.run:
            return self.run.strip().splitlines()[0] if self.run.strip() else "run"
        if self.kind == INVOKE and self.command:
            return self.command
        if self.kind == RESTORE_CACHE:
            return "Restoring cache"
        if self.kind == SAVE_CACHE:
            return "Saving cache"
        if self.kind == STORE_ARTIFACTS:
            return "Uploading artifacts"
        if self.kind == STORE_TEST_RESULTS:
            return "Uploading test results"
        if self.kind == CHECKOUT:
            return "Checkout code"
        if self.kind == CHECK_DIRTY:
            return "Checking dirty git"
        if self.kind == RUN_TESTS:
            return "Run tests"
        return self.kind


@dataclass(frozen=True)
class Parameter:
    name: str
    type: str = "string"
    default: Any = MISSING
    description: str = ""
    enum: Tuple[str, ...] = ()

    @property
    def required(self) -> bool:
        return self.default is MISSING


@dataclass
class Executor:
    """Named compute profile: container image + resource class (or the host)."""
    name: str
    kind: str = "docker"  # "docker" | "local"
    image: str | None = None
    resource_class: str | None = None
    environment: Dict[str, str] = field(default_factory=dict)
    working_directory: str | None = None


@dataclass
class Command:
    """A named, parameterizable sequence of steps."""
    name: str
    steps: List[Step]
    parameters: Dict[str, Parameter] = field(default_factory=dict)
    description: str = ""


@dataclass
class Job:
    """An executor reference plus an ordered sequence of steps and environment variables."""
    name: str
    executor: str
    steps: List[Step]
    environment: Dict[str, str] = field(default_factory=dict)
    parameters: Dict[str, Parameter] = field(default_factory=dict)
    parallelism: int = 1
    working_directory: str | None = None
    description: str = ""


@dataclass
class WorkflowJob:
    """
    One entry of a workflow's job list.

    `name` is the name the job runs under inside the workflow (defaults to `job`),
    so one job definition can be scheduled several times with different arguments.
    """
    job: str
    name: str | None = None
    requires: List[str] = field(default_factory=list)
    arguments: Dict[str, Any] = field(default_factory=dict)
    branches_only: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = None

    @property
    def run_name(self) -> str:
        return self.name or self.job


@dataclass
class Workflow:
    """A set of jobs plus optional trigger conditions (`when` / `unless` on pipeline values)."""
    name: str
    jobs: List[WorkflowJob]
    when: Any = None
    unless: Any = None


@dataclass
class Pipeline:
    executors: Dict[str, Executor] = field(default_factory=dict)
    commands: Dict[str, Command] = field(default_factory=dict)
    jobs: Dict[str, Job] = field(default_factory=dict)
    workflows: Dict[str, Workflow] = field(default_factory=dict)
    parameters: Dict[str, Parameter] = field(default_factory=dict)
    version: str = "2.1"


@dataclass
class PipelineContext:
    """Per-run facts: what `<< pipeline.* >>` resolves to and what conditions see."""
    branch: str
    revision: str
    number: int = 1
    id: str = ""
    repo_root: str = "."
    parameters: Dict[str, Any] = field(default_factory=dict)

    def values(self) -> Dict[str, Any]:
        return {
            "pipeline.git.branch": self.branch,
            "pipeline.git.revision": self.revision,
            "pipeline.number": self.number,
            "pipeline.id": self.id,
        }


@dataclass
class CompiledJob:
    """A job with every invocation expanded and every condition decided."""
    name: str
    job: str
    executor: Executor
    steps: List[Step]
    environment: Dict[str, str] = field(default_factory=dict)
    parallelism: int = 1
    working_directory: str | None = None


@dataclass
class JobResult:
    name: str
    status: str  # ok | failed | blocked | filtered | skipped
    failures: List[str] = field(default_factory=list)
    duration: float = 0.0
    tests: Any = None  # artifacts.TestSummary when test results were stored
    cache: Dict[str, str] = field(default_factory=dict)  # step name -> hit/miss/saved
