from .dsl import (
    build,
    check_dirty,
    checkout,
    command,
    define_pipeline,
    docker_executor,
    invoke,
    job,
    JobBuilder,
    local_executor,
    param,
    restore_cache,
    run_tests,
    save_cache,
    scheduled,
    sh,
    store_artifacts,
    store_test_results,
    unless,
    when,
    workflow,
)
from .config import load_pipeline
from .runner import run_workflow
from .model import Job, Pipeline, Step

__all__ = [
    "build",
    "check_dirty",
    "checkout",
    "command",
    "define_pipeline",
    "docker_executor",
    "invoke",
    "job",
    "JobBuilder",
    "local_executor",
    "param",
    "restore_cache",
    "run_tests",
    "save_cache",
    "scheduled",
    "sh",
    "store_artifacts",
    "store_test_results",
    "unless",
    "when",
    "workflow",
    "load_pipeline",
    "run_workflow",
    "Job",
    "Pipeline",
    "Step",
]
