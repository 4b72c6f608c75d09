from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from cinderci import model as m
from cinderci.config import (
    discover_config,
    load_pipeline,
    parse_duration,
    parse_pipeline,
    parse_step,
)
from cinderci.errors import ConfigError
from cinderci.model import Pipeline


CONFIG = """
version: 2.1

parameters:
  main_branch:
    type: string
    default: main

executors:
  build-executor:
    docker:
      - image: rust-builder:1
        environment:
          FROM_IMAGE: "1"
    resource_class: xlarge
    environment:
      SCCACHE_CACHE_SIZE: 1G
  host:
    local: {}

commands:
  cargo-check:
    description: cargo check with extra arguments
    parameters:
      extra_args:
        type: string
        default: ""
    steps:
      - run:
          name: cargo check << parameters.extra_args >>
          command: cargo check --frozen << parameters.extra_args >>
          no_output_timeout: 20m

jobs:
  build:
    executor: build-executor
    parallelism: 2
    environment:
      RUST_BACKTRACE: 1
    steps:
      - checkout
      - cargo-check:
          extra_args: --release
      - check_dirty

  inline:
    docker:
      - image: alpine:3
    steps:
      - run: echo inline

workflows:
  version: 2
  build-all:
    jobs:
      - build
      - build:
          name: build-on-release
          requires: [build]
          context: secrets
          filters:
            branches:
              only: /release\\/.*/
              ignore: [wip]
"""


def _parse(text: str) -> Pipeline:
    return parse_pipeline(yaml.safe_load(text))


def test_parse_full_config() -> None:
    p = _parse(CONFIG)

    assert p.parameters["main_branch"].default == "main"

    ex = p.executors["build-executor"]
    assert ex.kind == "docker"
    assert ex.image == "rust-builder:1"
    assert ex.resource_class == "xlarge"
    assert ex.environment == {"FROM_IMAGE": "1", "SCCACHE_CACHE_SIZE": "1G"}
    assert p.executors["host"].kind == "local"

    cmd = p.commands["cargo-check"]
    assert cmd.parameters["extra_args"].default == ""
    assert cmd.steps[0].no_output_timeout == 1200

    job = p.jobs["build"]
    assert job.parallelism == 2
    assert job.environment == {"RUST_BACKTRACE": "1"}
    assert [s.kind for s in job.steps] == [m.CHECKOUT, m.INVOKE, m.CHECK_DIRTY]
    assert job.steps[1].command == "cargo-check"
    assert job.steps[1].arguments == {"extra_args": "--release"}


def test_inline_executor_is_registered() -> None:
    p = _parse(CONFIG)
    assert p.jobs["inline"].executor == "inline-executor"
    assert p.executors["inline-executor"].image == "alpine:3"


def test_parse_workflow_entries() -> None:
    wf = _parse(CONFIG).workflows["build-all"]
    first, second = wf.jobs
    assert first.run_name == "build"
    assert second.job == "build"
    assert second.run_name == "build-on-release"
    assert second.requires == ["build"]
    assert second.branches_only == ["/release\\/.*/"]
    assert second.branches_ignore == ["wip"]
    # context is accepted and dropped, nothing else is left over as an argument
    assert second.arguments == {}


def test_parse_step_forms() -> None:
    assert parse_step("checkout", "s").kind == m.CHECKOUT

    run = parse_step({"run": "echo hi"}, "s")
    assert run.kind == m.RUN and run.run == "echo hi" and run.when == m.ON_SUCCESS

    cache = parse_step({"restore_cache": {"key": "a", "keys": ["b", "c"]}}, "s")
    assert cache.keys == ("a", "b", "c")

    art = parse_step({"store_artifacts": {"path": "/tmp/x", "destination": "logs/x"}}, "s")
    assert art.when == m.ALWAYS and art.destination == "logs/x"

    tests = parse_step({"run_tests": {"command": "cargo test"}}, "s")
    assert tests.path == "/tmp/test-results"
    assert tests.converter == "libtest-json"

    step = parse_step({"when": {"condition": True, "steps": ["lint"]}}, "s")
    assert step.kind == m.WHEN
    assert step.steps[0] == m.Step(kind=m.INVOKE, command="lint")

    invoke = parse_step({"cargo-check": {"name": "Check", "extra_args": "-v"}}, "s")
    assert invoke.kind == m.INVOKE and invoke.name == "Check" and invoke.arguments == {"extra_args": "-v"}


def test_environment_list_forms() -> None:
    step = parse_step({"run": {"command": "env", "environment": [{"A": 1}, "B=two"]}}, "s")
    assert step.environment == {"A": "1", "B": "two"}


@pytest.mark.parametrize(
    "doc,match",
    [
        ({"orbs": {"rust": "circleci/rust@1"}}, "orbs"),
        ({"executors": {"mac": {"macos": {"xcode": "15"}}}}, "macos"),
        ({"executors": {"svc": {"docker": [{"image": "a"}, {"image": "postgres"}]}}}, "secondary"),
        ({"jobs": {"j": {"executor": "e", "parallelism": 0, "steps": ["checkout"]}}}, "parallelism"),
        ({"jobs": {"j": {"executor": "e"}}}, "no steps"),
        ({"jobs": {"j": {"steps": ["checkout"]}}}, "no executor"),
        ({"commands": {"c": {"steps": [{"save_cache": {"key": "k"}}]}}}, "paths"),
        ({"commands": {"c": {"steps": ["persist_to_workspace"]}}}, "not supported"),
        ({"commands": {"c": {"steps": [{"run": {"command": "x", "when": "sometimes"}}]}}}, "when"),
        ({"parameters": {"p": {"type": "float"}}}, "parameter type"),
        ({"workflows": {"w": {"jobs": []}}}, "non-empty"),
    ],
)
def test_invalid_documents(doc, match) -> None:
    with pytest.raises(ConfigError, match=match):
        parse_pipeline(doc)


def test_parse_duration() -> None:
    assert parse_duration("10m", "x") == 600
    assert parse_duration("90s", "x") == 90
    assert parse_duration("1h", "x") == 3600
    assert parse_duration(30, "x") == 30
    with pytest.raises(ConfigError):
        parse_duration("soon", "x")


def test_discover_config_prefers_cinderci_dir(tmp_path: Path) -> None:
    (tmp_path / ".circleci").mkdir()
    (tmp_path / ".circleci" / "config.yml").write_text("version: 2.1\n")
    assert discover_config(root=tmp_path) == tmp_path / ".circleci" / "config.yml"

    (tmp_path / ".cinderci").mkdir()
    (tmp_path / ".cinderci" / "config.yml").write_text("version: 2.1\n")
    assert discover_config(root=tmp_path) == tmp_path / ".cinderci" / "config.yml"


def test_discover_config_missing(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        discover_config(root=tmp_path)
    with pytest.raises(FileNotFoundError):
        discover_config("nope.yml", root=tmp_path)


def test_load_pipeline_yaml_and_python(tmp_path: Path) -> None:
    yml = tmp_path / "config.yml"
    yml.write_text(CONFIG)
    assert "build" in load_pipeline(yml).jobs

    py = tmp_path / "cinderci_pipeline.py"
    py.write_text(
        "from cinderci.dsl import define_pipeline, job, local_executor, sh\n"
        "PIPELINE = define_pipeline(\n"
        "    executors=[local_executor('host')],\n"
        "    jobs=[job('hello', sh('Hello', 'echo hi'), executor='host')],\n"
        ")\n"
    )
    assert list(load_pipeline(py).jobs) == ["hello"]


def test_load_pipeline_errors(tmp_path: Path) -> None:
    bad = tmp_path / "config.yml"
    bad.write_text("jobs: [unclosed\n")
    with pytest.raises(ConfigError, match="invalid YAML"):
        load_pipeline(bad)

    py = tmp_path / "empty.py"
    py.write_text("X = 1\n")
    with pytest.raises(TypeError):
        load_pipeline(py)

    txt = tmp_path / "config.txt"
    txt.write_text("")
    with pytest.raises(ValueError):
        load_pipeline(txt)
