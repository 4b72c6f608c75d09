# cinderci_pipeline.py
# Pipeline for cinderci itself: install, test, dirty check.
from __future__ import annotations

from cinderci.dsl import (
    check_dirty,
    checkout,
    define_pipeline,
    job,
    local_executor,
    restore_cache,
    save_cache,
    sh,
    store_test_results,
    workflow,
)


def pipeline():
    return define_pipeline(
        executors=[local_executor("host")],
        jobs=[
            job(
                "test",
                checkout(),
                restore_cache('v1-venv-{{ arch }}-{{ checksum "pyproject.toml" }}', "v1-venv-{{ arch }}-"),
                sh("Create venv", "test -x .venv/bin/python || python3 -m venv .venv"),
                sh("Install package", ".venv/bin/pip install -q -e '.[test]'"),
                save_cache('v1-venv-{{ arch }}-{{ checksum "pyproject.toml" }}', [".venv"]),
                sh("Run pytest", ".venv/bin/pytest -q --junitxml=test-results/junit.xml"),
                store_test_results("test-results"),
                sh(
                    "Validate the Rust preset",
                    ".venv/bin/cinderci init --output \"$TMPDIR_PRESET/config.yml\" --force\n"
                    ".venv/bin/cinderci validate --config \"$TMPDIR_PRESET/config.yml\" --branch main\n",
                    env={"TMPDIR_PRESET": "/tmp/cinderci-preset"},
                ),
                check_dirty(),
                executor="host",
            ),
        ],
        workflows=[workflow("ci", "test")],
    )
