from __future__ import annotations

import pytest

from cinderci.dag import build_dag, descendants, topo_levels, workflow_requires
from cinderci.model import Workflow, WorkflowJob


def test_levels_follow_requires() -> None:
    adj, indeg = build_dag({"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]})
    assert topo_levels(adj, indeg) == [["a"], ["b", "c"], ["d"]]
    assert descendants(adj, "a") == {"b", "c", "d"}
    assert descendants(adj, "d") == set()


def test_missing_requirement() -> None:
    with pytest.raises(ValueError, match="requires missing job 'z'"):
        build_dag({"a": ["z"]})


def test_cycle() -> None:
    adj, indeg = build_dag({"a": ["b"], "b": ["a"], "c": []})
    with pytest.raises(ValueError, match="cycle"):
        topo_levels(adj, indeg)


def test_workflow_requires_uses_run_names() -> None:
    wf = Workflow(
        name="w",
        jobs=[WorkflowJob(job="build"), WorkflowJob(job="build", name="build-release", requires=["build"])],
    )
    assert workflow_requires(wf) == {"build": [], "build-release": ["build"]}

    dup = Workflow(name="w", jobs=[WorkflowJob(job="build"), WorkflowJob(job="build")])
    with pytest.raises(ValueError, match="twice"):
        workflow_requires(dup)
