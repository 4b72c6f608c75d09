from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from cinderci.dsl import (
    check_dirty,
    checkout,
    define_pipeline,
    job,
    local_executor,
    restore_cache,
    run_tests,
    save_cache,
    scheduled,
    sh,
    store_artifacts,
    store_test_results,
    workflow,
)
from cinderci.errors import CIError
from cinderci.model import WorkflowJob
from cinderci.runner import branch_allowed, detect_context, run_workflow

from conftest import SH, git


LIBTEST_OUTPUT = """\
cat <<'EOF'
     Running unittests src/lib.rs (target/debug/deps/full_service-5f1c2a9b0e3d4c21)
{ "type": "suite", "event": "started", "test_count": 2 }
{ "type": "test", "event": "started", "name": "db::tests::insert" }
{ "type": "test", "name": "db::tests::insert", "event": "ok", "exec_time": 0.004 }
{ "type": "test", "name": "db::tests::delete", "event": "ok", "exec_time": 0.002 }
{ "type": "suite", "event": "ok", "passed": 2, "failed": 0, "exec_time": 0.01 }
EOF
"""


def _pipeline(*jobs, wf=None):
    return define_pipeline(
        executors=[local_executor("host")],
        jobs=list(jobs),
        workflows=[wf or workflow("wf", *(j.name for j in jobs))],
    )


def _run(pipeline, repo: Path, tmp_path: Path, branch: str = "main", **kw):
    context = detect_context(repo, branch=branch)
    return run_workflow(
        pipeline,
        "wf",
        context,
        repo_root=repo,
        state_dir=tmp_path / "state",
        run_id="r1",
        shell=SH,
        max_workers=2,
        **kw,
    )


def test_detect_context_reads_git(repo: Path) -> None:
    ctx = detect_context(repo)
    assert ctx.branch == "main"
    assert ctx.revision == git(repo, "rev-parse", "HEAD")
    assert ctx.repo_root == str(repo.resolve())

    assert detect_context(repo, branch="feature/x").branch == "feature/x"


def test_detect_context_outside_a_repository(tmp_path: Path, home: Path) -> None:
    outside = tmp_path / "plain"
    outside.mkdir()
    with pytest.raises(CIError) as exc:
        detect_context(outside)
    assert exc.value.kind == "not_a_repository"


def test_checkout_environment_and_artifacts(repo: Path, tmp_path: Path) -> None:
    build = job(
        "build",
        checkout(),
        sh("facts", 'mkdir -p out\necho "$CIRCLE_JOB $CIRCLE_BRANCH $CIRCLE_SHA1 $CI" > out/info.txt\ncat hello.txt'),
        store_artifacts("out"),
        executor="host",
    )
    results = _run(_pipeline(build), repo, tmp_path)

    assert results["build"].status == "ok", results["build"].failures
    sha = git(repo, "rev-parse", "HEAD")
    info = tmp_path / "state" / "runs" / "r1" / "build" / "artifacts" / "out" / "info.txt"
    assert info.read_text().split() == ["build", "main", sha, "true"]

    work = tmp_path / "state" / "work" / "r1" / "build"
    assert (work / "hello.txt").read_text() == "hello\n"
    assert git(work, "rev-parse", "--abbrev-ref", "HEAD") == "main"

    summary = json.loads((tmp_path / "state" / "runs" / "r1" / "summary.json").read_text())
    assert summary["workflow"] == "wf"
    assert summary["jobs"]["build"]["status"] == "ok"

    logs = sorted(p.name for p in (tmp_path / "state" / "runs" / "r1" / "build" / "steps").iterdir())
    assert logs[1] == "02-facts.log"


def test_step_when_always_and_on_fail(repo: Path, tmp_path: Path) -> None:
    flaky = job(
        "flaky",
        sh("boom", "exit 3"),
        sh("after", "touch after"),
        sh("cleanup", "touch cleanup", when="always"),
        sh("report", "touch failed-marker", when="on_fail"),
        executor="host",
    )
    results = _run(_pipeline(flaky), repo, tmp_path)

    res = results["flaky"]
    assert res.status == "failed"
    assert res.failures[0].startswith("boom:")
    work = tmp_path / "state" / "work" / "r1" / "flaky"
    assert (work / "cleanup").exists()
    assert (work / "failed-marker").exists()
    assert not (work / "after").exists()


def test_on_fail_steps_do_not_run_after_success(repo: Path, tmp_path: Path) -> None:
    fine = job("fine", sh("ok", "true"), sh("report", "touch failed-marker", when="on_fail"), executor="host")
    results = _run(_pipeline(fine), repo, tmp_path)
    assert results["fine"].status == "ok"
    assert not (tmp_path / "state" / "work" / "r1" / "fine" / "failed-marker").exists()


def test_blocked_filtered_and_independent_jobs(repo: Path, tmp_path: Path) -> None:
    jobs = [
        job("a", sh(None, "exit 1"), executor="host"),
        job("b", sh(None, "true"), executor="host"),
        job("c", sh(None, "true"), executor="host"),
        job("d", sh(None, "true"), executor="host"),
        job("e", sh(None, "true"), executor="host"),
    ]
    wf = workflow(
        "wf",
        "a",
        scheduled("b", requires=["a"]),
        scheduled("c", only=["/release-.*/"]),
        scheduled("d", requires=["c"]),
        "e",
    )
    results = _run(_pipeline(*jobs, wf=wf), repo, tmp_path)

    assert {n: r.status for n, r in results.items()} == {
        "a": "failed",
        "b": "blocked",
        "c": "filtered",
        "d": "filtered",
        "e": "ok",
    }
    assert list(results) == ["a", "b", "c", "d", "e"]


def test_requires_orders_jobs_and_shares_cache(repo: Path, tmp_path: Path) -> None:
    producer = job(
        "producer",
        sh("build deps", "mkdir -p dep && echo v1 > dep/x"),
        save_cache("deps-{{ .Branch }}-{{ arch }}", ["dep"]),
        executor="host",
    )
    consumer = job(
        "consumer",
        restore_cache("deps-{{ .Branch }}-{{ arch }}", "deps-"),
        sh("use deps", 'test "$(cat dep/x)" = v1'),
        executor="host",
    )
    wf = workflow("wf", "producer", scheduled("consumer", requires=["producer"]))
    results = _run(_pipeline(producer, consumer, wf=wf), repo, tmp_path)

    assert results["producer"].status == "ok", results["producer"].failures
    assert results["consumer"].status == "ok", results["consumer"].failures
    saved = list(results["producer"].cache.values())
    assert len(saved) == 1 and saved[0].startswith("saved:deps-main-")
    assert list(results["consumer"].cache.values())[0].startswith("hit:deps-main-")


def test_cache_miss_is_not_a_failure(repo: Path, tmp_path: Path) -> None:
    j = job("j", restore_cache("nothing-here"), sh(None, "true"), executor="host")
    results = _run(_pipeline(j), repo, tmp_path)
    assert results["j"].status == "ok"
    assert list(results["j"].cache.values()) == ["miss"]


def test_check_dirty(repo: Path, tmp_path: Path) -> None:
    clean = job("clean", checkout(), check_dirty(), executor="host")
    dirty = job("dirty", checkout(), sh("litter", "echo x >> hello.txt"), check_dirty("dirty check"), executor="host")
    results = _run(_pipeline(clean, dirty), repo, tmp_path)

    assert results["clean"].status == "ok", results["clean"].failures
    assert results["dirty"].status == "failed"
    assert results["dirty"].failures[0].startswith("dirty check:")


def test_check_dirty_catches_untracked_files(repo: Path, tmp_path: Path) -> None:
    j = job("untracked", checkout(), sh("litter", "touch new-file"), check_dirty(), executor="host")
    results = _run(_pipeline(j), repo, tmp_path)

    assert results["untracked"].status == "failed"
    steps = tmp_path / "state" / "runs" / "r1" / "untracked" / "steps"
    assert "?? new-file" in next(steps.glob("03-*.log")).read_text()


def test_run_tests_converts_output(repo: Path, tmp_path: Path) -> None:
    j = job(
        "tests",
        run_tests(LIBTEST_OUTPUT, path="results", name="unit tests"),
        store_test_results("results"),
        executor="host",
    )
    results = _run(_pipeline(j), repo, tmp_path)

    res = results["tests"]
    assert res.status == "ok", res.failures
    assert res.tests is not None
    assert (res.tests.tests, res.tests.failures) == (2, 0)
    stored = tmp_path / "state" / "runs" / "r1" / "tests" / "test-results" / "results"
    assert "full_service::db::tests" in (stored / "results.xml").read_text()
    assert "Running unittests" in (stored / "output.log").read_text()


def test_run_tests_keeps_exit_code_when_report_fails(repo: Path, tmp_path: Path) -> None:
    j = job("tests", run_tests("echo 'not json'; exit 4", path="results", name="unit tests"), executor="host")
    results = _run(_pipeline(j), repo, tmp_path)

    res = results["tests"]
    assert res.status == "failed"
    assert res.failures[0].startswith("unit tests:")
    work = tmp_path / "state" / "work" / "r1" / "tests"
    assert (work / "results" / "output.log").read_text() == "not json\n"
    assert not (work / "results" / "results.xml").exists()


def test_run_tests_failing_test_fails_the_job(repo: Path, tmp_path: Path) -> None:
    script = """\
cat <<'EOF'
     Running unittests src/lib.rs (target/debug/deps/full_service-5f1c2a9b0e3d4c21)
{ "type": "suite", "event": "started", "test_count": 1 }
{ "type": "test", "name": "db::tests::broken", "event": "failed", "stdout": "assertion failed" }
{ "type": "suite", "event": "failed", "passed": 0, "failed": 1 }
EOF
exit 101
"""
    j = job(
        "tests",
        run_tests(script, path="results", name="unit tests"),
        store_test_results("results"),
        executor="host",
    )
    results = _run(_pipeline(j), repo, tmp_path)

    res = results["tests"]
    assert res.status == "failed"
    assert res.failures[0].startswith("unit tests:")
    assert res.tests is not None
    assert (res.tests.tests, res.tests.failures) == (1, 1)
    xml = (tmp_path / "state" / "runs" / "r1" / "tests" / "test-results" / "results" / "results.xml").read_text()
    assert 'failures="1"' in xml
    assert "assertion failed" in xml


def test_background_output_stays_out_of_later_step_logs(repo: Path, tmp_path: Path) -> None:
    j = job(
        "bg",
        sh("bg", "sleep 0.3; echo FROM_BACKGROUND", background=True),
        sh("fg", "sleep 1; echo foreground"),
        executor="host",
    )
    results = _run(_pipeline(j), repo, tmp_path)

    assert results["bg"].status == "ok", results["bg"].failures
    steps = tmp_path / "state" / "runs" / "r1" / "bg" / "steps"
    assert "started in background" in (steps / "01-bg.log").read_text()
    fg = (steps / "02-fg.log").read_text()
    assert "foreground" in fg
    assert "FROM_BACKGROUND" not in fg


def test_no_output_timeout(repo: Path, tmp_path: Path) -> None:
    j = job("slow", sh("hang", "sleep 5", no_output_timeout=0.5), executor="host")
    results = _run(_pipeline(j), repo, tmp_path)
    assert results["slow"].status == "failed"
    assert "Too long with no output" in results["slow"].failures[0]


def test_parallelism_runs_every_node(repo: Path, tmp_path: Path, home: Path) -> None:
    j = job("split", sh(None, 'echo "$CIRCLE_NODE_INDEX/$CIRCLE_NODE_TOTAL" >> "$HOME/nodes.txt"'), executor="host", parallelism=2)
    results = _run(_pipeline(j), repo, tmp_path)

    assert results["split"].status == "ok"
    assert (home / "nodes.txt").read_text().split() == ["0/2", "1/2"]
    assert (tmp_path / "state" / "work" / "r1" / "split-1").is_dir()


@pytest.mark.skipif(not os.path.exists("/bin/bash"), reason="bash is not installed")
def test_bash_env_carries_exports_between_steps(repo: Path, tmp_path: Path) -> None:
    j = job(
        "env",
        sh("export", "echo 'export GREETING=hi' >> \"$BASH_ENV\"", shell="/bin/bash -e"),
        sh("use", 'test "$GREETING" = hi', shell="/bin/bash -e"),
        executor="host",
    )
    results = _run(_pipeline(j), repo, tmp_path)
    assert results["env"].status == "ok", results["env"].failures


def test_fail_fast_skips_unscheduled_jobs(repo: Path, tmp_path: Path) -> None:
    first = job("first", sh(None, "exit 1"), executor="host")
    slow = job("slow", sh(None, "sleep 1"), executor="host")
    later = job("later", sh(None, "true"), executor="host")
    wf = workflow("wf", "first", "slow", scheduled("later", requires=["slow"]))
    results = _run(_pipeline(first, slow, later, wf=wf), repo, tmp_path, fail_fast=True)

    assert results["first"].status == "failed"
    assert results["slow"].status == "ok"
    assert results["later"].status == "skipped"


def test_disabled_workflow_runs_nothing(repo: Path, tmp_path: Path) -> None:
    j = job("j", sh(None, "true"), executor="host")
    wf = workflow("wf", "j", when={"equal": ["release", "<< pipeline.git.branch >>"]})
    assert _run(_pipeline(j, wf=wf), repo, tmp_path) == {}


def test_branch_allowed() -> None:
    wj = WorkflowJob(job="deploy", branches_only=["main", "/release-.*/"])
    assert branch_allowed(wj, "main")
    assert branch_allowed(wj, "release-1.2")
    assert not branch_allowed(wj, "xrelease-1")
    assert not branch_allowed(wj, "feature")

    wj = WorkflowJob(job="test", branches_ignore=["/wip\\/.*/"])
    assert branch_allowed(wj, "main")
    assert not branch_allowed(wj, "wip/thing")

    assert branch_allowed(WorkflowJob(job="any"), "whatever")
