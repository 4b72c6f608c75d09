from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path

import pytest

from cinderci.artifacts import summarize_junit
from cinderci.errors import ReportError
from cinderci.reports import convert_libtest_json, get_converter, parse_libtest_json


OUTPUT = """\
   Compiling full-service v1.0.0 (/root/project/full-service)
    Finished test [unoptimized + debuginfo] target(s) in 40.01s
     Running unittests src/lib.rs (target/debug/deps/full_service-5f1c2a9b0e3d4c21)
{ "type": "suite", "event": "started", "test_count": 3 }
{ "type": "test", "event": "started", "name": "db::txo::tests::insert" }
2024-01-01 12:00:00 INFO some log line the test printed
{ "type": "test", "name": "db::txo::tests::insert", "event": "ok", "exec_time": 0.004 }
{ "type": "test", "name": "db::txo::tests::delete", "event": "failed", "stdout": "thread 'delete' panicked at 'boom'\\nnote: run with RUST_BACKTRACE=1\\n" }
{ "type": "test", "name": "slow_sync", "event": "ignored" }
{ "type": "suite", "event": "failed", "passed": 1, "failed": 1, "ignored": 1, "exec_time": 0.5 }
     Running tests/integration.rs (target/debug/deps/integration-0123456789abcdef)
{ "type": "suite", "event": "started", "test_count": 1 }
{ "type": "test", "name": "end_to_end", "event": "ok" }
{ "type": "suite", "event": "ok", "passed": 1, "failed": 0, "ignored": 0 }
"""


def test_suites_are_named_after_test_binaries() -> None:
    suites = parse_libtest_json(OUTPUT.splitlines())
    assert [s.name for s in suites] == ["full_service", "integration"]
    assert [c.status for c in suites[0].cases] == ["ok", "failed", "ignored"]
    assert suites[0].failures == 1
    assert suites[0].skipped == 1


def test_convert_to_junit() -> None:
    root = ET.fromstring(convert_libtest_json(OUTPUT.splitlines()))
    assert root.tag == "testsuites"
    assert root.get("tests") == "4"
    assert root.get("failures") == "1"

    suite = root.find("testsuite")
    assert suite.get("name") == "full_service"
    assert suite.get("time") == "0.500"

    cases = {c.get("name"): c for c in suite.findall("testcase")}
    assert cases["insert"].get("classname") == "full_service::db::txo::tests"
    assert cases["insert"].get("time") == "0.004"
    assert cases["slow_sync"].get("classname") == "full_service"
    assert cases["slow_sync"].find("skipped") is not None

    failure = cases["delete"].find("failure")
    assert failure.get("message") == "thread 'delete' panicked at 'boom'"
    assert "RUST_BACKTRACE" in failure.text


def test_unnamed_suites_get_a_numbered_name() -> None:
    lines = ['{"type": "suite", "event": "started"}', '{"type": "test", "name": "t", "event": "ok"}']
    assert parse_libtest_json(lines)[0].name == "suite-1"


def test_no_suite_is_an_error() -> None:
    with pytest.raises(ReportError, match="no test suite"):
        convert_libtest_json(["error[E0425]: cannot find value `x` in this scope", "{not json"])


def test_get_converter() -> None:
    assert get_converter("libtest-json") is convert_libtest_json
    with pytest.raises(ReportError, match="unknown report converter"):
        get_converter("cargo2junit")


def test_terminal_escapes_are_dropped_from_failures(tmp_path: Path) -> None:
    lines = [
        '{ "type": "suite", "event": "started", "test_count": 1 }',
        '{ "type": "test", "name": "colour\\u001b::panics", "event": "failed",'
        ' "stdout": "thread panicked \\u001b[31mred\\u001b[0m\\n" }',
        '{ "type": "suite", "event": "failed", "passed": 0, "failed": 1 }',
    ]
    out = tmp_path / "results.xml"
    out.write_text(convert_libtest_json(lines), encoding="utf-8")

    summary = summarize_junit(out)
    assert summary.tests == 1
    assert summary.failures == 1

    failure = ET.parse(out).getroot().find("testsuite/testcase/failure")
    assert failure.get("message") == "thread panicked [31mred[0m"
    assert "\x1b" not in failure.text
