# reports.py
# Test harness JSON event stream -> JUnit XML.
#
# `cargo test -- -Zunstable-options --format json --report-time` prints one JSON
# object per line, interleaved with whatever the tests and build log:
#
#   { "type": "suite", "event": "started", "test_count": 2 }
#   { "type": "test", "event": "started", "name": "db::tests::insert" }
#   { "type": "test", "name": "db::tests::insert", "event": "ok", "exec_time": 0.004 }
#   { "type": "test", "name": "db::tests::delete", "event": "failed", "stdout": "..." }
#   { "type": "suite", "event": "failed", "passed": 1, "failed": 1, ... }
from __future__ import annotations

import json
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .errors import ReportError


# "     Running unittests src/lib.rs (target/debug/deps/full_service-5f1c2a9b0e3d4c21)"
_RUNNING_RE = re.compile(r"^\s*Running\s+(?:.*\()?(?P<path>[^()\s]+?)\)?\s*$")
_HASH_SUFFIX_RE = re.compile(r"-[0-9a-f]{16}$")
# characters XML 1.0 does not allow, e.g. the ESC of ANSI colour codes
_XML_INVALID_RE = re.compile("[^\x09\x0A\x0D\x20-\uD7FF\uE000-\uFFFD\U00010000-\U0010FFFF]")


@dataclass
class _Case:
    name: str
    classname: str
    status: str  # ok | failed | ignored
    time: Optional[float] = None
    stdout: str = ""


@dataclass
class _Suite:
    name: str
    cases: List[_Case] = field(default_factory=list)
    time: Optional[float] = None

    @property
    def failures(self) -> int:
        return sum(1 for c in self.cases if c.status == "failed")

    @property
    def skipped(self) -> int:
        return sum(1 for c in self.cases if c.status == "ignored")


def _xml_safe(text: str) -> str:
    return _XML_INVALID_RE.sub("", text)


def _suite_name_from_running(line: str) -> Optional[str]:
    m = _RUNNING_RE.match(line)
    if not m:
        return None
    base = m.group("path").rstrip("/").split("/")[-1]
    return _xml_safe(_HASH_SUFFIX_RE.sub("", base)) or None


def _split_test_name(name: str, suite: str) -> tuple[str, str]:
    if "::" in name:
        cls, _, short = name.rpartition("::")
        return cls, short
    return suite, name


def parse_libtest_json(lines: Iterable[str]) -> List[_Suite]:
    suites: List[_Suite] = []
    current: Optional[_Suite] = None
    pending_name: Optional[str] = None

    for raw in lines:
        line = raw.strip()
        if not line.startswith("{"):
            name = _suite_name_from_running(line)
            if name:
                pending_name = name
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if not isinstance(event, dict):
            continue

        etype = event.get("type")
        ev = event.get("event")

        if etype == "suite" and ev == "started":
            current = _Suite(name=pending_name or f"suite-{len(suites) + 1}")
            suites.append(current)
            pending_name = None
            continue

        if etype == "suite" and current is not None and ev in ("ok", "failed"):
            t = event.get("exec_time")
            current.time = float(t) if isinstance(t, (int, float)) else None
            current = None
            continue

        if etype in ("test", "bench") and current is not None and ev in ("ok", "failed", "ignored"):
            name = _xml_safe(str(event.get("name", "")))
            classname, short = _split_test_name(name, current.name)
            t = event.get("exec_time")
            current.cases.append(
                _Case(
                    name=short,
                    classname=f"{current.name}::{classname}" if classname != current.name else classname,
                    status=ev,
                    time=float(t) if isinstance(t, (int, float)) else None,
                    stdout=_xml_safe(str(event.get("stdout", "") or "")),
                )
            )

    return suites


def convert_libtest_json(lines: Iterable[str]) -> str:
    """
    Convert a libtest JSON event stream into a JUnit XML document.
    Non-JSON lines are ignored except `Running ...` lines, which name the next suite.
    """
    suites = parse_libtest_json(lines)
    if not suites:
        raise ReportError("no test suite found in output")

    root = ET.Element("testsuites")
    total_tests = total_failures = 0
    for idx, suite in enumerate(suites):
        el = ET.SubElement(
            root,
            "testsuite",
            {
                "id": str(idx),
                "name": suite.name,
                "tests": str(len(suite.cases)),
                "failures": str(suite.failures),
                "errors": "0",
                "skipped": str(suite.skipped),
            },
        )
        if suite.time is not None:
            el.set("time", f"{suite.time:.3f}")

        for case in suite.cases:
            cel = ET.SubElement(el, "testcase", {"name": case.name, "classname": case.classname})
            if case.time is not None:
                cel.set("time", f"{case.time:.3f}")
            if case.status == "failed":
                first = case.stdout.strip().splitlines()[0] if case.stdout.strip() else "test failed"
                fel = ET.SubElement(cel, "failure", {"message": first[:500], "type": "failure"})
                fel.text = case.stdout
            elif case.status == "ignored":
                ET.SubElement(cel, "skipped")

        total_tests += len(suite.cases)
        total_failures += suite.failures

    root.set("tests", str(total_tests))
    root.set("failures", str(total_failures))
    root.set("errors", "0")
    ET.indent(root)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode") + "\n"


CONVERTERS = {
    "libtest-json": convert_libtest_json,
}


def get_converter(name: str):
    try:
        return CONVERTERS[name]
    except KeyError:
        raise ReportError(f"unknown report converter {name!r}; known: {sorted(CONVERTERS)}") from None
