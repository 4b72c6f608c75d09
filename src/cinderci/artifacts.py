# artifacts.py
from __future__ import annotations

import posixpath
import tarfile
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from .executors import BaseExecutor, split_path


@dataclass
class TestSummary:
    __test__ = False  # not a pytest test class

    tests: int = 0
    failures: int = 0
    errors: int = 0
    skipped: int = 0
    files: List[str] = field(default_factory=list)

    @property
    def passed(self) -> int:
        return self.tests - self.failures - self.errors - self.skipped

    def merge(self, other: "TestSummary") -> None:
        self.tests += other.tests
        self.failures += other.failures
        self.errors += other.errors
        self.skipped += other.skipped
        self.files.extend(other.files)

    def __str__(self) -> str:
        return (
            f"{self.tests} tests, {self.passed} passed, {self.failures} failed, "
            f"{self.errors} errors, {self.skipped} skipped"
        )


def _int(value, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def summarize_junit(path: Path) -> TestSummary:
    """
    Read one JUnit XML file. Accepts <testsuites> or a bare <testsuite> root.
    Counts come from the suite attributes, falling back to the testcase elements.
    """
    tree = ET.parse(str(path))
    root = tree.getroot()
    suites = [root] if root.tag == "testsuite" else root.findall(".//testsuite")

    summary = TestSummary(files=[str(path)])
    for suite in suites:
        cases = suite.findall("testcase")
        summary.tests += _int(suite.get("tests"), len(cases))
        summary.failures += _int(suite.get("failures"), sum(1 for c in cases if c.find("failure") is not None))
        summary.errors += _int(suite.get("errors"), sum(1 for c in cases if c.find("error") is not None))
        summary.skipped += _int(suite.get("skipped"), sum(1 for c in cases if c.find("skipped") is not None))
    return summary


class ArtifactStore:
    """
    Per-run artifact storage on the host:
      root/
        <job>/
          artifacts/<destination>
          test-results/<...>
          steps/<NN>-<step>.log
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def job_dir(self, job: str) -> Path:
        d = self.root / job
        d.mkdir(parents=True, exist_ok=True)
        return d

    def _copy_out(self, executor: BaseExecutor, path: str, dest_dir: Path, dest_name: str) -> bool:
        _prefix, root, rel = split_path(path, executor.home(), executor.working_directory)
        dest_dir.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix="cinderci-artifacts-") as tmp:
            tar_path = Path(tmp) / "out.tar"
            with tarfile.open(str(tar_path), mode="w") as tar:
                if not executor.export_tree(root, rel, tar, ""):
                    return False

            with tarfile.open(str(tar_path), mode="r") as tar:
                for member in tar.getmembers():
                    name = posixpath.normpath(member.name)
                    tail = name[len(rel):].lstrip("/") if rel != "." else name
                    member.name = posixpath.join(dest_name, tail) if tail and tail != "." else dest_name
                    tar.extract(member, path=str(dest_dir), filter="data")
        return True

    def store(self, executor: BaseExecutor, job: str, path: str, destination: str | None = None) -> Path | None:
        """Copy a file or directory out of the executor. Returns the host path, or None if missing."""
        dest_name = (destination or posixpath.basename(posixpath.normpath(path)) or "artifact").strip("/")
        base = self.job_dir(job) / "artifacts"
        if not self._copy_out(executor, path, base, dest_name):
            return None
        return base / dest_name

    def store_test_results(self, executor: BaseExecutor, job: str, path: str) -> TestSummary | None:
        """Copy a test results directory out and summarize every JUnit XML file in it."""
        base = self.job_dir(job) / "test-results"
        dest_name = posixpath.basename(posixpath.normpath(path)) or "results"
        if not self._copy_out(executor, path, base, dest_name):
            return None

        summary = TestSummary()
        for xml_file in sorted((base / dest_name).rglob("*.xml")) if (base / dest_name).is_dir() else [base / dest_name]:
            try:
                summary.merge(summarize_junit(xml_file))
            except ET.ParseError:
                continue
        return summary

    def step_log(self, job: str, index: int, step_name: str) -> Path:
        d = self.job_dir(job) / "steps"
        d.mkdir(parents=True, exist_ok=True)
        safe = "".join(c if c.isalnum() or c in "-_." else "-" for c in step_name)[:60].strip("-") or "step"
        return d / f"{index:02d}-{safe}.log"
