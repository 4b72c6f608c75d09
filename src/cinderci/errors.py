# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - job results / summaries
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class ConfigError(Exception):
    """Raised when a pipeline definition is malformed or references something missing."""

    def __init__(self, message: str, path: str | None = None):
        self.message = message
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class ReportError(Exception):
    """Raised when test output cannot be converted into a report."""
    pass


TOOL_HINTS = {
    "git": "Install Git or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "bash": "Install bash or set CINDERCI_SHELL to another shell (e.g. /bin/sh -e).",
    "tar": "Install tar in the executor image.",
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "sccache": "Install sccache (cargo install sccache).",
}
