# executors.py
# Where a job's steps actually run.
#
#   LocalExecutor   -> the host, in a per-job workspace directory
#   DockerExecutor  -> one long-lived container per job, steps via `docker exec`
#
# Both expose the same small surface so the runner / cache / artifact code never
# needs to know which one it is talking to.
from __future__ import annotations

import os
import platform
import posixpath
import queue
import shlex
import shutil
import subprocess
import tarfile
import threading
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import settings
from .errors import CIError, TOOL_HINTS
from .model import Executor


OutputFn = Callable[[str], None]

# resource_class -> (cpus, memory)
RESOURCE_CLASSES = {
    "small": (1, "2g"),
    "medium": (2, "4g"),
    "medium+": (3, "6g"),
    "large": (4, "8g"),
    "xlarge": (8, "16g"),
    "2xlarge": (16, "32g"),
    "2xlarge+": (20, "40g"),
}

SOURCE_MOUNT = "/tmp/_cinderci_source"


class NoOutputTimeout(Exception):
    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"no output for {seconds:.0f}s")


def _stream(proc: subprocess.Popen, on_output: Optional[OutputFn], no_output_timeout: Optional[float]) -> int:
    """
    Pump proc's combined stdout/stderr line by line into on_output.
    Kills the process and raises NoOutputTimeout if it stays silent too long.
    """
    lines: "queue.Queue[Optional[str]]" = queue.Queue()

    def _reader() -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            lines.put(line)
        lines.put(None)

    t = threading.Thread(target=_reader, daemon=True)
    t.start()

    while True:
        try:
            line = lines.get(timeout=no_output_timeout)
        except queue.Empty:
            proc.kill()
            proc.wait()
            raise NoOutputTimeout(no_output_timeout or 0)
        if line is None:
            break
        if on_output is not None:
            on_output(line.rstrip("\n"))

    return proc.wait()


def split_path(spec: str, home: str, workdir: str) -> tuple[str, str, str]:
    """
    Map a user path to (prefix, root, rel) so archives stay portable between
    executors with different home / working directories:
      "~/.cargo/bin" -> ("home", home, ".cargo/bin")
      "/tmp/x"       -> ("root", "/", "tmp/x")
      "target"       -> ("work", workdir, "target")
    """
    spec = spec.strip()
    if spec == "~" or spec.startswith("~/"):
        rel = posixpath.normpath(spec[2:]) if len(spec) > 1 else "."
        return "home", home, rel
    if spec.startswith("/"):
        rel = posixpath.normpath(spec.lstrip("/")) or "."
        return "root", "/", rel
    return "work", workdir, posixpath.normpath(spec)


class BaseExecutor:
    """Common behaviour; subclasses implement the transport."""

    kind = "base"

    def __init__(self, spec: Executor, job_name: str, *, shell: str | None = None):
        self.spec = spec
        self.job_name = job_name
        self.shell = shell or settings.DEFAULT_SHELL
        self.working_directory = ""
        self.bash_env = ""
        self._background: List[subprocess.Popen] = []

    # context manager
    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def start(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        for proc in self._background:
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=10)
                except subprocess.TimeoutExpired:
                    proc.kill()
        self._background.clear()

    def home(self) -> str:
        raise NotImplementedError

    def arch(self) -> str:
        raise NotImplementedError

    def source_path(self) -> str:
        """Where the checkout step can clone the host repository from."""
        raise NotImplementedError

    def expand_path(self, p: str) -> str:
        prefix, root, rel = split_path(p, self.home(), self.working_directory)
        return posixpath.normpath(posixpath.join(root, rel))

    def run(
        self,
        script: str,
        *,
        env: Dict[str, str],
        cwd: str | None = None,
        shell: str | None = None,
        no_output_timeout: float | None = None,
        on_output: OutputFn | None = None,
        background: bool = False,
    ) -> int:
        raise NotImplementedError

    def export_tree(self, root: str, rel: str, out: tarfile.TarFile, arc_prefix: str) -> bool:
        """Add root/rel (file or directory) to `out` under arc_prefix/rel. False when missing."""
        raise NotImplementedError

    def import_tree(self, root: str, tar_path: Path) -> None:
        """Extract a plain tar whose member names are relative to root."""
        raise NotImplementedError

    def write_file(self, path: str, data: bytes) -> None:
        raise NotImplementedError

    def read_file(self, path: str) -> bytes:
        raise NotImplementedError

    def _shell_argv(self, shell: str | None) -> List[str]:
        return shlex.split(shell or self.shell)


# ---------------------------------------------------------------------
# Local
# ---------------------------------------------------------------------

class LocalExecutor(BaseExecutor):
    """Runs steps on the host. HOME is the real one, so ~ caches are shared with the user."""

    kind = "local"

    def __init__(self, spec: Executor, job_name: str, *, workspace: Path, repo_root: Path, shell: str | None = None):
        super().__init__(spec, job_name, shell=shell)
        self.workspace = Path(workspace).resolve()
        self.repo_root = Path(repo_root).resolve()

    def start(self) -> None:
        self.workspace.mkdir(parents=True, exist_ok=True)
        self.working_directory = str(self.workspace)
        bash_env = self.workspace.parent / f".{self.workspace.name}.bash_env"
        bash_env.write_text("", encoding="utf-8")
        self.bash_env = str(bash_env)

    def home(self) -> str:
        return os.path.expanduser("~")

    def arch(self) -> str:
        return f"{platform.system().lower()}-{platform.machine().lower()}"

    def source_path(self) -> str:
        return str(self.repo_root)

    def run(self, script, *, env, cwd=None, shell=None, no_output_timeout=None, on_output=None, background=False):
        full_env = os.environ.copy()
        full_env.update(env)
        full_env["BASH_ENV"] = self.bash_env

        workdir = self.expand_path(cwd) if cwd else self.working_directory
        if not os.path.isdir(workdir):
            raise FileNotFoundError(f"[{self.job_name}] working directory not found: {workdir}")

        argv = self._shell_argv(shell) + ["-c", script]
        try:
            proc = subprocess.Popen(
                argv,
                cwd=workdir,
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as e:
            tool = Path(argv[0]).name
            raise CIError(
                kind="tool_unavailable",
                job=self.job_name,
                step=None,
                message=f"{argv[0]} is not available",
                details={"hint": TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")},
            ) from e

        if background:
            self._background.append(proc)
            threading.Thread(target=_stream, args=(proc, on_output, None), daemon=True).start()
            return 0
        return _stream(proc, on_output, no_output_timeout)

    def export_tree(self, root, rel, out, arc_prefix):
        src = Path(root) / rel
        if not src.exists() and not src.is_symlink():
            return False
        out.add(str(src), arcname=posixpath.join(arc_prefix, rel), recursive=True)
        return True

    def import_tree(self, root, tar_path):
        Path(root).mkdir(parents=True, exist_ok=True)
        with tarfile.open(str(tar_path), mode="r:*") as tar:
            tar.extractall(path=root, filter="tar")

    def write_file(self, path, data):
        p = Path(self.expand_path(path))
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def read_file(self, path):
        return Path(self.expand_path(path)).read_bytes()


# ---------------------------------------------------------------------
# Docker
# ---------------------------------------------------------------------

class DockerExecutor(BaseExecutor):
    """One container per job, kept alive with a sleep loop; removed on close()."""

    kind = "docker"

    def __init__(self, spec: Executor, job_name: str, *, repo_root: Path, shell: str | None = None, run_id: str = ""):
        super().__init__(spec, job_name, shell=shell)
        if not spec.image:
            raise ValueError(f"docker executor '{spec.name}' has no image")
        self.repo_root = Path(repo_root).resolve()
        self.container = f"cinderci-{run_id or uuid.uuid4().hex[:8]}-{job_name}".replace("/", "-")
        self._home: str | None = None
        self._arch: str | None = None

    def _docker(self, args: List[str], **kw) -> subprocess.CompletedProcess:
        try:
            return subprocess.run([settings.DOCKER_BIN, *args], **kw)
        except FileNotFoundError as e:
            raise CIError(
                kind="docker_unavailable",
                job=self.job_name,
                step=None,
                message="Docker is not available",
                details={"hint": TOOL_HINTS["docker"]},
            ) from e

    def _exec_text(self, script: str) -> str:
        proc = self._docker(["exec", self.container, "sh", "-c", script], capture_output=True, text=True)
        if proc.returncode != 0:
            raise CIError(
                kind="executor_error",
                job=self.job_name,
                step=None,
                message=f"container command failed: {script}",
                details={"stderr": proc.stderr.strip()[-2000:]},
            )
        return proc.stdout.strip()

    def start(self) -> None:
        args = [
            "run", "-d", "--rm",
            "--name", self.container,
            "-v", f"{self.repo_root}:{SOURCE_MOUNT}:ro",
            "--entrypoint", "/bin/sh",
        ]
        limits = RESOURCE_CLASSES.get(self.spec.resource_class or "")
        if limits:
            cpus, mem = limits
            args += ["--cpus", str(min(cpus, os.cpu_count() or cpus)), "--memory", mem]
        for k, v in self.spec.environment.items():
            args += ["-e", f"{k}={v}"]
        args += [self.spec.image, "-c", "trap 'exit 0' TERM INT; while :; do sleep 3600 & wait $!; done"]

        proc = self._docker(args, capture_output=True, text=True)
        if proc.returncode != 0:
            raise CIError(
                kind="executor_error",
                job=self.job_name,
                step=None,
                message=f"could not start container from {self.spec.image}",
                details={"stderr": proc.stderr.strip()[-2000:]},
            )

        workdir = self.spec.working_directory or settings.DEFAULT_WORKING_DIRECTORY
        self.working_directory = self.expand_path(workdir) if not workdir.startswith("/") else workdir
        self.bash_env = f"/tmp/.cinderci-bash-env-{uuid.uuid4().hex[:8]}"
        try:
            self._exec_text(f"mkdir -p {shlex.quote(self.working_directory)} && : > {self.bash_env}")
        except CIError:
            self.close()
            raise

    def close(self) -> None:
        super().close()
        self._docker(["rm", "-f", self.container], capture_output=True, text=True)

    def home(self) -> str:
        if self._home is None:
            self._home = self._exec_text('echo "$HOME"') or "/root"
        return self._home

    def arch(self) -> str:
        if self._arch is None:
            self._arch = self._exec_text("uname -s; uname -m").lower().replace("\n", "-")
        return self._arch

    def source_path(self) -> str:
        return SOURCE_MOUNT

    def expand_path(self, p: str) -> str:
        # before start() the working directory is not known yet
        prefix, root, rel = split_path(p, self.home(), self.working_directory or "/")
        return posixpath.normpath(posixpath.join(root, rel))

    def run(self, script, *, env, cwd=None, shell=None, no_output_timeout=None, on_output=None, background=False):
        workdir = self.expand_path(cwd) if cwd else self.working_directory
        args = [settings.DOCKER_BIN, "exec", "-w", workdir]
        for k, v in {**env, "BASH_ENV": self.bash_env}.items():
            args += ["-e", f"{k}={v}"]
        args += [self.container, *self._shell_argv(shell), "-c", script]

        proc = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )
        if background:
            self._background.append(proc)
            threading.Thread(target=_stream, args=(proc, on_output, None), daemon=True).start()
            return 0
        return _stream(proc, on_output, no_output_timeout)

    def export_tree(self, root, rel, out, arc_prefix):
        check = self._docker(
            ["exec", "-w", root, self.container, "sh", "-c", 'test -e "$1" || test -L "$1"', "sh", rel],
            capture_output=True,
        )
        if check.returncode != 0:
            return False

        proc = subprocess.Popen(
            [settings.DOCKER_BIN, "exec", self.container, "tar", "-C", root, "-cf", "-", rel],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        assert proc.stdout is not None
        with tarfile.open(fileobj=proc.stdout, mode="r|") as src:
            for member in src:
                data = src.extractfile(member) if member.isfile() else None
                member.name = posixpath.join(arc_prefix, posixpath.normpath(member.name))
                out.addfile(member, data)
        stderr = proc.stderr.read().decode("utf-8", "replace") if proc.stderr else ""
        if proc.wait() != 0:
            raise CIError(
                kind="executor_error",
                job=self.job_name,
                step=None,
                message=f"tar failed for {posixpath.join(root, rel)}",
                details={"stderr": stderr.strip()[-2000:]},
            )
        return True

    def import_tree(self, root, tar_path):
        with open(tar_path, "rb") as fh:
            proc = self._docker(
                ["exec", "-i", self.container, "sh", "-c", 'mkdir -p "$1" && tar -C "$1" -xf -', "sh", root],
                stdin=fh,
                capture_output=True,
            )
        if proc.returncode != 0:
            raise CIError(
                kind="executor_error",
                job=self.job_name,
                step=None,
                message=f"could not extract into {root}",
                details={"stderr": proc.stderr.decode("utf-8", "replace").strip()[-2000:]},
            )

    def write_file(self, path, data):
        target = self.expand_path(path)
        proc = self._docker(
            ["exec", "-i", self.container, "sh", "-c", 'mkdir -p "$(dirname "$1")" && cat > "$1"', "sh", target],
            input=data,
            capture_output=True,
        )
        if proc.returncode != 0:
            raise CIError(
                kind="executor_error",
                job=self.job_name,
                step=None,
                message=f"could not write {target}",
                details={"stderr": proc.stderr.decode("utf-8", "replace").strip()},
            )

    def read_file(self, path):
        target = self.expand_path(path)
        proc = self._docker(["exec", self.container, "cat", target], capture_output=True)
        if proc.returncode != 0:
            raise FileNotFoundError(target)
        return proc.stdout


def make_executor(
    spec: Executor,
    job_name: str,
    *,
    repo_root: Path,
    workspace: Path,
    run_id: str,
    force_local: bool = False,
    shell: str | None = None,
) -> BaseExecutor:
    if force_local or spec.kind == "local":
        return LocalExecutor(spec, job_name, workspace=workspace, repo_root=repo_root, shell=shell)
    if spec.kind == "docker":
        if shutil.which(settings.DOCKER_BIN) is None:
            raise CIError(
                kind="docker_unavailable",
                job=job_name,
                step=None,
                message="Docker is not available (use --local to run on the host)",
                details={"hint": TOOL_HINTS["docker"]},
            )
        return DockerExecutor(spec, job_name, repo_root=repo_root, shell=shell, run_id=run_id)
    raise ValueError(f"unknown executor kind {spec.kind!r}")


