from __future__ import annotations
import os


def _env_float(name: str, default: float) -> float:
    # unparsable values fall back to the default instead of breaking every command on import
    try:
        return float(os.environ.get(name) or default)
    except ValueError:
        return default


STATE_DIR = os.environ.get("CINDERCI_HOME", ".cinderci")
# CINDERCI_MAX_WORKERS / CINDERCI_CACHE_KEEP are read and validated by the click options
MAX_WORKERS = None
CACHE_KEEP = 3
DEFAULT_SHELL = os.environ.get("CINDERCI_SHELL", "/bin/bash -eo pipefail")
DOCKER_BIN = os.environ.get("CINDERCI_DOCKER", "docker")
DEFAULT_WORKING_DIRECTORY = "~/project"
NO_OUTPUT_TIMEOUT = _env_float("CINDERCI_NO_OUTPUT_TIMEOUT", 600.0)
