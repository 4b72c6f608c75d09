# templating.py
# Two small template languages:
#   << parameters.x >> / << pipeline.git.branch >>   resolved while compiling a job
#   {{ arch }} / {{ .Revision }} / {{ checksum "Cargo.lock" }}   resolved when a cache key is used
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import ConfigError


_REF_RE = re.compile(r"<<\s*([A-Za-z0-9_.\-]+)\s*>>")
_KEY_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")
_CHECKSUM_RE = re.compile(r'^checksum\s+"([^"]+)"$')
_ENV_RE = re.compile(r"^\.Environment\.([A-Za-z_][A-Za-z0-9_]*)$")


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def single_reference(text: str) -> Optional[str]:
    """Return the reference name if `text` is exactly one `<< ref >>`, else None."""
    m = _REF_RE.fullmatch(text.strip())
    return m.group(1) if m else None


def interpolate(text: str, scope: Mapping[str, Any], *, where: str | None = None) -> Any:
    """
    Replace every `<< name >>` in text using scope.

    A string that is exactly one reference returns the referenced value itself,
    so booleans/integers/step lists keep their type.
    """
    ref = single_reference(text)
    if ref is not None:
        if ref not in scope:
            raise ConfigError(f"unknown reference '<< {ref} >>'", where)
        return scope[ref]

    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name not in scope:
            raise ConfigError(f"unknown reference '<< {name} >>'", where)
        return _to_text(scope[name])

    return _REF_RE.sub(_sub, text)


def interpolate_value(value: Any, scope: Mapping[str, Any], *, where: str | None = None) -> Any:
    """Recursive interpolate() over strings inside dicts / lists / tuples."""
    if isinstance(value, str):
        return interpolate(value, scope, where=where)
    if isinstance(value, dict):
        return {k: interpolate_value(v, scope, where=where) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        out = [interpolate_value(v, scope, where=where) for v in value]
        return tuple(out) if isinstance(value, tuple) else out
    return value


def has_references(text: str) -> bool:
    return bool(_REF_RE.search(text))


# ---------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------

@dataclass
class KeyFacts:
    """What a cache key template can see."""
    arch: str
    branch: str
    revision: str
    build_num: int = 1
    environment: Dict[str, str] = field(default_factory=dict)
    checksum: Optional[Callable[[str], str]] = None
    epoch: Optional[int] = None


_VOLATILE_RE = re.compile(r"\{\{\s*(\.Revision|\.BuildNum|epoch|checksum\s+\"[^\"]+\")\s*\}\}")


def cache_key_family(template: str, facts: KeyFacts) -> str:
    """
    The part of a key that stays stable across revisions, e.g.
    'v0-cargo-{{ arch }}-{{ .Revision }}' -> 'v0-cargo-linux-x86_64-'.
    Used to group cache entries when pruning.
    """
    return render_cache_key(_VOLATILE_RE.sub("", template), facts)


def render_cache_key(template: str, facts: KeyFacts) -> str:
    def _sub(m: re.Match) -> str:
        expr = m.group(1)
        if expr == "arch":
            return facts.arch
        if expr == ".Branch":
            return facts.branch
        if expr == ".Revision":
            return facts.revision
        if expr == ".BuildNum":
            return str(facts.build_num)
        if expr == "epoch":
            return str(facts.epoch if facts.epoch is not None else int(time.time()))

        env = _ENV_RE.match(expr)
        if env:
            return facts.environment.get(env.group(1), "<no value>")

        chk = _CHECKSUM_RE.match(expr)
        if chk:
            if facts.checksum is None:
                raise ConfigError(f"checksum not available for cache key: {template}")
            return facts.checksum(chk.group(1))

        raise ConfigError(f"unknown cache key expression '{{{{ {expr} }}}}' in {template!r}")

    return _KEY_RE.sub(_sub, template)
