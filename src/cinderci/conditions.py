# conditions.py
from __future__ import annotations

import re
from typing import Any

from .errors import ConfigError


def truthy(value: Any) -> bool:
    """Literal truthiness: false, null, 0, "", "false" and empty collections are false."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "null")
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return bool(value)


def evaluate(condition: Any, *, where: str | None = None) -> bool:
    """
    Evaluate an already-interpolated logic statement.

    Supported:
      literal                       -> truthy(literal)
      {equal: [a, b, ...]}          -> all values equal
      {not: c}
      {and: [c1, c2, ...]}
      {or: [c1, c2, ...]}
      {matches: {pattern: p, value: v}}   -> full regex match
    """
    if not isinstance(condition, dict):
        return truthy(condition)

    if len(condition) != 1:
        raise ConfigError(f"condition must have exactly one operator, got {sorted(condition)}", where)

    op, arg = next(iter(condition.items()))

    if op == "equal":
        if not isinstance(arg, (list, tuple)) or len(arg) < 2:
            raise ConfigError("'equal' needs a list of at least two values", where)
        first = _normalize(arg[0])
        return all(_normalize(v) == first for v in arg[1:])

    if op == "not":
        return not evaluate(arg, where=where)

    if op == "and":
        if not isinstance(arg, (list, tuple)):
            raise ConfigError("'and' needs a list of conditions", where)
        return all(evaluate(c, where=where) for c in arg)

    if op == "or":
        if not isinstance(arg, (list, tuple)):
            raise ConfigError("'or' needs a list of conditions", where)
        return any(evaluate(c, where=where) for c in arg)

    if op == "matches":
        if not isinstance(arg, dict) or "pattern" not in arg or "value" not in arg:
            raise ConfigError("'matches' needs {pattern, value}", where)
        try:
            return re.fullmatch(str(arg["pattern"]), str(arg["value"])) is not None
        except re.error as e:
            raise ConfigError(f"invalid regex in 'matches': {e}", where) from e

    raise ConfigError(f"unknown condition operator '{op}'", where)


def _normalize(value: Any) -> Any:
    # YAML gives `master` as str and `1` as int; compare the way they render
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value
