from __future__ import annotations

import pytest

from cinderci.conditions import evaluate, truthy
from cinderci.errors import ConfigError


@pytest.mark.parametrize(
    "value,expected",
    [
        (True, True),
        (False, False),
        (None, False),
        ("", False),
        ("false", False),
        ("yes", True),
        (0, False),
        (2, True),
        ([], False),
        (["a"], True),
    ],
)
def test_truthy(value, expected) -> None:
    assert truthy(value) is expected


def test_equal() -> None:
    assert evaluate({"equal": ["main", "main"]})
    assert not evaluate({"equal": ["feature/x", "main"]})
    assert evaluate({"equal": ["a", "a", "a"]})
    # YAML scalars compare the way they render
    assert evaluate({"equal": [1, "1"]})
    assert evaluate({"equal": [True, "true"]})


def test_logic_operators() -> None:
    yes = {"equal": ["a", "a"]}
    no = {"equal": ["a", "b"]}
    assert evaluate({"not": no})
    assert evaluate({"and": [yes, yes]})
    assert not evaluate({"and": [yes, no]})
    assert evaluate({"or": [no, yes]})
    assert not evaluate({"or": [no, no]})
    assert evaluate({"and": []})


def test_matches_is_a_full_match() -> None:
    assert evaluate({"matches": {"pattern": "release/.*", "value": "release/1.2"}})
    assert not evaluate({"matches": {"pattern": "release", "value": "release/1.2"}})


@pytest.mark.parametrize(
    "condition",
    [
        {"equal": ["only-one"]},
        {"bogus": 1},
        {"equal": ["a", "a"], "not": True},
        {"and": "nope"},
        {"matches": {"pattern": "("}},
        {"matches": {"pattern": "(", "value": "x"}},
    ],
)
def test_invalid_conditions(condition) -> None:
    with pytest.raises(ConfigError):
        evaluate(condition, where="workflows.main.when")
