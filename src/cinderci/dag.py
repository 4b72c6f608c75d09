# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from .model import Workflow


def workflow_requires(workflow: Workflow) -> Dict[str, List[str]]:
    """Map each job's run name to the run names it requires."""
    deps: Dict[str, List[str]] = {}
    for wj in workflow.jobs:
        if wj.run_name in deps:
            raise ValueError(
                f"Workflow '{workflow.name}' schedules '{wj.run_name}' twice; give one of them a distinct name"
            )
        deps[wj.run_name] = list(wj.requires)
    return deps


def build_dag(deps: Mapping[str, Iterable[str]]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from a name -> required-names mapping.

    Returns (adj, indeg) where adj[a] holds every job that requires a.
    """
    name_set = set(deps)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for name, required in deps.items():
        for req in required:
            if req not in name_set:
                raise ValueError(
                    f"Job '{name}' requires missing job '{req}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            # Edge req -> name (req must run before name)
            if name not in adj[req]:
                adj[req].add(name)
                indeg[name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ValueError(f"Workflow has a cycle. Stuck jobs: {remaining}")

    return levels


def descendants(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """Every job that (transitively) requires `name`."""
    seen: Set[str] = set()
    stack = list(adj.get(name, ()))
    while stack:
        n = stack.pop()
        if n in seen:
            continue
        seen.add(n)
        stack.extend(adj.get(n, ()))
    return seen
