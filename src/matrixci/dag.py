# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import ConfigError
from .model import Job


def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the job dependency graph.

    Returns (adj, indeg) where adj maps a job id to the ids that need it and
    indeg counts how many jobs each id still waits for.
    """
    jobs = list(jobs)
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise ConfigError(f"duplicate job ids: {dupes}")

    known = set(ids)
    adj: Dict[str, Set[str]] = {n: set() for n in ids}
    indeg: Dict[str, int] = {n: 0 for n in ids}

    for job in jobs:
        for need in job.needs:
            if need not in known:
                raise ConfigError(
                    f"job '{job.id}' needs missing job '{need}'",
                    details=[f"known jobs: {sorted(known)}"],
                )
            # Edge need -> job (need must finish first)
            if job.id not in adj[need]:
                adj[need].add(job.id)
                indeg[job.id] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int], order: List[str] | None = None) -> List[List[str]]:
    """
    Group job ids into stages; every job in a stage may run in parallel.

    Within a stage ids keep `order` (declaration order) when given, so plans
    print the same way on every run.
    """
    rank = {n: i for i, n in enumerate(order or sorted(indeg))}
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted((n for n, d in indeg.items() if d == 0), key=rank.__getitem__))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1

        for node in level:
            for child in sorted(adj.get(node, set()), key=rank.__getitem__):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(sorted(level, key=rank.__getitem__))

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigError(f"job dependencies form a cycle: {remaining}")

    return levels
