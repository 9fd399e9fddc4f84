# matrix.py
from __future__ import annotations

import itertools
from typing import Any, Dict, List, Mapping

from .errors import ConfigError
from .expr import to_str
from .model import Job, JobInstance, frozen_map


def _same(a: Any, b: Any) -> bool:
    return to_str(a) == to_str(b)


def _matches(combo: Mapping[str, Any], entry: Mapping[str, Any], keys) -> bool:
    return all(_same(combo.get(k), v) for k, v in entry.items() if k in keys)


def combinations(job: Job) -> List[Dict[str, Any]]:
    """
    Axis assignments for `job`, in a stable order.

    The cross product varies the first declared axis slowest, e.g.
    {os: [linux, mac], mode: [debug, release]} gives
    linux/debug, linux/release, mac/debug, mac/release.
    """
    m = job.matrix
    if m is None:
        return [{}]

    for name, values in m.axes:
        if not values:
            raise ConfigError(f"job '{job.id}': matrix axis '{name}' declares no values")
    if not m.axes and not m.include:
        raise ConfigError(f"job '{job.id}': matrix declares no axes")

    names = m.axis_names
    combos: List[Dict[str, Any]] = []
    if names:
        for point in itertools.product(*(values for _, values in m.axes)):
            combos.append(dict(zip(names, point)))

    for entry in m.exclude:
        combos = [c for c in combos if not _matches(c, entry, entry.keys())]

    # An include extends every combination it agrees with on the declared
    # axes; if it agrees with none it becomes a combination of its own.
    axis_keys = set(names)
    for entry in m.include:
        hits = [c for c in combos if names and _matches(c, entry, axis_keys)]
        if hits:
            for c in hits:
                c.update({k: v for k, v in entry.items() if k not in axis_keys})
        else:
            combos.append(dict(entry))

    unique: List[Dict[str, Any]] = []
    seen = set()
    for c in combos:
        key = tuple((k, to_str(v)) for k, v in c.items())
        if key not in seen:
            seen.add(key)
            unique.append(c)

    if not unique:
        raise ConfigError(f"job '{job.id}': matrix excludes every combination")
    return unique


def expand(job: Job) -> List[JobInstance]:
    """One pending JobInstance per matrix point (a single one without a matrix)."""
    return [JobInstance(job=job, axes=frozen_map(c)) for c in combinations(job)]
