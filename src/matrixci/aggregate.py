# aggregate.py
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping

from .model import Verdict, frozen_map


@dataclass(frozen=True)
class PipelineVerdict:
    status: Verdict
    jobs: Mapping[str, Verdict] = field(default_factory=frozen_map)

    @property
    def succeeded(self) -> bool:
        return self.status == Verdict.SUCCEEDED

    @property
    def exit_code(self) -> int:
        """0 on success, 1 otherwise."""
        return 0 if self.succeeded else 1

    def counts(self) -> Dict[str, int]:
        return dict(Counter(v.value for v in self.jobs.values()))


def aggregate(results: Mapping[str, Verdict], neutral: Iterable[str] = ()) -> PipelineVerdict:
    """
    Reduce per-instance verdicts to one pipeline verdict.

    Succeeded only if every instance succeeded; an empty run succeeds.
    Instances listed in `neutral` were skipped by their own `if:` (or
    because a job they need was skipped that way) and do not count against
    the pipeline.
    """
    neutral = set(neutral)
    ok = all(
        v == Verdict.SUCCEEDED or (v == Verdict.SKIPPED and inst_id in neutral)
        for inst_id, v in results.items()
    )
    return PipelineVerdict(
        status=Verdict.SUCCEEDED if ok else Verdict.FAILED,
        jobs=frozen_map(results),
    )
