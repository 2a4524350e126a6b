"""
Percentage aggregation: photo evidence → task progress.

Confirmed evidence is additive: two confirmations of 36% and 45% mean the
task is 81% done, not 40.5%. The sum is clamped to [0, 100]; status follows
from that clamped sum, and the integer stored on the task is the sum
rounded half-up, kept within 1-99 while the task is in progress.

Pure function, no I/O. The same evidence snapshot always yields the same
result, which is what makes re-sync idempotent.
"""

import math
from dataclasses import dataclass
from typing import Iterable

from buildtrack.models.evidence import EvidenceRecord


@dataclass(frozen=True)
class AggregateResult:
    status: str
    completion_percentage: int

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "completion_percentage": self.completion_percentage,
        }


NOT_STARTED = AggregateResult(status="not_started", completion_percentage=0)


def status_for_percentage(pct: float) -> str:
    """Map a clamped percentage to a task status."""
    if pct <= 0:
        return "not_started"
    if pct >= 100:
        return "completed"
    return "in_progress"


def confirmed_contributions(evidence: Iterable[EvidenceRecord]) -> list[float]:
    """Percentages of evidence that is confirmed and carries a value."""
    return [
        float(e.user_input_percentage)
        for e in evidence
        if e.confirmation_status == "confirmed" and e.user_input_percentage is not None
    ]


def aggregate(evidence: Iterable[EvidenceRecord]) -> AggregateResult:
    """Derive ``(status, completion_percentage)`` from a task's evidence."""
    contributions = confirmed_contributions(evidence)
    if not contributions:
        return NOT_STARTED

    # fsum is exact, so row order from the store cannot change the result
    total = min(max(math.fsum(contributions), 0.0), 100.0)
    status = status_for_percentage(total)
    pct = int(math.floor(total + 0.5))
    if status == "in_progress":
        # the stored integer must agree with the status
        pct = min(max(pct, 1), 99)
    return AggregateResult(status=status, completion_percentage=pct)
