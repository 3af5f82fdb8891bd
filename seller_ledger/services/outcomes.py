from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum


class OutcomeStatus(str, Enum):
    APPLIED = 'APPLIED'
    WOULD_APPLY = 'WOULD_APPLY'
    SKIPPED = 'SKIPPED'


@dataclass(frozen=True)
class RecordOutcome:
    record_id: str
    status: OutcomeStatus
    reason: str | None = None
    detail: str | None = None


@dataclass
class BatchReport:
    operation: str
    dry_run: bool
    outcomes: list[RecordOutcome] = field(default_factory=list)

    def add(self, outcome: RecordOutcome) -> None:
        self.outcomes.append(outcome)

    def applied(self, record_id: object, *, detail: str | None = None) -> None:
        status = OutcomeStatus.WOULD_APPLY if self.dry_run else OutcomeStatus.APPLIED
        self.outcomes.append(RecordOutcome(record_id=str(record_id), status=status, detail=detail))

    def skipped(self, record_id: object, reason: str, *, detail: str | None = None) -> None:
        self.outcomes.append(
            RecordOutcome(record_id=str(record_id), status=OutcomeStatus.SKIPPED, reason=reason, detail=detail)
        )

    @property
    def changed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status != OutcomeStatus.SKIPPED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == OutcomeStatus.SKIPPED)

    def skip_reasons(self) -> dict[str, int]:
        return dict(
            sorted(Counter(o.reason or 'unknown' for o in self.outcomes if o.status == OutcomeStatus.SKIPPED).items())
        )

    def summary_line(self) -> str:
        verb = 'would change' if self.dry_run else 'changed'
        return f'{self.operation}: {verb}={self.changed_count}, skipped={self.skipped_count}'
