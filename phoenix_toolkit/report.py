"""Structured per-operation results collected across a best-effort run."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path


class OutcomeStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class Outcome:
    phase: str
    name: str
    status: OutcomeStatus
    detail: str | None = None
    command: list[str] | None = None

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class RunReport:
    """Every operation of a run, in execution order."""

    operation: str
    started_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds")
    )
    outcomes: list[Outcome] = field(default_factory=list)

    def record(
        self,
        phase: str,
        name: str,
        status: OutcomeStatus,
        detail: str | None = None,
        command: list[str] | None = None,
    ) -> Outcome:
        outcome = Outcome(phase, name, status, detail, command)
        self.outcomes.append(outcome)
        return outcome

    def ok(self, phase: str, name: str, detail: str | None = None) -> Outcome:
        return self.record(phase, name, OutcomeStatus.OK, detail)

    def failed(
        self, phase: str, name: str, detail: str | None = None, command: list[str] | None = None
    ) -> Outcome:
        return self.record(phase, name, OutcomeStatus.FAILED, detail, command)

    def skipped(self, phase: str, name: str, detail: str | None = None) -> Outcome:
        return self.record(phase, name, OutcomeStatus.SKIPPED, detail)

    def by_status(self, status: OutcomeStatus) -> list[Outcome]:
        return [outcome for outcome in self.outcomes if outcome.status is status]

    @property
    def failures(self) -> list[Outcome]:
        return self.by_status(OutcomeStatus.FAILED)

    def find(self, phase: str, name: str | None = None) -> list[Outcome]:
        return [
            outcome
            for outcome in self.outcomes
            if outcome.phase == phase and (name is None or outcome.name == name)
        ]

    def counts(self) -> dict[str, int]:
        return {status.value: len(self.by_status(status)) for status in OutcomeStatus}

    def summary_lines(self) -> list[str]:
        counts = self.counts()
        lines = [
            f"{self.operation}: {counts['ok']} ok, {counts['failed']} failed, "
            f"{counts['skipped']} skipped"
        ]
        for outcome in self.failures:
            line = f"failed [{outcome.phase}] {outcome.name}"
            if outcome.detail:
                line = f"{line}: {outcome.detail.strip().splitlines()[0]}"
            lines.append(line)
        return lines

    def to_dict(self) -> dict[str, object]:
        return {
            "operation": self.operation,
            "started_at": self.started_at,
            "counts": self.counts(),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }

    def write_json(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")
