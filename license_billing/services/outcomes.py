"""Typed results for best-effort side effects."""

import enum
from dataclasses import dataclass, field
from typing import Any


class OutcomeKind(str, enum.Enum):
    ok = "ok"
    retryable = "retryable"
    fatal = "fatal"


@dataclass(frozen=True)
class OperationOutcome:
    operation: str
    kind: OutcomeKind
    detail: str | None = None

    @classmethod
    def ok(cls, operation: str, detail: str | None = None) -> "OperationOutcome":
        return cls(operation, OutcomeKind.ok, detail)

    @classmethod
    def retryable(cls, operation: str, detail: str) -> "OperationOutcome":
        return cls(operation, OutcomeKind.retryable, detail)

    @classmethod
    def fatal(cls, operation: str, detail: str) -> "OperationOutcome":
        return cls(operation, OutcomeKind.fatal, detail)

    @property
    def is_ok(self) -> bool:
        return self.kind == OutcomeKind.ok


@dataclass
class OperationReport:
    outcomes: list[OperationOutcome] = field(default_factory=list)

    def add(self, outcome: OperationOutcome) -> OperationOutcome:
        self.outcomes.append(outcome)
        return outcome

    def extend(self, other: "OperationReport") -> None:
        self.outcomes.extend(other.outcomes)

    @property
    def failures(self) -> list[OperationOutcome]:
        return [o for o in self.outcomes if not o.is_ok]

    @property
    def all_ok(self) -> bool:
        return not self.failures

    def failures_as_dicts(self) -> list[dict[str, Any]]:
        return [
            {"operation": o.operation, "kind": o.kind.value, "detail": o.detail}
            for o in self.failures
        ]
