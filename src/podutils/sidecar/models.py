"""Domain models for the sidecar wait/collect/report cycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from podutils.marker import Marker


class SidecarPhase(str, Enum):
    """Forward-only lifecycle of one sidecar run."""

    WAITING = "waiting"
    COLLECTING = "collecting"
    REPORTING = "reporting"
    DONE = "done"


_PHASE_ORDER = (
    SidecarPhase.WAITING,
    SidecarPhase.COLLECTING,
    SidecarPhase.REPORTING,
    SidecarPhase.DONE,
)


def phase_index(phase: SidecarPhase) -> int:
    return _PHASE_ORDER.index(phase)


class EntryStatus(str, Enum):
    """Classification of one sibling container."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a sibling container counts as failed."""

    NONZERO_EXIT = "nonzero exit"
    ENTRYPOINT_ERROR = "entrypoint error"
    MISSING_MARKER = "missing marker (sibling timed out or crashed)"
    TIMED_OUT = "timed out"
    CORRUPT_MARKER = "corrupt marker"


@dataclass(slots=True)
class EntryOutcome:
    """Resolved state of one sibling after the wait phase."""

    name: str
    marker_file: str
    status: EntryStatus
    marker: Marker | None = None
    reason: FailureReason | None = None
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.status == EntryStatus.FAILED


@dataclass(slots=True)
class VerdictFailure:
    """One failed sibling as reported upstream."""

    source: str
    reason: str
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"source": self.source, "reason": self.reason, "detail": self.detail}


@dataclass(slots=True)
class Verdict:
    """Aggregate pass/fail summary of a pod's job run."""

    total: int
    failures: list[VerdictFailure] = field(default_factory=list)
    finished_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def passed(self) -> bool:
        return not self.failures

    @classmethod
    def from_outcomes(cls, outcomes: list[EntryOutcome]) -> Verdict:
        failures = [
            VerdictFailure(
                source=outcome.name,
                reason=outcome.reason.value if outcome.reason is not None else "",
                detail=outcome.detail,
            )
            for outcome in outcomes
            if outcome.failed
        ]
        return cls(total=len(outcomes), failures=failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "result": "SUCCESS" if self.passed else "FAILURE",
            "total": self.total,
            "failure_count": self.failure_count,
            "failures": [failure.to_dict() for failure in self.failures],
            "timestamp": int(self.finished_at.timestamp()),
        }


@dataclass(slots=True)
class SidecarRunResult:
    """What a sidecar run hands to the process-exit decision.

    ``failure_count`` carries test-level failures; ``errors`` carries
    operational and protocol failures only.
    """

    failure_count: int
    verdict: Verdict
    outcomes: list[EntryOutcome]
    errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> str | None:
        if not self.errors:
            return None
        return "; ".join(self.errors)


def sidecar_exit_code(result: SidecarRunResult, *, entry_error: bool) -> int:
    """Process exit code for the sidecar given its run result."""

    if result.errors:
        return 1
    if entry_error and result.failure_count > 0:
        return 1
    return 0
