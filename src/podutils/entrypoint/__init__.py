"""Per-container process wrapper."""

from podutils.entrypoint.supervisor import EntrypointSupervisor, ProcessOutcome

__all__ = [
    "EntrypointSupervisor",
    "ProcessOutcome",
]
