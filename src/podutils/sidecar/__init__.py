"""Per-pod coordinator for wrapped sibling containers."""

from podutils.sidecar.artifacts import (
    ArtifactStore,
    ArtifactUploadError,
    HttpArtifactStore,
    LocalArtifactStore,
    NullArtifactStore,
)
from podutils.sidecar.coordinator import SidecarCoordinator
from podutils.sidecar.models import (
    EntryOutcome,
    FailureReason,
    SidecarPhase,
    SidecarRunResult,
    Verdict,
    sidecar_exit_code,
)
from podutils.sidecar.reporting import (
    HttpStatusReporter,
    LogStatusReporter,
    StatusReporter,
    StatusReportError,
)

__all__ = [
    "ArtifactStore",
    "ArtifactUploadError",
    "EntryOutcome",
    "FailureReason",
    "HttpArtifactStore",
    "HttpStatusReporter",
    "LocalArtifactStore",
    "LogStatusReporter",
    "NullArtifactStore",
    "SidecarCoordinator",
    "SidecarPhase",
    "SidecarRunResult",
    "StatusReportError",
    "StatusReporter",
    "Verdict",
    "sidecar_exit_code",
]
