"""Pod-level coordinator: wait for sibling markers, ship artifacts, report once.

The run moves through WAITING -> COLLECTING -> REPORTING -> DONE and never goes
back. Sibling outcomes are split into two channels: test failures end up in
``failure_count``, while protocol breaches (corrupt markers) and operational
problems (uploads, status report) end up in ``errors``.
"""

from __future__ import annotations

import json
import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from podutils.config import SidecarEntry, SidecarOptions
from podutils.context import RunContext
from podutils.marker import MarkerError, read_marker
from podutils.sidecar.artifacts import ArtifactStore, ArtifactUploadError
from podutils.sidecar.censor import censor_file, load_secrets
from podutils.sidecar.models import (
    EntryOutcome,
    EntryStatus,
    FailureReason,
    SidecarPhase,
    SidecarRunResult,
    Verdict,
    phase_index,
)
from podutils.sidecar.reporting import StatusReporter, StatusReportError

logger = logging.getLogger(__name__)

SINGLE_BUILD_LOG_KEY = "build-log.txt"
FINISHED_KEY = "finished.json"
SIDECAR_LOG_KEY = "sidecar-logs.txt"
ARTIFACTS_PREFIX = "artifacts"


class SidecarCoordinator:
    """Owns the verdict of one pod run."""

    def __init__(  # noqa: PLR0913
        self,
        options: SidecarOptions,
        *,
        artifact_store: ArtifactStore,
        reporter: StatusReporter,
        ctx: RunContext | None = None,
        sidecar_log: Path | None = None,
    ) -> None:
        self.options = options
        self.artifact_store = artifact_store
        self.reporter = reporter
        self.ctx = ctx or RunContext()
        self.sidecar_log = sidecar_log
        self._phase = SidecarPhase.WAITING
        self._started = False

    @property
    def phase(self) -> SidecarPhase:
        return self._phase

    def run(self) -> SidecarRunResult:
        """Wait for every entry, upload artifacts, report the verdict once."""

        if self._started:
            raise RuntimeError("A sidecar coordinator can only run once.")
        self._started = True

        deadline = self.ctx.child(timeout=self.options.timeout)
        logger.info(
            "Waiting up to %ss for %d marker(s)",
            f"{self.options.timeout:g}",
            len(self.options.entries),
        )
        outcomes = self._wait_for_entries(deadline)

        self._advance(SidecarPhase.COLLECTING)
        errors = [
            f"{outcome.name}: {outcome.detail}"
            for outcome in outcomes
            if outcome.reason == FailureReason.CORRUPT_MARKER
        ]
        verdict = Verdict.from_outcomes(outcomes)
        try:
            errors.extend(self._collect(verdict))
        except Exception as error:  # noqa: BLE001
            logger.exception("Collecting artifacts failed")
            errors.append(f"collecting artifacts failed: {error}")

        self._advance(SidecarPhase.REPORTING)
        errors.extend(self._report(verdict))

        self._advance(SidecarPhase.DONE)
        logger.info(
            "Sidecar finished: %d of %d container(s) failed, %d operational error(s)",
            verdict.failure_count,
            verdict.total,
            len(errors),
        )
        return SidecarRunResult(
            failure_count=verdict.failure_count,
            verdict=verdict,
            outcomes=outcomes,
            errors=errors,
        )

    def _advance(self, phase: SidecarPhase) -> None:
        if phase_index(phase) <= phase_index(self._phase):
            raise RuntimeError(f"Illegal sidecar transition {self._phase.value} -> {phase.value}")
        logger.debug("Sidecar phase %s -> %s", self._phase.value, phase.value)
        self._phase = phase

    def _wait_for_entries(self, deadline: RunContext) -> list[EntryOutcome]:
        entries = self.options.entries
        with ThreadPoolExecutor(
            max_workers=len(entries),
            thread_name_prefix="marker-wait",
        ) as pool:
            futures = [pool.submit(self._wait_for_entry, entry, deadline) for entry in entries]
            return [future.result() for future in futures]

    def _wait_for_entry(self, entry: SidecarEntry, deadline: RunContext) -> EntryOutcome:
        path = Path(entry.marker_file)
        interval = self.options.poll_interval
        while True:
            outcome = _try_classify(entry, path)
            if outcome is not None:
                return outcome
            if deadline.done or deadline.wait(interval):
                break
            interval = min(interval * 2, self.options.poll_interval_max)

        # The marker may have landed while the deadline fired.
        outcome = _try_classify(entry, path)
        if outcome is not None:
            return outcome
        logger.warning(
            "No marker from %s at %s (%s); the container may have crashed, hung, "
            "or been evicted",
            entry.name,
            path,
            deadline.reason,
        )
        return EntryOutcome(
            name=entry.name,
            marker_file=entry.marker_file,
            status=EntryStatus.FAILED,
            reason=FailureReason.MISSING_MARKER,
            detail=f"no marker at {path} ({deadline.reason})",
        )

    def _collect(self, verdict: Verdict) -> list[str]:
        errors: list[str] = []
        secrets = load_secrets(self.options.censor_secret_files)
        with tempfile.TemporaryDirectory(prefix="sidecar-staging-") as staging_dir:
            staging = Path(staging_dir)
            uploads = self._log_uploads() + self._artifact_uploads()

            finished_path = staging / FINISHED_KEY
            finished_path.write_text(
                json.dumps(
                    {**verdict.to_dict(), "metadata": self.options.job.to_dict()},
                    indent=2,
                    sort_keys=True,
                ),
                "utf-8",
            )
            uploads.append((finished_path, FINISHED_KEY))
            if self.sidecar_log is not None and self.sidecar_log.is_file():
                uploads.append((self.sidecar_log, SIDECAR_LOG_KEY))

            for index, (source, key) in enumerate(uploads):
                if secrets and source != finished_path:
                    censored = staging / f"censored-{index}"
                    try:
                        censor_file(source, censored, secrets)
                    except OSError as error:
                        logger.error("Cannot censor %s, not uploading it: %s", source, error)
                        errors.append(f"censoring {source} failed: {error}")
                        continue
                    source = censored
                try:
                    self.artifact_store.upload(source, key)
                except ArtifactUploadError as error:
                    logger.error("Artifact upload failed for %s: %s", key, error)
                    errors.append(str(error))
                except Exception as error:  # noqa: BLE001
                    logger.exception("Artifact upload crashed for %s", key)
                    errors.append(f"upload of {key} failed: {error}")
                else:
                    logger.debug("Uploaded %s", key)
        return errors

    def _log_uploads(self) -> list[tuple[Path, str]]:
        uploads: list[tuple[Path, str]] = []
        single = len(self.options.entries) == 1
        for entry in self.options.entries:
            if not entry.process_log:
                continue
            source = Path(entry.process_log)
            if not source.is_file():
                logger.warning("Process log of %s not found at %s", entry.name, source)
                continue
            key = SINGLE_BUILD_LOG_KEY if single else f"{entry.name}-{SINGLE_BUILD_LOG_KEY}"
            uploads.append((source, key))
        return uploads

    def _artifact_uploads(self) -> list[tuple[Path, str]]:
        uploads: list[tuple[Path, str]] = []
        for raw_path in self.options.artifacts:
            path = Path(raw_path)
            if path.is_dir():
                for item in sorted(p for p in path.rglob("*") if p.is_file()):
                    relative = item.relative_to(path).as_posix()
                    uploads.append((item, f"{ARTIFACTS_PREFIX}/{path.name}/{relative}"))
            elif path.is_file():
                uploads.append((path, f"{ARTIFACTS_PREFIX}/{path.name}"))
            else:
                logger.warning("Declared artifact %s does not exist", path)
        return uploads

    def _report(self, verdict: Verdict) -> list[str]:
        try:
            self.reporter.report(verdict, self.options.job)
        except StatusReportError as error:
            logger.error("Failed to report job status: %s", error)
            return [str(error)]
        except Exception as error:  # noqa: BLE001
            logger.exception("Status reporter crashed")
            return [f"status report failed: {error}"]
        return []


def _try_classify(entry: SidecarEntry, path: Path) -> EntryOutcome | None:
    try:
        marker = read_marker(path)
    except FileNotFoundError:
        return None
    except (MarkerError, OSError) as error:
        logger.error("Marker of %s at %s is unreadable: %s", entry.name, path, error)
        return EntryOutcome(
            name=entry.name,
            marker_file=entry.marker_file,
            status=EntryStatus.FAILED,
            reason=FailureReason.CORRUPT_MARKER,
            detail=str(error),
        )

    if marker.return_code == 0:
        logger.info("%s succeeded", entry.name)
        return EntryOutcome(
            name=entry.name,
            marker_file=entry.marker_file,
            status=EntryStatus.SUCCEEDED,
            marker=marker,
        )
    if marker.timed_out:
        reason = FailureReason.TIMED_OUT
        detail = marker.error or "process timed out"
    elif marker.return_code is None:
        reason = FailureReason.ENTRYPOINT_ERROR
        detail = marker.error or "entrypoint did not record a return code"
    else:
        reason = FailureReason.NONZERO_EXIT
        detail = f"exit code {marker.return_code}"
        if marker.error:
            detail = f"{detail}: {marker.error}"
    logger.info("%s failed: %s (%s)", entry.name, reason.value, detail)
    return EntryOutcome(
        name=entry.name,
        marker_file=entry.marker_file,
        status=EntryStatus.FAILED,
        marker=marker,
        reason=reason,
        detail=detail,
    )
