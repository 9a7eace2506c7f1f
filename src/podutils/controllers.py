"""Controllers behind the entrypoint and sidecar CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from podutils.config import (
    ArtifactStoreSettings,
    EntrypointOptions,
    JobMetadata,
    ReporterSettings,
    SidecarEntry,
    SidecarOptions,
)
from podutils.context import RunContext, install_signal_cancellation
from podutils.entrypoint import EntrypointSupervisor
from podutils.logs import transient_log_file
from podutils.marker import Marker, write_marker
from podutils.sidecar import SidecarCoordinator, sidecar_exit_code
from podutils.sidecar.artifacts import build_artifact_store
from podutils.sidecar.reporting import build_status_reporter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EntrypointCommand:
    """CLI input for wrapping one command."""

    args: tuple[str, ...]
    process_log: str | None = None
    marker_file: str | None = None
    timeout: float | None = None
    grace_period: float | None = None


@dataclass(slots=True)
class SidecarCommand:
    """CLI input for the pod sidecar."""

    marker_files: tuple[str, ...] = ()
    process_logs: tuple[str, ...] = ()
    names: tuple[str, ...] = ()
    artifacts: tuple[str, ...] = ()
    timeout: float | None = None
    entry_error: bool = False
    ignore_interrupts: bool = False
    censor_secret_files: tuple[str, ...] = ()
    artifact_dir: Path | None = None
    artifact_url: str | None = None
    artifact_prefix: str = ""
    report_url: str | None = None
    poll_interval: float | None = None


@dataclass(slots=True)
class SidecarCommandResult:
    """Exit code and summary lines of a sidecar run."""

    exit_code: int
    lines: list[str] = field(default_factory=list)


class PodUtilsCliController:
    """Resolve options, install signal routing, and run the supervisor/coordinator."""

    def entrypoint_options(self, command: EntrypointCommand) -> EntrypointOptions:
        """Options from ENTRYPOINT_OPTIONS when set, otherwise from flags."""

        from_env = EntrypointOptions.from_env()
        if from_env is not None:
            return from_env
        return EntrypointOptions(
            args=list(command.args),
            process_log=command.process_log or "",
            marker_file=command.marker_file or "",
            timeout=command.timeout,
            grace_period=command.grace_period,
        )

    def run_entrypoint(self, command: EntrypointCommand) -> int:
        """Run the wrapped command and return the exit code to mirror."""

        options = self.entrypoint_options(command)
        try:
            options.validate()
        except ValueError as error:
            if options.marker_file:
                write_marker(
                    Path(options.marker_file),
                    Marker(return_code=None, error=f"invalid entrypoint options: {error}"),
                )
            raise

        ctx = RunContext()
        with install_signal_cancellation(ctx):
            marker = EntrypointSupervisor(options, ctx=ctx).run()
        return marker.exit_code

    def sidecar_options(self, command: SidecarCommand) -> SidecarOptions:
        """Options from SIDECAR_OPTIONS when set, otherwise from flags."""

        from_env = SidecarOptions.from_env()
        if from_env is not None:
            return from_env

        if command.names and len(command.names) != len(command.marker_files):
            raise ValueError("--name must be given once per --marker-file or not at all.")
        if len(command.process_logs) > len(command.marker_files):
            raise ValueError("More --process-log values than --marker-file values.")
        entries = [
            SidecarEntry(
                name=command.names[index] if command.names else f"test{index}",
                marker_file=marker_file,
                process_log=(
                    command.process_logs[index] if index < len(command.process_logs) else ""
                ),
            )
            for index, marker_file in enumerate(command.marker_files)
        ]
        if command.artifact_dir is not None:
            artifact_store = ArtifactStoreSettings(
                kind="local",
                root_dir=str(command.artifact_dir),
                prefix=command.artifact_prefix,
            )
        elif command.artifact_url:
            artifact_store = ArtifactStoreSettings(
                kind="http",
                base_url=command.artifact_url,
                prefix=command.artifact_prefix,
            )
        else:
            artifact_store = ArtifactStoreSettings()
        reporter = (
            ReporterSettings(kind="http", url=command.report_url)
            if command.report_url
            else ReporterSettings()
        )

        options = SidecarOptions(
            entries=entries,
            artifacts=list(command.artifacts),
            entry_error=command.entry_error,
            ignore_interrupts=command.ignore_interrupts,
            censor_secret_files=list(command.censor_secret_files),
            artifact_store=artifact_store,
            reporter=reporter,
            job=JobMetadata.from_env(),
        )
        if command.timeout is not None:
            options.timeout = command.timeout
        if command.poll_interval is not None:
            options.poll_interval = command.poll_interval
            options.poll_interval_max = max(options.poll_interval_max, command.poll_interval)
        return options

    def run_sidecar(self, command: SidecarCommand) -> SidecarCommandResult:
        options = self.sidecar_options(command)
        options.validate()

        artifact_store = build_artifact_store(options.artifact_store)
        reporter = None
        ctx = RunContext()
        try:
            reporter = build_status_reporter(options.reporter)
            with (
                transient_log_file() as log_path,
                install_signal_cancellation(ctx, ignore=options.ignore_interrupts),
            ):
                result = SidecarCoordinator(
                    options,
                    artifact_store=artifact_store,
                    reporter=reporter,
                    ctx=ctx,
                    sidecar_log=log_path,
                ).run()
        finally:
            for client in (artifact_store, reporter):
                close = getattr(client, "close", None)
                if close is not None:
                    close()

        lines = [
            f"containers: {result.verdict.total}",
            f"failed: {result.failure_count}",
        ]
        lines.extend(
            f"  {failure.source}: {failure.reason}" for failure in result.verdict.failures
        )
        if result.error is not None:
            logger.error("Failed to report job status: %s", result.error)
            lines.append(f"errors: {result.error}")
        exit_code = sidecar_exit_code(result, entry_error=options.entry_error)
        if options.entry_error and result.failure_count > 0:
            lines.append(f"{result.failure_count} containers failed")
        return SidecarCommandResult(exit_code=exit_code, lines=lines)
