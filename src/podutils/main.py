"""CLI entrypoint for podutils."""

from pathlib import Path

import rich_click as click

from podutils import __version__
from podutils.config import parse_duration
from podutils.controllers import EntrypointCommand, PodUtilsCliController, SidecarCommand
from podutils.logs import configure_logging

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PodUtilsCliController()


class DurationParamType(click.ParamType):
    """Seconds (``90``) or Go-style durations (``1h30m``, ``45s``)."""

    name = "duration"

    def convert(self, value, param, ctx):  # noqa: ANN001, ANN201
        if isinstance(value, float):
            return value
        try:
            return parse_duration(value)
        except ValueError as error:
            self.fail(str(error), param, ctx)


DURATION = DurationParamType()


@click.group()
@click.version_option(version=__version__, prog_name="podutils")
def podutils() -> None:
    """Entrypoint and sidecar utilities for CI job pods."""


@podutils.command(
    "entrypoint",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option(
    "--process-log",
    default=None,
    help="File receiving the combined stdout and stderr of the command.",
)
@click.option("--marker-file", default=None, help="File receiving the completion marker.")
@click.option("--timeout", type=DURATION, default=None, help="Deadline for the command.")
@click.option(
    "--grace-period",
    type=DURATION,
    default=None,
    help="Time between SIGTERM and SIGKILL once the deadline passes. Default 15s.",
)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def entrypoint(
    process_log: str | None,
    marker_file: str | None,
    timeout: float | None,
    grace_period: float | None,
    args: tuple[str, ...],
) -> None:
    """Run a command, mirror its output, and always write a completion marker.

    Options are read from `ENTRYPOINT_OPTIONS` (JSON) when it is set.
    The exit code mirrors the command's exit code; `124` means it timed out and
    `127` means it could not be started.
    """

    configure_logging()
    try:
        exit_code = CONTROLLER.run_entrypoint(
            EntrypointCommand(
                args=args,
                process_log=process_log,
                marker_file=marker_file,
                timeout=timeout,
                grace_period=grace_period,
            ),
        )
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    click.get_current_context().exit(exit_code)


@podutils.command("sidecar")
@click.option(
    "--marker-file",
    "marker_files",
    multiple=True,
    help="Marker file of one sibling container. Can be repeated.",
)
@click.option(
    "--process-log",
    "process_logs",
    multiple=True,
    help="Process log matching the --marker-file at the same position. Can be repeated.",
)
@click.option(
    "--name",
    "names",
    multiple=True,
    help="Container name matching the --marker-file at the same position.",
)
@click.option(
    "--artifact",
    "artifacts",
    multiple=True,
    help="Extra file or directory to upload. Can be repeated.",
)
@click.option("--timeout", type=DURATION, default=None, help="Deadline for all markers.")
@click.option(
    "--entry-error/--no-entry-error",
    default=False,
    show_default=True,
    help="Exit non-zero when any container failed.",
)
@click.option(
    "--ignore-interrupts/--no-ignore-interrupts",
    default=False,
    show_default=True,
    help="Keep waiting for markers after SIGINT/SIGTERM.",
)
@click.option(
    "--censor-secret",
    "censor_secret_files",
    multiple=True,
    help="Secret file or directory whose values are masked in uploaded logs.",
)
@click.option(
    "--artifact-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Copy artifacts into this directory.",
)
@click.option("--artifact-url", default=None, help="PUT artifacts under this base URL.")
@click.option("--artifact-prefix", default="", help="Key prefix for uploaded artifacts.")
@click.option("--report-url", default=None, help="POST the job verdict to this URL.")
@click.option("--poll-interval", type=DURATION, default=None, help="Initial marker poll interval.")
def sidecar(  # noqa: PLR0913
    marker_files: tuple[str, ...],
    process_logs: tuple[str, ...],
    names: tuple[str, ...],
    artifacts: tuple[str, ...],
    timeout: float | None,
    entry_error: bool,
    ignore_interrupts: bool,
    censor_secret_files: tuple[str, ...],
    artifact_dir: Path | None,
    artifact_url: str | None,
    artifact_prefix: str,
    report_url: str | None,
    poll_interval: float | None,
) -> None:
    """Wait for sibling markers, upload logs and artifacts, report the verdict.

    Options are read from `SIDECAR_OPTIONS` (JSON) when it is set; job metadata
    comes from `JOB_SPEC`.
    """

    configure_logging()
    try:
        result = CONTROLLER.run_sidecar(
            SidecarCommand(
                marker_files=marker_files,
                process_logs=process_logs,
                names=names,
                artifacts=artifacts,
                timeout=timeout,
                entry_error=entry_error,
                ignore_interrupts=ignore_interrupts,
                censor_secret_files=censor_secret_files,
                artifact_dir=artifact_dir,
                artifact_url=artifact_url,
                artifact_prefix=artifact_prefix,
                report_url=report_url,
                poll_interval=poll_interval,
            ),
        )
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(result.lines)
    click.get_current_context().exit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    podutils()
