"""Wrap one command: mirror its output, enforce a deadline, always leave a marker."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from podutils.config import EntrypointOptions
from podutils.context import RunContext
from podutils.marker import TIMEOUT_EXIT_CODE, Marker, write_marker

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_DRAIN_JOIN_SECONDS = 5.0
_KILL_WAIT_SECONDS = 5.0


@dataclass(slots=True)
class ProcessOutcome:
    """How the supervised child finished."""

    return_code: int
    timed_out: bool = False
    aborted_reason: str | None = None


class _LogSink:
    """Process log shared by the stdout and stderr drainers."""

    def __init__(self, handle: BinaryIO | None) -> None:
        self._handle = handle
        self._lock = threading.Lock()

    def write(self, data: bytes) -> None:
        if self._handle is None:
            return
        with self._lock:
            self._handle.write(data)
            self._handle.flush()


class _StreamDrainer(threading.Thread):
    """Copy one child pipe into the process log and a forwarding stream."""

    def __init__(self, *, name: str, source: BinaryIO, forward: BinaryIO, log_sink: _LogSink):
        super().__init__(name=name, daemon=True)
        self._source = source
        self._forward = forward
        self._log_sink = log_sink
        self._forward_broken = False

    def run(self) -> None:
        try:
            while True:
                chunk = self._source.read1(_CHUNK_SIZE)
                if not chunk:
                    return
                self._log_sink.write(chunk)
                self._forward_chunk(chunk)
        except (OSError, ValueError) as error:
            logger.warning("Stopped draining %s: %s", self.name, error)
        finally:
            self._source.close()

    def _forward_chunk(self, chunk: bytes) -> None:
        if self._forward_broken:
            return
        try:
            self._forward.write(chunk)
            self._forward.flush()
        except (OSError, ValueError) as error:
            self._forward_broken = True
            logger.warning("Cannot forward %s output any more: %s", self.name, error)


class EntrypointSupervisor:
    """Run ``options.args`` exactly once and publish a marker on every exit path."""

    def __init__(  # noqa: PLR0913
        self,
        options: EntrypointOptions,
        *,
        ctx: RunContext | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
        env: dict[str, str] | None = None,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        self.options = options
        self.ctx = ctx or RunContext()
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.stderr = stderr if stderr is not None else sys.stderr.buffer
        self.env = env
        self.poll_interval_seconds = poll_interval_seconds

    def run(self) -> Marker:
        """Execute the command and write its marker; returns the marker written."""

        marker = Marker(return_code=None, error="entrypoint exited before the process finished")
        try:
            marker = self._execute()
        except Exception as error:
            logger.exception("Supervising %s failed", " ".join(self.options.args))
            marker = Marker(return_code=None, error=f"internal error: {error}")
        finally:
            write_marker(Path(self.options.marker_file), marker)
            logger.info(
                "Wrote marker %s (return_code=%s, error=%r)",
                self.options.marker_file,
                marker.return_code,
                marker.error,
            )
        return marker

    def _execute(self) -> Marker:
        log_path = Path(self.options.process_log) if self.options.process_log else None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("wb") as log_handle:
                return self._execute_with_log(_LogSink(log_handle))
        return self._execute_with_log(_LogSink(None))

    def _execute_with_log(self, log_sink: _LogSink) -> Marker:
        args = self.options.args
        logger.info("Starting process: %s", " ".join(args))
        try:
            process = subprocess.Popen(  # noqa: S603
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.env,
                start_new_session=True,
            )
        except OSError as error:
            message = f"could not start process {args[0]!r}: {error}"
            logger.error("Launch failed: %s", message)
            log_sink.write(f"{message}\n".encode())
            return Marker(return_code=None, error=message)

        drainers = [
            _StreamDrainer(
                name="stdout",
                source=process.stdout,
                forward=self.stdout,
                log_sink=log_sink,
            ),
            _StreamDrainer(
                name="stderr",
                source=process.stderr,
                forward=self.stderr,
                log_sink=log_sink,
            ),
        ]
        for drainer in drainers:
            drainer.start()

        try:
            outcome = self._wait_for_exit(process)
        finally:
            if process.poll() is None:
                _terminate_process(process, grace_seconds=0)

        for drainer in drainers:
            drainer.join(timeout=_DRAIN_JOIN_SECONDS)
            if drainer.is_alive():
                logger.warning(
                    "Output %s still open after process exit; a leftover child holds the pipe",
                    drainer.name,
                )
        return _marker_for(outcome, timeout=self.options.timeout)

    def _wait_for_exit(self, process: subprocess.Popen[bytes]) -> ProcessOutcome:
        deadline = self.ctx.child(timeout=self.options.timeout)
        while True:
            returncode = process.poll()
            if returncode is not None:
                return ProcessOutcome(return_code=_normalize_return_code(returncode))

            if deadline.done:
                timed_out = not deadline.cancelled
                if timed_out:
                    logger.warning(
                        "Process exceeded timeout of %ss, terminating",
                        self.options.timeout,
                    )
                else:
                    logger.warning("Received %s, terminating process", deadline.reason)
                returncode = _terminate_process(
                    process,
                    grace_seconds=self.options.effective_grace_period,
                )
                return ProcessOutcome(
                    return_code=_normalize_return_code(returncode),
                    timed_out=timed_out,
                    aborted_reason=None if timed_out else deadline.reason,
                )

            deadline.wait(self.poll_interval_seconds)


def _marker_for(outcome: ProcessOutcome, *, timeout: float | None) -> Marker:
    if outcome.timed_out:
        limit = f" after {timeout:g}s" if timeout is not None else ""
        return Marker(
            return_code=TIMEOUT_EXIT_CODE,
            error=f"process timed out{limit}",
            timed_out=True,
        )
    if outcome.aborted_reason is not None:
        return Marker(
            return_code=outcome.return_code,
            error=f"process aborted: {outcome.aborted_reason}",
        )
    return Marker(return_code=outcome.return_code)


def _normalize_return_code(returncode: int) -> int:
    """Map Popen's negative signal codes onto the shell's 128+N convention."""

    if returncode < 0:
        return 128 - returncode
    return returncode


def _signal_group(process: subprocess.Popen[bytes], sig: signal.Signals) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)
    except ProcessLookupError:
        return
    except OSError as error:
        logger.warning("Could not send %s to process %s: %s", sig.name, process.pid, error)


def _terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> int:
    """SIGTERM the process group, then SIGKILL it after ``grace_seconds``."""

    if grace_seconds > 0:
        _signal_group(process, signal.SIGTERM)
        try:
            return process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Process ignored SIGTERM for %ss, killing it", grace_seconds)
    _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
    return process.wait(timeout=_KILL_WAIT_SECONDS)
