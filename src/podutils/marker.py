"""On-disk completion marker written by the entrypoint and read by the sidecar.

A marker is published with a write-to-temp, fsync, rename sequence so a reader
polling the final path either sees nothing or a complete document.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

MARKER_FORMAT_VERSION = 1

# Exit code reported when the wrapped command outlived its timeout.
TIMEOUT_EXIT_CODE = 124
# Exit code of the entrypoint itself when the command never produced a status.
INTERNAL_ERROR_EXIT_CODE = 127


class MarkerError(ValueError):
    """Marker file exists but does not hold a valid marker document."""


@dataclass(slots=True, frozen=True)
class Marker:
    """Completion record of one wrapped process."""

    return_code: int | None
    error: str = ""
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.return_code == 0

    @property
    def exit_code(self) -> int:
        """Process exit code the entrypoint mirrors for this marker."""

        if self.return_code is None:
            return INTERNAL_ERROR_EXIT_CODE
        return self.return_code

    def to_payload(self) -> dict[str, Any]:
        return {
            "version": MARKER_FORMAT_VERSION,
            "return_code": self.return_code,
            "error": self.error,
            "timed_out": self.timed_out,
        }


def write_marker(path: Path, marker: Marker) -> None:
    """Atomically publish ``marker`` at ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(marker.to_payload(), ensure_ascii=False, sort_keys=True).encode("utf-8")
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(path.parent)


def read_marker(path: Path) -> Marker:
    """Parse a marker file.

    Raises FileNotFoundError when no marker was published yet and MarkerError
    when the file content is not a marker.
    """

    raw = path.read_bytes()
    try:
        text = raw.decode("utf-8").strip()
    except UnicodeDecodeError as error:
        raise MarkerError(f"Marker {path} is not valid UTF-8") from error
    if not text:
        raise MarkerError(f"Marker {path} is empty")

    # Older entrypoints wrote the bare exit code.
    if _is_integer(text):
        return Marker(return_code=int(text))

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise MarkerError(f"Marker {path} is not valid JSON: {error}") from error
    return _marker_from_payload(path, payload)


def _marker_from_payload(path: Path, payload: object) -> Marker:
    if not isinstance(payload, dict):
        raise MarkerError(f"Expected JSON object in marker {path}")

    version = payload.get("version", MARKER_FORMAT_VERSION)
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise MarkerError(f"marker.version must be an integer >= 1 in {path}")
    if "return_code" not in payload:
        raise MarkerError(f"marker.return_code is required in {path}")

    return_code = payload["return_code"]
    if return_code is not None and (
        not isinstance(return_code, int) or isinstance(return_code, bool)
    ):
        raise MarkerError(f"marker.return_code must be an integer or null in {path}")
    error = payload.get("error", "")
    if error is None:
        error = ""
    if not isinstance(error, str):
        raise MarkerError(f"marker.error must be a string in {path}")
    timed_out = payload.get("timed_out", False)
    if not isinstance(timed_out, bool):
        raise MarkerError(f"marker.timed_out must be a boolean in {path}")
    return Marker(return_code=return_code, error=error, timed_out=timed_out)


def _is_integer(text: str) -> bool:
    digits = text[1:] if text[:1] in {"-", "+"} else text
    return digits.isascii() and digits.isdigit()


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)
