"""Typed options for the entrypoint and sidecar processes."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

ENTRYPOINT_OPTIONS_ENV = "ENTRYPOINT_OPTIONS"
SIDECAR_OPTIONS_ENV = "SIDECAR_OPTIONS"
JOB_SPEC_ENV = "JOB_SPEC"

DEFAULT_GRACE_PERIOD_SECONDS = 15.0
DEFAULT_SIDECAR_TIMEOUT_SECONDS = 2 * 60 * 60.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_POLL_INTERVAL_MAX_SECONDS = 5.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass(slots=True)
class EntrypointOptions:
    """Configuration of one wrapped container command."""

    args: list[str] = field(default_factory=list)
    process_log: str = ""
    marker_file: str = ""
    timeout: float | None = None
    grace_period: float | None = None

    @property
    def effective_grace_period(self) -> float:
        if self.grace_period is None:
            return DEFAULT_GRACE_PERIOD_SECONDS
        return self.grace_period

    def validate(self) -> None:
        """Raise ValueError when the options cannot drive an execution."""

        if not self.args:
            raise ValueError("No process to wrap specified: args must not be empty.")
        if not self.marker_file:
            raise ValueError("No marker file specified: marker_file must not be empty.")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be > 0 when set.")
        if self.grace_period is not None and self.grace_period < 0:
            raise ValueError("grace_period must be >= 0 when set.")

    @classmethod
    def from_json(cls, raw: str) -> EntrypointOptions:
        payload = _load_object(raw, ENTRYPOINT_OPTIONS_ENV)
        return cls(
            args=_str_list(payload, "args"),
            process_log=_str_value(payload, "process_log"),
            marker_file=_str_value(payload, "marker_file"),
            timeout=_optional_duration(payload, "timeout"),
            grace_period=_optional_duration(payload, "grace_period"),
        )

    @classmethod
    def from_env(cls) -> EntrypointOptions | None:
        """Load options from ENTRYPOINT_OPTIONS, or None when it is not set."""

        raw = os.getenv(ENTRYPOINT_OPTIONS_ENV, "").strip()
        if not raw:
            return None
        return cls.from_json(raw)


@dataclass(slots=True)
class SidecarEntry:
    """One sibling container the sidecar waits for."""

    name: str
    marker_file: str
    process_log: str = ""


@dataclass(slots=True)
class ArtifactStoreSettings:
    """Where collected logs and artifacts are shipped."""

    kind: str = "none"
    root_dir: str = ""
    base_url: str = ""
    token_file: str = ""
    prefix: str = ""
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class ReporterSettings:
    """Where the job verdict is reported."""

    kind: str = "log"
    url: str = ""
    token_file: str = ""
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class JobMetadata:
    """Identifying metadata of one job run."""

    job_name: str = ""
    build_id: str = ""
    job_type: str = ""
    refs: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job_name,
            "buildid": self.build_id,
            "type": self.job_type,
            "refs": dict(self.refs),
        }

    @classmethod
    def from_env(cls) -> JobMetadata:
        raw = os.getenv(JOB_SPEC_ENV, "").strip()
        if not raw:
            return cls()
        payload = _load_object(raw, JOB_SPEC_ENV)
        refs = payload.get("refs") or {}
        if not isinstance(refs, dict):
            raise ValueError(f"{JOB_SPEC_ENV}.refs must be an object")
        return cls(
            job_name=str(payload.get("job", "")),
            build_id=str(payload.get("buildid", payload.get("build_id", ""))),
            job_type=str(payload.get("type", "")),
            refs=refs,
        )


@dataclass(slots=True)
class SidecarOptions:
    """Configuration of the pod-level sidecar."""

    entries: list[SidecarEntry] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    timeout: float = DEFAULT_SIDECAR_TIMEOUT_SECONDS
    entry_error: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    poll_interval_max: float = DEFAULT_POLL_INTERVAL_MAX_SECONDS
    ignore_interrupts: bool = False
    censor_secret_files: list[str] = field(default_factory=list)
    artifact_store: ArtifactStoreSettings = field(default_factory=ArtifactStoreSettings)
    reporter: ReporterSettings = field(default_factory=ReporterSettings)
    job: JobMetadata = field(default_factory=JobMetadata)

    @property
    def marker_files(self) -> set[str]:
        return {entry.marker_file for entry in self.entries}

    @property
    def process_logs(self) -> set[str]:
        return {entry.process_log for entry in self.entries if entry.process_log}

    def validate(self) -> None:
        """Raise ValueError when the sidecar cannot run with these options."""

        if not self.entries:
            raise ValueError("At least one entry (marker file to wait for) is required.")
        names: set[str] = set()
        markers: set[str] = set()
        for entry in self.entries:
            if not entry.name.strip():
                raise ValueError("Every entry needs a non-empty name.")
            if not entry.marker_file:
                raise ValueError(f"Entry {entry.name!r} has no marker_file.")
            if entry.name in names:
                raise ValueError(f"Duplicate entry name: {entry.name!r}")
            if entry.marker_file in markers:
                raise ValueError(f"Duplicate marker_file: {entry.marker_file!r}")
            names.add(entry.name)
            markers.add(entry.marker_file)
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0.")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0.")
        if self.poll_interval_max < self.poll_interval:
            raise ValueError("poll_interval_max must be >= poll_interval.")
        if self.artifact_store.kind not in {"none", "local", "http"}:
            raise ValueError(
                f"Unsupported artifact store kind: {self.artifact_store.kind!r} "
                "(expected none, local or http).",
            )
        if self.artifact_store.kind == "local" and not self.artifact_store.root_dir:
            raise ValueError("artifact_store.root_dir is required for the local store.")
        if self.artifact_store.kind == "http" and not self.artifact_store.base_url:
            raise ValueError("artifact_store.base_url is required for the http store.")
        if self.reporter.kind not in {"log", "http"}:
            raise ValueError(
                f"Unsupported reporter kind: {self.reporter.kind!r} (expected log or http).",
            )
        if self.reporter.kind == "http" and not self.reporter.url:
            raise ValueError("reporter.url is required for the http reporter.")

    @classmethod
    def from_json(cls, raw: str) -> SidecarOptions:
        payload = _load_object(raw, SIDECAR_OPTIONS_ENV)
        raw_entries = payload.get("entries", [])
        if not isinstance(raw_entries, list):
            raise ValueError("sidecar.entries must be an array")
        entries: list[SidecarEntry] = []
        for index, item in enumerate(raw_entries):
            if not isinstance(item, dict):
                raise ValueError("sidecar.entries items must be objects")
            entries.append(
                SidecarEntry(
                    name=_str_value(item, "name") or f"test{index}",
                    marker_file=_str_value(item, "marker_file"),
                    process_log=_str_value(item, "process_log"),
                ),
            )

        timeout = _optional_duration(payload, "timeout")
        poll_interval = _optional_duration(payload, "poll_interval")
        poll_interval_max = _optional_duration(payload, "poll_interval_max")
        job = JobMetadata.from_env()
        return cls(
            entries=entries,
            artifacts=_str_list(payload, "artifacts"),
            timeout=DEFAULT_SIDECAR_TIMEOUT_SECONDS if timeout is None else timeout,
            entry_error=_bool_value(payload, "entry_error"),
            poll_interval=(
                DEFAULT_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
            ),
            poll_interval_max=(
                DEFAULT_POLL_INTERVAL_MAX_SECONDS
                if poll_interval_max is None
                else poll_interval_max
            ),
            ignore_interrupts=_bool_value(payload, "ignore_interrupts"),
            censor_secret_files=_str_list(payload, "censor_secret_files"),
            artifact_store=_artifact_store_settings(payload.get("artifact_store")),
            reporter=_reporter_settings(payload.get("reporter")),
            job=job,
        )

    @classmethod
    def from_env(cls) -> SidecarOptions | None:
        """Load options from SIDECAR_OPTIONS, or None when it is not set."""

        raw = os.getenv(SIDECAR_OPTIONS_ENV, "").strip()
        if not raw:
            return None
        return cls.from_json(raw)


def parse_duration(value: str | float | int) -> float:
    """Convert seconds or a Go-style duration string (``1h30m``) to seconds."""

    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        return float(value)
    text = value.strip()
    if not text:
        raise ValueError("Duration must not be empty.")
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text) or position == 0:
        raise ValueError(f"Invalid duration: {value!r}. Expected seconds or e.g. '1h30m', '45s'.")
    return total


def read_token(path: str) -> str:
    """Read a bearer token from a mounted secret file."""

    if not path:
        return ""
    try:
        return Path(path).read_text("utf-8").strip()
    except OSError as error:
        raise ValueError(f"Cannot read token file {path}: {error}") from error


def _artifact_store_settings(raw: object) -> ArtifactStoreSettings:
    if raw is None:
        return ArtifactStoreSettings()
    if not isinstance(raw, dict):
        raise ValueError("sidecar.artifact_store must be an object")
    timeout = _optional_duration(raw, "request_timeout")
    return ArtifactStoreSettings(
        kind=_str_value(raw, "kind") or "none",
        root_dir=_str_value(raw, "root_dir"),
        base_url=_str_value(raw, "base_url"),
        token_file=_str_value(raw, "token_file"),
        prefix=_str_value(raw, "prefix"),
        request_timeout_seconds=30.0 if timeout is None else timeout,
        max_retries=_int_value(raw, "max_retries", default=3),
    )


def _reporter_settings(raw: object) -> ReporterSettings:
    if raw is None:
        return ReporterSettings()
    if not isinstance(raw, dict):
        raise ValueError("sidecar.reporter must be an object")
    timeout = _optional_duration(raw, "request_timeout")
    return ReporterSettings(
        kind=_str_value(raw, "kind") or "log",
        url=_str_value(raw, "url"),
        token_file=_str_value(raw, "token_file"),
        request_timeout_seconds=30.0 if timeout is None else timeout,
        max_retries=_int_value(raw, "max_retries", default=3),
    )


def _load_object(raw: str, source: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"{source} is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"{source} must be a JSON object")
    return payload


def _str_value(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _str_list(payload: dict[str, Any], key: str) -> list[str]:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"{key} must be an array of strings")
    return list(value)


def _bool_value(payload: dict[str, Any], key: str) -> bool:
    value = payload.get(key, False)
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value


def _int_value(payload: dict[str, Any], key: str, *, default: int) -> int:
    value = payload.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"{key} must be an integer")
    return value


def _optional_duration(payload: dict[str, Any], key: str) -> float | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str | int | float) or isinstance(value, bool):
        raise ValueError(f"{key} must be a duration string or a number of seconds")
    return parse_duration(value)
