from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

import podutils as podutils_package
from podutils import __version__
from podutils.config import ENTRYPOINT_OPTIONS_ENV, SIDECAR_OPTIONS_ENV
from podutils.main import podutils
from podutils.marker import INTERNAL_ERROR_EXIT_CODE, Marker, read_marker, write_marker

pytestmark = [
    allure.epic("Pod Utilities"),
    allure.feature("CLI"),
]


def test_version() -> None:
    result = CliRunner().invoke(podutils, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_entrypoint_mirrors_exit_code(tmp_path: Path, python_command) -> None:
    marker_file = tmp_path / "marker-file.txt"
    process_log = tmp_path / "process-log.txt"

    result = CliRunner().invoke(
        podutils,
        [
            "entrypoint",
            "--marker-file",
            str(marker_file),
            "--process-log",
            str(process_log),
            "--",
            *python_command("import sys; print('working'); sys.exit(5)"),
        ],
    )

    assert result.exit_code == 5
    assert read_marker(marker_file).return_code == 5
    assert "working" in process_log.read_text()


def test_entrypoint_passes_flags_through_to_command(tmp_path: Path, python_command) -> None:
    marker_file = tmp_path / "marker-file.txt"
    process_log = tmp_path / "process-log.txt"

    result = CliRunner().invoke(
        podutils,
        [
            "entrypoint",
            "--marker-file",
            str(marker_file),
            "--process-log",
            str(process_log),
            *python_command("import sys; print(sys.argv[1:])"),
            "--timeout",
            "5",
        ],
    )

    assert result.exit_code == 0
    assert "['--timeout', '5']" in process_log.read_text()


def test_entrypoint_without_command_is_usage_error_with_marker(tmp_path: Path) -> None:
    marker_file = tmp_path / "marker-file.txt"

    result = CliRunner().invoke(podutils, ["entrypoint", "--marker-file", str(marker_file)])

    assert result.exit_code == 2
    marker = read_marker(marker_file)
    assert marker.return_code is None
    assert "invalid entrypoint options" in marker.error


def test_entrypoint_launch_failure_exits_internal_error(tmp_path: Path) -> None:
    marker_file = tmp_path / "marker-file.txt"

    result = CliRunner().invoke(
        podutils,
        ["entrypoint", "--marker-file", str(marker_file), str(tmp_path / "no-such-binary")],
    )

    assert result.exit_code == INTERNAL_ERROR_EXIT_CODE
    assert read_marker(marker_file).return_code is None


def test_entrypoint_reads_options_from_env(tmp_path: Path, monkeypatch, python_command) -> None:
    marker_file = tmp_path / "marker-file.txt"
    monkeypatch.setenv(
        ENTRYPOINT_OPTIONS_ENV,
        json.dumps(
            {
                "args": python_command("import sys; sys.exit(4)"),
                "marker_file": str(marker_file),
            },
        ),
    )

    result = CliRunner().invoke(podutils, ["entrypoint"])

    assert result.exit_code == 4
    assert read_marker(marker_file).return_code == 4


def test_sidecar_reports_failures_and_exits_with_entry_error(tmp_path: Path) -> None:
    ok_marker = tmp_path / "ok.txt"
    bad_marker = tmp_path / "bad.txt"
    write_marker(ok_marker, Marker(return_code=0))
    write_marker(bad_marker, Marker(return_code=2))
    bucket = tmp_path / "bucket"

    lenient = CliRunner().invoke(
        podutils,
        [
            "sidecar",
            "--marker-file",
            str(ok_marker),
            "--marker-file",
            str(bad_marker),
            "--name",
            "unit",
            "--name",
            "lint",
            "--artifact-dir",
            str(bucket),
            "--timeout",
            "2s",
        ],
    )
    strict = CliRunner().invoke(
        podutils,
        [
            "sidecar",
            "--marker-file",
            str(ok_marker),
            "--marker-file",
            str(bad_marker),
            "--timeout",
            "2s",
            "--entry-error",
        ],
    )

    assert lenient.exit_code == 0
    assert "containers: 2" in lenient.output
    assert "failed: 1" in lenient.output
    assert "lint: nonzero exit" in lenient.output
    assert json.loads((bucket / "finished.json").read_text())["failure_count"] == 1
    assert strict.exit_code == 1
    assert "1 containers failed" in strict.output


def test_sidecar_name_count_mismatch_is_usage_error(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        podutils,
        [
            "sidecar",
            "--marker-file",
            str(tmp_path / "a"),
            "--marker-file",
            str(tmp_path / "b"),
            "--name",
            "only-one",
        ],
    )

    assert result.exit_code == 2


def test_sidecar_reads_options_from_env(tmp_path: Path, monkeypatch) -> None:
    marker_file = tmp_path / "marker.txt"
    write_marker(marker_file, Marker(return_code=0))
    monkeypatch.setenv(
        SIDECAR_OPTIONS_ENV,
        json.dumps(
            {
                "entries": [{"name": "e2e", "marker_file": str(marker_file)}],
                "timeout": "5s",
                "entry_error": True,
            },
        ),
    )

    result = CliRunner().invoke(podutils, ["sidecar"])

    assert result.exit_code == 0
    assert "containers: 1" in result.output
    assert "failed: 0" in result.output


def test_sidecar_missing_token_file_is_usage_error(tmp_path: Path, monkeypatch) -> None:
    marker_file = tmp_path / "marker.txt"
    write_marker(marker_file, Marker(return_code=0))
    monkeypatch.setenv(
        SIDECAR_OPTIONS_ENV,
        json.dumps(
            {
                "entries": [{"marker_file": str(marker_file)}],
                "artifact_store": {
                    "kind": "http",
                    "base_url": "https://artifacts.example.com",
                    "token_file": str(tmp_path / "no-token"),
                },
            },
        ),
    )

    result = CliRunner().invoke(podutils, ["sidecar"])

    assert result.exit_code == 2
    assert result.exception is None or isinstance(result.exception, SystemExit)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals required")
def test_sigterm_to_entrypoint_process_still_writes_marker(tmp_path: Path) -> None:
    marker_file = tmp_path / "marker-file.txt"
    process_log = tmp_path / "process-log.txt"
    src_dir = Path(podutils_package.__file__).resolve().parents[1]
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(
        part for part in (str(src_dir), env.get("PYTHONPATH", "")) if part
    )
    process = subprocess.Popen(  # noqa: S603
        [
            sys.executable,
            "-m",
            "podutils.main",
            "entrypoint",
            "--marker-file",
            str(marker_file),
            "--process-log",
            str(process_log),
            "--grace-period",
            "2",
            "--",
            sys.executable,
            "-c",
            "import time; print('ready', flush=True); time.sleep(60)",
        ],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env=env,
    )
    try:
        deadline = time.monotonic() + 30
        while time.monotonic() < deadline:
            if process_log.exists() and "ready" in process_log.read_text():
                break
            assert process.poll() is None
            time.sleep(0.05)
        else:
            pytest.fail("wrapped command never started")

        process.send_signal(signal.SIGTERM)
        exit_code = process.wait(timeout=30)
    finally:
        if process.poll() is None:
            process.kill()
            process.wait()

    marker = read_marker(marker_file)
    assert marker.timed_out is False
    assert marker.error == "process aborted: SIGTERM"
    assert marker.return_code == 128 + signal.SIGTERM
    assert exit_code == 128 + signal.SIGTERM
