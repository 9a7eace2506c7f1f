"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable

import pytest

from podutils.config import ENTRYPOINT_OPTIONS_ENV, JOB_SPEC_ENV, SIDECAR_OPTIONS_ENV


@pytest.fixture()
def python_command() -> Callable[[str], list[str]]:
    """Build an argv running an inline Python snippet with this interpreter."""

    def _build(code: str) -> list[str]:
        return [sys.executable, "-c", code]

    return _build


@pytest.fixture(autouse=True)
def _clean_options_env(monkeypatch) -> None:
    for name in (ENTRYPOINT_OPTIONS_ENV, SIDECAR_OPTIONS_ENV, JOB_SPEC_ENV):
        monkeypatch.delenv(name, raising=False)
