"""Mask secret values in logs before they leave the pod."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

# Shorter values match too much unrelated output to be worth masking.
MIN_SECRET_LENGTH = 4


def load_secrets(paths: list[str]) -> list[bytes]:
    """Collect secret values from files and from every file inside directories.

    Longest values come first so a secret containing another one is masked whole.
    """

    values: set[bytes] = set()
    for raw_path in paths:
        path = Path(raw_path)
        files = sorted(p for p in path.rglob("*") if p.is_file()) if path.is_dir() else [path]
        for secret_file in files:
            try:
                content = secret_file.read_bytes().strip()
            except OSError as error:
                logger.warning("Cannot read secret file %s: %s", secret_file, error)
                continue
            if len(content) < MIN_SECRET_LENGTH:
                continue
            values.add(content)
    return sorted(values, key=lambda value: (-len(value), value))


def censor_bytes(data: bytes, secrets: list[bytes]) -> bytes:
    for secret in secrets:
        data = data.replace(secret, b"*" * len(secret))
    return data


def censor_file(source: Path, destination: Path, secrets: list[bytes]) -> None:
    """Write a masked copy of ``source`` to ``destination``."""

    destination.write_bytes(censor_bytes(source.read_bytes(), secrets))
