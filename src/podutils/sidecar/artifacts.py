"""Artifact store clients used to ship logs and job outputs."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Protocol

import httpx

from podutils.config import ArtifactStoreSettings, read_token

logger = logging.getLogger(__name__)


class ArtifactUploadError(RuntimeError):
    """Upload of one artifact failed."""

    def __init__(self, message: str, *, destination_key: str) -> None:
        super().__init__(message)
        self.destination_key = destination_key


class ArtifactStore(Protocol):
    """Protocol implemented by artifact stores."""

    def upload(self, source: Path, destination_key: str) -> None:
        """Copy ``source`` to ``destination_key``; raise ArtifactUploadError on failure."""


class NullArtifactStore:
    """Store that drops every artifact; used when no store is configured."""

    def upload(self, source: Path, destination_key: str) -> None:
        logger.debug("No artifact store configured, skipping %s -> %s", source, destination_key)


class LocalArtifactStore:
    """Copy artifacts into a directory tree, for example a mounted bucket."""

    def __init__(self, root_dir: Path, *, prefix: str = "") -> None:
        self.root_dir = root_dir
        self.prefix = prefix.strip("/")

    def upload(self, source: Path, destination_key: str) -> None:
        key = _join_key(self.prefix, destination_key)
        target = (self.root_dir / key).resolve()
        if not target.is_relative_to(self.root_dir.resolve()):
            raise ArtifactUploadError(
                f"Destination key escapes artifact root: {destination_key!r}",
                destination_key=destination_key,
            )
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
        except OSError as error:
            raise ArtifactUploadError(
                f"Failed to copy {source} to {target}: {error}",
                destination_key=destination_key,
            ) from error


class HttpArtifactStore:
    """PUT artifacts to ``<base_url>/<prefix>/<key>``."""

    def __init__(  # noqa: PLR0913
        self,
        base_url: str,
        *,
        prefix: str = "",
        token: str = "",
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.prefix = prefix.strip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def upload(self, source: Path, destination_key: str) -> None:
        url = f"{self.base_url}/{_join_key(self.prefix, destination_key)}"
        try:
            with source.open("rb") as handle:
                response = self._client.put(
                    url,
                    content=handle.read(),
                    headers={"Content-Type": _content_type(source)},
                )
        except OSError as error:
            raise ArtifactUploadError(
                f"Failed to read {source}: {error}",
                destination_key=destination_key,
            ) from error
        except httpx.HTTPError as error:
            raise ArtifactUploadError(
                f"Upload of {source} to {url} failed: {error}",
                destination_key=destination_key,
            ) from error
        if not response.is_success:
            raise ArtifactUploadError(
                f"Upload of {source} to {url} failed: HTTP {response.status_code}",
                destination_key=destination_key,
            )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpArtifactStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def build_artifact_store(settings: ArtifactStoreSettings) -> ArtifactStore:
    """Instantiate the store described by validated settings."""

    if settings.kind == "local":
        return LocalArtifactStore(Path(settings.root_dir), prefix=settings.prefix)
    if settings.kind == "http":
        return HttpArtifactStore(
            settings.base_url,
            prefix=settings.prefix,
            token=read_token(settings.token_file),
            timeout_seconds=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
        )
    return NullArtifactStore()


def _join_key(prefix: str, key: str) -> str:
    key = key.lstrip("/")
    return f"{prefix}/{key}" if prefix else key


def _content_type(source: Path) -> str:
    if source.suffix == ".json":
        return "application/json"
    if source.suffix in {".txt", ".log"}:
        return "text/plain; charset=utf-8"
    return "application/octet-stream"
