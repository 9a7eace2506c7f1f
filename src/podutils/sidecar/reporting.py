"""Status reporters that receive the job verdict."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from podutils.config import JobMetadata, ReporterSettings, read_token
from podutils.sidecar.models import Verdict

logger = logging.getLogger(__name__)


class StatusReportError(RuntimeError):
    """The status sink rejected or did not receive the verdict."""


class StatusReporter(Protocol):
    """Protocol implemented by status reporters."""

    def report(self, verdict: Verdict, job: JobMetadata) -> None:
        """Deliver the verdict; raise StatusReportError on failure."""


class LogStatusReporter:
    """Write the verdict to the log only."""

    def report(self, verdict: Verdict, job: JobMetadata) -> None:
        if verdict.passed:
            logger.info(
                "Job %s build %s passed (%d containers)",
                job.job_name or "<unknown>",
                job.build_id or "<unknown>",
                verdict.total,
            )
            return
        logger.warning(
            "Job %s build %s failed: %d of %d containers failed",
            job.job_name or "<unknown>",
            job.build_id or "<unknown>",
            verdict.failure_count,
            verdict.total,
        )
        for failure in verdict.failures:
            logger.warning("  %s: %s %s", failure.source, failure.reason, failure.detail)


class HttpStatusReporter:
    """POST the verdict as JSON to a status endpoint."""

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def report(self, verdict: Verdict, job: JobMetadata) -> None:
        payload = {"job": job.to_dict(), "verdict": verdict.to_dict()}
        try:
            response = self._client.post(self.url, json=payload)
        except httpx.HTTPError as error:
            raise StatusReportError(f"Status report to {self.url} failed: {error}") from error
        if not response.is_success:
            raise StatusReportError(
                f"Status report to {self.url} failed: HTTP {response.status_code}",
            )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpStatusReporter:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def build_status_reporter(settings: ReporterSettings) -> StatusReporter:
    """Instantiate the reporter described by validated settings."""

    if settings.kind == "http":
        return HttpStatusReporter(
            settings.url,
            token=read_token(settings.token_file),
            timeout_seconds=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
        )
    return LogStatusReporter()
