"""
Report Publisher
================
Optional downstream sink for the coverage report.

The Orchestrator calls ``publish`` at most once, and only after a run has
reached SUCCEEDED. Nothing a publisher does changes the run's terminal
state; failures are recorded on the run as ``publish_error``.

Implementations:
    NoopPublisher     — default; does nothing
    CodecovPublisher  — Codecov v4 upload protocol (POST for an upload URL, PUT the report)
"""
import logging
from typing import Optional, Protocol

import httpx

from covpipe.core.config import CODECOV_TOKEN
from covpipe.core.errors import PublishFailed
from covpipe.models.coverage_report import CoverageReport
from covpipe.models.pipeline_run import PipelineRun
from covpipe.parser.pipeline_config import PublishSettings

logger = logging.getLogger(__name__)

_UPLOAD_TIMEOUT = 60.0


class ReportPublisher(Protocol):
    fail_on_error: bool

    def publish(self, report: CoverageReport, run: PipelineRun) -> None:
        ...


class NoopPublisher:
    """Publishing disabled."""

    fail_on_error = False

    def publish(self, report: CoverageReport, run: PipelineRun) -> None:
        logger.debug("Report publishing disabled, skipping upload of %s", report.path)


class CodecovPublisher:
    """
    Upload an LCOV report to Codecov.

    Parameters
    ----------
    token : str
        Repository upload token (not required for public repos).
    flags : str
        Codecov flag name (e.g. "unittests").
    name : str
        Display name of the upload.
    fail_on_error : bool
        Surface upload errors through the CLI exit code.
    base_url : str
        Codecov endpoint.
    client : httpx.Client | None
        HTTP client (tests inject one with a MockTransport).
    """

    def __init__(
        self,
        token: str = CODECOV_TOKEN,
        flags: str = "unittests",
        name: str = "codecov-umbrella",
        fail_on_error: bool = True,
        base_url: str = "https://codecov.io",
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.token = token
        self.flags = flags
        self.name = name
        self.fail_on_error = fail_on_error
        self.base_url = base_url.rstrip("/")
        self._client = client

    def _payload(self, report: CoverageReport) -> bytes:
        with open(report.path, "rb") as f:
            content = f.read()
        header = f"# path={report.path.rsplit('/', 1)[-1]}\n".encode()
        return header + content + b"<<<<<< EOF\n"

    def publish(self, report: CoverageReport, run: PipelineRun) -> None:
        params = {
            "commit": run.trigger.commit_sha,
            "branch": run.trigger.branch,
            "flags": self.flags,
            "name": self.name,
            "service": "custom",
            "build": run.run_id,
        }
        if self.token:
            params["token"] = self.token

        client = self._client or httpx.Client(timeout=_UPLOAD_TIMEOUT)
        try:
            response = client.post(
                f"{self.base_url}/upload/v4",
                params=params,
                headers={"Accept": "text/plain"},
            )
            response.raise_for_status()
            lines = [line.strip() for line in response.text.splitlines() if line.strip()]
            if len(lines) < 2:
                raise PublishFailed(f"Unexpected upload response: {response.text[:200]!r}")
            result_url, upload_url = lines[0], lines[1]

            put = client.put(
                upload_url,
                content=self._payload(report),
                headers={"Content-Type": "text/plain"},
            )
            put.raise_for_status()
        except httpx.HTTPError as e:
            raise PublishFailed(f"Codecov upload failed: {e}") from e
        except OSError as e:
            raise PublishFailed(f"Could not read report {report.path}: {e}") from e
        finally:
            if self._client is None:
                client.close()

        logger.info("[PUBLISH] Uploaded %s → %s", report.path, result_url)


def build_publisher(settings: PublishSettings, token: str = CODECOV_TOKEN,
                    client: Optional[httpx.Client] = None) -> ReportPublisher:
    if not settings.enabled:
        return NoopPublisher()
    if settings.provider != "codecov":
        logger.warning("Unknown publish provider '%s', publishing disabled", settings.provider)
        return NoopPublisher()
    return CodecovPublisher(
        token=token,
        flags=settings.flags,
        name=settings.name,
        fail_on_error=settings.fail_on_error,
        base_url=settings.url,
        client=client,
    )
