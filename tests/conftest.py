"""
Shared fixtures: a scripted executor, in-memory tool archives and a
MockTransport that serves them. No network, Rust toolchain or Docker
daemon is touched by the suite.
"""
import io
import os
import tarfile
import zipfile
from types import SimpleNamespace

import httpx
import pytest

from covpipe.executor.build_executor import ExecutionResult
from covpipe.models.external_tool import ExternalTool
from covpipe.models.trigger_event import EventType, TriggerEvent
from covpipe.parser.pipeline_config import PipelineConfig
from covpipe.pipeline.orchestrator import Orchestrator
from covpipe.services.provisioner import EnvironmentProvisioner
from covpipe.services.tool_fetcher import ToolFetcher

TEST_REPO = "https://github.com/acme/widget.git"

SAMPLE_LCOV = (
    "TN:\n"
    "SF:src/main.rs\n"
    "FN:1,main\n"
    "FNDA:1,main\n"
    "DA:1,1\n"
    "DA:2,1\n"
    "LF:2\n"
    "LH:2\n"
    "end_of_record\n"
    "TN:\n"
    "SF:/usr/src/rustc/library/core/src/panic.rs\n"
    "DA:10,0\n"
    "LF:1\n"
    "LH:0\n"
    "end_of_record\n"
    "TN:\n"
    "SF:src/lib.rs\n"
    "DA:3,1\n"
    "DA:4,0\n"
    "BRDA:3,0,0,1\n"
    "BRDA:3,0,1,-\n"
    "BRF:2\n"
    "BRH:1\n"
    "LF:2\n"
    "LH:1\n"
    "end_of_record\n"
    "TN:\n"
    "SF:../vendor/dep/src/lib.rs\n"
    "DA:1,1\n"
    "LF:1\n"
    "LH:1\n"
    "end_of_record\n"
)


def _ok(log: str = "ok") -> ExecutionResult:
    return ExecutionResult(exit_code=0, full_log=log, log_excerpt=log)


def _fail(code: int = 101, log: str = "error") -> ExecutionResult:
    return ExecutionResult(exit_code=code, full_log=log, log_excerpt=log)


class FakeExecutor:
    """
    Records every call and answers from ``handlers``.

    Handler keys are the program name, or "cargo <subcommand>" for cargo.
    A handler is either an ExecutionResult or a callable
    ``(argv, cwd, environment, cancel_event) -> ExecutionResult``.
    Unknown commands succeed. By default ``grcov`` writes SAMPLE_LCOV to
    its ``-o`` path.
    """

    def __init__(self, lcov: str = SAMPLE_LCOV):
        self.calls = []
        self.lcov = lcov
        self.handlers = {"grcov": self._grcov}

    def _grcov(self, argv, cwd, environment, cancel_event):
        output = argv[argv.index("-o") + 1]
        with open(os.path.join(cwd, output), "w", encoding="utf-8") as f:
            f.write(self.lcov)
        return _ok("grcov done")

    @staticmethod
    def key(argv) -> str:
        if argv[0] == "cargo" and len(argv) > 1:
            return f"cargo {argv[1]}"
        return argv[0]

    def commands(self):
        return [self.key(c.argv) for c in self.calls]

    def run(self, argv, cwd, environment=None, timeout_seconds=0, cancel_event=None):
        argv = tuple(argv)
        self.calls.append(SimpleNamespace(argv=argv, cwd=cwd, environment=environment))
        handler = self.handlers.get(self.key(argv))
        if handler is None:
            return _ok()
        if isinstance(handler, ExecutionResult):
            return handler
        return handler(argv, cwd, environment, cancel_event)


def build_archive(files: dict, archive_format: str = "tar.bz2") -> bytes:
    buffer = io.BytesIO()
    if archive_format == "zip":
        with zipfile.ZipFile(buffer, "w") as archive:
            for name, content in files.items():
                archive.writestr(name, content)
        return buffer.getvalue()

    mode = {"tar.bz2": "w:bz2", "tar.gz": "w:gz", "tar.xz": "w:xz"}[archive_format]
    with tarfile.open(fileobj=buffer, mode=mode) as archive:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def ok_result():
    return _ok


@pytest.fixture
def fail_result():
    return _fail


@pytest.fixture
def sample_lcov():
    return SAMPLE_LCOV


@pytest.fixture
def make_archive():
    return build_archive


@pytest.fixture
def grcov_archive():
    return build_archive({"grcov": b"#!/bin/sh\necho grcov\n"})


@pytest.fixture
def serve_archive():
    """
    Factory: httpx.Client whose transport answers ``archive`` for every
    URL containing ``path_fragment`` and 404 otherwise. Requests are
    appended to the returned list.
    """
    def _make(archive: bytes, path_fragment: str = "/releases/download/"):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if path_fragment in request.url.path:
                return httpx.Response(200, content=archive)
            return httpx.Response(404, text="Not Found")

        return httpx.Client(transport=httpx.MockTransport(handler)), requests

    return _make


@pytest.fixture
def pipeline_config():
    """Factory: PipelineConfig pointing at a test repo with a fixed tool target."""
    def _make(**overrides):
        fields = {"repo_url": TEST_REPO, "tool": ExternalTool(target="x86_64-unknown-linux-gnu")}
        fields.update(overrides)
        return PipelineConfig(**fields)
    return _make


@pytest.fixture
def make_orchestrator(tmp_path, fake_executor, grcov_archive, serve_archive, pipeline_config):
    """Factory: Orchestrator wired to the fake executor and the mocked tool download."""
    def _make(config=None, trigger=None, publisher=None, executor=None):
        executor = executor or fake_executor
        client, _ = serve_archive(grcov_archive)
        workspace = str(tmp_path / "runs")
        return Orchestrator(
            config or pipeline_config(),
            trigger or TriggerEvent(event_type=EventType.PUSH, commit_sha="abc123", branch="main"),
            executor=executor,
            provisioner=EnvironmentProvisioner(executor, host_executor=executor, workspace_root=workspace),
            fetcher=ToolFetcher(client=client),
            publisher=publisher,
            workspace_root=workspace,
        )
    return _make
