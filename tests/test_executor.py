"""
Unit Tests — Executors & Command Resolution
===========================================
Local executor runs real subprocesses (the current Python interpreter);
Docker is always mocked.
"""
import os
import sys
import threading
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, ImageNotFound

from covpipe.executor.build_executor import (
    DockerExecutor,
    ExecutionEnvironment,
    ExecutionResult,
    LocalExecutor,
    create_log_excerpt,
    get_executor,
)
from covpipe.executor.command_resolver import (
    InstrumentationFlags,
    grcov_command,
    resolve_commands,
)
from covpipe.parser.pipeline_config import BuildSettings, CoverageSettings


# ---------------------------------------------------------------------------
# 1. Command resolution
# ---------------------------------------------------------------------------
class TestCommandResolver:

    def test_instrumentation_environment(self):
        commands = resolve_commands(BuildSettings(), CoverageSettings(), "coverage.lcov.partial")
        assert commands.environment == {
            "CARGO_INCREMENTAL": "0",
            "RUSTFLAGS": (
                "-Zprofile -Ccodegen-units=1 -Copt-level=0 -Clink-dead-code "
                "-Coverflow-checks=off -Zpanic_abort_tests -Cpanic=abort"
            ),
            "RUSTDOCFLAGS": "-C instrument-coverage",
        }

    def test_build_and_test_commands_share_options(self):
        build = BuildSettings(cargo_options="--all-features --features 'a b'")
        commands = resolve_commands(build, CoverageSettings(), "out.partial")
        assert commands.build_command == ("cargo", "build", "--all-features", "--features", "a b")
        assert commands.test_command == ("cargo", "test", "--all-features", "--features", "a b")

    def test_grcov_command_matches_workflow(self):
        argv = grcov_command(CoverageSettings(), "coverage.lcov.partial")
        assert argv == (
            "grcov", ".",
            "--binary-path", "target/debug/deps/",
            "-s", ".",
            "-t", "lcov",
            "--branch",
            "--ignore-not-existing",
            "--ignore", "../**",
            "--ignore", "/*",
            "-o", "coverage.lcov.partial",
        )

    def test_grcov_optional_flags(self):
        coverage = CoverageSettings(branch=False, ignore_not_existing=False, ignore=())
        argv = grcov_command(coverage, "x")
        assert "--branch" not in argv
        assert "--ignore-not-existing" not in argv
        assert "--ignore" not in argv

    def test_build_env_overrides_flags(self):
        build = BuildSettings(env={"RUSTFLAGS": "-Cinstrument-coverage", "RUST_BACKTRACE": "1"})
        commands = resolve_commands(build, CoverageSettings(), "x")
        assert commands.environment["RUSTFLAGS"] == "-Cinstrument-coverage"
        assert commands.environment["RUST_BACKTRACE"] == "1"
        assert commands.environment["CARGO_INCREMENTAL"] == "0"

    def test_custom_flags(self):
        flags = InstrumentationFlags(panic_abort_tests=False, rustdoc_instrument=False)
        env = flags.environment()
        assert "-Cpanic=abort" not in env["RUSTFLAGS"]
        assert "RUSTDOCFLAGS" not in env

    def test_deterministic(self):
        a = resolve_commands(BuildSettings(), CoverageSettings(), "x")
        b = resolve_commands(BuildSettings(), CoverageSettings(), "x")
        assert a == b


# ---------------------------------------------------------------------------
# 2. Environment overlay
# ---------------------------------------------------------------------------
class TestExecutionEnvironment:

    def test_prepend_path_orders_and_dedupes(self):
        env = ExecutionEnvironment()
        env.prepend_path("/a")
        env.prepend_path("/b")
        env.prepend_path("/a")
        assert env.path_entries == ["/a", "/b"]

    def test_to_process_env(self):
        env = ExecutionEnvironment(variables={"X": "1"}, path_entries=["/tools"])
        result = env.to_process_env({"PATH": "/usr/bin", "HOME": "/root"})
        assert result["X"] == "1"
        assert result["HOME"] == "/root"
        assert result["PATH"] == os.pathsep.join(["/tools", "/usr/bin"])

    def test_with_variables_does_not_mutate(self):
        env = ExecutionEnvironment(variables={"A": "1"})
        merged = env.with_variables({"B": "2"})
        assert merged.variables == {"A": "1", "B": "2"}
        assert env.variables == {"A": "1"}


# ---------------------------------------------------------------------------
# 3. Log excerpt
# ---------------------------------------------------------------------------
class TestLogExcerpt:

    def test_short_log_unchanged(self):
        assert create_log_excerpt("a\nb\nc") == "a\nb\nc"

    def test_long_log_truncated(self):
        log = "\n".join(f"line {i}" for i in range(200))
        excerpt = create_log_excerpt(log, head=5, tail=5)
        assert "line 0" in excerpt
        assert "line 199" in excerpt
        assert "line 100" not in excerpt
        assert "190 lines omitted" in excerpt


# ---------------------------------------------------------------------------
# 4. Local executor
# ---------------------------------------------------------------------------
class TestLocalExecutor:

    def test_success(self, tmp_path):
        result = LocalExecutor().run([sys.executable, "-c", "print('hello')"], cwd=str(tmp_path))
        assert result.succeeded
        assert "hello" in result.full_log
        assert result.environment_metadata["backend"] == "local"

    def test_non_zero_exit(self, tmp_path):
        result = LocalExecutor().run([sys.executable, "-c", "import sys; sys.exit(3)"], cwd=str(tmp_path))
        assert result.exit_code == 3
        assert not result.succeeded
        assert result.error is None

    def test_environment_applied(self, tmp_path):
        env = ExecutionEnvironment(variables={"COVPIPE_MARKER": "42"})
        result = LocalExecutor().run(
            [sys.executable, "-c", "import os; print(os.environ['COVPIPE_MARKER'])"],
            cwd=str(tmp_path), environment=env,
        )
        assert result.full_log.strip() == "42"

    def test_missing_program(self, tmp_path):
        result = LocalExecutor().run(["definitely-not-a-real-binary-xyz"], cwd=str(tmp_path))
        assert result.exit_code == -1
        assert "Could not start" in result.error

    def test_timeout_kills_process(self, tmp_path):
        result = LocalExecutor().run(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            cwd=str(tmp_path), timeout_seconds=1,
        )
        assert result.timed_out
        assert not result.succeeded
        assert "timed out" in result.error

    def test_cancel_kills_process(self, tmp_path):
        cancel = threading.Event()
        timer = threading.Timer(0.5, cancel.set)
        timer.start()
        try:
            result = LocalExecutor().run(
                [sys.executable, "-c", "import time; time.sleep(30)"],
                cwd=str(tmp_path), cancel_event=cancel,
            )
        finally:
            timer.cancel()
        assert result.cancelled
        assert result.execution_time_seconds < 30

    # Parent starts a long-sleeping child sharing its stdout, the way
    # `cargo test` starts test binaries, then sleeps itself.
    _SPAWNS_CHILD = (
        "import subprocess, sys, time\n"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
        "print('spawned', flush=True)\n"
        "time.sleep(30)\n"
    )

    def test_timeout_kills_child_processes(self, tmp_path):
        result = LocalExecutor().run(
            [sys.executable, "-c", self._SPAWNS_CHILD],
            cwd=str(tmp_path), timeout_seconds=1,
        )
        assert result.timed_out
        assert result.execution_time_seconds < 5

    def test_cancel_kills_child_processes(self, tmp_path):
        cancel = threading.Event()
        timer = threading.Timer(0.5, cancel.set)
        timer.start()
        try:
            result = LocalExecutor().run(
                [sys.executable, "-c", self._SPAWNS_CHILD],
                cwd=str(tmp_path), cancel_event=cancel,
            )
        finally:
            timer.cancel()
        assert result.cancelled
        assert result.execution_time_seconds < 5


# ---------------------------------------------------------------------------
# 5. Docker executor (mocked)
# ---------------------------------------------------------------------------
def _mock_container(exit_code=0, logs=b"build ok\n"):
    container = MagicMock()
    container.status = "exited"
    container.short_id = "abc123"
    container.wait.return_value = {"StatusCode": exit_code}
    container.logs.return_value = logs
    return container


class TestDockerExecutor:

    def test_paths_translated_and_container_removed(self, tmp_path):
        run_dir = str(tmp_path / "run1")
        container = _mock_container()
        env = ExecutionEnvironment(
            variables={"CARGO_HOME": os.path.join(run_dir, "tooling", "cargo")},
            path_entries=[os.path.join(run_dir, "tooling", "bin")],
        )
        with patch("covpipe.executor.build_executor.docker") as mock_docker:
            mock_docker.from_env.return_value.containers.run.return_value = container
            result = DockerExecutor(run_dir, docker_image="rust:test").run(
                ["cargo", "build"], cwd=os.path.join(run_dir, "src"), environment=env,
            )

        assert result.succeeded
        assert result.full_log == "build ok\n"
        kwargs = mock_docker.from_env.return_value.containers.run.call_args.kwargs
        assert kwargs["image"] == "rust:test"
        assert kwargs["working_dir"] == "/workspace/src"
        assert kwargs["volumes"] == {os.path.abspath(run_dir): {"bind": "/workspace", "mode": "rw"}}
        assert kwargs["environment"]["CARGO_HOME"] == "/workspace/tooling/cargo"
        assert kwargs["environment"]["PATH"].startswith("/workspace/tooling/bin:")
        container.remove.assert_called_once_with(force=True)

    def test_non_zero_exit(self, tmp_path):
        with patch("covpipe.executor.build_executor.docker") as mock_docker:
            mock_docker.from_env.return_value.containers.run.return_value = _mock_container(exit_code=101)
            result = DockerExecutor(str(tmp_path)).run(["cargo", "test"], cwd=str(tmp_path))
        assert result.exit_code == 101
        assert not result.succeeded

    def test_image_not_found(self, tmp_path):
        with patch("covpipe.executor.build_executor.docker") as mock_docker:
            mock_docker.from_env.return_value.containers.run.side_effect = ImageNotFound("nope")
            result = DockerExecutor(str(tmp_path), docker_image="missing:1").run(["cargo"], cwd=str(tmp_path))
        assert result.exit_code == -1
        assert "missing:1" in result.error

    def test_api_error(self, tmp_path):
        with patch("covpipe.executor.build_executor.docker") as mock_docker:
            mock_docker.from_env.return_value.containers.run.side_effect = APIError("boom")
            result = DockerExecutor(str(tmp_path)).run(["cargo"], cwd=str(tmp_path))
        assert result.exit_code == -1
        assert "Docker API error" in result.error

    def test_cancel_kills_container(self, tmp_path):
        container = _mock_container(exit_code=137)
        container.status = "running"
        cancel = threading.Event()
        cancel.set()
        with patch("covpipe.executor.build_executor.docker") as mock_docker:
            mock_docker.from_env.return_value.containers.run.return_value = container
            result = DockerExecutor(str(tmp_path)).run(["cargo", "test"], cwd=str(tmp_path), cancel_event=cancel)
        assert result.cancelled
        container.kill.assert_called_once()
        container.remove.assert_called_once_with(force=True)

    def test_get_executor(self, tmp_path):
        assert isinstance(get_executor("docker", str(tmp_path)), DockerExecutor)
        assert isinstance(get_executor("local", str(tmp_path)), LocalExecutor)
        assert isinstance(get_executor("bogus", str(tmp_path)), LocalExecutor)


def test_execution_result_flags():
    assert ExecutionResult(exit_code=0).succeeded
    assert not ExecutionResult(exit_code=0, cancelled=True).succeeded
    assert not ExecutionResult().succeeded
