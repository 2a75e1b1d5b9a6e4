"""
Build Executor
==============
Runs a single pipeline command to completion and returns a structured
execution result (logs, exit code, timing).

BOUNDARY RULES:
    - Executor ONLY observes execution.
    - Executor NEVER decides whether a step failed; the Orchestrator does.
    - Executor NEVER raises for a failing command; infrastructure errors are
      reported through ExecutionResult.error with exit_code -1.

BACKENDS:
    - LocalExecutor: subprocess on the host. Used for checkout and, by
      default, for every other step.
    - DockerExecutor: one ephemeral container per command with the run's
      workspace mounted at /workspace. Container destroyed after execution.

CANCELLATION / TIMEOUT:
    Both backends poll a threading.Event while the command runs. When it is
    set (or the step timeout elapses) the process / container is killed and
    the result is flagged ``cancelled`` / ``timed_out``.
"""
import os
import shlex
import signal
import subprocess
import threading
import time
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol, Sequence

import docker
from docker.errors import ImageNotFound, APIError

from covpipe.core.config import DOCKER_IMAGE, STEP_TIMEOUT

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2
# Time left for the pipe to drain once the process group is killed
_KILL_GRACE_SECONDS = 5


# ---------------------------------------------------------------------------
# Execution Environment (variables + execution path for a run)
# ---------------------------------------------------------------------------
@dataclass
class ExecutionEnvironment:
    """
    Environment overlay shared by all steps of one run.

    Fields
    ------
    variables : dict
        Extra variables layered on top of the executor's base environment.
    path_entries : list[str]
        Directories prepended to PATH, highest priority first.
    """
    variables: dict[str, str] = field(default_factory=dict)
    path_entries: list[str] = field(default_factory=list)

    def prepend_path(self, directory: str) -> None:
        if directory in self.path_entries:
            self.path_entries.remove(directory)
        self.path_entries.insert(0, directory)

    def with_variables(self, extra: Mapping[str, str]) -> "ExecutionEnvironment":
        merged = dict(self.variables)
        merged.update(extra)
        return ExecutionEnvironment(variables=merged, path_entries=list(self.path_entries))

    def to_process_env(self, base: Mapping[str, str]) -> dict[str, str]:
        env = dict(base)
        env.update(self.variables)
        path = [p for p in self.path_entries]
        if env.get("PATH"):
            path.append(env["PATH"])
        if path:
            env["PATH"] = os.pathsep.join(path)
        return env


# ---------------------------------------------------------------------------
# Execution Result (returned to Orchestrator)
# ---------------------------------------------------------------------------
@dataclass
class ExecutionResult:
    """
    Structured output from a single command execution.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success, non-zero = failure, -1 = not run / killed).
    full_log : str
        Full combined stdout + stderr.
    log_excerpt : str
        Abbreviated log (first + last N lines) for step results.
    execution_time_seconds : float
        Wall clock duration of the execution.
    command : str
        Shell-quoted command line that was executed.
    environment_metadata : dict
        Runtime info: backend, image, container ID, timeout applied.
    error : str | None
        Infrastructure error (command not found, docker failure, timeout).
    cancelled : bool
        True if the cancel event stopped the command.
    timed_out : bool
        True if the step timeout stopped the command.
    """
    exit_code: int = -1
    full_log: str = ""
    log_excerpt: str = ""
    execution_time_seconds: float = 0.0
    command: str = ""
    environment_metadata: dict = field(default_factory=dict)
    error: Optional[str] = None
    cancelled: bool = False
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.cancelled and not self.timed_out


class Executor(Protocol):
    def run(
        self,
        argv: Sequence[str],
        cwd: str,
        environment: Optional[ExecutionEnvironment] = None,
        timeout_seconds: int = STEP_TIMEOUT,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        ...


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.

    If the log is short enough, returns it as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    head_lines = lines[:head]
    tail_lines = lines[-tail:]
    omitted = total - head - tail

    return "\n".join(
        head_lines
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + tail_lines
    )


def _finalize(result: ExecutionResult, start_time: float) -> ExecutionResult:
    result.execution_time_seconds = round(time.monotonic() - start_time, 3)
    result.log_excerpt = create_log_excerpt(result.full_log)
    logger.info(
        "Execution complete | exit=%d | time=%.2fs | cmd=%s",
        result.exit_code, result.execution_time_seconds, result.command,
    )
    return result


# ---------------------------------------------------------------------------
# Local (host subprocess) Execution
# ---------------------------------------------------------------------------
def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill ``proc`` and every descendant still in its process group."""
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(proc.pid)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    proc.kill()


class LocalExecutor:
    """
    Run commands as host subprocesses.

    Each command leads its own process group (a new session on POSIX), so
    cancel and timeout also stop the children it spawned, e.g. the test
    binaries started by ``cargo test``.
    """

    backend = "local"

    def run(
        self,
        argv: Sequence[str],
        cwd: str,
        environment: Optional[ExecutionEnvironment] = None,
        timeout_seconds: int = STEP_TIMEOUT,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        environment = environment or ExecutionEnvironment()
        result = ExecutionResult(command=shlex.join(argv))
        result.environment_metadata = {"backend": self.backend, "timeout_applied": timeout_seconds}
        start_time = time.monotonic()

        logger.info("Starting process | cwd=%s | timeout=%ds | cmd=%s", cwd, timeout_seconds, result.command)

        if os.name == "posix":
            group_kwargs = {"start_new_session": True}
        else:
            group_kwargs = {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}

        try:
            proc = subprocess.Popen(
                list(argv),
                cwd=cwd,
                env=environment.to_process_env(os.environ),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                **group_kwargs,
            )
        except OSError as e:
            result.error = f"Could not start {argv[0]!r}: {e}"
            logger.error(result.error)
            return _finalize(result, start_time)

        output = ""
        while True:
            try:
                output, _ = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                elif time.monotonic() - start_time > timeout_seconds:
                    result.timed_out = True
                else:
                    continue
                _kill_process_tree(proc)
                try:
                    output, _ = proc.communicate(timeout=_KILL_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    # a descendant that left the group still holds the pipe
                    logger.warning("Output pipe still open after kill | cmd=%s", result.command)
                    proc.stdout.close()
                    proc.wait()
                    output = ""
                break

        result.full_log = output or ""
        result.exit_code = proc.returncode if proc.returncode is not None else -1
        if result.cancelled:
            result.error = "Command cancelled"
        elif result.timed_out:
            result.error = f"Command timed out after {timeout_seconds}s"

        return _finalize(result, start_time)


# ---------------------------------------------------------------------------
# Container Execution
# ---------------------------------------------------------------------------
# Docker resource limits
_MEMORY_LIMIT = "4g"
_CPU_COUNT = 2
_NETWORK_MODE = None  # None = default bridge; toolchain + crates need network

_CONTAINER_ROOT = "/workspace"
_CONTAINER_BASE_PATH = "/usr/local/cargo/bin:/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


class DockerExecutor:
    """
    Run each command in an ephemeral container.

    ``mount_root`` (the run's workspace directory on the host) is bound at
    /workspace; host paths under it found in the command, working directory,
    variables and execution path are rewritten to their container paths.
    """

    backend = "docker"

    def __init__(self, mount_root: str, docker_image: str = DOCKER_IMAGE) -> None:
        self.mount_root = os.path.abspath(mount_root)
        self.docker_image = docker_image

    def to_container_path(self, value: str) -> str:
        if value == self.mount_root:
            return _CONTAINER_ROOT
        prefix = self.mount_root + os.sep
        if value.startswith(prefix):
            return _CONTAINER_ROOT + "/" + value[len(prefix):].replace(os.sep, "/")
        return value

    def _wait(self, container, timeout_seconds: int, cancel_event: Optional[threading.Event],
              result: ExecutionResult, start_time: float) -> None:
        while True:
            container.reload()
            if container.status in ("exited", "dead"):
                return
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
            elif time.monotonic() - start_time > timeout_seconds:
                result.timed_out = True
            else:
                time.sleep(_POLL_INTERVAL)
                continue
            container.kill()
            return

    def run(
        self,
        argv: Sequence[str],
        cwd: str,
        environment: Optional[ExecutionEnvironment] = None,
        timeout_seconds: int = STEP_TIMEOUT,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        environment = environment or ExecutionEnvironment()
        command = [self.to_container_path(a) for a in argv]
        result = ExecutionResult(command=shlex.join(command))
        start_time = time.monotonic()

        variables = {k: self.to_container_path(v) for k, v in environment.variables.items()}
        path = [self.to_container_path(p) for p in environment.path_entries]
        variables["PATH"] = ":".join(path + [_CONTAINER_BASE_PATH])
        variables["CI"] = "true"
        workdir = self.to_container_path(os.path.abspath(cwd))

        container = None
        try:
            client = docker.from_env()

            logger.info(
                "Starting container | image=%s | timeout=%ds | workdir=%s | cmd=%s",
                self.docker_image, timeout_seconds, workdir, result.command,
            )

            container = client.containers.run(
                image=self.docker_image,
                command=command,
                volumes={
                    self.mount_root: {"bind": _CONTAINER_ROOT, "mode": "rw"},
                },
                environment=variables,
                working_dir=workdir,
                mem_limit=_MEMORY_LIMIT,
                nano_cpus=_CPU_COUNT * 1_000_000_000,
                network_mode=_NETWORK_MODE,
                labels={"project": "covpipe", "role": "step"},
                detach=True,
            )

            self._wait(container, timeout_seconds, cancel_event, result, start_time)

            wait_result = container.wait()
            result.exit_code = wait_result.get("StatusCode", -1)

            log_bytes = container.logs(stdout=True, stderr=True)
            result.full_log = log_bytes.decode("utf-8", errors="replace")

            result.environment_metadata = {
                "backend": self.backend,
                "image": self.docker_image,
                "container_id": container.short_id,
                "timeout_applied": timeout_seconds,
                "memory_limit": _MEMORY_LIMIT,
                "cpu_count": _CPU_COUNT,
            }
            if result.cancelled:
                result.error = "Command cancelled"
            elif result.timed_out:
                result.error = f"Command timed out after {timeout_seconds}s"

        except ImageNotFound:
            result.error = f"Docker image '{self.docker_image}' not found."
            result.exit_code = -1
            logger.error(result.error)

        except APIError as e:
            result.error = f"Docker API error: {e}"
            result.exit_code = -1
            logger.error(result.error)

        except Exception as e:
            # Orchestrator must always receive a result
            result.error = f"Unexpected executor error: {type(e).__name__}: {e}"
            result.exit_code = -1
            logger.exception(result.error)

        finally:
            if container is not None:
                try:
                    container.remove(force=True)
                    logger.info("Container %s destroyed", container.short_id)
                except Exception:
                    logger.warning("Failed to remove container", exc_info=True)

        return _finalize(result, start_time)


def get_executor(backend: str, mount_root: str, docker_image: str = DOCKER_IMAGE) -> Executor:
    """Build the executor for a run; ``mount_root`` is the run's workspace."""
    if backend == "docker":
        return DockerExecutor(mount_root, docker_image=docker_image)
    if backend != "local":
        logger.warning("Unknown executor backend '%s', falling back to local", backend)
    return LocalExecutor()
