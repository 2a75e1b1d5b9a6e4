"""
Environment Provisioner
=======================
Materialises a clean, isolated environment for one run.

Layout (one directory per run, never shared):
    <workspace_root>/<run_id>/
        src/                 checkout of the commit under test
        tooling/bin/         fetched tools (prepended to the execution path)
        tooling/rustup/      RUSTUP_HOME  (only when toolchain homes are isolated)
        tooling/cargo/       CARGO_HOME   (only when toolchain homes are isolated)

Steps:
    1. Fresh run directory (an existing one for the same run id is wiped)
    2. Checkout: git init → fetch --depth 1 <ref> → checkout --detach FETCH_HEAD
    3. Toolchain: validate components, then rustup toolchain install

Any failure raises ProvisioningFailed; nothing after it runs.
"""
import base64
import os
import shutil
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from covpipe.core.config import GITHUB_TOKEN, STEP_TIMEOUT, WORKSPACE_ROOT
from covpipe.core.constants import (
    BIN_DIR,
    CHECKOUT_DIR,
    KNOWN_COMPONENTS,
    STAGE_PROVISION,
    TOOLING_DIR,
)
from covpipe.core.errors import ProvisioningFailed, RunCancelled
from covpipe.executor.build_executor import (
    ExecutionEnvironment,
    ExecutionResult,
    Executor,
    LocalExecutor,
)
from covpipe.models.toolchain import ToolchainSpec
from covpipe.models.trigger_event import TriggerEvent

logger = logging.getLogger(__name__)


@dataclass
class ProvisionedEnvironment:
    """Paths and environment handed to the remaining steps."""
    run_dir: str
    checkout_dir: str
    bin_dir: str
    environment: ExecutionEnvironment


def git_auth_environment(repo_url: str, github_token: str = "") -> ExecutionEnvironment:
    """
    Basic-auth header for https GitHub URLs, passed through GIT_CONFIG_*
    variables so the token never appears on a command line.
    """
    environment = ExecutionEnvironment()
    if github_token and repo_url.startswith("https://github.com/"):
        credentials = base64.b64encode(f"x-access-token:{github_token}".encode()).decode()
        environment.variables.update({
            "GIT_CONFIG_COUNT": "1",
            "GIT_CONFIG_KEY_0": "http.https://github.com/.extraheader",
            "GIT_CONFIG_VALUE_0": f"AUTHORIZATION: basic {credentials}",
        })
    return environment


def _redact(text: str, github_token: str) -> str:
    return text.replace(github_token, "***") if github_token else text


def validate_components(toolchain: ToolchainSpec) -> None:
    unknown = sorted(c for c in toolchain.components if c not in KNOWN_COMPONENTS)
    if unknown:
        raise ProvisioningFailed(
            f"Unrecognized toolchain component(s): {', '.join(unknown)}"
        )


class EnvironmentProvisioner:
    """
    Parameters
    ----------
    executor : Executor
        Runs the toolchain installation (host or container).
    host_executor : Executor | None
        Runs git on the host. Defaults to a LocalExecutor.
    workspace_root : str
        Parent of all run directories.
    isolate_toolchain : bool
        Keep RUSTUP_HOME / CARGO_HOME inside the run directory. Required for
        the docker backend, where each command gets a fresh container.
    github_token : str
        Token for private https GitHub repositories.
    """

    def __init__(
        self,
        executor: Executor,
        host_executor: Optional[Executor] = None,
        workspace_root: str = WORKSPACE_ROOT,
        isolate_toolchain: bool = False,
        github_token: str = GITHUB_TOKEN,
        timeout_seconds: int = STEP_TIMEOUT,
    ) -> None:
        self.executor = executor
        self.host_executor = host_executor or LocalExecutor()
        self.workspace_root = workspace_root
        self.isolate_toolchain = isolate_toolchain
        self.github_token = github_token
        self.timeout_seconds = timeout_seconds

    def run_dir_for(self, run_id: str) -> str:
        return os.path.abspath(os.path.join(self.workspace_root, run_id))

    # ------------------------------------------------------------------
    # 1. Workspace
    # ------------------------------------------------------------------
    def create_workspace(self, run_id: str) -> ProvisionedEnvironment:
        run_dir = self.run_dir_for(run_id)
        if os.path.exists(run_dir):
            logger.info("[PROVISION] Removing stale run directory %s", run_dir)
            shutil.rmtree(run_dir)

        checkout_dir = os.path.join(run_dir, CHECKOUT_DIR)
        tooling_dir = os.path.join(run_dir, TOOLING_DIR)
        bin_dir = os.path.join(tooling_dir, BIN_DIR)
        for d in (checkout_dir, bin_dir):
            os.makedirs(d, exist_ok=True)

        environment = ExecutionEnvironment()
        if self.isolate_toolchain:
            rustup_home = os.path.join(tooling_dir, "rustup")
            cargo_home = os.path.join(tooling_dir, "cargo")
            os.makedirs(rustup_home, exist_ok=True)
            os.makedirs(cargo_home, exist_ok=True)
            environment.variables["RUSTUP_HOME"] = rustup_home
            environment.variables["CARGO_HOME"] = cargo_home

        return ProvisionedEnvironment(
            run_dir=run_dir,
            checkout_dir=checkout_dir,
            bin_dir=bin_dir,
            environment=environment,
        )

    def _check(self, result: ExecutionResult, what: str) -> None:
        if result.cancelled:
            raise RunCancelled(STAGE_PROVISION)
        if not result.succeeded:
            detail = result.error or f"exit code {result.exit_code}"
            raise ProvisioningFailed(
                _redact(f"{what} failed: {detail}", self.github_token),
                log_excerpt=_redact(result.log_excerpt, self.github_token),
                returncode=result.exit_code,
            )

    # ------------------------------------------------------------------
    # 2. Checkout
    # ------------------------------------------------------------------
    def checkout(self, repo_url: str, ref: str, checkout_dir: str,
                 cancel_event: Optional[threading.Event] = None) -> None:
        if not repo_url:
            raise ProvisioningFailed("No repository URL configured for this run")

        logger.info("[PROVISION] Checking out %s@%s into %s", repo_url, ref, checkout_dir)
        commands = [
            (["git", "init", "--quiet"], "git init"),
            (["git", "remote", "add", "origin", repo_url], "git remote add"),
            (["git", "fetch", "--depth", "1", "--no-tags", "origin", ref], f"git fetch {ref}"),
            (["git", "checkout", "--quiet", "--detach", "FETCH_HEAD"], "git checkout"),
        ]
        environment = git_auth_environment(repo_url, self.github_token)
        for argv, what in commands:
            result = self.host_executor.run(
                argv, cwd=checkout_dir,
                environment=environment,
                timeout_seconds=self.timeout_seconds,
                cancel_event=cancel_event,
            )
            self._check(result, what)

    # ------------------------------------------------------------------
    # 3. Toolchain
    # ------------------------------------------------------------------
    def install_toolchain(self, toolchain: ToolchainSpec, provisioned: ProvisionedEnvironment,
                          cancel_event: Optional[threading.Event] = None) -> None:
        validate_components(toolchain)

        argv = ["rustup", "toolchain", "install", toolchain.channel, "--profile", "minimal"]
        for component in sorted(toolchain.components):
            argv.extend(["--component", component])

        logger.info(
            "[PROVISION] Installing toolchain %s with components %s",
            toolchain.channel, sorted(toolchain.components),
        )
        result = self.executor.run(
            argv,
            cwd=provisioned.checkout_dir,
            environment=provisioned.environment,
            timeout_seconds=self.timeout_seconds,
            cancel_event=cancel_event,
        )
        self._check(result, f"toolchain install ({toolchain.channel})")
        provisioned.environment.variables["RUSTUP_TOOLCHAIN"] = toolchain.channel

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def provision(self, run_id: str, trigger: TriggerEvent, repo_url: str,
                  toolchain: ToolchainSpec,
                  cancel_event: Optional[threading.Event] = None) -> ProvisionedEnvironment:
        validate_components(toolchain)
        try:
            provisioned = self.create_workspace(run_id)
        except OSError as e:
            raise ProvisioningFailed(f"Could not create run workspace: {e}") from e

        self.checkout(repo_url, trigger.commit_sha, provisioned.checkout_dir, cancel_event)
        self.install_toolchain(toolchain, provisioned, cancel_event)
        return provisioned
