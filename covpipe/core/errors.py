"""
Pipeline Errors
===============
Every failure is fatal to the run. Each exception names the stage it
belongs to and the process exit code the CLI reports for it, so the
terminal status of a run always says which stage broke.

A skipped trigger is NOT an error; see covpipe.trigger.policy.TriggerDecision.
"""
from typing import Optional

from covpipe.core.constants import (
    STAGE_PROVISION,
    STAGE_FETCH_TOOL,
    STAGE_BUILD,
    STAGE_TEST,
    STAGE_EXTRACT,
    STAGE_PUBLISH,
    EXIT_CONFIG_ERROR,
    EXIT_PROVISIONING_FAILED,
    EXIT_TOOL_FETCH_FAILED,
    EXIT_BUILD_FAILED,
    EXIT_TEST_FAILED,
    EXIT_EXTRACTION_FAILED,
    EXIT_PUBLISH_FAILED,
    EXIT_CANCELLED,
)


class PipelineError(Exception):
    """Base class for stage failures."""

    stage = "pipeline"
    exit_code = 1

    def __init__(self, message: str, log_excerpt: str = "",
                 returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.log_excerpt = log_excerpt
        # exit status of the failing command, when there was one
        self.returncode = returncode

    @property
    def kind(self) -> str:
        return type(self).__name__


class ProvisioningFailed(PipelineError):
    """Checkout or toolchain installation failed."""
    stage = STAGE_PROVISION
    exit_code = EXIT_PROVISIONING_FAILED


class ToolFetchFailed(PipelineError):
    """Coverage tool download, verification or extraction failed."""
    stage = STAGE_FETCH_TOOL
    exit_code = EXIT_TOOL_FETCH_FAILED


class BuildFailed(PipelineError):
    """Instrumented build failed."""
    stage = STAGE_BUILD
    exit_code = EXIT_BUILD_FAILED


class TestFailed(PipelineError):
    """Test suite failed under instrumentation."""
    __test__ = False  # keep pytest from collecting this class

    stage = STAGE_TEST
    exit_code = EXIT_TEST_FAILED


class CoverageExtractionFailed(PipelineError):
    """grcov failed or produced no usable report."""
    stage = STAGE_EXTRACT
    exit_code = EXIT_EXTRACTION_FAILED


class RunCancelled(PipelineError):
    """The run was cancelled while a step was active."""
    exit_code = EXIT_CANCELLED

    def __init__(self, stage: str, message: str = "run cancelled") -> None:
        super().__init__(message)
        self.stage = stage


class PublishFailed(PipelineError):
    """Report upload failed. Never changes the terminal state of a run."""
    stage = STAGE_PUBLISH
    exit_code = EXIT_PUBLISH_FAILED


class InvalidTransition(ValueError):
    """A PipelineRun was asked to move to a state it cannot reach."""


class ConfigError(ValueError):
    """The pipeline definition is invalid."""
    exit_code = EXIT_CONFIG_ERROR
