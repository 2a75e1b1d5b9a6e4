"""
Unit Tests — Models
===================
Version pinning, toolchain spec, and the PipelineRun state machine.
"""
import pytest
from pydantic import ValidationError

from covpipe.core.errors import (
    BuildFailed,
    InvalidTransition,
    TestFailed,
    ToolFetchFailed,
)
from covpipe.models.coverage_report import CoverageReport
from covpipe.models.external_tool import ExternalTool
from covpipe.models.pipeline_run import PipelineRun, RunStatus, StepResult
from covpipe.models.toolchain import ToolchainSpec
from covpipe.models.trigger_event import EventType, TriggerEvent

_HAPPY_PATH = [
    RunStatus.PROVISIONING,
    RunStatus.FETCHING_TOOL,
    RunStatus.BUILDING,
    RunStatus.TESTING,
    RunStatus.EXTRACTING,
]


def _run():
    return PipelineRun(trigger=TriggerEvent(event_type=EventType.MANUAL, commit_sha="abc123"))


def _report():
    return CoverageReport(path="/tmp/coverage.lcov", lines_found=10, lines_hit=7)


# ---------------------------------------------------------------------------
# 1. ExternalTool
# ---------------------------------------------------------------------------
class TestExternalTool:

    def test_default_download_url(self):
        tool = ExternalTool(target="x86_64-unknown-linux-gnu")
        assert tool.download_url == (
            "https://github.com/mozilla/grcov/releases/download/"
            "v0.8.10/grcov-x86_64-unknown-linux-gnu.tar.bz2"
        )

    @pytest.mark.parametrize("version", [
        "", "latest", "LATEST", "stable", "*", "^0.8", "~0.8.1", ">=0.8", "0.8.x", "v0.x",
    ])
    def test_floating_versions_rejected(self, version):
        with pytest.raises(ValidationError):
            ExternalTool(version=version)

    @pytest.mark.parametrize("version", ["v0.8.10", "0.8.10", "1.2.3-rc.1"])
    def test_exact_versions_accepted(self, version):
        assert ExternalTool(version=version).version == version

    def test_sha256_normalised_and_validated(self):
        assert ExternalTool(sha256="AB" * 32).sha256 == "ab" * 32
        with pytest.raises(ValidationError):
            ExternalTool(sha256="not-a-digest")

    def test_frozen(self):
        tool = ExternalTool()
        with pytest.raises(ValidationError):
            tool.version = "v0.9.0"


# ---------------------------------------------------------------------------
# 2. ToolchainSpec / TriggerEvent
# ---------------------------------------------------------------------------
class TestToolchainAndTrigger:

    def test_toolchain_defaults(self):
        spec = ToolchainSpec()
        assert spec.channel == "nightly"
        assert spec.components == frozenset({"llvm-tools-preview"})

    def test_toolchain_frozen(self):
        with pytest.raises(ValidationError):
            ToolchainSpec().channel = "stable"

    def test_trigger_requires_commit(self):
        with pytest.raises(ValidationError):
            TriggerEvent(event_type=EventType.PUSH, commit_sha="   ")

    def test_trigger_is_automatic(self):
        assert TriggerEvent(event_type=EventType.PUSH, commit_sha="a").is_automatic
        assert not TriggerEvent(event_type=EventType.MANUAL, commit_sha="a").is_automatic


# ---------------------------------------------------------------------------
# 3. PipelineRun state machine
# ---------------------------------------------------------------------------
class TestPipelineRun:

    def test_new_run_is_pending(self):
        run = _run()
        assert run.status == RunStatus.PENDING
        assert not run.is_terminal
        assert run.report is None
        assert len(run.run_id) == 12

    def test_happy_path(self):
        run = _run()
        for status in _HAPPY_PATH:
            run.advance(status)
        run.succeed(_report())
        assert run.status == RunStatus.SUCCEEDED
        assert run.describe() == "Succeeded"
        assert run.exit_code == 0
        assert run.report.line_rate == 0.7
        assert run.finished_at is not None

    def test_cannot_skip_states(self):
        run = _run()
        with pytest.raises(InvalidTransition):
            run.advance(RunStatus.BUILDING)

    def test_cannot_go_backwards(self):
        run = _run()
        run.advance(RunStatus.PROVISIONING)
        run.advance(RunStatus.FETCHING_TOOL)
        with pytest.raises(InvalidTransition):
            run.advance(RunStatus.PROVISIONING)

    def test_advance_refuses_succeeded(self):
        run = _run()
        for status in _HAPPY_PATH:
            run.advance(status)
        with pytest.raises(InvalidTransition):
            run.advance(RunStatus.SUCCEEDED)

    def test_succeed_requires_extraction(self):
        run = _run()
        run.advance(RunStatus.PROVISIONING)
        with pytest.raises(InvalidTransition):
            run.succeed(_report())

    def test_fail_names_stage_and_kind(self):
        run = _run()
        for status in _HAPPY_PATH[:4]:
            run.advance(status)
        run.fail(TestFailed("cargo test failed"))
        assert run.status == RunStatus.FAILED
        assert run.describe() == "Failed(TestFailed)"
        assert run.failure.stage == "test"
        assert run.exit_code == 13
        assert run.report is None

    @pytest.mark.parametrize("error,code", [
        (ToolFetchFailed("x"), 11),
        (BuildFailed("x"), 12),
    ])
    def test_fail_exit_codes(self, error, code):
        run = _run()
        run.fail(error)
        assert run.exit_code == code

    def test_cancel_from_any_active_state(self):
        for steps in range(len(_HAPPY_PATH) + 1):
            run = _run()
            for status in _HAPPY_PATH[:steps]:
                run.advance(status)
            run.cancel()
            assert run.status == RunStatus.CANCELLED
            assert run.exit_code == 130
            assert run.describe() == "Cancelled"

    def test_terminal_states_are_final(self):
        run = _run()
        run.cancel(stage="provision")
        with pytest.raises(InvalidTransition):
            run.advance(RunStatus.PROVISIONING)
        with pytest.raises(InvalidTransition):
            run.fail(BuildFailed("late"))
        with pytest.raises(InvalidTransition):
            run.cancel()
        with pytest.raises(InvalidTransition):
            run.record_step(StepResult(name="late", status="succeeded"))

    def test_step_lookup(self):
        run = _run()
        run.record_step(StepResult(name="provision", status="succeeded"))
        assert run.step("provision").status == "succeeded"
        assert run.step("build") is None

    def test_describe_non_terminal(self):
        run = _run()
        run.advance(RunStatus.PROVISIONING)
        run.advance(RunStatus.FETCHING_TOOL)
        assert run.describe() == "FetchingTool"
        assert run.exit_code == -1
