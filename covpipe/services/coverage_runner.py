"""
Build-Test-Coverage Runner
==========================
The three gated sub-steps of a run: instrumented build, instrumented test,
coverage extraction.

    build()    cargo build  → BuildFailed on non-zero exit
    test()     cargo test   → TestFailed on non-zero exit
    extract()  grcov        → CoverageExtractionFailed on non-zero exit,
                              missing / malformed / empty output

Report validity:
    grcov writes <output>.partial. Only after it parses, has excluded paths
    removed and is sorted, the normalised text is written and atomically
    renamed onto <output>. A report file at the final path therefore always
    belongs to a completed extraction.
"""
import hashlib
import os
import logging
import threading
from typing import Optional, Type

from covpipe.core.config import STEP_TIMEOUT
from covpipe.core.constants import PARTIAL_SUFFIX, STAGE_BUILD, STAGE_TEST, STAGE_EXTRACT
from covpipe.core.errors import (
    BuildFailed,
    CoverageExtractionFailed,
    PipelineError,
    RunCancelled,
    TestFailed,
)
from covpipe.executor.build_executor import ExecutionEnvironment, ExecutionResult, Executor
from covpipe.executor.command_resolver import ResolvedCommands, resolve_commands
from covpipe.models.coverage_report import CoverageReport
from covpipe.parser.lcov import (
    LcovParseError,
    filter_excluded,
    normalize,
    parse_lcov,
    render_lcov,
    summarize,
)
from covpipe.parser.pipeline_config import BuildSettings, CoverageSettings

logger = logging.getLogger(__name__)


class CoverageRunner:
    """
    Parameters
    ----------
    executor : Executor
        Backend that runs cargo and grcov.
    checkout_dir : str
        Project root; every command runs here.
    build : BuildSettings
    coverage : CoverageSettings
    timeout_seconds : int
        Per-command timeout.
    """

    def __init__(
        self,
        executor: Executor,
        checkout_dir: str,
        build: BuildSettings,
        coverage: CoverageSettings,
        timeout_seconds: int = STEP_TIMEOUT,
    ) -> None:
        self.executor = executor
        self.checkout_dir = checkout_dir
        self.build_settings = build
        self.coverage = coverage
        self.timeout_seconds = timeout_seconds
        self.commands: ResolvedCommands = resolve_commands(
            build, coverage, partial_output=coverage.output + PARTIAL_SUFFIX,
        )

    @property
    def report_path(self) -> str:
        return os.path.join(self.checkout_dir, self.coverage.output)

    @property
    def partial_path(self) -> str:
        return self.report_path + PARTIAL_SUFFIX

    # ------------------------------------------------------------------
    # Shared execution
    # ------------------------------------------------------------------
    def _run(self, argv: tuple[str, ...], environment: ExecutionEnvironment,
             stage: str, error_cls: Type[PipelineError],
             cancel_event: Optional[threading.Event]) -> ExecutionResult:
        result = self.executor.run(
            argv,
            cwd=self.checkout_dir,
            environment=environment.with_variables(self.commands.environment),
            timeout_seconds=self.timeout_seconds,
            cancel_event=cancel_event,
        )
        if result.cancelled:
            raise RunCancelled(stage)
        if not result.succeeded:
            detail = result.error or f"exit code {result.exit_code}"
            raise error_cls(
                f"{' '.join(argv)} failed: {detail}",
                log_excerpt=result.log_excerpt,
                returncode=result.exit_code,
            )
        return result

    # ------------------------------------------------------------------
    # Sub-steps
    # ------------------------------------------------------------------
    def build(self, environment: ExecutionEnvironment,
              cancel_event: Optional[threading.Event] = None) -> ExecutionResult:
        logger.info("[BUILD] Instrumented build in %s", self.checkout_dir)
        return self._run(self.commands.build_command, environment, STAGE_BUILD, BuildFailed, cancel_event)

    def test(self, environment: ExecutionEnvironment,
             cancel_event: Optional[threading.Event] = None) -> ExecutionResult:
        logger.info("[TEST] Instrumented test run in %s", self.checkout_dir)
        return self._run(self.commands.test_command, environment, STAGE_TEST, TestFailed, cancel_event)

    def extract(self, environment: ExecutionEnvironment,
                cancel_event: Optional[threading.Event] = None) -> CoverageReport:
        logger.info("[EXTRACT] Running %s", self.commands.extract_command[0])
        self._run(
            self.commands.extract_command, environment,
            STAGE_EXTRACT, CoverageExtractionFailed, cancel_event,
        )
        return self.finalize_report()

    # ------------------------------------------------------------------
    # Report normalisation
    # ------------------------------------------------------------------
    def finalize_report(self) -> CoverageReport:
        if not os.path.isfile(self.partial_path):
            raise CoverageExtractionFailed(
                f"Coverage tool exited cleanly but wrote no report at {self.partial_path}"
            )

        with open(self.partial_path, "r", encoding="utf-8", errors="replace") as f:
            raw = f.read()

        try:
            records = parse_lcov(raw)
        except LcovParseError as e:
            raise CoverageExtractionFailed(f"Malformed coverage data: {e}") from e

        records = normalize(filter_excluded(records, self.coverage.ignore))
        if not records:
            raise CoverageExtractionFailed(
                "Coverage report contains no project sources; no profiling data was collected"
            )

        text = render_lcov(records)
        with open(self.partial_path, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
        os.replace(self.partial_path, self.report_path)

        summary = summarize(records)
        report = CoverageReport(
            path=os.path.abspath(self.report_path),
            branch=self.coverage.branch,
            ignore_patterns=list(self.coverage.ignore),
            source_count=summary.source_count,
            lines_found=summary.lines_found,
            lines_hit=summary.lines_hit,
            branches_found=summary.branches_found,
            branches_hit=summary.branches_hit,
            sha256=hashlib.sha256(text.encode("utf-8")).hexdigest(),
        )
        logger.info(
            "[EXTRACT] Report %s | sources=%d | lines=%d/%d | branches=%d/%d",
            report.path, report.source_count, report.lines_hit, report.lines_found,
            report.branches_hit, report.branches_found,
        )
        return report

    def discard_report(self) -> None:
        """Remove any report output after a failed run."""
        for path in (self.partial_path, self.report_path):
            if os.path.exists(path):
                logger.info("Removing invalid report artifact %s", path)
                os.remove(path)
