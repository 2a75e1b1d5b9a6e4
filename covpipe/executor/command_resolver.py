"""
Command Resolver
================
Maps pipeline settings to the instrumentation environment and to the
build / test / coverage-extraction argument vectors.

Resolver never executes commands; it only returns argument sequences.
Commands are passed to an Executor by the coverage runner.

Instrumentation flags and their effect:
    CARGO_INCREMENTAL=0       deterministic instrumentation mapping
    -Zprofile                 gcov-style profiling instrumentation
    -Ccodegen-units=1         stable coverage symbols across the binary
    -Copt-level=0             line-level fidelity
    -Clink-dead-code          unreachable code still produces coverage entries
    -Coverflow-checks=off     no aborts unrelated to test logic
    -Zpanic_abort_tests
    -Cpanic=abort             a failing test halts the run
    RUSTDOCFLAGS              doc-test binaries instrumented the same way

Deterministic: same settings → same commands, always.
"""
import shlex
from dataclasses import dataclass, field
from typing import Optional

from covpipe.core.constants import GRCOV_NAME
from covpipe.parser.pipeline_config import BuildSettings, CoverageSettings


@dataclass(frozen=True)
class InstrumentationFlags:
    incremental: bool = False
    profile: bool = True
    codegen_units: int = 1
    opt_level: int = 0
    link_dead_code: bool = True
    overflow_checks: bool = False
    panic_abort_tests: bool = True
    rustdoc_instrument: bool = True

    def rustflags(self) -> str:
        flags: list[str] = []
        if self.profile:
            flags.append("-Zprofile")
        flags.append(f"-Ccodegen-units={self.codegen_units}")
        flags.append(f"-Copt-level={self.opt_level}")
        if self.link_dead_code:
            flags.append("-Clink-dead-code")
        flags.append(f"-Coverflow-checks={'on' if self.overflow_checks else 'off'}")
        if self.panic_abort_tests:
            flags.extend(["-Zpanic_abort_tests", "-Cpanic=abort"])
        return " ".join(flags)

    def environment(self) -> dict[str, str]:
        env = {
            "CARGO_INCREMENTAL": "1" if self.incremental else "0",
            "RUSTFLAGS": self.rustflags(),
        }
        if self.rustdoc_instrument:
            env["RUSTDOCFLAGS"] = "-C instrument-coverage"
        return env


DEFAULT_FLAGS = InstrumentationFlags()


@dataclass(frozen=True)
class ResolvedCommands:
    """
    Immutable container for resolved commands.

    Fields
    ------
    build_command : tuple[str, ...]
        Instrumented build (``cargo build <options>``).
    test_command : tuple[str, ...]
        Instrumented test run (``cargo test <options>``).
    extract_command : tuple[str, ...]
        grcov invocation writing to ``partial_output``.
    environment : dict
        Instrumentation variables shared by build and test.
    partial_output : str
        Where grcov writes before the report is validated.
    """
    build_command: tuple[str, ...]
    test_command: tuple[str, ...]
    extract_command: tuple[str, ...]
    environment: dict[str, str] = field(default_factory=dict)
    partial_output: str = ""


def instrumentation_env(build: BuildSettings,
                        flags: InstrumentationFlags = DEFAULT_FLAGS) -> dict[str, str]:
    """Instrumentation variables, with BuildSettings.env applied on top."""
    env = flags.environment()
    env.update(build.env)
    return env


def grcov_command(coverage: CoverageSettings, output_path: str,
                  tool: str = GRCOV_NAME) -> tuple[str, ...]:
    """
    grcov argument vector.

    The tool is referenced by name; the fetched binary is found through the
    run's execution path.
    """
    argv = [
        tool, ".",
        "--binary-path", coverage.binary_path,
        "-s", coverage.source_root,
        "-t", "lcov",
    ]
    if coverage.branch:
        argv.append("--branch")
    if coverage.ignore_not_existing:
        argv.append("--ignore-not-existing")
    for pattern in coverage.ignore:
        argv.extend(["--ignore", pattern])
    argv.extend(["-o", output_path])
    return tuple(argv)


def resolve_commands(build: BuildSettings,
                     coverage: CoverageSettings,
                     partial_output: str,
                     tool: str = GRCOV_NAME,
                     flags: Optional[InstrumentationFlags] = None) -> ResolvedCommands:
    """
    Resolve all three runner sub-step commands.

    Parameters
    ----------
    build : BuildSettings
        Cargo options and extra environment.
    coverage : CoverageSettings
        grcov parameters.
    partial_output : str
        Path grcov writes to (relative to the checkout or absolute).
    tool : str
        Coverage tool executable name.
    flags : InstrumentationFlags | None
        Override for the default instrumentation flags.
    """
    cargo_options = tuple(shlex.split(build.cargo_options))
    return ResolvedCommands(
        build_command=("cargo", "build") + cargo_options,
        test_command=("cargo", "test") + cargo_options,
        extract_command=grcov_command(coverage, partial_output, tool=tool),
        environment=instrumentation_env(build, flags or DEFAULT_FLAGS),
        partial_output=partial_output,
    )
