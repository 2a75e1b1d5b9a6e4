"""
Constants
Centralised storage for stage names, exit codes, and coverage defaults.
"""
# ---------------------------------------------------------------------------
# Stage names (as recorded in StepResult.name and failure.stage)
# ---------------------------------------------------------------------------
STAGE_PROVISION = "provision"
STAGE_FETCH_TOOL = "fetch-tool"
STAGE_BUILD = "build"
STAGE_TEST = "test"
STAGE_EXTRACT = "extract"
STAGE_PUBLISH = "publish"

# ---------------------------------------------------------------------------
# Process exit codes
# ---------------------------------------------------------------------------
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 2
EXIT_PROVISIONING_FAILED = 10
EXIT_TOOL_FETCH_FAILED = 11
EXIT_BUILD_FAILED = 12
EXIT_TEST_FAILED = 13
EXIT_EXTRACTION_FAILED = 14
EXIT_PUBLISH_FAILED = 15
EXIT_CANCELLED = 130

# ---------------------------------------------------------------------------
# Toolchain
# ---------------------------------------------------------------------------
DEFAULT_CHANNEL = "nightly"
DEFAULT_COMPONENTS = ("llvm-tools-preview",)

# Component names rustup understands; anything else fails provisioning
KNOWN_COMPONENTS = frozenset({
    "cargo",
    "clippy",
    "llvm-tools",
    "llvm-tools-preview",
    "miri",
    "reproducible-artifacts",
    "rls",
    "rust-analysis",
    "rust-analyzer",
    "rust-docs",
    "rust-src",
    "rust-std",
    "rustc",
    "rustc-codegen-cranelift",
    "rustc-codegen-cranelift-preview",
    "rustc-dev",
    "rustfmt",
})

# ---------------------------------------------------------------------------
# Coverage tool
# ---------------------------------------------------------------------------
GRCOV_NAME = "grcov"
GRCOV_VERSION = "v0.8.10"
GRCOV_URL_TEMPLATE = (
    "https://github.com/mozilla/grcov/releases/download/{version}/{name}-{target}.tar.bz2"
)
DEFAULT_TARGET = "x86_64-unknown-linux-gnu"

DEFAULT_BINARY_PATH = "target/debug/deps/"
DEFAULT_SOURCE_ROOT = "."
DEFAULT_REPORT_PATH = "coverage.lcov"
DEFAULT_IGNORE_PATTERNS = ("../**", "/*")

PARTIAL_SUFFIX = ".partial"

# ---------------------------------------------------------------------------
# Per-run workspace layout
# ---------------------------------------------------------------------------
CHECKOUT_DIR = "src"
TOOLING_DIR = "tooling"
BIN_DIR = "bin"
RUN_SUMMARY_FILE = "run.json"
