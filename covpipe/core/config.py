"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    PIPELINE_CONFIG   — Path to the YAML pipeline definition (default: pipeline.yml)
    WORKSPACE_ROOT    — Directory holding one isolated sub-directory per run
    EXECUTOR_BACKEND  — "local" (host subprocess) or "docker" (ephemeral containers)
    DOCKER_IMAGE      — Image used by the docker backend (default: rustlang/rust:nightly)
    STEP_TIMEOUT      — Max seconds a single step command may run (default: 1800)
    CARGO_OPTIONS     — Extra arguments appended to cargo build / cargo test
    TOOL_CACHE_DIR    — Optional content-addressed cache for pinned tool archives
    GITHUB_TOKEN      — Used to fetch private repositories over https
    CODECOV_TOKEN     — Upload token for the (disabled by default) Codecov publisher
    WEBHOOK_SECRET    — When set, POST /webhook requires a valid X-Hub-Signature-256
    REPO_URL          — Default repository when a trigger does not carry one
    RUN_HISTORY_LIMIT — Runs the API keeps indexed before forgetting the oldest finished ones (default: 100)
    LOG_DIR           — Directory for the daily log file (default: logs)
    LOG_LEVEL         — Root log level (default: INFO)

Step Timeout:
    STEP_TIMEOUT bounds every individual command (checkout, toolchain install,
    build, test, extraction). A timed-out step fails with the error kind of
    the step it belongs to; there is no retry.
"""
import os
import tempfile

from dotenv import load_dotenv

load_dotenv()

PIPELINE_CONFIG = os.getenv("PIPELINE_CONFIG", "pipeline.yml")
WORKSPACE_ROOT = os.getenv(
    "WORKSPACE_ROOT",
    os.path.join(tempfile.gettempdir(), "covpipe-runs"),
)

EXECUTOR_BACKEND = os.getenv("EXECUTOR_BACKEND", "local").lower()
DOCKER_IMAGE = os.getenv("DOCKER_IMAGE", "rustlang/rust:nightly")

# Per-command limit in seconds
STEP_TIMEOUT = int(os.getenv("STEP_TIMEOUT", 1800))

CARGO_OPTIONS = os.getenv("CARGO_OPTIONS", "")
TOOL_CACHE_DIR = os.getenv("TOOL_CACHE_DIR", "")

# Credentials
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")
CODECOV_TOKEN = os.getenv("CODECOV_TOKEN", "")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")

REPO_URL = os.getenv("REPO_URL", "")

# Runs kept in the in-memory registry
RUN_HISTORY_LIMIT = max(1, int(os.getenv("RUN_HISTORY_LIMIT", 100)))

# Logging
LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
