"""
Pipeline Config Reader
======================
Parses the declarative pipeline definition (YAML) into typed settings.

The trigger block is GitHub-Actions-shaped so an existing workflow's ``on:``
section can be pasted as-is:

    on:
      push:
        branches: [main]
      pull_request:
        branches: [main]

Every automatic trigger is disabled unless it appears here. A file whose
``on:`` block is absent or fully commented out yields a dormant pipeline
that only runs on manual dispatch.

Sections:
    on          — trigger filters (push / pull_request; workflow_dispatch is implied)
    repository  — default url
    toolchain   — channel + components
    tool        — pinned coverage tool descriptor
    build       — cargo options + extra environment
    coverage    — grcov parameters
    publish     — optional report upload (disabled by default)

Deterministic:
    Same file → same PipelineConfig, always.
"""
import os
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from covpipe.core.config import CARGO_OPTIONS, REPO_URL
from covpipe.core.constants import (
    DEFAULT_BINARY_PATH,
    DEFAULT_SOURCE_ROOT,
    DEFAULT_REPORT_PATH,
    DEFAULT_IGNORE_PATTERNS,
)
from covpipe.core.errors import ConfigError
from covpipe.models.external_tool import ExternalTool
from covpipe.models.toolchain import ToolchainSpec
from covpipe.services.tool_fetcher import default_target_triple

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class BranchFilter:
    """
    Branch filter for one event type.

    An empty ``branches`` list means "all branches".
    """
    branches: tuple[str, ...] = ()
    branches_ignore: tuple[str, ...] = ()


@dataclass(frozen=True)
class TriggerFilters:
    """Active filters per event type. None = trigger disabled."""
    push: Optional[BranchFilter] = None
    pull_request: Optional[BranchFilter] = None

    @property
    def any_automatic(self) -> bool:
        return self.push is not None or self.pull_request is not None


@dataclass(frozen=True)
class BuildSettings:
    cargo_options: str = ""
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CoverageSettings:
    binary_path: str = DEFAULT_BINARY_PATH
    source_root: str = DEFAULT_SOURCE_ROOT
    output: str = DEFAULT_REPORT_PATH
    branch: bool = True
    ignore_not_existing: bool = True
    ignore: tuple[str, ...] = DEFAULT_IGNORE_PATTERNS


@dataclass(frozen=True)
class PublishSettings:
    enabled: bool = False
    provider: str = "codecov"
    flags: str = "unittests"
    name: str = "codecov-umbrella"
    fail_on_error: bool = True
    url: str = "https://codecov.io"


@dataclass(frozen=True)
class PipelineConfig:
    """
    Parsed pipeline definition.

    Attributes
    ----------
    name : str
        Display name of the pipeline.
    triggers : TriggerFilters
        Event filters consumed by the Trigger Policy.
    repo_url : str
        Repository used when a trigger does not name one.
    toolchain : ToolchainSpec
        Channel + components for the Environment Provisioner.
    tool : ExternalTool
        Pinned coverage tool for the Tool Fetcher.
    build : BuildSettings
        Cargo options and extra environment for build and test.
    coverage : CoverageSettings
        grcov invocation parameters.
    publish : PublishSettings
        Optional report upload.
    source_path : str
        File this config was read from ("" for defaults).
    """
    name: str = "Build"
    triggers: TriggerFilters = field(default_factory=TriggerFilters)
    repo_url: str = REPO_URL
    toolchain: ToolchainSpec = field(default_factory=ToolchainSpec)
    tool: ExternalTool = field(default_factory=ExternalTool)
    build: BuildSettings = field(default_factory=lambda: BuildSettings(cargo_options=CARGO_OPTIONS))
    coverage: CoverageSettings = field(default_factory=CoverageSettings)
    publish: PublishSettings = field(default_factory=PublishSettings)
    source_path: str = ""


# ---------------------------------------------------------------------------
# Section Parsers
# ---------------------------------------------------------------------------
def _as_list(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(v, (str, int)) for v in value):
        return tuple(str(v) for v in value)
    raise ConfigError(f"{where} must be a string or a list of strings")


def _as_bool(section: dict, key: str, default: bool, where: str) -> bool:
    value = section.get(key)
    if value is None:
        return default
    # YAML 1.1 already maps true/false/yes/no to bool; quoted strings stay strings
    if not isinstance(value, bool):
        raise ConfigError(f"{where}.{key} must be true or false, got {value!r}")
    return value


def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _parse_branch_filter(value: Any, event: str) -> BranchFilter:
    # "push:" with nothing under it means every branch
    if value is None:
        return BranchFilter()
    if not isinstance(value, dict):
        raise ConfigError(f"on.{event} must be a mapping")
    return BranchFilter(
        branches=_as_list(value.get("branches"), f"on.{event}.branches"),
        branches_ignore=_as_list(value.get("branches-ignore"), f"on.{event}.branches-ignore"),
    )


def _parse_triggers(data: dict) -> TriggerFilters:
    # PyYAML (YAML 1.1) reads a bare `on` key as boolean True
    on_block = data.get("on", data.get(True))
    if on_block is None:
        return TriggerFilters()

    events: dict[str, Any]
    if isinstance(on_block, str):
        events = {on_block: None}
    elif isinstance(on_block, list):
        events = {str(e): None for e in on_block}
    elif isinstance(on_block, dict):
        events = on_block
    else:
        raise ConfigError("'on' must be a string, list or mapping")

    push = pull_request = None
    for event, value in events.items():
        if event == "push":
            push = _parse_branch_filter(value, "push")
        elif event in ("pull_request", "pull-request"):
            pull_request = _parse_branch_filter(value, "pull_request")
        elif event == "workflow_dispatch":
            continue  # manual dispatch is always allowed
        else:
            logger.warning("Ignoring unsupported trigger event '%s'", event)

    return TriggerFilters(push=push, pull_request=pull_request)


def _parse_build(data: dict) -> BuildSettings:
    section = _section(data, "build")
    env = section.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError("build.env must be a mapping")
    return BuildSettings(
        cargo_options=str(section.get("cargo_options", CARGO_OPTIONS) or ""),
        env={str(k): str(v) for k, v in env.items()},
    )


def _parse_coverage(data: dict) -> CoverageSettings:
    section = _section(data, "coverage")
    defaults = CoverageSettings()
    ignore = section.get("ignore")
    return CoverageSettings(
        binary_path=str(section.get("binary_path", defaults.binary_path)),
        source_root=str(section.get("source_root", defaults.source_root)),
        output=str(section.get("output", defaults.output)),
        branch=_as_bool(section, "branch", defaults.branch, "coverage"),
        ignore_not_existing=_as_bool(section, "ignore_not_existing", defaults.ignore_not_existing, "coverage"),
        ignore=defaults.ignore if ignore is None else _as_list(ignore, "coverage.ignore"),
    )


def _parse_publish(data: dict) -> PublishSettings:
    section = _section(data, "publish")
    defaults = PublishSettings()
    return PublishSettings(
        enabled=_as_bool(section, "enabled", defaults.enabled, "publish"),
        provider=str(section.get("provider", defaults.provider)),
        flags=str(section.get("flags", defaults.flags)),
        name=str(section.get("name", defaults.name)),
        fail_on_error=_as_bool(section, "fail_on_error", defaults.fail_on_error, "publish"),
        url=str(section.get("url", defaults.url)),
    )


def _parse_tool(data: dict) -> ExternalTool:
    section = _section(data, "tool")
    fields = {}
    for key, model_key in (
        ("name", "name"),
        ("version", "version"),
        ("url", "url_template"),
        ("target", "target"),
        ("archive", "archive_format"),
        ("sha256", "sha256"),
    ):
        if key in section:
            fields[model_key] = section[key]
    # "auto" resolves to the host platform
    if fields.get("target") == "auto":
        fields["target"] = default_target_triple()
    return ExternalTool(**fields)


def _parse_toolchain(data: dict) -> ToolchainSpec:
    section = _section(data, "toolchain")
    fields: dict[str, Any] = {}
    if "channel" in section:
        fields["channel"] = str(section["channel"])
    if "components" in section:
        fields["components"] = frozenset(_as_list(section["components"], "toolchain.components"))
    return ToolchainSpec(**fields)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse_pipeline_config(content: str, source_path: str = "") -> PipelineConfig:
    """
    Parse pipeline definition text.

    Raises
    ------
    ConfigError
        On YAML syntax errors or invalid values.
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {source_path or 'pipeline config'}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("pipeline config must be a mapping")

    repository = _section(data, "repository")

    try:
        config = PipelineConfig(
            name=str(data.get("name", "Build")),
            triggers=_parse_triggers(data),
            repo_url=str(repository.get("url") or REPO_URL),
            toolchain=_parse_toolchain(data),
            tool=_parse_tool(data),
            build=_parse_build(data),
            coverage=_parse_coverage(data),
            publish=_parse_publish(data),
            source_path=source_path,
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid pipeline config: {e}") from e

    logger.info(
        "Loaded pipeline '%s' | push=%s | pull_request=%s | tool=%s@%s",
        config.name,
        "on" if config.triggers.push else "off",
        "on" if config.triggers.pull_request else "off",
        config.tool.name,
        config.tool.version,
    )
    if not config.triggers.any_automatic:
        logger.info("Automatic triggers disabled; only manual dispatch starts runs")
    return config


def load_pipeline_config(path: str) -> PipelineConfig:
    """
    Read and parse a pipeline definition file.

    A missing file yields the built-in defaults (dormant triggers,
    nightly + llvm-tools-preview, grcov v0.8.10).
    """
    if not os.path.isfile(path):
        logger.info("No pipeline config at %s, using defaults", path)
        return PipelineConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        raise ConfigError(f"Could not read {path}: {e}") from e

    return parse_pipeline_config(content, source_path=path)
