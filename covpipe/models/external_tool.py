"""
External Tool Model
===================
A downloadable binary pinned to one exact version.

Fields:
    name            — executable name expected inside the archive (e.g. "grcov")
    version         — exact release tag (e.g. "v0.8.10"); never "latest" or a range
    url_template    — download URL with {name}, {version} and {target} placeholders
    target          — platform triple substituted into the URL
    archive_format  — tar.bz2 | tar.gz | tar.xz | zip
    sha256          — optional hex digest the downloaded archive must match
"""
import re
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from covpipe.core.constants import (
    GRCOV_NAME,
    GRCOV_VERSION,
    GRCOV_URL_TEMPLATE,
    DEFAULT_TARGET,
)

# Anything that would let the host pick a version for us
_FLOATING_VERSION = re.compile(r"^(latest|stable|nightly|\*)$|[*^~<>=]|(^|\.)x($|\.)", re.IGNORECASE)
_SHA256 = re.compile(r"^[0-9a-f]{64}$")


class ExternalTool(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = GRCOV_NAME
    version: str = GRCOV_VERSION
    url_template: str = GRCOV_URL_TEMPLATE
    target: str = DEFAULT_TARGET
    archive_format: Literal["tar.bz2", "tar.gz", "tar.xz", "zip"] = "tar.bz2"
    sha256: Optional[str] = None

    @field_validator("version")
    @classmethod
    def _pinned_version(cls, v: str) -> str:
        v = v.strip()
        if not v or _FLOATING_VERSION.search(v):
            raise ValueError(f"tool version must be pinned exactly, got {v!r}")
        return v

    @field_validator("sha256")
    @classmethod
    def _hex_digest(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        if not _SHA256.match(v):
            raise ValueError("sha256 must be 64 hex characters")
        return v

    @property
    def download_url(self) -> str:
        return self.url_template.format(
            name=self.name, version=self.version, target=self.target,
        )
