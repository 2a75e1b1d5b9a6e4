"""
Tool Fetcher
============
Downloads a pinned-version external tool, extracts it into the run's bin
directory and hands back the executable's location. The Orchestrator then
registers the bin directory on the run's execution path.

Fail-fast (ToolFetchFailed) when:
    - the download fails (transport error, non-2xx status)
    - a pinned sha256 does not match the archive
    - the archive is corrupt or unreadable
    - no executable named after the tool comes out of the archive

Caching:
    Optional and content-addressed. Only archives with a pinned sha256 are
    cached (stored as <cache_dir>/<sha256>), so a cache hit is byte-identical
    to a fresh download.
"""
import hashlib
import io
import logging
import os
import platform
import shutil
import stat
import tarfile
import threading
import zipfile
from dataclasses import dataclass
from typing import Optional

import httpx

from covpipe.core.config import TOOL_CACHE_DIR
from covpipe.core.errors import RunCancelled, ToolFetchFailed
from covpipe.core.constants import STAGE_FETCH_TOOL
from covpipe.models.external_tool import ExternalTool

logger = logging.getLogger(__name__)

_DOWNLOAD_TIMEOUT = 120.0
_CHUNK_SIZE = 64 * 1024

_TAR_MODES = {
    "tar.bz2": "r:bz2",
    "tar.gz": "r:gz",
    "tar.xz": "r:xz",
}

# (system, machine) → Rust platform triple
_TARGETS = {
    ("Linux", "x86_64"): "x86_64-unknown-linux-gnu",
    ("Linux", "aarch64"): "aarch64-unknown-linux-gnu",
    ("Darwin", "x86_64"): "x86_64-apple-darwin",
    ("Darwin", "arm64"): "aarch64-apple-darwin",
    ("Windows", "AMD64"): "x86_64-pc-windows-msvc",
}


def default_target_triple() -> str:
    """Platform triple of the host, defaulting to x86_64 Linux."""
    return _TARGETS.get((platform.system(), platform.machine()), "x86_64-unknown-linux-gnu")


@dataclass(frozen=True)
class InstalledTool:
    name: str
    version: str
    executable: str
    bin_dir: str
    sha256: str


class ToolFetcher:
    """
    Download + extract pinned tools.

    Parameters
    ----------
    client : httpx.Client | None
        HTTP client to use (tests inject one with a MockTransport).
    cache_dir : str
        Content-addressed archive cache; empty disables caching.
    """

    def __init__(self, client: Optional[httpx.Client] = None, cache_dir: str = TOOL_CACHE_DIR) -> None:
        self._client = client
        self.cache_dir = cache_dir

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------
    def _cached_archive(self, tool: ExternalTool) -> Optional[bytes]:
        if not (self.cache_dir and tool.sha256):
            return None
        path = os.path.join(self.cache_dir, tool.sha256)
        if not os.path.isfile(path):
            return None
        with open(path, "rb") as f:
            data = f.read()
        if hashlib.sha256(data).hexdigest() != tool.sha256:
            logger.warning("[FETCH] Discarding corrupt cache entry %s", path)
            os.remove(path)
            return None
        logger.info("[FETCH] Cache hit for %s %s", tool.name, tool.version)
        return data

    def _store_in_cache(self, tool: ExternalTool, data: bytes) -> None:
        if not (self.cache_dir and tool.sha256):
            return
        os.makedirs(self.cache_dir, exist_ok=True)
        tmp = os.path.join(self.cache_dir, f".{tool.sha256}.tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, os.path.join(self.cache_dir, tool.sha256))

    def download(self, url: str, cancel_event: Optional[threading.Event] = None) -> bytes:
        client = self._client or httpx.Client(timeout=_DOWNLOAD_TIMEOUT)
        buffer = io.BytesIO()
        try:
            with client.stream("GET", url, follow_redirects=True) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes(_CHUNK_SIZE):
                    if cancel_event is not None and cancel_event.is_set():
                        raise RunCancelled(STAGE_FETCH_TOOL)
                    buffer.write(chunk)
        except httpx.HTTPStatusError as e:
            raise ToolFetchFailed(
                f"Download failed: HTTP {e.response.status_code} for {url}"
            ) from e
        except httpx.HTTPError as e:
            raise ToolFetchFailed(f"Download failed for {url}: {e}") from e
        finally:
            if self._client is None:
                client.close()
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------
    @staticmethod
    def _safe_target(bin_dir: str, member_name: str) -> str:
        dest = os.path.realpath(os.path.join(bin_dir, member_name))
        root = os.path.realpath(bin_dir)
        if dest != root and not dest.startswith(root + os.sep):
            raise ToolFetchFailed(f"Archive member escapes install dir: {member_name}")
        return dest

    def _extract_tar(self, data: bytes, mode: str, bin_dir: str) -> None:
        with tarfile.open(fileobj=io.BytesIO(data), mode=mode) as archive:
            members = archive.getmembers()
            for member in members:
                if member.issym() or member.islnk():
                    raise ToolFetchFailed(f"Archive contains a link: {member.name}")
                self._safe_target(bin_dir, member.name)
            if hasattr(tarfile, "data_filter"):
                archive.extractall(bin_dir, members=members, filter="data")
            else:
                archive.extractall(bin_dir, members=members)

    def _extract_zip(self, data: bytes, bin_dir: str) -> None:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            for name in archive.namelist():
                self._safe_target(bin_dir, name)
            archive.extractall(bin_dir)

    def extract(self, data: bytes, archive_format: str, bin_dir: str) -> None:
        os.makedirs(bin_dir, exist_ok=True)
        try:
            if archive_format == "zip":
                self._extract_zip(data, bin_dir)
            else:
                self._extract_tar(data, _TAR_MODES[archive_format], bin_dir)
        except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
            raise ToolFetchFailed(f"Corrupt or unreadable {archive_format} archive: {e}") from e

    @staticmethod
    def locate_executable(name: str, bin_dir: str) -> str:
        """
        Find the tool in the extracted tree and make sure it sits at
        ``bin_dir/<name>`` with the executable bit set.
        """
        candidates = {name, f"{name}.exe"}
        found: Optional[str] = None
        for root, _dirs, files in os.walk(bin_dir):
            for fname in sorted(files):
                if fname in candidates:
                    found = os.path.join(root, fname)
                    break
            if found:
                break

        if found is None:
            raise ToolFetchFailed(f"Archive did not contain an executable named '{name}'")

        final = os.path.join(bin_dir, os.path.basename(found))
        if os.path.abspath(found) != os.path.abspath(final):
            shutil.move(found, final)

        mode = os.stat(final).st_mode
        os.chmod(final, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return final

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def fetch(self, tool: ExternalTool, bin_dir: str,
              cancel_event: Optional[threading.Event] = None) -> InstalledTool:
        url = tool.download_url
        logger.info("[FETCH] %s %s from %s", tool.name, tool.version, url)

        data = self._cached_archive(tool)
        if data is None:
            data = self.download(url, cancel_event=cancel_event)

        digest = hashlib.sha256(data).hexdigest()
        if tool.sha256 and digest != tool.sha256:
            raise ToolFetchFailed(
                f"Checksum mismatch for {tool.name} {tool.version}: "
                f"expected {tool.sha256}, got {digest}"
            )
        if not tool.sha256:
            logger.warning(
                "[FETCH] No sha256 pinned for %s %s, archive integrity not verified (sha256=%s)",
                tool.name, tool.version, digest,
            )

        self.extract(data, tool.archive_format, bin_dir)
        executable = self.locate_executable(tool.name, bin_dir)
        self._store_in_cache(tool, data)

        logger.info("[FETCH] Installed %s %s at %s", tool.name, tool.version, executable)
        return InstalledTool(
            name=tool.name,
            version=tool.version,
            executable=executable,
            bin_dir=os.path.abspath(bin_dir),
            sha256=digest,
        )
