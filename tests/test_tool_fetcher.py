"""
Unit Tests — Tool Fetcher
=========================
Download, verification, extraction and caching of the pinned coverage
tool. Network is replaced by httpx.MockTransport.
"""
import hashlib
import os
import stat
import threading

import httpx
import pytest

from covpipe.core.errors import RunCancelled, ToolFetchFailed
from covpipe.models.external_tool import ExternalTool
from covpipe.services.tool_fetcher import ToolFetcher, default_target_triple

_TARGET = "x86_64-unknown-linux-gnu"


def _tool(**overrides):
    fields = {"target": _TARGET}
    fields.update(overrides)
    return ExternalTool(**fields)


class TestFetch:

    def test_installs_executable(self, tmp_path, grcov_archive, serve_archive):
        client, requests = serve_archive(grcov_archive)
        bin_dir = str(tmp_path / "bin")

        installed = ToolFetcher(client=client).fetch(_tool(), bin_dir)

        assert installed.executable == os.path.join(os.path.abspath(bin_dir), "grcov")
        assert os.stat(installed.executable).st_mode & stat.S_IXUSR
        assert installed.version == "v0.8.10"
        assert installed.sha256 == hashlib.sha256(grcov_archive).hexdigest()
        assert str(requests[0].url) == (
            "https://github.com/mozilla/grcov/releases/download/"
            "v0.8.10/grcov-x86_64-unknown-linux-gnu.tar.bz2"
        )

    def test_nested_executable_moved_to_bin_root(self, tmp_path, make_archive, serve_archive):
        archive = make_archive({"grcov-v0.8.10/bin/grcov": b"bin", "grcov-v0.8.10/README": b"r"})
        client, _ = serve_archive(archive)
        installed = ToolFetcher(client=client).fetch(_tool(), str(tmp_path))
        assert installed.executable == os.path.join(str(tmp_path), "grcov")

    @pytest.mark.parametrize("archive_format", ["tar.gz", "tar.xz", "zip"])
    def test_other_archive_formats(self, tmp_path, make_archive, serve_archive, archive_format):
        client, _ = serve_archive(make_archive({"grcov": b"bin"}, archive_format))
        installed = ToolFetcher(client=client).fetch(_tool(archive_format=archive_format), str(tmp_path))
        assert os.path.isfile(installed.executable)

    def test_broken_url(self, tmp_path, grcov_archive, serve_archive):
        client, _ = serve_archive(grcov_archive)
        tool = _tool(url_template="https://github.com/mozilla/grcov/broken/{version}/{name}.tar.bz2")
        with pytest.raises(ToolFetchFailed, match="HTTP 404"):
            ToolFetcher(client=client).fetch(tool, str(tmp_path))

    def test_transport_error(self, tmp_path):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)
        client = httpx.Client(transport=httpx.MockTransport(handler))
        with pytest.raises(ToolFetchFailed, match="Download failed"):
            ToolFetcher(client=client).fetch(_tool(), str(tmp_path))

    def test_corrupt_archive(self, tmp_path, serve_archive):
        client, _ = serve_archive(b"definitely not bzip2")
        with pytest.raises(ToolFetchFailed, match="Corrupt"):
            ToolFetcher(client=client).fetch(_tool(), str(tmp_path))

    def test_missing_executable(self, tmp_path, make_archive, serve_archive):
        client, _ = serve_archive(make_archive({"README.md": b"no binary here"}))
        with pytest.raises(ToolFetchFailed, match="executable named 'grcov'"):
            ToolFetcher(client=client).fetch(_tool(), str(tmp_path))

    def test_path_traversal_rejected(self, tmp_path, make_archive, serve_archive):
        client, _ = serve_archive(make_archive({"../escape/grcov": b"x"}))
        with pytest.raises(ToolFetchFailed, match="escapes"):
            ToolFetcher(client=client).fetch(_tool(), str(tmp_path / "bin"))
        assert not (tmp_path / "escape").exists()

    def test_cancelled_download(self, tmp_path, grcov_archive, serve_archive):
        client, _ = serve_archive(grcov_archive)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(RunCancelled):
            ToolFetcher(client=client).fetch(_tool(), str(tmp_path), cancel_event=cancel)


class TestChecksum:

    def test_matching_sha256(self, tmp_path, grcov_archive, serve_archive):
        client, _ = serve_archive(grcov_archive)
        digest = hashlib.sha256(grcov_archive).hexdigest()
        installed = ToolFetcher(client=client).fetch(_tool(sha256=digest), str(tmp_path))
        assert installed.sha256 == digest

    def test_mismatched_sha256(self, tmp_path, grcov_archive, serve_archive):
        client, _ = serve_archive(grcov_archive)
        with pytest.raises(ToolFetchFailed, match="Checksum mismatch"):
            ToolFetcher(client=client).fetch(_tool(sha256="0" * 64), str(tmp_path / "bin"))
        assert not (tmp_path / "bin" / "grcov").exists()


class TestCache:

    def test_cache_hit_skips_download(self, tmp_path, grcov_archive, serve_archive):
        client, requests = serve_archive(grcov_archive)
        digest = hashlib.sha256(grcov_archive).hexdigest()
        fetcher = ToolFetcher(client=client, cache_dir=str(tmp_path / "cache"))

        first = fetcher.fetch(_tool(sha256=digest), str(tmp_path / "run1"))
        second = fetcher.fetch(_tool(sha256=digest), str(tmp_path / "run2"))

        assert len(requests) == 1
        assert first.sha256 == second.sha256
        with open(first.executable, "rb") as a, open(second.executable, "rb") as b:
            assert a.read() == b.read()

    def test_unpinned_tools_not_cached(self, tmp_path, grcov_archive, serve_archive):
        client, requests = serve_archive(grcov_archive)
        fetcher = ToolFetcher(client=client, cache_dir=str(tmp_path / "cache"))
        fetcher.fetch(_tool(), str(tmp_path / "run1"))
        fetcher.fetch(_tool(), str(tmp_path / "run2"))
        assert len(requests) == 2
        assert not (tmp_path / "cache").exists()

    def test_corrupt_cache_entry_redownloaded(self, tmp_path, grcov_archive, serve_archive):
        client, requests = serve_archive(grcov_archive)
        digest = hashlib.sha256(grcov_archive).hexdigest()
        cache = tmp_path / "cache"
        cache.mkdir()
        (cache / digest).write_bytes(b"tampered")

        ToolFetcher(client=client, cache_dir=str(cache)).fetch(_tool(sha256=digest), str(tmp_path / "run"))
        assert len(requests) == 1
        assert (cache / digest).read_bytes() == grcov_archive


def test_default_target_triple_shape():
    assert default_target_triple().count("-") >= 2
