"""Tests for resumable artifact downloads."""

import asyncio

import pytest

from pwrsync.core.cancel import CancellationToken
from pwrsync.core.download import DownloadManager, parse_content_range_total, partial_path
from pwrsync.core.errors import NetworkError, OperationCancelled
from pwrsync.core.integrity import IntegrityError
from pwrsync.core.types import PatchArtifact

URL = "https://patches.test/patches/linux/amd64/release/0/3.pwr"
DATA = bytes(range(256)) * 4


def run_download(server, download_config, coro_factory):
    async def run():
        async with server.client() as client:
            manager = DownloadManager(download_config, client)
            return await coro_factory(manager)

    return asyncio.run(run())


class TestContentRange:
    """Test Content-Range parsing."""

    def test_total(self):
        """Test the total size is extracted."""
        assert parse_content_range_total("bytes 100-199/200") == 200

    def test_unknown_total(self):
        """Test an unknown total."""
        assert parse_content_range_total("bytes 0-9/*") is None

    def test_missing_or_invalid(self):
        """Test missing and malformed headers."""
        assert parse_content_range_total(None) is None
        assert parse_content_range_total("items 1-2/3") is None


class TestDownloadToFile:
    """Test single download attempts."""

    def test_full_download(self, tmp_path, server, download_config):
        """Test downloading a file from scratch."""
        server.add(URL, DATA)
        dest = tmp_path / "out.pwr"

        task = run_download(server, download_config, lambda m: m.download_to_file(URL, dest))

        assert dest.read_bytes() == DATA
        assert task.resume_offset_bytes == 0
        assert task.total_size_bytes == len(DATA)
        assert task.bytes_transferred == len(DATA)

    def test_resume_transfers_only_remaining_bytes(self, tmp_path, server, download_config):
        """Test a partial file is completed with a range request."""
        server.add(URL, DATA)
        dest = tmp_path / "out.pwr"
        dest.write_bytes(DATA[:300])

        task = run_download(server, download_config, lambda m: m.download_to_file(URL, dest))

        assert dest.read_bytes() == DATA
        assert task.resume_offset_bytes == 300
        assert task.bytes_transferred == len(DATA) - 300
        assert task.remaining_bytes == len(DATA) - 300
        get = [r for r in server.requests if r.method == "GET"][0]
        assert get.headers["Range"] == "bytes=300-"

    def test_range_ignored_restarts(self, tmp_path, server, download_config):
        """Test a 200 answer to a range request rewrites the file."""
        server.add(URL, DATA)
        server.ignore_range = True
        dest = tmp_path / "out.pwr"
        dest.write_bytes(b"garbage")

        task = run_download(server, download_config, lambda m: m.download_to_file(URL, dest))

        assert dest.read_bytes() == DATA
        assert task.resume_offset_bytes == 0
        assert task.bytes_transferred == len(DATA)

    def test_already_complete(self, tmp_path, server, download_config):
        """Test a complete file is not downloaded again."""
        server.add(URL, DATA)
        dest = tmp_path / "out.pwr"
        dest.write_bytes(DATA)

        task = run_download(server, download_config, lambda m: m.download_to_file(URL, dest))

        assert task.bytes_transferred == 0
        assert server.count("GET") == 0

    def test_oversized_partial_restarts(self, tmp_path, server, download_config):
        """Test a partial file larger than the remote one is discarded."""
        server.add(URL, DATA)
        dest = tmp_path / "out.pwr"
        dest.write_bytes(DATA + b"extra")

        run_download(server, download_config, lambda m: m.download_to_file(URL, dest))

        assert dest.read_bytes() == DATA

    def test_http_error(self, tmp_path, server, download_config):
        """Test error statuses raise NetworkError."""
        dest = tmp_path / "out.pwr"

        with pytest.raises(NetworkError) as exc_info:
            run_download(server, download_config, lambda m: m.download_to_file(URL, dest))

        assert exc_info.value.status_code == 404

    def test_size_mismatch_raises_integrity_error(self, tmp_path, server, download_config):
        """Test the final size is checked against the server size."""
        server.add(URL, DATA)
        server.head_sizes[URL] = len(DATA) + 10
        dest = tmp_path / "out.pwr"

        with pytest.raises(IntegrityError) as exc_info:
            run_download(server, download_config, lambda m: m.download_to_file(URL, dest))

        assert exc_info.value.expected == len(DATA) + 10
        assert exc_info.value.actual == len(DATA)

    def test_progress_reported(self, tmp_path, server, download_config):
        """Test progress callbacks end at the total size."""
        server.add(URL, DATA)
        dest = tmp_path / "out.pwr"
        reports = []

        run_download(
            server,
            download_config,
            lambda m: m.download_to_file(URL, dest, lambda done, total: reports.append((done, total))),
        )

        assert reports[-1] == (len(DATA), len(DATA))
        assert [done for done, _ in reports] == sorted(done for done, _ in reports)

    def test_cancel_keeps_partial_file(self, tmp_path, server, download_config):
        """Test cancellation stops the transfer and leaves the partial file."""
        server.add(URL, DATA)
        dest = tmp_path / "out.pwr"
        token = CancellationToken()

        def on_progress(done, total):
            if done >= 40:
                token.cancel("test")

        with pytest.raises(OperationCancelled):
            run_download(server, download_config, lambda m: m.download_to_file(URL, dest, on_progress, token))

        assert 0 < dest.stat().st_size < len(DATA)

    def test_cancelled_before_start(self, tmp_path, server, download_config):
        """Test an already cancelled token makes no request."""
        server.add(URL, DATA)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            run_download(
                server, download_config, lambda m: m.download_to_file(URL, tmp_path / "out.pwr", None, token)
            )

        assert server.requests == []


class TestDownloadWithRetry:
    """Test bounded retries."""

    def test_not_found_is_not_retried(self, tmp_path, server, download_config):
        """Test 404 fails after one attempt."""
        with pytest.raises(NetworkError):
            run_download(server, download_config, lambda m: m.download_with_retry(URL, tmp_path / "out.pwr"))

        assert server.count("GET") == 1

    def test_server_error_is_retried(self, tmp_path, server, download_config):
        """Test 5xx answers use every attempt."""
        server.add(URL, DATA)
        server.failing_gets.add(URL)

        with pytest.raises(NetworkError):
            run_download(server, download_config, lambda m: m.download_with_retry(URL, tmp_path / "out.pwr"))

        assert server.count("GET") == download_config.max_attempts

    def test_single_attempt_raises_its_error(self, tmp_path, server, download_config):
        """Test one allowed attempt reports that attempt's error without retrying."""
        server.add(URL, DATA)
        server.failing_gets.add(URL)

        with pytest.raises(NetworkError) as exc_info:
            run_download(
                server,
                download_config,
                lambda m: m.download_with_retry(URL, tmp_path / "out.pwr", max_attempts=1),
            )

        assert exc_info.value.status_code == 500
        assert server.count("GET") == 1

    def test_integrity_failure_deletes_and_retries(self, tmp_path, server, download_config):
        """Test a size mismatch deletes the file before every retry."""
        server.add(URL, DATA)
        server.head_sizes[URL] = len(DATA) + 10
        dest = tmp_path / "out.pwr"

        with pytest.raises(IntegrityError):
            run_download(server, download_config, lambda m: m.download_with_retry(URL, dest))

        assert not dest.exists()
        assert server.count("GET") == download_config.max_attempts


class TestFetchArtifact:
    """Test the artifact cache front."""

    def test_download_to_cache(self, tmp_path, server, download_config):
        """Test a missing artifact is downloaded and moved into place."""
        server.add(URL, DATA)
        artifact = PatchArtifact(0, 3, URL, tmp_path / "release_latest_3.pwr")

        local = run_download(server, download_config, lambda m: m.fetch_artifact(artifact))

        assert local.read_bytes() == DATA
        assert not partial_path(local).exists()
        assert artifact.expected_size == len(DATA)

    def test_cached_artifact_reused(self, tmp_path, server, download_config):
        """Test a cached file with the server size is not downloaded again."""
        server.add(URL, DATA)
        local_path = tmp_path / "release_latest_3.pwr"
        local_path.write_bytes(DATA)

        local = run_download(
            server, download_config, lambda m: m.fetch_artifact(PatchArtifact(0, 3, URL, local_path))
        )

        assert local == local_path
        assert server.count("GET") == 0

    def test_known_size_needs_no_request(self, tmp_path, server, download_config):
        """Test a known expected size skips the HEAD request too."""
        local_path = tmp_path / "release_latest_3.pwr"
        local_path.write_bytes(DATA)
        artifact = PatchArtifact(0, 3, URL, local_path, expected_size=len(DATA))

        run_download(server, download_config, lambda m: m.fetch_artifact(artifact))

        assert server.requests == []

    def test_mismatched_cache_refetched(self, tmp_path, server, download_config):
        """Test a cached file of the wrong size is replaced."""
        server.add(URL, DATA)
        local_path = tmp_path / "release_latest_3.pwr"
        local_path.write_bytes(b"short")

        local = run_download(
            server, download_config, lambda m: m.fetch_artifact(PatchArtifact(0, 3, URL, local_path))
        )

        assert local.read_bytes() == DATA
        assert server.count("GET") == 1

    def test_unknown_remote_size_trusts_cache(self, tmp_path, server, download_config):
        """Test a cached file is reused when the server size is unknown."""
        server.add(URL, DATA)
        server.hide_length.add(URL)
        local_path = tmp_path / "release_latest_3.pwr"
        local_path.write_bytes(b"whatever")

        local = run_download(
            server, download_config, lambda m: m.fetch_artifact(PatchArtifact(0, 3, URL, local_path))
        )

        assert local.read_bytes() == b"whatever"
        assert server.count("GET") == 0

    def test_partial_resumed_across_calls(self, tmp_path, server, download_config):
        """Test an interrupted fetch resumes from the .part file."""
        server.add(URL, DATA)
        local_path = tmp_path / "release_latest_3.pwr"
        partial_path(local_path).write_bytes(DATA[:500])

        run_download(server, download_config, lambda m: m.fetch_artifact(PatchArtifact(0, 3, URL, local_path)))

        assert local_path.read_bytes() == DATA
        get = [r for r in server.requests if r.method == "GET"][0]
        assert get.headers["Range"] == "bytes=500-"
