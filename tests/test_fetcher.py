"""Tests for downloading and installing PDF sets."""

import errno
import os
import threading
from unittest.mock import patch

import pytest
import requests

from fakes import REPOSITORY_URLS, FakeSession, install_set, make_archive
from managed_lhapdf.cache.config import CacheConfig
from managed_lhapdf.cache.fetcher import (
    DatasetFetcher,
    SessionProvider,
    archive_url,
    find_installed,
)
from managed_lhapdf.errors import (
    ArchiveExtractionError,
    CacheError,
    CachePermissionError,
    NetworkError,
    NotFoundRemotelyError,
    ReadOnlyCacheError,
)

URL1, URL2, URL3 = (archive_url(base, "CT18NLO") for base in REPOSITORY_URLS)


def make_fetcher(config, routes=None):
    session = FakeSession(routes)
    return DatasetFetcher(config, session=session), session


class TestArchiveUrl:
    def test_joins_without_double_slash(self):
        assert URL1 == "https://repo1.test/sets/CT18NLO.tar.gz"
        assert URL2 == "https://repo2.test/CT18NLO.tar.gz"
        assert URL3 == "https://repo3.test/CT18NLO.tar.gz"


class TestFetch:
    """Test fetching sets from the configured repositories."""

    def test_installs_from_first_repository(self, cache_config, write_dir):
        fetcher, session = make_fetcher(cache_config, {URL1: make_archive("CT18NLO")})

        installed = fetcher.fetch("CT18NLO")

        assert installed == write_dir / "CT18NLO"
        assert (installed / "CT18NLO.info").is_file()
        assert session.requests == [URL1]

    def test_falls_back_on_404(self, cache_config, write_dir):
        """Only the third repository has the set; all three are tried in order."""
        fetcher, session = make_fetcher(
            cache_config, {URL3: make_archive("CT18NLO", marker="third")}
        )

        installed = fetcher.fetch("CT18NLO")

        assert session.requests == [URL1, URL2, URL3]
        assert "third" in (installed / "CT18NLO.info").read_text()

    def test_stops_at_first_success(self, cache_config):
        fetcher, session = make_fetcher(
            cache_config,
            {
                URL2: make_archive("CT18NLO", marker="second"),
                URL3: make_archive("CT18NLO", marker="third"),
            },
        )

        installed = fetcher.fetch("CT18NLO")

        assert session.requests == [URL1, URL2]
        assert "second" in (installed / "CT18NLO.info").read_text()

    def test_not_found_anywhere(self, cache_config, write_dir):
        fetcher, session = make_fetcher(cache_config)

        with pytest.raises(NotFoundRemotelyError) as exc_info:
            fetcher.fetch("NoSuchSet")

        assert exc_info.value.setname == "NoSuchSet"
        assert len(exc_info.value.urls) == 3
        assert "NoSuchSet" in str(exc_info.value)
        assert len(session.requests) == 3
        assert not (write_dir / "NoSuchSet").exists()

    def test_server_error_aborts(self, cache_config):
        """A non-404 failure is not treated as 'not found'."""
        fetcher, session = make_fetcher(
            cache_config, {URL1: 500, URL2: make_archive("CT18NLO")}
        )

        with pytest.raises(NetworkError, match="500"):
            fetcher.fetch("CT18NLO")
        assert session.requests == [URL1]

    def test_connection_error(self, cache_config):
        fetcher, _ = make_fetcher(
            cache_config, {URL1: requests.ConnectionError("connection refused")}
        )

        with pytest.raises(NetworkError, match="connection refused"):
            fetcher.fetch("CT18NLO")

    def test_read_only_makes_no_requests(self, tmp_path):
        config = CacheConfig(
            cache_write_dir=None,
            cache_read_dirs=(tmp_path,),
            repository_urls=REPOSITORY_URLS,
        )
        fetcher, session = make_fetcher(config, {URL1: make_archive("CT18NLO")})

        with pytest.raises(ReadOnlyCacheError):
            fetcher.fetch("CT18NLO")
        assert session.requests == []

    def test_archive_without_set_directory(self, cache_config, write_dir):
        fetcher, _ = make_fetcher(
            cache_config, {URL1: make_archive("CT18NLO", top_dir="wrong")}
        )

        with pytest.raises(ArchiveExtractionError, match="CT18NLO/"):
            fetcher.fetch("CT18NLO")
        assert not (write_dir / "CT18NLO").exists()

    def test_corrupt_archive(self, cache_config, write_dir):
        fetcher, _ = make_fetcher(cache_config, {URL1: b"garbage"})

        with pytest.raises(ArchiveExtractionError):
            fetcher.fetch("CT18NLO")
        assert not (write_dir / "CT18NLO").exists()

    def test_replaces_existing_installation(self, cache_config, write_dir):
        install_set(write_dir, "CT18NLO")
        (write_dir / "CT18NLO" / "stale.dat").write_text("old")
        fetcher, _ = make_fetcher(cache_config, {URL1: make_archive("CT18NLO", marker="new")})

        installed = fetcher.fetch("CT18NLO")

        assert "new" in (installed / "CT18NLO.info").read_text()
        assert not (installed / "stale.dat").exists()

    def test_no_leftovers_in_write_dir(self, cache_config, write_dir):
        """Temporary archives, staging and backup directories are cleaned up."""
        install_set(write_dir, "CT18NLO")
        fetcher, _ = make_fetcher(cache_config, {URL2: make_archive("CT18NLO")})

        fetcher.fetch("CT18NLO")

        assert [p.name for p in write_dir.iterdir() if p.name.startswith(".")] == []

    def test_no_leftovers_after_failure(self, cache_config, write_dir):
        fetcher, _ = make_fetcher(cache_config, {URL1: b"garbage"})

        with pytest.raises(ArchiveExtractionError):
            fetcher.fetch("CT18NLO")

        assert list(write_dir.iterdir()) == []


class TestInstalledSets:
    """Test discovery of installed sets across the search paths."""

    def test_is_installed_checks_info_file(self, cache_config, write_dir):
        fetcher, _ = make_fetcher(cache_config)
        (write_dir / "Partial").mkdir(parents=True)

        assert fetcher.is_installed("Partial") is None
        install_set(write_dir, "CT18NLO")
        assert fetcher.is_installed("CT18NLO") == write_dir / "CT18NLO"

    def test_read_dirs_are_searched(self, tmp_path):
        read_dir = tmp_path / "system"
        install_set(read_dir, "CT18NLO")

        assert find_installed("CT18NLO", [tmp_path / "cache", read_dir]) == read_dir / "CT18NLO"

    def test_installed_sets(self, tmp_path):
        write_dir = tmp_path / "cache"
        read_dir = tmp_path / "system"
        install_set(write_dir, "SetA")
        install_set(read_dir, "SetA")
        install_set(read_dir, "SetB")
        (write_dir / ".SetC.staging-x" / "SetC").mkdir(parents=True)
        config = CacheConfig(cache_write_dir=write_dir, cache_read_dirs=(read_dir,))
        fetcher, _ = make_fetcher(config)

        sets = fetcher.installed_sets()

        assert sets == [
            ("SetA", write_dir / "SetA", True),
            ("SetB", read_dir / "SetB", False),
        ]

    def test_installed_sets_missing_directories(self, cache_config):
        fetcher, _ = make_fetcher(cache_config)
        assert fetcher.installed_sets() == []


class TestFilesystemFailures:
    """Test that local write failures are reported as cache errors."""

    def test_download_file_not_creatable(self, cache_config):
        fetcher, _ = make_fetcher(cache_config, {URL1: make_archive("CT18NLO")})

        with patch(
            "managed_lhapdf.cache.fetcher.tempfile.mkstemp",
            side_effect=PermissionError(errno.EACCES, "Permission denied"),
        ):
            with pytest.raises(CachePermissionError, match="download file"):
                fetcher.fetch("CT18NLO")

    def test_staging_dir_not_creatable(self, cache_config, write_dir):
        fetcher, _ = make_fetcher(cache_config, {URL1: make_archive("CT18NLO")})

        with patch(
            "managed_lhapdf.cache.fetcher.tempfile.mkdtemp",
            side_effect=OSError(errno.ENOSPC, "No space left on device"),
        ):
            with pytest.raises(CacheError, match="staging directory") as exc_info:
                fetcher.fetch("CT18NLO")

        assert not isinstance(exc_info.value, CachePermissionError)
        assert list(write_dir.iterdir()) == []

    def test_failed_activation_keeps_previous_install(self, cache_config, write_dir):
        """If the staged set cannot be moved into place, the old one is restored."""
        install_set(write_dir, "CT18NLO")
        fetcher, _ = make_fetcher(cache_config, {URL1: make_archive("CT18NLO", marker="new")})
        real_rename = os.rename

        def rename(src, dst):
            if ".staging-" in str(src):
                raise OSError(errno.ENOSPC, "No space left on device")
            return real_rename(src, dst)

        with patch("managed_lhapdf.cache.fetcher.os.rename", side_effect=rename):
            with pytest.raises(CacheError, match="Cannot install PDF set"):
                fetcher.fetch("CT18NLO")

        assert (write_dir / "CT18NLO" / "CT18NLO.info").read_text() == "NumMembers: 2\n"
        assert [p.name for p in write_dir.iterdir() if p.name.startswith(".")] == []


class TestSessionProvider:
    """Test HTTP session handling across threads."""

    def test_one_session_per_thread(self):
        provider = SessionProvider()
        other = []

        thread = threading.Thread(target=lambda: other.append(provider.get()))
        thread.start()
        thread.join()

        session = provider.get()
        assert isinstance(session, requests.Session)
        assert provider.get() is session
        assert other[0] is not session

    def test_explicit_session_is_shared(self):
        session = FakeSession()
        provider = SessionProvider(session)
        other = []

        thread = threading.Thread(target=lambda: other.append(provider.get()))
        thread.start()
        thread.join()

        assert provider.get() is session
        assert other == [session]

    def test_fetcher_default_sessions(self, cache_config):
        fetcher = DatasetFetcher(cache_config)

        assert fetcher.session is fetcher.session
        assert fetcher.session.headers["User-Agent"].startswith("managed-lhapdf/")
