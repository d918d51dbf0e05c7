"""Download and installation of PDF sets from remote repositories."""

import logging
import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import List, Optional, Tuple

import requests

from managed_lhapdf import __version__
from managed_lhapdf.cache.archive import safe_extract_tar
from managed_lhapdf.cache.config import CacheConfig
from managed_lhapdf.cache.locking import validate_resource_name
from managed_lhapdf.errors import (
    ArchiveExtractionError,
    CacheError,
    CachePermissionError,
    NetworkError,
    NotFoundRemotelyError,
    ReadOnlyCacheError,
)

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
INFO_SUFFIX = ".info"
CHUNK_SIZE = 1024 * 1024


def make_session() -> requests.Session:
    """Create the HTTP session used for all downloads."""
    session = requests.Session()
    session.headers["User-Agent"] = f"managed-lhapdf/{__version__}"
    return session


class SessionProvider:
    """Hands each thread its own requests.Session.

    requests does not document Session as thread-safe, and downloads of
    different sets run concurrently. A session passed in explicitly is
    returned to every thread as is.
    """

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session
        self._local = threading.local()

    def get(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = make_session()
            self._local.session = session
        return session


def _cache_error(message: str, error: OSError) -> CacheError:
    if isinstance(error, PermissionError):
        return CachePermissionError(f"{message}: {error}")
    return CacheError(f"{message}: {error}")


def archive_url(base_url: str, setname: str) -> str:
    """URL of the archive for ``setname`` below a repository base URL."""
    return f"{base_url.rstrip('/')}/{setname}{ARCHIVE_SUFFIX}"


def find_installed(setname: str, search_paths: List[Path]) -> Optional[Path]:
    """Return the first directory in ``search_paths`` holding ``setname``.

    A set counts as installed when its info file exists.
    """
    for directory in search_paths:
        set_dir = directory / setname
        if (set_dir / f"{setname}{INFO_SUFFIX}").is_file():
            return set_dir
    return None


def _activate_staged_dir(staged_dir: Path, final_dir: Path) -> None:
    """Move a fully extracted set directory into place via atomic rename.

    An existing directory at ``final_dir`` is swapped out first and removed
    afterwards, or restored if the rename fails.
    """
    backup_dir: Optional[Path] = None

    if final_dir.exists():
        backup_dir = final_dir.with_name(
            f".{final_dir.name}.backup-{os.getpid()}-{time.time_ns()}"
        )
        os.rename(final_dir, backup_dir)

    try:
        os.rename(staged_dir, final_dir)
    except OSError:
        if backup_dir is not None and backup_dir.exists() and not final_dir.exists():
            try:
                os.rename(backup_dir, final_dir)
            except OSError as restore_error:
                logger.error(
                    f"Failed to restore previous set directory {final_dir}: {restore_error}"
                )
        raise

    if backup_dir is not None:
        shutil.rmtree(backup_dir, ignore_errors=True)


class DatasetFetcher:
    """Fetches PDF set archives and installs them into the cache write directory.

    Repositories are tried in order. A 404 from one repository moves on to the
    next; any other failure aborts the fetch. Callers must hold the lock for
    the set being fetched.

    Examples:
        >>> fetcher = DatasetFetcher(config)
        >>> with locks.acquire('CT18NLO'):
        ...     fetcher.fetch('CT18NLO')
    """

    def __init__(
        self,
        config: CacheConfig,
        session: Optional[requests.Session] = None,
        show_progress: bool = False,
    ):
        """Initialize fetcher.

        Args:
            config: Cache configuration
            session: HTTP session shared by all threads (one per thread if None)
            show_progress: Display a rich progress bar while downloading
        """
        self.config = config
        self.sessions = SessionProvider(session)
        self.show_progress = show_progress

    @property
    def session(self) -> requests.Session:
        return self.sessions.get()

    def is_installed(self, setname: str) -> Optional[Path]:
        """Directory holding ``setname`` in any search path, or None."""
        return find_installed(setname, self.config.search_paths)

    def installed_sets(self) -> List[Tuple[str, Path, bool]]:
        """List sets present in the search paths.

        Returns:
            Tuples of (set name, directory, writable), shadowed duplicates excluded
        """
        seen = set()
        result = []
        for directory in self.config.search_paths:
            if not directory.is_dir():
                continue
            writable = directory == self.config.cache_write_dir
            for entry in sorted(directory.iterdir()):
                if entry.name in seen or entry.name.startswith("."):
                    continue
                if (entry / f"{entry.name}{INFO_SUFFIX}").is_file():
                    seen.add(entry.name)
                    result.append((entry.name, entry, writable))
        return result

    def fetch(self, setname: str) -> Path:
        """Download ``setname`` and install it into the write directory.

        Args:
            setname: Name of the PDF set

        Returns:
            Path of the installed set directory

        Raises:
            ReadOnlyCacheError: If no write directory is configured
            NotFoundRemotelyError: If every repository answered 404
            NetworkError: On any other transport or HTTP failure
            ArchiveExtractionError: If the archive is malformed or unsafe
        """
        validate_resource_name(setname)
        write_dir = self.config.cache_write_dir
        if write_dir is None:
            raise ReadOnlyCacheError(setname)

        try:
            write_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise _cache_error(f"Cannot create cache directory {write_dir}", e) from e

        tried = []
        for base_url in self.config.repository_urls:
            url = archive_url(base_url, setname)
            tried.append(url)

            archive_path = self._download(url, setname, write_dir)
            if archive_path is None:
                logger.debug(f"PDF set '{setname}' not found at {url}")
                continue

            try:
                installed = self._install(archive_path, setname, write_dir)
            finally:
                archive_path.unlink(missing_ok=True)

            logger.info(f"Installed PDF set '{setname}' from {url} into {installed}")
            return installed

        logger.warning(f"PDF set '{setname}' not found in any configured repository")
        raise NotFoundRemotelyError(setname, tried)

    def _download(self, url: str, setname: str, write_dir: Path) -> Optional[Path]:
        """Stream ``url`` into a temporary file inside ``write_dir``.

        Returns:
            Path to the downloaded file, or None on HTTP 404
        """
        logger.info(f"Downloading PDF set '{setname}' from {url}")
        try:
            response = self.session.get(url, stream=True, timeout=self.config.download_timeout)
        except requests.RequestException as e:
            logger.warning(f"Request for {url} failed: {e}")
            raise NetworkError(f"Failed to download {url}: {e}") from e

        with response:
            if response.status_code == 404:
                return None
            try:
                response.raise_for_status()
            except requests.HTTPError as e:
                logger.warning(f"Repository answered {response.status_code} for {url}")
                raise NetworkError(f"Failed to download {url}: {e}") from e

            try:
                fd, tmp_name = tempfile.mkstemp(
                    dir=write_dir, prefix=f".{setname}.", suffix=ARCHIVE_SUFFIX
                )
            except OSError as e:
                raise _cache_error(f"Cannot create download file in {write_dir}", e) from e
            tmp_path = Path(tmp_name)
            progress = None
            if self.show_progress:
                from managed_lhapdf.cache.progress import DownloadProgress

                total = response.headers.get("Content-Length")
                progress = DownloadProgress(
                    filename=f"{setname}{ARCHIVE_SUFFIX}",
                    total=int(total) if total and total.isdigit() else None,
                )
            try:
                with os.fdopen(fd, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            if progress is not None:
                                progress.update(len(chunk))
            except requests.RequestException as e:
                tmp_path.unlink(missing_ok=True)
                raise NetworkError(f"Failed to download {url}: {e}") from e
            except OSError as e:
                tmp_path.unlink(missing_ok=True)
                raise _cache_error(f"Cannot write download file {tmp_path}", e) from e
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise
            finally:
                if progress is not None:
                    progress.close()

        return tmp_path

    def _install(self, archive_path: Path, setname: str, write_dir: Path) -> Path:
        """Extract into a staging directory, then rename the set into place."""
        try:
            staging_dir = Path(
                tempfile.mkdtemp(dir=write_dir, prefix=f".{setname}.staging-")
            )
        except OSError as e:
            raise _cache_error(f"Cannot create staging directory in {write_dir}", e) from e
        try:
            try:
                safe_extract_tar(archive_path, staging_dir)
            except OSError as e:
                raise _cache_error(f"Cannot extract into {staging_dir}", e) from e

            staged_set = staging_dir / setname
            if not staged_set.is_dir():
                raise ArchiveExtractionError(
                    f"Archive for PDF set '{setname}' does not contain a '{setname}/' directory"
                )

            final_dir = write_dir / setname
            try:
                _activate_staged_dir(staged_set, final_dir)
            except OSError as e:
                raise _cache_error(f"Cannot install PDF set into {final_dir}", e) from e
            return final_dir
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)
