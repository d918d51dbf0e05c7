"""The LHAID index: parsing, lookup and refresh."""

import bisect
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import requests

from managed_lhapdf.cache.config import INDEX_FILENAME, CacheConfig
from managed_lhapdf.cache.fetcher import SessionProvider
from managed_lhapdf.cache.locking import INDEX_RESOURCE, LockManager
from managed_lhapdf.errors import CacheError, NetworkError, ReadOnlyCacheError

logger = logging.getLogger(__name__)

IndexEntries = List[Tuple[int, str]]


def parse_index(text: str) -> IndexEntries:
    """Parse the contents of a ``pdfsets.index`` file.

    Each line holds ``<lhaid> <setname> [<version>]``. Blank lines, comments
    and lines without a numeric first column are ignored.

    Args:
        text: File contents

    Returns:
        (first LHAID, set name) pairs sorted by LHAID
    """
    entries = {}
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 2 or fields[0].startswith("#"):
            continue
        try:
            lhaid = int(fields[0])
        except ValueError:
            continue
        entries[lhaid] = fields[1]
    return sorted(entries.items())


def lookup_in_entries(
    entries: IndexEntries, lhaid: int, first_ids: Optional[Sequence[int]] = None
) -> Optional[Tuple[str, int]]:
    """Resolve ``lhaid`` the way LHAPDF does.

    The owning set is the entry with the largest first LHAID not above
    ``lhaid``; the member is the offset from that first LHAID.

    Args:
        entries: Sorted output of parse_index
        lhaid: The LHAID to resolve
        first_ids: The first column of ``entries``, if already extracted

    Returns:
        (set name, member) or None if ``lhaid`` precedes every entry
    """
    if lhaid < 0:
        return None
    if first_ids is None:
        first_ids = [first for first, _ in entries]
    pos = bisect.bisect_right(first_ids, lhaid)
    if pos == 0:
        return None
    first, setname = entries[pos - 1]
    return setname, lhaid - first


class IndexFile:
    """Memoized reader for the first ``pdfsets.index`` along the search paths."""

    def __init__(self, search_paths: Sequence[Path]):
        self.search_paths = list(search_paths)
        self._entries: Optional[IndexEntries] = None
        self._first_ids: List[int] = []
        self._lock = threading.Lock()

    def path(self) -> Optional[Path]:
        """The index file currently in effect, or None."""
        for directory in self.search_paths:
            candidate = directory / INDEX_FILENAME
            if candidate.is_file():
                return candidate
        return None

    def _load(self) -> IndexEntries:
        if self._entries is None:
            path = self.path()
            if path is None:
                logger.debug("No pdfsets.index found in the search paths")
                entries = []
            else:
                entries = parse_index(path.read_text())
            self._first_ids = [first for first, _ in entries]
            self._entries = entries
        return self._entries

    def entries(self) -> IndexEntries:
        with self._lock:
            return self._load()

    def lookup(self, lhaid: int) -> Optional[Tuple[str, int]]:
        with self._lock:
            entries = self._load()
            first_ids = self._first_ids
        return lookup_in_entries(entries, lhaid, first_ids)

    def clear(self) -> None:
        """Drop the memoized contents so the next lookup re-reads from disk."""
        with self._lock:
            self._entries = None
            self._first_ids = []


class IndexResolver:
    """Resolves LHAIDs, refreshing the cached index once per miss.

    The lookup itself is delegated to the library backend so that its view of
    the index and ours never disagree. A miss triggers one unconditional
    refresh (there is no version signal to tell a stale index from a current
    one), followed by one more lookup.
    """

    def __init__(
        self,
        config: CacheConfig,
        backend,
        locks: LockManager,
        session: Optional[requests.Session],
        library_lock,
    ):
        """Initialize resolver.

        Args:
            config: Cache configuration
            backend: LibraryBackend answering lookups
            locks: Lock manager providing the index lock
            session: HTTP session used to download the index (one per thread if None)
            library_lock: Mutex serializing every backend call
        """
        self.config = config
        self.backend = backend
        self.locks = locks
        self.sessions = SessionProvider(session)
        self.library_lock = library_lock

    @property
    def session(self) -> requests.Session:
        return self.sessions.get()

    def _lookup(self, lhaid: int) -> Optional[Tuple[str, int]]:
        with self.library_lock:
            return self.backend.lookup_pdf(lhaid)

    def resolve(self, lhaid: int) -> Optional[Tuple[str, int]]:
        """Resolve an LHAID to its set name and member.

        Args:
            lhaid: The LHAID

        Returns:
            (set name, member), or None if the ID is unknown even after a refresh

        Raises:
            ReadOnlyCacheError: If the ID is missing and the index cannot be refreshed
            NetworkError: If the index download fails
        """
        result = self._lookup(lhaid)
        if result is not None:
            return result

        logger.info(f"LHAID {lhaid} not in the cached index, refreshing it")
        self.refresh()
        return self._lookup(lhaid)

    def refresh(self) -> Path:
        """Download the index and atomically replace the cached copy.

        Returns:
            Path of the written index file
        """
        index_path = self.config.index_path
        if index_path is None:
            raise ReadOnlyCacheError(INDEX_RESOURCE)

        with self.locks.acquire(INDEX_RESOURCE):
            content = self._download()
            self._replace(index_path, content)

            # the backend re-reads the index on its next lookup
            with self.library_lock:
                self.backend.invalidate_index()

        logger.info(f"Updated {index_path} from {self.config.index_url}")
        return index_path

    def _download(self) -> str:
        url = self.config.index_url
        try:
            response = self.session.get(url, timeout=self.config.download_timeout)
            with response:
                response.raise_for_status()
                return response.text
        except requests.RequestException as e:
            raise NetworkError(f"Failed to download index {url}: {e}") from e

    @staticmethod
    def _replace(index_path: Path, content: str) -> None:
        """Write ``content`` to a temporary file and rename it over ``index_path``."""
        index_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=index_path.parent, prefix=f".{index_path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp_name, index_path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise CacheError(f"Cannot write index file {index_path}: {e}") from e
