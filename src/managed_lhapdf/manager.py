"""Managed access to LHAPDF.

Calls into LHAPDF that can fail only because data has not been downloaded yet
are wrapped here. When such a failure is recognized, the missing set (or the
LHAID index) is acquired under its lock and the call is retried once. Any
other outcome is passed to the caller unchanged.
"""

import logging
import threading
from typing import Any, Callable, Optional, Tuple, TypeVar

import requests

from managed_lhapdf.backend import LhapdfBackend, LibraryBackend, is_missing_set
from managed_lhapdf.cache.config import CacheConfig, get_config
from managed_lhapdf.cache.fetcher import DatasetFetcher
from managed_lhapdf.cache.index import IndexResolver
from managed_lhapdf.cache.locking import LockManager, validate_resource_name
from managed_lhapdf.errors import UnknownLhaidError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# LHAPDF keeps process-global state (verbosity, caches) that is not
# documented as thread-safe, so every call into it holds this mutex.
_LIBRARY_LOCK = threading.RLock()


class LhapdfManager:
    """Coordinates LHAPDF calls with on-demand acquisition of missing data.

    At most one fetch (or index refresh) happens per call, followed by at
    most one retry.

    Examples:
        >>> manager = LhapdfManager(get_config())
        >>> pdf = manager.mk_pdf('CT18NLO', 0)
    """

    def __init__(
        self,
        config: CacheConfig,
        backend: Optional[LibraryBackend] = None,
        locks: Optional[LockManager] = None,
        fetcher: Optional[DatasetFetcher] = None,
        index: Optional[IndexResolver] = None,
        session: Optional[requests.Session] = None,
        library_lock: Optional[Any] = None,
    ):
        """Initialize manager.

        Args:
            config: Cache configuration
            backend: Library backend (LhapdfBackend if None)
            locks: Lock manager for the write directory
            fetcher: Fetcher installing missing sets
            index: Resolver for LHAIDs
            session: HTTP session shared by fetcher and resolver. If None, each
                thread gets its own, since downloads run outside the library mutex.
            library_lock: Mutex serializing backend calls (process-wide if None)
        """
        self.config = config
        self.backend = backend if backend is not None else LhapdfBackend(config)
        self.library_lock = library_lock if library_lock is not None else _LIBRARY_LOCK
        self.locks = locks if locks is not None else LockManager(config)
        self.fetcher = (
            fetcher if fetcher is not None else DatasetFetcher(config, session=session)
        )
        self.index = (
            index
            if index is not None
            else IndexResolver(config, self.backend, self.locks, session, self.library_lock)
        )

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        with self.library_lock:
            return fn(*args)

    def _call_with_acquisition(self, setname: str, fn: Callable[..., T], *args: Any) -> T:
        """Invoke ``fn``; if ``setname`` is missing, acquire it and retry once."""
        try:
            return self._call(fn, *args)
        except Exception as error:
            if not is_missing_set(error, setname):
                raise
            logger.info(f"PDF set '{setname}' is not installed locally, acquiring it")

        self.acquire_set(setname)
        return self._call(fn, *args)

    def acquire_set(self, setname: str, force: bool = False) -> None:
        """Install ``setname`` unless another caller already did.

        Args:
            setname: Name of the PDF set
            force: Download even if the set is already installed
        """
        validate_resource_name(setname)
        with self.locks.acquire(setname):
            installed = self.fetcher.is_installed(setname)
            if installed is not None and not force:
                logger.info(f"PDF set '{setname}' already present in {installed}")
                return
            self.fetcher.fetch(setname)

    def lookup_pdf(self, lhaid: int) -> Optional[Tuple[str, int]]:
        """Convert an LHAID to a set name and member.

        Returns:
            (set name, member), or None for an unknown LHAID
        """
        return self.index.resolve(lhaid)

    def mk_pdf(self, setname: str, member: int = 0) -> Any:
        """Create the PDF ``member`` of ``setname``, downloading the set if needed."""
        return self._call_with_acquisition(setname, self.backend.mk_pdf, setname, member)

    def mk_pdf_lhaid(self, lhaid: int) -> Any:
        """Create the PDF with the given LHAID.

        Raises:
            UnknownLhaidError: If the LHAID is unknown even after an index refresh
        """
        result = self.lookup_pdf(lhaid)
        if result is None:
            raise UnknownLhaidError(lhaid)
        setname, member = result
        return self.mk_pdf(setname, member)

    def mk_pdf_setname_nmem(self, setname_nmem: str) -> Any:
        """Create a PDF from a ``<setname>/<member>`` string.

        Without ``/<member>``, member 0 is used.
        """
        setname, member = parse_setname_nmem(setname_nmem)
        return self.mk_pdf(setname, member)

    def get_pdfset(self, setname: str) -> Any:
        """Create the metadata object of ``setname``, downloading the set if needed."""
        return self._call_with_acquisition(setname, self.backend.get_pdfset, setname)

    def set_verbosity(self, verbosity: int) -> None:
        self._call(self.backend.set_verbosity, verbosity)

    def verbosity(self) -> int:
        return self._call(self.backend.verbosity)


def parse_setname_nmem(setname_nmem: str) -> Tuple[str, int]:
    """Split ``<setname>/<member>`` into its parts.

    Raises:
        ValueError: If the member is not an integer
    """
    setname, sep, nmem = setname_nmem.partition("/")
    if not sep:
        return setname, 0
    try:
        return setname, int(nmem)
    except ValueError as e:
        raise ValueError(f"problem while parsing member index = {nmem}: '{e}'") from e


_global_manager: Optional[LhapdfManager] = None
_global_manager_lock = threading.Lock()


def get_manager() -> LhapdfManager:
    """Get the process-wide manager, built from the global configuration."""
    global _global_manager
    with _global_manager_lock:
        if _global_manager is None:
            _global_manager = LhapdfManager(get_config())
        return _global_manager


def set_manager(manager: LhapdfManager) -> None:
    global _global_manager
    with _global_manager_lock:
        _global_manager = manager


def reset_manager() -> None:
    global _global_manager
    with _global_manager_lock:
        _global_manager = None
