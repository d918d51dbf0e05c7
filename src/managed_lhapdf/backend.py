"""Boundary to the LHAPDF library.

Everything the managed layer needs from LHAPDF goes through a LibraryBackend.
The default implementation wraps the ``lhapdf`` Python bindings; tests and
embedding applications can substitute their own.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple

from managed_lhapdf.cache.config import CacheConfig
from managed_lhapdf.cache.index import IndexFile

# Wording of LHAPDF's exception for a set whose info file is missing from
# every search path. Recovery depends on matching it exactly.
MISSING_SET_MESSAGE = "Info file not found for PDF set '{setname}'"


class MissingSetError(RuntimeError):
    """Structured 'set not installed' signal for backends able to raise one."""

    def __init__(self, setname: str):
        self.setname = setname
        super().__init__(MISSING_SET_MESSAGE.format(setname=setname))


def is_missing_set(error: BaseException, setname: str) -> bool:
    """Check whether ``error`` means ``setname`` is not installed locally.

    Args:
        error: Exception raised by the backend
        setname: Set the failing call asked for

    Returns:
        True if fetching the set and retrying may succeed
    """
    if isinstance(error, MissingSetError):
        return error.setname == setname
    return str(error) == MISSING_SET_MESSAGE.format(setname=setname)


class LibraryBackend(ABC):
    """Operations of the numeric library used by the managed layer.

    Implementations are not required to be thread-safe: the manager
    serializes every call.
    """

    @abstractmethod
    def lookup_pdf(self, lhaid: int) -> Optional[Tuple[str, int]]:
        """Resolve an LHAID to (set name, member), or None if unknown."""
        pass

    @abstractmethod
    def mk_pdf(self, setname: str, member: int) -> Any:
        """Construct a PDF member; raise the library's error if that fails."""
        pass

    @abstractmethod
    def get_pdfset(self, setname: str) -> Any:
        """Construct set-level metadata; raise the library's error if that fails."""
        pass

    @abstractmethod
    def invalidate_index(self) -> None:
        """Forget any in-memory copy of the index so it is re-read from disk."""
        pass

    @abstractmethod
    def set_verbosity(self, verbosity: int) -> None:
        pass

    @abstractmethod
    def verbosity(self) -> int:
        pass


class LhapdfBackend(LibraryBackend):
    """Backend using the ``lhapdf`` Python bindings.

    LHAID lookups are answered from an IndexFile over the configured search
    paths rather than ``lhapdf.lookupPDF``, since the bindings memoize the
    index for the lifetime of the process with no way to reset it.
    """

    def __init__(self, config: CacheConfig):
        self.config = config
        self.index = IndexFile(config.search_paths)
        self._lhapdf = None

    @property
    def lhapdf(self):
        if self._lhapdf is None:
            try:
                import lhapdf
            except ImportError as e:
                raise ImportError(
                    "Missing optional dependency 'lhapdf' required to construct PDFs. "
                    + "Please install LHAPDF with its Python bindings."
                ) from e
            lhapdf.setPaths([str(p) for p in self.config.search_paths])
            self._lhapdf = lhapdf
        return self._lhapdf

    def lookup_pdf(self, lhaid: int) -> Optional[Tuple[str, int]]:
        return self.index.lookup(lhaid)

    def mk_pdf(self, setname: str, member: int) -> Any:
        return self.lhapdf.mkPDF(setname, member)

    def get_pdfset(self, setname: str) -> Any:
        return self.lhapdf.getPDFSet(setname)

    def invalidate_index(self) -> None:
        self.index.clear()

    def set_verbosity(self, verbosity: int) -> None:
        self.lhapdf.setVerbosity(verbosity)

    def verbosity(self) -> int:
        return self.lhapdf.verbosity()
