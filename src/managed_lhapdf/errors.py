"""Exception hierarchy for managed-lhapdf.

Errors raised by the LHAPDF library itself are never wrapped: they reach the
caller exactly as the library raised them.
"""

from typing import Sequence


class ManagedLhapdfError(Exception):
    """Base exception for failures of the managed cache layer."""

    pass


class ConfigError(ManagedLhapdfError):
    """Raised when the configuration cannot be resolved, read or persisted."""

    pass


class CacheError(ManagedLhapdfError):
    """Base exception for cache-related errors."""

    pass


class CacheLockError(CacheError):
    """Raised when a lock file cannot be created or acquired."""

    pass


class CachePermissionError(CacheError):
    """Raised when cache directory permissions are insufficient."""

    pass


class ReadOnlyCacheError(CacheError):
    """Raised when new data is needed but no write directory is configured."""

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(
            f"read-only cache, cannot acquire new data for '{resource}': "
            "no cache write directory is configured"
        )


class FetchError(ManagedLhapdfError):
    """Base exception for failures while acquiring remote data."""

    pass


class NetworkError(FetchError):
    """Raised for transport failures other than a clean 'not found'."""

    pass


class NotFoundRemotelyError(FetchError):
    """Raised when no configured repository has the requested PDF set."""

    def __init__(self, setname: str, urls: Sequence[str]):
        self.setname = setname
        self.urls = list(urls)
        super().__init__(
            f"could not acquire PDF set '{setname}': not found in any of the "
            f"configured repositories ({', '.join(self.urls) or 'none configured'})"
        )


class ArchiveExtractionError(FetchError):
    """Raised when a downloaded archive fails a safety check or is malformed."""

    pass


class PathTraversalError(ArchiveExtractionError):
    """Raised when an archive member would escape the destination."""

    pass


class SymlinkError(ArchiveExtractionError):
    """Raised when an archive contains a symlink or hardlink."""

    pass


class UnknownLhaidError(ManagedLhapdfError, LookupError):
    """Raised when an LHAID cannot be resolved even after an index refresh."""

    def __init__(self, lhaid: int):
        self.lhaid = lhaid
        super().__init__(f"did not find PDF with LHAID = {lhaid}")
