"""Cross-process locks guarding writes into the cache directory."""

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from filelock import FileLock, Timeout

from managed_lhapdf.cache.config import CacheConfig
from managed_lhapdf.errors import CacheLockError, CachePermissionError, ReadOnlyCacheError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lock resource guarding pdfsets.index
INDEX_RESOURCE = "pdfsets"


def validate_resource_name(name: str) -> None:
    """Reject names that are empty or could point outside the cache directory.

    Args:
        name: Set name or other lock resource

    Raises:
        ValueError: If the name is empty or contains a path separator
    """
    if not name or name in (".", ".."):
        raise ValueError(f"Invalid resource name: {name!r}")
    separators = {"/", os.sep}
    if os.altsep:
        separators.add(os.altsep)
    if any(sep in name for sep in separators):
        raise ValueError(f"Resource name must not contain a path separator: {name!r}")


class LockManager:
    """Hands out one exclusive file lock per resource in the write directory.

    Locks are advisory and exclude other processes as well as other threads of
    the same process. Waiters are not ordered.
    """

    def __init__(self, config: CacheConfig):
        """Initialize lock manager.

        Args:
            config: Cache configuration providing the write directory
        """
        self.config = config

    def lock_path(self, resource: str) -> Path:
        """Get lock file path for a resource.

        Args:
            resource: Name of the resource

        Returns:
            Path to lock file

        Raises:
            ReadOnlyCacheError: If no write directory is configured
        """
        validate_resource_name(resource)
        if self.config.cache_write_dir is None:
            raise ReadOnlyCacheError(resource)
        return self.config.cache_write_dir / f"{resource}.lock"

    @contextmanager
    def acquire(self, resource: str) -> Iterator[Path]:
        """Hold the exclusive lock for ``resource`` for the duration of the block.

        The lock is released on every exit path, including exceptions raised
        inside the block.

        Args:
            resource: Name of the resource (a set name or INDEX_RESOURCE)

        Yields:
            Path to the lock file

        Raises:
            ReadOnlyCacheError: If no write directory is configured
            CacheLockError: If the lock cannot be created, acquired in time or released
            CachePermissionError: If the write directory cannot be created
        """
        lock_path = self.lock_path(resource)

        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise CachePermissionError(
                f"Cannot create cache directory {lock_path.parent}: {e}"
            ) from e
        except OSError as e:
            raise CacheLockError(f"Cannot create lock directory {lock_path.parent}: {e}") from e

        timeout = self.config.lock_timeout
        lock = FileLock(lock_path, timeout=-1 if timeout is None else timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise CacheLockError(
                f"Timeout acquiring lock for {resource} after {timeout} seconds"
            ) from e
        except OSError as e:
            raise CacheLockError(f"Cannot acquire lock {lock_path}: {e}") from e

        logger.debug(f"Acquired lock {lock_path}")
        try:
            yield lock_path
        finally:
            try:
                lock.release()
            except OSError as e:
                raise CacheLockError(f"Cannot release lock {lock_path}: {e}") from e
            logger.debug(f"Released lock {lock_path}")

    def with_lock(self, resource: str, critical_section: Callable[[], T]) -> T:
        """Run ``critical_section`` while holding the lock for ``resource``.

        Args:
            resource: Name of the resource
            critical_section: Callable to run

        Returns:
            Whatever ``critical_section`` returns
        """
        with self.acquire(resource):
            return critical_section()
