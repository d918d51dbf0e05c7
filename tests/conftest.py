import os
import threading

import pytest

from fakes import INDEX_URL, REPOSITORY_URLS, FakeBackend, FakeSession
from managed_lhapdf.cache.config import CacheConfig, reset_global_config
from managed_lhapdf.manager import LhapdfManager, reset_manager

DATA_PATH_VARS = ("LHAPDF_DATA_PATH", "LHAPATH")


@pytest.fixture(autouse=True)
def isolated_globals():
    """Keep process-wide state and the data path variables from leaking between tests."""
    saved = {name: os.environ.pop(name, None) for name in DATA_PATH_VARS}
    reset_global_config()
    reset_manager()
    yield
    reset_global_config()
    reset_manager()
    for name, value in saved.items():
        if value is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = value


@pytest.fixture
def write_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def cache_config(write_dir):
    """Create test cache configuration."""
    return CacheConfig(
        cache_write_dir=write_dir,
        index_url=INDEX_URL,
        repository_urls=REPOSITORY_URLS,
        lock_timeout=10,
    )


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def backend(cache_config):
    return FakeBackend(cache_config)


@pytest.fixture
def manager(cache_config, backend, session):
    """Create test manager with a private library mutex."""
    return LhapdfManager(
        cache_config,
        backend=backend,
        session=session,
        library_lock=threading.RLock(),
    )
