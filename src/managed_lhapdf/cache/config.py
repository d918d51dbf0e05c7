"""Cache configuration management."""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import platformdirs
from typing_extensions import TypedDict

from managed_lhapdf.errors import ConfigError

logger = logging.getLogger(__name__)

APP_NAME = "managed-lhapdf"
CONFIG_FILENAME = "managed-lhapdf.json"
INDEX_FILENAME = "pdfsets.index"
SETTINGS_FILENAME = "lhapdf.conf"

DEFAULT_INDEX_URL = "https://lhapdfsets.web.cern.ch/current/pdfsets.index"
DEFAULT_REPOSITORY_URLS = ("https://lhapdfsets.web.cern.ch/current",)
DEFAULT_DOWNLOAD_TIMEOUT = 60.0

# Checked in order, the first one set wins
DATA_PATH_ENV_VARS = ("LHAPDF_DATA_PATH", "LHAPATH")
# Exported so that LHAPDF searches the same directories we manage
EXPORTED_DATA_PATH_ENV_VAR = "LHAPDF_DATA_PATH"

# Global defaults for LHAPDF, overridden by set- and member-level info files
DEFAULT_SETTINGS = """Verbosity: 1
Interpolator: logcubic
Extrapolator: continuation
ForcePositive: 0
AlphaS_Type: analytic
MZ: 91.1876
MUp: 0.002
MDown: 0.005
MStrange: 0.10
MCharm: 1.29
MBottom: 4.19
MTop: 172.9
Pythia6LambdaV5Compat: true
"""


class ConfigFile(TypedDict, total=False):
    """On-disk layout of the configuration file."""

    cache_read_dirs: List[str]
    cache_write_dir: Optional[str]
    index_url: str
    repository_urls: List[str]
    download_timeout: Optional[float]
    lock_timeout: Optional[float]


REQUIRED_FIELDS = ("cache_read_dirs", "cache_write_dir", "index_url", "repository_urls")
OPTIONAL_FIELDS = ("download_timeout", "lock_timeout")


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for the managed PDF set cache.

    Attributes:
        cache_write_dir: The only directory new sets and the index are written to.
            None puts the cache in read-only mode.
        cache_read_dirs: Additional directories searched for sets, never written
        index_url: URL of the ``pdfsets.index`` file resolving LHAIDs
        repository_urls: Base URLs tried in order for ``<setname>.tar.gz``
        download_timeout: Network timeout in seconds per request (None = no timeout)
        lock_timeout: Maximum seconds to wait for a lock (None = wait forever)
    """

    cache_write_dir: Optional[Path]
    cache_read_dirs: tuple = ()
    index_url: str = DEFAULT_INDEX_URL
    repository_urls: tuple = DEFAULT_REPOSITORY_URLS
    download_timeout: Optional[float] = DEFAULT_DOWNLOAD_TIMEOUT
    lock_timeout: Optional[float] = None
    _config_path: Optional[Path] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        """Normalize paths and sequences so instances compare and hash predictably."""
        write_dir = self.cache_write_dir
        if write_dir is not None:
            write_dir = Path(write_dir).expanduser()
        object.__setattr__(self, "cache_write_dir", write_dir)
        object.__setattr__(
            self,
            "cache_read_dirs",
            tuple(Path(p).expanduser() for p in self.cache_read_dirs),
        )
        object.__setattr__(self, "repository_urls", tuple(self.repository_urls))

    @property
    def read_only(self) -> bool:
        """True when no write directory is configured."""
        return self.cache_write_dir is None

    @property
    def search_paths(self) -> List[Path]:
        """Directories searched for sets: write directory first, then read directories."""
        paths = [self.cache_write_dir] if self.cache_write_dir is not None else []
        return paths + list(self.cache_read_dirs)

    @property
    def index_path(self) -> Optional[Path]:
        """Location of the writable index file, or None in read-only mode."""
        if self.cache_write_dir is None:
            return None
        return self.cache_write_dir / INDEX_FILENAME

    @property
    def config_path(self) -> Optional[Path]:
        """File this configuration was loaded from, if any."""
        return self._config_path

    def to_dict(self) -> ConfigFile:
        """Serialize to the on-disk representation."""
        return {
            "cache_read_dirs": [str(p) for p in self.cache_read_dirs],
            "cache_write_dir": (
                str(self.cache_write_dir) if self.cache_write_dir is not None else None
            ),
            "index_url": self.index_url,
            "repository_urls": list(self.repository_urls),
            "download_timeout": self.download_timeout,
            "lock_timeout": self.lock_timeout,
        }

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any], config_path: Optional[Path] = None
    ) -> "CacheConfig":
        """Build a configuration from its on-disk representation.

        Args:
            data: Parsed configuration file contents
            config_path: File the data came from, used in error messages

        Returns:
            CacheConfig instance

        Raises:
            ConfigError: If fields are unknown, missing or of the wrong type
        """
        source = f" in {config_path}" if config_path is not None else ""

        if not isinstance(data, Mapping):
            raise ConfigError(f"Configuration{source} must be a JSON object")

        unknown = sorted(set(data) - set(REQUIRED_FIELDS) - set(OPTIONAL_FIELDS))
        if unknown:
            raise ConfigError(f"Unknown configuration field(s){source}: {', '.join(unknown)}")

        missing = [name for name in REQUIRED_FIELDS if name not in data]
        if missing:
            raise ConfigError(f"Missing configuration field(s){source}: {', '.join(missing)}")

        write_dir = data["cache_write_dir"]
        if write_dir is not None and not isinstance(write_dir, str):
            raise ConfigError(f"'cache_write_dir'{source} must be a string or null")

        for name in ("cache_read_dirs", "repository_urls"):
            value = data[name]
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ConfigError(f"'{name}'{source} must be a list of strings")

        if not isinstance(data["index_url"], str):
            raise ConfigError(f"'index_url'{source} must be a string")

        timeouts = {}
        for name in OPTIONAL_FIELDS:
            value = data.get(name, getattr(cls, name))
            if value is not None and (
                isinstance(value, bool) or not isinstance(value, (int, float))
            ):
                raise ConfigError(f"'{name}'{source} must be a number or null")
            timeouts[name] = float(value) if value is not None else None

        return cls(
            cache_write_dir=Path(write_dir) if write_dir else None,
            cache_read_dirs=tuple(Path(p) for p in data["cache_read_dirs"]),
            index_url=data["index_url"],
            repository_urls=tuple(data["repository_urls"]),
            _config_path=config_path,
            **timeouts,
        )

    @classmethod
    def load(cls, config_path: Path) -> "CacheConfig":
        """Load configuration from file.

        Args:
            config_path: Path to config file

        Returns:
            CacheConfig instance

        Raises:
            ConfigError: If the file cannot be read or is malformed
        """
        try:
            with open(config_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Malformed configuration file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {config_path}: {e}") from e

        return cls.from_dict(data, config_path=config_path)

    def save(self, config_path: Path) -> None:
        """Save configuration to file, replacing any existing one.

        Args:
            config_path: Path to config file
        """
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w") as f:
                json.dump(self.to_dict(), f, indent=2)
                f.write("\n")
        except OSError as e:
            raise ConfigError(f"Cannot write configuration file {config_path}: {e}") from e

    @classmethod
    def default(cls, environ: Optional[Mapping[str, str]] = None) -> "CacheConfig":
        """Synthesize the default configuration.

        The write directory is the per-user data directory unless one of
        LHAPDF_DATA_PATH or LHAPATH is set. In that case its colon-separated
        entries are used: the first becomes the write directory, the rest are
        read-only search directories.

        Args:
            environ: Environment to consult (defaults to os.environ)

        Returns:
            CacheConfig instance
        """
        environ = os.environ if environ is None else environ

        paths = data_path_from_env(environ)
        if paths:
            return cls(cache_write_dir=paths[0], cache_read_dirs=tuple(paths[1:]))

        try:
            data_dir = platformdirs.user_data_dir(APP_NAME)
        except Exception as e:
            raise ConfigError(f"No data directory found: {e}") from e
        return cls(cache_write_dir=Path(data_dir))


def data_path_from_env(environ: Mapping[str, str]) -> List[Path]:
    """Return the search path override from the environment, if any.

    Args:
        environ: Environment mapping

    Returns:
        Paths in order, empty if neither variable is set
    """
    for name in DATA_PATH_ENV_VARS:
        value = environ.get(name)
        if value is not None:
            return [Path(p) for p in value.split(":") if p]
    return []


def default_config_path() -> Path:
    """Per-user location of the configuration file."""
    try:
        return Path(platformdirs.user_config_dir(APP_NAME)) / CONFIG_FILENAME
    except Exception as e:
        raise ConfigError(f"No configuration directory found: {e}") from e


def create_file_exclusive(path: Path, content: str) -> bool:
    """Atomically create ``path`` with ``content`` unless it already exists.

    The content is written to a temporary file first and hard-linked into
    place, so no reader ever sees a partially written file.

    Args:
        path: Destination file
        content: Text to write

    Returns:
        True if the file was created, False if it already existed
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        try:
            os.link(tmp_name, path)
        except FileExistsError:
            return False
        return True
    finally:
        os.unlink(tmp_name)


class ConfigStore:
    """Resolves and persists the configuration file.

    Examples:
        >>> store = ConfigStore(Path('/tmp/managed-lhapdf.json'))
        >>> config = store.load_or_create()
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config_path = Path(config_path) if config_path is not None else None
        self.environ = os.environ if environ is None else environ

    def load_or_create(self) -> CacheConfig:
        """Read the configuration file, creating it with defaults if absent.

        Returns:
            CacheConfig instance

        Raises:
            ConfigError: On unresolvable directories, unwritable filesystems or
                malformed configuration files
        """
        config_path = self.config_path or default_config_path()
        default = CacheConfig.default(self.environ)
        content = json.dumps(default.to_dict(), indent=2) + "\n"

        try:
            created = create_file_exclusive(config_path, content)
        except OSError as e:
            raise ConfigError(f"Cannot create configuration file {config_path}: {e}") from e

        if created:
            logger.info(f"Wrote default configuration to {config_path}")
        return CacheConfig.load(config_path)


def prepare_environment(
    config: CacheConfig, environ: Optional[Dict[str, str]] = None
) -> None:
    """Apply a configuration's side effects.

    Exports the search path so LHAPDF's own file lookup agrees with ours and,
    when writable, creates the write directory and its ``lhapdf.conf``.

    Args:
        config: Resolved configuration
        environ: Environment to modify (defaults to os.environ)

    Raises:
        ConfigError: If the write directory or settings file cannot be created
    """
    environ = os.environ if environ is None else environ
    environ[EXPORTED_DATA_PATH_ENV_VAR] = ":".join(str(p) for p in config.search_paths)

    if config.cache_write_dir is None:
        return

    settings_path = config.cache_write_dir / SETTINGS_FILENAME
    try:
        config.cache_write_dir.mkdir(parents=True, exist_ok=True)
        if not settings_path.exists() and create_file_exclusive(
            settings_path, DEFAULT_SETTINGS
        ):
            logger.debug(f"Wrote default LHAPDF settings to {settings_path}")
    except OSError as e:
        raise ConfigError(
            f"Cannot prepare cache write directory {config.cache_write_dir}: {e}"
        ) from e


# Global cache configuration instance
_global_config: Optional[CacheConfig] = None
_global_config_lock = threading.Lock()


def get_config() -> CacheConfig:
    """Get the process-wide configuration, initializing it on first use.

    A failed initialization is not remembered; the next call tries again.

    Returns:
        Global CacheConfig instance

    Raises:
        ConfigError: If the configuration cannot be resolved
    """
    global _global_config
    with _global_config_lock:
        if _global_config is None:
            config = ConfigStore().load_or_create()
            prepare_environment(config)
            _global_config = config
        return _global_config


def set_global_config(config: CacheConfig, prepare: bool = True) -> None:
    """Set the process-wide configuration explicitly.

    Args:
        config: CacheConfig instance to use globally
        prepare: Also export the search path and create the write directory
    """
    global _global_config
    with _global_config_lock:
        if prepare:
            prepare_environment(config)
        _global_config = config


def reset_global_config() -> None:
    """Forget the process-wide configuration so the next access reloads it."""
    global _global_config
    with _global_config_lock:
        _global_config = None
