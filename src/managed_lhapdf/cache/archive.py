"""Safe extraction of gzip-compressed tar archives.

Rejects members that would escape the destination (absolute paths, ``..``),
links and device files.
"""

import gzip
import logging
import os
import shutil
import tarfile
import zlib
from pathlib import Path
from typing import Dict, Optional, Tuple

from managed_lhapdf.errors import (
    ArchiveExtractionError,
    PathTraversalError,
    SymlinkError,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def is_path_safe(member_path: str, dest_dir: Path) -> Tuple[bool, Optional[str]]:
    """Check if a member path is safe to extract.

    Args:
        member_path: The path from the archive member
        dest_dir: The destination directory for extraction

    Returns:
        Tuple of (is_safe, error_reason)
    """
    normalized = os.path.normpath(member_path)

    if os.path.isabs(normalized):
        return False, f"absolute_path:{member_path}"

    if normalized == ".." or normalized.startswith(".." + os.sep):
        return False, f"path_traversal:{member_path}"

    try:
        (dest_dir / normalized).resolve().relative_to(dest_dir.resolve())
    except ValueError:
        return False, f"escapes_dest:{member_path}"
    except OSError as e:
        return False, f"path_resolution_error:{member_path}:{e}"

    return True, None


def safe_extract_tar(archive_path: Path, dest_dir: Path) -> Dict[str, int]:
    """Safely extract a ``.tar.gz`` archive.

    Args:
        archive_path: Path to the archive
        dest_dir: Destination directory, created if missing

    Returns:
        Dict with ``files_extracted`` and ``bytes_extracted``

    Raises:
        ArchiveExtractionError: If the archive is unreadable or fails a safety check
    """
    dest_dir = Path(dest_dir).resolve()
    dest_dir.mkdir(parents=True, exist_ok=True)

    extracted_files = 0
    extracted_bytes = 0

    try:
        with tarfile.open(archive_path, "r:gz") as tf:
            for member in tf:
                is_safe, reason = is_path_safe(member.name, dest_dir)
                if not is_safe:
                    raise PathTraversalError(f"Unsafe path in archive: {reason}")

                if member.issym() or member.islnk():
                    raise SymlinkError(f"Symlink/hardlink not allowed: {member.name}")

                if member.isdev():
                    raise ArchiveExtractionError(f"Device file not allowed: {member.name}")

                target_path = dest_dir / member.name

                if member.isdir():
                    target_path.mkdir(parents=True, exist_ok=True)
                    continue

                if not member.isfile():
                    logger.debug(f"Skipping unsupported archive member {member.name}")
                    continue

                target_path.parent.mkdir(parents=True, exist_ok=True)
                src = tf.extractfile(member)
                if src is None:
                    continue
                with src, open(target_path, "wb") as dst:
                    shutil.copyfileobj(src, dst, CHUNK_SIZE)

                extracted_files += 1
                extracted_bytes += member.size
    except (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError) as e:
        raise ArchiveExtractionError(f"Cannot read archive {archive_path}: {e}") from e

    logger.debug(
        f"Extracted {extracted_files} files ({extracted_bytes} bytes) "
        f"from {archive_path} into {dest_dir}"
    )
    return {"files_extracted": extracted_files, "bytes_extracted": extracted_bytes}
