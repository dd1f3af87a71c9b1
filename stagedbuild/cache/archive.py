"""Archive helpers for moving artifact sets between stores.

Artifact sets are transported as gzip-compressed tarballs. Members are
added in sorted order and extraction refuses any path that would escape
the destination directory.
"""

from __future__ import annotations

import io
import logging
import tarfile
from pathlib import Path

from stagedbuild.errors import CacheStoreError

logger = logging.getLogger(__name__)


def pack_directory(root: Path) -> bytes:
    """Pack a directory into an in-memory .tar.gz archive.

    Args:
        root: Directory to pack; paths are stored relative to it.

    Returns:
        Archive bytes.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for path in sorted(root.rglob("*")):
            if path.is_file() and not path.is_symlink():
                tar.add(path, arcname=path.relative_to(root).as_posix(), recursive=False)
    data = buffer.getvalue()
    logger.debug("Packed %s into %d bytes", root, len(data))
    return data


def unpack_archive(data: bytes, dest_dir: Path) -> Path:
    """Extract an in-memory .tar.gz archive.

    Args:
        data: Archive bytes.
        dest_dir: Destination directory (created if missing).

    Returns:
        The destination directory.

    Raises:
        CacheStoreError: If the archive is corrupt or unsafe.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            for member in tar.getmembers():
                # Security: prevent path traversal
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise CacheStoreError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )
            tar.extractall(dest_dir, filter="data")
    except (tarfile.TarError, EOFError, OSError) as e:
        raise CacheStoreError(
            f"Corrupt artifact archive: {e}", code="corrupt_archive"
        ) from e
    return dest_dir


__all__ = ["pack_directory", "unpack_archive"]
