"""
File enumeration for migration runs.

Walks the uploads root once per run and returns the fixed, ordered work
list. Symlinks are not followed unless asked to; when they are, each real
directory is visited at most once so link cycles terminate.
"""

import logging
import os
from typing import Iterable, List, Optional

from migration_models import EnumerationFailedError

logger = logging.getLogger(__name__)


def _normalize_extensions(extensions: Optional[Iterable[str]]) -> Optional[frozenset]:
    if not extensions:
        return None
    return frozenset(ext.lower().lstrip('.') for ext in extensions)


def _is_allowed(filename: str, extensions: Optional[frozenset]) -> bool:
    if filename.startswith('.'):
        return False
    if extensions is None:
        return True
    ext = os.path.splitext(filename)[1].lower().lstrip('.')
    return ext in extensions


def relative_key(root: str, path: str) -> str:
    """Return *path* relative to *root* with forward slashes."""
    rel = os.path.relpath(path, root)
    return rel.replace(os.sep, '/')


def enumerate_files(
    root: str,
    allowed_extensions: Optional[Iterable[str]] = None,
    follow_symlinks: bool = False,
) -> List[str]:
    """List every regular file under *root*, sorted by relative path.

    Args:
        root: Directory to walk.
        allowed_extensions: Extensions to keep (case-insensitive, with or
            without the dot). None or empty keeps every file.
        follow_symlinks: Follow symlinked files and directories.

    Returns:
        Absolute file paths.

    Raises:
        EnumerationFailedError: If the root is missing, not a directory,
            or any directory in the tree cannot be read.
    """
    root = os.path.abspath(root)
    if not os.path.isdir(root):
        raise EnumerationFailedError(f"Uploads root is not a readable directory: {root}")
    if not os.access(root, os.R_OK | os.X_OK):
        raise EnumerationFailedError(f"Uploads root is not readable: {root}")

    extensions = _normalize_extensions(allowed_extensions)
    walk_errors: List[OSError] = []
    seen_dirs = set()
    files: List[str] = []

    for dirpath, dirnames, filenames in os.walk(
        root, onerror=walk_errors.append, followlinks=follow_symlinks
    ):
        if follow_symlinks:
            real = os.path.realpath(dirpath)
            if real in seen_dirs:
                dirnames[:] = []
                continue
            seen_dirs.add(real)

        for fname in filenames:
            if not _is_allowed(fname, extensions):
                continue
            fpath = os.path.join(dirpath, fname)
            if os.path.islink(fpath) and not follow_symlinks:
                continue
            if os.path.isfile(fpath):
                files.append(fpath)

    if walk_errors:
        first = walk_errors[0]
        raise EnumerationFailedError(
            f"Failed to read {first.filename or root}: {first.strerror or first}"
        )

    files.sort(key=lambda p: relative_key(root, p))
    logger.info("Enumerated %d files under %s", len(files), root)
    return files
