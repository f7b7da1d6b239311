"""
Attachment index: maps local files to attachment identities and keeps the
"already migrated" markers for them.

Markers are keyed by identity, never by path string, so a renamed file is
still recognised as migrated.

- PostgresAttachmentIndex reads the ``media_attachments`` catalog (one row
  per attachment, ``relative_path`` under the uploads root) and keeps markers
  in ``migration_markers``.
- MemoryAttachmentIndex identifies files by (device, inode) and keeps markers
  in a dict.
"""

import logging
import os
import threading
from typing import Dict, Optional

from file_enumerator import relative_key
from migration_models import Marker

logger = logging.getLogger(__name__)

# Markers written by older tooling to flag a failed upload.
_ERROR_BUCKET = "error"


class AttachmentIndex:
    """Interface shared by the index backends."""

    def lookup_identity(self, path: str) -> Optional[str]:
        raise NotImplementedError

    def get_marker(self, identity: str) -> Optional[Marker]:
        raise NotImplementedError

    def set_marker(self, identity: str, marker: Marker) -> None:
        raise NotImplementedError

    def clear_marker(self, identity: str) -> bool:
        raise NotImplementedError


class MemoryAttachmentIndex(AttachmentIndex):
    """Process-local index keyed by (st_dev, st_ino)."""

    def __init__(self) -> None:
        self._markers: Dict[str, Marker] = {}
        self._lock = threading.Lock()

    def lookup_identity(self, path: str) -> Optional[str]:
        try:
            st = os.stat(path)
        except OSError:
            return None
        return f"{st.st_dev}:{st.st_ino}"

    def get_marker(self, identity: str) -> Optional[Marker]:
        with self._lock:
            return self._markers.get(identity)

    def set_marker(self, identity: str, marker: Marker) -> None:
        with self._lock:
            self._markers[identity] = marker

    def clear_marker(self, identity: str) -> bool:
        with self._lock:
            return self._markers.pop(identity, None) is not None


class PostgresAttachmentIndex(AttachmentIndex):
    """Index backed by the attachment catalog tables."""

    def __init__(self, uploads_root: str, db_manager=None):
        self.uploads_root = os.path.abspath(uploads_root)
        self._db = db_manager

    @property
    def db(self):
        if self._db is None:
            from database import get_db_manager
            self._db = get_db_manager()
        return self._db

    def lookup_identity(self, path: str) -> Optional[str]:
        """Find the attachment for *path*.

        Matches the relative path exactly first, then falls back to a unique
        match on the file name (catalog entries recorded under another
        directory layout).
        """
        rel = relative_key(self.uploads_root, os.path.abspath(path))
        filename = os.path.basename(rel)
        with self.db.get_cursor() as cur:
            cur.execute(
                "SELECT id FROM media_attachments WHERE relative_path = %s",
                (rel,),
            )
            row = cur.fetchone()
            if row:
                return str(row[0])

            pattern = "%/" + filename.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            cur.execute(
                """
                SELECT id FROM media_attachments
                WHERE relative_path = %s OR relative_path LIKE %s
                LIMIT 2
                """,
                (filename, pattern),
            )
            rows = cur.fetchall()
        if len(rows) == 1:
            logger.debug("Matched %s to attachment %s by file name", rel, rows[0][0])
            return str(rows[0][0])
        if len(rows) > 1:
            logger.warning("Ambiguous attachment match for %s; skipping name fallback", rel)
        return None

    def get_marker(self, identity: str) -> Optional[Marker]:
        with self.db.get_cursor() as cur:
            cur.execute(
                "SELECT bucket, object_key, url FROM migration_markers WHERE attachment_id = %s",
                (int(identity),),
            )
            row = cur.fetchone()
        if not row or not row[1] or row[0] == _ERROR_BUCKET:
            return None
        return Marker(bucket=row[0], key=row[1], url=row[2] or "")

    def set_marker(self, identity: str, marker: Marker) -> None:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                INSERT INTO migration_markers (attachment_id, bucket, object_key, url)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (attachment_id) DO UPDATE
                SET bucket = EXCLUDED.bucket,
                    object_key = EXCLUDED.object_key,
                    url = EXCLUDED.url,
                    migrated_at = now()
                """,
                (int(identity), marker.bucket, marker.key, marker.url),
            )
        logger.debug("Recorded marker for attachment %s: %s", identity, marker.key)

    def clear_marker(self, identity: str) -> bool:
        with self.db.get_cursor() as cur:
            cur.execute(
                "DELETE FROM migration_markers WHERE attachment_id = %s",
                (int(identity),),
            )
            return cur.rowcount > 0


_index: Optional[AttachmentIndex] = None


def get_attachment_index() -> AttachmentIndex:
    """Get (or create) the index selected by MIGRATION_BACKEND."""
    global _index
    if _index is None:
        from config import get_config
        migration_config = get_config().migration
        if migration_config.backend == "memory":
            _index = MemoryAttachmentIndex()
        else:
            _index = PostgresAttachmentIndex(migration_config.uploads_root)
    return _index
