"""Shared test helpers for the media offload migrator test suite."""

import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import MagicMock

from alembic.config import Config
from alembic.script import ScriptDirectory

from file_enumerator import relative_key
from migration_models import DeleteFailedError, UploadFailedError

_PROJECT_ROOT = Path(__file__).parent.parent


def get_alembic_head() -> str:
    """Return current Alembic head revision dynamically.

    Uses project-root-based path so it works regardless of CWD.
    """
    cfg = Config(str(_PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    return ScriptDirectory.from_config(cfg).get_current_head()


def make_tree(root: Path, count: int, folders=("2023/01", "2023/02", "2024/07")) -> list:
    """Create *count* small .jpg files round-robin over *folders*; return their paths."""
    paths = []
    for i in range(count):
        folder = root / folders[i % len(folders)]
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"image_{i:03d}.jpg"
        path.write_bytes(b"\xff\xd8\xff" + str(i).encode())
        paths.append(str(path))
    return sorted(paths, key=lambda p: relative_key(str(root), p))


class FakeObjectStore:
    """In-memory stand-in for S3ObjectStore."""

    def __init__(self, uploads_root: str, bucket: str = "media-bucket", fail_paths=(), delay: float = 0.0):
        self.bucket = bucket
        self.uploads_root = os.path.abspath(uploads_root)
        self.fail_paths = set(fail_paths)
        self.delay = delay
        self.uploads = []
        self.objects = {}
        self.deleted = []
        self._lock = threading.Lock()

    def key_for(self, path: str) -> str:
        return "uploads/" + relative_key(self.uploads_root, os.path.abspath(path))

    def url_for(self, key: str) -> str:
        return f"https://cdn.example.com/{key}"

    def upload(self, path: str, key=None) -> str:
        key = key or self.key_for(path)
        if path in self.fail_paths:
            raise UploadFailedError("S3 upload failed: AccessDenied: Access Denied")
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.uploads.append(path)
            self.objects[key] = path
        return key

    def delete(self, key: str) -> None:
        with self._lock:
            if key not in self.objects:
                raise DeleteFailedError(f"S3 delete failed: NoSuchKey: {key}")
            del self.objects[key]
            self.deleted.append(key)

    def check_bucket(self) -> dict:
        return {"status": "healthy", "bucket": self.bucket, "endpoint": None}


def mock_db_manager():
    """A MagicMock DatabaseManager whose connections and cursors share one cursor mock.

    Returns (db_manager, connection, cursor).
    """
    cursor = MagicMock(name="cursor")
    cursor.__enter__.return_value = cursor
    cursor.rowcount = 1

    conn = MagicMock(name="connection")
    conn.cursor.return_value = cursor

    db = MagicMock(name="db_manager")

    @contextmanager
    def _get_connection():
        yield conn

    @contextmanager
    def _get_cursor(dict_cursor=False):
        yield cursor

    db.get_connection.side_effect = _get_connection
    db.get_cursor.side_effect = _get_cursor
    return db, conn, cursor


def executed_sql(cursor) -> list:
    """All SQL strings passed to cursor.execute, whitespace-normalized."""
    return [" ".join(c.args[0].split()) for c in cursor.execute.call_args_list]
