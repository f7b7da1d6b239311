"""
Pytest configuration and fixtures for the media offload migrator tests.
"""

import os
import sys

import pytest

# Ensure project root is on the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment variables before importing config.
# The memory backend keeps the suite independent of a running PostgreSQL.
os.environ['ENVIRONMENT'] = 'development'
os.environ['MIGRATION_BACKEND'] = 'memory'
os.environ['MIGRATION_DRIVER_ENABLED'] = 'false'
os.environ['API_REQUIRE_AUTH'] = 'false'
os.environ['API_TOKEN_SECRET'] = 'test-token-secret'
os.environ['POSTGRES_DB'] = 'media_offload_test'
os.environ.pop('S3_BUCKET', None)

from helpers import FakeObjectStore, make_tree  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_config():
    """Reload configuration and drop service singletons around every test."""
    import config
    import services
    config.reload_config()
    services.reset_services()
    yield
    services.reset_services()
    config.reload_config()


@pytest.fixture
def uploads_root(tmp_path):
    """An uploads directory with 25 images spread over three folders."""
    root = tmp_path / "uploads"
    make_tree(root, 25)
    return root


@pytest.fixture
def memory_store():
    from migration_state import MemoryStateStore
    return MemoryStateStore()


@pytest.fixture
def memory_index():
    from attachment_index import MemoryAttachmentIndex
    return MemoryAttachmentIndex()


@pytest.fixture
def object_store(uploads_root):
    return FakeObjectStore(str(uploads_root))


@pytest.fixture
def make_controller(memory_store, memory_index, object_store, uploads_root):
    """Factory for controllers wired to in-memory backends."""
    from migration_controller import MigrationController

    def _make(**overrides):
        kwargs = dict(
            uploads_root=str(uploads_root),
            batch_size=10,
            allowed_extensions=None,
        )
        store = overrides.pop("store", memory_store)
        index = overrides.pop("index", memory_index)
        objects = overrides.pop("object_store", object_store)
        kwargs.update(overrides)
        return MigrationController(store, index, objects, **kwargs)

    return _make


@pytest.fixture
def controller(make_controller):
    return make_controller()
