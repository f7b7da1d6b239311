"""
Shared service instances for the media offload API.
"""

import logging
from typing import Optional

from migration_controller import MigrationController, build_controller

logger = logging.getLogger(__name__)

# Singletons for services
controller: Optional[MigrationController] = None


def get_controller() -> MigrationController:
    """Get or create singleton migration controller."""
    global controller
    if controller is None:
        controller = build_controller()
    return controller


def set_controller(instance: Optional[MigrationController]) -> None:
    """Install a controller instance (primarily for testing)."""
    global controller
    controller = instance


def reset_services():
    """Reset service singletons (primarily for testing)."""
    global controller
    import attachment_index
    import migration_driver
    import migration_state

    controller = None
    migration_state._store = None
    attachment_index._index = None
    migration_driver._driver = None
