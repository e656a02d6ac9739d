"""Service layer for NoteBoard."""

from .advisories import AdvisoryCenter
from .change_listener import ChangeNotificationListener
from .compose_service import ComposeService
from .generation_client import GenerationClient
from .ownership_registry import OwnershipRegistry
from .persistence_gateway import PersistenceGateway
from .presence_tracker import PresenceTracker
from .sync_controller import EditPolicy, NoteSyncController

__all__ = [
    "AdvisoryCenter",
    "ChangeNotificationListener",
    "ComposeService",
    "EditPolicy",
    "GenerationClient",
    "NoteSyncController",
    "OwnershipRegistry",
    "PersistenceGateway",
    "PresenceTracker",
]
