from .drive_client import DriveClient
from .store import TreeStore
from .sync_engine import SyncEngine

__all__ = ["DriveClient", "SyncEngine", "TreeStore"]
