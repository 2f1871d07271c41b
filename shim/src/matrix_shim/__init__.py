"""Matrix client-server API shim over AT Protocol OAuth."""

from .events import Event
from .http_api import RUNTIME_KEY, Runtime, create_app
from .notifier import ChangeNotifier
from .rooms import RoomStore
from .sessions import Session, SessionState
from .sync import SyncEndpoint

__all__ = [
    "ChangeNotifier",
    "Event",
    "RUNTIME_KEY",
    "RoomStore",
    "Runtime",
    "Session",
    "SessionState",
    "SyncEndpoint",
    "create_app",
]
