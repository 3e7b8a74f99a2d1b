"""TGV Max Jeune availability monitor
Async search engine with cached results and booking auto-confirmation
"""

__version__ = "0.3.0"

from .auth import AuthSessionStore
from .browser_driver import BrowserSession, CamoufoxSessionDriver
from .cache import ResponseCache, cache_ttl
from .engine import TGVMaxEngine
from .exceptions import (
    AuthError,
    BlockedError,
    NotAuthenticatedError,
    RemoteResponseError,
    SessionInitError,
    TGVMaxError,
    ValidationError,
)
from .fetcher import AvailabilityFetcher
from .models import (
    ActionResult,
    ActionStatus,
    AuthState,
    AutoConfirmTask,
    Booking,
    Credentials,
    LoginOutcome,
    LoginResult,
    SessionState,
    TaskStatus,
)
from .scheduler import AutoConfirmScheduler
from .session import SessionLifecycleManager

__all__ = [
    "__version__",
    "AuthSessionStore",
    "AutoConfirmScheduler",
    "AvailabilityFetcher",
    "BrowserSession",
    "CamoufoxSessionDriver",
    "ResponseCache",
    "SessionLifecycleManager",
    "TGVMaxEngine",
    "cache_ttl",
    "TGVMaxError",
    "AuthError",
    "BlockedError",
    "NotAuthenticatedError",
    "RemoteResponseError",
    "SessionInitError",
    "ValidationError",
    "ActionResult",
    "ActionStatus",
    "AuthState",
    "AutoConfirmTask",
    "Booking",
    "Credentials",
    "LoginOutcome",
    "LoginResult",
    "SessionState",
    "TaskStatus",
]
