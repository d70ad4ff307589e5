"""Visitor check-in portal controller."""
from .session_manager import CheckInSessionManager
from .state import EntryDirective, PortalPhase

__all__ = [
    "CheckInSessionManager",
    "EntryDirective",
    "PortalPhase",
]
