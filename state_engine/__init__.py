"""State engine package exports."""

from .mailbox import Mailbox
from .status import ServerStatus, StatusKind

__all__ = [
    "Mailbox",
    "ServerStatus",
    "StatusKind",
]
