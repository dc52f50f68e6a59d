# Serial link lifecycle
from robobridge.link.errors import (
    CloseError,
    ConfigureError,
    LinkError,
    OpenError,
    OpenErrorKind,
    WriteError,
)
from robobridge.link.handle import LinkHandle, SerialLink
from robobridge.link.manager import (
    LinkConfig,
    LinkManager,
    LinkState,
    StartOutcome,
    StopOutcome,
)
from robobridge.link.pending import PendingQueue, Trigger
from robobridge.link.reconnect import AutoReconnect
from robobridge.link.retry import open_with_retries
from robobridge.link.shutdown import close_gracefully

__all__ = [
    "AutoReconnect",
    "CloseError",
    "ConfigureError",
    "LinkConfig",
    "LinkError",
    "LinkHandle",
    "LinkManager",
    "LinkState",
    "OpenError",
    "OpenErrorKind",
    "PendingQueue",
    "SerialLink",
    "StartOutcome",
    "StopOutcome",
    "Trigger",
    "WriteError",
    "close_gracefully",
    "open_with_retries",
]
