"""
Typed errors raised at the serial device boundary.

pyserial reports most failures as ``SerialException`` with only a text
message, so open failures are classified exactly once, here, into an
``OpenErrorKind`` that the retry policy can switch on.
"""

import errno
from enum import Enum

_TRANSIENT_ERRNOS = frozenset({errno.EBUSY, errno.EACCES, errno.EPERM})
_TRANSIENT_MARKERS = ("access", "busy", "permission", "denied")


class OpenErrorKind(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


class LinkError(Exception):
    """Base class for every serial link failure."""


class OpenError(LinkError):
    def __init__(self, message: str, kind: OpenErrorKind = OpenErrorKind.FATAL):
        super().__init__(message)
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind is OpenErrorKind.TRANSIENT

    @classmethod
    def from_exception(cls, exc: BaseException) -> "OpenError":
        return cls(str(exc) or exc.__class__.__name__, classify_open_error(exc))


class ConfigureError(LinkError):
    """Control lines could not be set on a freshly opened port."""


class WriteError(LinkError):
    """A write or drain did not reach the device."""


class CloseError(LinkError):
    """The port refused a clean close."""


def classify_open_error(exc: BaseException) -> OpenErrorKind:
    """
    Decide whether an open failure is worth retrying.

    Busy ports, permission problems and access conflicts usually clear up
    once the previous owner lets go; anything else (missing device, bad
    path, unsupported baud rate) will not.
    """
    if getattr(exc, "errno", None) in _TRANSIENT_ERRNOS:
        return OpenErrorKind.TRANSIENT
    message = str(exc).lower()
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return OpenErrorKind.TRANSIENT
    return OpenErrorKind.FATAL
