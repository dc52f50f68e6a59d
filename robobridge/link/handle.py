"""
Serial link handle: a thin async wrapper around a ``pyserial`` port.

pyserial is blocking, so every call that can touch the device runs in a
worker thread via ``asyncio.to_thread``.  The handle never retries anything
on its own; retries belong to ``robobridge.link.retry`` and cleanup to
``robobridge.link.shutdown``.

Listeners
---------
One listener per kind (``data``, ``error``, ``close``).  Registering a new
listener for a kind replaces the previous one, so a handle that is reused
after a re-open can never deliver the same event twice.

Usage
-----
    handle = SerialLink("/dev/ttyUSB0", 9600)
    await handle.open()
    await handle.configure(dtr=True, rts=True)
    handle.on_data(lambda chunk: print(chunk))
    await handle.write(b"F\\n")
    await handle.drain()
    await handle.close()
"""

import asyncio
import logging
from typing import Any, Callable, Protocol

import serial

from robobridge.link.errors import (
    CloseError,
    ConfigureError,
    OpenError,
    WriteError,
)

logger = logging.getLogger(__name__)

DataListener = Callable[[bytes], None]
ErrorListener = Callable[[Exception], None]
CloseListener = Callable[[], None]

_LISTENER_KINDS = ("data", "error", "close")

# Largest chunk pulled from the driver in a single read
_READ_CHUNK: int = 256


class LinkHandle(Protocol):
    """Contract the lifecycle manager relies on; ``SerialLink`` implements it."""

    path: str
    baudrate: int
    last_error: Exception | None

    @property
    def is_open(self) -> bool: ...

    async def open(self) -> None: ...

    async def configure(self, *, dtr: bool = True, rts: bool = True) -> None: ...

    async def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    async def flush(self) -> None: ...

    async def close(self) -> None: ...

    def destroy(self) -> None: ...

    def on_data(self, callback: DataListener) -> None: ...

    def on_error(self, callback: ErrorListener) -> None: ...

    def on_close(self, callback: CloseListener) -> None: ...

    def remove_all_listeners(self, kind: str | None = None) -> None: ...


class SerialLink:
    """A single physical connection attempt to a serial device."""

    def __init__(
        self,
        path: str,
        baudrate: int,
        *,
        read_timeout: float = 0.1,
        serial_factory: Callable[[], Any] = serial.Serial,
    ) -> None:
        self.path = path
        self.baudrate = baudrate
        self.last_error: Exception | None = None

        # Created unopened; ``open()`` performs the actual device open.
        self._serial = serial_factory()
        self._serial.port = path
        self._serial.baudrate = baudrate
        self._serial.timeout = read_timeout

        self._listeners: dict[str, Callable[..., None]] = {}
        self._reader: asyncio.Task | None = None
        self._closing = False

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"<SerialLink {self.path}@{self.baudrate} {state}>"

    @property
    def is_open(self) -> bool:
        return bool(self._serial.is_open)

    # ── Listeners ─────────────────────────────────────────────────────────────

    def _set_listener(self, kind: str, callback: Callable[..., None]) -> None:
        self.remove_all_listeners(kind)
        self._listeners[kind] = callback

    def on_data(self, callback: DataListener) -> None:
        self._set_listener("data", callback)

    def on_error(self, callback: ErrorListener) -> None:
        self._set_listener("error", callback)

    def on_close(self, callback: CloseListener) -> None:
        self._set_listener("close", callback)

    def remove_all_listeners(self, kind: str | None = None) -> None:
        if kind is None:
            self._listeners.clear()
        elif kind in _LISTENER_KINDS:
            self._listeners.pop(kind, None)
        else:
            raise ValueError(f"Unknown listener kind: {kind}")

    def _emit(self, kind: str, *args: Any) -> None:
        callback = self._listeners.get(kind)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            logger.error("Serial %s listener raised: %s", kind, exc, exc_info=True)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def open(self) -> None:
        """Open the port once.  Raises ``OpenError`` with a classified kind."""
        self._closing = False
        try:
            await asyncio.to_thread(self._serial.open)
        except (serial.SerialException, OSError, ValueError) as exc:
            self.last_error = exc
            raise OpenError.from_exception(exc) from exc

        logger.info("Serial port %s opened @ %d baud", self.path, self.baudrate)
        self._reader = asyncio.create_task(
            self._read_loop(), name=f"serial_reader:{self.path}"
        )

    async def configure(self, *, dtr: bool = True, rts: bool = True) -> None:
        """Set the DTR / RTS control lines on an open port."""
        try:
            self._serial.dtr = dtr
            self._serial.rts = rts
        except (serial.SerialException, OSError, ValueError) as exc:
            self.last_error = exc
            raise ConfigureError(f"Failed to set control lines: {exc}") from exc

    async def write(self, data: bytes) -> None:
        if not self.is_open:
            raise WriteError(f"Serial port {self.path} is not open")
        try:
            await asyncio.to_thread(self._serial.write, data)
        except (serial.SerialException, OSError) as exc:
            self.last_error = exc
            raise WriteError(str(exc)) from exc

    async def drain(self) -> None:
        """Block until every written byte has been handed to the device."""
        if not self.is_open:
            raise WriteError(f"Serial port {self.path} is not open")
        try:
            await asyncio.to_thread(self._serial.flush)
        except (serial.SerialException, OSError) as exc:
            self.last_error = exc
            raise WriteError(str(exc)) from exc

    async def flush(self) -> None:
        """Discard inbound bytes nobody has read yet."""
        try:
            await asyncio.to_thread(self._serial.reset_input_buffer)
        except (serial.SerialException, OSError) as exc:
            self.last_error = exc
            raise CloseError(str(exc)) from exc

    async def close(self) -> None:
        """Clean close.  Raises ``CloseError`` if the driver refuses."""
        self._closing = True
        await self._stop_reader()
        try:
            await asyncio.to_thread(self._serial.close)
        except (serial.SerialException, OSError) as exc:
            self.last_error = exc
            raise CloseError(str(exc)) from exc
        logger.info("Serial port %s closed", self.path)
        self._emit("close")

    def destroy(self) -> None:
        """Force the port shut.  Never raises."""
        self._closing = True
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        try:
            self._serial.close()
        except Exception as exc:
            logger.debug("Ignoring error while destroying %s: %s", self.path, exc)

    # ── Reader ────────────────────────────────────────────────────────────────

    async def _stop_reader(self) -> None:
        reader, self._reader = self._reader, None
        if reader is None or reader.done():
            return
        try:
            self._serial.cancel_read()
        except Exception:
            pass
        reader.cancel()
        try:
            await reader
        except asyncio.CancelledError:
            pass

    def _read_chunk(self) -> bytes:
        waiting = self._serial.in_waiting
        return self._serial.read(min(max(waiting, 1), _READ_CHUNK))

    async def _read_loop(self) -> None:
        """Forward inbound bytes to the data listener until the port goes away."""
        while self.is_open and not self._closing:
            try:
                chunk = await asyncio.to_thread(self._read_chunk)
            except (serial.SerialException, OSError, TypeError) as exc:
                # TypeError: pyserial's posix read on a vanished fd
                if self._closing:
                    return
                self.last_error = exc
                logger.error("Serial port %s read failed: %s", self.path, exc)
                self._emit("error", exc)
                try:
                    self._serial.close()
                except Exception:
                    pass
                self._emit("close")
                return
            if chunk:
                self._emit("data", chunk)
