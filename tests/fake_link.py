"""
In-memory stand-in for ``SerialLink`` used across the link tests.
"""

from typing import Any, Callable

from robobridge.link.errors import WriteError


class FakeLink:
    def __init__(
        self,
        path: str = "/dev/fake",
        baudrate: int = 9600,
        *,
        open_errors: list[Exception | None] | None = None,
        write_errors: list[Exception | None] | None = None,
        close_error: Exception | None = None,
        configure_error: Exception | None = None,
    ) -> None:
        self.path = path
        self.baudrate = baudrate
        self.last_error: Exception | None = None

        self.open_errors = list(open_errors or [])
        self.write_errors = list(write_errors or [])
        self.close_error = close_error
        self.configure_error = configure_error

        self.open_calls = 0
        self.close_calls = 0
        self.destroy_calls = 0
        self.flush_calls = 0
        self.writes: list[bytes] = []
        self.control_lines: tuple[bool, bool] | None = None
        self.listeners: dict[str, Callable[..., None]] = {}
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def written_commands(self) -> list[str]:
        return [data.decode().rstrip("\n") for data in self.writes]

    async def open(self) -> None:
        self.open_calls += 1
        if self.open_errors:
            error = self.open_errors.pop(0)
            if error is not None:
                self.last_error = error
                raise error
        self._open = True

    async def configure(self, *, dtr: bool = True, rts: bool = True) -> None:
        if self.configure_error is not None:
            raise self.configure_error
        self.control_lines = (dtr, rts)

    async def write(self, data: bytes) -> None:
        if not self._open:
            raise WriteError("port not open")
        if self.write_errors:
            error = self.write_errors.pop(0)
            if error is not None:
                raise error
        self.writes.append(data)

    async def drain(self) -> None:
        if not self._open:
            raise WriteError("port not open")

    async def flush(self) -> None:
        self.flush_calls += 1

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_error is not None:
            raise self.close_error
        self._open = False
        self.emit("close")

    def destroy(self) -> None:
        self.destroy_calls += 1
        self._open = False

    def on_data(self, callback: Callable[[bytes], None]) -> None:
        self.listeners["data"] = callback

    def on_error(self, callback: Callable[[Exception], None]) -> None:
        self.listeners["error"] = callback

    def on_close(self, callback: Callable[[], None]) -> None:
        self.listeners["close"] = callback

    def remove_all_listeners(self, kind: str | None = None) -> None:
        if kind is None:
            self.listeners.clear()
        else:
            self.listeners.pop(kind, None)

    def emit(self, kind: str, *args: Any) -> None:
        callback = self.listeners.get(kind)
        if callback is not None:
            callback(*args)

    def lose(self, exc: Exception) -> None:
        """Simulate the cable being pulled while running."""
        self._open = False
        self.emit("error", exc)
        self.emit("close")
