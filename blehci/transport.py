"""Byte transports that carry HCI packets to and from a Bluetooth controller."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Protocol

DEFAULT_BAUDRATE = 912600
SLOW_BAUDRATE = 119600


class Transport(ABC):
    """Interface every HCI transport provides."""

    @abstractmethod
    def begin(self) -> bool:
        """Open the transport; return True when it is ready."""

    @abstractmethod
    def end(self) -> None:
        """Close the transport."""

    @abstractmethod
    def wait(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds for incoming data; return True if any arrived."""

    @abstractmethod
    def available(self) -> int:
        """Number of bytes that can be read without blocking."""

    @abstractmethod
    def peek(self) -> Optional[int]:
        """Next byte without consuming it, or None when nothing is waiting."""

    @abstractmethod
    def read(self) -> Optional[int]:
        """Consume and return the next byte, or None when nothing is waiting."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Send ``data``; return the number of bytes written."""


class SerialPort(Protocol):
    """The part of a serial port object a :class:`UartTransport` relies on."""

    baudrate: int
    is_open: bool

    @property
    def in_waiting(self) -> int: ...

    def open(self) -> None: ...

    def close(self) -> None: ...

    def read(self, size: int = 1) -> bytes: ...

    def write(self, data: bytes) -> Optional[int]: ...

    def flush(self) -> None: ...


class UartTransport(Transport):
    """HCI transport over a UART serial port."""

    def __init__(
        self,
        uart: SerialPort,
        baudrate: int = DEFAULT_BAUDRATE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.uart = uart
        self.baudrate = baudrate
        self._clock = clock
        self._lookahead: Optional[int] = None

    def begin(self) -> bool:
        self.uart.baudrate = self.baudrate
        if not self.uart.is_open:
            self.uart.open()
        self._lookahead = None
        return True

    def end(self) -> None:
        self.uart.close()
        self._lookahead = None

    def wait(self, timeout: float) -> bool:
        start = self._clock()
        while self._clock() - start < timeout:
            if self.available():
                return True
        return bool(self.available())

    def available(self) -> int:
        pending = 0 if self._lookahead is None else 1
        return pending + self.uart.in_waiting

    def peek(self) -> Optional[int]:
        if self._lookahead is None:
            self._lookahead = self._read_from_port()
        return self._lookahead

    def read(self) -> Optional[int]:
        if self._lookahead is not None:
            byte, self._lookahead = self._lookahead, None
            return byte
        return self._read_from_port()

    def write(self, data: bytes) -> int:
        payload = bytes(data)
        written = self.uart.write(payload)
        self.uart.flush()
        return len(payload) if written is None else written

    def _read_from_port(self) -> Optional[int]:
        if not self.uart.in_waiting:
            return None
        chunk = self.uart.read(1)
        return chunk[0] if chunk else None