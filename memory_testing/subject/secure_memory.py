"""
Secure Memory Buffers
=====================

Secret storage for the reference subject.

Security Properties:
- Secret bytes are written in place, one byte at a time, so no
  intermediate ``bytes`` object ever holds the whole secret
- Explicit zeroization (don't rely on Python GC)
- Memory locking where supported (prevent swapping)

The arena keeps released buffers mapped, the way a real allocator keeps
freed chunks around for reuse. Releasing without zeroizing therefore
leaves the secret readable in memory, which is exactly the defect the
harness exists to catch.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import platform
import threading
from typing import Final, List, Optional


IS_LINUX: Final[bool] = platform.system() == "Linux"
IS_MACOS: Final[bool] = platform.system() == "Darwin"

MIN_BUFFER_SIZE: Final[int] = 32
MAX_BUFFER_SIZE: Final[int] = 10 * 1024 * 1024  # 10 MB

_HEX_DIGITS: Final[str] = "0123456789abcdef"


def _libc() -> Optional[ctypes.CDLL]:
    if not (IS_LINUX or IS_MACOS):
        return None
    name = ctypes.util.find_library("c") or ("libc.so.6" if IS_LINUX else "libc.dylib")
    try:
        return ctypes.CDLL(name, use_errno=True)
    except OSError:
        return None


def _mlock(address: int, size: int) -> bool:
    """Lock memory pages to prevent swapping. Returns True on success."""
    libc = _libc()
    if libc is None:
        return False
    return libc.mlock(ctypes.c_void_p(address), ctypes.c_size_t(size)) == 0


def _munlock(address: int, size: int) -> bool:
    libc = _libc()
    if libc is None:
        return False
    return libc.munlock(ctypes.c_void_p(address), ctypes.c_size_t(size)) == 0


def _address_of(buffer: bytearray) -> int:
    return ctypes.addressof((ctypes.c_char * len(buffer)).from_buffer(buffer))


def secure_zero(data: bytearray) -> None:
    """
    Zero a byte buffer in place with memset.

    Three passes (zeros, ones, zeros); the final state is all zero.
    """
    if len(data) == 0:
        return
    address = _address_of(data)
    ctypes.memset(address, 0, len(data))
    ctypes.memset(address, 0xFF, len(data))
    ctypes.memset(address, 0, len(data))


class SecureBuffer:
    """
    Fixed-size secret buffer with explicit zeroization.

    Usage:
        buf = SecureBuffer(size=32)
        buf.write_hex("00ff10...")
        ...
        buf.wipe()
    """

    __slots__ = ("_buffer", "_size", "_wiped", "_locked", "_length", "__weakref__")

    def __init__(self, size: int = MIN_BUFFER_SIZE, lock_memory: bool = True) -> None:
        if size < MIN_BUFFER_SIZE:
            size = MIN_BUFFER_SIZE
        if size > MAX_BUFFER_SIZE:
            raise ValueError(f"Buffer too large (max {MAX_BUFFER_SIZE})")

        self._size = size
        self._buffer = bytearray(size)
        self._wiped = False
        self._locked = False
        self._length = 0

        if lock_memory:
            self._locked = _mlock(_address_of(self._buffer), size)

    @property
    def size(self) -> int:
        return self._size

    @property
    def length(self) -> int:
        """Number of secret bytes written."""
        return self._length

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    @property
    def is_locked(self) -> bool:
        return self._locked

    @property
    def address(self) -> int:
        """Address of the first byte (for diagnostics only)."""
        return _address_of(self._buffer)

    def write_hex(self, text: str) -> int:
        """
        Decode hex text straight into the buffer.

        Each byte is computed from two digits and stored individually;
        small ints are interned, so the decoded secret exists only here.

        Returns:
            Number of bytes written
        """
        if self._wiped:
            raise ValueError("Buffer has been wiped")

        digits = "".join(text.split()).lower()
        if digits.startswith("0x"):
            digits = digits[2:]
        if len(digits) % 2:
            raise ValueError("Hex text has an odd number of digits")
        count = len(digits) // 2
        if count > self._size:
            raise ValueError(f"Secret of {count} bytes does not fit in {self._size}")

        for index in range(count):
            high = _HEX_DIGITS.find(digits[2 * index])
            low = _HEX_DIGITS.find(digits[2 * index + 1])
            if high < 0 or low < 0:
                raise ValueError("Invalid hex digit")
            self._buffer[index] = high * 16 + low

        self._length = count
        return count

    def checksum(self) -> int:
        """Touch every secret byte without copying it out."""
        if self._wiped:
            raise ValueError("Buffer has been wiped")
        total = 0
        for index in range(self._length):
            total = (total * 31 + self._buffer[index]) & 0xFFFFFFFF
        return total

    def wipe(self) -> None:
        """Zero the whole buffer and unlock it."""
        if self._wiped:
            return

        secure_zero(self._buffer)

        if self._locked:
            _munlock(_address_of(self._buffer), self._size)
            self._locked = False

        self._wiped = True

    def __del__(self) -> None:
        try:
            self.wipe()
        except Exception:
            pass

    def __len__(self) -> int:
        return self._size

    def __repr__(self) -> str:
        if self._wiped:
            return "SecureBuffer(WIPED)"
        return f"SecureBuffer(size={self._size}, locked={self._locked})"


class SecretArena:
    """
    Allocator for secret buffers.

    Released buffers stay referenced until destroy(), so their memory
    stays mapped exactly like a freed heap chunk does.

    Usage:
        arena = SecretArena()
        buf = arena.allocate(32)
        ...
        arena.release(buf)                # wipes, then retires
        arena.release(buf, zeroize=False) # retires with contents intact
        arena.destroy()
    """

    __slots__ = ("_live", "_retired", "_lock", "_destroyed")

    def __init__(self) -> None:
        self._live: List[SecureBuffer] = []
        self._retired: List[SecureBuffer] = []
        self._lock = threading.Lock()
        self._destroyed = False

    def allocate(self, size: int) -> SecureBuffer:
        if self._destroyed:
            raise RuntimeError("Arena has been destroyed")
        buf = SecureBuffer(size=size)
        with self._lock:
            self._live.append(buf)
        return buf

    def release(self, buffer: SecureBuffer, zeroize: bool = True) -> None:
        """Return a buffer to the arena, wiping it first unless told not to."""
        if zeroize:
            buffer.wipe()
        with self._lock:
            if buffer in self._live:
                self._live.remove(buffer)
            self._retired.append(buffer)

    @property
    def live_count(self) -> int:
        return len(self._live)

    def destroy(self) -> None:
        """Wipe every buffer the arena ever handed out."""
        if self._destroyed:
            return
        with self._lock:
            for buf in self._live + self._retired:
                buf.wipe()
            self._live.clear()
            self._retired.clear()
            self._destroyed = True

    def __enter__(self) -> SecretArena:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.destroy()
