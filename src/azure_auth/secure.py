"""
Secure wrapper for secret values read from the secret store.

Python strings are immutable and cannot be cleared, so secrets are held
in a ``bytearray`` that is overwritten with zeros when the wrapper is
cleared, leaves a ``with`` block, or is garbage collected. Clearing is
best effort: ``reveal()`` has to hand a ``str`` to the HTTP layer, so call
it at the last moment and do not keep the result around.
"""

from typing import Optional, Union


class SecretString:
    """A secret value that is zeroized on clear, scope exit or deletion."""

    __slots__ = ("_buffer",)

    def __init__(self, value: Union[str, bytes, bytearray]):
        if isinstance(value, str):
            self._buffer: Optional[bytearray] = bytearray(value, "utf-8")
        else:
            self._buffer = bytearray(value)

    def reveal(self) -> str:
        """
        Get the secret as a string.

        Raises:
            ValueError: If the secret has already been cleared
        """
        if self._buffer is None:
            raise ValueError("Secret has been cleared")
        return self._buffer.decode("utf-8")

    def clear(self) -> None:
        """Overwrite the backing memory with zeros. Safe to call twice."""
        # __init__ may have failed before the slot was set
        buffer = getattr(self, "_buffer", None)
        if buffer is not None:
            for i in range(len(buffer)):
                buffer[i] = 0
            self._buffer = None

    @property
    def is_cleared(self) -> bool:
        return getattr(self, "_buffer", None) is None

    def __enter__(self) -> "SecretString":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.clear()

    def __del__(self) -> None:
        self.clear()

    def __len__(self) -> int:
        return 0 if self._buffer is None else len(self._buffer)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretString):
            return self._buffer == other._buffer
        return NotImplemented

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        return "SecretString([REDACTED])"

    def __str__(self) -> str:
        return "[REDACTED]"


def reveal(value: Union[str, SecretString]) -> str:
    """Accept either a plain string or a SecretString and return the text."""
    if isinstance(value, SecretString):
        return value.reveal()
    return value
