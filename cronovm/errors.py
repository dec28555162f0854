"""Result codes reported by the loader and interpreter, and the exception that carries them."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(Enum):
    """Every outcome the loader and interpreter can report.

    The value of each member is its human-readable description.
    """

    OK = "ok"
    TRUNCATED = "file truncated"
    BAD_MAGIC = "bad magic"
    BAD_VERSION = "unsupported version"
    BAD_SECTION = "malformed section"
    DUP_SECTION = "duplicate section"
    NO_CODE = "missing code section"
    BAD_ENTRY = "entry out of range"
    NOMEM = "out of memory"
    BAD_OPCODE = "unknown opcode"
    BAD_PC = "pc out of range"
    BAD_ADDR = "memory access out of bounds"
    BAD_IMPORTS = "malformed imports section"
    NO_SUCH_IMPORT = "no import with that name"
    BAD_SYSCALL = "syscall id out of range"
    UNLINKED_SYSCALL = "syscall has no host handler"
    SYSCALL_TRAP = "syscall handler returned a trap"
    DIV_BY_ZERO = "division by zero"
    BAD_FUNCS = "malformed funcs section"
    BAD_FUNC_INDEX = "call target index out of range"
    STACK_OVERFLOW = "stack overflow"
    NULL_FUNC_PTR = "null function pointer call"
    BAD_REGION = "malformed host_region section"
    NO_SUCH_REGION = "no region with that name"
    BAD_CORO_STATE = "coro swap to a RUNNING or DEAD coroutine"

    @property
    def message(self) -> str:
        return self.value


_UNKNOWN = "unknown error"


def strerror(code: Any) -> str:
    """Return the description of ``code``, or ``"unknown error"`` if it is not an ErrorCode."""
    if isinstance(code, ErrorCode):
        return code.value
    return _UNKNOWN


class CvmError(Exception):
    """Raised when loading or running an image fails; ``code`` tells why."""

    def __init__(self, code: ErrorCode) -> None:
        self.code = code
        super().__init__(strerror(code))

    def __repr__(self) -> str:
        name = self.code.name if isinstance(self.code, ErrorCode) else repr(self.code)
        return f"CvmError({name})"