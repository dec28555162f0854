"""Instruction set and binary-format constants: opcodes, section types and word encoding."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from .errors import CvmError, ErrorCode

MAGIC = b"CVM1"
VERSION_1_0 = 0x00010000
HEADER_SIZE = 24
SECTION_SIZE = 16
REGION_ENTRY_SIZE = 28
REGION_NAME_SIZE = 16
MAX_SECTION_TYPE = 12

REG_COUNT = 256
REG_SP = REG_COUNT - 1
RET_SENTINEL = 0xFFFFFFFF
SEAL_MAGIC = int.from_bytes(b"SEAL", "little")


class Opcode(IntEnum):
    """Operation selected by the low byte of an instruction word."""

    HALT = 0
    MOVI = 1
    MOV = 2
    ADD = 3
    SUB = 4
    MUL = 5
    LDW = 6
    STW = 7
    JMP = 8
    BEQ = 9
    BNE = 10
    SYSCALL = 11
    CMP_EQ = 12
    CMP_NE = 13
    CMP_LT = 14
    CMP_LE = 15
    CMP_LTU = 16
    CMP_LEU = 17
    DIV = 18
    DIVU = 19
    MOD = 20
    MODU = 21
    SHL = 22
    SHR = 23
    SAR = 24
    AND = 25
    OR = 26
    XOR = 27
    CALL = 28
    RET = 29
    CALLR = 30
    LDB = 31
    STB = 32
    LDH = 33
    STH = 34
    MOVHI = 35
    MEMCPY = 36
    MEMSET = 37
    MEMMOVE = 38
    MULH = 39
    MULHU = 40
    FADD = 41
    FSUB = 42
    FMUL = 43
    FDIV = 44
    FNEG = 45
    FCMP_EQ = 46
    FCMP_NE = 47
    FCMP_LT = 48
    FCMP_LE = 49
    F2I_S = 50
    F2I_U = 51
    I2F_S = 52
    I2F_U = 53
    JMPR = 54
    FSQRT = 55
    QDIV1616 = 56
    QDIV6432 = 57
    SETJMP = 58
    LONGJMP = 59
    CORO_SWAP = 60


class SectionType(IntEnum):
    """Kind of a section-table entry."""

    CODE = 1
    DATA = 2
    BSS = 3
    IMPORTS = 4
    DEBUG = 5
    HEAP_RESERVE = 6
    STACK_RESERVE = 7
    FUNCS = 8
    HOST_REGION = 9
    ROM = 10
    META = 11
    SEAL = 12

    @property
    def has_payload(self) -> bool:
        """Whether the section's bytes live in the file (reserve-only sections do not)."""
        return self not in (
            SectionType.BSS,
            SectionType.HEAP_RESERVE,
            SectionType.STACK_RESERVE,
        )


class RegionDirection(IntEnum):
    """Direction in which a host region's data flows."""

    R = 1
    W = 2
    RW = 3


def _signed(value: int, bits: int) -> int:
    sign = 1 << (bits - 1)
    return (value & (sign - 1)) - (value & sign)


@dataclass(frozen=True)
class Instruction:
    """A decoded 32-bit instruction word."""

    op: Opcode
    a: int
    b: int
    c: int
    word: int

    @property
    def imm16(self) -> int:
        """Upper 16 bits, sign-extended."""
        return _signed(self.word >> 16, 16)

    @property
    def uimm16(self) -> int:
        """Upper 16 bits, zero-extended."""
        return (self.word >> 16) & 0xFFFF

    @property
    def imm24(self) -> int:
        """Upper 24 bits, sign-extended."""
        return _signed(self.word >> 8, 24)

    @property
    def uimm24(self) -> int:
        """Upper 24 bits, zero-extended."""
        return (self.word >> 8) & 0xFFFFFF

    @property
    def offset8(self) -> int:
        """Operand ``c`` read as a signed byte (branch displacement)."""
        return _signed(self.c, 8)


_OPCODES = {member.value: member for member in Opcode}


def decode(word: int) -> Instruction:
    """Split an instruction word into its fields; raise CvmError(BAD_OPCODE) on an unknown opcode."""
    word &= 0xFFFFFFFF
    op = _OPCODES.get(word & 0xFF)
    if op is None:
        raise CvmError(ErrorCode.BAD_OPCODE)
    return Instruction(
        op=op,
        a=(word >> 8) & 0xFF,
        b=(word >> 16) & 0xFF,
        c=(word >> 24) & 0xFF,
        word=word,
    )


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise ValueError(f"{name} {value} out of range [{low}, {high}]")


def encode(op: int, a: int = 0, b: int = 0, c: int = 0) -> int:
    """Build a word from an opcode and three byte operands."""
    _check_range("opcode", int(op), 0, 0xFF)
    _check_range("a", a, 0, 0xFF)
    _check_range("b", b, 0, 0xFF)
    # c may be given as a signed branch displacement
    _check_range("c", c, -0x80, 0xFF)
    return int(op) | (a << 8) | (b << 16) | ((c & 0xFF) << 24)


def encode_imm16(op: int, a: int, imm: int) -> int:
    """Build a word carrying register ``a`` and a 16-bit immediate in the upper half."""
    _check_range("opcode", int(op), 0, 0xFF)
    _check_range("a", a, 0, 0xFF)
    _check_range("imm16", imm, -0x8000, 0xFFFF)
    return int(op) | (a << 8) | ((imm & 0xFFFF) << 16)


def encode_imm24(op: int, imm: int) -> int:
    """Build a word carrying a 24-bit immediate above the opcode byte."""
    _check_range("opcode", int(op), 0, 0xFF)
    _check_range("imm24", imm, -0x800000, 0xFFFFFF)
    return int(op) | ((imm & 0xFFFFFF) << 8)