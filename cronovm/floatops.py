"""Binary32 helpers for the float opcodes.

Float values share the 32-bit integer register file, so the interpreter keeps
them as raw bit patterns and converts through these functions. Conversions to
integers saturate and map NaN to zero, so a program gives the same result on
every host.
"""

from __future__ import annotations

import math
import struct

__all__ = [
    "bits_to_f32",
    "f32_to_bits",
    "f32_to_i32_sat",
    "f32_to_u32_sat",
]

_U32_MASK = 0xFFFFFFFF
_INT32_MAX = 0x7FFFFFFF
_INT32_MIN = -0x80000000
_UINT32_MAX = 0xFFFFFFFF
_TWO_POW_31 = 2147483648.0
_TWO_POW_32 = 4294967296.0

_F32 = struct.Struct("<f")
_U32 = struct.Struct("<I")
_POS_INF_BITS = 0x7F800000
_NEG_INF_BITS = 0xFF800000


def _to_i32(value: int) -> int:
    value &= _U32_MASK
    return value - 0x100000000 if value & 0x80000000 else value


def bits_to_f32(bits: int) -> float:
    """Interpret the low 32 bits of ``bits`` as a binary32 value.

    Signed and unsigned spellings of the same pattern give the same float.
    """
    return _F32.unpack(_U32.pack(bits & _U32_MASK))[0]


def f32_to_bits(value: float) -> int:
    """Round ``value`` to binary32 and return its bit pattern as a signed 32-bit int.

    Finite values too large for binary32 round to infinity of the same sign.
    """
    try:
        packed = _F32.pack(value)
    except OverflowError:
        return _to_i32(_NEG_INF_BITS if math.copysign(1.0, value) < 0 else _POS_INF_BITS)
    return _to_i32(_U32.unpack(packed)[0])


def f32_to_i32_sat(value: float) -> int:
    """Truncate toward zero into the signed 32-bit range, saturating; NaN gives 0."""
    if math.isnan(value):
        return 0
    if value >= _TWO_POW_31:
        return _INT32_MAX
    if value < -_TWO_POW_31:
        return _INT32_MIN
    return int(value)


def f32_to_u32_sat(value: float) -> int:
    """Truncate toward zero into the unsigned 32-bit range, saturating; NaN gives 0.

    The result is returned as a non-negative int in ``[0, 2**32 - 1]``.
    """
    if math.isnan(value):
        return 0
    if value >= _TWO_POW_32:
        return _UINT32_MAX
    if value < 0.0:
        return 0
    return int(value)