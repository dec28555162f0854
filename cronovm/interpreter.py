"""The instruction interpreter: runs a loaded Image from its entry point or a FUNCS index."""

from __future__ import annotations

import math
import operator
import struct
from typing import Callable, Iterable, Optional

from .errors import CvmError, ErrorCode
from .floatops import bits_to_f32, f32_to_bits, f32_to_i32_sat, f32_to_u32_sat
from .image import Image
from .isa import REG_COUNT, REG_SP, RET_SENTINEL, Opcode

__all__ = ["run", "call"]

_M32 = 0xFFFFFFFF
_INT32_MIN = -0x80000000

_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")
_U16 = struct.Struct("<H")

_CORO_FRESH = 0
_CORO_RUNNING = 1
_CORO_SUSPENDED = 2


def _i32(value: int) -> int:
    value &= _M32
    return value - 0x100000000 if value & 0x80000000 else value


def _signed(value: int, bits: int) -> int:
    sign = 1 << (bits - 1)
    return (value & (sign - 1)) - (value & sign)


def _trunc_div(x: int, y: int) -> int:
    quotient = abs(x) // abs(y)
    return -quotient if (x < 0) != (y < 0) else quotient


def _sdiv(x: int, y: int) -> int:
    if x == _INT32_MIN and y == -1:
        return _INT32_MIN
    return _trunc_div(x, y)


def _smod(x: int, y: int) -> int:
    if x == _INT32_MIN and y == -1:
        return 0
    return x - y * _trunc_div(x, y)


def _fdiv(x: float, y: float) -> float:
    try:
        return x / y
    except ZeroDivisionError:
        if x == 0.0 or math.isnan(x):
            return math.nan
        return math.copysign(math.inf, math.copysign(1.0, x) * math.copysign(1.0, y))


def _fsqrt(x: float) -> float:
    if x < 0.0:
        return math.nan
    return math.sqrt(x)


_INT_BINOPS: dict = {
    Opcode.ADD: operator.add,
    Opcode.SUB: operator.sub,
    Opcode.MUL: operator.mul,
    Opcode.AND: operator.and_,
    Opcode.OR: operator.or_,
    Opcode.XOR: operator.xor,
    Opcode.SHL: lambda x, y: (x & _M32) << (y & 31),
    Opcode.SHR: lambda x, y: (x & _M32) >> (y & 31),
    Opcode.SAR: lambda x, y: x >> (y & 31),
    Opcode.CMP_EQ: lambda x, y: int(x == y),
    Opcode.CMP_NE: lambda x, y: int(x != y),
    Opcode.CMP_LT: lambda x, y: int(x < y),
    Opcode.CMP_LE: lambda x, y: int(x <= y),
    Opcode.CMP_LTU: lambda x, y: int((x & _M32) < (y & _M32)),
    Opcode.CMP_LEU: lambda x, y: int((x & _M32) <= (y & _M32)),
    Opcode.MULH: lambda x, y: (x * y) >> 32,
    Opcode.MULHU: lambda x, y: ((x & _M32) * (y & _M32)) >> 32,
}

_DIV_OPS: dict = {
    Opcode.DIV: _sdiv,
    Opcode.MOD: _smod,
    Opcode.DIVU: lambda x, y: (x & _M32) // (y & _M32),
    Opcode.MODU: lambda x, y: (x & _M32) % (y & _M32),
    Opcode.QDIV1616: lambda x, y: ((x & _M32) << 16) // (y & _M32),
}

_FLOAT_ARITH: dict = {
    Opcode.FADD: operator.add,
    Opcode.FSUB: operator.sub,
    Opcode.FMUL: operator.mul,
    Opcode.FDIV: _fdiv,
}

_FLOAT_CMP: dict = {
    Opcode.FCMP_EQ: operator.eq,
    Opcode.FCMP_NE: operator.ne,
    Opcode.FCMP_LT: operator.lt,
    Opcode.FCMP_LE: operator.le,
}

_UNARY: dict = {
    Opcode.MOV: lambda x: x,
    Opcode.FNEG: lambda x: x ^ 0x80000000,
    Opcode.F2I_S: lambda x: f32_to_i32_sat(bits_to_f32(x)),
    Opcode.F2I_U: lambda x: f32_to_u32_sat(bits_to_f32(x)),
    Opcode.I2F_S: lambda x: f32_to_bits(float(x)),
    Opcode.I2F_U: lambda x: f32_to_bits(float(x & _M32)),
    Opcode.FSQRT: lambda x: f32_to_bits(_fsqrt(bits_to_f32(x))),
}


class _Machine:
    """Execution state for one run: registers, program counter and the image's memory."""

    def __init__(self, image: Image, start_pc: int, args: Optional[Iterable[int]]) -> None:
        if not image.code:
            raise CvmError(ErrorCode.BAD_PC)
        if start_pc >= image.code_count:
            raise CvmError(ErrorCode.BAD_ENTRY)
        arg_list = [_i32(int(v)) for v in (args or ())]
        if len(arg_list) > REG_COUNT:
            raise CvmError(ErrorCode.BAD_ADDR)

        self.image = image
        self.heap = image.heap
        self.mem_size = image.mem_size
        self.pc = start_pc
        self.regs = arg_list + [0] * (REG_COUNT - len(arg_list))

        if image.stack_size >= 4:
            sp = self.mem_size - 4
            _U32.pack_into(self.heap, sp, RET_SENTINEL)
            self.regs[REG_SP] = _i32(sp)
        else:
            self.regs[REG_SP] = _i32(self.mem_size)

        table: dict = {}
        table.update(dict.fromkeys(_INT_BINOPS, self._int_binop))
        table.update(dict.fromkeys(_DIV_OPS, self._div_op))
        table.update(dict.fromkeys(_FLOAT_ARITH, self._float_arith))
        table.update(dict.fromkeys(_FLOAT_CMP, self._float_cmp))
        table.update(dict.fromkeys(_UNARY, self._unary))
        table.update(
            {
                Opcode.HALT: self._halt,
                Opcode.MOVI: self._movi,
                Opcode.MOVHI: self._movhi,
                Opcode.LDW: self._ldw,
                Opcode.STW: self._stw,
                Opcode.LDH: self._ldh,
                Opcode.STH: self._sth,
                Opcode.LDB: self._ldb,
                Opcode.STB: self._stb,
                Opcode.JMP: self._jmp,
                Opcode.JMPR: self._jmpr,
                Opcode.BEQ: self._branch,
                Opcode.BNE: self._branch,
                Opcode.SYSCALL: self._syscall,
                Opcode.CALL: self._call,
                Opcode.CALLR: self._call,
                Opcode.RET: self._ret,
                Opcode.MEMCPY: self._memcopy,
                Opcode.MEMMOVE: self._memcopy,
                Opcode.MEMSET: self._memset,
                Opcode.QDIV6432: self._qdiv6432,
                Opcode.SETJMP: self._setjmp,
                Opcode.LONGJMP: self._longjmp,
                Opcode.CORO_SWAP: self._coro_swap,
            }
        )
        self._table: dict = {int(op): fn for op, fn in table.items()}

    # --- main loop ----------------------------------------------------------

    def execute(self) -> int:
        code = self.image.code
        code_count = len(code)
        table = self._table
        while True:
            pc = self.pc
            if pc >= code_count:
                raise CvmError(ErrorCode.BAD_PC)
            word = code[pc]
            self.pc = pc + 1
            op = word & 0xFF
            handler: Optional[Callable] = table.get(op)
            if handler is None:
                raise CvmError(ErrorCode.BAD_OPCODE)
            result = handler(op, (word >> 8) & 0xFF, (word >> 16) & 0xFF, (word >> 24) & 0xFF, word)
            if result is not None:
                return result

    # --- memory helpers -----------------------------------------------------

    def _check(self, addr: int, n: int) -> None:
        if addr > self.mem_size or self.mem_size - addr < n:
            raise CvmError(ErrorCode.BAD_ADDR)

    def _load_u32(self, addr: int) -> int:
        return _U32.unpack_from(self.heap, addr)[0]

    def _store_u32(self, addr: int, value: int) -> None:
        _U32.pack_into(self.heap, addr, value & _M32)

    def _push_return(self) -> None:
        sp = self.regs[REG_SP] & _M32
        if sp < 4 or sp > self.mem_size:
            raise CvmError(ErrorCode.STACK_OVERFLOW)
        sp -= 4
        self._store_u32(sp, self.pc)
        self.regs[REG_SP] = _i32(sp)

    def _func_target(self, fid: int) -> int:
        if fid == 0:
            raise CvmError(ErrorCode.NULL_FUNC_PTR)
        if fid >= self.image.func_count:
            raise CvmError(ErrorCode.BAD_FUNC_INDEX)
        return self.image.func_offsets[fid]

    # --- handlers -----------------------------------------------------------

    def _halt(self, op, a, b, c, word):
        return self.regs[a]

    def _movi(self, op, a, b, c, word):
        self.regs[a] = _signed(word >> 16, 16)

    def _movhi(self, op, a, b, c, word):
        hi = (word >> 16) & 0xFFFF
        self.regs[a] = _i32((hi << 16) | (self.regs[a] & 0xFFFF))

    def _int_binop(self, op, a, b, c, word):
        R = self.regs
        R[a] = _i32(_INT_BINOPS[op](R[b], R[c]))

    def _div_op(self, op, a, b, c, word):
        R = self.regs
        if R[c] == 0:
            raise CvmError(ErrorCode.DIV_BY_ZERO)
        R[a] = _i32(_DIV_OPS[op](R[b], R[c]))

    def _qdiv6432(self, op, a, b, c, word):
        R = self.regs
        if R[c] == 0:
            raise CvmError(ErrorCode.DIV_BY_ZERO)
        dividend = ((R[a] & _M32) << 32) | (R[b] & _M32)
        R[a] = _i32(dividend // (R[c] & _M32))

    def _float_arith(self, op, a, b, c, word):
        R = self.regs
        R[a] = f32_to_bits(_FLOAT_ARITH[op](bits_to_f32(R[b]), bits_to_f32(R[c])))

    def _float_cmp(self, op, a, b, c, word):
        R = self.regs
        R[a] = int(_FLOAT_CMP[op](bits_to_f32(R[b]), bits_to_f32(R[c])))

    def _unary(self, op, a, b, c, word):
        R = self.regs
        R[a] = _i32(_UNARY[op](R[b]))

    def _ldw(self, op, a, b, c, word):
        addr = self.regs[b] & _M32
        self._check(addr, 4)
        self.regs[a] = _I32.unpack_from(self.heap, addr)[0]

    def _stw(self, op, a, b, c, word):
        addr = self.regs[b] & _M32
        self._check(addr, 4)
        self._store_u32(addr, self.regs[c])

    def _ldh(self, op, a, b, c, word):
        addr = self.regs[b] & _M32
        self._check(addr, 2)
        self.regs[a] = _U16.unpack_from(self.heap, addr)[0]

    def _sth(self, op, a, b, c, word):
        addr = self.regs[b] & _M32
        self._check(addr, 2)
        _U16.pack_into(self.heap, addr, self.regs[c] & 0xFFFF)

    def _ldb(self, op, a, b, c, word):
        addr = self.regs[b] & _M32
        if addr >= self.mem_size:
            raise CvmError(ErrorCode.BAD_ADDR)
        self.regs[a] = self.heap[addr]

    def _stb(self, op, a, b, c, word):
        addr = self.regs[b] & _M32
        if addr >= self.mem_size:
            raise CvmError(ErrorCode.BAD_ADDR)
        self.heap[addr] = self.regs[c] & 0xFF

    def _jmp(self, op, a, b, c, word):
        self.pc = (self.pc + _signed(word >> 8, 24)) & _M32

    def _jmpr(self, op, a, b, c, word):
        target = self.regs[a] & _M32
        if target >= self.image.code_count:
            raise CvmError(ErrorCode.BAD_PC)
        self.pc = target

    def _branch(self, op, a, b, c, word):
        equal = self.regs[a] == self.regs[b]
        if equal == (op == Opcode.BEQ):
            self.pc = (self.pc + _signed(c, 8)) & _M32

    def _syscall(self, op, a, b, c, word):
        image = self.image
        index = (word >> 16) & 0xFFFF
        if index >= image.import_count:
            raise CvmError(ErrorCode.BAD_SYSCALL)
        fn = image.import_fns[index]
        if fn is None:
            raise CvmError(ErrorCode.UNLINKED_SYSCALL)
        R = self.regs
        status = fn(image, R, image.import_userdata[index])
        R[:] = [_i32(int(value)) for value in R[:REG_COUNT]]
        if status:
            raise CvmError(ErrorCode.SYSCALL_TRAP)

    def _call(self, op, a, b, c, word):
        fid = (word >> 8) & 0xFFFFFF if op == Opcode.CALL else self.regs[a] & _M32
        target = self._func_target(fid)
        self._push_return()
        self.pc = target

    def _ret(self, op, a, b, c, word):
        R = self.regs
        sp = R[REG_SP] & _M32
        self._check(sp, 4)
        ret_pc = self._load_u32(sp)
        R[REG_SP] = _i32(sp + 4)
        if ret_pc == RET_SENTINEL:
            return R[0]
        self.pc = ret_pc
        return None

    def _memcopy(self, op, a, b, c, word):
        R = self.regs
        dst, src, length = R[a] & _M32, R[b] & _M32, R[c] & _M32
        if length:
            self._check(dst, length)
            self._check(src, length)
            self.heap[dst : dst + length] = self.heap[src : src + length]

    def _memset(self, op, a, b, c, word):
        R = self.regs
        dst, length = R[a] & _M32, R[c] & _M32
        if length:
            self._check(dst, length)
            self.heap[dst : dst + length] = bytes([R[b] & 0xFF]) * length

    def _setjmp(self, op, a, b, c, word):
        R = self.regs
        env = R[b] & _M32
        self._check(env, 12)
        self._store_u32(env, self.pc)
        self._store_u32(env + 4, R[REG_SP])
        self._store_u32(env + 8, a)
        R[a] = 0

    def _longjmp(self, op, a, b, c, word):
        R = self.regs
        env = R[a] & _M32
        self._check(env, 12)
        jpc = self._load_u32(env)
        jsp = self._load_u32(env + 4)
        jdst = self._load_u32(env + 8)
        if jpc >= self.image.code_count:
            raise CvmError(ErrorCode.BAD_PC)
        if jdst >= REG_COUNT:
            raise CvmError(ErrorCode.BAD_ADDR)
        value = R[b]
        R[jdst] = value if value != 0 else 1
        R[REG_SP] = _i32(jsp)
        self.pc = jpc

    def _coro_swap(self, op, a, b, c, word):
        R = self.regs
        source, target = R[a] & _M32, R[b] & _M32
        self._check(source, 16)
        self._check(target, 16)
        if source == target:
            raise CvmError(ErrorCode.BAD_ADDR)
        status = self._load_u32(target + 12)
        if status not in (_CORO_FRESH, _CORO_SUSPENDED):
            raise CvmError(ErrorCode.BAD_CORO_STATE)
        jpc = self._load_u32(target)
        jsp = self._load_u32(target + 4)
        jdst = self._load_u32(target + 8)
        if status == _CORO_FRESH:
            jpc = self._func_target(jpc)
            if jdst >= REG_COUNT:
                raise CvmError(ErrorCode.BAD_ADDR)
        if jpc >= self.image.code_count:
            raise CvmError(ErrorCode.BAD_PC)
        self._store_u32(source, self.pc)
        self._store_u32(source + 4, R[REG_SP])
        self._store_u32(source + 8, a)
        self._store_u32(source + 12, _CORO_SUSPENDED)
        self._store_u32(target + 12, _CORO_RUNNING)
        if status == _CORO_FRESH:
            R[jdst] = _i32(target)
        R[REG_SP] = _i32(jsp)
        self.pc = jpc


def run(image: Image, args: Optional[Iterable[int]] = None) -> int:
    """Run ``image`` from its entry point with ``args`` in R0.. and return the result.

    Raises CvmError when execution traps.
    """
    return _Machine(image, image.entry, args).execute()


def call(image: Image, fn_index: int, args: Optional[Iterable[int]] = None) -> int:
    """Run the function at FUNCS index ``fn_index`` with ``args`` and return its result."""
    if not image.func_offsets:
        raise CvmError(ErrorCode.BAD_FUNCS)
    index = fn_index & _M32
    if index == 0:
        raise CvmError(ErrorCode.NULL_FUNC_PTR)
    if index >= image.func_count:
        raise CvmError(ErrorCode.BAD_FUNC_INDEX)
    return _Machine(image, image.func_offsets[index], args).execute()