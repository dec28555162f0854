"""Loading of CVM1 binaries into runnable images, plus container inspection helpers."""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from .errors import CvmError, ErrorCode
from .isa import (
    HEADER_SIZE,
    MAGIC,
    MAX_SECTION_TYPE,
    REGION_ENTRY_SIZE,
    REGION_NAME_SIZE,
    SEAL_MAGIC,
    SECTION_SIZE,
    VERSION_1_0,
    RegionDirection,
    SectionType,
)

__all__ = [
    "Region",
    "Image",
    "SyscallFn",
    "load",
    "peek_section",
    "crc32",
    "seal_check",
    "version_string",
    "version_number",
]

_VERSION = (0, 4, 0)
_U32_MAX = 0xFFFFFFFF
_MAX_TABLE_COUNT = 0xFFFF

BytesLike = Union[bytes, bytearray, memoryview]

# A host handler: fn(image, regs, user_data). Returning a truthy value traps.
SyscallFn = Callable[["Image", list, Any], Optional[int]]


def version_string() -> str:
    """Library version as ``"major.minor.patch"``."""
    return "%d.%d.%d" % _VERSION


def version_number() -> int:
    """Library version packed as ``major << 16 | minor << 8 | patch``."""
    major, minor, patch = _VERSION
    return (major << 16) | (minor << 8) | patch


def _u32(buf: bytes, offset: int) -> int:
    return struct.unpack_from("<I", buf, offset)[0]


def _to_i32(value: int) -> int:
    value &= _U32_MAX
    return value - 0x100000000 if value & 0x80000000 else value


def _decode_name(raw: bytes) -> str:
    return raw.decode("utf-8", errors="surrogateescape")


@dataclass(frozen=True)
class Region:
    """A named block of VM memory shared with the host."""

    name: str
    size: int
    direction: RegionDirection
    offset: int


@dataclass
class Image:
    """A loaded program: code words, its memory and its import table.

    Memory layout is DATA | BSS | REGIONS | ROM | RESERVE | STACK; ``heap_size``
    covers everything before the stack and ``mem_size`` the whole block.
    """

    code: tuple
    heap: bytearray
    heap_size: int
    data_size: int
    reserve_size: int
    stack_size: int
    mem_size: int
    entry: int
    func_offsets: tuple = ()
    import_names: list = field(default_factory=list)
    import_fns: list = field(default_factory=list)
    import_userdata: list = field(default_factory=list)
    regions: tuple = ()
    rom_offset: int = 0
    rom_size: int = 0

    @property
    def code_count(self) -> int:
        return len(self.code)

    @property
    def func_count(self) -> int:
        return len(self.func_offsets)

    @property
    def import_count(self) -> int:
        return len(self.import_names)

    def link(self, name: str, fn: Optional[SyscallFn], user_data: Any = None) -> None:
        """Bind a host handler to the import called ``name``."""
        for index, import_name in enumerate(self.import_names):
            if import_name == name:
                self.import_fns[index] = fn
                self.import_userdata[index] = user_data
                return
        raise CvmError(ErrorCode.NO_SUCH_IMPORT)

    def _check_range(self, addr: int, n: int) -> None:
        if addr < 0 or n < 0 or addr > self.mem_size or self.mem_size - addr < n:
            raise CvmError(ErrorCode.BAD_ADDR)

    def heap_read(self, addr: int, n: int) -> bytes:
        """Return ``n`` bytes of VM memory starting at ``addr``."""
        self._check_range(addr, n)
        return bytes(self.heap[addr : addr + n])

    def heap_write(self, addr: int, data: BytesLike) -> None:
        """Copy ``data`` into VM memory at ``addr``."""
        payload = bytes(data)
        self._check_range(addr, len(payload))
        self.heap[addr : addr + len(payload)] = payload

    def get_region(self, name: str) -> Region:
        """Look up a host region by name."""
        for region in self.regions:
            if region.name == name:
                return region
        raise CvmError(ErrorCode.NO_SUCH_REGION)


# --- Built-in syscalls ------------------------------------------------------


def _sys_heap_start(image: Image, regs: list, user_data: Any) -> int:
    regs[0] = _to_i32(image.heap_size - image.reserve_size)
    return 0


def _sys_heap_size(image: Image, regs: list, user_data: Any) -> int:
    regs[0] = _to_i32(image.reserve_size)
    return 0


def _sys_get_region(image: Image, regs: list, user_data: Any) -> int:
    addr = regs[0] & _U32_MAX
    regs[0] = -1
    if addr >= image.heap_size:
        return 0
    maxlen = min(image.heap_size - addr, REGION_NAME_SIZE)
    window = bytes(image.heap[addr : addr + maxlen])
    nul = window.find(b"\0")
    if nul < 0:
        return 0
    wanted = _decode_name(window[:nul])
    for region in image.regions:
        if region.name == wanted:
            regs[0] = _to_i32(region.offset)
            break
    return 0


def _sys_rom_base(image: Image, regs: list, user_data: Any) -> int:
    regs[0] = _to_i32(image.rom_offset)
    return 0


def _sys_rom_size(image: Image, regs: list, user_data: Any) -> int:
    regs[0] = _to_i32(image.rom_size)
    return 0


_BUILTIN_SYSCALLS = {
    "cvm_sys_heap_start": _sys_heap_start,
    "cvm_sys_heap_size": _sys_heap_size,
    "cvm_sys_get_region": _sys_get_region,
    "cvm_sys_rom_base": _sys_rom_base,
    "cvm_sys_rom_size": _sys_rom_size,
}


# --- Container inspection ---------------------------------------------------


def _section_table(buf: bytes):
    """Yield (type, file_offset, size, flags) for every section-table entry."""
    count = _u32(buf, 12)
    table_off = _u32(buf, 16)
    if table_off + count * SECTION_SIZE > len(buf):
        raise CvmError(ErrorCode.TRUNCATED)
    for index in range(count):
        yield struct.unpack_from("<IIII", buf, table_off + index * SECTION_SIZE)


def peek_section(data: BytesLike, section_type: int) -> Optional[bytes]:
    """Return the payload of the first section of ``section_type``, or None if absent.

    Raises CvmError for a buffer that is not a well-formed CVM1 container.
    """
    buf = bytes(data)
    if len(buf) < HEADER_SIZE:
        raise CvmError(ErrorCode.TRUNCATED)
    if buf[:4] != MAGIC:
        raise CvmError(ErrorCode.BAD_MAGIC)
    for sec_type, file_off, size, _flags in _section_table(buf):
        if sec_type != int(section_type):
            continue
        if file_off + size > len(buf):
            raise CvmError(ErrorCode.TRUNCATED)
        return buf[file_off : file_off + size]
    return None


def crc32(data: BytesLike) -> int:
    """Standard reflected CRC-32 (polynomial 0xEDB88320)."""
    return zlib.crc32(bytes(data)) & _U32_MAX


def seal_check(data: BytesLike) -> Optional[bool]:
    """Verify the integrity seal.

    Returns None when the binary carries no seal, True when the seal matches
    the bytes before it, and False when the seal or the container is malformed
    or the checksum does not match.
    """
    buf = bytes(data)
    try:
        seal = peek_section(buf, SectionType.SEAL)
    except CvmError:
        return False
    if seal is None:
        return None
    if len(seal) < 12 or _u32(seal, 0) != SEAL_MAGIC:
        return False
    seal_off = next(
        file_off
        for sec_type, file_off, _size, _flags in _section_table(buf)
        if sec_type == SectionType.SEAL
    )
    return crc32(buf[:seal_off]) == _u32(seal, 8)


# --- Loader -----------------------------------------------------------------


def _parse_regions(payload: bytes) -> list:
    """Validate a HOST_REGION payload; return (name, size, direction) tuples."""
    if len(payload) < 4:
        raise CvmError(ErrorCode.BAD_REGION)
    count = _u32(payload, 0)
    if count > _MAX_TABLE_COUNT:
        raise CvmError(ErrorCode.BAD_REGION)
    if 4 + count * REGION_ENTRY_SIZE > len(payload):
        raise CvmError(ErrorCode.BAD_REGION)
    entries = []
    seen_names = set()
    total = 0
    for index in range(count):
        base = 4 + index * REGION_ENTRY_SIZE
        raw_name = payload[base : base + REGION_NAME_SIZE]
        nul = raw_name.find(b"\0")
        if nul <= 0:
            raise CvmError(ErrorCode.BAD_REGION)
        size, direction, flags = struct.unpack_from("<III", payload, base + REGION_NAME_SIZE)
        if flags != 0:
            raise CvmError(ErrorCode.BAD_REGION)
        if not RegionDirection.R <= direction <= RegionDirection.RW:
            raise CvmError(ErrorCode.BAD_REGION)
        name = raw_name[:nul]
        if name in seen_names:
            raise CvmError(ErrorCode.BAD_REGION)
        seen_names.add(name)
        total += (size + 3) & ~3
        if total > _U32_MAX:
            raise CvmError(ErrorCode.BAD_REGION)
        entries.append((_decode_name(name), size, RegionDirection(direction)))
    return entries


def _parse_imports(payload: bytes) -> list:
    """Validate an IMPORTS payload; return the import names in order."""
    if len(payload) < 4:
        raise CvmError(ErrorCode.BAD_IMPORTS)
    count = _u32(payload, 0)
    if count > _MAX_TABLE_COUNT:
        raise CvmError(ErrorCode.BAD_IMPORTS)
    if 4 + count * 4 > len(payload):
        raise CvmError(ErrorCode.BAD_IMPORTS)
    names = []
    for index in range(count):
        name_off = _u32(payload, 4 + index * 4)
        if name_off >= len(payload):
            raise CvmError(ErrorCode.BAD_IMPORTS)
        end = payload.find(b"\0", name_off)
        if end < 0:
            raise CvmError(ErrorCode.BAD_IMPORTS)
        names.append(_decode_name(payload[name_off:end]))
    return names


def load(data: BytesLike) -> Image:
    """Parse and validate a CVM1 binary, returning a ready-to-run Image."""
    buf = bytes(data)
    if len(buf) < HEADER_SIZE:
        raise CvmError(ErrorCode.TRUNCATED)
    if buf[:4] != MAGIC:
        raise CvmError(ErrorCode.BAD_MAGIC)
    version, flags, _count, _table_off, entry = struct.unpack_from("<IIIII", buf, 4)
    if version != VERSION_1_0:
        raise CvmError(ErrorCode.BAD_VERSION)
    if flags != 0:
        raise CvmError(ErrorCode.BAD_SECTION)

    seen = set()
    payloads = {}
    sizes = {}
    for sec_type, file_off, size, sflags in _section_table(buf):
        if sflags != 0 or sec_type == 0 or sec_type > MAX_SECTION_TYPE:
            raise CvmError(ErrorCode.BAD_SECTION)
        kind = SectionType(sec_type)
        if kind is not SectionType.DEBUG:
            if kind in seen:
                raise CvmError(ErrorCode.DUP_SECTION)
            seen.add(kind)
        if kind.has_payload:
            if file_off + size > len(buf):
                raise CvmError(ErrorCode.TRUNCATED)
        elif file_off != 0:
            raise CvmError(ErrorCode.BAD_SECTION)

        if kind is SectionType.CODE and (size == 0 or size % 4):
            raise CvmError(ErrorCode.BAD_SECTION)
        if kind is SectionType.FUNCS and (size == 0 or size % 4):
            raise CvmError(ErrorCode.BAD_FUNCS)
        if kind in (SectionType.META, SectionType.SEAL, SectionType.DEBUG):
            continue
        sizes[kind] = size
        if kind.has_payload:
            payloads[kind] = buf[file_off : file_off + size]

    if SectionType.CODE not in payloads:
        raise CvmError(ErrorCode.NO_CODE)
    code_bytes = payloads[SectionType.CODE]
    code_count = len(code_bytes) // 4
    if entry >= code_count:
        raise CvmError(ErrorCode.BAD_ENTRY)

    region_specs = []
    region_payload = payloads.get(SectionType.HOST_REGION, b"")
    if region_payload:
        region_specs = _parse_regions(region_payload)
    region_total = sum((size + 3) & ~3 for _name, size, _dir in region_specs)

    data_bytes = payloads.get(SectionType.DATA, b"")
    data_size = len(data_bytes)
    bss_size = sizes.get(SectionType.BSS, 0)
    rom_bytes = payloads.get(SectionType.ROM, b"")
    rom_size = len(rom_bytes)
    reserve_size = sizes.get(SectionType.HEAP_RESERVE, 0)
    stack_size = sizes.get(SectionType.STACK_RESERVE, 0)

    rom_offset = data_size + bss_size + region_total
    heap_total = rom_offset + rom_size + reserve_size
    if heap_total > _U32_MAX:
        raise CvmError(ErrorCode.BAD_SECTION)
    if 0 < stack_size < 4:
        raise CvmError(ErrorCode.BAD_SECTION)
    mem_total = heap_total + stack_size
    if mem_total > _U32_MAX:
        raise CvmError(ErrorCode.BAD_SECTION)

    import_names = []
    import_payload = payloads.get(SectionType.IMPORTS, b"")
    if import_payload:
        import_names = _parse_imports(import_payload)

    code = struct.unpack(f"<{code_count}I", code_bytes)

    func_offsets: tuple = ()
    funcs_payload = payloads.get(SectionType.FUNCS)
    if funcs_payload:
        func_offsets = struct.unpack(f"<{len(funcs_payload) // 4}I", funcs_payload)
        if any(off >= code_count for off in func_offsets):
            raise CvmError(ErrorCode.BAD_FUNCS)

    heap = bytearray(mem_total)
    heap[:data_size] = data_bytes
    heap[rom_offset : rom_offset + rom_size] = rom_bytes

    regions = []
    cursor = data_size + bss_size
    for name, size, direction in region_specs:
        regions.append(Region(name=name, size=size, direction=direction, offset=cursor))
        cursor += (size + 3) & ~3

    image = Image(
        code=code,
        heap=heap,
        heap_size=heap_total,
        data_size=data_size,
        reserve_size=reserve_size,
        stack_size=stack_size,
        mem_size=mem_total,
        entry=entry,
        func_offsets=func_offsets,
        import_names=import_names,
        import_fns=[_BUILTIN_SYSCALLS.get(name) for name in import_names],
        import_userdata=[None] * len(import_names),
        regions=tuple(regions),
        rom_offset=rom_offset if rom_size else 0,
        rom_size=rom_size,
    )
    return image