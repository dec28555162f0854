import struct

import pytest

from cronovm.errors import CvmError, ErrorCode
from cronovm.image import (
    Image,
    Region,
    crc32,
    load,
    peek_section,
    seal_check,
    version_number,
    version_string,
)
from cronovm.isa import (
    MAGIC,
    SEAL_MAGIC,
    VERSION_1_0,
    Opcode,
    RegionDirection,
    SectionType,
    encode,
)

HALT = struct.pack("<I", encode(Opcode.HALT))


def build(sections, entry=0, version=VERSION_1_0, flags=0):
    """sections: (type, payload bytes or reserve size int[, section flags])."""
    table_off = 24
    payload_off = table_off + 16 * len(sections)
    table = b""
    blob = b""
    for sec in sections:
        sec_type, content = sec[0], sec[1]
        sflags = sec[2] if len(sec) > 2 else 0
        if isinstance(content, int):
            off, size = 0, content
        else:
            off, size = payload_off + len(blob), len(content)
            blob += content
        table += struct.pack("<IIII", int(sec_type), off, size, sflags)
    header = MAGIC + struct.pack("<IIIII", version, flags, len(sections), table_off, entry)
    return header + table + blob


def regions_payload(entries):
    out = struct.pack("<I", len(entries))
    for name, size, direction, *rest in entries:
        rflags = rest[0] if rest else 0
        out += name.ljust(16, b"\0") + struct.pack("<III", size, direction, rflags)
    return out


def imports_payload(names):
    head = struct.pack("<I", len(names))
    offsets = b""
    strings = b""
    base = 4 + 4 * len(names)
    for name in names:
        offsets += struct.pack("<I", base + len(strings))
        strings += name + b"\0"
    return head + offsets + strings


def sealed(sections):
    data = build(list(sections) + [(SectionType.SEAL, b"\0" * 12)])
    off = len(data) - 12
    return data[:off] + struct.pack("<III", SEAL_MAGIC, 0, crc32(data[:off]))


@pytest.fixture
def region_image():
    return load(
        build(
            [
                (SectionType.CODE, HALT),
                (SectionType.DATA, b"ABCDEFGH"),
                (SectionType.BSS, 4),
                (
                    SectionType.HOST_REGION,
                    regions_payload([(b"input", 4, RegionDirection.R), (b"fb", 16, RegionDirection.W)]),
                ),
                (SectionType.ROM, b"rom!"),
                (SectionType.HEAP_RESERVE, 64),
                (SectionType.STACK_RESERVE, 32),
            ]
        )
    )


def test_version():
    assert version_string() == "0.4.0"
    assert version_number() == 0x000400


def test_crc32_check_value():
    assert crc32(b"123456789") == 0xCBF43926
    assert crc32(b"") == 0


def test_minimal_load():
    img = load(build([(SectionType.CODE, HALT + HALT)], entry=1))
    assert img.code == (encode(Opcode.HALT),) * 2
    assert img.code_count == 2
    assert img.entry == 1
    assert img.mem_size == 0
    assert img.func_count == 0
    assert img.import_count == 0


def test_region_layout(region_image):
    img = region_image
    assert img.get_region("input") == Region("input", 4, RegionDirection.R, 12)
    assert img.get_region("fb") == Region("fb", 16, RegionDirection.W, 16)
    assert img.rom_offset == 32
    assert img.rom_size == 4
    assert img.heap_size == 8 + 4 + 4 + 16 + 4 + 64
    assert img.mem_size == img.heap_size + 32
    assert img.heap_read(0, 8) == b"ABCDEFGH"
    assert img.heap_read(32, 4) == b"rom!"
    assert img.heap_read(8, 24) == bytes(24)


def test_region_host_write_and_missing(region_image):
    img = region_image
    region = img.get_region("input")
    assert region.size >= 4
    img.heap_write(region.offset, struct.pack("<i", 7))
    assert struct.unpack("<i", img.heap_read(region.offset, 4))[0] == 7
    with pytest.raises(CvmError) as exc:
        img.get_region("nope")
    assert exc.value.code is ErrorCode.NO_SUCH_REGION


def test_heap_bounds(region_image):
    img = region_image
    assert img.heap_read(img.mem_size, 0) == b""
    img.heap_write(img.mem_size - 4, b"\x01\x02\x03\x04")
    assert img.heap_read(img.mem_size - 4, 4) == b"\x01\x02\x03\x04"
    for action in (lambda: img.heap_read(img.mem_size, 1), lambda: img.heap_write(img.mem_size - 1, b"ab")):
        with pytest.raises(CvmError) as exc:
            action()
        assert exc.value.code is ErrorCode.BAD_ADDR


def test_imports_and_link():
    names = [b"cvm_sys_heap_start", b"cvm_sys_heap_size", b"host_fn"]
    img = load(
        build(
            [
                (SectionType.CODE, HALT),
                (SectionType.IMPORTS, imports_payload(names)),
                (SectionType.DATA, b"12345678"),
                (SectionType.HEAP_RESERVE, 64),
            ]
        )
    )
    assert img.import_names == ["cvm_sys_heap_start", "cvm_sys_heap_size", "host_fn"]
    assert img.import_fns[2] is None
    regs = [0] * 256
    img.import_fns[0](img, regs, img.import_userdata[0])
    assert regs[0] == 8
    img.import_fns[1](img, regs, None)
    assert regs[0] == 64

    def handler(image, regs, user_data):
        return 0

    img.link("host_fn", handler, "ctx")
    assert img.import_fns[2] is handler
    assert img.import_userdata[2] == "ctx"
    with pytest.raises(CvmError) as exc:
        img.link("missing", handler)
    assert exc.value.code is ErrorCode.NO_SUCH_IMPORT


def test_builtin_get_region_and_rom():
    img = load(
        build(
            [
                (SectionType.CODE, HALT),
                (SectionType.IMPORTS, imports_payload([b"cvm_sys_get_region", b"cvm_sys_rom_base", b"cvm_sys_rom_size"])),
                (SectionType.DATA, b"fb\0\0zz\0\0" + b"x" * 16),
                (SectionType.HOST_REGION, regions_payload([(b"fb", 5, RegionDirection.RW)])),
                (SectionType.ROM, b"abc"),
            ]
        )
    )
    get_region, rom_base, rom_size = img.import_fns
    regs = [0] * 256
    get_region(img, regs, None)
    assert regs[0] == 24
    regs[0] = 4
    get_region(img, regs, None)
    assert regs[0] == -1
    regs[0] = 8  # 16 bytes with no NUL
    get_region(img, regs, None)
    assert regs[0] == -1
    regs[0] = img.heap_size
    get_region(img, regs, None)
    assert regs[0] == -1
    rom_base(img, regs, None)
    assert regs[0] == 24 + 8
    rom_size(img, regs, None)
    assert regs[0] == 3


def test_rom_absent_offset_zero():
    img = load(build([(SectionType.CODE, HALT), (SectionType.DATA, b"1234")]))
    assert img.rom_offset == 0
    assert img.rom_size == 0


def test_funcs_loaded():
    img = load(build([(SectionType.CODE, HALT * 3), (SectionType.FUNCS, struct.pack("<III", 0, 1, 2))]))
    assert img.func_offsets == (0, 1, 2)
    assert img.func_count == 3


def test_debug_may_repeat_meta_ignored():
    img = load(
        build(
            [
                (SectionType.CODE, HALT),
                (SectionType.DEBUG, b"a"),
                (SectionType.DEBUG, b"b"),
                (SectionType.META, b"meta"),
            ]
        )
    )
    assert img.mem_size == 0


@pytest.mark.parametrize(
    "data, code",
    [
        (b"CVM1" + bytes(10), ErrorCode.TRUNCATED),
        (b"XVM1" + bytes(20), ErrorCode.BAD_MAGIC),
        (build([(SectionType.CODE, HALT)], version=2), ErrorCode.BAD_VERSION),
        (build([(SectionType.CODE, HALT)], flags=1), ErrorCode.BAD_SECTION),
        (build([(SectionType.CODE, HALT, 1)]), ErrorCode.BAD_SECTION),
        (build([(SectionType.CODE, HALT), (13, b"x")]), ErrorCode.BAD_SECTION),
        (build([(SectionType.CODE, HALT), (SectionType.CODE, HALT)]), ErrorCode.DUP_SECTION),
        (build([(SectionType.CODE, b"\0\0\0")]), ErrorCode.BAD_SECTION),
        (build([(SectionType.DATA, b"1234")]), ErrorCode.NO_CODE),
        (build([(SectionType.CODE, HALT)], entry=1), ErrorCode.BAD_ENTRY),
        (build([(SectionType.CODE, HALT), (SectionType.FUNCS, b"\0\0")]), ErrorCode.BAD_FUNCS),
        (build([(SectionType.CODE, HALT), (SectionType.FUNCS, struct.pack("<I", 5))]), ErrorCode.BAD_FUNCS),
        (build([(SectionType.CODE, HALT), (SectionType.STACK_RESERVE, 2)]), ErrorCode.BAD_SECTION),
        (build([(SectionType.CODE, HALT), (SectionType.HEAP_RESERVE, 0xFFFFFFFF), (SectionType.DATA, b"1")]),
         ErrorCode.BAD_SECTION),
        (build([(SectionType.CODE, HALT), (SectionType.IMPORTS, b"\0\0")]), ErrorCode.BAD_IMPORTS),
        (build([(SectionType.CODE, HALT), (SectionType.IMPORTS, struct.pack("<II", 1, 8) + b"ab")]),
         ErrorCode.BAD_IMPORTS),
        (build([(SectionType.CODE, HALT), (SectionType.IMPORTS, struct.pack("<II", 1, 99))]), ErrorCode.BAD_IMPORTS),
        (build([(SectionType.CODE, HALT), (SectionType.HOST_REGION, regions_payload([(b"", 4, 1)]))]),
         ErrorCode.BAD_REGION),
        (build([(SectionType.CODE, HALT), (SectionType.HOST_REGION, regions_payload([(b"a", 4, 4)]))]),
         ErrorCode.BAD_REGION),
        (build([(SectionType.CODE, HALT), (SectionType.HOST_REGION, regions_payload([(b"a", 4, 1, 1)]))]),
         ErrorCode.BAD_REGION),
        (build([(SectionType.CODE, HALT), (SectionType.HOST_REGION, regions_payload([(b"a", 4, 1), (b"a", 8, 2)]))]),
         ErrorCode.BAD_REGION),
        (build([(SectionType.CODE, HALT), (SectionType.HOST_REGION, regions_payload([(b"x" * 16, 4, 1)]))]),
         ErrorCode.BAD_REGION),
        (build([(SectionType.CODE, HALT), (SectionType.HOST_REGION, struct.pack("<I", 2))]), ErrorCode.BAD_REGION),
    ],
)
def test_load_errors(data, code):
    with pytest.raises(CvmError) as exc:
        load(data)
    assert exc.value.code is code


def test_truncated_payload():
    data = build([(SectionType.CODE, HALT)])
    with pytest.raises(CvmError) as exc:
        load(data[:-1])
    assert exc.value.code is ErrorCode.TRUNCATED


def test_reserve_with_file_offset_rejected():
    data = bytearray(build([(SectionType.CODE, HALT), (SectionType.BSS, 8)]))
    struct.pack_into("<I", data, 24 + 16 + 4, 4)
    with pytest.raises(CvmError) as exc:
        load(bytes(data))
    assert exc.value.code is ErrorCode.BAD_SECTION


def test_peek_section():
    data = build([(SectionType.CODE, HALT), (SectionType.META, b"hello")])
    assert peek_section(data, SectionType.META) == b"hello"
    assert peek_section(data, SectionType.CODE) == HALT
    assert peek_section(data, SectionType.ROM) is None
    with pytest.raises(CvmError) as exc:
        peek_section(b"nope" + bytes(20), SectionType.META)
    assert exc.value.code is ErrorCode.BAD_MAGIC


def test_seal_check():
    sections = [(SectionType.CODE, HALT), (SectionType.DATA, b"payload!")]
    data = sealed(sections)
    assert seal_check(data) is True
    assert isinstance(load(data), Image)
    assert seal_check(build(sections)) is None
    tampered = bytearray(data)
    tampered[-13] ^= 0xFF
    assert seal_check(bytes(tampered)) is False
    bad_magic = data[:-12] + struct.pack("<III", 0, 0, 0)
    assert seal_check(bad_magic) is False
    assert seal_check(b"garbage") is False