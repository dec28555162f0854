# cronovm

A small, sandboxed register virtual machine. `cronovm` loads `CVM1` binary
images, validates their layout, lets a host program bind syscalls and
exchange data through named memory regions, and runs the code in a
bounds-checked interpreter with 256 32-bit registers.

No dependencies beyond the Python standard library.

## Installing

```
pip install cronovm
```

## Loading and running an image

```python
from cronovm.image import load
from cronovm.interpreter import run

with open("game.bin", "rb") as f:
    image = load(f.read())

result = run(image, [5, 7])   # initial values for R0, R1, ...
print(result)
```

`load` checks the header, the section table, and every section the
interpreter relies on (code, data, BSS, imports, function table, host
regions, ROM, heap and stack reserves). Any problem raises
`cronovm.errors.CvmError`, whose `code` attribute is a member of
`cronovm.errors.ErrorCode`; the exception message is the code's
description, also available from `cronovm.errors.strerror(code)`.

Run-time faults — unknown opcodes, out-of-range program counter or memory
access, division by zero, stack overflow, bad function indices, unlinked
syscalls and so on — raise `CvmError` as well.

The loaded `Image` exposes the code words (`code`), the VM memory as a
`bytearray` (`heap`), and its layout: memory is arranged as
DATA | BSS | REGIONS | ROM | RESERVE | STACK, with `heap_size` covering
everything before the stack and `mem_size` the whole block.

## Building a tiny image by hand

`cronovm.isa` has the opcode table and encoders, so a minimal image can be
put together directly:

```python
import struct

from cronovm.image import load
from cronovm.interpreter import run
from cronovm.isa import Opcode, encode, encode_imm16

code = struct.pack(
    "<2I",
    encode_imm16(Opcode.MOVI, 0, 42),  # R0 = 42
    encode(Opcode.HALT, 0),            # stop, returning R0
)
header = struct.pack("<4sIIIII", b"CVM1", 0x00010000, 0, 1, 24, 0)
section = struct.pack("<IIII", 1, 40, len(code), 0)  # CODE section at offset 40

image = load(header + section + code)
assert run(image) == 42
```

## Calling a function by index

Images that carry a function table can be entered at any function other
than the reserved index 0:

```python
from cronovm.interpreter import call

value = call(image, 3, [10, 20])
```

## Syscalls

Imports named in the image are bound to Python callables with
`image.link(name, fn, user_data=None)`; linking a name the image does not
import raises `CvmError` with `ErrorCode.NO_SUCH_IMPORT`. A handler is
called as `fn(image, regs, user_data)`, where `regs` is the list of
registers. It talks to the program through the registers and signals a
trap by returning a truthy value.

These imports are bound automatically when present:
`cvm_sys_heap_start`, `cvm_sys_heap_size`, `cvm_sys_get_region`,
`cvm_sys_rom_base` and `cvm_sys_rom_size`.

## Host regions and memory

Named host regions give the host and the program a shared block of memory.
`image.get_region(name)` returns a `Region` with `name`, `size`,
`direction` and `offset`, or raises `CvmError` with
`ErrorCode.NO_SUCH_REGION`:

```python
region = image.get_region("input")
image.heap_write(region.offset, (7).to_bytes(4, "little"))
run(image)
fb = image.get_region("fb")
framebuffer = image.heap_read(fb.offset, fb.size)
```

`heap_read` and `heap_write` are bounds-checked against the whole VM
memory, stack included, and raise `CvmError` with `ErrorCode.BAD_ADDR`
when out of range.

## Inspecting binaries

- `cronovm.image.peek_section(data, section_type)` returns a section's
  bytes without a full load, or `None` when the section is absent.
- `cronovm.image.crc32(data)` computes the CRC-32 used by image seals.
- `cronovm.image.seal_check(data)` returns `None` when the image has no
  seal, `True` when the seal matches, and `False` when it does not or is
  malformed.
- `cronovm.isa` provides `Opcode`, `SectionType`, `RegionDirection`,
  `Instruction`, `decode` and the `encode`, `encode_imm16` and
  `encode_imm24` helpers for instruction words.
- `cronovm.floatops` holds the bit-exact single-precision helpers the
  interpreter uses, including saturating float-to-int conversions that map
  NaN to zero.

## Version

`cronovm.image.version_string()` and `cronovm.image.version_number()`
report the library version.

## What this package does not do

`cronovm` only loads and runs images that already exist. It has no
compiler or toolchain for producing `CVM1` binaries from other languages,
no command-line program, and no instruction profiler.