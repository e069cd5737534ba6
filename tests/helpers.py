"""Synthetic catalogs and binaries for the test suite."""

import random
import struct

TEXT_RAW_OFFSET = 0x200


def filler(n, seed):
    """Deterministic pseudo-random bytes."""
    rng = random.Random(seed)
    return bytes(rng.randrange(256) for _ in range(n))


def build_pe64(code):
    """Minimal PE32+ image: headers padded to 0x200, then one .text section."""
    header = bytearray(TEXT_RAW_OFFSET)
    header[0:2] = b'MZ'
    struct.pack_into('<I', header, 0x3C, 0x40)
    header[0x40:0x44] = b'PE\x00\x00'
    coff = 0x44
    # machine, sections, timestamp, symtab ptr, symbol count, opt header size, characteristics
    struct.pack_into('<HHIIIHH', header, coff, 0x8664, 1, 0, 0, 0, 0xF0, 0x22)
    opt = coff + 20
    struct.pack_into('<H', header, opt, 0x20B)
    sec = opt + 0xF0
    header[sec:sec + 8] = b'.text\x00\x00\x00'
    # vsize, vaddr, raw size, raw offset
    struct.pack_into('<IIII', header, sec + 8, len(code), 0x1000, len(code), TEXT_RAW_OFFSET)
    struct.pack_into('<I', header, sec + 36, 0x60000020)
    return bytes(header) + code


def mov_read(offset):
    """mov rax, [rcx+disp32]"""
    return b'\x48\x8B\x81' + struct.pack('<i', offset)


def mov_write(offset):
    """mov [rcx+disp32], edx"""
    return b'\x89\x91' + struct.pack('<i', offset)


def lea(offset):
    """lea rcx, [rdi+disp32]"""
    return b'\x48\x8D\x8F' + struct.pack('<i', offset)


def movss_read(offset):
    """movss xmm0, [rcx+disp32]"""
    return b'\xF3\x0F\x10\x81' + struct.pack('<i', offset)


# Fields referenced by the synthetic code.  All offsets are above 0x7F so
# that no 1-byte displacement search runs over the random filler.
FOO_FIELDS = (
    ("health", mov_read, 0x1A4),
    ("mana", mov_write, 0x2C8),
    ("target", lea, 0x310),
    ("speed", movss_read, 0x3B0),
)


def build_code(offsets, seed=7, drop=()):
    """Filler with one reference per field; ``offsets`` maps field -> displacement.

    Fields in ``drop`` have their instruction replaced by NOPs of equal length.
    """
    parts = [filler(96, seed)]
    for i, (name, encode, _) in enumerate(FOO_FIELDS):
        instr = encode(offsets[name])
        if name in drop:
            instr = b'\x90' * len(instr)
        parts.append(instr)
        parts.append(filler(96, seed + i + 1))
    return b''.join(parts)


def foo_offsets(shift=0):
    return {name: off + shift for name, _, off in FOO_FIELDS}


def foo_catalog(shift=0, version="1.0"):
    fields = [{"name": name, "type": "int", "offset": hex(off + shift), "size": 4}
              for name, _, off in FOO_FIELDS]
    return {"version": version, "structs": [{"name": "Foo", "size": 0x400, "fields": fields}]}
