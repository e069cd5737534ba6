"""Binary image loading: PE / ELF / Mach-O headers and executable regions.

Only the section tables are read.  Signatures are matched against raw file
bytes, so every address in this package is a file offset.
"""

import hashlib
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from .errors import InputError

IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_MEM_EXECUTE = 0x20000000
SHF_EXECINSTR = 0x4
S_ATTR_PURE_INSTRUCTIONS = 0x80000000
S_ATTR_SOME_INSTRUCTIONS = 0x00000400

CPU_TYPE_X86_64 = 0x01000007


@dataclass(frozen=True)
class Section:
    name: str
    vaddr: int
    raw_offset: int
    raw_size: int
    executable: bool

    @property
    def raw_end(self):
        return self.raw_offset + self.raw_size


@dataclass(frozen=True)
class BinaryImage:
    data: bytes
    format: str
    arch: str
    sections: Tuple[Section, ...]
    regions: Tuple[Tuple[int, int], ...]
    md5: str
    path: str = ""

    @property
    def size(self):
        return len(self.data)

    def in_regions(self, offset, length=1):
        return any(start <= offset and offset + length <= end for start, end in self.regions)


# region PE Parser

def parse_pe(data):
    """Section table of a PE32/PE32+ image, or None when not PE."""
    if len(data) < 0x40 or data[:2] != b'MZ':
        return None

    pe_offset = struct.unpack_from('<I', data, 0x3C)[0]
    if pe_offset + 24 > len(data) or data[pe_offset:pe_offset+4] != b'PE\x00\x00':
        return None

    coff = pe_offset + 4
    machine = struct.unpack_from('<H', data, coff)[0]
    num_sections = struct.unpack_from('<H', data, coff + 2)[0]
    opt_header_size = struct.unpack_from('<H', data, coff + 16)[0]

    sections = []
    sec_offset = coff + 20 + opt_header_size
    for i in range(num_sections):
        s = sec_offset + i * 40
        if s + 40 > len(data):
            break
        name = data[s:s+8].rstrip(b'\x00').decode('ascii', errors='replace')
        vaddr = struct.unpack_from('<I', data, s + 12)[0]
        raw_size = struct.unpack_from('<I', data, s + 16)[0]
        raw_offset = struct.unpack_from('<I', data, s + 20)[0]
        characteristics = struct.unpack_from('<I', data, s + 36)[0]
        sections.append(Section(
            name=name, vaddr=vaddr, raw_offset=raw_offset, raw_size=raw_size,
            executable=bool(characteristics & (IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE)),
        ))

    arch = {0x8664: 'x86_64', 0x14C: 'x86', 0xAA64: 'arm64'}.get(machine, f'machine_{machine:#x}')
    return 'pe', arch, sections

# endregion PE Parser


# region ELF Parser

def parse_elf(data):
    """Section table of a 64-bit little-endian ELF, or None."""
    if len(data) < 64 or data[:4] != b'\x7fELF':
        return None
    if data[4] != 2 or data[5] != 1:
        return None

    e_machine = struct.unpack_from('<H', data, 18)[0]
    e_shoff = struct.unpack_from('<Q', data, 40)[0]
    e_shentsize = struct.unpack_from('<H', data, 58)[0]
    e_shnum = struct.unpack_from('<H', data, 60)[0]
    e_shstrndx = struct.unpack_from('<H', data, 62)[0]
    if e_shoff == 0 or e_shnum == 0 or e_shentsize < 64:
        return None

    headers = []
    for i in range(e_shnum):
        off = e_shoff + i * e_shentsize
        if off + 64 > len(data):
            break
        sh_name = struct.unpack_from('<I', data, off)[0]
        sh_type = struct.unpack_from('<I', data, off + 4)[0]
        sh_flags = struct.unpack_from('<Q', data, off + 8)[0]
        sh_addr = struct.unpack_from('<Q', data, off + 16)[0]
        sh_offset = struct.unpack_from('<Q', data, off + 24)[0]
        sh_size = struct.unpack_from('<Q', data, off + 32)[0]
        headers.append((sh_name, sh_type, sh_flags, sh_addr, sh_offset, sh_size))

    strtab = b''
    if e_shstrndx < len(headers):
        _, _, _, _, str_off, str_size = headers[e_shstrndx]
        strtab = data[str_off:str_off + str_size]

    sections = []
    for sh_name, sh_type, sh_flags, sh_addr, sh_offset, sh_size in headers:
        end = strtab.find(b'\x00', sh_name)
        name = strtab[sh_name:end if end >= 0 else None].decode('ascii', errors='replace')
        # SHT_NOBITS occupies no file bytes
        raw_size = 0 if sh_type == 8 else sh_size
        sections.append(Section(
            name=name, vaddr=sh_addr, raw_offset=sh_offset, raw_size=raw_size,
            executable=bool(sh_flags & SHF_EXECINSTR),
        ))

    arch = {0x3E: 'x86_64', 0xB7: 'arm64', 0x03: 'x86'}.get(e_machine, f'machine_{e_machine:#x}')
    return 'elf', arch, sections

# endregion ELF Parser


# region Mach-O Parser

def parse_macho(data):
    """Section table of a 64-bit Mach-O, preferring the x86_64 slice of a fat file."""
    if len(data) < 32:
        return None
    magic = struct.unpack_from('<I', data, 0)[0]
    if magic == 0xFEEDFACF:
        return _parse_macho_slice(data, 0)
    if struct.unpack_from('>I', data, 0)[0] in (0xCAFEBABE, 0xCAFEBABF):
        return _parse_fat_macho(data)
    return None


def _parse_fat_macho(data):
    nfat_arch = struct.unpack_from('>I', data, 4)[0]
    if nfat_arch > 20:
        return None

    fallback = None
    for i in range(nfat_arch):
        off = 8 + i * 20
        if off + 20 > len(data):
            break
        cputype = struct.unpack_from('>I', data, off)[0]
        offset = struct.unpack_from('>I', data, off + 8)[0]
        size = struct.unpack_from('>I', data, off + 12)[0]
        if offset + size > len(data):
            continue
        parsed = _parse_macho_slice(data, offset)
        if parsed is None:
            continue
        if cputype == CPU_TYPE_X86_64:
            return parsed
        fallback = fallback or parsed
    return fallback


def _parse_macho_slice(data, base_offset):
    if base_offset + 32 > len(data):
        return None
    magic = struct.unpack_from('<I', data, base_offset)[0]
    if magic != 0xFEEDFACF:
        return None

    cputype = struct.unpack_from('<I', data, base_offset + 4)[0]
    ncmds = struct.unpack_from('<I', data, base_offset + 16)[0]
    arch = {CPU_TYPE_X86_64: 'x86_64', 0x0100000C: 'arm64'}.get(cputype, f'cpu_{cputype:#x}')

    LC_SEGMENT_64 = 0x19
    sections = []
    cmd_offset = base_offset + 32
    for _ in range(ncmds):
        if cmd_offset + 8 > len(data):
            break
        cmd = struct.unpack_from('<I', data, cmd_offset)[0]
        cmdsize = struct.unpack_from('<I', data, cmd_offset + 4)[0]
        if cmdsize < 8:
            break

        if cmd == LC_SEGMENT_64 and cmd_offset + 72 <= len(data):
            nsects = struct.unpack_from('<I', data, cmd_offset + 64)[0]
            sec_base = cmd_offset + 72
            for s in range(nsects):
                sec_off = sec_base + s * 80
                if sec_off + 80 > len(data):
                    break
                sectname = data[sec_off:sec_off + 16].rstrip(b'\x00').decode('ascii', errors='replace')
                segname = data[sec_off + 16:sec_off + 32].rstrip(b'\x00').decode('ascii', errors='replace')
                s_addr = struct.unpack_from('<Q', data, sec_off + 32)[0]
                s_size = struct.unpack_from('<Q', data, sec_off + 40)[0]
                s_offset = struct.unpack_from('<I', data, sec_off + 48)[0]
                flags = struct.unpack_from('<I', data, sec_off + 64)[0]
                sections.append(Section(
                    name=f"{segname},{sectname}",
                    vaddr=s_addr,
                    raw_offset=s_offset + base_offset,
                    raw_size=s_size,
                    executable=bool(flags & (S_ATTR_PURE_INSTRUCTIONS | S_ATTR_SOME_INSTRUCTIONS)),
                ))

        cmd_offset += cmdsize

    return 'macho', arch, sections

# endregion Mach-O Parser


# region Format Detection

def _exec_regions(sections, size):
    regions = []
    for sec in sections:
        if not sec.executable or sec.raw_size == 0:
            continue
        start = min(sec.raw_offset, size)
        end = min(sec.raw_end, size)
        if end > start:
            regions.append((start, end))
    regions.sort()

    merged = []
    for start, end in regions:
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(end, merged[-1][1]))
        else:
            merged.append((start, end))
    return tuple(merged)


def detect_binary_format(data, path=""):
    """Try PE -> Mach-O -> ELF, falling back to one raw region over the file."""
    parsed = parse_pe(data) or parse_macho(data) or parse_elf(data)
    if parsed is None:
        fmt, arch, sections = 'raw', 'unknown', []
    else:
        fmt, arch, sections = parsed

    regions = _exec_regions(sections, len(data))
    if not regions and data:
        # No executable section table: scan the whole file
        regions = ((0, len(data)),)

    return BinaryImage(
        data=bytes(data),
        format=fmt,
        arch=arch,
        sections=tuple(sections),
        regions=regions,
        md5=hashlib.md5(data).hexdigest(),
        path=str(path),
    )


def load_binary(path):
    """Read and index a binary.  InputError when unreadable or empty."""
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise InputError(f"cannot read binary: {e.strerror or e}", path)
    if not data:
        raise InputError("binary has no scannable bytes", path)
    return detect_binary_format(data, path)

# endregion Format Detection
