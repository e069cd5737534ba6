"""Canonical in-memory model: struct catalog, deltas, patterns, signatures.

Every type here is a frozen dataclass.  Engines build new values from old
ones; nothing is updated in place once produced.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from .config import HIGH_CONFIDENCE


# region Catalog

@dataclass(frozen=True)
class FieldDef:
    name: str
    type: str
    offset: int
    size: int = 0
    notes: Optional[str] = None

    def __post_init__(self):
        if self.offset < 0:
            raise ValueError(f"field {self.name!r}: negative offset {self.offset}")
        if self.size < 0:
            raise ValueError(f"field {self.name!r}: negative size {self.size}")

    @property
    def end(self):
        return self.offset + self.size


@dataclass(frozen=True)
class VFuncDef:
    index: int
    name: Optional[str] = None
    address: Optional[int] = None

    def __post_init__(self):
        if self.index < 0:
            raise ValueError(f"vfunc {self.name!r}: negative slot {self.index}")


@dataclass(frozen=True)
class FuncDef:
    name: str
    address: Optional[int] = None
    signature: Optional[str] = None


@dataclass(frozen=True)
class StructDef:
    name: str
    size: Optional[int] = None
    base: Optional[str] = None
    fields: Tuple[FieldDef, ...] = ()
    vfuncs: Tuple[VFuncDef, ...] = ()
    funcs: Tuple[FuncDef, ...] = ()

    def __post_init__(self):
        # Accept lists from callers; store tuples.
        object.__setattr__(self, 'fields', tuple(self.fields))
        object.__setattr__(self, 'vfuncs', tuple(self.vfuncs))
        object.__setattr__(self, 'funcs', tuple(self.funcs))

        seen = set()
        for f in self.fields:
            if f.name in seen:
                raise ValueError(f"struct {self.name!r}: duplicate field {f.name!r}")
            seen.add(f.name)
            if self.size is not None and f.end > self.size:
                raise ValueError(
                    f"struct {self.name!r}: field {f.name!r} ends at 0x{f.end:X}, "
                    f"past declared size 0x{self.size:X}")
        if self.size is not None and self.size < 0:
            raise ValueError(f"struct {self.name!r}: negative size {self.size}")

    def field_map(self):
        return {f.name: f for f in self.fields}


@dataclass(frozen=True)
class EnumDef:
    name: str
    values: Mapping[str, int] = field(default_factory=dict)
    underlying: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'values', MappingProxyType(dict(self.values)))


@dataclass(frozen=True)
class Snapshot:
    """Versioned struct/enum catalog keyed by fully-qualified name."""

    version: str
    structs: Mapping[str, StructDef]
    enums: Mapping[str, EnumDef]

    @classmethod
    def build(cls, version, structs=(), enums=()):
        struct_map = {}
        for s in structs:
            if s.name in struct_map:
                raise ValueError(f"duplicate struct {s.name!r}")
            struct_map[s.name] = s
        enum_map = {}
        for e in enums:
            if e.name in enum_map:
                raise ValueError(f"duplicate enum {e.name!r}")
            enum_map[e.name] = e
        return cls(version, MappingProxyType(struct_map), MappingProxyType(enum_map))

# endregion Catalog


# region Deltas and Patterns

FIELD_OFFSET = "field-offset"
VTABLE_SLOT = "vtable-slot"


@dataclass(frozen=True)
class FieldDelta:
    """Old and new location of one named member.

    For vtable observations ``old_offset``/``new_offset`` hold slot indexes.
    """

    struct: str
    field: str
    old_offset: int
    new_offset: int
    old_type: Optional[str] = None
    new_type: Optional[str] = None
    old_size: Optional[int] = None
    new_size: Optional[int] = None

    @property
    def delta(self):
        return self.new_offset - self.old_offset

    def mirrored(self):
        return FieldDelta(self.struct, self.field, self.new_offset, self.old_offset,
                          self.new_type, self.old_type, self.new_size, self.old_size)


@dataclass(frozen=True)
class OffsetPattern:
    delta: int
    start_offset: int
    affected: Tuple[str, ...]
    confidence: float
    kind: str = FIELD_OFFSET
    description: str = ""
    explained: int = 0
    population: int = 0
    contradictions: Tuple[Tuple[str, str], ...] = ()

    @property
    def affected_count(self):
        return len(self.affected)

# endregion Deltas and Patterns


# region Signatures

@dataclass(frozen=True)
class FieldSignature:
    struct: str
    field: str
    offset: int
    pattern: Tuple[Optional[int], ...]
    disp_position: int
    disp_width: int
    kind: str
    match_count: int
    confidence: float
    reference_address: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'pattern', tuple(self.pattern))
        if not self.pattern:
            raise ValueError(f"{self.key}: empty pattern")
        if self.disp_width not in (1, 4):
            raise ValueError(f"{self.key}: displacement width must be 1 or 4")
        end = self.disp_position + self.disp_width
        if self.disp_position < 0 or end > len(self.pattern):
            raise ValueError(f"{self.key}: displacement outside pattern")
        if any(b is not None for b in self.pattern[self.disp_position:end]):
            raise ValueError(f"{self.key}: displacement bytes must be wildcards")

    @property
    def key(self):
        return f"{self.struct}.{self.field}"

    @property
    def wildcards(self):
        return sum(1 for b in self.pattern if b is None)

    @property
    def high_confidence(self):
        return self.match_count == 1 and self.confidence >= HIGH_CONFIDENCE


@dataclass(frozen=True)
class SignatureStore:
    version: str
    timestamp: str
    signatures: Tuple[FieldSignature, ...] = ()
    binary_md5: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'signatures', tuple(self.signatures))


FOUND = "found"
NO_MATCH = "no-match"
AMBIGUOUS = "ambiguous"
INVALID = "invalid"
CANCELLED = "cancelled"

NO_MATCH_ERROR = "signature not found"
AMBIGUOUS_ERROR = "ambiguous match"


@dataclass(frozen=True)
class ScanResult:
    signature: FieldSignature
    status: str
    new_offset: Optional[int] = None
    match_address: Optional[int] = None
    error: Optional[str] = None
    candidates: Tuple[int, ...] = ()
    confidence: float = 0.0
    # Every match in the executable regions; ``candidates`` keeps only the first few
    match_count: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'candidates', tuple(self.candidates))
        if (self.status == FOUND) != (self.new_offset is not None):
            raise ValueError(f"{self.signature.key}: new_offset must be set iff found")

    @property
    def found(self):
        return self.status == FOUND

    @property
    def delta(self):
        if not self.found:
            return None
        return self.new_offset - self.signature.offset

# endregion Signatures
