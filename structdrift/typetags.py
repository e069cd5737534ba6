"""Canonical type tags with a fixed alias table.

Catalogs spell the same primitive many ways ("int", "Int32", "__int32",
"System.Int32").  Every spelling we accept is listed in TYPE_ALIASES; lookup
is exact, so "Vector3" never matches "int" by accident.
"""

import enum


class TypeTag(enum.Enum):
    BOOL = "bool"
    INT8 = "int8"
    UINT8 = "uint8"
    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    INT64 = "int64"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    POINTER = "pointer"
    OTHER = "other"


TYPE_SIZES = {
    TypeTag.BOOL: 1,
    TypeTag.INT8: 1,
    TypeTag.UINT8: 1,
    TypeTag.INT16: 2,
    TypeTag.UINT16: 2,
    TypeTag.INT32: 4,
    TypeTag.UINT32: 4,
    TypeTag.INT64: 8,
    TypeTag.UINT64: 8,
    TypeTag.FLOAT32: 4,
    TypeTag.FLOAT64: 8,
    TypeTag.POINTER: 8,
}

TYPE_ALIASES = {
    # bool
    "bool": TypeTag.BOOL,
    "boolean": TypeTag.BOOL,
    "System.Boolean": TypeTag.BOOL,
    # 8-bit
    "sbyte": TypeTag.INT8,
    "char": TypeTag.INT8,
    "int8": TypeTag.INT8,
    "int8_t": TypeTag.INT8,
    "__int8": TypeTag.INT8,
    "System.SByte": TypeTag.INT8,
    "byte": TypeTag.UINT8,
    "uint8": TypeTag.UINT8,
    "uint8_t": TypeTag.UINT8,
    "unsigned char": TypeTag.UINT8,
    "unsigned __int8": TypeTag.UINT8,
    "System.Byte": TypeTag.UINT8,
    # 16-bit
    "short": TypeTag.INT16,
    "int16": TypeTag.INT16,
    "int16_t": TypeTag.INT16,
    "__int16": TypeTag.INT16,
    "Int16": TypeTag.INT16,
    "System.Int16": TypeTag.INT16,
    "ushort": TypeTag.UINT16,
    "uint16": TypeTag.UINT16,
    "uint16_t": TypeTag.UINT16,
    "unsigned short": TypeTag.UINT16,
    "unsigned __int16": TypeTag.UINT16,
    "UInt16": TypeTag.UINT16,
    "System.UInt16": TypeTag.UINT16,
    # 32-bit
    "int": TypeTag.INT32,
    "int32": TypeTag.INT32,
    "int32_t": TypeTag.INT32,
    "__int32": TypeTag.INT32,
    "Int32": TypeTag.INT32,
    "System.Int32": TypeTag.INT32,
    "uint": TypeTag.UINT32,
    "uint32": TypeTag.UINT32,
    "uint32_t": TypeTag.UINT32,
    "unsigned int": TypeTag.UINT32,
    "unsigned __int32": TypeTag.UINT32,
    "UInt32": TypeTag.UINT32,
    "System.UInt32": TypeTag.UINT32,
    # 64-bit
    "long": TypeTag.INT64,
    "int64": TypeTag.INT64,
    "int64_t": TypeTag.INT64,
    "__int64": TypeTag.INT64,
    "long long": TypeTag.INT64,
    "Int64": TypeTag.INT64,
    "System.Int64": TypeTag.INT64,
    "ulong": TypeTag.UINT64,
    "uint64": TypeTag.UINT64,
    "uint64_t": TypeTag.UINT64,
    "unsigned long long": TypeTag.UINT64,
    "unsigned __int64": TypeTag.UINT64,
    "UInt64": TypeTag.UINT64,
    "System.UInt64": TypeTag.UINT64,
    # floating point
    "float": TypeTag.FLOAT32,
    "single": TypeTag.FLOAT32,
    "Single": TypeTag.FLOAT32,
    "System.Single": TypeTag.FLOAT32,
    "double": TypeTag.FLOAT64,
    "Double": TypeTag.FLOAT64,
    "System.Double": TypeTag.FLOAT64,
    # pointer-sized
    "nint": TypeTag.POINTER,
    "nuint": TypeTag.POINTER,
    "IntPtr": TypeTag.POINTER,
    "UIntPtr": TypeTag.POINTER,
    "System.IntPtr": TypeTag.POINTER,
    "void*": TypeTag.POINTER,
    "CString": TypeTag.POINTER,
}


def canonical_tag(type_name):
    """Map a declared type name to its TypeTag.

    Pointer spellings ("Foo*", "Pointer<Foo>") are POINTER; anything not in
    the alias table is OTHER.
    """
    name = type_name.strip()
    tag = TYPE_ALIASES.get(name)
    if tag is not None:
        return tag
    if name.endswith('*') or (name.startswith('Pointer<') and name.endswith('>')):
        return TypeTag.POINTER
    return TypeTag.OTHER


def types_equivalent(a, b):
    """True when two declared type names denote the same field type."""
    if a == b:
        return True
    if a is None or b is None:
        return False
    ta, tb = canonical_tag(a), canonical_tag(b)
    if ta is TypeTag.OTHER or tb is TypeTag.OTHER:
        return a.strip() == b.strip()
    if ta is TypeTag.POINTER and tb is TypeTag.POINTER:
        # Pointers to different types are different declarations; only the
        # generic pointer-sized aliases collapse together.
        return a.strip() in TYPE_ALIASES and b.strip() in TYPE_ALIASES
    return ta is tb


def type_size(type_name):
    """Byte size of a primitive type name, or None for non-primitives."""
    return TYPE_SIZES.get(canonical_tag(type_name))
