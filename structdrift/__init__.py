"""
structdrift
===========
Track how a reverse-engineered struct catalog drifts across binary versions.

  diff        compare two catalog snapshots field by field
  patterns    generalize scattered offset changes into bulk-shift hypotheses
  extractor   byte signatures for known field offsets in a reference binary
  scanner     find those signatures in a new binary and read the new offsets

Requirements: Python 3.8+, networkx + matplotlib (pattern graph PNG)
"""

VERSION = "1.0.0"

from .errors import InputError
from .config import DriftContext
from .model import (
    EnumDef,
    FieldDef,
    FieldDelta,
    FieldSignature,
    OffsetPattern,
    ScanResult,
    SignatureStore,
    Snapshot,
    StructDef,
    VFuncDef,
)
from .catalog import load_snapshot, snapshot_from_dict
from .diff import diff_snapshots
from .patterns import analyze, detect_patterns
from .binfmt import load_binary
from .extractor import extract_signatures
from .scanner import scan_signature, scan_signatures
from .aggregate import aggregate
