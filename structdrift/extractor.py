"""Signature extractor: byte signatures for known field offsets.

For a field at offset N we look for x86-64 instructions addressing
``[reg+N]`` in the executable regions of a reference image, then grow a
window of concrete bytes around each one until it matches exactly once.
The displacement itself is always a wildcard, so the same signature finds
the instruction after the field moves and reads the new offset back out.

Recognized encodings (optional 0x66 / mandatory F2 F3 prefix, optional REX,
ModRM with mod 01 = disp8 or mod 10 = disp32, optional SIB):

    read        8B  8A  0F B6  0F B7
    write       89  88  C7 /0 imm  C6 /0 imm8
    lea         8D
    fp-read     F3 0F 10  F2 0F 10
    fp-write    F3 0F 11  F2 0F 11
    compare     3B  39  83 /7 imm8  80 /7 imm8  81 /7 imm
    arithmetic  03  01  2B  29  83 /0 imm8  83 /5 imm8
"""

import struct
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .config import KIND_WEIGHTS
from .model import FieldSignature, SignatureStore
from .scanner import format_pattern, scan_pattern

NO_REFERENCE = "no reference"
LOW_CONFIDENCE = "low confidence"
CANCELLED = "cancelled"

REL32_OPCODES = (0xE8, 0xE9)


# region Instruction Shapes

@dataclass(frozen=True)
class InstrShape:
    kind: str
    opcode: bytes
    reg: Optional[int] = None       # ModRM.reg opcode extension (/n)
    prefix: Optional[int] = None    # mandatory F2/F3
    imm: int = 0


SHAPES = (
    InstrShape("read", b'\x8B'),
    InstrShape("read", b'\x8A'),
    InstrShape("read", b'\x0F\xB6'),
    InstrShape("read", b'\x0F\xB7'),
    InstrShape("write", b'\x89'),
    InstrShape("write", b'\x88'),
    InstrShape("write", b'\xC7', reg=0, imm=4),
    InstrShape("write", b'\xC6', reg=0, imm=1),
    InstrShape("lea", b'\x8D'),
    InstrShape("fp-read", b'\x0F\x10', prefix=0xF3),
    InstrShape("fp-read", b'\x0F\x10', prefix=0xF2),
    InstrShape("fp-write", b'\x0F\x11', prefix=0xF3),
    InstrShape("fp-write", b'\x0F\x11', prefix=0xF2),
    InstrShape("compare", b'\x3B'),
    InstrShape("compare", b'\x39'),
    InstrShape("compare", b'\x83', reg=7, imm=1),
    InstrShape("compare", b'\x80', reg=7, imm=1),
    InstrShape("compare", b'\x81', reg=7, imm=4),
    InstrShape("arithmetic", b'\x03'),
    InstrShape("arithmetic", b'\x01'),
    InstrShape("arithmetic", b'\x2B'),
    InstrShape("arithmetic", b'\x29'),
    InstrShape("arithmetic", b'\x83', reg=0, imm=1),
    InstrShape("arithmetic", b'\x83', reg=5, imm=1),
)


@dataclass(frozen=True)
class InstrHit:
    """One decoded reference to the target displacement."""

    kind: str
    start: int
    end: int
    disp_pos: int
    disp_width: int
    region: Tuple[int, int]


def _match_shape(data, shape, modrm_pos, rs):
    """Instruction start for ``shape`` ending at modrm_pos, or None."""
    op_start = modrm_pos - len(shape.opcode)
    if op_start < rs or data[op_start:modrm_pos] != shape.opcode:
        return None, 0
    if shape.reg is not None and (data[modrm_pos] >> 3) & 7 != shape.reg:
        return None, 0

    i = op_start
    if i - 1 >= rs and 0x40 <= data[i - 1] <= 0x4F:
        i -= 1

    imm = shape.imm
    if shape.prefix is not None:
        if i - 1 < rs or data[i - 1] != shape.prefix:
            return None, 0
        i -= 1
    elif i - 1 >= rs and data[i - 1] == 0x66:
        i -= 1
        if imm == 4:
            imm = 2
    return i, imm


def decode_reference(data, disp_pos, width, region):
    """Decode the instructions whose displacement starts at ``disp_pos``.

    Tries ModRM directly before the displacement (no SIB) and ModRM two
    bytes before it (SIB in between).
    """
    rs, re_ = region
    want_mod = 1 if width == 1 else 2
    hits = []
    for modrm_pos, has_sib in ((disp_pos - 1, False), (disp_pos - 2, True)):
        if modrm_pos < rs:
            continue
        modrm = data[modrm_pos]
        if modrm >> 6 != want_mod or ((modrm & 7) == 4) != has_sib:
            continue
        for shape in SHAPES:
            start, imm = _match_shape(data, shape, modrm_pos, rs)
            if start is None:
                continue
            end = disp_pos + width + imm
            if end <= re_:
                hits.append(InstrHit(shape.kind, start, end, disp_pos, width, region))
            break
    return hits


def find_references(image, offset, limit):
    """Decoded instruction references to ``offset``, at most ``limit`` of them."""
    needles = []
    if offset <= 0x7F:
        needles.append((bytes([offset]), 1))
    if offset <= 0x7FFFFFFF:
        needles.append((struct.pack('<i', offset), 4))

    data = image.data
    hits = []
    for needle, width in needles:
        for region in image.regions:
            pos = region[0]
            while len(hits) < limit:
                idx = data.find(needle, pos, region[1])
                if idx < 0:
                    break
                hits.extend(decode_reference(data, idx, width, region))
                pos = idx + 1
    return hits[:limit]

# endregion Instruction Shapes


# region Window Growth

@dataclass(frozen=True)
class Candidate:
    hit: InstrHit
    start: int
    pattern: Tuple[Optional[int], ...]
    count: int

    @property
    def weight(self):
        return KIND_WEIGHTS.get(self.hit.kind, 0.5)

    @property
    def wildcards(self):
        return sum(1 for b in self.pattern if b is None)

    def rank(self):
        return (self.wildcards, len(self.pattern), -self.weight, self.start)


def _masked_positions(data, lo, hi, hit):
    """rel32 operands of calls/jumps around the instruction."""
    masked = set()
    for q in range(lo, hi):
        if hit.start <= q < hit.end or data[q] not in REL32_OPCODES:
            continue
        for t in range(q + 1, min(q + 5, hi)):
            if not hit.start <= t < hit.end:
                masked.add(t)
    return masked


def grow_window(image, hit, max_window):
    """Widen the masked instruction until it occurs once, or max_window is hit.

    Only the bare instruction is scanned; each grown window filters the
    previous match list by the one new byte instead of rescanning.
    """
    data = image.data
    rs, re_ = hit.region
    lo = max(rs, hit.start - max_window)
    hi = min(re_, hit.end + max_window)
    masked = _masked_positions(data, lo, hi, hit)
    disp_end = hit.disp_pos + hit.disp_width

    def byte_at(q):
        if hit.disp_pos <= q < disp_end or q in masked:
            return None
        return data[q]

    ws, we = hit.start, hit.end
    initial = [byte_at(q) for q in range(ws, we)]
    matches = [(m, r) for r in image.regions
               for m in scan_pattern(data, initial, 0, r[0], r[1])]

    right_turn = True
    while len(matches) > 1 and we - ws < max_window:
        can_right, can_left = we < hi, ws > lo
        if not (can_right or can_left):
            break
        go_right = can_right and (right_turn or not can_left)
        if go_right:
            value = byte_at(we)
            rel = we - ws
            matches = [(m, r) for m, r in matches
                       if m + rel < r[1] and (value is None or data[m + rel] == value)]
            we += 1
        else:
            value = byte_at(ws - 1)
            matches = [(m - 1, r) for m, r in matches
                       if m - 1 >= r[0] and (value is None or data[m - 1] == value)]
            ws -= 1
        right_turn = not go_right

    pattern = tuple(byte_at(q) for q in range(ws, we))
    return Candidate(hit=hit, start=ws, pattern=pattern, count=len(matches))


def select_candidate(candidates):
    """Best candidate and its confidence.

    Unique candidates win (fewest wildcards, then shortest, then highest
    kind weight, then lowest address).  Otherwise the fewest occurrences win
    and confidence is scaled down by the occurrence count.
    """
    if not candidates:
        return None, 0.0
    unique = [c for c in candidates if c.count == 1]
    if unique:
        best = min(unique, key=Candidate.rank)
        return best, best.weight
    best = min(candidates, key=lambda c: (c.count,) + c.rank())
    return best, best.weight / max(best.count, 1)

# endregion Window Growth


# region Extraction

@dataclass(frozen=True)
class SkippedField:
    struct: str
    field: str
    offset: int
    reason: str
    confidence: float = 0.0


@dataclass(frozen=True)
class ExtractionReport:
    store: SignatureStore
    skipped: Tuple[SkippedField, ...]

    @property
    def requested(self):
        return len(self.store.signatures) + len(self.skipped)


def extract_field(image, struct_name, field_name, offset, ctx):
    """FieldSignature for one field, or a SkippedField saying why not."""
    hits = find_references(image, offset, ctx.max_candidates)
    if not hits:
        return SkippedField(struct_name, field_name, offset, NO_REFERENCE)

    candidates: List[Candidate] = []
    for hit in hits:
        if ctx.cancelled:
            break
        candidates.append(grow_window(image, hit, ctx.max_window))

    best, confidence = select_candidate(candidates)
    if best is None:
        return SkippedField(struct_name, field_name, offset, CANCELLED)
    if confidence < ctx.min_confidence:
        return SkippedField(struct_name, field_name, offset, LOW_CONFIDENCE, confidence)

    return FieldSignature(
        struct=struct_name,
        field=field_name,
        offset=offset,
        pattern=best.pattern,
        disp_position=best.hit.disp_pos - best.start,
        disp_width=best.hit.disp_width,
        kind=best.hit.kind,
        match_count=best.count,
        confidence=confidence,
        reference_address=best.start,
    )


def extract_signatures(image, targets, ctx, version="unknown"):
    """Extract signatures for (struct, field, offset) targets on ctx.workers threads.

    Every target ends up either in the store or in ``skipped``.  After
    ``ctx.cancel()`` no new field search starts.
    """
    targets = list(targets)

    def task(target):
        sname, fname, offset = target
        if ctx.cancelled:
            return SkippedField(sname, fname, offset, CANCELLED)
        return extract_field(image, sname, fname, offset, ctx)

    with ThreadPoolExecutor(max_workers=ctx.workers) as pool:
        outcomes = list(pool.map(task, targets))

    signatures = []
    skipped = []
    for out in outcomes:
        if isinstance(out, FieldSignature):
            signatures.append(out)
            ctx.echo(f"  [SIG ] {out.key:40s} 0x{out.offset:X}  {out.kind:10s} "
                     f"{format_pattern(out.pattern)}")
        else:
            skipped.append(out)
            ctx.echo(f"  [SKIP] {out.struct}.{out.field:30s} 0x{out.offset:X}  {out.reason}")

    store = SignatureStore(
        version=version,
        timestamp=datetime.now(timezone.utc).isoformat(),
        signatures=signatures,
        binary_md5=image.md5,
    )
    return ExtractionReport(store=store, skipped=tuple(skipped))

# endregion Extraction
