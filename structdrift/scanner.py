"""Wildcard byte patterns and the signature scanner."""

from concurrent.futures import ThreadPoolExecutor

from .config import MAX_CANDIDATES
from .model import (
    AMBIGUOUS,
    AMBIGUOUS_ERROR,
    CANCELLED,
    FOUND,
    INVALID,
    NO_MATCH,
    NO_MATCH_ERROR,
    ScanResult,
)


# region Pattern Text

def parse_pattern(text):
    """"48 8B ?? 05" -> (0x48, 0x8B, None, 0x05).  Single "?" is a wildcard too."""
    out = []
    for tok in text.split():
        if tok in ('?', '??'):
            out.append(None)
        else:
            value = int(tok, 16)
            if not 0 <= value <= 0xFF or len(tok) > 2:
                raise ValueError(f"bad pattern byte {tok!r}")
            out.append(value)
    if not out:
        raise ValueError("empty pattern")
    return tuple(out)


def format_pattern(pattern):
    return ' '.join('??' if b is None else f'{b:02X}' for b in pattern)

# endregion Pattern Text


# region Pattern Matching

def _longest_fixed_run(pattern):
    best_start, best_len = 0, 0
    run_start = None
    for i, b in enumerate(list(pattern) + [None]):
        if b is not None:
            if run_start is None:
                run_start = i
        elif run_start is not None:
            if i - run_start > best_len:
                best_start, best_len = run_start, i - run_start
            run_start = None
    return best_start, best_len


def scan_pattern(data, pattern, limit=0, start=0, end=None):
    """Every offset in data[start:end] where ``pattern`` matches.

    bytes.find() on the longest run of concrete bytes skips to candidates at
    C speed; the full pattern is only checked there.
    """
    matches = []
    pat_len = len(pattern)
    if end is None:
        end = len(data)

    run_start, run_len = _longest_fixed_run(pattern)
    if run_len == 0:
        return matches  # all wildcards = meaningless

    needle = bytes(pattern[run_start:run_start + run_len])
    fixed = [(j, p) for j, p in enumerate(pattern) if p is not None]
    pos = start + run_start

    while True:
        idx = data.find(needle, pos, end)
        if idx < 0:
            break

        candidate = idx - run_start
        if candidate + pat_len > end:
            break

        if all(data[candidate + j] == p for j, p in fixed):
            matches.append(candidate)
            if 0 < limit <= len(matches):
                return matches

        pos = idx + 1

    return matches


def scan_regions(image, pattern, limit=0):
    """scan_pattern over each executable region of a BinaryImage."""
    matches = []
    for start, end in image.regions:
        remaining = limit - len(matches) if limit else 0
        matches.extend(scan_pattern(image.data, pattern, remaining, start, end))
        if limit and len(matches) >= limit:
            break
    return matches

# endregion Pattern Matching


# region Signature Scanner

def decode_displacement(data, address, sig):
    pos = address + sig.disp_position
    return int.from_bytes(data[pos:pos + sig.disp_width], 'little', signed=True)


def scan_signature(image, sig):
    """Locate one FieldSignature in a new image.  Never raises on a miss."""
    matches = scan_regions(image, sig.pattern)

    if not matches:
        return ScanResult(sig, NO_MATCH, error=NO_MATCH_ERROR)

    if len(matches) > 1:
        return ScanResult(sig, AMBIGUOUS, error=AMBIGUOUS_ERROR,
                          candidates=matches[:MAX_CANDIDATES], match_count=len(matches))

    address = matches[0]
    value = decode_displacement(image.data, address, sig)
    if value < 0:
        return ScanResult(sig, INVALID, match_address=address, match_count=1,
                          error=f"negative displacement {value}")

    return ScanResult(sig, FOUND, new_offset=value, match_address=address,
                      confidence=1.0, match_count=1)


def _log_result(ctx, r):
    sig = r.signature
    if r.status == FOUND:
        ctx.echo(f"  [SIG ] {sig.key:40s} 0x{sig.offset:X} -> 0x{r.new_offset:X}  "
                 f"@ 0x{r.match_address:X}")
    elif r.status == AMBIGUOUS:
        ctx.echo(f"  [AMBG] {sig.key:40s} {r.match_count} matches")
    elif r.status == CANCELLED:
        ctx.echo(f"  [STOP] {sig.key:40s} cancelled")
    else:
        ctx.echo(f"  [MISS] {sig.key:40s} {r.error}")


def scan_signatures(image, signatures, ctx):
    """Scan a batch of signatures on ctx.workers threads.

    Results come back in input order.  Once ``ctx`` is cancelled no new scan
    starts; fields not yet scanned are reported as cancelled.
    """
    signatures = list(signatures)

    def task(sig):
        if ctx.cancelled:
            return ScanResult(sig, CANCELLED, error="cancelled")
        return scan_signature(image, sig)

    with ThreadPoolExecutor(max_workers=ctx.workers) as pool:
        results = list(pool.map(task, signatures))

    for r in results:
        _log_result(ctx, r)
    return results

# endregion Signature Scanner
