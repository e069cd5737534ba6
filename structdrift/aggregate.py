"""Aggregator: per-field scan results -> FieldDeltas -> bulk-shift patterns."""

from collections import Counter
from dataclasses import dataclass
from typing import Tuple

from .config import MIN_GROUP_SIZE, REPORT_FLOOR
from .model import FIELD_OFFSET, FieldDelta, OffsetPattern, ScanResult
from .patterns import detect_patterns


@dataclass(frozen=True)
class ScanReport:
    results: Tuple[ScanResult, ...]
    patterns: Tuple[OffsetPattern, ...]

    @property
    def found(self):
        return [r for r in self.results if r.found]

    @property
    def moved(self):
        return [r for r in self.results if r.found and r.delta != 0]

    def status_counts(self):
        return Counter(r.status for r in self.results)


def results_to_deltas(results):
    """One FieldDelta per found result, unchanged fields included."""
    return [FieldDelta(r.signature.struct, r.signature.field, r.signature.offset, r.new_offset)
            for r in results if r.found]


def delta_patterns(deltas, ctx=None):
    """detect_patterns with the thresholds carried by ``ctx``."""
    min_group = ctx.min_group if ctx else MIN_GROUP_SIZE
    floor = ctx.report_floor if ctx else REPORT_FLOOR
    return detect_patterns(deltas, FIELD_OFFSET, min_group, floor)


def aggregate(results, ctx=None):
    """Bundle scan results with the patterns their deltas support."""
    results = tuple(results)
    patterns = delta_patterns(results_to_deltas(results), ctx)
    return ScanReport(results=results, patterns=tuple(patterns))
