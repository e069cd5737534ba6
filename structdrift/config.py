"""Tunables and the caller-owned run context."""

import os
import threading


# region Configuration

# Signatures whose confidence falls below this are dropped from the store.
DEFAULT_MIN_CONFIDENCE = 0.5

# Only a unique match (match count 1) may reach this level.
HIGH_CONFIDENCE = 0.9

# Signatures under this are listed as weak in the coverage report.
WEAK_CONFIDENCE = 0.7

# Pattern detector: minimum members per delta group, and the confidence
# below which a hypothesis is not reported at all.
MIN_GROUP_SIZE = 2
REPORT_FLOOR = 0.25

# Sample counts below these cap a pattern's confidence under HIGH_CONFIDENCE.
MIN_STRUCTS_FOR_FULL_CONFIDENCE = 3
MIN_FIELDS_FOR_FULL_CONFIDENCE = 3

# Patch suggestions: minimum confidence of the hierarchy shift, cascade or
# cross-hierarchy pattern a suggestion is built from.
SUGGEST_HIERARCHY_MIN = 0.5
SUGGEST_CASCADE_MIN = 0.6
SUGGEST_CROSS_MIN = 0.7

# Signature window growth.  The window starts at the bare instruction and
# grows one byte at a time (right first, then left) up to MAX_WINDOW bytes.
MAX_WINDOW = 64

# Cap on decoded instruction references examined per field.  Common offsets
# (0x8, 0x10 ...) can have tens of thousands of references.
MAX_CANDIDATES = 32

# Base confidence of a unique signature, by instruction kind.  Reads and
# writes of a field are the most stable references across builds.
KIND_WEIGHTS = {
    "read": 1.0,
    "write": 1.0,
    "lea": 0.95,
    "fp-read": 0.95,
    "fp-write": 0.95,
    "compare": 0.9,
    "arithmetic": 0.9,
}

# endregion Configuration


class DriftContext:
    """Runtime options and cancellation for one extract/scan run.

    Owned by the caller and passed down explicitly; nothing in the package
    keeps state between runs.  ``cancel()`` may be called from any thread.
    """

    def __init__(self, min_confidence=DEFAULT_MIN_CONFIDENCE, max_window=MAX_WINDOW,
                 max_candidates=MAX_CANDIDATES, workers=None, verbose=False,
                 min_group=MIN_GROUP_SIZE, report_floor=REPORT_FLOOR):
        if not 0.0 <= min_confidence <= 1.0:
            raise ValueError(f"min_confidence must be within [0, 1], got {min_confidence}")
        if max_window < 1:
            raise ValueError(f"max_window must be positive, got {max_window}")
        self.min_confidence = min_confidence
        self.max_window = max_window
        self.max_candidates = max_candidates
        self.workers = workers or os.cpu_count() or 1
        self.verbose = verbose
        self.min_group = min_group
        self.report_floor = report_floor
        self._cancel = threading.Event()

    def cancel(self):
        self._cancel.set()

    @property
    def cancelled(self):
        return self._cancel.is_set()

    def echo(self, msg):
        if self.verbose:
            print(msg)

    def __repr__(self):
        return (f"DriftContext(min_confidence={self.min_confidence}, "
                f"max_window={self.max_window}, workers={self.workers})")
