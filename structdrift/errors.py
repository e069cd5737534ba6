"""Error types shared by the loaders and the CLI.

Only input problems are exceptions.  Per-field scan outcomes (no match,
ambiguous match) are recorded on the ScanResult instead of being raised.
"""


class InputError(Exception):
    """Unreadable binary, or a catalog / store / report that cannot be parsed."""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path

    def __str__(self):
        msg = super().__str__()
        if self.path is not None:
            return f"{self.path}: {msg}"
        return msg
