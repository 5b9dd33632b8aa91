"""
Error taxonomy for the ledger core.

Non-positive capital in return calculations is not an error here: the
aggregator defines that return as zero so aggregate endpoints stay total.
"""


class LedgerError(Exception):
    """Base class for errors surfaced by the ledger core."""


class InputInvalid(LedgerError):
    """Malformed or missing identifiers / time ranges. Not retryable."""


class UpstreamUnavailable(LedgerError):
    """The venue (fills, equity, deposits) failed. Safe to retry later."""


class StorageFailure(LedgerError):
    """A repository read or write failed."""
