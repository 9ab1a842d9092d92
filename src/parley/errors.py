"""
Error types for Parley.

Only ConfigError ever reaches a caller; the rest are raised and caught
inside the core so a failed lookup degrades to dictation.
"""


class ParleyError(Exception):
    """Base class for all Parley errors."""


class ConfigError(ParleyError):
    """Configuration file is unreadable or holds invalid values."""


class StoreError(ParleyError):
    """Command store could not be read or has the wrong shape."""


class ClassificationError(ParleyError):
    """External intent classification failed (timeout, transport, bad reply)."""
