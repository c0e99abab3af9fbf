"""Error taxonomy shared by the core and the HTTP layer."""
from __future__ import annotations


class MediaError(Exception):
    """Base class for errors the route layer knows how to map to a status."""

    status_code = 500


class NotFound(MediaError):
    """Source missing, vanished, or outside the configured root.

    Root escapes use the same message as missing files so the response never
    reveals whether an out-of-root path exists.
    """

    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class ProductionFailed(MediaError):
    """A derivation attempt failed. The cache key stays unproduced."""

    status_code = 500


class RangeUnsatisfiable(MediaError):
    status_code = 416

    def __init__(self, size: int, message: str = "Invalid Range"):
        super().__init__(message)
        self.size = int(size)
