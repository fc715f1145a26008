from __future__ import annotations


class GeometryError(ValueError):
    """Base class for errors raised by the mask/contour/statistics code."""


class InvalidArgumentError(GeometryError):
    """Malformed input: wrong counts, negative margins, empty required lists."""


class IncompatibleVolumeError(GeometryError):
    """Two volumes that must share a voxel grid do not."""


class InvalidRegionError(GeometryError):
    """An operation needs a non-empty region but got the empty one."""


class InconsistentGeometryError(GeometryError):
    """A geometric precondition does not hold, e.g. a hole ring not enclosed by its outer ring."""
