"""
regions.py

Inclusive axis-aligned integer boxes on a voxel grid and the bounding-box
("interest region") search used by every other module.

Arrays are indexed [x, y, z] (i->x, j->y, k->z), like the rest of the code.
The empty region is (0, 0, 0, -1, -1, -1): max < min on every axis.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numba
import numpy as np

from errors import InvalidRegionError


@dataclass(frozen=True)
class Region3D:
    min_x: int
    min_y: int
    min_z: int
    max_x: int
    max_y: int
    max_z: int

    def is_empty(self) -> bool:
        return self.max_x < self.min_x or self.max_y < self.min_y or self.max_z < self.min_z

    def length_x(self) -> int:
        return 0 if self.is_empty() else self.max_x - self.min_x + 1

    def length_y(self) -> int:
        return 0 if self.is_empty() else self.max_y - self.min_y + 1

    def length_z(self) -> int:
        return 0 if self.is_empty() else self.max_z - self.min_z + 1

    def size(self) -> int:
        """Number of voxels in the box (0 for the empty region)."""
        return self.length_x() * self.length_y() * self.length_z()

    def contains_point(self, x: int, y: int, z: int) -> bool:
        if self.is_empty():
            return False
        return (self.min_x <= x <= self.max_x
                and self.min_y <= y <= self.max_y
                and self.min_z <= z <= self.max_z)

    def inside_of(self, other: "Region3D") -> bool:
        """True if this box lies entirely within `other`."""
        if self.is_empty() or other.is_empty():
            raise InvalidRegionError("inside_of is undefined for an empty region")
        return (other.min_x <= self.min_x and self.max_x <= other.max_x
                and other.min_y <= self.min_y and self.max_y <= other.max_y
                and other.min_z <= self.min_z and self.max_z <= other.max_z)

    def intersect(self, other: "Region3D") -> "Region3D":
        if self.is_empty() or other.is_empty():
            return empty_region()
        r = Region3D(max(self.min_x, other.min_x), max(self.min_y, other.min_y), max(self.min_z, other.min_z),
                     min(self.max_x, other.max_x), min(self.max_y, other.max_y), min(self.max_z, other.max_z))
        return empty_region() if r.is_empty() else r

    def dilate(self, voxels: int, shape: Tuple[int, int, int]) -> "Region3D":
        """Grow by `voxels` on every face, clipped to an array of the given shape."""
        if self.is_empty():
            return self
        nx, ny, nz = shape
        return Region3D(max(self.min_x - voxels, 0), max(self.min_y - voxels, 0), max(self.min_z - voxels, 0),
                        min(self.max_x + voxels, nx - 1), min(self.max_y + voxels, ny - 1),
                        min(self.max_z + voxels, nz - 1))

    def slices(self) -> Tuple[slice, slice, slice]:
        """numpy index for the box: arr[region.slices()]."""
        if self.is_empty():
            raise InvalidRegionError("cannot index with an empty region")
        return (slice(self.min_x, self.max_x + 1),
                slice(self.min_y, self.max_y + 1),
                slice(self.min_z, self.max_z + 1))


def empty_region() -> Region3D:
    return Region3D(0, 0, 0, -1, -1, -1)


def _array_of(volume_or_array) -> np.ndarray:
    arr = np.asarray(getattr(volume_or_array, "array", volume_or_array))
    if arr.ndim != 3:
        raise ValueError(f"expected a 3-D array, got shape {arr.shape}")
    if arr.dtype == np.bool_:
        arr = arr.view(np.uint8)
    return arr


def get_full_region(volume_or_array) -> Region3D:
    nx, ny, nz = _array_of(volume_or_array).shape
    if nx == 0 or ny == 0 or nz == 0:
        return empty_region()
    return Region3D(0, 0, 0, nx - 1, ny - 1, nz - 1)


@numba.njit(parallel=True, cache=True)
def _slice_extremes(arr, threshold):
    """Per-z-slice (min_x, max_x, min_y, max_y); slices without hits keep the
    sentinels (nx, -1, ny, -1)."""
    nx, ny, nz = arr.shape
    out = np.empty((nz, 4), dtype=np.int64)
    for z in numba.prange(nz):
        min_x = nx
        max_x = -1
        min_y = ny
        max_y = -1
        for x in range(nx):
            for y in range(ny):
                if arr[x, y, z] >= threshold:
                    if x < min_x:
                        min_x = x
                    if x > max_x:
                        max_x = x
                    if y < min_y:
                        min_y = y
                    if y > max_y:
                        max_y = y
        out[z, 0] = min_x
        out[z, 1] = max_x
        out[z, 2] = min_y
        out[z, 3] = max_y
    return out


def get_interest_region(volume_or_array, threshold: float = 1) -> Region3D:
    """Smallest box enclosing every voxel with value >= threshold.

    Accepts a Volume3D or a bare [x, y, z] array. Returns the empty region
    when nothing qualifies.
    """
    arr = _array_of(volume_or_array)
    if arr.size == 0:
        return empty_region()
    ext = _slice_extremes(arr, threshold)
    hit = ext[:, 1] >= 0
    if not hit.any():
        return empty_region()
    zs = np.nonzero(hit)[0]
    ext = ext[hit]
    return Region3D(int(ext[:, 0].min()), int(ext[:, 2].min()), int(zs[0]),
                    int(ext[:, 1].max()), int(ext[:, 3].max()), int(zs[-1]))
