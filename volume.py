"""
volume.py

Dense 3-D voxel volume with physical metadata.

- The backing array is indexed [x, y, z] (i->x, j->y, k->z).
- Spacing is in mm per voxel, origin in mm, direction a 3x3 cosine matrix.
- Metadata is immutable. The array is owned by the instance; operations that
  derive a new mask return a new Volume3D, while smooth_in_place mutates the
  receiver by contract.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage

from errors import IncompatibleVolumeError, InvalidArgumentError, InvalidRegionError
from regions import Region3D, get_full_region

logger = logging.getLogger(__name__)

Vec3 = Tuple[float, float, float]


def _as_vec3(values, name: str) -> Vec3:
    v = tuple(float(a) for a in values)
    if len(v) != 3:
        raise InvalidArgumentError(f"{name} must have 3 components, got {len(v)}")
    return v  # type: ignore[return-value]


class Volume3D:
    def __init__(self,
                 array: np.ndarray,
                 spacing: Sequence[float] = (1.0, 1.0, 1.0),
                 origin: Sequence[float] = (0.0, 0.0, 0.0),
                 direction: Optional[np.ndarray] = None):
        array = np.asarray(array)
        if array.ndim != 3:
            raise InvalidArgumentError(f"volume array must be 3-D, got shape {array.shape}")
        spacing = _as_vec3(spacing, "spacing")
        if not all(np.isfinite(s) and s > 0 for s in spacing):
            raise InvalidArgumentError(f"spacing must be positive, got {spacing}")
        if direction is None:
            direction = np.eye(3)
        direction = np.array(direction, dtype=np.float64)
        if direction.shape != (3, 3):
            raise InvalidArgumentError(f"direction must be 3x3, got {direction.shape}")
        direction.setflags(write=False)

        self.array = array
        self._spacing = spacing
        self._origin = _as_vec3(origin, "origin")
        self._direction = direction

    @property
    def spacing(self) -> Vec3:
        return self._spacing

    @property
    def origin(self) -> Vec3:
        return self._origin

    @property
    def direction(self) -> np.ndarray:
        return self._direction

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.array.shape  # type: ignore[return-value]

    @property
    def dim_x(self) -> int:
        return self.array.shape[0]

    @property
    def dim_y(self) -> int:
        return self.array.shape[1]

    @property
    def dim_z(self) -> int:
        return self.array.shape[2]

    @property
    def dim_xy(self) -> int:
        return self.dim_x * self.dim_y

    @property
    def length(self) -> int:
        return int(self.array.size)

    @property
    def voxel_volume(self) -> float:
        """Volume of one voxel in mm^3."""
        sx, sy, sz = self._spacing
        return sx * sy * sz

    def __repr__(self) -> str:
        return (f"Volume3D(shape={self.shape}, dtype={self.array.dtype}, "
                f"spacing={self._spacing}, origin={self._origin})")

    # -- indexing -------------------------------------------------------------

    def get_index(self, x: int, y: int, z: int) -> int:
        """Linear index with x fastest: x + y*dim_x + z*dim_x*dim_y."""
        return x + y * self.dim_x + z * self.dim_xy

    def get_coordinates(self, index: int) -> Tuple[int, int, int]:
        z, rem = divmod(index, self.dim_xy)
        y, x = divmod(rem, self.dim_x)
        return x, y, z

    def physical_point(self, x: float, y: float, z: float) -> np.ndarray:
        """Physical position (mm) of voxel (x, y, z)."""
        scaled = np.array([x, y, z], dtype=np.float64) * np.array(self._spacing)
        return np.array(self._origin) + self._direction @ scaled

    # -- grid helpers ---------------------------------------------------------

    def same_grid(self, other: "Volume3D") -> bool:
        return (self.shape == other.shape
                and np.allclose(self._spacing, other.spacing, rtol=1e-6, atol=1e-9))

    def check_same_grid(self, other: "Volume3D", what: str = "volume") -> None:
        if not self.same_grid(other):
            raise IncompatibleVolumeError(
                f"{what} grid {other.shape}@{other.spacing} does not match {self.shape}@{self._spacing}"
            )

    def full_region(self) -> Region3D:
        return get_full_region(self.array)

    # -- construction ---------------------------------------------------------

    def with_array(self, array: np.ndarray) -> "Volume3D":
        """New volume on the same grid wrapping `array` (not copied)."""
        array = np.asarray(array)
        if array.shape != self.shape:
            raise IncompatibleVolumeError(f"array shape {array.shape} does not match {self.shape}")
        return Volume3D(array, self._spacing, self._origin, self._direction)

    def copy(self) -> "Volume3D":
        return self.with_array(self.array.copy())

    def create_same_size(self, dtype=None, fill=0) -> "Volume3D":
        dtype = self.array.dtype if dtype is None else dtype
        return self.with_array(np.full(self.shape, fill, dtype=dtype))

    def crop(self, region: Region3D) -> "Volume3D":
        """Copy of the voxels inside `region`, with the origin moved to its corner."""
        if region.is_empty():
            raise InvalidRegionError("cannot crop to an empty region")
        if not region.inside_of(self.full_region()):
            raise InvalidRegionError(f"{region} is outside the volume {self.shape}")
        origin = self.physical_point(region.min_x, region.min_y, region.min_z)
        return Volume3D(self.array[region.slices()].copy(), self._spacing, origin, self._direction)

    # -- smoothing ------------------------------------------------------------

    def _gaussian(self, sigma_mm: float) -> np.ndarray:
        if not np.isfinite(sigma_mm) or sigma_mm < 0:
            raise InvalidArgumentError(f"sigma must be a non-negative number of mm, got {sigma_mm}")
        sigmas = [sigma_mm / s for s in self._spacing]
        src = self.array
        filtered = ndimage.gaussian_filter(src.astype(np.float64), sigma=sigmas, mode="nearest")
        if src.dtype == np.bool_:
            return filtered >= 0.5
        if np.issubdtype(src.dtype, np.integer):
            info = np.iinfo(src.dtype)
            return np.clip(np.rint(filtered), info.min, info.max).astype(src.dtype)
        return filtered.astype(src.dtype, copy=False)

    def smooth_in_place(self, sigma_mm: float) -> None:
        """Gaussian-smooth the owned buffer; sigma is in mm and converted per axis.

        The caller must not hold other references to `self.array` that expect
        the old values.
        """
        if sigma_mm == 0:
            return
        logger.debug("smoothing %r in place with sigma=%.3f mm", self, sigma_mm)
        self.array[...] = self._gaussian(sigma_mm)

    def smoothed(self, sigma_mm: float) -> "Volume3D":
        """Copy-returning variant of smooth_in_place."""
        if sigma_mm == 0:
            return self.copy()
        return self.with_array(self._gaussian(sigma_mm))


def as_mask(volume: Volume3D) -> np.ndarray:
    """Boolean foreground (value > 0) view of a label volume."""
    return volume.array > 0
