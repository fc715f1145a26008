from __future__ import annotations

import numpy as np

from errors import InvalidArgumentError


class StructuringElement:
    """Ellipsoid structuring element with integer voxel radii (rx, ry, rz).

    An offset (dx, dy, dz) is inside when sum((d/r)^2) <= 1 over the axes with
    r > 0; an axis with r == 0 is flattened (only d == 0 is allowed on it).
    Surface offsets are inside offsets that have an outside 6-neighbour along an
    active axis. A zero-radius element has the single offset (0, 0, 0), which
    is its own surface.

    Instances are immutable and may be shared between threads.
    """

    __slots__ = ("_radii", "_offsets", "_surface", "_interior")

    def __init__(self, rx: int, ry: int, rz: int):
        radii = tuple(int(r) for r in (rx, ry, rz))
        if any(r < 0 for r in radii) or radii != (rx, ry, rz):
            raise InvalidArgumentError(f"radii must be non-negative integers, got {(rx, ry, rz)}")
        self._radii = radii

        inside = self._inside_box(radii)
        offsets = _box_offsets(radii)[inside.ravel()]

        # pad by one so that neighbours just outside the bounding box read as outside
        padded = np.pad(inside, 1, constant_values=False)
        surface_box = np.zeros_like(inside)
        c = tuple(slice(1, -1) for _ in range(3))
        for axis, r in enumerate(radii):
            if r == 0:
                continue
            for step in (-1, 1):
                shifted = np.roll(padded, -step, axis=axis)[c]
                surface_box |= inside & ~shifted
        if not any(radii):
            surface_box = inside.copy()
        surface = _box_offsets(radii)[surface_box.ravel()]
        interior = _box_offsets(radii)[(inside & ~surface_box).ravel()]

        for arr in (offsets, surface, interior):
            arr.setflags(write=False)
        self._offsets = offsets
        self._surface = surface
        self._interior = interior

    @staticmethod
    def _inside_box(radii) -> np.ndarray:
        rx, ry, rz = radii
        dx, dy, dz = np.meshgrid(np.arange(-rx, rx + 1), np.arange(-ry, ry + 1), np.arange(-rz, rz + 1),
                                 indexing="ij")
        acc = np.zeros(dx.shape, dtype=np.float64)
        for d, r in ((dx, rx), (dy, ry), (dz, rz)):
            if r > 0:
                acc += (d / r) ** 2
        return acc <= 1.0

    @property
    def radii(self) -> tuple[int, int, int]:
        return self._radii

    @property
    def offsets(self) -> np.ndarray:
        """All (M,3) int64 offsets of the footprint."""
        return self._offsets

    @property
    def surface_offsets(self) -> np.ndarray:
        return self._surface

    @property
    def interior_offsets(self) -> np.ndarray:
        return self._interior

    def __repr__(self) -> str:
        rx, ry, rz = self._radii
        return f"StructuringElement({rx}, {ry}, {rz}; {len(self._offsets)} offsets, {len(self._surface)} surface)"

    def __eq__(self, other) -> bool:
        return isinstance(other, StructuringElement) and self._radii == other._radii

    def __hash__(self) -> int:
        return hash(self._radii)


def _box_offsets(radii) -> np.ndarray:
    rx, ry, rz = radii
    dx, dy, dz = np.meshgrid(np.arange(-rx, rx + 1), np.arange(-ry, ry + 1), np.arange(-rz, rz + 1),
                             indexing="ij")
    return np.stack([dx.ravel(), dy.ravel(), dz.ravel()], axis=1).astype(np.int64)
