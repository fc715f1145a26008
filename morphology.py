"""
morphology.py

Dilation and erosion of binary masks by physical (mm) margins.

The margins are turned into voxel radii with round(margin / spacing) per axis
and an ellipsoid structuring element is painted around the mask surface:

1. every 26-connected component gets the full footprint painted once, at its
   first surface voxel in scan order (sequential, so small components survive
   an erosion and every component takes part in a dilation);
2. a z-slice parallel sweep paints the element's surface offsets at every
   surface voxel of the frozen input into a separate result buffer.

Erosion paints background and shrinks each radius by one voxel, since the
painted surface layer itself is always removed. Dilation paints foreground and
may be clipped to a restriction mask.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numba
import numpy as np

from connected_components import label_components
from errors import InvalidArgumentError
from structuring_element import StructuringElement
from volume import Volume3D

logger = logging.getLogger(__name__)

FOREGROUND = 1
BACKGROUND = 0


@numba.njit(cache=True)
def _is_surface(src, x, y, z, ax, ay, az):
    # neighbours outside the volume are not background
    if src[x, y, z] == 0:
        return False
    nx, ny, nz = src.shape
    if ax:
        if x > 0 and src[x - 1, y, z] == 0:
            return True
        if x < nx - 1 and src[x + 1, y, z] == 0:
            return True
    if ay:
        if y > 0 and src[x, y - 1, z] == 0:
            return True
        if y < ny - 1 and src[x, y + 1, z] == 0:
            return True
    if az:
        if z > 0 and src[x, y, z - 1] == 0:
            return True
        if z < nz - 1 and src[x, y, z + 1] == 0:
            return True
    return False


@numba.njit(cache=True)
def _paint(result, restriction, use_restriction, offsets, label, x, y, z):
    nx, ny, nz = result.shape
    for t in range(offsets.shape[0]):
        px = x + offsets[t, 0]
        py = y + offsets[t, 1]
        pz = z + offsets[t, 2]
        if px < 0 or py < 0 or pz < 0 or px >= nx or py >= ny or pz >= nz:
            continue
        if use_restriction and restriction[px, py, pz] == 0:
            continue
        result[px, py, pz] = label


@numba.njit(cache=True)
def _first_surface_points(src, labels, K, ax, ay, az):
    """(K+1, 3) first surface voxel per component in x-fastest scan order; -1 rows if none."""
    nx, ny, nz = src.shape
    pts = np.full((K + 1, 3), -1, dtype=np.int64)
    for z in range(nz):
        for y in range(ny):
            for x in range(nx):
                l = labels[x, y, z]
                if l != 0 and pts[l, 0] < 0 and _is_surface(src, x, y, z, ax, ay, az):
                    pts[l, 0] = x
                    pts[l, 1] = y
                    pts[l, 2] = z
    return pts


@numba.njit(parallel=True, cache=True)
def _surface_sweep(src, result, restriction, use_restriction, offsets, label, ax, ay, az):
    # Writes from neighbouring slices may overlap; they all paint the same label.
    nx, ny, nz = src.shape
    for z in numba.prange(nz):
        for y in range(ny):
            for x in range(nx):
                if _is_surface(src, x, y, z, ax, ay, az):
                    _paint(result, restriction, use_restriction, offsets, label, x, y, z)


def _check_margin(value: float, name: str) -> float:
    value = float(value)
    if not math.isfinite(value) or value < 0:
        raise InvalidArgumentError(f"{name} must be a non-negative number of mm, got {value}")
    return value


def _binary(volume: Volume3D) -> np.ndarray:
    return (volume.array > 0).astype(np.uint8)


def is_surface_point(mask: Volume3D, x: int, y: int, z: int,
                     active_x: bool = True, active_y: bool = True, active_z: bool = True) -> bool:
    """Foreground voxel with a background 6-neighbour along an active axis."""
    return bool(_is_surface(_binary(mask), x, y, z, active_x, active_y, active_z))


def _dilate_erode(mask: Volume3D,
                  margin_x: float, margin_y: float, margin_z: float,
                  is_erosion: bool,
                  restriction: Optional[Volume3D] = None,
                  structuring_element: Optional[StructuringElement] = None) -> Volume3D:
    if not isinstance(mask, Volume3D):
        raise InvalidArgumentError(f"mask must be a Volume3D, got {type(mask).__name__}")
    margins = (_check_margin(margin_x, "margin_x"),
               _check_margin(margin_y, "margin_y"),
               _check_margin(margin_z, "margin_z"))
    if restriction is not None:
        mask.check_same_grid(restriction, "restriction")

    src = _binary(mask)
    result = src.copy()
    radii = [int(round(m / s)) for m, s in zip(margins, mask.spacing)]
    if not any(radii):
        return mask.with_array(result)

    ax, ay, az = (r > 0 for r in radii)
    if is_erosion:
        radii = [r - 1 if r > 1 else 0 for r in radii]
        label = BACKGROUND
    else:
        label = FOREGROUND
    se = structuring_element if structuring_element is not None else StructuringElement(*radii)

    if restriction is not None and not is_erosion:
        restr = _binary(restriction)
        use_restriction = True
    else:
        restr = np.zeros((1, 1, 1), dtype=np.uint8)
        use_restriction = False

    labels, K = label_components(src, connectivity=26)
    logger.debug("%s radii=%s active=%s components=%d",
                 "erode" if is_erosion else "dilate", radii, (ax, ay, az), K)

    pts = _first_surface_points(src, labels, K, ax, ay, az)
    full = se.offsets
    for lbl in range(1, K + 1):
        x, y, z = pts[lbl]
        if x < 0:
            continue
        _paint(result, restr, use_restriction, full, label, x, y, z)

    if K > 0:
        _surface_sweep(src, result, restr, use_restriction, se.surface_offsets, label, ax, ay, az)
    return mask.with_array(result)


def dilate(mask: Volume3D,
           margin_x: float, margin_y: float, margin_z: float,
           restriction: Optional[Volume3D] = None,
           structuring_element: Optional[StructuringElement] = None) -> Volume3D:
    """Dilate a binary mask by per-axis margins in mm.

    Parameters
    ----------
    mask : Volume3D
        Foreground is value > 0.
    margin_x, margin_y, margin_z : float
        Non-negative margins in mm.
    restriction : Volume3D, optional
        Voxels may only become foreground where the restriction is foreground.
    structuring_element : StructuringElement, optional
        Replaces the ellipsoid built from the margins.

    Returns
    -------
    Volume3D
        New uint8 mask on the same grid (1 inside, 0 outside).
    """
    return _dilate_erode(mask, margin_x, margin_y, margin_z, False, restriction, structuring_element)


def erode(mask: Volume3D,
          margin_x: float, margin_y: float, margin_z: float,
          structuring_element: Optional[StructuringElement] = None) -> Volume3D:
    """Erode a binary mask by per-axis margins in mm. See dilate."""
    return _dilate_erode(mask, margin_x, margin_y, margin_z, True, None, structuring_element)


def dilate_by(mask: Volume3D, margin: float,
              restriction: Optional[Volume3D] = None,
              structuring_element: Optional[StructuringElement] = None) -> Volume3D:
    return dilate(mask, margin, margin, margin, restriction, structuring_element)


def erode_by(mask: Volume3D, margin: float,
             structuring_element: Optional[StructuringElement] = None) -> Volume3D:
    return erode(mask, margin, margin, margin, structuring_element)
