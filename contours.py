"""
contours.py

Polygon contours from 2-D mask slices, and back.

Tracing follows voxel cracks: every foreground voxel edge that faces
background becomes a directed unit edge with the foreground on its right, so
that in y-down image coordinates outer boundaries run clockwise and holes
counter-clockwise. The edges are chained into closed rings; where two
foreground voxels touch only at a corner, the walk turns left, which joins
diagonal neighbours (8-connected foreground, 4-connected holes).

Slices are 2-D [x, y] arrays. Axial slices are arr[:, :, z], coronal slices
arr[:, y, :] and sagittal slices arr[x, :, :].
"""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy import ndimage
from skimage import draw

from errors import InconsistentGeometryError, InvalidArgumentError
from regions import Region3D, get_interest_region
from smooth_polygon import SmoothingType, signed_area, smooth
from volume import Volume3D

logger = logging.getLogger(__name__)

Point = Tuple[int, int]


class SliceType(enum.Enum):
    AXIAL = "axial"
    CORONAL = "coronal"
    SAGITTAL = "sagittal"


@dataclass
class ContourPolygon:
    """Closed ring of float (x, y) points in voxel-centre coordinates on one slice."""

    points: np.ndarray
    slice_index: int = 0

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 2)

    def __len__(self) -> int:
        return len(self.points)

    @property
    def signed_area(self) -> float:
        return signed_area(self.points)

    @property
    def is_clockwise(self) -> bool:
        return self.signed_area > 0


@dataclass
class InnerOuterPolygon:
    """Traced outer ring of one connected region plus its hole rings.

    Rings are integer corner coordinates. `inner_start_points[k]` is the
    topmost-then-leftmost voxel of hole k; merging draws its channel at that x.
    """

    outer: np.ndarray
    inners: List[np.ndarray] = field(default_factory=list)
    inner_start_points: List[Point] = field(default_factory=list)

    def __post_init__(self):
        if len(self.inners) != len(self.inner_start_points):
            raise InvalidArgumentError("every inner ring needs a start point")


def _directed_edges(fg: np.ndarray) -> Dict[Point, List[Point]]:
    p = np.pad(fg, 1, constant_values=False)
    core = p[1:-1, 1:-1]
    out: Dict[Point, List[Point]] = defaultdict(list)

    # top, right, bottom, left edge of voxel (x, y)
    sides = (
        (~p[1:-1, :-2], (0, 0), (1, 0)),
        (~p[2:, 1:-1], (1, 0), (1, 1)),
        (~p[1:-1, 2:], (1, 1), (0, 1)),
        (~p[:-2, 1:-1], (0, 1), (0, 0)),
    )
    for bg, (ax, ay), (bx, by) in sides:
        xs, ys = np.nonzero(core & bg)
        for x, y in zip(xs.tolist(), ys.tolist()):
            out[(x + ax, y + ay)].append((x + bx, y + by))
    return out


def _next_vertex(candidates: List[Point], cur: Point, d: Point) -> Point:
    # left turn first, then straight, then right
    for want in ((d[1], -d[0]), d, (-d[1], d[0])):
        for c in candidates:
            if (c[0] - cur[0], c[1] - cur[1]) == want:
                return c
    raise InconsistentGeometryError(f"open boundary at vertex {cur}")


def _trace_rings(edges: Dict[Point, List[Point]]) -> List[List[Point]]:
    remaining = {v: list(ends) for v, ends in edges.items()}
    rings = []
    for start in sorted(edges, key=lambda v: (v[1], v[0])):
        while remaining[start]:
            first = remaining[start][0]
            ring = [start]
            prev, cur = start, first
            remaining[start].remove(first)
            while True:
                d = (cur[0] - prev[0], cur[1] - prev[1])
                cands = remaining[cur] + ([first] if cur == start else [])
                nxt = _next_vertex(cands, cur, d)
                if cur == start and nxt == first:
                    break
                ring.append(cur)
                remaining[cur].remove(nxt)
                prev, cur = cur, nxt
            rings.append(ring)
    return rings


def _rotate_to_top_left(ring: List[Point]) -> np.ndarray:
    k = min(range(len(ring)), key=lambda i: (ring[i][1], ring[i][0]))
    return np.asarray(ring[k:] + ring[:k], dtype=np.int64)


def _right_pixel(ring: np.ndarray) -> Tuple[int, int]:
    """Voxel on the right-hand side of the ring's first edge."""
    x0, y0 = int(ring[0, 0]), int(ring[0, 1])
    dx, dy = int(ring[1, 0]) - x0, int(ring[1, 1]) - y0
    rx, ry = -dy, dx
    return (min(x0, x0 + dx, x0 + rx, x0 + dx + rx),
            min(y0, y0 + dy, y0 + ry, y0 + dy + ry))


def trace_polygons(slice_mask: np.ndarray) -> List[InnerOuterPolygon]:
    """Trace every 8-connected foreground region of a 2-D [x, y] slice.

    Foreground is value > 0. Polygons are ordered by the top-left corner of
    their outer ring (y, then x).
    """
    fg = np.asarray(slice_mask) > 0
    if fg.ndim != 2:
        raise InvalidArgumentError(f"slice must be 2-D, got shape {fg.shape}")
    if not fg.any():
        return []

    labels, n = ndimage.label(fg, structure=np.ones((3, 3), dtype=bool))
    outers: Dict[int, np.ndarray] = {}
    inners: Dict[int, List[np.ndarray]] = defaultdict(list)
    for ring in _trace_rings(_directed_edges(fg)):
        ring = _rotate_to_top_left(ring)
        comp = int(labels[_right_pixel(ring)])
        if signed_area(ring) > 0:
            if comp in outers:
                raise InconsistentGeometryError(f"region {comp} has more than one outer ring")
            outers[comp] = ring
        else:
            inners[comp].append(ring)

    polygons = []
    for comp in sorted(outers, key=lambda c: (outers[c][0, 1], outers[c][0, 0])):
        holes = sorted(inners.get(comp, []), key=lambda r: (r[0, 1], r[0, 0]))
        polygons.append(InnerOuterPolygon(outer=outers[comp],
                                          inners=holes,
                                          inner_start_points=[(int(r[0, 0]), int(r[0, 1])) for r in holes]))
    if len(polygons) != n:
        raise InconsistentGeometryError(f"traced {len(polygons)} outer rings for {n} regions")
    return polygons


def extract_contours(slice_mask: np.ndarray,
                     smoothing_type: SmoothingType = SmoothingType.SMALL,
                     slice_index: int = 0) -> List[ContourPolygon]:
    """One merged, smoothed ring per connected region of a 2-D slice."""
    smoothing_type = SmoothingType.parse(smoothing_type)
    return [ContourPolygon(smooth(p, smoothing_type), slice_index) for p in trace_polygons(slice_mask)]


def _slice_axis(slice_type: SliceType) -> int:
    return {SliceType.SAGITTAL: 0, SliceType.CORONAL: 1, SliceType.AXIAL: 2}[slice_type]


def _take_slice(arr: np.ndarray, axis: int, index: int) -> np.ndarray:
    return np.take(arr, index, axis=axis)


def extract_contours_per_slice(volume: Volume3D,
                               slice_type: SliceType = SliceType.AXIAL,
                               smoothing_type: SmoothingType = SmoothingType.SMALL,
                               region: Optional[Region3D] = None,
                               foreground: int = 1) -> Dict[int, List[ContourPolygon]]:
    """Contours of the voxels equal to `foreground`, keyed by slice index.

    Only axial slices are smoothed; coronal and sagittal slices are traced
    with SmoothingType.NONE. Slices without contours are left out. `region`
    restricts both the slice range and the in-plane area; points stay in
    full-slice coordinates.
    """
    slice_type = SliceType(slice_type)
    smoothing_type = SmoothingType.parse(smoothing_type) if slice_type is SliceType.AXIAL else SmoothingType.NONE
    arr = np.asarray(volume.array)
    if arr.dtype == np.bool_:
        arr = arr.view(np.uint8)
    fg = arr == foreground
    if region is None:
        region = get_interest_region(fg)
    if region.is_empty():
        return {}
    region = region.intersect(volume.full_region())
    if region.is_empty():
        return {}

    sub = fg[region.slices()]
    mins = (region.min_x, region.min_y, region.min_z)
    axis = _slice_axis(slice_type)
    in_plane = [a for a in range(3) if a != axis]
    shift = np.array([mins[in_plane[0]], mins[in_plane[1]]], dtype=np.float64)

    result: Dict[int, List[ContourPolygon]] = {}
    for k in range(sub.shape[axis]):
        plane = _take_slice(sub, axis, k)
        if not plane.any():
            continue
        index = mins[axis] + k
        polys = extract_contours(plane, smoothing_type, index)
        for p in polys:
            p.points = p.points + shift
        result[index] = polys
    logger.debug("extracted %s contours on %d slices", slice_type.value, len(result))
    return result


def contours_region(polygons: List[ContourPolygon]) -> Optional[Tuple[int, int, int, int]]:
    """(min_x, min_y, max_x, max_y) of the voxel centres a set of polygons can cover."""
    pts = [p.points for p in polygons if len(p.points)]
    if not pts:
        return None
    allp = np.concatenate(pts)
    lo = np.ceil(allp.min(axis=0)).astype(int)
    hi = np.floor(allp.max(axis=0)).astype(int)
    return int(lo[0]), int(lo[1]), int(hi[0]), int(hi[1])


def fill_polygon(points, shape: Tuple[int, int]) -> np.ndarray:
    """Boolean [x, y] mask of the voxels whose centres lie inside the ring."""
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    mask = np.zeros(shape, dtype=bool)
    if len(p) < 3:
        return mask
    xx, yy = draw.polygon(p[:, 0], p[:, 1], shape=shape)
    mask[xx, yy] = True
    return mask


def rasterize_contours(polygons: List[ContourPolygon], shape: Tuple[int, int]) -> np.ndarray:
    """Even-odd fill of a slice's polygons; separately passed hole rings cut holes."""
    mask = np.zeros(shape, dtype=bool)
    for p in polygons:
        mask ^= fill_polygon(p.points, shape)
    return mask


def contours_to_volume(contours_by_slice: Dict[int, List[ContourPolygon]],
                       like: Volume3D,
                       slice_type: SliceType = SliceType.AXIAL,
                       value: int = 1) -> Volume3D:
    """Paint per-slice contours into a new uint8 volume on the grid of `like`."""
    slice_type = SliceType(slice_type)
    axis = _slice_axis(slice_type)
    out = np.zeros(like.shape, dtype=np.uint8)
    plane_shape = tuple(s for a, s in enumerate(like.shape) if a != axis)
    for index, polys in contours_by_slice.items():
        if not 0 <= index < like.shape[axis]:
            raise InvalidArgumentError(f"slice {index} is outside the volume along axis {axis}")
        filled = rasterize_contours(polys, plane_shape)
        sl = [slice(None)] * 3
        sl[axis] = index
        out[tuple(sl)][filled] = value
    return like.with_array(out)
