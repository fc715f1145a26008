"""
smooth_polygon.py

Smoothing of traced voxel-boundary rings and merging of hole rings into
their outer ring.

Coordinates
-----------
Traced rings are integer voxel-corner coordinates: voxel (x, y) spans the
corners (x, y) .. (x+1, y+1). Every smoothing type returns float points in
voxel-centre coordinates, i.e. shifted by -0.5, so that the pixel with index
(x, y) is centred on the point (x, y). y grows downwards; outer rings are
clockwise (positive shoelace area), holes counter-clockwise.

Small smoothing
---------------
The ring is written as turtle moves on half steps: every vertex contributes
"f" (second half of the incoming edge), a turn ("L", "R" or nothing) and "f"
(first half of the outgoing edge). The code book then rewrites move patterns;
"fRf" and "fLf" become diagonal moves between the two edge midpoints, which
turns staircases into straight diagonals and cuts every right angle by half a
voxel. The moves are replayed from the midpoint of the closing edge.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Dict, List, Sequence, Tuple

import numpy as np

from errors import InconsistentGeometryError, InvalidArgumentError

if TYPE_CHECKING:
    from contours import InnerOuterPolygon

TURTLE_FORWARD = "f"
TURTLE_LEFT = "L"
TURTLE_RIGHT = "R"
TURTLE_DIAGONAL_RIGHT = "D"
TURTLE_DIAGONAL_LEFT = "E"

# applied in insertion order
CODE_BOOK: Dict[str, str] = {
    TURTLE_FORWARD + TURTLE_RIGHT + TURTLE_FORWARD: TURTLE_DIAGONAL_RIGHT,
    TURTLE_FORWARD + TURTLE_LEFT + TURTLE_FORWARD: TURTLE_DIAGONAL_LEFT,
}


class SmoothingType(enum.Enum):
    NONE = "none"
    SMALL = "small"

    @classmethod
    def parse(cls, value) -> "SmoothingType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidArgumentError(
                f"unknown smoothing type {value!r}; expected one of {[t.value for t in cls]}"
            ) from None


def signed_area(points) -> float:
    """Shoelace area; positive for clockwise rings in y-down image coordinates."""
    p = np.asarray(points, dtype=np.float64)
    if len(p) < 3:
        return 0.0
    x, y = p[:, 0], p[:, 1]
    return 0.5 * float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))


def _left(d: Tuple[int, int]) -> Tuple[int, int]:
    return d[1], -d[0]


def _right(d: Tuple[int, int]) -> Tuple[int, int]:
    return -d[1], d[0]


def _unit_steps(points) -> np.ndarray:
    """Expand an axis-aligned integer ring so that consecutive vertices are one voxel apart."""
    p = np.asarray(points, dtype=np.int64)
    out: List[Tuple[int, int]] = []
    n = len(p)
    for i in range(n):
        a = p[i]
        b = p[(i + 1) % n]
        dx, dy = int(b[0] - a[0]), int(b[1] - a[1])
        if dx != 0 and dy != 0:
            raise InvalidArgumentError(f"ring edge {tuple(a)} -> {tuple(b)} is not axis aligned")
        steps = max(abs(dx), abs(dy))
        sx, sy = int(np.sign(dx)), int(np.sign(dy))
        for s in range(steps):
            out.append((int(a[0]) + s * sx, int(a[1]) + s * sy))
    return np.asarray(out, dtype=np.int64).reshape(-1, 2)


def to_turtle(points) -> str:
    """Half-step turtle code of a unit-step integer ring, one "f?f" group per vertex."""
    p = np.asarray(points, dtype=np.int64)
    n = len(p)
    code = []
    for i in range(n):
        d_in = (int(p[i, 0] - p[i - 1, 0]), int(p[i, 1] - p[i - 1, 1]))
        nxt = p[(i + 1) % n]
        d_out = (int(nxt[0] - p[i, 0]), int(nxt[1] - p[i, 1]))
        if d_out == d_in:
            turn = ""
        elif d_out == _left(d_in):
            turn = TURTLE_LEFT
        elif d_out == _right(d_in):
            turn = TURTLE_RIGHT
        else:
            raise InconsistentGeometryError(f"ring reverses direction at vertex {tuple(p[i])}")
        code.append(TURTLE_FORWARD + turn + TURTLE_FORWARD)
    return "".join(code)


def apply_code_book(code: str, code_book: Dict[str, str] = CODE_BOOK) -> str:
    for pattern, replacement in code_book.items():
        code = code.replace(pattern, replacement)
    return code


def from_turtle(code: str, start, heading) -> np.ndarray:
    """Replay turtle moves from `start` facing `heading`; returns the visited points.

    `start` itself is not emitted first; a closed code ends on it.
    """
    x, y = float(start[0]), float(start[1])
    d = (int(heading[0]), int(heading[1]))
    pts = []
    for move in code:
        if move == TURTLE_FORWARD:
            x += 0.5 * d[0]
            y += 0.5 * d[1]
        elif move == TURTLE_LEFT:
            d = _left(d)
            continue
        elif move == TURTLE_RIGHT:
            d = _right(d)
            continue
        elif move == TURTLE_DIAGONAL_RIGHT or move == TURTLE_DIAGONAL_LEFT:
            nd = _right(d) if move == TURTLE_DIAGONAL_RIGHT else _left(d)
            x += 0.5 * (d[0] + nd[0])
            y += 0.5 * (d[1] + nd[1])
            d = nd
        else:
            raise InvalidArgumentError(f"unknown turtle move {move!r}")
        pts.append((x, y))
    return np.asarray(pts, dtype=np.float64).reshape(-1, 2)


def small_smooth_polygon(points, is_counter_clockwise: bool) -> np.ndarray:
    p = _unit_steps(points)
    if len(p) < 4:
        raise InvalidArgumentError(f"a voxel ring needs at least 4 vertices, got {len(p)}")
    code = apply_code_book(to_turtle(p))
    last, first = p[-1], p[0]
    heading = (int(first[0] - last[0]), int(first[1] - last[1]))
    start = 0.5 * (last + first)
    out = from_turtle(code, start, heading) - 0.5
    return _orient(out, is_counter_clockwise)


def _orient(points: np.ndarray, is_counter_clockwise: bool) -> np.ndarray:
    area = signed_area(points)
    if (area < 0) != is_counter_clockwise and area != 0:
        return points[::-1].copy()
    return points


def smooth_points(points, is_counter_clockwise: bool, smoothing_type: SmoothingType) -> np.ndarray:
    """Smooth one traced ring; output is in voxel-centre coordinates."""
    if smoothing_type is SmoothingType.NONE:
        out = np.asarray(points, dtype=np.float64).reshape(-1, 2) - 0.5
        return _orient(out, is_counter_clockwise)
    if smoothing_type is SmoothingType.SMALL:
        return small_smooth_polygon(points, is_counter_clockwise)
    raise InvalidArgumentError(f"no smoothing method for {smoothing_type!r}")


def intersect_vertical(p0, p1, x: float) -> np.ndarray:
    """Point where the segment p0-p1 meets the vertical line at x."""
    x0, y0 = float(p0[0]), float(p0[1])
    x1, y1 = float(p1[0]), float(p1[1])
    if x1 == x0:
        return np.array([x, y0])
    t = (x - x0) / (x1 - x0)
    return np.array([x, y0 + t * (y1 - y0)])


def find_intersecting_points(points, start, search_for_highest_y: bool) -> int:
    """Index i of the edge points[i] -> points[i+1] that crosses the vertical line x = start.x.

    With search_for_highest_y, only crossings at or above the start point
    (y <= start.y) count and the lowest of them (largest y) wins: this is the
    edge of a parent ring directly above a hole. Otherwise the topmost crossing
    (smallest y) wins, without a constraint on y.

    Raises InconsistentGeometryError when no edge crosses.
    """
    p = np.asarray(points, dtype=np.float64)
    sx, sy = float(start[0]), float(start[1])
    n = len(p)
    best_index = -1
    best_y = None
    for i in range(n):
        a = p[i]
        b = p[(i + 1) % n]
        if not ((a[0] <= sx < b[0]) or (b[0] < sx <= a[0])):
            continue
        y = intersect_vertical(a, b, sx)[1]
        if search_for_highest_y:
            if y <= sy and (best_y is None or y > best_y):
                best_index, best_y = i, y
        elif best_y is None or y < best_y:
            best_index, best_y = i, y
    if best_index < 0:
        raise InconsistentGeometryError(
            f"the polygon has no edge crossing x = {sx}" + (f" at or above y = {sy}" if search_for_highest_y else "")
        )
    return best_index


def merge_inner_outer(outer, inner, start) -> np.ndarray:
    """Splice a hole ring into its outer ring through a zero-width vertical channel.

    Result: outer[0..i], c1, c2, inner rotated to start after its crossing
    edge j, c2, c1, outer[i+1..]. It has len(outer) + len(inner) + 4 points.
    """
    outer = np.asarray(outer, dtype=np.float64)
    inner = np.asarray(inner, dtype=np.float64)
    i = find_intersecting_points(outer, start, True)
    j = find_intersecting_points(inner, start, False)
    sx = float(start[0])
    c1 = intersect_vertical(outer[i], outer[(i + 1) % len(outer)], sx)
    c2 = intersect_vertical(inner[j], inner[(j + 1) % len(inner)], sx)
    rotated = np.concatenate([inner[j + 1:], inner[:j + 1]])
    return np.concatenate([outer[:i + 1], [c1, c2], rotated, [c2, c1], outer[i + 1:]])


def remove_redundant_points(points, tol: float = 1e-9) -> np.ndarray:
    """Drop repeated points, then points in the middle of straight runs.

    Reversals (spikes) are kept, and so is any ring that would fall below 3 points.
    """
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(p) == 0:
        return p
    keep = np.ones(len(p), dtype=bool)
    keep[1:] = np.any(np.abs(np.diff(p, axis=0)) > tol, axis=1)
    p = p[keep]
    while len(p) > 1 and np.all(np.abs(p[0] - p[-1]) <= tol):
        p = p[:-1]
    if len(p) <= 3:
        return p

    d1 = p - np.roll(p, 1, axis=0)
    d2 = np.roll(p, -1, axis=0) - p
    cross = d1[:, 0] * d2[:, 1] - d1[:, 1] * d2[:, 0]
    dot = np.sum(d1 * d2, axis=1)
    scale = np.linalg.norm(d1, axis=1) * np.linalg.norm(d2, axis=1)
    redundant = (np.abs(cross) <= tol * np.maximum(scale, 1.0)) & (dot > 0)
    out = p[~redundant]
    if len(out) < 3:
        return p
    return out


def smooth(polygon: "InnerOuterPolygon", smoothing_type: SmoothingType = SmoothingType.SMALL) -> np.ndarray:
    """Smooth every ring of `polygon`, splice the holes in, and simplify.

    Holes are spliced top to bottom (by start point y, then x), so a channel
    never has to cross a hole that is still unmerged.
    """
    smoothing_type = SmoothingType.parse(smoothing_type)
    result = smooth_points(polygon.outer, False, smoothing_type)
    order: Sequence[int] = sorted(range(len(polygon.inners)),
                                  key=lambda k: (polygon.inner_start_points[k][1], polygon.inner_start_points[k][0]))
    for k in order:
        inner = smooth_points(polygon.inners[k], True, smoothing_type)
        result = merge_inner_outer(result, inner, polygon.inner_start_points[k])
    return remove_redundant_points(result)
