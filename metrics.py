from __future__ import annotations

import math
from typing import Optional, Tuple

import numba
import numpy as np
from scipy import stats

from regions import Region3D


def mean_and_sd(values: np.ndarray) -> Optional[Tuple[float, float]]:
    """Mean and sample standard deviation (ddof=1); None for fewer than 2 values."""
    v = np.asarray(values, dtype=np.float64).ravel()
    if v.size < 2:
        return None
    return float(v.mean()), float(v.std(ddof=1))


def roc_auc(sample1: np.ndarray, sample2: np.ndarray) -> Optional[float]:
    """P(value from sample2 > value from sample1), ties counting 0.5.

    This is the Mann-Whitney U of sample2 divided by n1*n2. Returns None when
    either sample is empty or all values are identical.
    """
    a = np.asarray(sample1, dtype=np.float64).ravel()
    b = np.asarray(sample2, dtype=np.float64).ravel()
    n1, n2 = a.size, b.size
    if n1 == 0 or n2 == 0:
        return None
    both = np.concatenate([a, b])
    if both.min() == both.max():
        return None
    ranks = stats.rankdata(both)
    u2 = ranks[n1:].sum() - n2 * (n2 + 1) / 2.0
    return float(u2 / (float(n1) * float(n2)))


def roc_from_histograms(hist1: np.ndarray, hist2: np.ndarray) -> Optional[float]:
    """roc_auc for two samples given as counts over the same ordered bins."""
    h1 = np.asarray(hist1, dtype=np.float64).ravel()
    h2 = np.asarray(hist2, dtype=np.float64).ravel()
    if h1.size != h2.size:
        n = max(h1.size, h2.size)
        h1 = np.pad(h1, (0, n - h1.size))
        h2 = np.pad(h2, (0, n - h2.size))
    n1, n2 = h1.sum(), h2.sum()
    if n1 == 0 or n2 == 0:
        return None
    if np.count_nonzero(h1 + h2) < 2:
        return None
    below1 = np.cumsum(h1) - h1
    wins = np.sum(h2 * (below1 + 0.5 * h1))
    return float(wins / (n1 * n2))


def entropy_ratio(hist: np.ndarray) -> Optional[float]:
    """Shannon entropy of a count histogram divided by log(number of bins).

    Bins with count <= 1 add nothing to the sum of c*log(c) but still count
    toward the total N. None for fewer than 2 bins or an all-zero histogram.
    """
    h = np.asarray(hist, dtype=np.float64).ravel()
    if h.size < 2:
        return None
    total = h.sum()
    if total <= 0:
        return None
    big = h[h > 1]
    sum_xlogx = float(np.sum(big * np.log(big)))
    entropy = math.log(total) - sum_xlogx / total
    ratio = entropy / math.log(h.size)
    return min(max(ratio, 0.0), 1.0)


def compactness(count: int, region: Region3D, spacing) -> float:
    """Structure volume over the volume of the ellipsoid inscribed in its bounding cuboid."""
    sx, sy, sz = spacing
    cuboid = region.length_x() * sx * region.length_y() * sy * region.length_z() * sz
    return count * sx * sy * sz / (cuboid * math.pi / 6.0)


@numba.njit(parallel=True, cache=True)
def _coordinate_moments(mask, x0, x1, y0, y1, z0, z1):
    """Per-slice [n, Sx, Sy, Sz, Sxx, Syy, Szz] of foreground voxels, box-relative coordinates."""
    nz = z1 - z0 + 1
    acc = np.zeros((nz, 7), dtype=np.float64)
    for kz in numba.prange(nz):
        z = z0 + kz
        fz = float(kz)
        for y in range(y0, y1 + 1):
            fy = float(y - y0)
            for x in range(x0, x1 + 1):
                if mask[x, y, z] == 0:
                    continue
                fx = float(x - x0)
                acc[kz, 0] += 1.0
                acc[kz, 1] += fx
                acc[kz, 2] += fy
                acc[kz, 3] += fz
                acc[kz, 4] += fx * fx
                acc[kz, 5] += fy * fy
                acc[kz, 6] += fz * fz
    return acc


def sphericality(mask: np.ndarray, region: Region3D, spacing) -> Optional[float]:
    """RMS centroid distance of an equal-volume sphere over that of the structure.

    For a solid sphere of radius R the RMS distance is sqrt(3/5)*R, so the
    value is sqrt(0.6)*R_eq / RMS and tends to 1 for spheres. None when the
    structure has at most one voxel.
    """
    if region.is_empty():
        return None
    acc = _coordinate_moments(mask, region.min_x, region.max_x, region.min_y, region.max_y,
                              region.min_z, region.max_z).sum(axis=0)
    n = acc[0]
    if n <= 1:
        return None
    ms = 0.0
    for a in range(3):
        mean = acc[1 + a] / n
        var = max(acc[4 + a] / n - mean * mean, 0.0)
        ms += var * spacing[a] ** 2
    if ms <= 0:
        return None
    volume = n * spacing[0] * spacing[1] * spacing[2]
    r_eq = (3.0 * volume / (4.0 * math.pi)) ** (1.0 / 3.0)
    return math.sqrt(0.6) * r_eq / math.sqrt(ms)


def neighbour_offsets_at_distance(distance_mm: float, spacing) -> np.ndarray:
    """The 26 neighbours at roughly `distance_mm`, at least one voxel on each axis."""
    o = [max(1, int(round(distance_mm / s))) for s in spacing]
    offs = [(i * o[0], j * o[1], k * o[2])
            for k in (-1, 0, 1) for j in (-1, 0, 1) for i in (-1, 0, 1)
            if (i, j, k) != (0, 0, 0)]
    return np.asarray(offs, dtype=np.int64)


def in_plane_neighbour_offsets() -> np.ndarray:
    """The 8 in-slice neighbours at one pixel."""
    offs = [(i, j, 0) for j in (-1, 0, 1) for i in (-1, 0, 1) if (i, j) != (0, 0)]
    return np.asarray(offs, dtype=np.int64)


@numba.njit(parallel=True, cache=True)
def _prediction_errors(image, mask, x0, x1, y0, y1, z0, z1, offsets):
    """Squared error of predicting each voxel by the mean of its offset neighbours.

    Only voxels whose neighbours all lie inside the volume and the mask count.
    Returns per-slice (sum of squared errors, count).
    """
    nx, ny, nzz = mask.shape
    nz = z1 - z0 + 1
    m = offsets.shape[0]
    sq = np.zeros(nz, dtype=np.float64)
    cnt = np.zeros(nz, dtype=np.int64)
    for kz in numba.prange(nz):
        z = z0 + kz
        for y in range(y0, y1 + 1):
            for x in range(x0, x1 + 1):
                if mask[x, y, z] == 0:
                    continue
                total = 0.0
                ok = True
                for t in range(m):
                    ax = x + offsets[t, 0]
                    ay = y + offsets[t, 1]
                    az = z + offsets[t, 2]
                    if ax < 0 or ay < 0 or az < 0 or ax >= nx or ay >= ny or az >= nzz:
                        ok = False
                        break
                    if mask[ax, ay, az] == 0:
                        ok = False
                        break
                    total += image[ax, ay, az]
                if ok:
                    diff = image[x, y, z] - total / m
                    sq[kz] += diff * diff
                    cnt[kz] += 1
    return sq, cnt


def homogeneity(image: np.ndarray, mask: np.ndarray, region: Region3D,
                offsets: np.ndarray, sd: float) -> Optional[float]:
    """RMS neighbour-prediction error over the structure's intensity SD.

    None if the SD is zero or no voxel has its full neighbour set inside the mask.
    """
    if region.is_empty() or not sd > 0:
        return None
    sq, cnt = _prediction_errors(image, mask, region.min_x, region.max_x, region.min_y, region.max_y,
                                 region.min_z, region.max_z, offsets)
    n = int(cnt.sum())
    if n == 0:
        return None
    return math.sqrt(float(sq.sum()) / n) / sd


def step_histograms(mask: np.ndarray, region: Region3D) -> dict:
    """Per axis, (down, up) step counts over the positions of the region.

    A foreground voxel adds to "down" at its coordinate when the next voxel
    along the axis is background, and to "up" when the previous one is. The
    region faces count as steps.
    """
    sub = np.asarray(mask)[region.slices()] > 0
    out = {}
    for axis, name in enumerate("XYZ"):
        pad = [(0, 0)] * 3
        pad[axis] = (1, 1)
        p = np.pad(sub, pad, constant_values=False)
        n = sub.shape[axis]
        prev = np.take(p, np.arange(0, n), axis=axis)
        nxt = np.take(p, np.arange(2, n + 2), axis=axis)
        other = tuple(a for a in range(3) if a != axis)
        down = (sub & ~nxt).sum(axis=other)
        up = (sub & ~prev).sum(axis=other)
        out[name] = (down.astype(np.int64), up.astype(np.int64))
    return out


def coordinate_histograms(mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Foreground voxel counts per x, per y and per z index."""
    fg = np.asarray(mask) > 0
    return fg.sum(axis=(1, 2)), fg.sum(axis=(0, 2)), fg.sum(axis=(0, 1))


def contour_statistics(image: np.ndarray, mask: np.ndarray, voxel_volume_mm3: float
                       ) -> Tuple[float, Optional[float], Optional[float]]:
    """(volume in cm^3, mean, SD) of the image inside a mask; mean/SD None below 2 voxels."""
    fg = np.asarray(mask) > 0
    count = int(fg.sum())
    msd = mean_and_sd(np.asarray(image)[fg])
    mean, sd = msd if msd is not None else (None, None)
    return count * voxel_volume_mm3 / 1000.0, mean, sd
