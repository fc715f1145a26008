from __future__ import annotations

import numpy as np
from numba import njit

from errors import InvalidArgumentError

# number of non-zero offset components allowed per connectivity
_MAX_STEP_AXES = {6: 1, 18: 2, 26: 3}


@njit(inline='always')
def _find_root(parent, i):
    # path halving
    while parent[i] != i:
        parent[i] = parent[parent[i]]
        i = parent[i]
    return i


@njit(inline='always')
def _merge(parent, a, b):
    ra = _find_root(parent, a)
    rb = _find_root(parent, b)
    if ra < rb:
        parent[rb] = ra
    elif rb < ra:
        parent[ra] = rb


def neighbor_offsets(connectivity: int) -> np.ndarray:
    """(dx, dy, dz) offsets of the neighbours an x-fastest raster scan has already visited.

    6-connected voxels share a face, 18-connected a face or an edge, and
    26-connected also a corner. Returns an (M, 3) int64 array.
    """
    if connectivity not in _MAX_STEP_AXES:
        raise InvalidArgumentError(f"connectivity must be 6, 18 or 26, got {connectivity}")
    limit = _MAX_STEP_AXES[connectivity]
    offs = []
    for dz in (-1, 0, 1):
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                # visited before (0, 0, 0) <=> (dz, dy, dx) sorts before it
                if (dz, dy, dx) < (0, 0, 0) and (dx != 0) + (dy != 0) + (dz != 0) <= limit:
                    offs.append((dx, dy, dz))
    return np.asarray(offs, dtype=np.int64)


@njit(cache=True)
def _provisional_labels(fg, neigh, n_max):
    """First pass: a provisional label per foreground voxel and the union-find forest joining them.

    At most one new label per foreground voxel, so n_max (the foreground count) bounds the forest.
    """
    nx, ny, nz = fg.shape
    labels = np.zeros((nx, ny, nz), dtype=np.uint32)
    parent = np.arange(n_max + 1, dtype=np.int64)
    n = 0
    for z in range(nz):
        for y in range(ny):
            for x in range(nx):
                if not fg[x, y, z]:
                    continue
                cur = 0
                for t in range(neigh.shape[0]):
                    px = x + neigh[t, 0]
                    py = y + neigh[t, 1]
                    pz = z + neigh[t, 2]
                    if px < 0 or py < 0 or pz < 0 or px >= nx or py >= ny:
                        continue
                    other = labels[px, py, pz]
                    if other == 0:
                        continue
                    if cur == 0:
                        cur = other
                    else:
                        _merge(parent, cur, other)
                if cur == 0:
                    n += 1
                    cur = n
                labels[x, y, z] = cur
    return labels, parent, n


@njit(cache=True)
def _resolve(labels, parent, n):
    """Second pass: replace provisional labels by 1..K, numbered in scan order. Returns K."""
    nx, ny, nz = labels.shape
    final = np.zeros(n + 1, dtype=np.uint32)
    k = 0
    for z in range(nz):
        for y in range(ny):
            for x in range(nx):
                lab = labels[x, y, z]
                if lab == 0:
                    continue
                root = _find_root(parent, lab)
                if final[root] == 0:
                    k += 1
                    final[root] = k
                labels[x, y, z] = final[root]
    return k


def label_components(mask: np.ndarray, connectivity: int = 26) -> tuple[np.ndarray, int]:
    """Label connected foreground components of a 3-D mask.

    - mask: [x, y, z] array, foreground is value > 0.
    - connectivity: 6, 18 or 26.

    Returns (labels, K): uint32 labels 1..K with 0 for background. Component
    k holds the k-th first voxel met in x-fastest scan order.
    """
    neigh = neighbor_offsets(connectivity)
    fg = np.asarray(mask)
    if fg.ndim != 3:
        raise InvalidArgumentError(f"mask must be 3-D, got shape {fg.shape}")
    fg = fg > 0
    labels, parent, n = _provisional_labels(fg, neigh, int(np.count_nonzero(fg)))
    return labels, int(_resolve(labels, parent, n))
