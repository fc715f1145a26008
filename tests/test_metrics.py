from __future__ import annotations

import math
import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import metrics as M
from regions import get_interest_region


def create_cube(shape=(20, 20, 20), lo=5, hi=15):
    mask = np.zeros(shape, dtype=np.uint8)
    mask[lo:hi, lo:hi, lo:hi] = 1
    return mask


def create_ellipsoid(shape, radii):
    c = [(n - 1) / 2.0 for n in shape]
    x, y, z = np.meshgrid(*[np.arange(n) - ci for n, ci in zip(shape, c)], indexing="ij")
    return (((x / radii[0]) ** 2 + (y / radii[1]) ** 2 + (z / radii[2]) ** 2) <= 1.0).astype(np.uint8)


def test_roc_auc():
    assert M.roc_auc([1, 2], [3, 4]) == 1.0
    assert M.roc_auc([3, 4], [1, 2]) == 0.0
    a = [1.0, 5.0, 2.0, 8.0]
    b = [3.0, 5.0, 9.0]
    assert M.roc_auc(a, b) + M.roc_auc(b, a) == pytest.approx(1.0)
    assert M.roc_auc(a, a) == pytest.approx(0.5)
    assert M.roc_auc([], [1, 2]) is None
    assert M.roc_auc([3, 3], [3]) is None


def test_roc_from_histograms_matches_samples():
    a = [0, 1, 1, 2]
    b = [1, 2, 2, 3]
    h1 = np.bincount(a, minlength=4)
    h2 = np.bincount(b, minlength=4)
    assert M.roc_from_histograms(h1, h2) == pytest.approx(M.roc_auc(a, b))
    # shorter histograms are zero padded
    assert M.roc_from_histograms([1, 1], [0, 0, 2]) == pytest.approx(1.0)
    assert M.roc_from_histograms([0, 0], [1, 1]) is None
    assert M.roc_from_histograms([0, 4], [0, 2]) is None


def test_entropy_ratio():
    assert M.entropy_ratio([5, 5, 5, 5]) == pytest.approx(1.0)
    assert M.entropy_ratio([0, 10, 0]) == pytest.approx(0.0)
    assert 0.0 < M.entropy_ratio([1, 8, 1, 0]) < 1.0
    assert M.entropy_ratio([3]) is None
    assert M.entropy_ratio([0, 0]) is None


def test_cube_compactness():
    mask = create_cube()
    region = get_interest_region(mask)
    assert M.compactness(int(mask.sum()), region, (1.0, 1.0, 1.0)) == pytest.approx(6.0 / math.pi)
    # independent of the spacing
    assert M.compactness(int(mask.sum()), region, (0.5, 2.0, 3.0)) == pytest.approx(6.0 / math.pi)


def test_sphericality():
    sphere = create_ellipsoid((25, 25, 25), (10, 10, 10))
    assert M.sphericality(sphere, get_interest_region(sphere), (1.0, 1.0, 1.0)) == pytest.approx(1.0, abs=0.03)

    needle = create_ellipsoid((45, 15, 15), (20, 5, 5))
    assert M.sphericality(needle, get_interest_region(needle), (1.0, 1.0, 1.0)) < 0.9

    single = np.zeros((3, 3, 3), dtype=np.uint8)
    single[1, 1, 1] = 1
    assert M.sphericality(single, get_interest_region(single), (1.0, 1.0, 1.0)) is None


def test_neighbour_offsets():
    offs = M.neighbour_offsets_at_distance(3.0, (1.0, 1.0, 2.0))
    assert offs.shape == (26, 3)
    assert set(np.abs(offs[:, 0])) == {0, 3}
    assert set(np.abs(offs[:, 2])) == {0, 2}
    # at least one voxel even for tiny distances
    assert np.abs(M.neighbour_offsets_at_distance(0.1, (1.0, 1.0, 1.0))).max() == 1
    assert M.in_plane_neighbour_offsets().shape == (8, 3)


def test_homogeneity_of_a_linear_ramp_is_zero():
    x, y, z = np.meshgrid(np.arange(16), np.arange(16), np.arange(16), indexing="ij")
    image = (2.0 * x + y - z).astype(np.float64)
    mask = create_cube((16, 16, 16), 2, 14)
    region = get_interest_region(mask)
    sd = float(image[mask > 0].std(ddof=1))
    offs = M.neighbour_offsets_at_distance(1.0, (1.0, 1.0, 1.0))
    assert M.homogeneity(image, mask, region, offs, sd) == pytest.approx(0.0, abs=1e-9)

    rng = np.random.default_rng(0)
    noisy = image + rng.normal(0.0, 5.0, image.shape)
    sd = float(noisy[mask > 0].std(ddof=1))
    assert M.homogeneity(noisy, mask, region, offs, sd) > 0.1


def test_homogeneity_none_cases():
    mask = create_cube((8, 8, 8), 2, 6)
    region = get_interest_region(mask)
    image = np.full(mask.shape, 3.0)
    offs = M.neighbour_offsets_at_distance(1.0, (1.0, 1.0, 1.0))
    assert M.homogeneity(image, mask, region, offs, 0.0) is None
    # no voxel keeps its neighbours at 3 voxels inside a 4-voxel cube
    far = M.neighbour_offsets_at_distance(3.0, (1.0, 1.0, 1.0))
    assert M.homogeneity(image, mask, region, far, 1.0) is None


def test_step_histograms_of_a_box():
    mask = create_cube((10, 10, 10), 3, 7)
    steps = M.step_histograms(mask, get_interest_region(mask))
    assert set(steps) == {"X", "Y", "Z"}
    down, up = steps["X"]
    np.testing.assert_array_equal(down, [0, 0, 0, 16])
    np.testing.assert_array_equal(up, [16, 0, 0, 0])
    assert M.entropy_ratio(down) == pytest.approx(0.0)


def test_coordinate_histograms():
    mask = create_cube((10, 10, 10), 3, 7)
    hx, hy, hz = M.coordinate_histograms(mask)
    assert hx.sum() == hy.sum() == hz.sum() == 64
    assert hx[3] == 16 and hx[2] == 0


def test_mean_and_sd_and_contour_statistics():
    assert M.mean_and_sd([1.0]) is None
    mean, sd = M.mean_and_sd([1.0, 3.0])
    assert mean == pytest.approx(2.0) and sd == pytest.approx(math.sqrt(2.0))

    mask = np.zeros((4, 4, 4), dtype=np.uint8)
    mask[0, 0, :] = 1
    image = np.arange(64, dtype=np.float64).reshape(4, 4, 4)
    cc, mean, sd = M.contour_statistics(image, mask, 2.0)
    assert cc == pytest.approx(0.008)
    assert mean == pytest.approx(1.5)
    assert M.contour_statistics(image, np.zeros_like(mask), 2.0) == (0.0, None, None)
