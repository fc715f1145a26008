from __future__ import annotations

import math
import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from errors import IncompatibleVolumeError, InvalidArgumentError
from regions import get_interest_region
from statistics_calculator import (
    CSV_HEADER,
    StatisticValue,
    boundary_roc,
    calculate,
    calculate_csv_lines,
)
from volume import Volume3D


def create_box(shape=(20, 20, 20), lo=(5, 5, 5), hi=(15, 15, 15), spacing=(1.0, 1.0, 1.0)):
    arr = np.zeros(shape, dtype=np.uint8)
    arr[lo[0]:hi[0], lo[1]:hi[1], lo[2]:hi[2]] = 1
    return Volume3D(arr, spacing)


def create_image(masks, shape=(20, 20, 20), seed=0):
    rng = np.random.default_rng(seed)
    img = rng.normal(0.0, 1.0, shape)
    for k, m in enumerate(masks, start=1):
        img[m.array > 0] += 10.0 * k
    return Volume3D(img)


def lookup(values, statistic, s1, s2=None):
    s2 = s1 if s2 is None else s2
    hits = [v.value for v in values
            if v.statistic == statistic and v.structure1 == s1 and v.structure2 == s2]
    assert len(hits) <= 1, f"{statistic} {s1} {s2} reported {len(hits)} times"
    return hits[0] if hits else None


def test_input_validation():
    box = create_box()
    with pytest.raises(InvalidArgumentError):
        calculate([box], None, ["a", "b"])
    with pytest.raises(InvalidArgumentError):
        calculate([box, box, box], None, ["a", "b", "c"], is_gt_and_segmentation=True)
    with pytest.raises(InvalidArgumentError):
        calculate([box.array], None, ["a"])
    with pytest.raises(IncompatibleVolumeError):
        calculate([box, create_box(shape=(20, 20, 21))], None, ["a", "b"])
    with pytest.raises(IncompatibleVolumeError):
        calculate([box], Volume3D(np.zeros((4, 4, 4))), ["a"])


def test_nothing_to_measure():
    assert calculate([], None, []) == []
    assert calculate([None], None, ["a"]) == []
    empty = Volume3D(np.zeros((5, 5, 5), dtype=np.uint8))
    assert calculate([empty], None, ["a"]) == []


def test_single_voxel_with_image():
    point = create_box(lo=(10, 10, 10), hi=(11, 11, 11))
    values = calculate([point], create_image([point]), ["p"])
    assert lookup(values, "Vol", "p") == pytest.approx(1.0)
    assert lookup(values, "Com", "p") == pytest.approx(6.0 / math.pi)
    # one intensity sample gives no mean/sd and therefore no homogeneity
    for code in ("Imu", "Isd", "Hma", "Hmb", "Hmp", "Sph"):
        assert lookup(values, code, "p") is None, code
    assert lookup(values, "Imu", "space") is not None


def test_single_cube_without_image():
    values = calculate([create_box()], None, ["a"])
    assert lookup(values, "Vol", "a") == pytest.approx(1000.0)
    assert lookup(values, "Com", "a") == pytest.approx(6.0 / math.pi)
    assert lookup(values, "Xsz", "a") == pytest.approx(9.0)
    assert lookup(values, "Xsz", "space") == pytest.approx(19.0)
    assert lookup(values, "Xlo", "space", "a") == pytest.approx(5.0)
    assert lookup(values, "Xhi", "space", "a") == pytest.approx(-5.0)
    assert lookup(values, "Zfl", "a") == pytest.approx(1.0)
    assert lookup(values, "Ymi", "a") == 0
    assert lookup(values, "Xtb", "a") == 0
    assert lookup(values, "Xdh", "a") == pytest.approx(0.0)
    assert lookup(values, "Sph", "a") is not None
    # no image, no intensity statistics
    assert all(v.statistic not in ("Imu", "Isd", "Brc", "Hma", "Irc") for v in values)


def test_sphere_sphericality():
    n = 31
    c = (n - 1) / 2.0
    x, y, z = np.meshgrid(*(np.arange(n) - c,) * 3, indexing="ij")
    sphere = Volume3D(((x ** 2 + y ** 2 + z ** 2) <= 12.0 ** 2).astype(np.uint8))
    values = calculate([sphere], None, ["ball"])
    assert lookup(values, "Sph", "ball") == pytest.approx(1.0, abs=0.03)


def test_space_extent_is_reported_once():
    a = create_box(lo=(2, 2, 2), hi=(6, 6, 6))
    b = create_box(lo=(10, 10, 10), hi=(18, 18, 18))
    values = calculate([a, b], None, ["a", "b"])
    assert sum(1 for v in values if v.statistic == "Xsz" and v.structure1 == "space") == 1
    assert values[0] == StatisticValue("Xsz", "space", "space", 19.0)


def test_pair_statistics():
    a = create_box(lo=(2, 2, 2), hi=(10, 10, 10))
    b = create_box(lo=(6, 4, 8), hi=(14, 12, 16))
    image = create_image([a, b])
    values = calculate([a, b], image, ["a", "b"])
    assert lookup(values, "Xlo", "a", "b") == pytest.approx(4.0)
    assert lookup(values, "Xhi", "a", "b") == pytest.approx(4.0)
    assert lookup(values, "Ymd", "a", "b") == pytest.approx(2.0)
    assert lookup(values, "Zde", "a", "b") == pytest.approx(15.0 - 2.0)
    # intersection 4*6*2 voxels over the smaller structure (512 voxels each)
    assert lookup(values, "Ovr", "a", "b") == pytest.approx(48.0 / 512.0)
    assert lookup(values, "Xrc", "a", "b") > 0.5
    assert lookup(values, "Irc", "a", "b") > 0.5
    assert lookup(values, "Xlo", "b", "a") is None


def test_disjoint_structures_do_not_overlap():
    a = create_box(lo=(0, 0, 0), hi=(4, 4, 4))
    b = create_box(lo=(10, 10, 10), hi=(14, 14, 14))
    values = calculate([a, b], None, ["a", "b"])
    assert lookup(values, "Ovr", "a", "b") == 0.0
    assert lookup(values, "Zrc", "a", "b") == pytest.approx(1.0)


def test_intensity_statistics():
    a = create_box()
    image = create_image([a])
    values = calculate([a], image, ["a"])
    assert lookup(values, "Imu", "a") == pytest.approx(10.0, abs=0.2)
    assert lookup(values, "Isd", "a") == pytest.approx(1.0, abs=0.1)
    assert lookup(values, "Imu", "background") == pytest.approx(0.0, abs=0.2)
    assert lookup(values, "Imu", "space") is not None
    for code in ("Hma", "Hmp"):
        assert lookup(values, code, "a") > 0.5
    # a 10 mm cube has no voxel with all neighbours 6 mm away inside it
    assert lookup(values, "Hmb", "a") is None
    # the space statistics come first
    assert [v.statistic for v in values[:2]] == ["Imu", "Isd"]


def test_boundary_roc_separates_bright_structure():
    a = create_box()
    image = create_image([a])
    region = get_interest_region(a)
    assert boundary_roc(image, a, region, exact=False) == pytest.approx(1.0)
    assert boundary_roc(image, a, region, exact=True) == pytest.approx(1.0)
    values = calculate([a], image, ["a"], exact_boundary_roc=True)
    assert lookup(values, "Brc", "a") == pytest.approx(1.0)


def test_external_structure_is_not_paired():
    ext = create_box(lo=(1, 1, 1), hi=(19, 19, 19))
    a = create_box(lo=(4, 4, 4), hi=(8, 8, 8))
    b = create_box(lo=(10, 10, 10), hi=(14, 14, 14))
    names = ["external", "a", "b"]
    values = calculate([ext, a, b], None, names)
    assert lookup(values, "Ovr", "external", "a") is None
    assert lookup(values, "Ovr", "a", "b") is not None
    assert lookup(values, "Vol", "external") is not None

    values = calculate([ext, a, b], None, names, pairwise_external=True)
    assert lookup(values, "Ovr", "external", "a") == pytest.approx(1.0)


def test_ground_truth_vs_segmentation():
    gt = create_box(lo=(5, 5, 5), hi=(15, 15, 15))
    seg = create_box(lo=(6, 5, 5), hi=(15, 15, 15))
    image = create_image([gt])
    values = calculate([gt, seg], image, ["gt", "seg"], is_gt_and_segmentation=True)
    assert all(v.structure1 not in ("space", "background") for v in values)
    assert lookup(values, "Vol", "gt") is None
    assert lookup(values, "Com", "gt") is None
    assert lookup(values, "Vol", "seg") == pytest.approx(900.0)
    assert lookup(values, "Xsz", "seg") == pytest.approx(8.0)
    assert lookup(values, "Xlo", "gt", "seg") == pytest.approx(1.0)
    assert lookup(values, "Ovr", "gt", "seg") == pytest.approx(1.0)
    assert lookup(values, "Imu", "gt") is not None


def test_csv_rows():
    assert CSV_HEADER.split(",") == ["patient", "statistic", "structure1", "structure2", "value"]
    assert StatisticValue.single("Vol", "a", 1000).csv_row(7) == "7,Vol,a,a,1000.0"
    lines = calculate_csv_lines("p1", [create_box()], None, ["a"])
    assert all(line.startswith("p1,") for line in lines)
    assert "p1,Vol,a,a,1000.0" in lines


def test_anisotropic_spacing_in_mm():
    a = create_box(spacing=(0.5, 1.0, 2.5))
    values = calculate([a], None, ["a"])
    assert lookup(values, "Vol", "a") == pytest.approx(1000 * 1.25)
    assert lookup(values, "Zsz", "a") == pytest.approx(9 * 2.5)
    assert lookup(values, "Xsz", "space") == pytest.approx(19 * 0.5)


def test_results_are_deterministic():
    a = create_box(lo=(2, 3, 4), hi=(12, 13, 11))
    b = create_box(lo=(5, 5, 5), hi=(16, 9, 18))
    image = create_image([a, b], seed=3)
    first = calculate([a, b], image, ["a", "b"])
    second = calculate([a, b], image, ["a", "b"])
    assert first == second
