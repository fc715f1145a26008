from __future__ import annotations

import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from errors import InvalidRegionError
from regions import Region3D, empty_region, get_full_region, get_interest_region
from volume import Volume3D


def test_empty_mask_gives_empty_region():
    r = get_interest_region(np.zeros((5, 6, 7), dtype=np.uint8))
    assert r == empty_region()
    assert r.is_empty()
    assert r.size() == 0
    assert not r.contains_point(0, 0, 0)
    assert (r.min_x, r.max_x) == (0, -1)


def test_region_is_minimal_bounding_box():
    mask = np.zeros((10, 12, 14), dtype=np.uint8)
    mask[2, 3, 4] = 1
    mask[5, 1, 7] = 1
    r = get_interest_region(mask)
    assert r == Region3D(2, 1, 4, 5, 3, 7)
    assert r.length_x() == 4 and r.length_y() == 3 and r.length_z() == 4
    assert r.size() == 4 * 3 * 4


def test_threshold():
    mask = np.zeros((4, 4, 4), dtype=np.int16)
    mask[0, 0, 0] = 1
    mask[3, 2, 1] = 3
    assert get_interest_region(mask, threshold=2) == Region3D(3, 2, 1, 3, 2, 1)
    assert get_interest_region(mask, threshold=4).is_empty()


def test_accepts_volume_and_bool():
    mask = np.zeros((6, 6, 6), dtype=bool)
    mask[1:3, 2:5, 4] = True
    assert get_interest_region(Volume3D(mask)) == Region3D(1, 2, 4, 2, 4, 4)


def test_random_masks_match_numpy_extremes():
    rng = np.random.default_rng(3)
    for _ in range(5):
        mask = (rng.random((9, 11, 13)) > 0.97).astype(np.uint8)
        idx = np.nonzero(mask)
        r = get_interest_region(mask)
        if idx[0].size == 0:
            assert r.is_empty()
            continue
        assert r == Region3D(idx[0].min(), idx[1].min(), idx[2].min(),
                             idx[0].max(), idx[1].max(), idx[2].max())
        # every face touches a foreground voxel
        assert mask[r.min_x].any() and mask[r.max_x].any()
        assert mask[:, r.min_y].any() and mask[:, r.max_y].any()
        assert mask[:, :, r.min_z].any() and mask[:, :, r.max_z].any()


def test_inside_of_and_intersect():
    outer = Region3D(0, 0, 0, 9, 9, 9)
    inner = Region3D(2, 3, 4, 5, 6, 7)
    assert inner.inside_of(outer)
    assert not outer.inside_of(inner)
    assert outer.intersect(inner) == inner
    assert Region3D(0, 0, 0, 1, 1, 1).intersect(Region3D(5, 5, 5, 6, 6, 6)).is_empty()
    with pytest.raises(InvalidRegionError):
        empty_region().inside_of(outer)
    with pytest.raises(InvalidRegionError):
        inner.inside_of(empty_region())


def test_dilate_clips_to_shape():
    r = Region3D(0, 2, 4, 1, 3, 5).dilate(1, (3, 10, 6))
    assert r == Region3D(0, 1, 3, 2, 4, 5)
    assert empty_region().dilate(2, (4, 4, 4)).is_empty()


def test_full_region_and_crop():
    vol = Volume3D(np.arange(4 * 5 * 6).reshape(4, 5, 6), spacing=(1.0, 2.0, 3.0))
    assert get_full_region(vol) == Region3D(0, 0, 0, 3, 4, 5)
    sub = vol.crop(Region3D(1, 1, 1, 2, 3, 4))
    assert sub.shape == (2, 3, 4)
    np.testing.assert_allclose(sub.origin, (1.0, 2.0, 3.0))
    assert sub.array[0, 0, 0] == vol.array[1, 1, 1]
    with pytest.raises(InvalidRegionError):
        vol.crop(empty_region())
    with pytest.raises(InvalidRegionError):
        vol.crop(Region3D(0, 0, 0, 4, 4, 4))
