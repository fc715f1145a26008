from __future__ import annotations

import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from errors import InvalidArgumentError
from structuring_element import StructuringElement


def as_set(offsets):
    return {tuple(int(v) for v in row) for row in offsets}


def test_zero_radius_is_single_voxel():
    se = StructuringElement(0, 0, 0)
    assert as_set(se.offsets) == {(0, 0, 0)}
    assert as_set(se.surface_offsets) == {(0, 0, 0)}
    assert len(se.interior_offsets) == 0


def test_unit_ball():
    se = StructuringElement(1, 1, 1)
    assert len(se.offsets) == 7
    assert len(se.surface_offsets) == 6
    assert as_set(se.interior_offsets) == {(0, 0, 0)}


def test_flat_axis_stays_in_plane():
    se = StructuringElement(2, 2, 0)
    assert len(se.offsets) == 13
    assert np.all(se.offsets[:, 2] == 0)
    assert np.abs(se.offsets[:, :2]).max() == 2


def test_surface_and_interior_partition_footprint():
    for radii in ((3, 2, 1), (2, 2, 2), (4, 0, 1)):
        se = StructuringElement(*radii)
        full = as_set(se.offsets)
        surf = as_set(se.surface_offsets)
        inner = as_set(se.interior_offsets)
        assert surf | inner == full, radii
        assert not surf & inner, radii
        # footprint is symmetric and bounded by the radii
        assert as_set(-se.offsets) == full
        assert np.all(np.abs(se.offsets) <= np.asarray(radii))


def test_invalid_radii():
    with pytest.raises(InvalidArgumentError):
        StructuringElement(-1, 0, 0)
    with pytest.raises(InvalidArgumentError):
        StructuringElement(1.5, 1, 1)


def test_offsets_are_read_only_and_hashable():
    se = StructuringElement(1, 2, 1)
    with pytest.raises(ValueError):
        se.offsets[0, 0] = 5
    assert se == StructuringElement(1, 2, 1)
    assert len({se, StructuringElement(1, 2, 1), StructuringElement(1, 1, 1)}) == 2
    assert se.radii == (1, 2, 1)
