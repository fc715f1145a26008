"""
statistics_calculator.py

Per-subject structure statistics for spotting annotation errors and outliers.

Every result row is (statistic, structure1, structure2, value); structure2
equals structure1 for single-structure statistics. "space" stands for the
whole image and "background" for the voxels outside every mask.

Single-structure statistics
---------------------------
Brc  boundary ROC: intensity just inside vs. just outside the surface.
     Near 0 or 1, the boundary separates intensities; near 0.5 it does not.
Com  compactness: volume over the ellipsoid inscribed in the bounding box.
Hma  homogeneity at 3 mm, Hmb at 6 mm, Hmp at one pixel within the slice:
     RMS error of predicting a voxel from its neighbours, over the SD.
Imu  mean intensity, Isd intensity SD.
Sph  sphericality, near 1 for spheres.
Vol  volume in mm^3.
[XYZ]sz  extent (max - min) in mm.
[XYZ]fl  voxels in the lowest slice over the mean voxels per slice; fh the highest.
[XYZ]mi  empty slices between the lowest and highest slice.
[XYZ]tb  voxels in the first and last slice of the image.
[XYZ][du]h  step-entropy ratios; low values hint at flat faces.

Two-structure statistics (structure2 minus structure1)
------------------------------------------------------
Irc  intensity ROC; above 0.5, structure2 is brighter.
Ovr  intersection over the smaller structure's voxel count.
Zde  maximum z of structure2 minus minimum z of structure1.
[XYZ]lo, hi, md  differences of minimum, maximum and midpoint in mm.
[XYZ]rc  coordinate ROC; above 0.5, structure2 lies at larger coordinates.

Against "space" (structure1 = "space"): [XYZ]sz once per subject and
[XYZ]lo/hi per structure; Imu/Isd for "space" and "background".

A statistic that cannot be computed (missing image, too few voxels, zero
spread) is left out rather than failing the subject.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

import metrics as M
import morphology
from errors import InvalidArgumentError
from regions import Region3D, get_interest_region
from volume import Volume3D

logger = logging.getLogger(__name__)

EXTERNAL_STRUCTURE_NAME = "external"
SPACE = "space"
BACKGROUND = "background"
AXES = "XYZ"
CSV_HEADER = "patient,statistic,structure1,structure2,value"

HOMOGENEITY_DISTANCES_MM = (("Hma", 3.0), ("Hmb", 6.0))


@dataclass(frozen=True)
class StatisticValue:
    statistic: str
    structure1: str
    structure2: str
    value: float

    @classmethod
    def single(cls, statistic: str, structure: str, value: float) -> "StatisticValue":
        return cls(statistic, structure, structure, float(value))

    def csv_row(self, patient_id) -> str:
        # repr gives the shortest round-tripping, locale independent float text
        return f"{patient_id},{self.statistic},{self.structure1},{self.structure2},{float(self.value)!r}"


@dataclass
class ExtremeInfo:
    region: Region3D
    count: int
    min_mm: Tuple[float, float, float]
    max_mm: Tuple[float, float, float]
    compactness: float
    sphericality: Optional[float]
    slice_counts: Tuple[np.ndarray, np.ndarray, np.ndarray]

    def min_index(self, axis: int) -> int:
        return (self.region.min_x, self.region.min_y, self.region.min_z)[axis]

    def max_index(self, axis: int) -> int:
        return (self.region.max_x, self.region.max_y, self.region.max_z)[axis]


def calculate_extremes(mask: np.ndarray, spacing) -> Optional[ExtremeInfo]:
    """Extent, voxel count, compactness and sphericality; None for an empty mask."""
    region = get_interest_region(mask)
    if region.is_empty():
        return None
    counts = M.coordinate_histograms(mask)
    count = int(counts[0].sum())
    mins = (region.min_x, region.min_y, region.min_z)
    maxs = (region.max_x, region.max_y, region.max_z)
    return ExtremeInfo(
        region=region,
        count=count,
        min_mm=tuple(m * s for m, s in zip(mins, spacing)),
        max_mm=tuple(m * s for m, s in zip(maxs, spacing)),
        compactness=M.compactness(count, region, spacing),
        sphericality=M.sphericality(mask, region, spacing),
        slice_counts=counts,
    )


def _space_offsets(axis: int, info: ExtremeInfo, structure: str, spacing: float, dim: int,
                   restricted: bool) -> List[StatisticValue]:
    name = AXES[axis]
    lo, hi = info.min_index(axis), info.max_index(axis)
    out = [StatisticValue.single(f"{name}sz", structure, (hi - lo) * spacing)]
    if not restricted:
        out.append(StatisticValue(f"{name}lo", SPACE, structure, lo * spacing))
        out.append(StatisticValue(f"{name}hi", SPACE, structure, (hi - (dim - 1)) * spacing))
    counts = info.slice_counts[axis]
    per_slice = info.count / (hi - lo + 1)
    out.append(StatisticValue.single(f"{name}fl", structure, counts[lo] / per_slice))
    out.append(StatisticValue.single(f"{name}fh", structure, counts[hi] / per_slice))
    out.append(StatisticValue.single(f"{name}mi", structure, int(np.count_nonzero(counts[lo:hi + 1] == 0))))
    edges = int(counts[0]) + (int(counts[dim - 1]) if dim > 1 else 0)
    out.append(StatisticValue.single(f"{name}tb", structure, edges))
    return out


def _pair_offsets(axis: int, info1: ExtremeInfo, info2: ExtremeInfo, s1: str, s2: str) -> List[StatisticValue]:
    name = AXES[axis]
    lo = info2.min_mm[axis] - info1.min_mm[axis]
    hi = info2.max_mm[axis] - info1.max_mm[axis]
    md = 0.5 * (info2.min_mm[axis] + info2.max_mm[axis]) - 0.5 * (info1.min_mm[axis] + info1.max_mm[axis])
    return [StatisticValue(f"{name}lo", s1, s2, lo),
            StatisticValue(f"{name}hi", s1, s2, hi),
            StatisticValue(f"{name}md", s1, s2, md)]


def overlap_ratio(mask1: np.ndarray, info1: ExtremeInfo, mask2: np.ndarray, info2: ExtremeInfo) -> float:
    box = info1.region.intersect(info2.region)
    if box.is_empty():
        return 0.0
    inter = int(np.count_nonzero(mask1[box.slices()] & mask2[box.slices()]))
    return inter / min(info1.count, info2.count)


def _in_plane_boundaries(fg: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    # edge padding: voxels outside the volume are neither inside nor outside
    p = np.pad(fg, ((1, 1), (1, 1), (0, 0)), mode="edge")
    nbrs = (p[:-2, 1:-1], p[2:, 1:-1], p[1:-1, :-2], p[1:-1, 2:])
    any_bg = np.zeros_like(fg)
    any_fg = np.zeros_like(fg)
    for n in nbrs:
        any_bg |= ~n
        any_fg |= n
    return fg & any_bg, ~fg & any_fg


def boundary_roc(image: Volume3D, mask: Volume3D, region: Region3D, exact: bool) -> Optional[float]:
    """ROC of the intensities just outside vs. just inside the structure surface.

    The exact mode takes the one-voxel shells from a full-volume erosion and
    dilation. The approximate mode only looks at the in-plane 4-neighbourhood
    within the bounding box grown by one voxel.
    """
    if region.is_empty():
        return None
    if exact:
        fg = mask.array > 0
        sx, sy, sz = mask.spacing
        eroded = morphology.erode(mask, sx, sy, sz).array > 0
        dilated = morphology.dilate(mask, sx, sy, sz).array > 0
        inside = image.array[fg & ~eroded]
        outside = image.array[dilated & ~fg]
    else:
        box = region.dilate(1, mask.shape).slices()
        inner, outer = _in_plane_boundaries(mask.array[box] > 0)
        sub = image.array[box]
        inside = sub[inner]
        outside = sub[outer]
    return M.roc_auc(outside, inside)


def _intensity_statistics(image: Volume3D, mask: np.ndarray, info: ExtremeInfo,
                          values: np.ndarray, structure: str) -> List[StatisticValue]:
    msd = M.mean_and_sd(values)
    if msd is None:
        return []
    mean, sd = msd
    out = [StatisticValue.single("Imu", structure, mean), StatisticValue.single("Isd", structure, sd)]
    img = image.array
    for code, dist in HOMOGENEITY_DISTANCES_MM:
        h = M.homogeneity(img, mask, info.region, M.neighbour_offsets_at_distance(dist, image.spacing), sd)
        if h is not None:
            out.append(StatisticValue.single(code, structure, h))
    h = M.homogeneity(img, mask, info.region, M.in_plane_neighbour_offsets(), sd)
    if h is not None:
        out.append(StatisticValue.single("Hmp", structure, h))
    return out


def _step_entropy_statistics(mask: np.ndarray, info: ExtremeInfo, structure: str) -> List[StatisticValue]:
    out = []
    for name, (down, up) in M.step_histograms(mask, info.region).items():
        for code, hist in ((f"{name}dh", down), (f"{name}uh", up)):
            ratio = M.entropy_ratio(hist)
            if ratio is not None:
                out.append(StatisticValue.single(code, structure, ratio))
    return out


def _space_intensity_statistics(image: Volume3D, masks: Sequence[Optional[np.ndarray]]) -> List[StatisticValue]:
    out = []
    msd = M.mean_and_sd(image.array)
    if msd is not None:
        out += [StatisticValue.single("Imu", SPACE, msd[0]), StatisticValue.single("Isd", SPACE, msd[1])]
    union = np.zeros(image.shape, dtype=bool)
    for m in masks:
        if m is not None:
            union |= m > 0
    msd = M.mean_and_sd(image.array[~union])
    if msd is not None:
        out += [StatisticValue.single("Imu", BACKGROUND, msd[0]), StatisticValue.single("Isd", BACKGROUND, msd[1])]
    return out


def _validate(masks, image, structure_names, is_gt_and_segmentation) -> Optional[Volume3D]:
    if len(masks) != len(structure_names):
        raise InvalidArgumentError(
            f"got {len(masks)} masks for {len(structure_names)} structure names"
        )
    if is_gt_and_segmentation and len(masks) != 2:
        raise InvalidArgumentError(
            f"ground truth vs. segmentation mode needs exactly 2 structures, got {len(masks)}"
        )
    reference = None
    for name, m in zip(structure_names, masks):
        if m is None:
            continue
        if not isinstance(m, Volume3D):
            raise InvalidArgumentError(f"mask for {name!r} must be a Volume3D, got {type(m).__name__}")
        if reference is None:
            reference = m
        else:
            reference.check_same_grid(m, f"mask {name!r}")
    if image is not None:
        if not isinstance(image, Volume3D):
            raise InvalidArgumentError(f"image must be a Volume3D, got {type(image).__name__}")
        if reference is not None:
            reference.check_same_grid(image, "image")
    return reference


def calculate(masks: Sequence[Optional[Volume3D]],
              image: Optional[Volume3D],
              structure_names: Sequence[str],
              is_gt_and_segmentation: bool = False,
              exact_boundary_roc: bool = False,
              pairwise_external: bool = False,
              external_structure_name: str = EXTERNAL_STRUCTURE_NAME) -> List[StatisticValue]:
    """Compute the statistics of one subject.

    Parameters
    ----------
    masks : sequence of Volume3D or None
        One binary mask per structure, parallel to `structure_names`. Missing
        or empty masks are skipped.
    image : Volume3D, optional
        Intensity volume on the same grid; intensity statistics need it.
    structure_names : sequence of str
    is_gt_and_segmentation : bool
        Restricted mode for exactly two structures (ground truth, prediction):
        no space statistics, and no offsets, compactness or sphericality for
        the ground truth.
    exact_boundary_roc : bool
        Use full-volume erosion/dilation for Brc instead of the in-plane shell.
    pairwise_external : bool
        Also compare the external structure with the others.

    Returns
    -------
    list of StatisticValue
        In a fixed order: space intensity, then per structure (in index
        order) its own statistics followed by its pairs with later structures.
    """
    reference = _validate(masks, image, structure_names, is_gt_and_segmentation)
    result: List[StatisticValue] = []
    if reference is None:
        return result

    restricted = is_gt_and_segmentation
    spacing = reference.spacing
    dims = reference.shape
    binaries = [None if m is None else (m.array > 0).astype(np.uint8) for m in masks]
    extremes = [None if b is None else calculate_extremes(b, spacing) for b in binaries]
    intensities = [None if (b is None or image is None or e is None) else image.array[b > 0]
                   for b, e in zip(binaries, extremes)]

    if image is not None and not restricted:
        result += _space_intensity_statistics(image, binaries)

    done_space = restricted
    n = len(structure_names)
    for i in range(n):
        info1 = extremes[i]
        if info1 is None:
            if masks[i] is not None:
                logger.warning("structure %s is empty, skipped", structure_names[i])
            continue
        s1 = structure_names[i]
        mask1 = binaries[i]
        logger.debug("statistics for %s: %d voxels", s1, info1.count)

        if i > 0 or not restricted:
            for axis in range(3):
                if not done_space:
                    result.append(StatisticValue.single(f"{AXES[axis]}sz", SPACE, spacing[axis] * (dims[axis] - 1)))
                result += _space_offsets(axis, info1, s1, spacing[axis], dims[axis], restricted)
            result.append(StatisticValue.single("Vol", s1, info1.count * reference.voxel_volume))
        done_space = True

        if intensities[i] is not None:
            result += _intensity_statistics(image, mask1, info1, intensities[i], s1)
        if image is not None:
            roc = boundary_roc(image, masks[i], info1.region, exact_boundary_roc)
            if roc is not None:
                result.append(StatisticValue.single("Brc", s1, roc))

        if i > 0 or not restricted:
            result.append(StatisticValue.single("Com", s1, info1.compactness))
            if info1.sphericality is not None and math.isfinite(info1.sphericality):
                result.append(StatisticValue.single("Sph", s1, info1.sphericality))

        result += _step_entropy_statistics(mask1, info1, s1)

        if s1 == external_structure_name and not pairwise_external:
            continue
        for j in range(i + 1, n):
            info2 = extremes[j]
            s2 = structure_names[j]
            if info2 is None or (s2 == external_structure_name and not pairwise_external):
                continue
            for axis in range(3):
                result += _pair_offsets(axis, info1, info2, s1, s2)
            result.append(StatisticValue("Zde", s1, s2, info2.max_mm[2] - info1.min_mm[2]))
            result.append(StatisticValue("Ovr", s1, s2, overlap_ratio(mask1, info1, binaries[j], info2)))
            if image is not None:
                roc = M.roc_auc(intensities[i], intensities[j])
                if roc is not None:
                    result.append(StatisticValue("Irc", s1, s2, roc))
            for axis in range(3):
                roc = M.roc_from_histograms(info1.slice_counts[axis], info2.slice_counts[axis])
                if roc is not None:
                    result.append(StatisticValue(f"{AXES[axis]}rc", s1, s2, roc))
    return result


def calculate_csv_lines(patient_id, *args, **kwargs) -> List[str]:
    """calculate() rendered as "patient,statistic,structure1,structure2,value" rows."""
    return [v.csv_row(patient_id) for v in calculate(*args, **kwargs)]
