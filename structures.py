"""
structures.py

An image and its named structure masks, owned together.

Masks are copied on the way in and stored read-only, so a structure handed
out by get() cannot be changed behind the container's back; every operation
that changes a structure stores a new array. The intensity image is owned as
well and is the only buffer mutated in place (smooth_image_in_place).
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

import morphology
from errors import InvalidArgumentError
from regions import get_interest_region
from statistics_calculator import EXTERNAL_STRUCTURE_NAME, StatisticValue, calculate
from volume import Volume3D

logger = logging.getLogger(__name__)


class Operator(enum.Enum):
    GT = "gt"
    GE = "ge"
    LT = "lt"
    LE = "le"
    INTERSECTION = "intersection"
    UNION = "union"
    MINUS = "minus"


_OPERATION_RE = re.compile(r"^(.+)\.(" + "|".join(op.value for op in Operator) + r")\.(.+)$")


@dataclass(frozen=True)
class StructureOperation:
    """Binary operation on two named structures, written "a.op.b".

    gt/ge keep the slices of a above (z >, z >=) the top slice of b, lt/le the
    slices below (z <, z <=) the bottom slice of b. intersection, union and
    minus are voxel-wise set operations.
    """

    structure1: str
    operator: Operator
    structure2: str

    @classmethod
    def from_string(cls, expression: str) -> "StructureOperation":
        m = _OPERATION_RE.match(expression.strip())
        if m is None:
            raise InvalidArgumentError(
                f"cannot parse structure operation {expression!r}; expected a.op.b with op in "
                f"{[op.value for op in Operator]}"
            )
        return cls(m.group(1), Operator(m.group(2)), m.group(3))

    def __str__(self) -> str:
        return f"{self.structure1}.{self.operator.value}.{self.structure2}"

    def apply_arrays(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        a = a > 0
        b = b > 0
        op = self.operator
        if op is Operator.INTERSECTION:
            return (a & b).astype(np.uint8)
        if op is Operator.UNION:
            return (a | b).astype(np.uint8)
        if op is Operator.MINUS:
            return (a & ~b).astype(np.uint8)

        region = get_interest_region(b)
        if region.is_empty():
            raise InvalidArgumentError(f"{self}: {self.structure2!r} is empty, no slice to compare with")
        z = np.arange(a.shape[2])
        if op is Operator.GT:
            keep = z > region.max_z
        elif op is Operator.GE:
            keep = z >= region.max_z
        elif op is Operator.LT:
            keep = z < region.min_z
        else:
            keep = z <= region.min_z
        return (a & keep[None, None, :]).astype(np.uint8)

    def apply(self, structures: "VolumeAndStructures") -> Volume3D:
        a = structures.get(self.structure1)
        b = structures.get(self.structure2)
        return a.with_array(self.apply_arrays(a.array, b.array))


def _read_only_copy(arr: np.ndarray) -> np.ndarray:
    out = (np.asarray(arr) > 0).astype(np.uint8)
    out.setflags(write=False)
    return out


class VolumeAndStructures:
    def __init__(self, image: Optional[Volume3D] = None,
                 structures: Iterable[Tuple[str, Volume3D]] = ()):
        self._image = image.copy() if image is not None else None
        self._masks: Dict[str, Volume3D] = {}
        for name, mask in (structures.items() if isinstance(structures, dict) else structures):
            self.add(name, mask)

    @property
    def image(self) -> Optional[Volume3D]:
        return self._image

    @property
    def names(self) -> List[str]:
        return list(self._masks)

    def __len__(self) -> int:
        return len(self._masks)

    def __contains__(self, name: str) -> bool:
        return name in self._masks

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._masks))

    def items(self) -> List[Tuple[str, Volume3D]]:
        return list(self._masks.items())

    def masks(self) -> List[Volume3D]:
        return list(self._masks.values())

    def _reference(self, excluding: Optional[str] = None) -> Optional[Volume3D]:
        """Volume that defines the grid: the image, else any other stored mask."""
        if self._image is not None:
            return self._image
        return next((m for k, m in self._masks.items() if k != excluding), None)

    def get(self, name: str) -> Volume3D:
        """The stored mask; its array is read-only."""
        try:
            return self._masks[name]
        except KeyError:
            raise InvalidArgumentError(f"no structure named {name!r}; have {self.names}") from None

    def add(self, name: str, mask: Volume3D, replace: bool = False) -> None:
        if not name:
            raise InvalidArgumentError("structure name must not be empty")
        if not isinstance(mask, Volume3D):
            raise InvalidArgumentError(f"structure {name!r} must be a Volume3D, got {type(mask).__name__}")
        if name in self._masks and not replace:
            raise InvalidArgumentError(f"structure {name!r} already exists")
        ref = self._reference(excluding=name)
        if ref is not None:
            ref.check_same_grid(mask, f"structure {name!r}")
        self._masks[name] = mask.with_array(_read_only_copy(mask.array))

    def remove(self, name: str) -> Volume3D:
        self.get(name)
        return self._masks.pop(name)

    def rename(self, old: str, new: str, replace: bool = False) -> None:
        """Rename a structure in place of the old entry, keeping its position."""
        mask = self.get(old)
        if old == new:
            return
        if new in self._masks and not replace:
            raise InvalidArgumentError(f"structure {new!r} already exists")
        self._masks = {(new if k == old else k): v for k, v in self._masks.items() if k != new}

    def derive(self, new_name: str, expression: str, replace: bool = False) -> Volume3D:
        """Add the result of an "a.op.b" structure operation as a new structure."""
        op = StructureOperation.from_string(expression)
        result = op.apply(self)
        self.add(new_name, result, replace=replace)
        logger.debug("derived %s = %s (%d voxels)", new_name, op, int(result.array.sum()))
        return self.get(new_name)

    def augment(self, name: str, new_name: str, margin_mm, erode: bool = False,
                restriction: Optional[str] = None, replace: bool = False) -> Volume3D:
        """Add a dilated (or eroded) copy of a structure.

        margin_mm is one number or per-axis (x, y, z) margins in mm.
        """
        mask = self.get(name)
        try:
            margins = np.broadcast_to(np.asarray(margin_mm, dtype=np.float64), (3,))
        except ValueError:
            raise InvalidArgumentError(f"margin must be one value or three, got {margin_mm!r}") from None
        if erode:
            if restriction is not None:
                raise InvalidArgumentError("a restriction only applies to dilation")
            result = morphology.erode(mask, *margins)
        else:
            restr = self.get(restriction) if restriction is not None else None
            result = morphology.dilate(mask, *margins, restriction=restr)
        self.add(new_name, result, replace=replace)
        return self.get(new_name)

    def smooth_image_in_place(self, sigma_mm: float) -> None:
        if self._image is None:
            raise InvalidArgumentError("there is no image to smooth")
        self._image.smooth_in_place(sigma_mm)

    def statistics(self,
                   is_gt_and_segmentation: bool = False,
                   exact_boundary_roc: bool = False,
                   pairwise_external: bool = False,
                   external_structure_name: str = EXTERNAL_STRUCTURE_NAME) -> List[StatisticValue]:
        return calculate(self.masks(), self._image, self.names,
                         is_gt_and_segmentation=is_gt_and_segmentation,
                         exact_boundary_roc=exact_boundary_roc,
                         pairwise_external=pairwise_external,
                         external_structure_name=external_structure_name)
