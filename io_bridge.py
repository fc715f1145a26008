"""
io_bridge.py

Thin I/O wrapper for subjects stored as .npz archives.

- Arrays are stored and returned as [x, y, z] (i->x, j->y, k->z).
- Masks are binary (value > 0 is foreground) and share the image grid.
- Reading DICOM/NIfTI is left to upstream converters that write this layout.

Layout
------

    structure_names : (S,) str      structure order
    mask_<name>     : (nx, ny, nz)  one per structure
    image           : (nx, ny, nz)  optional intensity volume
    spacing         : (3,) float    mm per voxel, default (1, 1, 1)
    origin          : (3,) float    mm, default (0, 0, 0)
    direction       : (3, 3) float  default identity

Primary API
-----------

    from io_bridge import load_subject, save_subject

    subject = load_subject("subject_001.npz")
    subject.names          # ['external', 'tumour', ...]
    save_subject("copy.npz", subject)
"""

from __future__ import annotations

import logging
import os
import zipfile
from typing import Dict, List

import numpy as np

from errors import GeometryError, InvalidArgumentError
from structures import VolumeAndStructures
from volume import Volume3D

logger = logging.getLogger(__name__)

MASK_PREFIX = "mask_"


def load_subject(path: str) -> VolumeAndStructures:
    """Read one subject archive into a VolumeAndStructures.

    A file that is not a readable .npz archive raises InvalidArgumentError.
    """
    try:
        data = np.load(path, allow_pickle=False)
    except (ValueError, zipfile.BadZipFile) as exc:
        raise InvalidArgumentError(f"{path}: not a readable subject archive ({exc})") from exc
    if not hasattr(data, "files"):
        raise InvalidArgumentError(f"{path}: expected an .npz archive, got a single array")
    try:
        image, structures = _read_archive(data, path)
    except GeometryError:
        raise
    except (ValueError, zipfile.BadZipFile) as exc:
        raise InvalidArgumentError(f"{path}: not a readable subject archive ({exc})") from exc
    finally:
        data.close()

    subject = VolumeAndStructures(image, structures)
    logger.debug("loaded %s: %d structures, image=%s", os.path.basename(path), len(subject),
                 None if image is None else image.shape)
    return subject


def _read_archive(data, path: str):
    keys = set(data.files)
    spacing = tuple(data["spacing"]) if "spacing" in keys else (1.0, 1.0, 1.0)
    origin = tuple(data["origin"]) if "origin" in keys else (0.0, 0.0, 0.0)
    direction = data["direction"] if "direction" in keys else None
    if "structure_names" in keys:
        names = [str(n) for n in data["structure_names"]]
    else:
        names = sorted(k[len(MASK_PREFIX):] for k in keys if k.startswith(MASK_PREFIX))
    image = Volume3D(data["image"], spacing, origin, direction) if "image" in keys else None

    structures = []
    for name in names:
        key = MASK_PREFIX + name
        if key not in keys:
            raise InvalidArgumentError(f"{path}: structure {name!r} has no {key!r} array")
        structures.append((name, Volume3D(data[key], spacing, origin, direction)))
    return image, structures


def save_subject(path: str, subject: VolumeAndStructures) -> None:
    """Write a VolumeAndStructures in the layout load_subject reads."""
    out: Dict[str, np.ndarray] = {}
    ref = subject.image
    if ref is None and len(subject):
        ref = subject.masks()[0]
    if ref is not None:
        out["spacing"] = np.asarray(ref.spacing, dtype=np.float64)
        out["origin"] = np.asarray(ref.origin, dtype=np.float64)
        out["direction"] = np.asarray(ref.direction, dtype=np.float64)
    if subject.image is not None:
        out["image"] = subject.image.array
    names: List[str] = subject.names
    out["structure_names"] = np.asarray(names, dtype=str)
    for name, mask in subject.items():
        out[MASK_PREFIX + name] = mask.array
    np.savez_compressed(path, **out)
