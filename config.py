"""
config.py

YAML run configuration for compute_statistics.py.

Example
-------

    subjects:
      - path: ./data/subject_001.npz
        patient_id: 1
      - ./data/subject_002.npz          # patient id taken from the file name
    output_csv: ./out/statistics.csv
    output_dir: ./out                   # contours and the run sidecar go here
    image_smoothing_mm: 0.0
    derived:                            # new structure = "a.op.b"
      ring: external.minus.body_core
    augment:
      - structure: tumour
        name: tumour_plus5
        margin_mm: [5.0, 5.0, 3.0]
        restriction: external
    statistics:
      exact_boundary_roc: false
      pairwise_external: false
      is_gt_and_segmentation: false
      external_structure_name: external
    contours:
      enabled: false
      smoothing: small                  # none | small
      slice_type: axial                 # axial | coronal | sagittal
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import yaml

from contours import SliceType
from errors import InvalidArgumentError
from smooth_polygon import SmoothingType


@dataclass
class StatisticsConfig:
    exact_boundary_roc: bool = False
    pairwise_external: bool = False
    is_gt_and_segmentation: bool = False
    external_structure_name: str = "external"

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> "StatisticsConfig":
        d = dict(d or {})
        return cls(
            exact_boundary_roc=bool(d.get("exact_boundary_roc", False)),
            pairwise_external=bool(d.get("pairwise_external", False)),
            is_gt_and_segmentation=bool(d.get("is_gt_and_segmentation", False)),
            external_structure_name=str(d.get("external_structure_name", "external")),
        )


@dataclass
class MorphologyConfig:
    """One augmentation step: `name` = `structure` dilated (or eroded) by margin_mm."""

    structure: str
    name: str
    margin_mm: Tuple[float, float, float]
    erode: bool = False
    restriction: Optional[str] = None

    @classmethod
    def from_dict(cls, d: dict) -> "MorphologyConfig":
        try:
            structure = str(d["structure"])
            name = str(d["name"])
            margin = d["margin_mm"]
        except KeyError as exc:
            raise InvalidArgumentError(f"augment entry {d!r} is missing {exc}") from None
        if isinstance(margin, (int, float)):
            margin = [margin] * 3
        margin = tuple(float(m) for m in margin)
        if len(margin) != 3 or any(m < 0 for m in margin):
            raise InvalidArgumentError(f"margin_mm must be one or three non-negative numbers, got {d['margin_mm']!r}")
        restriction = d.get("restriction")
        return cls(structure, name, margin, bool(d.get("erode", False)),
                   None if restriction is None else str(restriction))


@dataclass
class ContourConfig:
    enabled: bool = False
    smoothing: SmoothingType = SmoothingType.SMALL
    slice_type: SliceType = SliceType.AXIAL

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> "ContourConfig":
        d = dict(d or {})
        try:
            slice_type = SliceType(str(d.get("slice_type", "axial")).lower())
        except ValueError:
            raise InvalidArgumentError(f"unknown slice_type {d.get('slice_type')!r}") from None
        return cls(
            enabled=bool(d.get("enabled", False)),
            smoothing=SmoothingType.parse(d.get("smoothing", "small")),
            slice_type=slice_type,
        )


@dataclass
class SubjectEntry:
    path: str
    patient_id: str


@dataclass
class RunConfig:
    subjects: List[SubjectEntry]
    output_csv: str = "./statistics.csv"
    output_dir: Optional[str] = None
    image_smoothing_mm: float = 0.0
    derived: Dict[str, str] = field(default_factory=dict)
    augment: List[MorphologyConfig] = field(default_factory=list)
    statistics: StatisticsConfig = field(default_factory=StatisticsConfig)
    contours: ContourConfig = field(default_factory=ContourConfig)

    @classmethod
    def from_dict(cls, cfg: dict) -> "RunConfig":
        if not isinstance(cfg, dict):
            raise InvalidArgumentError("configuration must be a mapping")
        subjects = []
        for entry in cfg.get("subjects") or []:
            if isinstance(entry, dict):
                if "path" not in entry:
                    raise InvalidArgumentError(f"subject entry {entry!r} has no path")
                path = str(entry["path"])
                pid = str(entry.get("patient_id", _stem(path)))
            else:
                path = str(entry)
                pid = _stem(path)
            subjects.append(SubjectEntry(path, pid))
        if not subjects:
            raise InvalidArgumentError("configuration lists no subjects")
        sigma = float(cfg.get("image_smoothing_mm", 0.0))
        if sigma < 0:
            raise InvalidArgumentError(f"image_smoothing_mm must be non-negative, got {sigma}")
        return cls(
            subjects=subjects,
            output_csv=str(cfg.get("output_csv", "./statistics.csv")),
            output_dir=cfg.get("output_dir"),
            image_smoothing_mm=sigma,
            derived={str(k): str(v) for k, v in (cfg.get("derived") or {}).items()},
            augment=[MorphologyConfig.from_dict(d) for d in cfg.get("augment") or []],
            statistics=StatisticsConfig.from_dict(cfg.get("statistics")),
            contours=ContourConfig.from_dict(cfg.get("contours")),
        )


def _stem(path: str) -> str:
    return os.path.splitext(os.path.basename(path))[0]


def parse_config(path: str) -> dict:
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    return cfg


def load_config(path: str) -> RunConfig:
    return RunConfig.from_dict(parse_config(path))
