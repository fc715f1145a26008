from __future__ import annotations

import argparse
import json
import logging
import os
import subprocess
import time
from typing import Dict, List

import numpy as np

from config import RunConfig, load_config
from contours import extract_contours_per_slice
from errors import GeometryError
from io_bridge import load_subject
from statistics_calculator import CSV_HEADER, StatisticValue
from structures import VolumeAndStructures

logger = logging.getLogger(__name__)


def prepare_subject(subject: VolumeAndStructures, cfg: RunConfig) -> None:
    """Apply image smoothing, derived structures and augmentations from the config."""
    if cfg.image_smoothing_mm > 0 and subject.image is not None:
        subject.smooth_image_in_place(cfg.image_smoothing_mm)
    for name, expression in cfg.derived.items():
        subject.derive(name, expression, replace=True)
    for aug in cfg.augment:
        subject.augment(aug.structure, aug.name, aug.margin_mm, erode=aug.erode,
                        restriction=aug.restriction, replace=True)


def subject_statistics(subject: VolumeAndStructures, cfg: RunConfig) -> List[StatisticValue]:
    s = cfg.statistics
    return subject.statistics(is_gt_and_segmentation=s.is_gt_and_segmentation,
                              exact_boundary_roc=s.exact_boundary_roc,
                              pairwise_external=s.pairwise_external,
                              external_structure_name=s.external_structure_name)


def subject_contours(subject: VolumeAndStructures, cfg: RunConfig) -> Dict[str, np.ndarray]:
    """Contour points keyed "<structure>/<slice>/<k>", ready for np.savez."""
    out: Dict[str, np.ndarray] = {}
    for name, mask in subject.items():
        by_slice = extract_contours_per_slice(mask, cfg.contours.slice_type, cfg.contours.smoothing)
        for index, polys in by_slice.items():
            for k, poly in enumerate(polys):
                out[f"{name}/{index:04d}/{k}"] = poly.points
    return out


def _git_rev() -> str:
    try:
        return subprocess.check_output(["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def main(argv=None):
    ap = argparse.ArgumentParser(description="Compute structure statistics for a list of subjects.")
    ap.add_argument("--config", required=True)
    ap.add_argument("--exact-boundary-roc", action="store_true",
                    help="Use full-volume erosion/dilation for the boundary ROC.")
    ap.add_argument("--verbose", "-v", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    cfg = load_config(args.config)
    if args.exact_boundary_roc:
        cfg.statistics.exact_boundary_roc = True

    out_dir = cfg.output_dir
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    csv_dir = os.path.dirname(os.path.abspath(cfg.output_csv))
    os.makedirs(csv_dir, exist_ok=True)

    t0 = time.time()
    times = {}
    failed = []
    n_rows = 0
    with open(cfg.output_csv, "w") as f:
        f.write(CSV_HEADER + "\n")
        for entry in cfg.subjects:
            ts = time.time()
            try:
                subject = load_subject(entry.path)
                prepare_subject(subject, cfg)
                values = subject_statistics(subject, cfg)
                if cfg.contours.enabled and out_dir:
                    np.savez_compressed(os.path.join(out_dir, f"contours_{entry.patient_id}.npz"),
                                        **subject_contours(subject, cfg))
            except (GeometryError, OSError, KeyError) as e:
                logger.error("subject %s (%s) skipped: %s", entry.patient_id, entry.path, e)
                failed.append(entry.patient_id)
                continue
            for v in values:
                f.write(v.csv_row(entry.patient_id) + "\n")
            n_rows += len(values)
            times[entry.patient_id] = time.time() - ts
            print(f"subject={entry.patient_id} structures={len(subject)} rows={len(values)} "
                  f"time={times[entry.patient_id]:.2f}s")

    t_done = time.time()
    if out_dir:
        meta = {
            "subjects": len(cfg.subjects),
            "failed": failed,
            "rows": n_rows,
            "times": {"total": float(t_done - t0), "per_subject": times},
            "output_csv": os.path.abspath(cfg.output_csv),
            "git_rev": _git_rev(),
            "config": args.config,
        }
        with open(os.path.join(out_dir, "statistics.meta.json"), "w") as f:
            json.dump(meta, f, indent=2)

    print(f"done: {len(cfg.subjects) - len(failed)}/{len(cfg.subjects)} subjects, {n_rows} rows, "
          f"total={t_done - t0:.2f}s")
    return 1 if failed and len(failed) == len(cfg.subjects) else 0


if __name__ == "__main__":
    raise SystemExit(main())
