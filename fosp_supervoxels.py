
#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Forest oriented superpixel/supervoxel generation for a folder of cases.

Input structure:
  root_dir/
    CaseA/
      CaseA_prob.nii.gz      (classifier estimate in [0, 1])
      CaseA_leaf.nii.gz      (vector image, one leaf index per tree; or CaseA_leaf.npy)
    CaseB/
      ...

Outputs (per case):
  superpixels_forest.nii.gz   (labels 1..K, same geometry as the probability map)
  [optional] superpixels_features.csv  (per region: size, confidence score/std,
                                        distances to background and known foreground, cSP)

Notes:
- Files are matched by keyword (case-insensitive), first match in sorted order.
- Arrays come from SimpleITK in (z, y, x) order. Single-slice images run in 2D,
  otherwise the volume is processed as (y, x, z).
- A leaf index .npy must be stored in the same (z, y, x, trees) order. A single
  tree may omit the trailing axis.

Typical usage:
  python fosp_supervoxels.py --root_dir ./cases --k 400 --m 10 --n_iter 5 --export_features
"""

import os
import sys
import argparse
import numpy as np

try:
    import SimpleITK as sitk
except ImportError:
    print("Please install SimpleITK: pip install SimpleITK")
    sys.exit(1)

from forest_superpixels import log, superpixel_forest_oriented
from forest_superpixel_stats import export_superpixel_features


def read_image(path):
    img = sitk.ReadImage(path)
    arr = sitk.GetArrayFromImage(img)  # numpy array in z,y,x order
    return img, arr


def find_file_by_keyword(folder, keyword, exts=(".nii", ".nii.gz")):
    """
    Find first file whose name contains the keyword (case-insensitive) and ends with one of exts.
    Returns full path or None. Sorts candidates to ensure determinism.
    """
    kw = str(keyword).lower()
    candidates = []
    for fname in os.listdir(folder):
        fpath = os.path.join(folder, fname)
        if not os.path.isfile(fpath):
            continue
        lower = fname.lower()
        if kw in lower and lower.endswith(exts):
            candidates.append(fname)
    if not candidates:
        return None
    candidates.sort()
    return os.path.join(folder, candidates[0])


def read_leaf_codes(path):
    if path.lower().endswith(".npy"):
        return np.load(path)
    return read_image(path)[1]


def match_leaf_axes(leaf_arr, prob_shape):
    """
    Bring leaf codes to (z, y, x, T) for a probability map of shape (z, y, x).
    A single tree may come without its trailing axis, a single slice without its leading one.
    """
    prob_shape = tuple(prob_shape)
    if leaf_arr.shape == prob_shape:
        return leaf_arr[..., None]
    if leaf_arr.shape == prob_shape[1:]:
        return leaf_arr[None, ..., None]
    if leaf_arr.ndim == 3:
        return leaf_arr[None]
    return leaf_arr


def to_engine_axes(arr, n_spatial=3):
    """(z, y, x[, T]) -> (y, x) for a single slice, else (y, x, z[, T])."""
    if arr.shape[0] == 1:
        return arr[0]
    return np.moveaxis(arr, 0, n_spatial - 1)


def from_engine_axes(labels):
    if labels.ndim == 2:
        return labels[None]
    return np.moveaxis(labels, -1, 0)


def process_case(case_dir, args):
    """
    Process one case folder.
    """
    name = os.path.basename(case_dir)
    prob_path = find_file_by_keyword(case_dir, args.prob_name)
    leaf_path = find_file_by_keyword(case_dir, args.leaf_name, exts=(".nii", ".nii.gz", ".npy"))

    if prob_path is None or leaf_path is None:
        log(f"[Skip] Missing inputs in: {case_dir} | "
            f"prob like '*{args.prob_name}*.nii*' -> {prob_path} | "
            f"leaf like '*{args.leaf_name}*' -> {leaf_path}")
        return False

    prob_img, prob_arr = read_image(prob_path)
    if prob_arr.ndim == 2:
        prob_arr = prob_arr[None]
    leaf_arr = match_leaf_axes(read_leaf_codes(leaf_path), prob_arr.shape)

    if leaf_arr.shape[:-1] != prob_arr.shape:
        log(f"[Skip] {name}: leaf index shape {leaf_arr.shape} does not match probability map {prob_arr.shape}")
        return False

    est = to_engine_axes(prob_arr.astype(np.float64))
    tbc = to_engine_axes(leaf_arr)

    log(f"[{est.ndim}D] {name} | shape={est.shape} | trees={tbc.shape[-1]} | k={args.k} | m={args.m} | n_iter={args.n_iter}")
    labels, cSP, attrs = superpixel_forest_oriented(
        est, tbc, k=args.k, m=args.m, n_iter=args.n_iter, verbose=not args.quiet
    )

    out_img = sitk.GetImageFromArray(from_engine_axes(labels).astype(np.uint32))
    out_img.SetSpacing(prob_img.GetSpacing())
    out_img.SetOrigin(prob_img.GetOrigin())
    out_img.SetDirection(prob_img.GetDirection())

    out_path = os.path.join(case_dir, args.out_name)
    sitk.WriteImage(out_img, out_path)
    log(f"[OK] Saved: {out_path} | regions={len(cSP)}")

    if args.export_features:
        feat_path = os.path.join(case_dir, args.features_out_name)
        export_superpixel_features(labels, cSP, attrs, feat_path)
        log(f"[OK] Features: {feat_path}")

    return True


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Generate forest oriented superpixels/supervoxels from a classifier estimate and tree leaf indices.")
    parser.add_argument("--root_dir", type=str, required=True,
                        help="Root folder containing one subfolder per case")

    # Filenames (keyword matching)
    parser.add_argument("--prob_name", type=str, default="prob",
                        help="Keyword to locate the probability map (e.g., matches '*prob*.nii*')")
    parser.add_argument("--leaf_name", type=str, default="leaf",
                        help="Keyword to locate the leaf index file (.nii/.nii.gz vector image or .npy)")

    # Outputs
    parser.add_argument("--out_name", type=str, default="superpixels_forest.nii.gz",
                        help="Output filename of superpixel labels")
    parser.add_argument("--export_features", action="store_true",
                        help="If set, export per-superpixel features CSV")
    parser.add_argument("--features_out_name", type=str, default="superpixels_features.csv",
                        help="Per-superpixel features CSV filename")

    # Clustering params
    parser.add_argument("--k", type=int, default=400,
                        help="Nominal number of superpixels; the hexagonal grid decides the actual count")
    parser.add_argument("--m", type=float, default=10.0,
                        help="Weight of the spatial term (5-40). Larger -> more regular shapes")
    parser.add_argument("--n_iter", type=int, default=10,
                        help="Iterations; merging starts after the 3rd")
    parser.add_argument("--quiet", action="store_true",
                        help="Do not log per-iteration progress")

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    root = args.root_dir

    if not os.path.isdir(root):
        log(f"[Error] root_dir not found: {root}")
        sys.exit(1)

    cases = [os.path.join(root, d) for d in os.listdir(root)
             if os.path.isdir(os.path.join(root, d))]
    if not cases:
        log("[Error] No case subfolders found.")
        sys.exit(1)

    ok, fail = 0, 0
    failed_cases = []
    for c in sorted(cases):
        try:
            if process_case(c, args):
                ok += 1
            else:
                fail += 1
                failed_cases.append(c)
        except Exception as e:
            log(f"[Fail] {c} -> {e}")
            fail += 1
            failed_cases.append(c)

    log(f"Done. Success: {ok}, Fail: {fail}, Failed cases: {failed_cases}")
    return ok, fail


if __name__ == "__main__":
    main()
