
#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Per-superpixel confidence statistics.

For every region of a final label map:
  - confidence_score          mean |confidence - 0.5| (higher = more decisive)
  - std_confidence            population standard deviation of confidence
  - dist_to_mask              mean distance to the background mask (confidence < 0.01)
  - dist_to_known_foreground  mean distance to known foreground (confidence > 0.8)
and the composite cSP = confidence_score * std_confidence, high for regions
straddling a decision boundary.
"""

from typing import Dict, Tuple

import numpy as np
import pandas as pd
from scipy.ndimage import distance_transform_edt


BACKGROUND_THRESHOLD = 0.01
FOREGROUND_THRESHOLD = 0.8

ATTRIBUTE_NAMES = ("confidence_score", "std_confidence", "dist_to_mask", "dist_to_known_foreground")


def distance_to(mask):
    """
    Euclidean distance of every pixel to the nearest pixel of `mask`.
    An empty mask gives inf everywhere.
    """
    mask = np.asarray(mask, dtype=bool)
    if not np.any(mask):
        return np.full(mask.shape, np.inf)
    return distance_transform_edt(~mask)


def region_means(values, labels, k):
    """Mean of `values` per label 1..k; NaN for labels without pixels."""
    flat = labels.ravel()
    counts = np.bincount(flat, minlength=k + 1)[1:k + 1]
    sums = np.bincount(flat, weights=np.asarray(values, dtype=np.float64).ravel(), minlength=k + 1)[1:k + 1]
    means = np.full(k, np.nan)
    np.divide(sums, counts, out=means, where=counts > 0)
    return means


def superpixel_statistics(est_img, labels, k=None) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
    """
    Returns:
        cSP: (k,) composite score
        attrs: dict with the four (k,) arrays named in ATTRIBUTE_NAMES
    """
    est_img = np.asarray(est_img, dtype=np.float64)
    labels = np.asarray(labels)
    if k is None:
        k = int(labels.max()) if labels.size else 0

    mean_conf = region_means(est_img, labels, k)
    confidence_score = region_means(np.abs(est_img - 0.5), labels, k)

    # deviations from each pixel's own region mean; unlabelled pixels ignored
    lut = np.concatenate([[0.0], np.nan_to_num(mean_conf)])
    dev2 = (est_img - lut[labels]) ** 2
    std_confidence = np.sqrt(region_means(dev2, labels, k))

    dist_mask = distance_to(est_img < BACKGROUND_THRESHOLD)
    dist_kf = distance_to(est_img > FOREGROUND_THRESHOLD)

    attrs = {
        "confidence_score": confidence_score,
        "std_confidence": std_confidence,
        "dist_to_mask": region_means(dist_mask, labels, k),
        "dist_to_known_foreground": region_means(dist_kf, labels, k),
    }
    cSP = confidence_score * std_confidence
    return cSP, attrs


def superpixel_feature_table(labels, cSP, attrs) -> pd.DataFrame:
    """One row per region: label_id, size_vox, the attributes and csp."""
    k = len(cSP)
    sizes = np.bincount(np.asarray(labels).ravel(), minlength=k + 1)[1:k + 1]
    df = pd.DataFrame({"label_id": np.arange(1, k + 1), "size_vox": sizes})
    for name in ATTRIBUTE_NAMES:
        df[name] = attrs[name]
    df["csp"] = cSP
    return df


def export_superpixel_features(labels, cSP, attrs, out_csv_path):
    df = superpixel_feature_table(labels, cSP, attrs)
    df.to_csv(out_csv_path, index=False)
    return df
