
#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Forest oriented superpixels (2D) / supervoxels (3D) over a classifier estimate.

Clustering is guided jointly by:
- spatial proximity to the cluster centre
- classifier confidence (an iteration-anchored value at the centre)
- leaf-index codes of a decision-tree ensemble (per-tree mismatch count)

Pipeline:
  1. hexagonal seed grid from image size and nominal k
  2. per iteration:
       assignment pass (local windows, trilateral distance)
       centroid update (confidence-consistency weighted means)
       region merging + label compaction (after the 3rd iteration)
  3. per-region confidence statistics (forest_superpixel_stats)

Usage:
    labels, cSP, attrs = superpixel_forest_oriented(est_img, tbc_img, k=400, m=10, n_iter=5)

Arrays:
    est_img : (H, W) or (H, W, D) float in [0, 1]
    tbc_img : (H, W, T) or (H, W, D, T) integer leaf index per tree
    labels  : same spatial shape, ids 1..K (0 only before the first pass)
"""

import itertools
import sys
import time
from typing import Dict, Tuple

import numpy as np

try:
    from skimage.segmentation import relabel_sequential
except ImportError:
    print("Please install scikit-image: pip install scikit-image")
    sys.exit(1)

from forest_superpixel_stats import superpixel_statistics


# Weighting priorities of the trilateral distance and the merge score
CONFIDENCE_WEIGHT = 100.0
LEAF_WEIGHT = 3.0
MERGE_THRESHOLD = 20.0

# Lower bound of the per-pixel centroid weight
MIN_PIXEL_WEIGHT = 0.05

# Merging starts once the clustering has settled
MERGE_START_ITER = 3

SQRT3_2 = np.sqrt(3.0) / 2.0


class InvalidWindowError(RuntimeError):
    """Grid or search window degenerates for the given image and k."""


def log(msg):
    print(msg, flush=True)


def round_half_up(x):
    """Round half away from zero for non-negative values (np.round rounds half to even)."""
    return np.floor(np.asarray(x, dtype=np.float64) + 0.5).astype(np.int64)


def _offset_table(ndim):
    offsets = [o for o in itertools.product((-1, 0, 1), repeat=ndim) if any(o)]
    return np.array(offsets, dtype=np.int64)


NEIGHBOR_OFFSETS = {2: _offset_table(2), 3: _offset_table(3)}


# ---------------------------
# Region arena
# ---------------------------

class RegionArena:
    """
    Per-region state addressed by id - 1.

    Attributes:
        centers (np.ndarray): (K, ndim) integer centre coordinates
        leaf_codes (np.ndarray): (K, T) leaf indices sampled at the centres
        weights (np.ndarray): (K,) accumulated centroid weight of the last update
        confidence_history (np.ndarray): (K, n_iter) confidence at the centre after each update
    """

    def __init__(self, centers: np.ndarray, leaf_codes: np.ndarray, n_iter: int):
        self.centers = np.asarray(centers, dtype=np.int64)
        self.leaf_codes = np.asarray(leaf_codes)
        self.weights = np.zeros(len(self.centers), dtype=np.float64)
        self.confidence_history = np.zeros((len(self.centers), max(int(n_iter), 1)), dtype=np.float64)

    @property
    def k(self) -> int:
        return len(self.centers)

    def center_index(self, ids=None) -> Tuple[np.ndarray, ...]:
        c = self.centers if ids is None else self.centers[np.asarray(ids) - 1]
        return tuple(c.T)

    def resample_leaf_codes(self, tbc_img: np.ndarray, ids=None):
        if ids is None:
            self.leaf_codes = tbc_img[self.center_index()]
        else:
            self.leaf_codes[np.asarray(ids) - 1] = tbc_img[self.center_index(ids)]

    def keep(self, old_ids: np.ndarray):
        """Retain regions `old_ids` (sorted, 1-based); they become ids 1..len(old_ids)."""
        rows = np.asarray(old_ids, dtype=np.int64) - 1
        self.centers = self.centers[rows]
        self.leaf_codes = self.leaf_codes[rows]
        self.weights = self.weights[rows]
        self.confidence_history = self.confidence_history[rows]


# ---------------------------
# Grid initialisation and weight schedule
# ---------------------------

def init_hex_grid(shape, k) -> Tuple[np.ndarray, int]:
    """
    Seed centres on a hexagonal grid.

    Rows of nodes alternate their starting column (S/2, S) so that the
    seeds form a hexagonal pattern on the (H, W) plane. Volumes repeat the
    plane at evenly spaced depths.

    Returns:
        centers: (K, ndim) 0-based integer coordinates, K = rows * cols [* slices]
        step: integer grid interval S used for all window arithmetic
    """
    shape = tuple(int(s) for s in shape)
    ndim = len(shape)
    rows, cols = shape[0], shape[1]
    depth = shape[2] if ndim == 3 else 1

    step = (rows * cols * depth / (k * SQRT3_2)) ** (1.0 / ndim)

    # allow a half column margin at one end, alternating from row to row
    node_cols = int(round_half_up(cols / step - 0.5))
    if node_cols < 1:
        raise InvalidWindowError(f"No grid columns fit image shape {shape} with k={k}")
    step = cols / (node_cols + 0.5)

    node_rows = int(round_half_up(rows / (SQRT3_2 * step)))
    if node_rows < 1:
        raise InvalidWindowError(f"No grid rows fit image shape {shape} with k={k}")
    v_spacing = rows / node_rows

    node_slices = max(1, int(round_half_up(depth / step))) if ndim == 3 else 1
    d_spacing = depth / node_slices

    # positions stay float across the grid; only the seeds are rounded
    seeds = []
    d = d_spacing / 2.0
    for _ in range(node_slices):
        r = v_spacing / 2.0
        for ri in range(node_rows):
            c = step / 2.0 if ri % 2 == 0 else step
            for _ in range(node_cols):
                seeds.append((r, c, d)[:ndim])
                c += step
            r += v_spacing
        d += d_spacing

    # 1-based seed positions must land on the image
    seeds = round_half_up(np.array(seeds))
    if np.any(seeds < 1) or np.any(seeds > np.array(shape)):
        raise InvalidWindowError(f"Grid of {len(seeds)} nodes (S={step:.3f}) is finer than image shape {shape} allows with k={k}")
    return seeds - 1, max(1, int(round_half_up(step)))


def iteration_weights(n_iter):
    """w(n) = 1 - e^n / e^N for n = 1..N."""
    n = np.arange(1, int(n_iter) + 1, dtype=np.float64)
    return 1.0 - np.exp(n - n_iter)


def anchor_confidence(c, w):
    """Pull a centre confidence towards its side of 0.5, weighted by the iteration factor."""
    if c > 0.5:
        return 1.0 - w + w * c
    return w * c


# ---------------------------
# Assignment pass
# ---------------------------

def search_window(center, step, shape) -> Tuple[slice, ...]:
    lo = np.maximum(np.asarray(center) - step, 0)
    hi = np.minimum(np.asarray(center) + step, np.asarray(shape) - 1)
    if np.any(hi < lo):
        raise InvalidWindowError(f"Empty search window around {tuple(center)} in image of shape {tuple(shape)}")
    return tuple(slice(int(a), int(b) + 1) for a, b in zip(lo, hi))


def trilateral_distance(center, c_anchor, leaf_code, est_win, tbc_win, window, step, m):
    """
    D = sqrt(100*dp + 3*dl2 + m^2/S^2 * ds2) over one search window.

    dp  : |confidence - anchored centre confidence|
    dl2 : number of trees whose leaf index differs from the centre's
    ds2 : squared spatial distance to the centre (pixel units)
    """
    ds2 = np.zeros(est_win.shape, dtype=np.float64)
    for ax, sl in enumerate(window):
        shp = [1] * est_win.ndim
        shp[ax] = -1
        ds2 = ds2 + ((np.arange(sl.start, sl.stop) - center[ax]) ** 2).reshape(shp)

    dp = np.abs(est_win - c_anchor)
    dl2 = np.count_nonzero(tbc_win != leaf_code, axis=-1)

    return np.sqrt(dp * CONFIDENCE_WEIGHT + dl2 * LEAF_WEIGHT + ds2 / step ** 2 * m ** 2)


def assign_pixels(est_img, tbc_img, labels, distances, surrogate, regions, step, m, weight):
    """
    One assignment pass over all regions.

    `labels`, `distances` and `surrogate` are updated in place wherever a
    region is strictly closer than the best distance so far; the anchored
    centre confidence of the winner is recorded in `surrogate`.

    Returns the number of pixel updates.
    """
    n_updates = 0
    for kk in range(regions.k):
        center = regions.centers[kk]
        win = search_window(center, step, est_img.shape)

        c_anchor = anchor_confidence(est_img[tuple(center)], weight)
        D = trilateral_distance(center, c_anchor, regions.leaf_codes[kk],
                                est_img[win], tbc_img[win], win, step, m)

        sub_d = distances[win]
        update = D < sub_d
        sub_d[update] = D[update]
        labels[win][update] = kk + 1
        surrogate[win][update] = c_anchor
        n_updates += int(np.count_nonzero(update))
    return n_updates


# ---------------------------
# Centroid update
# ---------------------------

def pixel_weights(c_est, est):
    """Confidence-consistency weight, floored at MIN_PIXEL_WEIGHT."""
    return np.maximum(1.0 - np.abs(c_est - est), MIN_PIXEL_WEIGHT)


def update_centroids(est_img, tbc_img, labels, surrogate, regions, iteration):
    """
    Move every centre to the weighted mean of its pixels and resample the
    centre leaf codes and confidence.

    Regions without any pixel keep their previous centre; their weight
    stays 0 so the merge pass skips them and compaction drops them.

    Returns the ids of the emptied regions.
    """
    k = regions.k
    flat = labels.ravel()
    wrc = pixel_weights(surrogate, est_img).ravel()

    wsum = np.bincount(flat, weights=wrc, minlength=k + 1)[1:k + 1]
    coords = np.indices(labels.shape).reshape(labels.ndim, -1)
    sums = np.stack([
        np.bincount(flat, weights=coords[ax] * wrc, minlength=k + 1)[1:k + 1]
        for ax in range(labels.ndim)
    ], axis=1)

    live = wsum > 0
    regions.centers[live] = round_half_up(sums[live] / wsum[live, None])
    regions.weights = wsum
    regions.resample_leaf_codes(tbc_img)
    regions.confidence_history[:, iteration] = est_img[regions.center_index()]

    return np.flatnonzero(~live) + 1


# ---------------------------
# Region merging
# ---------------------------

def member_index(labels, k) -> Dict[int, np.ndarray]:
    """Flat pixel indices of every region id 1..k."""
    flat = labels.ravel()
    order = np.argsort(flat, kind="stable")
    bounds = np.searchsorted(flat[order], np.arange(1, k + 2))
    return {kk: order[bounds[kk - 1]:bounds[kk]] for kk in range(1, k + 1)}


def neighbor_labels(labels, flat_idx):
    """
    Distinct labels touched by the 8- (2D) or 26- (3D) neighbourhood of the
    given pixels, clamped at the borders. The pixels' own label is included.
    """
    coords = np.stack(np.unravel_index(flat_idx, labels.shape), axis=1)
    upper = np.array(labels.shape) - 1
    touched = [labels[tuple(np.clip(coords + off, 0, upper).T)] for off in NEIGHBOR_OFFSETS[labels.ndim]]
    return np.unique(np.concatenate(touched))


def merge_regions(est_img, tbc_img, labels, surrogate, regions, threshold=MERGE_THRESHOLD):
    """
    Merge each region with the neighbours it resembles.

    Regions are visited in ascending id order. For a region and each of its
    neighbours the score

        |mean confidence difference| * 100 + (#trees with different centre leaf) * 3

    is computed and every neighbour scoring below `threshold` is relabelled
    into the region, whose centre is then recomputed over the enlarged pixel
    set. Consumed regions are not visited again in this pass. The label
    space is left with gaps; see compact_labels.

    Returns the number of regions consumed.
    """
    est_flat = est_img.ravel()
    members = member_index(labels, regions.k)
    # regions that never gathered a unit of weight do not drive a merge
    inactive = regions.weights < 1
    n_consumed = 0

    for kk in range(1, regions.k + 1):
        if inactive[kk - 1]:
            continue
        own = members[kk]
        if own.size == 0:
            continue

        neigh = neighbor_labels(labels, own)
        m_curr = est_flat[own].mean()
        m_neigh = np.array([est_flat[members[nn]].mean() for nn in neigh])
        leaf_diff = np.count_nonzero(regions.leaf_codes[neigh - 1] != regions.leaf_codes[kk - 1], axis=1)

        scores = np.abs(m_neigh - m_curr) * CONFIDENCE_WEIGHT + leaf_diff * LEAF_WEIGHT
        to_merge = neigh[(scores < threshold) & (neigh != kk)]

        if to_merge.size:
            grown = [own] + [members[nn] for nn in to_merge]
            own = np.concatenate(grown)
            labels[np.unravel_index(own, labels.shape)] = kk
            members[kk] = own
            for nn in to_merge:
                members[nn] = own[:0]
            inactive[to_merge - 1] = True
            n_consumed += len(to_merge)

        # new centre over the enlarged region, weighted against the anchored
        # confidence recorded at the old centre
        c_est = surrogate[tuple(regions.centers[kk - 1])]
        wrc = pixel_weights(c_est, est_flat[own])
        coords = np.stack(np.unravel_index(own, labels.shape), axis=1)
        regions.centers[kk - 1] = round_half_up((coords * wrc[:, None]).sum(axis=0) / wrc.sum())
        regions.weights[kk - 1] = wrc.sum()
        regions.resample_leaf_codes(tbc_img, [kk])

    return n_consumed


def compact_labels(labels, regions):
    """
    Renumber the ids still present in `labels` to 1..K' and reorder the
    region arena to match. Returns the new label grid.
    """
    present = np.unique(labels)
    present = present[present > 0]
    new_labels, _, _ = relabel_sequential(labels)
    regions.keep(present)
    return new_labels.astype(labels.dtype, copy=False)


# ---------------------------
# Driver
# ---------------------------

def check_inputs(est_img, tbc_img, k, m, n_iter):
    if est_img.ndim not in (2, 3):
        raise ValueError(f"Expected a 2D or 3D confidence map, got shape {est_img.shape}")
    if tbc_img.ndim != est_img.ndim + 1 or tbc_img.shape[:-1] != est_img.shape:
        raise ValueError(f"Leaf index tensor shape {tbc_img.shape} does not match confidence map {est_img.shape}")
    if tbc_img.shape[-1] < 1:
        raise ValueError("Leaf index tensor holds no trees")
    for name, value in (("k", k), ("m", m), ("n_iter", n_iter)):
        if not value > 0:
            raise ValueError(f"{name} must be positive, got {value}")


def superpixel_forest_oriented(est_img, tbc_img, k, m, n_iter=10, verbose=False, return_trace=False):
    """
    Build forest oriented superpixels (supervoxels).

    Args:
        est_img: classifier estimate, (H, W) or (H, W, D), values in [0, 1]
        tbc_img: leaf index per tree, (H, W, T) or (H, W, D, T)
        k: nominal number of regions; the grid decides the actual count
        m: weight of the spatial term, about 5 to 40 (larger -> more regular shapes)
        n_iter: iterations, merging happens from the 4th on
        verbose: log one line per iteration
        return_trace: also return a dict with update_counts, region_counts,
            confidence_history and centers

    Returns:
        labels: region ids 1..K
        cSP: (K,) composite confidence score
        attrs: dict of (K,) arrays confidence_score, std_confidence,
            dist_to_mask, dist_to_known_foreground
    """
    est_img = np.ascontiguousarray(est_img, dtype=np.float64)
    tbc_img = np.ascontiguousarray(tbc_img)
    check_inputs(est_img, tbc_img, k, m, n_iter)
    n_iter = int(n_iter)

    centers, step = init_hex_grid(est_img.shape, k)
    regions = RegionArena(centers, tbc_img[tuple(centers.T)], n_iter)
    if verbose:
        log(f"[Grid] shape={est_img.shape} | k={regions.k} | S={step} | trees={tbc_img.shape[-1]}")

    weights = iteration_weights(n_iter)
    labels = np.zeros(est_img.shape, dtype=np.int32)
    distances = np.empty(est_img.shape, dtype=np.float64)
    update_counts = []
    region_counts = []

    for n in range(n_iter):
        t_iter = time.time()
        distances.fill(np.inf)
        surrogate = np.zeros(est_img.shape, dtype=np.float64)

        n_updates = assign_pixels(est_img, tbc_img, labels, distances, surrogate,
                                  regions, step, m, weights[n])
        if n == 0:
            n_unassigned = int(np.count_nonzero(labels == 0))
            if n_unassigned:
                raise InvalidWindowError(f"{n_unassigned} pixels fall outside every search window (S={step})")

        update_centroids(est_img, tbc_img, labels, surrogate, regions, n)

        if n + 1 > MERGE_START_ITER:
            merge_regions(est_img, tbc_img, labels, surrogate, regions)
            labels = compact_labels(labels, regions)

        update_counts.append(n_updates)
        region_counts.append(regions.k)
        if verbose:
            log(f"[Iter] Completed iteration {n + 1}/{n_iter} in {time.time() - t_iter:.2f}s "
                f"| updates={n_updates} | regions={regions.k}")

    cSP, attrs = superpixel_statistics(est_img, labels, regions.k)

    if return_trace:
        trace = {
            "update_counts": np.array(update_counts, dtype=np.int64),
            "region_counts": np.array(region_counts, dtype=np.int64),
            "confidence_history": regions.confidence_history,
            "centers": regions.centers,
        }
        return labels, cSP, attrs, trace
    return labels, cSP, attrs
