"""Shared test fixtures."""

from __future__ import annotations

import numpy as np
import pytest

from forest_superpixels import RegionArena


N_TREES = 4


@pytest.fixture
def uniform_image():
    """Constant confidence 0.5 and identical leaf codes everywhere."""
    est = np.full((60, 80), 0.5)
    tbc = np.ones((60, 80, N_TREES), dtype=np.int32)
    return est, tbc


@pytest.fixture
def split_image():
    """Left half confident foreground, right half confident background, distinct leaves."""
    est = np.full((40, 40), 0.1)
    est[:, :20] = 0.9
    tbc = np.empty((40, 40, N_TREES), dtype=np.int32)
    tbc[:, :20] = np.arange(1, N_TREES + 1)
    tbc[:, 20:] = np.arange(N_TREES + 1, 2 * N_TREES + 1)
    return est, tbc


def make_regions(labels, tbc, weights=None):
    """Region arena with centres at the (rounded) mean pixel of each label."""
    k = int(labels.max())
    centers = []
    for kk in range(1, k + 1):
        coords = np.argwhere(labels == kk)
        centers.append(np.floor(coords.mean(axis=0) + 0.5).astype(int))
    centers = np.array(centers)
    regions = RegionArena(centers, tbc[tuple(centers.T)], n_iter=1)
    if weights is None:
        weights = np.bincount(labels.ravel(), minlength=k + 1)[1:]
    regions.weights = np.asarray(weights, dtype=float)
    return regions
