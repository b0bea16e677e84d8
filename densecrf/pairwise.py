# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
"""Pairwise Potts potentials and the per-image kernel builder."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

import numpy as np

from .config import BilateralKernel, SpatialKernel
from .filtering import DEFAULT_CHUNK_ROWS, DEFAULT_EXACT_MAX_POINTS, build_filter

_NORM_EPS = 1e-20


def spatial_features(height: int, width: int, xy_std: float) -> np.ndarray:
    """Row-major ``(x / xy_std, y / xy_std)`` per active pixel, shape ``[H*W, 2]``."""
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
    features = np.stack([xs.reshape(-1), ys.reshape(-1)], axis=1)
    return features / np.float32(xy_std)


def bilateral_features(image: np.ndarray, height: int, width: int, xy_std: float, rgb_std: float) -> np.ndarray:
    """Row-major ``(x, y, c0, c1, c2)`` features, shape ``[H*W, 5]``.

    ``image`` is the reference image in padded channel-major layout
    ``[3, Hp, Wp]``; only its active rectangle is sampled. It is assumed to be
    mean-centered already.
    """
    xy = spatial_features(height, width, xy_std)
    colors = np.asarray(image[:3, :height, :width], dtype=np.float32).reshape(3, -1).T
    return np.concatenate([xy, colors / np.float32(rgb_std)], axis=1)


class PairwisePotential:
    """Potts-compatible Gaussian potential over a fixed set of points.

    ``apply`` adds ``weight * norm_i * sum_j k(f_i, f_j) Q_j`` into the
    accumulator, where ``norm_i`` normalizes each point by its total kernel
    mass.
    """

    kind = "generic"
    feature_dim = 0

    def __init__(
        self,
        features,
        point_count: int,
        weight: float,
        backend: str = "auto",
        device=None,
        chunk_rows: int = DEFAULT_CHUNK_ROWS,
        exact_max_points: int = DEFAULT_EXACT_MAX_POINTS,
    ):
        self.point_count = int(point_count)
        self.weight = float(weight)
        self._filter = build_filter(
            features,
            self.feature_dim,
            self.point_count,
            backend=backend,
            device=device,
            chunk_rows=chunk_rows,
            exact_max_points=exact_max_points,
        )
        mass = np.zeros(self.point_count, dtype=np.float32)
        self._filter.compute(mass, np.ones(self.point_count, dtype=np.float32), 1)
        self._norm = (1.0 / (mass.astype(np.float64) + _NORM_EPS)).astype(np.float32)

    def apply(self, accumulator: np.ndarray, current: np.ndarray, scratch: np.ndarray, num_classes: int) -> None:
        if self.point_count == 0:
            return
        count = self.point_count * num_classes
        self._filter.compute(scratch[:count], current[:count], num_classes)
        messages = scratch[:count].reshape(self.point_count, num_classes)
        messages *= self._norm[:, None]
        accumulator[:count] += np.float32(self.weight) * scratch[:count]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(points={self.point_count}, weight={self.weight})"


class SpatialPotential(PairwisePotential):
    kind = "spatial"
    feature_dim = 2


class BilateralPotential(PairwisePotential):
    kind = "bilateral"
    feature_dim = 5


class PairwiseKernelBuilder:
    """Builds one image's ordered potential list and releases it afterwards.

    Spatial kernels come first, then bilateral kernels, each in configuration
    order. At most one image's potentials are alive at a time.
    """

    def __init__(
        self,
        spatial: Sequence[SpatialKernel] = (),
        bilateral: Sequence[BilateralKernel] = (),
        backend: str = "auto",
        device=None,
        chunk_rows: int = DEFAULT_CHUNK_ROWS,
        exact_max_points: int = DEFAULT_EXACT_MAX_POINTS,
    ):
        self.spatial = list(spatial)
        self.bilateral = list(bilateral)
        self.backend = backend
        self.device = device
        self.chunk_rows = chunk_rows
        self.exact_max_points = exact_max_points
        self.potentials: List[PairwisePotential] = []

    def _make(self, cls, features, point_count, weight):
        return cls(
            features,
            point_count,
            weight,
            backend=self.backend,
            device=self.device,
            chunk_rows=self.chunk_rows,
            exact_max_points=self.exact_max_points,
        )

    def build(self, height: int, width: int, image: Optional[np.ndarray] = None) -> List[PairwisePotential]:
        self.clear()
        point_count = height * width
        for kernel in self.spatial:
            features = spatial_features(height, width, kernel.xy_std)
            self.potentials.append(self._make(SpatialPotential, features, point_count, kernel.weight))
        if image is not None:
            for kernel in self.bilateral:
                features = bilateral_features(image, height, width, kernel.xy_std, kernel.rgb_std)
                self.potentials.append(self._make(BilateralPotential, features, point_count, kernel.weight))
        return self.potentials

    def clear(self) -> None:
        self.potentials.clear()

    @contextmanager
    def scoped(self, height: int, width: int, image: Optional[np.ndarray] = None) -> Iterator[List[PairwisePotential]]:
        try:
            yield self.build(height, width, image)
        finally:
            self.clear()


__all__ = [
    "BilateralPotential",
    "PairwiseKernelBuilder",
    "PairwisePotential",
    "SpatialPotential",
    "bilateral_features",
    "spatial_features",
]
