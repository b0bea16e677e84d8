# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
"""High-dimensional Gaussian filtering over per-point feature vectors.

The exact filters compute, for every point ``i``::

    out_i = sum_{j != i} exp(-0.5 * ||f_i - f_j||^2) * values_j

by brute force over row chunks so that peak memory stays at
``chunk_rows x point_count`` kernel weights. The lattice filter approximates
the same sum in linear time and is what ``"auto"`` selects once an image has
more than ``exact_max_points`` pixels. Features are expected to be pre-scaled
by their standard deviations.
"""
from __future__ import annotations

from typing import Optional

import numpy as np
import torch

from .common import DenseCRFConfigError, _filter_device

DEFAULT_CHUNK_ROWS = 1024
DEFAULT_EXACT_MAX_POINTS = 4096


def _as_points(features, feature_dim: int, point_count: int) -> np.ndarray:
    points = np.asarray(features, dtype=np.float32)
    if points.size != feature_dim * point_count:
        raise ValueError(
            f"Expected {feature_dim * point_count} feature values for {point_count} points, got {points.size}"
        )
    return np.ascontiguousarray(points.reshape(point_count, feature_dim))


class DenseGaussianFilter:
    """Numpy brute-force filter."""

    backend = "numpy"

    def __init__(self, features, feature_dim: int, point_count: int, chunk_rows: int = DEFAULT_CHUNK_ROWS):
        self.feature_dim = int(feature_dim)
        self.point_count = int(point_count)
        self.chunk_rows = max(int(chunk_rows), 1)
        self._points = _as_points(features, self.feature_dim, self.point_count)
        self._norms = np.sum(self._points * self._points, axis=1)

    def _kernel_rows(self, start: int, end: int) -> np.ndarray:
        chunk = self._points[start:end]
        dist2 = self._norms[start:end, None] + self._norms[None, :] - 2.0 * (chunk @ self._points.T)
        np.maximum(dist2, 0.0, out=dist2)
        weights = np.exp(-0.5 * dist2)
        rows = np.arange(end - start)
        weights[rows, rows + start] = 0.0
        return weights

    def compute(self, out: np.ndarray, values: np.ndarray, value_size: int) -> np.ndarray:
        if self.point_count == 0:
            return out
        src = np.asarray(values, dtype=np.float32).reshape(self.point_count, value_size)
        dst = out.reshape(self.point_count, value_size)
        for start in range(0, self.point_count, self.chunk_rows):
            end = min(start + self.chunk_rows, self.point_count)
            dst[start:end] = self._kernel_rows(start, end) @ src
        return out


class TorchGaussianFilter:
    """Torch brute-force filter, running on CPU, CUDA or MPS."""

    backend = "torch"

    def __init__(
        self,
        features,
        feature_dim: int,
        point_count: int,
        device: Optional[torch.device] = None,
        chunk_rows: int = DEFAULT_CHUNK_ROWS,
    ):
        self.feature_dim = int(feature_dim)
        self.point_count = int(point_count)
        self.chunk_rows = max(int(chunk_rows), 1)
        self.device = device or torch.device("cpu")
        points = _as_points(features, self.feature_dim, self.point_count)
        self._points = torch.as_tensor(points, device=self.device, dtype=torch.float32)
        self._norms = self._points.pow(2).sum(dim=1)

    def _kernel_rows(self, start: int, end: int) -> torch.Tensor:
        chunk = self._points[start:end]
        dist2 = self._norms[start:end].unsqueeze(1) + self._norms.unsqueeze(0)
        dist2 = dist2 - 2.0 * torch.matmul(chunk, self._points.transpose(0, 1))
        dist2 = dist2.clamp_min_(0.0)
        weights = torch.exp(-0.5 * dist2)
        rows = torch.arange(end - start, device=self.device)
        weights[rows, rows + start] = 0.0
        return weights

    def compute(self, out: np.ndarray, values: np.ndarray, value_size: int) -> np.ndarray:
        if self.point_count == 0:
            return out
        src = torch.as_tensor(
            np.asarray(values, dtype=np.float32).reshape(self.point_count, value_size),
            device=self.device,
        )
        dst = out.reshape(self.point_count, value_size)
        with torch.no_grad():
            for start in range(0, self.point_count, self.chunk_rows):
                end = min(start + self.chunk_rows, self.point_count)
                block = torch.matmul(self._kernel_rows(start, end), src)
                dst[start:end] = block.cpu().numpy()
        return out


def _canonical_simplex(dim: int) -> np.ndarray:
    """Vertex offsets of the canonical simplex, indexed ``[remainder, rank]``."""
    remainder = np.arange(dim + 1)[:, None]
    rank = np.arange(dim + 1)[None, :]
    return np.where(rank <= dim - remainder, remainder, remainder - (dim + 1)).astype(np.int64)


def _embed(points: np.ndarray):
    """Place points on the permutohedral lattice.

    Returns ``(elevated, rem0, rank, barycentric)``: the points lifted onto the
    ``d + 1`` dimensional hyperplane, the nearest remainder-zero lattice point,
    the rank of each coordinate's residual, and the barycentric weights of the
    enclosing simplex (``d + 2`` columns, only the first ``d + 1`` are used).
    """
    n, dim = points.shape
    scale = np.sqrt(2.0 / 3.0) * (dim + 1) / np.sqrt((np.arange(dim) + 1.0) * (np.arange(dim) + 2.0))
    cf = points.astype(np.float64) * scale[None, :]
    suffix = np.zeros((n, dim + 1))
    if dim:
        suffix[:, :dim] = np.cumsum(cf[:, ::-1], axis=1)[:, ::-1]
    elevated = np.empty((n, dim + 1))
    elevated[:, 0] = suffix[:, 0]
    elevated[:, 1:] = suffix[:, 1:] - np.arange(1, dim + 1)[None, :] * cf

    up = np.ceil(elevated / (dim + 1)) * (dim + 1)
    down = np.floor(elevated / (dim + 1)) * (dim + 1)
    rem0 = np.where(up - elevated < elevated - down, up, down).astype(np.int64)
    coord_sum = rem0.sum(axis=1) // (dim + 1)

    residual = elevated - rem0
    other = residual[:, None, :]
    own = residual[:, :, None]
    later = np.triu(np.ones((dim + 1, dim + 1), dtype=bool), k=1)
    earlier = later.T
    rank = ((other > own) & later).sum(axis=2) + ((other >= own) & earlier).sum(axis=2)
    rank = rank.astype(np.int64) + coord_sum[:, None]
    low = rank < 0
    high = rank > dim
    rank[low] += dim + 1
    rem0[low] += dim + 1
    rank[high] -= dim + 1
    rem0[high] -= dim + 1

    barycentric = np.zeros((n, dim + 2))
    delta = (elevated - rem0) / (dim + 1)
    rows = np.repeat(np.arange(n), dim + 1)
    np.add.at(barycentric, (rows, (dim - rank).ravel()), delta.ravel())
    np.add.at(barycentric, (rows, (dim - rank + 1).ravel()), -delta.ravel())
    barycentric[:, 0] += 1.0 + barycentric[:, dim + 1]
    return elevated, rem0, rank, barycentric


def _lookup_rows(table: np.ndarray, queries: np.ndarray) -> np.ndarray:
    """Row index of each query in ``table``; missing rows map to ``len(table)``."""
    size = table.shape[0]
    merged = np.concatenate([table, queries], axis=0)
    _, inverse = np.unique(merged, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    lut = np.full(int(inverse.max()) + 1, size, dtype=np.int64)
    lut[inverse[:size]] = np.arange(size)
    return lut[inverse[size:]]


class PermutohedralLattice:
    """Approximate Gaussian filter on the permutohedral lattice.

    Splat, blur and slice after Adams, Baek and Davis (2010), with the lattice
    scale used by Krähenbühl and Koltun's dense CRF. Cost is linear in the
    number of points. The result includes an approximate self-contribution,
    which per-point mass normalization absorbs.
    """

    backend = "lattice"

    def __init__(self, features, feature_dim: int, point_count: int):
        self.feature_dim = int(feature_dim)
        self.point_count = int(point_count)
        dim = self.feature_dim
        points = _as_points(features, dim, self.point_count)
        self.alpha = 1.0 / (1.0 + 2.0 ** (-dim))
        if self.point_count == 0:
            self.lattice_size = 0
            self.offsets = np.zeros((0, dim + 1), dtype=np.int64)
            self.barycentric = np.zeros((0, dim + 2))
            self._neighbors = []
            return

        _, rem0, rank, self.barycentric = _embed(points)
        canonical = _canonical_simplex(dim)
        # keys[i, r] is the vertex of remainder r in point i's simplex
        keys = rem0[:, None, :dim] + np.transpose(canonical[:, rank[:, :dim]], (1, 0, 2))
        lattice_keys, inverse = np.unique(keys.reshape(-1, dim), axis=0, return_inverse=True)
        self.offsets = inverse.reshape(self.point_count, dim + 1)
        self.lattice_size = lattice_keys.shape[0]

        shifts = []
        for axis in range(dim + 1):
            forward = lattice_keys + 1
            backward = lattice_keys - 1
            if axis < dim:
                forward[:, axis] -= dim + 1
                backward[:, axis] += dim + 1
            shifts.extend((forward, backward))
        found = _lookup_rows(lattice_keys, np.concatenate(shifts, axis=0))
        found = found.reshape(2 * (dim + 1), self.lattice_size)
        self._neighbors = [(found[2 * axis], found[2 * axis + 1]) for axis in range(dim + 1)]

    def compute(self, out: np.ndarray, values: np.ndarray, value_size: int) -> np.ndarray:
        if self.point_count == 0:
            return out
        size = self.lattice_size
        weights = self.barycentric[:, : self.feature_dim + 1]
        src = np.asarray(values, dtype=np.float64).reshape(self.point_count, value_size)
        # one trailing zero row stands in for missing neighbours
        grid = np.zeros((size + 1, value_size))
        flat_offsets = self.offsets.ravel()
        for channel in range(value_size):
            grid[:size, channel] = np.bincount(
                flat_offsets, weights=(weights * src[:, channel : channel + 1]).ravel(), minlength=size
            )
        for forward, backward in self._neighbors:
            blurred = np.zeros_like(grid)
            blurred[:size] = grid[:size] + 0.5 * (grid[forward] + grid[backward])
            grid = blurred
        result = np.zeros((self.point_count, value_size))
        for remainder in range(self.feature_dim + 1):
            result += weights[:, remainder : remainder + 1] * grid[self.offsets[:, remainder]]
        out.reshape(self.point_count, value_size)[...] = self.alpha * result
        return out


def resolve_backend(backend: str, point_count: int, exact_max_points: int = DEFAULT_EXACT_MAX_POINTS) -> str:
    """Map ``"auto"`` to the exact torch filter for small inputs and the lattice otherwise."""
    if backend != "auto":
        return backend
    return "torch" if point_count <= exact_max_points else "lattice"


def build_filter(
    features,
    feature_dim: int,
    point_count: int,
    backend: str = "auto",
    device=None,
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
    exact_max_points: int = DEFAULT_EXACT_MAX_POINTS,
):
    backend = resolve_backend(backend, point_count, exact_max_points)
    if backend == "lattice":
        return PermutohedralLattice(features, feature_dim, point_count)
    if backend == "numpy":
        return DenseGaussianFilter(features, feature_dim, point_count, chunk_rows=chunk_rows)
    if backend == "torch":
        if not isinstance(device, torch.device):
            device = _filter_device(device)
        return TorchGaussianFilter(features, feature_dim, point_count, device=device, chunk_rows=chunk_rows)
    raise DenseCRFConfigError(f"Unknown filter backend: {backend!r}")


__all__ = [
    "DEFAULT_CHUNK_ROWS",
    "DEFAULT_EXACT_MAX_POINTS",
    "DenseGaussianFilter",
    "PermutohedralLattice",
    "TorchGaussianFilter",
    "build_filter",
    "resolve_backend",
]
