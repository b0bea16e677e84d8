# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil

"""Configuration dataclasses for the dense CRF engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, NamedTuple

from .common import DenseCRFConfigError

FILTER_BACKENDS = ("auto", "lattice", "numpy", "torch")


class SpatialKernel(NamedTuple):
    weight: float
    xy_std: float


class BilateralKernel(NamedTuple):
    weight: float
    xy_std: float
    rgb_std: float


@dataclass
class DenseCRFConfig:
    max_iter: int = 10
    pos_w: List[float] = field(default_factory=list)
    pos_xy_std: List[float] = field(default_factory=list)
    bi_w: List[float] = field(default_factory=list)
    bi_xy_std: List[float] = field(default_factory=list)
    bi_rgb_std: List[float] = field(default_factory=list)
    lane_width: int = 1  # 1 = element-wise negation, >1 = whole-lane negation
    filter_backend: str = "auto"  # auto | lattice | numpy | torch
    device: str = "auto"  # auto | cpu | cuda | mps
    chunk_rows: int = 1024
    exact_max_points: int = 4096  # "auto" switches to the lattice above this many pixels

    @property
    def spatial_kernels(self) -> List[SpatialKernel]:
        return [SpatialKernel(float(w), float(s)) for w, s in zip(self.pos_w, self.pos_xy_std)]

    @property
    def bilateral_kernels(self) -> List[BilateralKernel]:
        return [
            BilateralKernel(float(w), float(s), float(c))
            for w, s, c in zip(self.bi_w, self.bi_xy_std, self.bi_rgb_std)
        ]

    def validate(self) -> "DenseCRFConfig":
        if len(self.pos_w) != len(self.pos_xy_std):
            raise DenseCRFConfigError(
                f"pos_w and pos_xy_std should have the same size ({len(self.pos_w)} != {len(self.pos_xy_std)})."
            )
        if len(self.bi_w) != len(self.bi_xy_std):
            raise DenseCRFConfigError(
                f"bi_w and bi_xy_std should have the same size ({len(self.bi_w)} != {len(self.bi_xy_std)})."
            )
        if len(self.bi_w) != len(self.bi_rgb_std):
            raise DenseCRFConfigError(
                f"bi_w and bi_rgb_std should have the same size ({len(self.bi_w)} != {len(self.bi_rgb_std)})."
            )
        if isinstance(self.max_iter, bool) or int(self.max_iter) != self.max_iter or self.max_iter < 0:
            raise DenseCRFConfigError(f"max_iter must be a non-negative integer, got {self.max_iter!r}")
        for name in ("pos_xy_std", "bi_xy_std", "bi_rgb_std"):
            for value in getattr(self, name):
                if not value > 0:
                    raise DenseCRFConfigError(f"{name} entries must be positive, got {value!r}")
        if int(self.lane_width) < 1:
            raise DenseCRFConfigError(f"lane_width must be >= 1, got {self.lane_width!r}")
        if self.filter_backend not in FILTER_BACKENDS:
            raise DenseCRFConfigError(
                f"filter_backend must be one of {FILTER_BACKENDS}, got {self.filter_backend!r}"
            )
        if int(self.chunk_rows) < 1:
            raise DenseCRFConfigError(f"chunk_rows must be >= 1, got {self.chunk_rows!r}")
        if int(self.exact_max_points) < 0:
            raise DenseCRFConfigError(f"exact_max_points must be >= 0, got {self.exact_max_points!r}")
        return self


def default_config() -> DenseCRFConfig:
    """Return the default config instance."""
    return DenseCRFConfig()


__all__ = ["BilateralKernel", "DenseCRFConfig", "FILTER_BACKENDS", "SpatialKernel", "default_config"]
