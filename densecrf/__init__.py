# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
"""Dense CRF refinement of per-pixel class scores.

The package houses a mean-field inference engine over a fully-connected CRF
with spatial and bilateral Gaussian kernels, split across cohesive modules.
Import public symbols from here to stay insulated from the module layout.
"""
from .common import BackwardNotSupported, DenseCRFCapacityError, DenseCRFConfigError, DenseCRFError
from .config import BilateralKernel, DenseCRFConfig, SpatialKernel, default_config
from .config_loader import load_config
from .layer import DenseCRF, refine

__all__ = [
    "BackwardNotSupported",
    "BilateralKernel",
    "DenseCRF",
    "DenseCRFCapacityError",
    "DenseCRFConfig",
    "DenseCRFConfigError",
    "DenseCRFError",
    "SpatialKernel",
    "default_config",
    "load_config",
    "refine",
]
