# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
"""Fixed-iteration mean-field inference."""
from __future__ import annotations

from typing import Callable, Optional, Sequence

import numpy as np

from .buffers import BufferManager
from .pairwise import PairwisePotential
from .unary import exp_and_normalize


def negate_unary(out: np.ndarray, unary: np.ndarray, count: int, lane_width: int = 1) -> np.ndarray:
    """``out[:count] = -unary[:count]``, optionally over whole lanes.

    With ``lane_width > 1`` the span is rounded up to a multiple of the lane
    width (clipped to the buffer length), so trailing elements past ``count``
    are negated as well. They are never read, so results match the
    element-wise path.
    """
    span = count
    if lane_width > 1 and count > 0:
        span = min(((count - 1) // lane_width + 1) * lane_width, unary.shape[0], out.shape[0])
    np.negative(unary[:span], out=out[:span])
    return out


class MeanFieldSolver:
    """Runs ``max_iter`` mean-field updates over the shared belief buffers.

    There is no convergence test: exactly ``max_iter`` steps run every call.
    After ``run`` the ``current`` buffer holds per-pixel marginals.
    """

    def __init__(self, buffers: BufferManager, max_iter: int = 10, lane_width: int = 1):
        self.buffers = buffers
        self.max_iter = int(max_iter)
        self.lane_width = int(lane_width)

    def start(self, point_count: int, num_classes: int) -> np.ndarray:
        state = self.buffers.views(point_count * num_classes)
        return exp_and_normalize(state.current, state.unary, -1.0, num_classes)

    def step(self, point_count: int, num_classes: int, potentials: Sequence[PairwisePotential]) -> np.ndarray:
        count = point_count * num_classes
        negate_unary(self.buffers.full("next"), self.buffers.full("unary"), count, self.lane_width)
        state = self.buffers.views(count)
        for potential in potentials:
            potential.apply(state.next, state.current, state.scratch, num_classes)
        return exp_and_normalize(state.current, state.next, 1.0, num_classes)

    def run(
        self,
        point_count: int,
        num_classes: int,
        potentials: Sequence[PairwisePotential],
        iteration_callback: Optional[Callable[[int, np.ndarray], None]] = None,
    ) -> np.ndarray:
        current = self.start(point_count, num_classes)
        if iteration_callback is not None:
            iteration_callback(0, current)
        for idx in range(self.max_iter):
            current = self.step(point_count, num_classes, potentials)
            if iteration_callback is not None:
                iteration_callback(idx + 1, current)
        return current


__all__ = ["MeanFieldSolver", "negate_unary"]
