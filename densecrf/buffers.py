# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
"""Grow-only storage for the unary energy and the mean-field belief state."""
from __future__ import annotations

import logging
from typing import NamedTuple, Optional

import numpy as np

from .common import DenseCRFCapacityError

logger = logging.getLogger(__name__)

BUFFER_DTYPE = np.float32
BUFFER_NAMES = ("unary", "current", "next", "scratch")


class BeliefState(NamedTuple):
    """Views over the first ``count`` elements of each buffer."""

    unary: np.ndarray
    current: np.ndarray
    next: np.ndarray
    scratch: np.ndarray


class BufferManager:
    """Owns four flat float32 buffers sized to the largest footprint seen.

    ``ensure_capacity`` only reallocates when a strictly larger capacity is
    requested; nothing ever shrinks the buffers. ``allocations`` counts how
    many times storage was (re)allocated.
    """

    def __init__(self):
        self._buffers: Optional[dict] = None
        self.capacity = 0
        self.allocations = 0

    @property
    def allocated(self) -> bool:
        return self._buffers is not None

    def ensure_capacity(self, count: int) -> bool:
        count = int(count)
        if count < 0:
            raise ValueError(f"capacity must be non-negative, got {count}")
        if self._buffers is not None and self.capacity >= count:
            return False
        previous = self.capacity
        self.release()
        self._buffers = {name: np.zeros(count, dtype=BUFFER_DTYPE) for name in BUFFER_NAMES}
        self.capacity = count
        self.allocations += 1
        logger.debug("Grew dense CRF buffers from %d to %d elements.", previous, count)
        return True

    def release(self) -> None:
        self._buffers = None
        self.capacity = 0

    def views(self, count: int) -> BeliefState:
        count = int(count)
        if self._buffers is None or count > self.capacity:
            raise DenseCRFCapacityError(
                f"The pre-allocated memory is not enough ({count} > {self.capacity} elements)."
            )
        return BeliefState(*(self._buffers[name][:count] for name in BUFFER_NAMES))

    def full(self, name: str) -> np.ndarray:
        if self._buffers is None:
            raise DenseCRFCapacityError("Buffers have not been allocated.")
        return self._buffers[name]


__all__ = ["BUFFER_DTYPE", "BUFFER_NAMES", "BeliefState", "BufferManager"]
