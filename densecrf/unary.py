# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
"""Unary energy construction and per-pixel softmax normalization."""
from __future__ import annotations

import numpy as np

Array = np.ndarray


def setup_unary_energy(scores: Array, height: int, width: int, out: Array) -> Array:
    """Write ``-log softmax(scores)`` for the active region into ``out``.

    ``scores`` is one image in channel-major padded layout ``[M, Hp, Wp]``.
    The softmax is taken over every padded position with the per-pixel max
    subtracted; only the ``height x width`` active rectangle is written, in
    pixel-major order (the M class values of a pixel are contiguous).
    """
    num_classes = scores.shape[0]
    count = height * width * num_classes
    if count == 0:
        return out[:0]
    scores = np.asarray(scores, dtype=np.float32)
    shifted = scores - np.max(scores, axis=0, keepdims=True)
    log_norm = np.log(np.sum(np.exp(shifted), axis=0, keepdims=True))
    # -log(exp(s - max) / sum) == log(sum) - (s - max); finite for finite scores
    energy = log_norm[:, :height, :width] - shifted[:, :height, :width]
    target = out[:count].reshape(height, width, num_classes)
    target[...] = np.transpose(energy, (1, 2, 0))
    return out[:count]


def exp_and_normalize(out: Array, values: Array, scale: float, num_classes: int) -> Array:
    """Per-pixel ``softmax(scale * values)`` over pixel-major rows of M values."""
    if values.size == 0:
        return out
    block = values.reshape(-1, num_classes) * np.float32(scale)
    block -= np.max(block, axis=1, keepdims=True)
    np.exp(block, out=block)
    block /= np.sum(block, axis=1, keepdims=True)
    out.reshape(-1, num_classes)[...] = block
    return out


__all__ = ["exp_and_normalize", "setup_unary_energy"]
