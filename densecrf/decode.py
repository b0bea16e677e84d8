# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
"""MAP decoding of mean-field marginals into padded output maps."""
from __future__ import annotations

import numpy as np


def decode_map(
    current: np.ndarray,
    height: int,
    width: int,
    num_classes: int,
    inference_out: np.ndarray,
    label_out: np.ndarray,
):
    """Scatter marginals into ``inference_out`` and arg-max labels into ``label_out``.

    ``current`` is pixel-major over the active ``height x width`` region.
    ``inference_out`` is ``[M, Hp, Wp]`` and ``label_out`` is ``[Hp, Wp]`` (a
    leading singleton channel is accepted). Both are zero-filled first so the
    padding stays zero. Ties resolve to the lowest class index.
    """
    labels = label_out.reshape(label_out.shape[-2:])
    inference_out[...] = 0
    labels[...] = 0
    if height == 0 or width == 0:
        return inference_out, label_out
    marginals = current[: height * width * num_classes].reshape(height, width, num_classes)
    inference_out[:, :height, :width] = np.transpose(marginals, (2, 0, 1))
    # argmax keeps the first maximum, i.e. the lowest class on ties
    labels[:height, :width] = np.argmax(marginals, axis=2)
    return inference_out, label_out


__all__ = ["decode_map"]
