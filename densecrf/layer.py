# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
"""Dense CRF inference engine operating on padded batches.

Inputs follow the layer convention:
- ``inputs[0]``: class scores ``[N, M, Hp, Wp]`` (e.g. upsampled logits)
- ``inputs[1]``: per-image ``(real_height, real_width)`` records ``[N, 2]``
- ``inputs[2]``: optional mean-centered reference image ``[N, 3, Hp, Wp]``

Outputs are the refined marginals ``[N, M, Hp, Wp]`` and the MAP labels
``[N, 1, Hp, Wp]``; everything outside each image's active region is zero.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from .buffers import BufferManager
from .common import (
    BackwardNotSupported,
    DenseCRFCapacityError,
    DenseCRFConfigError,
    _emit_status,
    _filter_device,
)
from .config import DenseCRFConfig, default_config
from .decode import decode_map
from .inference import MeanFieldSolver
from .pairwise import PairwiseKernelBuilder
from .unary import setup_unary_energy

logger = logging.getLogger(__name__)

LABEL_DTYPE = np.int64
MARGINAL_DTYPE = np.float32


class DenseCRF:
    """Fully-connected CRF refinement with grow-only buffer reuse.

    Call ``setup`` once with the input shapes, then ``forward`` per batch.
    The engine is not reentrant; images are processed strictly one after
    another and each image's pairwise potentials are released before the
    next image starts.
    """

    def __init__(self, config: Optional[DenseCRFConfig] = None, status_callback: Optional[Callable[[str], None]] = None):
        self.config = (config or default_config()).validate()
        self.status_callback = status_callback
        self.buffers = BufferManager()
        self.has_image = False
        self._is_setup = False
        self._device = None
        self.builder: Optional[PairwiseKernelBuilder] = None
        self.solver = MeanFieldSolver(self.buffers, max_iter=self.config.max_iter, lane_width=self.config.lane_width)
        self.num = 0
        self.num_classes = 0
        self.pad_height = 0
        self.pad_width = 0

    @property
    def map_capacity(self) -> int:
        if self.num_classes <= 0:
            return 0
        return self.buffers.capacity // self.num_classes

    def setup(self, input_shapes: Sequence[Tuple[int, ...]]) -> None:
        cfg = self.config.validate()
        if len(input_shapes) < 2:
            raise DenseCRFConfigError(
                "At least two inputs are required (class scores and image dimensions)."
            )
        self.has_image = len(input_shapes) > 2 and input_shapes[2] is not None
        if cfg.bi_w and not self.has_image:
            raise DenseCRFConfigError("Bilateral kernels are configured but no reference image input was given.")
        if self.has_image:
            image_shape = tuple(input_shapes[2])
            if len(image_shape) != 4 or image_shape[1] != 3:
                raise DenseCRFConfigError(
                    f"Reference image must have exactly 3 channels, got shape {image_shape}."
                )
            if not cfg.bi_w:
                logger.warning("Reference image supplied without bilateral kernels; it will be ignored.")
        if cfg.filter_backend in ("auto", "torch"):
            self._device = _filter_device(cfg.device)
        self.builder = PairwiseKernelBuilder(
            spatial=cfg.spatial_kernels,
            bilateral=cfg.bilateral_kernels,
            backend=cfg.filter_backend,
            device=self._device,
            chunk_rows=cfg.chunk_rows,
            exact_max_points=cfg.exact_max_points,
        )
        self._is_setup = True
        logger.debug(
            "Dense CRF setup: %d spatial, %d bilateral kernels, max_iter=%d, backend=%s.",
            len(cfg.pos_w),
            len(cfg.bi_w) if self.has_image else 0,
            cfg.max_iter,
            cfg.filter_backend,
        )

    def reshape(self, inputs: Sequence[np.ndarray]):
        """Check batch consistency, grow buffers, and return the output shapes."""
        if len(inputs) < (3 if self.has_image else 2):
            raise DenseCRFConfigError(f"Expected {3 if self.has_image else 2} inputs, got {len(inputs)}.")
        scores, dims = np.asarray(inputs[0]), inputs[1]
        if scores.ndim != 4:
            raise DenseCRFConfigError(f"Class scores must be [N, M, H, W], got shape {scores.shape}.")
        self.num, self.num_classes, self.pad_height, self.pad_width = (int(v) for v in scores.shape)
        if self.num_classes < 1:
            raise DenseCRFConfigError("Class scores must hold at least one class.")
        dims_arr = np.asarray(dims)
        if dims_arr.ndim != 2 or dims_arr.shape[1] < 2:
            raise DenseCRFConfigError(
                f"Image dimensions must be [N, 2] (height, width) records, got shape {dims_arr.shape}."
            )
        if dims_arr.shape[0] != self.num:
            raise DenseCRFConfigError("The class scores and image dimensions should have the same number.")
        if self.has_image:
            image = np.asarray(inputs[2])
            if image.shape[0] != self.num:
                raise DenseCRFConfigError("The class scores and reference image should have the same number.")
            if tuple(image.shape[2:]) != (self.pad_height, self.pad_width):
                raise DenseCRFConfigError(
                    "Class scores after upsampling should have the same height and width as the image."
                )
        # sized by the padded worst case, never by a single image's active region
        if self.buffers.ensure_capacity(self.pad_height * self.pad_width * self.num_classes):
            logger.debug("Dense CRF buffers now hold %d elements.", self.buffers.capacity)
        marginal_shape = (self.num, self.num_classes, self.pad_height, self.pad_width)
        label_shape = (self.num, 1, self.pad_height, self.pad_width)
        return marginal_shape, label_shape

    def _active_dims(self, record) -> Tuple[int, int]:
        real_height, real_width = int(record[0]), int(record[1])
        if real_height < 0 or real_width < 0:
            raise DenseCRFConfigError(f"Image dimensions must be non-negative, got {(real_height, real_width)}.")
        if self.pad_height <= real_height and self.pad_width <= real_width:
            # image may be cropped
            return self.pad_height, self.pad_width
        return real_height, real_width

    def forward(self, inputs: Sequence[np.ndarray], outputs: Optional[Sequence[np.ndarray]] = None):
        if not self._is_setup:
            self.setup([np.shape(x) if x is not None else None for x in inputs])
        marginal_shape, label_shape = self.reshape(inputs)
        if outputs is None:
            marginals = np.zeros(marginal_shape, dtype=MARGINAL_DTYPE)
            labels = np.zeros(label_shape, dtype=LABEL_DTYPE)
        else:
            marginals, labels = outputs
            if tuple(marginals.shape) != marginal_shape or tuple(labels.shape) != label_shape:
                raise DenseCRFConfigError(
                    f"Outputs must have shapes {marginal_shape} and {label_shape}, "
                    f"got {tuple(marginals.shape)} and {tuple(labels.shape)}."
                )

        scores = np.asarray(inputs[0])
        dims = np.asarray(inputs[1])
        image = np.asarray(inputs[2]) if self.has_image else None
        start_time = time.perf_counter()
        for n in range(self.num):
            height, width = self._active_dims(dims[n])
            point_count = height * width
            if point_count * self.num_classes > self.buffers.capacity:
                raise DenseCRFCapacityError(
                    f"The pre-allocated memory is not enough: image {n} needs "
                    f"{point_count * self.num_classes} elements, capacity is {self.buffers.capacity}."
                )
            if height > self.pad_height or width > self.pad_width:
                raise DenseCRFConfigError(
                    f"Image {n} dimensions {(height, width)} exceed the padded extent "
                    f"{(self.pad_height, self.pad_width)}."
                )
            state = self.buffers.views(point_count * self.num_classes)
            setup_unary_energy(scores[n], height, width, state.unary)
            with self.builder.scoped(height, width, image[n] if image is not None else None) as potentials:
                current = self.solver.run(point_count, self.num_classes, potentials)
                decode_map(current, height, width, self.num_classes, marginals[n], labels[n])
            logger.debug("Refined image %d/%d (%dx%d active pixels).", n + 1, self.num, height, width)
            _emit_status(self.status_callback, f"Dense CRF image {n + 1}/{self.num} ({height}x{width}).")
        elapsed = time.perf_counter() - start_time
        logger.debug("Dense CRF batch of %d finished in %.1f ms.", self.num, elapsed * 1000.0)
        return marginals, labels

    def backward(self, *args, **kwargs):
        raise BackwardNotSupported("Dense CRF inference does not support gradient computation.")

    def close(self) -> None:
        if self.builder is not None:
            self.builder.clear()
        self.buffers.release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def refine(scores, dims, image=None, config: Optional[DenseCRFConfig] = None, status_callback=None):
    """One-shot helper: build an engine, refine a batch, release the buffers."""
    inputs = [np.asarray(scores), np.asarray(dims)]
    if image is not None:
        inputs.append(np.asarray(image))
    with DenseCRF(config, status_callback=status_callback) as engine:
        engine.setup([x.shape for x in inputs])
        return engine.forward(inputs)


__all__ = ["DenseCRF", "LABEL_DTYPE", "MARGINAL_DTYPE", "refine"]
