# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
"""Common helpers: error types, device selection, status emitters."""
from __future__ import annotations

from typing import Optional

import torch


class DenseCRFError(Exception):
    """Base class for dense CRF engine failures."""


class DenseCRFConfigError(DenseCRFError, ValueError):
    """Raised when kernel parameters or input shapes are inconsistent."""


class DenseCRFCapacityError(DenseCRFError, RuntimeError):
    """Raised when an image does not fit the preallocated buffers."""


class BackwardNotSupported(DenseCRFError, NotImplementedError):
    """The engine is inference-only; gradients are never computed."""


def _coerce_torch_device(device_like) -> Optional[torch.device]:
    if device_like is None:
        return None
    if isinstance(device_like, torch.device):
        return device_like
    if isinstance(device_like, str):
        try:
            return torch.device(device_like)
        except (TypeError, ValueError, RuntimeError):
            return None
    return None


def _filter_device(device_hint=None) -> torch.device:
    """Resolve the device used for pairwise filtering; "auto" prefers GPUs."""
    if device_hint not in (None, "auto"):
        candidate = _coerce_torch_device(device_hint)
        if candidate is None:
            raise DenseCRFConfigError(f"Unrecognized filter device: {device_hint!r}")
        return candidate
    if torch.cuda.is_available():
        return torch.device("cuda")
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def _emit_status(callback, message) -> None:
    if not callback:
        return
    try:
        callback(message)
    except Exception:
        pass


__all__ = [
    "BackwardNotSupported",
    "DenseCRFCapacityError",
    "DenseCRFConfigError",
    "DenseCRFError",
    "_coerce_torch_device",
    "_emit_status",
    "_filter_device",
]
