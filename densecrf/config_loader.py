# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil

"""Config loader for YAML files or python modules exposing a config."""
from __future__ import annotations

import dataclasses
import importlib.util
import sys
from pathlib import Path
from typing import Optional

import yaml

from .common import DenseCRFConfigError
from .config import DenseCRFConfig, default_config

_LIST_FIELDS = ("pos_w", "pos_xy_std", "bi_w", "bi_xy_std", "bi_rgb_std")


def load_config(path: Optional[str] = None) -> DenseCRFConfig:
    """Load a DenseCRFConfig from a YAML or python file, or return the default.

    Python files must expose ``get_config() -> DenseCRFConfig`` or a module
    level ``CONFIG``. The returned config is validated.
    """
    if not path:
        return default_config()

    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config path not found: {cfg_path}")

    if cfg_path.suffix.lower() in {".yaml", ".yml"}:
        with cfg_path.open() as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise DenseCRFConfigError(f"Config file {cfg_path} must contain a mapping")
        # Accept either a bare mapping or one nested under "dense_crf".
        data = data.get("dense_crf", data)
        return config_from_mapping(data)

    spec = importlib.util.spec_from_file_location("_densecrf_config_override", cfg_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Unable to import config from {cfg_path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)  # type: ignore[arg-type]

    getter = getattr(module, "get_config", None)
    if callable(getter):
        cfg = getter()
        if not isinstance(cfg, DenseCRFConfig):
            raise TypeError("get_config() must return densecrf.config.DenseCRFConfig")
        return cfg.validate()

    if hasattr(module, "CONFIG") and isinstance(module.CONFIG, DenseCRFConfig):
        return module.CONFIG.validate()

    raise AttributeError("Config file must define get_config() -> DenseCRFConfig or CONFIG: DenseCRFConfig")


def config_from_mapping(mapping: dict) -> DenseCRFConfig:
    cfg = _update_dataclass(default_config(), mapping)
    for name in _LIST_FIELDS:
        value = getattr(cfg, name)
        # A scalar in YAML means a single kernel.
        if isinstance(value, (int, float)):
            setattr(cfg, name, [float(value)])
        else:
            setattr(cfg, name, [float(v) for v in value])
    return cfg.validate()


def _update_dataclass(obj, mapping: dict):
    for field in dataclasses.fields(obj):
        name = field.name
        if name not in mapping:
            continue
        setattr(obj, name, mapping[name])
    return obj


__all__ = ["config_from_mapping", "load_config"]
