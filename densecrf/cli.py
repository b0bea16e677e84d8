# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
"""Command-line entry point for refining saved score maps.

Reads ``.npy`` inputs, runs the dense CRF engine, and writes ``marginals`` and
``labels`` into a ``.npz`` archive. Use `--help` to list the options.
"""

import argparse
import logging
from pathlib import Path

import numpy as np

from .config import FILTER_BACKENDS
from .config_loader import load_config
from .layer import DenseCRF


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dense CRF mean-field refinement of class scores")
    parser.add_argument("--scores", required=True, help="Class scores .npy, shape [N, M, H, W]")
    parser.add_argument("--dims", required=True, help="Per-image (height, width) .npy, shape [N, 2]")
    parser.add_argument("--image", default=None, help="Optional mean-centered reference image .npy, shape [N, 3, H, W]")
    parser.add_argument("--config", default=None, help="YAML or python config file")
    parser.add_argument("--max-iter", type=int, default=None, help="Override the number of mean-field iterations")
    parser.add_argument("--backend", choices=FILTER_BACKENDS, default=None, help="Override the filter backend")
    parser.add_argument("--device", default=None, help="Override the torch filter device (auto, cpu, cuda, mps)")
    parser.add_argument("--output", required=True, help="Destination .npz path")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(args.config)
    if args.max_iter is not None:
        config.max_iter = args.max_iter
    if args.backend is not None:
        config.filter_backend = args.backend
    if args.device is not None:
        config.device = args.device

    inputs = [np.load(args.scores), np.load(args.dims)]
    if args.image:
        inputs.append(np.load(args.image))

    with DenseCRF(config, status_callback=print) as engine:
        engine.setup([x.shape for x in inputs])
        marginals, labels = engine.forward(inputs)

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    np.savez(output, marginals=marginals, labels=labels)
    print(f"Wrote {marginals.shape[0]} refined maps to {output}.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
