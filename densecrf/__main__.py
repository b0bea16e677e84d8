# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil
from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
