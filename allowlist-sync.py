#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/allowlist_sync`. This wrapper allows
running `./allowlist-sync.py` from a fresh checkout without installing it.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from allowlist_sync.cli import run  # noqa: E402


if __name__ == "__main__":
    run()
