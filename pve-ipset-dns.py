#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/pve_ipset_dns`. This wrapper allows running
`./pve-ipset-dns.py` straight from a checkout, e.g. from a systemd timer unit.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from pve_ipset_dns.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
