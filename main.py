#!/usr/bin/env python3
"""
dualsub — Main entry point when running from a source checkout.
The installed console script calls dualsub.cli.cli_main:main directly.
"""

import sys
from pathlib import Path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dualsub.cli.cli_main import main


if __name__ == "__main__":
    sys.exit(main())
