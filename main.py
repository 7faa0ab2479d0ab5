#!/usr/bin/env python
"""
topopt-state - Main Entry Point
===============================

Usage:
------
    python main.py validate --config config/cantilever.yaml
    python main.py inspect --dir restart

For detailed usage, run:
    python main.py --help
"""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from topopt_state.cli import main

if __name__ == "__main__":
    sys.exit(main())
