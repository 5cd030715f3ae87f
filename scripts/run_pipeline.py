#!/usr/bin/env python3
"""``astromesh`` Image Pipeline Runner.

Usage:
    python scripts/run_pipeline.py scripts/user_config.py
    python scripts/run_pipeline.py scripts/user_config.py --input a.fits b.fits
    python scripts/run_pipeline.py scripts/user_config.py --no-plots --rerun

Note: User config in scripts/user_config.py, expert defaults in
src/astromesh/schemas/param.py. Equivalent to the ``astromesh-run`` command.
"""

import sys

from astromesh.cli import main


if __name__ == "__main__":
    sys.exit(main())
