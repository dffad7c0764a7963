"""lc-core harness entry point.

Supports: python -m lc_core_harness
"""

import sys

from .app import main

if __name__ == "__main__":
    sys.exit(main())
