"""Run the driftless command line tool with `python -m driftless`."""

import sys

from driftless.tool.driftless import main

if __name__ == "__main__":
    sys.exit(main())
