"""Module entry point: ``python -m capi_builder``."""

import sys

from capi_builder import cli

if __name__ == "__main__":
    sys.exit(cli.main())
