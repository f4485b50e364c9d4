"""Allow ``python -m kvminstall``."""

import sys

from kvminstall import cli

if __name__ == "__main__":
    sys.exit(cli.main())
