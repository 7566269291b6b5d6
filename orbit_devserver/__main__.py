"""Allow ``python -m orbit_devserver``."""

import sys

from orbit_devserver.cli import main

sys.exit(main())
