"""Allow ``python -m dbupgrade``."""

import sys

from dbupgrade.cli import main

sys.exit(main())
