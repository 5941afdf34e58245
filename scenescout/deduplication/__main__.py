"""Allow ``python -m scenescout.deduplication``."""

import sys

from .cli import main

sys.exit(main())
