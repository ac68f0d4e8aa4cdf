"""Allow ``python -m safepoint``."""

import sys

from .app.cli import main

sys.exit(main())
