"""Allow ``python -m phoenix_toolkit``."""

from __future__ import annotations

import sys

from .cli import main

sys.exit(main())
