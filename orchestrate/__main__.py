"""Allow ``python -m orchestrate``."""

import sys

from .cli import main

sys.exit(main())
