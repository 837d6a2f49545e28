"""``python -m intern``."""

import sys

from intern.app import main


sys.exit(main())
