"""Allow ``python -m desklogin``."""

import sys

from .cli import main


sys.exit(main())
