"""Allow ``python -m regexlab``."""

import sys

from regexlab.main import main

sys.exit(main())
