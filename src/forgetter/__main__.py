"""Allow ``python -m forgetter``."""

from forgetter.cli import main

raise SystemExit(main())
