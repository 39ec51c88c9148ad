"""Allow ``python -m taskforge``."""

from .app import main

raise SystemExit(main())
