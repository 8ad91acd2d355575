"""Allow ``python -m waffle``."""

from waffle.cli import main

raise SystemExit(main())
