"""Allow running as ``python -m uptimemon``."""

from . import main

main()
