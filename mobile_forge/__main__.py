"""Allow ``python -m mobile_forge``."""

from .pipeline import main

main()
