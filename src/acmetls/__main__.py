"""Allow ``python -m acmetls``."""

from acmetls.cli.main import main

main()
