"""Allow ``python -m phonepool``."""

from phonepool.main import cli

cli()
