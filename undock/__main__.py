"""Entry point for ``python -m undock``."""

from undock.cli import app

app(prog_name="undock")
