"""dcaspine CLI (Typer + Rich)."""

from dcaspine.cli.app import app

__all__ = ["app"]
