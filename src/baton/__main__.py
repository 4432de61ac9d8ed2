"""Baton CLI entry point."""

from baton.cli import app

if __name__ == "__main__":
    app()
