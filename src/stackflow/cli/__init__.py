"""Command-line interface."""

from stackflow.cli.main import cli, main

__all__ = ['cli', 'main']
