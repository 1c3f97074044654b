"""Command-line interface for warden."""

from src.cli.cli import app, bootstrap

__all__ = ["app", "bootstrap"]
