#!/usr/bin/env python3
"""
warden: resilient runner for flaky external test processes.

This module is a thin shim that exposes the CLI app from src.cli.
The actual implementation lives in src/cli/cli.py.

Usage:
    warden test [OPTIONS] [-- TOOL_ARGS...]
    warden validate [OPTIONS]
    warden show-config
"""

from .cli import bootstrap

# Call bootstrap at module import time so the console entrypoint (src.main:app)
# loads ~/.config/warden/.env before any configuration is read
bootstrap()

from .cli import app  # noqa: E402

if __name__ == "__main__":
    app()
