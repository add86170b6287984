#!/usr/bin/env python3
"""
Main entry point for mail-watch.

    python main.py run
    python main.py check
    python main.py --config-dir ./config show-config

See --help for available commands.
"""
from mailwatch.cli import cli


if __name__ == "__main__":
    cli()
