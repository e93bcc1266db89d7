#!/usr/bin/env python3
"""KeeNotes command-line entry point.

Usage:
    keenotes post "Remember the milk"       # Encrypt and post a note
    keenotes sync now                       # Catch up with the server
    keenotes -d /tmp/kn search milk         # Use a custom config directory
    python -m keenotes.main list-notes
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging for the command-line client."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the unified argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="keenotes",
        description="KeeNotes - end-to-end encrypted note capture and sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  keenotes config set endpoint_url https://notes.example.com/api/notes
  keenotes config set token <token>
  keenotes post "First note"
  echo "From stdin" | keenotes post
  keenotes sync now
  keenotes --format json search milk
  keenotes import export.ndjson --validate-only
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/keenotes/)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    from keenotes.cli import add_cli_arguments
    add_cli_arguments(parser)

    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Main entry point for KeeNotes.

    Parses arguments and dispatches to the CLI.
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    from keenotes.cli import run as run_cli
    sys.exit(run_cli(args.config_dir, args))


if __name__ == "__main__":
    main()
