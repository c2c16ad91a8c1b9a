"""
Command Line Interface for Reforger Control.

Provides CLI commands for server lifecycle, RCON, mods and scheduled tasks.
"""

import argparse
import sys
from typing import List, Optional

from reforger_ctrl.cli_commands import COMMANDS
from reforger_ctrl.common.constants import ExitCodes
from reforger_ctrl.common.logging_config import configure_logging


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        prog='reforger-ctrl',
        description='Arma Reforger Dedicated Server Control Tool'
    )
    parser.add_argument('--log-level', dest='log_level', default=None,
                        help='Log level (defaults to REFORGER_LOG_LEVEL or INFO)')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')
    for command in COMMANDS:
        command.add_parser(subparsers)

    return parser


def main(args: Optional[List[str]] = None) -> None:
    """
    Main entry point for the CLI.

    Args:
        args: Command line arguments (uses sys.argv if None)
    """
    parser = create_parser()

    if args is None:
        args = sys.argv[1:]

    # If no arguments provided, show help
    if not args:
        parser.print_help()
        sys.exit(ExitCodes.OK)

    parsed_args = parser.parse_args(args)
    configure_logging(parsed_args.log_level)

    if hasattr(parsed_args, 'func'):
        parsed_args.func(parsed_args)
    else:
        parser.print_help()
        sys.exit(ExitCodes.OK)


if __name__ == '__main__':
    main()
