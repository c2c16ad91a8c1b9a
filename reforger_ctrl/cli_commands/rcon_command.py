"""RCON command handling for the reforger-ctrl CLI."""

from reforger_ctrl.cli_helpers import add_connection_argument, exit_with_error, map_exception_to_exit_code, open_registry
from reforger_ctrl.common.constants import ExitCodes
from reforger_ctrl.common.errors import (
    RconAuthenticationError,
    RconPermissionError,
    RconTimeoutError,
    RconUnavailableError,
)


class RconCommand:
    """Handles RCON command execution and the admin shortcuts built on it."""

    @staticmethod
    def add_parser(subparsers) -> None:
        """Add RCON command parser to subparsers."""
        parser = subparsers.add_parser('rcon', help='Interface for RCON command execution')
        add_connection_argument(parser)
        group = parser.add_mutually_exclusive_group(required=True)
        group.add_argument('--exec', dest='command', help='An RCON command to execute')
        group.add_argument('--broadcast', dest='message', help='Send a chat message to all players')
        group.add_argument('--kick', dest='kick', metavar='PLAYER', help='Kick a player by id or name')
        group.add_argument('--ban', dest='ban', metavar='PLAYER', help='Ban a player by id or name')
        parser.add_argument('--reason', default='', help='Reason shown for --kick or --ban')
        parser.add_argument('--duration', type=int, default=0,
                            help='Ban duration in seconds, 0 for permanent')
        parser.set_defaults(func=RconCommand.execute)

    @staticmethod
    def execute(args) -> None:
        """Execute an RCON command."""
        try:
            with open_registry(args) as registry:
                if args.command:
                    response = registry.send_rcon_command(args.connection, args.command)
                elif args.message:
                    response = registry.broadcast(args.connection, args.message)
                elif args.kick:
                    response = registry.kick(args.connection, args.kick, args.reason)
                else:
                    response = registry.ban(args.connection, args.ban, args.reason, args.duration)
            print(response)

        except Exception as exc:
            exit_code = map_exception_to_exit_code(exc)
            if isinstance(exc, RconUnavailableError) and isinstance(exc.__cause__, RconAuthenticationError):
                message = "Could not execute this RCON command. Authentication failed (wrong RCON password)."
            elif isinstance(exc, RconUnavailableError):
                message = f"RCON is unavailable: {exc}"
            elif isinstance(exc, RconPermissionError):
                message = f"Permission denied: {exc}"
            elif isinstance(exc, RconTimeoutError):
                message = f"RCON operation timed out: {exc}"
            elif isinstance(exc, ValueError):
                message = f"Invalid command: {exc}"
                exit_code = ExitCodes.RCON_COMMAND_EXECUTION_FAILED
            else:
                message = f"Rcon command execution failed: {exc}"

            if exit_code is None:
                exit_code = ExitCodes.RCON_COMMAND_EXECUTION_FAILED

            exit_with_error(message, exit_code)
