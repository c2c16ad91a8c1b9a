"""Install, start, stop and restart commands for the reforger-ctrl CLI."""

from reforger_ctrl.cli_helpers import add_connection_argument, exit_with_error, fail, open_registry
from reforger_ctrl.common.constants import ExitCodes
from reforger_ctrl.common.errors import InstallFailedError
from reforger_ctrl.core.models import InstallProgress, ServerState


def format_progress(update: InstallProgress) -> str:
    line = f"[{update.status.value:>11}] {update.progress:5.1f}%  {update.message}"
    if update.speed:
        line += f"  ({update.speed / 1024 / 1024:.1f} MB/s)"
    return line


class InstallCommand:
    """Install or update the server files and queued mods."""

    @staticmethod
    def add_parser(subparsers) -> None:
        parser = subparsers.add_parser('install', help='Install or update the dedicated server and mods')
        add_connection_argument(parser)
        parser.add_argument('mod_ids', nargs='*', help='Additional workshop mod ids to download')
        parser.set_defaults(func=InstallCommand.execute)

    @staticmethod
    def execute(args) -> None:
        try:
            with open_registry(args) as registry:
                stream = registry.install(args.connection, args.mod_ids)
                try:
                    for update in stream:
                        print(format_progress(update), flush=True)
                except KeyboardInterrupt:
                    stream.cancel()
                    stream.close()
                    exit_with_error("Install cancelled", ExitCodes.INSTALL_FAILED)
                stream.wait()
        except Exception as exc:
            if isinstance(exc, InstallFailedError):
                for line in exc.log_tail:
                    print(f"  | {line}")
            fail(exc, default_code=ExitCodes.INSTALL_FAILED, prefix="Install failed: ")
            return
        print("Install complete.")


class StartCommand:
    """Launch the server and wait until it answers."""

    @staticmethod
    def add_parser(subparsers) -> None:
        parser = subparsers.add_parser('start', help='Start the dedicated server')
        add_connection_argument(parser)
        parser.set_defaults(func=StartCommand.execute)

    @staticmethod
    def execute(args) -> None:
        _run_transition(args, 'start', ServerState.ONLINE)


class StopCommand:
    """Shut the server down gracefully."""

    @staticmethod
    def add_parser(subparsers) -> None:
        parser = subparsers.add_parser('stop', help='Stop the dedicated server')
        add_connection_argument(parser)
        parser.set_defaults(func=StopCommand.execute)

    @staticmethod
    def execute(args) -> None:
        _run_transition(args, 'stop', ServerState.OFFLINE)


class RestartCommand:
    @staticmethod
    def add_parser(subparsers) -> None:
        parser = subparsers.add_parser('restart', help='Stop and start the dedicated server')
        add_connection_argument(parser)
        parser.set_defaults(func=RestartCommand.execute)

    @staticmethod
    def execute(args) -> None:
        _run_transition(args, 'restart', ServerState.ONLINE)


def _run_transition(args, action: str, expected: ServerState) -> None:
    try:
        with open_registry(args) as registry:
            state = getattr(registry, action)(args.connection)
            status = registry.get_status(args.connection)
    except Exception as exc:
        fail(exc, prefix=f"Could not {action} server: ")
        return

    if state != expected:
        reason = status.last_error or f"server is {state.value}"
        exit_with_error(f"Could not {action} server: {reason}", ExitCodes.COMMAND_FAILED)
    print(f"Server is {state.value}.")
