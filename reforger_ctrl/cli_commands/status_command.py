"""Status, player roster and console log commands for the reforger-ctrl CLI."""

from reforger_ctrl.cli_helpers import add_connection_argument, add_json_argument, fail, open_registry, print_json
from reforger_ctrl.core.models import ServerStatus


def format_status(status: ServerStatus) -> str:
    lines = [f"Status:   {status.status.value}"]
    if status.is_online:
        lines.append(f"Players:  {status.players}/{status.max_players}")
        if status.map:
            lines.append(f"Map:      {status.map}")
        if status.mission:
            lines.append(f"Mission:  {status.mission}")
        if status.version:
            lines.append(f"Version:  {status.version}")
        lines.append(f"Ping:     {status.ping:.0f} ms")
        lines.append(f"CPU:      {status.cpu:.1f}%  Memory: {status.memory:.1f}%  Uptime: {status.uptime:.0f}s")
    if status.restart_pending:
        lines.append("Restart pending to apply configuration changes.")
    if status.last_error:
        lines.append(f"Last error: {status.last_error}")
    return "\n".join(lines)


class StatusCommand:
    """Show the cached or freshly polled server status."""

    @staticmethod
    def add_parser(subparsers) -> None:
        parser = subparsers.add_parser('status', help='Show server status')
        add_connection_argument(parser)
        add_json_argument(parser)
        parser.add_argument('--cached', action='store_true', help='Do not query the server, show the cached status')
        parser.set_defaults(func=StatusCommand.execute)

    @staticmethod
    def execute(args) -> None:
        try:
            with open_registry(args) as registry:
                if args.cached:
                    status = registry.get_status(args.connection)
                else:
                    status = registry.poll(args.connection)
        except Exception as exc:
            fail(exc, prefix="Status query failed: ")
            return

        if args.as_json:
            print_json(status.to_dict())
        else:
            print(format_status(status))


class PlayersCommand:
    """List connected players."""

    @staticmethod
    def add_parser(subparsers) -> None:
        parser = subparsers.add_parser('players', help='List connected players')
        add_connection_argument(parser)
        add_json_argument(parser)
        parser.set_defaults(func=PlayersCommand.execute)

    @staticmethod
    def execute(args) -> None:
        try:
            with open_registry(args) as registry:
                players = registry.list_players(args.connection)
        except Exception as exc:
            fail(exc, prefix="Player query failed: ")
            return

        if args.as_json:
            print_json([player.to_dict() for player in players])
            return
        if not players:
            print("No players online.")
            return
        for player in players:
            steam_id = f" [{player.steam_id}]" if player.steam_id else ""
            print(f"  {player.name}{steam_id}  ping {player.ping}")


class LogsCommand:
    """Print the console log tail, or browse the per-run log directories."""

    @staticmethod
    def add_parser(subparsers) -> None:
        parser = subparsers.add_parser('logs', help='Show recent server console output')
        add_connection_argument(parser)
        add_json_argument(parser)
        parser.add_argument('-n', '--lines', type=int, default=None,
                            help='Number of lines to show (100 for the console, 500 for a log file)')
        parser.add_argument('--level', help="Only show entries of this level (e.g. error)")
        parser.add_argument('--runs', action='store_true', help='List the log directories of past runs')
        parser.add_argument('--run', metavar='DIR', help='List the files of one run directory')
        parser.add_argument('--file', metavar='NAME', help='Show a file from the --run directory')
        parser.set_defaults(func=LogsCommand.execute)

    @staticmethod
    def execute(args) -> None:
        try:
            if args.file and not args.run:
                raise ValueError("--file needs --run")
            with open_registry(args) as registry:
                if args.runs:
                    names = registry.list_log_dirs(args.connection)
                elif args.run and not args.file:
                    names = registry.list_log_files(args.connection, args.run)
                elif args.run:
                    names = None
                    entries = registry.read_log_file(args.connection, args.run, args.file, args.lines or 500)
                else:
                    names = None
                    entries = registry.tail_logs(args.connection, args.lines or 100)
        except Exception as exc:
            fail(exc, prefix="Could not read server log: ")
            return

        if names is not None:
            if args.as_json:
                print_json(names)
            else:
                for name in names:
                    print(name)
            return

        if args.level:
            entries = [entry for entry in entries if entry.level == args.level.lower()]
        if args.as_json:
            print_json([entry.to_dict() for entry in entries])
            return
        for entry in entries:
            print(f"{entry.timestamp:%Y-%m-%d %H:%M:%S} {entry.level.upper():<7} {entry.message}")
