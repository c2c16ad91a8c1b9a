"""Connection management for the reforger-ctrl CLI."""

import sys

from reforger_ctrl.cli_helpers import add_json_argument, fail, open_registry, print_json
from reforger_ctrl.common.constants import DEFAULT_SSH_PORT, ExitCodes
from reforger_ctrl.core.models import ConnectionType, Platform, ServerConnection


class ConnectionsCommand:
    """Register, list and remove managed servers."""

    @staticmethod
    def add_parser(subparsers) -> None:
        parser = subparsers.add_parser('connections', help='Manage server connections')
        actions = parser.add_subparsers(dest='connections_action', help='Connection actions')

        list_parser = actions.add_parser('list', help='List registered connections')
        add_json_argument(list_parser)

        add_parser = actions.add_parser('add', help='Register a connection')
        add_parser.add_argument('name', help='Display name')
        add_parser.add_argument('--server-path', required=True, help='Server install directory on the host')
        add_parser.add_argument('--host', help='SSH host (makes the connection remote)')
        add_parser.add_argument('--port', type=int, default=DEFAULT_SSH_PORT, help='SSH port')
        add_parser.add_argument('--username', help='SSH user')
        add_parser.add_argument('--password', help='SSH password')
        add_parser.add_argument('--private-key', dest='private_key_path', help='SSH private key file')
        add_parser.add_argument('--steamcmd-path', help='SteamCMD directory on the host')
        add_parser.add_argument('--platform', choices=[p.value for p in Platform], default=Platform.LINUX.value)
        add_parser.add_argument('--default', dest='is_default', action='store_true',
                                help='Make this the default connection')

        remove_parser = actions.add_parser('remove', help='Unregister a connection')
        remove_parser.add_argument('connection', help='Connection id or name')

        default_parser = actions.add_parser('set-default', help='Choose the default connection')
        default_parser.add_argument('connection', help='Connection id or name')

        parser.set_defaults(func=ConnectionsCommand.execute)

    @staticmethod
    def execute(args) -> None:
        try:
            with open_registry(args) as registry:
                if args.connections_action == 'list':
                    ConnectionsCommand._list(registry, args)
                elif args.connections_action == 'add':
                    ConnectionsCommand._add(registry, args)
                elif args.connections_action == 'remove':
                    if registry.remove_connection(args.connection):
                        print(f"Removed connection '{args.connection}'.")
                elif args.connections_action == 'set-default':
                    connection = registry.set_default(args.connection)
                    print(f"'{connection.name}' is now the default connection.")
                else:
                    print("Please specify a connections action: list, add, remove, or set-default")
                    sys.exit(ExitCodes.OK)
        except Exception as exc:
            fail(exc, prefix="Connection command failed: ")

    @staticmethod
    def _list(registry, args) -> None:
        connections = registry.list_connections()
        if args.as_json:
            print_json([ConnectionsCommand._redacted(c) for c in connections])
            return
        if not connections:
            print("No connections registered. Use 'reforger-ctrl connections add' to register one.")
            return
        for connection in connections:
            marker = '*' if connection.is_default else ' '
            where = f"{connection.username or ''}@{connection.host}" if connection.is_remote else 'local'
            print(f"{marker} {connection.id}  {connection.name}  ({where}, {connection.platform.value})  "
                  f"{connection.server_path}  [{connection.status}]")

    @staticmethod
    def _add(registry, args) -> None:
        connection = ServerConnection(
            name=args.name,
            server_path=args.server_path,
            type=ConnectionType.REMOTE if args.host else ConnectionType.LOCAL,
            host=args.host,
            port=args.port,
            username=args.username,
            password=args.password,
            private_key_path=args.private_key_path,
            steamcmd_path=args.steamcmd_path,
            platform=Platform(args.platform),
            is_default=args.is_default,
        )
        saved = registry.add_connection(connection)
        print(f"Registered connection '{saved.name}' with id {saved.id}.")

    @staticmethod
    def _redacted(connection: ServerConnection) -> dict:
        data = connection.to_dict()
        if data.get('password'):
            data['password'] = '***'
        return data
