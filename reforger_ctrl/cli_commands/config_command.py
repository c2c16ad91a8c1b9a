"""Desired server configuration commands for the reforger-ctrl CLI."""

import dataclasses
import sys

from reforger_ctrl.cli_helpers import (
    add_connection_argument,
    add_json_argument,
    coerce_config_value,
    fail,
    open_registry,
    print_json,
)
from reforger_ctrl.common.constants import ExitCodes
from reforger_ctrl.core.server_config import render_server_config

SECRET_FIELDS = ("password", "admin_password", "rcon_password")


class ConfigCommand:
    """Show or change the desired server.json settings."""

    @staticmethod
    def add_parser(subparsers) -> None:
        parser = subparsers.add_parser('config', help='Show or change the server configuration')
        add_connection_argument(parser)
        actions = parser.add_subparsers(dest='config_action', help='Config actions')

        show_parser = actions.add_parser('show', help='Show the desired configuration')
        add_json_argument(show_parser)
        show_parser.add_argument('--rendered', action='store_true',
                                 help='Show the server.json document written for the server')
        show_parser.add_argument('--show-secrets', action='store_true', help='Do not mask passwords')

        set_parser = actions.add_parser('set', help='Change configuration fields')
        set_parser.add_argument('assignments', nargs='+', metavar='KEY=VALUE',
                                help='Field assignments, e.g. max_players=32 rcon_enabled=true')

        parser.set_defaults(func=ConfigCommand.execute)

    @staticmethod
    def execute(args) -> None:
        try:
            with open_registry(args) as registry:
                if args.config_action == 'show':
                    ConfigCommand._show(registry, args)
                elif args.config_action == 'set':
                    ConfigCommand._set(registry, args)
                else:
                    print("Please specify a config action: show or set")
                    sys.exit(ExitCodes.OK)
        except Exception as exc:
            fail(exc, default_code=ExitCodes.INVALID_CONFIG, prefix="Config command failed: ")

    @staticmethod
    def _show(registry, args) -> None:
        config = registry.get_config(args.connection)
        if args.rendered:
            mods = registry.manager(args.connection).mod_database.get_enabled_mods()
            print(render_server_config(config, mods))
            return
        data = config.to_dict()
        if not args.show_secrets:
            for key in SECRET_FIELDS:
                if data.get(key):
                    data[key] = '***'
        if args.as_json:
            print_json(data)
            return
        for key, value in data.items():
            print(f"{key} = {value}")

    @staticmethod
    def _set(registry, args) -> None:
        current = registry.get_config(args.connection)
        changes = {}
        for assignment in args.assignments:
            key, sep, raw = assignment.partition('=')
            if not sep:
                raise ValueError(f"Expected KEY=VALUE, got '{assignment}'")
            key = key.strip()
            changes[key] = coerce_config_value(current, key, raw)

        needs_restart = registry.update_config(args.connection, dataclasses.replace(current, **changes))
        print(f"Updated {', '.join(sorted(changes))}.")
        if needs_restart:
            print("The running server must be restarted to apply these changes.")
