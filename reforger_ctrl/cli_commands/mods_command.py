"""Mod management command handling for the reforger-ctrl CLI."""

import sys

from reforger_ctrl.cli_helpers import (
    add_connection_argument,
    add_json_argument,
    exit_with_error,
    map_exception_to_exit_code,
    open_registry,
    print_json,
)
from reforger_ctrl.common.constants import ExitCodes
from reforger_ctrl.common.errors import CorruptedDatabaseError, DependencyCycleError


class ModsCommand:
    """Handles mod management commands."""

    @staticmethod
    def add_parser(subparsers) -> None:
        """Add mods command parser to subparsers."""
        parser = subparsers.add_parser('mods', help='Interface for mod management')
        add_connection_argument(parser)

        mod_subparsers = parser.add_subparsers(dest='mod_action', help='Mod actions')

        set_parser = mod_subparsers.add_parser('set', help='Replace the desired mod list')
        set_parser.add_argument('mod_ids', nargs='*', help='Workshop mod ids, in preferred order')
        add_json_argument(set_parser)

        enable_parser = mod_subparsers.add_parser('enable', help='Enable a mod')
        enable_parser.add_argument('mod_id', help='The mod ID to enable')

        disable_parser = mod_subparsers.add_parser('disable', help='Disable a mod')
        disable_parser.add_argument('mod_id', help='The mod ID to disable')

        remove_parser = mod_subparsers.add_parser('remove', help='Remove a mod entry entirely')
        remove_parser.add_argument('mod_id', help='The mod ID to remove from the database')

        list_parser = mod_subparsers.add_parser('list', help='List all mods')
        list_parser.add_argument('--enabled-only', action='store_true', help='Show only enabled mods')
        add_json_argument(list_parser)

        mod_subparsers.add_parser('order', help='Show the resolved load order')

        parser.set_defaults(func=ModsCommand.execute)

    @staticmethod
    def execute(args) -> None:
        """Execute a mod management command."""
        try:
            with open_registry(args) as registry:
                if args.mod_action == 'set':
                    ModsCommand._set_mods(registry, args)
                elif args.mod_action == 'enable':
                    ModsCommand._enable_mod(registry, args)
                elif args.mod_action == 'disable':
                    ModsCommand._disable_mod(registry, args)
                elif args.mod_action == 'remove':
                    ModsCommand._remove_mod(registry, args)
                elif args.mod_action == 'list':
                    ModsCommand._list_mods(registry, args)
                elif args.mod_action == 'order':
                    ModsCommand._show_order(registry, args)
                else:
                    print("Please specify a mod action: set, enable, disable, remove, list, or order")
                    sys.exit(ExitCodes.OK)

        except Exception as exc:
            exit_code = map_exception_to_exit_code(exc)
            if isinstance(exc, (CorruptedDatabaseError, DependencyCycleError)):
                message = str(exc)
            else:
                message = f"Mod command failed: {exc}"

            if exit_code is None:
                exit_code = ExitCodes.COMMAND_FAILED

            exit_with_error(message, exit_code)

    @staticmethod
    def _set_mods(registry, args) -> None:
        plan = registry.set_mod_list(args.connection, args.mod_ids)
        if args.as_json:
            print_json(plan.to_dict())
            return
        print(f"Load order: {', '.join(plan.load_order) or 'none'}")
        if plan.added_dependencies:
            print(f"Added dependencies: {', '.join(plan.added_dependencies)}")
        if plan.to_install:
            print(f"Queued for install: {', '.join(plan.to_install)} (run 'reforger-ctrl install')")
        if plan.to_disable:
            print(f"Disabled: {', '.join(plan.to_disable)}")
        if registry.get_status(args.connection).restart_pending:
            print("Restart the server to load the new mod list.")

    @staticmethod
    def _enable_mod(registry, args) -> None:
        db = registry.manager(args.connection).mod_database
        if db.enable_mod(args.mod_id):
            print(f"Enabled mod id '{args.mod_id}' successfully. It loads on the next start.")
        else:
            print(f"Mod id '{args.mod_id}' was not found in the database. Add it with 'reforger-ctrl mods set'.")

    @staticmethod
    def _disable_mod(registry, args) -> None:
        db = registry.manager(args.connection).mod_database
        if db.disable_mod(args.mod_id):
            print(f"Disabled mod id '{args.mod_id}' successfully.")
        else:
            print(f"Mod id '{args.mod_id}' was not found in the database.")

    @staticmethod
    def _remove_mod(registry, args) -> None:
        db = registry.manager(args.connection).mod_database
        if db.remove_mod(args.mod_id):
            print(f"Removed mod id '{args.mod_id}' successfully.")
        else:
            print(f"Mod id '{args.mod_id}' was not found in the database.")

    @staticmethod
    def _list_mods(registry, args) -> None:
        db = registry.manager(args.connection).mod_database

        mods = db.get_enabled_mods() if args.enabled_only else db.get_all_mods()
        if args.as_json:
            print_json([mod.to_dict() for mod in mods])
            return

        print("Enabled mods:" if args.enabled_only else "All mods:")
        if not mods:
            print("  No mods found.")
            return

        pending = set(db.pending_installs)
        for mod in mods:
            status = "enabled" if mod.enabled else "disabled"
            if mod.mod_id in pending:
                status += ", pending install"
            print(f"  {mod.mod_id}: {mod.name} ({status})")

    @staticmethod
    def _show_order(registry, args) -> None:
        plan = registry.manager(args.connection).sync_mods()
        if not plan.load_order:
            print("No mods enabled.")
            return
        for position, mod_id in enumerate(plan.load_order, start=1):
            print(f"  {position}. {mod_id}: {plan.mods[mod_id].name}")
