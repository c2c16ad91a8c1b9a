"""Scheduled task management and the scheduler loop for the reforger-ctrl CLI."""

import signal
import sys
import threading

from reforger_ctrl.cli_helpers import (
    add_connection_argument,
    add_json_argument,
    exit_with_error,
    fail,
    get_settings,
    open_registry,
    print_json,
)
from reforger_ctrl.common.constants import ExitCodes
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.models import ScheduledTask, TaskAction
from reforger_ctrl.core.scheduler import TaskScheduler, parse_warning_offsets
from reforger_ctrl.core.stores import TaskStore


class SchedulerCommand:
    """Manage cron-driven tasks and run the scheduler loop."""

    @staticmethod
    def add_parser(subparsers) -> None:
        parser = subparsers.add_parser('scheduler', help='Manage scheduled maintenance tasks')
        actions = parser.add_subparsers(dest='scheduler_action', help='Scheduler actions')

        list_parser = actions.add_parser('list', help='List scheduled tasks')
        add_json_argument(list_parser)

        add_parser = actions.add_parser('add', help='Schedule a task')
        add_parser.add_argument('name', help='Task name')
        add_parser.add_argument('--action', required=True, choices=[a.value for a in TaskAction])
        add_parser.add_argument('--cron', required=True, help="Cron expression, e.g. '0 4 * * *'")
        add_parser.add_argument('--payload', default='', help='Message or RCON command for broadcast/rcon tasks')
        add_parser.add_argument('--warnings', default='',
                                help='Restart warning offsets in minutes (default 30,5,1)')
        add_parser.add_argument('--disabled', action='store_true', help='Create the task disabled')
        add_connection_argument(add_parser)

        for action in ('remove', 'enable', 'disable'):
            action_parser = actions.add_parser(action, help=f'{action.capitalize()} a task')
            action_parser.add_argument('task', help='Task id or name')

        actions.add_parser('run', help='Run the scheduler and status polling until interrupted')

        parser.set_defaults(func=SchedulerCommand.execute)

    @staticmethod
    def execute(args) -> None:
        if args.scheduler_action is None:
            print("Please specify a scheduler action: list, add, remove, enable, disable, or run")
            sys.exit(ExitCodes.OK)
        try:
            tasks = TaskStore(get_settings(args).tasks_path)
            if args.scheduler_action == 'list':
                SchedulerCommand._list(tasks, args)
            elif args.scheduler_action == 'add':
                SchedulerCommand._add(tasks, args)
            elif args.scheduler_action == 'remove':
                task = SchedulerCommand._find(tasks, args.task)
                tasks.delete(task.id)
                print(f"Removed task '{task.name}'.")
            elif args.scheduler_action in ('enable', 'disable'):
                task = SchedulerCommand._find(tasks, args.task)
                task.enabled = args.scheduler_action == 'enable'
                tasks.save(task)
                print(f"Task '{task.name}' {args.scheduler_action}d.")
            elif args.scheduler_action == 'run':
                SchedulerCommand._run(tasks, args)
        except Exception as exc:
            fail(exc, prefix="Scheduler command failed: ")

    @staticmethod
    def _find(tasks: TaskStore, key: str) -> ScheduledTask:
        task = tasks.get(key) or next((t for t in tasks.list() if t.name == key), None)
        if task is None:
            exit_with_error(f"Unknown task: {key}", ExitCodes.COMMAND_FAILED)
        return task

    @staticmethod
    def _list(tasks: TaskStore, args) -> None:
        entries = tasks.list()
        if args.as_json:
            print_json([task.to_dict() for task in entries])
            return
        if not entries:
            print("No scheduled tasks.")
            return
        for task in entries:
            state = "enabled" if task.enabled else "disabled"
            next_run = task.next_run.strftime("%Y-%m-%d %H:%M") if task.next_run else "-"
            print(f"  {task.id}  {task.name}  [{task.action.value}] '{task.cron}' ({state}, next {next_run})")

    @staticmethod
    def _add(tasks: TaskStore, args) -> None:
        action = TaskAction(args.action)
        if action in (TaskAction.BROADCAST, TaskAction.RCON) and not args.payload:
            raise ValueError(f"A '{action.value}' task needs --payload")
        with open_registry(args) as registry:
            connection = registry.connections.require(args.connection)
            task = ScheduledTask(
                name=args.name,
                action=action,
                cron=args.cron,
                enabled=not args.disabled,
                payload=args.payload,
                connection_id=connection.id,
                warnings=parse_warning_offsets(args.warnings) if action == TaskAction.RESTART else [],
            )
            saved = TaskScheduler(registry, tasks).add_task(task)
        print(f"Scheduled '{saved.name}' ({saved.action.value}), next run {saved.next_run:%Y-%m-%d %H:%M}.")

    @staticmethod
    def _run(tasks: TaskStore, args) -> None:
        log = get_logger(__name__)
        stop_event = threading.Event()

        def _stop(signum, _frame):
            log.info("Received signal %s, stopping scheduler", signum)
            stop_event.set()

        signal.signal(signal.SIGTERM, _stop)
        signal.signal(signal.SIGINT, _stop)

        settings = get_settings(args)
        with open_registry(args) as registry:
            registry.start_polling()
            TaskScheduler(registry, tasks, tick_interval=settings.scheduler_tick_interval).run_forever(stop_event)
