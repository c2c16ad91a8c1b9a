"""Cron-driven maintenance tasks (restarts, broadcasts, RCON commands, updates)."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from croniter import croniter
from croniter.croniter import CroniterBadCronError

from reforger_ctrl.common.errors import ReforgerCtrlError
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.models import ScheduledTask, ServerState, TaskAction
from reforger_ctrl.core.registry import ServerManagerRegistry
from reforger_ctrl.core.stores import TaskStore

DEFAULT_WARNING_OFFSETS = [30, 5, 1]


class CronSchedule:
    """Cron schedule helper backed by :mod:`croniter`."""

    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._validate_expression()

    @property
    def expression(self) -> str:
        return self._expression

    def _validate_expression(self) -> None:
        """Eagerly validate cron syntax so we fail fast on start-up."""

        try:
            croniter(self._expression, datetime.now())
        except (CroniterBadCronError, ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{self._expression}': {exc}") from exc

    def next_run(self, reference: datetime) -> datetime:
        """Return the next scheduled time strictly after ``reference``."""

        iterator = croniter(self._expression, reference, ret_type=datetime)
        return iterator.get_next(datetime)


def parse_warning_offsets(raw: str) -> List[int]:
    """Parse a comma separated string of minute offsets."""

    if not raw:
        return list(DEFAULT_WARNING_OFFSETS)

    values: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            value = int(part)
        except ValueError as exc:
            raise ValueError(f"Invalid restart warning offset '{part}'") from exc
        if value <= 0:
            raise ValueError("Restart warnings must be positive minute values")
        if value not in values:
            values.append(value)
    if not values:
        raise ValueError("No valid restart warning offsets provided")
    values.sort(reverse=True)
    return values


def restart_warning_message(minutes: int, target: datetime) -> str:
    time_str = target.strftime("%H:%M")
    if minutes == 1:
        return f"Server restart in 1 minute (scheduled {time_str})."
    return f"Server restart in {minutes} minutes (scheduled {time_str})."


class TaskScheduler:
    """Fire due tasks against the registry once per tick.

    A failed task is logged and keeps its next natural occurrence; it is not
    retried out of schedule.
    """

    def __init__(self, registry: ServerManagerRegistry, tasks: TaskStore, tick_interval: float = 30.0,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        self.registry = registry
        self.tasks = tasks
        self.tick_interval = max(1.0, tick_interval)
        self._clock = clock
        self._schedules: Dict[Tuple[str, str], CronSchedule] = {}
        self._announced: Dict[str, Set[int]] = {}
        self._log = get_logger(__name__)

    def _schedule_for(self, task: ScheduledTask) -> CronSchedule:
        key = (task.id, task.cron)
        schedule = self._schedules.get(key)
        if schedule is None:
            schedule = CronSchedule(task.cron)
            self._schedules[key] = schedule
        return schedule

    def add_task(self, task: ScheduledTask, now: Optional[datetime] = None) -> ScheduledTask:
        """Validate and store a task with its first ``next_run``."""
        task.next_run = self._schedule_for(task).next_run(now or self._clock())
        return self.tasks.save(task)

    def tick(self, now: Optional[datetime] = None) -> List[ScheduledTask]:
        """Run every enabled task that is due; return the tasks that fired."""
        now = now or self._clock()
        fired = []
        for task in self.tasks.list():
            if not task.enabled:
                continue
            try:
                schedule = self._schedule_for(task)
            except ValueError as exc:
                self._log.error("Skipping task '%s': %s", task.name, exc)
                continue

            if task.next_run is None:
                task.next_run = schedule.next_run(now)
                self.tasks.save(task)
                self._log.info("Task '%s' next runs at %s", task.name, task.next_run.strftime("%Y-%m-%d %H:%M"))
                continue

            if now < task.next_run:
                if task.action == TaskAction.RESTART:
                    self._announce_warnings(task, now)
                continue

            self._fire(task, now)
            task.last_run = now
            task.next_run = schedule.next_run(now)
            self._announced.pop(task.id, None)
            self.tasks.save(task)
            fired.append(task)
        return fired

    def _announce_warnings(self, task: ScheduledTask, now: datetime) -> None:
        announced = self._announced.setdefault(task.id, set())
        due = [
            offset for offset in task.warnings
            if offset not in announced and task.next_run - timedelta(minutes=offset) <= now
        ]
        if not due:
            return
        announced.update(due)
        minutes = min(due)
        # Warnings whose moment passed before this tick (e.g. scheduler started late) stay silent.
        if now - (task.next_run - timedelta(minutes=minutes)) > timedelta(seconds=self.tick_interval):
            return
        if not self._server_online(task):
            self._log.info("Server for task '%s' not online; skipping restart warning", task.name)
            return
        self._log.info("Announcing restart %s minutes before scheduled time", minutes)
        self._broadcast(task, restart_warning_message(minutes, task.next_run))

    def _server_online(self, task: ScheduledTask) -> bool:
        try:
            return self.registry.get_status(task.connection_id).status == ServerState.ONLINE
        except ReforgerCtrlError:
            return False

    def _broadcast(self, task: ScheduledTask, message: str) -> None:
        try:
            self.registry.broadcast(task.connection_id, message)
        except ReforgerCtrlError as exc:
            self._log.warning("Broadcast for task '%s' failed: %s", task.name, exc)

    def _fire(self, task: ScheduledTask, now: datetime) -> None:
        self._log.info("Running task '%s' (%s)", task.name, task.action.value)
        try:
            if task.action == TaskAction.RESTART:
                if self._server_online(task):
                    self._broadcast(task, f"Server restarting now (scheduled {now.strftime('%H:%M')}).")
                self.registry.restart(task.connection_id)
            elif task.action == TaskAction.START:
                self.registry.start(task.connection_id)
            elif task.action == TaskAction.STOP:
                self.registry.stop(task.connection_id)
            elif task.action == TaskAction.BROADCAST:
                self.registry.broadcast(task.connection_id, task.payload)
            elif task.action == TaskAction.RCON:
                self.registry.send_rcon_command(task.connection_id, task.payload)
            elif task.action == TaskAction.UPDATE:
                self.registry.install(task.connection_id).wait()
        except (ReforgerCtrlError, ValueError) as exc:
            self._log.error("Task '%s' failed: %s", task.name, exc)

    def run_forever(self, stop_event: threading.Event) -> None:
        self._log.info("Scheduler running with %d task(s), tick %ss", len(self.tasks.list()), self.tick_interval)
        while not stop_event.is_set():
            try:
                self.tick()
            except ReforgerCtrlError as exc:
                self._log.error("Scheduler tick failed: %s", exc)
            stop_event.wait(self.tick_interval)
