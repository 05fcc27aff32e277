"""Scheduled and triggered command tasks sent to agents."""

from __future__ import annotations

import copy
import enum
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from .registry import Registry
from .servers import Server, ServerRegistry

log = logging.getLogger(__name__)

TASK_TYPE_COMMAND = 4

_REGISTER_FAILED_HEAD = "Tasks failed to register: ["
_REGISTER_FAILED_TAIL = (
    "] These tasks will not execute properly. Fix them in the admin dashboard."
)


class CronCover(enum.IntEnum):
    """Which servers a task runs on."""

    IGNORE_ALL = 0
    ALL = 1
    ALERT_TRIGGER = 2


class CronType(enum.IntEnum):
    """Whether a task runs on a schedule or only when triggered."""

    SCHEDULED = 0
    TRIGGER = 1


@dataclass
class Cron:
    """A command task run on a schedule or by alerts."""

    id: int = 0
    name: str = ""
    scheduler: str = ""
    command: str = ""
    servers: list[int] = field(default_factory=list)
    cover: CronCover = CronCover.IGNORE_ALL
    task_type: CronType = CronType.SCHEDULED
    notification_group_id: int = 0
    push_successful: bool = False
    user_id: int = 0
    cron_job_id: int = 0
    last_executed_at: Optional[datetime] = None
    last_result: bool = False


@dataclass(frozen=True)
class Task:
    """A task as sent down an agent's task stream."""

    id: int
    data: str
    type: int


class Scheduler(Protocol):
    """Runs jobs by cron spec; ``add`` raises ValueError on a bad spec."""

    def add(self, spec: str, job: Callable[[], None]) -> int: ...

    def remove(self, job_id: int) -> None: ...


class Notifier(Protocol):
    def send(
        self,
        group_id: int,
        message: str,
        mute_label: str = "",
        server: Optional[Any] = None,
    ) -> Any: ...


def _spawn(fn: Callable[[], Any]) -> None:
    threading.Thread(target=fn, daemon=True).start()


def _by_id(cron: Cron) -> int:
    return cron.id


class CronRegistry(Registry[int, Cron]):
    """Tasks by id, registered with a scheduler when they run on a schedule."""

    def __init__(
        self,
        crons: Iterable[Cron],
        servers: ServerRegistry,
        notifier: Notifier,
        scheduler: Optional[Scheduler] = None,
        run: Callable[[Callable[[], Any]], None] = _spawn,
    ) -> None:
        self._servers = servers
        self._notifier = notifier
        self._scheduler = scheduler
        self._run = run

        all_crons = list(crons)
        entries: dict[int, Cron] = {}
        failed: dict[int, list[int]] = {}
        for cron in all_crons:
            if cron.task_type == CronType.TRIGGER or scheduler is None:
                entries[cron.id] = cron
                continue
            try:
                cron.cron_job_id = scheduler.add(cron.scheduler, self._job(cron))
            except ValueError:
                failed.setdefault(cron.notification_group_id, []).append(cron.id)
            else:
                entries[cron.id] = cron

        super().__init__(entries, all_crons)

        for group_id, ids in failed.items():
            listed = "".join(f"{cron_id}," for cron_id in ids)
            notifier.send(
                group_id, f"{_REGISTER_FAILED_HEAD}{listed}{_REGISTER_FAILED_TAIL}", ""
            )

    def _job(self, cron: Cron) -> Callable[[], None]:
        return lambda: self.trigger(cron)

    def update(self, cron: Cron) -> None:
        """Replace a task, unscheduling the job of the one it replaces."""
        with self._lock:
            old = self._entries.get(cron.id)
            if old is not None and old.cron_job_id and self._scheduler is not None:
                self._scheduler.remove(old.cron_job_id)
            self._entries[cron.id] = cron
        self._resort(_by_id)

    def delete(self, ids: Iterable[int]) -> None:
        with self._lock:
            for cron_id in ids:
                cron = self._entries.pop(cron_id, None)
                if cron is not None and cron.cron_job_id and self._scheduler is not None:
                    self._scheduler.remove(cron.cron_job_id)
        self._resort(_by_id)

    def send_trigger_tasks(self, task_ids: Iterable[int], trigger_server: int) -> None:
        """Run each known task of ``task_ids`` for the server that triggered it."""
        with self._lock:
            crons = [self._entries[i] for i in task_ids if i in self._entries]
        for cron in crons:
            self._run(lambda c=cron: self.trigger(c, trigger_server))

    def trigger(self, cron: Cron, trigger_server: Optional[int] = None) -> None:
        """Send the task's command to the servers it covers."""
        if cron.cover == CronCover.ALERT_TRIGGER:
            if trigger_server is None:
                return
            server = self._servers.get(trigger_server)
            if server is not None:
                self._dispatch(cron, server)
            return

        listed = set(cron.servers)
        for _, server in self._servers.items():
            if cron.cover == CronCover.ALL and server.id in listed:
                continue
            if cron.cover == CronCover.IGNORE_ALL and server.id not in listed:
                continue
            self._dispatch(cron, server)

    def _dispatch(self, cron: Cron, server: Server) -> None:
        if server.task_stream is not None:
            server.task_stream.send(Task(cron.id, cron.command, TASK_TYPE_COMMAND))
            return
        snapshot = copy.copy(server)
        message = (
            f"[Task failed] {cron.name}: server {server.name} "
            "is offline and cannot execute the task"
        )
        self._run(
            lambda: self._notifier.send(
                cron.notification_group_id, message, "", snapshot
            )
        )