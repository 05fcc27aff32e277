"""Handling of the reports agents send to the dashboard."""

from __future__ import annotations

import copy
import enum
import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from .service_sentinel import Report, TaskResult
from .servers import Server, ServerRegistry
from .transfer import TransferRecord, record_transfer_hourly_usage

log = logging.getLogger(__name__)


class TaskType(enum.IntEnum):
    """Kinds of task results an agent reports."""

    HTTP_GET = 1
    ICMP_PING = 2
    TCP_PING = 3
    COMMAND = 4
    TERMINAL_GRPC = 5
    UPGRADE = 6
    KEEP_ALIVE = 7
    REPORT_HOST_INFO_DEPRECATED = 8
    NAT = 9
    FM = 10
    REPORT_CONFIG = 11
    APPLY_CONFIG = 12


_SERVICE_TASK_TYPES = frozenset({TaskType.HTTP_GET, TaskType.ICMP_PING, TaskType.TCP_PING})


class _Crons(Protocol):
    def get(self, key: int) -> Optional[Any]: ...


class _Notifier(Protocol):
    def send(self, group_id: int, message: str, mute_label: str = "",
             server: Optional[Any] = None) -> Any: ...


class _Sentinel(Protocol):
    def dispatch(self, report: Report) -> None: ...


def _local_now() -> datetime:
    return datetime.now(timezone.utc).astimezone()


class AgentHandler:
    """Applies state, host and task reports of authenticated agents."""

    def __init__(
        self,
        servers: ServerRegistry,
        *,
        crons: Optional[_Crons] = None,
        notifier: Optional[_Notifier] = None,
        service_sentinel: Optional[_Sentinel] = None,
        save_transfers: Optional[Callable[[list[TransferRecord]], None]] = None,
        on_cron_executed: Optional[Callable[[Any], None]] = None,
        dashboard_boot_time: Optional[int] = None,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._servers = servers
        self._crons = crons
        self._notifier = notifier
        self._sentinel = service_sentinel
        self._save_transfers = save_transfers
        self._on_cron_executed = on_cron_executed
        self.dashboard_boot_time = (
            int(time.time()) if dashboard_boot_time is None else dashboard_boot_time
        )
        self._clock = clock
        self._config_lock = threading.Lock()
        self.config_caches: dict[int, queue.Queue] = {}

    def _server(self, client_id: int) -> Server:
        server = self._servers.get(client_id)
        if server is None:
            raise LookupError("server not found")
        return server

    def _config_queue(self, client_id: int) -> queue.Queue:
        with self._config_lock:
            return self.config_caches.setdefault(client_id, queue.Queue(maxsize=1))

    def report_system_state(self, client_id: int, state: Any) -> bool:
        """Store the server's latest state; True acknowledges the report."""
        server = self._server(client_id)
        server.last_active = self._clock()
        server.state = state
        # After a restart of either side, take a first snapshot to count from.
        if server.prev_transfer_in_snapshot == 0 or server.prev_transfer_out_snapshot == 0:
            server.prev_transfer_in_snapshot = state.net_in_transfer
            server.prev_transfer_out_snapshot = state.net_out_transfer
        return True

    def report_system_info(self, client_id: int, host: Any) -> int:
        """Store the server's host info; returns the dashboard boot time.

        A later boot time than the one known means the agent restarted, so the
        traffic counted before the restart is recorded and the snapshots reset.
        """
        server = self._server(client_id)
        old_boot = getattr(server.host, "boot_time", 0) if server.host is not None else 0
        if server.last_active is not None and host.boot_time > old_boot:
            records = record_transfer_hourly_usage([server], self._clock())
            if records and self._save_transfers is not None:
                self._save_transfers(records)
            server.prev_transfer_in_snapshot = 0
            server.prev_transfer_out_snapshot = 0
        server.host = host
        return self.dashboard_boot_time

    def handle_task_result(self, client_id: int, result: TaskResult) -> None:
        """Apply one task result received on the agent's task stream."""
        server = self._server(client_id)
        if result.type == TaskType.COMMAND:
            self._command_result(server, result)
        elif result.type == TaskType.REPORT_CONFIG:
            self._config_result(client_id, result)
        elif result.type in _SERVICE_TASK_TYPES:
            if self._sentinel is not None:
                self._sentinel.dispatch(Report(result, client_id))

    def _command_result(self, server: Server, result: TaskResult) -> None:
        cron = self._crons.get(result.id) if self._crons is not None else None
        if cron is None:
            return
        snapshot = copy.copy(server)
        if self._notifier is not None:
            if cron.push_successful and result.successful:
                self._notifier.send(
                    cron.notification_group_id,
                    f"[Scheduled Task Executed Successfully] {cron.name}, "
                    f"{server.name}\n{result.data}",
                    "",
                    snapshot,
                )
            if not result.successful:
                self._notifier.send(
                    cron.notification_group_id,
                    f"[Scheduled Task Executed Failed] {cron.name}, "
                    f"{server.name}\n{result.data}",
                    "",
                    snapshot,
                )
        cron.last_executed_at = self._clock() - timedelta(seconds=int(result.delay))
        cron.last_result = result.successful
        if self._on_cron_executed is not None:
            self._on_cron_executed(cron)

    def _config_result(self, client_id: int, result: TaskResult) -> None:
        cache = self._config_queue(client_id)
        if cache.qsize() >= 1:
            return
        value: Any = result.data if result.successful else RuntimeError(result.data)
        try:
            cache.put_nowait(value)
        except queue.Full:
            log.debug("Config result for server %d dropped", client_id)


def iter_service_task_types() -> Iterable[TaskType]:
    """Task types whose results belong to service monitoring."""
    return sorted(_SERVICE_TASK_TYPES)