"""Monitoring of services probed by agents and the notices they raise."""

from __future__ import annotations

import copy
import enum
import logging
import queue
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from .notification import MuteLabel
from .status import Status, status_from_percent, status_label

log = logging.getLogger(__name__)

CURRENT_STATUS_SIZE = 30
MONTH_DAYS = 30
DAILY_REFRESH_SPEC = "0 0 0 * * *"
TLS_ERROR_PREFIX = "SSL证书错误："
_CURRENT_INTERVAL = timedelta(seconds=30)
_CERT_TIME_FORMAT = "%Y-%m-%d %H:%M:%S %z"
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_QUEUE_SIZE = 200
_STOP = object()


class TaskType(enum.IntEnum):
    """Kinds of probes an agent runs for a service."""

    HTTP_GET = 1
    ICMP_PING = 2
    TCP_PING = 3


@dataclass
class TaskResult:
    """The outcome of one probe reported by an agent."""

    id: int
    type: int = TaskType.HTTP_GET
    delay: float = 0.0
    data: str = ""
    successful: bool = False


@dataclass
class Report:
    """A probe result together with the server that reported it."""

    data: TaskResult
    reporter: int


@dataclass
class Service:
    """A monitored endpoint and how its failures are announced."""

    id: int = 0
    name: str = ""
    type: int = TaskType.HTTP_GET
    target: str = ""
    duration: int = 30
    notify: bool = False
    notification_group_id: int = 0
    latency_notify: bool = False
    min_latency: float = 0.0
    max_latency: float = 0.0
    enable_trigger_task: bool = False
    fail_trigger_tasks: list[int] = field(default_factory=list)
    recover_trigger_tasks: list[int] = field(default_factory=list)
    enable_show_in_service: bool = True
    user_id: int = 0
    cron_job_id: int = 0

    def cron_spec(self) -> str:
        return f"@every {self.duration}s"

    def has_permission(self, ctx: Any) -> bool:
        checker = getattr(ctx, "has_permission_for", None)
        return True if checker is None else bool(checker(self.user_id))


@dataclass
class ServiceHistory:
    """A stored aggregate of probe results."""

    service_id: int
    avg_delay: float = 0.0
    data: str = ""
    up: int = 0
    down: int = 0
    server_id: int = 0
    created_at: Optional[datetime] = None


@dataclass
class TodayStats:
    """Up and down counts with the average delay."""

    up: int = 0
    down: int = 0
    delay: float = 0.0


def _zeros() -> list:
    return [0] * MONTH_DAYS


@dataclass
class ServiceResponseItem:
    """Thirty days of availability of one service."""

    service_name: str = ""
    current_up: int = 0
    current_down: int = 0
    total_up: int = 0
    total_down: int = 0
    delay: list[float] = field(default_factory=lambda: [0.0] * MONTH_DAYS)
    up: list[int] = field(default_factory=_zeros)
    down: list[int] = field(default_factory=_zeros)


@dataclass
class _CurrentStatus:
    last_status: int = 0
    t: Optional[datetime] = None
    results: list[TaskResult] = field(default_factory=list)


@dataclass
class _PingStore:
    count: int = 0
    ping: float = 0.0


class Scheduler(Protocol):
    def add(self, spec: str, job: Callable[[], None]) -> int: ...

    def remove(self, job_id: int) -> None: ...


class _Notifier(Protocol):
    def send(self, group_id: int, message: str, mute_label: str = "",
             server: Optional[Any] = None) -> Any: ...

    def unmute(self, group_id: int, mute_label: str) -> None: ...


class _TriggerTasks(Protocol):
    def send_trigger_tasks(self, task_ids: Iterable[int], trigger_server: int) -> None: ...


class _Servers(Protocol):
    def get(self, key: int) -> Optional[Any]: ...


def _spawn(fn: Callable[[], Any]) -> None:
    threading.Thread(target=fn, daemon=True).start()


def _local_now() -> datetime:
    return datetime.now(timezone.utc).astimezone()


def _midnight(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _parse_cert_time(value: str) -> datetime:
    parts = value.split(" ")
    if len(parts) != 4 or not parts[3]:
        return _ZERO_TIME
    try:
        return datetime.strptime(" ".join(parts[:3]), _CERT_TIME_FORMAT)
    except ValueError:
        return _ZERO_TIME


def _format_time(moment: datetime) -> str:
    return (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d} "
        f"{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )


class ServiceSentinel:
    """Aggregates probe results per service and announces state changes."""

    def __init__(
        self,
        services: Iterable[Service] = (),
        *,
        notifier: _Notifier,
        scheduler: Optional[Scheduler] = None,
        dispatch_bus: Optional[Callable[[Service], None]] = None,
        crons: Optional[_TriggerTasks] = None,
        servers: Optional[_Servers] = None,
        history: Iterable[ServiceHistory] = (),
        save_history: Optional[Callable[[ServiceHistory], None]] = None,
        avg_ping_count: int = 2,
        clock: Callable[[], datetime] = _local_now,
        run: Callable[[Callable[[], Any]], None] = _spawn,
        start_worker: bool = True,
    ) -> None:
        self._notifier = notifier
        self._scheduler = scheduler
        self._dispatch_bus = dispatch_bus
        self._crons = crons
        self._servers = servers
        self._save_history = save_history
        self._avg_ping_count = avg_ping_count
        self._clock = clock
        self._run = run
        self._lock = threading.RLock()
        self._queue: queue.Queue = queue.Queue(maxsize=_QUEUE_SIZE)

        self._services: dict[int, Service] = {}
        self._service_list: list[Service] = []
        self._today: dict[int, TodayStats] = {}
        self._current: dict[int, _CurrentStatus] = {}
        self._response: dict[int, TodayStats] = {}
        self._pings: dict[int, dict[int, _PingStore]] = {}
        self._tls_cache: dict[int, str] = {}
        self._monthly: dict[int, ServiceResponseItem] = {}

        service_list = list(services)
        for service in service_list:
            service.cron_job_id = self._schedule(service)
            self._services[service.id] = service
            self._current[service.id] = _CurrentStatus()
            self._today[service.id] = TodayStats()
            self._monthly[service.id] = ServiceResponseItem()
        self._service_list = service_list
        self._load_history(history, self._clock())

        if scheduler is not None:
            scheduler.add(DAILY_REFRESH_SPEC, self.refresh_monthly)

        self._worker: Optional[threading.Thread] = None
        if start_worker:
            self._worker = threading.Thread(target=self._work, daemon=True)
            self._worker.start()

    def __enter__(self) -> ServiceSentinel:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Stop the worker after the reports already queued are processed."""
        if self._worker is not None:
            self._queue.put(_STOP)
            self._worker.join()
            self._worker = None

    def _schedule(self, service: Service) -> int:
        if self._scheduler is None:
            return 0

        def job() -> None:
            if self._dispatch_bus is not None:
                self._dispatch_bus(service)

        return self._scheduler.add(service.cron_spec(), job)

    def _load_history(self, history: Iterable[ServiceHistory], now: datetime) -> None:
        today = _midnight(now)
        window_start = today - timedelta(days=MONTH_DAYS - 1)
        delay_count: dict[int, int] = {}
        today_delays: dict[int, list[float]] = {}
        for record in history:
            item = self._monthly.get(record.service_id)
            if record.server_id != 0 or item is None or record.created_at is None:
                continue
            if record.created_at >= today:
                stats = self._today[record.service_id]
                stats.up += record.up
                stats.down += record.down
                item.total_up += record.up
                item.total_down += record.down
                today_delays.setdefault(record.service_id, []).append(record.avg_delay)
                continue
            if record.created_at <= window_start:
                continue
            hours = int((today - record.created_at).total_seconds() // 3600)
            day = MONTH_DAYS - 2 - hours // 24
            if day < 0:
                continue
            count = delay_count.get(day, 0)
            item.delay[day] = (item.delay[day] * count + record.avg_delay) / (count + 1)
            delay_count[day] = count + 1
            item.up[day] += record.up
            item.total_up += record.up
            item.down[day] += record.down
            item.total_down += record.down
        for service_id, delays in today_delays.items():
            self._today[service_id].delay = sum(delays) / len(delays)

    def update(self, service: Service) -> None:
        """Add or replace a service; a bad schedule raises and changes nothing."""
        with self._lock:
            job_id = self._schedule(service)
            service.cron_job_id = job_id
            old = self._services.get(service.id)
            if old is not None:
                if self._scheduler is not None:
                    self._scheduler.remove(old.cron_job_id)
            else:
                self._monthly[service.id] = ServiceResponseItem()
                self._current.setdefault(service.id, _CurrentStatus()).results = []
                self._today[service.id] = TodayStats()
            self._services[service.id] = service

    def delete(self, ids: Iterable[int]) -> None:
        with self._lock:
            for service_id in ids:
                self._current.pop(service_id, None)
                self._response.pop(service_id, None)
                self._tls_cache.pop(service_id, None)
                self._today.pop(service_id, None)
                service = self._services.pop(service_id, None)
                if service is not None and self._scheduler is not None:
                    self._scheduler.remove(service.cron_job_id)
                self._monthly.pop(service_id, None)

    def dispatch(self, report: Report) -> None:
        """Queue a report for the worker."""
        self._queue.put(report)

    def _work(self) -> None:
        while True:
            report = self._queue.get()
            if report is _STOP:
                return
            try:
                self.process(report)
            except Exception:  # noqa: BLE001 - one bad report must not stop the worker
                log.exception("Failed to process service report %r", report)

    def get(self, service_id: int) -> Optional[Service]:
        with self._lock:
            return self._services.get(service_id)

    def get_list(self) -> dict[int, Service]:
        with self._lock:
            return dict(self._services)

    def get_sorted_list(self) -> list[Service]:
        with self._lock:
            return list(self._service_list)

    def update_service_list(self) -> None:
        """Rebuild the id-sorted service list."""
        with self._lock:
            self._service_list = sorted(self._services.values(), key=lambda s: s.id)

    def check_permission(self, ctx: Any, ids: Iterable[int]) -> bool:
        with self._lock:
            return all(
                self._services[i].has_permission(ctx) for i in ids if i in self._services
            )

    def load_stats(self) -> dict[int, ServiceResponseItem]:
        """Refresh today's slot and current counts; returns the live items."""
        with self._lock:
            for service_id in self._services:
                item = self._monthly[service_id]
                today = self._today[service_id]
                item.total_up += today.up - item.up[-1]
                item.total_down += today.down - item.down[-1]
                item.up[-1] = today.up
                item.down[-1] = today.down
                item.delay[-1] = today.delay
            for service_id, current in self._response.items():
                item = self._monthly.get(service_id)
                if item is not None:
                    item.current_down = current.down
                    item.current_up = current.up
            return dict(self._monthly)

    def copy_stats(self) -> dict[int, ServiceResponseItem]:
        """Independent copies of the stats of services shown publicly."""
        with self._lock:
            stats = self.load_stats()
            result = {}
            for service_id, item in stats.items():
                service = self._services.get(service_id)
                if service is None or not service.enable_show_in_service:
                    continue
                snapshot = copy.deepcopy(item)
                snapshot.service_name = service.name
                result[service_id] = snapshot
            return result

    def refresh_monthly(self) -> None:
        """Move the thirty-day window on by one day and clear today's counts."""
        self.load_stats()
        with self._lock:
            for service_id, item in self._monthly.items():
                item.total_down -= item.down[0]
                item.total_up -= item.up[0]
                item.up = item.up[1:] + [0]
                item.down = item.down[1:] + [0]
                item.delay = item.delay[1:] + [0.0]
                self._response[service_id] = TodayStats()
                today = self._today.get(service_id)
                if today is not None:
                    today.up = today.down = 0
                    today.delay = 0.0

    def _save(self, record: ServiceHistory) -> None:
        if self._save_history is None:
            return
        try:
            self._save_history(record)
        except Exception as exc:  # noqa: BLE001 - storage failure is logged only
            log.warning("Failed to save service monitor metrics: %s", exc)

    def _reporter_name(self, reporter: int) -> str:
        server = self._servers.get(reporter) if self._servers is not None else None
        return getattr(server, "name", "") if server is not None else ""

    def process(self, report: Report) -> None:
        """Account one probe result and send the notices it calls for."""
        result = report.data
        service_id = result.id
        service = self.get(service_id)
        if service is None or service.id == 0:
            log.warning("Incorrect service monitor report %r", report)
            return

        with self._lock:
            if result.type in (TaskType.TCP_PING, TaskType.ICMP_PING):
                self._record_ping(report)

            today = self._today[service_id]
            if result.successful:
                today.delay = (today.delay * today.up + result.delay) / (today.up + 1)
                today.up += 1
            else:
                today.down += 1

            now = self._clock()
            current = self._current[service_id]
            if current.t is None:
                current.t = now
            if current.t < now:
                current.t = now + _CURRENT_INTERVAL
                current.results.append(result)

            latest = TodayStats()
            for item in current.results:
                if item.successful:
                    latest.up += 1
                    latest.delay = (latest.delay * (latest.up - 1) + item.delay) / latest.up
                else:
                    latest.down += 1
            self._response[service_id] = latest

            total = latest.up + latest.down
            state = status_from_percent(latest.up * 100 // total if total else 0)

            if len(current.results) == CURRENT_STATUS_SIZE:
                current.t = now
                self._save(ServiceHistory(
                    service_id=service_id, avg_delay=latest.delay, data=result.data,
                    up=latest.up, down=latest.down, created_at=now,
                ))
                current.results.clear()

            if result.delay > 0:
                self._delay_check(report, service)

            if state == Status.DOWN or state != current.last_status:
                last_status = current.last_status
                current.last_status = state
                self._notify_check(report, service, last_status, state)

            self._tls_check(result, service, now)

    def _record_ping(self, report: Report) -> None:
        result = report.data
        stores = self._pings.setdefault(result.id, {})
        store = stores.get(report.reporter, _PingStore())
        store.count += 1
        store.ping = (store.ping * (store.count - 1) + result.delay) / store.count
        if store.count == self._avg_ping_count:
            self._save(ServiceHistory(
                service_id=result.id, avg_delay=store.ping, data=result.data,
                server_id=report.reporter, created_at=self._clock(),
            ))
            store.count = 0
            store.ping = result.delay
        stores[report.reporter] = store

    def _send(self, group_id: int, message: str, label: str) -> None:
        self._run(lambda: self._notifier.send(group_id, message, label))

    def _delay_check(self, report: Report, service: Service) -> None:
        if not service.latency_notify:
            return
        result = report.data
        group_id = service.notification_group_id
        min_label = MuteLabel.service_latency_min(result.id)
        max_label = MuteLabel.service_latency_max(result.id)
        reporter = self._reporter_name(report.reporter)
        if result.delay > service.max_latency:
            self._send(group_id, f"[Latency] {service.name} {result.delay:2f} > "
                       f"{service.max_latency:2f}, Reporter: {reporter}", min_label)
        elif result.delay < service.min_latency:
            self._send(group_id, f"[Latency] {service.name} {result.delay:2f} < "
                       f"{service.min_latency:2f}, Reporter: {reporter}", max_label)
        else:
            self._notifier.unmute(group_id, min_label)
            self._notifier.unmute(group_id, max_label)

    def _notify_check(
        self, report: Report, service: Service, last_status: int, state: Status
    ) -> None:
        result = report.data
        if service.notify and (last_status != 0 or state == Status.DOWN):
            group_id = service.notification_group_id
            message = (
                f"[{status_label(state)}] {service.name} Reporter: "
                f"{self._reporter_name(report.reporter)}, Error: {result.data}"
            )
            label = MuteLabel.service_state_changed(result.id)
            if state != last_status:
                self._notifier.unmute(group_id, label)
            self._send(group_id, message, label)

        if service.enable_trigger_task and last_status != 0 and self._crons is not None:
            crons = self._crons
            reporter = report.reporter
            if state == Status.GOOD and last_status != state:
                tasks = list(service.recover_trigger_tasks)
                self._run(lambda: crons.send_trigger_tasks(tasks, reporter))
            elif last_status == Status.GOOD and last_status != state:
                tasks = list(service.fail_trigger_tasks)
                self._run(lambda: crons.send_trigger_tasks(tasks, reporter))

    def _tls_check(self, result: TaskResult, service: Service, now: datetime) -> None:
        group_id = service.notification_group_id
        network_label = MuteLabel.service_tls(result.id, "network")
        data = result.data
        if data.startswith(TLS_ERROR_PREFIX):
            if not data.endswith(("timeout", "EOF", "timed out")) and service.notify:
                self._send(group_id, f"[TLS] Fetch cert info failed, Reporter: "
                           f"{service.name}, Error: {data}", network_label)
            return

        self._notifier.unmute(group_id, network_label)
        new_cert = data.split("|")
        if len(new_cert) < 2:
            return
        if not self._tls_cache.get(result.id):
            self._tls_cache[result.id] = data
        old_cert = self._tls_cache[result.id].split("|")
        expires_old = _parse_cert_time(old_cert[1])
        expires_new = _parse_cert_time(new_cert[1])

        changed = old_cert[0] != new_cert[0] and expires_new != expires_old
        if changed:
            self._tls_cache[result.id] = data

        if not service.notify:
            return
        if expires_new < now + timedelta(days=7):
            expires_text = _format_time(expires_new)
            message = (
                "The TLS certificate will expire within seven days. "
                f"Expiration time: {expires_text}"
            )
            label = MuteLabel.service_tls(result.id, f"expire_{expires_text}")
            self._send(group_id, f"[TLS] {service.name} {message}", label)
        if changed:
            message = (
                f"TLS certificate changed, old: issuer {old_cert[0]}, expires at "
                f"{_format_time(expires_old)}; new: issuer {new_cert[0]}, expires at "
                f"{_format_time(expires_new)}"
            )
            self._send(group_id, f"[TLS] {service.name} {message}", "")