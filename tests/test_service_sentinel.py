from datetime import datetime, timedelta, timezone

import pytest

from nezha.notification import MuteLabel
from nezha.servers import Server, ServerRegistry
from nezha.service_sentinel import (
    CURRENT_STATUS_SIZE,
    DAILY_REFRESH_SPEC,
    Report,
    Service,
    ServiceHistory,
    ServiceSentinel,
    TaskResult,
    TaskType,
)

START = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
REPORTER = 7


class Clock:
    def __init__(self):
        self.now = START

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeScheduler:
    def __init__(self):
        self.jobs = {}
        self.removed = []
        self._next = 1

    def add(self, spec, job):
        if spec == "bad":
            raise ValueError("bad spec")
        job_id = self._next
        self._next += 1
        self.jobs[job_id] = (spec, job)
        return job_id

    def remove(self, job_id):
        self.removed.append(job_id)


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.unmuted = []

    def send(self, group_id, message, mute_label="", server=None):
        self.sent.append((group_id, message, mute_label))

    def unmute(self, group_id, mute_label):
        self.unmuted.append((group_id, mute_label))


class FakeCrons:
    def __init__(self):
        self.calls = []

    def send_trigger_tasks(self, task_ids, trigger_server):
        self.calls.append((list(task_ids), trigger_server))


def make(services, **kwargs):
    notifier = kwargs.pop("notifier", FakeNotifier())
    clock = kwargs.pop("clock", Clock())
    sentinel = ServiceSentinel(
        services,
        notifier=notifier,
        servers=ServerRegistry([Server(id=REPORTER, name="alpha")]),
        clock=clock,
        run=lambda fn: fn(),
        start_worker=False,
        **kwargs,
    )
    return sentinel, notifier, clock


def report(service_id=1, **kwargs):
    return Report(TaskResult(id=service_id, **kwargs), REPORTER)


def test_lists_and_sorting():
    sentinel, _, _ = make([Service(id=3, name="c"), Service(id=1, name="a")])
    assert [s.id for s in sentinel.get_sorted_list()] == [3, 1]
    sentinel.update_service_list()
    assert [s.id for s in sentinel.get_sorted_list()] == [1, 3]
    assert sorted(sentinel.get_list()) == [1, 3]
    assert sentinel.get(1).name == "a"
    assert sentinel.get(9) is None


def test_scheduler_jobs_dispatch_services():
    scheduler = FakeScheduler()
    dispatched = []
    service = Service(id=1, name="web", duration=60)
    make([service], scheduler=scheduler, dispatch_bus=dispatched.append)
    specs = [spec for spec, _ in scheduler.jobs.values()]
    assert service.cron_spec() in specs
    assert DAILY_REFRESH_SPEC in specs
    scheduler.jobs[service.cron_job_id][1]()
    assert dispatched == [service]


def test_update_replaces_job_and_bad_spec_raises():
    scheduler = FakeScheduler()
    old = Service(id=1, name="web")
    sentinel, _, _ = make([old], scheduler=scheduler)
    old_job = old.cron_job_id
    sentinel.update(Service(id=1, name="web2"))
    assert scheduler.removed == [old_job]
    assert sentinel.get(1).name == "web2"

    class Bad(Service):
        def cron_spec(self):
            return "bad"

    with pytest.raises(ValueError):
        sentinel.update(Bad(id=2))
    assert sentinel.get(2) is None


def test_update_new_and_delete():
    scheduler = FakeScheduler()
    sentinel, _, _ = make([], scheduler=scheduler)
    sentinel.update(Service(id=4, name="new"))
    assert 4 in sentinel.load_stats()
    job = sentinel.get(4).cron_job_id
    sentinel.delete([4])
    assert sentinel.get(4) is None
    assert 4 not in sentinel.load_stats()
    assert scheduler.removed == [job]


def test_unknown_service_report_is_ignored():
    sentinel, notifier, _ = make([Service(id=1, notify=True)])
    sentinel.process(report(service_id=99, data="x"))
    assert sentinel.load_stats()[1].up == [0] * 30
    assert notifier.sent == []


def test_first_report_counts_today_but_not_current():
    sentinel, _, clock = make([Service(id=1)])
    sentinel.process(report(successful=True, delay=5.0))
    clock.advance(1)
    sentinel.process(report(successful=True, delay=5.0))
    stats = sentinel.load_stats()[1]
    assert stats.up[-1] == 2
    assert stats.current_up == 1
    assert stats.total_up == sum(stats.up)


def test_trigger_tasks_on_state_change():
    crons = FakeCrons()
    service = Service(
        id=1, enable_trigger_task=True,
        fail_trigger_tasks=[11], recover_trigger_tasks=[12],
    )
    sentinel, _, clock = make([service], crons=crons)
    sentinel.process(report(successful=True))
    clock.advance(1)
    sentinel.process(report(successful=True))
    clock.advance(31)
    sentinel.process(report(successful=False))
    assert crons.calls == [([12], REPORTER), ([11], REPORTER)]


def test_latency_alert_and_clear():
    service = Service(id=1, name="web", latency_notify=True,
                      min_latency=1.0, max_latency=100.0, notification_group_id=2)
    sentinel, notifier, _ = make([service])
    sentinel.process(report(successful=True, delay=150.0))
    assert (2, "[Latency] web 150.000000 > 100.000000, Reporter: alpha",
            MuteLabel.service_latency_min(1)) in notifier.sent
    sentinel.process(report(successful=True, delay=50.0))
    assert (2, MuteLabel.service_latency_min(1)) in notifier.unmuted
    assert (2, MuteLabel.service_latency_max(1)) in notifier.unmuted


def test_ping_average_saved():
    saved = []
    sentinel, _, _ = make([Service(id=1)], save_history=saved.append, avg_ping_count=2)
    for delay in (10.0, 20.0):
        sentinel.process(report(type=TaskType.TCP_PING, successful=True, delay=delay))
    assert len(saved) == 1
    assert saved[0].avg_delay == pytest.approx(15.0)
    assert saved[0].server_id == REPORTER


def test_history_persisted_after_full_window():
    saved = []
    sentinel, _, clock = make([Service(id=1)], save_history=saved.append)
    for _ in range(CURRENT_STATUS_SIZE + 1):
        sentinel.process(report(successful=True, delay=1.0))
        clock.advance(31)
    aggregates = [r for r in saved if r.server_id == 0]
    assert len(aggregates) == 1
    assert aggregates[0].up == CURRENT_STATUS_SIZE
    assert aggregates[0].down == 0


def test_history_loading_and_refresh_shift():
    yesterday = START.replace(hour=0) - timedelta(hours=12)
    history = [
        ServiceHistory(service_id=1, up=5, down=1, server_id=0, created_at=yesterday),
        ServiceHistory(service_id=1, up=9, server_id=4, created_at=yesterday),
    ]
    sentinel, _, _ = make([Service(id=1)], history=history)
    stats = sentinel.load_stats()[1]
    assert stats.up[-2] == 5
    assert stats.total_up == sum(stats.up)
    sentinel.refresh_monthly()
    stats = sentinel.load_stats()[1]
    assert stats.up[-3] == 5
    assert stats.up[-2] == 0
    assert stats.total_up == sum(stats.up)
    assert stats.total_down == sum(stats.down)


def test_copy_stats_filters_and_copies():
    sentinel, _, _ = make([
        Service(id=1, name="shown"),
        Service(id=2, name="hidden", enable_show_in_service=False),
    ])
    copied = sentinel.copy_stats()
    assert list(copied) == [1]
    assert copied[1].service_name == "shown"
    copied[1].up[0] = 99
    assert sentinel.load_stats()[1].up[0] == 0


def test_tls_fetch_error():
    sentinel, notifier, _ = make([Service(id=1, name="web", notify=True)])
    sentinel.process(report(data="SSL证书错误：handshake failure"))
    labels = [label for _, _, label in notifier.sent]
    assert MuteLabel.service_tls(1, "network") in labels
    notifier.sent.clear()
    sentinel.process(report(data="SSL证书错误：i/o timeout"))
    assert all(label != MuteLabel.service_tls(1, "network")
               for _, _, label in notifier.sent)


def test_tls_expiring_certificate():
    sentinel, notifier, _ = make([Service(id=1, name="web", notify=True)])
    sentinel.process(report(successful=True, data="Example CA|2000-01-01 00:00:00 +0000 UTC"))
    label = MuteLabel.service_tls(1, "expire_2000-01-01 00:00:00")
    messages = [m for _, m, lab in notifier.sent if lab == label]
    assert len(messages) == 1
    assert "will expire within seven days" in messages[0]


def test_tls_certificate_changed():
    sentinel, notifier, _ = make([Service(id=1, name="web", notify=True)])
    sentinel.process(report(successful=True, data="A|2099-01-01 00:00:00 +0000 UTC"))
    assert not any("changed" in m for _, m, _ in notifier.sent)
    sentinel.process(report(successful=True, data="B|2099-06-01 00:00:00 +0000 UTC"))
    changed = [m for _, m, _ in notifier.sent if "TLS certificate changed" in m]
    assert len(changed) == 1
    assert "issuer A" in changed[0] and "issuer B" in changed[0]


def test_dispatch_through_worker():
    sentinel = ServiceSentinel(
        [Service(id=1)], notifier=FakeNotifier(), clock=Clock(), run=lambda fn: fn()
    )
    with sentinel:
        sentinel.dispatch(report(successful=True))
        sentinel.dispatch(report(successful=False))
    stats = sentinel.load_stats()[1]
    assert stats.up[-1] == 1
    assert stats.down[-1] == 1