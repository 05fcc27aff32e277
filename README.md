# nezha

The server-side core of a server monitoring dashboard. It keeps track of the
servers that report to it and of the services it monitors. It sends
notifications and stops them from repeating too often. It sends command tasks
to agents and passes bytes between a user and an agent.

It is a library. It uses only the standard library and has no command-line
program.

## Modules

- `nezha.registry.Registry`: a keyed collection that is safe to use from
  several threads. It also keeps a sorted copy of its values. Methods: `get`,
  `get_list`, `get_sorted_list`, `items` and `check_permission`.
- `nezha.servers.ServerRegistry`: servers by id. They are sorted by
  `display_index` (highest first) and then by id. `id_for_uuid` finds a server
  by UUID. `sorted_for_guest` leaves out servers that have `hide_for_guest` set.
  If the registry is given a DDNS updater callable, `update` calls it for
  servers that have `enable_ddns` set.
- `nezha.nat.NATRegistry`: NAT profiles looked up by domain (`by_domain`). It
  also maps a profile id back to its domain (`domain_of`).
- `nezha.crontask.CronRegistry`: command tasks. Scheduled tasks are registered
  with the scheduler object you pass in. Any task whose spec the scheduler
  rejects with `ValueError` is left out, and its notification group is told.
  `trigger` sends a task's command down the task stream of each server it
  covers (see `CronCover`). A server with no task stream gets an "offline"
  notification instead. `send_trigger_tasks` runs the given tasks for the
  server that triggered them.
- `nezha.notification.NotificationCenter`: notification channels and their
  groups. `send` passes a message to a `deliver` callable once for each channel
  in the group. If you give a mute label, repeats are held back: the first
  message goes out, and after that the quiet period starts at 15 minutes and
  doubles each time, up to one day. `send` returns `False` when it held a
  message back. `unmute` clears the mute state for a label. `MuteLabel` builds
  the labels and `MuteCache` stores them with a time to live.
- `nezha.status`: `Status`, `status_from_percent` and `status_label`.
- `nezha.service_sentinel.ServiceSentinel`: collects the probe results
  (`TaskResult`) that agents report for each `Service`. It keeps today's figures,
  the latest 30 results and a 30-day history, and works out each service's
  `Status`. It sends notifications about latency limits, status changes and TLS
  certificate errors, changes and certificates close to expiry. It can run
  recover and fail trigger tasks. Reports are queued with `dispatch` and
  handled by a worker thread. You can also pass them straight to `process`.
  It can be used as a context manager, and `close` stops the worker.
- `nezha.transfer.record_transfer_hourly_usage`: turns servers' network
  counters into `TransferRecord` rows stamped to the hour, and moves each
  server's snapshot forward.
- `nezha.handler.AgentHandler`: applies the state reports, host information
  and task results that agents send. This covers scheduled task results,
  config reports and service probe results.
- `nezha.config`: `parse_ignored_server_ids` and `NotificationConfig`, which
  decide which servers' IP changes are reported.
- `nezha.online_users.OnlineUserRegistry`: connected dashboard users. It can
  list them page by page, ordered by connection time. `block_ips` blocks IPs
  and closes their connections.
- `nezha.iostream.StreamHub`: pairs a user stream with an agent stream and
  copies bytes in both directions.

## Example: service status

```python
from nezha.status import Status, status_from_percent, status_label

code = status_from_percent(97)
assert code is Status.GOOD
print(status_label(code))  # Good
```

## Example: muted notifications

```python
from nezha.notification import Notification, NotificationCenter

def deliver(notification, message, server):
    print(f"{notification.name}: {message}")

center = NotificationCenter(
    deliver,
    notifications=[Notification(1, "ops")],
    groups={10: "admins"},
    memberships=[(10, 1)],
)
assert center.send(10, "disk full", "bf::disk-1") is True
assert center.send(10, "disk full", "bf::disk-1") is False  # muted for 15 minutes
```

## Example: stream relay

```python
from nezha.iostream import StreamHub

# user_side and agent_side are objects with read(size), write(data) and close()
hub = StreamHub()
hub.create_stream("stream-1")
hub.user_connected("stream-1", user_side)
hub.agent_connected("stream-1", agent_side)
hub.start_stream("stream-1", timeout=10)  # blocks until one side ends
```

`start_stream` raises `StreamTimeout` if both sides have not connected before
the timeout. It raises `StreamNotFound` if the stream id is not known.

## What it does not do

- It does not store anything. History rows, transfer records and task results
  are passed to callables you supply.
- It has no network server and no wire protocol for agents. It does not check
  agent credentials.
- It does not keep users or roles, and it does not evaluate alert rules on
  server metrics.
- It does not run cron schedules itself. You pass in a scheduler object with
  `add(spec, job)` and `remove(job_id)`.
- It has no command-line program and no web interface.

## Running the tests

```
pip install -e .[test]
pytest
```