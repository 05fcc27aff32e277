"""Hourly accounting of the network traffic reported by servers."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from .servers import Server


@dataclass(frozen=True)
class TransferRecord:
    """Traffic a server moved since its previous snapshot, stamped to the hour."""

    server_id: int
    in_: int
    out: int
    created_at: datetime


def _sub_checked(current: int, previous: int) -> int:
    return current - previous if current >= previous else 0


def _hour_of(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


def record_transfer_hourly_usage(
    servers: Iterable[Server], now: datetime
) -> list[TransferRecord]:
    """Take a traffic record for each server that moved data.

    The servers' snapshots advance to their current counters; servers with no
    state or no traffic since the last snapshot produce no record.
    """
    hour = _hour_of(now)
    records = []
    for server in servers:
        state = server.state
        if state is None:
            continue
        received = _sub_checked(state.net_in_transfer, server.prev_transfer_in_snapshot)
        sent = _sub_checked(state.net_out_transfer, server.prev_transfer_out_snapshot)
        if received == 0 and sent == 0:
            continue
        server.prev_transfer_in_snapshot = state.net_in_transfer
        server.prev_transfer_out_snapshot = state.net_out_transfer
        records.append(TransferRecord(server.id, received, sent, hour))
    return records