"""Tracking of users connected to the dashboard."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass
class OnlineUser:
    """A live dashboard connection."""

    user_id: int
    ip: str
    connected_at: datetime
    conn: Optional[Any] = None


class OnlineUserRegistry:
    """Online users keyed by connection id."""

    def __init__(self) -> None:
        self._users: dict[str, OnlineUser] = {}
        self._lock = threading.Lock()

    def add(self, conn_id: str, user: OnlineUser) -> None:
        with self._lock:
            self._users[conn_id] = user

    def remove(self, conn_id: str) -> None:
        with self._lock:
            self._users.pop(conn_id, None)

    def block_ips(self, ips: Iterable[str], block: Callable[[str], None]) -> None:
        """Block each IP with ``block`` and close that IP's open connections.

        An error raised by ``block`` stops the run and propagates.
        """
        with self._lock:
            for ip in ips:
                block(ip)
                for user in self._users.values():
                    if user.ip == ip and user.conn is not None:
                        user.conn.close()

    def page(self, limit: int, offset: int) -> list[OnlineUser]:
        """Users ordered by connection time, ``limit`` of them from ``offset``."""
        with self._lock:
            users = sorted(self._users.values(), key=lambda u: u.connected_at)
        if offset > len(users):
            return []
        return users[offset : offset + limit]

    def count(self) -> int:
        with self._lock:
            return len(self._users)