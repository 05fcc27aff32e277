"""Monitored servers and their ordering for display."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .registry import Registry

log = logging.getLogger(__name__)

DDNSUpdater = Callable[["Server", Optional[Any]], None]


@dataclass
class Server:
    """A server reporting to the dashboard through an agent."""

    id: int = 0
    uuid: str = ""
    name: str = ""
    user_id: int = 0
    display_index: int = 0
    hide_for_guest: bool = False
    enable_ddns: bool = False
    ddns_profiles: list[int] = field(default_factory=list)
    override_ddns_domains: dict[int, list[str]] = field(default_factory=dict)
    host: Optional[Any] = None
    state: Optional[Any] = None
    geoip: Optional[Any] = None
    last_active: Optional[datetime] = None
    prev_transfer_in_snapshot: int = 0
    prev_transfer_out_snapshot: int = 0
    task_stream: Optional[Any] = None


def _display_order(server: Server) -> tuple[int, int]:
    return (-server.display_index, server.id)


class ServerRegistry(Registry[int, Server]):
    """Servers by id, sorted by display index (highest first) then id."""

    def __init__(
        self,
        servers: Iterable[Server] = (),
        ddns_updater: Optional[DDNSUpdater] = None,
    ) -> None:
        servers = list(servers)
        super().__init__({s.id: s for s in servers})
        self._uuid_to_id = {s.uuid: s.id for s in servers}
        self._ddns_updater = ddns_updater
        self._guest: list[Server] = []
        self._sort()

    def update(self, server: Server, uuid: str = "") -> None:
        """Add or replace a server, registering ``uuid`` when given."""
        with self._lock:
            self._entries[server.id] = server
            if uuid:
                self._uuid_to_id[uuid] = server.id
        if server.enable_ddns:
            try:
                self.update_ddns(server)
            except Exception as exc:  # noqa: BLE001 - DDNS failure is not fatal
                log.warning("Failed to update DDNS for server %d: %s", server.id, exc)
        self._sort()

    def update_ddns(self, server: Server, ip: Optional[Any] = None) -> None:
        """Push the server's address to its DDNS profiles."""
        if self._ddns_updater is not None:
            self._ddns_updater(server, ip)

    def delete(self, ids: Iterable[int]) -> None:
        with self._lock:
            for server_id in ids:
                server = self._entries.pop(server_id, None)
                if server is not None:
                    self._uuid_to_id.pop(server.uuid, None)
        self._sort()

    def sorted_for_guest(self) -> list[Server]:
        """The sorted servers that guests are allowed to see."""
        with self._sorted_lock:
            return list(self._guest)

    def id_for_uuid(self, uuid: str) -> Optional[int]:
        with self._lock:
            return self._uuid_to_id.get(uuid)

    def _sort(self) -> None:
        with self._lock:
            ordered = sorted(self._entries.values(), key=_display_order)
            with self._sorted_lock:
                self._sorted = ordered
                self._guest = [s for s in ordered if not s.hide_for_guest]