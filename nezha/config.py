"""Dashboard settings that decide who receives IP change notifications."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field

_UINT64_MAX = 2**64 - 1
_DIGITS = re.compile(r"[0-9]+")


class IPChangeCover(enum.IntEnum):
    """How the list of ignored server ids is applied."""

    ALL = 0
    IGNORE_ALL = 1


def parse_ignored_server_ids(value: str) -> frozenset[int]:
    """Parse a comma separated list of server ids, dropping invalid or zero ids."""
    ids = set()
    if not value:
        return frozenset()
    for part in value.split(","):
        if not _DIGITS.fullmatch(part):
            continue
        server_id = min(int(part), _UINT64_MAX)
        if server_id > 0:
            ids.add(server_id)
    return frozenset(ids)


@dataclass
class NotificationConfig:
    """IP change notification settings."""

    enable_ip_change_notification: bool = False
    ip_change_notification_group_id: int = 0
    cover: IPChangeCover = IPChangeCover.ALL
    ignored_ip_notification: str = ""
    enable_plain_ip_in_notification: bool = False
    ignored_server_ids: frozenset[int] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        self.cover = IPChangeCover(self.cover)
        if self.ignored_ip_notification:
            self.ignored_server_ids = parse_ignored_server_ids(
                self.ignored_ip_notification
            )

    def is_ip_change_notified(self, server_id: int) -> bool:
        """Whether an IP change of ``server_id`` should be reported."""
        if not self.enable_ip_change_notification:
            return False
        ignored = server_id in self.ignored_server_ids
        if self.cover is IPChangeCover.ALL:
            return not ignored
        return ignored