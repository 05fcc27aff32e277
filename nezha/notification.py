"""Notification groups, delivery and repeat-suppression of alerts."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Optional

from .registry import Registry

log = logging.getLogger(__name__)

FIRST_NOTIFICATION_DELAY = 15 * 60.0
MAX_NOTIFICATION_DELAY = 24 * 60 * 60.0
_CACHE_GRACE = 10 * 60.0


class MuteLabel:
    """Builders of the keys under which repeated notifications are muted."""

    @staticmethod
    def ip_changed(server_id: int) -> str:
        return f"bf::ic-{server_id}"

    @staticmethod
    def server_incident(alert_id: int, server_id: int) -> str:
        return f"bf::sei-{alert_id}-{server_id}"

    @staticmethod
    def server_incident_resolved(alert_id: int, server_id: int) -> str:
        return f"bf::seir-{alert_id}-{server_id}"

    @staticmethod
    def service_latency_min(service_id: int) -> str:
        return f"bf::sln-{service_id}"

    @staticmethod
    def service_latency_max(service_id: int) -> str:
        return f"bf::slm-{service_id}"

    @staticmethod
    def service_state_changed(service_id: int) -> str:
        return f"bf::ssc-{service_id}"

    @staticmethod
    def service_tls(service_id: int, extra: str) -> str:
        return f"bf::stls-{service_id}-{extra}"

    @staticmethod
    def with_group(label: str, group_name: str) -> str:
        return f"{label}:{group_name}"


@dataclass
class Notification:
    """A configured notification channel."""

    id: int
    name: str
    user_id: int = 0


@dataclass(frozen=True)
class NotificationHistory:
    """How long a muted label stays quiet, and until when."""

    duration: float
    until: float


class MuteCache:
    """A small key/value store whose entries expire after a time to live."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._items: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        """The live value under ``key``, or None."""
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires = item
            if self._clock() >= expires:
                del self._items[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store ``value`` for ``ttl`` seconds."""
        with self._lock:
            self._items[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


Deliver = Callable[[Notification, str, Optional[Any]], None]


def _by_id(notification: Notification) -> int:
    return notification.id


class NotificationCenter(Registry[int, Notification]):
    """Notification channels, their groups and the sending of messages."""

    def __init__(
        self,
        deliver: Deliver,
        notifications: Iterable[Notification] = (),
        groups: Optional[Mapping[int, str]] = None,
        memberships: Iterable[tuple[int, int]] = (),
        cache: Optional[MuteCache] = None,
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ) -> None:
        super().__init__({n.id: n for n in notifications})
        self._resort(_by_id)
        self._deliver = deliver
        self._clock = clock
        self._cache = cache if cache is not None else MuteCache(clock)
        self.debug = debug
        self._group_lock = threading.RLock()
        self._groups: dict[int, str] = dict(groups or {})
        self._group_members: dict[int, dict[int, Optional[Notification]]] = {}
        self._member_of: dict[int, set[int]] = {}
        for group_id, notification_id in memberships:
            members = self._group_members.setdefault(group_id, {})
            notification = self._entries.get(notification_id)
            if notification is not None:
                members[notification_id] = notification
                self._member_of.setdefault(notification_id, set()).add(group_id)

    def update(self, notification: Notification) -> None:
        """Add or replace a channel, refreshing the groups it belongs to."""
        with self._lock:
            known = notification.id in self._entries
            self._entries[notification.id] = notification
            if known:
                for group_id in self._member_of.get(notification.id, ()):
                    members = self._group_members.get(group_id)
                    if members is not None:
                        members[notification.id] = notification
        self._resort(_by_id)

    def update_group(
        self, group_id: int, name: str, notification_ids: Iterable[int]
    ) -> None:
        """Create or rename a group and set its member channels."""
        ids = list(notification_ids)
        with self._group_lock, self._lock:
            self._groups[group_id] = name
            old_ids = set(self._group_members.get(group_id, {}))
            members: dict[int, Optional[Notification]] = {}
            for notification_id in ids:
                members[notification_id] = self._entries.get(notification_id)
                self._member_of.setdefault(notification_id, set()).add(group_id)
            self._group_members[group_id] = members
            for old_id in old_ids - members.keys():
                groups = self._member_of.get(old_id)
                if groups is not None:
                    groups.discard(group_id)
                    if not groups:
                        del self._member_of[old_id]

    def delete(self, ids: Iterable[int]) -> None:
        """Remove channels and drop them from every group."""
        with self._lock:
            for notification_id in ids:
                self._entries.pop(notification_id, None)
                for group_id in self._member_of.pop(notification_id, ()):
                    members = self._group_members.get(group_id)
                    if members is not None:
                        members.pop(notification_id, None)
        self._resort(_by_id)

    def delete_group(self, group_ids: Iterable[int]) -> None:
        with self._group_lock, self._lock:
            for group_id in group_ids:
                self._groups.pop(group_id, None)
                self._group_members.pop(group_id, None)

    def group_name(self, group_id: int) -> str:
        """Name of the group, empty when unknown."""
        with self._group_lock:
            return self._groups.get(group_id, "")

    def unmute(self, group_id: int, mute_label: str) -> None:
        """Forget the mute state of ``mute_label`` in the group."""
        self._cache.delete(MuteLabel.with_group(mute_label, self.group_name(group_id)))

    def send(
        self,
        group_id: int,
        message: str,
        mute_label: str = "",
        server: Optional[Any] = None,
    ) -> bool:
        """Send ``message`` to every channel of the group.

        A non-empty ``mute_label`` suppresses repeats: each repeat doubles the
        quiet period, up to one day. Returns False when the message was muted.
        """
        if mute_label:
            label = MuteLabel.with_group(mute_label, self.group_name(group_id))
            if not self._unmuted(label):
                if self.debug:
                    log.debug("Muted repeated notification %s %s", message, label)
                return False

        with self._lock:
            targets = [
                n for n in self._group_members.get(group_id, {}).values() if n is not None
            ]
        for notification in targets:
            log.info("Try to notify %s", notification.name)
        for notification in targets:
            try:
                self._deliver(notification, message, server)
            except Exception as exc:  # noqa: BLE001 - one channel must not stop the rest
                log.warning("Sending notification to %s failed: %s", notification.name, exc)
            else:
                log.info("Sending notification to %s succeeded", notification.name)
        return True

    def _unmuted(self, label: str) -> bool:
        now = self._clock()
        history = self._cache.get(label)
        if history is None:
            self._cache.set(
                label,
                NotificationHistory(FIRST_NOTIFICATION_DELAY, now + FIRST_NOTIFICATION_DELAY),
                FIRST_NOTIFICATION_DELAY + _CACHE_GRACE,
            )
            return True
        if now > history.until:
            duration = min(history.duration * 2, MAX_NOTIFICATION_DELAY)
            self._cache.set(
                label,
                NotificationHistory(duration, now + duration),
                duration + _CACHE_GRACE,
            )
            return True
        return False