"""Intranet penetration (NAT) profiles looked up by domain."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional

from .registry import Registry


@dataclass
class NATProfile:
    """A domain forwarded to a host behind an agent."""

    id: int
    name: str
    domain: str
    server_id: int = 0
    host: str = ""
    enabled: bool = True
    user_id: int = 0


def _by_id(profile: NATProfile) -> int:
    return profile.id


class NATRegistry(Registry[str, NATProfile]):
    """NAT profiles keyed by domain, with a reverse map from id to domain."""

    def __init__(self, profiles: Iterable[NATProfile] = ()) -> None:
        profiles = list(profiles)
        super().__init__({p.domain: p for p in profiles})
        self._id_to_domain = {p.id: p.domain for p in profiles}
        self._resort(_by_id)

    def update(self, profile: NATProfile) -> None:
        """Add or replace a profile; a changed domain drops the old one."""
        with self._lock:
            old_domain = self._id_to_domain.get(profile.id)
            if old_domain is not None and old_domain != profile.domain:
                self._entries.pop(old_domain, None)
            self._entries[profile.domain] = profile
            self._id_to_domain[profile.id] = profile.domain
        self._resort(_by_id)

    def delete(self, ids: Iterable[int]) -> None:
        with self._lock:
            for profile_id in ids:
                domain = self._id_to_domain.pop(profile_id, None)
                if domain is not None:
                    self._entries.pop(domain, None)
        self._resort(_by_id)

    def by_domain(self, domain: str) -> Optional[NATProfile]:
        return self.get(domain)

    def domain_of(self, profile_id: int) -> str:
        """Domain of the profile, empty when unknown."""
        with self._lock:
            return self._id_to_domain.get(profile_id, "")