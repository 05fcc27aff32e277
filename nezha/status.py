"""Availability status codes for monitored services."""

from __future__ import annotations

import enum
from typing import Union


class Status(enum.IntEnum):
    """Service availability state."""

    NO_DATA = 1
    GOOD = 2
    LOW_AVAILABILITY = 3
    DOWN = 4


_LABELS = {
    Status.NO_DATA: "No Data",
    Status.GOOD: "Good",
    Status.LOW_AVAILABILITY: "Low Availability",
    Status.DOWN: "Down",
}


def status_from_percent(percent: Union[int, float]) -> Status:
    """Map an up-time percentage to a status."""
    if percent == 0:
        return Status.NO_DATA
    if percent > 95:
        return Status.GOOD
    if percent > 80:
        return Status.LOW_AVAILABILITY
    return Status.DOWN


def status_label(code: int) -> str:
    """Human readable label of a status code, empty for unknown codes."""
    try:
        return _LABELS[Status(code)]
    except ValueError:
        return ""