from __future__ import annotations

"""Injectable "now" provider.

Evaluators never read the system clock themselves; services receive a
``Clock`` and tests pass a fixed one.
"""

from datetime import datetime, timezone
from typing import Callable, TypeAlias

Clock: TypeAlias = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def fixed_clock(moment: datetime) -> Clock:
    """Return a clock that always reports ``moment`` (made UTC-aware if naive)."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return lambda: moment
