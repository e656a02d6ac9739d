import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Advisory:
    advisory_id: int
    message: str
    level: str = "info"


class AdvisoryCenter:
    """Dismissible, auto-expiring banner messages for recoverable problems."""

    def __init__(self, default_ttl: float = 5.0,
                 on_change: Optional[Callable[[List[Advisory]], None]] = None):
        self.default_ttl = default_ttl
        self._on_change = on_change
        self._active: Dict[int, Advisory] = {}
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._ids = itertools.count(1)

    @property
    def active(self) -> List[Advisory]:
        return list(self._active.values())

    def post(self, message: str, level: str = "info", ttl: Optional[float] = None) -> Advisory:
        advisory = Advisory(advisory_id=next(self._ids), message=message, level=level)
        self._active[advisory.advisory_id] = advisory
        log = logger.warning if level in ("warning", "error") else logger.info
        log(f"Advisory: {message}")

        ttl = self.default_ttl if ttl is None else ttl
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None and ttl > 0:
            self._timers[advisory.advisory_id] = loop.call_later(
                ttl, self.dismiss, advisory.advisory_id)

        self._notify()
        return advisory

    def dismiss(self, advisory_id: int) -> None:
        timer = self._timers.pop(advisory_id, None)
        if timer is not None:
            timer.cancel()
        if self._active.pop(advisory_id, None) is not None:
            self._notify()

    def clear(self) -> None:
        for advisory_id in list(self._active):
            self.dismiss(advisory_id)

    def _notify(self) -> None:
        if self._on_change:
            self._on_change(self.active)
