"""Shared, debounced refresh signal.

``trigger_refresh()`` asks every reader subscription to resync once the ledger
has had time to settle. ``generation`` is the only cross-component state: it only
ever goes up, by exactly one per settled trigger window.
"""
import asyncio
import logging
from collections.abc import Callable

import timeflow.constants as C

log = logging.getLogger("timeflow.refresh")

Listener = Callable[[int], None]


class RefreshCoordinator:
    def __init__(self, settlement_delay: float = C.SETTLEMENT_DELAY):
        self.settlement_delay = settlement_delay
        self._generation = 0
        self._listeners: list[Listener] = []
        self._timer: asyncio.TimerHandle | None = None
        self.coalesced = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def trigger_refresh(self) -> None:
        if self._timer is not None:
            # Already waiting out a settlement window; fold into it.
            self.coalesced += 1
            log.debug("refresh trigger coalesced (%d so far)", self.coalesced)
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.settlement_delay, self._fire)
        log.debug("refresh scheduled in %.2fs", self.settlement_delay)

    def _fire(self) -> None:
        self._timer = None
        self._generation += 1
        log.debug("refresh generation -> %d", self._generation)
        for listener in list(self._listeners):
            try:
                listener(self._generation)
            except Exception:
                log.exception("refresh listener failed at generation %d", self._generation)

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._listeners.clear()
