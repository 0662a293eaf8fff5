"""Follow submitted requests to finality.

Per request id: DISPATCHED -> PENDING -> {CONFIRMED, FAILED}. Only the ledger can
resolve a submission, so there is no client-side timeout: a request the ledger
never finalizes stays PENDING for as long as anyone waits on it.

Finality arrives two ways: ``wait()`` polls the service, and ``observe()`` takes
events pushed over the websocket. Whichever lands first wins; the first terminal
observation per id is the only one that reaches listeners. Finalized requests leave
the live table; their outcome is remembered in a bounded history for de-duplication.
"""
import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

import timeflow.constants as C
from timeflow.errors import RemoteUnavailable
from timeflow.remote import LedgerService

log = logging.getLogger("timeflow.tracker")

TERMINAL_STATE = {C.TrackState.CONFIRMED, C.TrackState.FAILED}

_OUTCOME = {
    C.Finality.CONFIRMED: C.TrackState.CONFIRMED,
    C.Finality.FAILED: C.TrackState.FAILED,
}
_FINALITY = {v: k for k, v in _OUTCOME.items()}

TerminalListener = Callable[[str, C.Finality], None]


@dataclass(slots=True)
class Tracked:
    request_id: str
    future: asyncio.Future
    state: C.TrackState = C.TrackState.DISPATCHED
    polls: int = 0
    source: str | None = None
    created_at: float = field(default_factory=time.time)
    finalized_at: float | None = None

    def __str__(self):
        return f"{self.request_id} -- {self.state}"


class ConfirmationTracker:
    def __init__(
        self,
        service: LedgerService,
        *,
        poll_interval: float = C.POLL_INTERVAL,
        finalized_history: int = C.FINALIZED_HISTORY,
    ):
        self.service = service
        self.poll_interval = poll_interval
        self.finalized_history = finalized_history
        self.last_seen: str | None = None
        self._tracked: dict[str, Tracked] = {}
        self._finalized: OrderedDict[str, C.TrackState] = OrderedDict()
        self._listeners: list[TerminalListener] = []

    def track(self, request_id: str) -> Tracked:
        t = self._tracked.get(request_id)
        if t is None:
            t = Tracked(request_id=request_id, future=asyncio.get_running_loop().create_future())
            self._tracked[request_id] = t
            log.debug("%s --> %s  %s", None, t.state, request_id)
        if t.state == C.TrackState.DISPATCHED:
            # the id is known, so the request is pending from here on
            t.state = C.TrackState.PENDING
            log.debug("%s --> %s  %s", C.TrackState.DISPATCHED, t.state, request_id)
        return t

    def status(self, request_id: str) -> C.TrackState | None:
        t = self._tracked.get(request_id)
        return t.state if t else self._finalized.get(request_id)

    def knows(self, request_id: str) -> bool:
        return request_id in self._tracked or request_id in self._finalized

    def pending(self) -> list[str]:
        return list(self._tracked)

    def on_terminal(self, listener: TerminalListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def observe(self, request_id: str, finality: C.Finality, *, source: str = "poll") -> bool:
        """Record a finality report. Returns True only for the first terminal report of an id."""
        if request_id in self._finalized:
            log.debug("duplicate %s for %s via %s ignored (already %s)", finality, request_id, source, self._finalized[request_id])
            return False
        t = self._tracked.get(request_id)
        if t is None:
            log.debug("finality for untracked request %s ignored", request_id)
            return False
        if finality == C.Finality.PENDING:
            return False
        if request_id == self.last_seen or t.state in TERMINAL_STATE:
            log.debug("duplicate %s for %s via %s ignored (already %s)", finality, request_id, source, t.state)
            return False

        prev = t.state
        t.state = _OUTCOME[finality]
        t.source = source
        t.finalized_at = time.time()
        self.last_seen = request_id
        log.debug("%s --> %s  %s (via %s)", prev, t.state, request_id, source)
        self._retire(t)

        if not t.future.done():
            t.future.set_result(finality)
        for listener in list(self._listeners):
            try:
                listener(request_id, finality)
            except Exception:
                log.exception("terminal listener failed for %s", request_id)
        return True

    def _retire(self, t: Tracked) -> None:
        self._tracked.pop(t.request_id, None)
        self._finalized[t.request_id] = t.state
        while len(self._finalized) > self.finalized_history:
            self._finalized.popitem(last=False)

    async def check_finality(self, request_id: str) -> C.TrackState:
        """One poll of the service. Transport trouble leaves the request pending."""
        if request_id in self._finalized:
            return self._finalized[request_id]
        t = self.track(request_id)
        if t.state in TERMINAL_STATE:
            return t.state
        try:
            finality = await self.service.finality(request_id)
        except RemoteUnavailable as e:
            log.warning("finality check for %s failed, still pending: %s", request_id, e)
            return t.state
        t.polls += 1
        self.observe(request_id, finality, source="poll")
        return t.state

    async def wait(self, request_id: str) -> C.Finality:
        """Block until the request is confirmed or failed. Cancel the awaiting task to stop."""
        if request_id in self._finalized:
            return _FINALITY[self._finalized[request_id]]
        t = self.track(request_id)
        while t.state not in TERMINAL_STATE:
            await self.check_finality(request_id)
            if t.state in TERMINAL_STATE:
                break
            try:
                # a pushed event resolves the future and cuts the interval short
                await asyncio.wait_for(asyncio.shield(t.future), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        return _FINALITY[t.state]

    def snapshot_stats(self) -> dict:
        states = [t.state for t in self._tracked.values()] + list(self._finalized.values())
        return {
            "tracked": len(states),
            "live": len(self._tracked),
            "by_state": {s.value: states.count(s) for s in C.TrackState if s in states},
            "last_seen": self.last_seen,
        }
