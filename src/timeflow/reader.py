"""Point-in-time reads of vault quantities, and subscriptions that keep them fresh.

A subscription holds the last good snapshot of one query. Each fetch is tagged
with the subscription's generation counter when it is issued; a result that lands
after a newer fetch was issued is dropped, so an explicit ``refetch()`` after a
confirmation always overwrites whatever older read was still in flight.
"""
import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import timeflow.constants as C
from timeflow.errors import MalformedSnapshot, RemoteUnavailable
from timeflow.identity import IdentityProvider
from timeflow.models import PARSERS
from timeflow.notify import NotificationSink
from timeflow.refresh import RefreshCoordinator
from timeflow.remote import LedgerService

log = logging.getLogger("timeflow.reader")


@dataclass(frozen=True, slots=True)
class Query:
    name: str
    key: Any = None

    def __str__(self):
        return self.name if self.key is None else f"{self.name}({self.key})"


class LedgerReader:
    def __init__(
        self,
        service: LedgerService,
        *,
        sink: NotificationSink | None = None,
        coordinator: RefreshCoordinator | None = None,
        identity: IdentityProvider | None = None,
        refetch_delay: float = C.REFETCH_DELAY,
    ):
        self.service = service
        self.sink = sink
        self.coordinator = coordinator
        self.identity = identity
        self.refetch_delay = refetch_delay
        self.subscriptions: list[Subscription] = []

    async def fetch(self, query: Query) -> Any:
        """Read one quantity. Raises RemoteUnavailable or MalformedSnapshot."""
        raw = await self.service.query(query.name, query.key)
        parser = PARSERS.get(query.name)
        return parser(raw) if parser else raw

    def subscribe(
        self,
        name: str,
        key: Any = None,
        *,
        keyed: bool = False,
        follow_identity: bool = False,
        on_update: Callable[[Any], None] | None = None,
    ) -> "Subscription":
        """Create a subscription. ``keyed`` queries without a key never dispatch.

        ``follow_identity`` takes the key from the identity provider and re-derives
        it whenever the participant changes.
        """
        sub = Subscription(self, name, key, keyed=keyed or follow_identity, follow_identity=follow_identity, on_update=on_update)
        self.subscriptions.append(sub)
        return sub

    def _report(self, query: Query, err: RemoteUnavailable) -> None:
        log.warning("Read %s failed, keeping last snapshot: %s", query, err)
        if self.sink is not None:
            self.sink.notify(C.Severity.ERROR, f"Ledger unavailable while reading {query.name}")

    def _forget(self, sub: "Subscription") -> None:
        if sub in self.subscriptions:
            self.subscriptions.remove(sub)

    def close(self) -> None:
        for sub in list(self.subscriptions):
            sub.close()


class Subscription:
    def __init__(
        self,
        reader: LedgerReader,
        name: str,
        key: Any = None,
        *,
        keyed: bool = False,
        follow_identity: bool = False,
        on_update: Callable[[Any], None] | None = None,
    ):
        self.reader = reader
        self.name = name
        self._key = key
        self.keyed = keyed
        self.follow_identity = follow_identity
        self.on_update = on_update

        self.value: Any = None
        self.fetched_at: float | None = None
        self.last_error: str | None = None
        self.closed = False
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe: list[Callable[[], None]] = []

        if reader.coordinator is not None:
            self._unsubscribe.append(reader.coordinator.subscribe(self._on_refresh))
        if follow_identity and reader.identity is not None:
            self._unsubscribe.append(reader.identity.on_change(self._on_identity))

    @property
    def key(self) -> Any:
        if self.follow_identity:
            return self.reader.identity.address if self.reader.identity is not None else None
        return self._key

    @property
    def query(self) -> Query:
        return Query(self.name, self.key)

    @property
    def enabled(self) -> bool:
        return not self.closed and not (self.keyed and self.key is None)

    @property
    def generation(self) -> int:
        return self._generation

    def set_key(self, key: Any) -> None:
        """Point the subscription at a different key; the old snapshot no longer applies."""
        if key == self._key:
            return
        self._key = key
        self._invalidate()

    async def refetch(self) -> Any:
        """Fetch now and return the freshest snapshot this subscription holds."""
        if not self.enabled:
            log.debug("Not dispatching %s: disabled", self.query)
            return self.value

        self._generation += 1
        gen = self._generation
        query = self.query
        try:
            snapshot = await self.reader.fetch(query)
        except RemoteUnavailable as e:
            if self._current(gen):
                self.last_error = str(e)
                self.reader._report(query, e)
            return self.value
        except MalformedSnapshot as e:
            log.warning("Ignoring malformed %s snapshot: %s", query, e)
            if self._current(gen):
                self.last_error = str(e)
            return self.value

        if not self._current(gen):
            log.debug("Dropping superseded %s result (gen %d < %d)", query, gen, self._generation)
            return self.value

        self.value = snapshot
        self.fetched_at = time.time()
        self.last_error = None
        self._publish(snapshot)
        return snapshot

    def _publish(self, value: Any) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(value)
        except Exception:
            log.exception("on_update failed for %s", self.query)

    def _current(self, gen: int) -> bool:
        return not self.closed and gen == self._generation

    def schedule_refetch(self, delay: float | None = None) -> asyncio.Task | None:
        if not self.enabled:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop; %s will refresh on next explicit refetch", self.query)
            return None
        task = loop.create_task(self._delayed_refetch(delay), name=f"refetch:{self.query}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _delayed_refetch(self, delay: float | None) -> None:
        await asyncio.sleep(self.reader.refetch_delay if delay is None else delay)
        await self.refetch()

    def _on_refresh(self, generation: int) -> None:
        log.debug("%s following refresh generation %d", self.query, generation)
        self.schedule_refetch()

    def _on_identity(self, address: str | None) -> None:
        self._invalidate()

    def _invalidate(self) -> None:
        # bump generation so anything in flight for the old key is discarded
        self._generation += 1
        self.value = None
        self.fetched_at = None
        self._publish(None)
        self.schedule_refetch(0)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        for task in list(self._tasks):
            task.cancel()
        self.reader._forget(self)
