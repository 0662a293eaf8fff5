"""Time-based projection of claimable amounts between ledger observations.

Pure arithmetic on the last snapshot; nothing here touches the network, so the
ticker can redraw once a second for free. Remote snapshots always win: a refresh
replaces the record the ticker projects from.
"""
import asyncio
import logging
import time
from collections.abc import Callable

from timeflow.errors import InvalidProjectionInput
from timeflow.models import AccrualRecord, AggregateSnapshot, PositionRecord
import timeflow.constants as C

log = logging.getLogger("timeflow.projection")


def _check(record: AccrualRecord) -> None:
    for name in ("start_time", "end_time", "rate_per_second", "amount_withdrawn"):
        if getattr(record, name, None) is None:
            raise InvalidProjectionInput(f"record missing {name}")
    if record.end_time < record.start_time:
        raise InvalidProjectionInput(f"end_time {record.end_time} < start_time {record.start_time}")


def claimable_at(record: AccrualRecord | None, instant: float) -> int:
    """Amount the beneficiary could withdraw at ``instant`` (unix seconds).

    Inactive records are not projected and yield 0. Bad input is logged and
    yields 0 rather than a negative number.
    """
    if record is None or not record.is_active:
        return 0
    try:
        _check(record)
    except InvalidProjectionInput as e:
        log.warning("Not projecting stream: %s", e)
        return 0

    elapsed = min(max(int(instant) - record.start_time, 0), record.end_time - record.start_time)
    streamed = elapsed * record.rate_per_second
    return max(0, streamed - record.amount_withdrawn)


def proportional_share(position: PositionRecord | None, aggregate: AggregateSnapshot | None) -> int:
    """Participant's slice of the reward pool: amount * pool // total_locked.

    Floor division matches the vault's own uint256 truncation, so the displayed
    share never exceeds what a claim pays out.
    """
    if position is None or aggregate is None:
        return 0
    if not position.is_active or position.amount == 0:
        return 0
    if aggregate.total_locked <= 0 or aggregate.reward_pool <= 0:
        return 0
    return position.amount * aggregate.reward_pool // aggregate.total_locked


def stream_progress(record: AccrualRecord, instant: float) -> float:
    """Percentage of the stream's window that has elapsed."""
    if instant <= record.start_time:
        return 0.0
    if instant >= record.end_time or record.end_time == record.start_time:
        return 100.0
    return (instant - record.start_time) / (record.end_time - record.start_time) * 100


def time_remaining(record: AccrualRecord, instant: float) -> int:
    return max(0, record.end_time - int(instant))


class ProjectionTicker:
    """Recompute a stream's claimable amount on a fixed interval.

    One ticker per stream view. The loop ends by itself once the record is
    inactive; ``stop()`` ends it on teardown.
    """

    def __init__(
        self,
        publish: Callable[[int], None],
        *,
        interval: float = C.TICK_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.publish = publish
        self.interval = interval
        self.clock = clock
        self.record: AccrualRecord | None = None
        self.value = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def update(self, record: AccrualRecord | None) -> None:
        """Swap in a fresh snapshot and (re)start or stop ticking as needed."""
        self.record = record
        self._emit()
        if record is not None and record.is_active:
            if not self.running:
                self._task = asyncio.get_running_loop().create_task(self._run(), name="projection_ticker")
        else:
            self.stop()

    def _emit(self) -> None:
        self.value = claimable_at(self.record, self.clock())
        self.publish(self.value)

    async def _run(self) -> None:
        try:
            while self.record is not None and self.record.is_active:
                await asyncio.sleep(self.interval)
                self._emit()
        except asyncio.CancelledError:
            log.debug("projection ticker cancelled")
            raise

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
