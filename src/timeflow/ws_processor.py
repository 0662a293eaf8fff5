# timeflow/ws_processor.py
"""
Consumes events from the WS listener queue and hands finality reports to the
ConfirmationTracker. Bridge between the passive listener and the tracker's state
machine; the tracker does its own de-duplication.
"""
import asyncio
import logging

from timeflow.remote import parse_finality
from timeflow.tracker import ConfirmationTracker

log = logging.getLogger("timeflow.ws_processor")


async def process_ws_events(
    tracker: ConfirmationTracker,
    event_queue: asyncio.Queue,
    stop: asyncio.Event,
) -> None:
    """
    Runs for the lifetime of the session, feeding pushed finality into the tracker.

    Parameters
    ----------
    tracker:
        The tracker to update
    event_queue:
        Queue receiving events from ws_listener
    stop:
        Event to signal graceful shutdown
    """
    log.info("WS event processor starting")
    processed_count = 0

    try:
        while not stop.is_set():
            try:
                # timeout so the stop signal is noticed
                event_type, data = await asyncio.wait_for(event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            try:
                if event_type == "finality":
                    if handle_finality(tracker, data):
                        processed_count += 1
                # raw / unknown events are only logged by the listener
            except Exception as e:
                log.error("Error processing WS event: %s", e, exc_info=True)

    except asyncio.CancelledError:
        log.info("WS event processor cancelled")
        raise
    finally:
        log.info("WS event processor stopped (processed %d finality events)", processed_count)


def handle_finality(tracker: ConfirmationTracker, msg: dict) -> bool:
    """
    Message structure:
    {
        "type": "finality",
        "request_id": "0xabc...",
        "status": "confirmed" | "failed" | "pending"
    }
    """
    request_id = msg.get("request_id")
    if not isinstance(request_id, str) or not tracker.knows(request_id):
        log.debug("WS finality for request we are not tracking: %s", request_id)
        return False
    return tracker.observe(request_id, parse_finality(msg.get("status")), source="ws")
