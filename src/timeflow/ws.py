# timeflow/ws.py
"""
WebSocket listener that:
1. Maintains a persistent connection to the ledger's push endpoint
2. Subscribes to the finality stream
3. Publishes events to a queue for the tracker
4. Handles reconnection with exponential backoff

Polling keeps working without it; this only makes confirmations land sooner.
"""
import asyncio
import json
import logging
from collections.abc import Callable

import websockets

log = logging.getLogger("timeflow.ws")

RECONNECT_BASE = 1.0
RECONNECT_MAX = 10.0


def subscribe_message(request_ids: list[str] | None = None) -> dict:
    msg = {"id": 1, "command": "subscribe", "streams": ["finality"]}
    if request_ids:
        msg["request_ids"] = request_ids
    return msg


async def ws_listener(
    stop: asyncio.Event,
    ws_url: str,
    event_queue: asyncio.Queue,
    requests_provider: Callable[[], list[str]] | None = None,
) -> None:
    """
    Connect to the ledger WebSocket, subscribe to finality events, publish them to the queue.

    Parameters
    ----------
    stop:
        Event to signal graceful shutdown
    ws_url:
        WebSocket URL (e.g., "ws://localhost:8546")
    event_queue:
        Queue to publish parsed events on
    requests_provider:
        Optional callable returning the request ids currently being tracked.
        If None, subscribes to every finality event.
    """
    backoff = RECONNECT_BASE

    while not stop.is_set():
        try:
            async with websockets.connect(ws_url, ping_interval=20, ping_timeout=20, close_timeout=1) as ws:
                log.info("WS connected: %s", ws_url)

                ids = None
                if requests_provider:
                    try:
                        ids = requests_provider()
                    except Exception as e:
                        log.warning("Failed to get tracked requests: %s, subscribing to all finality events", e)

                await ws.send(json.dumps(subscribe_message(ids)))

                try:
                    ack = await asyncio.wait_for(ws.recv(), timeout=10)
                    ack_obj = json.loads(ack)
                    if ack_obj.get("status") != "success":
                        raise RuntimeError(f"subscribe failed: {ack}")
                    log.info("WS subscription successful")
                except asyncio.TimeoutError:
                    log.warning("WS subscription ack timeout, continuing anyway")

                backoff = RECONNECT_BASE

                while not stop.is_set():
                    recv_task = asyncio.create_task(ws.recv())
                    halt_task = asyncio.create_task(stop.wait())

                    done, pending = await asyncio.wait({recv_task, halt_task}, return_when=asyncio.FIRST_COMPLETED)
                    for t in pending:
                        t.cancel()

                    if halt_task in done:
                        log.info("WS listener received stop signal")
                        return

                    try:
                        await process_message(recv_task.result(), event_queue)
                    except websockets.ConnectionClosed:
                        raise
                    except Exception as e:
                        log.error("Error processing WS message: %s", e, exc_info=True)

        except asyncio.CancelledError:
            log.info("WS listener cancelled")
            raise
        except Exception as e:
            log.error("WS connection error: %s", e)

        if stop.is_set():
            break

        log.info("WS reconnecting in %.1fs", backoff)
        await asyncio.sleep(backoff)
        backoff = min(backoff * 2, RECONNECT_MAX)

    log.info("WS listener stopped")


async def process_message(raw_msg: str | bytes, queue: asyncio.Queue) -> None:
    """
    Parse one WebSocket message and publish the matching event.

    - type="finality" with request_id and status -> finality event
    - status-only messages (acks) are dropped
    - anything unparseable goes out as a raw event
    """
    try:
        obj = json.loads(raw_msg)
    except (json.JSONDecodeError, TypeError):
        log.debug("WS raw (non-JSON): %s", str(raw_msg)[:200])
        await queue.put(("raw", raw_msg))
        return

    if not isinstance(obj, dict):
        await queue.put(("raw", raw_msg))
        return

    if obj.get("type") == "finality":
        if not obj.get("request_id"):
            log.debug("WS finality message without request_id, ignoring")
            return
        log.debug("WS finality: request=%s status=%s", obj.get("request_id"), obj.get("status"))
        await queue.put(("finality", obj))
        return

    if obj.get("status"):
        log.debug("WS status: %s", obj.get("status"))
        return

    log.debug("WS unknown message type: %s", obj.get("type") or "no_type")
