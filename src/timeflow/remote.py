"""Boundary to the remote vault ledger.

Three request/response calls: read a named quantity, submit a named action, ask
for the finality of a submission. The service signs, orders and accounts; this
side only speaks the wire and refuses to trust its shape.
"""
import asyncio
import itertools
import logging
from typing import Any, Protocol

import httpx

import timeflow.constants as C
from timeflow.errors import RemoteUnavailable

log = logging.getLogger("timeflow.remote")


class LedgerService(Protocol):
    async def query(self, name: str, key: Any = None) -> Any: ...
    async def submit(self, action: str, params: dict) -> str: ...
    async def finality(self, request_id: str) -> C.Finality: ...


def parse_finality(value: Any) -> C.Finality:
    """Map the service's status string onto Finality; anything unknown is still pending."""
    if isinstance(value, dict):
        value = value.get("status")
    if isinstance(value, str):
        try:
            return C.Finality(value.lower())
        except ValueError:
            pass
    log.debug("Unrecognised finality %r, treating as pending", value)
    return C.Finality.PENDING


class JsonRpcLedgerService:
    """JSON-RPC 2.0 over HTTP.

    Methods: ``ledger_query``, ``ledger_submit``, ``ledger_finality``. Transport
    errors, timeouts, non-2xx replies and JSON-RPC error objects all surface as
    RemoteUnavailable.
    """

    def __init__(self, url: str, *, timeout: float = C.RPC_TIMEOUT, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def _rpc(self, method: str, params: dict, *, t: float | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            r = await asyncio.wait_for(self._client.post(self.url, json=payload), timeout=t or self.timeout)
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as e:
            log.debug("%s failed: %s: %s", method, type(e).__name__, e)
            raise RemoteUnavailable(f"{method}: {type(e).__name__}: {e}") from e

        if not isinstance(body, dict):
            raise RemoteUnavailable(f"{method}: unexpected response {body!r}")
        if body.get("error") is not None:
            raise RemoteUnavailable(f"{method}: {body['error']}")
        if "result" not in body:
            raise RemoteUnavailable(f"{method}: response has no result")
        return body["result"]

    async def query(self, name: str, key: Any = None) -> Any:
        return await self._rpc("ledger_query", {"name": name, "key": key})

    async def submit(self, action: str, params: dict) -> str:
        result = await self._rpc("ledger_submit", {"action": action, "params": params})
        request_id = result.get("request_id") if isinstance(result, dict) else result
        if not isinstance(request_id, str) or not request_id:
            raise RemoteUnavailable(f"ledger_submit {action}: no request id in {result!r}")
        return request_id

    async def finality(self, request_id: str) -> C.Finality:
        return parse_finality(await self._rpc("ledger_finality", {"request_id": request_id}))

    async def probe(self) -> bool:
        """True if the service answers a cheap read."""
        try:
            await self.query(C.Q.TOTAL_STREAMS)
            return True
        except RemoteUnavailable as e:
            log.info("Ledger not reachable yet: %s", e)
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
