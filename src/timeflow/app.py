import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel

import timeflow.constants as C
from timeflow.config import cfg
from timeflow.errors import MalformedSnapshot, RemoteUnavailable, SubmissionRejected
from timeflow.logging_config import setup_logging
from timeflow.notify import MemorySink
from timeflow.projection import proportional_share
from timeflow.reader import Query
from timeflow.session import Session
from timeflow.ws import ws_listener
from timeflow.ws_processor import process_ws_events

setup_logging()
log = logging.getLogger("timeflow.app")

PROBE_RETRIES = 30
PROBE_DELAY = 2.0
WS_QUEUE_SIZE = 1000


class IdentityReq(BaseModel):
    address: str | None = None


class TransactionReq(BaseModel):
    """Action parameters. ``amount`` as a JSON integer is in the smallest unit (wei);
    as a string it is a decimal token amount, so ``1`` and ``"1"`` differ by 10**18.
    """

    params: dict = {}


async def _probe_ledger(session: Session, max_retries: int = PROBE_RETRIES, retry_delay: float = PROBE_DELAY) -> None:
    """Wait until the ledger answers a read. Gives up (and fails startup) after max_retries."""
    probe = getattr(session.service, "probe", None)
    if probe is None:
        return
    for attempt in range(1, max_retries + 1):
        if await probe():
            log.info("Ledger responding (attempt %s/%s)", attempt, max_retries)
            return
        if attempt < max_retries:
            log.info("Ledger not ready yet (attempt %s/%s), retrying in %ss", attempt, max_retries, retry_delay)
            await asyncio.sleep(retry_delay)
    raise RemoteUnavailable(f"ledger did not respond after {max_retries} attempts")


def create_app(session: Session | None = None, *, push: bool = True, probe: bool = True) -> FastAPI:
    """Build the HTTP surface over a session.

    ``push`` runs the websocket finality listener next to polling; ``probe`` blocks
    startup until the ledger answers.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        s = session or Session.from_config(cfg)
        app.state.session = s
        stop = asyncio.Event()
        app.state.stop = stop

        if probe:
            await _probe_ledger(s)
        await s.vault.load()
        log.info("Session ready. Tracking vault at %s", cfg["ledger"]["rpc_url"])

        async with asyncio.TaskGroup() as tg:
            if push:
                app.state.ws_queue = asyncio.Queue(maxsize=WS_QUEUE_SIZE)
                tg.create_task(
                    ws_listener(stop, cfg["ledger"]["ws_url"], app.state.ws_queue, requests_provider=s.tracker.pending),
                    name="ws_listener",
                )
                tg.create_task(process_ws_events(s.tracker, app.state.ws_queue, stop), name="ws_processor")
                log.info("Background tasks started: ws_listener, ws_processor")
            try:
                yield
            finally:
                log.info("Shutting down...")
                stop.set()
                await s.aclose()
        log.info("Shutdown complete")

    app = FastAPI(
        title="TimeFlow vault client",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "State", "description": "Mirrored ledger state"},
            {"name": "Streams", "description": "Stream snapshots and projections"},
            {"name": "Transactions", "description": "Submit and track requests"},
        ],
    )

    r_state = APIRouter(prefix="/state", tags=["State"])
    r_stream = APIRouter(prefix="/stream", tags=["Streams"])
    r_transaction = APIRouter(prefix="/transaction", tags=["Transactions"])

    def _session() -> Session:
        return app.state.session

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/identity")
    async def set_identity(req: IdentityReq):
        _session().identity.set_address(req.address)
        return {"address": _session().identity.address}

    @r_state.get("/vault")
    async def vault_state(refresh: bool = False):
        s = _session()
        if refresh:
            await s.vault.load()
        return s.vault.to_dict()

    @r_state.get("/position/{address}")
    async def position(address: str):
        s = _session()
        try:
            pos = await s.reader.fetch(Query(C.Q.USER_STAKE, address))
        except RemoteUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        except MalformedSnapshot as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"address": address, "position": asdict(pos), "claimable_rewards": proportional_share(pos, s.vault.stats.value)}

    @r_state.get("/pending")
    async def pending():
        s = _session()
        return {
            "requests": [p.to_dict() for p in s.controller.pending.values()],
            "tracker": s.tracker.snapshot_stats(),
        }

    @r_state.get("/notifications")
    async def notifications(limit: int = 50):
        sink = _session().sink
        if not isinstance(sink, MemorySink):
            return []
        return [n.to_dict() for n in list(sink.history)[-limit:]]

    @r_state.get("/refresh")
    async def refresh_state():
        c = _session().coordinator
        return {"generation": c.generation, "pending": c.pending}

    @r_state.post("/refresh")
    async def refresh_trigger():
        c = _session().coordinator
        c.trigger_refresh()
        return {"generation": c.generation, "pending": c.pending}

    @r_stream.get("/{stream_id}")
    async def stream(stream_id: int):
        view = _session().stream_view(stream_id)
        if view.record is None:
            await view.load()
        if view.record is None:
            _session().close_stream_view(stream_id)
            raise HTTPException(status_code=404, detail=f"Stream #{stream_id} not available")
        return view.to_dict()

    @r_stream.delete("/{stream_id}")
    async def stream_close(stream_id: int):
        _session().close_stream_view(stream_id)
        return {"closed": stream_id}

    @r_transaction.post("/{kind}")
    async def transaction(kind: str, req: TransactionReq):
        try:
            p = await _session().dispatch(kind, req.params)
        except SubmissionRejected as e:
            raise HTTPException(status_code=400, detail=e.reason)
        if p is None:
            raise HTTPException(status_code=503, detail="Ledger unavailable, nothing was submitted")
        return p.to_dict()

    app.include_router(r_state)
    app.include_router(r_stream)
    app.include_router(r_transaction)
    return app


app = create_app()
