import asyncio
import logging

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, NonNegativeInt

import l2load.constants as C
from l2load.config import GeneratorSettings, cfg
from l2load.generator import TransferGenerator
from l2load.jobqueue import BullQueue, JobQueue
from l2load.node import NodeClient
from l2load.organizer import OrganizerClient

log = logging.getLogger("l2load.app")

r_generator = APIRouter(prefix="/generator", tags=["Generator"])
r_state = APIRouter(prefix="/state", tags=["State"])


class GeneratorStatsResp(BaseModel):
    generated: NonNegativeInt
    shield_failures: NonNegativeInt
    backpressure_waits: NonNegativeInt
    submitted: NonNegativeInt
    rejected: NonNegativeInt
    last_error: str | None = None


class GeneratorStatusResp(BaseModel):
    id: int | None
    stage: str
    is_active: bool
    used_salts: NonNegativeInt
    stats: GeneratorStatsResp


class StopResp(BaseModel):
    status: str
    generator: GeneratorStatusResp


class QueueCountsResp(BaseModel):
    wait: int
    active: int
    delayed: int
    completed: int
    failed: int


def _generator(request: Request) -> TransferGenerator:
    return request.app.state.generator


@r_generator.get("/status", response_model=GeneratorStatusResp)
async def generator_status(request: Request):
    return _generator(request).snapshot()


@r_generator.post("/stop", response_model=StopResp)
async def generator_stop(request: Request):
    """Stop generating. Jobs already queued are still submitted by the worker."""
    gen = _generator(request)
    if gen.state.stopped:
        raise HTTPException(status_code=400, detail="Generator not running")
    gen.stop()
    return {"status": "stopped", "generator": gen.snapshot()}


@r_state.get("/queues", response_model=dict[str, QueueCountsResp])
async def state_queues(request: Request):
    gen = _generator(request)
    return {
        gen.main_queue.name: await gen.main_queue.counts(),
        gen.wallet_queue.name: await gen.wallet_queue.counts(),
    }


def create_app(generator: TransferGenerator) -> FastAPI:
    app = FastAPI(
        title="Layer-2 transfer generator",
        openapi_tags=[
            {"name": "Generator", "description": "Control the transfer generator"},
            {"name": "State", "description": "Queue and generator state"},
        ],
    )
    app.state.generator = generator

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(r_generator)
    app.include_router(r_state)
    return app


def _queue(name: str, conf: dict, settings: GeneratorSettings) -> JobQueue:
    rc = conf["redis"]
    return BullQueue(
        name,
        {"host": rc["host"], "port": rc["port"]},
        prefix=rc["prefix"],
        attempts=settings.attempts,
        backoff=settings.retry_backoff,
    )


async def serve_generator(wallet_id: int, *, host: str = "0.0.0.0", port: int = 8000, conf: dict = cfg) -> None:
    """Run one wallet's generator, worker and control API until interrupted.

    A failed funding deposit propagates out of here and ends the process.
    """
    settings = GeneratorSettings.from_config(conf)
    node = conf["node"]
    wallet = NodeClient(node["url"], node["coordinator_url"], account_index=wallet_id, timeout=node["timeout"])
    organizer = OrganizerClient(conf["organizer"]["url"], timeout=conf["organizer"]["timeout"])
    main_queue = _queue(C.MAIN_QUEUE, conf, settings)
    wallet_queue = _queue(C.wallet_queue_name(wallet_id), conf, settings)

    generator = TransferGenerator(wallet, organizer, main_queue, wallet_queue, settings, wallet_id=wallet_id)
    server = uvicorn.Server(uvicorn.Config(create_app(generator), host=host, port=port, log_config=None))
    shutdown = asyncio.Event()

    async def _api():
        await server.serve()
        # Server exits on SIGINT/SIGTERM; take the generator down with it
        generator.stop()
        shutdown.set()

    try:
        await wallet.wait_until_ready()
        async with asyncio.TaskGroup() as tg:
            tg.create_task(_api(), name="api")
            tg.create_task(generator.run(shutdown), name="generator")
    finally:
        await main_queue.close()
        await wallet_queue.close()
        await organizer.aclose()
        await wallet.aclose()
        log.info("Shutdown complete")
