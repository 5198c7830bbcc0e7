import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, PositiveFloat, PositiveInt

from chainload.config import config_file, load_config, run_params
from chainload.constants import RunMode, RunState
from chainload.errors import ChainloadError, ConfigError, NoEndpointAvailable, SequenceRegression
from chainload.logging_config import setup_logging
from chainload.metrics import NetworkComparator
from chainload.models import RunConfig, RunSummary
from chainload.network import NetworkStack
from chainload.scheduler import LoadScheduler, QueueListener

setup_logging()
log = logging.getLogger("chainload.app")


@dataclass
class RunHandle:
    run_id: int
    network: str
    config: RunConfig
    scheduler: LoadScheduler
    listener: QueueListener
    task: asyncio.Task | None = None
    summary: RunSummary | None = None
    error: str | None = None

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()

    def status(self) -> dict:
        s = self.scheduler
        m = s.metrics
        out = {
            "run_id": self.run_id,
            "network": self.network,
            "mode": str(self.config.mode),
            "operation": self.config.operation,
            "state": str(s.state),
            "cancelled": s.cancelled,
            "issued": s.issued,
            "recorded": m.total,
            "successes": m.successes,
            "failures": m.failures,
            "success_rate": round(m.success_rate, 2),
            "avg_gas": round(m.avg_gas, 2),
            "avg_latency": round(m.avg_latency, 3),
            "throughput": round(m.throughput, 2),
            "elapsed": round(m.elapsed(), 3),
            "offered_rate": s.offered_rate,
            "error": self.error or s.error,
        }
        if self.summary is not None:
            out["summary"] = self.summary.to_dict()
        if s.discovery is not None:
            d = s.discovery
            out["discovery"] = {
                "max_sustainable_rate": d.max_sustainable_rate,
                "stop_reason": d.stop_reason,
                "rounds": [
                    {"offered_rate": r.offered_rate, "achieved_rate": r.achieved_rate, "failure_rate": r.failure_rate, "stable": r.stable}
                    for r in d.rounds
                ],
            }
        return out


async def _execute(handle: RunHandle) -> None:
    try:
        handle.summary = await handle.scheduler.run()
        app.state.comparator.add(handle.summary)
    except Exception as e:
        log.exception("Run %s on %s failed", handle.run_id, handle.network)
        handle.error = f"{type(e).__name__}: {e}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg = load_config(config_file)
    log.info("Loaded %s networks from %s", len(cfg["networks"]), config_file)
    app.state.cfg = cfg
    app.state.networks = {
        name: NetworkStack.from_config(name, table, cfg["timeout"]) for name, table in cfg["networks"].items()
    }
    app.state.runs = {}
    app.state.run_ids = itertools.count(1)
    app.state.comparator = NetworkComparator()

    async with asyncio.TaskGroup() as tg:
        app.state.tg = tg
        try:
            yield
        finally:
            log.info("Shutting down...")
            for handle in app.state.runs.values():
                handle.scheduler.cancel()
    for stack in app.state.networks.values():
        await stack.aclose()
    log.info("Shutdown complete")


app = FastAPI(
    title="chainload",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Networks", "description": "Configured networks and endpoint health"},
        {"name": "Runs", "description": "Start, watch and cancel load runs"},
        {"name": "Diagnostics", "description": "Failure diagnosis and cross-network comparison"},
    ],
    swagger_ui_parameters={"tagsSorter": "alpha", "operationsSorter": "alpha"},
)

r_networks = APIRouter(prefix="/networks", tags=["Networks"])
r_runs = APIRouter(prefix="/runs", tags=["Runs"])
r_diag = APIRouter(tags=["Diagnostics"])


class RunReq(BaseModel):
    network: str
    mode: RunMode | None = None
    operation: str | None = None
    count: PositiveInt | None = None
    concurrency: PositiveInt | None = None
    duration: PositiveFloat | None = None
    rate: PositiveFloat | None = None
    ramp_up: float | None = None
    burst_size: PositiveInt | None = None
    burst_count: PositiveInt | None = None
    burst_interval: float | None = None
    failure_threshold: float | None = None
    min_gain: float | None = None
    round_duration: PositiveFloat | None = None
    drain_timeout: PositiveFloat | None = None
    ladder: dict | None = None


class DiagnoseReq(BaseModel):
    attempts: PositiveInt = 10
    concurrency: PositiveInt = 5
    account: str | None = None


def _stack(name: str) -> NetworkStack:
    stack = app.state.networks.get(name)
    if stack is None:
        raise HTTPException(status_code=404, detail=f"Unknown network: {name}")
    return stack


def _handle(run_id: int) -> RunHandle:
    handle = app.state.runs.get(run_id)
    if handle is None:
        raise HTTPException(status_code=404, detail=f"Unknown run: {run_id}")
    return handle


@app.get("/health")
def health():
    return {"status": "ok"}


@r_networks.get("")
async def list_networks():
    return [
        {
            "name": s.name,
            "family": s.adapter.family,
            "endpoints": len(s.pool.endpoints),
            "current": s.pool.current(),
            "accounts": s.accounts,
            "busy": any(h.active for h in app.state.runs.values() if h.network == s.name),
        }
        for s in app.state.networks.values()
    ]


@r_networks.get("/{name}/endpoints")
async def network_endpoints(name: str):
    """Endpoint health in failover order, plus the local sequence counters per account."""
    s = _stack(name)
    return {"network": name, "endpoints": s.pool.stats(), "accounts": s.allocator.snapshot()}


@r_runs.post("")
async def start_run(req: RunReq):
    stack = _stack(req.network)
    if any(h.active for h in app.state.runs.values() if h.network == req.network):
        raise HTTPException(status_code=409, detail=f"A run is already active on {req.network}")

    overrides = req.model_dump(exclude={"network"}, exclude_none=True)
    try:
        config = RunConfig.from_dict(run_params(app.state.cfg, overrides))
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))

    run_id = next(app.state.run_ids)
    listener = QueueListener()
    handle = RunHandle(run_id, req.network, config, stack.scheduler(config, listener), listener)
    app.state.runs[run_id] = handle
    handle.task = app.state.tg.create_task(_execute(handle), name=f"run-{run_id}")
    log.info("Started run %s on %s (%s)", run_id, req.network, config.fingerprint())
    return {"run_id": run_id, "state": str(RunState.IDLE), "config": req.model_dump(exclude_none=True)}


@r_runs.get("")
async def list_runs():
    return [h.status() for h in app.state.runs.values()]


@r_runs.get("/{run_id}")
async def run_status(run_id: int):
    return _handle(run_id).status()


@r_runs.post("/{run_id}/cancel")
async def cancel_run(run_id: int):
    handle = _handle(run_id)
    if not handle.active:
        raise HTTPException(status_code=400, detail=f"Run {run_id} is not running")
    handle.scheduler.cancel()
    return {"run_id": run_id, "state": str(handle.scheduler.state), "cancelled": True}


@r_runs.get("/{run_id}/events")
async def run_events(run_id: int, limit: PositiveInt = 100):
    """Events since the last poll. Oldest events are dropped if nobody polls."""
    handle = _handle(run_id)
    return {
        "run_id": run_id,
        "events": handle.listener.drain(limit),
        "dropped": handle.listener.dropped,
        "finished": handle.listener.closed and handle.listener.queue.empty(),
    }


@r_diag.post("/networks/{name}/diagnose")
async def diagnose(name: str, req: DiagnoseReq | None = None):
    req = req or DiagnoseReq()
    stack = _stack(name)
    if any(h.active for h in app.state.runs.values() if h.network == name):
        raise HTTPException(status_code=409, detail=f"A run is active on {name}; diagnose after it completes")
    probe = stack.diagnostic_probe(attempts=req.attempts, concurrency=req.concurrency, account=req.account)
    try:
        report = await probe.run()
    except SequenceRegression as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NoEndpointAvailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return report.to_dict()


@r_diag.get("/compare")
async def compare(a: str, b: str):
    try:
        return app.state.comparator.compare(a, b).to_dict()
    except ChainloadError as e:
        raise HTTPException(status_code=404, detail=str(e))


app.include_router(r_networks)
app.include_router(r_runs)
app.include_router(r_diag)
