import asyncio
import logging
import os
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, NonNegativeInt, PositiveInt

import near_workload.account as account_store
import near_workload.constants as C
from near_workload.config import cfg
from near_workload.constants import ResponseCheckSeverity, SelectionPolicy, TxExecutionStatus
from near_workload.errors import TransportError, WorkloadError
from near_workload.logging_config import setup_logging
from near_workload.rpc import RpcClient
from near_workload.workload import Workload

log = logging.getLogger("near_workload.app")


async def _probe_rpc(client: RpcClient, max_retries: int = 30, retry_delay: float = 2.0) -> None:
    """Probe the RPC endpoint with `status` until it responds.

    Args:
        client: shared RPC client
        max_retries: Maximum number of attempts (default: 30 = 1 minute with 2s delay)
        retry_delay: Seconds to wait between retries
    """
    for attempt in range(1, max_retries + 1):
        try:
            status = await asyncio.wait_for(client.status(), timeout=C.PROBE_TIMEOUT)
            log.info("RPC endpoint responding (attempt %s/%s), chain %s",
                     attempt, max_retries, status.get("chain_id"))
            return
        except (TransportError, TimeoutError) as e:
            if attempt < max_retries:
                log.info("RPC not ready yet (attempt %s/%s): %s - retrying in %ss...",
                         attempt, max_retries, e.__class__.__name__, retry_delay)
                await asyncio.sleep(retry_delay)
            else:
                log.error("RPC failed after %s attempts", max_retries)
                raise


class BenchmarkReq(BaseModel):
    kind: str = "native_transfers"  # or "function_calls"
    num_transfers: PositiveInt = 1000
    amount: PositiveInt | None = None
    selection: SelectionPolicy | None = None
    seed: int | None = None
    channel_buffer_size: PositiveInt | None = None
    interval_duration_micros: PositiveInt | None = None
    wait_until: TxExecutionStatus | None = None
    severity: ResponseCheckSeverity | None = None
    # function_calls only
    receiver_id: str | None = None
    method_name: str | None = None
    args: str = "{}"
    gas: PositiveInt = C.DEFAULT_GAS
    deposit: NonNegativeInt = 0


class BenchmarkRun:
    """The one benchmark allowed to run at a time."""

    def __init__(self):
        self.task: asyncio.Task | None = None
        self.started_at: float | None = None
        self.error: str | None = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


def _start_kwargs(req: BenchmarkReq) -> dict:
    return {
        "channel_buffer_size": req.channel_buffer_size,
        "interval_micros": req.interval_duration_micros,
        "wait_until": req.wait_until,
        "severity": req.severity,
    }


def create_app(workload: Workload | None = None, *, probe: bool = True) -> FastAPI:
    """Build the service app. A pre-built `workload` skips client creation and probing."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        if workload is None:
            rpc = cfg["rpc"]
            client = RpcClient(rpc["url"], timeout=rpc.get("timeout", C.RPC_TIMEOUT))
            if probe:
                log.info("Probing RPC endpoint %s...", rpc["url"])
                await _probe_rpc(client, rpc.get("probe_retries", 30), rpc.get("probe_delay", 2.0))
            app.state.workload = Workload(cfg, client)
        else:
            app.state.workload = workload
        app.state.run = BenchmarkRun()
        log.info("Workload ready.")
        try:
            yield
        finally:
            run = app.state.run
            if run.running:
                app.state.workload.request_stop()
                await asyncio.gather(run.task, return_exceptions=True)
            if client is not None:
                await client.aclose()
            log.info("Shutdown complete")

    app = FastAPI(title="NEAR Workload", lifespan=lifespan)

    r_accounts = APIRouter(prefix="/accounts", tags=["Accounts"])
    r_benchmark = APIRouter(prefix="/benchmark", tags=["Benchmark"])

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @r_accounts.get("")
    async def list_accounts(request: Request):
        wl: Workload = request.app.state.workload
        try:
            accounts = account_store.load(wl.config["accounts"]["user_data_dir"])
        except WorkloadError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return [{"id": a.id, "public_key": a.public_key, "nonce": a.nonce} for a in accounts]

    @r_benchmark.post("/start")
    async def start_benchmark(req: BenchmarkReq, request: Request):
        """Start a benchmark run in the background."""
        wl: Workload = request.app.state.workload
        run: BenchmarkRun = request.app.state.run
        if run.running:
            raise HTTPException(status_code=400, detail="Benchmark already running")

        user_data_dir = wl.config["accounts"]["user_data_dir"]
        if req.kind == "native_transfers":
            coro = wl.benchmark_native_transfers(
                user_data_dir, req.num_transfers, amount=req.amount,
                selection=req.selection, seed=req.seed, **_start_kwargs(req),
            )
        elif req.kind == "function_calls":
            if not (req.receiver_id and req.method_name):
                raise HTTPException(status_code=400, detail="function_calls needs receiver_id and method_name")
            coro = wl.benchmark_function_calls(
                user_data_dir, req.receiver_id, req.method_name, req.args, req.num_transfers,
                gas=req.gas, deposit=req.deposit, **_start_kwargs(req),
            )
        else:
            raise HTTPException(status_code=400, detail=f"Unknown benchmark kind {req.kind!r}")

        async def _run():
            try:
                return await coro
            except Exception as e:
                run.error = f"{e.__class__.__name__}: {e}"
                log.error("Benchmark failed: %s", run.error)
                raise

        log.info("Starting %s benchmark (%s txs)", req.kind, req.num_transfers)
        run.error = None
        wl.stop.clear()
        run.started_at = perf_counter()
        run.task = asyncio.create_task(_run(), name="benchmark")
        return {"status": "started", "kind": req.kind, "expected": req.num_transfers}

    @r_benchmark.post("/stop")
    async def stop_benchmark(request: Request):
        wl: Workload = request.app.state.workload
        run: BenchmarkRun = request.app.state.run
        if not run.running:
            raise HTTPException(status_code=400, detail="Benchmark not running")

        log.info("Stopping benchmark")
        wl.request_stop()
        await asyncio.gather(run.task, return_exceptions=True)
        report = wl.last_report
        return {"status": "stopped", "report": report.as_dict() if report else None}

    @r_benchmark.get("/status")
    async def benchmark_status(request: Request):
        wl: Workload = request.app.state.workload
        run: BenchmarkRun = request.app.state.run
        barrier = wl.barrier
        report = wl.last_report if not run.running else (barrier.report() if barrier else None)
        return {
            "running": run.running,
            "error": run.error,
            "report": report.as_dict() if report else None,
            "uptime_seconds": perf_counter() - run.started_at if run.started_at else 0,
        }

    app.include_router(r_accounts)
    app.include_router(r_benchmark)
    return app


setup_logging(os.getenv("LOG_LEVEL"))
app = create_app()
