import contextlib
import logging
from dataclasses import dataclass, field

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from txrelay.metrics import PrometheusRecorder
from txrelay.models import JobReport, RunSummary, TransactionJob

log = logging.getLogger("txrelay.app")

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@dataclass
class RunState:
    """What the HTTP side can see of the current run."""
    jobs: list[TransactionJob] = field(default_factory=list)
    summary: RunSummary | None = None


class JobResp(BaseModel):
    label: str
    outcome: str
    attempts: int
    reason: str | None = None
    fingerprint: str | None = None
    latency: float | None = None


class SummaryResp(BaseModel):
    total: int
    succeeded: int
    failed: int
    cancelled: int
    success_ratio: float
    latencies: list[float]
    balance_before: int | None = None
    balance_after: int | None = None
    jobs: list[JobResp]


def _job_resp(r: JobReport) -> JobResp:
    return JobResp(
        label=r.label,
        outcome=r.outcome.value,
        attempts=r.attempts,
        reason=r.reason,
        fingerprint=r.fingerprint,
        latency=r.latency,
    )


r_state = APIRouter(prefix="/state", tags=["State"])


@r_state.get("/jobs", response_model=list[JobResp])
def state_jobs(request: Request):
    """Live view of every job, terminal or not."""
    st: RunState = request.app.state.run
    return [_job_resp(JobReport.from_job(j)) for j in st.jobs]


@r_state.get("/summary", response_model=SummaryResp)
def state_summary(request: Request):
    st: RunState = request.app.state.run
    s = st.summary
    if s is None:
        raise HTTPException(status_code=404, detail="Run still in progress")
    return SummaryResp(
        total=s.total,
        succeeded=s.succeeded,
        failed=s.failed,
        cancelled=s.cancelled,
        success_ratio=s.success_ratio,
        latencies=list(s.latencies),
        balance_before=s.balance_before,
        balance_after=s.balance_after,
        jobs=[_job_resp(r) for r in s.jobs],
    )


def create_app(recorder: PrometheusRecorder, run_state: RunState | None = None) -> FastAPI:
    app = FastAPI(
        title="txrelay",
        openapi_tags=[{"name": "State", "description": "Jobs and run summary"}],
    )
    app.state.recorder = recorder
    app.state.run = run_state or RunState()

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics():
        return PlainTextResponse(recorder.render(), media_type=PROMETHEUS_CONTENT_TYPE)

    app.include_router(r_state)
    return app


class MetricsServer(uvicorn.Server):
    """Uvicorn server that leaves SIGINT/SIGTERM to the CLI."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def metrics_server(app: FastAPI, host: str, port: int) -> MetricsServer:
    """Server for ``app``; run it with ``await server.serve()`` next to the workload."""
    config = uvicorn.Config(app, host=host, port=port, lifespan="off", log_config=None, access_log=False)
    log.info("Metrics server running on %s:%s", host, port)
    return MetricsServer(config)
