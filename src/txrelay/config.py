import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from txrelay.models import BackoffConfig, EngineConfig

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

cfg = tomllib.loads(Path(config_file).read_text())


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    rpc_timeout: float
    keypair_path: Path | None
    min_balance_drops: int
    num_transactions: int
    amount_drops: int
    max_retries: int
    confirmation_timeout: float
    poll_interval: float
    poll_error_delay: float
    max_poll_errors: int
    submit_interval: float
    concurrency: int
    run_timeout: float | None
    success_threshold: float
    linger: float
    metrics_host: str
    metrics_port: int
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    def __post_init__(self):
        if self.num_transactions < 0:
            raise ValueError(f"num_transactions must be >= 0, got {self.num_transactions}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.confirmation_timeout <= 0:
            raise ValueError(f"confirmation_timeout must be > 0, got {self.confirmation_timeout}")
        if not 0 <= self.success_threshold <= 1:
            raise ValueError(f"success_threshold must be within [0, 1], got {self.success_threshold}")
        if not 0 < self.metrics_port < 65536:
            raise ValueError(f"metrics_port out of range: {self.metrics_port}")

    @property
    def engine(self) -> EngineConfig:
        return EngineConfig(
            poll_interval=self.poll_interval,
            poll_error_delay=self.poll_error_delay,
            max_poll_errors=self.max_poll_errors,
            backoff=self.backoff,
        )


def _env_overrides() -> dict:
    o: dict = {}
    if url := os.getenv("RPC_URL"):
        o["rpc_url"] = url
    if port := os.getenv("METRICS_PORT"):
        o["metrics_port"] = int(port)
    if path := os.getenv("KEYPAIR_PATH"):
        o["keypair_path"] = path
    return o


def load_settings(conf: dict | None = None, **overrides) -> Settings:
    """Build Settings from config.toml, then environment, then explicit overrides.

    ``None`` values in ``overrides`` are ignored so argparse defaults can be passed straight through.
    """
    c = conf if conf is not None else cfg
    rpc, wallet, txns, bo, run, metrics = (
        c.get(k, {}) for k in ("rpc", "wallet", "transactions", "backoff", "run", "metrics")
    )

    values = dict(
        rpc_url=rpc.get("url", "http://localhost:5005"),
        rpc_timeout=float(rpc.get("timeout", 5.0)),
        keypair_path=wallet.get("keypair_path") or None,
        min_balance_drops=int(wallet.get("min_balance_drops", 0)),
        num_transactions=int(txns.get("count", 10)),
        amount_drops=int(txns.get("amount_drops", 1_000_000)),
        max_retries=int(txns.get("max_retries", 3)),
        confirmation_timeout=float(txns.get("confirmation_timeout", 30.0)),
        poll_interval=float(txns.get("poll_interval", 1.0)),
        poll_error_delay=float(txns.get("poll_error_delay", 0.25)),
        max_poll_errors=int(txns.get("max_poll_errors", 3)),
        submit_interval=float(txns.get("submit_interval", 0.0)),
        concurrency=int(run.get("concurrency", 1)),
        run_timeout=float(run.get("timeout", 0)) or None,
        success_threshold=float(run.get("success_threshold", 1.0)),
        linger=float(run.get("linger", 0.0)),
        metrics_host=metrics.get("host", "0.0.0.0"),
        metrics_port=int(metrics.get("port", 9000)),
    )
    backoff = dict(
        base_delay=float(bo.get("base_delay", 0.5)),
        multiplier=float(bo.get("multiplier", 2.0)),
        max_delay=float(bo.get("max_delay", 8.0)),
        jitter=bo.get("jitter") or None,
    )

    for k, v in {**_env_overrides(), **overrides}.items():
        if v is None:
            continue
        if k.startswith("backoff_"):
            backoff[k.removeprefix("backoff_")] = v
        elif k in values:
            values[k] = v
        else:
            raise ValueError(f"unknown setting: {k}")

    if values["keypair_path"] is not None:
        values["keypair_path"] = Path(values["keypair_path"])
    if not values["run_timeout"]:
        values["run_timeout"] = None

    return Settings(**values, backoff=BackoffConfig(**backoff))
