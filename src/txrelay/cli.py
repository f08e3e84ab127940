import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

import txrelay.constants as C
from txrelay.app import RunState, create_app, metrics_server
from txrelay.batch import BatchRunner
from txrelay.config import Settings, load_settings
from txrelay.errors import GatewayError
from txrelay.gateway import XrplGateway
from txrelay.keys import load_wallet
from txrelay.logging_config import setup_logging
from txrelay.metrics import PrometheusRecorder
from txrelay.models import RunSummary
from txrelay.txn_factory import PaymentFactory

log = logging.getLogger("txrelay.cli")

EXIT_OK = 0
EXIT_BELOW_THRESHOLD = 1
EXIT_SETUP_FAILED = 2


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="txrelay", description="Submit, confirm and retry XRPL transactions.")
    parser.add_argument("--rpc-url",
                        help="rippled JSON-RPC URL.",
                        )
    parser.add_argument("--keypair-path",
                        type=Path,
                        help="File holding the sending wallet's seed. A new wallet is generated if omitted.",
                        )
    parser.add_argument("-n", "--num-transactions",
                        type=int,
                        help="Number of sample transactions to send.",
                        )
    parser.add_argument("--max-retries",
                        type=int,
                        help="Maximum number of retries for each transaction.",
                        )
    parser.add_argument("--confirmation-timeout",
                        type=float,
                        help="Seconds to wait for validation before resubmitting.",
                        )
    parser.add_argument("-c", "--concurrency",
                        type=int,
                        help="Transactions in flight at once.",
                        )
    parser.add_argument("--timeout",
                        type=float,
                        dest="run_timeout",
                        help="Cancel whatever is unfinished after this many seconds.",
                        )
    parser.add_argument("--success-threshold",
                        type=float,
                        help="Fraction of confirmed transactions needed for a zero exit status.",
                        )
    parser.add_argument("--metrics-port",
                        type=int,
                        help="Port for the Prometheus /metrics endpoint.",
                        )
    return parser.parse_args(argv)


def overrides(a) -> dict:
    return {k: v for k, v in vars(a).items() if v is not None}


def exit_code(summary: RunSummary, threshold: float) -> int:
    return EXIT_OK if summary.meets(threshold) else EXIT_BELOW_THRESHOLD


def log_summary(summary: RunSummary) -> None:
    log.info("=" * 60)
    log.info("RUN SUMMARY")
    log.info("=" * 60)
    for r in summary.jobs:
        latency = f"{r.latency * 1000:.0f}ms" if r.latency is not None else "-"
        log.info(f"  {r.label}: {r.outcome} after {r.attempts} attempt(s), {latency} {r.reason or ''}")
    log.info("-" * 60)
    log.info(f"  TOTAL: {summary.succeeded}/{summary.total} confirmed, "
             f"{summary.failed} failed, {summary.cancelled} cancelled")
    if summary.latencies:
        avg = sum(summary.latencies) / len(summary.latencies)
        log.info(f"  Latency: avg {avg * 1000:.0f}ms, max {max(summary.latencies) * 1000:.0f}ms")
    log.info("=" * 60)


async def _sleep_unless(stop: asyncio.Event, seconds: float) -> None:
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


async def run_workload(s: Settings, recorder: PrometheusRecorder, state: RunState, stop: asyncio.Event) -> int:
    wallet = load_wallet(s.keypair_path)
    log.info("Using address: %s", wallet.address)

    gateway = XrplGateway.from_url(s.rpc_url, rpc_timeout=s.rpc_timeout)
    try:
        balance = await gateway.get_balance(wallet.address)
    except GatewayError as e:
        log.error("Could not read wallet balance from %s: %s", s.rpc_url, e)
        return EXIT_SETUP_FAILED

    log.info("Wallet balance: %s XRP", balance / C.DROPS_PER_XRP)
    recorder.set_gauge(C.WALLET_BALANCE, balance, {"address": wallet.address})
    if balance < s.min_balance_drops:
        log.error("Insufficient balance. Fund %s before proceeding.", wallet.address)
        return EXIT_SETUP_FAILED

    factory = PaymentFactory(gateway, wallet, amount_drops=s.amount_drops)
    try:
        jobs = await factory.build_jobs(
            s.num_transactions, max_retries=s.max_retries, confirmation_timeout=s.confirmation_timeout
        )
    except (GatewayError, ValueError) as e:
        log.error("Could not prepare transactions: %s", e)
        return EXIT_SETUP_FAILED
    state.jobs = jobs

    runner = BatchRunner(
        gateway,
        metrics=recorder,
        config=s.engine,
        address=wallet.address,
        stop=stop,
        submit_interval=s.submit_interval,
    )
    summary = await runner.run(jobs, s.concurrency, timeout=s.run_timeout)
    state.summary = summary
    log_summary(summary)
    log.info("All transactions completed.")

    if s.linger > 0 and not stop.is_set():
        log.info("Keeping metrics up for %ss", s.linger)
        await _sleep_unless(stop, s.linger)

    return exit_code(summary, s.success_threshold)


async def run(s: Settings) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    recorder = PrometheusRecorder()
    state = RunState()
    server = metrics_server(create_app(recorder, state), s.metrics_host, s.metrics_port)

    async with asyncio.TaskGroup() as tg:
        tg.create_task(server.serve(), name="metrics_server")
        try:
            code = await run_workload(s, recorder, state, stop)
        finally:
            server.should_exit = True
    return code


def main(argv=None):
    setup_logging()
    args = parse_args(argv)
    try:
        s = load_settings(**overrides(args))
    except ValueError as e:
        log.error("Invalid configuration: %s", e)
        sys.exit(EXIT_SETUP_FAILED)
    sys.exit(asyncio.run(run(s)))


if __name__ == "__main__":
    main()
