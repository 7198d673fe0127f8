"""
main.py  —  AegisAI advisory seller entry point.

Wires the pieces together and runs until SIGINT / SIGTERM:

  ACP SDK thread ─▶ AcpBridge ─▶ PhaseDispatcher ─▶ JobCache
                                        │
                                        └─▶ pipeline ─▶ EvidenceGatherer ─▶ resources
                                                      └▶ risk_engine / advisory_engine

Modes
  (default)           seller only; resources are read from RESOURCES_BASE_URL
                      (or GAS_PROFILE_URL / VENUE_DEPTH_URL)
  --with-resources    also serve the resource endpoints in-process and, when
                      no resource URL is configured, point the seller at them
  --resources-only    serve the resource endpoints only; no credentials needed

Exit Codes:
  0  — Clean, intentional shutdown
  1  — Fatal startup error (missing credentials, bad configuration, SDK init)
  2  — Unrecoverable runtime error / forced shutdown after timeout
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional, Sequence

from dotenv import load_dotenv


load_dotenv(override=True)

from acp_bridge       import AcpBridge
from dispatcher       import DEFAULT_CHAIN, PhaseDispatcher
from evidence         import EvidenceGatherer, ResourceClient, default_resource_urls
from job_cache        import JobCache
from reference_data   import SUPPORTED_CHAINS
from resources_server import RESOURCES_HOST, RESOURCES_PORT, start_resources_server

LOG_PATH = os.environ.get("LOG_PATH", "aegis_seller.log").strip() or "aegis_seller.log"

log = logging.getLogger("main")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(LOG_PATH, encoding="utf-8"),
    ],
)
for _lib in ("aiohttp", "web3", "urllib3", "socketio", "engineio"):
    logging.getLogger(_lib).setLevel(logging.WARNING)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return float(default)
    try:
        return float(raw.strip())
    except ValueError:
        log.warning("Invalid float for %s=%r; using default=%s", name, raw, default)
        return float(default)


# ── Config ─────────────────────────────────────────────────────────────────────
JOB_CACHE_TTL_SECS    = _env_float("JOB_CACHE_TTL_SECS", 0.0)
HEARTBEAT_SECS        = _env_float("HEARTBEAT_SECS", 60.0)
SHUTDOWN_TIMEOUT_SECS = _env_float("SHUTDOWN_TIMEOUT_SECS", 10.0)

REQUIRED_CREDENTIALS = (
    "WHITELISTED_WALLET_PRIVATE_KEY",
    "SELLER_ENTITY_ID",
    "SELLER_AGENT_WALLET_ADDRESS",
)


def _missing_credentials() -> List[str]:
    return [v for v in REQUIRED_CREDENTIALS if not os.environ.get(v, "").strip()]


def _validate_credentials() -> bool:
    missing = _missing_credentials()
    for name in missing:
        log.critical("Missing environment variable %s (check .env)", name)
    return not missing


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AegisAI advisory seller")
    parser.add_argument("--with-resources", action="store_true",
                        help="also serve the resource endpoints in-process")
    parser.add_argument("--resources-only", action="store_true",
                        help="serve the resource endpoints only")
    parser.add_argument("--port", type=int, default=RESOURCES_PORT,
                        help="resources server port (default: RESOURCES_PORT or 3000)")
    parser.add_argument("--default-chain", type=str, default=DEFAULT_CHAIN,
                        help="chain assumed when a requirement omits one")
    return parser


async def _heartbeat(cache: JobCache, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        log.info("Heartbeat: provider is still running (cached jobs=%d)", len(cache))


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _handle_signal(*_args) -> None:
        log.info("Shutdown signal received")
        loop.call_soon_threadsafe(stop.set)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, _handle_signal)


def _resource_client(args: argparse.Namespace) -> ResourceClient:
    gas_url, depth_url = default_resource_urls()
    if args.with_resources and not gas_url and not depth_url:
        base = f"http://127.0.0.1:{args.port}/resources"
        log.info("Seller reading resources from the in-process server at %s", base)
        return ResourceClient(f"{base}/gas-profile", f"{base}/venue-depth")
    return ResourceClient.from_env()


async def _teardown(heartbeat: Optional[asyncio.Task], client: Optional[ResourceClient],
                    runner) -> None:
    if heartbeat is not None:
        heartbeat.cancel()
        try:
            await heartbeat
        except asyncio.CancelledError:
            pass
    if client is not None:
        await client.close()
    if runner is not None:
        await runner.cleanup()


async def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    stop = asyncio.Event()

    default_chain = (args.default_chain or "").strip().lower()
    if default_chain not in SUPPORTED_CHAINS:
        log.critical("Unsupported default chain %r; must be one of: %s",
                     args.default_chain, ", ".join(SUPPORTED_CHAINS))
        return 1

    if args.resources_only:
        runner = await start_resources_server(RESOURCES_HOST, args.port)
        _install_signal_handlers(stop)
        await stop.wait()
        await runner.cleanup()
        return 0

    if not _validate_credentials():
        return 1

    entity_id = os.environ["SELLER_ENTITY_ID"].strip()
    wallet    = os.environ["SELLER_AGENT_WALLET_ADDRESS"].strip()
    log.info("Seller entity: %s", entity_id)
    log.info("Seller wallet: %s", wallet)

    runner = None
    if args.with_resources:
        runner = await start_resources_server(RESOURCES_HOST, args.port)

    client = _resource_client(args)
    cache = JobCache(ttl_seconds=JOB_CACHE_TTL_SECS or None)
    dispatcher = PhaseDispatcher(cache, EvidenceGatherer(client), default_chain)
    bridge = AcpBridge(dispatcher, asyncio.get_running_loop())

    try:
        await asyncio.to_thread(
            bridge.connect,
            os.environ["WHITELISTED_WALLET_PRIVATE_KEY"].strip(), entity_id, wallet,
        )
    except ImportError as exc:
        log.critical("virtuals-acp SDK not available (%s); install the 'acp' extra", exc)
        await _teardown(None, client, runner)
        return 1
    except Exception as exc:
        log.critical("ACP client initialisation failed: %s", exc, exc_info=True)
        await _teardown(None, client, runner)
        return 1

    log.info("ACP client initialised. Waiting for jobs (default chain=%s)...", default_chain)
    _install_signal_handlers(stop)
    heartbeat = asyncio.create_task(_heartbeat(cache, HEARTBEAT_SECS), name="heartbeat")

    await stop.wait()

    try:
        await asyncio.wait_for(_teardown(heartbeat, client, runner),
                               timeout=SHUTDOWN_TIMEOUT_SECS)
    except asyncio.TimeoutError:
        log.critical("Teardown timed out after %.0f s; forcing exit", SHUTDOWN_TIMEOUT_SECS)
        return 2
    return 0


# ══════════════════════════════════════════════════════════════════════════════
# Entry point
# ══════════════════════════════════════════════════════════════════════════════

def cli() -> None:
    # Custom runner: cancel and await leftover tasks before closing the loop so
    # aiohttp transports are finalised while the loop is still alive.
    code: int = 2
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        try:
            code = loop.run_until_complete(main())
        except Exception as exc:
            log.critical("Unhandled exception in main loop: %s", exc, exc_info=True)
            code = 2
    finally:
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.run_until_complete(loop.shutdown_asyncgens())
        asyncio.set_event_loop(None)
        loop.close()
    sys.exit(code)


if __name__ == "__main__":
    cli()
