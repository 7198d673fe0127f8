"""
acp_bridge.py  —  Adapter between the virtuals-acp SDK and PhaseDispatcher.

The SDK delivers on_new_task(job, memo_to_sign) callbacks on its own
socket thread and exposes blocking job.respond() / job.deliver() calls.
The dispatcher is asyncio-native, so:

  SDK thread ──run_coroutine_threadsafe──▶ main loop: dispatcher.on_new_task()
  main loop  ──asyncio.to_thread────────▶ blocking job.respond / job.deliver

The SDK is imported lazily in connect(); the rest of the module (and the
tests) work without it installed.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import os
from dataclasses import replace
from typing import Any, Optional

from dispatcher import PhaseDispatcher

log = logging.getLogger("acp_bridge")

CUSTOM_RPC_URL = os.environ.get("CUSTOM_RPC_URL", "").strip() or None


class AcpJobAdapter:
    """Async face of an SDK job: id / input / name plus awaitable respond and deliver."""

    def __init__(self, job: Any):
        self._job = job
        self.id = getattr(job, "id", None)
        self.name = getattr(job, "name", None)
        self.input = (getattr(job, "input", None)
                      or getattr(job, "service_requirement", None)
                      or getattr(job, "requirement", None))

    async def respond(self, accept: bool, reason: str) -> None:
        await asyncio.to_thread(self._job.respond, accept, reason)

    async def deliver(self, deliverable: dict) -> None:
        await asyncio.to_thread(self._job.deliver, deliverable)


class AcpBridge:
    def __init__(self, dispatcher: PhaseDispatcher,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self._dispatcher = dispatcher
        self._loop = loop
        self._client: Any = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    # ── SDK callback (runs on the SDK's thread) ──────────────────────────────
    def on_new_task(self, job: Any, memo_to_sign: Any = None) -> concurrent.futures.Future:
        if self._loop is None:
            raise RuntimeError("AcpBridge has no event loop bound; call bind_loop() first")
        job_id = getattr(job, "id", None)
        log.info("New task for job %s (phase=%s)", job_id, getattr(job, "phase", None))
        fut = asyncio.run_coroutine_threadsafe(
            self._dispatcher.on_new_task(AcpJobAdapter(job), memo_to_sign), self._loop,
        )
        fut.add_done_callback(lambda f: self._report(job_id, f))
        return fut

    @staticmethod
    def _report(job_id: Any, fut: concurrent.futures.Future) -> None:
        if fut.cancelled():
            log.warning("Job %s handler cancelled", job_id)
            return
        exc = fut.exception()
        if exc is not None:
            log.error("Job %s handler failed: %s", job_id, exc, exc_info=exc)

    # ── Connection ───────────────────────────────────────────────────────────
    def connect(self, private_key: str, entity_id: str, wallet_address: str,
                rpc_url: Optional[str] = CUSTOM_RPC_URL) -> Any:
        """Build the SDK client; blocking, run it through asyncio.to_thread."""
        from virtuals_acp.client import VirtualsACP
        from virtuals_acp.contract_clients.contract_client_v2 import ACPContractClientV2

        kwargs = dict(
            wallet_private_key=private_key,
            agent_wallet_address=wallet_address,
            entity_id=int(entity_id),
        )
        if rpc_url:
            from virtuals_acp.configs.configs import BASE_MAINNET_CONFIG_V2
            kwargs["config"] = replace(BASE_MAINNET_CONFIG_V2, rpc_url=rpc_url)
            log.info("Using custom RPC endpoint for the ACP contract client")

        self._client = VirtualsACP(
            acp_contract_clients=ACPContractClientV2(**kwargs),
            on_new_task=self.on_new_task,
        )
        log.info("ACP client initialised for entity %s (%s)", entity_id, wallet_address)
        return self._client
