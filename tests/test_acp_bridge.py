"""
Tests for the SDK-thread ↔ event-loop bridge
"""
import asyncio
import threading

import pytest

from acp_bridge import AcpBridge, AcpJobAdapter
from conftest import FakeGatherer, make_memo
from dispatcher import ACCEPT_REASON, JobState, PhaseDispatcher
from job_cache import JobCache


class SyncJob:
    """Blocking job surface, like the SDK's."""

    def __init__(self, job_id=11, job_input=None):
        self.id = job_id
        self.input = job_input
        self.calls = []
        self.threads = []

    def respond(self, accept, reason):
        self.threads.append(threading.get_ident())
        self.calls.append(("respond", accept, reason))

    def deliver(self, deliverable):
        self.threads.append(threading.get_ident())
        self.calls.append(("deliver", deliverable))


@pytest.mark.asyncio
async def test_adapter_runs_blocking_calls_off_the_loop():
    job = SyncJob(job_input={"name": "risk_sentinel"})
    adapter = AcpJobAdapter(job)
    assert adapter.id == 11
    assert adapter.input == {"name": "risk_sentinel"}

    await adapter.respond(True, "ok")
    await adapter.deliver({"decision": "APPROVE"})
    assert job.calls == [("respond", True, "ok"), ("deliver", {"decision": "APPROVE"})]
    assert threading.get_ident() not in job.threads


def test_on_new_task_requires_a_bound_loop():
    bridge = AcpBridge(PhaseDispatcher(JobCache(), None))
    with pytest.raises(RuntimeError):
        bridge.on_new_task(SyncJob(), make_memo(1))


@pytest.mark.asyncio
async def test_callbacks_from_sdk_thread_reach_the_dispatcher(risk_request):
    cache = JobCache()
    dispatcher = PhaseDispatcher(cache, FakeGatherer())
    bridge = AcpBridge(dispatcher)
    bridge.bind_loop(asyncio.get_running_loop())
    job = SyncJob()

    def sdk_thread(memo):
        return bridge.on_new_task(job, memo).result(timeout=5)

    negotiate = make_memo(1, {"name": "risk_sentinel", "requirement": risk_request})
    state = await asyncio.to_thread(sdk_thread, negotiate)
    assert state is JobState.ACCEPTED
    assert "11" in cache

    state = await asyncio.to_thread(sdk_thread, make_memo(3))
    assert state is JobState.DELIVERED
    assert job.calls[0] == ("respond", True, ACCEPT_REASON)
    kind, deliverable = job.calls[1]
    assert kind == "deliver"
    assert deliverable["decision"] == "APPROVE"


@pytest.mark.asyncio
async def test_handler_failure_surfaces_on_the_future(risk_request):
    class FailingJob(SyncJob):
        def respond(self, accept, reason):
            raise ConnectionError("socket closed")

    bridge = AcpBridge(PhaseDispatcher(JobCache(), None), asyncio.get_running_loop())
    memo = make_memo(1, {"name": "risk_sentinel", "requirement": risk_request})
    fut = await asyncio.to_thread(bridge.on_new_task, FailingJob(), memo)
    with pytest.raises(ConnectionError):
        await asyncio.wrap_future(fut)
