"""
Tests for evidence gathering and confidence derivation
"""
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from evidence import (NOT_CONFIGURED, SOURCE_DEPTH, SOURCE_GAS, Evidence, EvidenceGatherer,
                      ResourceClient, derive_confidence)


@pytest.mark.parametrize("evidence,expected", [
    ([], "low"),
    ([Evidence(SOURCE_GAS, freshness_seconds=1.0)], "medium"),
    ([Evidence(SOURCE_GAS, error="timeout")], "medium"),
    ([Evidence(SOURCE_GAS, 1.0), Evidence(SOURCE_DEPTH, 2.0)], "high"),
    ([Evidence(SOURCE_GAS, error="http_500"), Evidence(SOURCE_DEPTH, error="timeout")], "high"),
    ([Evidence(SOURCE_GAS, 1.0), Evidence(SOURCE_GAS, error="timeout")], "medium"),
])
def test_confidence_depends_only_on_source_labels(evidence, expected):
    assert derive_confidence(evidence) == expected


def test_evidence_serialisation():
    assert Evidence(SOURCE_GAS, freshness_seconds=3.14159).to_dict() == {
        "source": SOURCE_GAS, "freshness_seconds": 3.1,
    }
    assert Evidence(SOURCE_DEPTH, error="timeout").to_dict() == {
        "source": SOURCE_DEPTH, "error": "timeout",
    }


@pytest.mark.asyncio
async def test_unconfigured_resources_are_skipped():
    client = ResourceClient(None, None)
    gathered = await EvidenceGatherer(client).gather(
        [SOURCE_GAS, SOURCE_DEPTH], {"chain": "base"},
    )
    assert gathered.evidence == []
    assert gathered.gas is None and gathered.depth is None
    assert gathered.confidence == "low"

    data, freshness, err = await client.fetch_gas_profile("base")
    assert data is None and err == NOT_CONFIGURED


def _resource_app(gas_status=200, gas_body=None, depth_body=None) -> web.Application:
    async def gas(request):
        assert request.query["chain"] == "base"
        body = gas_body if gas_body is not None else {
            "ok": True, "data": {"congestion_level": "moderate", "base_fee_gwei": 0.02},
        }
        return web.json_response(body, status=gas_status)

    async def depth(request):
        assert request.query["asset_in"] == "USDC"
        assert request.query["asset_out"] == "WETH"
        assert request.query["notional_usd"] == "10000.00"
        body = depth_body if depth_body is not None else {
            "ok": True,
            "data": {"venues": [{"venue": "aerodrome", "depth_usd": 1e7, "fee_bps": 30}],
                     "best_by_depth": "aerodrome"},
        }
        return web.json_response(body)

    app = web.Application()
    app.router.add_get("/gas", gas)
    app.router.add_get("/depth", depth)
    return app


REQUEST = {"chain": "base", "asset_in": "USDC", "asset_out": "WETH", "notional_value_usd": 10000.0}


@pytest.mark.asyncio
async def test_gather_round_trip_both_sources():
    server = TestServer(_resource_app())
    await server.start_server()
    client = ResourceClient(str(server.make_url("/gas")), str(server.make_url("/depth")))
    try:
        gathered = await EvidenceGatherer(client).gather([SOURCE_GAS, SOURCE_DEPTH], REQUEST)
    finally:
        await client.close()
        await server.close()

    assert [e.source for e in gathered.evidence] == [SOURCE_GAS, SOURCE_DEPTH]
    assert all(e.ok for e in gathered.evidence)
    assert gathered.gas["congestion_level"] == "moderate"
    assert gathered.depth["best_by_depth"] == "aerodrome"
    assert gathered.confidence == "high"


@pytest.mark.asyncio
async def test_failed_fetches_become_error_evidence():
    app = _resource_app(gas_status=503, gas_body={"ok": False},
                        depth_body={"ok": False, "error": "pool unavailable"})
    server = TestServer(app)
    await server.start_server()
    client = ResourceClient(str(server.make_url("/gas")), str(server.make_url("/depth")))
    try:
        gathered = await EvidenceGatherer(client).gather([SOURCE_GAS, SOURCE_DEPTH], REQUEST)
    finally:
        await client.close()
        await server.close()

    gas_ev, depth_ev = gathered.evidence
    assert gas_ev.error.startswith("http_503")
    assert depth_ev.error == "resource_not_ok: pool unavailable"
    assert gathered.gas is None and gathered.depth is None
    # Failed sources still count towards confidence.
    assert gathered.confidence == "high"


@pytest.mark.asyncio
async def test_connection_error_is_reported_not_raised():
    client = ResourceClient("http://127.0.0.1:9/gas", None, timeout=2.0)
    try:
        gathered = await EvidenceGatherer(client).gather([SOURCE_GAS, SOURCE_DEPTH], REQUEST)
    finally:
        await client.close()
    assert len(gathered.evidence) == 1
    assert gathered.evidence[0].source == SOURCE_GAS
    assert not gathered.evidence[0].ok
    assert gathered.confidence == "medium"
