"""
Tests for the auxiliary resources server
"""
import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from evidence import SOURCE_DEPTH, SOURCE_GAS, EvidenceGatherer, ResourceClient
from resources_server import (FeeHistoryReader, congestion_from_ratio, create_app,
                              rpc_url_for, variance_from_rewards, venue_depth)


@pytest.fixture(autouse=True)
def _no_rpc_env(monkeypatch):
    for chain in ("BASE", "ETHEREUM_MAINNET", "ARBITRUM"):
        monkeypatch.delenv(f"{chain}_RPC_URL", raising=False)


async def _client(app: web.Application) -> TestClient:
    client = TestClient(TestServer(app))
    await client.start_server()
    return client


@pytest.mark.parametrize("ratio,level", [
    (0.95, "high"), (0.7, "elevated"), (0.5, "moderate"), (0.1, "low"),
])
def test_congestion_from_ratio(ratio, level):
    assert congestion_from_ratio(ratio) == level


def test_variance_from_rewards():
    assert variance_from_rewards(1.0, 1.2) == "low"
    assert variance_from_rewards(1.0, 2.0) == "medium"
    assert variance_from_rewards(1.0, 5.0) == "high"
    assert variance_from_rewards(0.0, 0.0) == "low"


def test_rpc_url_for_reads_chain_env(monkeypatch):
    monkeypatch.setenv("ETHEREUM_MAINNET_RPC_URL", "http://rpc.local")
    assert rpc_url_for("ethereum-mainnet") == "http://rpc.local"
    assert rpc_url_for("base") is None


def test_venue_depth_sorted_and_stable_boost():
    volatile = venue_depth("base", "USDC", "WETH")
    depths = [v["depth_usd"] for v in volatile["venues"]]
    assert depths == sorted(depths, reverse=True)
    assert volatile["best_by_depth"] == volatile["venues"][0]["venue"]

    stable = venue_depth("base", "USDC", "USDT")
    assert stable["venues"][0]["depth_usd"] > volatile["venues"][0]["depth_usd"]


@pytest.mark.asyncio
async def test_health_and_index():
    client = await _client(create_app())
    try:
        resp = await client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "healthy"

        body = await (await client.get("/")).json()
        assert "/resources/gas-profile" in body["endpoints"]
        assert "/resources/venue-depth" in body["endpoints"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_gas_profile_from_static_bands():
    client = await _client(create_app())
    try:
        resp = await client.get("/resources/gas-profile", params={"chain": "BASE"})
        body = await resp.json()
    finally:
        await client.close()
    assert resp.status == 200
    assert body["ok"] is True
    data = body["data"]
    assert data["source"] == "static_bands"
    assert data["chain"] == "base"
    assert data["congestion_level"] == "moderate"
    assert set(data["cost_estimates"]) >= {"swap_usd", "rebalance_usd"}


@pytest.mark.asyncio
async def test_gas_profile_unsupported_chain_is_400():
    client = await _client(create_app())
    try:
        resp = await client.get("/resources/gas-profile", params={"chain": "solana"})
        body = await resp.json()
    finally:
        await client.close()
    assert resp.status == 400
    assert body["ok"] is False
    assert "solana" in body["error"]


@pytest.mark.asyncio
async def test_gas_profile_from_fee_history(monkeypatch):
    async def rpc(request):
        payload = await request.json()
        assert payload["method"] == "eth_feeHistory"
        return web.json_response({"jsonrpc": "2.0", "id": 1, "result": {
            "baseFeePerGas": [hex(10 * 10 ** 9), hex(12 * 10 ** 9)],
            "gasUsedRatio": [0.95],
            "reward": [[hex(1 * 10 ** 9), hex(2 * 10 ** 9), hex(6 * 10 ** 9)]],
        }})

    rpc_app = web.Application()
    rpc_app.router.add_post("/", rpc)
    rpc_server = TestServer(rpc_app)
    await rpc_server.start_server()
    monkeypatch.setenv("ETHEREUM_MAINNET_RPC_URL", str(rpc_server.make_url("/")))

    client = await _client(create_app())
    try:
        resp = await client.get("/resources/gas-profile", params={"chain": "ethereum-mainnet"})
        data = (await resp.json())["data"]
    finally:
        await client.close()
        await rpc_server.close()

    assert data["source"] == "eth_feeHistory"
    assert data["base_fee_gwei"] == 12.0
    assert data["median_priority_fee_gwei"] == 2.0
    assert data["suggested_max_fee_gwei"] == 26.0
    assert data["congestion_level"] == "high"
    assert data["variance_hint"] == "high"


@pytest.mark.asyncio
async def test_fee_history_failure_falls_back_to_static(monkeypatch):
    async def rpc(request):
        return web.json_response({"jsonrpc": "2.0", "id": 1,
                                  "error": {"code": -32601, "message": "nope"}})

    rpc_app = web.Application()
    rpc_app.router.add_post("/", rpc)
    rpc_server = TestServer(rpc_app)
    await rpc_server.start_server()
    monkeypatch.setenv("BASE_RPC_URL", str(rpc_server.make_url("/")))

    reader = FeeHistoryReader()
    try:
        profile, err = await reader.read("base", str(rpc_server.make_url("/")))
        assert profile is None and err.startswith("rpc_error")

        client = await _client(create_app(reader))
        try:
            data = (await (await client.get("/resources/gas-profile")).json())["data"]
        finally:
            await client.close()
    finally:
        await reader.close()
        await rpc_server.close()
    assert data["source"] == "static_bands"


@pytest.mark.asyncio
async def test_venue_depth_requires_assets():
    client = await _client(create_app())
    try:
        missing = await client.get("/resources/venue-depth", params={"chain": "base"})
        ok = await client.get("/resources/venue-depth",
                              params={"chain": "base", "asset_in": "usdc", "asset_out": "weth"})
        body = await ok.json()
    finally:
        await client.close()
    assert missing.status == 400
    assert body["data"]["asset_in"] == "USDC"
    assert body["data"]["venues"]


@pytest.mark.asyncio
@pytest.mark.parametrize("path,key", [
    ("/resources/risk-policies", "notional_bands_usd"),
    ("/resources/gas-bands", "gas_price_wei"),
    ("/resources/strategy-archetypes", "archetypes"),
    ("/resources/market-signal-taxonomy", "taxonomy"),
    ("/resources/portfolio-templates", "template"),
    ("/resources/supported-chains", "chains"),
    ("/resources/supported-venues", "venues"),
])
async def test_static_helper_resources(path, key):
    client = await _client(create_app())
    try:
        resp = await client.get(path)
        body = await resp.json()
    finally:
        await client.close()
    assert resp.status == 200
    assert body["ok"] is True
    assert key in body["data"]


@pytest.mark.asyncio
async def test_evidence_gatherer_against_real_app():
    server = TestServer(create_app())
    await server.start_server()
    client = ResourceClient(str(server.make_url("/resources/gas-profile")),
                            str(server.make_url("/resources/venue-depth")))
    request = {"chain": "base", "asset_in": "USDC", "asset_out": "WETH",
               "notional_value_usd": 25_000.0}
    try:
        gathered = await EvidenceGatherer(client).gather([SOURCE_GAS, SOURCE_DEPTH], request)
    finally:
        await client.close()
        await server.close()

    assert [e.source for e in gathered.evidence] == [SOURCE_GAS, SOURCE_DEPTH]
    assert all(e.ok for e in gathered.evidence)
    assert gathered.gas["source"] == "static_bands"
    assert gathered.depth["best_by_depth"]
    assert gathered.confidence == "high"


@pytest.mark.asyncio
async def test_short_reward_rows_fall_back_to_static(monkeypatch):
    async def rpc(request):
        return web.json_response({"jsonrpc": "2.0", "id": 1, "result": {
            "baseFeePerGas": [hex(10 ** 9), hex(10 ** 9)],
            "gasUsedRatio": [0.5],
            "reward": [[hex(10 ** 9)]],
        }})

    rpc_app = web.Application()
    rpc_app.router.add_post("/", rpc)
    rpc_server = TestServer(rpc_app)
    await rpc_server.start_server()
    monkeypatch.setenv("BASE_RPC_URL", str(rpc_server.make_url("/")))

    reader = FeeHistoryReader()
    try:
        profile, err = await reader.read("base", str(rpc_server.make_url("/")))
        assert profile is None and err.startswith("parse_error")

        client = await _client(create_app(reader))
        try:
            resp = await client.get("/resources/gas-profile", params={"chain": "base"})
            data = (await resp.json())["data"]
        finally:
            await client.close()
    finally:
        await reader.close()
        await rpc_server.close()
    assert resp.status == 200
    assert data["source"] == "static_bands"
