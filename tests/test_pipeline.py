"""
Tests for job-kind resolution and the validate → gather → synthesise pipeline
"""
import pytest

from conftest import FakeGatherer
from evidence import SOURCE_DEPTH, SOURCE_GAS
from pipeline import (UNSUPPORTED_MESSAGE, JobKind, build_deliverable, resolve_job_kind)

COMMON_FIELDS = {
    "job_kind", "validation_passed", "validation_errors", "decision", "risk_score",
    "confidence_level", "findings", "evidence", "assumptions", "timestamp_utc",
}


@pytest.mark.parametrize("name,expected", [
    ("risk_sentinel", JobKind.RISK_SENTINEL),
    ("Risk-Sentinel", JobKind.RISK_SENTINEL),
    ("pre-trade-risk", JobKind.RISK_SENTINEL),
    ("EXECUTION_QUOTE", JobKind.EXECUTION_QUOTE),
    ("gas_optimizer", JobKind.GAS_OPTIMIZER),
    ("strategy-audit", JobKind.STRATEGY_AUDIT),
    ("market_intel", JobKind.MARKET_INTEL),
    ("portfolio_rebalance", JobKind.PORTFOLIO_REBALANCE),
    ("unknown", JobKind.UNSUPPORTED),
    ("launch_rocket", JobKind.UNSUPPORTED),
    ("", JobKind.UNSUPPORTED),
    (None, JobKind.UNSUPPORTED),
])
def test_resolve_job_kind(name, expected):
    assert resolve_job_kind(name) is expected


@pytest.mark.asyncio
async def test_unknown_kind_is_unsupported_not_raised():
    out = await build_deliverable("launch_rocket", {"x": 1}, FakeGatherer())
    assert out["error"] is True
    assert out["message"] == UNSUPPORTED_MESSAGE
    assert out["job_kind"] == "launch_rocket"
    assert out["decision"] == "REJECT"
    assert out["risk_score"] == 0
    assert COMMON_FIELDS <= set(out)


@pytest.mark.asyncio
async def test_invalid_request_skips_evidence():
    gatherer = FakeGatherer(gas={"congestion_level": "low"})
    out = await build_deliverable("risk_sentinel", {}, gatherer)
    assert out["validation_passed"] is False
    assert out["evidence"] == []
    assert gatherer.calls == []


@pytest.mark.asyncio
async def test_cached_requirement_is_not_mutated(risk_request):
    cached = dict(risk_request, notional_value_usd="10,000")
    snapshot = dict(cached)
    await build_deliverable("risk_sentinel", cached, FakeGatherer())
    assert cached == snapshot


@pytest.mark.asyncio
@pytest.mark.parametrize("kind,signals", [
    ("risk_sentinel", (SOURCE_GAS, SOURCE_DEPTH)),
    ("execution_quote", (SOURCE_GAS, SOURCE_DEPTH)),
    ("gas_execution_optimizer", (SOURCE_GAS,)),
])
async def test_signals_requested_per_kind(kind, signals, risk_request):
    req = dict(risk_request, transaction_type="swap", urgency="normal",
               expected_notional_usd=10_000)
    gatherer = FakeGatherer()
    out = await build_deliverable(kind, req, gatherer)
    assert out["validation_passed"] is True
    assert gatherer.calls == [signals]


@pytest.mark.asyncio
async def test_every_kind_emits_common_fields(risk_request):
    requests = {
        "risk_sentinel": risk_request,
        "execution_quote": risk_request,
        "gas_execution_optimizer": {
            "client_agent_id": "a", "chain": "base", "transaction_type": "swap",
            "urgency": "low", "expected_notional_usd": 5_000,
        },
        "strategy_safety_audit": {
            "client_agent_id": "a", "strategy_name": "s", "chain": "base",
            "strategy_description": "lend stables", "contracts_involved": ["aave"],
            "max_leverage": 1, "target_yield_apy": 5,
        },
        "market_intelligence_feed": {
            "client_agent_id": "a", "chain": "base", "lookback_minutes": 30,
            "minimum_notional_usd": 50_000,
        },
        "portfolio_rebalancer": {
            "client_agent_id": "a", "chain": "base", "risk_tolerance": "moderate",
            "target_objective": "balanced",
            "current_positions": [{"asset": "USDC", "amount": 1, "notional_usd": 1_000}],
        },
    }
    for kind, req in requests.items():
        out = await build_deliverable(kind, req, FakeGatherer())
        assert out["validation_passed"] is True, (kind, out["validation_errors"])
        assert out["job_kind"] == kind
        assert COMMON_FIELDS <= set(out), kind
        assert 0 <= out["risk_score"] <= 100

        rejected = await build_deliverable(kind, {}, FakeGatherer())
        assert rejected["decision"] == "REJECT" and rejected["risk_score"] == 0
        assert COMMON_FIELDS <= set(rejected), kind


@pytest.mark.asyncio
async def test_no_gatherer_means_no_evidence(risk_request):
    out = await build_deliverable("risk_sentinel", risk_request, None)
    assert out["confidence_level"] == "low"
    assert out["evidence"] == []
