"""
Tests for requirement normalisation and validation
"""
import math

import pytest

from validators import (parse_lenient_number, validate_execution_quote,
                        validate_gas_execution, validate_market_intel,
                        validate_portfolio_rebalancer, validate_risk_sentinel,
                        validate_strategy_audit)

ALL_VALIDATORS = [
    validate_risk_sentinel,
    validate_execution_quote,
    validate_gas_execution,
    validate_strategy_audit,
    validate_market_intel,
    validate_portfolio_rebalancer,
]


@pytest.mark.parametrize("raw,expected", [
    (50000, 50000.0),
    ("50000", 50000.0),
    ("50,000", 50000.0),
    (" 1,234.5 ", 1234.5),
    (0, 0.0),
])
def test_parse_lenient_number_accepts(raw, expected):
    value, err = parse_lenient_number(raw)
    assert err is None
    assert value == expected


@pytest.mark.parametrize("raw,reason", [
    (None, "missing"),
    ("", "missing"),
    ("abc", "not_a_number"),
    (True, "not_a_number"),
    ([1], "not_a_number"),
    (float("nan"), "not_finite"),
    ("inf", "not_finite"),
])
def test_parse_lenient_number_rejects(raw, reason):
    value, err = parse_lenient_number(raw)
    assert value is None
    assert err == reason


def test_comma_notional_normalizes_like_plain_number(risk_request):
    a = dict(risk_request, notional_value_usd="50,000")
    b = dict(risk_request, notional_value_usd=50000)
    assert validate_risk_sentinel(a).ok
    assert validate_risk_sentinel(b).ok
    assert a == b


@pytest.mark.parametrize("validator", ALL_VALIDATORS)
def test_empty_request_never_raises_and_reports_errors(validator):
    result = validator({})
    assert not result.ok
    assert len(result.errors) >= 1
    assert all(": " in e for e in result.errors)


def test_risk_sentinel_normalises_in_place(risk_request):
    req = dict(risk_request, chain=" BASE ", asset_in="usdc", side="BUY")
    del req["max_slippage_bps"]
    del req["leverage"]
    result = validate_risk_sentinel(req)
    assert result.ok
    assert req["chain"] == "base"
    assert req["asset_in"] == "USDC"
    assert req["side"] == "buy"
    assert req["max_slippage_bps"] == 50.0
    assert req["leverage"] == 1.0
    assert req["execution_venue"] == "unknown"


def test_risk_sentinel_malformed_request_accumulates_errors(risk_request):
    req = dict(risk_request, client_agent_id="", side="hold", notional_value_usd="lots")
    result = validate_risk_sentinel(req)
    assert not result.ok
    assert "client_agent_id: must be a non-empty string" in result.errors
    assert any(e.startswith("side:") for e in result.errors)
    assert any(e.startswith("notional_value_usd:") for e in result.errors)
    # Invalid numbers are still coerced so later code never sees a string.
    assert req["notional_value_usd"] == 0.0


def test_risk_sentinel_bounds(risk_request):
    assert not validate_risk_sentinel(dict(risk_request, max_slippage_bps=0)).ok
    assert not validate_risk_sentinel(dict(risk_request, max_slippage_bps=2001)).ok
    assert validate_risk_sentinel(dict(risk_request, max_slippage_bps=2000)).ok
    assert not validate_risk_sentinel(dict(risk_request, leverage=0.5)).ok
    assert not validate_risk_sentinel(dict(risk_request, notional_value_usd=0)).ok


def test_risk_sentinel_rejects_unknown_chain(risk_request):
    result = validate_risk_sentinel(dict(risk_request, chain="solana"))
    assert any(e.startswith("chain: unsupported chain 'solana'") for e in result.errors)


def test_risk_sentinel_same_asset_rejected(risk_request):
    result = validate_risk_sentinel(dict(risk_request, asset_out="usdc"))
    assert "asset_out: must differ from asset_in" in result.errors


def test_legacy_asset_pair_is_split(risk_request):
    req = dict(risk_request)
    del req["asset_in"], req["asset_out"]
    req["asset_pair"] = "usdc/weth"
    assert validate_risk_sentinel(req).ok
    assert (req["asset_in"], req["asset_out"]) == ("USDC", "WETH")


def test_execution_quote_defaults_allowed_venues(risk_request):
    req = dict(risk_request)
    assert validate_execution_quote(req).ok
    assert "unknown" not in req["allowed_venues"]
    assert "aerodrome" in req["allowed_venues"]
    assert req["urgency"] == "normal"


def test_execution_quote_aggregates_unsupported_venues(risk_request):
    req = dict(risk_request, allowed_venues=["aerodrome", "Dydx", "serum"])
    result = validate_execution_quote(req)
    venue_errors = [e for e in result.errors if e.startswith("allowed_venues:")]
    assert len(venue_errors) == 1
    assert "dydx" in venue_errors[0] and "serum" in venue_errors[0]


def test_gas_execution_requires_enums():
    req = {
        "client_agent_id": "a", "chain": "base", "transaction_type": "bridge",
        "urgency": "asap", "expected_notional_usd": 1000,
    }
    result = validate_gas_execution(req)
    fields = {e.split(":")[0] for e in result.errors}
    assert fields == {"transaction_type", "urgency"}
    assert req["current_gas_price_wei"] == 0.0


def test_strategy_audit_validation():
    req = {
        "client_agent_id": "a", "strategy_name": "loop", "chain": "base",
        "strategy_description": "Lend USDC on Aave",
        "contracts_involved": ["aave", ""],
        "max_leverage": "2.5", "target_yield_apy": -1,
    }
    result = validate_strategy_audit(req)
    assert "contracts_involved[1]: must be a non-empty string" in result.errors
    assert any(e.startswith("target_yield_apy:") for e in result.errors)
    assert req["max_leverage"] == 2.5
    assert req["severity_floor"] == "info"


def test_market_intel_lookback_bounds():
    base = {"client_agent_id": "a", "chain": "base", "minimum_notional_usd": 100_000}
    assert not validate_market_intel(dict(base, lookback_minutes=4)).ok
    assert not validate_market_intel(dict(base, lookback_minutes=43_201)).ok
    req = dict(base, lookback_minutes="60", focus_assets=["weth", " cbbtc "])
    assert validate_market_intel(req).ok
    assert req["focus_assets"] == ["WETH", "CBBTC"]


def test_portfolio_positions_are_validated_per_element():
    req = {
        "client_agent_id": "a", "chain": "base",
        "current_positions": [
            {"asset": "usdc", "amount": 100, "notional_usd": "1,000"},
            {"asset": "", "amount": 0, "notional_usd": 5},
            "oops",
        ],
        "risk_tolerance": "Aggressive", "target_objective": "balanced",
    }
    result = validate_portfolio_rebalancer(req)
    assert "current_positions[1].asset: must be a non-empty string" in result.errors
    assert "current_positions[1].amount: must be a positive number" in result.errors
    assert "current_positions[2]: must be an object" in result.errors
    assert req["current_positions"][0]["asset"] == "USDC"
    assert math.isclose(req["current_positions"][0]["notional_usd"], 1000.0)
    assert req["risk_tolerance"] == "aggressive"


def test_oversized_amounts_are_rejected():
    positions = {
        "client_agent_id": "a", "chain": "base",
        "current_positions": [
            {"asset": "USDC", "amount": 1, "notional_usd": "1e308"},
            {"asset": "WETH", "amount": 1, "notional_usd": "1e308"},
        ],
        "risk_tolerance": "moderate", "target_objective": "balanced",
    }
    errors = validate_portfolio_rebalancer(positions).errors
    assert any(e.startswith("current_positions[0].notional_usd:") for e in errors)
    assert any(e.startswith("current_positions[1].notional_usd:") for e in errors)

    gas = {
        "client_agent_id": "a", "chain": "base", "transaction_type": "swap",
        "urgency": "low", "expected_notional_usd": 1000, "current_gas_price_wei": "1e308",
    }
    assert [e.split(":")[0] for e in validate_gas_execution(gas).errors] == ["current_gas_price_wei"]

    intel = {"client_agent_id": "a", "chain": "base", "lookback_minutes": 60,
             "minimum_notional_usd": "1e308"}
    assert [e.split(":")[0] for e in validate_market_intel(intel).errors] == ["minimum_notional_usd"]


def test_execution_quote_rejects_only_unknown_venues(risk_request):
    req = dict(risk_request, allowed_venues=["unknown", "UNKNOWN"])
    result = validate_execution_quote(req)
    assert "allowed_venues: must name at least one concrete venue" in result.errors
    assert validate_execution_quote(dict(risk_request, allowed_venues=["unknown", "aerodrome"])).ok
