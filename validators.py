"""
validators.py  —  Requirement normalisation and validation per job kind.

Every validator takes the raw requirement dict handed over by the buyer,
mutates it in place into normalised form (trimmed strings, lower-cased
enums, parsed numbers, defaulted optionals) and returns a ValidationResult.

Rules
-----
  * Errors accumulate; a validator never stops at the first bad field so
    the caller can fix everything in a single resubmission.
  * Numeric fields accept a number or a numeric string with thousands
    separators ("50,000").  Anything non-finite is an error, and the field
    is still overwritten with a float so downstream maths never sees a str.
  * Validation is total: any mapping, including {}, yields a result and
    never raises.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from reference_data import SUPPORTED_CHAINS, SUPPORTED_VENUES

log = logging.getLogger("validators")

SIDES            = ("buy", "sell", "long", "short")
URGENCIES        = ("low", "normal", "high")
TRANSACTION_TYPES = ("swap", "liquidity_add", "rebalance", "leverage_open")
RISK_TOLERANCES  = ("conservative", "moderate", "aggressive")
OBJECTIVES       = ("maximize_yield", "preserve_capital", "balanced")
SEVERITIES       = ("info", "low", "medium", "high", "critical")

SLIPPAGE_MIN_BPS = 1
SLIPPAGE_MAX_BPS = 2000
DEFAULT_SLIPPAGE_BPS = 50
LOOKBACK_MIN_MINUTES = 5
LOOKBACK_MAX_MINUTES = 43_200

# Upper sanity bounds for fields that feed sums and multipliers downstream.
MAX_NOTIONAL_USD  = 1e15
MAX_GAS_PRICE_WEI = 1e15

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_address_like(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value.strip()))


def severity_weight(severity: str) -> int:
    try:
        return SEVERITIES.index(severity) + 1
    except ValueError:
        return 0


# ══════════════════════════════════════════════════════════════════════════════
# Lenient number parsing
# ══════════════════════════════════════════════════════════════════════════════

def parse_lenient_number(value: Any) -> Tuple[Optional[float], Optional[str]]:
    """
    Coerce a number or numeric string into a finite float.

    Returns
    -------
    (number, error)
        number : float, or None when the input cannot be used.
        error  : None on success, otherwise a short reason
                 ("missing", "not_a_number", "not_finite").

    bool is rejected even though it subclasses int.
    """
    if value is None:
        return None, "missing"
    if isinstance(value, bool):
        return None, "not_a_number"
    if isinstance(value, (int, float)):
        num = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return None, "missing"
        try:
            num = float(text)
        except ValueError:
            return None, "not_a_number"
    else:
        return None, "not_a_number"
    if not math.isfinite(num):
        return None, "not_finite"
    return num, None


# ══════════════════════════════════════════════════════════════════════════════
# ValidationResult / FieldValidator
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class FieldValidator:
    """Accumulates "field: message" errors while normalising ``req`` in place."""

    def __init__(self, req: dict):
        self.req = req
        self.errors: List[str] = []

    def error(self, name: str, message: str) -> None:
        self.errors.append(f"{name}: {message}")

    def result(self) -> ValidationResult:
        if self.errors:
            log.debug("Validation failed with %d error(s): %s",
                      len(self.errors), self.errors)
        return ValidationResult(errors=list(self.errors))

    # ── scalars ───────────────────────────────────────────────────────────────

    def string(self, name: str,
               message: str = "must be a non-empty string") -> Optional[str]:
        raw = self.req.get(name)
        if isinstance(raw, str) and raw.strip():
            self.req[name] = raw.strip()
            return self.req[name]
        self.error(name, message)
        return None

    def asset(self, name: str) -> Optional[str]:
        """Asset symbol or token address; symbols are upper-cased."""
        value = self.string(name, "must be a non-empty asset symbol or token address")
        if value is None:
            return None
        if not value.lower().startswith("0x"):
            value = value.upper()
        self.req[name] = value
        return value

    def enum(self, name: str, allowed: Sequence[str],
             default: Optional[str] = None,
             message: Optional[str] = None) -> Optional[str]:
        raw = self.req.get(name)
        if (raw is None or (isinstance(raw, str) and not raw.strip())) and default is not None:
            self.req[name] = default
            return default
        if isinstance(raw, str):
            value = raw.strip().lower()
            self.req[name] = value
            if value in allowed:
                return value
        self.error(name, message or f"must be one of: {', '.join(allowed)}")
        return None

    def chain(self, name: str = "chain") -> Optional[str]:
        raw = self.req.get(name)
        allowed = ", ".join(SUPPORTED_CHAINS)
        if isinstance(raw, str) and raw.strip():
            value = raw.strip().lower()
            self.req[name] = value
            if value in SUPPORTED_CHAINS:
                return value
            self.error(name, f"unsupported chain '{value}'; must be one of: {allowed}")
            return None
        self.error(name, f"must be one of: {allowed}")
        return None

    def number(self, name: str, message: str,
               minimum: Optional[float] = None,
               maximum: Optional[float] = None,
               exclusive_minimum: bool = False,
               default: Optional[float] = None) -> Optional[float]:
        raw = self.req.get(name)
        if default is not None and (raw is None or (isinstance(raw, str) and not raw.strip())):
            self.req[name] = float(default)
            return float(default)

        value, err = parse_lenient_number(raw)
        if err is not None:
            self.req[name] = 0.0
            self.error(name, message)
            return None

        self.req[name] = value
        too_low = minimum is not None and (
            value <= minimum if exclusive_minimum else value < minimum
        )
        too_high = maximum is not None and value > maximum
        if too_low or too_high:
            self.error(name, message)
            return None
        return value

    # ── arrays ────────────────────────────────────────────────────────────────

    def string_list(self, name: str, required: bool,
                    allowed: Optional[Sequence[str]] = None,
                    upper: bool = False,
                    message: Optional[str] = None) -> Optional[List[str]]:
        raw = self.req.get(name)
        if raw is None and not required:
            return None
        if not isinstance(raw, list) or (required and not raw):
            self.error(name, message or (
                "must be a non-empty array of strings" if required
                else "must be an array of strings if provided"
            ))
            if not isinstance(raw, list):
                self.req[name] = []
            return None

        cleaned: List[str] = []
        unsupported: List[str] = []
        element_errors = 0
        for idx, item in enumerate(raw):
            if not isinstance(item, str) or not item.strip():
                self.error(f"{name}[{idx}]", "must be a non-empty string")
                element_errors += 1
                continue
            value = item.strip()
            if allowed is not None:
                value = value.lower()
                if value not in allowed:
                    unsupported.append(value)
            elif upper and not value.lower().startswith("0x"):
                value = value.upper()
            cleaned.append(value)

        if unsupported:
            self.error(name, (
                f"unsupported value(s): {', '.join(unsupported)}; "
                f"must be drawn from: {', '.join(allowed or ())}"
            ))
        self.req[name] = cleaned
        if unsupported or element_errors:
            return None
        return cleaned

    def positions(self, name: str) -> Optional[List[dict]]:
        raw = self.req.get(name)
        if not isinstance(raw, list) or not raw:
            self.error(name, "must be a non-empty array of { asset, amount, notional_usd } objects")
            if not isinstance(raw, list):
                self.req[name] = []
            return None

        before = len(self.errors)
        normalised: List[dict] = []
        for idx, pos in enumerate(raw):
            label = f"{name}[{idx}]"
            if not isinstance(pos, dict):
                self.error(label, "must be an object")
                continue
            sub = FieldValidator(dict(pos))
            asset = sub.string("asset")
            sub.number("amount", "must be a positive number",
                       minimum=0, exclusive_minimum=True)
            sub.number("notional_usd",
                       f"must be a positive number no greater than {MAX_NOTIONAL_USD:.0e}",
                       minimum=0, exclusive_minimum=True, maximum=MAX_NOTIONAL_USD)
            for err in sub.errors:
                self.errors.append(f"{label}.{err}")
            if asset is not None:
                sub.req["asset"] = asset if asset.lower().startswith("0x") else asset.upper()
            normalised.append(sub.req)

        self.req[name] = normalised
        return normalised if len(self.errors) == before else None


def _split_asset_pair(req: dict) -> None:
    """Legacy wire format: asset_pair="USDC/WETH" instead of asset_in/asset_out."""
    pair = req.get("asset_pair")
    if not isinstance(pair, str) or "/" not in pair:
        return
    left, _, right = pair.partition("/")
    if req.get("asset_in") is None and left.strip():
        req["asset_in"] = left.strip()
    if req.get("asset_out") is None and right.strip():
        req["asset_out"] = right.strip()


def _distinct_assets(v: FieldValidator, asset_in: Optional[str], asset_out: Optional[str]) -> None:
    if asset_in and asset_out and asset_in.lower() == asset_out.lower():
        v.error("asset_out", "must differ from asset_in")


# ══════════════════════════════════════════════════════════════════════════════
# Per-kind validators
# ══════════════════════════════════════════════════════════════════════════════

def validate_risk_sentinel(req: dict) -> ValidationResult:
    v = FieldValidator(req)
    v.string("client_agent_id")
    v.chain()
    _split_asset_pair(req)
    asset_in  = v.asset("asset_in")
    asset_out = v.asset("asset_out")
    _distinct_assets(v, asset_in, asset_out)
    v.enum("side", SIDES, message="must be one of 'buy', 'sell', 'long', 'short'")
    v.number("notional_value_usd", "must be a positive number in USD",
             minimum=0, exclusive_minimum=True)
    v.number("max_slippage_bps",
             f"must be between {SLIPPAGE_MIN_BPS} and {SLIPPAGE_MAX_BPS} bps",
             minimum=SLIPPAGE_MIN_BPS, maximum=SLIPPAGE_MAX_BPS,
             default=DEFAULT_SLIPPAGE_BPS)
    v.number("leverage", "must be >= 1 (use 1 for spot/no leverage)",
             minimum=1, default=1)
    v.enum("execution_venue", SUPPORTED_VENUES, default="unknown")
    return v.result()


def validate_execution_quote(req: dict) -> ValidationResult:
    v = FieldValidator(req)
    v.string("client_agent_id")
    v.chain()
    _split_asset_pair(req)
    asset_in  = v.asset("asset_in")
    asset_out = v.asset("asset_out")
    _distinct_assets(v, asset_in, asset_out)
    v.enum("side", SIDES, default="buy",
           message="must be one of 'buy', 'sell', 'long', 'short'")
    v.number("notional_value_usd", "must be a positive number in USD",
             minimum=0, exclusive_minimum=True)
    v.number("max_slippage_bps",
             f"must be between {SLIPPAGE_MIN_BPS} and {SLIPPAGE_MAX_BPS} bps",
             minimum=SLIPPAGE_MIN_BPS, maximum=SLIPPAGE_MAX_BPS,
             default=DEFAULT_SLIPPAGE_BPS)
    v.enum("urgency", URGENCIES, default="normal")
    if req.get("allowed_venues") is None:
        req["allowed_venues"] = [x for x in SUPPORTED_VENUES if x != "unknown"]
    else:
        venues = v.string_list("allowed_venues", required=True, allowed=SUPPORTED_VENUES,
                               message="must be a non-empty array of venue identifiers")
        if venues and all(x == "unknown" for x in venues):
            v.error("allowed_venues", "must name at least one concrete venue")
    return v.result()


def validate_gas_execution(req: dict) -> ValidationResult:
    v = FieldValidator(req)
    v.string("client_agent_id")
    v.chain()
    v.enum("transaction_type", TRANSACTION_TYPES)
    v.enum("urgency", URGENCIES)
    v.number("expected_notional_usd", "must be a positive number",
             minimum=0, exclusive_minimum=True)
    v.number("current_gas_price_wei",
             f"must be a non-negative number no greater than {MAX_GAS_PRICE_WEI:.0e} "
             "(0 allowed for unknown)",
             minimum=0, maximum=MAX_GAS_PRICE_WEI, default=0)
    return v.result()


def validate_strategy_audit(req: dict) -> ValidationResult:
    v = FieldValidator(req)
    v.string("client_agent_id")
    v.string("strategy_name")
    v.chain()
    v.string("strategy_description",
             "must be a non-empty description of the strategy")
    v.string_list("contracts_involved", required=True,
                  message="must be a non-empty array of contract addresses or identifiers")
    v.number("max_leverage", "must be >= 1", minimum=1)
    v.number("target_yield_apy", "must be a non-negative number (percent APY)",
             minimum=0)
    v.enum("severity_floor", SEVERITIES, default="info")
    return v.result()


def validate_market_intel(req: dict) -> ValidationResult:
    v = FieldValidator(req)
    v.string("client_agent_id")
    v.chain()
    v.number("lookback_minutes",
             f"must be between {LOOKBACK_MIN_MINUTES} and {LOOKBACK_MAX_MINUTES} minutes",
             minimum=LOOKBACK_MIN_MINUTES, maximum=LOOKBACK_MAX_MINUTES)
    v.number("minimum_notional_usd",
             f"must be a positive number no greater than {MAX_NOTIONAL_USD:.0e}",
             minimum=0, exclusive_minimum=True, maximum=MAX_NOTIONAL_USD)
    v.string_list("focus_assets", required=False, upper=True)
    return v.result()


def validate_portfolio_rebalancer(req: dict) -> ValidationResult:
    v = FieldValidator(req)
    v.string("client_agent_id")
    v.chain()
    v.positions("current_positions")
    v.enum("risk_tolerance", RISK_TOLERANCES)
    v.enum("target_objective", OBJECTIVES)
    return v.result()

