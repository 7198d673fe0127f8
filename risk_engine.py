"""
risk_engine.py  —  Heuristic synthesis for trade-shaped jobs.

Job kinds handled here:
  risk_sentinel            pre-trade risk check (approve / reduce / reject)
  execution_quote          venue selection, slippage and split plan
  gas_execution_optimizer  gas price / priority fee recommendation

Shared scoring shape (risk_sentinel, execution_quote)
------------------------------------------------------
  1. Estimate slippage in bps — from venue depth when available, otherwise
     the fallback size curve clamp(round(notional / 50k * 80), 15, 180).
  2. Sub-scores, each integer-rounded and clamped to its band:
        size        0..30   notional / 5k
        slippage    0..35   estimate / 4
        congestion  0..15   low 0 · moderate 5 · elevated 10 · high 15 · unknown 8
        leverage    0..20   (leverage - 1) * 10
     plus a base of 10; the total is clamped into [0, 100].
  3. Decision, in order: APPROVE (size factor 1.0) → REDUCE_SIZE when the
     estimate exceeds the caller's cap (size factor clamp(cap/est, 0.2, 0.8))
     → REJECT when score ≥ 80, evaluated last so it overrides a reduce.
  4. Secondary advisory fields derived deterministically from the above.

All functions here are pure: (normalised request, GatheredEvidence) → dict.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from evidence import GatheredEvidence
from reference_data import GAS_UNITS, NATIVE_USD
from validators import MAX_GAS_PRICE_WEI, ValidationResult, parse_lenient_number

log = logging.getLogger("risk_engine")

# ── Decisions ──────────────────────────────────────────────────────────────────
APPROVE     = "APPROVE"
REDUCE_SIZE = "REDUCE_SIZE"
REJECT      = "REJECT"
EXECUTE_NOW = "EXECUTE_NOW"
DELAY       = "DELAY"

# ── Scoring constants ──────────────────────────────────────────────────────────
BASE_SCORE              = 10
REJECT_SCORE            = 80
SIZE_SCORE_MAX          = 30
SIZE_SCORE_UNIT_USD     = 5_000.0
SLIPPAGE_SCORE_MAX      = 35
SLIPPAGE_SCORE_DIVISOR  = 4.0
CONGESTION_SCORE_MAX    = 15
LEVERAGE_SCORE_MAX      = 20
LEVERAGE_SCORE_PER_X    = 10.0

CONGESTION_SCORES: Dict[str, int] = {
    "low": 0, "moderate": 5, "normal": 5, "elevated": 10, "high": 15,
}
UNKNOWN_CONGESTION_SCORE = 8

FALLBACK_SLIPPAGE_NOTIONAL = 50_000.0
FALLBACK_SLIPPAGE_SCALE    = 80.0
FALLBACK_SLIPPAGE_MIN_BPS  = 15
FALLBACK_SLIPPAGE_MAX_BPS  = 180
DEPTH_SLIPPAGE_MIN_BPS     = 1
DEPTH_SLIPPAGE_MAX_BPS     = 5_000
DEFAULT_VENUE_FEE_BPS      = 30

SIZE_FACTOR_MIN = 0.2
SIZE_FACTOR_MAX = 0.8

REC_SLIPPAGE_FLOOR_BPS = 20
REC_SLIPPAGE_RATIO     = 0.85

HIGH_SLIPPAGE_FLAG_BPS = 60
LARGE_NOTIONAL_USD     = 250_000.0

# (threshold, splits) pairs, evaluated top-down; notional must be strictly greater.
RISK_SPLIT_STEPS:  Tuple[Tuple[float, int], ...] = ((75_000, 3), (30_000, 2))
QUOTE_SPLIT_STEPS: Tuple[Tuple[float, int], ...] = ((100_000, 4), (50_000, 3), (20_000, 2))

# Conservative defaults when the gas profile is missing a field.
DEFAULT_GAS_PRICE_GWEI      = 20.0
DEFAULT_PRIORITY_FEE_GWEI   = 1.5
DEFAULT_SWAP_COST_USD       = 5.0
QUOTE_VALIDITY_SECONDS      = 30

URGENCY_GAS_MULTIPLIER: Dict[str, float] = {"low": 0.9, "normal": 1.0, "high": 1.2}
URGENCY_PRIORITY_MULTIPLIER: Dict[str, float] = {"low": 0.8, "normal": 1.0, "high": 1.5}
GAS_CONGESTION_BASE: Dict[str, int] = {
    "low": 10, "moderate": 30, "normal": 30, "elevated": 55, "high": 80,
}
GAS_UNKNOWN_CONGESTION_BASE = 40

INVALID_ASSUMPTION = "No analysis performed: the request failed validation."


# ══════════════════════════════════════════════════════════════════════════════
# Numeric helpers
# ══════════════════════════════════════════════════════════════════════════════

def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def iround(value: float) -> int:
    """Round half away from zero for non-negative bps/score values."""
    if not math.isfinite(value):
        raise ValueError(f"cannot round non-finite value {value!r}")
    return int(math.floor(value + 0.5))


def bounded_round(value: float, lo: float, hi: float) -> int:
    """Clamp first, then round, so oversized inputs saturate instead of overflowing."""
    return iround(clamp(value, lo, hi))


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _num(value, default: float) -> float:
    parsed, err = parse_lenient_number(value)
    return default if err is not None else parsed


def split_count(notional: float, steps: Sequence[Tuple[float, int]]) -> int:
    for threshold, splits in steps:
        if notional > threshold:
            return splits
    return 1


def recommended_max_slippage(cap_bps: int, estimate_bps: int) -> int:
    """Never above the caller's cap; otherwise 85% of the estimate, floored at 20 bps."""
    return int(min(cap_bps, max(REC_SLIPPAGE_FLOOR_BPS, iround(estimate_bps * REC_SLIPPAGE_RATIO))))


def severity_for_score(score: int) -> str:
    if score >= 60:
        return "high"
    if score >= 40:
        return "medium"
    return "low"


# ══════════════════════════════════════════════════════════════════════════════
# Evidence readers
# ══════════════════════════════════════════════════════════════════════════════

def congestion_level(gas: Optional[dict]) -> Optional[str]:
    if not gas:
        return None
    level = gas.get("congestion_level")
    if isinstance(level, str) and level.strip():
        return level.strip().lower()
    return None


def congestion_score(level: Optional[str]) -> int:
    if level is None:
        return UNKNOWN_CONGESTION_SCORE
    return CONGESTION_SCORES.get(level, UNKNOWN_CONGESTION_SCORE)


def pick_venue(depth: Optional[dict], preferred: Optional[str] = None,
               allowed: Optional[Sequence[str]] = None) -> Optional[dict]:
    """
    Choose the pool used for the slippage estimate.

    The caller's venue wins when the depth data lists it; otherwise the
    resource's best_by_depth, otherwise the deepest listed venue.  Venues
    outside ``allowed`` are ignored entirely.
    """
    if not depth:
        return None
    venues = [
        v for v in (depth.get("venues") or [])
        if isinstance(v, dict) and _num(v.get("depth_usd"), 0.0) > 0
    ]
    if allowed is not None:
        venues = [v for v in venues if str(v.get("venue", "")).lower() in allowed]
    if not venues:
        return None

    by_name = {str(v.get("venue", "")).lower(): v for v in venues}
    if preferred and preferred != "unknown" and preferred in by_name:
        return by_name[preferred]
    best = str(depth.get("best_by_depth") or "").lower()
    if best in by_name:
        return by_name[best]
    return max(venues, key=lambda v: _num(v.get("depth_usd"), 0.0))


def fallback_slippage_bps(notional: float) -> int:
    return bounded_round((notional / FALLBACK_SLIPPAGE_NOTIONAL) * FALLBACK_SLIPPAGE_SCALE,
                         FALLBACK_SLIPPAGE_MIN_BPS, FALLBACK_SLIPPAGE_MAX_BPS)


def estimate_slippage_bps(notional: float, venue: Optional[dict]) -> int:
    """Constant-product impact (≈ 2 × notional / pool depth) plus the pool fee."""
    if venue is None:
        return fallback_slippage_bps(notional)
    depth_usd = _num(venue.get("depth_usd"), 0.0)
    if depth_usd <= 0:
        return fallback_slippage_bps(notional)
    fee_bps = _num(venue.get("fee_bps"), DEFAULT_VENUE_FEE_BPS)
    impact  = 2.0 * notional / depth_usd * 10_000.0
    return bounded_round(impact + fee_bps, DEPTH_SLIPPAGE_MIN_BPS, DEPTH_SLIPPAGE_MAX_BPS)


def gas_cost_usd(gas: Optional[dict], chain: str, tx_type: str = "swap",
                 gas_price_gwei: Optional[float] = None) -> Tuple[float, str]:
    """
    Dollar cost of one transaction of ``tx_type``.

    Returns (usd, basis) where basis names which input the figure came from:
    "cost_estimates", "fee_profile" or "default" ($5 per swap-equivalent).
    """
    if gas:
        estimates = gas.get("cost_estimates") or {}
        if isinstance(estimates, dict):
            quoted, err = parse_lenient_number(
                estimates.get(f"{tx_type}_usd", estimates.get(tx_type))
            )
            if err is None and quoted >= 0:
                return float(quoted), "cost_estimates"

    if gas_price_gwei is None and gas:
        gas_price_gwei = _num(gas.get("suggested_max_fee_gwei"), -1.0)
        if gas_price_gwei < 0:
            base = _num(gas.get("base_fee_gwei"), -1.0)
            prio = _num(gas.get("median_priority_fee_gwei"), DEFAULT_PRIORITY_FEE_GWEI)
            gas_price_gwei = base + prio if base >= 0 else None
    units = GAS_UNITS.get(tx_type, GAS_UNITS["swap"])
    if gas_price_gwei is None:
        return DEFAULT_SWAP_COST_USD * units / GAS_UNITS["swap"], "default"

    native = NATIVE_USD.get(chain, 3_000.0)
    return units * gas_price_gwei * 1e-9 * native, "fee_profile"


# ══════════════════════════════════════════════════════════════════════════════
# Trade scoring
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class TradeScores:
    base:       int
    size:       int
    slippage:   int
    congestion: int
    leverage:   int

    @property
    def total(self) -> int:
        raw = self.base + self.size + self.slippage + self.congestion + self.leverage
        return int(clamp(raw, 0, 100))


def score_trade(notional: float, slippage_bps: int, congestion: Optional[str],
                leverage: float = 1.0) -> TradeScores:
    return TradeScores(
        base=BASE_SCORE,
        size=bounded_round(notional / SIZE_SCORE_UNIT_USD, 0, SIZE_SCORE_MAX),
        slippage=bounded_round(slippage_bps / SLIPPAGE_SCORE_DIVISOR, 0, SLIPPAGE_SCORE_MAX),
        congestion=int(clamp(congestion_score(congestion), 0, CONGESTION_SCORE_MAX)),
        leverage=bounded_round((leverage - 1.0) * LEVERAGE_SCORE_PER_X, 0, LEVERAGE_SCORE_MAX),
    )


def decide_trade(score: int, slippage_bps: int, cap_bps: int) -> Tuple[str, float]:
    decision, size_factor = APPROVE, 1.0
    if slippage_bps > cap_bps:
        decision = REDUCE_SIZE
        size_factor = round(clamp(cap_bps / slippage_bps, SIZE_FACTOR_MIN, SIZE_FACTOR_MAX), 2)
    # Reject is evaluated last and overrides a reduce.
    if score >= REJECT_SCORE:
        decision, size_factor = REJECT, 0.0
    return decision, size_factor


def trade_risk_flags(slippage_bps: int, congestion: Optional[str], leverage: float,
                     notional: float, ev: GatheredEvidence) -> List[str]:
    flags: List[str] = []
    if slippage_bps >= HIGH_SLIPPAGE_FLAG_BPS:
        flags.append("high_estimated_slippage")
    if congestion in ("elevated", "high"):
        flags.append("network_congestion")
    if leverage > 1:
        flags.append("leveraged_position")
    if notional >= LARGE_NOTIONAL_USD:
        flags.append("large_notional")
    if ev.depth is None:
        flags.append("venue_depth_unavailable")
    if ev.gas is None:
        flags.append("gas_profile_unavailable")
    return flags


def _retry_guidance(ev: GatheredEvidence) -> Optional[str]:
    failed = [e.source for e in ev.evidence if not e.ok]
    if not failed:
        return None
    return (
        f"Evidence sources failed ({', '.join(failed)}). Re-submitting the job "
        "once the resources recover may raise confidence; no automatic retry "
        "was performed."
    )


def _trade_assumptions(ev: GatheredEvidence, venue: Optional[dict]) -> List[str]:
    out: List[str] = []
    if venue is None:
        out.append(
            "Slippage estimated from the fallback size curve "
            "clamp(round(notional / 50000 * 80), 15, 180) bps; no venue depth data was used."
        )
    else:
        out.append(
            f"Slippage estimated from {venue.get('venue')} depth of "
            f"${_num(venue.get('depth_usd'), 0.0):,.0f} using a constant-product impact model."
        )
    if ev.gas is None:
        out.append(
            f"Network congestion unknown; a neutral penalty of "
            f"{UNKNOWN_CONGESTION_SCORE} points was applied."
        )
    return out


# ══════════════════════════════════════════════════════════════════════════════
# Rejected / invalid shape
# ══════════════════════════════════════════════════════════════════════════════

def rejected_deliverable(job_kind: str, request: dict, validation: ValidationResult,
                         remediation: str, open_questions: Sequence[str]) -> dict:
    """Fixed shape for a request that failed validation: no analysis, no evidence."""
    return {
        "job_kind":            job_kind,
        "validation_passed":   False,
        "validation_errors":   list(validation.errors),
        "decision":            REJECT,
        "risk_score":          0,
        "confidence_level":    "low",
        "findings": [{
            "id":          "invalid_input",
            "severity":    "critical",
            "description": "The request parameters did not pass strict validation. "
                           "See validation_errors for details.",
            "mitigation":  f"Correct the invalid fields and re-submit the {job_kind} job.",
        }],
        "evidence":            [],
        "assumptions":         [INVALID_ASSUMPTION],
        "request_echo":        dict(request),
        "summary": {
            "overall_risk_level": "invalid",
            "reason":             "Input validation failed; no analysis performed.",
        },
        "methodology":         "No analysis was performed because one or more required "
                               "fields were invalid.",
        "coverage":            {"schema_validation": {"checked": True, "triggered": True}},
        "remediation_plan": [{
            "id":       "fix_invalid_fields",
            "priority": 1,
            "severity": "critical",
            "action":   remediation,
        }],
        "open_questions":      list(open_questions),
        "timestamp_utc":       utc_now_iso(),
    }


# ══════════════════════════════════════════════════════════════════════════════
# risk_sentinel
# ══════════════════════════════════════════════════════════════════════════════

def build_risk_sentinel(req: dict, ev: GatheredEvidence) -> dict:
    notional = float(req["notional_value_usd"])
    cap      = iround(float(req["max_slippage_bps"]))
    leverage = float(req["leverage"])

    venue      = pick_venue(ev.depth, req.get("execution_venue"))
    slippage   = estimate_slippage_bps(notional, venue)
    congestion = congestion_level(ev.gas)
    scores     = score_trade(notional, slippage, congestion, leverage)
    score      = scores.total
    decision, size_factor = decide_trade(score, slippage, cap)
    severity   = severity_for_score(score)
    flags      = trade_risk_flags(slippage, congestion, leverage, notional, ev)

    log.info(
        "risk_sentinel %s %s→%s $%.0f: slip=%dbps cap=%dbps score=%d decision=%s",
        req.get("side"), req.get("asset_in"), req.get("asset_out"),
        notional, slippage, cap, score, decision,
    )

    if decision == APPROVE:
        mitigation = "Proceed with standard risk controls and monitoring."
    elif decision == REDUCE_SIZE:
        mitigation = (f"Execute at most {size_factor:.0%} of the requested notional, "
                      "or raise max_slippage_bps if the cost is acceptable.")
    else:
        mitigation = ("Avoid opening this position under current parameters "
                      "or require explicit risk sign-off.")

    findings = [{
        "id":          "pre_trade_risk_eval",
        "severity":    severity,
        "description": "Pre-trade risk analysis based on notional size, estimated "
                       "slippage, network congestion and leverage.",
        "mitigation":  mitigation,
    }]
    if slippage > cap:
        findings.append({
            "id":          "slippage_exceeds_cap",
            "severity":    "high",
            "description": f"Estimated slippage {slippage} bps exceeds the caller cap of {cap} bps.",
            "mitigation":  "Split the order or reduce size to bring impact under the cap.",
        })
    if "network_congestion" in flags:
        findings.append({
            "id":          "network_congestion",
            "severity":    "medium",
            "description": f"Network congestion is {congestion}; inclusion may be slow and costly.",
            "mitigation":  "Consider delaying non-urgent execution.",
        })

    remediation_plan: List[dict] = []
    if decision != APPROVE:
        remediation_plan.append({
            "id": "reduce_notional", "priority": 1, "severity": "high",
            "action": "Reduce notional_value_usd and/or leverage and re-run risk "
                      "evaluation to move into an acceptable risk band.",
        })
    remediation_plan.append({
        "id": "diversify_exposure", "priority": len(remediation_plan) + 1, "severity": "medium",
        "action": "Consider spreading exposure across time or venues instead of "
                  "concentrating in a single large trade.",
    })

    deliverable = {
        "job_kind":                      "risk_sentinel",
        "validation_passed":             True,
        "validation_errors":             [],
        "decision":                      decision,
        "risk_score":                    score,
        "recommended_size_factor":       size_factor,
        "confidence_level":              ev.confidence,
        "estimated_slippage_bps":        slippage,
        "recommended_max_slippage_bps":  recommended_max_slippage(cap, slippage),
        "recommended_execution_splits":  split_count(notional, RISK_SPLIT_STEPS),
        "risk_flags":                    flags,
        "score_breakdown":               asdict(scores),
        "findings":                      findings,
        "evidence":                      ev.as_list(),
        "assumptions":                   _trade_assumptions(ev, venue),
        "summary": {
            "asset_in":            req.get("asset_in"),
            "asset_out":           req.get("asset_out"),
            "side":                req.get("side"),
            "chain":               req.get("chain"),
            "leverage":            leverage,
            "notional_value_usd":  notional,
            "execution_venue":     req.get("execution_venue"),
            "venue_used":          venue.get("venue") if venue else None,
            "congestion_level":    congestion or "unknown",
            "overall_risk_level":  severity,
        },
        "methodology": "Heuristic pre-trade risk model combining notional size, "
                       "estimated slippage, network congestion and leverage. "
                       "This is not a VaR engine or regulatory capital model.",
        "coverage": {
            "schema_validation":  {"checked": True, "triggered": False},
            "slippage_cap":       {"checked": True, "triggered": slippage > cap},
            "leverage_bounds":    {"checked": True, "triggered": leverage > 3},
            "notional_bounds":    {"checked": True, "triggered": notional >= LARGE_NOTIONAL_USD},
            "congestion_check":   {"checked": ev.gas is not None,
                                   "triggered": "network_congestion" in flags},
        },
        "remediation_plan": remediation_plan,
        "open_questions": [
            "How does this position relate to the client's existing portfolio and concentration limits?",
            "Is this trade part of a larger strategy (e.g. hedging or basis trade) that alters its effective risk?",
            "What is the maximum acceptable drawdown or liquidation risk for this specific client?",
        ],
        "timestamp_utc": utc_now_iso(),
    }
    guidance = _retry_guidance(ev)
    if guidance:
        deliverable["retry_guidance"] = guidance
    return deliverable


# ══════════════════════════════════════════════════════════════════════════════
# execution_quote
# ══════════════════════════════════════════════════════════════════════════════

def build_execution_quote(req: dict, ev: GatheredEvidence) -> dict:
    notional = float(req["notional_value_usd"])
    cap      = iround(float(req["max_slippage_bps"]))
    urgency  = req.get("urgency", "normal")
    allowed  = [v for v in req.get("allowed_venues") or [] if v != "unknown"]

    venue      = pick_venue(ev.depth, allowed=allowed)
    slippage   = estimate_slippage_bps(notional, venue)
    congestion = congestion_level(ev.gas)
    scores     = score_trade(notional, slippage, congestion)
    score      = scores.total
    decision, size_factor = decide_trade(score, slippage, cap)

    splits = split_count(notional, QUOTE_SPLIT_STEPS)
    if urgency == "high":
        splits = min(splits, 2)
    slice_notional = notional / splits
    slice_slippage = estimate_slippage_bps(slice_notional, venue)

    per_tx_gas, gas_basis = gas_cost_usd(ev.gas, req.get("chain", ""), "swap")
    total_gas = per_tx_gas * splits
    rec_max   = recommended_max_slippage(cap, slippage)
    executed  = notional * size_factor
    flags     = trade_risk_flags(slippage, congestion, 1.0, notional, ev)

    log.info(
        "execution_quote %s→%s $%.0f: venue=%s slip=%dbps splits=%d gas=$%.2f decision=%s",
        req.get("asset_in"), req.get("asset_out"), notional,
        venue.get("venue") if venue else "n/a", slippage, splits, total_gas, decision,
    )

    quote = {
        "venue":                     venue.get("venue") if venue else None,
        "expected_price_impact_bps": slippage,
        "per_slice_impact_bps":      slice_slippage,
        "executable_notional_usd":   round(executed, 2),
        "min_amount_out_usd":        round(notional * (1 - cap / 10_000.0), 2),
        "splits":                    splits,
        "slice_notional_usd":        round(slice_notional, 2),
        "estimated_gas_cost_usd":    round(total_gas, 4),
        "gas_cost_basis":            gas_basis,
        "valid_for_seconds":         QUOTE_VALIDITY_SECONDS,
    }

    findings = [{
        "id":          "quote_feasibility",
        "severity":    severity_for_score(score),
        "description": "Quote built from the deepest allowed venue and the current gas profile.",
        "mitigation":  "Re-request the quote if execution is delayed beyond its validity window.",
    }]
    if venue is None:
        findings.append({
            "id":          "no_venue_depth",
            "severity":    "medium",
            "description": "No depth data was available for the allowed venues; "
                           "the slippage estimate is a conservative fallback.",
            "mitigation":  "Widen allowed_venues or supply a venue with on-chain liquidity.",
        })
    if total_gas > 0 and executed > 0 and total_gas / executed > 0.01:
        findings.append({
            "id":          "gas_cost_material",
            "severity":    "medium",
            "description": f"Gas for {splits} slice(s) is more than 1% of the executable notional.",
            "mitigation":  "Use fewer slices or a cheaper chain for this size.",
        })

    deliverable = {
        "job_kind":                     "execution_quote",
        "validation_passed":            True,
        "validation_errors":            [],
        "decision":                     decision,
        "risk_score":                   score,
        "recommended_size_factor":      size_factor,
        "confidence_level":             ev.confidence,
        "estimated_slippage_bps":       slippage,
        "recommended_max_slippage_bps": rec_max,
        "recommended_execution_splits": splits,
        "quote":                        quote,
        "risk_flags":                   flags,
        "score_breakdown":              asdict(scores),
        "findings":                     findings,
        "evidence":                     ev.as_list(),
        "assumptions":                  _trade_assumptions(ev, venue) + [
            f"Gas cost basis: {gas_basis}.",
        ],
        "summary": {
            "asset_in":           req.get("asset_in"),
            "asset_out":          req.get("asset_out"),
            "side":               req.get("side"),
            "chain":              req.get("chain"),
            "urgency":            urgency,
            "notional_value_usd": notional,
            "allowed_venues":     allowed,
            "congestion_level":   congestion or "unknown",
        },
        "methodology": "Indicative execution quote: venue chosen by depth among the "
                       "allowed venues, constant-product impact estimate, gas cost "
                       "from the live gas profile when available. Not a firm quote.",
        "coverage": {
            "schema_validation": {"checked": True, "triggered": False},
            "venue_depth":       {"checked": ev.depth is not None, "triggered": venue is None},
            "slippage_cap":      {"checked": True, "triggered": slippage > cap},
            "gas_profile":       {"checked": ev.gas is not None, "triggered": False},
        },
        "remediation_plan": [] if decision == APPROVE else [{
            "id": "resize_order", "priority": 1, "severity": "high",
            "action": "Reduce notional or raise max_slippage_bps, then request a new quote.",
        }],
        "open_questions": [
            "Is partial execution acceptable if later slices exceed the slippage cap?",
            "Should the quote be routed through an aggregator rather than a single venue?",
        ],
        "timestamp_utc": utc_now_iso(),
    }
    guidance = _retry_guidance(ev)
    if guidance:
        deliverable["retry_guidance"] = guidance
    return deliverable


# ══════════════════════════════════════════════════════════════════════════════
# gas_execution_optimizer
# ══════════════════════════════════════════════════════════════════════════════

def _baseline_gas_wei(req: dict, gas: Optional[dict]) -> Tuple[float, str]:
    provided = float(req.get("current_gas_price_wei") or 0.0)
    if provided > 0:
        return provided, "request"
    if gas:
        suggested = _num(gas.get("suggested_max_fee_gwei"), -1.0)
        if suggested > 0:
            return suggested * 1e9, "gas_profile"
        base = _num(gas.get("base_fee_gwei"), -1.0)
        if base >= 0:
            prio = _num(gas.get("median_priority_fee_gwei"), DEFAULT_PRIORITY_FEE_GWEI)
            return (base + prio) * 1e9, "gas_profile"
    return DEFAULT_GAS_PRICE_GWEI * 1e9, "default"


def build_gas_execution(req: dict, ev: GatheredEvidence) -> dict:
    chain    = req.get("chain", "")
    urgency  = req.get("urgency", "normal")
    tx_type  = req.get("transaction_type", "swap")
    notional = float(req["expected_notional_usd"])

    baseline_wei, baseline_source = _baseline_gas_wei(req, ev.gas)
    baseline_wei = min(baseline_wei, MAX_GAS_PRICE_WEI)
    recommended_wei = iround(baseline_wei * URGENCY_GAS_MULTIPLIER.get(urgency, 1.0))

    median_prio = min(_num((ev.gas or {}).get("median_priority_fee_gwei"), DEFAULT_PRIORITY_FEE_GWEI),
                      MAX_GAS_PRICE_WEI / 1e9)
    priority_gwei = round(median_prio * URGENCY_PRIORITY_MULTIPLIER.get(urgency, 1.0), 4)

    cost_usd, cost_basis = gas_cost_usd(ev.gas, chain, tx_type, recommended_wei / 1e9
                                        if baseline_source != "default" else None)
    cost_pct = cost_usd / notional * 100.0 if notional > 0 else 0.0

    congestion = congestion_level(ev.gas)
    score = GAS_CONGESTION_BASE.get(congestion, GAS_UNKNOWN_CONGESTION_BASE) if congestion \
        else GAS_UNKNOWN_CONGESTION_BASE
    variance = str((ev.gas or {}).get("variance_hint") or "").lower()
    if variance in ("high", "elevated"):
        score += 10
    if cost_pct > 1.0:
        score += 10
    score = int(clamp(score, 0, 100))

    decision = EXECUTE_NOW
    if congestion == "high" and urgency in ("low", "normal"):
        decision = DELAY
    elif score >= REJECT_SCORE and urgency != "high":
        decision = DELAY

    log.info(
        "gas_optimizer %s %s urgency=%s: baseline=%.0f wei (%s) rec=%d wei score=%d decision=%s",
        chain, tx_type, urgency, baseline_wei, baseline_source, recommended_wei, score, decision,
    )

    flags: List[str] = []
    if congestion in ("elevated", "high"):
        flags.append("network_congestion")
    if variance in ("high", "elevated"):
        flags.append("fee_volatility")
    if cost_pct > 1.0:
        flags.append("gas_cost_material")
    if ev.gas is None:
        flags.append("gas_profile_unavailable")

    findings = [{
        "id":          "gas_recommendation",
        "severity":    severity_for_score(score),
        "description": f"Recommended gas price {recommended_wei} wei from a {baseline_source} "
                       f"baseline with a {urgency} urgency multiplier.",
        "mitigation":  "Heuristic recommendation, not a guarantee of inclusion.",
    }]
    if decision == DELAY:
        findings.append({
            "id":          "delay_execution",
            "severity":    "medium",
            "description": "Current congestion makes non-urgent execution expensive.",
            "mitigation":  "Retry in 10-30 minutes or raise urgency if inclusion is time-critical.",
        })

    assumptions = [f"Baseline gas source: {baseline_source}."]
    if baseline_source == "default":
        assumptions.append(f"No baseline available; assumed {DEFAULT_GAS_PRICE_GWEI:.0f} gwei.")

    return {
        "job_kind":                   "gas_execution_optimizer",
        "validation_passed":          True,
        "validation_errors":          [],
        "decision":                   decision,
        "risk_score":                 score,
        "confidence_level":           ev.confidence,
        "recommended_gas_price_wei":  recommended_wei,
        "recommended_priority_fee_gwei": priority_gwei,
        "suggested_priority":         urgency,
        "estimated_gas_cost_usd":     round(cost_usd, 4),
        "gas_cost_pct_of_notional":   round(cost_pct, 4),
        "risk_flags":                 flags,
        "findings":                   findings,
        "evidence":                   ev.as_list(),
        "assumptions":                assumptions + [f"Gas cost basis: {cost_basis}."],
        "notes": "Gas recommendation based on urgency and the best available baseline. "
                 "This is a heuristic, not a guarantee of inclusion.",
        "summary": {
            "chain":                     chain,
            "transaction_type":          tx_type,
            "urgency":                   urgency,
            "expected_notional_usd":     notional,
            "baseline_gas_price_wei":    iround(baseline_wei),
            "recommended_gas_price_wei": recommended_wei,
            "congestion_level":          congestion or "unknown",
        },
        "methodology": "Heuristic gas recommendation from the caller's baseline, the live "
                       "gas profile or a static default, scaled by urgency. It does not "
                       "inspect the mempool.",
        "coverage": {
            "schema_validation":  {"checked": True, "triggered": False},
            "urgency_adjustment": {"checked": True, "triggered": urgency != "normal"},
            "baseline_present":   {"checked": True, "triggered": baseline_source == "request"},
            "congestion_check":   {"checked": ev.gas is not None,
                                   "triggered": "network_congestion" in flags},
        },
        "remediation_plan": [],
        "open_questions": [
            "Do you have max-fee and max-priority-fee constraints that should bound this recommendation?",
            "Should critical operations (e.g. governance actions) receive a higher default gas multiplier?",
        ],
        "timestamp_utc": utc_now_iso(),
    }
