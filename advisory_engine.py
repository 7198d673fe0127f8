"""
advisory_engine.py  —  Heuristic synthesis for report-shaped jobs.

Job kinds handled here:
  strategy_safety_audit     rating, issues, checklist, matched archetype
  market_intelligence_feed  gas-derived stress signals + focus-asset watch list
  portfolio_rebalancer      weight / drift analysis against a reference template

Same contract as risk_engine: (normalised request, GatheredEvidence) → dict,
no I/O, deterministic apart from the timestamp.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

import numpy as np

from evidence import GatheredEvidence
from reference_data import STRATEGY_ARCHETYPES, is_stable, market_signal_taxonomy, portfolio_template
from risk_engine import (APPROVE, REJECT, clamp, congestion_level, gas_cost_usd, iround,
                         severity_for_score, utc_now_iso)
from validators import is_address_like, severity_weight

log = logging.getLogger("advisory_engine")

REVIEW    = "REVIEW"
NORMAL    = "NORMAL"
ELEVATED  = "ELEVATED"
ALERT     = "ALERT"
REBALANCE = "REBALANCE"
HOLD      = "HOLD"

# ── strategy_safety_audit ─────────────────────────────────────────────────────
AUDIT_BASE_SCORE         = 20
AUDIT_REVIEW_SCORE       = 50
AUDIT_REJECT_SCORE       = 80
AUDIT_PER_CONTRACT       = 5
AUDIT_CONTRACT_SCORE_MAX = 20
HIGH_APY_ISSUE_PCT       = 30.0
CONTRACT_FAN_OUT         = 3

AUDIT_CHECKLIST = [
    "Confirm protocol audit status for all contracts_involved.",
    "Test liquidation behavior under extreme volatility.",
    "Verify oracle sources and price feeds.",
    "Simulate gas and slippage under peak network load.",
]

# ── market_intelligence_feed ──────────────────────────────────────────────────
STRESS_BY_CONGESTION: Dict[str, int] = {
    "low": 10, "moderate": 25, "normal": 25, "elevated": 45, "high": 70,
}
STRESS_UNKNOWN        = 30
STRESS_FEE_VARIANCE   = 15
STRESS_ELEVATED_SCORE = 40
STRESS_ALERT_SCORE    = 70

# ── portfolio_rebalancer ──────────────────────────────────────────────────────
DRIFT_THRESHOLD_PP     = 5.0
ROTATE_STABLE_RATIO    = 0.4
ROTATE_FRACTION        = 0.3
CONCENTRATION_WARN     = 0.5
BUCKET_BLUECHIPS       = "DeFi_bluechips"
BUCKET_STABLES         = "USDC"
BUCKET_OTHER           = "other"


def _level_from_score(score: int) -> str:
    if score >= 70:
        return "high"
    if score >= 40:
        return "medium"
    return "low"


# ══════════════════════════════════════════════════════════════════════════════
# strategy_safety_audit
# ══════════════════════════════════════════════════════════════════════════════

def match_archetype(name: str, description: str) -> Optional[dict]:
    """Archetype whose keywords occur most often in the strategy text; None on no hits."""
    text = f"{name} {description}".lower()
    best, best_hits = None, 0
    for archetype in STRATEGY_ARCHETYPES:
        hits = sum(1 for kw in archetype["keywords"] if kw in text)
        if hits > best_hits:
            best, best_hits = archetype, hits
    if best is None:
        return None
    return {k: v for k, v in best.items() if k != "keywords"}


def audit_score(leverage: float, apy: float, contracts: int) -> int:
    score = AUDIT_BASE_SCORE
    if leverage > 2 or apy > 20:
        score += 20
    if leverage > 3 or apy > 40:
        score += 30
    score += min(contracts * AUDIT_PER_CONTRACT, AUDIT_CONTRACT_SCORE_MAX)
    return int(clamp(score, 0, 100))


def build_strategy_audit(req: dict, ev: GatheredEvidence) -> dict:
    leverage  = float(req["max_leverage"])
    apy       = float(req["target_yield_apy"])
    contracts = list(req.get("contracts_involved") or [])
    floor     = req.get("severity_floor", "info")

    score = audit_score(leverage, apy, len(contracts))
    if score >= AUDIT_REJECT_SCORE:
        decision = REJECT
    elif score >= AUDIT_REVIEW_SCORE:
        decision = REVIEW
    else:
        decision = APPROVE
    level      = _level_from_score(score)
    congestion = congestion_level(ev.gas)

    issues: List[dict] = []
    if leverage > 2:
        issues.append({
            "id":          "leverage_exposure",
            "severity":    "high" if leverage > 3 else "medium",
            "description": "Strategy uses elevated leverage, increasing liquidation and volatility risk.",
            "mitigation":  "Consider lowering max_leverage or adding stricter health factor constraints.",
        })
    if apy > HIGH_APY_ISSUE_PCT:
        issues.append({
            "id":          "yield_expectations",
            "severity":    "medium",
            "description": "Target APY is unusually high, which can indicate hidden risk, "
                           "unsustainable emissions, or smart contract risk.",
            "mitigation":  "Stress-test the strategy under adverse scenarios and do independent "
                           "contract audits for all protocols involved.",
        })
    unverified = [c for c in contracts if not is_address_like(c)]
    if unverified:
        issues.append({
            "id":          "unverified_contract_identifiers",
            "severity":    "low",
            "description": f"{len(unverified)} contract(s) are named rather than given as "
                           f"addresses: {', '.join(unverified[:5])}.",
            "mitigation":  "Supply deployed contract addresses so they can be checked on-chain.",
        })
    if len(contracts) > CONTRACT_FAN_OUT:
        issues.append({
            "id":          "protocol_fan_out",
            "severity":    "info",
            "description": f"Strategy depends on {len(contracts)} contracts; each adds "
                           "independent failure modes.",
            "mitigation":  "Document the unwind path if any single dependency is paused.",
        })
    if congestion in ("elevated", "high"):
        issues.append({
            "id":          "network_congestion",
            "severity":    "medium" if congestion == "high" else "low",
            "description": f"{req.get('chain')} gas is currently {congestion}; "
                           "rebalancing and liquidation protection may be slow.",
            "mitigation":  "Keep a wider health-factor buffer while congestion persists.",
        })

    min_weight = severity_weight(floor)
    reported = [i for i in issues if severity_weight(i["severity"]) >= min_weight]
    archetype = match_archetype(req.get("strategy_name", ""), req.get("strategy_description", ""))

    log.info("strategy_audit %r: leverage=%.2f apy=%.1f contracts=%d score=%d decision=%s "
             "issues=%d/%d (floor=%s)", req.get("strategy_name"), leverage, apy,
             len(contracts), score, decision, len(reported), len(issues), floor)

    remediation_plan: List[dict] = []
    if level != "low":
        remediation_plan.append({
            "id": "reduce_leverage_or_yield", "priority": 1, "severity": "high",
            "action": "Lower max_leverage and/or target_yield_apy to align with tested, "
                      "sustainable levels.",
        })
    remediation_plan.append({
        "id": "audit_protocols", "priority": len(remediation_plan) + 1, "severity": "medium",
        "action": "Ensure that all contracts_involved have up-to-date security audits and "
                  "clearly documented upgrade/governance processes.",
    })

    assumptions = [
        "Rating derived from leverage, target yield and contract fan-out only; "
        "no on-chain code was inspected.",
    ]
    if archetype is None:
        assumptions.append("Strategy description did not match a known archetype.")
    if ev.gas is None:
        assumptions.append("Gas profile unavailable; congestion was not considered.")

    return {
        "job_kind":          "strategy_safety_audit",
        "validation_passed": True,
        "validation_errors": [],
        "decision":          decision,
        "risk_score":        score,
        "risk_rating":       level,
        "confidence_level":  ev.confidence,
        "issues":            reported,
        "findings":          reported,
        "checklist":         list(AUDIT_CHECKLIST),
        "matched_archetype": archetype,
        "evidence":          ev.as_list(),
        "assumptions":       assumptions,
        "summary": {
            "strategy_name":            req.get("strategy_name"),
            "chain":                    req.get("chain"),
            "contracts_involved_count": len(contracts),
            "max_leverage":             leverage,
            "target_yield_apy":         apy,
            "overall_risk_level":       level,
            "risk_score":               score,
            "issues_suppressed":        len(issues) - len(reported),
        },
        "methodology": "Heuristic strategy safety assessment based on leverage, target yield, "
                       "protocol fan-out and qualitative red flags. It does not simulate market "
                       "scenarios or inspect on-chain code directly.",
        "coverage": {
            "schema_validation":    {"checked": True, "triggered": False},
            "leverage_analysis":    {"checked": True, "triggered": leverage > 2},
            "yield_sanity_check":   {"checked": True, "triggered": apy > HIGH_APY_ISSUE_PCT},
            "contract_enumeration": {"checked": True, "triggered": len(contracts) > CONTRACT_FAN_OUT},
            "congestion_check":     {"checked": ev.gas is not None,
                                     "triggered": congestion in ("elevated", "high")},
        },
        "remediation_plan": remediation_plan,
        "open_questions": [
            "What are the maximum acceptable drawdown and liquidation scenarios envisioned for this strategy?",
            "How correlated are the underlying protocols and assets during stress events?",
            "Is there a clear exit or unwind procedure if one of the core protocols becomes impaired?",
        ],
        "timestamp_utc": utc_now_iso(),
    }


# ══════════════════════════════════════════════════════════════════════════════
# market_intelligence_feed
# ══════════════════════════════════════════════════════════════════════════════

def build_market_intel(req: dict, ev: GatheredEvidence) -> dict:
    chain        = req.get("chain")
    lookback     = float(req["lookback_minutes"])
    min_notional = float(req["minimum_notional_usd"])
    focus        = list(req.get("focus_assets") or []) or ["ALL"]

    congestion = congestion_level(ev.gas)
    variance   = str((ev.gas or {}).get("variance_hint") or "").lower()

    stress = STRESS_BY_CONGESTION.get(congestion, STRESS_UNKNOWN) if congestion else STRESS_UNKNOWN
    signals: List[dict] = []
    if congestion is not None:
        signals.append({
            "id":          "gas_congestion",
            "severity":    {"high": "high", "elevated": "medium"}.get(congestion, "info"),
            "description": f"Network congestion on {chain} is {congestion}.",
            "base_fee_gwei": (ev.gas or {}).get("base_fee_gwei"),
            "chain":       chain,
        })
    if variance in ("high", "elevated"):
        stress += STRESS_FEE_VARIANCE
        signals.append({
            "id":          "fee_volatility",
            "severity":    "medium",
            "description": "Priority fees are unusually dispersed; inclusion cost is unpredictable.",
            "chain":       chain,
        })
    stress = int(clamp(stress, 0, 100))

    if stress >= STRESS_ALERT_SCORE:
        decision = ALERT
    elif stress >= STRESS_ELEVATED_SCORE:
        decision = ELEVATED
    else:
        decision = NORMAL

    watch_types = [t["id"] for t in market_signal_taxonomy(min_notional)
                   if t["typical_threshold_usd"] is not None]
    watchlist = [{
        "asset":          asset,
        "threshold_usd":  min_notional * (2 if is_stable(asset) else 1),
        "signal_types":   watch_types,
        "lookback_minutes": lookback,
        "status":         "watching",
    } for asset in focus]

    log.info("market_intel %s lookback=%.0fm focus=%s: stress=%d decision=%s signals=%d",
             chain, lookback, focus, stress, decision, len(signals))

    findings = [{
        "id":          s["id"],
        "severity":    s["severity"],
        "description": s["description"],
        "mitigation":  "Widen slippage tolerances and prefer patient execution while this persists.",
    } for s in signals if s["severity"] != "info"]

    assumptions = [
        "Flow-level signals (whale swaps, liquidity drains) are listed as watch entries only; "
        "no historical on-chain events were scanned.",
    ]
    if ev.gas is None:
        assumptions.append(f"Gas profile unavailable; a neutral stress baseline of "
                           f"{STRESS_UNKNOWN} was used.")

    return {
        "job_kind":          "market_intelligence_feed",
        "validation_passed": True,
        "validation_errors": [],
        "decision":          decision,
        "risk_score":        stress,
        "confidence_level":  ev.confidence,
        "signals":           signals,
        "watchlist":         watchlist,
        "stats": {
            "events_considered":    len(signals),
            "focus_assets_count":   len(focus),
            "lookback_minutes":     lookback,
            "minimum_notional_usd": min_notional,
        },
        "findings":          findings,
        "evidence":          ev.as_list(),
        "assumptions":       assumptions,
        "summary": {
            "chain":                chain,
            "focus_assets":         focus,
            "lookback_minutes":     lookback,
            "minimum_notional_usd": min_notional,
            "signals_count":        len(signals),
            "overall_status":       decision.lower(),
        },
        "methodology": "Market stress derived from the live gas profile (congestion and fee "
                       "dispersion) with a watch entry per focus asset. Not a trade signal.",
        "coverage": {
            "schema_validation": {"checked": True, "triggered": False},
            "gas_congestion":    {"checked": ev.gas is not None,
                                  "triggered": congestion in ("elevated", "high")},
            "fee_volatility":    {"checked": ev.gas is not None,
                                  "triggered": variance in ("high", "elevated")},
        },
        "remediation_plan": [] if decision == NORMAL else [{
            "id": "defer_large_flows", "priority": 1, "severity": "medium",
            "action": "Defer non-urgent large flows or route them through risk_sentinel first.",
        }],
        "open_questions": [
            "Should signals be bucketed by venue (e.g., AMM vs orderbook) or by protocol risk tier?",
            "Do you want separate thresholds for buy vs sell pressure, or a single threshold for absolute flow?",
            "Should follow-up jobs (e.g., risk_sentinel) be triggered automatically when certain signals fire?",
        ],
        "timestamp_utc": utc_now_iso(),
    }


# ══════════════════════════════════════════════════════════════════════════════
# portfolio_rebalancer
# ══════════════════════════════════════════════════════════════════════════════

def _bucket_for(asset: str, template_assets: List[str]) -> str:
    if asset in template_assets:
        return asset
    if is_stable(asset) and BUCKET_STABLES in template_assets:
        return BUCKET_STABLES
    if not is_stable(asset) and BUCKET_BLUECHIPS in template_assets:
        return BUCKET_BLUECHIPS
    return BUCKET_OTHER


def portfolio_drift(positions: List[dict], template: List[Tuple[str, float]]
                    ) -> Tuple[List[str], np.ndarray, np.ndarray]:
    """
    Current vs target weight per bucket.

    Positions are folded into the template's buckets: listed assets map to
    themselves, unlisted stables to USDC, other unlisted assets to the
    blue-chip bucket when the template has one.
    """
    template_assets = [a for a, _ in template]
    buckets: "OrderedDict[str, float]" = OrderedDict((a, 0.0) for a in template_assets)
    for pos in positions:
        bucket = _bucket_for(pos["asset"], template_assets)
        buckets[bucket] = buckets.get(bucket, 0.0) + float(pos["notional_usd"])

    names    = list(buckets)
    values   = np.array([buckets[n] for n in names], dtype=np.float64)
    targets  = dict(template)
    target_w = np.array([targets.get(n, 0.0) / 100.0 for n in names], dtype=np.float64)
    total    = float(values.sum())
    current_w = values / total if total > 0 else np.zeros_like(values)
    return names, current_w, target_w


def build_portfolio_rebalancer(req: dict, ev: GatheredEvidence) -> dict:
    positions = list(req["current_positions"])
    risk      = req["risk_tolerance"]
    objective = req["target_objective"]
    chain     = req.get("chain", "")

    notionals = np.array([float(p["notional_usd"]) for p in positions], dtype=np.float64)
    total     = float(notionals.sum())
    weights   = notionals / total if total > 0 else np.zeros_like(notionals)
    stable_value = float(sum(n for p, n in zip(positions, notionals) if is_stable(p["asset"])))
    stable_ratio = stable_value / total if total > 0 else 0.0
    hhi          = float(np.sum(weights ** 2))
    max_weight   = float(weights.max()) if weights.size else 0.0

    template = portfolio_template(risk, objective)
    names, current_w, target_w = portfolio_drift(positions, template)
    drift_pp = (current_w - target_w) * 100.0

    trades: List[dict] = []
    for name, drift in zip(names, drift_pp):
        if abs(drift) <= DRIFT_THRESHOLD_PP:
            continue
        trades.append({
            "action":       "reduce" if drift > 0 else "increase",
            "bucket":       name,
            "drift_pp":     round(float(drift), 2),
            "notional_usd": round(abs(float(drift)) / 100.0 * total, 2),
        })
    if risk == "aggressive" and stable_ratio > ROTATE_STABLE_RATIO:
        trades.append({
            "action":      "rotate_out_of_stables",
            "description": "Portfolio appears too stable-heavy for an aggressive profile. "
                           "Suggest rotating a portion into higher-beta assets.",
            "suggested_notional_to_rotate_usd": iround(stable_value * ROTATE_FRACTION),
        })

    per_tx_gas, gas_basis = gas_cost_usd(ev.gas, chain, "rebalance")
    gas_total = per_tx_gas * len(trades)
    max_drift = float(np.max(np.abs(drift_pp))) if drift_pp.size else 0.0
    score = int(clamp(iround(hhi * 50) + iround(max_drift), 0, 100))
    decision = REBALANCE if trades else HOLD

    log.info("portfolio_rebalancer %s %s/%s total=$%.0f stable=%.2f hhi=%.3f max_drift=%.1fpp "
             "trades=%d decision=%s", chain, risk, objective, total, stable_ratio, hhi,
             max_drift, len(trades), decision)

    findings: List[dict] = []
    if max_weight > CONCENTRATION_WARN:
        top = positions[int(np.argmax(weights))]["asset"]
        findings.append({
            "id":          "concentration",
            "severity":    "high" if max_weight > 0.75 else "medium",
            "description": f"{top} is {max_weight:.0%} of the portfolio.",
            "mitigation":  "Cap single-asset exposure or hedge the dominant position.",
        })
    if trades:
        findings.append({
            "id":          "allocation_drift",
            "severity":    severity_for_score(score),
            "description": f"Allocation drifts up to {max_drift:.1f} pp from the {risk}/{objective} "
                           "reference template.",
            "mitigation":  "Apply the recommended trades in slices through execution_quote.",
        })

    assumptions = [
        f"Reference template: {risk}/{objective}; drift below {DRIFT_THRESHOLD_PP:.0f} pp is ignored.",
        f"Rebalance gas cost basis: {gas_basis}.",
    ]

    return {
        "job_kind":           "portfolio_rebalancer",
        "validation_passed":  True,
        "validation_errors":  [],
        "decision":           decision,
        "risk_score":         score,
        "confidence_level":   ev.confidence,
        "recommended_trades": trades,
        "resulting_allocations": [{
            "asset":        p["asset"],
            "notional_usd": float(n),
            "weight_pct":   round(float(w) * 100.0, 4),
        } for p, n, w in zip(positions, notionals, weights)],
        "target_allocations": [{
            "bucket":     n,
            "current_pct": round(float(c) * 100.0, 4),
            "target_pct":  round(float(t) * 100.0, 4),
        } for n, c, t in zip(names, current_w, target_w)],
        "risk_summary": {
            "total_notional_usd":      total,
            "stable_ratio":            round(stable_ratio, 4),
            "herfindahl_index":        round(hhi, 4),
            "max_position_weight":     round(max_weight, 4),
            "estimated_gas_cost_usd":  round(gas_total, 4),
            "comment": "Rebalance suggestions are heuristic only. Validate with your own "
                       "risk framework before execution.",
        },
        "findings":          findings,
        "evidence":          ev.as_list(),
        "assumptions":       assumptions,
        "summary": {
            "chain":                    chain,
            "risk_tolerance":           risk,
            "target_objective":         objective,
            "total_notional_usd":       total,
            "stable_value_usd":         stable_value,
            "stable_ratio":             stable_ratio,
            "recommended_trades_count": len(trades),
        },
        "methodology": "Heuristic allocation review using current notional weights, risk "
                       "tolerance and objective. It does not consider asset correlations, "
                       "tax implications or protocol-specific risks.",
        "coverage": {
            "schema_validation":   {"checked": True, "triggered": False},
            "template_drift":      {"checked": True, "triggered": bool(trades)},
            "concentration_check": {"checked": True, "triggered": max_weight > CONCENTRATION_WARN},
            "stable_rotation":     {"checked": risk == "aggressive",
                                    "triggered": risk == "aggressive" and stable_ratio > ROTATE_STABLE_RATIO},
        },
        "remediation_plan": [{
            "id": "apply_rebalance", "priority": 1, "severity": "medium",
            "action": "Execute recommended_trades, largest drift first, and re-run the rebalancer.",
        }] if trades else [],
        "open_questions": [
            "Are there concentration limits per asset or protocol that should constrain rebalancing suggestions?",
            "Do you have liquidity constraints or on-chain slippage limits that must be respected when rotating out of stablecoins?",
            "Is there a required minimum cash or stable buffer for withdrawals or margin calls?",
        ],
        "timestamp_utc": utc_now_iso(),
    }
