"""
pipeline.py  —  Job-kind dispatch: validate → gather evidence → synthesise.

build_deliverable() is total over every (job_kind, requirement) input:

  * unknown kind            → fixed "unsupported job" deliverable (error=True)
  * failed validation       → fixed rejecting shape, no evidence fetched
  * valid request           → evidence for the kind's signals, then synthesis

The requirement is copied before validation so the cached negotiation
payload is never mutated by a delivery attempt.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import advisory_engine
import risk_engine
import validators
from evidence import SOURCE_DEPTH, SOURCE_GAS, EvidenceGatherer, GatheredEvidence
from risk_engine import REJECT, rejected_deliverable, utc_now_iso
from validators import ValidationResult

log = logging.getLogger("pipeline")

UNSUPPORTED_MESSAGE = (
    "The provider could not match this job to a known offering. "
    "Please ensure you're using one of the supported jobs for this agent."
)
INTERNAL_ERROR_MESSAGE = "Internal error while building the deliverable."


class JobKind(str, Enum):
    RISK_SENTINEL       = "risk_sentinel"
    EXECUTION_QUOTE     = "execution_quote"
    GAS_OPTIMIZER       = "gas_execution_optimizer"
    STRATEGY_AUDIT      = "strategy_safety_audit"
    MARKET_INTEL        = "market_intelligence_feed"
    PORTFOLIO_REBALANCE = "portfolio_rebalancer"
    UNSUPPORTED         = "unknown"


JOB_KIND_ALIASES: Dict[str, JobKind] = {
    "pre_trade_risk":      JobKind.RISK_SENTINEL,
    "gas_optimizer":       JobKind.GAS_OPTIMIZER,
    "strategy_audit":      JobKind.STRATEGY_AUDIT,
    "market_intel":        JobKind.MARKET_INTEL,
    "portfolio_rebalance": JobKind.PORTFOLIO_REBALANCE,
}


def resolve_job_kind(name: Any) -> JobKind:
    """Case-insensitive, hyphens fold to underscores; anything else is UNSUPPORTED."""
    if not isinstance(name, str):
        return JobKind.UNSUPPORTED
    key = name.strip().lower().replace("-", "_").replace(" ", "_")
    if key in JOB_KIND_ALIASES:
        return JOB_KIND_ALIASES[key]
    try:
        return JobKind(key)
    except ValueError:
        return JobKind.UNSUPPORTED


@dataclass(frozen=True)
class JobHandler:
    validate:    Callable[[dict], ValidationResult]
    signals:     Tuple[str, ...]
    synthesize:  Callable[[dict, GatheredEvidence], dict]
    remediation: str
    open_questions: Tuple[str, ...]


_TRADE_SIGNALS = (SOURCE_GAS, SOURCE_DEPTH)
_GAS_ONLY      = (SOURCE_GAS,)

HANDLERS: Dict[JobKind, JobHandler] = {
    JobKind.RISK_SENTINEL: JobHandler(
        validators.validate_risk_sentinel, _TRADE_SIGNALS, risk_engine.build_risk_sentinel,
        "Fix client_agent_id, chain, asset_in/asset_out, side, notional_value_usd, "
        "max_slippage_bps and leverage according to validation_errors, then re-run.",
        ("Is the asset pair correct and supported on the specified chain?",
         "Is the notional and leverage aligned with your risk limits?"),
    ),
    JobKind.EXECUTION_QUOTE: JobHandler(
        validators.validate_execution_quote, _TRADE_SIGNALS, risk_engine.build_execution_quote,
        "Fix the asset pair, notional_value_usd, max_slippage_bps and allowed_venues "
        "according to validation_errors, then request a new quote.",
        ("Which venues are you permitted to route through on this chain?",),
    ),
    JobKind.GAS_OPTIMIZER: JobHandler(
        validators.validate_gas_execution, _GAS_ONLY, risk_engine.build_gas_execution,
        "Provide chain, transaction_type, urgency and expected_notional_usd, then re-run.",
        ("Which chain and transaction type should the gas recommendation target?",
         "What urgency level and notional size are typical for your operations?"),
    ),
    JobKind.STRATEGY_AUDIT: JobHandler(
        validators.validate_strategy_audit, _GAS_ONLY, advisory_engine.build_strategy_audit,
        "Review validation_errors, complete missing fields such as contracts_involved "
        "and strategy_description, then re-run the audit.",
        ("Is there a reference implementation or architecture diagram for this strategy?",
         "Has this strategy been tested in a paper-trading or sandbox environment before real funds?"),
    ),
    JobKind.MARKET_INTEL: JobHandler(
        validators.validate_market_intel, _GAS_ONLY, advisory_engine.build_market_intel,
        "Provide chain, lookback_minutes and minimum_notional_usd within bounds, then re-run.",
        ("Which specific assets or protocols are you most interested in monitoring for large flows?",
         "Do you have thresholds for when a signal should trigger automated or manual action?"),
    ),
    JobKind.PORTFOLIO_REBALANCE: JobHandler(
        validators.validate_portfolio_rebalancer, _GAS_ONLY,
        advisory_engine.build_portfolio_rebalancer,
        "Provide a complete current_positions snapshot and valid risk_tolerance / "
        "target_objective, then re-run.",
        ("Can you provide a complete, up-to-date snapshot of the portfolio, including all positions and cash?",
         "What drawdown or volatility limits define success for this portfolio?"),
    ),
}


# ══════════════════════════════════════════════════════════════════════════════
# Fixed-shape deliverables
# ══════════════════════════════════════════════════════════════════════════════

def _failure_deliverable(job_kind: str, message: str, reason: str, status: str,
                         requirement: Any) -> dict:
    return {
        "job_kind":          job_kind,
        "error":             True,
        "message":           message,
        "validation_passed": False,
        "validation_errors": [reason],
        "decision":          REJECT,
        "risk_score":        0,
        "confidence_level":  "low",
        "findings":          [],
        "evidence":          [],
        "assumptions":       [],
        "summary":           {"overall_status": status, "job_kind": job_kind},
        "request_echo":      requirement if isinstance(requirement, dict) else {},
        "timestamp_utc":     utc_now_iso(),
    }


def unsupported_deliverable(job_kind: Any, requirement: Any = None) -> dict:
    name = job_kind if isinstance(job_kind, str) and job_kind else JobKind.UNSUPPORTED.value
    return _failure_deliverable(name, UNSUPPORTED_MESSAGE, "Unknown or unsupported job_name.",
                                "unsupported_job", requirement)


def internal_error_deliverable(job_kind: str, requirement: Any = None) -> dict:
    return _failure_deliverable(job_kind, INTERNAL_ERROR_MESSAGE, "Deliverable synthesis failed.",
                                "internal_error", requirement)


# ══════════════════════════════════════════════════════════════════════════════
# build_deliverable
# ══════════════════════════════════════════════════════════════════════════════

async def build_deliverable(job_kind: Any, requirement: Any,
                            gatherer: Optional[EvidenceGatherer]) -> dict:
    kind = resolve_job_kind(job_kind)
    if kind is JobKind.UNSUPPORTED:
        log.warning("Unsupported job kind %r", job_kind)
        return unsupported_deliverable(job_kind, requirement)

    handler = HANDLERS[kind]
    req = copy.deepcopy(requirement) if isinstance(requirement, dict) else {}
    validation = handler.validate(req)
    if not validation.ok:
        log.info("%s rejected: %d validation error(s)", kind.value, len(validation.errors))
        return rejected_deliverable(kind.value, req, validation,
                                    handler.remediation, handler.open_questions)

    if gatherer is None:
        ev = GatheredEvidence()
    else:
        ev = await gatherer.gather(handler.signals, req)
    return handler.synthesize(req, ev)
