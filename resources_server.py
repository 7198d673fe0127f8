"""
resources_server.py  —  aiohttp.web server for the auxiliary resource endpoints.

Live-ish resources (consumed by evidence.py)
  GET /resources/gas-profile?chain=
  GET /resources/venue-depth?chain=&asset_in=&asset_out=&notional_usd=

Static helper resources
  GET /  /health
  GET /resources/risk-policies         ?chain=&venue=
  GET /resources/gas-bands             ?chain=&urgency=
  GET /resources/strategy-archetypes   ?chain=&risk_tolerance=
  GET /resources/market-signal-taxonomy?chain=&min_notional=
  GET /resources/portfolio-templates   ?risk_tolerance=&objective=
  GET /resources/supported-chains
  GET /resources/supported-venues      ?chain=

The gas profile is read from the chain's JSON-RPC (eth_feeHistory) when
<CHAIN>_RPC_URL is set (e.g. BASE_RPC_URL, ETHEREUM_MAINNET_RPC_URL);
otherwise, or when the RPC call fails, it is derived from the static gas
bands.  Venue depth always comes from the reference depth table.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import aiohttp
from aiohttp import web

from reference_data import (CHAIN_META, DEFAULT_RISK_POLICY, GAS_UNITS, NATIVE_USD,
                            REFERENCE_DEPTH_USD, RISK_POLICY_BANDS, STABLE_PAIR_DEPTH_MULT,
                            STATIC_GAS_BANDS_GWEI, STRATEGY_ARCHETYPES, SUPPORTED_CHAINS,
                            VENUE_FEE_BPS, VENUES_BY_CHAIN, is_stable, market_signal_taxonomy,
                            portfolio_template)

log = logging.getLogger("resources_server")

SERVICE_NAME     = "AegisAI Resources Server"
RESOURCE_VERSION = "1.0.0"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return int(default)
    try:
        return int(raw.strip())
    except ValueError:
        log.warning("Invalid int for %s=%r; using default=%s", name, raw, default)
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return float(default)
    try:
        return float(raw.strip())
    except ValueError:
        log.warning("Invalid float for %s=%r; using default=%s", name, raw, default)
        return float(default)


# ── Config ─────────────────────────────────────────────────────────────────────
RESOURCES_HOST       = os.environ.get("RESOURCES_HOST", "0.0.0.0").strip() or "0.0.0.0"
RESOURCES_PORT       = _env_int("RESOURCES_PORT", 3000)
RPC_TIMEOUT_SECS     = _env_float("RPC_TIMEOUT_SECS", 5.0)
FEE_HISTORY_BLOCKS   = _env_int("FEE_HISTORY_BLOCKS", 20)
FEE_PERCENTILES      = (25, 50, 75)

# Average gasUsedRatio thresholds over the fee-history window.
CONGESTION_RATIO_BANDS: Tuple[Tuple[float, str], ...] = (
    (0.90, "high"), (0.70, "elevated"), (0.40, "moderate"),
)


def rpc_url_for(chain: str) -> Optional[str]:
    key = f"{chain.upper().replace('-', '_')}_RPC_URL"
    url = os.environ.get(key, "").strip()
    return url or None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _normalize_chain(raw: Optional[str]) -> str:
    if not raw or not raw.strip():
        return "base"
    return raw.strip().lower()


def _pick(raw: Optional[str], allowed: Tuple[str, ...], default: str) -> str:
    value = (raw or "").strip().lower()
    return value if value in allowed else default


# ══════════════════════════════════════════════════════════════════════════════
# Gas profile
# ══════════════════════════════════════════════════════════════════════════════

def congestion_from_ratio(ratio: float) -> str:
    for threshold, level in CONGESTION_RATIO_BANDS:
        if ratio >= threshold:
            return level
    return "low"


def variance_from_rewards(p25: float, p75: float) -> str:
    if p25 <= 0:
        return "high" if p75 > 0 else "low"
    spread = p75 / p25
    if spread > 3.0:
        return "high"
    if spread > 1.5:
        return "medium"
    return "low"


def cost_estimates_usd(chain: str, fee_gwei: float) -> Dict[str, float]:
    native = NATIVE_USD.get(chain, 3_000.0)
    return {
        f"{tx}_usd": round(units * fee_gwei * 1e-9 * native, 6)
        for tx, units in GAS_UNITS.items()
    }


def static_gas_profile(chain: str) -> dict:
    bands = STATIC_GAS_BANDS_GWEI.get(chain, STATIC_GAS_BANDS_GWEI["base"])
    base_fee = bands["normal"]
    priority = round(base_fee * 0.1, 6)
    suggested = round(2 * base_fee + priority, 6)
    return {
        "chain":                    chain,
        "source":                   "static_bands",
        "congestion_level":         "moderate",
        "base_fee_gwei":            base_fee,
        "median_priority_fee_gwei": priority,
        "suggested_max_fee_gwei":   suggested,
        "cost_estimates":           cost_estimates_usd(chain, suggested),
        "variance_hint":            "unknown",
    }


class FeeHistoryReader:
    """
    eth_feeHistory over JSON-RPC, one shared aiohttp session.

    read() returns (profile, error); it never raises.
    """

    def __init__(self, timeout: float = RPC_TIMEOUT_SECS):
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    def _session_or_create(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def read(self, chain: str, rpc_url: str) -> Tuple[Optional[dict], Optional[str]]:
        body = {
            "jsonrpc": "2.0", "id": 1, "method": "eth_feeHistory",
            "params": [hex(FEE_HISTORY_BLOCKS), "latest", list(FEE_PERCENTILES)],
        }
        t0 = time.monotonic()
        try:
            async with self._session_or_create().post(rpc_url, json=body) as resp:
                if resp.status != 200:
                    return None, f"http_{resp.status}"
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            log.warning("eth_feeHistory on %s timed out", chain)
            return None, "timeout"
        except aiohttp.ClientError as exc:
            log.warning("eth_feeHistory on %s connection error: %s", chain, exc)
            return None, f"connection_error: {exc}"
        except ValueError as exc:
            log.warning("eth_feeHistory on %s returned invalid JSON: %s", chain, exc)
            return None, f"parse_error: {exc}"

        result = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(result, dict):
            err = payload.get("error") if isinstance(payload, dict) else None
            return None, f"rpc_error: {err or 'missing result'}"

        try:
            base_fees = [int(x, 16) / 1e9 for x in result.get("baseFeePerGas") or []]
            rewards   = [[int(x, 16) / 1e9 for x in row] for row in result.get("reward") or []]
            ratios    = [float(x) for x in result.get("gasUsedRatio") or []]
            if rewards:
                mid = len(rewards) // 2
                p25 = sorted(r[0] for r in rewards)[mid]
                p50 = sorted(r[1] for r in rewards)[mid]
                p75 = sorted(r[2] for r in rewards)[mid]
            else:
                p25 = p50 = p75 = 0.0
        except (TypeError, ValueError, IndexError) as exc:
            return None, f"parse_error: {exc}"
        if not base_fees:
            return None, "parse_error: empty baseFeePerGas"

        # baseFeePerGas carries one extra entry: the next block's base fee.
        base_fee = base_fees[-1]
        ratio = sum(ratios) / len(ratios) if ratios else 0.0
        suggested = 2 * base_fee + p50

        log.debug("eth_feeHistory %s ok in %.1fms: base=%.4f gwei p50=%.4f ratio=%.2f",
                  chain, (time.monotonic() - t0) * 1_000, base_fee, p50, ratio)
        return {
            "chain":                    chain,
            "source":                   "eth_feeHistory",
            "congestion_level":         congestion_from_ratio(ratio),
            "base_fee_gwei":            round(base_fee, 6),
            "median_priority_fee_gwei": round(p50, 6),
            "suggested_max_fee_gwei":   round(suggested, 6),
            "cost_estimates":           cost_estimates_usd(chain, suggested),
            "variance_hint":            variance_from_rewards(p25, p75),
            "avg_gas_used_ratio":       round(ratio, 4),
        }, None


# ══════════════════════════════════════════════════════════════════════════════
# Venue depth
# ══════════════════════════════════════════════════════════════════════════════

def venue_depth(chain: str, asset_in: str, asset_out: str) -> dict:
    table = REFERENCE_DEPTH_USD.get(chain, {})
    mult = STABLE_PAIR_DEPTH_MULT if is_stable(asset_in) and is_stable(asset_out) else 1.0
    venues: List[dict] = [
        {"venue": venue, "depth_usd": depth * mult, "fee_bps": VENUE_FEE_BPS.get(venue, 30)}
        for venue, depth in sorted(table.items(), key=lambda kv: kv[1], reverse=True)
    ]
    return {
        "chain":         chain,
        "asset_in":      asset_in,
        "asset_out":     asset_out,
        "venues":        venues,
        "best_by_depth": venues[0]["venue"] if venues else None,
    }


# ══════════════════════════════════════════════════════════════════════════════
# Handlers
# ══════════════════════════════════════════════════════════════════════════════

def _ok(resource: str, data: dict, **extra) -> web.Response:
    body = {"ok": True, "resource": resource, "version": RESOURCE_VERSION, **extra,
            "data": data, "timestamp_utc": _now_iso()}
    return web.json_response(body)


def _fail(resource: str, error: str, status: int = 400) -> web.Response:
    return web.json_response(
        {"ok": False, "resource": resource, "error": error, "timestamp_utc": _now_iso()},
        status=status,
    )


async def handle_index(request: web.Request) -> web.Response:
    return web.json_response({
        "ok": True,
        "service": SERVICE_NAME,
        "description": "Helper endpoints for the AegisAI advisory seller.",
        "endpoints": sorted(
            r.resource.canonical for r in request.app.router.routes()
            if r.resource is not None and r.method == "GET"
        ),
    })


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True, "status": "healthy", "timestamp_utc": _now_iso()})


async def handle_gas_profile(request: web.Request) -> web.Response:
    chain = _normalize_chain(request.query.get("chain"))
    if chain not in SUPPORTED_CHAINS:
        return _fail("gas-profile", f"unsupported chain '{chain}'")

    rpc_url = rpc_url_for(chain)
    if rpc_url:
        profile, err = await request.app["fee_reader"].read(chain, rpc_url)
        if profile is not None:
            return _ok("gas-profile", profile)
        log.warning("Gas profile for %s falling back to static bands: %s", chain, err)
    return _ok("gas-profile", static_gas_profile(chain))


async def handle_venue_depth(request: web.Request) -> web.Response:
    q = request.query
    chain = _normalize_chain(q.get("chain"))
    if chain not in SUPPORTED_CHAINS:
        return _fail("venue-depth", f"unsupported chain '{chain}'")
    asset_in  = (q.get("asset_in") or "").strip().upper()
    asset_out = (q.get("asset_out") or "").strip().upper()
    if not asset_in or not asset_out:
        return _fail("venue-depth", "asset_in and asset_out are required")
    data = venue_depth(chain, asset_in, asset_out)
    if q.get("notional_usd"):
        data["notional_usd"] = q.get("notional_usd")
    return _ok("venue-depth", data)


async def handle_risk_policies(request: web.Request) -> web.Response:
    chain = _normalize_chain(request.query.get("chain"))
    venue = (request.query.get("venue") or "generic").strip().lower()
    bands = RISK_POLICY_BANDS.get(chain, DEFAULT_RISK_POLICY)
    return _ok("risk-policies", {
        "notional_bands_usd": {
            "low_risk_max":    bands["notional_usd"]["low"],
            "medium_risk_max": bands["notional_usd"]["medium"],
            "high_risk_max":   bands["notional_usd"]["high"],
        },
        "leverage_limits": dict(bands["leverage"]),
        "notes": [
            "These thresholds are heuristic and should be aligned with the caller's own risk framework.",
            "For very illiquid venues, effective risk may be higher than implied by notional/leverage alone.",
        ],
    }, chain=chain, venue=venue)


async def handle_gas_bands(request: web.Request) -> web.Response:
    chain = _normalize_chain(request.query.get("chain"))
    urgency = _pick(request.query.get("urgency"), ("low", "normal", "high"), "normal")
    bands = STATIC_GAS_BANDS_GWEI.get(chain, STATIC_GAS_BANDS_GWEI["base"])
    return _ok("gas-bands", {
        "gas_price_wei": {k: str(int(round(v * 1e9))) for k, v in bands.items()},
        "notes": [
            "These values are illustrative defaults only and should be overridden by live gas data where available.",
            "Gas is still adjusted heuristically based on urgency in the job input.",
        ],
    }, chain=chain, urgency=urgency)


async def handle_strategy_archetypes(request: web.Request) -> web.Response:
    chain = _normalize_chain(request.query.get("chain"))
    risk = _pick(request.query.get("risk_tolerance"),
                 ("conservative", "moderate", "aggressive"), "moderate")
    archetypes = [{k: v for k, v in a.items() if k != "keywords"} for a in STRATEGY_ARCHETYPES]
    return _ok("strategy-archetypes", {"archetypes": archetypes},
               chain=chain, risk_tolerance=risk)


async def handle_signal_taxonomy(request: web.Request) -> web.Response:
    chain = _normalize_chain(request.query.get("chain"))
    try:
        min_notional = float(request.query.get("min_notional") or 50_000)
    except ValueError:
        return _fail("market-signal-taxonomy", "min_notional must be a number")
    return _ok("market-signal-taxonomy", {"taxonomy": market_signal_taxonomy(min_notional)},
               chain=chain, minimum_notional_usd=min_notional)


async def handle_portfolio_templates(request: web.Request) -> web.Response:
    q = request.query
    risk = _pick(q.get("risk_tolerance"), ("conservative", "moderate", "aggressive"), "moderate")
    objective = _pick(q.get("target_objective") or q.get("objective"),
                      ("maximize_yield", "preserve_capital", "balanced"), "balanced")
    template = [{"asset": a, "target_weight_pct": pct}
                for a, pct in portfolio_template(risk, objective)]
    return _ok("portfolio-templates", {"template": template},
               risk_tolerance=risk, target_objective=objective)


async def handle_supported_chains(request: web.Request) -> web.Response:
    chains = [{"id": c, **CHAIN_META[c]} for c in SUPPORTED_CHAINS]
    return _ok("supported-chains", {"chains": chains})


async def handle_supported_venues(request: web.Request) -> web.Response:
    chain = _normalize_chain(request.query.get("chain"))
    if chain not in VENUES_BY_CHAIN:
        return _fail("supported-venues", f"unsupported chain '{chain}'")
    return _ok("supported-venues", {"venues": VENUES_BY_CHAIN[chain]}, chain=chain)


# ══════════════════════════════════════════════════════════════════════════════
# App
# ══════════════════════════════════════════════════════════════════════════════

async def _close_fee_reader(app: web.Application) -> None:
    await app["fee_reader"].close()


def create_app(fee_reader: Optional[FeeHistoryReader] = None) -> web.Application:
    app = web.Application()
    app["fee_reader"] = fee_reader or FeeHistoryReader()
    app.on_cleanup.append(_close_fee_reader)
    app.router.add_get("/", handle_index)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/resources/gas-profile", handle_gas_profile)
    app.router.add_get("/resources/venue-depth", handle_venue_depth)
    app.router.add_get("/resources/risk-policies", handle_risk_policies)
    app.router.add_get("/resources/gas-bands", handle_gas_bands)
    app.router.add_get("/resources/strategy-archetypes", handle_strategy_archetypes)
    app.router.add_get("/resources/market-signal-taxonomy", handle_signal_taxonomy)
    app.router.add_get("/resources/portfolio-templates", handle_portfolio_templates)
    app.router.add_get("/resources/supported-chains", handle_supported_chains)
    app.router.add_get("/resources/supported-venues", handle_supported_venues)
    return app


async def start_resources_server(host: str = RESOURCES_HOST,
                                 port: int = RESOURCES_PORT) -> web.AppRunner:
    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("%s listening on http://%s:%d", SERVICE_NAME, host, port)
    return runner
