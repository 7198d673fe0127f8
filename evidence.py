"""
evidence.py  —  Evidence gathering from the auxiliary resource endpoints.

Two signals are consumed over HTTP (JSON contract):

  gas_profile  GET <gas-profile>?chain=…
               → {ok, data:{congestion_level, base_fee_gwei,
                            median_priority_fee_gwei, suggested_max_fee_gwei,
                            cost_estimates, variance_hint}}

  venue_depth  GET <venue-depth>?chain=…&asset_in=…&asset_out=…&notional_usd=…
               → {ok, data:{venues:[{venue, depth_usd, fee_bps}], best_by_depth}}

Every issued fetch leaves exactly one Evidence record behind, successful or
not.  A failed fetch (non-200, ok=false, timeout, connection or JSON error)
never raises past this module: it becomes Evidence(error=…) and a None data
payload, and synthesis proceeds on conservative defaults.  No retries are
attempted here.

Confidence is a pure function of the *set* of source labels seen:
both sources → "high", exactly one → "medium", none → "low".
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiohttp

log = logging.getLogger("evidence")

SOURCE_GAS   = "gas_profile"
SOURCE_DEPTH = "venue_depth"

NOT_CONFIGURED = "not_configured"


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
RESOURCES_BASE_URL     = os.environ.get("RESOURCES_BASE_URL", "").strip().rstrip("/")
GAS_PROFILE_URL        = os.environ.get("GAS_PROFILE_URL", "").strip()
VENUE_DEPTH_URL        = os.environ.get("VENUE_DEPTH_URL", "").strip()
RESOURCE_FETCH_TIMEOUT = _env_float("RESOURCE_FETCH_TIMEOUT", 8.0)


def default_resource_urls() -> Tuple[Optional[str], Optional[str]]:
    """Explicit per-resource URLs win over RESOURCES_BASE_URL."""
    gas = GAS_PROFILE_URL or (
        f"{RESOURCES_BASE_URL}/resources/gas-profile" if RESOURCES_BASE_URL else ""
    )
    depth = VENUE_DEPTH_URL or (
        f"{RESOURCES_BASE_URL}/resources/venue-depth" if RESOURCES_BASE_URL else ""
    )
    return gas or None, depth or None


# ══════════════════════════════════════════════════════════════════════════════
# Evidence records
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class Evidence:
    source:            str
    freshness_seconds: Optional[float] = None
    error:             Optional[str]   = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        if self.error is not None:
            return {"source": self.source, "error": self.error}
        return {"source": self.source,
                "freshness_seconds": round(self.freshness_seconds or 0.0, 1)}


@dataclass
class GatheredEvidence:
    evidence: List[Evidence]          = field(default_factory=list)
    gas:      Optional[Dict[str, Any]] = None
    depth:    Optional[Dict[str, Any]] = None

    @property
    def confidence(self) -> str:
        return derive_confidence(self.evidence)

    def as_list(self) -> List[dict]:
        return [e.to_dict() for e in self.evidence]


def derive_confidence(evidence: Iterable[Evidence]) -> str:
    sources = {e.source for e in evidence}
    seen = len(sources & {SOURCE_GAS, SOURCE_DEPTH})
    if seen == 2:
        return "high"
    if seen == 1:
        return "medium"
    return "low"


def _freshness_from(payload: dict) -> float:
    """Seconds since the resource's own timestamp; 0.0 when it carries none."""
    stamp = payload.get("timestamp_utc") or (payload.get("data") or {}).get("timestamp_utc")
    if not isinstance(stamp, str):
        return 0.0
    try:
        observed = datetime.fromisoformat(stamp.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0
    return max(0.0, time.time() - observed)


# ══════════════════════════════════════════════════════════════════════════════
# ResourceClient
# ══════════════════════════════════════════════════════════════════════════════

class ResourceClient:
    """
    Async client for the gas-profile and venue-depth resources.

    * Single shared aiohttp.ClientSession per instance (created lazily).
    * Every call returns (data, freshness_seconds, error); it never raises.
    * A resource without a configured URL is skipped (error=NOT_CONFIGURED)
      and no request is made.
    """

    def __init__(self,
                 gas_profile_url: Optional[str] = None,
                 venue_depth_url: Optional[str] = None,
                 timeout: float = RESOURCE_FETCH_TIMEOUT):
        self.gas_profile_url = gas_profile_url
        self.venue_depth_url = venue_depth_url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_env(cls) -> "ResourceClient":
        gas, depth = default_resource_urls()
        if not gas and not depth:
            log.warning(
                "No resource URLs configured (RESOURCES_BASE_URL / GAS_PROFILE_URL / "
                "VENUE_DEPTH_URL) — deliverables will rely on fallback defaults."
            )
        return cls(gas, depth)

    def configured(self, source: str) -> bool:
        if source == SOURCE_GAS:
            return bool(self.gas_profile_url)
        if source == SOURCE_DEPTH:
            return bool(self.venue_depth_url)
        return False

    def _session_or_create(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout, headers={"Accept": "application/json"},
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _get_json(self, source: str, url: Optional[str],
                        params: Dict[str, str]) -> Tuple[Optional[dict], float, Optional[str]]:
        if not url:
            return None, 0.0, NOT_CONFIGURED

        t0 = time.monotonic()
        try:
            async with self._session_or_create().get(url, params=params) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    err  = f"http_{resp.status}: {body[:120]}"
                    log.warning("Resource %s returned %s: %s", source, resp.status, err)
                    return None, 0.0, err
                payload = await resp.json(content_type=None)

            if not isinstance(payload, dict) or not payload.get("ok"):
                reason = payload.get("error") if isinstance(payload, dict) else None
                err = f"resource_not_ok: {reason or 'ok=false'}"
                log.warning("Resource %s reported failure: %s", source, err)
                return None, 0.0, err

            data = payload.get("data")
            if not isinstance(data, dict):
                log.warning("Resource %s payload has no data object", source)
                return None, 0.0, "parse_error: missing data object"

            freshness = _freshness_from(payload)
            log.debug("Resource %s ok in %.1fms (freshness=%.1fs)",
                      source, (time.monotonic() - t0) * 1_000, freshness)
            return data, freshness, None

        except asyncio.TimeoutError:
            lat = (time.monotonic() - t0) * 1_000
            log.warning("Resource %s timed out after %.1fms", source, lat)
            return None, 0.0, "timeout"
        except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError) as exc:
            log.warning("Resource %s parse error: %s", source, exc)
            return None, 0.0, f"parse_error: {exc}"
        except aiohttp.ClientError as exc:
            log.warning("Resource %s connection error: %s", source, exc)
            return None, 0.0, f"connection_error: {exc}"
        except Exception as exc:
            log.warning("Resource %s unexpected error: %s", source, exc)
            return None, 0.0, f"error: {exc}"

    async def fetch_gas_profile(self, chain: str) -> Tuple[Optional[dict], float, Optional[str]]:
        return await self._get_json(SOURCE_GAS, self.gas_profile_url, {"chain": chain})

    async def fetch_venue_depth(self, chain: str, asset_in: str, asset_out: str,
                                notional_usd: float) -> Tuple[Optional[dict], float, Optional[str]]:
        params = {
            "chain":        chain,
            "asset_in":     asset_in,
            "asset_out":    asset_out,
            "notional_usd": f"{notional_usd:.2f}",
        }
        return await self._get_json(SOURCE_DEPTH, self.venue_depth_url, params)


# ══════════════════════════════════════════════════════════════════════════════
# EvidenceGatherer
# ══════════════════════════════════════════════════════════════════════════════

class EvidenceGatherer:
    """
    Issues the fetches a job kind needs and folds every outcome into
    Evidence.  Fetches run concurrently; evidence order follows the order
    of the requested signals, not completion order.
    """

    def __init__(self, client: ResourceClient):
        self._client = client

    async def _fetch(self, signal: str, request: dict) -> Tuple[Optional[dict], float, Optional[str]]:
        chain = str(request.get("chain") or "")
        if signal == SOURCE_GAS:
            return await self._client.fetch_gas_profile(chain)
        return await self._client.fetch_venue_depth(
            chain,
            str(request.get("asset_in") or ""),
            str(request.get("asset_out") or ""),
            float(request.get("notional_value_usd") or 0.0),
        )

    async def gather(self, signals: Sequence[str], request: dict) -> GatheredEvidence:
        out = GatheredEvidence()
        wanted = [s for s in signals if s in (SOURCE_GAS, SOURCE_DEPTH)]
        issued = [s for s in wanted if self._client.configured(s)]
        for skipped in set(wanted) - set(issued):
            log.info("Evidence %s skipped: resource not configured", skipped)
        if not issued:
            return out

        results = await asyncio.gather(*(self._fetch(s, request) for s in issued))
        for signal, (data, freshness, err) in zip(issued, results):
            if err is not None:
                out.evidence.append(Evidence(source=signal, error=err))
                continue
            out.evidence.append(Evidence(source=signal, freshness_seconds=freshness))
            if signal == SOURCE_GAS:
                out.gas = data
            else:
                out.depth = data

        log.info("Evidence gathered: %s (confidence=%s)",
                 [e.to_dict() for e in out.evidence], out.confidence)
        return out
