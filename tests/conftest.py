"""
Pytest configuration and fixtures
"""
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence

import pytest

# Add repo root to path for imports
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from evidence import SOURCE_DEPTH, SOURCE_GAS, Evidence, GatheredEvidence


class FakeGatherer:
    """Stands in for EvidenceGatherer: returns canned payloads per signal."""

    def __init__(self, gas: Optional[dict] = None, depth: Optional[dict] = None,
                 errors: Optional[Dict[str, str]] = None):
        self.gas = gas
        self.depth = depth
        self.errors = errors or {}
        self.calls: List[Sequence[str]] = []

    async def gather(self, signals, request) -> GatheredEvidence:
        self.calls.append(tuple(signals))
        out = GatheredEvidence()
        for signal in signals:
            payload = self.gas if signal == SOURCE_GAS else self.depth
            if signal in self.errors:
                out.evidence.append(Evidence(source=signal, error=self.errors[signal]))
            elif payload is not None:
                out.evidence.append(Evidence(source=signal, freshness_seconds=1.0))
                if signal == SOURCE_GAS:
                    out.gas = payload
                else:
                    out.depth = payload
        return out


class FakeJob:
    def __init__(self, job_id="job-1", job_input=None):
        self.id = job_id
        self.input = job_input
        self.responses: List[tuple] = []
        self.deliveries: List[dict] = []

    async def respond(self, accept, reason):
        self.responses.append((accept, reason))

    async def deliver(self, deliverable):
        self.deliveries.append(deliverable)


def make_memo(next_phase, content=None, status="PENDING"):
    return SimpleNamespace(status=status, next_phase=next_phase, structured_content=content)


@pytest.fixture
def gas_profile() -> dict:
    return {
        "congestion_level": "low",
        "base_fee_gwei": 0.01,
        "median_priority_fee_gwei": 0.001,
        "suggested_max_fee_gwei": 0.021,
        "cost_estimates": {"swap_usd": 0.02},
        "variance_hint": "low",
    }


@pytest.fixture
def venue_depth() -> dict:
    return {
        "venues": [
            {"venue": "aerodrome", "depth_usd": 18_000_000, "fee_bps": 30},
            {"venue": "uniswap_v3", "depth_usd": 9_000_000, "fee_bps": 30},
        ],
        "best_by_depth": "aerodrome",
    }


@pytest.fixture
def risk_request() -> dict:
    return {
        "client_agent_id": "agent-123",
        "chain": "base",
        "asset_in": "USDC",
        "asset_out": "WETH",
        "side": "buy",
        "notional_value_usd": 10_000,
        "max_slippage_bps": 50,
        "leverage": 1,
    }
