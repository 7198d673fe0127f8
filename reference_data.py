"""
reference_data.py  —  Static reference tables shared by validation,
synthesis and the resources server.

Nothing here is fetched at runtime.  The tables describe which chains and
venues the seller will reason about, the reference allocation templates
used by the portfolio rebalancer, strategy archetypes for the safety
audit, and the static gas / depth bands the resources server falls back to
when no live chain RPC is configured.
"""
from __future__ import annotations

from typing import Dict, List, Tuple

# ── Chains ─────────────────────────────────────────────────────────────────────
SUPPORTED_CHAINS: Tuple[str, ...] = (
    "base", "ethereum-mainnet", "arbitrum", "optimism", "polygon",
)

CHAIN_META: Dict[str, dict] = {
    "base":             {"chain_id": 8453,  "role": "primary",
                         "notes": "Default chain for AegisAI examples and testing."},
    "ethereum-mainnet": {"chain_id": 1,     "role": "mainnet",
                         "notes": "Main Ethereum network. Higher gas, highest economic weight."},
    "arbitrum":         {"chain_id": 42161, "role": "layer2",
                         "notes": "Layer 2 rollup environment with lower fees."},
    "optimism":         {"chain_id": 10,    "role": "layer2",
                         "notes": "OP Stack rollup; fee profile close to Base."},
    "polygon":          {"chain_id": 137,   "role": "sidechain",
                         "notes": "PoS chain; cheap gas, thinner blue-chip liquidity."},
}

# ── Venues ─────────────────────────────────────────────────────────────────────
# "unknown" lets a caller say "no venue preference" without failing validation.
SUPPORTED_VENUES: Tuple[str, ...] = (
    "uniswap_v3", "aerodrome", "curve", "balancer", "sushiswap",
    "velodrome", "gmx", "1inch", "unknown",
)

VENUES_BY_CHAIN: Dict[str, List[dict]] = {
    "base": [
        {"id": "aerodrome",  "type": "amm",        "description": "Main DEX/AMM on Base."},
        {"id": "uniswap_v3", "type": "amm",        "description": "Uniswap v3 deployments on Base."},
        {"id": "balancer",   "type": "weighted_amm", "description": "Balancer v2 pools on Base."},
    ],
    "ethereum-mainnet": [
        {"id": "uniswap_v3", "type": "amm",        "description": "Flagship AMM on mainnet."},
        {"id": "curve",      "type": "stable_amm", "description": "Stablecoin-focused pools and stableswaps."},
        {"id": "balancer",   "type": "weighted_amm", "description": "Balancer v2 weighted pools."},
        {"id": "sushiswap",  "type": "amm",        "description": "Sushiswap constant-product pools."},
    ],
    "arbitrum": [
        {"id": "uniswap_v3", "type": "amm",        "description": "Uniswap v3 deployments on Arbitrum."},
        {"id": "gmx",        "type": "perp_dex",   "description": "Perpetual futures DEX exposure."},
        {"id": "curve",      "type": "stable_amm", "description": "Curve stableswap pools on Arbitrum."},
    ],
    "optimism": [
        {"id": "velodrome",  "type": "amm",        "description": "Main ve(3,3) DEX on Optimism."},
        {"id": "uniswap_v3", "type": "amm",        "description": "Uniswap v3 deployments on Optimism."},
    ],
    "polygon": [
        {"id": "uniswap_v3", "type": "amm",        "description": "Uniswap v3 deployments on Polygon."},
        {"id": "sushiswap",  "type": "amm",        "description": "Sushiswap pools on Polygon."},
        {"id": "balancer",   "type": "weighted_amm", "description": "Balancer v2 pools on Polygon."},
    ],
}

# Reference pool depth (USD) for a volatile blue-chip pair; stable-stable
# pairs get STABLE_PAIR_DEPTH_MULT times more.
REFERENCE_DEPTH_USD: Dict[str, Dict[str, float]] = {
    "base":             {"aerodrome": 18_000_000, "uniswap_v3": 9_000_000,  "balancer": 2_500_000},
    "ethereum-mainnet": {"uniswap_v3": 120_000_000, "curve": 60_000_000,
                         "balancer": 25_000_000, "sushiswap": 8_000_000},
    "arbitrum":         {"uniswap_v3": 30_000_000, "gmx": 15_000_000, "curve": 10_000_000},
    "optimism":         {"velodrome": 12_000_000, "uniswap_v3": 7_000_000},
    "polygon":          {"uniswap_v3": 6_000_000, "sushiswap": 2_000_000, "balancer": 1_500_000},
}
VENUE_FEE_BPS: Dict[str, int] = {
    "uniswap_v3": 30, "aerodrome": 30, "curve": 4, "balancer": 25,
    "sushiswap": 30, "velodrome": 20, "gmx": 10, "1inch": 30,
}
STABLE_PAIR_DEPTH_MULT = 4.0

STABLE_SYMBOLS: Tuple[str, ...] = ("USDC", "USDT", "DAI", "USDBC", "FRAX", "LUSD")

# ── Gas bands (gwei) ───────────────────────────────────────────────────────────
STATIC_GAS_BANDS_GWEI: Dict[str, Dict[str, float]] = {
    "base":             {"low": 0.005, "normal": 0.015, "high": 0.05},
    "ethereum-mainnet": {"low": 10.0,  "normal": 30.0,  "high": 60.0},
    "arbitrum":         {"low": 0.01,  "normal": 0.03,  "high": 0.1},
    "optimism":         {"low": 0.005, "normal": 0.02,  "high": 0.06},
    "polygon":          {"low": 30.0,  "normal": 60.0,  "high": 150.0},
}

# Typical gas units per transaction type and a rough native-token USD price
# used to turn gwei into dollar cost estimates.
GAS_UNITS: Dict[str, int] = {
    "swap": 180_000, "liquidity_add": 260_000,
    "rebalance": 420_000, "leverage_open": 550_000,
}
NATIVE_USD: Dict[str, float] = {
    "base": 3_000.0, "ethereum-mainnet": 3_000.0, "arbitrum": 3_000.0,
    "optimism": 3_000.0, "polygon": 0.5,
}

# ── Risk policies ──────────────────────────────────────────────────────────────
RISK_POLICY_BANDS: Dict[str, dict] = {
    "base":             {"notional_usd": {"low": 25_000, "medium": 100_000, "high": 250_000},
                         "leverage": {"max_spot": 1, "max_margin": 3}},
    "ethereum-mainnet": {"notional_usd": {"low": 50_000, "medium": 200_000, "high": 500_000},
                         "leverage": {"max_spot": 1, "max_margin": 5}},
    "arbitrum":         {"notional_usd": {"low": 20_000, "medium": 100_000, "high": 300_000},
                         "leverage": {"max_spot": 1, "max_margin": 4}},
}
DEFAULT_RISK_POLICY: dict = {
    "notional_usd": {"low": 20_000, "medium": 75_000, "high": 200_000},
    "leverage": {"max_spot": 1, "max_margin": 3},
}

# ── Strategy archetypes ────────────────────────────────────────────────────────
STRATEGY_ARCHETYPES: List[dict] = [
    {
        "id": "stable_lending",
        "label": "Stablecoin Lending",
        "baseline_risk": "low",
        "description": "Lend major stablecoins on blue-chip lending markets; "
                       "focus on preserving capital with modest yield.",
        "typical_protocols": ["Aave", "Compound", "Spark"],
        "typical_leverage": 1,
        "keywords": ("lend", "lending", "stable", "aave", "compound", "spark"),
    },
    {
        "id": "delta_neutral_farming",
        "label": "Delta-Neutral Yield Farming",
        "baseline_risk": "medium",
        "description": "Hedge price exposure while farming incentives; "
                       "relies on hedging/liquidity efficiency.",
        "typical_protocols": ["GMX", "Pendle", "Perp DEXs"],
        "typical_leverage": 1.5,
        "keywords": ("delta", "neutral", "hedge", "basis", "funding", "pendle", "gmx"),
    },
    {
        "id": "high_beta_liquidity",
        "label": "High-Beta Liquidity Provision",
        "baseline_risk": "high",
        "description": "Provide liquidity to volatile pairs for high fees/emissions; "
                       "exposed to IL and protocol risk.",
        "typical_protocols": ["Uniswap v3 style AMMs", "Aerodrome"],
        "typical_leverage": 2,
        "keywords": ("liquidity", "lp", "pool", "amm", "emissions", "farm", "aerodrome"),
    },
]

# ── Market signal taxonomy ─────────────────────────────────────────────────────
def market_signal_taxonomy(min_notional: float) -> List[dict]:
    return [
        {"id": "whale_swaps", "label": "Whale Swaps", "severity_default": "medium",
         "description": "Large on-chain swaps that may indicate accumulation, "
                        "distribution, or hedging by large actors.",
         "typical_threshold_usd": min_notional},
        {"id": "liquidity_drains", "label": "Liquidity Drains", "severity_default": "high",
         "description": "Sudden withdrawal or migration of liquidity from pools, "
                        "potentially leading to slippage spikes.",
         "typical_threshold_usd": min_notional * 2},
        {"id": "volatility_spike", "label": "Volatility Spike", "severity_default": "medium",
         "description": "Short-term surge in price volatility which may trigger "
                        "liquidations or risk-off flows.",
         "typical_threshold_usd": min_notional},
        {"id": "gas_congestion", "label": "Gas Congestion", "severity_default": "medium",
         "description": "Base fee and priority fee pressure that raises execution "
                        "cost and inclusion latency.",
         "typical_threshold_usd": None},
    ]


# ── Portfolio templates ────────────────────────────────────────────────────────
PORTFOLIO_TEMPLATES: Dict[str, Dict[str, List[Tuple[str, float]]]] = {
    "conservative": {
        "preserve_capital": [("USDC", 60), ("USDT", 20), ("WETH", 10), ("WBTC", 10)],
        "balanced":         [("USDC", 40), ("WETH", 30), ("WBTC", 20), ("LSTs", 10)],
        "maximize_yield":   [("USDC", 30), ("WETH", 30), ("DeFi_bluechips", 40)],
    },
    "moderate": {
        "preserve_capital": [("USDC", 40), ("USDT", 20), ("WETH", 20), ("WBTC", 20)],
        "balanced":         [("USDC", 30), ("WETH", 30), ("WBTC", 20), ("DeFi_bluechips", 20)],
        "maximize_yield":   [("USDC", 20), ("WETH", 30), ("DeFi_bluechips", 50)],
    },
    "aggressive": {
        "preserve_capital": [("USDC", 30), ("WETH", 30), ("WBTC", 20), ("DeFi_bluechips", 20)],
        "balanced":         [("USDC", 20), ("WETH", 30), ("WBTC", 20), ("DeFi_bluechips", 30)],
        "maximize_yield":   [("USDC", 10), ("WETH", 25), ("WBTC", 15), ("DeFi_bluechips", 50)],
    },
}


def portfolio_template(risk_tolerance: str, objective: str) -> List[Tuple[str, float]]:
    by_risk = PORTFOLIO_TEMPLATES.get(risk_tolerance) or PORTFOLIO_TEMPLATES["moderate"]
    return by_risk.get(objective) or PORTFOLIO_TEMPLATES["moderate"]["balanced"]


def is_stable(symbol: str) -> bool:
    return (symbol or "").strip().upper() in STABLE_SYMBOLS
