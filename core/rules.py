"""
Switch Rules - Layer 0 constants and runtime settings

SWITCH_RULES is a frozen dataclass: hardcoded limits the engine never
changes at runtime. SwitchSettings holds the operator-tunable values and is
built from the environment once at startup (see main.py).

Designed for: dead-hand switch engine
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Final


class OracleFailurePolicy(Enum):
    """What a failed activity source counts as."""
    FAIL_DEADLY = "fail_deadly"    # failure = no activity = move toward the sweep
    FAIL_SAFE = "fail_safe"        # failure = activity = reset the timer


# ============================================================
# RULES - immutable at runtime
# ============================================================

@dataclass(frozen=True)
class SwitchRules:
    """Frozen dataclass = truly immutable at runtime."""

    # --- TIMEOUTS ---
    MIN_TIMEOUT_SECONDS: Final[float] = 0.0              # exclusive lower bound
    MAX_TIMEOUT_SECONDS: Final[float] = 10 * 365 * 86400  # 10 years

    # --- ORACLE ---
    ORACLE_DEADLINE_SECONDS: Final[float] = 30.0         # hard cap for one check
    ORACLE_DEADLINE_RATIO: Final[float] = 0.8            # deadline < window it evaluates

    # --- SCHEDULER ---
    MAX_FIRE_WORKERS: Final[int] = 8                     # concurrent check-and-trigger cycles
    COMPLETED_JOBS_KEPT: Final[int] = 1000               # status() history bound

    # --- SWEEP ---
    QUOTE_SLIPPAGE: Final[float] = 0.005                 # 0.5%
    BALANCE_PAGE_LIMIT: Final[int] = 50

    # --- EVENTS ---
    EVENT_STREAM_SIZE: Final[int] = 200


SWITCH_RULES = SwitchRules()


# ============================================================
# SETTINGS - operator tunables (env)
# ============================================================

def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "")
    return float(raw) if raw else default


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "")
    return int(raw) if raw else default


@dataclass
class SwitchSettings:
    """Runtime configuration. Defaults mirror the production deployment."""

    # Sweep target: native USDC on Arbitrum
    target_asset: str = "0xaf88d065e77c8cc2239327c5edb3a432268e5831"
    target_chain: int = 42161
    sweep_chains: tuple[int, ...] = (137, 42161)

    oracle_failure_policy: OracleFailurePolicy = OracleFailurePolicy.FAIL_DEADLY
    oracle_deadline_seconds: float = SWITCH_RULES.ORACLE_DEADLINE_SECONDS
    max_fire_workers: int = SWITCH_RULES.MAX_FIRE_WORKERS

    data_dir: str = "data/switch"

    # Collaborator endpoints / credentials
    graph_api_url: str = "https://token-api.thegraph.com"
    graph_access_token: str = ""
    lifi_api_url: str = "https://li.quest/v1"
    lifi_api_key: str = ""
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_api_key: str = ""
    llm_model: str = "anthropic/claude-3.5-sonnet"
    hypergraph_url: str = "https://hypergraph-v2-testnet.up.railway.app"
    hypergraph_space_id: str = ""

    @classmethod
    def from_env(cls) -> "SwitchSettings":
        """Build settings from environment variables (after load_dotenv)."""
        chains_raw = os.getenv("SWEEP_CHAINS", "")
        chains = (
            tuple(int(c) for c in chains_raw.split(",") if c.strip())
            if chains_raw else cls.sweep_chains
        )
        policy = os.getenv("ORACLE_FAILURE_POLICY", OracleFailurePolicy.FAIL_DEADLY.value)
        return cls(
            target_asset=os.getenv("SWEEP_TARGET_ASSET", cls.target_asset).lower(),
            target_chain=_env_int("SWEEP_TARGET_CHAIN", cls.target_chain),
            sweep_chains=chains,
            oracle_failure_policy=OracleFailurePolicy(policy.lower()),
            oracle_deadline_seconds=_env_float("ORACLE_DEADLINE_SECONDS", cls.oracle_deadline_seconds),
            max_fire_workers=_env_int("MAX_FIRE_WORKERS", cls.max_fire_workers),
            data_dir=os.getenv("SWITCH_DATA_DIR", cls.data_dir),
            graph_api_url=os.getenv("GRAPH_API_URL", cls.graph_api_url),
            graph_access_token=os.getenv("GRAPH_ACCESS_TOKEN", ""),
            lifi_api_url=os.getenv("LIFI_API_URL", cls.lifi_api_url),
            lifi_api_key=os.getenv("LIFI_API_KEY", ""),
            llm_base_url=os.getenv("OPENROUTER_BASE_URL", cls.llm_base_url),
            llm_api_key=os.getenv("OPENROUTER_API_KEY", ""),
            llm_model=os.getenv("ACTIVITY_MODEL", cls.llm_model),
            hypergraph_url=os.getenv("HYPERGRAPH_URL", cls.hypergraph_url),
            hypergraph_space_id=os.getenv("HYPERGRAPH_PUBLIC_SPACE_ID", ""),
        )
