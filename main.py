"""
deadhand - main entry point

Initializes all modules, wires collaborators, starts the server.
One file to understand how everything connects.

Usage:
    python main.py              # Start the switch engine + API
"""

import os
import re
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from openai import AsyncOpenAI

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys, session keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("deadhand.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from core.rules import SwitchSettings
from core.chain import chain_name
from core.job_registry import JobRegistry
from core.scheduler import Scheduler
from core.delegations import JsonDelegationStore
from core.activity_oracle import ActivityOracle
from core.sweep_planner import SweepPlanner
from core.events import EventStream
from core.switch import DeadHandSwitch
from core.adapters.graph_balances import GraphTokenApi, GraphBalanceLookup, recent_transfers
from core.adapters.lifi_quotes import LifiQuoteProvider
from core.adapters.llm_activity import LlmOnchainActivityQuery
from core.adapters.hypergraph_social import HypergraphSocialActivity
from api.server import create_app


# ============================================================
# GLOBALS (singleton instances)
# ============================================================

settings = SwitchSettings.from_env()
Path(settings.data_dir).mkdir(parents=True, exist_ok=True)

registry = JobRegistry(storage_path=str(Path(settings.data_dir) / "jobs.json"))
scheduler = Scheduler(registry, max_workers=settings.max_fire_workers)
delegations = JsonDelegationStore(str(Path(settings.data_dir) / "delegations.json"))
events = EventStream()

graph_api = GraphTokenApi(settings.graph_access_token, base_url=settings.graph_api_url)
lifi = LifiQuoteProvider(base_url=settings.lifi_api_url, api_key=settings.lifi_api_key)
hypergraph = HypergraphSocialActivity(settings.hypergraph_url, settings.hypergraph_space_id)


def _setup_llm():
    """Activity model client (OpenRouter, OpenAI-compatible). None if no key."""
    if not settings.llm_api_key:
        return None
    return AsyncOpenAI(
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
        timeout=60.0,  # 60s max per API call (default is 600s = too long)
    )


async def _transfer_evidence(user_address: str, window_seconds: float) -> str:
    """Token API transfers in the window, as JSON text for the activity model."""
    transfers = await recent_transfers(graph_api, user_address, settings.sweep_chains, window_seconds)
    return json.dumps(transfers, default=str)[:12000]


onchain_activity = LlmOnchainActivityQuery(
    _setup_llm(),
    settings.llm_model,
    evidence_fn=_transfer_evidence,
)

oracle = ActivityOracle(
    onchain_activity,
    hypergraph,
    failure_policy=settings.oracle_failure_policy,
    deadline_seconds=settings.oracle_deadline_seconds,
)
planner = SweepPlanner(GraphBalanceLookup(graph_api), lifi, chain_ids=settings.sweep_chains)

switch = DeadHandSwitch(
    delegations,
    scheduler,
    oracle,
    planner,
    events,
    target_asset=settings.target_asset,
    target_chain=settings.target_chain,
)


# ============================================================
# APP LIFECYCLE
# ============================================================

@asynccontextmanager
async def lifespan(app):
    """Startup and shutdown."""
    logger.info("=" * 60)
    logger.info("deadhand switch engine starting...")
    logger.info("=" * 60)

    if not settings.graph_access_token:
        logger.warning("GRAPH_ACCESS_TOKEN not set: balance lookups and transfer evidence will fail")
    if not settings.llm_api_key:
        logger.warning("OPENROUTER_API_KEY not set: on-chain activity source will fail")
    if not settings.hypergraph_space_id:
        logger.warning("HYPERGRAPH_PUBLIC_SPACE_ID not set: social activity source will fail")

    restored = switch.restore()
    scheduler.start()

    logger.info(f"Sweep: {[chain_name(c) for c in settings.sweep_chains]} -> "
                f"{settings.target_asset} on {chain_name(settings.target_chain)}")
    logger.info(f"Oracle failure policy: {settings.oracle_failure_policy.value}")
    logger.info(f"Restored {restored} armed switches. Ready.")

    yield

    # Shutdown
    logger.info("deadhand shutting down...")
    await scheduler.stop()
    await graph_api.close()
    await lifi.close()
    await hypergraph.close()
    logger.info("Goodbye.")


def create_deadhand_app():
    """Create the fully wired FastAPI app."""
    app = create_app(
        switch=switch,
        store=delegations,
        events=events,
        scheduler=scheduler,
    )

    # Replace the default lifespan with ours
    app.router.lifespan_context = lifespan

    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_deadhand_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
