"""Pytest fixtures and collaborator fakes for deadhand tests."""

import asyncio

import pytest

from core.activity_oracle import ActivityOracle, OnchainActivityQuery, OnchainEvidence, SocialActivityQuery
from core.delegations import InMemoryDelegationStore
from core.errors import NoRouteError
from core.events import EventStream
from core.job_registry import JobRegistry
from core.models import Delegation, Quote, TokenBalance
from core.scheduler import Scheduler
from core.sweep_planner import BalanceLookup, QuoteProvider, SweepPlanner
from core.switch import DeadHandSwitch

USER = "0x" + "11" * 20
BENEFICIARY = "0x" + "22" * 20
EXECUTOR = "0x" + "33" * 20
ROUTER = "0x" + "44" * 20
SPENDER = "0x" + "55" * 20

USDC_ARB = "0xaf88d065e77c8cc2239327c5edb3a432268e5831"
USDC_POLYGON = "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359"
DAI_POLYGON = "0x8f3cf7ad23cd3cadbd9735aff958023239c6a063"
WETH_ARB = "0x82af49447d8a07e3bd95bd0d56f35241523fbab1"
NATIVE = "0x0000000000000000000000000000000000000000"


# =============================================================================
# Collaborator fakes
# =============================================================================


class FakeOnchain(OnchainActivityQuery):
    def __init__(self, found: bool = False, error: Exception = None, delay: float = 0.0):
        self.found = found
        self.error = error
        self.delay = delay
        self.prompts: list[str] = []

    async def query(self, prompt, *, user_address="", window_seconds=0.0):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return OnchainEvidence(found=self.found, summary="fake")


class FakeSocial(SocialActivityQuery):
    def __init__(self, found: bool = False, error: Exception = None, delay: float = 0.0):
        self.found = found
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, int]] = []

    async def has_recent_activity(self, user_address, hours):
        self.calls.append((user_address, hours))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.found


class FakeBalances(BalanceLookup):
    def __init__(self, holdings=(), error: Exception = None):
        self.holdings = list(holdings)
        self.error = error
        self.calls = 0

    async def list_balances(self, user_address, chain_ids):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.holdings)


class FakeQuotes(QuoteProvider):
    """Routes everything to ROUTER, except tokens listed in `no_route`."""

    def __init__(self, no_route=(), approval_address: str = SPENDER):
        self.no_route = {t.lower() for t in no_route}
        self.approval_address = approval_address
        self.requests: list[dict] = []

    async def quote(self, source_token, source_chain, dest_token, dest_chain, amount, sender, recipient):
        self.requests.append({
            "source_token": source_token,
            "source_chain": source_chain,
            "dest_token": dest_token,
            "dest_chain": dest_chain,
            "amount": amount,
            "sender": sender,
            "recipient": recipient,
        })
        if source_token.lower() in self.no_route:
            raise NoRouteError(f"no route for {source_token}")
        return Quote(
            to=ROUTER,
            value=amount if source_token == NATIVE else 0,
            data="0xdeadbeef",
            approval_address=self.approval_address,
            chain_id=source_chain,
        )


class RecordingSink(EventStream):
    """EventStream that also keeps events oldest-first for assertions."""

    def __init__(self):
        super().__init__()
        self.emitted: list[tuple[str, str, dict]] = []

    async def emit(self, user_address, event_type, payload):
        self.emitted.append((user_address, event_type, payload))
        await super().emit(user_address, event_type, payload)

    def types(self) -> list[str]:
        return [t for _, t, _ in self.emitted]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def delegation() -> Delegation:
    return Delegation(
        user_address=USER,
        beneficiary_address=BENEFICIARY,
        execution_account=EXECUTOR,
        timeout_seconds=0.05,
    )


@pytest.fixture
def holdings() -> list[TokenBalance]:
    return [
        TokenBalance(token=USDC_POLYGON, chain_id=137, balance=5_000_000, symbol="USDC", decimals=6),
        TokenBalance(token=WETH_ARB, chain_id=42161, balance=10**18, symbol="WETH"),
    ]


class SwitchHarness:
    """Switch wired to fakes. Tests mutate the fakes to steer a cycle."""

    def __init__(self, holdings=(), onchain=None, social=None, quotes=None, balances=None,
                 registry=None):
        self.registry = registry or JobRegistry()
        self.scheduler = Scheduler(self.registry)
        self.store = InMemoryDelegationStore()
        self.onchain = onchain or FakeOnchain()
        self.social = social or FakeSocial()
        self.oracle = ActivityOracle(self.onchain, self.social, deadline_seconds=1.0)
        self.balances = balances or FakeBalances(holdings)
        self.quotes = quotes or FakeQuotes()
        self.planner = SweepPlanner(self.balances, self.quotes, chain_ids=(137, 42161))
        self.events = RecordingSink()
        self.switch = DeadHandSwitch(
            self.store, self.scheduler, self.oracle, self.planner, self.events,
            target_asset=USDC_ARB, target_chain=42161,
        )

    async def wait_for_event(self, event_type: str, count: int = 1, timeout: float = 2.0):
        async def _wait():
            while self.events.types().count(event_type) < count:
                await asyncio.sleep(0.005)
        await asyncio.wait_for(_wait(), timeout)


@pytest.fixture
def make_harness():
    return SwitchHarness
