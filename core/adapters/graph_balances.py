"""
The Graph Token API Adapter - balances and recent transfers

    GET {base}/balances/evm/{address}?network_id=matic&limit=50&page=1
    GET {base}/transfers/evm?network_id=matic&address={address}&startTime=...

Bearer auth (GRAPH_ACCESS_TOKEN). One request per chain.

Balance enumeration is lenient per chain (a failing chain is logged and
skipped) but strict overall: if no chain answered, the sweep cannot be
planned and CollaboratorError is raised.
"""

import time
import logging
from typing import Iterable, Optional

import aiohttp

from core.chain import chain_name, network_id, normalize_address
from core.errors import CollaboratorError
from core.models import TokenBalance
from core.retry import CircuitBreaker, RetryPolicy
from core.rules import SWITCH_RULES
from core.sweep_planner import BalanceLookup

logger = logging.getLogger("deadhand.adapter.graph")


class GraphTokenApi:
    """Thin aiohttp client for The Graph Token API."""

    def __init__(self, access_token: str, base_url: str = "https://token-api.thegraph.com",
                 retry: Optional[RetryPolicy] = None, timeout: float = 30.0):
        self._access_token = access_token
        self.base_url = base_url.rstrip("/")
        self._retry = retry or RetryPolicy(breaker=CircuitBreaker("graph-token-api"))
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get(self, path: str, params: dict) -> dict:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.get(url, params=params) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise CollaboratorError(f"Token API {resp.status} for {path}: {body[:200]}")
                return await resp.json()
        except aiohttp.ClientError as e:
            raise CollaboratorError(f"Token API request failed: {e}") from e

    def _require_token(self):
        if not self._access_token:
            raise CollaboratorError("GRAPH_ACCESS_TOKEN is not configured")

    async def balances(self, address: str, network: str) -> list[dict]:
        self._require_token()
        data = await self._retry.call(
            self._get,
            f"/balances/evm/{address}",
            {"network_id": network, "limit": str(SWITCH_RULES.BALANCE_PAGE_LIMIT), "page": "1"},
        )
        return data.get("data") or []

    async def transfers(self, address: str, network: str, since: float) -> list[dict]:
        self._require_token()
        data = await self._retry.call(
            self._get,
            "/transfers/evm",
            {
                "network_id": network,
                "address": address,
                "startTime": str(int(since)),
                "limit": str(SWITCH_RULES.BALANCE_PAGE_LIMIT),
            },
        )
        return data.get("data") or []


class GraphBalanceLookup(BalanceLookup):
    """BalanceLookup over the Token API."""

    def __init__(self, api: GraphTokenApi):
        self._api = api

    async def list_balances(self, user_address: str, chain_ids: Iterable[int]) -> list[TokenBalance]:
        user = normalize_address(user_address)
        holdings: list[TokenBalance] = []
        attempted = 0
        failed = 0

        for chain_id in chain_ids:
            network = network_id(chain_id)
            if network is None:
                logger.warning(f"No Token API network for chain {chain_id}, skipping")
                continue

            attempted += 1
            try:
                rows = await self._api.balances(user, network)
            except Exception as e:
                failed += 1
                logger.warning(f"Balance lookup failed for {user} on {chain_name(chain_id)}: {e}")
                continue

            for row in rows:
                balance = _parse_row(row, chain_id)
                if balance is not None and balance.balance > 0:
                    holdings.append(balance)

            logger.info(f"{chain_name(chain_id)}: {len(rows)} tokens listed for {user}")

        if attempted == 0:
            raise CollaboratorError("no supported chain to enumerate")
        if failed == attempted:
            raise CollaboratorError(f"balance lookup failed on every chain ({attempted})")

        return holdings


def _parse_row(row: dict, chain_id: int) -> Optional[TokenBalance]:
    contract = row.get("contract") or row.get("address")
    raw_amount = row.get("amount") or row.get("value") or "0"
    if not contract:
        return None
    try:
        amount = int(str(raw_amount))
    except ValueError:
        logger.warning(f"Unparseable amount {raw_amount!r} for {contract}, skipping")
        return None
    try:
        decimals = int(row.get("decimals") or 18)
    except (TypeError, ValueError):
        decimals = 18
    return TokenBalance(
        token=normalize_address(contract),
        chain_id=chain_id,
        balance=amount,
        symbol=str(row.get("symbol") or ""),
        decimals=decimals,
    )


async def recent_transfers(api: GraphTokenApi, user_address: str, chain_ids: Iterable[int],
                           window_seconds: float) -> dict[str, list[dict]]:
    """Transfers per chain name within the trailing window. Used as LLM evidence."""
    since = time.time() - window_seconds
    out: dict[str, list[dict]] = {}
    for chain_id in chain_ids:
        network = network_id(chain_id)
        if network is None:
            continue
        out[chain_name(chain_id)] = await api.transfers(normalize_address(user_address), network, since)
    return out
