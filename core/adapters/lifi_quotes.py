"""
LI.FI Adapter - bridge/swap quotes

    GET https://li.quest/v1/quote?fromChain=..&toChain=..&fromToken=..&toToken=..
        &fromAmount=..&fromAddress=..&toAddress=..&slippage=0.005

The quote carries a ready-to-sign transactionRequest and the address that
must be approved to pull the source token (estimate.approvalAddress).

"No route" answers (404, or 400 for an unroutable request) are final:
NoRouteError, no retry, circuit untouched. Anything else is a transport
failure and goes through the retry policy.
"""

import logging
from typing import Optional

import aiohttp

from core.errors import CollaboratorError, NoRouteError
from core.models import Quote
from core.retry import CircuitBreaker, RetryPolicy
from core.rules import SWITCH_RULES
from core.sweep_planner import QuoteProvider

logger = logging.getLogger("deadhand.adapter.lifi")


class LifiQuoteProvider(QuoteProvider):

    def __init__(self, base_url: str = "https://li.quest/v1", api_key: str = "",
                 retry: Optional[RetryPolicy] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._retry = retry or RetryPolicy(
            give_up_on=(NoRouteError,),
            breaker=CircuitBreaker("lifi"),
        )
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["x-lifi-api-key"] = self._api_key
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=headers)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def quote(self, source_token: str, source_chain: int, dest_token: str, dest_chain: int,
                    amount: int, sender: str, recipient: str) -> Quote:
        params = {
            "fromChain": str(source_chain),
            "toChain": str(dest_chain),
            "fromToken": source_token,
            "toToken": dest_token,
            "fromAmount": str(amount),
            "fromAddress": sender,
            "toAddress": recipient,
            "slippage": str(SWITCH_RULES.QUOTE_SLIPPAGE),
        }
        data = await self._retry.call(self._fetch, params)
        quote = parse_quote(data)
        logger.info(
            f"LI.FI quote {source_token[:10]}...@{source_chain} -> {dest_token[:10]}...@{dest_chain}: "
            f"tool={quote.tool or '?'} to_amount={quote.to_amount or '?'}"
        )
        return quote

    async def _fetch(self, params: dict) -> dict:
        session = await self._get_session()
        try:
            async with session.get(f"{self.base_url}/quote", params=params) as resp:
                if resp.status == 200:
                    return await resp.json()
                body = await resp.text()
                if resp.status in (400, 404):
                    raise NoRouteError(f"LI.FI {resp.status}: {body[:200]}")
                raise CollaboratorError(f"LI.FI {resp.status}: {body[:200]}")
        except aiohttp.ClientError as e:
            raise CollaboratorError(f"LI.FI request failed: {e}") from e


def parse_quote(data: dict) -> Quote:
    """LI.FI quote JSON -> Quote. Raises NoRouteError if there is no transaction."""
    tx = data.get("transactionRequest") or {}
    if not tx.get("to") or not tx.get("data"):
        raise NoRouteError("quote has no transactionRequest")

    estimate = data.get("estimate") or {}
    approval = estimate.get("approvalAddress") or data.get("approvalAddress") or ""

    return Quote(
        to=tx["to"],
        value=_parse_int(tx.get("value")),
        data=tx["data"],
        approval_address=approval,
        chain_id=_parse_int(tx.get("chainId")),
        to_amount=str(estimate.get("toAmount") or ""),
        tool=str(data.get("tool") or ""),
    )


def _parse_int(value) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, int):
        return value
    text = str(value)
    if text.startswith("0x"):
        return int(text, 16)
    try:
        return int(text)
    except ValueError:
        raise CollaboratorError(f"unparseable integer in quote: {value!r}")
