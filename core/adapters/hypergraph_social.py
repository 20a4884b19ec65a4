"""
Hypergraph Social Adapter - synced Twitter activity as a liveness signal

Twitter activity (tweets, likes, retweets, replies) is synced into a public
Hypergraph space as entities named "<activity_type> - <user_address>".
This adapter lists the space's entities and answers whether the user has
any of them inside the trailing window.
"""

import time
import logging
from datetime import datetime, timezone
from typing import Optional

import aiohttp

from core.activity_oracle import SocialActivityQuery
from core.chain import normalize_address
from core.errors import CollaboratorError
from core.retry import CircuitBreaker, RetryPolicy

logger = logging.getLogger("deadhand.adapter.hypergraph")

ACTIVITY_TYPES = ("tweet", "like", "retweet", "reply")


class HypergraphSocialActivity(SocialActivityQuery):

    def __init__(self, api_origin: str, space_id: str,
                 retry: Optional[RetryPolicy] = None, timeout: float = 15.0):
        self.api_origin = api_origin.rstrip("/")
        self.space_id = space_id
        self._retry = retry or RetryPolicy(breaker=CircuitBreaker("hypergraph"))
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def has_recent_activity(self, user_address: str, hours: int) -> bool:
        if not self.space_id:
            raise CollaboratorError("HYPERGRAPH_PUBLIC_SPACE_ID is not configured")
        entities = await self._retry.call(self._fetch_entities)
        since = time.time() - hours * 3600
        user = normalize_address(user_address)
        matches = [e for e in entities if is_user_activity(e, user, since)]
        logger.info(f"Hypergraph: {len(matches)} social activities for {user} in last {hours}h")
        return bool(matches)

    async def _fetch_entities(self) -> list[dict]:
        session = await self._get_session()
        url = f"{self.api_origin}/space/{self.space_id}/entities"
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise CollaboratorError(f"Hypergraph {resp.status}: {(await resp.text())[:200]}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise CollaboratorError(f"Hypergraph request failed: {e}") from e
        return data.get("entities") or []


def is_user_activity(entity: dict, user_address: str, since: float) -> bool:
    name = str(entity.get("name") or "")
    activity_type, sep, owner = name.partition(" - ")
    if not sep or activity_type.strip().lower() not in ACTIVITY_TYPES:
        return False
    if normalize_address(owner) != user_address:
        return False
    created = _parse_timestamp(entity.get("createdAt"))
    return created is not None and created >= since


def _parse_timestamp(value) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        # epoch millis vs seconds
        return value / 1000 if value > 1e12 else float(value)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()
