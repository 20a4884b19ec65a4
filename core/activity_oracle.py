"""
Activity Oracle - "has this user done anything lately?"

Two independent sources, one boolean:
  on-chain: a blockchain-activity query collaborator, asked in natural
            language, answering with a STRUCTURED verdict (found + summary).
            Classification happens inside the collaborator, never here.
  social:   a social-activity index answering a plain boolean.

found = onchain OR social. Either source alone resets the switch.

Both sources run concurrently, each bounded by the oracle deadline
(always shorter than the window being evaluated). A source that errors or
times out resolves by the failure policy:
  FAIL_DEADLY -> counts as "no activity"  (documented current behaviour)
  FAIL_SAFE   -> counts as "activity"
check() never raises.
"""

import math
import time
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from .errors import OracleUnavailableError
from .models import ActivityEvidence, ActivityResult
from .rules import SWITCH_RULES, OracleFailurePolicy

logger = logging.getLogger("deadhand.activity_oracle")


# ============================================================
# COLLABORATOR CONTRACTS
# ============================================================

@dataclass(frozen=True)
class OnchainEvidence:
    """Structured answer from the blockchain-activity query."""
    found: bool
    summary: str = ""


class OnchainActivityQuery(ABC):
    """Natural-language blockchain activity query, structured verdict out."""

    @abstractmethod
    async def query(self, prompt: str, *, user_address: str = "",
                    window_seconds: float = 0.0) -> OnchainEvidence:
        ...


class SocialActivityQuery(ABC):
    """Social-activity index (e.g. synced tweets/likes/replies)."""

    @abstractmethod
    async def has_recent_activity(self, user_address: str, hours: int) -> bool:
        ...


def build_onchain_prompt(user_address: str, window_seconds: float) -> str:
    return (
        f"Check for ALL token transfers (both received and sent) for wallet address "
        f"{user_address} in the last {int(math.ceil(window_seconds))} seconds. "
        f"Include both ERC-20 tokens and native transfers."
    )


def window_hours(window_seconds: float) -> int:
    """Social index is queried in whole hours, rounded up."""
    return max(1, math.ceil(window_seconds / 3600))


# ============================================================
# ORACLE
# ============================================================

class ActivityOracle:
    """
    Usage:
        oracle = ActivityOracle(onchain_query, social_query)
        result = await oracle.check(user, window_seconds=86400)
        if result.found: ...
    """

    def __init__(
        self,
        onchain: OnchainActivityQuery,
        social: SocialActivityQuery,
        failure_policy: OracleFailurePolicy = OracleFailurePolicy.FAIL_DEADLY,
        deadline_seconds: float = SWITCH_RULES.ORACLE_DEADLINE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._onchain = onchain
        self._social = social
        self.failure_policy = failure_policy
        self.deadline_seconds = deadline_seconds
        self._clock = clock

        self._checks: int = 0
        self._source_failures: int = 0
        self._unavailable: int = 0

    def deadline_for(self, window_seconds: float) -> float:
        return min(self.deadline_seconds, window_seconds * SWITCH_RULES.ORACLE_DEADLINE_RATIO)

    @property
    def _failure_value(self) -> bool:
        return self.failure_policy is OracleFailurePolicy.FAIL_SAFE

    async def check(self, user_address: str, window_seconds: float) -> ActivityResult:
        self._checks += 1
        deadline = self.deadline_for(window_seconds)
        prompt = build_onchain_prompt(user_address, window_seconds)
        hours = window_hours(window_seconds)

        onchain_res, social_res = await asyncio.gather(
            asyncio.wait_for(
                self._onchain.query(prompt, user_address=user_address, window_seconds=window_seconds),
                timeout=deadline,
            ),
            asyncio.wait_for(self._social.has_recent_activity(user_address, hours), timeout=deadline),
            return_exceptions=True,
        )

        errors = []
        summary = ""

        if isinstance(onchain_res, BaseException):
            errors.append(f"onchain: {_describe(onchain_res)}")
            onchain_found = self._failure_value
        else:
            onchain_found = bool(onchain_res.found)
            summary = onchain_res.summary

        if isinstance(social_res, BaseException):
            errors.append(f"social: {_describe(social_res)}")
            social_found = self._failure_value
        else:
            social_found = bool(social_res)

        if errors:
            self._source_failures += len(errors)
            for err in errors:
                logger.warning(
                    f"Activity source failed for {user_address} ({err}), "
                    f"resolved as {'activity' if self._failure_value else 'no activity'} "
                    f"[{self.failure_policy.value}]"
                )
        if len(errors) == 2:
            self._unavailable += 1
            logger.error(f"{OracleUnavailableError.__name__}: no activity source answered for {user_address}")

        result = ActivityResult(
            found=onchain_found or social_found,
            evidence=ActivityEvidence(onchain=onchain_found, social=social_found),
            timestamp=self._clock(),
            errors=tuple(errors),
            summary=summary,
        )
        logger.info(
            f"Activity check {user_address}: found={result.found} "
            f"(onchain={'yes' if onchain_found else 'no'}, social={'yes' if social_found else 'no'})"
        )
        return result

    def unavailable_result(self, reason: str) -> ActivityResult:
        """Result used when the oracle itself could not run."""
        self._unavailable += 1
        value = self._failure_value
        return ActivityResult(
            found=value,
            evidence=ActivityEvidence(onchain=value, social=value),
            timestamp=self._clock(),
            errors=(f"oracle: {reason}",),
        )

    def get_status(self) -> dict:
        return {
            "checks": self._checks,
            "source_failures": self._source_failures,
            "unavailable": self._unavailable,
            "failure_policy": self.failure_policy.value,
            "deadline_seconds": self.deadline_seconds,
        }


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timed out"
    return f"{type(exc).__name__}: {exc}"
