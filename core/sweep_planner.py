"""
Sweep Planner - "no activity" -> ordered, unsigned transaction bundle

For every non-zero balance of the user on the configured chains:
  1. Already the target asset on the target chain -> skipped
  2. Ask the quote collaborator for source -> target (recipient = beneficiary,
     sender = user). No route / bad quote -> failed, continue with next token
  3. ERC-20 (not on the gas-token allow-list) -> approve(spender, balance)
     intent, placed BEFORE the swap/bridge intent it enables
  4. Append the quote's transaction intent

Core principle: the planner PREPARES. It never signs, never submits, never
marks anything executed. One unroutable token never aborts the plan; the only
fatal case is not being able to enumerate balances at all.

Tokens are processed sequentially so approve -> swap ordering is preserved.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from .chain import (
    DEFAULT_APPROVAL_ADDRESS,
    chain_name,
    encode_approve,
    is_gas_token,
    is_valid_address,
    normalize_address,
)
from .errors import CollaboratorError, NoRouteError, PartialSweepError, SweepPlanningError
from .models import FailedToken, IntentKind, Quote, SweepPlan, TokenBalance, TransactionIntent

logger = logging.getLogger("deadhand.sweep_planner")


# ============================================================
# COLLABORATOR CONTRACTS
# ============================================================

class BalanceLookup(ABC):
    """Enumerates a wallet's token holdings across chains."""

    @abstractmethod
    async def list_balances(self, user_address: str, chain_ids: Iterable[int]) -> list[TokenBalance]:
        ...


class QuoteProvider(ABC):
    """Bridge/swap aggregator. Raises NoRouteError when it cannot route."""

    @abstractmethod
    async def quote(
        self,
        source_token: str,
        source_chain: int,
        dest_token: str,
        dest_chain: int,
        amount: int,
        sender: str,
        recipient: str,
    ) -> Quote:
        ...


# ============================================================
# PLANNER
# ============================================================

class SweepPlanner:
    """
    Usage:
        planner = SweepPlanner(balances, quotes, chain_ids=(137, 42161))
        plan = await planner.plan(user, beneficiary, USDC_ARB, 42161)
        # hand plan to the external signer; the planner is done
    """

    def __init__(self, balances: BalanceLookup, quotes: QuoteProvider, chain_ids: Iterable[int]):
        self._balances = balances
        self._quotes = quotes
        self.chain_ids = tuple(chain_ids)

        self._plans_built: int = 0
        self._tokens_failed: int = 0

    async def plan(
        self,
        user_address: str,
        beneficiary_address: str,
        target_asset: str,
        target_chain: int,
    ) -> SweepPlan:
        user = normalize_address(user_address)
        beneficiary = normalize_address(beneficiary_address)
        target = normalize_address(target_asset)

        try:
            holdings = await self._balances.list_balances(user, self.chain_ids)
        except Exception as e:
            logger.error(f"Balance enumeration failed for {user}: {e}")
            raise SweepPlanningError(f"cannot enumerate balances for {user}: {e}") from e

        logger.info(
            f"Planning sweep for {user}: {len(holdings)} holdings -> "
            f"{target[:10]}... on {chain_name(target_chain)}, beneficiary {beneficiary}"
        )

        intents: list[TransactionIntent] = []
        skipped: list[TokenBalance] = []
        failed: list[FailedToken] = []

        for holding in holdings:
            if holding.balance <= 0:
                continue

            token = normalize_address(holding.token)

            if holding.chain_id not in self.chain_ids:
                failed.append(FailedToken(token, holding.chain_id, "unsupported chain"))
                continue

            if token == target and holding.chain_id == target_chain:
                logger.debug(f"{holding.symbol or token} on {chain_name(holding.chain_id)} already target, skipping")
                skipped.append(holding)
                continue

            try:
                token_intents = await self._plan_token(holding, token, user, beneficiary, target, target_chain)
            except PartialSweepError as e:
                logger.warning(f"Sweep: {holding.symbol or token} not planned: {e.reason}")
                failed.append(FailedToken(e.token, e.chain_id, e.reason))
                continue

            intents.extend(token_intents)

        plan = SweepPlan(
            user_address=user,
            beneficiary_address=beneficiary,
            target_asset=target,
            target_chain=target_chain,
            intents=tuple(intents),
            skipped=tuple(skipped),
            failed=tuple(failed),
        )

        self._plans_built += 1
        self._tokens_failed += len(failed)
        if plan.is_empty:
            logger.info(f"Sweep plan for {user} is empty ({len(skipped)} skipped, {len(failed)} failed)")
        else:
            logger.info(
                f"Sweep plan for {user}: {len(intents)} intents, "
                f"{len(skipped)} skipped, {len(failed)} failed"
            )
        return plan

    async def _plan_token(
        self,
        holding: TokenBalance,
        token: str,
        user: str,
        beneficiary: str,
        target: str,
        target_chain: int,
    ) -> list[TransactionIntent]:
        """approve (if ERC-20) + swap/bridge for one holding. Raises PartialSweepError."""
        chain_id = holding.chain_id

        try:
            quote = await self._quotes.quote(
                source_token=token,
                source_chain=chain_id,
                dest_token=target,
                dest_chain=target_chain,
                amount=holding.balance,
                sender=user,
                recipient=beneficiary,
            )
        except NoRouteError as e:
            raise PartialSweepError(token, chain_id, f"no route: {e}") from e
        except CollaboratorError as e:
            raise PartialSweepError(token, chain_id, f"quote failed: {e}") from e
        except Exception as e:
            raise PartialSweepError(token, chain_id, f"quote error: {type(e).__name__}: {e}") from e

        if not quote.to or not is_valid_address(quote.to):
            raise PartialSweepError(token, chain_id, "quote has no transaction target")
        if not quote.data or not quote.data.startswith("0x"):
            raise PartialSweepError(token, chain_id, "quote has no calldata")

        intents = []
        if not is_gas_token(token):
            spender = quote.approval_address or DEFAULT_APPROVAL_ADDRESS
            try:
                approve_data = encode_approve(spender, holding.balance)
            except ValueError as e:
                raise PartialSweepError(token, chain_id, f"cannot encode approval: {e}") from e
            intents.append(TransactionIntent(
                chain_id=chain_id,
                to=token,
                value=0,
                data=approve_data,
                kind=IntentKind.APPROVE,
                token=token,
            ))

        intents.append(TransactionIntent(
            chain_id=quote.chain_id or chain_id,
            to=quote.to,
            value=quote.value,
            data=quote.data,
            kind=IntentKind.SWAP,
            token=token,
        ))
        return intents

    def get_status(self) -> dict:
        return {
            "chains": list(self.chain_ids),
            "plans_built": self._plans_built,
            "tokens_failed": self._tokens_failed,
        }
