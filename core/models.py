"""
Switch Models - the entities one arm cycle passes around.

Delegation          user config, owned by the delegation store
ScheduledCheck      one outstanding timer (owned by the job registry)
ActivityResult      the oracle's decision (immutable, ephemeral)
TransactionIntent   one unsigned call in a sweep bundle
SweepPlan           the ordered bundle handed to the external signer
"""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional


class SwitchState(str, Enum):
    ARMED = "armed"
    CHECKING = "checking"
    TRIGGERED = "triggered"


class EventType(str, Enum):
    CHECK_STARTED = "check_started"
    TIMER_RESET = "timer_reset"
    SWITCH_TRIGGERED = "switch_triggered"


class IntentKind(str, Enum):
    APPROVE = "approve"
    SWAP = "swap"            # swap or bridge call returned by the quote


@dataclass
class Delegation:
    """A user's switch configuration. Addresses are stored lowercase."""
    user_address: str
    beneficiary_address: str
    execution_account: str
    timeout_seconds: float
    active: bool = True
    ens_name: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Delegation":
        return cls(
            user_address=data["user_address"],
            beneficiary_address=data["beneficiary_address"],
            execution_account=data.get("execution_account", ""),
            timeout_seconds=data["timeout_seconds"],
            active=data.get("active", True),
            ens_name=data.get("ens_name"),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
        )


@dataclass
class ScheduledCheck:
    """One timer. consumed flips exactly once (fire or cancel)."""
    id: str
    user_address: str
    due_at: float
    timeout_seconds: float
    consumed: bool = False
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ActivityEvidence:
    onchain: bool
    social: bool


@dataclass(frozen=True)
class ActivityResult:
    found: bool
    evidence: ActivityEvidence
    timestamp: float
    errors: tuple[str, ...] = ()
    summary: str = ""


@dataclass(frozen=True)
class TokenBalance:
    """Raw holding as reported by the balance collaborator."""
    token: str                 # contract address, lowercase
    chain_id: int
    balance: int               # raw integer amount (token decimals applied on-chain)
    symbol: str = ""
    decimals: int = 18


@dataclass(frozen=True)
class Quote:
    """Ready-to-submit transaction returned by the bridge/swap collaborator."""
    to: str
    value: int
    data: str
    approval_address: str = ""
    chain_id: int = 0
    to_amount: str = ""
    tool: str = ""


@dataclass(frozen=True)
class TransactionIntent:
    chain_id: int
    to: str
    value: int
    data: str
    kind: IntentKind = IntentKind.SWAP
    token: str = ""


@dataclass(frozen=True)
class FailedToken:
    token: str
    chain_id: int
    reason: str


@dataclass(frozen=True)
class SweepPlan:
    """
    Preparation artifact. The engine builds it once per trigger and never
    executes it. An empty intents list is a valid outcome.
    """
    user_address: str
    beneficiary_address: str
    target_asset: str
    target_chain: int
    intents: tuple[TransactionIntent, ...] = ()
    skipped: tuple[TokenBalance, ...] = ()
    failed: tuple[FailedToken, ...] = ()
    created_at: float = field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        return not self.intents

    def to_dict(self) -> dict:
        """JSON-safe form. Integers that can exceed 2**53 are sent as strings."""
        return {
            "user_address": self.user_address,
            "beneficiary_address": self.beneficiary_address,
            "target_asset": self.target_asset,
            "target_chain": self.target_chain,
            "intents": [
                {
                    "chain_id": i.chain_id,
                    "to": i.to,
                    "value": str(i.value),
                    "data": i.data,
                    "kind": i.kind.value,
                    "token": i.token,
                }
                for i in self.intents
            ],
            "skipped": [
                {"token": s.token, "chain_id": s.chain_id, "balance": str(s.balance), "symbol": s.symbol}
                for s in self.skipped
            ],
            "failed": [asdict(f) for f in self.failed],
            "created_at": self.created_at,
        }
