"""
Delegation Store - user switch configurations

The engine reads delegations and only ever flips `active`. Two stores:
  InMemoryDelegationStore  tests, ephemeral deployments
  JsonDelegationStore      one JSON file, atomic writes, loaded at start

All addresses are keyed lowercase.
"""

import os
import json
import math
import time
import asyncio
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .chain import is_valid_address, normalize_address
from .errors import ValidationError
from .models import Delegation
from .rules import SWITCH_RULES

logger = logging.getLogger("deadhand.delegations")


def validate_delegation(delegation: Delegation) -> Delegation:
    """Check invariants and return a copy with normalised addresses."""
    if not is_valid_address(delegation.user_address):
        raise ValidationError(f"invalid user address: {delegation.user_address!r}")
    if not is_valid_address(delegation.beneficiary_address):
        raise ValidationError(f"invalid beneficiary address: {delegation.beneficiary_address!r}")
    if delegation.execution_account and not is_valid_address(delegation.execution_account):
        raise ValidationError(f"invalid execution account: {delegation.execution_account!r}")

    user = normalize_address(delegation.user_address)
    beneficiary = normalize_address(delegation.beneficiary_address)
    if user == beneficiary:
        raise ValidationError("beneficiary must differ from the user")

    timeout = delegation.timeout_seconds
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool):
        raise ValidationError(f"timeout must be a number, got {timeout!r}")
    in_range = SWITCH_RULES.MIN_TIMEOUT_SECONDS < timeout <= SWITCH_RULES.MAX_TIMEOUT_SECONDS
    if not math.isfinite(timeout) or not in_range:
        raise ValidationError(f"timeout out of range: {timeout}")

    return Delegation(
        user_address=user,
        beneficiary_address=beneficiary,
        execution_account=normalize_address(delegation.execution_account),
        timeout_seconds=timeout,
        active=delegation.active,
        ens_name=delegation.ens_name,
        created_at=delegation.created_at,
        updated_at=delegation.updated_at,
    )


class DelegationStore(ABC):

    @abstractmethod
    async def get(self, user_address: str) -> Optional[Delegation]:
        ...

    @abstractmethod
    async def put(self, delegation: Delegation) -> Delegation:
        ...

    @abstractmethod
    async def set_active(self, user_address: str, active: bool) -> bool:
        ...


class InMemoryDelegationStore(DelegationStore):

    def __init__(self):
        self._delegations: dict[str, Delegation] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_address: str) -> Optional[Delegation]:
        return self._delegations.get(normalize_address(user_address))

    async def put(self, delegation: Delegation) -> Delegation:
        clean = validate_delegation(delegation)
        async with self._lock:
            existing = self._delegations.get(clean.user_address)
            if existing:
                clean.created_at = existing.created_at
            clean.updated_at = time.time()
            self._delegations[clean.user_address] = clean
            self._after_write()
        return clean

    async def set_active(self, user_address: str, active: bool) -> bool:
        async with self._lock:
            delegation = self._delegations.get(normalize_address(user_address))
            if delegation is None:
                return False
            if delegation.active != active:
                delegation.active = active
                delegation.updated_at = time.time()
                self._after_write()
        return True

    def all(self) -> list[Delegation]:
        return list(self._delegations.values())

    def _after_write(self):
        pass


class JsonDelegationStore(InMemoryDelegationStore):
    """Delegations persisted to one JSON file (written on every change)."""

    def __init__(self, path: str):
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No delegation file at {self.path}, starting empty")
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.error(f"Failed to load delegations from {self.path}: {e}")
            return

        for raw in data.get("delegations", []):
            try:
                delegation = validate_delegation(Delegation.from_dict(raw))
            except (KeyError, ValidationError) as e:
                logger.warning(f"Skipping invalid delegation {raw.get('user_address')!r}: {e}")
                continue
            self._delegations[delegation.user_address] = delegation
        logger.info(f"Loaded {len(self._delegations)} delegations")

    def _after_write(self):
        data = {"delegations": [d.to_dict() for d in self._delegations.values()]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp", prefix="delegations_"
        )
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, str(self.path))
        except Exception as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            logger.error(f"Failed to save delegations: {e}")
