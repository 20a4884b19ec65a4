"""
Switch Errors - exception taxonomy for the dead-hand engine.

Synchronous errors (raised to the caller of arm/cancel/status):
  ValidationError, AlreadyArmedError, NotFoundError

Contained errors (never escape a check-and-trigger cycle):
  OracleUnavailableError, PartialSweepError, SweepPlanningError

Collaborator errors (raised by adapters, handled by the core):
  CollaboratorError, NoRouteError, CircuitOpenError
"""


class SwitchError(Exception):
    """Base class for every error raised by the switch engine."""
    pass


class ValidationError(SwitchError):
    """Malformed address, non-positive timeout, user == beneficiary."""
    pass


class AlreadyArmedError(SwitchError):
    """A user already has an outstanding check (or one is in progress)."""

    def __init__(self, user_address: str, job_id: str = ""):
        self.user_address = user_address
        self.job_id = job_id
        msg = f"switch already armed for {user_address}"
        if job_id:
            msg += f" (job {job_id})"
        super().__init__(msg)


class NotFoundError(SwitchError):
    """No delegation (or no switch cycle) for this user."""
    pass


class OracleUnavailableError(SwitchError):
    """Every activity source failed. Resolved by the oracle's failure policy."""
    pass


class PartialSweepError(SwitchError):
    """A single token could not be planned. Recorded in SweepPlan.failed."""

    def __init__(self, token: str, chain_id: int, reason: str):
        self.token = token
        self.chain_id = chain_id
        self.reason = reason
        super().__init__(f"{token} on chain {chain_id}: {reason}")


class SweepPlanningError(SwitchError):
    """Balance enumeration could not be attempted at all."""
    pass


class CollaboratorError(SwitchError):
    """An external collaborator call failed (HTTP error, bad payload, timeout)."""
    pass


class NoRouteError(CollaboratorError):
    """The quote collaborator has no route for this token."""
    pass


class CircuitOpenError(CollaboratorError):
    """Too many consecutive failures, calls are short-circuited for a while."""
    pass
