"""
Error taxonomy for the affiliate commission engine.

Configuration problems (no open plan assignment, malformed plan) are not
represented here as raised errors: the engine logs them and records a
zero-amount event. Idempotency conflicts are resolved to the existing row
and never surface either.
"""


class CommissionEngineError(Exception):
    """Base class for every error the engine raises to its callers."""
    pass


# ==================== Data integrity ====================

class AffiliateNotFoundError(CommissionEngineError):
    """Raised when an affiliate id does not exist for the tenant."""
    pass


class PlanNotFoundError(CommissionEngineError):
    """Raised when a commission plan id does not exist for the tenant."""
    pass


class CommissionEventNotFoundError(CommissionEngineError):
    """Raised when a commission event id does not exist."""
    pass


class ReferralCodeNotFoundError(CommissionEngineError):
    """Raised when a referral code is unknown, inactive, or its affiliate is not active."""
    pass


# ==================== Invariant violations ====================

class ClawbackNotPermittedError(CommissionEngineError):
    """Raised when a clawback is requested on a plan with clawback disabled or a non-reversible event."""
    pass


class InvalidStatusTransitionError(CommissionEngineError):
    """Raised when a commission event lifecycle transition is not allowed."""

    def __init__(self, current_status: str, new_status: str, allowed: list[str]):
        self.current_status = current_status
        self.new_status = new_status
        self.allowed = allowed
        super().__init__(
            f"Invalid status transition: {current_status} -> {new_status}. "
            f"Allowed transitions from {current_status}: {allowed or 'none (terminal)'}"
        )


class PlanAssignmentError(CommissionEngineError):
    """Raised when a plan assignment would violate the single-open-assignment rule."""
    pass


class PlanConfigurationError(CommissionEngineError):
    """Raised by plan validation helpers; the engine converts it to a zero commission."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


# ==================== Transient ====================

class TransientDatabaseError(CommissionEngineError):
    """Raised when a serializable unit of work keeps failing; the caller should retry later."""

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message)
