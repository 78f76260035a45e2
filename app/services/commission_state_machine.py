"""
Commission Event State Machine

Every commission event status change goes through this module.

    PENDING ──approve──> APPROVED ──pay──> PAID
       │                    │
       └──── clawback ──────┴──> CLAWED_BACK

PAID and CLAWED_BACK are terminal. A PAID event is offset by inserting a
reversing entry, never by changing its status.
"""

from typing import List, Dict, Optional
from datetime import datetime

from app.core.datetime_utils import utcnow
from app.core.exceptions import InvalidStatusTransitionError
from app.models.commission import CommissionEventStatus


# =============================================================================
# TRANSITION RULES
# =============================================================================

PENDING = CommissionEventStatus.PENDING.value
APPROVED = CommissionEventStatus.APPROVED.value
PAID = CommissionEventStatus.PAID.value
CLAWED_BACK = CommissionEventStatus.CLAWED_BACK.value

# current_status -> [allowed next statuses]
COMMISSION_TRANSITIONS: Dict[str, List[str]] = {
    PENDING: [
        APPROVED,       # Hold period elapsed, not disputed
        CLAWED_BACK,    # Refunded inside the hold period
    ],
    APPROVED: [
        PAID,           # Included in a payout run
        CLAWED_BACK,    # Refunded before payout
    ],
    PAID: [],           # Terminal - offset with a reversing entry
    CLAWED_BACK: [],    # Terminal
}

TRANSITION_ACTIONS: Dict[tuple, str] = {
    (PENDING, APPROVED): "Approve",
    (PENDING, CLAWED_BACK): "Claw Back",
    (APPROVED, PAID): "Mark Paid",
    (APPROVED, CLAWED_BACK): "Claw Back",
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_allowed_transitions(current_status: str) -> List[str]:
    return COMMISSION_TRANSITIONS.get(current_status, [])


def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in get_allowed_transitions(current_status)


def get_transition_action(current_status: str, new_status: str) -> str:
    return TRANSITION_ACTIONS.get((current_status, new_status), f"{current_status} -> {new_status}")


def validate_transition(current_status: str, new_status: str) -> None:
    """Raise InvalidStatusTransitionError if the transition is not allowed."""
    if not can_transition(current_status, new_status):
        raise InvalidStatusTransitionError(
            current_status, new_status, get_allowed_transitions(current_status)
        )


def can_claw_back(status: str) -> bool:
    return status in (PENDING, APPROVED)


def is_terminal(status: str) -> bool:
    return not get_allowed_transitions(status)


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

def transition_event(event, new_status: str, reason: Optional[str] = None,
                     at: Optional[datetime] = None, payout_reference: Optional[str] = None) -> None:
    """
    Move a CommissionEvent to a new status and stamp the matching timestamp.

    Amount fields are never touched here.

    Raises:
        InvalidStatusTransitionError: If the transition is not allowed
    """
    validate_transition(event.status, new_status)

    event.status = new_status
    now = at or utcnow()

    if new_status == APPROVED:
        event.approved_at = now

    elif new_status == PAID:
        event.paid_at = now
        event.payout_reference = payout_reference

    elif new_status == CLAWED_BACK:
        event.clawed_back_at = now
        event.clawback_reason = reason
