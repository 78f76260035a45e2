from datetime import datetime, timezone

import pytest

from app.core.exceptions import InvalidStatusTransitionError
from app.models.commission import CommissionEvent
from app.services import commission_state_machine as lifecycle


def test_allowed_transitions():
    assert lifecycle.can_transition("PENDING", "APPROVED")
    assert lifecycle.can_transition("PENDING", "CLAWED_BACK")
    assert lifecycle.can_transition("APPROVED", "PAID")
    assert lifecycle.can_transition("APPROVED", "CLAWED_BACK")
    assert not lifecycle.can_transition("PENDING", "PAID")
    assert not lifecycle.can_transition("PAID", "CLAWED_BACK")


def test_terminal_statuses():
    assert lifecycle.is_terminal("PAID")
    assert lifecycle.is_terminal("CLAWED_BACK")
    assert not lifecycle.is_terminal("PENDING")


def test_transition_stamps_timestamps():
    at = datetime(2026, 3, 1, tzinfo=timezone.utc)
    event = CommissionEvent(status="PENDING")

    lifecycle.transition_event(event, "APPROVED", at=at)
    assert event.status == "APPROVED"
    assert event.approved_at == at

    lifecycle.transition_event(event, "PAID", at=at, payout_reference="PAYOUT-7")
    assert event.paid_at == at
    assert event.payout_reference == "PAYOUT-7"


def test_clawback_records_reason():
    event = CommissionEvent(status="APPROVED")
    lifecycle.transition_event(event, "CLAWED_BACK", reason="refund")
    assert event.clawback_reason == "refund"
    assert event.clawed_back_at is not None


def test_invalid_transition_names_allowed_targets():
    event = CommissionEvent(status="CLAWED_BACK")
    with pytest.raises(InvalidStatusTransitionError) as exc_info:
        lifecycle.transition_event(event, "APPROVED")
    assert exc_info.value.allowed == []
    assert event.status == "CLAWED_BACK"
