import pytest

from app.domain.booking_state_machine import (
    PAYABLE_STATES,
    TERMINAL_STATES,
    BookingStateTransitionError,
    BookingStatus,
    can_transition,
    validate_transition,
)
from app.domain.payment_status import PaymentStatus, payment_can_move


class TestBookingTransitions:
    @pytest.mark.parametrize("target", ["CONFIRMED", "CANCELLED", "FAILED", "PAYMENT_FAILED"])
    def test_pending_moves(self, target):
        assert can_transition("PENDING", target)

    @pytest.mark.parametrize("target", ["CANCELLED", "COMPLETED", "PAYMENT_FAILED", "REFUNDED"])
    def test_confirmed_moves(self, target):
        assert can_transition("CONFIRMED", target)

    def test_confirmed_cannot_go_back_to_pending(self):
        assert not can_transition("CONFIRMED", "PENDING")

    def test_failed_payment_can_still_be_settled(self):
        assert can_transition("PAYMENT_FAILED", "CONFIRMED")

    @pytest.mark.parametrize("state", ["FAILED", "COMPLETED", "CANCELLED", "REFUNDED"])
    def test_terminal_states_have_no_exit(self, state):
        assert BookingStatus(state) in TERMINAL_STATES
        for target in BookingStatus:
            assert not can_transition(state, target.value)

    def test_unknown_status_is_not_a_transition(self):
        assert not can_transition("PENDING", "SHIPPED")
        assert not can_transition("LIMBO", "CONFIRMED")

    def test_validate_transition_raises_with_states(self):
        with pytest.raises(BookingStateTransitionError) as exc:
            validate_transition("CANCELLED", "CONFIRMED")
        assert exc.value.current == "CANCELLED"
        assert exc.value.target == "CONFIRMED"

    def test_payable_states(self):
        assert PAYABLE_STATES == {BookingStatus.PENDING, BookingStatus.PAYMENT_FAILED}


class TestPaymentTransitions:
    def test_pending_settles_either_way(self):
        assert payment_can_move("PENDING", "COMPLETED")
        assert payment_can_move("PENDING", "FAILED")

    def test_only_refund_leaves_completed(self):
        assert payment_can_move("COMPLETED", "REFUNDED")
        assert not payment_can_move("COMPLETED", "FAILED")
        assert not payment_can_move("COMPLETED", "PENDING")

    def test_failed_is_final(self):
        for target in PaymentStatus:
            assert not payment_can_move("FAILED", target.value)
