"""
Unit tests for the ride status sets and forward-transition check.
"""
import pytest

from rider_gateway.schemas.schemas import RideStatusEnum as S
from rider_gateway.services.status import (
    can_cancel, can_finish, can_report, is_biddable, is_forward_transition,
)


class TestForwardTransitions:
    def test_pending_to_searching(self):
        assert is_forward_transition(S.pending, S.searching_driver)

    def test_searching_to_accepted(self):
        assert is_forward_transition(S.searching_driver, S.accepted)

    def test_assigned_and_accepted_are_peers(self):
        assert is_forward_transition(S.driver_assigned, S.accepted)
        assert is_forward_transition(S.accepted, S.driver_assigned)

    def test_arriving_to_in_progress(self):
        assert is_forward_transition(S.driver_arriving, S.in_progress)

    def test_completed_only_from_finishable(self):
        assert is_forward_transition(S.in_progress, S.completed)
        assert is_forward_transition(S.accepted, S.completed)
        assert not is_forward_transition(S.driver_arrived, S.completed)

    def test_cancel_from_any_open_status(self):
        for status in (S.pending, S.searching_driver, S.accepted, S.in_progress):
            assert is_forward_transition(status, S.cancelled)

    def test_completed_is_terminal(self):
        assert not is_forward_transition(S.completed, S.in_progress)
        assert not is_forward_transition(S.completed, S.cancelled)

    def test_cancelled_is_terminal(self):
        assert not is_forward_transition(S.cancelled, S.pending)

    def test_invalid_backward_skip(self):
        assert not is_forward_transition(S.in_progress, S.searching_driver)


class TestActionAvailability:
    @pytest.mark.parametrize("status", [S.pending, S.searching_driver, S.driver_assigned, S.accepted])
    def test_cancellable(self, status):
        assert can_cancel(status)

    @pytest.mark.parametrize(
        "status", [S.driver_arriving, S.driver_arrived, S.in_progress, S.completed, S.cancelled]
    )
    def test_not_cancellable(self, status):
        assert not can_cancel(status)

    @pytest.mark.parametrize(
        "status", [S.accepted, S.driver_assigned, S.driver_arriving, S.driver_arrived, S.in_progress]
    )
    def test_reportable(self, status):
        assert can_report(status)

    @pytest.mark.parametrize("status", [S.pending, S.searching_driver, S.completed, S.cancelled])
    def test_not_reportable(self, status):
        assert not can_report(status)

    def test_finish_only_when_accepted_or_in_progress(self):
        assert {s for s in S if can_finish(s)} == {S.accepted, S.in_progress}

    def test_bids_only_while_searching(self):
        assert {s for s in S if is_biddable(s)} == {S.pending, S.searching_driver}
