"""
Unit tests for the batch submission state machine.
"""

import pytest

from tiss_claims.core.state_machine import BATCH_TRANSITIONS, can_transition
from tiss_claims.domain import BatchStatus
from tiss_claims.errors import InvalidStateError


class TestTransitionTable:
    """Tests for the allowed transition set."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (BatchStatus.DRAFT, BatchStatus.VALID),
            (BatchStatus.DRAFT, BatchStatus.SENT),
            (BatchStatus.VALID, BatchStatus.SENT),
            (BatchStatus.SENT, BatchStatus.CLOSED),
        ],
    )
    def test_forward_transitions_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (BatchStatus.VALID, BatchStatus.DRAFT),
            (BatchStatus.SENT, BatchStatus.VALID),
            (BatchStatus.SENT, BatchStatus.SENT),
            (BatchStatus.CLOSED, BatchStatus.SENT),
            (BatchStatus.DRAFT, BatchStatus.CLOSED),
        ],
    )
    def test_regressions_rejected(self, current, target):
        assert not can_transition(current, target)

    def test_closed_is_terminal(self):
        assert BATCH_TRANSITIONS[BatchStatus.CLOSED] == frozenset()


class TestBatchStateMachine:
    """Tests for conditional transitions against the database."""

    def test_transition_updates_row(self, services, make_batch):
        batch = make_batch()

        with services.repo.begin() as conn:
            moved = services.state_machine.transition(conn, batch, BatchStatus.VALID)

        assert moved.status == BatchStatus.VALID

    def test_illegal_transition_raises(self, services, make_batch):
        batch = make_batch()

        with pytest.raises(InvalidStateError) as exc_info:
            with services.repo.begin() as conn:
                services.state_machine.transition(conn, batch, BatchStatus.CLOSED)

        assert exc_info.value.current_state == "DRAFT"
        assert exc_info.value.target_state == "CLOSED"

    def test_stale_read_loses(self, services, make_batch):
        """A transition based on an outdated read does not overwrite newer state."""
        batch = make_batch()
        with services.repo.begin() as conn:
            services.state_machine.transition(conn, batch, BatchStatus.SENT)

        with pytest.raises(InvalidStateError) as exc_info:
            with services.repo.begin() as conn:
                services.state_machine.transition(conn, batch, BatchStatus.VALID)

        assert exc_info.value.current_state == "SENT"

    def test_ensure_editable(self, services, make_batch):
        batch = make_batch()
        services.state_machine.ensure_editable(batch)

        with services.repo.begin() as conn:
            valid = services.state_machine.transition(conn, batch, BatchStatus.VALID)

        with pytest.raises(InvalidStateError):
            services.state_machine.ensure_editable(valid)
