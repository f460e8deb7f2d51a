"""Unit tests for conviction staking."""

import logging

logger = logging.getLogger(__name__)
import threading

import pytest

from shadowgov.errors.exceptions import (
    ConflictError,
    ExternalServiceError,
    InsufficientFundsError,
    NotFoundError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from shadowgov.governance.core import (
    IdentityMode,
    PollKind,
    PollOutcome,
    PollStatus,
    QuorumConfig,
    QuorumModel,
    StakePosition,
    StakeStatus,
    VoteChoice,
)
from shadowgov.governance.staking import compute_payouts


def position(stake_id, predicted, amount):
    return StakePosition(
        stake_id=stake_id,
        poll_id="poll",
        user_id=stake_id,
        identity_mode=IdentityMode.TRUE_SELF,
        predicted_outcome=predicted,
        amount=amount,
    )


class TestComputePayouts:
    """Test the pro-rata split."""

    def test_split_with_fee_and_dust(self):
        positions = [
            position("a", PollOutcome.PASSED, 100),
            position("b", PollOutcome.PASSED, 300),
            position("c", PollOutcome.FAILED, 200),
        ]
        payouts, fee = compute_payouts(positions, PollOutcome.PASSED, 0.005)

        assert payouts == {"a": 149, "b": 449}
        assert fee == 2
        assert sum(payouts.values()) + fee == 600

    def test_no_losers_returns_stakes(self):
        positions = [position("a", PollOutcome.FAILED, 40), position("b", PollOutcome.FAILED, 60)]
        payouts, fee = compute_payouts(positions, PollOutcome.FAILED, 0.005)

        assert payouts == {"a": 40, "b": 60}
        assert fee == 0

    def test_fee_rounds_up(self):
        positions = [position("a", PollOutcome.PASSED, 10), position("b", PollOutcome.FAILED, 10)]
        payouts, fee = compute_payouts(positions, PollOutcome.PASSED, 0.005)

        assert fee == 1
        assert payouts == {"a": 19}


@pytest.fixture
def poll(engine, population):
    return engine.create_poll(
        kind=PollKind.GENERAL, title="Stake on the outcome", creator_id=population[0]
    )


@pytest.fixture
def funded(economy, population):
    for user in population:
        economy.fund(user, 1000)
        economy.fund(user, 1000, IdentityMode.SHADOW)
    return population


class TestStake:
    """Test placing stakes."""

    def test_stake_escrows(self, engine, poll, funded, economy):
        stake = engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)

        assert stake.status == StakeStatus.ACTIVE
        assert economy.balance(funded[1]) == 900
        assert economy.escrowed[stake.stake_id] == 100
        assert engine.list_stakes(poll.poll_id) == [stake]

    @pytest.mark.parametrize("amount", [9, 0, -5, 10.5, True])
    def test_invalid_amounts(self, engine, poll, funded, amount):
        with pytest.raises(ValidationError):
            engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, amount)

    def test_cannot_predict_no_quorum(self, engine, poll, funded):
        with pytest.raises(ValidationError):
            engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, "no_quorum", 100)

    def test_unverified(self, engine, poll, economy):
        economy.fund("stranger", 1000)
        with pytest.raises(UnauthorizedError):
            engine.stake(poll.poll_id, "stranger", IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)

    def test_unknown_poll(self, engine, funded):
        with pytest.raises(NotFoundError):
            engine.stake("poll_missing", funded[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)

    def test_closed_poll(self, engine, poll, funded, clock):
        clock.now = poll.closes_at
        with pytest.raises(StateError):
            engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)

    def test_one_stake_per_identity(self, engine, poll, funded, economy):
        engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)

        with pytest.raises(ConflictError):
            engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.FAILED, 100)
        engine.stake(poll.poll_id, funded[1], IdentityMode.SHADOW, PollOutcome.FAILED, 100)
        assert economy.balance(funded[1]) == 900

    def test_insufficient_funds_leaves_no_position(self, engine, poll, economy, population):
        economy.fund(population[1], 50)

        with pytest.raises(InsufficientFundsError):
            engine.stake(poll.poll_id, population[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)
        assert engine.list_stakes(poll.poll_id) == []
        assert economy.balance(population[1]) == 50

    @pytest.fixture
    def late_escrow(self, economy, monkeypatch):
        """Hold escrows until released and signal every release."""
        gate = threading.Event()
        released = threading.Event()
        escrow, release = economy.escrow, economy.release

        def held_escrow(*args):
            gate.wait(5)
            escrow(*args)

        def signalling_release(*args):
            release(*args)
            released.set()

        monkeypatch.setattr(economy, "escrow", held_escrow)
        monkeypatch.setattr(economy, "release", signalling_release)
        return gate, released

    def test_escrow_landing_after_timeout_is_released(
        self, engine, poll, economy, population, late_escrow
    ):
        gate, released = late_escrow
        economy.fund(population[1], 100)
        engine.gateway.timeout = 0.2

        with pytest.raises(ExternalServiceError):
            engine.stake(poll.poll_id, population[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 50)
        gate.set()

        assert released.wait(timeout=5)
        assert economy.balance(population[1]) == 100
        assert engine.list_stakes(poll.poll_id) == []


class TestSettlement:
    """Test settlement at resolution."""

    def vote_and_close(self, engine, poll, voters, choice, clock):
        for voter in voters:
            engine.cast_vote(poll.poll_id, voter, IdentityMode.TRUE_SELF, choice)
        clock.now = poll.closes_at
        return engine.close_poll(poll.poll_id)

    def test_winner_takes_losing_pool(self, engine, poll, funded, economy, clock):
        win = engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)
        lose = engine.stake(poll.poll_id, funded[2], IdentityMode.SHADOW, PollOutcome.FAILED, 100)

        resolved = self.vote_and_close(engine, poll, funded[3:6], VoteChoice.YES, clock)

        assert resolved.outcome == PollOutcome.PASSED
        stakes = {s.stake_id: s for s in engine.list_stakes(poll.poll_id)}
        assert stakes[win.stake_id].status == StakeStatus.WON
        assert stakes[win.stake_id].payout == 199
        assert stakes[lose.stake_id].status == StakeStatus.LOST
        assert economy.balance(funded[1]) == 1099
        assert economy.balance(funded[2], IdentityMode.SHADOW) == 900
        assert economy.total_burned == 1

    def test_double_close_pays_once(self, engine, poll, funded, economy, clock):
        engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)
        engine.stake(poll.poll_id, funded[2], IdentityMode.TRUE_SELF, PollOutcome.FAILED, 100)
        self.vote_and_close(engine, poll, funded[3:6], VoteChoice.YES, clock)
        releases = len(economy.releases)

        again = engine.close_poll(poll.poll_id)

        assert again.status == PollStatus.RESOLVED
        assert len(economy.releases) == releases
        assert economy.total_burned == 1

    def test_no_winners_refunds(self, engine, poll, funded, economy, clock):
        engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.FAILED, 100)
        engine.stake(poll.poll_id, funded[2], IdentityMode.TRUE_SELF, PollOutcome.FAILED, 50)

        self.vote_and_close(engine, poll, funded[3:6], VoteChoice.YES, clock)

        assert economy.balance(funded[1]) == 1000
        assert economy.balance(funded[2]) == 1000
        assert {s.status for s in engine.list_stakes(poll.poll_id)} == {StakeStatus.REFUNDED}
        assert economy.total_burned == 0

    def test_no_quorum_refunds(self, engine, funded, economy, clock):
        poll = engine.create_poll(
            kind=PollKind.GENERAL,
            title="Unpopular question",
            creator_id=funded[0],
            quorum=QuorumConfig(QuorumModel.ABSOLUTE, 100.0),
        )
        engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)
        engine.stake(poll.poll_id, funded[2], IdentityMode.TRUE_SELF, PollOutcome.FAILED, 100)

        resolved = self.vote_and_close(engine, poll, funded[3:4], VoteChoice.YES, clock)

        assert resolved.outcome == PollOutcome.NO_QUORUM
        assert economy.balance(funded[1]) == 1000
        assert economy.balance(funded[2]) == 1000

    def test_withdraw_refunds(self, engine, poll, funded, economy):
        engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)

        withdrawn = engine.withdraw_poll(poll.poll_id, funded[0])

        assert withdrawn.status == PollStatus.WITHDRAWN
        assert economy.balance(funded[1]) == 1000
        assert engine.list_stakes(poll.poll_id)[0].status == StakeStatus.REFUNDED

    def test_release_retry_is_idempotent(self, engine, poll, funded, economy, clock):
        engine.stake(poll.poll_id, funded[1], IdentityMode.TRUE_SELF, PollOutcome.PASSED, 100)
        self.vote_and_close(engine, poll, funded[3:6], VoteChoice.YES, clock)
        stake = engine.list_stakes(poll.poll_id)[0]

        economy.release(funded[1], IdentityMode.TRUE_SELF, stake.payout, stake.stake_id)

        assert economy.balance(funded[1]) == 1000
