"""Unit tests for the vote ledger."""

import logging

logger = logging.getLogger(__name__)
import pytest

from shadowgov.errors.exceptions import (
    ConflictError,
    NotFoundError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from shadowgov.governance.core import IdentityMode, PollKind, VoteChoice


@pytest.fixture
def poll(engine, population):
    return engine.create_poll(
        kind=PollKind.GENERAL,
        title="Community garden hours",
        creator_id=population[0],
        description="Should the garden open earlier?",
    )


class TestCastVote:
    """Test first ballots."""

    def test_cast_vote(self, engine, poll, population, clock):
        vote = engine.cast_vote(poll.poll_id, population[1], IdentityMode.TRUE_SELF, VoteChoice.YES)

        assert vote.poll_id == poll.poll_id
        assert vote.choice == VoteChoice.YES
        assert vote.change_count == 0
        assert 0 <= vote.section_index < engine.config.section_count
        assert 0.7 <= vote.multiplier <= 1.5
        assert vote.effective_weight == pytest.approx(vote.multiplier)
        assert vote.cast_at == clock.now
        assert clock.now <= vote.displayed_at <= poll.closes_at

    def test_accepts_string_enums(self, engine, poll, population):
        vote = engine.cast_vote(poll.poll_id, population[1], "shadow", "no")

        assert vote.identity_mode == IdentityMode.SHADOW
        assert vote.choice == VoteChoice.NO

    def test_invalid_choice(self, engine, poll, population):
        with pytest.raises(ValidationError):
            engine.cast_vote(poll.poll_id, population[1], "shadow", "maybe")

    def test_both_identities_vote_independently(self, engine, poll, population):
        public = engine.cast_vote(poll.poll_id, population[1], IdentityMode.TRUE_SELF, VoteChoice.NO)
        private = engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)

        assert public.vote_id != private.vote_id
        assert len(engine.votes.list_votes(poll.poll_id)) == 2

    def test_duplicate_vote(self, engine, poll, population):
        engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)

        with pytest.raises(ConflictError):
            engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.NO)

    def test_unverified_voter(self, engine, poll):
        with pytest.raises(UnauthorizedError):
            engine.cast_vote(poll.poll_id, "stranger", IdentityMode.TRUE_SELF, VoteChoice.YES)

    def test_verification_is_per_mode(self, engine, poll, identity):
        identity.verify("half", modes=(IdentityMode.SHADOW,))

        engine.cast_vote(poll.poll_id, "half", IdentityMode.SHADOW, VoteChoice.YES)
        with pytest.raises(UnauthorizedError):
            engine.cast_vote(poll.poll_id, "half", IdentityMode.TRUE_SELF, VoteChoice.YES)

    def test_unknown_poll(self, engine, population):
        with pytest.raises(NotFoundError):
            engine.cast_vote("poll_missing", population[1], IdentityMode.SHADOW, VoteChoice.YES)

    def test_expired_poll(self, engine, poll, population, clock):
        clock.now = poll.closes_at

        with pytest.raises(StateError):
            engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)

    def test_reasoning_length(self, engine, poll, population):
        with pytest.raises(ValidationError):
            engine.cast_vote(
                poll.poll_id,
                population[1],
                IdentityMode.SHADOW,
                VoteChoice.YES,
                reasoning="x" * 2001,
            )

    def test_public_view_hides_voter_and_true_time(self, engine, poll, population):
        vote = engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        public = vote.to_public_dict()

        assert "voter_id" not in public
        assert "cast_at" not in public
        assert public["displayed_at"] == vote.displayed_at

    def test_archive_receives_public_form(self, engine, poll, population, mirror):
        engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        engine.archive.flush(timeout=5)

        votes = mirror.of_type("vote")
        assert len(votes) == 1
        assert "voter_id" not in votes[0]

    def test_audit_event_has_no_voter(self, engine, poll, population):
        vote = engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        events = [e for e in engine.audit.get_poll_events(poll.poll_id) if e.subject_id == vote.vote_id]

        assert len(events) == 1
        assert population[1] not in str(events[0].to_dict())


class TestChangeVote:
    """Test ballot changes."""

    def test_change_keeps_multiplier(self, engine, poll, population):
        first = engine.cast_vote(poll.poll_id, population[1], IdentityMode.TRUE_SELF, VoteChoice.YES)
        changed = engine.change_vote(poll.poll_id, population[1], IdentityMode.TRUE_SELF, VoteChoice.NO)

        assert changed.vote_id == first.vote_id
        assert changed.choice == VoteChoice.NO
        assert changed.multiplier == first.multiplier
        assert changed.section_index == first.section_index
        assert changed.change_count == 1

    def test_change_without_ballot(self, engine, poll, population):
        with pytest.raises(NotFoundError):
            engine.change_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.NO)

    def test_change_limit(self, engine, poll, population):
        voter = population[1]
        engine.cast_vote(poll.poll_id, voter, IdentityMode.SHADOW, VoteChoice.YES)
        choices = [VoteChoice.NO, VoteChoice.YES] * 3

        for choice in choices[:5]:
            engine.change_vote(poll.poll_id, voter, IdentityMode.SHADOW, choice)
        with pytest.raises(StateError):
            engine.change_vote(poll.poll_id, voter, IdentityMode.SHADOW, choices[5])

        vote = engine.get_vote(poll.poll_id, voter, IdentityMode.SHADOW)
        assert vote.change_count == 5

    def test_live_change_limit(self, engine, poll, population, clock):
        engine.parameters.apply("max_vote_changes_per_poll", 1, clock.now)
        voter = population[1]
        engine.cast_vote(poll.poll_id, voter, IdentityMode.SHADOW, VoteChoice.YES)
        engine.change_vote(poll.poll_id, voter, IdentityMode.SHADOW, VoteChoice.NO)

        with pytest.raises(StateError):
            engine.change_vote(poll.poll_id, voter, IdentityMode.SHADOW, VoteChoice.YES)

    def test_history(self, engine, poll, population):
        voter = population[1]
        engine.cast_vote(poll.poll_id, voter, IdentityMode.SHADOW, VoteChoice.YES)
        engine.change_vote(poll.poll_id, voter, IdentityMode.SHADOW, VoteChoice.NO)
        engine.change_vote(poll.poll_id, voter, IdentityMode.SHADOW, VoteChoice.ABSTAIN)

        history = engine.get_vote_history(poll.poll_id, voter, IdentityMode.SHADOW)

        assert [h["version"] for h in history] == [0, 1, 2]
        assert [h["choice"] for h in history] == ["yes", "no", "abstain"]
        assert all("recorded_at" not in h for h in history)

    def test_reasoning_is_kept_when_not_replaced(self, engine, poll, population):
        voter = population[1]
        engine.cast_vote(poll.poll_id, voter, IdentityMode.SHADOW, VoteChoice.YES, reasoning="because")
        changed = engine.change_vote(poll.poll_id, voter, IdentityMode.SHADOW, VoteChoice.NO)

        assert changed.reasoning == "because"

    def test_change_after_close(self, engine, poll, population, clock):
        engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        clock.now = poll.closes_at + 1

        with pytest.raises(StateError):
            engine.change_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.NO)


class TestSectionDraws:
    """Test persistence of section draws."""

    def test_draw_is_stored_on_first_vote(self, engine, poll, population):
        vote = engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        stored = engine.store.get_section_draw(poll.poll_id, population[1], "shadow")

        assert stored["multiplier"] == vote.multiplier
        assert stored["section_index"] == vote.section_index

    def test_stored_draw_wins_over_new_range(self, engine, poll, population, clock):
        voter = population[1]
        engine.store.get_or_create_section_draw(poll.poll_id, voter, "shadow", 3, 0.77, clock.now)

        vote = engine.cast_vote(poll.poll_id, voter, IdentityMode.SHADOW, VoteChoice.YES)

        assert vote.multiplier == 0.77
        assert vote.section_index == 3
