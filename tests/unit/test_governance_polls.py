"""Unit tests for poll creation, withdrawal and resolution."""

import logging

logger = logging.getLogger(__name__)
import pytest

from shadowgov.errors.exceptions import (
    ConstitutionalViolation,
    NotFoundError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from shadowgov.governance.config import SECONDS_PER_DAY
from shadowgov.governance.core import (
    IdentityMode,
    PollKind,
    PollOutcome,
    PollStatus,
    QuorumConfig,
    QuorumModel,
    VoteChoice,
)
from shadowgov.governance.engine import GovernanceEngine
from shadowgov.governance.observability import EventType


class TestCreatePoll:
    """Test poll creation rules per kind."""

    def test_general_defaults(self, engine, population, clock):
        poll = engine.create_poll(kind="general", title="Weekly town hall", creator_id=population[0])

        assert poll.status == PollStatus.OPEN
        assert poll.kind == PollKind.GENERAL
        assert poll.quorum == QuorumConfig(QuorumModel.EITHER, 3.0, 5.0)
        assert not poll.requires_supermajority
        assert not poll.early_close
        assert poll.opens_at == clock.now
        assert poll.closes_at == clock.now + 7 * SECONDS_PER_DAY
        assert engine.get_poll(poll.poll_id) == poll

    def test_parameter_vote_uses_whitelist_rules(self, engine, population, clock):
        poll = engine.create_poll(
            kind=PollKind.PARAMETER_VOTE,
            title="Raise the default quorum",
            creator_id=population[0],
            parameter_name="default_quorum_absolute",
            proposed_value="1500",
        )

        assert poll.requires_supermajority
        assert poll.quorum.absolute_minimum == 2000.0
        assert poll.quorum.percentage_minimum == 10.0
        assert poll.closes_at == clock.now + 14 * SECONDS_PER_DAY
        assert poll.payload.proposed_value == 1500
        assert poll.payload.previous_value == 1000

    def test_parameter_vote_minimum_duration(self, engine, population):
        with pytest.raises(ValidationError):
            engine.create_poll(
                kind=PollKind.PARAMETER_VOTE,
                title="Raise the default quorum",
                creator_id=population[0],
                parameter_name="default_quorum_absolute",
                proposed_value=1500,
                duration_days=7,
            )

    def test_maximum_duration(self, engine, population):
        with pytest.raises(ValidationError):
            engine.create_poll(
                kind=PollKind.GENERAL, title="A very long poll", creator_id=population[0], duration_days=31
            )

    @pytest.mark.parametrize(
        "name,value",
        [("not_whitelisted", 1), ("reward_per_poll_participant", 151), ("reward_per_poll_participant", "lots")],
    )
    def test_invalid_parameter_change(self, engine, population, name, value):
        with pytest.raises(ValidationError):
            engine.create_poll(
                kind=PollKind.PARAMETER_VOTE,
                title="Change something",
                creator_id=population[0],
                parameter_name=name,
                proposed_value=value,
            )

    def test_parameter_vote_needs_name(self, engine, population):
        with pytest.raises(ValidationError):
            engine.create_poll(kind=PollKind.PARAMETER_VOTE, title="Change nothing", creator_id=population[0])

    def test_general_poll_cannot_carry_parameter(self, engine, population):
        with pytest.raises(ValidationError):
            engine.create_poll(
                kind=PollKind.GENERAL,
                title="Sneaky change",
                creator_id=population[0],
                parameter_name="reward_per_poll_participant",
                proposed_value=60,
            )

    def test_constitutional_description(self, engine, population):
        with pytest.raises(ConstitutionalViolation) as exc:
            engine.create_poll(
                kind=PollKind.GENERAL,
                title="Transparency drive",
                description="We should unmask users who post anonymously.",
                creator_id=population[0],
            )

        assert exc.value.article_numbers == [2]
        assert engine.list_polls() == []

    def test_constitutional_parameter(self, engine, population):
        with pytest.raises(ConstitutionalViolation):
            engine.create_poll(
                kind=PollKind.PARAMETER_VOTE,
                title="Turn off privacy",
                creator_id=population[0],
                parameter_name="privacy_protections_enabled",
                proposed_value=False,
            )

    @pytest.mark.parametrize("title", ["", "abc", "x" * 201])
    def test_title_length(self, engine, population, title):
        with pytest.raises(ValidationError):
            engine.create_poll(kind=PollKind.GENERAL, title=title, creator_id=population[0])

    def test_unknown_kind(self, engine, population):
        with pytest.raises(ValidationError):
            engine.create_poll(kind="referendum", title="Some question", creator_id=population[0])

    def test_unverified_creator(self, engine, population):
        with pytest.raises(UnauthorizedError):
            engine.create_poll(kind=PollKind.GENERAL, title="Who am I", creator_id="stranger")

    def test_low_reputation_creator(self, engine, identity):
        identity.verify("newbie", reputation=10.0)

        with pytest.raises(UnauthorizedError):
            engine.create_poll(kind=PollKind.GENERAL, title="First post", creator_id="newbie")

    def test_emergency_poll(self, engine, population, clock):
        poll = engine.create_poll(kind=PollKind.EMERGENCY, title="Server outage response", creator_id=population[0])

        assert poll.requires_supermajority
        assert poll.early_close
        assert poll.closes_at == clock.now + 2 * SECONDS_PER_DAY
        assert poll.quorum.absolute_minimum == 1.5
        assert poll.quorum.percentage_minimum == 2.5

    def test_emergency_poll_rejects_ordinary_parameters(self, engine, population):
        with pytest.raises(ValidationError):
            engine.create_poll(
                kind=PollKind.EMERGENCY,
                title="Emergency reward change",
                creator_id=population[0],
                parameter_name="reward_per_poll_participant",
                proposed_value=60,
            )

    def test_frozen_parameter(self, engine, population, clock):
        for _ in range(3):
            engine.parameters.revert("reward_per_poll_participant", 50, clock.now, 3, 90)

        with pytest.raises(StateError):
            engine.create_poll(
                kind=PollKind.PARAMETER_VOTE,
                title="Raise the participation reward",
                creator_id=population[0],
                parameter_name="reward_per_poll_participant",
                proposed_value=60,
            )

    def test_list_polls_by_status(self, engine, population):
        first = engine.create_poll(kind=PollKind.GENERAL, title="First question", creator_id=population[0])
        second = engine.create_poll(kind=PollKind.GENERAL, title="Second question", creator_id=population[0])
        engine.withdraw_poll(second.poll_id, population[0])

        assert [p.poll_id for p in engine.list_polls("open")] == [first.poll_id]
        assert [p.poll_id for p in engine.list_polls(PollStatus.WITHDRAWN)] == [second.poll_id]
        assert len(engine.list_polls()) == 2

    def test_get_unknown_poll(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_poll("poll_missing")


class TestWithdrawPoll:
    """Test withdrawal before any vote."""

    @pytest.fixture
    def poll(self, engine, population):
        return engine.create_poll(kind=PollKind.GENERAL, title="Withdrawable poll", creator_id=population[0])

    def test_withdraw(self, engine, poll, population):
        withdrawn = engine.withdraw_poll(poll.poll_id, population[0])

        assert withdrawn.status == PollStatus.WITHDRAWN
        assert engine.audit.events_of_type(EventType.POLL_WITHDRAWN)[0].poll_id == poll.poll_id

    def test_only_creator(self, engine, poll, population):
        with pytest.raises(UnauthorizedError):
            engine.withdraw_poll(poll.poll_id, population[1])

    def test_not_after_votes(self, engine, poll, population):
        engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)

        with pytest.raises(StateError):
            engine.withdraw_poll(poll.poll_id, population[0])

    def test_not_twice(self, engine, poll, population):
        engine.withdraw_poll(poll.poll_id, population[0])

        with pytest.raises(StateError):
            engine.withdraw_poll(poll.poll_id, population[0])
        with pytest.raises(StateError):
            engine.close_poll(poll.poll_id)

    def test_withdrawn_poll_takes_no_votes(self, engine, poll, population):
        engine.withdraw_poll(poll.poll_id, population[0])

        with pytest.raises(StateError):
            engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)


class TestResolution:
    """Test closing and resolving polls."""

    def test_cannot_close_early(self, engine, population):
        poll = engine.create_poll(kind=PollKind.GENERAL, title="Not yet due", creator_id=population[0])

        with pytest.raises(StateError):
            engine.close_poll(poll.poll_id)

    def test_quorum_latches_on_vote(self, engine, population, clock):
        poll = engine.create_poll(
            kind=PollKind.GENERAL,
            title="Latching question",
            creator_id=population[0],
            quorum=QuorumConfig(QuorumModel.ABSOLUTE, 2.0),
        )
        engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        assert engine.get_poll(poll.poll_id).quorum_reached_at is None

        clock.advance(60)
        engine.cast_vote(poll.poll_id, population[2], IdentityMode.SHADOW, VoteChoice.YES)
        engine.cast_vote(poll.poll_id, population[3], IdentityMode.SHADOW, VoteChoice.YES)

        assert engine.get_poll(poll.poll_id).quorum_reached_at == clock.now

    def test_parameter_change_is_enacted(self, engine, population, clock):
        poll = engine.create_poll(
            kind=PollKind.PARAMETER_VOTE,
            title="Raise the participation reward",
            creator_id=population[0],
            parameter_name="reward_per_poll_participant",
            proposed_value=75,
        )
        for voter in population[1:4]:
            engine.cast_vote(poll.poll_id, voter, IdentityMode.TRUE_SELF, VoteChoice.YES)
        engine.cast_vote(poll.poll_id, population[4], IdentityMode.SHADOW, VoteChoice.NO)
        clock.now = poll.closes_at

        resolved = engine.close_poll(poll.poll_id)

        assert resolved.status == PollStatus.RESOLVED
        assert resolved.outcome == PollOutcome.PASSED
        assert resolved.resolved_at == clock.now
        assert resolved.rollback_window_expires_at == clock.now + 72 * 3600
        assert resolved.payload.previous_value == 50
        assert engine.get_parameter("reward_per_poll_participant").current_value == 75
        changes = engine.audit.events_of_type(EventType.PARAMETER_CHANGED)
        assert changes[0].metadata == {"previous_value": 50, "new_value": 75}

    def test_failed_change_is_not_enacted(self, engine, population, clock):
        poll = engine.create_poll(
            kind=PollKind.PARAMETER_VOTE,
            title="Raise the participation reward",
            creator_id=population[0],
            parameter_name="reward_per_poll_participant",
            proposed_value=75,
        )
        for voter in population[1:4]:
            engine.cast_vote(poll.poll_id, voter, IdentityMode.TRUE_SELF, VoteChoice.NO)
        clock.now = poll.closes_at

        assert engine.close_poll(poll.poll_id).outcome == PollOutcome.FAILED
        assert engine.get_parameter("reward_per_poll_participant").current_value == 50

    def test_no_quorum(self, engine, population, clock):
        poll = engine.create_poll(
            kind=PollKind.GENERAL,
            title="Nobody cares",
            creator_id=population[0],
            quorum=QuorumConfig(QuorumModel.ABSOLUTE, 100.0),
        )
        engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        clock.now = poll.closes_at

        assert engine.close_poll(poll.poll_id).outcome == PollOutcome.NO_QUORUM

    def test_resolution_publishes_consensus(self, engine, population, clock, mirror):
        poll = engine.create_poll(kind=PollKind.GENERAL, title="Mirror the result", creator_id=population[0])
        engine.cast_vote(poll.poll_id, population[1], IdentityMode.TRUE_SELF, VoteChoice.NO)
        engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        clock.now = poll.closes_at

        engine.close_poll(poll.poll_id)
        engine.archive.flush(timeout=5)

        snapshot = engine.consensus.latest(poll.poll_id)
        assert snapshot.true_self_yes_pct == 0.0
        assert snapshot.shadow_yes_pct == 100.0
        assert mirror.of_type("shadow_consensus")[0]["gap"] == 100.0
        assert mirror.of_type("poll")[-1]["status"] == "resolved"

    def test_emergency_poll_closes_early(self, engine, population, clock):
        poll = engine.create_poll(kind=PollKind.EMERGENCY, title="Patch the exploit", creator_id=population[0])
        for voter in population[1:6]:
            engine.cast_vote(poll.poll_id, voter, IdentityMode.TRUE_SELF, VoteChoice.YES)
        clock.advance(3600)

        report = engine.run_maintenance()

        assert report.resolved_polls == [poll.poll_id]
        resolved = engine.get_poll(poll.poll_id)
        assert resolved.outcome == PollOutcome.PASSED
        assert resolved.closed_at < poll.closes_at

    def test_contested_emergency_poll_stays_open(self, engine, population, clock):
        poll = engine.create_poll(kind=PollKind.EMERGENCY, title="Patch the exploit", creator_id=population[0])
        for voter in population[1:4]:
            engine.cast_vote(poll.poll_id, voter, IdentityMode.TRUE_SELF, VoteChoice.NO)
        clock.advance(3600)

        assert engine.run_maintenance().resolved_polls == []
        assert engine.get_poll(poll.poll_id).status == PollStatus.OPEN

    def test_maintenance_resolves_due_polls_once(self, engine, population, clock):
        poll = engine.create_poll(kind=PollKind.GENERAL, title="Routine question", creator_id=population[0])
        engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        clock.now = poll.closes_at

        assert engine.run_maintenance().resolved_polls == [poll.poll_id]
        assert engine.run_maintenance().resolved_polls == []
        assert len(engine.audit.events_of_type(EventType.POLL_RESOLVED)) == 1

    def test_maintenance_thaws_parameters(self, engine, clock):
        for _ in range(3):
            engine.parameters.revert("reward_per_poll_participant", 50, clock.now, 3, 90)
        clock.advance_days(90)

        assert engine.run_maintenance().thawed_parameters == 1
        assert engine.get_parameter("reward_per_poll_participant").is_voteable


class TestEngineLifecycle:
    """Test engine construction and shutdown."""

    def test_context_manager_drains_archive(self, identity, economy, mirror, governance_config, clock):
        identity.verify("creator")

        with GovernanceEngine(
            identity=identity,
            economy=economy,
            mirror=mirror,
            config=governance_config,
            clock=clock,
        ) as engine:
            poll = engine.create_poll(kind=PollKind.GENERAL, title="Short lived engine", creator_id="creator")

        assert [record["poll_id"] for record in mirror.of_type("poll")] == [poll.poll_id]
