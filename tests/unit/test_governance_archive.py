"""Unit tests for archival publishing and the audit trail."""

import logging

logger = logging.getLogger(__name__)
import pytest

from shadowgov.errors.exceptions import ValidationError
from shadowgov.errors.recovery import CircuitBreaker, CircuitState, RetryPolicy
from shadowgov.governance.archive import MirrorPublisher
from shadowgov.governance.core import IdentityMode, PollKind, VoteChoice
from shadowgov.governance.engine import GovernanceEngine
from shadowgov.governance.observability import EventType, GovernanceAuditTrail


@pytest.fixture
def sleeps():
    return []


def make_publisher(mirror, sleeps, max_retries=2, failure_threshold=5, base_delay=0.0):
    publisher = MirrorPublisher(
        mirror,
        retry_policy=RetryPolicy(max_retries=max_retries, base_delay=base_delay, jitter=False),
        circuit_breaker=CircuitBreaker(failure_threshold=failure_threshold, name="test-archive"),
        max_workers=1,
        sleep=sleeps.append,
    )
    return publisher


class TestMirrorPublisher:
    """Test delivery, retries and dead letters."""

    def test_delivers(self, mirror, sleeps):
        publisher = make_publisher(mirror, sleeps)

        publisher.publish("poll", "poll_1", {"title": "x"})
        assert publisher.flush(timeout=5)

        assert mirror.records == [("poll", "poll_1", {"title": "x"})]
        assert publisher.delivered == 1
        publisher.shutdown()

    def test_transient_failures_are_retried(self, mirror, sleeps):
        mirror.failures = 2
        publisher = make_publisher(mirror, sleeps, base_delay=1.0)

        future = publisher.publish("vote", "vote_1", {})
        assert future.result(timeout=5) is True

        assert mirror.calls == 3
        assert sleeps == [1.0, 2.0]
        assert publisher.dead_letters == []
        publisher.shutdown()

    def test_exhausted_retries_become_dead_letters(self, mirror, sleeps):
        mirror.failures = 10
        publisher = make_publisher(mirror, sleeps)

        assert publisher.publish("vote", "vote_1", {}).result(timeout=5) is False

        letters = publisher.dead_letters
        assert len(letters) == 1
        assert letters[0].record_id == "vote_1"
        assert letters[0].attempts == 3
        assert letters[0].last_error
        publisher.shutdown()

    def test_retry_dead_letters(self, mirror, sleeps):
        mirror.failures = 3
        publisher = make_publisher(mirror, sleeps)
        publisher.publish("vote", "vote_1", {"choice": "yes"})
        publisher.flush(timeout=5)

        assert publisher.retry_dead_letters() == 1
        assert publisher.flush(timeout=5)

        assert publisher.dead_letters == []
        assert mirror.of_type("vote") == [{"choice": "yes"}]
        publisher.shutdown()

    def test_any_mirror_exception_is_retried(self, mirror, sleeps):
        mirror.failures = 2
        mirror.error = RuntimeError("HTTP 503")
        publisher = make_publisher(mirror, sleeps)

        assert publisher.publish("poll", "poll_1", {}).result(timeout=5) is True

        assert mirror.calls == 3
        assert publisher.dead_letters == []
        publisher.shutdown()

    def test_non_retryable_error(self, mirror, sleeps):
        mirror.failures = 1
        mirror.error = ValidationError("bad payload")
        publisher = make_publisher(mirror, sleeps)

        publisher.publish("poll", "poll_1", {})
        publisher.flush(timeout=5)

        assert mirror.calls == 1
        assert len(publisher.dead_letters) == 1
        publisher.shutdown()

    def test_open_circuit_skips_mirror(self, mirror, sleeps):
        mirror.failures = 100
        publisher = make_publisher(mirror, sleeps, max_retries=0, failure_threshold=2)

        for i in range(3):
            publisher.publish("poll", f"poll_{i}", {})
        publisher.flush(timeout=5)

        assert publisher.circuit_breaker.get_state() == CircuitState.OPEN
        assert mirror.calls == 2
        assert len(publisher.dead_letters) == 3
        publisher.shutdown()

    def test_no_mirror(self, sleeps):
        publisher = make_publisher(None, sleeps)
        assert publisher.publish("poll", "poll_1", {}) is None
        assert publisher.flush(timeout=1)
        publisher.shutdown()

    def test_mirror_outage_does_not_fail_votes(self, engine, population, mirror):
        poll = engine.create_poll(
            kind=PollKind.GENERAL, title="Archive outage poll", creator_id=population[0]
        )
        mirror.failures = 1000

        vote = engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        engine.archive.flush(timeout=5)

        assert engine.get_vote(poll.poll_id, population[1], IdentityMode.SHADOW) == vote
        assert any(r.record_id == vote.vote_id for r in engine.archive.dead_letters)


class TestGovernanceAuditTrail:
    """Test the hash-chained audit trail."""

    def test_chain(self):
        trail = GovernanceAuditTrail()
        first = trail.record(EventType.POLL_CREATED, "poll_1", "alice")
        second = trail.record(EventType.VOTE_CAST, "poll_1", "vote_1")

        assert second.previous_event_hash == first.event_hash
        assert trail.verify_integrity()
        assert trail.get_poll_events("poll_1") == [first, second]

    def test_tampering_is_detected(self):
        trail = GovernanceAuditTrail()
        trail.record(EventType.POLL_CREATED, "poll_1", "alice")
        event = trail.record(EventType.POLL_RESOLVED, "poll_1", outcome="passed")

        event.metadata["outcome"] = "failed"

        assert not trail.verify_integrity()

    def test_listeners(self):
        trail = GovernanceAuditTrail()
        seen = []
        trail.subscribe(EventType.VOTE_CAST, seen.append)

        trail.record(EventType.POLL_CREATED, "poll_1")
        event = trail.record(EventType.VOTE_CAST, "poll_1", "vote_1")

        assert seen == [event]

    def test_failing_listener_is_logged(self, caplog):
        trail = GovernanceAuditTrail()

        def broken(event):
            raise RuntimeError("listener down")

        trail.subscribe(EventType.POLL_CREATED, broken)
        with caplog.at_level(logging.ERROR):
            trail.record(EventType.POLL_CREATED, "poll_1")

        assert "listener down" in caplog.text
        assert len(trail.events) == 1

    def test_summary(self):
        trail = GovernanceAuditTrail()
        trail.record(EventType.POLL_CREATED, "poll_1")
        trail.record(EventType.POLL_CREATED, "poll_2")
        trail.record(EventType.VOTE_CAST, "poll_1", "vote_1")

        summary = trail.get_audit_summary()

        assert summary["total_events"] == 3
        assert summary["event_counts"] == {"poll_created": 2, "vote_cast": 1}
        assert summary["unique_polls"] == 2
        assert summary["integrity_verified"]

    def test_events_use_the_given_clock(self):
        trail = GovernanceAuditTrail(clock=lambda: 1234.0)

        assert trail.record(EventType.POLL_CREATED, "poll_1").timestamp == 1234.0
        assert trail.record(EventType.VOTE_CAST, "poll_1", timestamp=99.0).timestamp == 99.0

    def test_vote_events_carry_the_displayed_time(self, engine, population, clock):
        poll = engine.create_poll(kind=PollKind.GENERAL, title="Audit timing", creator_id=population[0])
        vote = engine.cast_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.YES)
        changed = engine.change_vote(poll.poll_id, population[1], IdentityMode.SHADOW, VoteChoice.NO)

        created = engine.audit.events_of_type(EventType.POLL_CREATED)[0]
        cast = engine.audit.events_of_type(EventType.VOTE_CAST)[0]
        change = engine.audit.events_of_type(EventType.VOTE_CHANGED)[0]

        assert created.timestamp == clock.now
        assert cast.timestamp == vote.displayed_at
        assert change.timestamp == changed.displayed_at
        assert population[1] not in str(cast.to_dict())

    def test_oldest_events_are_evicted(self):
        trail = GovernanceAuditTrail(max_events=3)
        trail.record(EventType.POLL_CREATED, "poll_1")
        trail.record(EventType.POLL_CREATED, "poll_2")
        trail.record(EventType.VOTE_CAST, "poll_2", "vote_1")
        newest = trail.record(EventType.VOTE_CAST, "poll_2", "vote_2")

        assert len(trail.events) == 3
        assert trail.events[-1] is newest
        assert trail.get_poll_events("poll_1") == []
        assert "poll_1" not in trail.poll_events
        assert len(trail.get_poll_events("poll_2")) == 3
        assert trail.verify_integrity()

        summary = trail.get_audit_summary()
        assert summary["evicted_events"] == 1
        assert summary["unique_polls"] == 1

    def test_engine_bounds_its_trail(self, identity, economy, mirror, governance_config, clock, population):
        governance_config.audit_max_events = 2
        engine = GovernanceEngine(
            identity=identity,
            economy=economy,
            mirror=mirror,
            config=governance_config,
            clock=clock,
        )
        try:
            for index in range(4):
                engine.create_poll(
                    kind=PollKind.GENERAL, title=f"Poll {index}", creator_id=population[0]
                )

            assert len(engine.audit.events) == 2
            assert engine.audit.evicted >= 2
        finally:
            engine.shutdown()
