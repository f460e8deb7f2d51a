"""
Governance decision engine.

``GovernanceEngine`` is the operation surface of the package. It wires the
poll registry, vote ledger, delegation resolver, tally evaluator, shadow
consensus, staking pool and rollback state machine around one store, routes
collaborator calls through a timeout gateway, records audit events and
mirrors committed records to the archive after each operation commits.
"""

import logging

logger = logging.getLogger(__name__)
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from ..errors.exceptions import GovernanceError, StateError, ValidationError
from ..errors.recovery import CircuitBreaker
from ..storage.database import DatabaseConfig
from ..storage.governance_store import GovernanceStore
from .archive import MirrorPublisher
from .collaborators import (
    ArchivalMirror,
    CollaboratorGateway,
    GuardedEconomy,
    GuardedIdentity,
    IdentityService,
    TokenEconomy,
)
from .config import GovernanceConfig, get_governance_config
from .consensus import ShadowConsensusEngine
from .constitution import DEFAULT_ARTICLES, ConstitutionalArticle, ConstitutionalGuard
from .core import (
    Delegation,
    DelegationScope,
    IdentityMode,
    Poll,
    PollKind,
    PollOutcome,
    PollStatus,
    QuorumConfig,
    RollbackAction,
    RollbackStatus,
    RollbackTier,
    ShadowConsensusSnapshot,
    StakePosition,
    Vote,
    VoteChoice,
)
from .delegation import DelegationResolver
from .observability import EventType, GovernanceAuditTrail
from .parameters import ParameterRegistry, ParameterWhitelistEntry
from .proposal import PollRegistry, PollRequest
from .rollback import DetectionEvent, RollbackStateMachine
from .sections import SectionAssigner
from .staking import StakingPool
from .tally import TallyEvaluator, TallyResult
from .voting import VoteLedger

E = TypeVar("E", bound=Enum)


def coerce_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    """Accept an enum member or its value; anything else is a ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name}",
            field=field_name,
            value=value,
            expected=", ".join(member.value for member in enum_cls),
        )


@dataclass
class MaintenanceReport:
    """What one maintenance sweep did."""

    started_at: float
    resolved_polls: List[str] = field(default_factory=list)
    expired_rollbacks: List[str] = field(default_factory=list)
    expired_delegations: int = 0
    thawed_parameters: int = 0
    failures: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "resolved_polls": list(self.resolved_polls),
            "expired_rollbacks": list(self.expired_rollbacks),
            "expired_delegations": self.expired_delegations,
            "thawed_parameters": self.thawed_parameters,
            "failures": dict(self.failures),
        }


class GovernanceEngine:
    """Main governance engine for the dual-identity platform."""

    def __init__(
        self,
        identity: IdentityService,
        economy: TokenEconomy,
        mirror: Optional[ArchivalMirror] = None,
        config: Optional[GovernanceConfig] = None,
        store: Optional[GovernanceStore] = None,
        guard: Optional[ConstitutionalGuard] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize governance engine."""
        self.config = config or get_governance_config()
        self.clock = clock
        self.store = (
            store or GovernanceStore(DatabaseConfig(database_path=self.config.database_path))
        ).open()

        self.gateway = CollaboratorGateway(timeout=self.config.collaborator_timeout_seconds)
        self.identity = GuardedIdentity(identity, self.gateway)
        self.economy = GuardedEconomy(economy, self.gateway)

        self.parameters = ParameterRegistry(self.store)
        self.guard = self._seed(guard)

        self.polls = PollRegistry(
            self.store, self.config, self.guard, self.parameters, self.identity
        )
        self.delegations = DelegationResolver(self.store, self.identity)
        self.assigner = SectionAssigner(self.config.section_secret, self.config.section_count)
        self.votes = VoteLedger(
            self.store,
            self.config,
            self.assigner,
            self.parameters,
            self.identity,
            self.delegations,
        )
        self.tallies = TallyEvaluator(self.store, self.config)
        self.consensus = ShadowConsensusEngine(self.store)
        self.staking = StakingPool(self.store, self.config, self.economy, self.identity)
        self.rollbacks = RollbackStateMachine(
            self.store, self.config, self.parameters, self.guard, self.identity
        )
        self.rollbacks.ensure_founder_allowance(self.clock())

        self.audit = GovernanceAuditTrail(
            clock=self.clock, max_events=self.config.audit_max_events
        )
        self.archive = MirrorPublisher(
            mirror,
            retry_policy=self.config.archive_retry_policy,
            circuit_breaker=CircuitBreaker(
                failure_threshold=self.config.archive_circuit_failure_threshold,
                recovery_timeout=self.config.archive_circuit_recovery_seconds,
                name="archive",
            ),
            max_workers=self.config.archive_workers,
        )

    def _seed(self, guard: Optional[ConstitutionalGuard]) -> ConstitutionalGuard:
        """Seed articles and the whitelist once; the stored articles drive the guard."""
        articles = guard.articles if guard is not None else DEFAULT_ARTICLES
        with self.store.transaction():
            for article in articles:
                self.store.seed_article(article.to_row())
            self.parameters.seed()
        if guard is not None:
            return guard
        return ConstitutionalGuard(
            [ConstitutionalArticle.from_row(row) for row in self.store.list_articles()]
        )

    # Polls

    def create_poll(
        self,
        kind: Any,
        title: str,
        creator_id: str,
        description: str = "",
        creator_mode: Any = IdentityMode.TRUE_SELF,
        parameter_name: Optional[str] = None,
        proposed_value: Any = None,
        duration_days: Optional[float] = None,
        quorum: Optional[QuorumConfig] = None,
        requires_supermajority: Optional[bool] = None,
    ) -> Poll:
        """Create and open a poll."""
        request = PollRequest(
            kind=coerce_enum(PollKind, kind, "kind"),
            title=title,
            creator_id=creator_id,
            description=description,
            creator_mode=coerce_enum(IdentityMode, creator_mode, "creator_mode"),
            parameter_name=parameter_name,
            proposed_value=proposed_value,
            duration_days=duration_days,
            quorum=quorum,
            requires_supermajority=requires_supermajority,
        )
        poll = self.polls.create_poll(request, self.clock())
        self.audit.record(
            EventType.POLL_CREATED, poll.poll_id, poll.creator_id, kind=poll.kind.value
        )
        self.archive.publish("poll", poll.poll_id, poll.to_dict())
        return poll

    def get_poll(self, poll_id: str) -> Poll:
        return self.polls.get_poll(poll_id)

    def list_polls(self, status: Any = None) -> List[Poll]:
        if status is not None:
            status = coerce_enum(PollStatus, status, "status")
        return self.polls.list_polls(status)

    def withdraw_poll(self, poll_id: str, requester_id: str) -> Poll:
        """Withdraw a poll before any vote and refund its stakes."""
        now = self.clock()
        with self.store.transaction():
            poll = self.polls.withdraw_poll(poll_id, requester_id, now)
            refunds = self.staking.refund_all(poll_id, now)
        self.audit.record(EventType.POLL_WITHDRAWN, poll_id, requester_id)
        if refunds.refunded:
            self.audit.record(
                EventType.STAKES_SETTLED, poll_id, refunded=refunds.refunded
            )
        self.archive.publish("poll", poll_id, poll.to_dict())
        return poll

    def close_poll(self, poll_id: str) -> Poll:
        """Close and resolve a due poll. Already-resolved polls are returned as-is."""
        now = self.clock()
        poll = self.polls.get_poll(poll_id)
        if poll.status in (PollStatus.RESOLVED, PollStatus.ROLLED_BACK):
            return poll
        if poll.status == PollStatus.WITHDRAWN:
            raise StateError(
                f"Poll {poll_id} was withdrawn",
                current_state=poll.status.value,
                expected_state=PollStatus.OPEN.value,
            )
        if poll.status == PollStatus.OPEN and not self._is_due(poll, now):
            raise StateError(
                f"Poll {poll_id} is still open until {poll.closes_at}",
                current_state=poll.status.value,
                expected_state="expired",
            )
        self._resolve(poll_id, now)
        return self.polls.get_poll(poll_id)

    def _is_due(self, poll: Poll, now: float) -> bool:
        if now >= poll.closes_at:
            return True
        if not poll.early_close:
            return False
        tally = self.tallies.tally(poll.poll_id)
        verified = self.identity.verified_user_count()
        if poll.quorum_reached_at is None:
            if not self.tallies.quorum_met(poll, tally, verified):
                return False
            self.polls.latch_quorum(poll.poll_id, now)
            poll.quorum_reached_at = now
        return self.tallies.outcome(poll, tally, verified) == PollOutcome.PASSED

    def _resolve(self, poll_id: str, now: float) -> Optional[Poll]:
        """Close, tally, enact and settle ``poll_id`` exactly once.

        Returns None when another caller already moved the poll on.
        """
        verified = self.identity.verified_user_count()
        applied = False
        with self.store.transaction():
            poll = self.polls.get_poll(poll_id)
            if poll.status == PollStatus.OPEN:
                if not self.polls.mark_closed(poll_id, now):
                    return None
                poll.status = PollStatus.CLOSED
                poll.closed_at = now
            elif poll.status != PollStatus.CLOSED:
                return None

            tally = self.tallies.tally(poll_id)
            outcome = self.tallies.outcome(poll, tally, verified)
            if poll.payload is not None:
                poll.payload.previous_value = self.parameters.get(
                    poll.payload.parameter_name
                ).current_value
            if not self.polls.mark_resolved(poll, outcome, now):
                return None

            if outcome == PollOutcome.PASSED and poll.payload is not None:
                self.parameters.apply(
                    poll.payload.parameter_name, poll.payload.proposed_value, now
                )
                applied = True
            settlement = self.staking.settle(poll, outcome, now)
            snapshot = self.consensus.compute(tally, now)

        resolved = self.polls.get_poll(poll_id)
        logger.info(f"Poll {poll_id} resolved as {outcome.value}")
        self.audit.record(EventType.POLL_CLOSED, poll_id)
        self.audit.record(
            EventType.POLL_RESOLVED,
            poll_id,
            outcome=outcome.value,
            total_weight=round(tally.total_weight, 6),
        )
        if applied:
            self.audit.record(
                EventType.PARAMETER_CHANGED,
                poll_id,
                poll.payload.parameter_name,
                previous_value=poll.payload.previous_value,
                new_value=poll.payload.proposed_value,
            )
        if settlement.total_pool:
            self.audit.record(
                EventType.STAKES_SETTLED,
                poll_id,
                winners=settlement.winners,
                losers=settlement.losers,
                refunded=settlement.refunded,
                fee=settlement.fee,
            )
        self.archive.publish("poll", poll_id, resolved.to_dict())
        self.archive.publish("shadow_consensus", poll_id, snapshot.to_dict())
        return resolved

    # Votes

    def cast_vote(
        self,
        poll_id: str,
        voter_id: str,
        mode: Any,
        choice: Any,
        reasoning: Optional[str] = None,
    ) -> Vote:
        """Cast the first ballot of one identity on a poll."""
        now = self.clock()
        vote = self.votes.cast_vote(
            poll_id,
            voter_id,
            coerce_enum(IdentityMode, mode, "mode"),
            coerce_enum(VoteChoice, choice, "choice"),
            now,
            reasoning,
        )
        self._after_ballot(vote, EventType.VOTE_CAST, now)
        return vote

    def change_vote(
        self,
        poll_id: str,
        voter_id: str,
        mode: Any,
        choice: Any,
        reasoning: Optional[str] = None,
    ) -> Vote:
        """Change an existing ballot, within the per-poll change limit."""
        now = self.clock()
        vote = self.votes.change_vote(
            poll_id,
            voter_id,
            coerce_enum(IdentityMode, mode, "mode"),
            coerce_enum(VoteChoice, choice, "choice"),
            now,
            reasoning,
        )
        self._after_ballot(vote, EventType.VOTE_CHANGED, now)
        return vote

    def _after_ballot(self, vote: Vote, event_type: EventType, now: float) -> None:
        # vote events carry no voter id and only the displayed time
        self.audit.record(
            event_type, vote.poll_id, vote.vote_id, timestamp=vote.displayed_at
        )
        self.archive.publish("vote", vote.vote_id, vote.to_public_dict())

        poll = self.polls.get_poll(vote.poll_id)
        if poll.quorum_reached_at is None:
            tally = self.tallies.tally(vote.poll_id)
            if self.tallies.quorum_met(poll, tally, self.identity.verified_user_count()):
                self.polls.latch_quorum(vote.poll_id, now)

    def get_vote(self, poll_id: str, voter_id: str, mode: Any) -> Vote:
        return self.votes.get_vote(poll_id, voter_id, coerce_enum(IdentityMode, mode, "mode"))

    def get_vote_history(
        self, poll_id: str, voter_id: str, mode: Any
    ) -> List[Dict[str, Any]]:
        return self.votes.get_history(
            poll_id, voter_id, coerce_enum(IdentityMode, mode, "mode")
        )

    # Delegation

    def delegate(
        self,
        delegator_id: str,
        delegate_id: str,
        mode: Any,
        scope: Any = DelegationScope.ALL_GOVERNANCE,
        target_poll_id: Optional[str] = None,
        active_until: Optional[float] = None,
    ) -> Delegation:
        """Delegate one identity's weight, optionally narrowed and time-limited."""
        delegation = self.delegations.delegate(
            delegator_id,
            delegate_id,
            coerce_enum(IdentityMode, mode, "mode"),
            self.clock(),
            scope=coerce_enum(DelegationScope, scope, "scope"),
            target_poll_id=target_poll_id,
            active_until=active_until,
        )
        self.audit.record(
            EventType.DELEGATION_CREATED,
            subject_id=delegation.delegation_id,
            mode=delegation.identity_mode.value,
            scope=delegation.scope.value,
        )
        return delegation

    def revoke_delegation(self, delegation_id: str, requester_id: str) -> Delegation:
        delegation = self.delegations.revoke(delegation_id, requester_id, self.clock())
        self.audit.record(EventType.DELEGATION_REVOKED, subject_id=delegation_id)
        return delegation

    def get_active_delegations(
        self, user_id: str, mode: Any = None
    ) -> Dict[str, List[Delegation]]:
        if mode is not None:
            mode = coerce_enum(IdentityMode, mode, "mode")
        return self.delegations.active_delegations(user_id, self.clock(), mode)

    # Staking

    def stake(
        self,
        poll_id: str,
        user_id: str,
        mode: Any,
        predicted_outcome: Any,
        amount: int,
    ) -> StakePosition:
        position = self.staking.stake(
            poll_id,
            user_id,
            coerce_enum(IdentityMode, mode, "mode"),
            coerce_enum(PollOutcome, predicted_outcome, "predicted_outcome"),
            amount,
            self.clock(),
        )
        self.audit.record(
            EventType.STAKE_PLACED, poll_id, position.stake_id, amount=position.amount
        )
        return position

    def list_stakes(self, poll_id: str) -> List[StakePosition]:
        return self.staking.positions(poll_id)

    # Tally and consensus

    def tally(self, poll_id: str) -> TallyResult:
        self.polls.get_poll(poll_id)
        return self.tallies.tally(poll_id)

    def get_shadow_consensus(self, poll_id: str) -> ShadowConsensusSnapshot:
        """Compute, persist and return the poll's current divergence snapshot."""
        self.polls.get_poll(poll_id)
        return self.consensus.compute(self.tallies.tally(poll_id), self.clock())

    # Rollback

    def initiate_rollback(
        self,
        tier: Any,
        poll_id: str,
        initiator_id: str,
        reason: Optional[str] = None,
        detection_event: Optional[DetectionEvent] = None,
    ) -> RollbackAction:
        action = self.rollbacks.initiate(
            coerce_enum(RollbackTier, tier, "tier"),
            poll_id,
            initiator_id,
            self.clock(),
            reason=reason,
            detection_event=detection_event,
        )
        self.audit.record(
            EventType.ROLLBACK_INITIATED,
            poll_id,
            action.action_id,
            tier=action.tier.value,
        )
        self._after_rollback(action)
        return action

    def sign_rollback_petition(self, action_id: str, user_id: str) -> RollbackAction:
        action = self.rollbacks.sign_petition(action_id, user_id, self.clock())
        self.audit.record(
            EventType.ROLLBACK_SIGNED,
            action.poll_id,
            action_id,
            signatures=len(action.initiators),
        )
        self._after_rollback(action)
        return action

    def _after_rollback(self, action: RollbackAction) -> None:
        self.archive.publish("rollback", action.action_id, action.to_dict())
        if action.status == RollbackStatus.EXECUTED:
            self.audit.record(
                EventType.ROLLBACK_EXECUTED,
                action.poll_id,
                action.action_id,
                tier=action.tier.value,
            )
            self.archive.publish(
                "poll", action.poll_id, self.polls.get_poll(action.poll_id).to_dict()
            )

    def get_rollback_action(self, action_id: str) -> RollbackAction:
        return self.rollbacks.get_action(action_id)

    def list_rollback_actions(
        self, poll_id: Optional[str] = None, status: Any = None
    ) -> List[RollbackAction]:
        if status is not None:
            status = coerce_enum(RollbackStatus, status, "status")
        return self.rollbacks.list_actions(poll_id, status)

    def get_founder_allowance(self) -> Optional[Dict[str, Any]]:
        allowance = self.rollbacks.founder_allowance()
        if allowance is None:
            return None
        return allowance.to_dict(self.clock(), self.config.founder_authority_schedule)

    # Configuration data

    def get_parameter(self, name: str) -> ParameterWhitelistEntry:
        return self.parameters.get(name)

    def list_parameters(self) -> List[ParameterWhitelistEntry]:
        return self.parameters.list()

    def list_articles(self) -> List[ConstitutionalArticle]:
        return list(self.guard.articles)

    # Maintenance

    def run_maintenance(self) -> MaintenanceReport:
        """Resolve due polls, expire stale rollbacks and delegations, thaw parameters.

        Safe to run concurrently and repeatedly: every step is guarded by a
        status transition. A failure on one poll is reported and the sweep
        continues with the next.
        """
        now = self.clock()
        report = MaintenanceReport(started_at=now)

        for row in self.store.list_polls_due(now):
            poll = Poll.from_row(row)
            try:
                if self._is_due(poll, now) and self._resolve(poll.poll_id, now):
                    report.resolved_polls.append(poll.poll_id)
            except GovernanceError as e:
                logger.error(f"Failed to resolve poll {poll.poll_id}: {e}")
                report.failures[poll.poll_id] = e.error_code or type(e).__name__

        for action in self.rollbacks.expire_stale(now):
            report.expired_rollbacks.append(action.action_id)
            self.audit.record(EventType.ROLLBACK_EXPIRED, action.poll_id, action.action_id)
            self.archive.publish("rollback", action.action_id, action.to_dict())

        report.expired_delegations = self.delegations.expire(now)
        report.thawed_parameters = self.parameters.thaw(now)
        return report

    def shutdown(self) -> None:
        """Drain the archive, stop worker pools and close the store."""
        self.archive.shutdown(wait_for_pending=True)
        self.gateway.shutdown()
        self.store.close()
        logger.info("Governance engine shut down")

    def __enter__(self) -> "GovernanceEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()
