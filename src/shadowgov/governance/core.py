"""
Core governance types and data structures.

This module defines the fundamental types used throughout the governance
engine: polls and their kind-specific payloads, dual-identity votes,
delegations, conviction stakes, rollback actions and shadow consensus
snapshots. Every persisted type converts to and from a storage row.
"""

import logging

logger = logging.getLogger(__name__)
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..errors.exceptions import ValidationError


class PollKind(Enum):
    """Kind of governance poll."""

    PARAMETER_VOTE = "parameter_vote"
    GENERAL = "general"
    EMERGENCY = "emergency"


class PollStatus(Enum):
    """Lifecycle status of a poll."""

    DRAFT = "draft"
    OPEN = "open"
    CLOSED = "closed"
    RESOLVED = "resolved"
    ROLLED_BACK = "rolled_back"
    WITHDRAWN = "withdrawn"


class PollOutcome(Enum):
    """Resolved outcome of a poll."""

    PASSED = "passed"
    FAILED = "failed"
    NO_QUORUM = "no_quorum"


class IdentityMode(Enum):
    """The two independent voting identities of a participant."""

    TRUE_SELF = "true_self"
    SHADOW = "shadow"


class VoteChoice(Enum):
    """Vote choices for governance polls."""

    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"


class DelegationScope(Enum):
    """Which polls a delegation applies to."""

    ALL_GOVERNANCE = "all_governance"
    PARAMETER_VOTES_ONLY = "parameter_votes_only"
    SPECIFIC_POLL = "specific_poll"


class QuorumModel(Enum):
    """Rule used to decide whether participation is sufficient."""

    ABSOLUTE = "absolute"
    PERCENTAGE = "percentage"
    EITHER = "either"


class StakeStatus(Enum):
    """Status of a conviction stake."""

    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    REFUNDED = "refunded"


class RollbackTier(Enum):
    """Authority tier that may reverse an enacted decision."""

    FOUNDER = "founder"
    PETITION = "petition"
    AUTOMATIC = "automatic"


class RollbackStatus(Enum):
    """Status of a rollback action."""

    PENDING = "pending"
    EXECUTED = "executed"
    EXPIRED = "expired"


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier."""
    return f"{prefix}_{uuid4().hex}"


def encode_value(value: Any) -> Optional[str]:
    """Encode a parameter value for storage."""
    if value is None:
        return None
    return json.dumps(value)


def decode_value(raw: Optional[str]) -> Any:
    """Decode a stored parameter value."""
    if raw is None:
        return None
    return json.loads(raw)


@dataclass
class QuorumConfig:
    """Quorum configuration attached to a poll."""

    model: QuorumModel = QuorumModel.EITHER
    absolute_minimum: float = 1000.0
    percentage_minimum: float = 5.0

    def __post_init__(self):
        if self.absolute_minimum <= 0:
            raise ValidationError(
                "Absolute quorum must be positive",
                field="absolute_minimum",
                value=self.absolute_minimum,
            )
        if not 0 < self.percentage_minimum <= 100:
            raise ValidationError(
                "Quorum percentage must be in (0, 100]",
                field="percentage_minimum",
                value=self.percentage_minimum,
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model.value,
            "absolute_minimum": self.absolute_minimum,
            "percentage_minimum": self.percentage_minimum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuorumConfig":
        return cls(
            model=QuorumModel(data["model"]),
            absolute_minimum=data["absolute_minimum"],
            percentage_minimum=data["percentage_minimum"],
        )


@dataclass
class ParameterChange:
    """Payload of a parameter_vote poll."""

    parameter_name: str
    proposed_value: Any
    previous_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameter_name": self.parameter_name,
            "proposed_value": self.proposed_value,
            "previous_value": self.previous_value,
        }


@dataclass
class Poll:
    """A governance poll."""

    poll_id: str
    kind: PollKind
    title: str
    description: str
    creator_id: str
    quorum: QuorumConfig
    requires_supermajority: bool
    opens_at: float
    closes_at: float
    status: PollStatus = PollStatus.OPEN
    payload: Optional[ParameterChange] = None
    early_close: bool = False
    outcome: Optional[PollOutcome] = None
    created_at: float = field(default_factory=time.time)
    quorum_reached_at: Optional[float] = None
    closed_at: Optional[float] = None
    resolved_at: Optional[float] = None
    rollback_window_expires_at: Optional[float] = None

    def accepts_votes(self, now: float) -> bool:
        """Check whether the poll is open for ballots at ``now``."""
        return self.status == PollStatus.OPEN and self.opens_at <= now < self.closes_at

    def is_expired(self, now: float) -> bool:
        return self.status == PollStatus.OPEN and now >= self.closes_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert poll to dictionary."""
        return {
            "poll_id": self.poll_id,
            "kind": self.kind.value,
            "title": self.title,
            "description": self.description,
            "creator_id": self.creator_id,
            "status": self.status.value,
            "quorum": self.quorum.to_dict(),
            "requires_supermajority": self.requires_supermajority,
            "payload": self.payload.to_dict() if self.payload else None,
            "early_close": self.early_close,
            "opens_at": self.opens_at,
            "closes_at": self.closes_at,
            "outcome": self.outcome.value if self.outcome else None,
            "created_at": self.created_at,
            "quorum_reached_at": self.quorum_reached_at,
            "closed_at": self.closed_at,
            "resolved_at": self.resolved_at,
            "rollback_window_expires_at": self.rollback_window_expires_at,
        }

    def to_row(self) -> Dict[str, Any]:
        """Flatten poll into a storage row."""
        return {
            "poll_id": self.poll_id,
            "kind": self.kind.value,
            "title": self.title,
            "description": self.description,
            "creator_id": self.creator_id,
            "status": self.status.value,
            "quorum_model": self.quorum.model.value,
            "quorum_absolute": self.quorum.absolute_minimum,
            "quorum_percentage": self.quorum.percentage_minimum,
            "requires_supermajority": int(self.requires_supermajority),
            "early_close": int(self.early_close),
            "parameter_name": self.payload.parameter_name if self.payload else None,
            "proposed_value": encode_value(self.payload.proposed_value)
            if self.payload
            else None,
            "previous_value": encode_value(self.payload.previous_value)
            if self.payload
            else None,
            "opens_at": self.opens_at,
            "closes_at": self.closes_at,
            "outcome": self.outcome.value if self.outcome else None,
            "created_at": self.created_at,
            "quorum_reached_at": self.quorum_reached_at,
            "closed_at": self.closed_at,
            "resolved_at": self.resolved_at,
            "rollback_window_expires_at": self.rollback_window_expires_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Poll":
        """Create poll from a storage row."""
        payload = None
        if row.get("parameter_name"):
            payload = ParameterChange(
                parameter_name=row["parameter_name"],
                proposed_value=decode_value(row["proposed_value"]),
                previous_value=decode_value(row["previous_value"]),
            )
        return cls(
            poll_id=row["poll_id"],
            kind=PollKind(row["kind"]),
            title=row["title"],
            description=row["description"],
            creator_id=row["creator_id"],
            status=PollStatus(row["status"]),
            quorum=QuorumConfig(
                model=QuorumModel(row["quorum_model"]),
                absolute_minimum=row["quorum_absolute"],
                percentage_minimum=row["quorum_percentage"],
            ),
            requires_supermajority=bool(row["requires_supermajority"]),
            early_close=bool(row["early_close"]),
            payload=payload,
            opens_at=row["opens_at"],
            closes_at=row["closes_at"],
            outcome=PollOutcome(row["outcome"]) if row["outcome"] else None,
            created_at=row["created_at"],
            quorum_reached_at=row["quorum_reached_at"],
            closed_at=row["closed_at"],
            resolved_at=row["resolved_at"],
            rollback_window_expires_at=row["rollback_window_expires_at"],
        )


@dataclass(frozen=True)
class SectionDraw:
    """Section index and multiplier fixed for one (poll, voter, mode) key."""

    section_index: int
    multiplier: float


@dataclass
class Vote:
    """A dual-identity ballot.

    ``cast_at`` is the true time of the latest ballot version and is kept for
    audit and ordering only; ``displayed_at`` is the jittered timestamp that
    may be shown to anyone else.
    """

    vote_id: str
    poll_id: str
    voter_id: str
    identity_mode: IdentityMode
    section_index: int
    multiplier: float
    choice: VoteChoice
    effective_weight: float
    cast_at: float
    displayed_at: float
    change_count: int = 0
    reasoning: Optional[str] = None
    delegated_weight: float = 0.0
    delegator_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Internal representation, including the true cast time."""
        data = self.to_public_dict()
        data.update(
            {
                "voter_id": self.voter_id,
                "cast_at": self.cast_at,
                "delegator_ids": list(self.delegator_ids),
            }
        )
        return data

    def to_public_dict(self) -> Dict[str, Any]:
        """Representation safe to expose or archive."""
        return {
            "vote_id": self.vote_id,
            "poll_id": self.poll_id,
            "identity_mode": self.identity_mode.value,
            "section_index": self.section_index,
            "multiplier": self.multiplier,
            "choice": self.choice.value,
            "effective_weight": self.effective_weight,
            "delegated_weight": self.delegated_weight,
            "displayed_at": self.displayed_at,
            "change_count": self.change_count,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_row(
        cls, row: Dict[str, Any], delegator_ids: Optional[List[str]] = None
    ) -> "Vote":
        return cls(
            vote_id=row["vote_id"],
            poll_id=row["poll_id"],
            voter_id=row["voter_id"],
            identity_mode=IdentityMode(row["identity_mode"]),
            section_index=row["section_index"],
            multiplier=row["multiplier"],
            choice=VoteChoice(row["choice"]),
            effective_weight=row["effective_weight"],
            cast_at=row["cast_at"],
            displayed_at=row["displayed_at"],
            change_count=row["change_count"],
            reasoning=row["reasoning"],
            delegated_weight=row["delegated_weight"],
            delegator_ids=list(delegator_ids or []),
        )


@dataclass
class Delegation:
    """A proxy-voting edge scoped to one identity mode.

    ``scope`` narrows the polls it covers; ``target_poll_id`` names the poll
    of a ``SPECIFIC_POLL`` delegation. A delegation with ``active_until``
    stops applying at that time.
    """

    delegation_id: str
    delegator_id: str
    delegate_id: str
    identity_mode: IdentityMode
    created_at: float = field(default_factory=time.time)
    revoked_at: Optional[float] = None
    scope: DelegationScope = DelegationScope.ALL_GOVERNANCE
    target_poll_id: Optional[str] = None
    active_until: Optional[float] = None

    def __post_init__(self):
        if self.delegator_id == self.delegate_id:
            raise ValidationError(
                "Cannot delegate to self", field="delegate_id", value=self.delegate_id
            )

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    def is_live(self, now: float) -> bool:
        return self.is_active and (self.active_until is None or now < self.active_until)

    def covers(self, poll: "Poll") -> bool:
        """Whether this delegation's scope includes ``poll``."""
        if self.scope == DelegationScope.PARAMETER_VOTES_ONLY:
            return poll.kind == PollKind.PARAMETER_VOTE
        if self.scope == DelegationScope.SPECIFIC_POLL:
            return poll.poll_id == self.target_poll_id
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delegation_id": self.delegation_id,
            "delegator_id": self.delegator_id,
            "delegate_id": self.delegate_id,
            "identity_mode": self.identity_mode.value,
            "created_at": self.created_at,
            "revoked_at": self.revoked_at,
            "scope": self.scope.value,
            "target_poll_id": self.target_poll_id,
            "active_until": self.active_until,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Delegation":
        return cls(
            delegation_id=row["delegation_id"],
            delegator_id=row["delegator_id"],
            delegate_id=row["delegate_id"],
            identity_mode=IdentityMode(row["identity_mode"]),
            created_at=row["created_at"],
            revoked_at=row["revoked_at"],
            scope=DelegationScope(row["scope"]),
            target_poll_id=row["target_poll_id"],
            active_until=row["active_until"],
        )


@dataclass
class StakePosition:
    """An escrowed conviction stake on a poll outcome."""

    stake_id: str
    poll_id: str
    user_id: str
    identity_mode: IdentityMode
    predicted_outcome: PollOutcome
    amount: int
    status: StakeStatus = StakeStatus.ACTIVE
    payout: int = 0
    created_at: float = field(default_factory=time.time)
    settled_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stake_id": self.stake_id,
            "poll_id": self.poll_id,
            "user_id": self.user_id,
            "identity_mode": self.identity_mode.value,
            "predicted_outcome": self.predicted_outcome.value,
            "amount": self.amount,
            "status": self.status.value,
            "payout": self.payout,
            "created_at": self.created_at,
            "settled_at": self.settled_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StakePosition":
        return cls(
            stake_id=row["stake_id"],
            poll_id=row["poll_id"],
            user_id=row["user_id"],
            identity_mode=IdentityMode(row["identity_mode"]),
            predicted_outcome=PollOutcome(row["predicted_outcome"]),
            amount=row["amount"],
            status=StakeStatus(row["status"]),
            payout=row["payout"],
            created_at=row["created_at"],
            settled_at=row["settled_at"],
        )


@dataclass
class RollbackAction:
    """A request to reverse an enacted decision."""

    action_id: str
    poll_id: str
    tier: RollbackTier
    initiators: List[str]
    window_expires_at: float
    status: RollbackStatus = RollbackStatus.PENDING
    authority_snapshot: Dict[str, Any] = field(default_factory=dict)
    detection_event: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    executed_at: Optional[float] = None

    @property
    def state_label(self) -> str:
        """State name in ``PENDING_FOUNDER`` / ``EXECUTED`` / ``EXPIRED`` form."""
        if self.status == RollbackStatus.PENDING:
            return f"PENDING_{self.tier.name}"
        return self.status.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "poll_id": self.poll_id,
            "tier": self.tier.value,
            "initiators": list(self.initiators),
            "window_expires_at": self.window_expires_at,
            "status": self.status.value,
            "state": self.state_label,
            "authority_snapshot": dict(self.authority_snapshot),
            "detection_event": self.detection_event,
            "reason": self.reason,
            "created_at": self.created_at,
            "executed_at": self.executed_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any], initiators: List[str]) -> "RollbackAction":
        return cls(
            action_id=row["action_id"],
            poll_id=row["poll_id"],
            tier=RollbackTier(row["tier"]),
            initiators=list(initiators),
            window_expires_at=row["window_expires_at"],
            status=RollbackStatus(row["status"]),
            authority_snapshot=json.loads(row["authority_snapshot"] or "{}"),
            detection_event=json.loads(row["detection_event"])
            if row["detection_event"]
            else None,
            reason=row["reason"],
            created_at=row["created_at"],
            executed_at=row["executed_at"],
        )


@dataclass
class ShadowConsensusSnapshot:
    """Aggregate public/private divergence for one poll.

    Holds percentages and counts only; nothing here identifies a voter.
    """

    poll_id: str
    true_self_yes_pct: float
    shadow_yes_pct: float
    gap: float
    computed_at: float
    true_self_ballots: int = 0
    shadow_ballots: int = 0
    confidence_interval: float = 0.0
    interpretation: str = "aligned"
    trend: str = "stable"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "poll_id": self.poll_id,
            "true_self_yes_pct": self.true_self_yes_pct,
            "shadow_yes_pct": self.shadow_yes_pct,
            "gap": self.gap,
            "computed_at": self.computed_at,
            "true_self_ballots": self.true_self_ballots,
            "shadow_ballots": self.shadow_ballots,
            "confidence_interval": self.confidence_interval,
            "interpretation": self.interpretation,
            "trend": self.trend,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ShadowConsensusSnapshot":
        return cls(**{k: row[k] for k in cls.__dataclass_fields__})
