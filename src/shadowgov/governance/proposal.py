"""
Poll registry.

Owns the poll lifecycle up to resolution: validated creation, withdrawal
before any vote, lookups and the compare-and-swap status transitions the
engine uses to close and resolve a poll exactly once.
"""

import logging

logger = logging.getLogger(__name__)
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..errors.exceptions import (
    NotFoundError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from ..storage.governance_store import GovernanceStore
from .collaborators import GuardedIdentity
from .config import SECONDS_PER_DAY, GovernanceConfig
from .constitution import ConstitutionalGuard
from .core import (
    IdentityMode,
    ParameterChange,
    Poll,
    PollKind,
    PollOutcome,
    PollStatus,
    QuorumConfig,
    QuorumModel,
    encode_value,
    new_id,
)
from .parameters import ParameterRegistry


@dataclass
class PollRequest:
    """Input to ``create_poll``.

    ``parameter_name``/``proposed_value`` are required for parameter votes and
    optional for emergency polls. ``quorum`` and ``requires_supermajority``
    are honoured only for general polls; other kinds derive them.
    """

    kind: PollKind
    title: str
    creator_id: str
    description: str = ""
    creator_mode: IdentityMode = IdentityMode.TRUE_SELF
    parameter_name: Optional[str] = None
    proposed_value: Any = None
    duration_days: Optional[float] = None
    quorum: Optional[QuorumConfig] = None
    requires_supermajority: Optional[bool] = None


@dataclass
class PollPlan:
    """Kind-specific configuration computed for a new poll."""

    quorum: QuorumConfig
    requires_supermajority: bool
    duration_days: float
    early_close: bool = False
    payload: Optional[ParameterChange] = None


class PollRegistry:
    """Creates, looks up and transitions polls."""

    def __init__(
        self,
        store: GovernanceStore,
        config: GovernanceConfig,
        guard: ConstitutionalGuard,
        parameters: ParameterRegistry,
        identity: GuardedIdentity,
    ):
        self.store = store
        self.config = config
        self.guard = guard
        self.parameters = parameters
        self.identity = identity
        self._planners: Dict[PollKind, Callable[[PollRequest, float], PollPlan]] = {
            PollKind.PARAMETER_VOTE: self._plan_parameter_vote,
            PollKind.GENERAL: self._plan_general,
            PollKind.EMERGENCY: self._plan_emergency,
        }

    def create_poll(self, request: PollRequest, now: float) -> Poll:
        """Validate ``request`` completely, then open the poll."""
        self._validate_text(request)
        if request.kind == PollKind.PARAMETER_VOTE and not request.parameter_name:
            raise ValidationError(
                "Parameter polls require a parameter name", field="parameter_name"
            )
        if request.parameter_name and request.proposed_value is None:
            raise ValidationError(
                "Parameter change requires a proposed value", field="proposed_value"
            )

        self.guard.check(
            parameter_name=request.parameter_name,
            proposed_value=request.proposed_value,
            description=f"{request.title}\n{request.description}",
        )

        plan = self._planners[request.kind](request, now)
        self._check_creator(request)

        poll = Poll(
            poll_id=new_id("poll"),
            kind=request.kind,
            title=request.title.strip(),
            description=request.description,
            creator_id=request.creator_id,
            status=PollStatus.OPEN,
            quorum=plan.quorum,
            requires_supermajority=plan.requires_supermajority,
            early_close=plan.early_close,
            payload=plan.payload,
            opens_at=now,
            closes_at=now + plan.duration_days * SECONDS_PER_DAY,
            created_at=now,
        )
        self.store.insert_poll(poll.to_row())
        logger.info(
            f"Opened {poll.kind.value} poll {poll.poll_id} closing at {poll.closes_at}"
        )
        return poll

    def _validate_text(self, request: PollRequest) -> None:
        title = (request.title or "").strip()
        if not self.config.min_title_length <= len(title) <= self.config.max_title_length:
            raise ValidationError(
                "Title length out of range",
                field="title",
                value=len(title),
                expected=f"{self.config.min_title_length}-{self.config.max_title_length}",
            )
        if len(request.description or "") > self.config.max_description_length:
            raise ValidationError(
                "Description too long",
                field="description",
                value=len(request.description),
                expected=f"<= {self.config.max_description_length}",
            )
        if not request.creator_id:
            raise ValidationError("Creator is required", field="creator_id")

    def _check_duration(self, requested: Optional[float], minimum: float, default: float) -> float:
        duration = default if requested is None else requested
        if duration < minimum or duration <= 0:
            raise ValidationError(
                "Poll duration below minimum",
                field="duration_days",
                value=duration,
                expected=f">= {minimum}",
            )
        if duration > self.config.max_poll_duration_days:
            raise ValidationError(
                "Poll duration above maximum",
                field="duration_days",
                value=duration,
                expected=f"<= {self.config.max_poll_duration_days}",
            )
        return duration

    def _default_quorum(self, factor: float = 1.0) -> QuorumConfig:
        return QuorumConfig(
            model=QuorumModel(self.config.default_quorum_model),
            absolute_minimum=self.config.default_quorum_absolute * factor,
            percentage_minimum=self.config.default_quorum_percentage * factor,
        )

    def _plan_parameter_vote(self, request: PollRequest, now: float) -> PollPlan:
        entry, value = self.parameters.validate_change(
            request.parameter_name, request.proposed_value, now
        )
        duration = self._check_duration(
            request.duration_days,
            entry.minimum_duration_days,
            max(entry.minimum_duration_days, self.config.default_poll_duration_days),
        )
        return PollPlan(
            quorum=entry.quorum,
            requires_supermajority=entry.requires_supermajority,
            duration_days=duration,
            payload=ParameterChange(entry.name, value, entry.current_value),
        )

    def _plan_general(self, request: PollRequest, now: float) -> PollPlan:
        if request.parameter_name:
            raise ValidationError(
                "General polls cannot change parameters; use a parameter vote",
                field="parameter_name",
            )
        duration = self._check_duration(
            request.duration_days, 0.0, self.config.default_poll_duration_days
        )
        return PollPlan(
            quorum=request.quorum or self._default_quorum(),
            requires_supermajority=bool(request.requires_supermajority),
            duration_days=duration,
        )

    def _plan_emergency(self, request: PollRequest, now: float) -> PollPlan:
        payload = None
        if request.parameter_name:
            entry, value = self.parameters.validate_change(
                request.parameter_name, request.proposed_value, now
            )
            if not entry.is_emergency_parameter:
                raise ValidationError(
                    f"Parameter '{entry.name}' cannot be changed by emergency poll",
                    field="parameter_name",
                    value=entry.name,
                )
            payload = ParameterChange(entry.name, value, entry.current_value)
        duration = self._check_duration(
            request.duration_days, 0.0, self.config.emergency_poll_duration_days
        )
        return PollPlan(
            quorum=self._default_quorum(self.config.emergency_quorum_factor),
            requires_supermajority=True,
            duration_days=duration,
            early_close=True,
            payload=payload,
        )

    def _check_creator(self, request: PollRequest) -> None:
        if not self.identity.is_verified_human(request.creator_id, request.creator_mode):
            raise UnauthorizedError(
                "Poll creator is not a verified human",
                user_id=request.creator_id,
                action="create_poll",
            )
        required = self.parameters.live_value(
            "minimum_reputation_to_create_poll", self.config.min_reputation_to_create_poll
        )
        reputation = self.identity.reputation_score(request.creator_id)
        if reputation < required:
            raise UnauthorizedError(
                f"Reputation {reputation} below the {required} required to create a poll",
                user_id=request.creator_id,
                action="create_poll",
            )

    def get_poll(self, poll_id: str) -> Poll:
        row = self.store.get_poll(poll_id)
        if row is None:
            raise NotFoundError(
                f"Poll {poll_id} not found", resource_type="poll", resource_id=poll_id
            )
        return Poll.from_row(row)

    def list_polls(self, status: Optional[PollStatus] = None) -> List[Poll]:
        rows = self.store.list_polls(status.value if status else None)
        return [Poll.from_row(row) for row in rows]

    def withdraw_poll(self, poll_id: str, requester_id: str, now: float) -> Poll:
        """Withdraw an open poll that has no votes yet."""
        with self.store.transaction():
            poll = self.get_poll(poll_id)
            if poll.creator_id != requester_id:
                raise UnauthorizedError(
                    "Only the creator may withdraw a poll",
                    user_id=requester_id,
                    action="withdraw_poll",
                )
            if poll.status != PollStatus.OPEN:
                raise StateError(
                    f"Poll {poll_id} is {poll.status.value}",
                    current_state=poll.status.value,
                    expected_state=PollStatus.OPEN.value,
                )
            if self.store.count_votes(poll_id) > 0:
                raise StateError(
                    "Poll already has votes and cannot be withdrawn",
                    current_state="voted",
                    expected_state="no_votes",
                )
            if not self.store.transition_poll(
                poll_id, PollStatus.OPEN.value, PollStatus.WITHDRAWN.value, closed_at=now
            ):
                raise StateError(
                    f"Poll {poll_id} changed state concurrently",
                    current_state=self.get_poll(poll_id).status.value,
                    expected_state=PollStatus.OPEN.value,
                )
        logger.info(f"Poll {poll_id} withdrawn by its creator")
        return self.get_poll(poll_id)

    def mark_closed(self, poll_id: str, now: float) -> bool:
        return self.store.transition_poll(
            poll_id, PollStatus.OPEN.value, PollStatus.CLOSED.value, closed_at=now
        )

    def mark_resolved(
        self,
        poll: Poll,
        outcome: PollOutcome,
        now: float,
    ) -> bool:
        fields = {
            "outcome": outcome.value,
            "resolved_at": now,
            "rollback_window_expires_at": now + self.config.rollback_window_seconds,
        }
        if poll.payload is not None:
            fields["previous_value"] = encode_value(poll.payload.previous_value)
        return self.store.transition_poll(
            poll.poll_id, PollStatus.CLOSED.value, PollStatus.RESOLVED.value, **fields
        )

    def latch_quorum(self, poll_id: str, now: float) -> bool:
        latched = self.store.latch_quorum(poll_id, now)
        if latched:
            logger.info(f"Poll {poll_id} reached quorum")
        return latched
