"""
Emergency rollback state machine.

A RESOLVED poll whose outcome was PASSED may be reversed while its rollback
window is open, by one of three authority tiers:

- founder: spends one token from a finite allowance whose authority decays
  by year and hard-expires after the transition period; executes at once;
- petition: a pending action collects signatures from verified users and
  executes when the threshold is reached;
- automatic: a registered detector reports an event that the constitutional
  guard confirms as a violation; executes at once.

Actions move ``PENDING_<TIER> -> EXECUTED | EXPIRED`` through compare-and-swap
updates. Execution moves the poll to ``rolled_back``, restores the enacted
parameter and expires the poll's other pending actions in one transaction.
"""

import logging

logger = logging.getLogger(__name__)
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..errors.exceptions import (
    ConflictError,
    NotFoundError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from ..storage.governance_store import GovernanceStore
from .collaborators import GuardedIdentity
from .config import SECONDS_PER_YEAR, GovernanceConfig
from .constitution import ConstitutionalGuard
from .core import (
    IdentityMode,
    Poll,
    PollOutcome,
    PollStatus,
    RollbackAction,
    RollbackStatus,
    RollbackTier,
    new_id,
)
from .parameters import ParameterRegistry

MAX_TOKEN_ATTEMPTS = 3


@dataclass
class DetectionEvent:
    """Evidence supplied by an automatic violation detector."""

    detector: str
    poll_id: str
    detected_at: float
    parameter_name: Optional[str] = None
    observed_value: Any = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detector": self.detector,
            "poll_id": self.poll_id,
            "detected_at": self.detected_at,
            "parameter_name": self.parameter_name,
            "observed_value": self.observed_value,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectionEvent":
        return cls(
            detector=data["detector"],
            poll_id=data["poll_id"],
            detected_at=data["detected_at"],
            parameter_name=data.get("parameter_name"),
            observed_value=data.get("observed_value"),
            description=data.get("description", ""),
        )


@dataclass
class FounderAllowance:
    """Read view of the founder's rollback token row."""

    founder_id: str
    tokens_remaining: int
    tokens_granted: int
    version: int
    granted_at: float
    expires_at: float

    def years_elapsed(self, now: float) -> int:
        return max(0, int((now - self.granted_at) // SECONDS_PER_YEAR))

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def authority_percentage(self, now: float, schedule) -> int:
        """Authority left in the current transition year; 0 once expired."""
        if self.is_expired(now):
            return 0
        year = self.years_elapsed(now)
        return schedule[year] if year < len(schedule) else 0

    def to_dict(self, now: Optional[float] = None, schedule=None) -> Dict[str, Any]:
        data = {
            "founder_id": self.founder_id,
            "tokens_remaining": self.tokens_remaining,
            "tokens_granted": self.tokens_granted,
            "granted_at": self.granted_at,
            "expires_at": self.expires_at,
        }
        if now is not None and schedule is not None:
            data["years_elapsed"] = self.years_elapsed(now)
            data["authority_percentage"] = self.authority_percentage(now, schedule)
            data["expired"] = self.is_expired(now)
        return data

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FounderAllowance":
        return cls(**{k: row[k] for k in cls.__dataclass_fields__})


class RollbackStateMachine:
    """Initiates, signs, executes and expires rollback actions."""

    def __init__(
        self,
        store: GovernanceStore,
        config: GovernanceConfig,
        parameters: ParameterRegistry,
        guard: ConstitutionalGuard,
        identity: GuardedIdentity,
    ):
        self.store = store
        self.config = config
        self.parameters = parameters
        self.guard = guard
        self.identity = identity
        self._initiators: Dict[RollbackTier, Callable[..., RollbackAction]] = {
            RollbackTier.FOUNDER: self._initiate_founder,
            RollbackTier.PETITION: self._initiate_petition,
            RollbackTier.AUTOMATIC: self._initiate_automatic,
        }

    # Founder allowance

    def ensure_founder_allowance(self, now: float) -> Optional[FounderAllowance]:
        """Grant the founder allowance once; later calls leave it untouched."""
        founder_id = self.config.founder_id
        if not founder_id:
            return None
        if self.store.seed_founder_allowance(
            founder_id,
            self.config.founder_token_allowance,
            now,
            now + self.config.founder_transition_seconds,
        ):
            logger.info(
                f"Granted {self.config.founder_token_allowance} rollback tokens to {founder_id}"
            )
        return self.founder_allowance()

    def founder_allowance(self) -> Optional[FounderAllowance]:
        if not self.config.founder_id:
            return None
        row = self.store.get_founder_allowance(self.config.founder_id)
        return FounderAllowance.from_row(row) if row else None

    # Lookups

    def get_action(self, action_id: str) -> RollbackAction:
        row = self.store.get_rollback_action(action_id)
        if row is None:
            raise NotFoundError(
                f"Rollback action {action_id} not found",
                resource_type="rollback_action",
                resource_id=action_id,
            )
        return self._load(row)

    def list_actions(
        self, poll_id: Optional[str] = None, status: Optional[RollbackStatus] = None
    ) -> List[RollbackAction]:
        rows = self.store.list_rollback_actions(poll_id, status.value if status else None)
        return [self._load(row) for row in rows]

    def _load(self, row: Dict[str, Any]) -> RollbackAction:
        return RollbackAction.from_row(row, self.store.list_rollback_signers(row["action_id"]))

    # Initiation

    def initiate(
        self,
        tier: RollbackTier,
        poll_id: str,
        initiator_id: str,
        now: float,
        reason: Optional[str] = None,
        detection_event: Optional[DetectionEvent] = None,
    ) -> RollbackAction:
        """Open a rollback action; founder and automatic tiers execute at once."""
        return self._initiators[tier](poll_id, initiator_id, now, reason, detection_event)

    def _reversible_poll(self, poll_id: str, now: float) -> Poll:
        row = self.store.get_poll(poll_id)
        if row is None:
            raise NotFoundError(
                f"Poll {poll_id} not found", resource_type="poll", resource_id=poll_id
            )
        poll = Poll.from_row(row)
        if poll.status == PollStatus.ROLLED_BACK:
            raise StateError(
                f"Poll {poll_id} is already rolled back",
                current_state=poll.status.value,
                expected_state=PollStatus.RESOLVED.value,
            )
        if poll.status != PollStatus.RESOLVED:
            raise StateError(
                f"Poll {poll_id} has not been resolved",
                current_state=poll.status.value,
                expected_state=PollStatus.RESOLVED.value,
            )
        if poll.outcome != PollOutcome.PASSED:
            raise StateError(
                f"Poll {poll_id} did not pass; nothing was enacted",
                current_state=poll.outcome.value if poll.outcome else "none",
                expected_state=PollOutcome.PASSED.value,
            )
        if now >= poll.rollback_window_expires_at:
            raise StateError(
                f"Rollback window for poll {poll_id} has closed",
                current_state="window_expired",
                expected_state="window_open",
            )
        return poll

    def _new_action(
        self,
        poll: Poll,
        tier: RollbackTier,
        initiator_id: str,
        now: float,
        reason: Optional[str],
        snapshot: Dict[str, Any],
        detection_event: Optional[DetectionEvent] = None,
    ) -> str:
        action_id = new_id("rollback")
        self.store.insert_rollback_action(
            {
                "action_id": action_id,
                "poll_id": poll.poll_id,
                "tier": tier.value,
                "status": RollbackStatus.PENDING.value,
                "window_expires_at": poll.rollback_window_expires_at,
                "authority_snapshot": snapshot,
                "detection_event": detection_event.to_dict() if detection_event else None,
                "reason": reason,
                "created_at": now,
            }
        )
        self.store.add_rollback_signature(action_id, initiator_id, now)
        return action_id

    def _initiate_founder(
        self,
        poll_id: str,
        initiator_id: str,
        now: float,
        reason: Optional[str],
        detection_event: Optional[DetectionEvent],
    ) -> RollbackAction:
        founder_id = self.config.founder_id
        if not founder_id or initiator_id != founder_id:
            raise UnauthorizedError(
                "Only the founder may use the founder tier",
                user_id=initiator_id,
                action="initiate_rollback",
            )

        with self.store.transaction():
            poll = self._reversible_poll(poll_id, now)
            allowance = self.founder_allowance()
            if allowance is None or allowance.is_expired(now):
                raise UnauthorizedError(
                    "Founder rollback authority has expired",
                    user_id=initiator_id,
                    action="initiate_rollback",
                )

            allowance = self._consume_token(allowance)
            snapshot = {
                "tokens_before": allowance.tokens_remaining + 1,
                "tokens_remaining": allowance.tokens_remaining,
                "authority_percentage": allowance.authority_percentage(
                    now, self.config.founder_authority_schedule
                ),
                "years_elapsed": allowance.years_elapsed(now),
                "expires_at": allowance.expires_at,
            }
            action_id = self._new_action(
                poll, RollbackTier.FOUNDER, initiator_id, now, reason, snapshot
            )
            self._execute(action_id, poll, now)

        logger.warning(
            f"Founder rolled back poll {poll_id}; "
            f"{snapshot['tokens_remaining']} token(s) left"
        )
        return self.get_action(action_id)

    def _consume_token(self, allowance: FounderAllowance) -> FounderAllowance:
        """Spend one token through the versioned conditional decrement."""
        for _ in range(MAX_TOKEN_ATTEMPTS):
            if allowance.tokens_remaining <= 0:
                raise StateError(
                    "Founder has no rollback tokens left",
                    current_state="tokens=0",
                    expected_state="tokens>0",
                )
            if self.store.consume_founder_token(allowance.founder_id, allowance.version):
                return self.founder_allowance()
            allowance = self.founder_allowance()
        raise ConflictError(
            "Founder allowance is being modified concurrently",
            error_code="FOUNDER_TOKEN_CONTENTION",
            retryable=True,
        )

    def _check_signer(self, user_id: str) -> None:
        if not self.identity.is_verified_human(user_id, IdentityMode.TRUE_SELF):
            raise UnauthorizedError(
                "Petition signers must be verified humans",
                user_id=user_id,
                action="sign_rollback_petition",
            )
        score = self.identity.poh_score(user_id)
        if score < self.config.petition_min_poh_score:
            raise UnauthorizedError(
                f"Proof-of-humanity score {score} below the "
                f"{self.config.petition_min_poh_score} required to sign",
                user_id=user_id,
                action="sign_rollback_petition",
            )

    def _initiate_petition(
        self,
        poll_id: str,
        initiator_id: str,
        now: float,
        reason: Optional[str],
        detection_event: Optional[DetectionEvent],
    ) -> RollbackAction:
        self._check_signer(initiator_id)

        with self.store.transaction():
            poll = self._reversible_poll(poll_id, now)
            pending = [
                row
                for row in self.store.list_rollback_actions(
                    poll_id, RollbackStatus.PENDING.value
                )
                if row["tier"] == RollbackTier.PETITION.value
            ]
            if pending:
                raise ConflictError(
                    f"A petition is already collecting signatures for poll {poll_id}",
                    error_code="PETITION_EXISTS",
                    metadata={"action_id": pending[0]["action_id"]},
                )
            threshold = self.config.petition_signature_threshold
            action_id = self._new_action(
                poll,
                RollbackTier.PETITION,
                initiator_id,
                now,
                reason,
                {"signature_threshold": threshold},
            )
            if threshold <= 1:
                self._execute(action_id, poll, now)

        logger.info(f"Rollback petition {action_id} opened on poll {poll_id}")
        return self.get_action(action_id)

    def sign_petition(self, action_id: str, user_id: str, now: float) -> RollbackAction:
        """Add a signature; the signature that reaches the threshold executes."""
        self._check_signer(user_id)

        with self.store.transaction():
            action = self.get_action(action_id)
            if action.tier != RollbackTier.PETITION:
                raise ValidationError(
                    "Only petition actions take signatures",
                    field="action_id",
                    value=action_id,
                )
            if action.status != RollbackStatus.PENDING:
                raise StateError(
                    f"Rollback action {action_id} is {action.status.value}",
                    current_state=action.state_label,
                    expected_state="PENDING_PETITION",
                )
            poll = self._reversible_poll(action.poll_id, now)
            if not self.store.add_rollback_signature(action_id, user_id, now):
                raise ConflictError(
                    "User has already signed this petition",
                    error_code="DUPLICATE_SIGNATURE",
                )
            signatures = len(self.store.list_rollback_signers(action_id))
            if signatures >= self.config.petition_signature_threshold:
                self._execute(action_id, poll, now)
                logger.warning(
                    f"Petition {action_id} reached {signatures} signatures; "
                    f"poll {poll.poll_id} rolled back"
                )

        return self.get_action(action_id)

    def _initiate_automatic(
        self,
        poll_id: str,
        initiator_id: str,
        now: float,
        reason: Optional[str],
        detection_event: Optional[DetectionEvent],
    ) -> RollbackAction:
        if detection_event is None:
            raise ValidationError(
                "Automatic rollback requires a detection event", field="detection_event"
            )
        if detection_event.detector not in self.config.automatic_detectors:
            raise UnauthorizedError(
                f"Detector '{detection_event.detector}' is not registered",
                user_id=detection_event.detector,
                action="initiate_rollback",
            )
        if detection_event.poll_id != poll_id:
            raise ValidationError(
                "Detection event refers to a different poll",
                field="detection_event.poll_id",
                value=detection_event.poll_id,
                expected=poll_id,
            )

        with self.store.transaction():
            poll = self._reversible_poll(poll_id, now)
            if not (
                poll.resolved_at <= detection_event.detected_at < poll.rollback_window_expires_at
            ):
                raise StateError(
                    "Detection falls outside the rollback window",
                    current_state="outside_window",
                    expected_state="inside_window",
                )

            parameter_name = detection_event.parameter_name
            observed_value = detection_event.observed_value
            if parameter_name is None and poll.payload is not None:
                parameter_name = poll.payload.parameter_name
                observed_value = poll.payload.proposed_value
            violations = self.guard.find_violations(
                parameter_name, observed_value, detection_event.description or None
            )
            if not violations:
                raise ValidationError(
                    "Detection event does not describe a constitutional violation",
                    field="detection_event",
                    value=detection_event.detector,
                )

            snapshot = {
                "detector": detection_event.detector,
                "articles": [v.article_number for v in violations],
            }
            action_id = self._new_action(
                poll,
                RollbackTier.AUTOMATIC,
                initiator_id or detection_event.detector,
                now,
                reason or violations[0].reason,
                snapshot,
                detection_event,
            )
            self._execute(action_id, poll, now)

        logger.warning(
            f"Automatic rollback of poll {poll_id} by {detection_event.detector} "
            f"(articles {snapshot['articles']})"
        )
        return self.get_action(action_id)

    # Execution and expiry

    def _execute(self, action_id: str, poll: Poll, now: float) -> None:
        """Reverse ``poll``; must run inside the caller's transaction."""
        if not self.store.transition_poll(
            poll.poll_id, PollStatus.RESOLVED.value, PollStatus.ROLLED_BACK.value
        ):
            raise StateError(
                f"Poll {poll.poll_id} was rolled back concurrently",
                current_state=PollStatus.ROLLED_BACK.value,
                expected_state=PollStatus.RESOLVED.value,
            )

        if poll.payload is not None:
            self.parameters.revert(
                poll.payload.parameter_name,
                poll.payload.previous_value,
                now,
                self.config.rollback_freeze_threshold,
                self.config.rollback_freeze_days,
            )

        if not self.store.transition_rollback_action(
            action_id,
            RollbackStatus.PENDING.value,
            RollbackStatus.EXECUTED.value,
            executed_at=now,
        ):
            raise StateError(
                f"Rollback action {action_id} is no longer pending",
                current_state="not_pending",
                expected_state=RollbackStatus.PENDING.value,
            )

        for row in self.store.list_rollback_actions(
            poll.poll_id, RollbackStatus.PENDING.value
        ):
            self.store.transition_rollback_action(
                row["action_id"], RollbackStatus.PENDING.value, RollbackStatus.EXPIRED.value
            )

    def expire_stale(self, now: float) -> List[RollbackAction]:
        """Expire pending actions whose window has closed."""
        expired = []
        for row in self.store.list_expired_rollback_actions(now):
            if self.store.transition_rollback_action(
                row["action_id"], RollbackStatus.PENDING.value, RollbackStatus.EXPIRED.value
            ):
                expired.append(self.get_action(row["action_id"]))
        if expired:
            logger.info(f"Expired {len(expired)} stale rollback action(s)")
        return expired
