"""
Vote ledger.

Records first ballots and ballot changes for each ``(poll, voter, mode)``.
The section draw for a key is persisted by the first vote with an
insert-if-absent, so racing first votes all read back one stored draw, and
changes reuse the stored multiplier rather than drawing again.

A ballot folds in the delegators whose live delegation covers the poll,
except those who voted directly or are already folded into another ballot
of the same mode. The stored weight is the weight at record time; reads
report the weight the tally currently counts.
"""

import logging

logger = logging.getLogger(__name__)
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from ..errors.exceptions import (
    ConflictError,
    NotFoundError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from ..storage.governance_store import GovernanceStore
from .collaborators import GuardedIdentity
from .config import GovernanceConfig
from .core import IdentityMode, Poll, PollStatus, SectionDraw, Vote, VoteChoice, new_id
from .delegation import DelegationResolver
from .parameters import ParameterRegistry
from .sections import SectionAssigner, jittered_timestamp
from .tally import ballot_weight, counted_delegators


@dataclass
class BallotSettings:
    """Live limits applied when a ballot is recorded."""

    max_changes: int
    jitter_max_seconds: int
    multiplier_min: float
    multiplier_max: float


class VoteLedger:
    """Casts and changes dual-identity ballots."""

    def __init__(
        self,
        store: GovernanceStore,
        config: GovernanceConfig,
        assigner: SectionAssigner,
        parameters: ParameterRegistry,
        identity: GuardedIdentity,
        delegations: DelegationResolver,
    ):
        self.store = store
        self.config = config
        self.assigner = assigner
        self.parameters = parameters
        self.identity = identity
        self.delegations = delegations

    def settings(self) -> BallotSettings:
        """Ballot limits, preferring live whitelist values over configuration."""
        low = float(self.parameters.live_value("section_multiplier_min", self.config.multiplier_min))
        high = float(self.parameters.live_value("section_multiplier_max", self.config.multiplier_max))
        if not 0 < low < high:
            low, high = self.config.multiplier_min, self.config.multiplier_max
        return BallotSettings(
            max_changes=int(
                self.parameters.live_value("max_vote_changes_per_poll", self.config.max_vote_changes)
            ),
            jitter_max_seconds=int(
                self.parameters.live_value(
                    "vote_timing_jitter_max_seconds", self.config.jitter_max_seconds
                )
            ),
            multiplier_min=low,
            multiplier_max=high,
        )

    def _validate_reasoning(self, reasoning: Optional[str]) -> None:
        if reasoning is not None and len(reasoning) > self.config.max_reasoning_length:
            raise ValidationError(
                "Reasoning too long",
                field="reasoning",
                value=len(reasoning),
                expected=f"<= {self.config.max_reasoning_length}",
            )

    def _require_verified(self, voter_id: str, mode: IdentityMode) -> None:
        if not self.identity.is_verified_human(voter_id, mode):
            raise UnauthorizedError(
                f"Voter is not verified in {mode.value} mode",
                user_id=voter_id,
                action="vote",
            )

    def _open_poll(self, poll_id: str, now: float) -> Poll:
        row = self.store.get_poll(poll_id)
        if row is None:
            raise NotFoundError(
                f"Poll {poll_id} not found", resource_type="poll", resource_id=poll_id
            )
        poll = Poll.from_row(row)
        if not poll.accepts_votes(now):
            state = poll.status.value
            if poll.status == PollStatus.OPEN and now >= poll.closes_at:
                state = "expired"
            raise StateError(
                f"Poll {poll_id} is not accepting votes",
                current_state=state,
                expected_state=PollStatus.OPEN.value,
            )
        return poll

    def _unavailable_delegators(
        self, poll_id: str, voter_id: str, mode: IdentityMode
    ) -> Set[str]:
        """Direct voters in ``mode`` and delegators folded into other ballots."""
        rows = [r for r in self.store.list_votes(poll_id) if r["identity_mode"] == mode.value]
        folded = self.store.list_vote_delegators(poll_id)
        taken = {row["voter_id"] for row in rows}
        for row in rows:
            if row["voter_id"] != voter_id:
                taken.update(folded.get(row["vote_id"], []))
        return taken

    def _weight(
        self, poll: Poll, voter_id: str, mode: IdentityMode, multiplier: float, now: float
    ) -> Tuple[List[str], float, float]:
        """Folded-in delegators, delegated weight and effective weight."""
        delegators = self.delegations.delegator_ids_for(
            voter_id,
            mode,
            poll,
            now,
            exclude=self._unavailable_delegators(poll.poll_id, voter_id, mode),
        )
        base = self.config.base_vote_weight
        return (
            delegators,
            base * len(delegators),
            ballot_weight(base, len(delegators), multiplier),
        )

    def cast_vote(
        self,
        poll_id: str,
        voter_id: str,
        mode: IdentityMode,
        choice: VoteChoice,
        now: float,
        reasoning: Optional[str] = None,
    ) -> Vote:
        """Record the first ballot for ``(poll, voter, mode)``."""
        self._validate_reasoning(reasoning)
        self._require_verified(voter_id, mode)
        settings = self.settings()

        with self.store.transaction():
            poll = self._open_poll(poll_id, now)
            if self.store.get_vote(poll_id, voter_id, mode.value) is not None:
                raise ConflictError(
                    "A ballot already exists for this identity; use change_vote",
                    error_code="DUPLICATE_VOTE",
                )

            draw = self._section_draw(poll_id, voter_id, mode, settings, now)
            delegators, delegated, effective = self._weight(
                poll, voter_id, mode, draw.multiplier, now
            )
            vote = Vote(
                vote_id=new_id("vote"),
                poll_id=poll_id,
                voter_id=voter_id,
                identity_mode=mode,
                section_index=draw.section_index,
                multiplier=draw.multiplier,
                choice=choice,
                effective_weight=effective,
                cast_at=now,
                displayed_at=jittered_timestamp(
                    now, poll.closes_at, settings.jitter_max_seconds
                ),
                change_count=0,
                reasoning=reasoning,
                delegated_weight=delegated,
                delegator_ids=delegators,
            )
            if not self.store.insert_vote(self._row(vote)):
                raise ConflictError(
                    "A ballot already exists for this identity; use change_vote",
                    error_code="DUPLICATE_VOTE",
                )
            self.store.set_vote_delegators(vote.vote_id, delegators)
            self._record_version(vote, 0, now)

        logger.debug(f"Ballot {vote.vote_id} recorded on poll {poll_id}")
        return vote

    def change_vote(
        self,
        poll_id: str,
        voter_id: str,
        mode: IdentityMode,
        choice: VoteChoice,
        now: float,
        reasoning: Optional[str] = None,
    ) -> Vote:
        """Replace the choice of an existing ballot, keeping its multiplier."""
        self._validate_reasoning(reasoning)
        self._require_verified(voter_id, mode)
        settings = self.settings()

        with self.store.transaction():
            poll = self._open_poll(poll_id, now)
            row = self.store.get_vote(poll_id, voter_id, mode.value)
            if row is None:
                raise NotFoundError(
                    "No ballot to change for this identity",
                    resource_type="vote",
                    resource_id=poll_id,
                )
            current = Vote.from_row(row)
            if current.change_count >= settings.max_changes:
                raise StateError(
                    f"Ballot change limit of {settings.max_changes} reached",
                    current_state=f"changes={current.change_count}",
                    expected_state=f"changes<{settings.max_changes}",
                )

            delegators, delegated, effective = self._weight(
                poll, voter_id, mode, current.multiplier, now
            )
            displayed_at = jittered_timestamp(
                now, poll.closes_at, settings.jitter_max_seconds
            )
            fields = {
                "choice": choice.value,
                "delegated_weight": delegated,
                "effective_weight": effective,
                "cast_at": now,
                "displayed_at": displayed_at,
                "reasoning": reasoning if reasoning is not None else current.reasoning,
            }
            if not self.store.update_vote_within_limit(
                current.vote_id, settings.max_changes, fields
            ):
                raise StateError(
                    f"Ballot change limit of {settings.max_changes} reached",
                    current_state=f"changes>={settings.max_changes}",
                    expected_state=f"changes<{settings.max_changes}",
                )
            self.store.set_vote_delegators(current.vote_id, delegators)

            vote = Vote.from_row(
                self.store.get_vote(poll_id, voter_id, mode.value), delegators
            )
            self._record_version(vote, vote.change_count, now)

        return vote

    def _section_draw(
        self,
        poll_id: str,
        voter_id: str,
        mode: IdentityMode,
        settings: BallotSettings,
        now: float,
    ) -> SectionDraw:
        candidate = self.assigner.draw(
            poll_id, voter_id, mode, settings.multiplier_min, settings.multiplier_max
        )
        stored = self.store.get_or_create_section_draw(
            poll_id,
            voter_id,
            mode.value,
            candidate.section_index,
            candidate.multiplier,
            now,
        )
        return SectionDraw(stored["section_index"], stored["multiplier"])

    def _record_version(self, vote: Vote, version: int, now: float) -> None:
        self.store.insert_vote_history(
            {
                "vote_id": vote.vote_id,
                "version": version,
                "choice": vote.choice.value,
                "effective_weight": vote.effective_weight,
                "displayed_at": vote.displayed_at,
                "recorded_at": now,
            }
        )

    @staticmethod
    def _row(vote: Vote) -> Dict[str, Any]:
        return {
            "vote_id": vote.vote_id,
            "poll_id": vote.poll_id,
            "voter_id": vote.voter_id,
            "identity_mode": vote.identity_mode.value,
            "section_index": vote.section_index,
            "multiplier": vote.multiplier,
            "choice": vote.choice.value,
            "delegated_weight": vote.delegated_weight,
            "effective_weight": vote.effective_weight,
            "cast_at": vote.cast_at,
            "displayed_at": vote.displayed_at,
            "change_count": vote.change_count,
            "reasoning": vote.reasoning,
        }

    def get_vote(self, poll_id: str, voter_id: str, mode: IdentityMode) -> Vote:
        for vote in self.list_votes(poll_id):
            if vote.voter_id == voter_id and vote.identity_mode == mode:
                return vote
        raise NotFoundError(
            "No ballot for this identity", resource_type="vote", resource_id=poll_id
        )

    def list_votes(self, poll_id: str) -> List[Vote]:
        """Ballots with the delegators and weight the tally counts for each."""
        rows = self.store.list_votes(poll_id)
        counted = counted_delegators(rows, self.store.list_vote_delegators(poll_id))
        base = self.config.base_vote_weight
        votes = []
        for row in rows:
            vote = Vote.from_row(row, counted[row["vote_id"]])
            vote.delegated_weight = base * len(vote.delegator_ids)
            vote.effective_weight = ballot_weight(
                base, len(vote.delegator_ids), vote.multiplier
            )
            votes.append(vote)
        return votes

    def get_history(
        self, poll_id: str, voter_id: str, mode: IdentityMode
    ) -> List[Dict[str, Any]]:
        """Ballot versions for the voter's own review; true times are omitted."""
        vote = self.get_vote(poll_id, voter_id, mode)
        return [
            {
                "version": row["version"],
                "choice": row["choice"],
                "effective_weight": row["effective_weight"],
                "displayed_at": row["displayed_at"],
            }
            for row in self.store.list_vote_history(vote.vote_id)
        ]
