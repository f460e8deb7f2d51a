"""
Conviction staking pool.

Users escrow tokens on a poll's outcome while it is open. At resolution the
positions that called the outcome split the losing side's escrow pro rata
after the protocol fee; a NO_QUORUM result, a withdrawn poll or a round with
no winning position refunds everyone in full. Every position moves out of
``active`` through a compare-and-swap, so settlement happens once.
"""

import logging

logger = logging.getLogger(__name__)
import math
from dataclasses import dataclass, field
from typing import Dict, List

from ..errors.exceptions import (
    ConflictError,
    NotFoundError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from ..storage.governance_store import GovernanceStore
from .collaborators import GuardedEconomy, GuardedIdentity
from .config import GovernanceConfig
from .core import (
    IdentityMode,
    Poll,
    PollOutcome,
    StakePosition,
    StakeStatus,
    new_id,
)

STAKEABLE_OUTCOMES = (PollOutcome.PASSED, PollOutcome.FAILED)


@dataclass
class SettlementSummary:
    """Totals moved by one settlement run."""

    poll_id: str
    outcome: PollOutcome
    winners: int = 0
    losers: int = 0
    refunded: int = 0
    total_pool: int = 0
    fee: int = 0
    payouts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "poll_id": self.poll_id,
            "outcome": self.outcome.value,
            "winners": self.winners,
            "losers": self.losers,
            "refunded": self.refunded,
            "total_pool": self.total_pool,
            "fee": self.fee,
        }


def compute_payouts(
    positions: List[StakePosition], outcome: PollOutcome, fee_rate: float
):
    """Split the losing pool among winners.

    Returns ``(payouts, fee)`` where ``payouts`` maps stake ids of winning
    positions to stake plus share. Flooring dust is added to the fee.
    """
    winners = [p for p in positions if p.predicted_outcome == outcome]
    losers = [p for p in positions if p.predicted_outcome != outcome]
    winning_total = sum(p.amount for p in winners)
    losing_total = sum(p.amount for p in losers)

    fee = math.ceil(losing_total * fee_rate) if losing_total else 0
    distributable = losing_total - fee
    payouts = {}
    distributed = 0
    for position in winners:
        share = position.amount * distributable // winning_total
        payouts[position.stake_id] = position.amount + share
        distributed += share
    return payouts, fee + (distributable - distributed)


class StakingPool:
    """Escrows and settles conviction stakes."""

    def __init__(
        self,
        store: GovernanceStore,
        config: GovernanceConfig,
        economy: GuardedEconomy,
        identity: GuardedIdentity,
    ):
        self.store = store
        self.config = config
        self.economy = economy
        self.identity = identity

    def stake(
        self,
        poll_id: str,
        user_id: str,
        mode: IdentityMode,
        predicted_outcome: PollOutcome,
        amount: int,
        now: float,
    ) -> StakePosition:
        """Escrow ``amount`` on ``predicted_outcome``; atomic with the position row."""
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Stake must be a whole number of tokens", field="amount", value=amount)
        if amount < self.config.minimum_stake:
            raise ValidationError(
                f"Minimum stake is {self.config.minimum_stake}",
                field="amount",
                value=amount,
                expected=f">= {self.config.minimum_stake}",
            )
        if predicted_outcome not in STAKEABLE_OUTCOMES:
            raise ValidationError(
                "Stakes predict PASSED or FAILED",
                field="predicted_outcome",
                value=predicted_outcome.value,
            )
        if not self.identity.is_verified_human(user_id, mode):
            raise UnauthorizedError(
                f"User is not verified in {mode.value} mode", user_id=user_id, action="stake"
            )

        with self.store.transaction():
            row = self.store.get_poll(poll_id)
            if row is None:
                raise NotFoundError(
                    f"Poll {poll_id} not found", resource_type="poll", resource_id=poll_id
                )
            poll = Poll.from_row(row)
            if not poll.accepts_votes(now):
                raise StateError(
                    f"Poll {poll_id} is not open for stakes",
                    current_state=poll.status.value,
                    expected_state="open",
                )

            position = StakePosition(
                stake_id=new_id("stake"),
                poll_id=poll_id,
                user_id=user_id,
                identity_mode=mode,
                predicted_outcome=predicted_outcome,
                amount=amount,
                created_at=now,
            )
            if not self.store.insert_stake(position.to_dict()):
                raise ConflictError(
                    "A stake already exists for this identity on this poll",
                    error_code="DUPLICATE_STAKE",
                )
            # last step: a failed escrow rolls the position back, and one that
            # lands after its timeout is released by the gateway
            self.economy.escrow(user_id, mode, amount, position.stake_id)

        logger.info(f"Stake {position.stake_id} of {amount} placed on poll {poll_id}")
        return position

    def positions(self, poll_id: str) -> List[StakePosition]:
        return [StakePosition.from_row(r) for r in self.store.list_stakes(poll_id)]

    def settle(self, poll: Poll, outcome: PollOutcome, now: float) -> SettlementSummary:
        """Settle every active position on ``poll`` for ``outcome``."""
        active = [
            StakePosition.from_row(r)
            for r in self.store.list_stakes(poll.poll_id, StakeStatus.ACTIVE.value)
        ]
        summary = SettlementSummary(
            poll_id=poll.poll_id,
            outcome=outcome,
            total_pool=sum(p.amount for p in active),
        )
        if not active:
            return summary

        if outcome not in STAKEABLE_OUTCOMES or not any(
            p.predicted_outcome == outcome for p in active
        ):
            return self._refund(poll.poll_id, active, summary, now)

        payouts, fee = compute_payouts(active, outcome, self.config.protocol_fee_rate)
        for position in active:
            if position.stake_id in payouts:
                amount = payouts[position.stake_id]
                if self.store.settle_stake(
                    position.stake_id, StakeStatus.WON.value, amount, now
                ):
                    self.economy.release(
                        position.user_id, position.identity_mode, amount, position.stake_id
                    )
                    summary.winners += 1
                    summary.payouts[position.stake_id] = amount
            elif self.store.settle_stake(position.stake_id, StakeStatus.LOST.value, 0, now):
                summary.losers += 1

        if fee > 0:
            self.economy.burn(fee, f"fee:{poll.poll_id}")
        summary.fee = fee
        logger.info(
            f"Settled {summary.winners} winning and {summary.losers} losing stakes "
            f"on poll {poll.poll_id} (fee {fee})"
        )
        return summary

    def refund_all(self, poll_id: str, now: float) -> SettlementSummary:
        active = [
            StakePosition.from_row(r)
            for r in self.store.list_stakes(poll_id, StakeStatus.ACTIVE.value)
        ]
        summary = SettlementSummary(
            poll_id=poll_id,
            outcome=PollOutcome.NO_QUORUM,
            total_pool=sum(p.amount for p in active),
        )
        return self._refund(poll_id, active, summary, now)

    def _refund(
        self,
        poll_id: str,
        positions: List[StakePosition],
        summary: SettlementSummary,
        now: float,
    ) -> SettlementSummary:
        for position in positions:
            if self.store.settle_stake(
                position.stake_id, StakeStatus.REFUNDED.value, position.amount, now
            ):
                self.economy.release(
                    position.user_id,
                    position.identity_mode,
                    position.amount,
                    position.stake_id,
                )
                summary.refunded += 1
                summary.payouts[position.stake_id] = position.amount
        if summary.refunded:
            logger.info(f"Refunded {summary.refunded} stakes on poll {poll_id}")
        return summary
